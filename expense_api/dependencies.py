"""FastAPI dependencies: request session, caller identity, role checks."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from expense_config import WorkflowSettings
from expense_kernel.domain.collaborators import UserRef
from expense_kernel.exceptions import RoleNotPermittedError, UserNotFoundError
from expense_kernel.services import (
    ControllerSettings,
    SqlNotificationSink,
    SqlUserDirectory,
    TableCurrencyNormalizer,
    WorkflowController,
)


def get_settings(request: Request) -> WorkflowSettings:
    return request.app.state.settings


def get_db_session(request: Request) -> Iterator[Session]:
    """One session and transaction per request; commits on success."""
    session = request.app.state.session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_current_user(
    session: Session = Depends(get_db_session),
    x_user_id: str | None = Header(default=None),
) -> UserRef:
    """Resolve the caller from ``X-User-Id`` through the user directory."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id header missing",
        )
    try:
        user_id = UUID(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id header is not a valid id",
        ) from None
    try:
        return SqlUserDirectory(session).require_user(user_id)
    except UserNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown or inactive user",
        ) from None


def require_role(roles: Iterable[str] | None = None):
    """Return a dependency that enforces one of ``roles``.

    Without explicit roles the configured ``api_roles`` apply.
    """
    explicit = tuple(roles) if roles is not None else None

    def _enforce(
        user: UserRef = Depends(get_current_user),
        settings: WorkflowSettings = Depends(get_settings),
    ) -> UserRef:
        allowed = explicit if explicit is not None else settings.api_roles
        if user.role not in allowed:
            raise RoleNotPermittedError(str(user.user_id), user.role, tuple(allowed))
        return user

    return _enforce


def get_controller(
    request: Request,
    session: Session = Depends(get_db_session),
    settings: WorkflowSettings = Depends(get_settings),
) -> WorkflowController:
    state = request.app.state
    return WorkflowController(
        session,
        normalizer=TableCurrencyNormalizer(settings.exchange_rates),
        notifier=state.notifier_factory(session, state.clock),
        clock=state.clock,
        settings=ControllerSettings(
            transition_retry_limit=settings.transition_retry_limit,
            max_comment_length=settings.max_comment_length,
            bulk_max_items=settings.bulk_max_items,
        ),
    )


class Pagination:
    def __init__(self, page: int, limit: int):
        self.page = page
        self.limit = limit


def get_pagination(
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
    settings: WorkflowSettings = Depends(get_settings),
) -> Pagination:
    size = limit or settings.default_page_size
    return Pagination(page=page, limit=min(size, settings.max_page_size))


def default_notifier_factory(session: Session, clock) -> SqlNotificationSink:
    return SqlNotificationSink(session, clock)
