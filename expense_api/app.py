"""
Application factory for the approval HTTP API.

Responsibility:
    Builds the FastAPI application: routers, the single exception handler
    translating kernel errors into HTTP responses, and request-scoped log
    context.

Architecture position:
    Outer layer.  Imports the kernel and the config package; nothing
    imports it.

Error mapping:
    NotFoundError -> 404, AuthorizationError -> 403, ValidationError -> 400,
    ConcurrencyError -> 409, DependencyFailureError -> 503, anything else
    -> 500.  Errors outside the hierarchy become INTERNAL_ERROR (500).
    Bodies are ``{"success": false, "code", "message"}``.
"""

from __future__ import annotations

from collections.abc import Callable
from uuid import uuid4

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, sessionmaker

from expense_api.dependencies import default_notifier_factory
from expense_api.routes import approvals, expenses
from expense_config import WorkflowSettings, get_active_config
from expense_kernel.db.engine import build_engine, create_tables
from expense_kernel.domain.clock import Clock, SystemClock
from expense_kernel.exceptions import (
    AuthorizationError,
    ConcurrencyError,
    DependencyFailureError,
    ExpenseWorkflowError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from expense_kernel.logging_config import LogContext, configure_logging, get_logger

logger = get_logger("api")

_STATUS_BY_FAMILY: tuple[tuple[type[ExpenseWorkflowError], int], ...] = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (ConcurrencyError, status.HTTP_409_CONFLICT),
    (DependencyFailureError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_for(exc: ExpenseWorkflowError) -> int:
    for family, code in _STATUS_BY_FAMILY:
        if isinstance(exc, family):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def _workflow_error_handler(request: Request, exc: ExpenseWorkflowError) -> JSONResponse:
    http_status = status_for(exc)
    log = logger.error if http_status >= 500 else logger.info
    log(
        "request_failed",
        extra={
            "path": request.url.path,
            "error_code": exc.code,
            "http_status": http_status,
        },
    )
    return JSONResponse(
        status_code=http_status,
        content={"success": False, "code": exc.code, "message": str(exc)},
    )


async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "request_crashed",
        extra={"path": request.url.path, "error_code": InternalError.code},
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "code": InternalError.code,
            "message": "Internal server error",
        },
    )


def create_app(
    settings: WorkflowSettings | None = None,
    session_factory: sessionmaker[Session] | None = None,
    clock: Clock | None = None,
    notifier_factory: Callable | None = None,
) -> FastAPI:
    """Build the application.

    Without a ``session_factory`` an engine is built from
    ``settings.database_url`` and its tables are created.
    """
    settings = settings or get_active_config()
    configure_logging(level=settings.log_level)

    if session_factory is None:
        engine = build_engine(settings.database_url)
        create_tables(engine)
        session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    app = FastAPI(title="Expense Approval Workflow", version="0.1.0")
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.clock = clock or SystemClock()
    app.state.notifier_factory = notifier_factory or default_notifier_factory

    app.add_exception_handler(ExpenseWorkflowError, _workflow_error_handler)
    app.add_exception_handler(Exception, _unexpected_error_handler)

    @app.middleware("http")
    async def bind_correlation_id(request: Request, call_next):
        correlation_id = request.headers.get("X-Request-Id") or str(uuid4())
        with LogContext.bind(correlation_id=correlation_id):
            response = await call_next(request)
        response.headers["X-Request-Id"] = correlation_id
        return response

    app.include_router(approvals.router)
    app.include_router(expenses.router)
    return app
