"""
User directory (``expense_kernel.services.directory``).

Responsibility:
    SQL-backed implementation of the ``UserDirectory`` contract plus the
    company-settings lookup, and ``DirectoryService`` for the write side
    (companies, users, default approver).

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from expense_kernel.domain.approval import USER_ROLES
from expense_kernel.domain.collaborators import CompanySettings, UserRef
from expense_kernel.exceptions import (
    CompanyNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from expense_kernel.logging_config import get_logger
from expense_kernel.models.company import CompanyModel, UserModel
from expense_kernel.services.base import BaseService

logger = get_logger("services.directory")


class SqlUserDirectory(BaseService):
    """Reads users and company settings from the database."""

    def get_user(self, user_id: UUID) -> UserRef | None:
        model = self.session.get(UserModel, user_id)
        return model.to_dto() if model is not None else None

    def require_user(self, user_id: UUID) -> UserRef:
        user = self.get_user(user_id)
        if user is None or not user.is_active:
            raise UserNotFoundError(str(user_id))
        return user

    def find_by_email(self, email: str) -> UserRef | None:
        model = self.session.execute(
            select(UserModel).where(UserModel.email == email.lower())
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def list_company_users(
        self, company_id: UUID, role: str | None = None,
    ) -> tuple[UserRef, ...]:
        stmt = select(UserModel).where(
            UserModel.company_id == company_id,
            UserModel.is_active.is_(True),
        )
        if role is not None:
            stmt = stmt.where(UserModel.role == role)
        # Lexicographic order of canonical UUID strings equals numeric order.
        stmt = stmt.order_by(UserModel.id)
        return tuple(m.to_dto() for m in self.session.execute(stmt).scalars())

    def get_company_settings(self, company_id: UUID) -> CompanySettings:
        model = self.session.get(CompanyModel, company_id)
        if model is None:
            raise CompanyNotFoundError(str(company_id))
        return model.to_dto()


class DirectoryService(BaseService):
    """Creates and maintains companies and users."""

    def create_company(
        self,
        name: str,
        base_currency: str = "USD",
        auto_approval_limit: Decimal = Decimal("100"),
        country: str | None = None,
    ) -> CompanySettings:
        if auto_approval_limit < 0:
            raise ValidationError("auto_approval_limit must not be negative")
        model = CompanyModel(
            name=name,
            country=country,
            base_currency=base_currency.upper(),
            auto_approval_limit=auto_approval_limit,
        )
        self.session.add(model)
        self.session.flush()
        logger.info(
            "company_created",
            extra={"company_id": str(model.id), "base_currency": model.base_currency},
        )
        return model.to_dto()

    def create_user(
        self,
        company_id: UUID,
        name: str,
        email: str,
        role: str = "employee",
        department: str | None = None,
        manager_id: UUID | None = None,
    ) -> UserRef:
        if role not in USER_ROLES:
            raise ValidationError(f"Unknown role {role!r}")
        if self.session.get(CompanyModel, company_id) is None:
            raise CompanyNotFoundError(str(company_id))
        model = UserModel(
            company_id=company_id,
            name=name,
            email=email.lower(),
            role=role,
            department=department,
            manager_id=manager_id,
        )
        self.session.add(model)
        self.session.flush()
        logger.info(
            "user_created",
            extra={"user_id": str(model.id), "company_id": str(company_id), "role": role},
        )
        return model.to_dto()

    def deactivate_user(self, user_id: UUID) -> UserRef:
        model = self.session.get(UserModel, user_id)
        if model is None:
            raise UserNotFoundError(str(user_id))
        model.is_active = False
        self.session.flush()
        logger.info("user_deactivated", extra={"user_id": str(user_id)})
        return model.to_dto()

    def set_default_approver(self, company_id: UUID, approver_id: UUID | None) -> CompanySettings:
        """Set the owner of unrouted expenses above the auto-approval limit."""
        company = self.session.get(CompanyModel, company_id)
        if company is None:
            raise CompanyNotFoundError(str(company_id))
        if approver_id is not None:
            user = self.session.get(UserModel, approver_id)
            if user is None or user.company_id != company_id or not user.is_active:
                raise UserNotFoundError(str(approver_id))
        company.default_approver_id = approver_id
        self.session.flush()
        return company.to_dto()

    def update_company_settings(
        self,
        company_id: UUID,
        auto_approval_limit: Decimal | None = None,
        base_currency: str | None = None,
    ) -> CompanySettings:
        company = self.session.get(CompanyModel, company_id)
        if company is None:
            raise CompanyNotFoundError(str(company_id))
        if auto_approval_limit is not None:
            if auto_approval_limit < 0:
                raise ValidationError("auto_approval_limit must not be negative")
            company.auto_approval_limit = auto_approval_limit
        if base_currency is not None:
            company.base_currency = base_currency.upper()
        self.session.flush()
        return company.to_dto()
