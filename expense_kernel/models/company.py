"""
Module: expense_kernel.models.company
Responsibility: ORM persistence for companies (workflow settings) and the
    users of the built-in directory.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Valid roles: DB check constraint limits ``users.role``.
    - Unique email per directory.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from expense_kernel.db.base import TimestampedBase, UUIDString

if TYPE_CHECKING:
    from expense_kernel.domain.collaborators import CompanySettings, UserRef


class CompanyModel(TimestampedBase):
    """Company and its approval settings."""

    __tablename__ = "companies"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    country: Mapped[str | None] = mapped_column(String(100), nullable=True)
    base_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    auto_approval_limit: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), nullable=False, default=Decimal("100"),
    )
    # Owner of unrouted expenses above the auto-approval limit.
    default_approver_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True,
    )

    users: Mapped[list["UserModel"]] = relationship(
        "UserModel", back_populates="company", lazy="select",
    )

    def __repr__(self) -> str:
        return f"<Company {self.name} {self.base_currency}>"

    def to_dto(self) -> CompanySettings:
        from expense_kernel.domain.collaborators import CompanySettings

        return CompanySettings(
            company_id=self.id,
            base_currency=self.base_currency,
            auto_approval_limit=Decimal(self.auto_approval_limit),
            default_approver_id=self.default_approver_id,
        )


class UserModel(TimestampedBase):
    """Directory user."""

    __tablename__ = "users"

    __table_args__ = (
        CheckConstraint(
            "role IN ('employee', 'manager', 'finance', 'director', 'admin')",
            name="ck_users_valid_role",
        ),
        Index("ix_users_company_role", "company_id", "role", "is_active"),
    )

    company_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("companies.id"), nullable=False,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="employee")
    department: Mapped[str | None] = mapped_column(String(100), nullable=True)
    manager_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    company: Mapped[CompanyModel] = relationship(
        "CompanyModel", back_populates="users",
    )

    def __repr__(self) -> str:
        return f"<User {self.email} role={self.role}>"

    def to_dto(self) -> UserRef:
        from expense_kernel.domain.collaborators import UserRef

        return UserRef(
            user_id=self.id,
            company_id=self.company_id,
            name=self.name,
            email=self.email,
            role=self.role,
            is_active=self.is_active,
            department=self.department,
            manager_id=self.manager_id,
        )
