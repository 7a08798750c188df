"""
Module: expense_kernel.models.expense
Responsibility: ORM persistence for expenses and their approval chains.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Status values: DB check constraints on ``expenses.status`` and
      ``approval_entries.status``.
    - One entry per approver per expense: UNIQUE(expense_id, approver_id).
      This is the key of the conditional chain update.
    - Conversion is fixed: ``converted_amount`` and ``exchange_rate`` may
      change only while the persisted status is ``draft`` (ORM listener).
    - Expense and chain are deleted together, and only while ``draft``.

Concurrency:
    ``version`` is bumped by every chain transition through a conditional
    UPDATE (see services/chain_writer.py).  It is deliberately not mapped
    as ``version_id_col``: chain writes go through Core-style statements.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from expense_kernel.db.base import Base, TimestampedBase, UTCDateTime, UUIDString
from expense_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from expense_kernel.domain.approval import ApprovalEntry, Expense


class ExpenseModel(TimestampedBase):
    """Persistent expense with its routing snapshot."""

    __tablename__ = "expenses"

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'pending', 'approved', 'rejected', 'cancelled')",
            name="ck_expenses_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_expenses_positive_amount"),
        Index("ix_expenses_company_status", "company_id", "status"),
        Index("ix_expenses_employee", "employee_id", "created_at"),
    )

    company_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("companies.id"), nullable=False,
    )
    employee_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("users.id"), nullable=False,
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    department: Mapped[str | None] = mapped_column(String(100), nullable=True)
    expense_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    converted_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    base_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    exchange_rate: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    current_approver_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True, index=True,
    )
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Routing snapshot
    rule_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    completion_mode: Mapped[str | None] = mapped_column(String(20), nullable=True)
    min_percentage: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    require_all: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    escalation_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    escalation_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    escalate_to_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    submitted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    entries: Mapped[list["ApprovalEntryModel"]] = relationship(
        "ApprovalEntryModel",
        back_populates="expense",
        order_by="ApprovalEntryModel.step_order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Expense {self.id} {self.title!r} status={self.status} v{self.version}>"

    def to_dto(self, entries: list[ApprovalEntryModel] | None = None) -> Expense:
        """Convert ORM model (with its chain) to a frozen domain DTO.

        ``entries`` overrides the loaded relationship, letting callers pass
        a freshly selected chain.
        """
        from expense_kernel.domain.approval import (
            CompletionMode,
            EscalationRules,
            Expense as ExpenseDTO,
            ExpenseStatus,
            PercentageRules,
        )

        percentage_rules = None
        if self.min_percentage is not None:
            percentage_rules = PercentageRules(
                min_percentage=Decimal(self.min_percentage),
                require_all=bool(self.require_all),
            )
        escalation_rules = None
        if self.escalation_hours is not None:
            escalation_rules = EscalationRules(
                enabled=self.escalation_enabled,
                escalation_hours=self.escalation_hours,
                escalate_to=self.escalate_to_id,
            )

        return ExpenseDTO(
            expense_id=self.id,
            company_id=self.company_id,
            employee_id=self.employee_id,
            title=self.title,
            description=self.description,
            category=self.category,
            department=self.department,
            expense_date=self.expense_date,
            amount=Decimal(self.amount),
            currency=self.currency,
            converted_amount=Decimal(self.converted_amount),
            base_currency=self.base_currency,
            exchange_rate=Decimal(self.exchange_rate),
            status=ExpenseStatus(self.status),
            version=self.version,
            approval_chain=tuple(
                e.to_dto() for e in (self.entries if entries is None else entries)
            ),
            current_approver_id=self.current_approver_id,
            rejection_reason=self.rejection_reason,
            rule_id=self.rule_id,
            completion_mode=(
                CompletionMode(self.completion_mode) if self.completion_mode else None
            ),
            percentage_rules=percentage_rules,
            escalation_rules=escalation_rules,
            submitted_at=self.submitted_at,
            resolved_at=self.resolved_at,
            created_at=self.created_at,
        )


class ApprovalEntryModel(Base):
    """One approver's entry in an expense's chain."""

    __tablename__ = "approval_entries"

    __table_args__ = (
        UniqueConstraint("expense_id", "approver_id", name="uq_approval_entry_approver"),
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected')",
            name="ck_approval_entries_valid_status",
        ),
        Index("ix_approval_entries_approver_status", "approver_id", "status"),
    )

    expense_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("expenses.id"), nullable=False,
    )
    approver_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    is_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    action_timestamp: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    activated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    escalated_from_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    escalated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    expense: Mapped[ExpenseModel] = relationship(
        "ExpenseModel", back_populates="entries",
    )

    def __repr__(self) -> str:
        return f"<ApprovalEntry {self.approver_id} #{self.step_order} {self.status}>"

    def to_dto(self) -> ApprovalEntry:
        from expense_kernel.domain.approval import ApprovalEntry, EntryStatus

        return ApprovalEntry(
            approver_id=self.approver_id,
            order=self.step_order,
            status=EntryStatus(self.status),
            is_required=self.is_required,
            comments=self.comments,
            action_timestamp=self.action_timestamp,
            activated_at=self.activated_at,
            escalated_from_id=self.escalated_from_id,
            escalated_at=self.escalated_at,
        )

    @classmethod
    def from_dto(cls, expense_id: UUID, dto: ApprovalEntry) -> ApprovalEntryModel:
        return cls(
            expense_id=expense_id,
            approver_id=dto.approver_id,
            step_order=dto.order,
            status=dto.status.value,
            is_required=dto.is_required,
            comments=dto.comments,
            action_timestamp=dto.action_timestamp,
            activated_at=dto.activated_at,
            escalated_from_id=dto.escalated_from_id,
            escalated_at=dto.escalated_at,
        )


# =============================================================================
# ORM-Level Immutability Protection
# =============================================================================
# The conversion computed at creation (or at a draft edit) is frozen once
# the expense leaves draft.
# =============================================================================

_FROZEN_CONVERSION_FIELDS = ("amount", "currency", "converted_amount", "exchange_rate", "base_currency")


def _persisted_status(target: ExpenseModel) -> str:
    history = inspect(target).attrs.status.history
    if history.deleted:
        return history.deleted[0]
    return target.status


@event.listens_for(ExpenseModel, "before_update")
def prevent_conversion_update(mapper, connection, target):
    """Reject changes to the conversion of a non-draft expense."""
    if _persisted_status(target) == "draft":
        return
    state = inspect(target)
    for field_name in _FROZEN_CONVERSION_FIELDS:
        if state.attrs[field_name].history.has_changes():
            raise ImmutabilityViolationError(
                entity_type="Expense",
                entity_id=str(target.id),
                reason=f"{field_name} is fixed once the expense leaves draft",
            )


@event.listens_for(ExpenseModel, "before_delete")
def prevent_non_draft_delete(mapper, connection, target):
    """Only draft expenses may be deleted."""
    if _persisted_status(target) != "draft":
        raise ImmutabilityViolationError(
            entity_type="Expense",
            entity_id=str(target.id),
            reason="Only draft expenses can be deleted",
        )
