"""
Module: expense_kernel.selectors.expense_selector
Responsibility: Fresh snapshots of expenses and their chains.

Chain writes bypass the identity map (conditional UPDATEs), so every read
here uses ``populate_existing`` and selects the entries separately; a
snapshot therefore always reflects the database, never a stale object.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select

from expense_kernel.domain.approval import Expense, ExpenseStatus
from expense_kernel.exceptions import ExpenseNotFoundError
from expense_kernel.models.expense import ApprovalEntryModel, ExpenseModel
from expense_kernel.selectors.base import BaseSelector, Page


class ExpenseSelector(BaseSelector):
    """Read-only access to expenses."""

    def _entries_for(self, expense_ids: list[UUID]) -> dict[UUID, list[ApprovalEntryModel]]:
        grouped: dict[UUID, list[ApprovalEntryModel]] = {eid: [] for eid in expense_ids}
        if not expense_ids:
            return grouped
        rows = self.session.execute(
            select(ApprovalEntryModel)
            .where(ApprovalEntryModel.expense_id.in_(expense_ids))
            .order_by(ApprovalEntryModel.step_order, ApprovalEntryModel.approver_id)
            .execution_options(populate_existing=True)
        ).scalars()
        for row in rows:
            grouped[row.expense_id].append(row)
        return grouped

    def to_snapshots(self, models: list[ExpenseModel]) -> tuple[Expense, ...]:
        """Build DTOs for already-loaded expense rows with freshly read chains."""
        entries = self._entries_for([m.id for m in models])
        return tuple(m.to_dto(entries[m.id]) for m in models)

    def find(self, expense_id: UUID) -> Expense | None:
        model = self.session.execute(
            select(ExpenseModel)
            .where(ExpenseModel.id == expense_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if model is None:
            return None
        return self.to_snapshots([model])[0]

    def get(self, expense_id: UUID) -> Expense:
        """Raises ExpenseNotFoundError for unknown ids."""
        expense = self.find(expense_id)
        if expense is None:
            raise ExpenseNotFoundError(str(expense_id))
        return expense

    def list_for_employee(
        self,
        employee_id: UUID,
        status: ExpenseStatus | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page[Expense]:
        base = select(ExpenseModel).where(ExpenseModel.employee_id == employee_id)
        if status is not None:
            base = base.where(ExpenseModel.status == status.value)
        total = len(self.session.execute(base.with_only_columns(ExpenseModel.id)).all())
        models = list(self.session.execute(
            base.order_by(ExpenseModel.created_at.desc(), ExpenseModel.id)
            .offset((page - 1) * limit)
            .limit(limit)
            .execution_options(populate_existing=True)
        ).scalars())
        return Page(items=self.to_snapshots(models), total=total, page=page, limit=limit)

    def pending_with_escalation(self) -> tuple[Expense, ...]:
        """Pending expenses whose routing snapshot enables escalation."""
        models = list(self.session.execute(
            select(ExpenseModel)
            .where(
                ExpenseModel.status == ExpenseStatus.PENDING.value,
                ExpenseModel.escalation_enabled.is_(True),
            )
            .order_by(ExpenseModel.submitted_at, ExpenseModel.id)
            .execution_options(populate_existing=True)
        ).scalars())
        return self.to_snapshots(models)
