"""
Module: expense_kernel.selectors.approval_selector
Responsibility: Approver-facing read models: pending queue, decision
    history and approval statistics.

Architecture position: Kernel > Selectors.  Read-only.

Invariants enforced:
    - Only entries of pending expenses appear in the pending queue;
      leftover pending entries of a decided expense are inert.
    - Statistics are computed over decided entries; the date range filters
      on the decision time.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from sqlalchemy import func, select

from expense_kernel.domain.approval import EntryStatus, Expense, ExpenseStatus
from expense_kernel.models.expense import ApprovalEntryModel, ExpenseModel
from expense_kernel.selectors.base import BaseSelector, Page
from expense_kernel.selectors.expense_selector import ExpenseSelector

_DECIDED = (EntryStatus.APPROVED.value, EntryStatus.REJECTED.value)
_SECONDS_PER_HOUR = Decimal(3600)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class StatsOverview:
    total_approvals: int
    approved_count: int
    rejected_count: int
    pending_count: int
    average_processing_hours: Decimal


@dataclass(frozen=True)
class MonthlyTrend:
    year: int
    month: int
    approved: int
    rejected: int

    @property
    def total(self) -> int:
        return self.approved + self.rejected


@dataclass(frozen=True)
class ApprovalStats:
    overview: StatsOverview
    monthly_trends: tuple[MonthlyTrend, ...]


class ApprovalSelector(BaseSelector):
    """Queries over one approver's chain entries."""

    def __init__(self, session):
        super().__init__(session)
        self._expenses = ExpenseSelector(session)

    def _page(self, stmt, order_by, page: int, limit: int) -> Page[Expense]:
        total = self.session.execute(
            select(func.count()).select_from(stmt.with_only_columns(ExpenseModel.id).subquery())
        ).scalar_one()
        models = list(self.session.execute(
            stmt.order_by(*order_by)
            .offset((page - 1) * limit)
            .limit(limit)
            .execution_options(populate_existing=True)
        ).scalars())
        return Page(
            items=self._expenses.to_snapshots(models),
            total=total,
            page=page,
            limit=limit,
        )

    def pending_for_approver(
        self,
        approver_id: UUID,
        company_id: UUID,
        page: int = 1,
        limit: int = 10,
    ) -> Page[Expense]:
        """Pending expenses of the company in which the approver holds a pending entry.

        Newest first.  Percentage chains list every pending holder, not only
        the current approver.
        """
        stmt = (
            select(ExpenseModel)
            .join(ApprovalEntryModel, ApprovalEntryModel.expense_id == ExpenseModel.id)
            .where(
                ExpenseModel.company_id == company_id,
                ExpenseModel.status == ExpenseStatus.PENDING.value,
                ApprovalEntryModel.approver_id == approver_id,
                ApprovalEntryModel.status == EntryStatus.PENDING.value,
            )
        )
        return self._page(
            stmt, (ExpenseModel.created_at.desc(), ExpenseModel.id), page, limit,
        )

    def history_for_approver(
        self,
        approver_id: UUID,
        page: int = 1,
        limit: int = 10,
    ) -> Page[Expense]:
        """Expenses the approver has decided on, most recent decision first."""
        stmt = (
            select(ExpenseModel)
            .join(ApprovalEntryModel, ApprovalEntryModel.expense_id == ExpenseModel.id)
            .where(
                ApprovalEntryModel.approver_id == approver_id,
                ApprovalEntryModel.status.in_(_DECIDED),
            )
        )
        return self._page(
            stmt,
            (ApprovalEntryModel.action_timestamp.desc(), ExpenseModel.id),
            page,
            limit,
        )

    def approval_stats(
        self,
        approver_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> ApprovalStats:
        """Decision counts, mean processing time and monthly trends.

        Processing time runs from submission (creation for expenses that
        never passed through draft) to the decision.  Pending entries count
        only when no date range is given, since they carry no decision time.
        """
        start, end = _as_utc(start), _as_utc(end)
        rows = self.session.execute(
            select(
                ApprovalEntryModel.status,
                ApprovalEntryModel.action_timestamp,
                ExpenseModel.submitted_at,
                ExpenseModel.created_at,
                ExpenseModel.status,
            )
            .join(ExpenseModel, ApprovalEntryModel.expense_id == ExpenseModel.id)
            .where(ApprovalEntryModel.approver_id == approver_id)
        ).all()

        approved = rejected = pending = 0
        durations: list[Decimal] = []
        months: dict[tuple[int, int], list[int]] = defaultdict(lambda: [0, 0])

        for entry_status, acted_at, submitted_at, created_at, expense_status in rows:
            if entry_status == EntryStatus.PENDING.value:
                if start is None and end is None and expense_status == ExpenseStatus.PENDING.value:
                    pending += 1
                continue
            if acted_at is None:
                continue
            if start is not None and acted_at < start:
                continue
            if end is not None and acted_at > end:
                continue

            bucket = months[(acted_at.year, acted_at.month)]
            if entry_status == EntryStatus.APPROVED.value:
                approved += 1
                bucket[0] += 1
            else:
                rejected += 1
                bucket[1] += 1

            began = submitted_at or created_at
            if began is not None:
                seconds = Decimal(str((acted_at - began).total_seconds()))
                durations.append(seconds / _SECONDS_PER_HOUR)

        average = (
            (sum(durations) / len(durations)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
            if durations
            else Decimal("0.00")
        )
        return ApprovalStats(
            overview=StatsOverview(
                total_approvals=approved + rejected + pending,
                approved_count=approved,
                rejected_count=rejected,
                pending_count=pending,
                average_processing_hours=average,
            ),
            monthly_trends=tuple(
                MonthlyTrend(year=y, month=m, approved=a, rejected=r)
                for (y, m), (a, r) in sorted(months.items())
            ),
        )
