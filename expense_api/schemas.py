"""Request and response bodies of the HTTP API (camelCase on the wire)."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from expense_kernel.domain.approval import ApprovalEntry, CompletionMode, Expense
from expense_kernel.selectors import ApprovalStats, Page
from expense_kernel.services import BulkActionResult


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class ApprovalActionRequest(ApiModel):
    action: str
    comments: str | None = None


class BulkActionRequest(ApiModel):
    expense_ids: list[str]
    action: str
    comments: str | None = None


class ExpenseCreateRequest(ApiModel):
    title: str
    amount: Decimal
    currency: str
    category: str
    description: str = ""
    department: str | None = None
    expense_date: date | None = None
    submit: bool = True


class ExpenseUpdateRequest(ApiModel):
    title: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    category: str | None = None
    description: str | None = None
    department: str | None = None
    expense_date: date | None = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class ApprovalEntryOut(ApiModel):
    approver_id: UUID
    order: int
    status: str
    is_required: bool
    comments: str | None = None
    action_timestamp: datetime | None = None
    escalated_from_id: UUID | None = None

    @classmethod
    def from_dto(cls, entry: ApprovalEntry) -> ApprovalEntryOut:
        return cls(
            approver_id=entry.approver_id,
            order=entry.order,
            status=entry.status.value,
            is_required=entry.is_required,
            comments=entry.comments,
            action_timestamp=entry.action_timestamp,
            escalated_from_id=entry.escalated_from_id,
        )


class ExpenseOut(ApiModel):
    id: UUID
    employee_id: UUID
    company_id: UUID
    title: str
    description: str
    category: str
    department: str | None = None
    expense_date: date | None = None
    amount: Decimal
    currency: str
    converted_amount: Decimal
    base_currency: str
    exchange_rate: Decimal
    status: str
    version: int
    current_approver_id: UUID | None = None
    rejection_reason: str | None = None
    completion_mode: str | None = None
    approval_chain: list[ApprovalEntryOut] = Field(default_factory=list)
    submitted_at: datetime | None = None
    resolved_at: datetime | None = None

    @classmethod
    def from_dto(cls, expense: Expense) -> ExpenseOut:
        return cls(
            id=expense.expense_id,
            employee_id=expense.employee_id,
            company_id=expense.company_id,
            title=expense.title,
            description=expense.description,
            category=expense.category,
            department=expense.department,
            expense_date=expense.expense_date,
            amount=expense.amount,
            currency=expense.currency,
            converted_amount=expense.converted_amount,
            base_currency=expense.base_currency,
            exchange_rate=expense.exchange_rate,
            status=expense.status.value,
            version=expense.version,
            current_approver_id=expense.current_approver_id,
            rejection_reason=expense.rejection_reason,
            completion_mode=expense.completion_mode.value if expense.completion_mode else None,
            approval_chain=[ApprovalEntryOut.from_dto(e) for e in expense.approval_chain],
            submitted_at=expense.submitted_at,
            resolved_at=expense.resolved_at,
        )


class PendingExpenseOut(ExpenseOut):
    """A queued expense; ``isCurrent`` tells whether the caller may act now."""

    is_current: bool = False


class ExpensePageOut(ApiModel):
    expenses: list[ExpenseOut]
    count: int
    total: int
    page: int
    pages: int

    @classmethod
    def from_page(cls, page: Page[Expense]) -> ExpensePageOut:
        return cls(
            expenses=[ExpenseOut.from_dto(e) for e in page.items],
            count=page.count,
            total=page.total,
            page=page.page,
            pages=page.pages,
        )


class PendingPageOut(ApiModel):
    expenses: list[PendingExpenseOut]
    count: int
    total: int
    page: int
    pages: int

    @classmethod
    def from_page(cls, page: Page[Expense], approver_id: UUID) -> PendingPageOut:
        items = []
        for expense in page.items:
            out = ExpenseOut.from_dto(expense).model_dump()
            out["is_current"] = (
                expense.completion_mode == CompletionMode.PERCENTAGE
                or expense.current_approver_id == approver_id
            )
            items.append(PendingExpenseOut(**out))
        return cls(
            expenses=items,
            count=page.count,
            total=page.total,
            page=page.page,
            pages=page.pages,
        )


class BulkItemOut(ApiModel):
    expense_id: str
    status: str


class BulkErrorOut(ApiModel):
    expense_id: str
    error: str
    code: str


class BulkActionOut(ApiModel):
    processed: int
    error_count: int
    results: list[BulkItemOut]
    errors: list[BulkErrorOut]

    @classmethod
    def from_result(cls, result: BulkActionResult) -> BulkActionOut:
        return cls(
            processed=result.processed,
            error_count=result.failed,
            results=[
                BulkItemOut(expense_id=str(r.expense_id), status=r.status.value)
                for r in result.results
            ],
            errors=[
                BulkErrorOut(expense_id=str(e.expense_id), error=e.error, code=e.code)
                for e in result.errors
            ],
        )


class StatsOverviewOut(ApiModel):
    total_approvals: int
    approved_count: int
    rejected_count: int
    pending_count: int
    average_processing_time: float


class MonthlyTrendOut(ApiModel):
    year: int
    month: int
    approved: int
    rejected: int
    total: int


class ApprovalStatsOut(ApiModel):
    overview: StatsOverviewOut
    monthly_trends: list[MonthlyTrendOut]

    @classmethod
    def from_stats(cls, stats: ApprovalStats) -> ApprovalStatsOut:
        o = stats.overview
        return cls(
            overview=StatsOverviewOut(
                total_approvals=o.total_approvals,
                approved_count=o.approved_count,
                rejected_count=o.rejected_count,
                pending_count=o.pending_count,
                average_processing_time=float(o.average_processing_hours),
            ),
            monthly_trends=[
                MonthlyTrendOut(
                    year=t.year, month=t.month,
                    approved=t.approved, rejected=t.rejected, total=t.total,
                )
                for t in stats.monthly_trends
            ],
        )
