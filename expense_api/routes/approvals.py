"""Approver endpoints: queue, history, statistics and decisions."""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from expense_api.dependencies import (
    Pagination,
    get_controller,
    get_db_session,
    get_pagination,
    require_role,
)
from expense_api.schemas import (
    ApprovalActionRequest,
    ApprovalStatsOut,
    BulkActionOut,
    BulkActionRequest,
    ExpenseOut,
    ExpensePageOut,
    PendingPageOut,
)
from expense_kernel.domain.collaborators import UserRef
from expense_kernel.selectors import ApprovalSelector
from expense_kernel.services import WorkflowController

router = APIRouter(prefix="/approvals", tags=["approvals"])


@router.get("/pending", response_model=PendingPageOut)
def list_pending(
    user: UserRef = Depends(require_role()),
    paging: Pagination = Depends(get_pagination),
    session: Session = Depends(get_db_session),
) -> PendingPageOut:
    page = ApprovalSelector(session).pending_for_approver(
        user.user_id, user.company_id, page=paging.page, limit=paging.limit,
    )
    return PendingPageOut.from_page(page, user.user_id)


@router.get("/history", response_model=ExpensePageOut)
def list_history(
    user: UserRef = Depends(require_role()),
    paging: Pagination = Depends(get_pagination),
    session: Session = Depends(get_db_session),
) -> ExpensePageOut:
    page = ApprovalSelector(session).history_for_approver(
        user.user_id, page=paging.page, limit=paging.limit,
    )
    return ExpensePageOut.from_page(page)


@router.get("/stats", response_model=ApprovalStatsOut)
def approval_stats(
    start_date: date | None = Query(default=None, alias="startDate"),
    end_date: date | None = Query(default=None, alias="endDate"),
    user: UserRef = Depends(require_role()),
    controller: WorkflowController = Depends(get_controller),
) -> ApprovalStatsOut:
    start = datetime.combine(start_date, time.min, timezone.utc) if start_date else None
    end = datetime.combine(end_date, time.max, timezone.utc) if end_date else None
    stats = controller.compute_approval_stats(user.user_id, start, end)
    return ApprovalStatsOut.from_stats(stats)


# Declared before "/{expense_id}" so "bulk" is never read as an id.
@router.put("/bulk", response_model=BulkActionOut)
def bulk_action(
    body: BulkActionRequest,
    user: UserRef = Depends(require_role()),
    controller: WorkflowController = Depends(get_controller),
) -> BulkActionOut:
    result = controller.handle_bulk_action(
        body.expense_ids, user.user_id, body.action, body.comments,
    )
    return BulkActionOut.from_result(result)


@router.put("/{expense_id}", response_model=ExpenseOut)
def act_on_expense(
    expense_id: UUID,
    body: ApprovalActionRequest,
    user: UserRef = Depends(require_role()),
    controller: WorkflowController = Depends(get_controller),
) -> ExpenseOut:
    expense = controller.handle_action(expense_id, user.user_id, body.action, body.comments)
    return ExpenseOut.from_dto(expense)
