"""Employee endpoints: create, edit, submit, cancel and delete expenses."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Response, status

from expense_api.dependencies import Pagination, get_controller, get_current_user, get_pagination
from expense_api.schemas import (
    ExpenseCreateRequest,
    ExpenseOut,
    ExpensePageOut,
    ExpenseUpdateRequest,
)
from expense_kernel.domain.collaborators import UserRef
from expense_kernel.exceptions import NotExpenseOwnerError
from expense_kernel.selectors import ExpenseSelector
from expense_kernel.services import WorkflowController

router = APIRouter(prefix="/expenses", tags=["expenses"])


@router.post("", response_model=ExpenseOut, status_code=status.HTTP_201_CREATED)
def create_expense(
    body: ExpenseCreateRequest,
    user: UserRef = Depends(get_current_user),
    controller: WorkflowController = Depends(get_controller),
) -> ExpenseOut:
    expense = controller.create_expense(
        employee_id=user.user_id,
        title=body.title,
        amount=body.amount,
        currency=body.currency,
        category=body.category,
        description=body.description,
        department=body.department,
        expense_date=body.expense_date,
        submit=body.submit,
    )
    return ExpenseOut.from_dto(expense)


@router.get("", response_model=ExpensePageOut)
def list_my_expenses(
    user: UserRef = Depends(get_current_user),
    paging: Pagination = Depends(get_pagination),
    controller: WorkflowController = Depends(get_controller),
) -> ExpensePageOut:
    page = ExpenseSelector(controller.session).list_for_employee(
        user.user_id, page=paging.page, limit=paging.limit,
    )
    return ExpensePageOut.from_page(page)


@router.get("/{expense_id}", response_model=ExpenseOut)
def get_expense(
    expense_id: UUID,
    user: UserRef = Depends(get_current_user),
    controller: WorkflowController = Depends(get_controller),
) -> ExpenseOut:
    """Visible to the owner, to approvers in the chain and to admins."""
    expense = controller.expenses.get(expense_id)
    in_chain = any(e.approver_id == user.user_id for e in expense.approval_chain)
    if expense.employee_id != user.user_id and not in_chain and user.role != "admin":
        raise NotExpenseOwnerError(str(expense_id), str(user.user_id))
    return ExpenseOut.from_dto(expense)


@router.put("/{expense_id}", response_model=ExpenseOut)
def update_expense(
    expense_id: UUID,
    body: ExpenseUpdateRequest,
    user: UserRef = Depends(get_current_user),
    controller: WorkflowController = Depends(get_controller),
) -> ExpenseOut:
    changes = body.model_dump(exclude_unset=True)
    expense = controller.expenses.update_draft(expense_id, user.user_id, **changes)
    return ExpenseOut.from_dto(expense)


@router.post("/{expense_id}/submit", response_model=ExpenseOut)
def submit_expense(
    expense_id: UUID,
    user: UserRef = Depends(get_current_user),
    controller: WorkflowController = Depends(get_controller),
) -> ExpenseOut:
    return ExpenseOut.from_dto(controller.submit_expense(expense_id, user.user_id))


@router.post("/{expense_id}/cancel", response_model=ExpenseOut)
def cancel_expense(
    expense_id: UUID,
    user: UserRef = Depends(get_current_user),
    controller: WorkflowController = Depends(get_controller),
) -> ExpenseOut:
    return ExpenseOut.from_dto(controller.cancel_expense(expense_id, user.user_id))


@router.delete("/{expense_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_expense(
    expense_id: UUID,
    user: UserRef = Depends(get_current_user),
    controller: WorkflowController = Depends(get_controller),
) -> Response:
    controller.expenses.delete_draft(expense_id, user.user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
