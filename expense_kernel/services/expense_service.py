"""
ExpenseService -- draft lifecycle of expenses.

Responsibility:
    Creates, edits, cancels and deletes expenses.  Currency conversion into
    the company's base currency happens here, once at creation and again on
    every draft edit; after submission the conversion is frozen.

Architecture position:
    Kernel > Services.  Routing and approval decisions belong to the
    workflow controller, which calls this service to create the expense row.

Invariants enforced:
    - amount > 0; a conversion failure aborts creation (no unconverted
      expense is ever stored).
    - Only the owner edits, submits or deletes; the owner or an admin
      cancels.
    - Only drafts are edited or deleted; only drafts and pending expenses
      are cancelled.

Failure modes:
    - InvalidExpenseError, InvalidExpenseStateError, NotExpenseOwnerError,
      UserNotFoundError, CurrencyConversionError.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal, InvalidOperation
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from expense_kernel.domain.approval import Expense, ExpenseStatus
from expense_kernel.domain.clock import Clock, SystemClock
from expense_kernel.domain.collaborators import CurrencyNormalizer, UserRef
from expense_kernel.exceptions import (
    ExpenseNotFoundError,
    InvalidExpenseError,
    InvalidExpenseStateError,
    NotExpenseOwnerError,
)
from expense_kernel.logging_config import get_logger
from expense_kernel.models.expense import ExpenseModel
from expense_kernel.selectors.expense_selector import ExpenseSelector
from expense_kernel.services.base import BaseService
from expense_kernel.services.chain_writer import ChainWriter
from expense_kernel.services.directory import SqlUserDirectory

logger = get_logger("services.expense")

_EDITABLE_FIELDS = frozenset({
    "title", "description", "category", "department", "expense_date", "amount", "currency",
})


def _validate_amount(value: object) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidExpenseError("amount", f"not a number: {value!r}") from None
    if not amount.is_finite() or amount <= 0:
        raise InvalidExpenseError("amount", "must be greater than zero")
    return amount


def _validate_text(field: str, value: str | None, max_length: int) -> str:
    text = (value or "").strip()
    if not text:
        raise InvalidExpenseError(field, "is required")
    if len(text) > max_length:
        raise InvalidExpenseError(field, f"must be at most {max_length} characters")
    return text


def _validate_currency(value: str | None) -> str:
    code = (value or "").strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise InvalidExpenseError("currency", f"not an ISO 4217 code: {value!r}")
    return code


class ExpenseService(BaseService):
    """Draft lifecycle of expenses."""

    def __init__(
        self,
        session: Session,
        normalizer: CurrencyNormalizer,
        clock: Clock | None = None,
        directory: SqlUserDirectory | None = None,
    ):
        super().__init__(session)
        self._normalizer = normalizer
        self._clock = clock or SystemClock()
        self._directory = directory or SqlUserDirectory(session)
        self._selector = ExpenseSelector(session)
        self._writer = ChainWriter(session)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_model(self, expense_id: UUID) -> ExpenseModel:
        model = self.session.execute(
            select(ExpenseModel)
            .where(ExpenseModel.id == expense_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if model is None:
            raise ExpenseNotFoundError(str(expense_id))
        return model

    def _convert_into(self, model: ExpenseModel) -> None:
        settings = self._directory.get_company_settings(model.company_id)
        result = self._normalizer.convert(model.amount, model.currency, settings.base_currency)
        model.converted_amount = result.converted_amount
        model.exchange_rate = result.rate
        model.base_currency = result.to_currency

    @staticmethod
    def _require_owner(model: ExpenseModel, user: UserRef) -> None:
        if model.employee_id != user.user_id:
            raise NotExpenseOwnerError(str(model.id), str(user.user_id))

    @staticmethod
    def _require_status(model: ExpenseModel, operation: str, *allowed: ExpenseStatus) -> None:
        if model.status not in {s.value for s in allowed}:
            raise InvalidExpenseStateError(str(model.id), model.status, operation)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def get(self, expense_id: UUID) -> Expense:
        return self._selector.get(expense_id)

    def create_draft(
        self,
        employee_id: UUID,
        title: str,
        amount: Decimal | str,
        currency: str,
        category: str,
        description: str = "",
        department: str | None = None,
        expense_date: date | None = None,
    ) -> Expense:
        """Create a draft expense with its conversion into the base currency.

        ``department`` defaults to the employee's department.
        """
        employee = self._directory.require_user(employee_id)
        model = ExpenseModel(
            company_id=employee.company_id,
            employee_id=employee.user_id,
            title=_validate_text("title", title, 200),
            description=description or "",
            category=_validate_text("category", category, 50),
            department=department or employee.department,
            expense_date=expense_date,
            amount=_validate_amount(amount),
            currency=_validate_currency(currency),
            status=ExpenseStatus.DRAFT.value,
            version=1,
            created_at=self._clock.now(),
        )
        self._convert_into(model)
        self.session.add(model)
        self.session.flush()

        logger.info(
            "expense_created",
            extra={
                "expense_id": str(model.id),
                "company_id": str(model.company_id),
                "employee_id": str(model.employee_id),
                "amount": str(model.amount),
                "currency": model.currency,
                "converted_amount": str(model.converted_amount),
                "base_currency": model.base_currency,
            },
        )
        return self._selector.get(model.id)

    def update_draft(self, expense_id: UUID, user_id: UUID, **changes) -> Expense:
        """Edit a draft; a changed amount or currency recomputes the conversion."""
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise InvalidExpenseError(sorted(unknown)[0], "cannot be edited")

        user = self._directory.require_user(user_id)
        model = self._load_model(expense_id)
        self._require_owner(model, user)
        self._require_status(model, "edit", ExpenseStatus.DRAFT)

        if "title" in changes:
            model.title = _validate_text("title", changes["title"], 200)
        if "category" in changes:
            model.category = _validate_text("category", changes["category"], 50)
        if "description" in changes:
            model.description = changes["description"] or ""
        if "department" in changes:
            model.department = changes["department"]
        if "expense_date" in changes:
            model.expense_date = changes["expense_date"]

        reconvert = False
        if "amount" in changes:
            model.amount = _validate_amount(changes["amount"])
            reconvert = True
        if "currency" in changes:
            model.currency = _validate_currency(changes["currency"])
            reconvert = True
        if reconvert:
            self._convert_into(model)

        self.session.flush()
        logger.info(
            "expense_draft_updated",
            extra={"expense_id": str(expense_id), "fields": sorted(changes)},
        )
        return self._selector.get(expense_id)

    def prepare_submission(self, expense_id: UUID, user_id: UUID) -> Expense:
        """Owner and draft checks before the controller routes a draft."""
        user = self._directory.require_user(user_id)
        model = self._load_model(expense_id)
        self._require_owner(model, user)
        self._require_status(model, "submit", ExpenseStatus.DRAFT)
        return self._selector.get(expense_id)

    def cancel(self, expense_id: UUID, user_id: UUID) -> tuple[Expense, Expense]:
        """Cancel a draft or pending expense.

        Returns the snapshots before and after cancellation so the caller
        can notify the approvers who still held pending entries.
        """
        user = self._directory.require_user(user_id)
        model = self._load_model(expense_id)
        if model.employee_id != user.user_id and user.role != "admin":
            raise NotExpenseOwnerError(str(expense_id), str(user_id))
        self._require_status(model, "cancel", ExpenseStatus.DRAFT, ExpenseStatus.PENDING)

        before = self._selector.get(expense_id)
        now = self._clock.now()
        if before.status == ExpenseStatus.DRAFT:
            model.status = ExpenseStatus.CANCELLED.value
            model.resolved_at = now
            self.session.flush()
        else:
            self._writer.close_pending(before, ExpenseStatus.CANCELLED, now)

        logger.info(
            "expense_cancelled",
            extra={
                "expense_id": str(expense_id),
                "actor_id": str(user_id),
                "previous_status": before.status.value,
            },
        )
        return before, self._selector.get(expense_id)

    def delete_draft(self, expense_id: UUID, user_id: UUID) -> None:
        user = self._directory.require_user(user_id)
        model = self._load_model(expense_id)
        self._require_owner(model, user)
        self._require_status(model, "delete", ExpenseStatus.DRAFT)
        self.session.delete(model)
        self.session.flush()
        logger.info("expense_deleted", extra={"expense_id": str(expense_id)})
