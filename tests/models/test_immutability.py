"""
ORM-level immutability tests.

The conversion of an expense is fixed once it leaves draft, only drafts
can be deleted, and approval rules are deactivated rather than deleted.
"""

from decimal import Decimal

import pytest

from expense_kernel.exceptions import ImmutabilityViolationError
from expense_kernel.models import ApprovalRuleModel, ExpenseModel


class TestExpenseImmutability:
    def test_draft_conversion_is_editable(self, submit, session):
        draft = submit(submit=False)
        model = session.get(ExpenseModel, draft.expense_id)

        model.amount = Decimal("175.00")
        model.converted_amount = Decimal("175.00")
        session.flush()

        assert session.get(ExpenseModel, draft.expense_id).amount == Decimal("175.00")

    @pytest.mark.parametrize("field, value", [
        ("amount", Decimal("1.00")),
        ("converted_amount", Decimal("1.00")),
        ("currency", "EUR"),
        ("exchange_rate", Decimal("2")),
    ])
    def test_conversion_frozen_after_submission(self, submit, session, field, value):
        expense = submit(amount="80.00")
        model = session.get(ExpenseModel, expense.expense_id)

        setattr(model, field, value)
        with pytest.raises(ImmutabilityViolationError, match=field):
            session.flush()

    def test_routing_fields_still_writable(self, submit, session):
        expense = submit(amount="80.00")
        model = session.get(ExpenseModel, expense.expense_id)

        model.description = "Receipt attached"
        session.flush()

    def test_only_drafts_can_be_deleted(self, submit, session):
        expense = submit(amount="80.00")
        session.delete(session.get(ExpenseModel, expense.expense_id))

        with pytest.raises(ImmutabilityViolationError, match="draft"):
            session.flush()


class TestRuleImmutability:
    def test_rules_cannot_be_deleted(self, make_rule, users, session):
        rule = make_rule([users["manager"]])
        session.delete(session.get(ApprovalRuleModel, rule.rule_id))

        with pytest.raises(ImmutabilityViolationError):
            session.flush()
