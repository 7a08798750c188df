"""
Tests for the approval domain types (``expense_kernel.domain.approval``).

Covers the expense lifecycle transition table, the rule-type to
completion-mode mapping, frozen dataclasses, and the snapshot helpers on
``Expense``.
"""

from dataclasses import FrozenInstanceError
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from expense_kernel.domain.approval import (
    COMPLETION_MODE_BY_RULE_TYPE,
    EXPENSE_TRANSITIONS,
    TERMINAL_EXPENSE_STATUSES,
    ApprovalDecision,
    ApprovalEntry,
    ApproverSpec,
    CompletionMode,
    EntryStatus,
    Expense,
    ExpenseStatus,
    PercentageRules,
    RoutingDecision,
    RuleType,
)
from expense_kernel.domain.clock import DeterministicClock


def make_expense(**overrides) -> Expense:
    values = dict(
        expense_id=uuid4(),
        company_id=uuid4(),
        employee_id=uuid4(),
        title="Taxi",
        category="travel",
        amount=Decimal("42.00"),
        currency="EUR",
        converted_amount=Decimal("45.36"),
        base_currency="USD",
        exchange_rate=Decimal("1.08"),
        status=ExpenseStatus.PENDING,
    )
    values.update(overrides)
    return Expense(**values)


class TestExpenseLifecycle:
    def test_every_status_has_a_row(self):
        assert set(EXPENSE_TRANSITIONS) == set(ExpenseStatus)

    def test_terminal_states_have_no_outgoing_edges(self):
        for status in TERMINAL_EXPENSE_STATUSES:
            assert EXPENSE_TRANSITIONS[status] == frozenset()

    def test_pending_never_returns_to_draft(self):
        assert ExpenseStatus.DRAFT not in EXPENSE_TRANSITIONS[ExpenseStatus.PENDING]

    def test_draft_can_short_circuit_to_terminal(self):
        allowed = EXPENSE_TRANSITIONS[ExpenseStatus.DRAFT]
        assert {ExpenseStatus.APPROVED, ExpenseStatus.REJECTED} <= allowed


class TestEnums:
    def test_decision_maps_to_entry_status(self):
        assert ApprovalDecision.APPROVE.entry_status == EntryStatus.APPROVED
        assert ApprovalDecision.REJECT.entry_status == EntryStatus.REJECTED

    def test_status_values_are_wire_strings(self):
        assert ExpenseStatus("pending") is ExpenseStatus.PENDING
        assert ApprovalDecision("reject") is ApprovalDecision.REJECT

    def test_conditional_routes_sequentially(self):
        assert COMPLETION_MODE_BY_RULE_TYPE[RuleType.CONDITIONAL] == CompletionMode.SEQUENTIAL
        assert COMPLETION_MODE_BY_RULE_TYPE[RuleType.HYBRID] == CompletionMode.HYBRID
        assert set(COMPLETION_MODE_BY_RULE_TYPE) == set(RuleType)


class TestFrozen:
    def test_approver_spec_is_frozen(self):
        spec = ApproverSpec(uuid4(), "manager", 1)
        with pytest.raises(FrozenInstanceError):
            spec.order = 2

    def test_entry_is_frozen(self):
        entry = ApprovalEntry(approver_id=uuid4(), order=1)
        with pytest.raises(FrozenInstanceError):
            entry.status = EntryStatus.APPROVED


class TestExpenseSnapshot:
    def test_candidate_carries_routing_fields(self):
        expense = make_expense(department="Sales")
        candidate = expense.to_candidate()

        assert candidate.expense_id == expense.expense_id
        assert candidate.converted_amount == Decimal("45.36")
        assert candidate.currency == "EUR"
        assert candidate.department == "Sales"

    def test_chain_state_requires_routing(self):
        with pytest.raises(ValueError):
            make_expense().chain_state()

    def test_chain_state_copies_snapshot(self):
        approver = uuid4()
        entry = ApprovalEntry(approver_id=approver, order=1)
        expense = make_expense(
            approval_chain=(entry,),
            current_approver_id=approver,
            completion_mode=CompletionMode.HYBRID,
            percentage_rules=PercentageRules(Decimal("75")),
        )
        state = expense.chain_state()

        assert state.mode == CompletionMode.HYBRID
        assert state.entry_for(approver) == entry
        assert state.pending_entries == (entry,)
        assert state.percentage_rules.min_percentage == Decimal("75")


class TestRoutingDecision:
    def test_empty_decision_has_no_chain(self):
        assert not RoutingDecision().has_chain

    def test_decision_with_approvers_has_chain(self):
        decision = RoutingDecision(approvers=(ApproverSpec(uuid4(), "manager", 1),))
        assert decision.has_chain


class TestDeterministicClock:
    def test_now_is_stable_until_advanced(self):
        clock = DeterministicClock(datetime(2024, 3, 1, tzinfo=timezone.utc))
        assert clock.now() == clock.now()

        clock.advance_hours(1.5)
        assert clock.now() == datetime(2024, 3, 1, 1, 30, tzinfo=timezone.utc)
