"""
Race-safety tests for approval transitions.

These tests use sequential simulation of concurrent scenarios: a snapshot
is loaded, a competing request commits in between, and the stale
transition is then pushed through the same write path a racing request
would take.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from expense_engines import apply_decision
from expense_kernel.domain.approval import (
    ApprovalDecision,
    EntryStatus,
    EscalationRules,
    ExpenseStatus,
    PercentageRules,
    RuleType,
)
from expense_kernel.exceptions import (
    NotAuthorizedOrAlreadyActedError,
    OptimisticLockError,
    TransitionRetryExhaustedError,
)
from expense_kernel.selectors import ExpenseSelector
from expense_kernel.services import ChainWriter, ControllerSettings, WorkflowController


@pytest.fixture
def committee(users, make_rule):
    """Three-approver percentage rule at 60%; admin is the escalation target."""
    make_rule(
        [users["manager"], users["finance"], users["director"]],
        rule_type=RuleType.PERCENTAGE,
        percentage_rules=PercentageRules(Decimal("60")),
        escalation_rules=EscalationRules(True, 24, users["admin"].user_id),
    )
    return users["manager"], users["finance"], users["director"]


@pytest.fixture
def writer(session):
    return ChainWriter(session)


@pytest.fixture
def selector(session):
    return ExpenseSelector(session)


class TestChainWriterGuards:
    def test_stale_snapshot_cannot_land(
        self, committee, submit, controller, writer, selector, session, deterministic_clock,
    ):
        manager, finance, _ = committee
        expense = submit()
        stale = selector.get(expense.expense_id)

        controller.handle_action(expense.expense_id, manager.user_id, "approve")

        now = deterministic_clock.now()
        outcome = apply_decision(stale.chain_state(), finance.user_id, ApprovalDecision.APPROVE, None, now)
        with pytest.raises(OptimisticLockError):
            with session.begin_nested():
                writer.commit_transition(stale, outcome, now)

        current = selector.get(expense.expense_id)
        assert current.version == stale.version + 1
        assert current.approval_chain[1].status == EntryStatus.PENDING

    def test_duplicate_decision_consumes_entry_once(
        self, committee, submit, controller, writer, selector, session, deterministic_clock,
    ):
        manager, _, _ = committee
        expense = submit()
        stale = selector.get(expense.expense_id)
        now = deterministic_clock.now()
        duplicate = apply_decision(stale.chain_state(), manager.user_id, ApprovalDecision.REJECT, None, now)

        controller.handle_action(expense.expense_id, manager.user_id, "approve")

        with pytest.raises(NotAuthorizedOrAlreadyActedError):
            with session.begin_nested():
                writer.commit_transition(stale, duplicate, now)

        assert selector.get(expense.expense_id).approval_chain[0].status == EntryStatus.APPROVED

    def test_repeated_bulk_ids_apply_once(self, committee, submit, controller):
        manager, _, _ = committee
        expense = submit()

        result = controller.handle_bulk_action(
            [expense.expense_id] * 5, manager.user_id, "approve",
        )

        assert result.processed == 1
        assert result.failed == 4
        assert {e.code for e in result.errors} == {"NOT_AUTHORIZED_OR_ALREADY_ACTED"}


class TestControllerRetry:
    def test_conflict_is_retried_from_fresh_snapshot(
        self, committee, submit, controller, selector, monkeypatch, captured_logs,
    ):
        manager, finance, director = committee
        expense = submit()
        stale = selector.get(expense.expense_id)
        controller.handle_action(expense.expense_id, director.user_id, "approve")

        real_get = controller._expense_selector.get
        calls = []

        def first_load_is_stale(expense_id):
            calls.append(expense_id)
            return stale if len(calls) == 1 else real_get(expense_id)

        monkeypatch.setattr(controller._expense_selector, "get", first_load_is_stale)

        updated = controller.handle_action(expense.expense_id, finance.user_id, "approve")

        assert updated.status == ExpenseStatus.APPROVED
        logs = captured_logs()
        assert [r["attempt"] for r in logs if r["message"] == "approval_action_conflict"] == [1]
        applied = [r for r in logs if r["message"] == "approval_action_applied"]
        assert applied[-1]["attempts"] == 2

    def test_persistent_conflict_exhausts_retries(
        self, committee, submit, session, normalizer, notification_sink,
        deterministic_clock, selector, monkeypatch,
    ):
        manager, finance, _ = committee
        expense = submit()
        stale = selector.get(expense.expense_id)
        controller = WorkflowController(
            session, normalizer, notification_sink,
            clock=deterministic_clock,
            settings=ControllerSettings(transition_retry_limit=2),
        )
        controller.handle_action(expense.expense_id, manager.user_id, "approve")
        monkeypatch.setattr(controller._expense_selector, "get", lambda expense_id: stale)

        with pytest.raises(TransitionRetryExhaustedError) as exc_info:
            controller.handle_action(expense.expense_id, finance.user_id, "approve")

        assert exc_info.value.attempts == 2
        assert selector.get(expense.expense_id).approval_chain[1].status == EntryStatus.PENDING


class TestEscalationRace:
    def test_conflicting_expense_is_skipped(
        self, committee, submit, controller, selector, monkeypatch, deterministic_clock,
    ):
        manager, finance, _ = committee
        expense = submit()
        stale = selector.get(expense.expense_id)
        controller.handle_action(expense.expense_id, manager.user_id, "approve")
        monkeypatch.setattr(
            controller._expense_selector, "pending_with_escalation", lambda: (stale,),
        )

        report = controller.escalate_overdue(deterministic_clock.now() + timedelta(hours=24))

        assert report.skipped == 1
        assert report.reassigned == 0
        chain = selector.get(expense.expense_id).approval_chain
        assert [e.approver_id for e in chain][1] == finance.user_id
        assert chain[1].escalated_from_id is None
