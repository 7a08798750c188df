"""
Tests for WorkflowController -- routing, approver actions, bulk actions.

Scenarios follow an expense end to end: creation, routing (rule, fallback
or auto-approval), each approver decision, and the notifications emitted
along the way.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from expense_kernel.domain.approval import (
    ApprovalDecision,
    ConditionalAction,
    ConditionalRule,
    ConditionType,
    EntryStatus,
    ExpenseStatus,
    PercentageRules,
    RuleType,
)
from expense_kernel.exceptions import (
    BulkRequestError,
    CurrencyConversionError,
    InvalidActionError,
    InvalidCommentError,
    NoApproverAvailableError,
    NotAuthorizedOrAlreadyActedError,
    ValidationError,
)
from expense_kernel.models import ExpenseModel
from expense_kernel.services import ControllerSettings, WorkflowController
from expense_kernel.services.notifications import (
    EXPENSE_APPROVED,
    EXPENSE_AUTO_APPROVED,
    EXPENSE_CANCELLED,
    EXPENSE_REJECTED,
    EXPENSE_REQUIRES_APPROVAL,
    EXPENSE_STEP_APPROVED,
)


def recipients(sink, event_type):
    return [n.user_id for n in sink.of_type(event_type)]


# =========================================================================
# Routing
# =========================================================================


class TestRouting:
    def test_within_limit_without_rule_auto_approves(
        self, submit, users, notification_sink, deterministic_clock,
    ):
        expense = submit(amount="80.00")

        assert expense.status == ExpenseStatus.APPROVED
        assert expense.approval_chain == ()
        assert expense.rule_id is None
        assert expense.submitted_at == deterministic_clock.now()
        assert expense.resolved_at == deterministic_clock.now()
        assert recipients(notification_sink, EXPENSE_AUTO_APPROVED) == [users["employee"].user_id]

    def test_limit_is_inclusive(self, submit):
        assert submit(amount="100.00").status == ExpenseStatus.APPROVED

    def test_limit_applies_to_converted_amount(self, submit):
        # 90 EUR converts to 105.88 USD.
        expense = submit(amount="90.00", currency="EUR")
        assert expense.status == ExpenseStatus.PENDING

    def test_above_limit_routes_to_default_approver(
        self, submit, users, company, directory_service, notification_sink,
    ):
        directory_service.set_default_approver(company.company_id, users["finance"].user_id)

        expense = submit(amount="150.00")

        assert expense.status == ExpenseStatus.PENDING
        assert expense.current_approver_id == users["finance"].user_id
        assert [e.approver_id for e in expense.approval_chain] == [users["finance"].user_id]
        assert recipients(notification_sink, EXPENSE_REQUIRES_APPROVAL) == [users["finance"].user_id]

    def test_without_default_approver_falls_back_to_admin(self, submit, users):
        expense = submit(amount="150.00")
        assert expense.current_approver_id == users["admin"].user_id

    def test_no_approver_available_stores_nothing(
        self, submit, users, directory_service, session,
    ):
        directory_service.deactivate_user(users["admin"].user_id)

        with pytest.raises(NoApproverAvailableError):
            submit(amount="150.00")
        assert session.query(ExpenseModel).count() == 0

    def test_conversion_failure_stores_nothing(self, submit, session, notification_sink):
        with pytest.raises(CurrencyConversionError):
            submit(amount="150.00", currency="XYZ")
        assert session.query(ExpenseModel).count() == 0
        assert notification_sink.sent == []

    def test_matching_rule_beats_auto_approval(self, submit, users, make_rule):
        rule = make_rule([users["manager"]])

        expense = submit(amount="20.00")

        assert expense.status == ExpenseStatus.PENDING
        assert expense.rule_id == rule.rule_id

    def test_highest_priority_rule_routes(self, submit, users, make_rule):
        make_rule([users["manager"]], priority=1)
        make_rule([users["director"]], priority=5)

        expense = submit()

        assert expense.current_approver_id == users["director"].user_id

    def test_conditional_auto_reject(self, submit, users, make_rule, notification_sink):
        make_rule(
            [users["manager"]],
            rule_type=RuleType.CONDITIONAL,
            conditional_rules=(ConditionalRule(
                ConditionType.CATEGORY_EQUALS, "alcohol", ConditionalAction.AUTO_REJECT,
            ),),
        )

        expense = submit(category="alcohol")

        assert expense.status == ExpenseStatus.REJECTED
        assert "alcohol" in expense.rejection_reason
        assert recipients(notification_sink, EXPENSE_REJECTED) == [users["employee"].user_id]

    def test_conditional_add_approver(self, submit, users, make_rule):
        make_rule(
            [users["manager"]],
            rule_type=RuleType.CONDITIONAL,
            priority=10,
            conditional_rules=(ConditionalRule(
                ConditionType.AMOUNT_GREATER_THAN, Decimal("1000"),
                ConditionalAction.ADD_APPROVER, users["director"].user_id,
            ),),
        )
        make_rule([users["finance"]], priority=1)

        small = submit(amount="500.00")
        large = submit(amount="1500.00")

        assert [e.approver_id for e in small.approval_chain] == [users["finance"].user_id]
        assert [e.approver_id for e in large.approval_chain] == [
            users["manager"].user_id, users["director"].user_id,
        ]

    def test_draft_then_submit(self, submit, controller, users, make_rule):
        make_rule([users["manager"]])
        draft = submit(submit=False)
        assert draft.status == ExpenseStatus.DRAFT
        assert draft.submitted_at is None

        routed = controller.submit_expense(draft.expense_id, users["employee"].user_id)

        assert routed.status == ExpenseStatus.PENDING
        assert routed.submitted_at is not None

    def test_routing_is_logged(self, submit, captured_logs):
        expense = submit(amount="80.00")
        records = [r for r in captured_logs() if r["message"] == "expense_routed"]
        assert records[0]["expense_id"] == str(expense.expense_id)
        assert records[0]["expense_status"] == "approved"


# =========================================================================
# Sequential chains
# =========================================================================


class TestSequentialActions:
    @pytest.fixture
    def chain(self, users, make_rule):
        make_rule([users["manager"], users["finance"], users["director"]])
        return users["manager"], users["finance"], users["director"]

    def test_full_walk(self, chain, submit, controller, users, notification_sink):
        manager, finance, director = chain
        expense = submit()
        assert recipients(notification_sink, EXPENSE_REQUIRES_APPROVAL) == [manager.user_id]
        notification_sink.clear()

        step = controller.handle_action(expense.expense_id, manager.user_id, "approve")
        assert step.status == ExpenseStatus.PENDING
        assert step.current_approver_id == finance.user_id
        assert step.version == expense.version + 1
        assert recipients(notification_sink, EXPENSE_STEP_APPROVED) == [users["employee"].user_id]
        assert recipients(notification_sink, EXPENSE_REQUIRES_APPROVAL) == [finance.user_id]

        controller.handle_action(expense.expense_id, finance.user_id, ApprovalDecision.APPROVE)
        final = controller.handle_action(
            expense.expense_id, director.user_id, "APPROVE", comments="  fine  ",
        )

        assert final.status == ExpenseStatus.APPROVED
        assert final.current_approver_id is None
        assert final.resolved_at is not None
        assert all(e.status == EntryStatus.APPROVED for e in final.approval_chain)
        assert final.approval_chain[-1].comments == "fine"
        assert recipients(notification_sink, EXPENSE_APPROVED) == [users["employee"].user_id]

    def test_rejection_is_final(self, chain, submit, controller, users, notification_sink):
        manager, finance, _ = chain
        expense = submit()

        rejected = controller.handle_action(
            expense.expense_id, manager.user_id, "reject", comments="No receipt",
        )

        assert rejected.status == ExpenseStatus.REJECTED
        assert rejected.rejection_reason == "No receipt"
        assert rejected.approval_chain[1].status == EntryStatus.PENDING
        sent = notification_sink.of_type(EXPENSE_REJECTED)
        assert sent[0].user_id == users["employee"].user_id
        assert sent[0].payload["reason"] == "No receipt"

        with pytest.raises(NotAuthorizedOrAlreadyActedError):
            controller.handle_action(expense.expense_id, finance.user_id, "approve")

    def test_out_of_turn_approver_refused(self, chain, submit, controller):
        _, finance, _ = chain
        expense = submit()
        with pytest.raises(NotAuthorizedOrAlreadyActedError):
            controller.handle_action(expense.expense_id, finance.user_id, "approve")

    def test_double_action_refused(self, chain, submit, controller):
        manager, _, _ = chain
        expense = submit()
        controller.handle_action(expense.expense_id, manager.user_id, "approve")

        with pytest.raises(NotAuthorizedOrAlreadyActedError):
            controller.handle_action(expense.expense_id, manager.user_id, "approve")

    def test_stranger_refused(self, chain, submit, controller, users):
        expense = submit()
        with pytest.raises(NotAuthorizedOrAlreadyActedError):
            controller.handle_action(expense.expense_id, users["employee2"].user_id, "approve")

    def test_invalid_action(self, chain, submit, controller):
        manager, _, _ = chain
        expense = submit()
        with pytest.raises(InvalidActionError):
            controller.handle_action(expense.expense_id, manager.user_id, "maybe")

    def test_comment_too_long(self, chain, submit, controller):
        manager, _, _ = chain
        expense = submit()
        with pytest.raises(InvalidCommentError):
            controller.handle_action(expense.expense_id, manager.user_id, "approve", "x" * 501)

    def test_action_logged(self, chain, submit, controller, captured_logs):
        manager, _, _ = chain
        expense = submit()
        controller.handle_action(expense.expense_id, manager.user_id, "approve")

        records = [r for r in captured_logs() if r["message"] == "approval_action_applied"]
        assert records[0]["decision"] == "approve"
        assert records[0]["attempts"] == 1
        assert records[0]["actor_id"] == str(manager.user_id)


# =========================================================================
# Percentage and Hybrid chains
# =========================================================================


class TestThresholdActions:
    def test_two_of_three_approves(self, submit, controller, users, make_rule, notification_sink):
        make_rule(
            [users["manager"], users["finance"], users["director"]],
            rule_type=RuleType.PERCENTAGE,
            percentage_rules=PercentageRules(Decimal("60")),
        )
        expense = submit()
        assert set(recipients(notification_sink, EXPENSE_REQUIRES_APPROVAL)) == {
            users["manager"].user_id, users["finance"].user_id, users["director"].user_id,
        }
        assert expense.current_approver_id is None

        first = controller.handle_action(expense.expense_id, users["director"].user_id, "approve")
        assert first.status == ExpenseStatus.PENDING

        second = controller.handle_action(expense.expense_id, users["finance"].user_id, "approve")
        assert second.status == ExpenseStatus.APPROVED

        with pytest.raises(NotAuthorizedOrAlreadyActedError):
            controller.handle_action(expense.expense_id, users["manager"].user_id, "approve")

    def test_thresholds_are_snapshotted(
        self, submit, controller, users, make_rule, rule_service,
    ):
        rule = make_rule(
            [users["manager"], users["finance"]],
            rule_type=RuleType.PERCENTAGE,
            percentage_rules=PercentageRules(Decimal("50")),
        )
        expense = submit()
        rule_service.deactivate_rule(rule.rule_id)

        approved = controller.handle_action(expense.expense_id, users["finance"].user_id, "approve")

        assert approved.status == ExpenseStatus.APPROVED
        assert approved.percentage_rules.min_percentage == Decimal("50")

    def test_hybrid_walks_in_order(self, submit, controller, users, make_rule):
        make_rule(
            [users["manager"], users["finance"], users["director"]],
            rule_type=RuleType.HYBRID,
            percentage_rules=PercentageRules(Decimal("60")),
        )
        expense = submit()
        assert expense.current_approver_id == users["manager"].user_id

        step = controller.handle_action(expense.expense_id, users["manager"].user_id, "approve")
        assert step.current_approver_id == users["finance"].user_id

        done = controller.handle_action(expense.expense_id, users["finance"].user_id, "approve")
        assert done.status == ExpenseStatus.APPROVED


# =========================================================================
# Cancellation and failing notifications
# =========================================================================


class TestCancelAndNotifications:
    def test_cancel_pending_notifies_holders(
        self, submit, controller, users, make_rule, notification_sink,
    ):
        make_rule(
            [users["manager"], users["finance"]],
            rule_type=RuleType.PERCENTAGE,
        )
        expense = submit()
        notification_sink.clear()

        cancelled = controller.cancel_expense(expense.expense_id, users["employee"].user_id)

        assert cancelled.status == ExpenseStatus.CANCELLED
        assert set(recipients(notification_sink, EXPENSE_CANCELLED)) == {
            users["manager"].user_id, users["finance"].user_id,
        }
        with pytest.raises(NotAuthorizedOrAlreadyActedError):
            controller.handle_action(expense.expense_id, users["manager"].user_id, "approve")

    def test_failing_sink_never_blocks_transition(
        self, session, normalizer, deterministic_clock, users, make_rule,
    ):
        class BrokenSink:
            def emit(self, user_id, event_type, payload):
                raise RuntimeError("sink offline")

        make_rule([users["manager"]])
        controller = WorkflowController(
            session, normalizer, BrokenSink(), clock=deterministic_clock,
        )
        expense = controller.create_expense(
            users["employee"].user_id, "Taxi", Decimal("150"), "USD", "travel",
        )

        approved = controller.handle_action(expense.expense_id, users["manager"].user_id, "approve")

        assert approved.status == ExpenseStatus.APPROVED


# =========================================================================
# Bulk actions
# =========================================================================


class TestBulkActions:
    @pytest.fixture
    def pending_pair(self, submit, users, make_rule):
        make_rule([users["manager"]])
        return submit(title="First"), submit(title="Second")

    def test_partial_success(self, pending_pair, controller, users):
        first, second = pending_pair
        unknown = uuid4()

        result = controller.handle_bulk_action(
            [first.expense_id, unknown, str(second.expense_id), "not-a-uuid"],
            users["manager"].user_id,
            "approve",
        )

        assert result.processed == 2
        assert result.failed == 2
        assert [r.expense_id for r in result.results] == [first.expense_id, second.expense_id]
        assert all(r.status == ExpenseStatus.APPROVED for r in result.results)
        codes = {str(e.expense_id): e.code for e in result.errors}
        assert codes == {str(unknown): "EXPENSE_NOT_FOUND", "not-a-uuid": "INVALID_EXPENSE_ID"}

    def test_item_failure_does_not_undo_earlier_success(self, pending_pair, controller, users):
        first, second = pending_pair
        controller.handle_action(second.expense_id, users["manager"].user_id, "reject")

        result = controller.handle_bulk_action(
            [first.expense_id, second.expense_id], users["manager"].user_id, "approve",
        )

        assert result.processed == 1
        assert result.errors[0].code == "NOT_AUTHORIZED_OR_ALREADY_ACTED"
        assert controller.expenses.get(first.expense_id).status == ExpenseStatus.APPROVED

    def test_request_level_validation(self, controller, users, pending_pair):
        approver = users["manager"].user_id
        with pytest.raises(BulkRequestError):
            controller.handle_bulk_action([], approver, "approve")
        with pytest.raises(InvalidActionError):
            controller.handle_bulk_action([pending_pair[0].expense_id], approver, "escalate")

    def test_size_limit(self, session, normalizer, notification_sink, users):
        controller = WorkflowController(
            session, normalizer, notification_sink,
            settings=ControllerSettings(bulk_max_items=2),
        )
        with pytest.raises(BulkRequestError, match="at most 2"):
            controller.handle_bulk_action(
                [uuid4(), uuid4(), uuid4()], users["manager"].user_id, "approve",
            )


class TestStats:
    def test_start_after_end_rejected(self, controller, users, deterministic_clock):
        now = deterministic_clock.now()
        with pytest.raises(ValidationError):
            controller.compute_approval_stats(users["manager"].user_id, start=now, end=now.replace(year=2020))
