"""
WorkflowController -- orchestrates routing, approver actions and escalation.

Responsibility:
    Wires the pure engines (``evaluate_routing``, ``initialize_chain``,
    ``apply_decision``) to persistence and to the collaborators (user
    directory, currency normalizer, notification sink).  Every mutating
    operation is one atomic step: load a snapshot, compute the next state,
    persist it through ``ChainWriter`` inside a savepoint, then notify.

Architecture position:
    Kernel > Services -- imperative shell around the engines.  Called by
    the HTTP layer and the escalation script.  Flushes, never commits; the
    caller owns the transaction.

Invariants enforced:
    - Routing: no applicable rule and converted amount within the company
      auto-approval limit approves immediately; above the limit the
      expense is owned by the company default approver, else the
      lowest-id active admin.
    - A transition computed from a stale snapshot never lands: version
      conflicts roll back the savepoint and the action is retried from a
      fresh load, up to ``transition_retry_limit`` attempts.
    - Bulk items are isolated: each runs in its own savepoint and a
      failure never undoes an earlier success.
    - Notifications are emitted only after the transition is flushed, and
      a failing sink never affects the transition.

Failure modes:
    - InvalidActionError / InvalidCommentError -- malformed request.
    - NotAuthorizedOrAlreadyActedError -- caller holds no live entry.
    - NoApproverAvailableError -- unrouted expense above the limit and no
      one to own it.
    - TransitionRetryExhaustedError -- conflicts persisted past the limit.
    - CurrencyConversionError -- creation aborted, nothing stored.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from expense_engines import (
    active_approver_ids,
    apply_decision,
    can_reassign,
    evaluate_routing,
    find_overdue_entries,
    initialize_chain,
)
from expense_kernel.domain.approval import (
    ApprovalDecision,
    ApproverSpec,
    CompletionMode,
    Expense,
    ExpenseStatus,
    RoutingDecision,
)
from expense_kernel.domain.clock import Clock, SystemClock
from expense_kernel.domain.collaborators import CurrencyNormalizer, NotificationSink
from expense_kernel.exceptions import (
    BulkRequestError,
    ExpenseWorkflowError,
    InvalidActionError,
    InvalidCommentError,
    NoApproverAvailableError,
    NotAuthorizedOrAlreadyActedError,
    OptimisticLockError,
    TransitionRetryExhaustedError,
    ValidationError,
)
from expense_kernel.logging_config import LogContext, get_logger
from expense_kernel.models.expense import ExpenseModel
from expense_kernel.selectors.approval_selector import ApprovalSelector, ApprovalStats
from expense_kernel.selectors.expense_selector import ExpenseSelector
from expense_kernel.services import notifications
from expense_kernel.services.base import BaseService
from expense_kernel.services.chain_writer import ChainWriter
from expense_kernel.services.directory import SqlUserDirectory
from expense_kernel.services.expense_service import ExpenseService
from expense_kernel.services.rule_service import ApprovalRuleService

logger = get_logger("services.workflow_controller")


@dataclass(frozen=True)
class ControllerSettings:
    """Limits the controller enforces; populated from ``WorkflowSettings``."""

    transition_retry_limit: int = 3
    max_comment_length: int = 500
    bulk_max_items: int = 100


@dataclass(frozen=True)
class BulkItemResult:
    expense_id: UUID
    status: ExpenseStatus


@dataclass(frozen=True)
class BulkItemError:
    expense_id: UUID | str
    error: str
    code: str


@dataclass(frozen=True)
class BulkActionResult:
    """Outcome of a bulk action; successes and failures in request order."""

    results: tuple[BulkItemResult, ...] = ()
    errors: tuple[BulkItemError, ...] = ()

    @property
    def processed(self) -> int:
        return len(self.results)

    @property
    def failed(self) -> int:
        return len(self.errors)


@dataclass
class EscalationReport:
    as_of: datetime
    examined: int = 0
    reassigned: int = 0
    reminded: int = 0
    skipped: int = 0
    expense_ids: list[UUID] = field(default_factory=list)


def parse_decision(action: Any) -> ApprovalDecision:
    """Accept an ``ApprovalDecision`` or its string value."""
    if isinstance(action, ApprovalDecision):
        return action
    try:
        return ApprovalDecision(str(action).strip().lower())
    except ValueError:
        raise InvalidActionError(action) from None


class WorkflowController(BaseService):
    """Routing, approver actions and escalation for expenses."""

    def __init__(
        self,
        session: Session,
        normalizer: CurrencyNormalizer,
        notifier: NotificationSink,
        clock: Clock | None = None,
        settings: ControllerSettings | None = None,
        directory: SqlUserDirectory | None = None,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._notifier = notifier
        self._settings = settings or ControllerSettings()
        self._directory = directory or SqlUserDirectory(session)
        self._rules = ApprovalRuleService(session)
        self._writer = ChainWriter(session)
        self._expense_selector = ExpenseSelector(session)
        self._approval_selector = ApprovalSelector(session)
        self.expenses = ExpenseService(session, normalizer, self._clock, self._directory)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _clean_comments(self, comments: Any) -> str | None:
        if comments is None:
            return None
        if not isinstance(comments, str):
            raise InvalidCommentError("comments must be a string")
        text = comments.strip()
        if len(text) > self._settings.max_comment_length:
            raise InvalidCommentError(
                f"comments exceed {self._settings.max_comment_length} characters",
                self._settings.max_comment_length,
            )
        return text or None

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    @staticmethod
    def _payload(expense: Expense, **extra: Any) -> dict[str, Any]:
        payload = {
            "expense_id": str(expense.expense_id),
            "employee_id": str(expense.employee_id),
            "title": expense.title,
            "amount": str(expense.amount),
            "currency": expense.currency,
            "converted_amount": str(expense.converted_amount),
            "base_currency": expense.base_currency,
            "status": expense.status.value,
        }
        payload.update(extra)
        return payload

    def _notify(self, user_ids: Sequence[UUID], event_type: str, payload: dict[str, Any]) -> None:
        for user_id in user_ids:
            notifications.deliver(self._notifier, user_id, event_type, payload)

    def _notify_owner_of_outcome(self, expense: Expense) -> None:
        if expense.status == ExpenseStatus.APPROVED:
            event = notifications.EXPENSE_APPROVED
        elif expense.status == ExpenseStatus.REJECTED:
            event = notifications.EXPENSE_REJECTED
        else:
            return
        self._notify(
            [expense.employee_id], event,
            self._payload(expense, reason=expense.rejection_reason),
        )

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def _fallback_approver(self, company_id: UUID) -> ApproverSpec:
        settings = self._directory.get_company_settings(company_id)
        if settings.default_approver_id is not None:
            user = self._directory.get_user(settings.default_approver_id)
            if user is not None and user.is_active:
                return ApproverSpec(approver_id=user.user_id, role=user.role, order=1)
        admins = self._directory.list_company_users(company_id, role="admin")
        if admins:
            return ApproverSpec(approver_id=admins[0].user_id, role="admin", order=1)
        raise NoApproverAvailableError(str(company_id))

    def _resolve_unrouted(self, expense: Expense) -> RoutingDecision:
        settings = self._directory.get_company_settings(expense.company_id)
        if expense.converted_amount <= settings.auto_approval_limit:
            return RoutingDecision(
                terminal_status=ExpenseStatus.APPROVED,
                reason="Within the company auto-approval limit",
            )
        return RoutingDecision(
            approvers=(self._fallback_approver(expense.company_id),),
            mode=CompletionMode.SEQUENTIAL,
            reason="No approval rule applies; routed to the default approver",
        )

    def route_new_expense(self, expense: Expense) -> Expense:
        """Route a draft: short-circuit it or build and persist its chain.

        Preconditions: ``expense`` is a draft snapshot.
        Postconditions: the expense is ``approved``, ``rejected`` or
            ``pending`` with an initialized chain; ``submitted_at`` is set.
        """
        rules = self._rules.list_active_rules(expense.company_id)
        decision = evaluate_routing(expense.to_candidate(), rules)
        if decision.rule is None and decision.terminal_status is None and not decision.has_chain:
            decision = self._resolve_unrouted(expense)

        now = self._clock.now()
        model = self.session.execute(
            select(ExpenseModel)
            .where(ExpenseModel.id == expense.expense_id)
            .execution_options(populate_existing=True)
        ).scalar_one()
        model.submitted_at = now
        model.rule_id = decision.rule.rule_id if decision.rule is not None else None

        if decision.terminal_status is not None:
            model.status = decision.terminal_status.value
            model.resolved_at = now
            if decision.terminal_status == ExpenseStatus.REJECTED:
                model.rejection_reason = decision.reason or "Rejected by approval rule"
            self.session.flush()
            routed = self._expense_selector.get(expense.expense_id)
            self._log_routed(routed, decision)
            if routed.status == ExpenseStatus.APPROVED and decision.rule is None:
                self._notify(
                    [routed.employee_id], notifications.EXPENSE_AUTO_APPROVED,
                    self._payload(routed),
                )
            else:
                self._notify_owner_of_outcome(routed)
            return routed

        rule = decision.rule
        percentage_rules = rule.percentage_rules if rule is not None else None
        state = initialize_chain(
            decision.approvers, decision.mode, percentage_rules, now, expense.expense_id,
        )

        model.status = ExpenseStatus.PENDING.value
        model.current_approver_id = state.current_approver_id
        model.completion_mode = state.mode.value
        if state.percentage_rules is not None:
            model.min_percentage = state.percentage_rules.min_percentage
            model.require_all = state.percentage_rules.require_all
        if rule is not None and rule.escalation_rules.enabled:
            model.escalation_enabled = True
            model.escalation_hours = rule.escalation_rules.escalation_hours
            model.escalate_to_id = rule.escalation_rules.escalate_to
        self.session.flush()
        self._writer.insert_chain(expense.expense_id, state)

        routed = self._expense_selector.get(expense.expense_id)
        self._log_routed(routed, decision)
        self._notify(
            active_approver_ids(state), notifications.EXPENSE_REQUIRES_APPROVAL,
            self._payload(routed),
        )
        return routed

    def _log_routed(self, expense: Expense, decision: RoutingDecision) -> None:
        logger.info(
            "expense_routed",
            extra={
                "expense_id": str(expense.expense_id),
                "company_id": str(expense.company_id),
                "rule_id": str(decision.rule.rule_id) if decision.rule else None,
                "expense_status": expense.status.value,
                "completion_mode": expense.completion_mode.value if expense.completion_mode else None,
                "approver_count": len(expense.approval_chain),
                "reason": decision.reason,
            },
        )

    def create_expense(
        self,
        employee_id: UUID,
        title: str,
        amount: Decimal | str,
        currency: str,
        category: str,
        description: str = "",
        department: str | None = None,
        expense_date: date | None = None,
        submit: bool = True,
    ) -> Expense:
        """Create an expense and, unless ``submit`` is False, route it.

        Creation and routing share one savepoint: a routing failure leaves
        no draft behind.
        """
        with self.session.begin_nested():
            draft = self.expenses.create_draft(
                employee_id=employee_id,
                title=title,
                amount=amount,
                currency=currency,
                category=category,
                description=description,
                department=department,
                expense_date=expense_date,
            )
            if not submit:
                return draft
            with LogContext.bind(expense_id=str(draft.expense_id)):
                return self.route_new_expense(draft)

    def submit_expense(self, expense_id: UUID, user_id: UUID) -> Expense:
        """Route a draft created with ``submit=False``."""
        with self.session.begin_nested():
            draft = self.expenses.prepare_submission(expense_id, user_id)
            with LogContext.bind(expense_id=str(expense_id)):
                return self.route_new_expense(draft)

    def cancel_expense(self, expense_id: UUID, user_id: UUID) -> Expense:
        """Cancel a draft or pending expense; pending holders are told."""
        with self.session.begin_nested():
            before, after = self.expenses.cancel(expense_id, user_id)
        if before.status == ExpenseStatus.PENDING:
            self._notify(
                active_approver_ids(before.chain_state()),
                notifications.EXPENSE_CANCELLED,
                self._payload(after),
            )
        return after

    # ------------------------------------------------------------------
    # Approver actions
    # ------------------------------------------------------------------

    def handle_action(
        self,
        expense_id: UUID,
        approver_id: UUID,
        decision: ApprovalDecision | str,
        comments: str | None = None,
    ) -> Expense:
        """Apply one approver decision atomically and notify.

        Raises:
            InvalidActionError, InvalidCommentError: malformed request.
            ExpenseNotFoundError: unknown expense.
            NotAuthorizedOrAlreadyActedError: the caller holds no live
                pending entry.
            TransitionRetryExhaustedError: version conflicts persisted.
        """
        decision = parse_decision(decision)
        comments = self._clean_comments(comments)
        limit = self._settings.transition_retry_limit

        with LogContext.bind(expense_id=str(expense_id), actor_id=str(approver_id)):
            for attempt in range(1, limit + 1):
                snapshot = self._expense_selector.get(expense_id)
                if snapshot.status != ExpenseStatus.PENDING:
                    raise NotAuthorizedOrAlreadyActedError(
                        str(expense_id), str(approver_id),
                        f"expense is {snapshot.status.value}",
                    )
                now = self._clock.now()
                outcome = apply_decision(
                    snapshot.chain_state(), approver_id, decision, comments, now,
                )
                try:
                    with self.session.begin_nested():
                        self._writer.commit_transition(snapshot, outcome, now)
                except OptimisticLockError:
                    logger.warning(
                        "approval_action_conflict",
                        extra={
                            "expense_id": str(expense_id),
                            "attempt": attempt,
                            "version": snapshot.version,
                        },
                    )
                    continue
                break
            else:
                raise TransitionRetryExhaustedError(str(expense_id), limit)

            updated = self._expense_selector.get(expense_id)
            logger.info(
                "approval_action_applied",
                extra={
                    "expense_id": str(expense_id),
                    "approver_id": str(approver_id),
                    "decision": decision.value,
                    "expense_status": updated.status.value,
                    "terminal": outcome.terminal,
                    "attempts": attempt,
                },
            )

            if outcome.terminal:
                self._notify_owner_of_outcome(updated)
            else:
                step_event = (
                    notifications.EXPENSE_STEP_APPROVED
                    if decision == ApprovalDecision.APPROVE
                    else notifications.EXPENSE_STEP_REJECTED
                )
                self._notify(
                    [updated.employee_id], step_event,
                    self._payload(updated, reason=comments),
                )
                self._notify(
                    outcome.activated_ids, notifications.EXPENSE_REQUIRES_APPROVAL,
                    self._payload(updated),
                )
            return updated

    def handle_bulk_action(
        self,
        expense_ids: Sequence[UUID | str],
        approver_id: UUID,
        decision: ApprovalDecision | str,
        comments: str | None = None,
    ) -> BulkActionResult:
        """Apply the same decision to several expenses, in list order.

        Request-level problems (empty or oversized list, bad action or
        comment) fail the whole call; per-item problems are collected.
        """
        if not expense_ids:
            raise BulkRequestError("expense_ids must be a non-empty list")
        if len(expense_ids) > self._settings.bulk_max_items:
            raise BulkRequestError(
                f"at most {self._settings.bulk_max_items} expenses per request"
            )
        decision = parse_decision(decision)
        comments = self._clean_comments(comments)

        results: list[BulkItemResult] = []
        errors: list[BulkItemError] = []
        for raw_id in expense_ids:
            try:
                expense_id = raw_id if isinstance(raw_id, UUID) else UUID(str(raw_id))
            except ValueError:
                errors.append(BulkItemError(str(raw_id), "Invalid expense id", "INVALID_EXPENSE_ID"))
                continue
            try:
                with self.session.begin_nested():
                    updated = self.handle_action(expense_id, approver_id, decision, comments)
            except ExpenseWorkflowError as exc:
                errors.append(BulkItemError(expense_id, str(exc), exc.code))
                continue
            results.append(BulkItemResult(expense_id, updated.status))

        logger.info(
            "bulk_action_completed",
            extra={
                "approver_id": str(approver_id),
                "decision": decision.value,
                "processed": len(results),
                "failed": len(errors),
            },
        )
        return BulkActionResult(results=tuple(results), errors=tuple(errors))

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def compute_approval_stats(
        self,
        approver_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> ApprovalStats:
        if start is not None and end is not None and start > end:
            raise ValidationError("start must not be after end")
        return self._approval_selector.approval_stats(approver_id, start, end)

    # ------------------------------------------------------------------
    # Escalation
    # ------------------------------------------------------------------

    def _escalate_expense(self, snapshot: Expense, as_of: datetime, report: EscalationReport) -> None:
        escalation = snapshot.escalation_rules
        target_id = escalation.escalate_to
        target = self._directory.get_user(target_id) if target_id is not None else None
        target_usable = target is not None and target.is_active

        for entry in find_overdue_entries(snapshot.chain_state(), escalation, as_of):
            state = snapshot.chain_state()
            if target_usable and can_reassign(state, entry, target_id):
                with self.session.begin_nested():
                    moved = self._writer.reassign_entry(snapshot, entry, target_id, as_of)
                if not moved:
                    continue
                report.reassigned += 1
                snapshot = self._expense_selector.get(snapshot.expense_id)
                self._notify(
                    [target_id], notifications.EXPENSE_REQUIRES_APPROVAL,
                    self._payload(snapshot),
                )
                self._notify(
                    [entry.approver_id], notifications.EXPENSE_ESCALATED,
                    self._payload(snapshot),
                )
            else:
                with self.session.begin_nested():
                    reminded = self._writer.restart_escalation_clock(
                        snapshot.expense_id, entry.approver_id, as_of,
                    )
                if not reminded:
                    continue
                report.reminded += 1
                self._notify(
                    [entry.approver_id], notifications.APPROVAL_OVERDUE,
                    self._payload(snapshot),
                )
            if snapshot.expense_id not in report.expense_ids:
                report.expense_ids.append(snapshot.expense_id)

    def escalate_overdue(self, as_of: datetime | None = None) -> EscalationReport:
        """Reassign or remind every overdue pending entry.

        An overdue entry moves to the rule's ``escalate_to`` approver when
        that user is active and not already in the chain; otherwise its
        holder is reminded and the escalation clock restarts.
        """
        as_of = as_of or self._clock.now()
        report = EscalationReport(as_of=as_of)
        for snapshot in self._expense_selector.pending_with_escalation():
            report.examined += 1
            try:
                self._escalate_expense(snapshot, as_of, report)
            except OptimisticLockError:
                report.skipped += 1
                logger.warning(
                    "escalation_skipped_conflict",
                    extra={"expense_id": str(snapshot.expense_id)},
                )

        logger.info(
            "escalation_run_completed",
            extra={
                "as_of": as_of.isoformat(),
                "examined": report.examined,
                "reassigned": report.reassigned,
                "reminded": report.reminded,
                "skipped": report.skipped,
            },
        )
        return report
