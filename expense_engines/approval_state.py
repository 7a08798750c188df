"""
expense_engines.approval_state -- Pure approval chain state machine.

Responsibility:
    Build the initial chain for a routed expense and apply a single
    approver decision to it, producing the next chain state.  Also answers
    the read-only questions the escalation job asks (which entries are
    overdue, can an entry be reassigned).

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import expense_kernel/domain/ types and exceptions.

Invariants enforced:
    - Exactly one entry leaves ``pending`` per accepted decision.
    - Decided entries never change.
    - Sequential and Hybrid chains accept decisions only from the current
      approver; Percentage chains accept any pending holder.
    - ``current_approver_id`` is set only while the expense is pending.
    - Time comes in as ``now``; the engine never reads a clock.

Failure modes:
    - NotAuthorizedOrAlreadyActedError when the caller holds no live
      pending entry (never in the chain, already acted, not current, or
      the expense is no longer pending).
    - ValueError on an empty approver list at initialization.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from expense_engines.tracer import traced_engine
from expense_kernel.domain.approval import (
    ApprovalDecision,
    ApprovalEntry,
    ApproverSpec,
    ChainState,
    CompletionMode,
    EntryStatus,
    EscalationRules,
    ExpenseStatus,
    PercentageRules,
    TransitionOutcome,
)
from expense_kernel.exceptions import NotAuthorizedOrAlreadyActedError

_HUNDRED = Decimal("100")


def initialize_chain(
    approvers: tuple[ApproverSpec, ...],
    mode: CompletionMode,
    percentage_rules: PercentageRules | None = None,
    now: datetime | None = None,
    expense_id: UUID | None = None,
) -> ChainState:
    """Create the pending chain for a freshly routed expense.

    Entries are ordered by ``order``.  Sequential/Hybrid chains activate
    only the first entry; Percentage chains activate every entry.
    """
    if not approvers:
        raise ValueError("An approval chain needs at least one approver")

    ordered = sorted(approvers, key=lambda a: (a.order, a.approver_id.int))
    first = ordered[0].approver_id
    open_all = mode == CompletionMode.PERCENTAGE

    entries = tuple(
        ApprovalEntry(
            approver_id=spec.approver_id,
            order=spec.order,
            is_required=spec.is_required,
            activated_at=now if (open_all or spec.approver_id == first) else None,
        )
        for spec in ordered
    )

    if mode != CompletionMode.SEQUENTIAL and percentage_rules is None:
        percentage_rules = PercentageRules()

    return ChainState(
        mode=mode,
        entries=entries,
        status=ExpenseStatus.PENDING,
        expense_id=expense_id,
        current_approver_id=None if open_all else first,
        percentage_rules=percentage_rules if mode != CompletionMode.SEQUENTIAL else None,
    )


def active_approver_ids(state: ChainState) -> tuple[UUID, ...]:
    """Approvers who may act right now."""
    if state.status != ExpenseStatus.PENDING:
        return ()
    if state.mode == CompletionMode.PERCENTAGE:
        return tuple(e.approver_id for e in state.pending_entries)
    if state.current_approver_id is None:
        return ()
    return (state.current_approver_id,)


def _refuse(state: ChainState, approver_id: UUID, reason: str) -> NotAuthorizedOrAlreadyActedError:
    return NotAuthorizedOrAlreadyActedError(
        str(state.expense_id) if state.expense_id else "",
        str(approver_id),
        reason,
    )


def _replace_entry(
    entries: tuple[ApprovalEntry, ...],
    updated: ApprovalEntry,
) -> tuple[ApprovalEntry, ...]:
    return tuple(
        updated if e.approver_id == updated.approver_id else e for e in entries
    )


def _next_pending(entries: tuple[ApprovalEntry, ...]) -> ApprovalEntry | None:
    pending = [e for e in entries if e.is_pending]
    if not pending:
        return None
    return min(pending, key=lambda e: (e.order, e.approver_id.int))


def _activate(
    entries: tuple[ApprovalEntry, ...],
    entry: ApprovalEntry,
    now: datetime | None,
) -> tuple[tuple[ApprovalEntry, ...], ApprovalEntry]:
    activated = replace(entry, activated_at=now)
    return _replace_entry(entries, activated), activated


def _finalize(
    state: ChainState,
    entries: tuple[ApprovalEntry, ...],
    acted: ApprovalEntry,
    status: ExpenseStatus,
    rejection_reason: str | None = None,
) -> TransitionOutcome:
    return TransitionOutcome(
        state=replace(
            state,
            entries=entries,
            status=status,
            current_approver_id=None,
            rejection_reason=rejection_reason,
        ),
        acted_entry=acted,
        terminal=True,
    )


def _advance(
    state: ChainState,
    entries: tuple[ApprovalEntry, ...],
    acted: ApprovalEntry,
    now: datetime | None,
) -> TransitionOutcome:
    nxt = _next_pending(entries)
    if nxt is None:
        # No pending entry left yet no decision: only reachable with inconsistent input.
        return _finalize(state, entries, acted, ExpenseStatus.APPROVED)
    entries, nxt = _activate(entries, nxt, now)
    return TransitionOutcome(
        state=replace(state, entries=entries, current_approver_id=nxt.approver_id),
        acted_entry=acted,
        terminal=False,
        activated_ids=(nxt.approver_id,),
    )


def _apply_sequential(
    state: ChainState,
    entries: tuple[ApprovalEntry, ...],
    acted: ApprovalEntry,
    decision: ApprovalDecision,
    now: datetime | None,
) -> TransitionOutcome:
    if decision == ApprovalDecision.REJECT:
        return _finalize(
            state, entries, acted, ExpenseStatus.REJECTED,
            rejection_reason=acted.comments or "Rejected by approver",
        )

    if not any(e.is_pending and e.is_required for e in entries):
        return _finalize(state, entries, acted, ExpenseStatus.APPROVED)
    return _advance(state, entries, acted, now)


def _apply_threshold(
    state: ChainState,
    entries: tuple[ApprovalEntry, ...],
    acted: ApprovalEntry,
    decision: ApprovalDecision,
    now: datetime | None,
) -> TransitionOutcome:
    rules = state.percentage_rules or PercentageRules()
    threshold = _HUNDRED if rules.require_all else rules.min_percentage

    if rules.require_all and decision == ApprovalDecision.REJECT:
        return _finalize(
            state, entries, acted, ExpenseStatus.REJECTED,
            rejection_reason=acted.comments or "Rejected: unanimous approval required",
        )

    counted = [e for e in entries if e.is_required] or list(entries)
    total = Decimal(len(counted))
    approved = sum(1 for e in counted if e.status == EntryStatus.APPROVED)
    pending = sum(1 for e in counted if e.is_pending)

    if decision == ApprovalDecision.APPROVE and approved * _HUNDRED / total >= threshold:
        return _finalize(state, entries, acted, ExpenseStatus.APPROVED)

    if (approved + pending) * _HUNDRED / total < threshold:
        return _finalize(
            state, entries, acted, ExpenseStatus.REJECTED,
            rejection_reason=acted.comments
            or f"Approval threshold of {threshold}% can no longer be reached",
        )

    if state.mode == CompletionMode.HYBRID:
        return _advance(state, entries, acted, now)

    return TransitionOutcome(
        state=replace(state, entries=entries, current_approver_id=None),
        acted_entry=acted,
        terminal=False,
    )


@traced_engine("approval_state", "1.0", fingerprint_fields=("approver_id", "decision"))
def apply_decision(
    state: ChainState,
    approver_id: UUID,
    decision: ApprovalDecision,
    comments: str | None = None,
    now: datetime | None = None,
) -> TransitionOutcome:
    """Apply one approver decision to the chain.

    Args:
        state: Current chain state (expense must be pending).
        approver_id: The acting approver.
        decision: approve or reject.
        comments: Optional free text stored on the entry.
        now: Action timestamp supplied by the caller.

    Returns:
        TransitionOutcome whose ``terminal`` flag tells the caller to stop
        notifying further approvers.

    Raises:
        NotAuthorizedOrAlreadyActedError: the caller holds no live pending entry.
    """
    if state.status != ExpenseStatus.PENDING:
        raise _refuse(state, approver_id, f"expense is {state.status.value}")

    entry = state.entry_for(approver_id)
    if entry is None:
        raise _refuse(state, approver_id, "not in the approval chain")
    if not entry.is_pending:
        raise _refuse(state, approver_id, f"entry already {entry.status.value}")
    if state.mode != CompletionMode.PERCENTAGE and state.current_approver_id != approver_id:
        raise _refuse(state, approver_id, "not the current approver")

    acted = replace(
        entry,
        status=decision.entry_status,
        comments=comments,
        action_timestamp=now,
    )
    entries = _replace_entry(state.entries, acted)

    if state.mode == CompletionMode.SEQUENTIAL:
        return _apply_sequential(state, entries, acted, decision, now)
    return _apply_threshold(state, entries, acted, decision, now)


# =========================================================================
# Escalation queries
# =========================================================================


def entry_reference_time(entry: ApprovalEntry) -> datetime | None:
    """The moment an entry's escalation clock started."""
    return entry.escalated_at or entry.activated_at


def find_overdue_entries(
    state: ChainState,
    escalation: EscalationRules,
    as_of: datetime,
) -> tuple[ApprovalEntry, ...]:
    """Pending, active entries whose escalation window has elapsed."""
    if not escalation.enabled or state.status != ExpenseStatus.PENDING:
        return ()
    window = timedelta(hours=escalation.escalation_hours)
    active = set(active_approver_ids(state))
    overdue = []
    for entry in state.pending_entries:
        if entry.approver_id not in active:
            continue
        started = entry_reference_time(entry)
        if started is not None and started + window <= as_of:
            overdue.append(entry)
    return tuple(overdue)


def can_reassign(state: ChainState, entry: ApprovalEntry, target_id: UUID | None) -> bool:
    """True when ``target_id`` is a distinct approver not already in the chain."""
    if target_id is None or target_id == entry.approver_id:
        return False
    return state.entry_for(target_id) is None
