"""
ChainWriter -- atomic persistence of approval chain transitions.

Responsibility:
    Writes the result of the pure state machine back to the database.
    Every write is a conditional UPDATE so that two racing requests cannot
    both consume the same pending entry, and a transition computed from a
    stale snapshot cannot overwrite newer expense state.

Architecture position:
    Kernel > Services -- imperative shell.  Called only by the workflow
    controller and expense service, always inside a savepoint they own.

Invariants enforced:
    - At most one entry leaves ``pending`` per accepted action:
      ``UPDATE approval_entries ... WHERE expense_id AND approver_id AND
      status = 'pending'``; rowcount 0 means the caller lost the race.
    - Expense state moves forward only from the snapshot it was computed
      from: ``UPDATE expenses ... WHERE id AND version AND status =
      'pending'`` and ``version`` is bumped on success.

Failure modes:
    - NotAuthorizedOrAlreadyActedError -- the acted entry is no longer
      pending (duplicate or racing request).
    - OptimisticLockError -- the expense changed since the snapshot; the
      caller rolls back its savepoint and retries from a fresh load.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import update

from expense_kernel.domain.approval import (
    ApprovalEntry,
    ChainState,
    EntryStatus,
    Expense,
    ExpenseStatus,
    TransitionOutcome,
)
from expense_kernel.exceptions import (
    NotAuthorizedOrAlreadyActedError,
    OptimisticLockError,
)
from expense_kernel.logging_config import get_logger
from expense_kernel.models.expense import ApprovalEntryModel, ExpenseModel
from expense_kernel.services.base import BaseService

logger = get_logger("services.chain_writer")

_UNSYNCHRONIZED = {"synchronize_session": False}


class ChainWriter(BaseService):
    """Conditional writes against ``expenses`` and ``approval_entries``."""

    def insert_chain(self, expense_id: UUID, state: ChainState) -> None:
        """Create the chain rows of a freshly routed expense."""
        for entry in state.entries:
            self.session.add(ApprovalEntryModel.from_dto(expense_id, entry))
        self.session.flush()

    def _bump_expense(self, snapshot: Expense, **values) -> None:
        result = self.session.execute(
            update(ExpenseModel)
            .where(
                ExpenseModel.id == snapshot.expense_id,
                ExpenseModel.version == snapshot.version,
                ExpenseModel.status == ExpenseStatus.PENDING.value,
            )
            .values(version=snapshot.version + 1, **values)
            .execution_options(**_UNSYNCHRONIZED)
        )
        if result.rowcount != 1:
            raise OptimisticLockError("Expense", str(snapshot.expense_id), snapshot.version)

    def commit_transition(
        self,
        snapshot: Expense,
        outcome: TransitionOutcome,
        now: datetime,
    ) -> None:
        """Persist one applied decision.

        Preconditions: ``outcome`` was computed by ``apply_decision`` from
            ``snapshot.chain_state()``.
        Postconditions: the acted entry is decided, newly activated entries
            carry their activation time, and the expense row reflects
            ``outcome.state`` at ``snapshot.version + 1``.
        """
        acted = outcome.acted_entry
        result = self.session.execute(
            update(ApprovalEntryModel)
            .where(
                ApprovalEntryModel.expense_id == snapshot.expense_id,
                ApprovalEntryModel.approver_id == acted.approver_id,
                ApprovalEntryModel.status == EntryStatus.PENDING.value,
            )
            .values(
                status=acted.status.value,
                comments=acted.comments,
                action_timestamp=acted.action_timestamp,
            )
            .execution_options(**_UNSYNCHRONIZED)
        )
        if result.rowcount != 1:
            raise NotAuthorizedOrAlreadyActedError(
                str(snapshot.expense_id),
                str(acted.approver_id),
                "entry is no longer pending",
            )

        for approver_id in outcome.activated_ids:
            self.session.execute(
                update(ApprovalEntryModel)
                .where(
                    ApprovalEntryModel.expense_id == snapshot.expense_id,
                    ApprovalEntryModel.approver_id == approver_id,
                    ApprovalEntryModel.status == EntryStatus.PENDING.value,
                )
                .values(activated_at=now)
                .execution_options(**_UNSYNCHRONIZED)
            )

        state = outcome.state
        self._bump_expense(
            snapshot,
            status=state.status.value,
            current_approver_id=state.current_approver_id,
            rejection_reason=state.rejection_reason,
            resolved_at=now if outcome.terminal else None,
        )

        logger.info(
            "chain_transition_committed",
            extra={
                "expense_id": str(snapshot.expense_id),
                "approver_id": str(acted.approver_id),
                "entry_status": acted.status.value,
                "expense_status": state.status.value,
                "version": snapshot.version + 1,
                "terminal": outcome.terminal,
            },
        )

    def reassign_entry(
        self,
        snapshot: Expense,
        entry: ApprovalEntry,
        target_id: UUID,
        now: datetime,
    ) -> bool:
        """Hand a pending entry to another approver (escalation).

        Returns False when the entry was decided in the meantime.

        Raises:
            OptimisticLockError: the expense changed since ``snapshot``.
        """
        result = self.session.execute(
            update(ApprovalEntryModel)
            .where(
                ApprovalEntryModel.expense_id == snapshot.expense_id,
                ApprovalEntryModel.approver_id == entry.approver_id,
                ApprovalEntryModel.status == EntryStatus.PENDING.value,
            )
            .values(
                approver_id=target_id,
                escalated_from_id=entry.approver_id,
                escalated_at=now,
            )
            .execution_options(**_UNSYNCHRONIZED)
        )
        if result.rowcount != 1:
            return False

        current = snapshot.current_approver_id
        self._bump_expense(
            snapshot,
            current_approver_id=target_id if current == entry.approver_id else current,
        )
        logger.info(
            "approval_entry_reassigned",
            extra={
                "expense_id": str(snapshot.expense_id),
                "from_approver_id": str(entry.approver_id),
                "to_approver_id": str(target_id),
            },
        )
        return True

    def restart_escalation_clock(
        self,
        expense_id: UUID,
        approver_id: UUID,
        now: datetime,
    ) -> bool:
        """Reset the reference time of a reminded entry."""
        result = self.session.execute(
            update(ApprovalEntryModel)
            .where(
                ApprovalEntryModel.expense_id == expense_id,
                ApprovalEntryModel.approver_id == approver_id,
                ApprovalEntryModel.status == EntryStatus.PENDING.value,
            )
            .values(escalated_at=now)
            .execution_options(**_UNSYNCHRONIZED)
        )
        return result.rowcount == 1

    def close_pending(
        self,
        snapshot: Expense,
        status: ExpenseStatus,
        now: datetime,
        reason: str | None = None,
    ) -> None:
        """Move a pending expense to a terminal status without an approver action."""
        self._bump_expense(
            snapshot,
            status=status.value,
            current_approver_id=None,
            rejection_reason=reason,
            resolved_at=now,
        )
        logger.info(
            "pending_expense_closed",
            extra={"expense_id": str(snapshot.expense_id), "expense_status": status.value},
        )
