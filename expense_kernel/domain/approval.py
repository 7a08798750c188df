"""
Approval domain types (``expense_kernel.domain.approval``).

Responsibility
--------------
Pure value objects for the expense approval workflow engine.  Defines the
rule model (a tagged union discriminated by ``RuleType``), the expense and
chain-entry lifecycles, and the results produced by the rule evaluator and
the approval state machine.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports from
``db/``, ``models/``, ``services/`` or outer layers.  Records carry data
only; every behaviour lives in ``expense_engines``.

Invariants enforced
-------------------
* Expense lifecycle -- ``EXPENSE_TRANSITIONS`` defines the only valid
  status transitions.  Terminal states have no outgoing edges.
* Entry lifecycle -- ``pending -> {approved, rejected}``; decided entries
  never change again.
* Deterministic rule ordering -- rules carry an explicit ``priority``;
  storage order is never relied upon.
* Routing snapshot -- an expense keeps the completion mode and percentage
  thresholds it was routed with, so later rule edits cannot change an
  in-flight chain.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


# =========================================================================
# Expense Status Lifecycle
# =========================================================================


class ExpenseStatus(str, Enum):
    """Expense lifecycle states."""

    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


EXPENSE_TRANSITIONS: dict[ExpenseStatus, frozenset[ExpenseStatus]] = {
    ExpenseStatus.DRAFT: frozenset({
        ExpenseStatus.PENDING,
        ExpenseStatus.APPROVED,
        ExpenseStatus.REJECTED,
        ExpenseStatus.CANCELLED,
    }),
    ExpenseStatus.PENDING: frozenset({
        ExpenseStatus.APPROVED,
        ExpenseStatus.REJECTED,
        ExpenseStatus.CANCELLED,
    }),
    ExpenseStatus.APPROVED: frozenset(),
    ExpenseStatus.REJECTED: frozenset(),
    ExpenseStatus.CANCELLED: frozenset(),
}

TERMINAL_EXPENSE_STATUSES: frozenset[ExpenseStatus] = frozenset({
    ExpenseStatus.APPROVED,
    ExpenseStatus.REJECTED,
    ExpenseStatus.CANCELLED,
})


class EntryStatus(str, Enum):
    """Per-approver chain entry states."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalDecision(str, Enum):
    """Decisions an approver can make on a pending entry."""

    APPROVE = "approve"
    REJECT = "reject"

    @property
    def entry_status(self) -> EntryStatus:
        if self is ApprovalDecision.APPROVE:
            return EntryStatus.APPROVED
        return EntryStatus.REJECTED


# =========================================================================
# Rule Types
# =========================================================================


class RuleType(str, Enum):
    """Discriminator of the approval rule tagged union."""

    SEQUENTIAL = "sequential"
    PERCENTAGE = "percentage"
    CONDITIONAL = "conditional"
    HYBRID = "hybrid"


class CompletionMode(str, Enum):
    """
    How a routed chain converges.

    SEQUENTIAL: one current approver at a time, unanimous approval.
    PERCENTAGE: every entry open at once, threshold completion.
    HYBRID: one current approver at a time, threshold completion.
    """

    SEQUENTIAL = "sequential"
    PERCENTAGE = "percentage"
    HYBRID = "hybrid"


COMPLETION_MODE_BY_RULE_TYPE: dict[RuleType, CompletionMode] = {
    RuleType.SEQUENTIAL: CompletionMode.SEQUENTIAL,
    RuleType.PERCENTAGE: CompletionMode.PERCENTAGE,
    RuleType.CONDITIONAL: CompletionMode.SEQUENTIAL,
    RuleType.HYBRID: CompletionMode.HYBRID,
}


class ConditionType(str, Enum):
    """Predicates a conditional rule can test against an expense."""

    AMOUNT_GREATER_THAN = "amount_greater_than"
    AMOUNT_LESS_THAN = "amount_less_than"
    CATEGORY_EQUALS = "category_equals"
    DEPARTMENT_EQUALS = "department_equals"


class ConditionalAction(str, Enum):
    """Effect of a conditional rule whose predicate holds."""

    AUTO_APPROVE = "auto_approve"
    AUTO_REJECT = "auto_reject"
    SKIP_APPROVER = "skip_approver"
    ADD_APPROVER = "add_approver"


APPROVER_ROLES: tuple[str, ...] = ("manager", "finance", "director", "admin")

USER_ROLES: tuple[str, ...] = ("employee",) + APPROVER_ROLES


@dataclass(frozen=True)
class RuleConditions:
    """Applicability filters of a rule.  Empty tuples mean "any"."""

    amount_threshold: Decimal = Decimal("0")
    categories: tuple[str, ...] = ()
    departments: tuple[str, ...] = ()
    currencies: tuple[str, ...] = ()


@dataclass(frozen=True)
class ApproverSpec:
    """One approver slot declared by a rule (or derived for a chain)."""

    approver_id: UUID
    role: str
    order: int
    is_required: bool = True
    can_delegate: bool = False


@dataclass(frozen=True)
class PercentageRules:
    """Threshold completion settings; ``min_percentage`` is 0-100."""

    min_percentage: Decimal = Decimal("60")
    require_all: bool = False


@dataclass(frozen=True)
class ConditionalRule:
    """
    A predicate over the expense with an optional action.

    The rule applies only while every predicate of its list holds; the
    actions of those predicates then run in declared order.
    """

    condition: ConditionType
    value: str | Decimal
    action: ConditionalAction | None = None
    target_approver_id: UUID | None = None


@dataclass(frozen=True)
class EscalationRules:
    """Overdue policy executed by the escalation job."""

    enabled: bool = False
    escalation_hours: int = 24
    escalate_to: UUID | None = None


@dataclass(frozen=True)
class ApprovalRule:
    """
    Approval rule configuration.

    ``rule_type`` discriminates the variant; only the fields relevant to the
    variant are consulted by the evaluator (``percentage_rules`` for
    Percentage/Hybrid, ``conditional_rules`` for Conditional/Hybrid).
    Higher ``priority`` wins; ties resolve to the lowest ``rule_id``.
    """

    rule_id: UUID
    company_id: UUID
    name: str
    rule_type: RuleType
    approvers: tuple[ApproverSpec, ...]
    priority: int = 0
    is_active: bool = True
    description: str = ""
    conditions: RuleConditions = field(default_factory=RuleConditions)
    percentage_rules: PercentageRules = field(default_factory=PercentageRules)
    conditional_rules: tuple[ConditionalRule, ...] = ()
    escalation_rules: EscalationRules = field(default_factory=EscalationRules)


# =========================================================================
# Expense and Chain Records
# =========================================================================


@dataclass(frozen=True)
class ExpenseCandidate:
    """The workflow-relevant view of an expense being routed."""

    expense_id: UUID
    company_id: UUID
    employee_id: UUID
    category: str
    amount: Decimal
    currency: str
    converted_amount: Decimal
    base_currency: str
    department: str | None = None


@dataclass(frozen=True)
class ApprovalEntry:
    """One per-approver decision record in an expense's chain."""

    approver_id: UUID
    order: int
    status: EntryStatus = EntryStatus.PENDING
    is_required: bool = True
    comments: str | None = None
    action_timestamp: datetime | None = None
    activated_at: datetime | None = None
    escalated_from_id: UUID | None = None
    escalated_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == EntryStatus.PENDING


@dataclass(frozen=True)
class ChainState:
    """Aggregate approval state of one expense (input/output of the state machine)."""

    mode: CompletionMode
    entries: tuple[ApprovalEntry, ...]
    status: ExpenseStatus = ExpenseStatus.PENDING
    expense_id: UUID | None = None
    current_approver_id: UUID | None = None
    percentage_rules: PercentageRules | None = None
    rejection_reason: str | None = None

    def entry_for(self, approver_id: UUID) -> ApprovalEntry | None:
        for entry in self.entries:
            if entry.approver_id == approver_id:
                return entry
        return None

    @property
    def pending_entries(self) -> tuple[ApprovalEntry, ...]:
        return tuple(e for e in self.entries if e.is_pending)


@dataclass(frozen=True)
class Expense:
    """Immutable snapshot of a persisted expense and its chain."""

    expense_id: UUID
    company_id: UUID
    employee_id: UUID
    title: str
    category: str
    amount: Decimal
    currency: str
    converted_amount: Decimal
    base_currency: str
    exchange_rate: Decimal
    status: ExpenseStatus
    version: int = 1
    description: str = ""
    department: str | None = None
    expense_date: date | None = None
    approval_chain: tuple[ApprovalEntry, ...] = ()
    current_approver_id: UUID | None = None
    rejection_reason: str | None = None
    rule_id: UUID | None = None
    completion_mode: CompletionMode | None = None
    percentage_rules: PercentageRules | None = None
    escalation_rules: EscalationRules | None = None
    submitted_at: datetime | None = None
    resolved_at: datetime | None = None
    created_at: datetime | None = None

    def to_candidate(self) -> ExpenseCandidate:
        return ExpenseCandidate(
            expense_id=self.expense_id,
            company_id=self.company_id,
            employee_id=self.employee_id,
            category=self.category,
            amount=self.amount,
            currency=self.currency,
            converted_amount=self.converted_amount,
            base_currency=self.base_currency,
            department=self.department,
        )

    def chain_state(self) -> ChainState:
        if self.completion_mode is None:
            raise ValueError(f"Expense {self.expense_id} has not been routed")
        return ChainState(
            mode=self.completion_mode,
            entries=self.approval_chain,
            status=self.status,
            expense_id=self.expense_id,
            current_approver_id=self.current_approver_id,
            percentage_rules=self.percentage_rules,
            rejection_reason=self.rejection_reason,
        )


# =========================================================================
# Evaluation Results
# =========================================================================


@dataclass(frozen=True)
class RoutingDecision:
    """
    Result of evaluating the rule set against an expense.

    Exactly one of three shapes:
    * no rule applies -- ``rule is None``, caller applies the fallback;
    * short-circuit -- ``terminal_status`` set, ``approvers`` empty;
    * routed chain -- ``approvers`` non-empty, ``mode`` set.
    """

    rule: ApprovalRule | None = None
    approvers: tuple[ApproverSpec, ...] = ()
    mode: CompletionMode | None = None
    terminal_status: ExpenseStatus | None = None
    reason: str = ""

    @property
    def has_chain(self) -> bool:
        return bool(self.approvers)


@dataclass(frozen=True)
class TransitionOutcome:
    """Result of applying one approver decision to a chain."""

    state: ChainState
    acted_entry: ApprovalEntry
    terminal: bool
    activated_ids: tuple[UUID, ...] = ()
