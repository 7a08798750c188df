"""
Pure domain layer.

Immutable value objects and collaborator contracts with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- I/O
"""

from expense_kernel.domain.approval import (
    COMPLETION_MODE_BY_RULE_TYPE,
    EXPENSE_TRANSITIONS,
    TERMINAL_EXPENSE_STATUSES,
    ApprovalDecision,
    ApprovalEntry,
    ApprovalRule,
    ApproverSpec,
    ChainState,
    CompletionMode,
    ConditionalAction,
    ConditionalRule,
    ConditionType,
    EntryStatus,
    EscalationRules,
    Expense,
    ExpenseCandidate,
    ExpenseStatus,
    PercentageRules,
    RoutingDecision,
    RuleConditions,
    RuleType,
    TransitionOutcome,
)
from expense_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from expense_kernel.domain.collaborators import (
    CompanySettings,
    ConversionResult,
    CurrencyNormalizer,
    NotificationSink,
    UserDirectory,
    UserRef,
)

__all__ = [
    "COMPLETION_MODE_BY_RULE_TYPE",
    "EXPENSE_TRANSITIONS",
    "TERMINAL_EXPENSE_STATUSES",
    "ApprovalDecision",
    "ApprovalEntry",
    "ApprovalRule",
    "ApproverSpec",
    "ChainState",
    "CompletionMode",
    "ConditionalAction",
    "ConditionalRule",
    "ConditionType",
    "EntryStatus",
    "EscalationRules",
    "Expense",
    "ExpenseCandidate",
    "ExpenseStatus",
    "PercentageRules",
    "RoutingDecision",
    "RuleConditions",
    "RuleType",
    "TransitionOutcome",
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "CompanySettings",
    "ConversionResult",
    "CurrencyNormalizer",
    "NotificationSink",
    "UserDirectory",
    "UserRef",
]
