"""
Module: expense_engines
Responsibility:
    Package entrypoint re-exporting the pure approval engines.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import expense_kernel/domain/ values and exceptions.
    MUST NOT import services, selectors or the HTTP layer.

Invariants enforced:
    - Purity: engines NEVER call ``datetime.now()``.  Timestamps are passed
      in by the caller.
    - Decimal-only arithmetic for amounts and percentages.
    - Determinism: identical inputs always produce identical outputs.

Usage:
    from expense_engines import evaluate_routing, initialize_chain, apply_decision
"""

from expense_engines.approval_state import (
    active_approver_ids,
    apply_decision,
    can_reassign,
    entry_reference_time,
    find_overdue_entries,
    initialize_chain,
)
from expense_engines.rule_evaluation import (
    derive_approvers,
    evaluate_condition,
    evaluate_routing,
    ordered_matching_rules,
    rule_matches,
    select_rule,
)

__all__ = [
    "active_approver_ids",
    "apply_decision",
    "can_reassign",
    "derive_approvers",
    "entry_reference_time",
    "evaluate_condition",
    "evaluate_routing",
    "find_overdue_entries",
    "initialize_chain",
    "ordered_matching_rules",
    "rule_matches",
    "select_rule",
]
