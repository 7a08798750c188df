"""
expense_engines.rule_evaluation -- Pure approval rule evaluation engine.

Responsibility:
    Decide which approval rule governs an expense and derive the ordered
    approver list (or a short-circuit outcome) from it.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import expense_kernel/domain/ types.

Invariants enforced:
    - Deterministic selection: matching rules are ordered by ``priority``
      (higher first) and then by ``rule_id``; input order never matters.
    - Rule records carry no behaviour: each variant is evaluated by a
      standalone function keyed on ``rule_type``.
    - Purity: no clock access, no I/O, no database.

Failure modes:
    - Returns ``RoutingDecision(rule=None)`` when nothing applies; the
      caller owns the auto-approval-limit fallback.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from decimal import Decimal, InvalidOperation

from expense_engines.tracer import traced_engine
from expense_kernel.domain.approval import (
    COMPLETION_MODE_BY_RULE_TYPE,
    ApprovalRule,
    ApproverSpec,
    ConditionalAction,
    ConditionalRule,
    ConditionType,
    ExpenseCandidate,
    ExpenseStatus,
    RoutingDecision,
    RuleType,
)

# Role recorded on approvers appended by an ``add_approver`` action.
ADDED_APPROVER_ROLE = "conditional"


# =========================================================================
# Matching and selection
# =========================================================================


def rule_matches(rule: ApprovalRule, expense: ExpenseCandidate) -> bool:
    """Check the rule's applicability filters against the expense.

    A rule matches if:
    1. It is active
    2. ``converted_amount >= amount_threshold`` (when the threshold is positive)
    3. category / department / submitted currency are listed (when the lists
       are non-empty)
    """
    if not rule.is_active:
        return False

    conditions = rule.conditions
    if conditions.amount_threshold > 0:
        if expense.converted_amount < conditions.amount_threshold:
            return False
    if conditions.categories and expense.category not in conditions.categories:
        return False
    if conditions.departments and expense.department not in conditions.departments:
        return False
    if conditions.currencies and expense.currency not in conditions.currencies:
        return False

    return True


def _selection_key(rule: ApprovalRule) -> tuple[int, int]:
    return (-rule.priority, rule.rule_id.int)


def ordered_matching_rules(
    expense: ExpenseCandidate,
    rules: Iterable[ApprovalRule],
) -> list[ApprovalRule]:
    """All matching rules, highest priority first, ties by lowest ``rule_id``."""
    return sorted(
        (r for r in rules if rule_matches(r, expense)),
        key=_selection_key,
    )


def select_rule(
    expense: ExpenseCandidate,
    rules: Iterable[ApprovalRule],
) -> ApprovalRule | None:
    """Select the single governing rule, or None if no rule matches."""
    matching = ordered_matching_rules(expense, rules)
    return matching[0] if matching else None


# =========================================================================
# Conditions
# =========================================================================


def _as_decimal(value: str | Decimal) -> Decimal | None:
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def evaluate_condition(rule: ConditionalRule, expense: ExpenseCandidate) -> bool:
    """Evaluate one conditional predicate against the expense."""
    if rule.condition == ConditionType.AMOUNT_GREATER_THAN:
        limit = _as_decimal(rule.value)
        return limit is not None and expense.converted_amount > limit
    if rule.condition == ConditionType.AMOUNT_LESS_THAN:
        limit = _as_decimal(rule.value)
        return limit is not None and expense.converted_amount < limit
    if rule.condition == ConditionType.CATEGORY_EQUALS:
        return expense.category == str(rule.value)
    if rule.condition == ConditionType.DEPARTMENT_EQUALS:
        return expense.department is not None and expense.department == str(rule.value)
    return False


# =========================================================================
# Per-variant derivation
# =========================================================================


def _unique_by_order(approvers: Iterable[ApproverSpec]) -> tuple[ApproverSpec, ...]:
    """Sort by ``order`` and drop repeated approvers (first slot wins)."""
    seen = set()
    result: list[ApproverSpec] = []
    for spec in sorted(approvers, key=lambda a: (a.order, a.approver_id.int)):
        if spec.approver_id in seen:
            continue
        seen.add(spec.approver_id)
        result.append(spec)
    return tuple(result)


def _derive_sequential(rule: ApprovalRule, expense: ExpenseCandidate) -> RoutingDecision:
    return RoutingDecision(
        rule=rule,
        approvers=_unique_by_order(rule.approvers),
        mode=COMPLETION_MODE_BY_RULE_TYPE[rule.rule_type],
        reason=f"Sequential approval by rule '{rule.name}'",
    )


def _derive_percentage(rule: ApprovalRule, expense: ExpenseCandidate) -> RoutingDecision:
    return RoutingDecision(
        rule=rule,
        approvers=_unique_by_order(rule.approvers),
        mode=COMPLETION_MODE_BY_RULE_TYPE[rule.rule_type],
        reason=(
            f"{rule.percentage_rules.min_percentage}% approval by rule '{rule.name}'"
        ),
    )


def _derive_conditional(rule: ApprovalRule, expense: ExpenseCandidate) -> RoutingDecision:
    """Every conditional entry must hold; their actions then run in declared order."""
    mode = COMPLETION_MODE_BY_RULE_TYPE[rule.rule_type]

    for entry in rule.conditional_rules:
        if not evaluate_condition(entry, expense):
            return RoutingDecision(
                rule=rule,
                mode=mode,
                reason=f"Condition {entry.condition.value} not met",
            )

    approvers = list(_unique_by_order(rule.approvers))
    for entry in rule.conditional_rules:
        if entry.action is None:
            continue

        if entry.action == ConditionalAction.AUTO_APPROVE:
            return RoutingDecision(
                rule=rule,
                terminal_status=ExpenseStatus.APPROVED,
                reason=f"Auto-approved: {entry.condition.value} {entry.value}",
            )
        if entry.action == ConditionalAction.AUTO_REJECT:
            return RoutingDecision(
                rule=rule,
                terminal_status=ExpenseStatus.REJECTED,
                reason=f"Auto-rejected: {entry.condition.value} {entry.value}",
            )
        if entry.target_approver_id is None:
            continue
        if entry.action == ConditionalAction.SKIP_APPROVER:
            approvers = [a for a in approvers if a.approver_id != entry.target_approver_id]
        elif entry.action == ConditionalAction.ADD_APPROVER:
            if any(a.approver_id == entry.target_approver_id for a in approvers):
                continue
            next_order = max((a.order for a in approvers), default=0) + 1
            approvers.append(ApproverSpec(
                approver_id=entry.target_approver_id,
                role=ADDED_APPROVER_ROLE,
                order=next_order,
            ))

    return RoutingDecision(
        rule=rule,
        approvers=tuple(approvers),
        mode=mode,
        reason=f"Conditional approval by rule '{rule.name}'",
    )


_DERIVERS: dict[RuleType, Callable[[ApprovalRule, ExpenseCandidate], RoutingDecision]] = {
    RuleType.SEQUENTIAL: _derive_sequential,
    RuleType.PERCENTAGE: _derive_percentage,
    RuleType.CONDITIONAL: _derive_conditional,
    # Hybrid gates like Conditional; its mode carries percentage completion.
    RuleType.HYBRID: _derive_conditional,
}


def derive_approvers(rule: ApprovalRule, expense: ExpenseCandidate) -> RoutingDecision:
    """Derive the routing decision of one rule for the expense."""
    return _DERIVERS[rule.rule_type](rule, expense)


@traced_engine("rule_evaluation", "1.0", fingerprint_fields=("expense", "rules"))
def evaluate_routing(
    expense: ExpenseCandidate,
    rules: Iterable[ApprovalRule],
) -> RoutingDecision:
    """Select the governing rule and derive its routing decision.

    Matching rules are tried in selection order.  A rule that yields
    neither a chain nor a short-circuit (for example every approver was
    skipped, or a conditional entry failed) counts as not matching, and
    the next rule is tried.  Returns ``RoutingDecision(rule=None)`` when none applies.
    """
    for rule in ordered_matching_rules(expense, tuple(rules)):
        decision = derive_approvers(rule, expense)
        if decision.terminal_status is not None or decision.has_chain:
            return decision
    return RoutingDecision(reason="No approval rule applies")
