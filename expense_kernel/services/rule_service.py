"""
expense_kernel.services.rule_service -- Approval rule management.

Responsibility:
    Validates and persists approval rules, deactivates them, lists the
    active rule set of a company.  YAML rule-set fragments are parsed in
    ``expense_config`` and persisted here through ``create_rules``.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.

Invariants enforced:
    - approvers non-empty; ``order`` unique within a Sequential rule.
    - ``0 <= min_percentage <= 100``; ``escalation_hours >= 1``.
    - skip/add conditional actions name a target approver.
    - every approver (and escalation target) is an active user of the
      rule's company.

Failure modes:
    - InvalidRuleError on any violated invariant.
    - RuleNotFoundError on unknown rule ids.
"""

from __future__ import annotations

from collections.abc import Callable
from uuid import UUID

from sqlalchemy import select

from expense_kernel.domain.approval import (
    APPROVER_ROLES,
    ApprovalRule,
    ConditionalAction,
    RuleType,
)
from expense_kernel.exceptions import InvalidRuleError, RuleNotFoundError
from expense_kernel.logging_config import get_logger
from expense_kernel.models.approval_rule import ApprovalRuleModel
from expense_kernel.models.company import UserModel
from expense_kernel.services.base import BaseService

logger = get_logger("services.rules")

_TARGETED_ACTIONS = frozenset({
    ConditionalAction.SKIP_APPROVER,
    ConditionalAction.ADD_APPROVER,
})


def validate_rule(rule: ApprovalRule) -> None:
    """Check the structural invariants of a rule.

    Raises:
        InvalidRuleError: describing the first violation found.
    """
    if not rule.name.strip():
        raise InvalidRuleError(rule.name, "name is required")
    if not rule.approvers:
        raise InvalidRuleError(rule.name, "at least one approver is required")

    for spec in rule.approvers:
        if spec.role not in APPROVER_ROLES:
            raise InvalidRuleError(rule.name, f"unknown approver role {spec.role!r}")

    ids = [a.approver_id for a in rule.approvers]
    if len(set(ids)) != len(ids):
        raise InvalidRuleError(rule.name, "an approver is listed more than once")

    if rule.rule_type == RuleType.SEQUENTIAL:
        orders = [a.order for a in rule.approvers]
        if len(set(orders)) != len(orders):
            raise InvalidRuleError(rule.name, "approver order must be unique")

    min_percentage = rule.percentage_rules.min_percentage
    if not 0 <= min_percentage <= 100:
        raise InvalidRuleError(
            rule.name, f"min_percentage must be within 0-100, got {min_percentage}",
        )

    if rule.conditions.amount_threshold < 0:
        raise InvalidRuleError(rule.name, "amount_threshold must not be negative")

    for condition in rule.conditional_rules:
        if condition.action in _TARGETED_ACTIONS and condition.target_approver_id is None:
            raise InvalidRuleError(
                rule.name, f"{condition.action.value} requires a target approver",
            )

    if rule.escalation_rules.escalation_hours < 1:
        raise InvalidRuleError(rule.name, "escalation_hours must be at least 1")


class ApprovalRuleService(BaseService):
    """Creates, deactivates and lists approval rules."""

    def _referenced_user_ids(self, rule: ApprovalRule) -> set[UUID]:
        ids = {a.approver_id for a in rule.approvers}
        ids.update(
            c.target_approver_id for c in rule.conditional_rules
            if c.target_approver_id is not None
        )
        if rule.escalation_rules.escalate_to is not None:
            ids.add(rule.escalation_rules.escalate_to)
        return ids

    def _check_company_users(self, rule: ApprovalRule) -> None:
        wanted = self._referenced_user_ids(rule)
        found = set(self.session.execute(
            select(UserModel.id).where(
                UserModel.id.in_(wanted),
                UserModel.company_id == rule.company_id,
                UserModel.is_active.is_(True),
            )
        ).scalars())
        missing = wanted - found
        if missing:
            raise InvalidRuleError(
                rule.name,
                "not active users of the company: "
                + ", ".join(sorted(str(m) for m in missing)),
            )

    def create_rule(self, rule: ApprovalRule, created_by_id: UUID | None = None) -> ApprovalRule:
        """Validate and persist a rule."""
        validate_rule(rule)
        self._check_company_users(rule)

        model = ApprovalRuleModel.from_dto(rule, created_by_id=created_by_id)
        self.session.add(model)
        self.session.flush()

        logger.info(
            "approval_rule_created",
            extra={
                "rule_id": str(model.id),
                "company_id": str(rule.company_id),
                "rule_type": rule.rule_type.value,
                "priority": rule.priority,
                "approver_count": len(rule.approvers),
            },
        )
        return model.to_dto()

    def deactivate_rule(self, rule_id: UUID) -> ApprovalRule:
        """Deactivate a rule.  In-flight expenses keep their routing snapshot."""
        model = self.session.get(ApprovalRuleModel, rule_id)
        if model is None:
            raise RuleNotFoundError(str(rule_id))
        model.is_active = False
        self.session.flush()
        logger.info("approval_rule_deactivated", extra={"rule_id": str(rule_id)})
        return model.to_dto()

    def get_rule(self, rule_id: UUID) -> ApprovalRule:
        model = self.session.get(ApprovalRuleModel, rule_id)
        if model is None:
            raise RuleNotFoundError(str(rule_id))
        return model.to_dto()

    def list_active_rules(self, company_id: UUID) -> tuple[ApprovalRule, ...]:
        """Active rules of a company; evaluation order is decided by the engine."""
        models = self.session.execute(
            select(ApprovalRuleModel).where(
                ApprovalRuleModel.company_id == company_id,
                ApprovalRuleModel.is_active.is_(True),
            )
        ).scalars()
        return tuple(m.to_dto() for m in models)

    def create_rules(self, rules: tuple[ApprovalRule, ...]) -> tuple[ApprovalRule, ...]:
        """Persist a batch of rules; one invalid rule discards the whole batch."""
        with self.session.begin_nested():
            created = tuple(self.create_rule(rule) for rule in rules)
        logger.info("approval_rules_imported", extra={"count": len(created)})
        return created

    def resolver(self, company_id: UUID) -> Callable[[str], UUID]:
        """Map a UUID string or a company user's e-mail to a user id."""

        def resolve(ref: str) -> UUID:
            if "@" not in ref:
                return UUID(ref)
            user_id = self.session.execute(
                select(UserModel.id).where(
                    UserModel.email == ref.lower(),
                    UserModel.company_id == company_id,
                )
            ).scalar_one_or_none()
            if user_id is None:
                raise InvalidRuleError(ref, "unknown approver e-mail")
            return user_id

        return resolve
