"""
Tests for ApprovalRuleService and rule validation.
"""

from dataclasses import replace
from decimal import Decimal
from uuid import uuid4

import pytest

from expense_kernel.domain.approval import (
    ApprovalRule,
    ApproverSpec,
    ConditionalAction,
    ConditionalRule,
    ConditionType,
    EscalationRules,
    PercentageRules,
    RuleConditions,
    RuleType,
)
from expense_kernel.exceptions import InvalidRuleError, RuleNotFoundError
from expense_kernel.services import validate_rule


def base_rule(company_id, approver_id, **overrides) -> ApprovalRule:
    values = dict(
        rule_id=uuid4(),
        company_id=company_id,
        name="Managers",
        rule_type=RuleType.SEQUENTIAL,
        approvers=(ApproverSpec(approver_id, "manager", 1),),
    )
    values.update(overrides)
    return ApprovalRule(**values)


class TestValidateRule:
    def test_valid_rule_passes(self):
        validate_rule(base_rule(uuid4(), uuid4()))

    @pytest.mark.parametrize(
        "overrides, message",
        [
            ({"name": "  "}, "name is required"),
            ({"approvers": ()}, "at least one approver"),
            ({"percentage_rules": PercentageRules(Decimal("120"))}, "within 0-100"),
            ({"conditions": RuleConditions(amount_threshold=Decimal("-1"))}, "negative"),
            ({"escalation_rules": EscalationRules(True, 0)}, "escalation_hours"),
        ],
    )
    def test_invalid_rules(self, overrides, message):
        with pytest.raises(InvalidRuleError, match=message):
            validate_rule(base_rule(uuid4(), uuid4(), **overrides))

    def test_unknown_role(self):
        rule = base_rule(uuid4(), uuid4(), approvers=(ApproverSpec(uuid4(), "intern", 1),))
        with pytest.raises(InvalidRuleError, match="unknown approver role"):
            validate_rule(rule)

    def test_duplicate_approver(self):
        approver = uuid4()
        rule = base_rule(uuid4(), approver, approvers=(
            ApproverSpec(approver, "manager", 1),
            ApproverSpec(approver, "finance", 2),
        ))
        with pytest.raises(InvalidRuleError, match="more than once"):
            validate_rule(rule)

    def test_sequential_orders_must_be_unique(self):
        rule = base_rule(uuid4(), uuid4(), approvers=(
            ApproverSpec(uuid4(), "manager", 1),
            ApproverSpec(uuid4(), "finance", 1),
        ))
        with pytest.raises(InvalidRuleError, match="order must be unique"):
            validate_rule(rule)

    def test_targeted_action_needs_target(self):
        rule = base_rule(
            uuid4(), uuid4(),
            rule_type=RuleType.CONDITIONAL,
            conditional_rules=(ConditionalRule(
                ConditionType.AMOUNT_GREATER_THAN, Decimal("10"), ConditionalAction.ADD_APPROVER,
            ),),
        )
        with pytest.raises(InvalidRuleError, match="requires a target approver"):
            validate_rule(rule)


class TestApprovalRuleService:
    def test_create_and_get(self, rule_service, company, users):
        rule = base_rule(company.company_id, users["manager"].user_id, priority=4)

        created = rule_service.create_rule(rule, created_by_id=users["admin"].user_id)

        assert created.rule_id == rule.rule_id
        fetched = rule_service.get_rule(rule.rule_id)
        assert fetched.priority == 4
        assert fetched.approvers == rule.approvers

    def test_round_trips_variant_fields(self, rule_service, company, users):
        rule = base_rule(
            company.company_id,
            users["manager"].user_id,
            rule_type=RuleType.HYBRID,
            percentage_rules=PercentageRules(Decimal("75"), require_all=False),
            conditional_rules=(ConditionalRule(
                ConditionType.AMOUNT_GREATER_THAN, Decimal("1000"),
                ConditionalAction.ADD_APPROVER, users["director"].user_id,
            ),),
            escalation_rules=EscalationRules(True, 48, users["admin"].user_id),
            conditions=RuleConditions(categories=("travel",), currencies=("EUR",)),
        )
        stored = rule_service.create_rule(rule)

        assert stored.percentage_rules.min_percentage == Decimal("75")
        assert stored.conditional_rules[0].target_approver_id == users["director"].user_id
        assert stored.escalation_rules.escalate_to == users["admin"].user_id
        assert stored.conditions.categories == ("travel",)

    def test_approver_from_another_company_rejected(
        self, rule_service, directory_service, company, users,
    ):
        other = directory_service.create_company("Other Co")
        outsider = directory_service.create_user(
            other.company_id, "Outsider", "out@other.com", role="manager",
        )
        rule = base_rule(company.company_id, outsider.user_id)

        with pytest.raises(InvalidRuleError, match="not active users of the company"):
            rule_service.create_rule(rule)

    def test_inactive_approver_rejected(self, rule_service, directory_service, company, users):
        directory_service.deactivate_user(users["finance"].user_id)
        rule = base_rule(company.company_id, users["finance"].user_id)
        with pytest.raises(InvalidRuleError):
            rule_service.create_rule(rule)

    def test_deactivate_removes_from_active_list(self, rule_service, company, users):
        keep = rule_service.create_rule(base_rule(company.company_id, users["manager"].user_id))
        drop = rule_service.create_rule(base_rule(
            company.company_id, users["finance"].user_id, name="Finance",
        ))

        deactivated = rule_service.deactivate_rule(drop.rule_id)

        assert not deactivated.is_active
        active = rule_service.list_active_rules(company.company_id)
        assert [r.rule_id for r in active] == [keep.rule_id]

    def test_unknown_rule(self, rule_service):
        with pytest.raises(RuleNotFoundError):
            rule_service.get_rule(uuid4())
        with pytest.raises(RuleNotFoundError):
            rule_service.deactivate_rule(uuid4())

    def test_create_rules_is_all_or_nothing(self, rule_service, company, users):
        good = base_rule(company.company_id, users["manager"].user_id)
        bad = replace(good, rule_id=uuid4(), name="")

        with pytest.raises(InvalidRuleError):
            rule_service.create_rules((good, bad))

        assert rule_service.list_active_rules(company.company_id) == ()

    def test_resolver_maps_email_and_uuid(self, rule_service, company, users):
        resolve = rule_service.resolver(company.company_id)

        assert resolve("Manager@Example.com") == users["manager"].user_id
        assert resolve(str(users["finance"].user_id)) == users["finance"].user_id
        with pytest.raises(InvalidRuleError, match="unknown approver e-mail"):
            resolve("nobody@example.com")
