"""
Module: expense_kernel.models.approval_rule
Responsibility: ORM persistence for approval rules and their approver slots.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Valid rule types: DB check constraint on ``rule_type``.
    - Percentage bounds: ``0 <= min_percentage <= 100`` (check constraint).
    - Approver uniqueness: UNIQUE(rule_id, approver_id).
    - Rules are never physically deleted; deactivation clears ``is_active``.

Storage notes:
    Applicability lists and conditional rules are JSON columns; conditional
    values are stored as strings and re-typed per condition on load.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from expense_kernel.db.base import Base, TimestampedBase, UUIDString
from expense_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from expense_kernel.domain.approval import ApprovalRule, ConditionalRule


AMOUNT_CONDITIONS = frozenset({"amount_greater_than", "amount_less_than"})


def conditional_rule_to_json(rule: ConditionalRule) -> dict[str, Any]:
    return {
        "condition": rule.condition.value,
        "value": str(rule.value),
        "action": rule.action.value if rule.action is not None else None,
        "target_approver_id": (
            str(rule.target_approver_id) if rule.target_approver_id else None
        ),
    }


def conditional_rule_from_json(data: dict[str, Any]) -> ConditionalRule:
    from expense_kernel.domain.approval import (
        ConditionalAction,
        ConditionalRule,
        ConditionType,
    )

    condition = ConditionType(data["condition"])
    raw_value = data["value"]
    value: str | Decimal = (
        Decimal(str(raw_value)) if condition.value in AMOUNT_CONDITIONS else str(raw_value)
    )
    action = data.get("action")
    target = data.get("target_approver_id")
    return ConditionalRule(
        condition=condition,
        value=value,
        action=ConditionalAction(action) if action else None,
        target_approver_id=UUID(str(target)) if target else None,
    )


class ApprovalRuleModel(TimestampedBase):
    """Persistent approval rule (tagged by ``rule_type``)."""

    __tablename__ = "approval_rules"

    __table_args__ = (
        CheckConstraint(
            "rule_type IN ('sequential', 'percentage', 'conditional', 'hybrid')",
            name="ck_approval_rules_valid_type",
        ),
        CheckConstraint(
            "min_percentage >= 0 AND min_percentage <= 100",
            name="ck_approval_rules_percentage_bounds",
        ),
        CheckConstraint(
            "escalation_hours >= 1",
            name="ck_approval_rules_escalation_hours",
        ),
        Index("ix_approval_rules_company_active", "company_id", "is_active", "priority"),
    )

    company_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("companies.id"), nullable=False,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    rule_type: Mapped[str] = mapped_column(String(20), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Applicability filters
    amount_threshold: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), nullable=False, default=Decimal("0"),
    )
    categories: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    departments: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    currencies: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    # Percentage / Hybrid
    min_percentage: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), nullable=False, default=Decimal("60"),
    )
    require_all: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Conditional / Hybrid
    conditional_rules: Mapped[list[dict]] = mapped_column(
        JSON, nullable=False, default=list,
    )

    # Escalation policy
    escalation_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    escalation_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=24)
    escalate_to_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    created_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    approvers: Mapped[list["ApprovalRuleApproverModel"]] = relationship(
        "ApprovalRuleApproverModel",
        back_populates="rule",
        order_by="ApprovalRuleApproverModel.step_order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalRule {self.name} type={self.rule_type} "
            f"priority={self.priority} active={self.is_active}>"
        )

    def to_dto(self) -> ApprovalRule:
        """Convert ORM model to frozen domain DTO."""
        from expense_kernel.domain.approval import (
            ApprovalRule as ApprovalRuleDTO,
            ApproverSpec,
            EscalationRules,
            PercentageRules,
            RuleConditions,
            RuleType,
        )

        return ApprovalRuleDTO(
            rule_id=self.id,
            company_id=self.company_id,
            name=self.name,
            description=self.description,
            rule_type=RuleType(self.rule_type),
            is_active=self.is_active,
            priority=self.priority,
            conditions=RuleConditions(
                amount_threshold=Decimal(self.amount_threshold),
                categories=tuple(self.categories or ()),
                departments=tuple(self.departments or ()),
                currencies=tuple(self.currencies or ()),
            ),
            approvers=tuple(
                ApproverSpec(
                    approver_id=a.approver_id,
                    role=a.role,
                    order=a.step_order,
                    is_required=a.is_required,
                    can_delegate=a.can_delegate,
                )
                for a in self.approvers
            ),
            percentage_rules=PercentageRules(
                min_percentage=Decimal(self.min_percentage),
                require_all=self.require_all,
            ),
            conditional_rules=tuple(
                conditional_rule_from_json(c) for c in (self.conditional_rules or ())
            ),
            escalation_rules=EscalationRules(
                enabled=self.escalation_enabled,
                escalation_hours=self.escalation_hours,
                escalate_to=self.escalate_to_id,
            ),
        )

    @classmethod
    def from_dto(cls, dto: ApprovalRule, created_by_id: UUID | None = None) -> ApprovalRuleModel:
        """Create ORM model (with approver rows) from domain DTO."""
        model = cls(
            id=dto.rule_id,
            company_id=dto.company_id,
            name=dto.name,
            description=dto.description,
            rule_type=dto.rule_type.value,
            is_active=dto.is_active,
            priority=dto.priority,
            amount_threshold=dto.conditions.amount_threshold,
            categories=list(dto.conditions.categories),
            departments=list(dto.conditions.departments),
            currencies=list(dto.conditions.currencies),
            min_percentage=dto.percentage_rules.min_percentage,
            require_all=dto.percentage_rules.require_all,
            conditional_rules=[conditional_rule_to_json(c) for c in dto.conditional_rules],
            escalation_enabled=dto.escalation_rules.enabled,
            escalation_hours=dto.escalation_rules.escalation_hours,
            escalate_to_id=dto.escalation_rules.escalate_to,
            created_by_id=created_by_id,
        )
        model.approvers = [
            ApprovalRuleApproverModel(
                approver_id=a.approver_id,
                role=a.role,
                step_order=a.order,
                is_required=a.is_required,
                can_delegate=a.can_delegate,
            )
            for a in dto.approvers
        ]
        return model


class ApprovalRuleApproverModel(Base):
    """One approver slot of a rule."""

    __tablename__ = "approval_rule_approvers"

    __table_args__ = (
        UniqueConstraint("rule_id", "approver_id", name="uq_rule_approver"),
        CheckConstraint(
            "role IN ('manager', 'finance', 'director', 'admin')",
            name="ck_rule_approvers_valid_role",
        ),
    )

    rule_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_rules.id"), nullable=False,
    )
    approver_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    is_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    can_delegate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    rule: Mapped[ApprovalRuleModel] = relationship(
        "ApprovalRuleModel", back_populates="approvers",
    )


# =============================================================================
# ORM-Level Protection
# =============================================================================
# Rules are deactivated, never deleted: routed expenses reference them.
# =============================================================================


@event.listens_for(ApprovalRuleModel, "before_delete")
def prevent_rule_delete(mapper, connection, target):
    """Prevent deletion of approval rules."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalRule",
        entity_id=str(target.id),
        reason="Approval rules cannot be deleted -- deactivate instead",
    )
