"""
Configuration Loader (``expense_config.loader``).

Responsibility
--------------
Loads YAML files and parses them into typed values: ``WorkflowSettings``
for the service and ``ApprovalRule`` DTOs for rule-set fragments.  The
runtime entry point for settings is ``expense_config.get_active_config()``;
rule fragments are persisted through ``import_rules_file``.

Invariants enforced
-------------------
* Parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; required keys have no silent defaults.
* Every parsed object is a frozen dataclass.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Callable
from decimal import Decimal
from pathlib import Path
from typing import Any
from uuid import UUID, uuid4

import yaml

from expense_config.schema import DEFAULT_EXCHANGE_RATES, WorkflowSettings
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

# Maps a user reference from YAML (UUID string or e-mail) to a user id.
UserResolver = Callable[[str], UUID]


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _uuid_resolver(ref: str) -> UUID:
    return UUID(str(ref))


def _str_tuple(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


def parse_settings(data: dict[str, Any]) -> WorkflowSettings:
    """Parse ``WorkflowSettings`` from a dict; absent keys keep their defaults."""
    defaults = WorkflowSettings()
    rates = data.get("exchange_rates")
    exchange_rates = (
        {str(k).upper(): Decimal(str(v)) for k, v in rates.items()}
        if rates
        else DEFAULT_EXCHANGE_RATES
    )
    for code, rate in exchange_rates.items():
        if rate <= 0:
            raise ValueError(f"Exchange rate for {code} must be positive, got {rate}")

    settings = WorkflowSettings(
        database_url=str(data.get("database_url", defaults.database_url)),
        log_level=str(data.get("log_level", defaults.log_level)).upper(),
        api_roles=_str_tuple(data.get("api_roles", defaults.api_roles)),
        max_comment_length=int(data.get("max_comment_length", defaults.max_comment_length)),
        bulk_max_items=int(data.get("bulk_max_items", defaults.bulk_max_items)),
        default_page_size=int(data.get("default_page_size", defaults.default_page_size)),
        max_page_size=int(data.get("max_page_size", defaults.max_page_size)),
        transition_retry_limit=int(
            data.get("transition_retry_limit", defaults.transition_retry_limit)
        ),
        exchange_rates=exchange_rates,
        rules_file=data.get("rules_file"),
    )

    if settings.transition_retry_limit < 1:
        raise ValueError("transition_retry_limit must be at least 1")
    if settings.default_page_size < 1 or settings.max_page_size < settings.default_page_size:
        raise ValueError("Page sizes must satisfy 1 <= default_page_size <= max_page_size")
    if not settings.api_roles:
        raise ValueError("api_roles must name at least one role")
    return settings


def parse_conditional_rule(
    data: dict[str, Any],
    resolve: UserResolver = _uuid_resolver,
) -> ConditionalRule:
    """Parse one conditional entry and its optional action."""
    condition = ConditionType(data["condition"])
    raw = data["value"]
    value: str | Decimal
    if condition in (ConditionType.AMOUNT_GREATER_THAN, ConditionType.AMOUNT_LESS_THAN):
        value = Decimal(str(raw))
    else:
        value = str(raw)
    action = data.get("action")
    target = data.get("target_approver")
    return ConditionalRule(
        condition=condition,
        value=value,
        action=ConditionalAction(action) if action else None,
        target_approver_id=resolve(str(target)) if target else None,
    )


def parse_rule(
    data: dict[str, Any],
    company_id: UUID,
    resolve: UserResolver = _uuid_resolver,
) -> ApprovalRule:
    """
    Parse an ``ApprovalRule`` from a rule-set fragment entry.

    Approvers and conditional targets may be given as UUIDs or as any
    reference ``resolve`` understands (the rule service resolves e-mails).
    """
    conditions = data.get("conditions") or {}
    percentage = data.get("percentage_rules") or {}
    escalation = data.get("escalation_rules") or {}

    approvers = tuple(
        ApproverSpec(
            approver_id=resolve(str(a["approver"])),
            role=str(a["role"]),
            order=int(a.get("order", index + 1)),
            is_required=bool(a.get("is_required", True)),
            can_delegate=bool(a.get("can_delegate", False)),
        )
        for index, a in enumerate(data["approvers"])
    )

    escalate_to = escalation.get("escalate_to")
    return ApprovalRule(
        rule_id=UUID(str(data["id"])) if data.get("id") else uuid4(),
        company_id=company_id,
        name=str(data["name"]),
        description=str(data.get("description", "")),
        rule_type=RuleType(data["rule_type"]),
        is_active=bool(data.get("is_active", True)),
        priority=int(data.get("priority", 0)),
        conditions=RuleConditions(
            amount_threshold=Decimal(str(conditions.get("amount_threshold", 0))),
            categories=_str_tuple(conditions.get("categories")),
            departments=_str_tuple(conditions.get("departments")),
            currencies=tuple(c.upper() for c in _str_tuple(conditions.get("currencies"))),
        ),
        approvers=approvers,
        percentage_rules=PercentageRules(
            min_percentage=Decimal(str(percentage.get("min_percentage", 60))),
            require_all=bool(percentage.get("require_all", False)),
        ),
        conditional_rules=tuple(
            parse_conditional_rule(c, resolve) for c in data.get("conditional_rules") or ()
        ),
        escalation_rules=EscalationRules(
            enabled=bool(escalation.get("enabled", False)),
            escalation_hours=int(escalation.get("escalation_hours", 24)),
            escalate_to=resolve(str(escalate_to)) if escalate_to else None,
        ),
    )


def load_rules_file(
    path: Path,
    company_id: UUID,
    resolve: UserResolver = _uuid_resolver,
) -> tuple[ApprovalRule, ...]:
    """Load a rule-set fragment (``rules: [...]``) for one company."""
    data = load_yaml_file(path)
    return tuple(parse_rule(r, company_id, resolve) for r in data.get("rules") or ())


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def import_rules_file(rule_service: Any, path: Path, company_id: UUID) -> tuple[ApprovalRule, ...]:
    """
    Parse a rule-set fragment and persist it through ``ApprovalRuleService``.

    Approvers may be referenced by e-mail; the service resolves them against
    the company's users.  One invalid rule discards the whole file.
    """
    rules = load_rules_file(path, company_id, rule_service.resolver(company_id))
    return rule_service.create_rules(rules)
