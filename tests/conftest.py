"""
Pytest fixtures for the expense approval test suite.

Provides:
- An in-memory SQLite engine and session per test
- Deterministic clock, in-memory notification sink, currency normalizer
- Company / user / rule factories
- Captured structured logs
"""

import json
import logging
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest
from sqlalchemy.orm import sessionmaker

from expense_config import DEFAULT_EXCHANGE_RATES
from expense_kernel.db.engine import build_engine, create_tables
from expense_kernel.domain.approval import (
    ApprovalRule,
    ApproverSpec,
    ConditionalRule,
    EscalationRules,
    PercentageRules,
    RuleConditions,
    RuleType,
)
from expense_kernel.domain.clock import DeterministicClock
from expense_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from expense_kernel.services import (
    ApprovalRuleService,
    ControllerSettings,
    DirectoryService,
    InMemoryNotificationSink,
    SqlUserDirectory,
    TableCurrencyNormalizer,
    WorkflowController,
)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture expense_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, controller):
            controller.handle_action(...)
            logs = captured_logs()
            assert any(r["message"] == "approval_action_applied" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("expense_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    eng = build_engine("sqlite:///:memory:")
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.rollback()
    s.close()


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def deterministic_clock():
    return DeterministicClock()


@pytest.fixture
def notification_sink():
    return InMemoryNotificationSink()


@pytest.fixture
def normalizer():
    return TableCurrencyNormalizer(DEFAULT_EXCHANGE_RATES)


@pytest.fixture
def directory(session):
    return SqlUserDirectory(session)


@pytest.fixture
def directory_service(session):
    return DirectoryService(session)


@pytest.fixture
def rule_service(session):
    return ApprovalRuleService(session)


@pytest.fixture
def controller_settings():
    return ControllerSettings()


@pytest.fixture
def controller(session, normalizer, notification_sink, deterministic_clock, controller_settings):
    return WorkflowController(
        session,
        normalizer=normalizer,
        notifier=notification_sink,
        clock=deterministic_clock,
        settings=controller_settings,
    )


# =============================================================================
# Company and users
# =============================================================================


@pytest.fixture
def company(directory_service):
    """USD company with the default auto-approval limit of 100."""
    return directory_service.create_company("Acme", base_currency="USD")


@pytest.fixture
def users(directory_service, company):
    """One user per role, keyed by role name, plus a second employee."""
    created = {}
    for role in ("employee", "manager", "finance", "director", "admin"):
        created[role] = directory_service.create_user(
            company.company_id,
            name=role.title(),
            email=f"{role}@example.com",
            role=role,
            department="Sales" if role == "employee" else None,
        )
    created["employee2"] = directory_service.create_user(
        company.company_id,
        name="Second Employee",
        email="employee2@example.com",
        role="employee",
        department="Engineering",
    )
    return created


@pytest.fixture
def make_rule(rule_service, company):
    """Factory creating a persisted rule.

    ``approvers`` is a sequence of ``(user, order)`` pairs or plain users
    (ordered by position).
    """

    def _make(
        approvers,
        rule_type: RuleType = RuleType.SEQUENTIAL,
        name: str | None = None,
        priority: int = 0,
        conditions: RuleConditions | None = None,
        percentage_rules: PercentageRules | None = None,
        conditional_rules: tuple[ConditionalRule, ...] = (),
        escalation_rules: EscalationRules | None = None,
        required: tuple[bool, ...] | None = None,
    ) -> ApprovalRule:
        specs = []
        for index, item in enumerate(approvers):
            user, order = item if isinstance(item, tuple) else (item, index + 1)
            specs.append(ApproverSpec(
                approver_id=user.user_id,
                role=user.role if user.role != "employee" else "manager",
                order=order,
                is_required=required[index] if required else True,
            ))
        rule = ApprovalRule(
            rule_id=uuid4(),
            company_id=company.company_id,
            name=name or f"{rule_type.value} rule",
            rule_type=rule_type,
            approvers=tuple(specs),
            priority=priority,
            conditions=conditions or RuleConditions(),
            percentage_rules=percentage_rules or PercentageRules(),
            conditional_rules=conditional_rules,
            escalation_rules=escalation_rules or EscalationRules(),
        )
        return rule_service.create_rule(rule)

    return _make


@pytest.fixture
def submit(controller, users):
    """Create and route an expense for the default employee."""

    def _submit(amount="150.00", currency="USD", category="travel", employee=None, **kwargs):
        owner = employee or users["employee"]
        return controller.create_expense(
            employee_id=owner.user_id,
            title=kwargs.pop("title", "Client visit"),
            amount=Decimal(str(amount)),
            currency=currency,
            category=category,
            **kwargs,
        )

    return _submit
