"""Tests for the structured logging system (expense_kernel/logging_config.py)."""

import json
import logging
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from expense_kernel.domain.approval import ApprovalDecision, ExpenseStatus
from expense_kernel.exceptions import (
    InvalidExpenseStateError,
    NotAuthorizedOrAlreadyActedError,
)
from expense_kernel.logging_config import (
    CONTEXT_FIELDS,
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()


@pytest.fixture
def stream() -> StringIO:
    """Configure the kernel logger to write JSON lines into a buffer."""
    buffer = StringIO()
    handler = logging.StreamHandler(buffer)
    configure_logging(handler=handler, level=logging.DEBUG)
    return buffer


def _records(stream: StringIO) -> list[dict]:
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


controller_log = get_logger("services.workflow_controller")


# ---------------------------------------------------------------------------
# StructuredFormatter
# ---------------------------------------------------------------------------


class TestStructuredFormatter:
    def test_routing_event_envelope(self, stream):
        controller_log.info("expense_routed", extra={"approver_count": 2})

        record = _records(stream)[0]
        assert record["level"] == "INFO"
        assert record["message"] == "expense_routed"
        assert record["logger"] == "expense_kernel.services.workflow_controller"
        assert record["approver_count"] == 2
        assert "ts" in record

    def test_bound_expense_and_company_reach_controller_records(self, stream):
        expense_id, company_id = uuid4(), uuid4()

        with LogContext.bind(expense_id=expense_id, company_id=company_id):
            controller_log.info("approval_action_applied", extra={"attempts": 1})
        controller_log.info("bulk_action_finished")

        inside, outside = _records(stream)
        assert inside["expense_id"] == str(expense_id)
        assert inside["company_id"] == str(company_id)
        assert inside["attempts"] == 1
        assert "expense_id" not in outside
        assert "company_id" not in outside

    def test_domain_values_serialized(self, stream):
        rule_id = uuid4()
        controller_log.info(
            "expense_routed",
            extra={
                "rule_id": rule_id,
                "converted_amount": Decimal("1250.50"),
                "expense_status": ExpenseStatus.PENDING,
                "decision": ApprovalDecision.APPROVE,
                "activated_ids": (rule_id,),
            },
        )

        record = _records(stream)[0]
        assert record["rule_id"] == str(rule_id)
        assert record["converted_amount"] == "1250.50"
        assert record["expense_status"] == ExpenseStatus.PENDING.value
        assert record["decision"] == ApprovalDecision.APPROVE.value
        assert record["activated_ids"] == [str(rule_id)]

    def test_lost_race_error_fields(self, stream):
        expense_id, approver_id = str(uuid4()), str(uuid4())

        try:
            raise NotAuthorizedOrAlreadyActedError(expense_id, approver_id, "entry not pending")
        except NotAuthorizedOrAlreadyActedError:
            controller_log.warning("approval_action_rejected", exc_info=True)

        record = _records(stream)[0]
        assert record["exc_type"] == "NotAuthorizedOrAlreadyActedError"
        assert record["exc_code"] == "NOT_AUTHORIZED_OR_ALREADY_ACTED"
        assert record["exc_expense_id"] == expense_id
        assert record["exc_approver_id"] == approver_id
        assert record["exc_reason"] == "entry not pending"
        assert "already acted" in record["exc_message"]
        assert "traceback" in record

    def test_state_error_fields(self, stream):
        try:
            raise InvalidExpenseStateError("exp-1", "approved", "edit")
        except InvalidExpenseStateError:
            controller_log.error("expense_edit_refused", exc_info=True)

        record = _records(stream)[0]
        assert record["exc_code"] == "INVALID_EXPENSE_STATE"
        assert record["exc_expense_id"] == "exp-1"
        assert record["exc_operation"] == "edit"

    def test_plain_error_has_no_code(self, stream):
        try:
            raise ValueError("bad rate")
        except ValueError:
            controller_log.error("currency_conversion_failed", exc_info=True)

        record = _records(stream)[0]
        assert record["exc_type"] == "ValueError"
        assert "exc_code" not in record

    def test_extra_does_not_override_bound_context(self, stream):
        with LogContext.bind(actor_id="approver-1"):
            controller_log.info("approval_action_applied", extra={"actor_id": "spoofed"})

        assert _records(stream)[0]["actor_id"] == "approver-1"

    def test_formatter_usable_without_configure(self):
        buffer = StringIO()
        handler = logging.StreamHandler(buffer)
        handler.setFormatter(StructuredFormatter())
        record = logging.LogRecord(
            "expense_kernel.jobs.escalation", logging.INFO, __file__, 1,
            "escalation_scan_finished", (), None,
        )
        handler.emit(record)

        assert json.loads(buffer.getvalue())["message"] == "escalation_scan_finished"


# ---------------------------------------------------------------------------
# LogContext
# ---------------------------------------------------------------------------


class TestLogContext:
    def test_set_is_additive(self):
        LogContext.set(correlation_id="req-1")
        LogContext.set(actor_id="u-1")
        assert LogContext.get_all() == {"correlation_id": "req-1", "actor_id": "u-1"}

    def test_none_leaves_field_untouched(self):
        LogContext.set(expense_id="e-1")
        LogContext.set(expense_id=None, company_id="c-1")
        assert LogContext.get_all() == {"expense_id": "e-1", "company_id": "c-1"}

    def test_clear(self):
        LogContext.set(correlation_id="req-1")
        LogContext.clear()
        assert LogContext.get_all() == {}

    def test_bind_restores_previous_values(self):
        LogContext.set(expense_id="outer")
        with LogContext.bind(expense_id="inner", actor_id="a"):
            assert LogContext.get_all() == {"expense_id": "inner", "actor_id": "a"}
        assert LogContext.get_all() == {"expense_id": "outer"}

    def test_bind_restores_after_error(self):
        with pytest.raises(RuntimeError):
            with LogContext.bind(expense_id="e-1"):
                raise RuntimeError("rolled back")
        assert LogContext.get_all() == {}

    def test_every_context_field_bindable(self):
        LogContext.set(**{name: f"{name}-value" for name in CONTEXT_FIELDS})
        assert set(LogContext.get_all()) == set(CONTEXT_FIELDS)

    def test_unknown_field_rejected(self):
        with pytest.raises(TypeError, match="entry_id"):
            LogContext.set(entry_id="x")


# ---------------------------------------------------------------------------
# configure_logging
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_second_call_keeps_first_handler(self):
        first = logging.StreamHandler(StringIO())
        second = logging.StreamHandler(StringIO())

        configure_logging(handler=first)
        configure_logging(handler=second)

        kernel_logger = logging.getLogger("expense_kernel")
        assert first in kernel_logger.handlers
        assert second not in kernel_logger.handlers
        assert isinstance(first.formatter, StructuredFormatter)

    def test_get_logger_namespaced(self):
        assert controller_log.name == "expense_kernel.services.workflow_controller"

    def test_settings_level_name_accepted(self):
        buffer = StringIO()
        configure_logging(handler=logging.StreamHandler(buffer), level="warning")

        get_logger("jobs.escalation").info("escalation_scan_started")
        get_logger("jobs.escalation").warning("escalation_target_missing")

        assert [r["message"] for r in _records(buffer)] == ["escalation_target_missing"]

    def test_reset_drops_handlers(self):
        handler = logging.StreamHandler(StringIO())
        configure_logging(handler=handler)
        reset_logging()
        assert handler not in logging.getLogger("expense_kernel").handlers
