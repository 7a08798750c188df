"""
Kernel services -- the imperative shell around the pure engines.

Services flush and never commit; callers own the transaction.
"""

from expense_kernel.services.chain_writer import ChainWriter
from expense_kernel.services.currency import TableCurrencyNormalizer, minor_unit_quantum
from expense_kernel.services.directory import DirectoryService, SqlUserDirectory
from expense_kernel.services.expense_service import ExpenseService
from expense_kernel.services.notifications import (
    InMemoryNotificationSink,
    SqlNotificationSink,
    deliver,
)
from expense_kernel.services.rule_service import ApprovalRuleService, validate_rule
from expense_kernel.services.workflow_controller import (
    BulkActionResult,
    BulkItemError,
    BulkItemResult,
    ControllerSettings,
    EscalationReport,
    WorkflowController,
    parse_decision,
)

__all__ = [
    "ApprovalRuleService",
    "BulkActionResult",
    "BulkItemError",
    "BulkItemResult",
    "ChainWriter",
    "ControllerSettings",
    "DirectoryService",
    "EscalationReport",
    "ExpenseService",
    "InMemoryNotificationSink",
    "SqlNotificationSink",
    "SqlUserDirectory",
    "TableCurrencyNormalizer",
    "WorkflowController",
    "deliver",
    "minor_unit_quantum",
    "parse_decision",
]
