"""Read-only selectors returning DTOs."""

from expense_kernel.selectors.approval_selector import (
    ApprovalSelector,
    ApprovalStats,
    MonthlyTrend,
    StatsOverview,
)
from expense_kernel.selectors.base import BaseSelector, Page
from expense_kernel.selectors.expense_selector import ExpenseSelector

__all__ = [
    "ApprovalSelector",
    "ApprovalStats",
    "BaseSelector",
    "ExpenseSelector",
    "MonthlyTrend",
    "Page",
    "StatsOverview",
]
