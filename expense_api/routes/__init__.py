"""HTTP routers."""

from expense_api.routes import approvals, expenses

__all__ = ["approvals", "expenses"]
