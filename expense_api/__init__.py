"""HTTP surface of the expense approval workflow (FastAPI)."""

from expense_api.app import create_app

__all__ = ["create_app"]
