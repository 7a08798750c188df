"""
Expense Kernel - approval workflow core

Routes submitted expenses through rule-derived approval chains with:
- Deterministic rule selection
- Atomic, race-safe approver transitions
- Currency normalization at creation
- Post-commit notifications
"""

__version__ = "0.1.0"
