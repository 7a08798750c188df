"""
Configuration schema (``expense_config.schema``).

Responsibility
--------------
Frozen dataclasses describing the runtime settings of the approval
service.  Parsing lives in ``expense_config.loader``; callers obtain a
``WorkflowSettings`` through ``expense_config.get_active_config()``.

Architecture position
---------------------
**Config layer** -- pure data.  No I/O, no kernel imports.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping

# Units of each currency per 1 USD.
DEFAULT_EXCHANGE_RATES: Mapping[str, Decimal] = MappingProxyType({
    "USD": Decimal("1"),
    "EUR": Decimal("0.85"),
    "GBP": Decimal("0.73"),
    "JPY": Decimal("110"),
    "CAD": Decimal("1.25"),
    "AUD": Decimal("1.35"),
    "CHF": Decimal("0.92"),
    "CNY": Decimal("6.45"),
    "INR": Decimal("75"),
    "BRL": Decimal("5.2"),
    "MXN": Decimal("20"),
    "KRW": Decimal("1180"),
    "SGD": Decimal("1.35"),
    "HKD": Decimal("7.8"),
    "NOK": Decimal("8.5"),
    "SEK": Decimal("8.7"),
    "DKK": Decimal("6.3"),
    "PLN": Decimal("3.9"),
    "ZAR": Decimal("15"),
    "AED": Decimal("3.67"),
})


@dataclass(frozen=True)
class WorkflowSettings:
    """Runtime settings of the approval service."""

    database_url: str = "sqlite:///expense_approval.db"
    log_level: str = "INFO"
    api_roles: tuple[str, ...] = ("admin", "manager")
    max_comment_length: int = 500
    bulk_max_items: int = 100
    default_page_size: int = 10
    max_page_size: int = 100
    transition_retry_limit: int = 3
    exchange_rates: Mapping[str, Decimal] = field(
        default_factory=lambda: DEFAULT_EXCHANGE_RATES,
    )
    rules_file: str | None = None
