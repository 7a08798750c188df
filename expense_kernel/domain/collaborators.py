"""
Collaborator contracts consumed by the workflow controller.

Responsibility:
    Declares the narrow interfaces the controller depends on (user lookup,
    currency normalization, notification delivery) together with the small
    value objects that cross them.  Concrete implementations live in
    ``expense_kernel.services``; tests substitute in-memory doubles.

Architecture position:
    Kernel > Domain -- pure contracts, ZERO I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol
from uuid import UUID


@dataclass(frozen=True)
class UserRef:
    """Directory view of a user."""

    user_id: UUID
    company_id: UUID
    name: str
    email: str
    role: str
    is_active: bool = True
    department: str | None = None
    manager_id: UUID | None = None


@dataclass(frozen=True)
class CompanySettings:
    """Per-company workflow settings."""

    company_id: UUID
    base_currency: str = "USD"
    auto_approval_limit: Decimal = Decimal("100")
    default_approver_id: UUID | None = None


@dataclass(frozen=True)
class ConversionResult:
    """Result of a currency normalization."""

    converted_amount: Decimal
    rate: Decimal
    from_currency: str
    to_currency: str


# =========================================================================
# Protocols
# =========================================================================


class UserDirectory(Protocol):
    """Lookup of users and their roles."""

    def get_user(self, user_id: UUID) -> UserRef | None:
        """Return the user or None when unknown."""
        ...

    def list_company_users(
        self, company_id: UUID, role: str | None = None,
    ) -> tuple[UserRef, ...]:
        """Return active users of a company, optionally filtered by role."""
        ...


class CurrencyNormalizer(Protocol):
    """Converts submitted amounts into a company's base currency."""

    def convert(
        self, amount: Decimal, from_currency: str, to_currency: str,
    ) -> ConversionResult:
        """
        Convert ``amount``.

        Raises:
            CurrencyConversionError: no rate is available.
        """
        ...


class NotificationSink(Protocol):
    """Fire-and-forget delivery boundary.  Callers never retry."""

    def emit(self, user_id: UUID, event_type: str, payload: dict[str, Any]) -> None:
        ...
