"""
Currency normalization (``expense_kernel.services.currency``).

Responsibility:
    Table-driven implementation of the ``CurrencyNormalizer`` contract.
    Rates are expressed as units of each currency per 1 USD; a cross rate
    is ``rates[to] / rates[from]``.  The converted amount is rounded to the
    target currency's minor unit (half-up).

Failure modes:
    - CurrencyConversionError when either currency has no rate.  Expense
      creation fails rather than skipping conversion.
"""

from __future__ import annotations

from collections.abc import Mapping
from decimal import ROUND_HALF_UP, Decimal

from expense_kernel.domain.collaborators import ConversionResult
from expense_kernel.exceptions import CurrencyConversionError
from expense_kernel.logging_config import get_logger

logger = get_logger("services.currency")

# Currencies without a two-digit minor unit.
_MINOR_UNIT_DIGITS: dict[str, int] = {
    "JPY": 0,
    "KRW": 0,
    "HUF": 0,
    "BHD": 3,
    "KWD": 3,
    "OMR": 3,
    "JOD": 3,
}

_RATE_QUANTUM = Decimal("0.000000001")


def minor_unit_quantum(currency: str) -> Decimal:
    digits = _MINOR_UNIT_DIGITS.get(currency, 2)
    return Decimal(1).scaleb(-digits)


class TableCurrencyNormalizer:
    """Converts amounts using a static per-USD rate table."""

    def __init__(self, rates: Mapping[str, Decimal]):
        self._rates = {code.upper(): Decimal(rate) for code, rate in rates.items()}

    @property
    def supported_currencies(self) -> tuple[str, ...]:
        return tuple(sorted(self._rates))

    def _rate_for(self, code: str, from_currency: str, to_currency: str) -> Decimal:
        rate = self._rates.get(code)
        if rate is None:
            raise CurrencyConversionError(
                from_currency, to_currency, f"no exchange rate for {code}",
            )
        return rate

    def convert(
        self, amount: Decimal, from_currency: str, to_currency: str,
    ) -> ConversionResult:
        source = from_currency.upper()
        target = to_currency.upper()
        quantum = minor_unit_quantum(target)

        if source == target:
            rate = Decimal("1")
        else:
            rate = (
                self._rate_for(target, source, target)
                / self._rate_for(source, source, target)
            ).quantize(_RATE_QUANTUM, rounding=ROUND_HALF_UP)

        converted = (Decimal(amount) * rate).quantize(quantum, rounding=ROUND_HALF_UP)

        logger.debug(
            "currency_converted",
            extra={
                "from_currency": source,
                "to_currency": target,
                "rate": str(rate),
                "amount": str(amount),
                "converted_amount": str(converted),
            },
        )
        return ConversionResult(
            converted_amount=converted,
            rate=rate,
            from_currency=source,
            to_currency=target,
        )
