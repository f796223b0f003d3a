"""Cent-level money helpers shared by documents and payments."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable


def money(value) -> float:
    """Round to cents, half-up."""
    if value is None:
        return 0.0
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def total(values: Iterable) -> float:
    return money(sum(Decimal(str(v or 0)) for v in values))


def cents(value) -> int:
    return int(Decimal(str(money(value))) * 100)


def fmt(value) -> str:
    return f"${money(value):,.2f}"
