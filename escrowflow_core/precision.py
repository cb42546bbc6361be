"""
Precision constants and helpers for the ledger's base asset.

Amounts on the ledger are integer *drops*:

    1 XRP = 1,000,000 drops (smallest indivisible unit)

Human-facing values are converted with ``Decimal`` so that inputs such as
``"0.1"`` map to exactly 100000 drops.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from escrowflow_core.errors import InvalidAmount

# Number of decimal places of the base asset.
XRP_DECIMALS: int = 6

# Smallest representable unit: 1 drop = 0.000001 XRP.
DROPS_PER_XRP: int = 10 ** XRP_DECIMALS  # 1_000_000

# Smallest amount an escrow may lock.
MIN_XRP_AMOUNT: Decimal = Decimal(1) / DROPS_PER_XRP


def _to_decimal(value: Any, name: str) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise InvalidAmount(f"{name} must be a number", field=name, value=value)
    try:
        d = Decimal(str(value).strip()) if not isinstance(value, Decimal) else value
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f"{name} must be a number", field=name, value=value)
    if not d.is_finite():
        raise InvalidAmount(f"{name} must be a finite number", field=name, value=value)
    return d


def xrp_to_drops(value: Any, name: str = "amount") -> int:
    """
    Convert a human amount to integer drops.

    Raises ``InvalidAmount`` for non-numeric, negative or sub-drop input;
    nothing is rounded silently.

    >>> xrp_to_drops("10")
    10000000
    >>> xrp_to_drops(0.000001)
    1
    """
    d = _to_decimal(value, name)
    if d < 0:
        raise InvalidAmount(f"{name} must not be negative", field=name, value=value)
    drops = d * DROPS_PER_XRP
    if drops != drops.to_integral_value():
        raise InvalidAmount(
            f"{name} has more than {XRP_DECIMALS} decimal places",
            field=name, value=value,
        )
    return int(drops)


def drops_to_xrp(drops: int) -> Decimal:
    """Convert an integer drop count to a ``Decimal`` XRP value."""
    return Decimal(int(drops)) / DROPS_PER_XRP


def format_amount(drops: int, currency: str = "XRP") -> str:
    """Return a human-readable string with 6 decimal places."""
    return f"{drops_to_xrp(drops):.{XRP_DECIMALS}f} {currency}"
