"""
Time Authority — wall-clock (Unix) ↔ ledger-epoch conversion.

The ledger counts seconds from 2000-01-01T00:00:00Z; Unix time counts from
1970-01-01T00:00:00Z. The two differ by a fixed offset, so conversion is
plain integer arithmetic with no calendar logic.

Business policy (e.g. the minimum lead time for ``finish_after``) lives in
the orchestrator; this module only exposes the constant.
"""

from __future__ import annotations

import math
import time
from datetime import datetime, timezone
from typing import Any

from escrowflow_core.errors import InvalidTimestamp

# Seconds between the Unix epoch and the ledger epoch (2000-01-01).
LEDGER_EPOCH_OFFSET: int = 946_684_800

# A new escrow's finish_after must be at least this far in the future.
MIN_FINISH_LEAD_SECONDS: int = 60


def coerce_unix(value: Any, name: str = "timestamp") -> int:
    """
    Validate *value* as a positive, finite number of seconds and floor it.

    Accepts ints, floats and numeric strings (request bodies often carry
    strings). Booleans are rejected.
    """
    if isinstance(value, bool) or value is None:
        raise InvalidTimestamp(f"{name} must be a number", field=name, value=value)
    try:
        f = float(value)
    except (TypeError, ValueError):
        raise InvalidTimestamp(f"{name} must be a valid number", field=name, value=value)
    if math.isnan(f) or math.isinf(f):
        raise InvalidTimestamp(f"{name} must be a finite number", field=name, value=value)
    if f <= 0:
        raise InvalidTimestamp(f"{name} must be a positive timestamp", field=name, value=value)
    return int(math.floor(f))


def to_ledger_epoch(unix_seconds: Any) -> int:
    """Convert Unix seconds to ledger-epoch seconds."""
    u = coerce_unix(unix_seconds, "unix_seconds")
    ledger = u - LEDGER_EPOCH_OFFSET
    if ledger < 0:
        raise InvalidTimestamp(
            "timestamp predates the ledger epoch (2000-01-01T00:00:00Z)",
            field="unix_seconds", value=unix_seconds,
        )
    return ledger


def to_unix(ledger_seconds: Any) -> int:
    """Convert ledger-epoch seconds to Unix seconds."""
    return coerce_unix(ledger_seconds, "ledger_seconds") + LEDGER_EPOCH_OFFSET


def now_unix(now: float | None = None) -> int:
    """Current Unix time in whole seconds (or *now*, floored, when given)."""
    return int(math.floor(time.time() if now is None else now))


def isoformat(unix_seconds: int) -> str:
    """UTC ISO-8601 rendering used in error messages."""
    return datetime.fromtimestamp(unix_seconds, tz=timezone.utc).isoformat()
