"""
Input validation helpers shared by the orchestrator, the gate and the API.

All checks are local (addresses are decoded with their base58 checksum):
nothing here touches the network.
"""

from __future__ import annotations

import re
from typing import Any

from xrpl.core.addresscodec import is_valid_classic_address

from escrowflow_core.errors import InvalidAddress, InvalidSequence, ValidationError

_HEX_RE = re.compile(r"^[0-9A-Fa-f]*$")

# Zero-width and control characters that sneak in via copy/paste.
_INVISIBLE_RE = re.compile(r"[\u200B-\u200D\uFEFF\u00A0\x00-\x1F\x7F-\x9F]")


def is_valid_address(address: Any) -> bool:
    if not isinstance(address, str):
        return False
    return is_valid_classic_address(address.strip())


def require_address(address: Any, name: str = "address") -> str:
    """Return the stripped address or raise ``InvalidAddress``."""
    if not is_valid_address(address):
        raise InvalidAddress(f"Invalid ledger address format: {address!r}",
                             field=name, value=address)
    return address.strip()


def require_sequence(value: Any, name: str = "sequence") -> int:
    """Escrow sequence numbers are positive integers (int or digit string)."""
    if isinstance(value, bool):
        raise InvalidSequence(f"{name} must be a positive integer", field=name, value=value)
    if isinstance(value, int):
        seq = value
    elif isinstance(value, str) and value.strip().isdigit():
        seq = int(value.strip())
    elif isinstance(value, float) and value.is_integer():
        seq = int(value)
    else:
        raise InvalidSequence(f"{name} must be a positive integer, got {value!r}",
                              field=name, value=value)
    if seq <= 0:
        raise InvalidSequence(f"{name} must be a positive integer, got {value!r}",
                              field=name, value=value)
    return seq


def normalize_hex(value: Any, name: str = "value") -> str:
    """
    Strip whitespace and invisible characters, uppercase, and check the
    result is non-empty hex of even length.
    """
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a hex string", field=name)
    cleaned = _INVISIBLE_RE.sub("", re.sub(r"\s+", "", value)).upper()
    if not cleaned or not _HEX_RE.match(cleaned) or len(cleaned) % 2:
        raise ValidationError(f"{name} must be a valid hex string", field=name)
    return cleaned


def normalize_seed(seed: Any) -> Any:
    """Remove whitespace and invisible characters from a family seed."""
    if not isinstance(seed, str):
        return seed
    return _INVISIBLE_RE.sub("", re.sub(r"\s+", "", seed))
