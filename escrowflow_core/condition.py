"""
Condition Codec — PREIMAGE-SHA-256 crypto-conditions.

A conditional escrow publishes a *condition* (a one-way commitment to a
32-byte secret) and is released by submitting the matching *fulfillment*.
The encoding is the DER form of the crypto-conditions PREIMAGE-SHA-256
type, which is what the ledger re-derives when it checks a fulfillment:

    condition   = A0 25 | 80 20 <sha256(preimage)> | 81 01 <cost>   (39 bytes)
    fulfillment = A0 22 | 80 20 <preimage>                          (36 bytes)

``cost`` is the preimage length (32). Conditions with any other tag, length
or cost are rejected as malformed rather than coerced.

The preimage is held only by the releasing party; ``condition`` alone is
safe to publish.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from typing import Union

from escrowflow_core.errors import (
    InvalidFulfillment,
    InvalidSecretLength,
    MalformedCondition,
    ValidationError,
)
from escrowflow_core.validation import normalize_hex

PREIMAGE_LENGTH = 32

# DER tags
_PREIMAGE_SHA256_TAG = 0xA0     # [0] constructed, PREIMAGE-SHA-256
_FINGERPRINT_TAG = 0x80         # [0] primitive: fingerprint or preimage
_COST_TAG = 0x81                # [1] primitive: cost

CONDITION_LENGTH = 39
FULFILLMENT_LENGTH = 36

_CONDITION_PREFIX = bytes([_PREIMAGE_SHA256_TAG, 0x25, _FINGERPRINT_TAG, 0x20])
_CONDITION_SUFFIX = bytes([_COST_TAG, 0x01, PREIMAGE_LENGTH])
_FULFILLMENT_PREFIX = bytes([_PREIMAGE_SHA256_TAG, 0x22, _FINGERPRINT_TAG, 0x20])

Secret = Union[bytes, str]


def _secret_bytes(secret: Secret) -> bytes:
    if isinstance(secret, str):
        secret = bytes.fromhex(normalize_hex(secret, "secret"))
    if not isinstance(secret, (bytes, bytearray)):
        raise ValidationError("secret must be bytes or a hex string", field="secret")
    if len(secret) != PREIMAGE_LENGTH:
        raise InvalidSecretLength(
            f"secret must be exactly {PREIMAGE_LENGTH} bytes, got {len(secret)}",
            expected=PREIMAGE_LENGTH, actual=len(secret),
        )
    return bytes(secret)


def generate_secret() -> bytes:
    """32 bytes from the operating system's CSPRNG."""
    return secrets.token_bytes(PREIMAGE_LENGTH)


def commit(secret: Secret) -> str:
    """Derive the hex condition for *secret*."""
    fingerprint = hashlib.sha256(_secret_bytes(secret)).digest()
    return (_CONDITION_PREFIX + fingerprint + _CONDITION_SUFFIX).hex().upper()


def build_fulfillment(secret: Secret) -> str:
    """Serialize *secret* into the hex fulfillment submitted on finish."""
    return (_FULFILLMENT_PREFIX + _secret_bytes(secret)).hex().upper()


def parse_condition(condition: str) -> bytes:
    """
    Structurally validate a hex condition and return its 32-byte fingerprint.

    Raises ``MalformedCondition`` on bad hex, wrong length or wrong tags.
    """
    try:
        raw = bytes.fromhex(normalize_hex(condition, "condition"))
    except ValidationError:
        raise MalformedCondition("condition must be a valid hex string", field="condition")
    if len(raw) != CONDITION_LENGTH:
        raise MalformedCondition(
            f"condition must be {CONDITION_LENGTH} bytes "
            f"({CONDITION_LENGTH * 2} hex chars), got {len(raw)}",
            field="condition", expected=CONDITION_LENGTH, actual=len(raw),
        )
    if raw[:4] != _CONDITION_PREFIX or raw[-3:] != _CONDITION_SUFFIX:
        raise MalformedCondition(
            "condition is not a PREIMAGE-SHA-256 condition (unexpected tag bytes)",
            field="condition",
        )
    return raw[4:36]


def parse_fulfillment(fulfillment: str) -> bytes:
    """
    Return the preimage carried by *fulfillment*.

    Accepts the DER fulfillment or, for convenience, the bare 32-byte
    preimage in hex.
    """
    try:
        raw = bytes.fromhex(normalize_hex(fulfillment, "fulfillment"))
    except ValidationError:
        raise InvalidFulfillment("fulfillment must be a valid hex string", field="fulfillment")
    if len(raw) == PREIMAGE_LENGTH:
        return raw
    if len(raw) == FULFILLMENT_LENGTH and raw[:4] == _FULFILLMENT_PREFIX:
        return raw[4:]
    raise InvalidFulfillment(
        f"fulfillment must be a {FULFILLMENT_LENGTH}-byte PREIMAGE-SHA-256 "
        f"fulfillment or a {PREIMAGE_LENGTH}-byte preimage",
        field="fulfillment", actual=len(raw),
    )


def condition_from_fulfillment(fulfillment: str) -> str:
    """Re-derive the condition a fulfillment satisfies, as the ledger does."""
    return commit(parse_fulfillment(fulfillment))


def verify(secret: Secret, condition: str) -> bool:
    """
    True when ``commit(secret)`` equals *condition*.

    Malformed input of either kind yields False; the digest comparison is
    constant-time.
    """
    try:
        fingerprint = parse_condition(condition)
        preimage = _secret_bytes(secret)
    except ValidationError:
        return False
    return hmac.compare_digest(hashlib.sha256(preimage).digest(), fingerprint)


def verify_fulfillment(fulfillment: str, condition: str) -> bool:
    try:
        preimage = parse_fulfillment(fulfillment)
    except InvalidFulfillment:
        return False
    return verify(preimage, condition)


@dataclass(frozen=True)
class ConditionPair:
    """A secret together with its condition and fulfillment, all hex."""
    preimage: str
    condition: str
    fulfillment: str

    @classmethod
    def generate(cls) -> ConditionPair:
        return cls.from_preimage(generate_secret())

    @classmethod
    def from_preimage(cls, preimage: Secret) -> ConditionPair:
        raw = _secret_bytes(preimage)
        return cls(
            preimage=raw.hex().upper(),
            condition=commit(raw),
            fulfillment=build_fulfillment(raw),
        )

    def to_dict(self, include_secret: bool = True) -> dict:
        d = {"condition": self.condition}
        if include_secret:
            d["preimage"] = self.preimage
            d["fulfillment"] = self.fulfillment
        return d

    def __repr__(self) -> str:
        return f"ConditionPair(condition={self.condition[:16]}...)"
