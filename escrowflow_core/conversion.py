"""
Conversion Adapter — best-effort swap of released XRP into a stable asset.

Runs after a Gate-triggered finish, as a linear sequence of awaited steps:

  1. ``ensure_trustline``   – TrustSet for the stable asset if the
                              beneficiary has no line to the issuer yet
  2. ``spendable_ceiling``  – balance minus reserves minus a buffer,
                              capped at the amount just released
  3. ``swap``               – partial Payment to self, paying at most the
                              ceiling in XRP for up to a large stable amount

Every step returns a ``StepResult``. Failures stop the sequence and are
reported in the ``ConversionResult``; nothing here raises, and nothing
here can undo the finish that preceded it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from escrowflow_core.errors import EscrowError, ValidationError
from escrowflow_core.precision import drops_to_xrp, format_amount
from escrowflow_core.signer import Signer
from escrowflow_core.validation import require_address

logger = logging.getLogger("escrowflow.conversion")

TF_PARTIAL_PAYMENT = 0x00020000

DEFAULT_TRUST_LIMIT = "1000000000"
DEFAULT_RESERVE_BUFFER_DROPS = 1_000_000      # 1 XRP kept for fees
DEFAULT_MAX_DELIVER = "1000000000"


def currency_code(code: str) -> str:
    """
    Ledger form of a currency code: 3-char ISO as-is, longer codes as 40-hex.

    Raises ``ValueError`` for an empty, non-ASCII or over-long code.
    """
    code = code.strip()
    if not code:
        raise ValueError("currency code is empty")
    raw = code.encode("ascii")
    if len(code) == 3 and code.upper() != "XRP":
        return code
    if len(code) == 40:
        bytes.fromhex(code)
        return code.upper()
    if len(raw) > 20:
        raise ValueError(f"currency code {code!r} is longer than 20 bytes")
    return raw.ljust(20, b"\x00").hex().upper()


@dataclass(frozen=True)
class StableAsset:
    currency: str
    issuer: str

    def __post_init__(self):
        try:
            currency_code(self.currency)
        except (AttributeError, ValueError) as exc:
            raise ValidationError(f"Invalid stable asset currency {self.currency!r}: {exc}",
                                  field="currency", value=self.currency) from exc
        require_address(self.issuer, "issuer")

    @property
    def ledger_currency(self) -> str:
        return currency_code(self.currency)

    def amount(self, value: str) -> dict:
        return {"currency": self.ledger_currency, "issuer": self.issuer, "value": value}


@dataclass
class StepResult:
    name: str
    ok: bool
    message: str = ""
    code: str = ""
    hash: str = ""
    detail: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"name": self.name, "ok": self.ok, "message": self.message,
                "code": self.code, "hash": self.hash, "detail": self.detail}


@dataclass
class ConversionResult:
    steps: list[StepResult] = field(default_factory=list)
    ceiling_drops: int = 0
    delivered: Optional[Any] = None

    @property
    def converted(self) -> bool:
        return bool(self.steps) and all(s.ok for s in self.steps) and self.steps[-1].name == "swap"

    @property
    def failed_step(self) -> Optional[str]:
        for s in self.steps:
            if not s.ok:
                return s.name
        return None

    def to_dict(self) -> dict:
        return {
            "converted": self.converted,
            "failed_step": self.failed_step,
            "ceiling_drops": self.ceiling_drops,
            "ceiling": format_amount(self.ceiling_drops),
            "delivered": self.delivered,
            "steps": [s.to_dict() for s in self.steps],
        }


class ConversionAdapter:

    def __init__(
        self,
        gateway: Any,
        asset: StableAsset,
        *,
        trust_limit: str = DEFAULT_TRUST_LIMIT,
        reserve_buffer_drops: int = DEFAULT_RESERVE_BUFFER_DROPS,
        max_deliver: str = DEFAULT_MAX_DELIVER,
    ):
        self.gateway = gateway
        self.asset = asset
        self.trust_limit = trust_limit
        self.reserve_buffer_drops = reserve_buffer_drops
        self.max_deliver = max_deliver

    # ── steps ────────────────────────────────────────────────────

    async def ensure_trustline(self, signer: Signer) -> StepResult:
        lines = await self.gateway.account_lines(signer.address, peer=self.asset.issuer)
        wanted = self.asset.ledger_currency
        for line in lines:
            if line.get("currency") == wanted and line.get("account", self.asset.issuer) == self.asset.issuer:
                return StepResult("trustline", True, "trust line already present",
                                  detail={"limit": line.get("limit")})

        prepared = await self.gateway.autofill({
            "TransactionType": "TrustSet",
            "Account": signer.address,
            "LimitAmount": self.asset.amount(self.trust_limit),
        })
        outcome = await self.gateway.submit_and_wait(
            signer.sign(prepared), prepared.get("LastLedgerSequence"))
        outcome.raise_for_status("TrustSet", account=signer.address)
        logger.info("Trust line %s/%s created for %s", self.asset.currency,
                    self.asset.issuer, signer.address)
        return StepResult("trustline", True, "trust line created",
                          code=outcome.code, hash=outcome.hash)

    async def spendable_ceiling(self, address: str, released_drops: int) -> int:
        """Drops that can be spent without touching reserves or the buffer."""
        info = await self.gateway.account_info(address)
        data = info.get("account_data", {})
        balance = int(data.get("Balance", 0))
        owner_count = int(data.get("OwnerCount", 0))
        base, inc = await self.gateway.get_reserves()
        reserved = base + owner_count * inc
        spendable = balance - reserved - self.reserve_buffer_drops
        return max(0, min(spendable, released_drops))

    async def swap(self, signer: Signer, ceiling_drops: int) -> StepResult:
        prepared = await self.gateway.autofill({
            "TransactionType": "Payment",
            "Account": signer.address,
            "Destination": signer.address,
            "Amount": self.asset.amount(self.max_deliver),
            "SendMax": str(ceiling_drops),
            "Flags": TF_PARTIAL_PAYMENT,
        })
        outcome = await self.gateway.submit_and_wait(
            signer.sign(prepared), prepared.get("LastLedgerSequence"))
        outcome.raise_for_status("Payment", account=signer.address)
        return StepResult("swap", True, f"converted up to {drops_to_xrp(ceiling_drops)} XRP",
                          code=outcome.code, hash=outcome.hash,
                          detail={"delivered_amount": outcome.delivered_amount})

    # ── pipeline ─────────────────────────────────────────────────

    async def convert(self, signer: Signer, released_drops: int) -> ConversionResult:
        result = ConversionResult()

        try:
            result.steps.append(await self.ensure_trustline(signer))
        except EscrowError as exc:
            return self._failed(result, "trustline", exc)

        try:
            result.ceiling_drops = await self.spendable_ceiling(signer.address, released_drops)
        except EscrowError as exc:
            return self._failed(result, "ceiling", exc)
        if result.ceiling_drops <= 0:
            result.steps.append(StepResult("ceiling", False,
                                           "nothing spendable above reserve and buffer"))
            logger.info("Conversion skipped for %s: no spendable balance", signer.address)
            return result
        result.steps.append(StepResult("ceiling", True, format_amount(result.ceiling_drops),
                                       detail={"drops": result.ceiling_drops}))

        try:
            step = await self.swap(signer, result.ceiling_drops)
        except EscrowError as exc:
            return self._failed(result, "swap", exc)
        result.steps.append(step)
        result.delivered = step.detail.get("delivered_amount")
        logger.info("Converted up to %s for %s into %s", format_amount(result.ceiling_drops),
                    signer.address, self.asset.currency)
        return result

    @staticmethod
    def _failed(result: ConversionResult, name: str, exc: EscrowError) -> ConversionResult:
        logger.warning("Conversion step %s failed: %s", name, exc.message)
        result.steps.append(StepResult(
            name, False, exc.message,
            code=str(exc.details.get("result_code", exc.code)),
            hash=str(exc.details.get("hash", "")),
        ))
        return result
