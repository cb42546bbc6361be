"""
Escrow orchestration for EscrowFlow.

Escrows lock XRP on the ledger and release them when:
  - a time condition (finish_after) is met, and/or
  - a crypto-condition fulfillment is provided, and/or
  - the escrow is cancelled after cancel_after time.

The ledger owns the escrow entries. ``EscrowOrchestrator`` never keeps a
local copy: every finish/cancel re-fetches the entry, validates
authorization, condition and timing against that one snapshot, and only
then submits.

Timing rules
------------
* no condition:            finish_after is a *floor* — finish at or after it
* condition + finish_after: finish_after is a *deadline* — finish strictly
  before it; afterwards the owner may cancel instead
* cancel_after:            cancel at or after it; without it an escrow can
  never be cancelled by time
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from escrowflow_core import condition as codec
from escrowflow_core.condition import ConditionPair
from escrowflow_core.errors import (
    DeadlinePassed,
    EscrowError,
    InvalidAmount,
    InvalidFulfillment,
    InvalidTimestamp,
    MissingFulfillment,
    NoCancelPolicy,
    NotAuthorized,
    SelfEscrow,
    TooEarly,
)
from escrowflow_core.precision import format_amount, xrp_to_drops
from escrowflow_core.signer import Signer
from escrowflow_core.time_authority import (
    MIN_FINISH_LEAD_SECONDS,
    coerce_unix,
    isoformat,
    now_unix,
    to_ledger_epoch,
    to_unix,
)
from escrowflow_core.tx_result import SubmissionOutcome
from escrowflow_core.validation import normalize_hex, require_address, require_sequence

logger = logging.getLogger("escrowflow.escrow")


class EscrowState(Enum):
    REQUESTED = "requested"
    SUBMITTED = "submitted"
    ACTIVE = "active"
    REJECTED = "rejected"
    UNKNOWN = "unknown"
    FINISHED = "finished"
    CANCELLED = "cancelled"


_TRANSITIONS: dict[EscrowState, frozenset[EscrowState]] = {
    EscrowState.REQUESTED: frozenset({EscrowState.SUBMITTED}),
    EscrowState.SUBMITTED: frozenset({EscrowState.ACTIVE, EscrowState.REJECTED,
                                      EscrowState.UNKNOWN}),
    EscrowState.ACTIVE: frozenset({EscrowState.FINISHED, EscrowState.CANCELLED}),
}


def can_transition(current: EscrowState, target: EscrowState) -> bool:
    return target in _TRANSITIONS.get(current, frozenset())


def _remaining(seconds: int) -> str:
    return f"{math.ceil(seconds / 60)} minute(s)"


# ═══════════════════════════════════════════════════════════════════
#  Ledger entry view
# ═══════════════════════════════════════════════════════════════════

@dataclass
class EscrowRecord:
    """Read-only view of one escrow entry as fetched from the ledger."""
    owner: str                          # creator / funder
    sequence: int                       # creating transaction's sequence
    destination: str                    # recipient when finished
    amount: int                         # drops locked
    condition: str = ""                 # crypto-condition hex (empty = none)
    finish_after: Optional[int] = None  # Unix seconds
    cancel_after: Optional[int] = None  # Unix seconds
    previous_txn_id: str = ""
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_ledger_node(cls, node: dict, owner: str, sequence: int) -> EscrowRecord:
        return cls(
            owner=node.get("Account", owner),
            sequence=sequence,
            destination=node.get("Destination", ""),
            amount=int(node.get("Amount", 0)),
            condition=(node.get("Condition") or "").strip().upper(),
            finish_after=to_unix(node["FinishAfter"]) if node.get("FinishAfter") else None,
            cancel_after=to_unix(node["CancelAfter"]) if node.get("CancelAfter") else None,
            previous_txn_id=node.get("PreviousTxnID", ""),
            raw=node,
        )

    @property
    def has_condition(self) -> bool:
        return bool(self.condition)

    # ── checks ───────────────────────────────────────────────────

    def check_finish_timing(self, now: int) -> None:
        if self.cancel_after is not None and now >= self.cancel_after:
            raise DeadlinePassed(
                f"Escrow has expired. CancelAfter: {isoformat(self.cancel_after)}, "
                f"Current time: {isoformat(now)}. The owner can now cancel it.",
                deadline=self.cancel_after, now=now, reason="expired",
            )
        if self.finish_after is None:
            return
        if self.has_condition:
            if now >= self.finish_after:
                raise DeadlinePassed(
                    f"Deadline has passed. Cannot finish escrow after deadline. "
                    f"Deadline: {isoformat(self.finish_after)}, "
                    f"Current time: {isoformat(now)}. The owner can now refund the payment.",
                    deadline=self.finish_after, now=now, reason="deadline",
                )
        elif now < self.finish_after:
            raise TooEarly(
                f"Too early to finish escrow. FinishAfter: {isoformat(self.finish_after)}, "
                f"Current time: {isoformat(now)}, "
                f"Remaining: {_remaining(self.finish_after - now)}",
                not_before=self.finish_after, now=now,
                remaining_seconds=self.finish_after - now,
            )

    def check_finish(self, caller: str, fulfillment: Optional[str], now: int) -> Optional[str]:
        """
        Validate a finish by *caller* at *now*.

        Returns the DER fulfillment to submit (None for unconditional
        escrows); raises the first failing check.
        """
        if caller != self.destination:
            raise NotAuthorized(
                f"Not authorized to finish this escrow. Escrow Destination: "
                f"{self.destination}, Your address: {caller}",
                required_party=self.destination, caller=caller, role="destination",
            )
        fulfillment_hex = None
        if self.has_condition:
            if not fulfillment:
                raise MissingFulfillment(
                    f"This escrow requires a fulfillment (preimage) to be finished. "
                    f"The escrow has condition: {self.condition[:16]}...",
                    condition=self.condition,
                )
            preimage = codec.parse_fulfillment(fulfillment)
            if not codec.verify(preimage, self.condition):
                raise InvalidFulfillment(
                    f"Invalid fulfillment. The provided preimage does not match the "
                    f"escrow condition. Expected condition: {self.condition[:16]}...",
                    condition=self.condition,
                )
            fulfillment_hex = codec.build_fulfillment(preimage)
        self.check_finish_timing(now)
        return fulfillment_hex

    def check_cancel_timing(self, now: int) -> None:
        if self.cancel_after is None:
            raise NoCancelPolicy(
                "Escrow has no CancelAfter set; cancel not allowed by time. "
                "The escrow can only be finished by the destination address.",
                owner=self.owner, sequence=self.sequence,
            )
        if now < self.cancel_after:
            raise TooEarly(
                f"Too early to cancel escrow. CancelAfter: {isoformat(self.cancel_after)}, "
                f"Current time: {isoformat(now)}, "
                f"Remaining: {_remaining(self.cancel_after - now)}",
                not_before=self.cancel_after, now=now,
                remaining_seconds=self.cancel_after - now,
            )

    def check_cancel(self, caller: str, now: int) -> None:
        if caller != self.owner:
            raise NotAuthorized(
                f"Not authorized to cancel this escrow. Escrow Owner: {self.owner}, "
                f"Your address: {caller}",
                required_party=self.owner, caller=caller, role="owner",
            )
        self.check_cancel_timing(now)

    def to_dict(self) -> dict:
        return {
            "owner": self.owner,
            "sequence": self.sequence,
            "destination": self.destination,
            "amount_drops": self.amount,
            "amount": format_amount(self.amount),
            "condition": self.condition,
            "finish_after": self.finish_after,
            "cancel_after": self.cancel_after,
            "previous_txn_id": self.previous_txn_id,
        }


@dataclass(frozen=True)
class CreateRequest:
    """A fully validated EscrowCreate, ready to submit."""
    owner: str
    destination: str
    amount: int
    finish_after: int
    cancel_after: Optional[int] = None
    condition: Optional[str] = None

    def to_transaction(self) -> dict:
        tx: dict[str, Any] = {
            "TransactionType": "EscrowCreate",
            "Account": self.owner,
            "Destination": self.destination,
            "Amount": str(self.amount),
            "FinishAfter": to_ledger_epoch(self.finish_after),
        }
        if self.cancel_after is not None:
            tx["CancelAfter"] = to_ledger_epoch(self.cancel_after)
        if self.condition:
            tx["Condition"] = self.condition
        return tx


@dataclass
class EscrowReceipt:
    """Result of a successful create / finish / cancel."""
    state: EscrowState
    owner: str
    sequence: int
    destination: str
    amount: int
    outcome: SubmissionOutcome
    finish_after: Optional[int] = None
    cancel_after: Optional[int] = None
    condition: str = ""

    def to_dict(self) -> dict:
        return {
            "ok": True,
            "state": self.state.value,
            "owner": self.owner,
            "sequence": self.sequence,
            "destination": self.destination,
            "amount_drops": self.amount,
            "amount": format_amount(self.amount),
            "finish_after": self.finish_after,
            "cancel_after": self.cancel_after,
            "condition": self.condition,
            "tx_result": self.outcome.code,
            "hash": self.outcome.hash,
            "validated": self.outcome.validated,
        }


# ═══════════════════════════════════════════════════════════════════
#  Orchestrator
# ═══════════════════════════════════════════════════════════════════

class EscrowOrchestrator:
    """Builds, validates, submits and authorizes escrow operations."""

    def __init__(self, gateway: Any, *, min_finish_lead: int = MIN_FINISH_LEAD_SECONDS,
                 refund_delay: int = 1):
        self.gateway = gateway
        self.min_finish_lead = min_finish_lead
        self.refund_delay = refund_delay

    # ── create ───────────────────────────────────────────────────

    def validate_create(
        self,
        owner: str,
        destination: Any,
        amount: Any,
        finish_after: Any,
        cancel_after: Any = None,
        condition: Optional[str] = None,
        now: float | None = None,
    ) -> CreateRequest:
        """Run the create checks in order; purely local."""
        now_s = now_unix(now)

        destination = require_address(destination, "destination")
        if destination == owner:
            raise SelfEscrow(
                "Cannot create escrow to the same address (payer and payee cannot be the same)",
                owner=owner, destination=destination,
            )

        drops = xrp_to_drops(amount, "amount")
        if drops < 1:
            raise InvalidAmount("Amount too small: minimum is 0.000001 XRP (1 drop)",
                                field="amount", value=amount)

        finish = coerce_unix(finish_after, "finish_after")
        earliest = now_s + self.min_finish_lead
        if finish < earliest:
            raise InvalidTimestamp(
                f"finish_after must be at least {self.min_finish_lead}s in the future. "
                f"Provided: {isoformat(finish)}, Earliest: {isoformat(earliest)}",
                field="finish_after", value=finish, earliest=earliest,
            )

        cancel = None
        if cancel_after is not None:
            cancel = coerce_unix(cancel_after, "cancel_after")
            if cancel <= now_s:
                raise InvalidTimestamp(
                    f"cancel_after must be in the future. Provided: {isoformat(cancel)}, "
                    f"Current time: {isoformat(now_s)}",
                    field="cancel_after", value=cancel, now=now_s,
                )
            if cancel <= finish:
                raise InvalidTimestamp(
                    f"cancel_after must be greater than finish_after. "
                    f"Finish: {isoformat(finish)}, Cancel: {isoformat(cancel)}",
                    field="cancel_after", value=cancel, finish_after=finish,
                )

        condition_hex = None
        if condition:
            codec.parse_condition(condition)
            condition_hex = normalize_hex(condition, "condition")

        return CreateRequest(
            owner=owner,
            destination=destination,
            amount=drops,
            finish_after=finish,
            cancel_after=cancel,
            condition=condition_hex,
        )

    async def create(
        self,
        signer: Signer,
        destination: Any,
        amount: Any,
        finish_after: Any,
        cancel_after: Any = None,
        condition: Optional[str] = None,
        *,
        now: float | None = None,
        before_submit: Optional[Callable[[CreateRequest, int], None]] = None,
    ) -> EscrowReceipt:
        """
        Validate and submit an EscrowCreate; returns the ledger-assigned sequence.

        *before_submit* is called with the request and its sequence once the
        sequence is known and before anything is signed; raising from it
        aborts the create.
        """
        req = self.validate_create(signer.address, destination, amount, finish_after,
                                   cancel_after, condition, now=now)
        prepared = await self.gateway.autofill(req.to_transaction())
        sequence = int(prepared["Sequence"])
        logger.info("EscrowCreate %s:%d -> %s for %s", req.owner, sequence,
                    req.destination, format_amount(req.amount))
        if before_submit is not None:
            before_submit(req, sequence)

        outcome = await self._submit(signer, prepared)
        outcome.raise_for_status("EscrowCreate", owner=req.owner, sequence=sequence)
        return EscrowReceipt(
            state=EscrowState.ACTIVE,
            owner=req.owner,
            sequence=sequence,
            destination=req.destination,
            amount=req.amount,
            outcome=outcome,
            finish_after=req.finish_after,
            cancel_after=req.cancel_after,
            condition=req.condition or "",
        )

    async def create_conditional(
        self,
        signer: Signer,
        destination: Any,
        amount: Any,
        deadline: Any,
        *,
        preimage: Optional[str] = None,
        now: float | None = None,
        before_submit: Optional[Callable[[CreateRequest, int], None]] = None,
    ) -> tuple[EscrowReceipt, ConditionPair]:
        """
        Lock payment behind a fresh (or supplied) condition.

        The destination can finish with the fulfillment before *deadline*;
        from ``deadline + refund_delay`` the owner can cancel.
        """
        pair = ConditionPair.from_preimage(preimage) if preimage else ConditionPair.generate()
        deadline_s = coerce_unix(deadline, "deadline")
        receipt = await self.create(
            signer, destination, amount,
            finish_after=deadline_s,
            cancel_after=deadline_s + self.refund_delay,
            condition=pair.condition,
            now=now,
            before_submit=before_submit,
        )
        return receipt, pair

    # ── finish / cancel ──────────────────────────────────────────

    async def fetch(self, owner: Any, sequence: Any) -> EscrowRecord:
        owner = require_address(owner, "owner")
        sequence = require_sequence(sequence)
        node = await self.gateway.get_escrow_entry(owner, sequence)
        return EscrowRecord.from_ledger_node(node, owner, sequence)

    async def finish(
        self,
        signer: Signer,
        owner: Any,
        sequence: Any,
        fulfillment: Optional[str] = None,
        *,
        now: float | None = None,
    ) -> EscrowReceipt:
        """Release an escrow to its destination (signed by the destination)."""
        record = await self.fetch(owner, sequence)
        fulfillment_hex = record.check_finish(signer.address, fulfillment, now_unix(now))

        tx: dict[str, Any] = {
            "TransactionType": "EscrowFinish",
            "Account": signer.address,
            "Owner": record.owner,
            "OfferSequence": record.sequence,
        }
        if fulfillment_hex:
            tx["Condition"] = record.condition
            tx["Fulfillment"] = fulfillment_hex
        prepared = await self.gateway.autofill(tx)
        logger.info("EscrowFinish %s:%d by %s", record.owner, record.sequence, signer.address)

        outcome = await self._submit(signer, prepared)
        outcome.raise_for_status("EscrowFinish", owner=record.owner, sequence=record.sequence)
        return self._receipt(EscrowState.FINISHED, record, outcome)

    async def cancel(
        self,
        signer: Signer,
        owner: Any,
        sequence: Any,
        *,
        now: float | None = None,
    ) -> EscrowReceipt:
        """Refund an expired escrow to its owner (signed by the owner)."""
        record = await self.fetch(owner, sequence)
        record.check_cancel(signer.address, now_unix(now))

        prepared = await self.gateway.autofill({
            "TransactionType": "EscrowCancel",
            "Account": signer.address,
            "Owner": record.owner,
            "OfferSequence": record.sequence,
        })
        logger.info("EscrowCancel %s:%d", record.owner, record.sequence)

        outcome = await self._submit(signer, prepared)
        outcome.raise_for_status("EscrowCancel", owner=record.owner, sequence=record.sequence)
        return self._receipt(EscrowState.CANCELLED, record, outcome)

    async def status(self, owner: Any, sequence: Any, *, now: float | None = None) -> dict:
        """Snapshot of an escrow plus whether finish/cancel would pass timing now."""
        record = await self.fetch(owner, sequence)
        now_s = now_unix(now)
        d = record.to_dict()
        d["state"] = EscrowState.ACTIVE.value
        d["now"] = now_s
        for key, check in (("finish", record.check_finish_timing),
                           ("cancel", record.check_cancel_timing)):
            try:
                check(now_s)
            except EscrowError as exc:
                d[f"{key}able"] = False
                d[f"{key}_blocked_by"] = exc.code
            else:
                d[f"{key}able"] = True
                d[f"{key}_blocked_by"] = None
        return d

    # ── internal ─────────────────────────────────────────────────

    async def _submit(self, signer: Signer, prepared: dict) -> SubmissionOutcome:
        signed = signer.sign(prepared)
        outcome = await self.gateway.submit_and_wait(signed, prepared.get("LastLedgerSequence"))
        log = logger.info if outcome.succeeded else logger.warning
        log("%s %s: %s %s", prepared["TransactionType"], signed.hash,
            outcome.status.value, outcome.code)
        return outcome

    @staticmethod
    def _receipt(state: EscrowState, record: EscrowRecord,
                 outcome: SubmissionOutcome) -> EscrowReceipt:
        return EscrowReceipt(
            state=state,
            owner=record.owner,
            sequence=record.sequence,
            destination=record.destination,
            amount=record.amount,
            outcome=outcome,
            finish_after=record.finish_after,
            cancel_after=record.cancel_after,
            condition=record.condition,
        )
