"""
Verification Gate — verify-then-release for QA escrows.

The payer locks funds behind a condition whose preimage only this service
holds. The beneficiary submits proof; the attestation service judges each
requirement; once every requirement is verified the Gate finishes the
escrow itself with the retained fulfillment, then hands the released
amount to the Conversion Adapter.

Release guard
-------------
Verification runs are not deduplicated, so two runs can both see
``all_verified``. Before the first await of the release path the Gate
checks ``escrow_finished`` and its in-flight claim set and claims the
sequence; a run that finds a claim or the finished flag does not submit.
If a Finish still races (e.g. across processes) the ledger answers
``EntryNotFound``, which is recorded as finished rather than as an error.

Pending sets
------------
The requirement set is stored as ``pending`` once the create's sequence is
known and before the create is submitted. If the create's outcome is unknown
the pending set is kept, and a release first confirms that the escrow is on
the ledger. Sets are keyed by sequence alone, so a sequence already held by
another owner's set is refused with ``SequenceInUse`` before submission.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from escrowflow_core.attestation import AttestationService, VerificationSummary, verify_all
from escrowflow_core.condition import ConditionPair
from escrowflow_core.conversion import ConversionAdapter
from escrowflow_core.errors import (
    EntryNotFound,
    EscrowError,
    NotAuthorized,
    OutcomeUnknown,
    RequirementSetNotFound,
    SequenceInUse,
    ValidationError,
)
from escrowflow_core.escrow import CreateRequest, EscrowOrchestrator
from escrowflow_core.requirements import RequirementSet, RequirementStore
from escrowflow_core.signer import Signer, SignerResolver
from escrowflow_core.time_authority import coerce_unix
from escrowflow_core.validation import require_address

logger = logging.getLogger("escrowflow.gate")

DEFAULT_RETENTION_SECONDS = 7 * 24 * 3600


@dataclass
class ReleaseResult:
    attempted: bool
    finished: bool = False
    reason: str = ""
    hash: str = ""
    amount: int = 0
    benign_race: bool = False
    error: Optional[dict] = None
    conversion: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            "attempted": self.attempted,
            "finished": self.finished,
            "reason": self.reason,
            "hash": self.hash,
            "amount_drops": self.amount,
            "benign_race": self.benign_race,
            "error": self.error,
            "conversion": self.conversion,
        }


@dataclass
class GateReport:
    sequence: int
    summary: VerificationSummary
    all_verified: bool
    escrow_finished: bool
    release: Optional[ReleaseResult] = None

    def to_dict(self) -> dict:
        return {
            "sequence": self.sequence,
            "verification": self.summary.to_dict(),
            "all_verified": self.all_verified,
            "escrow_finished": self.escrow_finished,
            "release": self.release.to_dict() if self.release else None,
        }


class VerificationGate:

    def __init__(
        self,
        orchestrator: EscrowOrchestrator,
        store: RequirementStore,
        attestation: AttestationService,
        signers: SignerResolver,
        *,
        conversion: Optional[ConversionAdapter] = None,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
    ):
        self.orchestrator = orchestrator
        self.store = store
        self.attestation = attestation
        self.signers = signers
        self.conversion = conversion
        self.retention_seconds = retention_seconds
        self._finishing: set[int] = set()
        self.finish_attempts = 0

    # ── lifecycle ────────────────────────────────────────────────

    async def open_escrow(
        self,
        payer: Signer,
        beneficiary_id: str,
        amount: Any,
        deadline: Any,
        requirements: Sequence[str],
        *,
        destination: Optional[str] = None,
        now: float | None = None,
    ) -> RequirementSet:
        """
        Create a conditional escrow whose preimage stays with this service.

        The release is signed by the beneficiary's signer, so the escrow
        destination is always that signer's address; an explicit
        *destination* must match it.
        """
        texts = [t for t in requirements or [] if isinstance(t, str) and t.strip()]
        if not texts:
            raise ValidationError("at least one requirement is needed", field="requirements")
        beneficiary = self.signers.resolve(beneficiary_id).address
        if destination is not None:
            destination = require_address(destination, "destination")
            if destination != beneficiary:
                raise ValidationError(
                    f"destination must be the beneficiary's address. Destination: "
                    f"{destination}, Beneficiary: {beneficiary}",
                    field="destination", value=destination, beneficiary=beneficiary,
                )
        deadline_s = coerce_unix(deadline, "deadline")
        pair = ConditionPair.generate()
        reserved: list[int] = []

        def reserve(req: CreateRequest, sequence: int) -> None:
            existing = self.store.get(sequence)
            if existing is not None and not (existing.pending and existing.owner == req.owner):
                raise SequenceInUse(
                    f"A requirement set already exists for sequence {sequence} "
                    f"(owner {existing.owner})",
                    sequence=sequence, owner=req.owner, existing_owner=existing.owner,
                )
            self.store.put(RequirementSet.create(
                sequence, req.owner, req.destination, beneficiary_id, req.amount,
                deadline_s, texts, condition=pair.condition, preimage=pair.preimage,
                fulfillment=pair.fulfillment, created_at=now, pending=True,
            ))
            reserved.append(sequence)

        try:
            receipt, _ = await self.orchestrator.create_conditional(
                payer, beneficiary, amount, deadline_s, preimage=pair.preimage, now=now,
                before_submit=reserve,
            )
        except OutcomeUnknown as exc:
            if reserved:
                logger.warning("QA escrow %d create outcome unknown; requirement set "
                               "kept as pending", reserved[0])
                exc.details["requirement_set"] = "pending"
            raise
        except Exception:
            if reserved:
                self.store.delete(reserved[0])
            raise

        rs = self._load(receipt.sequence)
        rs.mark_created()
        self.store.put(rs)
        logger.info("QA escrow %d opened with %d requirement(s)", rs.sequence,
                    len(rs.requirements))
        return rs

    def _load(self, sequence: int) -> RequirementSet:
        rs = self.store.get(int(sequence))
        if rs is None:
            raise RequirementSetNotFound(
                f"No requirement set for escrow sequence {sequence}", sequence=sequence,
            )
        return rs

    async def submit_proof(
        self,
        sequence: int,
        caller: str,
        evidence: Sequence[str],
        *,
        requirement_index: Optional[int] = None,
        now: float | None = None,
    ) -> GateReport:
        """Attach the beneficiary's evidence and re-run verification."""
        rs = self._load(sequence)
        if caller != rs.destination:
            raise NotAuthorized(
                f"Only the escrow destination can submit proof. Destination: "
                f"{rs.destination}, Your address: {caller}",
                required_party=rs.destination, caller=caller, role="destination",
            )
        if isinstance(evidence, str) or not all(isinstance(e, str) for e in evidence):
            raise ValidationError("evidence must be a list of strings", field="evidence")
        items = [e.strip() for e in evidence if e.strip()]
        if not items:
            raise ValidationError("evidence must not be empty", field="evidence")
        rs.add_evidence(items, requirement_index)
        self.store.put(rs)
        return await self.run_verification(sequence, now=now)

    async def run_verification(self, sequence: int, *, now: float | None = None) -> GateReport:
        rs = self._load(sequence)
        summary = await verify_all(self.attestation, rs.items(), {"sequence": rs.sequence})

        # reload: another run may have recorded or finished meanwhile
        rs = self._load(sequence)
        rs.record(summary)
        self.store.put(rs)
        logger.info("Escrow %d verification: %s", rs.sequence, summary.summary)

        release = None
        if rs.all_verified and not rs.escrow_finished:
            release = await self._release(rs, now=now)
        current = self._load(sequence)
        return GateReport(
            sequence=current.sequence,
            summary=summary,
            all_verified=current.all_verified,
            escrow_finished=current.escrow_finished,
            release=release,
        )

    async def _release(self, rs: RequirementSet, *, now: float | None = None) -> ReleaseResult:
        seq = rs.sequence
        if rs.escrow_finished:
            return ReleaseResult(attempted=False, finished=True, reason="already finished")
        if seq in self._finishing:
            return ReleaseResult(attempted=False, reason="release already in progress")
        self._finishing.add(seq)
        try:
            return await self._finish_and_convert(seq, now)
        finally:
            self._finishing.discard(seq)

    async def _finish_and_convert(self, seq: int, now: float | None) -> ReleaseResult:
        rs = self._load(seq)
        if rs.escrow_finished:
            return ReleaseResult(attempted=False, finished=True, reason="already finished")
        if rs.pending:
            try:
                await self.orchestrator.fetch(rs.owner, seq)
            except EntryNotFound:
                logger.warning("Escrow %d not on the ledger; its create was never confirmed",
                               seq)
                return ReleaseResult(attempted=False, reason="escrow creation not confirmed")
            except EscrowError as exc:
                return ReleaseResult(attempted=False, reason=exc.code, error=exc.to_dict())
            rs.mark_created()
            self.store.put(rs)
            logger.info("Escrow %d create confirmed on the ledger", seq)
        try:
            signer = self.signers.resolve(rs.beneficiary_id)
            self.finish_attempts += 1
            receipt = await self.orchestrator.finish(signer, rs.owner, seq, rs.fulfillment,
                                                     now=now)
        except EntryNotFound:
            logger.info("Escrow %d already gone from the ledger; recording as finished", seq)
            rs = self._load(seq)
            rs.mark_finished()
            self.store.put(rs)
            return ReleaseResult(attempted=True, finished=True, benign_race=True,
                                 reason="escrow no longer on ledger")
        except EscrowError as exc:
            logger.warning("Automatic finish of escrow %d failed: %s", seq, exc.message)
            return ReleaseResult(attempted=True, reason=exc.code, error=exc.to_dict())

        rs = self._load(seq)
        rs.mark_finished(receipt.outcome.hash)
        self.store.put(rs)
        logger.info("Escrow %d released to %s", seq, rs.destination)
        result = ReleaseResult(attempted=True, finished=True, reason="released",
                               hash=receipt.outcome.hash, amount=receipt.amount)

        if self.conversion is not None:
            conversion = await self.conversion.convert(signer, receipt.amount)
            result.conversion = conversion.to_dict()
            rs = self._load(seq)
            rs.conversion = result.conversion
            self.store.put(rs)
        return result

    # ── queries / housekeeping ───────────────────────────────────

    def status(self, sequence: int) -> dict:
        return self._load(sequence).public_view()

    def cleanup(self, now: float | None = None) -> list[int]:
        """Drop sets past retention that are finished or past their deadline."""
        now = time.time() if now is None else now
        removed = []
        for rs in self.store:
            if now - rs.created_at < self.retention_seconds:
                continue
            if rs.escrow_finished or now >= rs.deadline:
                self.store.delete(rs.sequence)
                removed.append(rs.sequence)
        if removed:
            logger.info("Cleaned up %d requirement set(s)", len(removed))
        return removed
