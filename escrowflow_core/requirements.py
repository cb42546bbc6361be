"""
Requirement sets for verify-then-release escrows.

A ``RequirementSet`` is the Gate's bookkeeping for one QA escrow, keyed by
the escrow's sequence number: the ordered requirements with their latest
verdicts, the server-retained preimage/fulfillment, and two monotonic
flags (``all_verified``, ``escrow_finished``) that never revert once set.
A set is written as ``pending`` before its EscrowCreate is submitted, so the
secret survives a create whose outcome was never observed.

The ledger stays authoritative for the escrow itself; these flags only
record what this service has observed and done.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Iterator, Optional

from escrowflow_core.attestation import Verdict, VerificationSummary
from escrowflow_core.errors import ValidationError
from escrowflow_core.precision import format_amount


@dataclass
class Requirement:
    text: str
    evidence: list[str] = field(default_factory=list)
    verdict: Optional[Verdict] = None

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "evidence": list(self.evidence),
            "verdict": self.verdict.to_dict() if self.verdict else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Requirement:
        verdict = data.get("verdict")
        return cls(
            text=data["text"],
            evidence=list(data.get("evidence", [])),
            verdict=Verdict.from_dict(verdict) if verdict else None,
        )


@dataclass
class RequirementSet:
    sequence: int
    owner: str
    destination: str
    beneficiary_id: str
    amount: int                       # drops locked
    deadline: int                     # Unix seconds
    condition: str
    preimage: str = field(repr=False)
    fulfillment: str = field(repr=False)
    requirements: list[Requirement] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    all_verified: bool = False
    escrow_finished: bool = False
    finish_hash: str = ""
    last_summary: str = ""
    conversion: Optional[dict] = None
    pending: bool = False             # create submitted, outcome not yet observed

    @classmethod
    def create(cls, sequence: int, owner: str, destination: str, beneficiary_id: str,
               amount: int, deadline: int, texts: list[str], *, condition: str,
               preimage: str, fulfillment: str,
               created_at: Optional[float] = None, pending: bool = False) -> RequirementSet:
        cleaned = [t.strip() for t in texts if isinstance(t, str) and t.strip()]
        if not cleaned:
            raise ValidationError("at least one requirement is needed",
                                  field="requirements")
        return cls(
            sequence=sequence, owner=owner, destination=destination,
            beneficiary_id=beneficiary_id, amount=amount, deadline=deadline,
            condition=condition, preimage=preimage, fulfillment=fulfillment,
            requirements=[Requirement(t) for t in cleaned],
            created_at=time.time() if created_at is None else created_at,
            pending=pending,
        )

    # ── mutation ─────────────────────────────────────────────────

    def add_evidence(self, evidence: list[str], requirement_index: Optional[int] = None) -> None:
        """Attach evidence to one requirement, or to all of them."""
        if requirement_index is None:
            targets = self.requirements
        elif 0 <= requirement_index < len(self.requirements):
            targets = [self.requirements[requirement_index]]
        else:
            raise ValidationError(
                f"requirement_index out of range (0..{len(self.requirements) - 1})",
                field="requirement_index", value=requirement_index,
            )
        for req in targets:
            req.evidence.extend(evidence)

    def record(self, summary: VerificationSummary) -> bool:
        """Store fresh verdicts; returns whether this run verified everything."""
        for req, verdict in zip(self.requirements, summary.verdicts):
            req.verdict = verdict
        self.last_summary = summary.summary
        if summary.all_verified:
            self.all_verified = True
        return summary.all_verified

    def mark_created(self) -> None:
        self.pending = False

    def mark_finished(self, tx_hash: str = "") -> None:
        self.escrow_finished = True
        if tx_hash:
            self.finish_hash = tx_hash

    # ── views ────────────────────────────────────────────────────

    def items(self) -> list[tuple[str, list[str]]]:
        return [(r.text, list(r.evidence)) for r in self.requirements]

    def public_view(self) -> dict:
        """Everything except the retained secret."""
        return {
            "sequence": self.sequence,
            "owner": self.owner,
            "destination": self.destination,
            "amount_drops": self.amount,
            "amount": format_amount(self.amount),
            "deadline": self.deadline,
            "condition": self.condition,
            "requirements": [r.to_dict() for r in self.requirements],
            "all_verified": self.all_verified,
            "escrow_finished": self.escrow_finished,
            "finish_hash": self.finish_hash,
            "summary": self.last_summary,
            "conversion": self.conversion,
            "created_at": self.created_at,
            "pending": self.pending,
        }

    def to_record(self) -> dict:
        d = self.public_view()
        d.pop("amount")
        d["beneficiary_id"] = self.beneficiary_id
        d["preimage"] = self.preimage
        d["fulfillment"] = self.fulfillment
        return d

    @classmethod
    def from_record(cls, d: dict) -> RequirementSet:
        return cls(
            sequence=int(d["sequence"]),
            owner=d["owner"],
            destination=d["destination"],
            beneficiary_id=d.get("beneficiary_id", ""),
            amount=int(d["amount_drops"]),
            deadline=int(d["deadline"]),
            condition=d["condition"],
            preimage=d["preimage"],
            fulfillment=d["fulfillment"],
            requirements=[Requirement.from_dict(r) for r in d.get("requirements", [])],
            created_at=float(d.get("created_at", 0.0)),
            all_verified=bool(d.get("all_verified", False)),
            escrow_finished=bool(d.get("escrow_finished", False)),
            finish_hash=d.get("finish_hash", ""),
            last_summary=d.get("summary", ""),
            conversion=d.get("conversion"),
            pending=bool(d.get("pending", False)),
        )


# ═══════════════════════════════════════════════════════════════════
#  Stores
# ═══════════════════════════════════════════════════════════════════

class RequirementStore:
    """get / put / delete by escrow sequence number."""

    def get(self, sequence: int) -> Optional[RequirementSet]:
        raise NotImplementedError

    def put(self, rs: RequirementSet) -> None:
        raise NotImplementedError

    def delete(self, sequence: int) -> bool:
        raise NotImplementedError

    def __iter__(self) -> Iterator[RequirementSet]:
        raise NotImplementedError

    def close(self) -> None:
        pass


class InMemoryRequirementStore(RequirementStore):

    def __init__(self):
        self._sets: dict[int, RequirementSet] = {}

    def get(self, sequence: int) -> Optional[RequirementSet]:
        return self._sets.get(sequence)

    def put(self, rs: RequirementSet) -> None:
        self._sets[rs.sequence] = rs

    def delete(self, sequence: int) -> bool:
        return self._sets.pop(sequence, None) is not None

    def __iter__(self) -> Iterator[RequirementSet]:
        return iter(list(self._sets.values()))

    def __len__(self) -> int:
        return len(self._sets)
