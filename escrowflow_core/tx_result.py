"""
Submission outcome normalization.

rippled answers ``submit`` and ``tx`` with loosely-shaped JSON: the result
code may sit under ``meta.TransactionResult`` (validated), under
``engine_result`` (preliminary), or be missing entirely after a timeout.
``normalize_submission`` folds all of these into one ``SubmissionOutcome``
so the rest of the engine never probes nested dictionaries.

Result code families
--------------------
* ``tes`` – success
* ``tec`` – claimed fee only; the transaction was applied but failed
* ``tef`` – failure, not applied
* ``tel`` – local error, not relayed
* ``tem`` – malformed, never valid
* ``ter`` – retry; may still succeed in a later ledger
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from escrowflow_core.errors import LedgerRejected, OutcomeUnknown

SUCCESS_CODE = "tesSUCCESS"

RESULT_CATEGORIES = {
    "tes": "success",
    "tec": "claimed_cost_only",
    "tef": "failure",
    "tel": "local_error",
    "tem": "malformed",
    "ter": "retry",
}

# Preliminary codes after which the transaction can never be applied.
_FINAL_PRELIMINARY_PREFIXES = ("tem", "tef", "tel")


class OutcomeStatus(Enum):
    SUCCESS = "success"
    REJECTED = "rejected"
    UNKNOWN = "unknown"


def categorize(code: str) -> str:
    """Human-readable family name for a ledger result code."""
    if not code:
        return "unknown"
    return RESULT_CATEGORIES.get(code[:3], "unknown")


def is_final_preliminary(code: str) -> bool:
    return bool(code) and code.startswith(_FINAL_PRELIMINARY_PREFIXES)


@dataclass(frozen=True)
class SubmissionOutcome:
    """The one shape every submission result takes inside the engine."""
    status: OutcomeStatus
    code: str
    hash: str
    validated: bool
    message: str = ""
    ledger_index: int | None = None
    delivered_amount: Any = None
    raw: dict = field(default_factory=dict, repr=False, compare=False)

    @property
    def succeeded(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS

    @property
    def category(self) -> str:
        return categorize(self.code)

    def raise_for_status(self, action: str = "transaction", **context: Any) -> SubmissionOutcome:
        """Return self on success; raise ``LedgerRejected`` / ``OutcomeUnknown`` otherwise."""
        if self.status is OutcomeStatus.SUCCESS:
            return self
        if self.status is OutcomeStatus.REJECTED:
            raise LedgerRejected(
                f"{action} rejected by the ledger: {self.code}"
                + (f" ({self.message})" if self.message else ""),
                result_code=self.code,
                result_category=self.category,
                hash=self.hash,
                ledger_message=self.message,
                **context,
            )
        raise OutcomeUnknown(
            f"{action} outcome undetermined; reconcile with a status read before retrying"
            + (f" ({self.message})" if self.message else ""),
            result_code=self.code,
            hash=self.hash,
            **context,
        )

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "code": self.code,
            "category": self.category,
            "hash": self.hash,
            "validated": self.validated,
            "message": self.message,
            "ledger_index": self.ledger_index,
            "delivered_amount": self.delivered_amount,
        }


def normalize_submission(response: dict | None, *, tx_hash: str = "",
                         preliminary: str = "") -> SubmissionOutcome:
    """
    Fold a ``tx`` / ``submit`` result (or nothing, after a timeout) into a
    ``SubmissionOutcome``.

    *preliminary* is the ``engine_result`` from ``submit`` when *response*
    is a later ``tx`` lookup.
    """
    result = (response or {}).get("result", response or {})
    meta = result.get("meta") if isinstance(result.get("meta"), dict) else {}
    tx_json = result.get("tx_json") if isinstance(result.get("tx_json"), dict) else {}

    h = result.get("hash") or tx_json.get("hash") or tx_hash
    validated = bool(result.get("validated", False))
    final_code = meta.get("TransactionResult", "")
    engine_code = result.get("engine_result", "") or preliminary
    message = result.get("engine_result_message", "")
    ledger_index = result.get("ledger_index")
    delivered = meta.get("delivered_amount", meta.get("DeliveredAmount"))

    if validated and final_code:
        status = OutcomeStatus.SUCCESS if final_code == SUCCESS_CODE else OutcomeStatus.REJECTED
        code = final_code
    elif is_final_preliminary(engine_code):
        status, code = OutcomeStatus.REJECTED, engine_code
    else:
        status, code = OutcomeStatus.UNKNOWN, final_code or engine_code

    return SubmissionOutcome(
        status=status,
        code=code,
        hash=h,
        validated=validated,
        message=message,
        ledger_index=ledger_index,
        delivered_amount=delivered,
        raw=response or {},
    )


def unknown_outcome(tx_hash: str, reason: str, preliminary: str = "") -> SubmissionOutcome:
    return SubmissionOutcome(
        status=OutcomeStatus.UNKNOWN,
        code=preliminary,
        hash=tx_hash,
        validated=False,
        message=reason,
    )


def expired_outcome(tx_hash: str, last_ledger_sequence: int,
                    preliminary: str = "") -> SubmissionOutcome:
    """The validated ledger passed LastLedgerSequence without the transaction."""
    message = f"not included by LastLedgerSequence {last_ledger_sequence}"
    if preliminary:
        message += f"; preliminary result {preliminary}"
    return SubmissionOutcome(
        status=OutcomeStatus.REJECTED,
        code="tefMAX_LEDGER",
        hash=tx_hash,
        validated=False,
        message=message,
    )
