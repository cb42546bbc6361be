"""
Error taxonomy for EscrowFlow.

Every failure the engine reports is an ``EscrowError`` carrying a stable
``code``, a ``category`` and structured ``details`` (which party was
required, what the deadline was, which ledger code came back) so a caller
can self-correct without guessing.

Categories
----------
* ``validation``    – bad input shape/range, resolved locally
* ``authorization`` – caller is not the required party
* ``timing``        – too early / deadline passed / no cancel policy
* ``not_found``     – no such escrow or requirement set
* ``condition``     – missing or invalid fulfillment
* ``ledger``        – the ledger rejected a submission, or could not be reached
* ``unknown``       – submission outcome undetermined (may still land)
* ``attestation``   – the attestation service failed
"""

from __future__ import annotations

from typing import Any


class EscrowError(Exception):
    """Base class for all engine errors."""

    code = "escrowError"
    category = "internal"
    http_status = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {
            "ok": False,
            "error": self.code,
            "category": self.category,
            "message": self.message,
            "details": dict(self.details),
        }


# ── Validation ───────────────────────────────────────────────────

class ValidationError(EscrowError):
    code = "validationError"
    category = "validation"
    http_status = 400


class InvalidAddress(ValidationError):
    code = "invalidAddress"


class SelfEscrow(ValidationError):
    code = "selfEscrow"


class InvalidAmount(ValidationError):
    code = "invalidAmount"


class InvalidTimestamp(ValidationError):
    code = "invalidTimestamp"


class InvalidSequence(ValidationError):
    code = "invalidSequence"


class InvalidSecretLength(ValidationError):
    code = "invalidSecretLength"


class MalformedCondition(ValidationError):
    code = "malformedCondition"


class SequenceInUse(ValidationError):
    code = "sequenceInUse"
    http_status = 409


# ── Authorization ────────────────────────────────────────────────

class AuthorizationError(EscrowError):
    code = "authorizationError"
    category = "authorization"
    http_status = 403


class NotAuthorized(AuthorizationError):
    code = "notAuthorized"


class NoSignerAvailable(AuthorizationError):
    code = "noSignerAvailable"


# ── Timing ───────────────────────────────────────────────────────

class TimingError(EscrowError):
    code = "timingError"
    category = "timing"
    http_status = 409


class TooEarly(TimingError):
    code = "tooEarly"


class DeadlinePassed(TimingError):
    code = "deadlinePassed"


class NoCancelPolicy(TimingError):
    code = "noCancelPolicy"


# ── Not found ────────────────────────────────────────────────────

class NotFoundError(EscrowError):
    code = "notFound"
    category = "not_found"
    http_status = 404


class EntryNotFound(NotFoundError):
    code = "entryNotFound"


class RequirementSetNotFound(NotFoundError):
    code = "requirementSetNotFound"


# ── Condition ────────────────────────────────────────────────────

class ConditionError(EscrowError):
    code = "conditionError"
    category = "condition"
    http_status = 422


class MissingFulfillment(ConditionError):
    code = "missingFulfillment"


class InvalidFulfillment(ConditionError):
    code = "invalidFulfillment"


# ── Ledger ───────────────────────────────────────────────────────

class LedgerRejected(EscrowError):
    """The ledger returned a definitive non-success result code."""

    code = "ledgerRejected"
    category = "ledger"
    http_status = 502

    def __init__(self, message: str, *, result_code: str, result_category: str = "",
                 **details: Any):
        super().__init__(message, result_code=result_code,
                         result_category=result_category, **details)
        self.result_code = result_code
        self.result_category = result_category


class OutcomeUnknown(EscrowError):
    """
    A submission was sent but its final result was not observed.

    The transaction may still be validated later; reconcile with a status
    read before retrying anything that moves funds.
    """

    code = "outcomeUnknown"
    category = "unknown"
    http_status = 504


class LedgerUnavailable(EscrowError):
    """A read or connect failed before anything was submitted."""

    code = "ledgerUnavailable"
    category = "ledger"
    http_status = 503


class LedgerRequestFailed(EscrowError):
    """The ledger answered a query with an error status."""

    code = "ledgerRequestFailed"
    category = "ledger"
    http_status = 502

    def __init__(self, message: str, *, error: str = "", **details: Any):
        super().__init__(message, error=error, **details)
        self.error = error


# ── Attestation ──────────────────────────────────────────────────

class AttestationUnavailable(EscrowError):
    code = "attestationUnavailable"
    category = "attestation"
    http_status = 503
