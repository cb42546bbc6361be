"""
Shared pytest fixtures for the EscrowFlow test suite.

The fakes here stand in for the network-facing collaborators:

  - ``FakeLedgerGateway``  – in-memory ledger applying EscrowCreate /
                             EscrowFinish / EscrowCancel / TrustSet / Payment
  - ``FakeSigner``         – deterministic signer, no real keys
  - ``FakeAttestation``    – verdicts looked up by requirement text
"""

from __future__ import annotations

import asyncio
import hashlib
import json

import pytest

from escrowflow_core.attestation import AttestationService, Verdict
from escrowflow_core.errors import AttestationUnavailable, EntryNotFound
from escrowflow_core.escrow import EscrowOrchestrator
from escrowflow_core.requirements import InMemoryRequirementStore
from escrowflow_core.signer import SignedTransaction, Signer, SignerResolver
from escrowflow_core.tx_result import OutcomeStatus, SubmissionOutcome
from escrowflow_core.verification_gate import VerificationGate

PAYER = "rf1BiGeXwwQoi8Z2ueFYTEXSwuJYfV2Jpn"
PAYEE = "ra5nK24KXen9AHvsdFTKHSANinZseWnPcX"
STRANGER = "rPEPPER7kfTD9w2To4CQk6UCfuHM9c6GDY"
OTHER_PAYER = "rN7n7otQDd6FczFgLdSqtcsAUxDkw6fzRH"
ISSUER = "rPT1Sjq2YGrBMTttX4gZHuKu5h8VwwE4Cq"

# Fixed "current time" used by tests (2027-01-15T08:00:00Z)
NOW = 1_800_000_000


class FakeSigner(Signer):
    def __init__(self, address: str):
        self.address = address

    def sign(self, tx_json: dict) -> SignedTransaction:
        tx = dict(tx_json)
        blob = json.dumps(tx, sort_keys=True).encode().hex().upper()
        digest = hashlib.sha256(bytes.fromhex(blob)).hexdigest().upper()
        return SignedTransaction(tx_blob=blob, hash=digest, tx_json=tx)


class FakeLedgerGateway:
    """Just enough ledger to drive the orchestrator, gate and adapter."""

    url = "wss://fake.ledger"

    def __init__(self):
        self.accounts: dict[str, dict] = {}
        self.escrows: dict[tuple[str, int], dict] = {}
        self.lines: dict[str, list[dict]] = {}
        self.submitted: list[dict] = []
        self.forced_results: list[str] = []
        self.reserves = (10_000_000, 2_000_000)
        self.ledger_index = 1000
        self.submit_delay = 0.0
        self.fetches = 0
        self.connected = True
        self.closed = False

    # ── setup helpers ────────────────────────────────────────────

    def fund(self, address: str, drops: int, sequence: int = 1) -> None:
        self.accounts[address] = {"Account": address, "Balance": str(drops),
                                  "Sequence": sequence, "OwnerCount": 0}

    def _account(self, address: str) -> dict:
        if address not in self.accounts:
            self.fund(address, 100_000_000)
        return self.accounts[address]

    def submitted_types(self) -> list[str]:
        return [tx["TransactionType"] for tx in self.submitted]

    # ── gateway surface ──────────────────────────────────────────

    async def account_info(self, address: str, ledger_index: str = "validated") -> dict:
        return {"account_data": dict(self._account(address)),
                "ledger_current_index": self.ledger_index + 1}

    async def account_lines(self, address: str, peer: str | None = None) -> list[dict]:
        return [ln for ln in self.lines.get(address, [])
                if peer is None or ln["account"] == peer]

    async def get_escrow_entry(self, owner: str, sequence: int) -> dict:
        self.fetches += 1
        node = self.escrows.get((owner, int(sequence)))
        if node is None:
            raise EntryNotFound(f"Escrow not found. Owner: {owner}, Sequence: {sequence}",
                                owner=owner, sequence=sequence)
        return dict(node)

    async def get_reserves(self) -> tuple[int, int]:
        return self.reserves

    async def validated_ledger_index(self) -> int:
        return self.ledger_index

    async def autofill(self, tx: dict) -> dict:
        prepared = dict(tx)
        prepared.setdefault("Sequence", self._account(tx["Account"])["Sequence"])
        prepared.setdefault("Fee", "12")
        prepared.setdefault("LastLedgerSequence", self.ledger_index + 20)
        return prepared

    async def submit_and_wait(self, signed: SignedTransaction,
                              last_ledger_sequence: int | None = None) -> SubmissionOutcome:
        if self.submit_delay:
            await asyncio.sleep(self.submit_delay)
        tx = signed.tx_json
        self.submitted.append(tx)
        if self.forced_results:
            code = self.forced_results.pop(0)
        else:
            code = self._apply(tx)
        if code == "UNKNOWN":
            return SubmissionOutcome(status=OutcomeStatus.UNKNOWN, code="", hash=signed.hash,
                                     validated=False, message="timed out")
        self.ledger_index += 1
        status = OutcomeStatus.SUCCESS if code == "tesSUCCESS" else OutcomeStatus.REJECTED
        delivered = tx.get("Amount") if tx["TransactionType"] == "Payment" else None
        return SubmissionOutcome(status=status, code=code, hash=signed.hash, validated=True,
                                 ledger_index=self.ledger_index, delivered_amount=delivered)

    def _apply(self, tx: dict) -> str:
        account = self._account(tx["Account"])
        kind = tx["TransactionType"]
        if kind == "EscrowCreate":
            node = {"LedgerEntryType": "Escrow", "Account": tx["Account"],
                    "Destination": tx["Destination"], "Amount": tx["Amount"],
                    "PreviousTxnID": "AB" * 32}
            for key in ("FinishAfter", "CancelAfter", "Condition"):
                if key in tx:
                    node[key] = tx[key]
            self.escrows[(tx["Account"], tx["Sequence"])] = node
        elif kind in ("EscrowFinish", "EscrowCancel"):
            if self.escrows.pop((tx["Owner"], tx["OfferSequence"]), None) is None:
                account["Sequence"] += 1
                return "tecNO_TARGET"
        elif kind == "TrustSet":
            limit = tx["LimitAmount"]
            self.lines.setdefault(tx["Account"], []).append(
                {"account": limit["issuer"], "currency": limit["currency"],
                 "limit": limit["value"], "balance": "0"})
        account["Sequence"] += 1
        return "tesSUCCESS"

    async def close(self) -> None:
        self.closed = True


class FakeAttestation(AttestationService):
    """Verified iff the requirement text is in ``passing`` (or evidence says so)."""

    def __init__(self, passing: set[str] | None = None, delay: float = 0.0):
        self.passing = set(passing or ())
        self.delay = delay
        self.calls = 0
        self.fail = False

    async def verify(self, requirement, evidence, context=None) -> Verdict:
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.fail:
            raise AttestationUnavailable("attestation service unreachable")
        ok = requirement in self.passing
        return Verdict(verified=ok, confidence=0.9 if ok else 0.3,
                       rationale="meets requirement" if ok else "not demonstrated")


# ── fixtures ─────────────────────────────────────────────────────

@pytest.fixture
def gateway():
    gw = FakeLedgerGateway()
    gw.fund(PAYER, 1_000_000_000, sequence=7)
    gw.fund(PAYEE, 50_000_000, sequence=3)
    return gw


@pytest.fixture
def payer():
    return FakeSigner(PAYER)


@pytest.fixture
def payee():
    return FakeSigner(PAYEE)


@pytest.fixture
def stranger():
    return FakeSigner(STRANGER)


@pytest.fixture
def other_payer():
    return FakeSigner(OTHER_PAYER)


@pytest.fixture
def orchestrator(gateway):
    return EscrowOrchestrator(gateway)


@pytest.fixture
def attestation():
    return FakeAttestation()


@pytest.fixture
def signers(payer, payee):
    resolver = SignerResolver()
    resolver.register("payer-user", payer)
    resolver.register("payee-user", payee)
    return resolver


@pytest.fixture
def gate(orchestrator, attestation, signers):
    return VerificationGate(orchestrator, InMemoryRequirementStore(), attestation, signers)
