"""
Tests for the EscrowFlow REST API (api.py).

The API runs in-process against the in-memory ledger fake via
``aiohttp.test_utils``. Covers:
  - Identity via X-User-Id and signer resolution
  - Escrow routes: create, conditional create, finish, cancel, status
  - Error mapping: engine errors to structured JSON with the right status
  - QA routes: open, proof, verify, status, disabled gate
  - Middleware: API key, CORS, rate limiting, unhandled errors
"""

from __future__ import annotations

import time

import pytest
from aiohttp.test_utils import TestClient, TestServer

from escrowflow_core import __version__
from escrowflow_core.api import APIServer, _TokenBucket
from escrowflow_core.condition import commit
from escrowflow_core.config import APIConfig
from escrowflow_core.errors import LedgerUnavailable
from escrowflow_core.service import EscrowService

PAYER = "rf1BiGeXwwQoi8Z2ueFYTEXSwuJYfV2Jpn"
PAYEE = "ra5nK24KXen9AHvsdFTKHSANinZseWnPcX"

AS_PAYER = {"X-User-Id": "payer-user"}
AS_PAYEE = {"X-User-Id": "payee-user"}

REQS = ["Ships a README", "Has unit tests"]


def _service(gateway, orchestrator, signers, gate=None):
    return EscrowService(gateway, orchestrator, signers, gate=gate,
                         store=gate.store if gate else None,
                         attestation=gate.attestation if gate else None)


def _client(service, api_config=None):
    api = APIServer(service, host="127.0.0.1", port=0, api_config=api_config)
    return TestClient(TestServer(api.build_app()))


@pytest.fixture
def service(gateway, orchestrator, signers, gate):
    return _service(gateway, orchestrator, signers, gate)


async def _conditional(client, deadline_in=3600):
    resp = await client.post("/escrow/conditional/create", headers=AS_PAYER, json={
        "destination": PAYEE, "amount": 10, "deadline": int(time.time()) + deadline_in,
    })
    assert resp.status == 201
    return await resp.json()


# ═══════════════════════════════════════════════════════════════════
#  Health and conditions
# ═══════════════════════════════════════════════════════════════════

class TestHealth:

    @pytest.mark.asyncio
    async def test_health_ok(self, service):
        async with _client(service) as client:
            resp = await client.get("/health")
            assert resp.status == 200
            data = await resp.json()
        assert data["ok"] is True
        assert data["version"] == __version__
        assert data["validated_ledger"] == 1000
        assert data["qa_enabled"] is True
        assert data["signers"]["registered"] == 2

    @pytest.mark.asyncio
    async def test_health_degraded(self, service, gateway):
        async def down():
            raise LedgerUnavailable("no route")

        gateway.validated_ledger_index = down
        async with _client(service) as client:
            resp = await client.get("/health")
            assert resp.status == 503
            data = await resp.json()
        assert data["checks"]["ledger"] == "degraded"

    @pytest.mark.asyncio
    async def test_generate_condition(self, service):
        async with _client(service) as client:
            resp = await client.post("/escrow/generate-condition", json={"preimage": "11" * 32})
            data = await resp.json()
            fresh = await (await client.post("/escrow/generate-condition")).json()
        assert data["condition"] == commit("11" * 32)
        assert data["preimage"] == "11" * 32
        assert len(fresh["fulfillment"]) == 72

    @pytest.mark.asyncio
    async def test_generate_condition_bad_preimage(self, service):
        async with _client(service) as client:
            resp = await client.post("/escrow/generate-condition", json={"preimage": "abcd"})
            assert resp.status == 400
            assert (await resp.json())["error"] == "invalidSecretLength"


# ═══════════════════════════════════════════════════════════════════
#  Escrow routes
# ═══════════════════════════════════════════════════════════════════

class TestEscrowRoutes:

    @pytest.mark.asyncio
    async def test_identity_required(self, service, gateway):
        async with _client(service) as client:
            resp = await client.post("/escrow/create", json={"destination": PAYEE})
            assert resp.status == 401
        assert gateway.submitted == []

    @pytest.mark.asyncio
    async def test_unknown_user_has_no_signer(self, service):
        async with _client(service) as client:
            resp = await client.post("/escrow/create", headers={"X-User-Id": "mallory"},
                                     json={"destination": PAYEE})
            assert resp.status == 403
            data = await resp.json()
        assert data["ok"] is False
        assert data["error"] == "noSignerAvailable"
        assert data["category"] == "authorization"

    @pytest.mark.asyncio
    async def test_missing_fields(self, service):
        async with _client(service) as client:
            resp = await client.post("/escrow/create", headers=AS_PAYER,
                                     json={"destination": PAYEE})
            assert resp.status == 400
            data = await resp.json()
        assert data["details"]["missing"] == ["amount", "finish_after"]

    @pytest.mark.asyncio
    async def test_invalid_json(self, service):
        async with _client(service) as client:
            resp = await client.post("/escrow/create", headers={**AS_PAYER,
                                     "Content-Type": "application/json"}, data="{nope")
            assert resp.status == 400
            assert (await resp.json())["message"] == "Invalid JSON body"

    @pytest.mark.asyncio
    async def test_create(self, service, gateway):
        finish_after = int(time.time()) + 300
        async with _client(service) as client:
            resp = await client.post("/escrow/create", headers=AS_PAYER, json={
                "destination": PAYEE, "amount": "2.5", "finish_after": finish_after,
                "cancel_after": finish_after + 600,
            })
            assert resp.status == 201
            data = await resp.json()
        assert data["sequence"] == 7
        assert data["amount_drops"] == 2_500_000
        assert data["finish_after"] == finish_after
        assert gateway.submitted_types() == ["EscrowCreate"]

    @pytest.mark.asyncio
    async def test_create_cancel_before_finish(self, service, gateway):
        finish_after = int(time.time()) + 300
        async with _client(service) as client:
            resp = await client.post("/escrow/create", headers=AS_PAYER, json={
                "destination": PAYEE, "amount": 1, "finish_after": finish_after,
                "cancel_after": finish_after,
            })
            assert resp.status == 400
            data = await resp.json()
        assert data["error"] == "invalidTimestamp"
        assert data["details"]["field"] == "cancel_after"
        assert gateway.submitted == []

    @pytest.mark.asyncio
    async def test_conditional_finish(self, service, gateway):
        async with _client(service) as client:
            created = await _conditional(client)
            assert created["preimage"]
            resp = await client.post("/escrow/finish", headers=AS_PAYEE, json={
                "owner": PAYER, "sequence": created["sequence"],
                "fulfillment": created["fulfillment"],
            })
            assert resp.status == 200
            data = await resp.json()
        assert data["state"] == "finished"
        assert data["amount_drops"] == 10_000_000
        assert gateway.submitted_types() == ["EscrowCreate", "EscrowFinish"]

    @pytest.mark.asyncio
    async def test_finish_by_owner_forbidden(self, service):
        async with _client(service) as client:
            created = await _conditional(client)
            resp = await client.post("/escrow/finish", headers=AS_PAYER, json={
                "owner": PAYER, "sequence": created["sequence"],
                "fulfillment": created["fulfillment"],
            })
            assert resp.status == 403
            data = await resp.json()
        assert data["error"] == "notAuthorized"
        assert data["details"]["required_party"] == PAYEE

    @pytest.mark.asyncio
    async def test_forged_fulfillment(self, service, gateway):
        async with _client(service) as client:
            created = await _conditional(client)
            resp = await client.post("/escrow/finish", headers=AS_PAYEE, json={
                "owner": PAYER, "sequence": created["sequence"], "fulfillment": "22" * 32,
            })
            assert resp.status == 422
            assert (await resp.json())["error"] == "invalidFulfillment"
        assert gateway.submitted_types() == ["EscrowCreate"]

    @pytest.mark.asyncio
    async def test_cancel_too_early(self, service):
        async with _client(service) as client:
            created = await _conditional(client)
            resp = await client.post("/escrow/cancel", headers=AS_PAYER, json={
                "owner": PAYER, "sequence": created["sequence"],
            })
            assert resp.status == 409
            data = await resp.json()
        assert data["error"] == "tooEarly"
        assert data["category"] == "timing"

    @pytest.mark.asyncio
    async def test_ledger_rejection(self, service, gateway):
        gateway.forced_results.append("tecUNFUNDED")
        async with _client(service) as client:
            resp = await client.post("/escrow/conditional/create", headers=AS_PAYER, json={
                "destination": PAYEE, "amount": 10, "deadline": int(time.time()) + 3600,
            })
            assert resp.status == 502
            data = await resp.json()
        assert data["details"]["result_code"] == "tecUNFUNDED"

    @pytest.mark.asyncio
    async def test_unknown_outcome(self, service, gateway):
        gateway.forced_results.append("UNKNOWN")
        async with _client(service) as client:
            resp = await client.post("/escrow/conditional/create", headers=AS_PAYER, json={
                "destination": PAYEE, "amount": 10, "deadline": int(time.time()) + 3600,
            })
            assert resp.status == 504
            assert (await resp.json())["error"] == "outcomeUnknown"

    @pytest.mark.asyncio
    async def test_status(self, service):
        async with _client(service) as client:
            created = await _conditional(client)
            resp = await client.get(f"/escrow/{PAYER}/{created['sequence']}")
            assert resp.status == 200
            data = await resp.json()
            missing = await client.get(f"/escrow/{PAYER}/999")
            assert missing.status == 404
            assert (await missing.json())["error"] == "entryNotFound"
        assert data["finishable"] is True
        assert data["cancel_blocked_by"] == "tooEarly"
        assert data["condition"] == created["condition"]

    @pytest.mark.asyncio
    async def test_status_bad_sequence(self, service):
        async with _client(service) as client:
            resp = await client.get(f"/escrow/{PAYER}/seven")
            assert resp.status == 400


# ═══════════════════════════════════════════════════════════════════
#  QA routes
# ═══════════════════════════════════════════════════════════════════

async def _qa_open(client):
    resp = await client.post("/qa/escrow/create", headers=AS_PAYER, json={
        "beneficiary_id": "payee-user", "amount": 10,
        "deadline": int(time.time()) + 3600, "requirements": REQS,
    })
    assert resp.status == 201
    return await resp.json()


class TestQARoutes:

    @pytest.mark.asyncio
    async def test_open_hides_secret(self, service):
        async with _client(service) as client:
            data = await _qa_open(client)
        assert data["destination"] == PAYEE
        assert "preimage" not in data
        assert "fulfillment" not in data
        assert [r["text"] for r in data["requirements"]] == REQS

    @pytest.mark.asyncio
    async def test_requirements_must_be_list(self, service):
        async with _client(service) as client:
            resp = await client.post("/qa/escrow/create", headers=AS_PAYER, json={
                "beneficiary_id": "payee-user", "amount": 10,
                "deadline": int(time.time()) + 3600, "requirements": "one big string",
            })
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_destination_other_than_beneficiary_rejected(self, service, gateway):
        async with _client(service) as client:
            resp = await client.post("/qa/escrow/create", headers=AS_PAYER, json={
                "beneficiary_id": "payee-user", "amount": 10,
                "deadline": int(time.time()) + 3600, "requirements": REQS,
                "destination": "rPT1Sjq2YGrBMTttX4gZHuKu5h8VwwE4Cq",
            })
            assert resp.status == 400
            data = await resp.json()
        assert data["details"]["field"] == "destination"
        assert gateway.submitted == []

    @pytest.mark.asyncio
    async def test_bad_checksum_destination_is_client_error(self, service, gateway):
        async with _client(service) as client:
            resp = await client.post("/escrow/create", headers=AS_PAYER, json={
                "destination": "rPT1Sjq2YGrBMTttX4gZHuKu5h8VwwE4Cr", "amount": 1,
                "finish_after": int(time.time()) + 3600,
            })
            assert resp.status == 400
            assert (await resp.json())["error"] == "invalidAddress"
        assert gateway.submitted == []

    @pytest.mark.asyncio
    async def test_proof_releases_when_all_verified(self, service, gateway, attestation):
        attestation.passing = set(REQS)
        async with _client(service) as client:
            opened = await _qa_open(client)
            resp = await client.post(f"/qa/{opened['sequence']}/proof", headers=AS_PAYEE,
                                     json={"evidence": "https://repo.example/pr/1"})
            assert resp.status == 200
            report = await resp.json()
            status = await (await client.get(f"/qa/{opened['sequence']}")).json()
        assert report["all_verified"] is True
        assert report["escrow_finished"] is True
        assert report["release"]["finished"] is True
        assert status["requirements"][0]["evidence"] == ["https://repo.example/pr/1"]
        assert gateway.submitted_types() == ["EscrowCreate", "EscrowFinish"]

    @pytest.mark.asyncio
    async def test_proof_partial(self, service, gateway, attestation):
        attestation.passing = {REQS[0]}
        async with _client(service) as client:
            opened = await _qa_open(client)
            resp = await client.post(f"/qa/{opened['sequence']}/proof", headers=AS_PAYEE,
                                     json={"evidence": ["a"], "requirement_index": 1})
            report = await resp.json()
        assert report["all_verified"] is False
        assert report["verification"]["verified_count"] == 1
        assert report["release"] is None
        assert "EscrowFinish" not in gateway.submitted_types()

    @pytest.mark.asyncio
    async def test_proof_by_payer_forbidden(self, service):
        async with _client(service) as client:
            opened = await _qa_open(client)
            resp = await client.post(f"/qa/{opened['sequence']}/proof", headers=AS_PAYER,
                                     json={"evidence": ["mine"]})
            assert resp.status == 403

    @pytest.mark.asyncio
    async def test_proof_index_must_be_int(self, service):
        async with _client(service) as client:
            opened = await _qa_open(client)
            resp = await client.post(f"/qa/{opened['sequence']}/proof", headers=AS_PAYEE,
                                     json={"evidence": ["x"], "requirement_index": "0"})
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_verify_by_stranger_forbidden(self, service, signers, stranger):
        signers.register("stranger-user", stranger)
        async with _client(service) as client:
            opened = await _qa_open(client)
            resp = await client.post(f"/qa/{opened['sequence']}/verify",
                                     headers={"X-User-Id": "stranger-user"})
            assert resp.status == 403

    @pytest.mark.asyncio
    async def test_verify_by_owner(self, service, attestation):
        attestation.passing = set(REQS)
        async with _client(service) as client:
            opened = await _qa_open(client)
            resp = await client.post(f"/qa/{opened['sequence']}/verify", headers=AS_PAYER)
            assert resp.status == 200
            assert (await resp.json())["escrow_finished"] is True

    @pytest.mark.asyncio
    async def test_attestation_down(self, service, attestation):
        attestation.fail = True
        async with _client(service) as client:
            opened = await _qa_open(client)
            resp = await client.post(f"/qa/{opened['sequence']}/verify", headers=AS_PAYER)
            assert resp.status == 503
            assert (await resp.json())["error"] == "attestationUnavailable"

    @pytest.mark.asyncio
    async def test_unknown_set(self, service):
        async with _client(service) as client:
            resp = await client.get("/qa/999")
            assert resp.status == 404
            assert (await resp.json())["error"] == "requirementSetNotFound"

    @pytest.mark.asyncio
    async def test_gate_disabled(self, gateway, orchestrator, signers):
        async with _client(_service(gateway, orchestrator, signers)) as client:
            resp = await client.get("/qa/7")
            assert resp.status == 503
            health = await (await client.get("/health")).json()
        assert health["qa_enabled"] is False


# ═══════════════════════════════════════════════════════════════════
#  Middleware
# ═══════════════════════════════════════════════════════════════════

class TestMiddleware:

    @pytest.mark.asyncio
    async def test_api_key_required_on_post(self, service):
        cfg = APIConfig(api_key="secret123", rate_limit_rpm=0)
        async with _client(service, cfg) as client:
            assert (await client.get("/health")).status == 200
            resp = await client.post("/escrow/generate-condition")
            assert resp.status == 401
            resp = await client.post("/escrow/generate-condition",
                                     headers={"X-API-Key": "wrong"})
            assert resp.status == 401
            resp = await client.post("/escrow/generate-condition",
                                     headers={"X-API-Key": "secret123"})
            assert resp.status == 200

    @pytest.mark.asyncio
    async def test_cors_explicit_origin(self, service):
        cfg = APIConfig(rate_limit_rpm=0, cors_origins=["https://app.example", "*"])
        async with _client(service, cfg) as client:
            ok = await client.get("/health", headers={"Origin": "https://app.example"})
            other = await client.get("/health", headers={"Origin": "https://evil.example"})
            pre = await client.options("/escrow/create",
                                       headers={"Origin": "https://app.example"})
        assert ok.headers["Access-Control-Allow-Origin"] == "https://app.example"
        assert "Access-Control-Allow-Origin" not in other.headers
        assert pre.status == 204
        assert "X-User-Id" in pre.headers["Access-Control-Allow-Headers"]

    @pytest.mark.asyncio
    async def test_rate_limit(self, service):
        cfg = APIConfig(rate_limit_rpm=2)
        async with _client(service, cfg) as client:
            assert (await client.get("/health")).status == 200
            assert (await client.get("/health")).status == 200
            resp = await client.get("/health")
            assert resp.status == 429
            assert resp.headers["Retry-After"] == "5"

    @pytest.mark.asyncio
    async def test_unhandled_error_is_generic_500(self, service, gateway):
        async def broken():
            raise RuntimeError("secret internals")

        gateway.validated_ledger_index = broken
        async with _client(service) as client:
            resp = await client.get("/health")
            assert resp.status == 500
            data = await resp.json()
        assert data == {"ok": False, "error": "internal", "message": "Internal server error"}

    def test_token_bucket(self):
        bucket = _TokenBucket(3)
        assert [bucket.allow("ip") for _ in range(4)] == [True, True, True, False]
        assert bucket.allow("other")
        assert _TokenBucket(0).allow("ip")
