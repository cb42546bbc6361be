"""
REST / HTTP API for the EscrowFlow service.

Built on ``aiohttp``.

Endpoints
---------
GET  /health                        Service and ledger connectivity
POST /escrow/generate-condition     Fresh (or derived) condition/fulfillment pair
POST /escrow/create                 Time-locked escrow, optionally conditional
POST /escrow/conditional/create     Deadline escrow with a generated condition
POST /escrow/finish                 Release to the destination
POST /escrow/cancel                 Refund to the owner
GET  /escrow/{owner}/{sequence}     Status snapshot for reconciliation
POST /qa/escrow/create              Verify-then-release escrow with requirements
POST /qa/{sequence}/proof           Beneficiary submits evidence (re-verifies)
POST /qa/{sequence}/verify          Re-run verification
GET  /qa/{sequence}                 Requirement set (public view)

Identity
--------
The authentication layer in front of this service sets ``X-User-Id``; the
signer for that user is resolved through ``SignerResolver``.

Security
--------
- API-key authentication on POST endpoints via ``X-API-Key`` header only,
  compared with ``hmac.compare_digest``.
- Per-IP token-bucket rate limiter (configurable RPM).
- CORS middleware (explicit origins only).
- Request body size cap (``max_body_bytes``).
- ``EscrowError`` subclasses map to their ``http_status`` with a
  structured JSON body; anything else is a 500 without internals.

Usage:
    api = APIServer(service, host="127.0.0.1", port=8080, api_config=cfg.api)
    await api.start()
    ...
    await api.stop()
"""

from __future__ import annotations

import hmac
import logging
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from aiohttp import web

from escrowflow_core import __version__
from escrowflow_core.condition import ConditionPair
from escrowflow_core.errors import (
    AttestationUnavailable,
    EscrowError,
    NotAuthorized,
    ValidationError,
)
from escrowflow_core.signer import Signer
from escrowflow_core.validation import require_sequence

if TYPE_CHECKING:
    from escrowflow_core.config import APIConfig
    from escrowflow_core.service import EscrowService
    from escrowflow_core.verification_gate import VerificationGate

logger = logging.getLogger("escrowflow.api")


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Per-IP token-bucket rate limiter."""

    __slots__ = ("_buckets", "_rpm")

    def __init__(self, rpm: int):
        self._rpm = rpm  # 0 = unlimited
        # ip -> [tokens, last_refill_timestamp]
        self._buckets: dict[str, list[float]] = defaultdict(lambda: [float(rpm), time.monotonic()])

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        bucket = self._buckets[ip]
        now = time.monotonic()
        bucket[0] = min(float(self._rpm), bucket[0] + (now - bucket[1]) * (self._rpm / 60.0))
        bucket[1] = now
        if bucket[0] >= 1.0:
            bucket[0] -= 1.0
            return True
        return False


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

def _make_rate_limit_middleware(bucket: _TokenBucket):

    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler):
        if not bucket.allow(request.remote or "unknown"):
            raise web.HTTPTooManyRequests(
                text="Rate limit exceeded. Try again later.",
                headers={"Retry-After": "5"},
            )
        return await handler(request)

    return rate_limit_middleware


def _make_api_key_middleware(api_key: str):
    """Require ``X-API-Key`` on POST/PUT/DELETE (header only, never query)."""

    @web.middleware
    async def api_key_middleware(request: web.Request, handler):
        if request.method in ("POST", "PUT", "DELETE"):
            key = request.headers.get("X-API-Key", "")
            if not hmac.compare_digest(key, api_key):
                raise web.HTTPUnauthorized(text="Invalid or missing API key")
        return await handler(request)

    return api_key_middleware


def _make_cors_middleware(origins: list[str]):
    """CORS headers for explicitly listed origins; ``*`` is ignored."""

    allowed = set(origins)
    allowed.discard("*")

    @web.middleware
    async def cors_middleware(request: web.Request, handler):
        origin = request.headers.get("Origin", "")
        if request.method == "OPTIONS":
            resp = web.Response(status=204)
        else:
            resp = await handler(request)
        if origin in allowed:
            resp.headers["Access-Control-Allow-Origin"] = origin
            resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
            resp.headers["Access-Control-Allow-Headers"] = "Content-Type, X-API-Key, X-User-Id"
            resp.headers["Access-Control-Max-Age"] = "3600"
        return resp

    return cors_middleware


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Render engine errors as structured JSON."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except EscrowError as exc:
        if exc.http_status >= 500:
            logger.warning("%s %s -> %s: %s", request.method, request.path,
                           exc.code, exc.message)
        return web.json_response(exc.to_dict(), status=exc.http_status)
    except Exception:
        logger.exception("Unhandled error in %s %s", request.method, request.path)
        return web.json_response(
            {"ok": False, "error": "internal", "message": "Internal server error"},
            status=500,
        )


# ═══════════════════════════════════════════════════════════════════
#  Request helpers
# ═══════════════════════════════════════════════════════════════════

async def _json_body(request: web.Request) -> dict:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError as exc:
        raise ValidationError("Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise ValidationError("JSON body must be an object")
    return body


def _require(body: dict, *names: str) -> None:
    missing = [n for n in names if body.get(n) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}",
                              missing=missing)


class APIServer:
    """aiohttp front-end over an ``EscrowService``."""

    def __init__(
        self,
        service: EscrowService,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        api_config: APIConfig | None = None,
    ):
        self.service = service
        self.host = host
        self.port = port
        self._api_config = api_config
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    # ── lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        middlewares: list = []
        max_body = 65_536
        cfg = self._api_config
        if cfg is not None:
            max_body = cfg.max_body_bytes
            if cfg.rate_limit_rpm > 0:
                middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))
            if cfg.cors_origins:
                middlewares.append(_make_cors_middleware(cfg.cors_origins))
            if cfg.api_key:
                middlewares.append(_make_api_key_middleware(cfg.api_key))
        middlewares.append(error_middleware)

        app = web.Application(middlewares=middlewares, client_max_size=max_body)
        self._register_routes(app)
        self._app = app
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("API listening on http://%s:%d", self.host, self.port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()

    # ── routes ───────────────────────────────────────────────────

    def _register_routes(self, app: web.Application) -> None:
        app.router.add_get("/health", self._health)
        app.router.add_post("/escrow/generate-condition", self._generate_condition)
        app.router.add_post("/escrow/create", self._escrow_create)
        app.router.add_post("/escrow/conditional/create", self._escrow_conditional_create)
        app.router.add_post("/escrow/finish", self._escrow_finish)
        app.router.add_post("/escrow/cancel", self._escrow_cancel)
        app.router.add_get("/escrow/{owner}/{sequence}", self._escrow_status)
        app.router.add_post("/qa/escrow/create", self._qa_create)
        app.router.add_post("/qa/{sequence}/proof", self._qa_proof)
        app.router.add_post("/qa/{sequence}/verify", self._qa_verify)
        app.router.add_get("/qa/{sequence}", self._qa_status)

    # ── identity ─────────────────────────────────────────────────

    def _user_id(self, request: web.Request) -> str:
        user_id = request.headers.get("X-User-Id", "").strip()
        if not user_id:
            raise web.HTTPUnauthorized(text="X-User-Id header required")
        return user_id

    def _signer(self, request: web.Request) -> Signer:
        return self.service.signers.resolve(self._user_id(request))

    def _gate(self) -> VerificationGate:
        if self.service.gate is None:
            raise AttestationUnavailable("QA escrows are not enabled on this service")
        return self.service.gate

    # ── handlers ─────────────────────────────────────────────────

    async def _health(self, _request: web.Request) -> web.Response:
        ledger_index = None
        try:
            ledger_index = await self.service.gateway.validated_ledger_index()
            ledger_ok = ledger_index is not None
        except EscrowError as exc:
            logger.warning("Health check: ledger unreachable (%s)", exc.message)
            ledger_ok = False
        return web.json_response({
            "ok": ledger_ok,
            "version": __version__,
            "validated_ledger": ledger_index,
            **self.service.summary(),
            "checks": {"ledger": "ok" if ledger_ok else "degraded"},
        }, status=200 if ledger_ok else 503)

    async def _generate_condition(self, request: web.Request) -> web.Response:
        """Body (optional): {"preimage": "<64 hex>"}"""
        body = await _json_body(request)
        preimage = body.get("preimage")
        pair = ConditionPair.from_preimage(preimage) if preimage else ConditionPair.generate()
        return web.json_response({"ok": True, **pair.to_dict()})

    async def _escrow_create(self, request: web.Request) -> web.Response:
        """
        Body: {"destination", "amount", "finish_after", "cancel_after"?, "condition"?}
        Times are Unix seconds; amount is in XRP.
        """
        signer = self._signer(request)
        body = await _json_body(request)
        _require(body, "destination", "amount", "finish_after")
        receipt = await self.service.orchestrator.create(
            signer,
            body["destination"],
            body["amount"],
            body["finish_after"],
            body.get("cancel_after"),
            body.get("condition") or None,
        )
        return web.json_response(receipt.to_dict(), status=201)

    async def _escrow_conditional_create(self, request: web.Request) -> web.Response:
        """Body: {"destination", "amount", "deadline", "preimage"?}"""
        signer = self._signer(request)
        body = await _json_body(request)
        _require(body, "destination", "amount", "deadline")
        receipt, pair = await self.service.orchestrator.create_conditional(
            signer, body["destination"], body["amount"], body["deadline"],
            preimage=body.get("preimage") or None,
        )
        return web.json_response({**receipt.to_dict(), **pair.to_dict()}, status=201)

    async def _escrow_finish(self, request: web.Request) -> web.Response:
        """Body: {"owner", "sequence", "fulfillment"?}"""
        signer = self._signer(request)
        body = await _json_body(request)
        _require(body, "owner", "sequence")
        receipt = await self.service.orchestrator.finish(
            signer, body["owner"], body["sequence"], body.get("fulfillment") or None,
        )
        return web.json_response(receipt.to_dict())

    async def _escrow_cancel(self, request: web.Request) -> web.Response:
        """Body: {"owner", "sequence"}"""
        signer = self._signer(request)
        body = await _json_body(request)
        _require(body, "owner", "sequence")
        receipt = await self.service.orchestrator.cancel(signer, body["owner"], body["sequence"])
        return web.json_response(receipt.to_dict())

    async def _escrow_status(self, request: web.Request) -> web.Response:
        status = await self.service.orchestrator.status(
            request.match_info["owner"], request.match_info["sequence"],
        )
        return web.json_response({"ok": True, **status})

    async def _qa_create(self, request: web.Request) -> web.Response:
        """
        Body: {"beneficiary_id", "amount", "deadline", "requirements": [...],
               "destination"?}
        The condition is kept by the service; only the condition is returned.
        """
        payer = self._signer(request)
        body = await _json_body(request)
        _require(body, "beneficiary_id", "amount", "deadline", "requirements")
        requirements = body["requirements"]
        if not isinstance(requirements, list):
            raise ValidationError("requirements must be a list of strings", field="requirements")
        rs = await self._gate().open_escrow(
            payer, str(body["beneficiary_id"]), body["amount"], body["deadline"],
            requirements, destination=body.get("destination") or None,
        )
        return web.json_response({"ok": True, **rs.public_view()}, status=201)

    async def _qa_proof(self, request: web.Request) -> web.Response:
        """Body: {"evidence": [...], "requirement_index"?}"""
        caller = self._signer(request)
        gate = self._gate()
        sequence = require_sequence(request.match_info["sequence"])
        body = await _json_body(request)
        _require(body, "evidence")
        evidence = body["evidence"]
        if isinstance(evidence, str):
            evidence = [evidence]
        index = body.get("requirement_index")
        if index is not None and (isinstance(index, bool) or not isinstance(index, int)):
            raise ValidationError("requirement_index must be an integer",
                                  field="requirement_index")
        report = await gate.submit_proof(sequence, caller.address, evidence,
                                         requirement_index=index)
        return web.json_response({"ok": True, **report.to_dict()})

    async def _qa_verify(self, request: web.Request) -> web.Response:
        caller = self._signer(request)
        gate = self._gate()
        sequence = require_sequence(request.match_info["sequence"])
        view = gate.status(sequence)
        if caller.address not in (view["owner"], view["destination"]):
            raise NotAuthorized(
                "Only the escrow owner or destination can trigger verification",
                required_party=[view["owner"], view["destination"]],
                caller=caller.address,
            )
        report = await gate.run_verification(sequence)
        return web.json_response({"ok": True, **report.to_dict()})

    async def _qa_status(self, request: web.Request) -> web.Response:
        sequence = require_sequence(request.match_info["sequence"])
        return web.json_response({"ok": True, **self._gate().status(sequence)})
