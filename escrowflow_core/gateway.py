"""
Ledger Gateway — the engine's only door to the ledger network.

Talks the rippled WebSocket JSON API over ``aiohttp``:

    {"id": 7, "command": "ledger_entry", ...}  →  {"id": 7, "status": "success", "result": {...}}

Connection model
----------------
* At most one live connection per gateway.
* ``connect()`` is single-flight: concurrent callers await the same
  in-flight attempt instead of opening duplicates.
* When a query finds the connection dropped, the gateway reconnects once
  and re-sends the query before raising ``LedgerUnavailable``.
* Submissions are never re-sent. If the final result of a submission is
  not observed within ``submit_timeout`` the outcome is ``UNKNOWN``.

Every request carries ``request_timeout``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from typing import Any, Awaitable, Callable, Optional

import aiohttp

from escrowflow_core.errors import (
    EntryNotFound,
    LedgerRequestFailed,
    LedgerUnavailable,
)
from escrowflow_core.precision import xrp_to_drops
from escrowflow_core.signer import SignedTransaction
from escrowflow_core.tx_result import (
    OutcomeStatus,
    SubmissionOutcome,
    expired_outcome,
    is_final_preliminary,
    normalize_submission,
    unknown_outcome,
)

logger = logging.getLogger("escrowflow.gateway")

TESTNET_URL = "wss://s.altnet.rippletest.net:51233"

# Errors that mean "the socket is gone", as opposed to a ledger-side error.
_CONNECTION_ERRORS = (ConnectionError, aiohttp.ClientError)


# ═══════════════════════════════════════════════════════════════════
#  WebSocket connection
# ═══════════════════════════════════════════════════════════════════

class WebSocketConnection:
    """One rippled WebSocket session with id-correlated request/response."""

    def __init__(self, session: aiohttp.ClientSession, ws: aiohttp.ClientWebSocketResponse):
        self._session = session
        self._ws = ws
        self._pending: dict[int, asyncio.Future] = {}
        self._next_id = 1
        self._reader = asyncio.ensure_future(self._read_loop())

    @classmethod
    async def open(cls, url: str) -> WebSocketConnection:
        session = aiohttp.ClientSession()
        try:
            ws = await session.ws_connect(url, heartbeat=30.0, max_msg_size=0)
        except BaseException:
            await session.close()
            raise
        return cls(session, ws)

    @property
    def closed(self) -> bool:
        return self._ws.closed or self._reader.done()

    async def request(self, payload: dict, timeout: float) -> dict:
        if self.closed:
            raise ConnectionResetError("ledger connection is closed")
        req_id = self._next_id
        self._next_id += 1
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = fut
        try:
            await self._ws.send_json({**payload, "id": req_id})
            return await asyncio.wait_for(fut, timeout)
        finally:
            self._pending.pop(req_id, None)

    async def _read_loop(self) -> None:
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        data = json.loads(msg.data)
                    except json.JSONDecodeError:
                        logger.warning("Discarding non-JSON frame from ledger")
                        continue
                    fut = self._pending.get(data.get("id"))
                    if fut is not None and not fut.done():
                        fut.set_result(data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning("Ledger websocket error: %s", self._ws.exception())
                    break
        finally:
            for fut in self._pending.values():
                if not fut.done():
                    fut.set_exception(ConnectionResetError("ledger connection lost"))
            logger.info("Ledger websocket closed")

    async def close(self) -> None:
        await self._ws.close()
        await self._session.close()
        if not self._reader.done():
            self._reader.cancel()


# ═══════════════════════════════════════════════════════════════════
#  Gateway
# ═══════════════════════════════════════════════════════════════════

class LedgerGateway:
    """Request/submit primitives over a single shared ledger connection."""

    def __init__(
        self,
        url: str = TESTNET_URL,
        *,
        request_timeout: float = 20.0,
        submit_timeout: float = 60.0,
        fee_cushion: float = 1.2,
        max_fee_drops: int = 2_000,
        last_ledger_offset: int = 20,
        poll_interval: float = 1.0,
        connector: Optional[Callable[[], Awaitable[Any]]] = None,
    ):
        self.url = url
        self.request_timeout = request_timeout
        self.submit_timeout = submit_timeout
        self.fee_cushion = fee_cushion
        self.max_fee_drops = max_fee_drops
        self.last_ledger_offset = last_ledger_offset
        self.poll_interval = poll_interval
        self._connector = connector or (lambda: WebSocketConnection.open(url))
        self._conn: Any = None
        self._connecting: Optional[asyncio.Future] = None
        self.connect_count = 0

    # ── connection ───────────────────────────────────────────────

    @property
    def connected(self) -> bool:
        return self._conn is not None and not self._conn.closed

    async def connect(self) -> Any:
        """Return the live connection, opening it (once) if needed."""
        if self.connected:
            return self._conn
        if self._connecting is None:
            self._connecting = asyncio.ensure_future(self._open())
        task = self._connecting
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._connecting is task:
                self._connecting = None

    async def _open(self) -> Any:
        logger.info("Connecting to ledger at %s", self.url)
        try:
            conn = await asyncio.wait_for(self._connector(), self.request_timeout)
        except (OSError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise LedgerUnavailable(
                f"Cannot connect to ledger at {self.url}: {exc or type(exc).__name__}",
                url=self.url,
            ) from exc
        self._conn = conn
        self.connect_count += 1
        return conn

    async def _discard(self, conn: Any) -> None:
        if self._conn is conn:
            self._conn = None
        try:
            await conn.close()
        except _CONNECTION_ERRORS as exc:
            logger.debug("Error closing stale ledger connection: %s", exc)

    async def close(self) -> None:
        if self._conn is not None:
            await self._discard(self._conn)

    async def _roundtrip(self, payload: dict) -> dict:
        conn = await self.connect()
        try:
            return await conn.request(payload, self.request_timeout)
        except _CONNECTION_ERRORS:
            await self._discard(conn)
            raise

    # ── queries ──────────────────────────────────────────────────

    async def request(self, command: str, **params: Any) -> dict:
        """Send a read-only command and return its ``result`` object."""
        payload = {"command": command, **params}
        try:
            try:
                response = await self._roundtrip(payload)
            except _CONNECTION_ERRORS as exc:
                logger.warning("Ledger connection dropped during %s (%s); reconnecting once",
                               command, exc)
                response = await self._roundtrip(payload)
        except _CONNECTION_ERRORS as exc:
            raise LedgerUnavailable(f"Ledger connection lost during {command}: {exc}",
                                    command=command) from exc
        except asyncio.TimeoutError as exc:
            raise LedgerUnavailable(
                f"Ledger request {command} timed out after {self.request_timeout}s",
                command=command,
            ) from exc
        return self._unwrap(command, response)

    @staticmethod
    def _unwrap(command: str, response: dict) -> dict:
        if response.get("status") == "error" or (
                "error" in response and "result" not in response):
            error = response.get("error", "unknownError")
            message = response.get("error_message") or response.get("error_exception") or error
            raise LedgerRequestFailed(f"Ledger {command} failed: {message}",
                                      error=error, command=command)
        return response.get("result", {})

    async def account_info(self, address: str, ledger_index: str = "validated") -> dict:
        return await self.request("account_info", account=address,
                                  ledger_index=ledger_index, strict=True)

    async def account_lines(self, address: str, peer: str | None = None) -> list[dict]:
        params: dict[str, Any] = {"account": address, "ledger_index": "validated"}
        if peer:
            params["peer"] = peer
        result = await self.request("account_lines", **params)
        return list(result.get("lines", []))

    async def get_escrow_entry(self, owner: str, sequence: int) -> dict:
        """Fetch the escrow ledger entry ``(owner, sequence)`` from the validated ledger."""
        try:
            result = await self.request(
                "ledger_entry",
                escrow={"owner": owner, "seq": int(sequence)},
                ledger_index="validated",
            )
        except LedgerRequestFailed as exc:
            if exc.error == "entryNotFound":
                raise EntryNotFound(
                    f"Escrow not found. Owner: {owner}, Sequence: {sequence}",
                    owner=owner, sequence=sequence,
                ) from exc
            raise
        node = result.get("node")
        if not node:
            raise EntryNotFound(f"Escrow not found. Owner: {owner}, Sequence: {sequence}",
                                owner=owner, sequence=sequence)
        return node

    async def get_reserves(self) -> tuple[int, int]:
        """(base reserve, owner reserve increment) in drops."""
        result = await self.request("server_info")
        ledger = result.get("info", {}).get("validated_ledger", {})
        base = xrp_to_drops(ledger.get("reserve_base_xrp", 10), "reserve_base_xrp")
        inc = xrp_to_drops(ledger.get("reserve_inc_xrp", 2), "reserve_inc_xrp")
        return base, inc

    async def validated_ledger_index(self) -> int | None:
        result = await self.request("ledger", ledger_index="validated")
        index = result.get("ledger_index", result.get("ledger", {}).get("ledger_index"))
        return int(index) if index is not None else None

    # ── transaction preparation ──────────────────────────────────

    async def autofill(self, tx: dict) -> dict:
        """Fill Sequence, Fee and LastLedgerSequence from the current ledger."""
        prepared = dict(tx)
        info = await self.account_info(prepared["Account"], ledger_index="current")
        if "Sequence" not in prepared:
            prepared["Sequence"] = int(info["account_data"]["Sequence"])
        if "Fee" not in prepared:
            prepared["Fee"] = str(await self.calculate_fee(prepared))
        current_index = info.get("ledger_current_index")
        if "LastLedgerSequence" not in prepared and current_index is not None:
            prepared["LastLedgerSequence"] = int(current_index) + self.last_ledger_offset
        return prepared

    async def calculate_fee(self, tx: dict) -> int:
        result = await self.request("fee")
        drops = result.get("drops", {})
        base = int(drops.get("base_fee", 10))
        open_fee = int(drops.get("open_ledger_fee", base))
        fee = min(max(base, math.ceil(max(base, open_fee) * self.fee_cushion)),
                  self.max_fee_drops)
        # EscrowFinish with a fulfillment costs 33 base fees plus one per 16 bytes
        if tx.get("TransactionType") == "EscrowFinish" and tx.get("Fulfillment"):
            size = len(tx["Fulfillment"]) // 2
            fee = max(fee, base * (33 + math.ceil(size / 16)))
        return fee

    # ── submission ───────────────────────────────────────────────

    async def submit_and_wait(self, signed: SignedTransaction,
                              last_ledger_sequence: int | None = None) -> SubmissionOutcome:
        """
        Submit *signed* and wait for a validated result.

        Returns an ``UNKNOWN`` outcome (never raises) once the submission may
        have reached the network but its result was not observed.
        """
        try:
            response = await self._roundtrip({"command": "submit", "tx_blob": signed.tx_blob})
        except (*_CONNECTION_ERRORS, asyncio.TimeoutError) as exc:
            logger.warning("Submit of %s not acknowledged: %s", signed.hash, exc)
            return unknown_outcome(signed.hash, f"submit not acknowledged: {exc or 'timeout'}")

        if response.get("status") == "error":
            error = response.get("error", "unknownError")
            logger.warning("Submit of %s refused: %s", signed.hash, error)
            return SubmissionOutcome(
                status=OutcomeStatus.REJECTED,
                code=error,
                hash=signed.hash,
                validated=False,
                message=response.get("error_exception") or response.get("error_message", ""),
                raw=response,
            )

        result = response.get("result", {})
        preliminary = result.get("engine_result", "")
        logger.info("Submitted %s: preliminary %s", signed.hash, preliminary)
        if is_final_preliminary(preliminary):
            return normalize_submission(response, tx_hash=signed.hash)
        return await self._wait_for_validation(signed.hash, preliminary, last_ledger_sequence)

    async def _wait_for_validation(self, tx_hash: str, preliminary: str,
                                   last_ledger_sequence: int | None) -> SubmissionOutcome:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.submit_timeout
        while loop.time() < deadline:
            await asyncio.sleep(self.poll_interval)
            validated_index = None
            try:
                # read the validated index first: a miss after it passed LLS is final
                validated_index = (await self.validated_ledger_index()
                                   if last_ledger_sequence is not None else None)
                tx_result = await self.request("tx", transaction=tx_hash)
            except LedgerRequestFailed as exc:
                if exc.error != "txnNotFound":
                    logger.debug("tx lookup for %s failed: %s", tx_hash, exc)
                tx_result = {}
            except LedgerUnavailable as exc:
                logger.debug("tx lookup for %s unavailable: %s", tx_hash, exc)
                continue
            if tx_result.get("validated"):
                outcome = normalize_submission({"result": tx_result}, tx_hash=tx_hash,
                                               preliminary=preliminary)
                logger.info("Transaction %s validated: %s", tx_hash, outcome.code)
                return outcome
            if (validated_index is not None and last_ledger_sequence is not None
                    and validated_index > last_ledger_sequence):
                logger.warning("Transaction %s expired past LastLedgerSequence %d",
                               tx_hash, last_ledger_sequence)
                return expired_outcome(tx_hash, last_ledger_sequence, preliminary)
        logger.warning("Transaction %s not validated within %.0fs", tx_hash, self.submit_timeout)
        return unknown_outcome(tx_hash, f"not validated within {self.submit_timeout}s",
                               preliminary)
