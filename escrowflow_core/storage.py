"""
SQLite-based persistence for requirement sets.

Keeps the Gate's requirement sets across restarts so a verification run
after a restart can still release the escrow. The retained preimage and
fulfillment are sealed with AES-256-GCM when a seal key is configured;
without one they are stored in clear (development only, logged loudly).

Usage:
    store = SQLiteRequirementStore("data/escrowflow.db", seal_key=key)
    store.put(requirement_set)
    rs = store.get(sequence)
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
from pathlib import Path
from typing import Iterator, Optional

from Crypto.Cipher import AES

from escrowflow_core.requirements import RequirementSet, RequirementStore

logger = logging.getLogger("escrowflow.storage")

_SEALED_PREFIX = "gcm1:"


class SecretSealer:
    """AES-256-GCM sealing of small secrets into printable strings."""

    def __init__(self, key: bytes):
        if len(key) != 32:
            raise ValueError("seal key must be 32 bytes (AES-256)")
        self._key = key

    @classmethod
    def from_hex(cls, key_hex: str) -> SecretSealer:
        return cls(bytes.fromhex(key_hex.strip()))

    def seal(self, data: bytes) -> str:
        nonce = os.urandom(12)  # 96-bit nonce, unique per encryption
        cipher = AES.new(self._key, AES.MODE_GCM, nonce=nonce)
        ciphertext, tag = cipher.encrypt_and_digest(data)
        return _SEALED_PREFIX + (nonce + tag + ciphertext).hex()

    def unseal(self, sealed: str) -> bytes:
        """Raises ValueError on a wrong key or tampered ciphertext."""
        if not sealed.startswith(_SEALED_PREFIX):
            raise ValueError("not a sealed value")
        raw = bytes.fromhex(sealed[len(_SEALED_PREFIX):])
        nonce, tag, ciphertext = raw[:12], raw[12:28], raw[28:]
        cipher = AES.new(self._key, AES.MODE_GCM, nonce=nonce)
        return cipher.decrypt_and_verify(ciphertext, tag)


class SQLiteRequirementStore(RequirementStore):
    """Thin SQLite wrapper implementing the requirement-store interface."""

    CURRENT_SCHEMA_VERSION = 1

    def __init__(self, db_path: str = "data/escrowflow.db",
                 seal_key: Optional[bytes] = None):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._sealer = SecretSealer(seal_key) if seal_key else None
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._create_tables()
        self._ensure_schema_version()
        if self._sealer is None:
            logger.warning("Requirement store %s has no seal key; "
                           "retained secrets are stored unencrypted", db_path)
        logger.info("Storage opened: %s", db_path)

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS requirement_sets (
                sequence        INTEGER PRIMARY KEY,
                owner           TEXT NOT NULL,
                destination     TEXT NOT NULL,
                deadline        INTEGER NOT NULL,
                created_at      REAL NOT NULL,
                all_verified    INTEGER NOT NULL DEFAULT 0,
                escrow_finished INTEGER NOT NULL DEFAULT 0,
                document        TEXT NOT NULL,
                secret          TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)
        c.commit()

    def _ensure_schema_version(self) -> None:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
            self._conn.commit()
        elif row["version"] > self.CURRENT_SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema v{row['version']} is newer than this software "
                f"(v{self.CURRENT_SCHEMA_VERSION}).  Upgrade EscrowFlow."
            )

    # ── secrets ──────────────────────────────────────────────────

    def _seal(self, rs: RequirementSet) -> str:
        plain = json.dumps({"preimage": rs.preimage, "fulfillment": rs.fulfillment})
        if self._sealer is None:
            return plain
        return self._sealer.seal(plain.encode())

    def _unseal(self, stored: str) -> dict:
        if stored.startswith(_SEALED_PREFIX):
            if self._sealer is None:
                raise ValueError("stored secret is sealed but no seal key is configured")
            return json.loads(self._sealer.unseal(stored))
        return json.loads(stored)

    # ── RequirementStore ─────────────────────────────────────────

    def get(self, sequence: int) -> Optional[RequirementSet]:
        row = self._conn.execute(
            "SELECT * FROM requirement_sets WHERE sequence = ?", (sequence,)
        ).fetchone()
        return self._from_row(row) if row else None

    def put(self, rs: RequirementSet) -> None:
        record = rs.to_record()
        record.pop("preimage")
        record.pop("fulfillment")
        self._conn.execute(
            """INSERT OR REPLACE INTO requirement_sets
               (sequence, owner, destination, deadline, created_at,
                all_verified, escrow_finished, document, secret)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (rs.sequence, rs.owner, rs.destination, rs.deadline, rs.created_at,
             int(rs.all_verified), int(rs.escrow_finished),
             json.dumps(record), self._seal(rs)),
        )
        self._conn.commit()

    def delete(self, sequence: int) -> bool:
        cur = self._conn.execute(
            "DELETE FROM requirement_sets WHERE sequence = ?", (sequence,)
        )
        self._conn.commit()
        return cur.rowcount > 0

    def __iter__(self) -> Iterator[RequirementSet]:
        rows = self._conn.execute(
            "SELECT * FROM requirement_sets ORDER BY sequence"
        ).fetchall()
        return iter([self._from_row(r) for r in rows])

    def _from_row(self, row: sqlite3.Row) -> RequirementSet:
        record = json.loads(row["document"])
        record.update(self._unseal(row["secret"]))
        return RequirementSet.from_record(record)

    def stats(self) -> dict:
        row = self._conn.execute(
            """SELECT COUNT(*) AS total,
                      COALESCE(SUM(all_verified), 0) AS verified,
                      COALESCE(SUM(escrow_finished), 0) AS finished
               FROM requirement_sets"""
        ).fetchone()
        return {"total": row["total"], "verified": row["verified"],
                "finished": row["finished"], "sealed": self._sealer is not None}

    def close(self) -> None:
        self._conn.close()
        logger.info("Storage closed")
