"""
TOML-based configuration for the EscrowFlow service.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from escrowflow_core.config import load_config
    cfg = load_config("escrowflow.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from escrowflow_core.conversion import (
    DEFAULT_MAX_DELIVER,
    DEFAULT_RESERVE_BUFFER_DROPS,
    DEFAULT_TRUST_LIMIT,
)
from escrowflow_core.gateway import TESTNET_URL
from escrowflow_core.time_authority import MIN_FINISH_LEAD_SECONDS
from escrowflow_core.verification_gate import DEFAULT_RETENTION_SECONDS


@dataclass
class LedgerConfig:
    """Ledger network connection and submission settings."""
    url: str = TESTNET_URL
    request_timeout: float = 20.0
    submit_timeout: float = 60.0
    fee_cushion: float = 1.2
    max_fee_drops: int = 2_000
    last_ledger_offset: int = 20
    poll_interval: float = 1.0


@dataclass
class EscrowConfig:
    min_finish_lead_seconds: int = MIN_FINISH_LEAD_SECONDS
    # conditional escrows become cancellable this long after their deadline
    refund_delay_seconds: int = 1


@dataclass
class AttestationConfig:
    """External attestation service (empty url = verification disabled)."""
    url: str = ""
    api_key: str = ""
    timeout: float = 30.0


@dataclass
class ConversionConfig:
    """Best-effort conversion of released XRP into a stable asset."""
    enabled: bool = False
    currency: str = "XLUSD"
    issuer: str = "rPT1Sjq2YGrBMTttX4gZHuKu5h8VwwE4Cq"
    trust_limit: str = DEFAULT_TRUST_LIMIT
    reserve_buffer_drops: int = DEFAULT_RESERVE_BUFFER_DROPS
    max_deliver: str = DEFAULT_MAX_DELIVER


@dataclass
class GateConfig:
    retention_seconds: int = DEFAULT_RETENTION_SECONDS


@dataclass
class SignersConfig:
    """
    Signing wallets.

    ``users`` maps a user id (as sent in ``X-User-Id``) to a family seed.
    ``fallback`` is ``"never"`` or ``"service_wallet"``; the latter signs
    with ``service_seed`` for users without a wallet of their own.
    """
    fallback: str = "never"
    service_seed: str = ""
    users: dict[str, str] = field(default_factory=dict)


@dataclass
class StorageConfig:
    """Requirement-set persistence (disabled = in-memory)."""
    enabled: bool = False
    path: str = "data/escrowflow.db"
    seal_key: str = ""                 # 64 hex chars, AES-256-GCM for retained secrets


@dataclass
class APIConfig:
    """REST API settings."""
    host: str = "127.0.0.1"
    port: int = 8080
    api_key: str = ""                 # require this key on POST endpoints (empty = no auth)
    rate_limit_rpm: int = 120          # max requests per minute per IP (0 = unlimited)
    cors_origins: list[str] = field(default_factory=list)
    max_body_bytes: int = 65_536


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class EscrowFlowConfig:
    """Top-level configuration container."""
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    escrow: EscrowConfig = field(default_factory=EscrowConfig)
    attestation: AttestationConfig = field(default_factory=AttestationConfig)
    conversion: ConversionConfig = field(default_factory=ConversionConfig)
    gate: GateConfig = field(default_factory=GateConfig)
    signers: SignersConfig = field(default_factory=SignersConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    api: APIConfig = field(default_factory=APIConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def sections(self) -> list[tuple[str, Any]]:
        return [
            ("ledger", self.ledger),
            ("escrow", self.escrow),
            ("attestation", self.attestation),
            ("conversion", self.conversion),
            ("gate", self.gate),
            ("signers", self.signers),
            ("storage", self.storage),
            ("api", self.api),
            ("logging", self.logging),
        ]


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(path: str | None = None) -> EscrowFlowConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        ESCROWFLOW_LEDGER_URL        -> ledger.url
        ESCROWFLOW_ATTESTATION_URL   -> attestation.url
        ESCROWFLOW_ATTESTATION_KEY   -> attestation.api_key
        ESCROWFLOW_SERVICE_SEED      -> signers.service_seed
        ESCROWFLOW_SIGNER_FALLBACK   -> signers.fallback
        ESCROWFLOW_CONVERSION        -> conversion.enabled  (1/true/yes/on)
        ESCROWFLOW_API_HOST          -> api.host
        ESCROWFLOW_API_PORT          -> api.port
        ESCROWFLOW_API_KEY           -> api.api_key
        ESCROWFLOW_CORS_ORIGINS      -> api.cors_origins  (comma-separated)
        ESCROWFLOW_DB_PATH           -> storage.path  (also enables storage)
        ESCROWFLOW_SEAL_KEY          -> storage.seal_key
        ESCROWFLOW_LOG_LEVEL         -> logging.level
        ESCROWFLOW_LOG_FMT           -> logging.format
    """
    cfg = EscrowFlowConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in cfg.sections():
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    env = os.environ
    if v := env.get("ESCROWFLOW_LEDGER_URL"):
        cfg.ledger.url = v
    if v := env.get("ESCROWFLOW_ATTESTATION_URL"):
        cfg.attestation.url = v
    if v := env.get("ESCROWFLOW_ATTESTATION_KEY"):
        cfg.attestation.api_key = v
    if v := env.get("ESCROWFLOW_SERVICE_SEED"):
        cfg.signers.service_seed = v
    if v := env.get("ESCROWFLOW_SIGNER_FALLBACK"):
        cfg.signers.fallback = v.strip().lower()
    if v := env.get("ESCROWFLOW_CONVERSION"):
        cfg.conversion.enabled = _flag(v)
    if v := env.get("ESCROWFLOW_API_HOST"):
        cfg.api.host = v
    if v := env.get("ESCROWFLOW_API_PORT"):
        cfg.api.port = int(v)
    if v := env.get("ESCROWFLOW_API_KEY"):
        cfg.api.api_key = v
    if v := env.get("ESCROWFLOW_CORS_ORIGINS"):
        cfg.api.cors_origins = [o.strip() for o in v.split(",") if o.strip()]
    if v := env.get("ESCROWFLOW_DB_PATH"):
        cfg.storage.path = v
        cfg.storage.enabled = True
    if v := env.get("ESCROWFLOW_SEAL_KEY"):
        cfg.storage.seal_key = v
    if v := env.get("ESCROWFLOW_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := env.get("ESCROWFLOW_LOG_FMT"):
        cfg.logging.format = v

    return cfg
