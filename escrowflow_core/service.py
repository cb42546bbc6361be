"""
Service wiring.

``EscrowService`` owns one gateway, the orchestrator, the signer resolver
and (when an attestation service is configured) the Verification Gate
with its store and optional Conversion Adapter.
"""

from __future__ import annotations

import logging
from typing import Optional

from escrowflow_core.attestation import AttestationService, HTTPAttestationService
from escrowflow_core.config import EscrowFlowConfig
from escrowflow_core.conversion import ConversionAdapter, StableAsset
from escrowflow_core.escrow import EscrowOrchestrator
from escrowflow_core.gateway import LedgerGateway
from escrowflow_core.requirements import InMemoryRequirementStore, RequirementStore
from escrowflow_core.signer import SignerResolver
from escrowflow_core.storage import SQLiteRequirementStore
from escrowflow_core.verification_gate import VerificationGate

logger = logging.getLogger("escrowflow.service")


class EscrowService:

    def __init__(
        self,
        gateway: LedgerGateway,
        orchestrator: EscrowOrchestrator,
        signers: SignerResolver,
        *,
        gate: Optional[VerificationGate] = None,
        store: Optional[RequirementStore] = None,
        attestation: Optional[AttestationService] = None,
    ):
        self.gateway = gateway
        self.orchestrator = orchestrator
        self.signers = signers
        self.gate = gate
        self.store = store
        self.attestation = attestation

    @classmethod
    def from_config(cls, cfg: EscrowFlowConfig) -> EscrowService:
        lc = cfg.ledger
        gateway = LedgerGateway(
            lc.url,
            request_timeout=lc.request_timeout,
            submit_timeout=lc.submit_timeout,
            fee_cushion=lc.fee_cushion,
            max_fee_drops=lc.max_fee_drops,
            last_ledger_offset=lc.last_ledger_offset,
            poll_interval=lc.poll_interval,
        )
        orchestrator = EscrowOrchestrator(
            gateway,
            min_finish_lead=cfg.escrow.min_finish_lead_seconds,
            refund_delay=cfg.escrow.refund_delay_seconds,
        )
        signers = SignerResolver.from_seeds(
            cfg.signers.users,
            service_seed=cfg.signers.service_seed,
            fallback=cfg.signers.fallback,
        )

        if not cfg.attestation.url:
            logger.info("No attestation service configured; QA escrows disabled")
            return cls(gateway, orchestrator, signers)

        if cfg.storage.enabled:
            seal_key = bytes.fromhex(cfg.storage.seal_key) if cfg.storage.seal_key else None
            store: RequirementStore = SQLiteRequirementStore(cfg.storage.path, seal_key=seal_key)
        else:
            store = InMemoryRequirementStore()

        attestation = HTTPAttestationService(
            cfg.attestation.url,
            api_key=cfg.attestation.api_key,
            timeout=cfg.attestation.timeout,
        )
        conversion = None
        if cfg.conversion.enabled:
            cc = cfg.conversion
            conversion = ConversionAdapter(
                gateway,
                StableAsset(cc.currency, cc.issuer),
                trust_limit=cc.trust_limit,
                reserve_buffer_drops=cc.reserve_buffer_drops,
                max_deliver=cc.max_deliver,
            )
        gate = VerificationGate(
            orchestrator, store, attestation, signers,
            conversion=conversion,
            retention_seconds=cfg.gate.retention_seconds,
        )
        return cls(gateway, orchestrator, signers, gate=gate, store=store,
                   attestation=attestation)

    def summary(self) -> dict:
        return {
            "ledger_url": self.gateway.url,
            "ledger_connected": self.gateway.connected,
            "signers": self.signers.summary(),
            "qa_enabled": self.gate is not None,
            "conversion_enabled": bool(self.gate and self.gate.conversion),
        }

    async def close(self) -> None:
        if self.attestation is not None:
            await self.attestation.close()
        await self.gateway.close()
        if self.store is not None:
            self.store.close()
        logger.info("Service closed")
