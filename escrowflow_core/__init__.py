"""
EscrowFlow - conditional escrow lifecycle and verify-then-release engine.

Key features:
- Time-locked and crypto-conditional escrows on an XRP-ledger network
- PREIMAGE-SHA-256 condition/fulfillment codec
- Single-connection ledger gateway with validated-result submission
- Verification Gate: external attestation drives automatic release
- Best-effort conversion of released funds into a stable asset
"""

__version__ = "1.0.0"
__all__ = [
    "attestation",
    "condition",
    "config",
    "conversion",
    "errors",
    "escrow",
    "gateway",
    "requirements",
    "service",
    "signer",
    "storage",
    "time_authority",
    "verification_gate",
]
