"""
Transaction signing and signer resolution.

The engine never stores user keys itself; a wallet/credential provider
hands it a ``Signer`` for an address. ``Secp256k1Signer`` is the concrete
implementation used by the service:

  - transactions are serialized with the ledger's canonical binary codec
    (``xrpl-py``)
  - the signing digest is SHA-512-half of the ``STX\\0``-prefixed blob
  - signatures are deterministic (RFC 6979), low-S, DER encoded (``ecdsa``)
  - the transaction hash is SHA-512-half of ``TXN\\0 || signed blob``

``SignerResolver`` makes the "use the user's wallet, else the service
wallet" decision explicit instead of an exception-driven fallback.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from ecdsa import SECP256k1, SigningKey
from ecdsa.util import sigencode_der_canonize
from xrpl.constants import XRPLException
from xrpl.core.binarycodec import encode, encode_for_signing
from xrpl.core.keypairs import derive_classic_address, derive_keypair

from escrowflow_core.errors import NoSignerAvailable, ValidationError
from escrowflow_core.validation import normalize_seed

logger = logging.getLogger("escrowflow.signer")

_TXN_HASH_PREFIX = bytes.fromhex("54584E00")   # "TXN\0"


def sha512_half(data: bytes) -> bytes:
    return hashlib.sha512(data).digest()[:32]


def transaction_hash(tx_blob: str) -> str:
    """Ledger transaction ID of a signed, serialized transaction."""
    return sha512_half(_TXN_HASH_PREFIX + bytes.fromhex(tx_blob)).hex().upper()


@dataclass(frozen=True)
class SignedTransaction:
    tx_blob: str
    hash: str
    tx_json: dict = field(default_factory=dict, repr=False, compare=False)


class Signer:
    """Signing capability for one ledger address."""

    address: str = ""

    def sign(self, tx_json: dict) -> SignedTransaction:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.address})"


class Secp256k1Signer(Signer):
    """Signs with a secp256k1 private key."""

    def __init__(self, private_key: bytes):
        if len(private_key) != 32:
            raise ValidationError("secp256k1 private key must be 32 bytes")
        self._key = SigningKey.from_string(private_key, curve=SECP256k1)
        self.public_key = self._key.get_verifying_key().to_string("compressed").hex().upper()
        self.address = derive_classic_address(self.public_key)

    @classmethod
    def from_seed(cls, seed: str) -> Secp256k1Signer:
        """Derive the account key from a family seed (``s...``)."""
        seed = normalize_seed(seed)
        try:
            _public, private = derive_keypair(seed)
        except (XRPLException, ValueError) as exc:
            raise ValidationError(f"invalid family seed: {exc}", field="seed") from exc
        if private.upper().startswith("ED"):
            raise ValidationError("ed25519 seeds are not supported by this signer",
                                  field="seed")
        # secp256k1 private keys come back as 33 bytes with a 00 pad
        return cls(bytes.fromhex(private)[-32:])

    @property
    def verifying_key(self):
        return self._key.get_verifying_key()

    def sign(self, tx_json: dict) -> SignedTransaction:
        tx = dict(tx_json)
        tx["SigningPubKey"] = self.public_key
        tx.pop("TxnSignature", None)
        digest = sha512_half(bytes.fromhex(encode_for_signing(tx)))
        signature = self._key.sign_digest_deterministic(
            digest, hashfunc=hashlib.sha256, sigencode=sigencode_der_canonize,
        )
        tx["TxnSignature"] = signature.hex().upper()
        blob = encode(tx)
        return SignedTransaction(tx_blob=blob, hash=transaction_hash(blob), tx_json=tx)


# ── Resolution ───────────────────────────────────────────────────

class FallbackPolicy(Enum):
    NEVER = "never"
    SERVICE_WALLET = "service_wallet"


class SignerResolver:
    """
    Maps user ids to signers.

    ``resolve`` returns the user's own signer when the provider has one.
    Otherwise the configured fallback policy decides: ``never`` raises
    ``NoSignerAvailable``; ``service_wallet`` returns the service signer.
    """

    def __init__(
        self,
        provider: Optional[Callable[[str], Optional[Signer]]] = None,
        *,
        service_signer: Optional[Signer] = None,
        fallback: FallbackPolicy | str = FallbackPolicy.NEVER,
    ):
        self._provider = provider
        self._signers: dict[str, Signer] = {}
        self.service_signer = service_signer
        self.fallback = FallbackPolicy(fallback)

    def register(self, user_id: str, signer: Signer) -> None:
        self._signers[user_id] = signer

    def resolve(self, user_id: str) -> Signer:
        signer = self._signers.get(user_id)
        if signer is None and self._provider is not None:
            signer = self._provider(user_id)
        if signer is not None:
            return signer
        if self.fallback is FallbackPolicy.SERVICE_WALLET and self.service_signer is not None:
            logger.warning("No wallet for user %s; using service wallet %s",
                           user_id, self.service_signer.address)
            return self.service_signer
        raise NoSignerAvailable(
            f"No signing wallet available for user {user_id!r}",
            user_id=user_id, fallback=self.fallback.value,
        )

    @classmethod
    def from_seeds(cls, user_seeds: dict[str, str], *, service_seed: str = "",
                   fallback: FallbackPolicy | str = FallbackPolicy.NEVER) -> SignerResolver:
        resolver = cls(
            service_signer=Secp256k1Signer.from_seed(service_seed) if service_seed else None,
            fallback=fallback,
        )
        for user_id, seed in user_seeds.items():
            resolver.register(user_id, Secp256k1Signer.from_seed(seed))
        return resolver

    def summary(self) -> dict[str, Any]:
        return {
            "registered": len(self._signers),
            "fallback": self.fallback.value,
            "service_wallet": self.service_signer.address if self.service_signer else None,
        }
