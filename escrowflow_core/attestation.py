"""
Attestation service client.

The attestation service is an external oracle: given one requirement text
and the evidence submitted for it, it answers with a ``Verdict``. The
engine never second-guesses the scoring; it only ANDs the verdicts.

``HTTPAttestationService`` speaks JSON over HTTP:

    POST <url>   {"requirement": "...", "evidence": ["...", ...], "context": {...}}
    200          {"verified": true, "confidence": 0.92, "rationale": "..."}
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import aiohttp

from escrowflow_core.errors import AttestationUnavailable

logger = logging.getLogger("escrowflow.attestation")


@dataclass(frozen=True)
class Verdict:
    verified: bool
    confidence: float = 0.0
    rationale: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> Verdict:
        try:
            confidence = float(data.get("confidence", 0.0))
        except (TypeError, ValueError):
            confidence = 0.0
        return cls(
            verified=data.get("verified") is True,
            confidence=min(max(confidence, 0.0), 1.0),
            rationale=str(data.get("rationale", "")),
        )

    def to_dict(self) -> dict:
        return {
            "verified": self.verified,
            "confidence": self.confidence,
            "rationale": self.rationale,
        }


@dataclass(frozen=True)
class VerificationSummary:
    verdicts: tuple[Verdict, ...]
    all_verified: bool
    verified_count: int
    total: int
    avg_confidence: float

    @property
    def summary(self) -> str:
        pct = f"{self.avg_confidence * 100:.1f}% confidence"
        if self.all_verified:
            return f"All {self.total} requirements verified ({pct})"
        return f"{self.verified_count}/{self.total} requirements verified ({pct})"

    def to_dict(self) -> dict:
        return {
            "all_verified": self.all_verified,
            "verified_count": self.verified_count,
            "total": self.total,
            "avg_confidence": self.avg_confidence,
            "summary": self.summary,
            "verdicts": [v.to_dict() for v in self.verdicts],
        }


def summarize(verdicts: Sequence[Verdict]) -> VerificationSummary:
    total = len(verdicts)
    verified = sum(1 for v in verdicts if v.verified)
    return VerificationSummary(
        verdicts=tuple(verdicts),
        # an empty AND would be vacuously true; nothing was attested
        all_verified=total > 0 and verified == total,
        verified_count=verified,
        total=total,
        avg_confidence=sum(v.confidence for v in verdicts) / total if total else 0.0,
    )


class AttestationService:
    """Interface: one requirement in, one verdict out."""

    async def verify(self, requirement: str, evidence: Sequence[str],
                     context: Optional[dict] = None) -> Verdict:
        raise NotImplementedError

    async def close(self) -> None:
        pass


async def verify_all(service: AttestationService,
                     items: Sequence[tuple[str, Sequence[str]]],
                     context: Optional[dict] = None) -> VerificationSummary:
    """Verify every ``(requirement, evidence)`` pair concurrently."""
    verdicts = await asyncio.gather(*(
        service.verify(text, evidence, {**(context or {}), "requirement_index": i})
        for i, (text, evidence) in enumerate(items)
    ))
    return summarize(verdicts)


class HTTPAttestationService(AttestationService):
    """Attestation over HTTP JSON with a bounded per-call timeout."""

    def __init__(self, url: str, *, api_key: str = "", timeout: float = 30.0,
                 session: Optional[aiohttp.ClientSession] = None):
        self.url = url
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def verify(self, requirement: str, evidence: Sequence[str],
                     context: Optional[dict] = None) -> Verdict:
        headers = {"X-API-Key": self.api_key} if self.api_key else {}
        payload: dict[str, Any] = {
            "requirement": requirement,
            "evidence": list(evidence),
            "context": context or {},
        }
        try:
            async with self._get_session().post(
                self.url, json=payload, headers=headers, timeout=self.timeout,
            ) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise AttestationUnavailable(
                        f"attestation service answered HTTP {resp.status}",
                        status=resp.status, body=text[:200],
                    )
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError as exc:
            raise AttestationUnavailable("attestation service timed out",
                                         url=self.url) from exc
        except aiohttp.ClientError as exc:
            raise AttestationUnavailable(f"attestation service unreachable: {exc}",
                                         url=self.url) from exc
        except ValueError as exc:
            raise AttestationUnavailable("attestation service returned invalid JSON",
                                         url=self.url) from exc
        if not isinstance(data, dict):
            raise AttestationUnavailable("attestation response must be a JSON object",
                                         url=self.url)
        verdict = Verdict.from_dict(data)
        logger.debug("Attestation for %r: verified=%s confidence=%.2f",
                     requirement[:40], verdict.verified, verdict.confidence)
        return verdict

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
