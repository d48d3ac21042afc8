"""
Accepts everything. Only selected for providers with ``allow_unsigned=True``
and no signing secret; meant for local development and tests.
"""
from __future__ import annotations

import time
from typing import Mapping

from hookgate.domain.verifiers.base import VerificationResult, Verifier, peek_payload


class UnverifiedVerifier(Verifier):
    name = "unverified"

    def verify(
        self,
        raw_payload: bytes,
        headers: Mapping[str, str],
        secret: str | None,
        tolerance_seconds: int,
        *,
        now: float | None = None,
    ) -> VerificationResult:
        payload = peek_payload(raw_payload)
        return VerificationResult(
            ok=True,
            event_id=self.extract_event_id(payload, headers),
            event_type=self.extract_event_type(payload, headers),
            timestamp=int(time.time() if now is None else now),
        )
