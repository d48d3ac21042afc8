"""
HMAC-SHA256 signing for outbound webhooks.

The signed message is ``b"<timestamp>." + body`` over the exact bytes that go
on the wire; the same scheme is verified inbound by the ``hmac_sha256``
verifier, so two gateways can talk to each other.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any

SIGNATURE_PREFIX = "sha256="


def serialize_payload(payload: Any) -> bytes:
    """Serialize once; the signature covers these bytes and nothing else"""
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_signature(secret: str, body: bytes, timestamp: int) -> str:
    signed = str(timestamp).encode("ascii") + b"." + body
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


class SignatureGenerator:
    """Builds signature and timestamp headers for one outgoing body"""

    def __init__(
        self,
        secret: str,
        *,
        signature_header: str = "X-Webhook-Signature",
        timestamp_header: str = "X-Webhook-Timestamp",
    ):
        if not secret:
            raise ValueError("signing secret cannot be empty")
        self._secret = secret
        self.signature_header = signature_header
        self.timestamp_header = timestamp_header

    def headers_for(self, body: bytes, timestamp: int | None = None) -> dict[str, str]:
        ts = int(time.time()) if timestamp is None else timestamp
        return {
            self.signature_header: compute_signature(self._secret, body, ts),
            self.timestamp_header: str(ts),
        }
