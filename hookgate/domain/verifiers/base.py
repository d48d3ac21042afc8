"""
Base class and helpers for per-provider signature verification.

Every verifier works on the raw request bytes. Subclasses implement
``_check`` and return a failure reason or ``None``; the base class handles the
missing-secret rule and peeks the event id/type out of the payload.
"""
from __future__ import annotations

import base64
import binascii
import enum
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Mapping


class FailureReason(str, enum.Enum):
    MISSING_SIGNATURE = "missing_signature"
    MALFORMED_SIGNATURE = "malformed_signature"
    SECRET_NOT_CONFIGURED = "secret_not_configured"
    SIGNATURE_MISMATCH = "signature_mismatch"
    TIMESTAMP_OUT_OF_TOLERANCE = "timestamp_out_of_tolerance"


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    event_id: str | None = None
    event_type: str | None = None
    timestamp: int | None = None
    reason: FailureReason | None = None

    @classmethod
    def failure(cls, reason: FailureReason, timestamp: int | None = None) -> "VerificationResult":
        return cls(ok=False, reason=reason, timestamp=timestamp)


# ==================== Helpers ====================


def secure_compare(a: str | None, b: str | None) -> bool:
    """Constant-time comparison; empty values never match"""
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def secure_compare_hex(a: str | None, b: str | None) -> bool:
    """secure_compare for hex digests, which providers may send in upper case"""
    return secure_compare(a.lower() if a else a, b.lower() if b else b)


def generate_hmac(secret: str, data: bytes) -> str:
    """HMAC-SHA256, hex encoded"""
    return hmac.new(secret.encode("utf-8"), data, hashlib.sha256).hexdigest()


def generate_hmac_base64(secret: str, data: bytes) -> str:
    """HMAC-SHA256, base64 encoded"""
    digest = hmac.new(secret.encode("utf-8"), data, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def extract_header(headers: Mapping[str, str], *names: str) -> str | None:
    """Case-insensitive header lookup; first non-empty value wins"""
    lowered = {key.lower(): value for key, value in headers.items()}
    for name in names:
        value = lowered.get(name.lower())
        if value:
            return value
    return None


def parse_kv_header(value: str) -> dict[str, list[str]]:
    """Parse ``t=123,v1=abc,v0=def`` into ``{"t": ["123"], "v1": ["abc"], ...}``"""
    parsed: dict[str, list[str]] = {}
    for pair in value.split(","):
        key, sep, item = pair.partition("=")
        key, item = key.strip(), item.strip()
        if not sep or not key or not item:
            continue
        parsed.setdefault(key, []).append(item)
    return parsed


def parse_timestamp(value: str | int | None) -> int | None:
    """Unix seconds from an int or a digit string; anything else is None"""
    if value is None:
        return None
    if isinstance(value, int):
        return value
    value = value.strip()
    if not value.isdigit():
        return None
    return int(value)


def is_hex(value: str) -> bool:
    try:
        bytes.fromhex(value)
    except ValueError:
        return False
    return True


def is_base64(value: str) -> bool:
    try:
        base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return False
    return True


def peek_payload(raw_payload: bytes) -> Any:
    """Best-effort parse for id/type extraction; the pipeline does the real parse"""
    try:
        return json.loads(raw_payload)
    except (ValueError, UnicodeDecodeError):
        return None


# ==================== Base verifier ====================


class Verifier:
    """Signature strategy for one provider family"""

    name = "base"

    def verify(
        self,
        raw_payload: bytes,
        headers: Mapping[str, str],
        secret: str | None,
        tolerance_seconds: int,
        *,
        now: float | None = None,
    ) -> VerificationResult:
        if not secret:
            return VerificationResult.failure(FailureReason.SECRET_NOT_CONFIGURED)

        current = time.time() if now is None else now
        reason, timestamp = self._check(raw_payload, headers, secret, tolerance_seconds, current)
        if reason is not None:
            return VerificationResult.failure(reason, timestamp)

        payload = peek_payload(raw_payload)
        return VerificationResult(
            ok=True,
            event_id=self.extract_event_id(payload, headers),
            event_type=self.extract_event_type(payload, headers),
            timestamp=timestamp,
        )

    def _check(
        self,
        raw_payload: bytes,
        headers: Mapping[str, str],
        secret: str,
        tolerance_seconds: int,
        now: float,
    ) -> tuple[FailureReason | None, int | None]:
        raise NotImplementedError

    @staticmethod
    def _timestamp_within_tolerance(timestamp: int, tolerance_seconds: int, now: float) -> bool:
        if tolerance_seconds <= 0:
            return True
        return abs(int(now) - timestamp) <= tolerance_seconds

    def extract_event_id(self, payload: Any, headers: Mapping[str, str]) -> str | None:
        if not isinstance(payload, dict):
            return None
        value = payload.get("id") or payload.get("event_id")
        return str(value) if value not in (None, "") else None

    def extract_event_type(self, payload: Any, headers: Mapping[str, str]) -> str | None:
        if not isinstance(payload, dict):
            return None
        value = payload.get("type") or payload.get("event_type")
        return str(value) if value else None
