"""
Square webhook signatures: base64 HMAC-SHA256 over notification URL + body.
"""
from __future__ import annotations

from typing import Any, Mapping

from hookgate.domain.verifiers.base import (
    FailureReason,
    Verifier,
    extract_header,
    generate_hmac_base64,
    is_base64,
    secure_compare,
)

SIGNATURE_HMACSHA256_HEADER = "X-Square-Hmacsha256-Signature"
SIGNATURE_HEADER = "X-Square-Signature"


class SquareVerifier(Verifier):
    name = "square"

    def __init__(self, notification_url: str):
        # חייב להיות זהה בדיוק ל-URL שהוגדר ב-Square
        self.notification_url = notification_url

    def _check(self, raw_payload, headers: Mapping[str, str], secret, tolerance_seconds, now):
        signature = extract_header(headers, SIGNATURE_HMACSHA256_HEADER, SIGNATURE_HEADER)
        if not signature:
            return FailureReason.MISSING_SIGNATURE, None
        if not is_base64(signature):
            return FailureReason.MALFORMED_SIGNATURE, None

        expected = generate_hmac_base64(secret, self.notification_url.encode("utf-8") + raw_payload)
        if not secure_compare(signature, expected):
            return FailureReason.SIGNATURE_MISMATCH, None
        return None, None

    def extract_event_id(self, payload: Any, headers: Mapping[str, str]) -> str | None:
        if isinstance(payload, dict) and payload.get("event_id"):
            return str(payload["event_id"])
        return None
