"""
The gateway's own signing scheme, accepted inbound as well.

``X-Webhook-Signature: sha256=<hex>`` over ``b"<X-Webhook-Timestamp>." + body``.
"""
from __future__ import annotations

from typing import Mapping

from hookgate.domain.signing import SIGNATURE_PREFIX
from hookgate.domain.verifiers.base import (
    FailureReason,
    Verifier,
    extract_header,
    generate_hmac,
    is_hex,
    parse_timestamp,
    secure_compare_hex,
)

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"


class HmacSha256Verifier(Verifier):
    name = "hmac_sha256"

    def __init__(
        self,
        signature_header: str = SIGNATURE_HEADER,
        timestamp_header: str = TIMESTAMP_HEADER,
    ):
        self.signature_header = signature_header
        self.timestamp_header = timestamp_header

    def _check(self, raw_payload, headers: Mapping[str, str], secret, tolerance_seconds, now):
        signature = extract_header(headers, self.signature_header)
        raw_timestamp = extract_header(headers, self.timestamp_header)
        if not signature or not raw_timestamp:
            return FailureReason.MISSING_SIGNATURE, None

        timestamp = parse_timestamp(raw_timestamp)
        if timestamp is None:
            return FailureReason.MALFORMED_SIGNATURE, None

        # כמה חתימות מופרדות בפסיקים בזמן החלפת סוד
        candidates = [part.strip() for part in signature.split(",") if part.strip()]
        digests = []
        for candidate in candidates:
            if not candidate.startswith(SIGNATURE_PREFIX) or not is_hex(candidate[len(SIGNATURE_PREFIX):]):
                return FailureReason.MALFORMED_SIGNATURE, timestamp
            digests.append(candidate[len(SIGNATURE_PREFIX):])

        expected = generate_hmac(secret, str(timestamp).encode("ascii") + b"." + raw_payload)
        if not any([secure_compare_hex(digest, expected) for digest in digests]):
            return FailureReason.SIGNATURE_MISMATCH, timestamp

        if not self._timestamp_within_tolerance(timestamp, tolerance_seconds, now):
            return FailureReason.TIMESTAMP_OUT_OF_TOLERANCE, timestamp
        return None, timestamp
