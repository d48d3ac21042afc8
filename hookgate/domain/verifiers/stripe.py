"""
Stripe webhook signatures.

``Stripe-Signature: t=<unix>,v1=<hex>[,v1=<hex>][,v0=<hex>]``, HMAC-SHA256 over
``b"<t>." + body``. Stripe sends several signatures while a secret is being
rolled, any one of them is enough.
"""
from __future__ import annotations

from typing import Mapping

from hookgate.domain.verifiers.base import (
    FailureReason,
    Verifier,
    extract_header,
    generate_hmac,
    is_hex,
    parse_kv_header,
    parse_timestamp,
    secure_compare_hex,
)

SIGNATURE_HEADER = "Stripe-Signature"


class StripeVerifier(Verifier):
    name = "stripe"

    def _check(self, raw_payload, headers: Mapping[str, str], secret, tolerance_seconds, now):
        header = extract_header(headers, SIGNATURE_HEADER)
        if not header:
            return FailureReason.MISSING_SIGNATURE, None

        parts = parse_kv_header(header)
        timestamp = parse_timestamp((parts.get("t") or [None])[0])
        signatures = parts.get("v1", []) + parts.get("v0", [])
        if timestamp is None or not signatures or not all(is_hex(s) for s in signatures):
            return FailureReason.MALFORMED_SIGNATURE, timestamp

        expected = generate_hmac(secret, str(timestamp).encode("ascii") + b"." + raw_payload)
        # בלי short-circuit: כל החתימות נבדקות
        matched = [secure_compare_hex(sig, expected) for sig in signatures]
        if not any(matched):
            return FailureReason.SIGNATURE_MISMATCH, timestamp

        if not self._timestamp_within_tolerance(timestamp, tolerance_seconds, now):
            return FailureReason.TIMESTAMP_OUT_OF_TOLERANCE, timestamp
        return None, timestamp
