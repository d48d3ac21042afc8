"""
GitHub-style ``X-Hub-Signature-256: sha256=<hex>`` signatures (also used by Meta).

The event id comes from ``X-GitHub-Delivery`` and the type from
``X-GitHub-Event`` plus the payload's ``action`` (``pull_request.opened``).
"""
from __future__ import annotations

from typing import Any, Mapping

from hookgate.domain.verifiers.base import (
    FailureReason,
    Verifier,
    extract_header,
    generate_hmac,
    is_hex,
    secure_compare_hex,
)

SIGNATURE_HEADER = "X-Hub-Signature-256"
DELIVERY_HEADER = "X-GitHub-Delivery"
EVENT_HEADER = "X-GitHub-Event"


class GitHubVerifier(Verifier):
    name = "github"

    def _check(self, raw_payload, headers: Mapping[str, str], secret, tolerance_seconds, now):
        header = extract_header(headers, SIGNATURE_HEADER)
        if not header:
            return FailureReason.MISSING_SIGNATURE, None
        if not header.startswith("sha256=") or not is_hex(header[7:]):
            return FailureReason.MALFORMED_SIGNATURE, None

        expected = generate_hmac(secret, raw_payload)
        if not secure_compare_hex(header[7:], expected):
            return FailureReason.SIGNATURE_MISMATCH, None
        return None, None

    def extract_event_id(self, payload: Any, headers: Mapping[str, str]) -> str | None:
        return extract_header(headers, DELIVERY_HEADER) or super().extract_event_id(payload, headers)

    def extract_event_type(self, payload: Any, headers: Mapping[str, str]) -> str | None:
        event = extract_header(headers, EVENT_HEADER)
        if not event:
            return super().extract_event_type(payload, headers)
        action = payload.get("action") if isinstance(payload, dict) else None
        return f"{event}.{action}" if action else event
