"""
בדיקות לאימות חתימות - hookgate/domain/verifiers

מכסה:
- Stripe: t=/v1= header, כמה חתימות בזמן החלפת סוד, tolerance
- Square: base64 על URL + body
- GitHub: sha256= על ה-body, מזהה מ-X-GitHub-Delivery
- hmac_sha256: הסכמה של ה-gateway עצמו
- build_verifier: בחירת אסטרטגיה לפי provider
"""
import json

import pytest

from hookgate.core.exceptions import ErrorCode, ProviderMisconfiguredError
from hookgate.domain.entities import ProviderConfig
from hookgate.domain.signing import compute_signature
from hookgate.domain.verifiers import (
    FailureReason,
    GitHubVerifier,
    HmacSha256Verifier,
    SquareVerifier,
    StripeVerifier,
    UnverifiedVerifier,
    build_verifier,
    notification_url,
)
from hookgate.domain.verifiers.base import (
    extract_header,
    generate_hmac,
    generate_hmac_base64,
    parse_kv_header,
    secure_compare,
    secure_compare_hex,
)

SECRET = "whsec_verifier_secret"
NOW = 1_700_000_000
BODY = json.dumps({"id": "evt_123", "type": "payment_intent.succeeded"}).encode()


def stripe_header(body: bytes, timestamp: int = NOW, secret: str = SECRET, extra: str = "") -> str:
    signature = generate_hmac(secret, f"{timestamp}.".encode() + body)
    return f"t={timestamp},v1={signature}{extra}"


# ============================================================================
# Helpers
# ============================================================================


class TestHelpers:
    """פונקציות עזר משותפות"""

    @pytest.mark.unit
    def test_secure_compare_rejects_empty(self):
        assert not secure_compare("", "")
        assert not secure_compare(None, "abc")
        assert secure_compare("abc", "abc")

    @pytest.mark.unit
    def test_secure_compare_hex_ignores_case(self):
        assert secure_compare_hex("ABCDEF01", "abcdef01")
        assert not secure_compare_hex("ABCDEF02", "abcdef01")
        assert not secure_compare_hex(None, "abcdef01")

    @pytest.mark.unit
    def test_extract_header_is_case_insensitive(self):
        headers = {"stripe-signature": "t=1,v1=ab"}
        assert extract_header(headers, "Stripe-Signature") == "t=1,v1=ab"

    @pytest.mark.unit
    def test_extract_header_first_name_wins(self):
        headers = {"X-B": "second", "X-A": "first"}
        assert extract_header(headers, "X-A", "X-B") == "first"
        assert extract_header(headers, "X-Missing", "X-B") == "second"

    @pytest.mark.unit
    def test_parse_kv_header_keeps_repeated_keys(self):
        parsed = parse_kv_header("t=123, v1=aa, v1=bb, v0=cc, junk")
        assert parsed == {"t": ["123"], "v1": ["aa", "bb"], "v0": ["cc"]}


# ============================================================================
# Stripe
# ============================================================================


class TestStripeVerifier:
    """Stripe-Signature"""

    @pytest.fixture
    def verifier(self) -> StripeVerifier:
        return StripeVerifier()

    @pytest.mark.unit
    def test_valid_signature(self, verifier):
        headers = {"Stripe-Signature": stripe_header(BODY)}
        result = verifier.verify(BODY, headers, SECRET, 300, now=NOW + 10)

        assert result.ok
        assert result.event_id == "evt_123"
        assert result.event_type == "payment_intent.succeeded"
        assert result.timestamp == NOW

    @pytest.mark.unit
    def test_upper_case_signature(self, verifier):
        signature = generate_hmac(SECRET, f"{NOW}.".encode() + BODY).upper()
        headers = {"Stripe-Signature": f"t={NOW},v1={signature}"}
        assert verifier.verify(BODY, headers, SECRET, 300, now=NOW).ok

    @pytest.mark.unit
    def test_any_of_several_signatures_matches(self, verifier):
        """בזמן החלפת סוד Stripe שולחת כמה v1"""
        old = generate_hmac("old_secret", f"{NOW}.".encode() + BODY)
        header = f"t={NOW},v1={old}," + stripe_header(BODY).split(",", 1)[1]
        result = verifier.verify(BODY, {"Stripe-Signature": header}, SECRET, 300, now=NOW)
        assert result.ok

    @pytest.mark.unit
    def test_missing_header(self, verifier):
        result = verifier.verify(BODY, {}, SECRET, 300, now=NOW)
        assert not result.ok
        assert result.reason == FailureReason.MISSING_SIGNATURE

    @pytest.mark.unit
    @pytest.mark.parametrize("header", [
        "v1=abcdef",
        f"t={NOW}",
        f"t=notanumber,v1=abcdef",
        f"t={NOW},v1=not-hex",
    ])
    def test_malformed_header(self, verifier, header):
        result = verifier.verify(BODY, {"Stripe-Signature": header}, SECRET, 300, now=NOW)
        assert result.reason == FailureReason.MALFORMED_SIGNATURE

    @pytest.mark.unit
    def test_tampered_body(self, verifier):
        headers = {"Stripe-Signature": stripe_header(BODY)}
        result = verifier.verify(BODY + b" ", headers, SECRET, 300, now=NOW)
        assert result.reason == FailureReason.SIGNATURE_MISMATCH

    @pytest.mark.unit
    def test_timestamp_outside_tolerance(self, verifier):
        headers = {"Stripe-Signature": stripe_header(BODY)}
        result = verifier.verify(BODY, headers, SECRET, 300, now=NOW + 301)
        assert result.reason == FailureReason.TIMESTAMP_OUT_OF_TOLERANCE
        assert result.timestamp == NOW

    @pytest.mark.unit
    def test_zero_tolerance_disables_timestamp_check(self, verifier):
        headers = {"Stripe-Signature": stripe_header(BODY)}
        result = verifier.verify(BODY, headers, SECRET, 0, now=NOW + 86_400)
        assert result.ok

    @pytest.mark.unit
    def test_missing_secret(self, verifier):
        headers = {"Stripe-Signature": stripe_header(BODY)}
        result = verifier.verify(BODY, headers, None, 300, now=NOW)
        assert result.reason == FailureReason.SECRET_NOT_CONFIGURED


# ============================================================================
# Square
# ============================================================================


class TestSquareVerifier:
    """X-Square-Hmacsha256-Signature"""

    URL = "https://hooks.example.com/hooks/square/tok"

    @pytest.fixture
    def verifier(self) -> SquareVerifier:
        return SquareVerifier(self.URL)

    @pytest.mark.unit
    def test_valid_signature(self, verifier):
        body = json.dumps({"event_id": "sq_1", "type": "payment.updated"}).encode()
        signature = generate_hmac_base64(SECRET, self.URL.encode() + body)
        result = verifier.verify(body, {"X-Square-Hmacsha256-Signature": signature}, SECRET, 300)

        assert result.ok
        assert result.event_id == "sq_1"
        assert result.event_type == "payment.updated"

    @pytest.mark.unit
    def test_legacy_header_name(self, verifier):
        signature = generate_hmac_base64(SECRET, self.URL.encode() + BODY)
        result = verifier.verify(BODY, {"X-Square-Signature": signature}, SECRET, 300)
        assert result.ok

    @pytest.mark.unit
    def test_signature_bound_to_url(self):
        signature = generate_hmac_base64(SECRET, self.URL.encode() + BODY)
        other = SquareVerifier("https://elsewhere.example.com/hooks/square/tok")
        result = other.verify(BODY, {"X-Square-Signature": signature}, SECRET, 300)
        assert result.reason == FailureReason.SIGNATURE_MISMATCH

    @pytest.mark.unit
    def test_non_base64_signature(self, verifier):
        result = verifier.verify(BODY, {"X-Square-Signature": "!!!"}, SECRET, 300)
        assert result.reason == FailureReason.MALFORMED_SIGNATURE


# ============================================================================
# GitHub
# ============================================================================


class TestGitHubVerifier:
    """X-Hub-Signature-256"""

    @pytest.fixture
    def verifier(self) -> GitHubVerifier:
        return GitHubVerifier()

    @pytest.mark.unit
    def test_id_and_type_from_headers(self, verifier):
        body = json.dumps({"action": "opened", "number": 7}).encode()
        headers = {
            "X-Hub-Signature-256": "sha256=" + generate_hmac(SECRET, body),
            "X-GitHub-Delivery": "d-42",
            "X-GitHub-Event": "pull_request",
        }
        result = verifier.verify(body, headers, SECRET, 300)

        assert result.ok
        assert result.event_id == "d-42"
        assert result.event_type == "pull_request.opened"

    @pytest.mark.unit
    def test_missing_prefix_is_malformed(self, verifier):
        headers = {"X-Hub-Signature-256": generate_hmac(SECRET, BODY)}
        result = verifier.verify(BODY, headers, SECRET, 300)
        assert result.reason == FailureReason.MALFORMED_SIGNATURE

    @pytest.mark.unit
    def test_upper_case_signature(self, verifier):
        headers = {"X-Hub-Signature-256": "sha256=" + generate_hmac(SECRET, BODY).upper()}
        assert verifier.verify(BODY, headers, SECRET, 300).ok

    @pytest.mark.unit
    def test_wrong_secret(self, verifier):
        headers = {"X-Hub-Signature-256": "sha256=" + generate_hmac("other", BODY)}
        result = verifier.verify(BODY, headers, SECRET, 300)
        assert result.reason == FailureReason.SIGNATURE_MISMATCH


# ============================================================================
# hmac_sha256
# ============================================================================


class TestHmacSha256Verifier:
    """X-Webhook-Signature + X-Webhook-Timestamp"""

    @pytest.fixture
    def verifier(self) -> HmacSha256Verifier:
        return HmacSha256Verifier()

    @pytest.mark.unit
    def test_accepts_outbound_signature(self, verifier):
        """מה שה-gateway חותם בדרך החוצה מאומת בדרך פנימה"""
        headers = {
            "X-Webhook-Signature": compute_signature(SECRET, BODY, NOW),
            "X-Webhook-Timestamp": str(NOW),
        }
        result = verifier.verify(BODY, headers, SECRET, 300, now=NOW)
        assert result.ok
        assert result.event_id == "evt_123"

    @pytest.mark.unit
    def test_upper_case_signature(self, verifier):
        digest = compute_signature(SECRET, BODY, NOW)[len("sha256="):]
        headers = {"X-Webhook-Signature": "sha256=" + digest.upper(), "X-Webhook-Timestamp": str(NOW)}
        assert verifier.verify(BODY, headers, SECRET, 300, now=NOW).ok

    @pytest.mark.unit
    def test_missing_timestamp_header(self, verifier):
        headers = {"X-Webhook-Signature": compute_signature(SECRET, BODY, NOW)}
        result = verifier.verify(BODY, headers, SECRET, 300, now=NOW)
        assert result.reason == FailureReason.MISSING_SIGNATURE

    @pytest.mark.unit
    def test_non_numeric_timestamp(self, verifier):
        headers = {
            "X-Webhook-Signature": compute_signature(SECRET, BODY, NOW),
            "X-Webhook-Timestamp": "yesterday",
        }
        result = verifier.verify(BODY, headers, SECRET, 300, now=NOW)
        assert result.reason == FailureReason.MALFORMED_SIGNATURE

    @pytest.mark.unit
    def test_rotated_secret_candidates(self, verifier):
        signatures = ",".join([
            compute_signature("old_secret", BODY, NOW),
            compute_signature(SECRET, BODY, NOW),
        ])
        headers = {"X-Webhook-Signature": signatures, "X-Webhook-Timestamp": str(NOW)}
        result = verifier.verify(BODY, headers, SECRET, 300, now=NOW)
        assert result.ok

    @pytest.mark.unit
    def test_stale_timestamp(self, verifier):
        headers = {
            "X-Webhook-Signature": compute_signature(SECRET, BODY, NOW - 1000),
            "X-Webhook-Timestamp": str(NOW - 1000),
        }
        result = verifier.verify(BODY, headers, SECRET, 300, now=NOW)
        assert result.reason == FailureReason.TIMESTAMP_OUT_OF_TOLERANCE


# ============================================================================
# build_verifier
# ============================================================================


class TestBuildVerifier:
    """בחירת verifier לפי ProviderConfig"""

    @pytest.mark.unit
    @pytest.mark.parametrize("name,cls", [
        ("stripe", StripeVerifier),
        ("square", SquareVerifier),
        ("github", GitHubVerifier),
        ("hmac_sha256", HmacSha256Verifier),
    ])
    def test_by_name(self, name, cls):
        provider = ProviderConfig(name="p", token="t", signing_secret=SECRET, verifier=name)
        assert isinstance(build_verifier(provider), cls)

    @pytest.mark.unit
    def test_square_uses_notification_url(self):
        provider = ProviderConfig(name="sq", token="tok", signing_secret=SECRET, verifier="square")
        verifier = build_verifier(provider)
        assert verifier.notification_url == notification_url(provider)
        assert verifier.notification_url.endswith("/hooks/sq/tok")

    @pytest.mark.unit
    def test_unsigned_only_with_opt_in(self):
        opted_in = ProviderConfig(name="dev", token="t", allow_unsigned=True)
        assert isinstance(build_verifier(opted_in), UnverifiedVerifier)

        not_opted_in = ProviderConfig(name="dev", token="t", verifier="unverified")
        verifier = build_verifier(not_opted_in)
        assert isinstance(verifier, HmacSha256Verifier)
        result = verifier.verify(BODY, {}, not_opted_in.signing_secret, 300)
        assert result.reason == FailureReason.SECRET_NOT_CONFIGURED

    @pytest.mark.unit
    def test_allow_unsigned_ignored_when_secret_set(self):
        provider = ProviderConfig(name="p", token="t", signing_secret=SECRET, allow_unsigned=True)
        assert isinstance(build_verifier(provider), HmacSha256Verifier)

    @pytest.mark.unit
    def test_unknown_verifier(self):
        provider = ProviderConfig(name="p", token="t", signing_secret=SECRET, verifier="nope")
        with pytest.raises(ProviderMisconfiguredError) as exc_info:
            build_verifier(provider)

        assert exc_info.value.status_code == 500
        assert exc_info.value.error_code == ErrorCode.UNKNOWN_VERIFIER
        assert exc_info.value.details == {"provider": "p", "verifier": "nope"}
