"""
Signature verification strategies, registered by name.
"""
from __future__ import annotations

from typing import Callable

from hookgate.core.config import settings
from hookgate.core.exceptions import ProviderMisconfiguredError
from hookgate.domain.entities import ProviderConfig
from hookgate.domain.verifiers.base import FailureReason, VerificationResult, Verifier
from hookgate.domain.verifiers.github import GitHubVerifier
from hookgate.domain.verifiers.hmac_sha256 import HmacSha256Verifier
from hookgate.domain.verifiers.square import SquareVerifier
from hookgate.domain.verifiers.stripe import StripeVerifier
from hookgate.domain.verifiers.unverified import UnverifiedVerifier


def notification_url(provider: ProviderConfig) -> str:
    return f"{settings.WEBHOOK_BASE_URL.rstrip('/')}/hooks/{provider.name}/{provider.token}"


VERIFIERS: dict[str, Callable[[ProviderConfig], Verifier]] = {
    StripeVerifier.name: lambda provider: StripeVerifier(),
    SquareVerifier.name: lambda provider: SquareVerifier(notification_url(provider)),
    GitHubVerifier.name: lambda provider: GitHubVerifier(),
    HmacSha256Verifier.name: lambda provider: HmacSha256Verifier(),
    UnverifiedVerifier.name: lambda provider: UnverifiedVerifier(),
}


def build_verifier(provider: ProviderConfig) -> Verifier:
    """
    Verifier for a provider.

    The unverified strategy is only handed out when the provider opted in with
    ``allow_unsigned`` and has no secret; otherwise a missing secret fails
    verification with SECRET_NOT_CONFIGURED.
    """
    if provider.allow_unsigned and not provider.signing_secret:
        return UnverifiedVerifier()

    name = provider.verifier
    if name == UnverifiedVerifier.name:
        # unverified בלי allow_unsigned נופל ל-HMAC הרגיל ולכן נכשל בלי סוד
        name = HmacSha256Verifier.name
    factory = VERIFIERS.get(name)
    if factory is None:
        raise ProviderMisconfiguredError(provider.name, provider.verifier)
    return factory(provider)


__all__ = [
    "FailureReason",
    "VerificationResult",
    "Verifier",
    "VERIFIERS",
    "build_verifier",
    "notification_url",
    "GitHubVerifier",
    "HmacSha256Verifier",
    "SquareVerifier",
    "StripeVerifier",
    "UnverifiedVerifier",
]
