"""
Inbound webhook intake.

Order of checks for every call:
1. provider lookup (404), active flag (403), URL token (401)
2. rate limit (429)
3. payload size, declared then actual (413)
4. signature (401) and timestamp (400)
5. JSON parse (400)
6. event id / type extraction
7. dedup via EventStore.upsert_if_absent (duplicate -> 200)
8. resolve handlers, create execution records, enqueue async / run sync

``admit`` covers 1-3 so the route can reject before reading the body.
"""
from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Callable, Mapping

from hookgate.core.exceptions import (
    AuthenticationError,
    ErrorCode,
    ExecutionException,
    NotFoundException,
    PayloadTooLargeError,
    ProviderInactiveError,
    ProviderMisconfiguredError,
    RateLimitError,
    ValidationException,
)
from hookgate.core.logging import get_correlation_id, get_logger
from hookgate.core.rate_limiter import RateLimiter
from hookgate.domain.entities import IncomingEvent, ProviderConfig, new_id, utcnow
from hookgate.domain.services.execution_service import ExecutionService
from hookgate.domain.services.handler_registry import HandlerResolver
from hookgate.domain.stores import EventStore, ProviderStore
from hookgate.domain.verifiers import FailureReason, Verifier, build_verifier
from hookgate.domain.verifiers.base import secure_compare

logger = get_logger(__name__)

DEFAULT_EVENT_TYPE = "webhook.received"

STATUS_RECEIVED = "received"
STATUS_DUPLICATE = "duplicate"


@dataclass(frozen=True)
class IntakeResult:
    event_id: str
    status: str
    deduplicable: bool = True
    execution_ids: tuple[str, ...] = field(default_factory=tuple)

    @property
    def duplicate(self) -> bool:
        return self.status == STATUS_DUPLICATE

    @property
    def http_status(self) -> int:
        return 200 if self.duplicate else 201


class IntakeService:
    """Turns an authenticated inbound call into a stored, dispatched event"""

    def __init__(
        self,
        providers: ProviderStore,
        events: EventStore,
        executions: ExecutionService,
        resolver: HandlerResolver,
        rate_limiter: RateLimiter | None = None,
        verifier_factory: Callable[[ProviderConfig], Verifier] = build_verifier,
        clock: Callable[[], float] = time.time,
    ):
        self.providers = providers
        self.events = events
        self.executions = executions
        self.resolver = resolver
        self.rate_limiter = rate_limiter
        self.verifier_factory = verifier_factory
        self._clock = clock

    async def receive(
        self,
        provider_name: str,
        token: str,
        raw_payload: bytes,
        headers: Mapping[str, str],
        content_length: int | None = None,
    ) -> IntakeResult:
        provider = await self.admit(provider_name, token, content_length)
        return await self.ingest(provider, raw_payload, headers)

    # ==================== Steps 1-3 ====================

    async def admit(
        self,
        provider_name: str,
        token: str,
        content_length: int | None = None,
    ) -> ProviderConfig:
        provider = await self.providers.get(provider_name)
        if provider is None:
            logger.warning("Unknown provider", extra_data={"provider": provider_name})
            raise NotFoundException("Provider", provider_name)

        if not provider.active:
            logger.warning("Inactive provider", extra_data={"provider": provider_name})
            raise ProviderInactiveError(provider_name)

        if not secure_compare(token, provider.token):
            logger.warning("Invalid URL token", extra_data={"provider": provider_name})
            raise AuthenticationError(
                "Invalid token",
                error_code=ErrorCode.INVALID_TOKEN,
                details={"provider": provider_name}
            )

        if self.rate_limiter is not None and provider.rate_limiting_enabled:
            allowed = await self.rate_limiter.allow(
                provider.name,
                provider.rate_limit_requests,
                provider.rate_limit_period_seconds,
            )
            if not allowed:
                raise RateLimitError(
                    provider.name,
                    provider.rate_limit_requests,
                    provider.rate_limit_period_seconds,
                )

        if content_length is not None:
            self._check_size(provider, content_length)
        return provider

    def _check_size(self, provider: ProviderConfig, size: int) -> None:
        if provider.payload_size_limit_enabled and size > provider.max_payload_size_bytes:
            logger.warning(
                "Payload too large",
                extra_data={
                    "provider": provider.name,
                    "size": size,
                    "limit": provider.max_payload_size_bytes,
                }
            )
            raise PayloadTooLargeError(provider.name, size, provider.max_payload_size_bytes)

    # ==================== Steps 3-8 ====================

    async def ingest(
        self,
        provider: ProviderConfig,
        raw_payload: bytes,
        headers: Mapping[str, str],
    ) -> IntakeResult:
        self._check_size(provider, len(raw_payload))

        try:
            verifier = self.verifier_factory(provider)
        except ProviderMisconfiguredError:
            logger.error(
                "Provider verifier not registered",
                extra_data={"provider": provider.name, "verifier": provider.verifier}
            )
            raise
        verification = verifier.verify(
            raw_payload,
            headers,
            provider.signing_secret,
            provider.timestamp_tolerance_seconds,
            now=self._clock(),
        )
        if not verification.ok:
            logger.warning(
                "Signature verification failed",
                extra_data={
                    "provider": provider.name,
                    "verifier": verifier.name,
                    "reason": verification.reason.value,
                }
            )
            if verification.reason == FailureReason.TIMESTAMP_OUT_OF_TOLERANCE:
                raise ValidationException(
                    "Timestamp outside tolerance",
                    error_code=ErrorCode.STALE_TIMESTAMP,
                    details={"timestamp": verification.timestamp}
                )
            raise AuthenticationError(
                "Invalid signature",
                error_code=ErrorCode.INVALID_SIGNATURE,
                details={"reason": verification.reason.value}
            )

        try:
            payload = json.loads(raw_payload)
        except (ValueError, UnicodeDecodeError):
            logger.warning("Invalid JSON payload", extra_data={"provider": provider.name})
            raise ValidationException("Invalid JSON payload", error_code=ErrorCode.INVALID_JSON)

        event_type = verification.event_type or DEFAULT_EVENT_TYPE
        external_id = verification.event_id
        deduplicable = external_id is not None
        if not deduplicable:
            external_id = new_id()
            logger.warning(
                "Webhook without event id, deduplication disabled for this event",
                extra_data={
                    "provider": provider.name,
                    "event_type": event_type,
                    "synthesized_id": external_id,
                }
            )

        received_at = utcnow()
        event = IncomingEvent(
            provider=provider.name,
            external_id=external_id,
            event_type=event_type,
            raw_payload=raw_payload,
            payload=payload,
            headers=dict(headers),
            received_at=received_at,
            metadata={
                "received_at": received_at.isoformat(),
                "deduplicable": deduplicable,
                "correlation_id": get_correlation_id(),
            },
        )

        stored, inserted = await self.events.upsert_if_absent(event)
        if not inserted:
            logger.info(
                "Duplicate webhook",
                extra_data={
                    "provider": provider.name,
                    "external_id": external_id,
                    "event_id": stored.id,
                }
            )
            return IntakeResult(event_id=stored.id, status=STATUS_DUPLICATE)

        logger.info(
            "Webhook received",
            extra_data={
                "provider": provider.name,
                "external_id": external_id,
                "event_id": stored.id,
                "event_type": event_type,
            }
        )

        definitions = await self.resolver.resolve(provider.name, event_type)
        if not definitions:
            logger.info(
                "No handlers matched",
                extra_data={"event_id": stored.id, "event_type": event_type}
            )
        records = await self.executions.create_records(stored, definitions)

        for record in records:
            if record.is_async:
                continue
            try:
                await self.executions.run(record.id)
            except ExecutionException as e:
                # האירוע נשמר; כשל בריצה מקומית לא מכשיל את הבקשה
                logger.warning(
                    "Inline handler run not completed",
                    extra_data={"record_id": record.id, "error": e.message}
                )

        return IntakeResult(
            event_id=stored.id,
            status=STATUS_RECEIVED,
            deduplicable=deduplicable,
            execution_ids=tuple(r.id for r in records),
        )
