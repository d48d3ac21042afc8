"""
Outbound webhook delivery.

Each attempt:
- claims the delivery (pending -> processing) with a compare-and-swap
- rejects non-http(s) targets and hosts that resolve to internal addresses
- asks the endpoint's circuit breaker; open means no network call and no
  attempt consumed, the delivery is parked as failed with next_retry_at
- signs the exact bytes it sends and POSTs them with httpx
- 2xx -> delivered; anything else -> breaker failure plus backoff, back to
  pending while attempts remain, failed (terminal) otherwise
"""
from __future__ import annotations

import asyncio
import ipaddress
import math
import socket
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable
from urllib.parse import urlparse

import httpx

from hookgate.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from hookgate.core.config import settings
from hookgate.core.exceptions import NotFoundException, StaleRecordError, UnsafeTargetError
from hookgate.core.logging import get_logger
from hookgate.domain.entities import (
    DeliveryStatus,
    OutboundDelivery,
    OutboundEndpoint,
    utcnow,
)
from hookgate.domain.services.backoff import attempts_exhausted, next_retry_at
from hookgate.domain.signing import SignatureGenerator, serialize_payload
from hookgate.domain.stores import DELIVER_WEBHOOK_TASK, DeliveryStore, EndpointStore, Task, TaskQueue

logger = get_logger(__name__)

DELIVERY_ID_HEADER = "X-Webhook-Delivery-Id"
CIRCUIT_OPEN_ERROR = "circuit open"
RESPONSE_BODY_MAX_LENGTH = 10_000
ERROR_MAX_LENGTH = 1_000
ALLOWED_SCHEMES = ("http", "https")


def is_unsafe_address(address: str) -> bool:
    ip = ipaddress.ip_address(address)
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
        or ip.is_unspecified
    )


class DeliveryService:
    """Creates and delivers OutboundDelivery records"""

    def __init__(
        self,
        deliveries: DeliveryStore,
        endpoints: EndpointStore,
        breaker: CircuitBreaker,
        task_queue: TaskQueue,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float | None = None,
        block_private_networks: bool | None = None,
        processing_timeout_seconds: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.deliveries = deliveries
        self.endpoints = endpoints
        self.breaker = breaker
        self.task_queue = task_queue
        self.http_client = http_client
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.OUTBOUND_TIMEOUT_SECONDS
        )
        self.block_private_networks = (
            block_private_networks
            if block_private_networks is not None
            else settings.OUTBOUND_BLOCK_PRIVATE_NETWORKS
        )
        self.processing_timeout = timedelta(
            seconds=processing_timeout_seconds
            if processing_timeout_seconds is not None
            else settings.EXECUTION_LOCK_TIMEOUT_SECONDS
        )
        self._clock = clock

    # ==================== Enqueue ====================

    async def enqueue(
        self,
        endpoint: OutboundEndpoint | str,
        payload: Any,
        headers: dict[str, str] | None = None,
    ) -> OutboundDelivery:
        if isinstance(endpoint, str):
            endpoint = await self._endpoint(endpoint)

        delivery = OutboundDelivery(
            endpoint=endpoint.name,
            target_url=endpoint.url,
            payload=payload,
            max_attempts=endpoint.max_attempts,
            retry_delays=tuple(endpoint.retry_delays),
            headers={**dict(endpoint.default_headers), **(headers or {})},
        )
        await self.deliveries.save(delivery)
        self._submit(delivery.id, 0)

        logger.info(
            "Outbound delivery enqueued",
            extra_data={
                "delivery_id": delivery.id,
                "endpoint": endpoint.name,
            }
        )
        return delivery

    def _submit(self, delivery_id: str, delay: float) -> None:
        self.task_queue.enqueue(Task(DELIVER_WEBHOOK_TASK, (delivery_id,)), delay)

    async def _endpoint(self, name: str) -> OutboundEndpoint:
        endpoint = await self.endpoints.get(name)
        if endpoint is None:
            raise NotFoundException("OutboundEndpoint", name)
        return endpoint

    # ==================== Deliver ====================

    async def _swap(self, current: OutboundDelivery, new: OutboundDelivery) -> OutboundDelivery:
        if not await self.deliveries.compare_and_swap(current.id, current.version, new):
            logger.warning(
                "Stale delivery write dropped",
                extra_data={"delivery_id": current.id, "expected_version": current.version}
            )
            raise StaleRecordError(current.id, current.version)
        return new.copy(version=current.version + 1)

    async def deliver(self, delivery_id: str) -> OutboundDelivery:
        delivery = await self.deliveries.load(delivery_id)
        if delivery is None:
            raise NotFoundException("OutboundDelivery", delivery_id)

        if delivery.is_terminal:
            logger.info(
                "Delivery already final, skipping",
                extra_data={"delivery_id": delivery_id, "status": delivery.status.value}
            )
            return delivery

        now = self._clock()
        if (
            delivery.status == DeliveryStatus.PROCESSING
            and delivery.last_attempt_at is not None
            and now - delivery.last_attempt_at < self.processing_timeout
        ):
            # worker שנפל: ננסה שוב כשה-claim יפוג
            expires_in = delivery.last_attempt_at + self.processing_timeout - now
            delay = max(1, math.ceil(expires_in.total_seconds()))
            self._submit(delivery_id, delay)
            logger.info(
                "Delivery in progress elsewhere, resubmitted",
                extra_data={"delivery_id": delivery_id, "delay_seconds": delay}
            )
            return delivery

        endpoint = await self.endpoints.get(delivery.endpoint)
        if endpoint is None:
            return await self._finish(
                delivery,
                delivery.copy(
                    status=DeliveryStatus.FAILED,
                    next_retry_at=None,
                    error=f"endpoint not configured: {delivery.endpoint}",
                ),
            )

        claimed = await self._swap(
            delivery,
            delivery.copy(status=DeliveryStatus.PROCESSING, last_attempt_at=now),
        )

        try:
            await self._check_target(claimed.target_url)
        except UnsafeTargetError as e:
            return await self._finish(
                claimed,
                claimed.copy(
                    status=DeliveryStatus.FAILED,
                    next_retry_at=None,
                    error=_truncate(e.message, ERROR_MAX_LENGTH),
                ),
            )

        config = CircuitBreakerConfig(
            failure_threshold=endpoint.circuit_failure_threshold,
            cooldown_seconds=float(endpoint.circuit_cooldown_seconds),
        )
        # can_execute may claim the half-open trial, so it comes last
        if not await self.breaker.can_execute(endpoint.name, config):
            return await self._park_for_open_circuit(claimed, endpoint, config)

        return await self._attempt(claimed, endpoint, config)

    async def _park_for_open_circuit(
        self,
        claimed: OutboundDelivery,
        endpoint: OutboundEndpoint,
        config: CircuitBreakerConfig,
    ) -> OutboundDelivery:
        retry_after = await self.breaker.retry_after(endpoint.name, config)
        delay = max(1, int(retry_after + 0.999))
        parked = await self._finish(
            claimed,
            claimed.copy(
                status=DeliveryStatus.FAILED,
                error=CIRCUIT_OPEN_ERROR,
                next_retry_at=self._clock() + timedelta(seconds=delay),
            ),
        )
        self._submit(parked.id, delay)
        return parked

    async def _attempt(
        self,
        claimed: OutboundDelivery,
        endpoint: OutboundEndpoint,
        config: CircuitBreakerConfig,
    ) -> OutboundDelivery:
        body = serialize_payload(claimed.payload)
        headers = dict(claimed.headers)
        if endpoint.signing_enabled:
            signer = SignatureGenerator(
                endpoint.signing_secret,
                signature_header=endpoint.signature_header,
                timestamp_header=endpoint.timestamp_header,
            )
            headers.update(signer.headers_for(body))
        headers[DELIVERY_ID_HEADER] = claimed.id

        response_code = None
        response_body = None
        error = None
        started = time.monotonic()
        try:
            async with self._client() as client:
                response = await client.post(
                    claimed.target_url,
                    content=body,
                    headers=headers,
                    timeout=self.timeout_seconds,
                )
            response_code = response.status_code
            response_body = _truncate(response.text, RESPONSE_BODY_MAX_LENGTH)
            if not response.is_success:
                error = f"HTTP {response_code}"
        except httpx.HTTPError as e:
            error = f"{type(e).__name__}: {e}"
        response_time_ms = int((time.monotonic() - started) * 1000)

        now = self._clock()
        attempt_count = claimed.attempt_count + 1
        base = claimed.copy(
            attempt_count=attempt_count,
            response_code=response_code,
            response_body=response_body,
            response_time_ms=response_time_ms,
            last_attempt_at=now,
        )

        if error is None:
            await self.breaker.record_success(endpoint.name)
            return await self._finish(
                claimed,
                base.copy(
                    status=DeliveryStatus.DELIVERED,
                    delivered_at=now,
                    next_retry_at=None,
                    error=None,
                ),
            )

        await self.breaker.record_failure(endpoint.name, error, config)
        error = _truncate(error, ERROR_MAX_LENGTH)

        if self._retryable(endpoint, response_code) and not attempts_exhausted(
            attempt_count, claimed.max_attempts
        ):
            retry_at, delay = next_retry_at(now, claimed.retry_delays, attempt_count)
            updated = await self._finish(
                claimed,
                base.copy(status=DeliveryStatus.PENDING, next_retry_at=retry_at, error=error),
            )
            self._submit(updated.id, delay)
            return updated

        return await self._finish(
            claimed,
            base.copy(status=DeliveryStatus.FAILED, next_retry_at=None, error=error),
        )

    @staticmethod
    def _retryable(endpoint: OutboundEndpoint, response_code: int | None) -> bool:
        if response_code is None or endpoint.retry_client_errors:
            return True
        if response_code == 429:
            return True
        return not 400 <= response_code < 500

    # ==================== Recovery ====================

    async def resubmit_stalled(self, limit: int | None = None) -> int:
        """
        Submit deliveries no queued task is known to cover: claims older than
        the processing timeout and attempts that were due that long ago.
        """
        cutoff = self._clock() - self.processing_timeout
        stalled = await self.deliveries.list_stalled(
            cutoff, limit if limit is not None else settings.STALLED_SWEEP_BATCH_SIZE
        )
        for delivery in stalled:
            self._submit(delivery.id, 0)
            logger.warning(
                "Stalled delivery resubmitted",
                extra_data={
                    "delivery_id": delivery.id,
                    "endpoint": delivery.endpoint,
                    "status": delivery.status.value,
                    "attempt_count": delivery.attempt_count,
                }
            )
        return len(stalled)

    async def _finish(self, current: OutboundDelivery, new: OutboundDelivery) -> OutboundDelivery:
        updated = await self._swap(current, new)
        logger.info(
            "Delivery attempt recorded",
            extra_data={
                "delivery_id": updated.id,
                "endpoint": updated.endpoint,
                "status": updated.status.value,
                "attempt_count": updated.attempt_count,
                "max_attempts": updated.max_attempts,
                "response_code": updated.response_code,
                "response_time_ms": updated.response_time_ms,
                "next_retry_at": updated.next_retry_at.isoformat() if updated.next_retry_at else None,
                "error": updated.error,
            }
        )
        return updated

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self.http_client is not None:
            yield self.http_client
            return
        async with httpx.AsyncClient(follow_redirects=False) as client:
            yield client

    async def _check_target(self, url: str) -> None:
        """Reject non-http(s) URLs and hosts that resolve to internal addresses"""
        parsed = urlparse(url)
        if parsed.scheme not in ALLOWED_SCHEMES:
            raise UnsafeTargetError(url, f"scheme '{parsed.scheme}' not allowed")
        if not parsed.hostname:
            raise UnsafeTargetError(url, "missing host")
        if not self.block_private_networks:
            return

        port = parsed.port or (443 if parsed.scheme == "https" else 80)
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(parsed.hostname, port, type=socket.SOCK_STREAM)
        except socket.gaierror:
            # ה-POST עצמו ייכשל ויטופל כניסיון כושל רגיל
            return

        for info in infos:
            address = info[4][0]
            if is_unsafe_address(address):
                raise UnsafeTargetError(url, f"resolves to non-public address {address}")


def _truncate(value: str | None, limit: int) -> str | None:
    if value is None:
        return None
    return value[:limit]
