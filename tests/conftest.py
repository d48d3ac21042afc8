"""
Pytest Configuration and Fixtures

Provides fixtures for:
- In-memory stores and the service graph built on them
- A controllable clock
- Signed request helpers
- SQLite (aiosqlite) session factory for the SQL stores
- An ASGI test client with the container injected
"""
# חייב לרוץ לפני ייבוא hookgate - Settings נטען בזמן import
import os
os.environ.setdefault("SHARED_STATE_BACKEND", "memory")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("WEBHOOK_BASE_URL", "https://hooks.example.com")

import json
import time
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from hookgate.container import ServiceContainer
from hookgate.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, MemoryCircuitBreakerStore
from hookgate.core.rate_limiter import MemoryRateLimitBackend, RateLimiter
from hookgate.db.database import Base
from hookgate.domain.entities import OutboundEndpoint, ProviderConfig
from hookgate.domain.services.delivery_service import DeliveryService
from hookgate.domain.services.execution_service import ExecutionService
from hookgate.domain.services.handler_registry import HandlerRegistry, HandlerResolver, StaticDefinitionSource
from hookgate.domain.services.intake_service import IntakeService
from hookgate.domain.signing import compute_signature
from hookgate.domain.stores import (
    InMemoryDeliveryStore,
    InMemoryEndpointStore,
    InMemoryEventStore,
    InMemoryExecutionStore,
    InMemoryProviderStore,
    InMemoryTaskQueue,
)

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

SECRET = "whsec_test_secret"
TOKEN = "tok_abc123"
START = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable time source; ``now()`` for datetimes, ``time()`` for unix seconds"""

    def __init__(self, start: datetime = START):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def time(self) -> float:
        return self.current.timestamp()

    def advance(self, seconds: float) -> None:
        self.current = self.current + timedelta(seconds=seconds)


def signed_headers(body: bytes, secret: str = SECRET, timestamp: int | None = None) -> dict[str, str]:
    ts = int(time.time()) if timestamp is None else timestamp
    return {
        "Content-Type": "application/json",
        "X-Webhook-Signature": compute_signature(secret, body, ts),
        "X-Webhook-Timestamp": str(ts),
    }


def make_body(event_id: str | None = "evt_1", event_type: str = "order.created", **extra: Any) -> bytes:
    payload: dict[str, Any] = {"type": event_type, "data": {"amount": 100}, **extra}
    if event_id is not None:
        payload["id"] = event_id
    return json.dumps(payload).encode("utf-8")


# ============================================================================
# Core fixtures
# ============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider() -> ProviderConfig:
    return ProviderConfig(
        name="acme",
        token=TOKEN,
        signing_secret=SECRET,
        verifier="hmac_sha256",
        timestamp_tolerance_seconds=300,
        max_payload_size_bytes=1024,
        rate_limit_requests=100,
        rate_limit_period_seconds=60,
    )


@pytest.fixture
def provider_store(provider: ProviderConfig) -> InMemoryProviderStore:
    return InMemoryProviderStore([provider])


@pytest.fixture
def event_store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def execution_store() -> InMemoryExecutionStore:
    return InMemoryExecutionStore()


@pytest.fixture
def delivery_store() -> InMemoryDeliveryStore:
    return InMemoryDeliveryStore()


@pytest.fixture
def task_queue() -> InMemoryTaskQueue:
    return InMemoryTaskQueue()


@pytest.fixture
def handler_registry() -> HandlerRegistry:
    return HandlerRegistry()


@pytest.fixture
def definition_source() -> StaticDefinitionSource:
    return StaticDefinitionSource()


@pytest.fixture
def rate_limiter() -> RateLimiter:
    return RateLimiter(MemoryRateLimitBackend())


@pytest.fixture
def breaker(clock: FakeClock) -> CircuitBreaker:
    return CircuitBreaker(
        MemoryCircuitBreakerStore(),
        CircuitBreakerConfig(failure_threshold=5, cooldown_seconds=300),
        clock=clock.time,
    )


@pytest.fixture
def execution_service(
    execution_store, event_store, handler_registry, task_queue, clock
) -> ExecutionService:
    return ExecutionService(
        executions=execution_store,
        events=event_store,
        registry=handler_registry,
        task_queue=task_queue,
        handler_timeout_seconds=1.0,
        lock_timeout_seconds=300,
        clock=clock.now,
    )


@pytest.fixture
def intake_service(
    provider_store, event_store, execution_service, definition_source, rate_limiter
) -> IntakeService:
    return IntakeService(
        providers=provider_store,
        events=event_store,
        executions=execution_service,
        resolver=HandlerResolver(definition_source),
        rate_limiter=rate_limiter,
    )


@pytest.fixture
def endpoint() -> OutboundEndpoint:
    return OutboundEndpoint(
        name="partner",
        url="https://partner.example.com/webhooks",
        signing_secret="outbound_secret",
        retry_delays=(10, 30, 60),
        max_attempts=3,
        circuit_failure_threshold=5,
        circuit_cooldown_seconds=300,
    )


@pytest.fixture
def endpoint_store(endpoint: OutboundEndpoint) -> InMemoryEndpointStore:
    return InMemoryEndpointStore([endpoint])


@pytest.fixture
def make_delivery_service(delivery_store, endpoint_store, breaker, task_queue, clock):
    """Factory: DeliveryService over an httpx client of the test's choosing"""
    def _make(http_client, **kwargs) -> DeliveryService:
        kwargs.setdefault("block_private_networks", False)
        return DeliveryService(
            deliveries=delivery_store,
            endpoints=endpoint_store,
            breaker=breaker,
            task_queue=task_queue,
            http_client=http_client,
            clock=clock.now,
            **kwargs,
        )
    return _make


# ============================================================================
# Database
# ============================================================================


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


# ============================================================================
# API
# ============================================================================


@pytest.fixture
def container(intake_service, execution_service, rate_limiter, breaker, handler_registry,
              make_delivery_service) -> ServiceContainer:
    return ServiceContainer(
        intake=intake_service,
        executions=execution_service,
        deliveries=make_delivery_service(None),
        rate_limiter=rate_limiter,
        breaker=breaker,
        registry=handler_registry,
    )


@pytest.fixture(scope="function")
async def test_client(container: ServiceContainer) -> AsyncGenerator:
    """ASGI client; startup events do not run, the container is injected"""
    from httpx import ASGITransport, AsyncClient

    from hookgate.main import app

    app.state.container = container
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.state.container = None
