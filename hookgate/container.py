"""
Service wiring shared by the API process and the Celery workers.
"""
from __future__ import annotations

from dataclasses import dataclass

import httpx
import redis.asyncio as aioredis

from hookgate.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerStore,
    MemoryCircuitBreakerStore,
    RedisCircuitBreakerStore,
)
from hookgate.core.config import settings
from hookgate.core.rate_limiter import (
    MemoryRateLimitBackend,
    RateLimitBackend,
    RateLimiter,
    RedisRateLimitBackend,
)
from hookgate.db.stores import (
    SessionFactory,
    SqlDefinitionSource,
    SqlDeliveryStore,
    SqlEndpointStore,
    SqlEventStore,
    SqlExecutionStore,
    SqlProviderStore,
)
from hookgate.domain.services.delivery_service import DeliveryService
from hookgate.domain.services.execution_service import ExecutionService
from hookgate.domain.services.handler_registry import HandlerRegistry, HandlerResolver, registry
from hookgate.domain.services.intake_service import IntakeService
from hookgate.domain.stores import TaskQueue

# memory backend: מצב משותף לכל ה-containers באותו תהליך
_memory_rate_limit_backend = MemoryRateLimitBackend()
_memory_circuit_store = MemoryCircuitBreakerStore()


@dataclass
class ServiceContainer:
    intake: IntakeService
    executions: ExecutionService
    deliveries: DeliveryService
    rate_limiter: RateLimiter
    breaker: CircuitBreaker
    registry: HandlerRegistry


def shared_state(redis: aioredis.Redis | None) -> tuple[RateLimitBackend, CircuitBreakerStore]:
    if settings.SHARED_STATE_BACKEND == "redis":
        if redis is None:
            raise ValueError("SHARED_STATE_BACKEND=redis requires a Redis client")
        return RedisRateLimitBackend(redis), RedisCircuitBreakerStore(redis)
    return _memory_rate_limit_backend, _memory_circuit_store


def build_container(
    session_factory: SessionFactory,
    task_queue: TaskQueue,
    redis: aioredis.Redis | None = None,
    http_client: httpx.AsyncClient | None = None,
    handler_registry: HandlerRegistry | None = None,
) -> ServiceContainer:
    """SQL stores plus the configured shared-state backend"""
    handler_registry = handler_registry or registry
    rate_limit_backend, circuit_store = shared_state(redis)
    rate_limiter = RateLimiter(rate_limit_backend)
    breaker = CircuitBreaker(circuit_store)

    events = SqlEventStore(session_factory)
    executions = ExecutionService(
        executions=SqlExecutionStore(session_factory),
        events=events,
        registry=handler_registry,
        task_queue=task_queue,
    )
    intake = IntakeService(
        providers=SqlProviderStore(session_factory),
        events=events,
        executions=executions,
        resolver=HandlerResolver(SqlDefinitionSource(session_factory)),
        rate_limiter=rate_limiter,
    )
    deliveries = DeliveryService(
        deliveries=SqlDeliveryStore(session_factory),
        endpoints=SqlEndpointStore(session_factory),
        breaker=breaker,
        task_queue=task_queue,
        http_client=http_client,
    )
    return ServiceContainer(
        intake=intake,
        executions=executions,
        deliveries=deliveries,
        rate_limiter=rate_limiter,
        breaker=breaker,
        registry=handler_registry,
    )
