"""
Circuit Breaker for outbound webhook endpoints.

One breaker per endpoint name. State lives in a store so that every worker
sees the same circuit: Redis (hash + lock) in production, memory for a single
process and tests.
"""
import threading
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from enum import Enum
from typing import AsyncIterator, Callable

import redis.asyncio as aioredis

from hookgate.core.config import settings
from hookgate.core.exceptions import CircuitBreakerOpenError
from hookgate.core.logging import get_logger

logger = get_logger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states"""
    CLOSED = "closed"        # Normal operation, requests pass through
    OPEN = "open"            # Failing, requests blocked
    HALF_OPEN = "half_open"  # One trial request allowed


@dataclass
class CircuitBreakerConfig:
    """Thresholds for one endpoint"""
    failure_threshold: int = 5      # Consecutive failures before opening
    cooldown_seconds: float = 300.0  # Time in open before a trial

    @classmethod
    def from_settings(cls) -> "CircuitBreakerConfig":
        return cls(
            failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
            cooldown_seconds=float(settings.CIRCUIT_COOLDOWN_SECONDS),
        )


@dataclass
class CircuitBreakerState:
    """Persisted state of one circuit"""
    endpoint: str
    state: CircuitState = CircuitState.CLOSED
    consecutive_failure_count: int = 0
    opened_at: float | None = None
    cooldown_seconds: float = 300.0
    trial_in_flight: bool = False

    def to_mapping(self) -> dict[str, str]:
        return {
            "state": self.state.value,
            "consecutive_failure_count": str(self.consecutive_failure_count),
            "opened_at": "" if self.opened_at is None else repr(self.opened_at),
            "cooldown_seconds": repr(self.cooldown_seconds),
            "trial_in_flight": "1" if self.trial_in_flight else "0",
        }

    @classmethod
    def from_mapping(cls, endpoint: str, data: dict[str, str]) -> "CircuitBreakerState":
        if not data:
            return cls(endpoint=endpoint)
        opened_at = data.get("opened_at") or ""
        return cls(
            endpoint=endpoint,
            state=CircuitState(data.get("state", CircuitState.CLOSED.value)),
            consecutive_failure_count=int(data.get("consecutive_failure_count", 0)),
            opened_at=float(opened_at) if opened_at else None,
            cooldown_seconds=float(data.get("cooldown_seconds", 300.0)),
            trial_in_flight=data.get("trial_in_flight") == "1",
        )


# ==================== State stores ====================


class CircuitBreakerStore:
    """
    Storage for circuit states.

    ``transaction(endpoint)`` yields the current state under an exclusive lock
    and persists whatever the caller leaves in it. The block must not await.
    """

    def transaction(self, endpoint: str):
        raise NotImplementedError

    async def get(self, endpoint: str) -> CircuitBreakerState:
        raise NotImplementedError

    async def delete(self, endpoint: str) -> None:
        raise NotImplementedError

    async def all(self) -> dict[str, CircuitBreakerState]:
        raise NotImplementedError


class MemoryCircuitBreakerStore(CircuitBreakerStore):
    """Single-process store"""

    def __init__(self):
        self._states: dict[str, CircuitBreakerState] = {}
        # threading.Lock ולא asyncio.Lock: Celery מריץ כל task ב-event loop משלו
        self._lock = threading.Lock()

    @asynccontextmanager
    async def transaction(self, endpoint: str) -> AsyncIterator[CircuitBreakerState]:
        with self._lock:
            current = self._states.get(endpoint) or CircuitBreakerState(endpoint=endpoint)
            working = replace(current)
            yield working
            self._states[endpoint] = working

    async def get(self, endpoint: str) -> CircuitBreakerState:
        with self._lock:
            current = self._states.get(endpoint) or CircuitBreakerState(endpoint=endpoint)
            return replace(current)

    async def delete(self, endpoint: str) -> None:
        with self._lock:
            self._states.pop(endpoint, None)

    async def all(self) -> dict[str, CircuitBreakerState]:
        with self._lock:
            return {name: replace(state) for name, state in self._states.items()}


class RedisCircuitBreakerStore(CircuitBreakerStore):
    """Shared store: one hash per endpoint, serialized by a Redis lock"""

    KEY_PREFIX = "circuit"
    INDEX_KEY = "circuit:endpoints"

    def __init__(self, redis: aioredis.Redis, lock_timeout: float = 5.0):
        self._redis = redis
        self._lock_timeout = lock_timeout

    def _key(self, endpoint: str) -> str:
        return f"{self.KEY_PREFIX}:{endpoint}"

    @asynccontextmanager
    async def transaction(self, endpoint: str) -> AsyncIterator[CircuitBreakerState]:
        lock = self._redis.lock(
            f"{self._key(endpoint)}:lock",
            timeout=self._lock_timeout,
            blocking_timeout=self._lock_timeout,
        )
        async with lock:
            data = await self._redis.hgetall(self._key(endpoint))
            state = CircuitBreakerState.from_mapping(endpoint, data)
            yield state
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._key(endpoint), mapping=state.to_mapping())
                pipe.sadd(self.INDEX_KEY, endpoint)
                await pipe.execute()

    async def get(self, endpoint: str) -> CircuitBreakerState:
        data = await self._redis.hgetall(self._key(endpoint))
        return CircuitBreakerState.from_mapping(endpoint, data)

    async def delete(self, endpoint: str) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._key(endpoint))
            pipe.srem(self.INDEX_KEY, endpoint)
            await pipe.execute()

    async def all(self) -> dict[str, CircuitBreakerState]:
        endpoints = await self._redis.smembers(self.INDEX_KEY)
        return {name: await self.get(name) for name in sorted(endpoints)}


# ==================== Breaker ====================


StateListener = Callable[[str, CircuitState, CircuitState], None]


class CircuitBreaker:
    """
    Per-endpoint circuit breaker.

    States:
    - CLOSED: failures are counted; reaching the threshold opens the circuit
    - OPEN: every request refused until the cooldown has elapsed
    - HALF_OPEN: exactly one trial request; success closes, failure reopens

    A half-open trial that never reports back (worker died) expires after one
    more cooldown and the next caller gets the trial.
    """

    def __init__(
        self,
        store: CircuitBreakerStore,
        config: CircuitBreakerConfig | None = None,
        listener: StateListener | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.config = config or CircuitBreakerConfig.from_settings()
        self.listener = listener
        self._clock = clock

    def _transition(
        self,
        state: CircuitBreakerState,
        new_state: CircuitState,
        now: float,
        reason: str,
    ) -> None:
        old_state = state.state
        state.state = new_state

        if new_state == CircuitState.OPEN:
            state.opened_at = now
            state.trial_in_flight = False
        elif new_state == CircuitState.HALF_OPEN:
            # opened_at משמש כזמן תחילת הניסיון
            state.opened_at = now
            state.trial_in_flight = True
        elif new_state == CircuitState.CLOSED:
            state.consecutive_failure_count = 0
            state.opened_at = None
            state.trial_in_flight = False

        if old_state == new_state:
            return

        logger.info(
            f"Circuit breaker '{state.endpoint}' transitioned",
            extra_data={
                "endpoint": state.endpoint,
                "old_state": old_state.value,
                "new_state": new_state.value,
                "failure_count": state.consecutive_failure_count,
                "reason": reason,
            }
        )
        if self.listener is not None:
            try:
                self.listener(state.endpoint, old_state, new_state)
            except Exception as e:
                logger.error(
                    "Circuit breaker listener failed",
                    extra_data={"endpoint": state.endpoint, "error": str(e)},
                    exc_info=True
                )

    def _elapsed(self, state: CircuitBreakerState, now: float) -> float:
        if state.opened_at is None:
            return float("inf")
        return now - state.opened_at

    async def can_execute(self, endpoint: str, config: CircuitBreakerConfig | None = None) -> bool:
        """Whether a request to ``endpoint`` may go out now; may claim the half-open trial"""
        config = config or self.config
        now = self._clock()
        async with self.store.transaction(endpoint) as state:
            state.cooldown_seconds = config.cooldown_seconds

            if state.state == CircuitState.CLOSED:
                return True

            if state.state == CircuitState.OPEN:
                if self._elapsed(state, now) >= config.cooldown_seconds:
                    self._transition(state, CircuitState.HALF_OPEN, now, "cooldown_elapsed")
                    return True
                return False

            # HALF_OPEN
            if not state.trial_in_flight or self._elapsed(state, now) >= config.cooldown_seconds:
                self._transition(state, CircuitState.HALF_OPEN, now, "trial_claimed")
                return True
            return False

    async def guard(self, endpoint: str, config: CircuitBreakerConfig | None = None) -> None:
        """can_execute that raises CircuitBreakerOpenError"""
        if not await self.can_execute(endpoint, config):
            raise CircuitBreakerOpenError(endpoint, await self.retry_after(endpoint, config))

    async def record_success(self, endpoint: str) -> None:
        now = self._clock()
        async with self.store.transaction(endpoint) as state:
            if state.state == CircuitState.HALF_OPEN:
                self._transition(state, CircuitState.CLOSED, now, "trial_succeeded")
            elif state.state == CircuitState.CLOSED:
                state.consecutive_failure_count = 0

    async def record_failure(
        self,
        endpoint: str,
        error: str | None = None,
        config: CircuitBreakerConfig | None = None,
    ) -> None:
        config = config or self.config
        now = self._clock()
        async with self.store.transaction(endpoint) as state:
            state.consecutive_failure_count += 1
            state.cooldown_seconds = config.cooldown_seconds

            logger.warning(
                f"Circuit breaker '{endpoint}' recorded failure",
                extra_data={
                    "endpoint": endpoint,
                    "failure_count": state.consecutive_failure_count,
                    "threshold": config.failure_threshold,
                    "error": error,
                }
            )

            if state.state == CircuitState.HALF_OPEN:
                self._transition(state, CircuitState.OPEN, now, "trial_failed")
            elif (
                state.state == CircuitState.CLOSED
                and state.consecutive_failure_count >= config.failure_threshold
            ):
                self._transition(state, CircuitState.OPEN, now, "threshold_reached")

    async def retry_after(self, endpoint: str, config: CircuitBreakerConfig | None = None) -> float:
        """Seconds until the circuit may let a request through again"""
        config = config or self.config
        state = await self.store.get(endpoint)
        if state.state == CircuitState.CLOSED:
            return 0.0
        if state.state == CircuitState.HALF_OPEN and not state.trial_in_flight:
            return 0.0
        return max(0.0, config.cooldown_seconds - self._elapsed(state, self._clock()))

    async def state(self, endpoint: str) -> CircuitBreakerState:
        return await self.store.get(endpoint)

    async def states(self) -> dict[str, CircuitBreakerState]:
        return await self.store.all()

    async def force_open(self, endpoint: str) -> None:
        now = self._clock()
        async with self.store.transaction(endpoint) as state:
            self._transition(state, CircuitState.OPEN, now, "forced")

    async def force_close(self, endpoint: str) -> None:
        now = self._clock()
        async with self.store.transaction(endpoint) as state:
            self._transition(state, CircuitState.CLOSED, now, "forced")

    async def reset(self, endpoint: str) -> None:
        await self.store.delete(endpoint)
        logger.info("Circuit breaker reset", extra_data={"endpoint": endpoint})
