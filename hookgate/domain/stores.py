"""
Storage contracts used by the core services, plus in-memory implementations.

The SQLAlchemy implementations live in ``hookgate.db.stores``. Every store
returns copies; the only way to change a stored execution record or delivery
is ``compare_and_swap``, which succeeds only if the stored version still
equals ``expected_version`` and bumps it by one.
"""
from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from hookgate.domain.entities import (
    DedupState,
    EventStatus,
    ExecutionRecord,
    IncomingEvent,
    OutboundDelivery,
    OutboundEndpoint,
    ProviderConfig,
)

EXECUTE_HANDLER_TASK = "hookgate.execute_handler"
DELIVER_WEBHOOK_TASK = "hookgate.deliver_webhook"
RECOVER_STALLED_TASK = "hookgate.recover_stalled_work"


# ==================== Contracts ====================


class ProviderStore(Protocol):
    async def get(self, name: str) -> ProviderConfig | None: ...


class EndpointStore(Protocol):
    async def get(self, name: str) -> OutboundEndpoint | None: ...


class EventStore(Protocol):
    async def upsert_if_absent(self, event: IncomingEvent) -> tuple[IncomingEvent, bool]:
        """
        Insert unless (provider, external_id) exists; returns (stored event, inserted).

        On conflict the stored event is marked ``DedupState.DUPLICATE``.
        """
        ...

    async def get(self, event_id: str) -> IncomingEvent | None: ...

    async def update_status(self, event_id: str, status: EventStatus) -> None: ...


class ExecutionStore(Protocol):
    async def save_many(self, records: list[ExecutionRecord]) -> None: ...

    async def save(self, record: ExecutionRecord) -> None: ...

    async def load(self, record_id: str) -> ExecutionRecord | None: ...

    async def compare_and_swap(
        self, record_id: str, expected_version: int, new: ExecutionRecord
    ) -> bool: ...

    async def list_for_event(self, event_id: str) -> list[ExecutionRecord]: ...

    async def list_stalled(self, cutoff: datetime, limit: int) -> list[ExecutionRecord]:
        """Records for which ``is_stalled(cutoff)`` holds, oldest first"""
        ...


class DeliveryStore(Protocol):
    async def save(self, delivery: OutboundDelivery) -> None: ...

    async def load(self, delivery_id: str) -> OutboundDelivery | None: ...

    async def compare_and_swap(
        self, delivery_id: str, expected_version: int, new: OutboundDelivery
    ) -> bool: ...

    async def list_stalled(self, cutoff: datetime, limit: int) -> list[OutboundDelivery]: ...


@dataclass(frozen=True)
class Task:
    """A unit of background work: task name plus positional args"""

    name: str
    args: tuple[Any, ...] = ()


class TaskQueue(Protocol):
    def enqueue(self, task: Task, delay: float = 0) -> None:
        """Submit ``task`` to run after ``delay`` seconds; never blocks for the delay"""
        ...


# ==================== In-memory implementations ====================


class InMemoryProviderStore:
    def __init__(self, providers: list[ProviderConfig] | None = None):
        self._providers = {p.name: p for p in providers or []}

    def add(self, provider: ProviderConfig) -> None:
        self._providers[provider.name] = provider

    async def get(self, name: str) -> ProviderConfig | None:
        return self._providers.get(name)


class InMemoryEndpointStore:
    def __init__(self, endpoints: list[OutboundEndpoint] | None = None):
        self._endpoints = {e.name: e for e in endpoints or []}

    def add(self, endpoint: OutboundEndpoint) -> None:
        self._endpoints[endpoint.name] = endpoint

    async def get(self, name: str) -> OutboundEndpoint | None:
        return self._endpoints.get(name)


class InMemoryEventStore:
    def __init__(self):
        self._events: dict[str, IncomingEvent] = {}
        self._by_external: dict[tuple[str, str], str] = {}
        self._lock = asyncio.Lock()

    async def upsert_if_absent(self, event: IncomingEvent) -> tuple[IncomingEvent, bool]:
        key = (event.provider, event.external_id)
        async with self._lock:
            existing_id = self._by_external.get(key)
            if existing_id is not None:
                existing = self._events[existing_id]
                existing.dedup_state = DedupState.DUPLICATE
                return copy.deepcopy(existing), False
            self._events[event.id] = copy.deepcopy(event)
            self._by_external[key] = event.id
            return copy.deepcopy(event), True

    async def get(self, event_id: str) -> IncomingEvent | None:
        event = self._events.get(event_id)
        return copy.deepcopy(event) if event else None

    async def update_status(self, event_id: str, status: EventStatus) -> None:
        async with self._lock:
            if event_id in self._events:
                self._events[event_id].status = status

    def __len__(self) -> int:
        return len(self._events)


class _VersionedMemoryStore:
    """Shared CAS logic for execution records and deliveries"""

    def __init__(self):
        self._items: dict[str, Any] = {}
        self._lock = asyncio.Lock()

    async def save(self, item) -> None:
        async with self._lock:
            self._items[item.id] = copy.deepcopy(item)

    async def load(self, item_id: str):
        item = self._items.get(item_id)
        return copy.deepcopy(item) if item else None

    async def compare_and_swap(self, item_id: str, expected_version: int, new) -> bool:
        async with self._lock:
            current = self._items.get(item_id)
            if current is None or current.version != expected_version:
                return False
            stored = copy.deepcopy(new)
            stored.version = expected_version + 1
            self._items[item_id] = stored
            return True

    async def list_stalled(self, cutoff: datetime, limit: int) -> list:
        stalled = [item for item in self._items.values() if item.is_stalled(cutoff)]
        stalled.sort(key=lambda item: item.created_at)
        return [copy.deepcopy(item) for item in stalled[:limit]]


class InMemoryExecutionStore(_VersionedMemoryStore):
    async def save_many(self, records: list[ExecutionRecord]) -> None:
        async with self._lock:
            for record in records:
                self._items[record.id] = copy.deepcopy(record)

    async def list_for_event(self, event_id: str) -> list[ExecutionRecord]:
        records = [copy.deepcopy(r) for r in self._items.values() if r.event_id == event_id]
        return sorted(records, key=lambda r: (r.priority, r.handler))


class InMemoryDeliveryStore(_VersionedMemoryStore):
    pass


@dataclass
class InMemoryTaskQueue:
    """Records submissions instead of running them"""

    submitted: list[tuple[Task, float]] = field(default_factory=list)

    def enqueue(self, task: Task, delay: float = 0) -> None:
        self.submitted.append((task, delay))

    def drain(self) -> list[tuple[Task, float]]:
        drained, self.submitted = self.submitted, []
        return drained
