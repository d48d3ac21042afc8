"""
Handler registry and resolver.

Handlers are async callables registered under a stable key at startup, either
with the ``@registry.handler(...)`` decorator or by listing their modules in
``HANDLER_MODULES``. Routing rules (HandlerDefinition) refer to handlers by
key only; the resolver never looks anything up by class name.
"""
from __future__ import annotations

import asyncio
import enum
import importlib
import threading
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Iterable, Protocol

from hookgate.core.logging import get_logger
from hookgate.domain.entities import DefinitionState, HandlerDefinition, IncomingEvent

logger = get_logger(__name__)


class HandlerOutcome(str, enum.Enum):
    OK = "ok"
    RETRY = "retry"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class HandlerResult:
    """What a handler reports back: success, retryable failure, or permanent failure"""

    outcome: HandlerOutcome
    error: str | None = None

    @classmethod
    def ok(cls) -> "HandlerResult":
        return cls(HandlerOutcome.OK)

    @classmethod
    def retry(cls, error: str) -> "HandlerResult":
        return cls(HandlerOutcome.RETRY, error)

    @classmethod
    def permanent(cls, error: str) -> "HandlerResult":
        return cls(HandlerOutcome.PERMANENT, error)

    @property
    def succeeded(self) -> bool:
        return self.outcome == HandlerOutcome.OK


Handler = Callable[[IncomingEvent], Awaitable[HandlerResult]]


class HandlerRegistry:
    """Maps handler keys to async callables"""

    def __init__(self):
        self._handlers: dict[str, Handler] = {}
        self._lock = threading.Lock()

    def register(self, key: str, func: Handler) -> Handler:
        if not key:
            raise ValueError("handler key cannot be empty")
        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"handler '{key}' must be an async function")
        with self._lock:
            existing = self._handlers.get(key)
            if existing is not None and existing is not func:
                raise ValueError(f"handler key '{key}' is already registered")
            self._handlers[key] = func
        return func

    def handler(self, key: str) -> Callable[[Handler], Handler]:
        """
        Decorator form:

            @registry.handler("stripe.payment_succeeded")
            async def on_payment(event):
                return HandlerResult.ok()
        """
        def decorator(func: Handler) -> Handler:
            return self.register(key, func)
        return decorator

    def get(self, key: str) -> Handler | None:
        return self._handlers.get(key)

    def keys(self) -> list[str]:
        return sorted(self._handlers)

    def unregister(self, key: str) -> None:
        with self._lock:
            self._handlers.pop(key, None)

    def load_modules(self, modules: Iterable[str]) -> None:
        """Import handler modules so their decorators run"""
        for module in modules:
            importlib.import_module(module)
            logger.info("Handler module loaded", extra_data={"module": module})

    def __contains__(self, key: str) -> bool:
        return key in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


# Process-wide registry used by handler modules and the workers
registry = HandlerRegistry()


# ==================== Resolution ====================


@dataclass(frozen=True)
class RegistrySnapshot:
    """Immutable, versioned set of routing rules"""

    version: int
    definitions: tuple[HandlerDefinition, ...] = ()

    def for_provider(self, provider: str) -> "RegistrySnapshot":
        return RegistrySnapshot(
            version=self.version,
            definitions=tuple(d for d in self.definitions if d.provider == provider),
        )


def resolve(
    definitions: Iterable[HandlerDefinition],
    provider: str,
    event_type: str,
) -> list[HandlerDefinition]:
    """
    All active definitions for ``provider`` matching ``event_type``.

    Ordered by ascending priority, ties broken by handler key, so the result
    is the same for any ordering of the input.
    """
    matched = [
        d for d in definitions
        if d.is_active and d.provider == provider and d.matches(event_type)
    ]
    return sorted(matched, key=lambda d: (d.priority, d.handler))


class DefinitionSource(Protocol):
    async def snapshot(self, provider: str) -> RegistrySnapshot: ...


class StaticDefinitionSource:
    """
    Definitions held in memory.

    Every change produces a new snapshot version; snapshots already handed
    out are unaffected.
    """

    def __init__(self, definitions: Iterable[HandlerDefinition] = ()):
        self._lock = threading.Lock()
        self._snapshot = RegistrySnapshot(version=1, definitions=tuple(definitions))

    async def snapshot(self, provider: str) -> RegistrySnapshot:
        return self._snapshot.for_provider(provider)

    @property
    def version(self) -> int:
        return self._snapshot.version

    def _publish(self, definitions: Iterable[HandlerDefinition]) -> None:
        self._snapshot = RegistrySnapshot(
            version=self._snapshot.version + 1,
            definitions=tuple(definitions),
        )

    def add(self, definition: HandlerDefinition) -> None:
        with self._lock:
            self._publish(self._snapshot.definitions + (definition,))

    def delete(self, provider: str, event_type: str, handler: str) -> None:
        """Soft delete: the definition stays, tagged DELETED"""
        with self._lock:
            updated = []
            for d in self._snapshot.definitions:
                if (d.provider, d.event_type, d.handler) == (provider, event_type, handler):
                    d = replace(d, state=DefinitionState.DELETED)
                updated.append(d)
            self._publish(updated)


class HandlerResolver:
    """Resolves against a fresh snapshot from the definition source"""

    def __init__(self, source: DefinitionSource):
        self.source = source

    async def resolve(self, provider: str, event_type: str) -> list[HandlerDefinition]:
        snapshot = await self.source.snapshot(provider)
        return resolve(snapshot.definitions, provider, event_type)
