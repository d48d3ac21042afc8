"""
Domain entities for the gateway.

Plain dataclasses shared by every store backend. Stores hand out copies, so a
caller mutating an entity never changes stored state without going through a
compare-and-swap.
"""
from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from hookgate.core.config import settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ==================== Providers ====================


@dataclass(frozen=True)
class ProviderConfig:
    """A registered webhook source"""

    name: str
    token: str
    signing_secret: str | None = None
    verifier: str = "hmac_sha256"
    active: bool = True
    timestamp_tolerance_seconds: int = field(
        default_factory=lambda: settings.DEFAULT_TIMESTAMP_TOLERANCE_SECONDS
    )  # 0 disables the check
    max_payload_size_bytes: int | None = field(default_factory=lambda: settings.DEFAULT_MAX_PAYLOAD_BYTES)
    rate_limit_requests: int | None = field(default_factory=lambda: settings.DEFAULT_RATE_LIMIT_REQUESTS)
    rate_limit_period_seconds: int | None = field(
        default_factory=lambda: settings.DEFAULT_RATE_LIMIT_PERIOD_SECONDS
    )
    # Test-only escape hatch: accept calls without a signature.
    allow_unsigned: bool = False

    @property
    def rate_limiting_enabled(self) -> bool:
        return bool(self.rate_limit_requests) and bool(self.rate_limit_period_seconds)

    @property
    def payload_size_limit_enabled(self) -> bool:
        return bool(self.max_payload_size_bytes) and self.max_payload_size_bytes > 0


# ==================== Incoming events ====================


class DedupState(str, enum.Enum):
    UNIQUE = "unique"
    DUPLICATE = "duplicate"


class EventStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    PARTIALLY_PROCESSED = "partially_processed"
    FAILED = "failed"


@dataclass
class IncomingEvent:
    """One logically unique webhook delivery, keyed by (provider, external_id)"""

    provider: str
    external_id: str
    event_type: str
    raw_payload: bytes
    payload: Any
    headers: dict[str, str]
    id: str = field(default_factory=new_id)
    metadata: dict[str, Any] = field(default_factory=dict)
    received_at: datetime = field(default_factory=utcnow)
    dedup_state: DedupState = DedupState.UNIQUE
    status: EventStatus = EventStatus.RECEIVED

    @property
    def deduplicable(self) -> bool:
        return self.metadata.get("deduplicable", True)


# ==================== Handler definitions ====================


class DefinitionState(str, enum.Enum):
    """Soft delete as an explicit tag; DELETED definitions never match"""

    ACTIVE = "active"
    DELETED = "deleted"


@dataclass(frozen=True)
class HandlerDefinition:
    """Routing rule binding (provider, event_type pattern) to a handler key"""

    provider: str
    event_type: str
    handler: str
    priority: int = 100
    is_async: bool = True
    max_attempts: int = field(default_factory=lambda: settings.DEFAULT_MAX_ATTEMPTS)
    retry_delays: tuple[int, ...] = field(default_factory=lambda: tuple(settings.DEFAULT_RETRY_DELAYS))
    state: DefinitionState = DefinitionState.ACTIVE

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if any(delay < 0 for delay in self.retry_delays):
            raise ValueError("retry delays cannot be negative")
        # list מ-config → tuple כדי שה-definition יישאר hashable
        object.__setattr__(self, "retry_delays", tuple(self.retry_delays))

    @property
    def is_active(self) -> bool:
        return self.state == DefinitionState.ACTIVE

    def matches(self, event_type: str) -> bool:
        """Exact match, ``prefix.*`` match, or the universal ``*``"""
        pattern = self.event_type
        if pattern == "*":
            return True
        if pattern.endswith(".*"):
            return event_type.startswith(pattern[:-1])
        return pattern == event_type


# ==================== Executions ====================


class ExecutionStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    RETRYING = "retrying"


TERMINAL_EXECUTION_STATUSES = frozenset({ExecutionStatus.SUCCESS, ExecutionStatus.FAILED})


@dataclass
class ExecutionRecord:
    """Work of one handler against one event"""

    event_id: str
    handler: str
    provider: str
    event_type: str
    priority: int
    is_async: bool
    max_attempts: int
    retry_delays: tuple[int, ...]
    id: str = field(default_factory=new_id)
    status: ExecutionStatus = ExecutionStatus.PENDING
    attempt_count: int = 0
    last_attempt_at: datetime | None = None
    next_retry_at: datetime | None = None
    error: str | None = None
    version: int = 0
    lock_holder: str | None = None
    lock_acquired_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def for_definition(cls, event: IncomingEvent, definition: HandlerDefinition) -> "ExecutionRecord":
        return cls(
            event_id=event.id,
            handler=definition.handler,
            provider=event.provider,
            event_type=event.event_type,
            priority=definition.priority,
            is_async=definition.is_async,
            max_attempts=definition.max_attempts,
            retry_delays=tuple(definition.retry_delays),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES

    @property
    def is_locked(self) -> bool:
        return self.lock_holder is not None

    def is_stalled(self, cutoff: datetime) -> bool:
        """
        No task can be relied on to move this record any more: a lease taken
        before ``cutoff``, or a retry or first run that was due before it.
        """
        if self.status == ExecutionStatus.PROCESSING:
            return self.lock_acquired_at is None or self.lock_acquired_at <= cutoff
        if self.status == ExecutionStatus.RETRYING:
            return (self.next_retry_at or self.created_at) <= cutoff
        if self.status == ExecutionStatus.PENDING:
            return self.created_at <= cutoff
        return False

    def copy(self, **changes: Any) -> "ExecutionRecord":
        return replace(self, **changes)


# ==================== Outbound ====================


@dataclass(frozen=True)
class OutboundEndpoint:
    """Configuration of one external endpoint the gateway delivers to"""

    name: str
    url: str
    signing_secret: str | None = None
    signature_header: str = "X-Webhook-Signature"
    timestamp_header: str = "X-Webhook-Timestamp"
    default_headers: tuple[tuple[str, str], ...] = (("Content-Type", "application/json"),)
    retry_delays: tuple[int, ...] = field(default_factory=lambda: tuple(settings.DEFAULT_RETRY_DELAYS))
    max_attempts: int = field(default_factory=lambda: settings.DEFAULT_MAX_ATTEMPTS)
    circuit_failure_threshold: int = field(default_factory=lambda: settings.CIRCUIT_FAILURE_THRESHOLD)
    circuit_cooldown_seconds: int = field(default_factory=lambda: settings.CIRCUIT_COOLDOWN_SECONDS)
    # False: 4xx other than 429 fail at once instead of consuming retries
    retry_client_errors: bool = True

    @property
    def signing_enabled(self) -> bool:
        return bool(self.signing_secret)


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    FAILED = "failed"


@dataclass
class OutboundDelivery:
    """One payload to deliver to an external endpoint"""

    endpoint: str
    target_url: str
    payload: Any
    max_attempts: int
    retry_delays: tuple[int, ...]
    headers: dict[str, str] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempt_count: int = 0
    response_code: int | None = None
    response_body: str | None = None
    response_time_ms: int | None = None
    error: str | None = None
    next_retry_at: datetime | None = None
    last_attempt_at: datetime | None = None
    delivered_at: datetime | None = None
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        if self.status == DeliveryStatus.DELIVERED:
            return True
        return self.status == DeliveryStatus.FAILED and self.next_retry_at is None

    def is_stalled(self, cutoff: datetime) -> bool:
        """A claim older than ``cutoff``, or an attempt that was due before it"""
        if self.is_terminal:
            return False
        if self.status == DeliveryStatus.PROCESSING:
            return self.last_attempt_at is None or self.last_attempt_at <= cutoff
        return (self.next_retry_at or self.created_at) <= cutoff

    def copy(self, **changes: Any) -> "OutboundDelivery":
        return replace(self, **changes)
