"""
SQLAlchemy implementations of the store contracts.

Each store takes a session factory and opens a short session per operation,
so the same classes serve the API process (AsyncSessionLocal) and Celery
tasks (task_session_factory).
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookgate.core.logging import get_logger
from hookgate.db.models import (
    ExecutionRecordRow,
    HandlerDefinitionRow,
    IncomingEventRow,
    OutboundDeliveryRow,
    OutboundEndpointRow,
    ProviderRow,
)
from hookgate.domain.entities import (
    DedupState,
    DeliveryStatus,
    EventStatus,
    ExecutionRecord,
    ExecutionStatus,
    HandlerDefinition,
    IncomingEvent,
    OutboundDelivery,
    OutboundEndpoint,
    ProviderConfig,
)
from hookgate.domain.services.handler_registry import RegistrySnapshot

logger = get_logger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


def _aware(value: datetime | None) -> datetime | None:
    """SQLite returns naive datetimes; everything stored is UTC"""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ==================== Row <-> entity ====================


def provider_from_row(row: ProviderRow) -> ProviderConfig:
    return ProviderConfig(
        name=row.name,
        token=row.token,
        signing_secret=row.signing_secret,
        verifier=row.verifier,
        active=row.active,
        timestamp_tolerance_seconds=row.timestamp_tolerance_seconds,
        max_payload_size_bytes=row.max_payload_size_bytes,
        rate_limit_requests=row.rate_limit_requests,
        rate_limit_period_seconds=row.rate_limit_period_seconds,
        allow_unsigned=row.allow_unsigned,
    )


def event_from_row(row: IncomingEventRow) -> IncomingEvent:
    return IncomingEvent(
        id=row.id,
        provider=row.provider,
        external_id=row.external_id,
        event_type=row.event_type,
        raw_payload=bytes(row.raw_payload),
        payload=row.payload,
        headers=dict(row.headers or {}),
        metadata=dict(row.event_metadata or {}),
        received_at=_aware(row.received_at),
        dedup_state=row.dedup_state,
        status=row.status,
    )


def definition_from_row(row: HandlerDefinitionRow) -> HandlerDefinition:
    return HandlerDefinition(
        provider=row.provider,
        event_type=row.event_type,
        handler=row.handler,
        priority=row.priority,
        is_async=row.is_async,
        max_attempts=row.max_attempts,
        retry_delays=tuple(row.retry_delays or ()),
        state=row.state,
    )


def _execution_values(record: ExecutionRecord) -> dict[str, Any]:
    return {
        "event_id": record.event_id,
        "handler": record.handler,
        "provider": record.provider,
        "event_type": record.event_type,
        "priority": record.priority,
        "is_async": record.is_async,
        "max_attempts": record.max_attempts,
        "retry_delays": list(record.retry_delays),
        "status": record.status,
        "attempt_count": record.attempt_count,
        "last_attempt_at": record.last_attempt_at,
        "next_retry_at": record.next_retry_at,
        "error": record.error,
        "lock_holder": record.lock_holder,
        "lock_acquired_at": record.lock_acquired_at,
        "created_at": record.created_at,
    }


def execution_from_row(row: ExecutionRecordRow) -> ExecutionRecord:
    return ExecutionRecord(
        id=row.id,
        event_id=row.event_id,
        handler=row.handler,
        provider=row.provider,
        event_type=row.event_type,
        priority=row.priority,
        is_async=row.is_async,
        max_attempts=row.max_attempts,
        retry_delays=tuple(row.retry_delays or ()),
        status=row.status,
        attempt_count=row.attempt_count,
        last_attempt_at=_aware(row.last_attempt_at),
        next_retry_at=_aware(row.next_retry_at),
        error=row.error,
        version=row.version,
        lock_holder=row.lock_holder,
        lock_acquired_at=_aware(row.lock_acquired_at),
        created_at=_aware(row.created_at),
    )


def endpoint_from_row(row: OutboundEndpointRow) -> OutboundEndpoint:
    return OutboundEndpoint(
        name=row.name,
        url=row.url,
        signing_secret=row.signing_secret,
        signature_header=row.signature_header,
        timestamp_header=row.timestamp_header,
        default_headers=tuple((row.default_headers or {}).items()),
        retry_delays=tuple(row.retry_delays or ()),
        max_attempts=row.max_attempts,
        circuit_failure_threshold=row.circuit_failure_threshold,
        circuit_cooldown_seconds=row.circuit_cooldown_seconds,
        retry_client_errors=row.retry_client_errors,
    )


def _delivery_values(delivery: OutboundDelivery) -> dict[str, Any]:
    return {
        "endpoint": delivery.endpoint,
        "target_url": delivery.target_url,
        "payload": delivery.payload,
        "headers": dict(delivery.headers),
        "status": delivery.status,
        "attempt_count": delivery.attempt_count,
        "max_attempts": delivery.max_attempts,
        "retry_delays": list(delivery.retry_delays),
        "response_code": delivery.response_code,
        "response_body": delivery.response_body,
        "response_time_ms": delivery.response_time_ms,
        "error": delivery.error,
        "next_retry_at": delivery.next_retry_at,
        "last_attempt_at": delivery.last_attempt_at,
        "delivered_at": delivery.delivered_at,
        "created_at": delivery.created_at,
    }


def delivery_from_row(row: OutboundDeliveryRow) -> OutboundDelivery:
    return OutboundDelivery(
        id=row.id,
        endpoint=row.endpoint,
        target_url=row.target_url,
        payload=row.payload,
        headers=dict(row.headers or {}),
        status=row.status,
        attempt_count=row.attempt_count,
        max_attempts=row.max_attempts,
        retry_delays=tuple(row.retry_delays or ()),
        response_code=row.response_code,
        response_body=row.response_body,
        response_time_ms=row.response_time_ms,
        error=row.error,
        next_retry_at=_aware(row.next_retry_at),
        last_attempt_at=_aware(row.last_attempt_at),
        delivered_at=_aware(row.delivered_at),
        version=row.version,
        created_at=_aware(row.created_at),
    )


# ==================== Stores ====================


class _SqlStore:
    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory


class SqlProviderStore(_SqlStore):
    async def get(self, name: str) -> ProviderConfig | None:
        async with self._session_factory() as session:
            row = await session.get(ProviderRow, name)
            return provider_from_row(row) if row else None


class SqlEndpointStore(_SqlStore):
    async def get(self, name: str) -> OutboundEndpoint | None:
        async with self._session_factory() as session:
            row = await session.get(OutboundEndpointRow, name)
            return endpoint_from_row(row) if row else None


class SqlEventStore(_SqlStore):
    async def upsert_if_absent(self, event: IncomingEvent) -> tuple[IncomingEvent, bool]:
        """
        INSERT first, look up on conflict.

        The unique constraint decides which of two concurrent requests wins;
        the loser reads the winner's row and marks it duplicate.
        """
        async with self._session_factory() as session:
            session.add(IncomingEventRow(
                id=event.id,
                provider=event.provider,
                external_id=event.external_id,
                event_type=event.event_type,
                raw_payload=event.raw_payload,
                payload=event.payload,
                headers=dict(event.headers),
                event_metadata=dict(event.metadata),
                received_at=event.received_at,
                dedup_state=DedupState.UNIQUE,
                status=event.status,
            ))
            try:
                await session.commit()
                return event, True
            except IntegrityError:
                await session.rollback()

            result = await session.execute(
                select(IncomingEventRow).where(
                    IncomingEventRow.provider == event.provider,
                    IncomingEventRow.external_id == event.external_id,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                # IntegrityError בלי שורה תואמת: לא כפילות, מעבירים הלאה
                raise RuntimeError(
                    f"insert of event {event.provider}/{event.external_id} failed without a conflicting row"
                )
            existing = event_from_row(row)
            if existing.dedup_state != DedupState.DUPLICATE:
                await session.execute(
                    update(IncomingEventRow)
                    .where(IncomingEventRow.id == row.id)
                    .values(dedup_state=DedupState.DUPLICATE)
                )
                await session.commit()
            existing.dedup_state = DedupState.DUPLICATE
            return existing, False

    async def get(self, event_id: str) -> IncomingEvent | None:
        async with self._session_factory() as session:
            row = await session.get(IncomingEventRow, event_id)
            return event_from_row(row) if row else None

    async def update_status(self, event_id: str, status: EventStatus) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(IncomingEventRow)
                .where(IncomingEventRow.id == event_id)
                .values(status=status)
            )
            await session.commit()


class SqlExecutionStore(_SqlStore):
    async def save_many(self, records: list[ExecutionRecord]) -> None:
        async with self._session_factory() as session:
            for record in records:
                session.add(ExecutionRecordRow(
                    id=record.id, version=record.version, **_execution_values(record)
                ))
            await session.commit()

    async def save(self, record: ExecutionRecord) -> None:
        await self.save_many([record])

    async def load(self, record_id: str) -> ExecutionRecord | None:
        async with self._session_factory() as session:
            row = await session.get(ExecutionRecordRow, record_id)
            return execution_from_row(row) if row else None

    async def compare_and_swap(
        self, record_id: str, expected_version: int, new: ExecutionRecord
    ) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(ExecutionRecordRow)
                .where(
                    ExecutionRecordRow.id == record_id,
                    ExecutionRecordRow.version == expected_version,
                )
                .values(version=expected_version + 1, **_execution_values(new))
            )
            await session.commit()
            return result.rowcount == 1

    async def list_for_event(self, event_id: str) -> list[ExecutionRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ExecutionRecordRow)
                .where(ExecutionRecordRow.event_id == event_id)
                .order_by(ExecutionRecordRow.priority, ExecutionRecordRow.handler)
            )
            return [execution_from_row(row) for row in result.scalars()]

    async def list_stalled(self, cutoff: datetime, limit: int) -> list[ExecutionRecord]:
        row = ExecutionRecordRow
        async with self._session_factory() as session:
            result = await session.execute(
                select(row)
                .where(or_(
                    and_(
                        row.status == ExecutionStatus.PROCESSING,
                        or_(row.lock_acquired_at.is_(None), row.lock_acquired_at <= cutoff),
                    ),
                    and_(
                        row.status == ExecutionStatus.RETRYING,
                        func.coalesce(row.next_retry_at, row.created_at) <= cutoff,
                    ),
                    and_(row.status == ExecutionStatus.PENDING, row.created_at <= cutoff),
                ))
                .order_by(row.created_at)
                .limit(limit)
            )
            return [execution_from_row(r) for r in result.scalars()]


class SqlDeliveryStore(_SqlStore):
    async def save(self, delivery: OutboundDelivery) -> None:
        async with self._session_factory() as session:
            session.add(OutboundDeliveryRow(
                id=delivery.id, version=delivery.version, **_delivery_values(delivery)
            ))
            await session.commit()

    async def load(self, delivery_id: str) -> OutboundDelivery | None:
        async with self._session_factory() as session:
            row = await session.get(OutboundDeliveryRow, delivery_id)
            return delivery_from_row(row) if row else None

    async def compare_and_swap(
        self, delivery_id: str, expected_version: int, new: OutboundDelivery
    ) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(OutboundDeliveryRow)
                .where(
                    OutboundDeliveryRow.id == delivery_id,
                    OutboundDeliveryRow.version == expected_version,
                )
                .values(version=expected_version + 1, **_delivery_values(new))
            )
            await session.commit()
            return result.rowcount == 1

    async def list_stalled(self, cutoff: datetime, limit: int) -> list[OutboundDelivery]:
        row = OutboundDeliveryRow
        due = func.coalesce(row.next_retry_at, row.created_at) <= cutoff
        async with self._session_factory() as session:
            result = await session.execute(
                select(row)
                .where(or_(
                    and_(
                        row.status == DeliveryStatus.PROCESSING,
                        or_(row.last_attempt_at.is_(None), row.last_attempt_at <= cutoff),
                    ),
                    and_(row.status == DeliveryStatus.PENDING, due),
                    # parked by an open circuit
                    and_(row.status == DeliveryStatus.FAILED, row.next_retry_at.is_not(None), due),
                ))
                .order_by(row.created_at)
                .limit(limit)
            )
            return [delivery_from_row(r) for r in result.scalars()]


class SqlDefinitionSource(_SqlStore):
    """
    Definitions from the handler_definitions table.

    DELETED rows are included in the snapshot; the resolver skips them. The
    snapshot version is the newest ``updated_at`` as a unix timestamp.
    """

    async def snapshot(self, provider: str) -> RegistrySnapshot:
        async with self._session_factory() as session:
            result = await session.execute(
                select(HandlerDefinitionRow).where(HandlerDefinitionRow.provider == provider)
            )
            rows = list(result.scalars())
        stamps = [_aware(row.updated_at) for row in rows if row.updated_at is not None]
        version = int(max(stamps).timestamp()) if stamps else 0
        return RegistrySnapshot(
            version=version,
            definitions=tuple(definition_from_row(row) for row in rows),
        )
