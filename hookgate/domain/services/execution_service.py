"""
Execution state machine for handler runs.

    pending -> processing -> success | failed | retrying
    retrying -> processing  (until success or attempts are exhausted)

A worker leases a record with a compare-and-swap on its version before
running the handler, and every later write is again a compare-and-swap. A
writer that loses the race gets StaleRecordError and its write is dropped.
Retries are future task submissions, never sleeps.
"""
from __future__ import annotations

import asyncio
import math
from datetime import datetime, timedelta
from typing import Callable

from hookgate.core.config import settings
from hookgate.core.exceptions import (
    LockNotAcquiredError,
    NotFoundException,
    PermanentExecutionError,
    StaleRecordError,
    TransientExecutionError,
)
from hookgate.core.logging import get_logger
from hookgate.domain.entities import (
    EventStatus,
    ExecutionRecord,
    ExecutionStatus,
    HandlerDefinition,
    IncomingEvent,
    new_id,
    utcnow,
)
from hookgate.domain.services.backoff import attempts_exhausted, next_retry_at
from hookgate.domain.services.handler_registry import HandlerOutcome, HandlerRegistry, HandlerResult
from hookgate.domain.stores import EXECUTE_HANDLER_TASK, EventStore, ExecutionStore, Task, TaskQueue

logger = get_logger(__name__)

LOCK_EXPIRED_ERROR = "lock expired"
ERROR_MAX_LENGTH = 1_000


def derive_event_status(records: list[ExecutionRecord]) -> EventStatus | None:
    """
    Event status from its execution records:
    any non-terminal -> processing, all success -> processed,
    all failed -> failed, otherwise partially_processed.
    """
    if not records:
        return None
    if any(not r.is_terminal for r in records):
        return EventStatus.PROCESSING
    statuses = {r.status for r in records}
    if statuses == {ExecutionStatus.SUCCESS}:
        return EventStatus.PROCESSED
    if statuses == {ExecutionStatus.FAILED}:
        return EventStatus.FAILED
    return EventStatus.PARTIALLY_PROCESSED


class ExecutionService:
    """Leases, runs and transitions ExecutionRecords"""

    def __init__(
        self,
        executions: ExecutionStore,
        events: EventStore,
        registry: HandlerRegistry,
        task_queue: TaskQueue,
        handler_timeout_seconds: float | None = None,
        lock_timeout_seconds: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.executions = executions
        self.events = events
        self.registry = registry
        self.task_queue = task_queue
        self.handler_timeout_seconds = (
            handler_timeout_seconds
            if handler_timeout_seconds is not None
            else settings.HANDLER_TIMEOUT_SECONDS
        )
        self.lock_timeout = timedelta(
            seconds=lock_timeout_seconds
            if lock_timeout_seconds is not None
            else settings.EXECUTION_LOCK_TIMEOUT_SECONDS
        )
        self._clock = clock

    # ==================== Creation ====================

    async def create_records(
        self,
        event: IncomingEvent,
        definitions: list[HandlerDefinition],
    ) -> list[ExecutionRecord]:
        """
        One pending record per matched definition, in resolver order.

        The retry policy is copied onto the record so that later changes to
        the definition do not affect work already scheduled. Async records
        are submitted to the task queue; sync ones are left for the caller
        to run inline.
        """
        records = [ExecutionRecord.for_definition(event, d) for d in definitions]
        if not records:
            return []

        await self.executions.save_many(records)
        await self.events.update_status(event.id, EventStatus.PROCESSING)

        for record in records:
            if record.is_async:
                self._submit(record.id, 0)

        logger.info(
            "Execution records created",
            extra_data={
                "event_id": event.id,
                "provider": event.provider,
                "event_type": event.event_type,
                "handlers": [r.handler for r in records],
            }
        )
        return records

    def _submit(self, record_id: str, delay: float) -> None:
        self.task_queue.enqueue(Task(EXECUTE_HANDLER_TASK, (record_id,)), delay)

    # ==================== Lease ====================

    async def _swap(self, current: ExecutionRecord, new: ExecutionRecord) -> ExecutionRecord:
        if not await self.executions.compare_and_swap(current.id, current.version, new):
            logger.warning(
                "Stale execution record write dropped",
                extra_data={"record_id": current.id, "expected_version": current.version}
            )
            raise StaleRecordError(current.id, current.version)
        return new.copy(version=current.version + 1)

    async def acquire(self, record_id: str, holder: str) -> ExecutionRecord:
        """
        Lease a record for ``holder``.

        Refused (LockNotAcquiredError) when the record is terminal, when a
        retry is not due yet, or when a live holder has it. A lease older than
        the lock timeout is stale: the lost attempt counts as a failure and,
        if attempts remain, the record is leased to the new holder.
        """
        record = await self.executions.load(record_id)
        if record is None:
            raise NotFoundException("ExecutionRecord", record_id)

        if record.is_terminal:
            raise LockNotAcquiredError(record_id, "terminal")

        now = self._clock()
        attempt_count = record.attempt_count
        error = record.error

        if record.is_locked:
            if record.lock_acquired_at and now - record.lock_acquired_at < self.lock_timeout:
                expires_in = record.lock_acquired_at + self.lock_timeout - now
                raise LockNotAcquiredError(record_id, "held", retry_in=expires_in.total_seconds())

            attempt_count += 1
            error = LOCK_EXPIRED_ERROR
            logger.warning(
                "Reclaiming expired execution lease",
                extra_data={
                    "record_id": record_id,
                    "previous_holder": record.lock_holder,
                    "attempt_count": attempt_count,
                }
            )
            if attempts_exhausted(attempt_count, record.max_attempts):
                failed = record.copy(
                    status=ExecutionStatus.FAILED,
                    attempt_count=attempt_count,
                    error=error,
                    next_retry_at=None,
                    lock_holder=None,
                    lock_acquired_at=None,
                )
                failed = await self._swap(record, failed)
                self._log_transition(record, failed)
                await self.recalculate_event_status(failed.event_id)
                raise LockNotAcquiredError(record_id, "attempts exhausted")

        elif (
            record.status == ExecutionStatus.RETRYING
            and record.next_retry_at is not None
            and now < record.next_retry_at
        ):
            raise LockNotAcquiredError(
                record_id, "not due", retry_in=(record.next_retry_at - now).total_seconds()
            )

        leased = record.copy(
            status=ExecutionStatus.PROCESSING,
            attempt_count=attempt_count,
            error=error,
            lock_holder=holder,
            lock_acquired_at=now,
        )
        leased = await self._swap(record, leased)
        self._log_transition(record, leased)
        return leased

    # ==================== Run ====================

    async def run(self, record_id: str, holder: str | None = None) -> ExecutionRecord:
        """
        Lease, invoke the handler, and apply the resulting transition.

        A record that is leased elsewhere or not due yet is submitted again for
        the moment it becomes runnable, then LockNotAcquiredError propagates.
        """
        try:
            leased = await self.acquire(record_id, holder or new_id())
        except LockNotAcquiredError as e:
            if e.retry_in is not None:
                delay = max(1, math.ceil(e.retry_in))
                self._submit(record_id, delay)
                logger.info(
                    "Execution resubmitted",
                    extra_data={"record_id": record_id, "reason": e.reason, "delay_seconds": delay}
                )
            raise
        event = await self.events.get(leased.event_id)
        result = await self._invoke(leased, event)
        return await self.complete(leased, result)

    async def _invoke(self, record: ExecutionRecord, event: IncomingEvent | None) -> HandlerResult:
        handler = self.registry.get(record.handler)
        if handler is None:
            return HandlerResult.permanent(f"handler not registered: {record.handler}")
        if event is None:
            return HandlerResult.permanent(f"event not found: {record.event_id}")

        try:
            result = await asyncio.wait_for(handler(event), timeout=self.handler_timeout_seconds)
        except asyncio.TimeoutError:
            return HandlerResult.retry(
                f"handler timed out after {self.handler_timeout_seconds}s"
            )
        except PermanentExecutionError as e:
            return HandlerResult.permanent(e.message)
        except TransientExecutionError as e:
            logger.warning(
                "Handler asked for a retry",
                extra_data={"record_id": record.id, "handler": record.handler, "error": e.message}
            )
            return HandlerResult.retry(e.message)
        except Exception as e:
            logger.error(
                "Handler raised",
                extra_data={
                    "record_id": record.id,
                    "handler": record.handler,
                    "error": str(e),
                },
                exc_info=True
            )
            return HandlerResult.retry(f"{type(e).__name__}: {e}")

        if not isinstance(result, HandlerResult):
            return HandlerResult.permanent(
                f"handler returned {type(result).__name__}, expected HandlerResult"
            )
        return result

    async def complete(self, leased: ExecutionRecord, result: HandlerResult) -> ExecutionRecord:
        """Apply a handler result to a leased record"""
        now = self._clock()
        attempt_count = leased.attempt_count + 1
        base = leased.copy(
            attempt_count=attempt_count,
            last_attempt_at=now,
            lock_holder=None,
            lock_acquired_at=None,
        )
        retry_delay = None

        if result.outcome == HandlerOutcome.OK:
            updated = base.copy(status=ExecutionStatus.SUCCESS, error=None, next_retry_at=None)
        elif result.outcome == HandlerOutcome.RETRY and not attempts_exhausted(
            attempt_count, leased.max_attempts
        ):
            retry_at, retry_delay = next_retry_at(now, leased.retry_delays, attempt_count)
            updated = base.copy(
                status=ExecutionStatus.RETRYING,
                error=_truncate(result.error),
                next_retry_at=retry_at,
            )
        else:
            updated = base.copy(
                status=ExecutionStatus.FAILED,
                error=_truncate(result.error),
                next_retry_at=None,
            )

        updated = await self._swap(leased, updated)
        self._log_transition(leased, updated)

        if retry_delay is not None:
            self._submit(updated.id, retry_delay)
        if updated.is_terminal:
            await self.recalculate_event_status(updated.event_id)
        return updated

    # ==================== Recovery ====================

    async def resubmit_stalled(self, limit: int | None = None) -> int:
        """
        Submit every record that no queued task is known to cover: leases
        older than the lock timeout (the worker died) and runs that were due a
        full lock timeout ago. acquire() sorts out duplicates.
        """
        cutoff = self._clock() - self.lock_timeout
        stalled = await self.executions.list_stalled(
            cutoff, limit if limit is not None else settings.STALLED_SWEEP_BATCH_SIZE
        )
        for record in stalled:
            self._submit(record.id, 0)
            logger.warning(
                "Stalled execution resubmitted",
                extra_data={
                    "record_id": record.id,
                    "status": record.status.value,
                    "lock_holder": record.lock_holder,
                    "attempt_count": record.attempt_count,
                }
            )
        return len(stalled)

    # ==================== Event status ====================

    async def recalculate_event_status(self, event_id: str) -> EventStatus | None:
        records = await self.executions.list_for_event(event_id)
        status = derive_event_status(records)
        if status is not None:
            await self.events.update_status(event_id, status)
            logger.info(
                "Event status recalculated",
                extra_data={"event_id": event_id, "status": status.value}
            )
        return status

    def _log_transition(self, before: ExecutionRecord, after: ExecutionRecord) -> None:
        logger.info(
            "Execution transitioned",
            extra_data={
                "record_id": after.id,
                "event_id": after.event_id,
                "handler": after.handler,
                "old_status": before.status.value,
                "new_status": after.status.value,
                "attempt_count": after.attempt_count,
                "max_attempts": after.max_attempts,
                "next_retry_at": after.next_retry_at.isoformat() if after.next_retry_at else None,
                "error": after.error,
            }
        )


def _truncate(error: str | None) -> str | None:
    if error is None:
        return None
    return error[:ERROR_MAX_LENGTH]
