"""
Celery Tasks - handler execution and outbound delivery

Both tasks are thin: they build the services for the current event loop and
hand over to ExecutionService.run / DeliveryService.deliver. Retries are
scheduled by the services through CeleryTaskQueue, never by Celery's own
retry mechanism, so the attempt accounting stays in one place.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, contextmanager
from typing import AsyncIterator

from hookgate.core.config import settings
from hookgate.core.exceptions import LockNotAcquiredError, NotFoundException, StaleRecordError
from hookgate.core.logging import get_logger, set_correlation_id
from hookgate.domain.stores import (
    DELIVER_WEBHOOK_TASK,
    EXECUTE_HANDLER_TASK,
    RECOVER_STALLED_TASK,
    Task,
)
from hookgate.workers.celery_app import celery_app

logger = get_logger(__name__)


class CeleryTaskQueue:
    """TaskQueue on top of Celery; a delay becomes the task countdown"""

    def __init__(self, app=celery_app):
        self.app = app

    def enqueue(self, task: Task, delay: float = 0) -> None:
        self.app.send_task(
            task.name,
            args=list(task.args),
            countdown=delay if delay > 0 else None,
        )
        logger.debug(
            "Task submitted",
            extra_data={"task": task.name, "args": list(task.args), "delay_seconds": delay}
        )


@contextmanager
def get_event_loop():
    """
    Fresh event loop per task, closed together with everything bound to it.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # Redis singleton קשור ל-loop הזה; סוגרים לפני סגירת ה-loop
            from hookgate.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@asynccontextmanager
async def task_container() -> AsyncIterator:
    from hookgate.container import build_container
    from hookgate.core.redis_client import get_redis
    from hookgate.db.database import task_session_factory
    from hookgate.domain.services.handler_registry import registry

    registry.load_modules(settings.handler_modules)
    redis = await get_redis() if settings.SHARED_STATE_BACKEND == "redis" else None
    async with task_session_factory() as session_factory:
        yield build_container(session_factory, task_queue=CeleryTaskQueue(), redis=redis)


async def _execute_handler(record_id: str) -> dict:
    async with task_container() as container:
        try:
            record = await container.executions.run(record_id)
        except LockNotAcquiredError as e:
            logger.info(
                "Execution skipped",
                extra_data={"record_id": record_id, "reason": e.reason}
            )
            return {
                "record_id": record_id,
                "status": "skipped",
                "reason": e.reason,
                "resubmitted": e.retry_in is not None,
            }
        except (StaleRecordError, NotFoundException) as e:
            logger.warning(
                "Execution dropped",
                extra_data={"record_id": record_id, "error": e.message}
            )
            return {"record_id": record_id, "status": "dropped", "reason": e.message}

    return {
        "record_id": record_id,
        "status": record.status.value,
        "attempt_count": record.attempt_count,
    }


async def _deliver_webhook(delivery_id: str) -> dict:
    async with task_container() as container:
        try:
            delivery = await container.deliveries.deliver(delivery_id)
        except (StaleRecordError, NotFoundException) as e:
            logger.warning(
                "Delivery dropped",
                extra_data={"delivery_id": delivery_id, "error": e.message}
            )
            return {"delivery_id": delivery_id, "status": "dropped", "reason": e.message}

    return {
        "delivery_id": delivery_id,
        "status": delivery.status.value,
        "attempt_count": delivery.attempt_count,
    }


async def _recover_stalled_work() -> dict:
    async with task_container() as container:
        executions = await container.executions.resubmit_stalled()
        deliveries = await container.deliveries.resubmit_stalled()

    if executions or deliveries:
        logger.warning(
            "Stalled work resubmitted",
            extra_data={"executions": executions, "deliveries": deliveries}
        )
    return {"executions": executions, "deliveries": deliveries}


@celery_app.task(name=EXECUTE_HANDLER_TASK)
def execute_handler(record_id: str) -> dict:
    """Run one execution record"""
    return run_async(_execute_handler(record_id))


@celery_app.task(name=DELIVER_WEBHOOK_TASK)
def deliver_webhook(delivery_id: str) -> dict:
    """Attempt one outbound delivery"""
    return run_async(_deliver_webhook(delivery_id))


@celery_app.task(name=RECOVER_STALLED_TASK)
def recover_stalled_work() -> dict:
    """Periodic: resubmit executions and deliveries whose task was lost"""
    return run_async(_recover_stalled_work())
