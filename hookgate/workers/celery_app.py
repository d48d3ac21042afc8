"""
Celery Application Configuration
"""
from celery import Celery

from hookgate.core.config import settings
from hookgate.domain.stores import RECOVER_STALLED_TASK

celery_app = Celery(
    "hookgate",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["hookgate.workers.tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=int(max(settings.HANDLER_TIMEOUT_SECONDS, settings.OUTBOUND_TIMEOUT_SECONDS)) + 60,
    worker_prefetch_multiplier=1,
    # ack רק בסיום: worker שנפל משאיר את ה-task בתור, ה-lease הישן יפוג
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # leases של workers שנפלו ו-retries שה-task שלהם אבד
    "recover-stalled-work": {
        "task": RECOVER_STALLED_TASK,
        "schedule": float(settings.STALLED_SWEEP_INTERVAL_SECONDS),
    },
}
