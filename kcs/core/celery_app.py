"""
Celery configuration for the stage workers.
"""

from celery import Celery

from kcs.core.config import settings
from kcs.core.stages import OUTBOX_DRAIN, OUTBOX_QUEUE, PIPELINE

# Create Celery instance
celery_app = Celery(
    "kcs",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["kcs.tasks"],
)

task_routes = {stage: {"queue": stage} for stage in PIPELINE}
task_routes[OUTBOX_DRAIN] = {"queue": OUTBOX_QUEUE}

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # One queue per stage
    task_routes=task_routes,
    # A job is only acknowledged once its stage committed, so a crashed
    # worker's job is redelivered
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Task time limits
    task_time_limit=3600,  # 1 hour hard limit
    task_soft_time_limit=3000,  # 50 minutes soft limit
    # Result backend settings
    result_expires=86400,  # Results expire after 24 hours
    # Worker settings
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
    beat_schedule={
        "drain-webhook-outbox": {
            "task": OUTBOX_DRAIN,
            "schedule": float(settings.OUTBOX_DRAIN_INTERVAL_SECONDS),
        },
    },
)


def enqueue_stage(stage: str, order_id) -> None:
    """Put `{order_id}` on the queue for `stage`."""
    celery_app.send_task(stage, kwargs={"order_id": str(order_id)}, queue=stage)
