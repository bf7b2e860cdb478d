from __future__ import annotations

import logging

from celery import Celery

from gateway.core.config import settings


logger = logging.getLogger(__name__)

BROKER_CONFIGURED = bool(settings.TASK_BROKER_URL)

celery_app = Celery("gateway-reconciliation", include=["gateway.tasks.generations", "gateway.tasks.ledger"])

if BROKER_CONFIGURED:
    broker_url = settings.TASK_BROKER_URL
else:
    broker_url = "memory://"
    logger.warning("TASK_BROKER_URL is not configured; Celery will run in in-memory mode.")

celery_app.conf.update(
    broker_url=broker_url,
    result_backend=None,
    task_default_queue="reconciliation-tasks",
    task_serializer="json",
    accept_content=["json"],
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    broker_connection_retry_on_startup=True,
    timezone="UTC",
    enable_utc=True,
    beat_schedule={
        "reconcile-stale-generations": {
            "task": "generations.reconcile_stale",
            "schedule": float(max(settings.SWEEP_STALE_AFTER_SECONDS, 60)),
        },
    },
)


def enqueue(task, *args, **kwargs):
    """
    Convenience helper so the API can enqueue tasks without caring
    whether the broker is configured. In tests/local dev we execute tasks inline.
    """
    if BROKER_CONFIGURED:
        return task.delay(*args, **kwargs)
    logger.info("Celery broker not configured; running %s synchronously", task.name)
    return task.apply(args=args, kwargs=kwargs)
