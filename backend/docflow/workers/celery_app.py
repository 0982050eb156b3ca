"""
Celery Application Factory

Celery always runs the pipeline's scheduled maintenance. With
queue_backend="celery" it also runs the stage jobs themselves: the
CeleryWorkQueue publishes one run_pipeline_stage task per waiting job to the
kind's queue, while job state stays in the Redis ledger.

  pipeline.upload          — intake jobs
  pipeline.ocr             — OCR jobs
  pipeline.classification  — classification jobs
  pipeline.indexing        — indexing jobs
  maintenance.scan         — stale-document scanner, every 60 s via Celery Beat
  system.health            — internal health-check tasks

Workers can be split per queue, e.g. OCR on its own pool:
  celery -A docflow.workers.celery_app worker -Q pipeline.ocr -c 5

Broker and result backend default to Redis, the same server that backs
the durable work queue.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import after_setup_logger, task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from docflow.core.config import settings
from docflow.core.logging import LOG_FORMAT
from docflow.schemas.jobs import JobType

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

MAINTENANCE_EXCHANGE = Exchange("maintenance", type="direct", durable=True)
PIPELINE_EXCHANGE    = Exchange("pipeline", type="direct", durable=True)

PIPELINE_QUEUES = tuple(
    Queue(
        f"pipeline.{kind.value}",
        exchange=PIPELINE_EXCHANGE,
        routing_key=f"pipeline.{kind.value}",
        durable=True,
    )
    for kind in JobType
)

TASK_QUEUES = PIPELINE_QUEUES + (
    Queue(
        "maintenance.scan",
        exchange=MAINTENANCE_EXCHANGE,
        routing_key="maintenance.scan",
        durable=True,
    ),
    Queue(
        "system.health",
        Exchange("system", type="direct"),
        routing_key="system.health",
        durable=True,
    ),
)

TASK_ROUTES = {
    "docflow.workers.tasks.requeue_stale_documents": {"queue": "maintenance.scan"},
    "docflow.workers.tasks.health_check":            {"queue": "system.health"},
    # run_pipeline_stage is published straight to pipeline.<kind>
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("docflow")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="maintenance.scan",
        task_default_exchange="maintenance",
        task_default_routing_key="maintenance.scan",

        # --- Reliability ---
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        # --- Timeouts ---
        task_soft_time_limit=55,
        task_time_limit=60,

        # --- Result TTL ---
        result_expires=3600,   # document state lives in PostgreSQL, not Celery results

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule (stale-document scanner) ---
        beat_schedule={
            "requeue-stale-documents-every-60s": {
                "task":     "docflow.workers.tasks.requeue_stale_documents",
                "schedule": 60,
                "options":  {"queue": "maintenance.scan"},
            },
        },

        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["docflow.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: structured task logging
# ---------------------------------------------------------------------------

@after_setup_logger.connect
def on_setup_logger(logger, loglevel, **_):
    for handler in logger.handlers:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info("Task start | task_id=%s task=%s", task_id, task.name)


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info("Task end | task_id=%s task=%s state=%s result=%s", task_id, task.name, state, retval)


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s error=%s",
        task_id, exception,
        exc_info=True,
    )
