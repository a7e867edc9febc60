# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# Celery runs the periodic checkpoint TTL sweep. The API process never
# blocks on it: beat schedules the task, a worker executes it against
# the sync database engine.
#
# ARCHITECTURE:
# ┌──────────────┐     ┌───────┐     ┌──────────────┐     ┌──────────┐
# │ Celery beat  │────▶│ Redis │────▶│ Celery Worker│────▶│ Postgres │
# │ (scheduler)  │     │(broker)│    │ (consumer)   │     │(checkpoints)│
# └──────────────┘     └───────┘     └──────────────┘     └──────────┘
#
# Run with:
#   celery -A convoflow.workers.celery_app worker --beat --loglevel=info
# =============================================================================

from celery import Celery

from convoflow.config import settings

celery_app = Celery(
    "convoflow.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    # --- Serialization ---
    # JSON only: pickle can execute arbitrary code during deserialization.
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # --- Reliability ---
    # Acknowledge after completion so a crashed sweep is re-queued.
    # The sweep is idempotent.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,

    # --- Timeouts ---
    task_soft_time_limit=120,
    task_time_limit=300,

    # --- Results ---
    result_expires=3600,

    # --- Schedule ---
    beat_schedule={
        "cleanup-expired-checkpoints": {
            "task": "cleanup_expired_checkpoints",
            "schedule": float(settings.checkpoint_cleanup_interval_seconds),
        },
    },

    include=["convoflow.workers.tasks"],
)
