"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "fulfillops",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.scheduler", "workers.courier_metrics", "workers.dead_letters"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.courier_metrics.*": {"queue": "analytics"},
        "workers.dead_letters.*": {"queue": "pipeline"},
        "workers.scheduler.*": {"queue": "pipeline"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # These jobs fan out across active tenants via workers.scheduler.dispatch_active_tenants.
    beat_schedule={
        # ── Courier analytics ───────────────────────────────────────
        "compute-courier-performance-daily": {
            "task": "workers.scheduler.dispatch_active_tenants",
            "schedule": crontab(hour=1, minute=0),
            "kwargs": {"task_name": "workers.courier_metrics.compute_courier_performance"},
            "options": {"queue": "pipeline"},
        },
        # ── Reliability ─────────────────────────────────────────────
        "replay-dead-letters-hourly": {
            "task": "workers.scheduler.dispatch_active_tenants",
            "schedule": crontab(minute=15),
            "kwargs": {"task_name": "workers.dead_letters.replay_open_dead_letters"},
            "options": {"queue": "pipeline"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"])
