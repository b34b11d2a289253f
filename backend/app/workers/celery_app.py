"""
Celery Application — Background maintenance for BCA Field Sync.
Keeps periodic server-side work out of the request path.

Beat schedule:
  purge_stale_conflicts         — daily 03:00 UTC — drops resolved conflicts past retention
  recalculate_priority_scores   — hourly          — refreshes cached project rankings
"""
import os
from celery import Celery
from celery.schedules import crontab

BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")

celery_app = Celery(
    "bca",
    broker=BROKER_URL,
    backend=RESULT_BACKEND,
    include=["app.workers.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_soft_time_limit=300,   # 5 minutes soft limit
    task_time_limit=600,        # 10 minutes hard limit
    result_expires=3600,        # Results expire after 1 hour
    # ── Beat schedule ────────────────────────────────────────────────────────
    beat_schedule={
        "purge-stale-conflicts-daily": {
            "task": "tasks.purge_stale_conflicts",
            "schedule": crontab(hour=3, minute=0),
            "options": {"expires": 3600},
        },
        "recalculate-priority-hourly": {
            "task": "tasks.recalculate_priority_scores",
            "schedule": crontab(minute=15),
            "options": {"expires": 1800},
        },
    },
)
