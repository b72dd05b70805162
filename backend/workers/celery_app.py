"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "shelfguard",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.scheduler"],
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
        "workers.scheduler.*": {"queue": "detection"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    beat_schedule={
        # ── Anomaly Detection ──────────────────────────────────────
        "detect-anomalies-30m": {
            "task": "workers.scheduler.run_detection_pass",
            "schedule": crontab(minute=f"*/{settings.detection_interval_minutes}"),
            "options": {"queue": "detection"},
        },
    },
)
