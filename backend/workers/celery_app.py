"""
Celery Application Configuration
"""

from celery import Celery

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "stockledger",
    broker=settings.redis_url,
    backend=settings.redis_url,
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
        "workers.variance_scan.*": {"queue": "alerts"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # The dispatcher fans out one variance pass per store.
    beat_schedule={
        "variance-scan": {
            "task": "workers.variance_scan.dispatch_variance_scans",
            "schedule": float(settings.variance_scan_interval_seconds),
            "options": {"queue": "alerts"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"], related_name="variance_scan")
