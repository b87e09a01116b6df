"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "bluecore",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.pipeline", "workers.scheduler"],
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
        "workers.pipeline.run_daily_pipeline": {"queue": "pipeline"},
        "workers.pipeline.*": {"queue": "decisions"},
        "workers.scheduler.*": {"queue": "scheduler"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # Every job fans out across active tenants via workers.scheduler.dispatch_active_tenants.
    beat_schedule={
        # ── KPI Computation ─────────────────────────────────────────
        "daily-pipeline": {
            "task": "workers.scheduler.dispatch_active_tenants",
            "schedule": crontab(hour=1, minute=0),
            "kwargs": {
                "task_name": "workers.pipeline.run_daily_pipeline",
                "task_kwargs": {"link_customers": True},
            },
            "options": {"queue": "scheduler"},
        },
        # ── Alerts ──────────────────────────────────────────────────
        "alert-detection-hourly": {
            "task": "workers.scheduler.dispatch_active_tenants",
            "schedule": crontab(minute=15),
            "kwargs": {"task_name": "workers.pipeline.run_alert_detection"},
            "options": {"queue": "scheduler"},
        },
        # ── Decision Cards ──────────────────────────────────────────
        "generate-decision-cards-hourly": {
            "task": "workers.scheduler.dispatch_active_tenants",
            "schedule": crontab(minute=30),  # After alert detection
            "kwargs": {"task_name": "workers.pipeline.generate_decision_cards"},
            "options": {"queue": "scheduler"},
        },
        "reopen-snoozed-cards-15m": {
            "task": "workers.scheduler.dispatch_active_tenants",
            "schedule": crontab(minute="*/15"),
            "kwargs": {"task_name": "workers.pipeline.reopen_snoozed_cards"},
            "options": {"queue": "scheduler"},
        },
        # ── Outcome Tracking ────────────────────────────────────────
        "evaluate-outcomes-daily": {
            "task": "workers.scheduler.dispatch_active_tenants",
            "schedule": crontab(hour=4, minute=0),  # After the daily pipeline
            "kwargs": {"task_name": "workers.pipeline.evaluate_decision_outcomes"},
            "options": {"queue": "scheduler"},
        },
    },
)
