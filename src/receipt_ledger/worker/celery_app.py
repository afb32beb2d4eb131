from __future__ import annotations

from celery import Celery
from celery.schedules import crontab

from receipt_ledger.core.config import settings


def make_celery() -> Celery:
    app = Celery("receipt_ledger", broker=settings.redis_url, backend=settings.redis_url)
    app.conf.update(
        task_always_eager=settings.environment in {"dev", "test"},
        task_eager_propagates=True,
        task_track_started=True,
        # A run killed here leaves the receipt in processing, which reprocess can reclaim.
        task_time_limit=settings.process_time_limit_seconds,
        beat_schedule={
            "generate-expected-payments": {
                "task": "generate_all_expected_payments",
                "schedule": crontab(hour=2, minute=0),
            },
            "mark-missed-payments": {
                "task": "mark_missed_payments",
                "schedule": crontab(hour=2, minute=30),
            },
        },
    )
    app.autodiscover_tasks(["receipt_ledger.worker.tasks"])
    return app


celery_app = make_celery()
