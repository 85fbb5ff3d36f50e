from __future__ import annotations

from celery.schedules import crontab

RECONCILIATION_TASK = "app.workers.tasks.access_reconciliation.run_access_reconciliation"


def configure_access_reconciliation_schedule(celery_app, *, queue: str) -> None:
    celery_app.conf.beat_schedule = celery_app.conf.beat_schedule or {}
    celery_app.conf.beat_schedule.update(
        {
            "access-reconciliation-every-30-minutes": {
                "task": RECONCILIATION_TASK,
                "schedule": 1800.0,
                "options": {"queue": queue},
            },
            # Full sweep once a day outside the renewal peak.
            "access-reconciliation-daily-0330-utc": {
                "task": RECONCILIATION_TASK,
                "schedule": crontab(hour=3, minute=30),
                "options": {"queue": queue},
            },
        }
    )
