# backend/tipu/tasks/beat_schedule.py
"""
Celery Beat schedule for Tipu payment jobs.

All jobs are safe to overlap: bookings are claimed with conditional updates
and webhook markers are unique per event.
"""

from typing import Any, Dict

from celery.schedules import crontab

PAYMENT_QUEUE_OPTIONS = {"queue": "payments"}

CELERYBEAT_SCHEDULE: Dict[str, Dict[str, Any]] = {
    "process-scheduled-payments": {
        "task": "tipu.tasks.payment_tasks.process_scheduled_payments",
        "schedule": crontab(minute="*/15"),  # Every 15 minutes
        "options": {**PAYMENT_QUEUE_OPTIONS, "priority": 9},
    },
    "retry-failed-payments": {
        "task": "tipu.tasks.payment_tasks.retry_failed_payments",
        "schedule": crontab(minute=5),  # Hourly, offset from the charge run
        "options": {**PAYMENT_QUEUE_OPTIONS, "priority": 8},
    },
    "reconcile-payment-markers": {
        "task": "tipu.tasks.payment_tasks.reconcile_payment_markers",
        "schedule": crontab(minute="*/30"),
        "options": {**PAYMENT_QUEUE_OPTIONS, "priority": 8},
    },
    "sweep-expired-authorizations": {
        "task": "tipu.tasks.payment_tasks.sweep_expired_authorizations",
        "schedule": crontab(minute=20),  # Hourly
        "options": {**PAYMENT_QUEUE_OPTIONS, "priority": 6},
    },
    "purge-expired-payment-markers": {
        "task": "tipu.tasks.payment_tasks.purge_expired_markers",
        "schedule": crontab(hour=3, minute=0),  # Daily at 3 AM UTC
        "options": {**PAYMENT_QUEUE_OPTIONS, "priority": 2},
    },
}


def get_beat_schedule() -> Dict[str, Dict[str, Any]]:
    """Return a copy of the beat schedule so callers can adjust it safely."""
    return {name: dict(entry) for name, entry in CELERYBEAT_SCHEDULE.items()}
