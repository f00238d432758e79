"""Celery beat schedule for periodic payment housekeeping."""
from __future__ import annotations

from core.settings import payment_settings

CELERY_BEAT_SCHEDULE = {
    "expire-stale-orders": {
        "task": "payments.expire_stale_orders",
        "schedule": payment_settings.expiry_sweep_seconds,
        "kwargs": {"limit": 100},
        "options": {"queue": "low"},
    },
}
