"""Small dispatching helpers to decouple Celery from callers."""
from __future__ import annotations

from ..config.celery import celery_app


class TaskDispatcher:
    """Facade used by the API layer to schedule payment follow-ups."""

    def schedule_order_reconcile(self, order_number: str, *, countdown: int = 60) -> None:
        """Poll the provider later for an order still processing on its side."""
        celery_app.send_task(
            "payments.reconcile_order",
            kwargs={"order_number": order_number},
            countdown=countdown,
        )
