"""Common base task for payment jobs"""
from __future__ import annotations

from celery import Task
from core.logging_config import get_logger

logger = get_logger(__name__)


class BaseTask(Task):
    """Structured lifecycle logging; ``order_number`` is lifted from kwargs when present."""

    def _context(self, task_id, kwargs) -> dict:
        context = {"task_id": task_id, "task_name": self.name}
        if kwargs and kwargs.get("order_number"):
            context["order_number"] = kwargs["order_number"]
        return context

    def on_failure(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        logger.error(
            "payment_task_failed",
            error=str(exc),
            error_type=exc.__class__.__name__,
            retries=self.request.retries,
            **self._context(task_id, kwargs),
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_retry(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        # provider outages retry with backoff until max_retries
        logger.warning(
            "payment_task_retry",
            error=str(exc),
            retries=self.request.retries,
            **self._context(task_id, kwargs),
        )
        super().on_retry(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval, task_id, args, kwargs):  # type: ignore[override]
        logger.info("payment_task_succeeded", result=retval, **self._context(task_id, kwargs))
        super().on_success(retval, task_id, args, kwargs)
