"""Entry point for the payments Celery worker.

Deployments usually run the Celery CLI directly, e.g.
``celery -A infrastructure.tasks.config.celery worker -Q high,default,low``.
Beat (order expiry sweep) runs as a separate process with ``celery beat``.
"""
from __future__ import annotations

from .config.celery import celery_app


def main() -> None:
    celery_app.worker_main(
        argv=["worker", "--hostname=payments@%h", "--queues=high,default,low", "--loglevel=INFO"]
    )


if __name__ == "__main__":
    main()
