"""Celery worker entrypoint.

Run with:
    celery -A apps.worker.main:celery_app worker -Q default,titles --loglevel=info
    celery -A apps.worker.main:celery_app beat --loglevel=info

This module imports the Celery app and explicitly registers all tasks.
Task definitions are in the forkchat.tasks package - no autodiscovery.

Logging Convention:
- All task log entries include request_id, task_name, task_id when available
- Tasks accept `request_id: str | None = None` parameter for correlation
- Use configure_task_logging() at the start of each task to set up context

Queue Configuration:
- titles: Thread title generation retries (one LLM call each)
- default: The stale generation sweeper (beat, every minute)
"""

from celery.signals import worker_process_init

from forkchat.celery import celery_app
from forkchat.logging import configure_logging, get_logger

# =============================================================================
# Task Registration (explicit imports - no autodiscovery)
# =============================================================================

from forkchat.tasks import generate_thread_title, sweep_stale_generations_task  # noqa: F401

# =============================================================================
# Worker Lifecycle
# =============================================================================


@worker_process_init.connect
def setup_worker_logging(**kwargs):
    """Configure structlog when a worker process starts."""
    configure_logging()
    logger = get_logger(__name__)
    logger.info("celery_worker_started", queues=["default", "titles"])


# Command: celery -A apps.worker.main:celery_app worker ...
__all__ = ["celery_app"]
