"""Celery application configuration.

Central configuration for Celery used by both the API (for enqueuing title
retries) and the worker (for executing tasks and the beat schedule).

Usage:
    from forkchat.celery import celery_app

    celery_app.send_task("forkchat.generate_thread_title", args=[thread_id])
"""

from celery import Celery

from forkchat.config import get_settings

settings = get_settings()

celery_app = Celery("forkchat")

celery_app.conf.broker_url = settings.effective_celery_broker_url
celery_app.conf.result_backend = settings.effective_celery_result_backend

# Task configuration
celery_app.conf.task_serializer = "json"
celery_app.conf.result_serializer = "json"
celery_app.conf.accept_content = ["json"]
celery_app.conf.timezone = "UTC"
celery_app.conf.enable_utc = True

celery_app.conf.task_routes = {
    "forkchat.generate_thread_title": {"queue": "titles"},
}
celery_app.conf.task_default_queue = "default"

# Orphaned generations are finalized once a minute
celery_app.conf.beat_schedule = {
    "sweep-stale-generations": {
        "task": "forkchat.sweep_stale_generations",
        "schedule": 60.0,
    },
}

celery_app.conf.task_always_eager = False


def get_celery_app() -> Celery:
    """Get the Celery application instance."""
    return celery_app
