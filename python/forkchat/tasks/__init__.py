"""Celery tasks for ForkChat.

Tasks are explicitly imported here to register them with Celery.
No autodiscovery - all tasks must be imported in this module.

Usage in API (enqueue):
    from forkchat.tasks import generate_thread_title
    generate_thread_title.apply_async(args=[thread_id], kwargs={"request_id": request_id})
"""

from forkchat.tasks.sweep_stale import sweep_stale_generations_task
from forkchat.tasks.titles import generate_thread_title

__all__ = ["generate_thread_title", "sweep_stale_generations_task"]
