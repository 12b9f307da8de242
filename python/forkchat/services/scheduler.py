"""Fire-and-forget boundary between HTTP admission and generation.

Routes call schedule() after the admission transaction has committed. Each
attempt runs as its own asyncio task on the API process's event loop;
the scheduler keeps a strong reference to every running task so it cannot
be garbage collected mid-stream, and exposes an in-process cancel signal
per assistant message.
"""

import asyncio
import contextlib

from forkchat.logging import get_logger
from forkchat.services.generation import GenerationJob, GenerationStateMachine
from forkchat.services.relay import LiveRelay

logger = get_logger(__name__)


class GenerationScheduler:
    def __init__(self, machine: GenerationStateMachine):
        self._machine = machine
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}

    @property
    def machine(self) -> GenerationStateMachine:
        return self._machine

    def running(self, message_id: str) -> bool:
        task = self._tasks.get(message_id)
        return task is not None and not task.done()

    def schedule(self, job: GenerationJob, relay: LiveRelay | None = None) -> asyncio.Task:
        """Start a generation task for ``job`` and return it."""
        cancel_event = asyncio.Event()
        task = asyncio.create_task(
            self._machine.run(job, relay=relay, cancel_event=cancel_event),
            name=f"generation:{job.message_id}",
        )
        self._tasks[job.message_id] = task
        self._cancel_events[job.message_id] = cancel_event
        task.add_done_callback(lambda t, message_id=job.message_id: self._on_done(message_id, t))
        logger.info(
            "generation_scheduled",
            thread_id=job.thread_id,
            message_id=job.message_id,
            attempt=job.attempt,
        )
        return task

    def cancel(self, message_id: str) -> bool:
        """Signal the running attempt for ``message_id`` to stop.

        Returns False when no attempt for that message runs in this process;
        a generation in another process observes the stop through its
        status watcher instead.
        """
        event = self._cancel_events.get(message_id)
        if event is None:
            return False
        event.set()
        return True

    async def shutdown(self) -> None:
        """Cancel and await every running attempt."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        if not tasks:
            return
        logger.info("generation_scheduler_shutdown", running=len(tasks))
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task

    def _on_done(self, message_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(message_id) is task:
            del self._tasks[message_id]
            self._cancel_events.pop(message_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "generation_task_failed",
                message_id=message_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
