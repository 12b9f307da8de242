"""Celery task for thread title generation retries.

The API generates a title inline after the first reply finishes. When that
attempt fails for a transient reason (rate limit, timeout, provider down)
the state machine enqueues this task, which retries with backoff.

- Idempotent: exits early if the user has set a title meanwhile
- max_retries=3, countdown doubles per attempt
- Non-transient provider errors are not retried
"""

import asyncio

import httpx
from sqlalchemy import select

from forkchat.celery import celery_app
from forkchat.config import get_settings
from forkchat.db.models import Message, MessageRole, MessageStatus, Thread
from forkchat.db.session import get_session_factory, session_scope
from forkchat.logging import clear_task_context, configure_task_logging, get_logger
from forkchat.services.generation import generate_title
from forkchat.services.llm import LLMError, LLMErrorClass, LLMRouter

logger = get_logger(__name__)

RETRY_BASE_COUNTDOWN_S = 10

NON_RETRYABLE = (
    LLMErrorClass.MODEL_NOT_AVAILABLE,
    LLMErrorClass.INVALID_KEY,
    LLMErrorClass.CONTENT_REJECTED,
)


def _load_title_inputs(session_factory, thread_id: str) -> tuple[str, str] | None:
    """First user message and first finished reply, or None if nothing to do."""
    with session_scope(session_factory) as db:
        thread = db.execute(
            select(Thread).where(Thread.thread_id == thread_id)
        ).scalar_one_or_none()
        if thread is None or thread.user_set_title:
            return None

        messages = (
            db.execute(select(Message).where(Message.thread_id == thread_id).order_by(Message.seq))
            .scalars()
            .all()
        )
        user_message = next((m for m in messages if m.role == MessageRole.user.value), None)
        reply = next(
            (
                m
                for m in messages
                if m.role == MessageRole.assistant.value and m.status == MessageStatus.done.value
            ),
            None,
        )
        if user_message is None or reply is None:
            return None
        return user_message.text, reply.text


async def _generate(thread_id: str, user_message: str, assistant_message: str) -> str | None:
    settings = get_settings()
    async with httpx.AsyncClient() as client:
        router = LLMRouter.from_settings(client, settings)
        return await generate_title(
            router,
            get_session_factory(),
            thread_id=thread_id,
            user_message=user_message,
            assistant_message=assistant_message,
            model_id=settings.title_model_id,
        )


@celery_app.task(bind=True, max_retries=3, name="forkchat.generate_thread_title")
def generate_thread_title(self, thread_id: str, request_id: str | None = None) -> dict:
    """Generate a title for a thread whose inline title attempt failed.

    Returns:
        Dict with status and the stored title, if any.
    """
    configure_task_logging(request_id, "forkchat.generate_thread_title", self.request.id)
    try:
        inputs = _load_title_inputs(get_session_factory(), thread_id)
        if inputs is None:
            logger.info("title_task_skipped", thread_id=thread_id)
            return {"status": "skipped"}

        try:
            title = asyncio.run(_generate(thread_id, *inputs))
        except LLMError as e:
            logger.warning(
                "title_task_failed",
                thread_id=thread_id,
                error_class=e.error_class.value,
                attempt=self.request.retries,
            )
            if e.error_class in NON_RETRYABLE:
                return {"status": "failed", "error_class": e.error_class.value}
            raise self.retry(
                exc=e, countdown=RETRY_BASE_COUNTDOWN_S * (2**self.request.retries)
            ) from e

        logger.info("title_task_completed", thread_id=thread_id, stored=title is not None)
        return {"status": "completed" if title else "unchanged", "title": title}
    finally:
        clear_task_context()
