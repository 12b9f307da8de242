"""Stale generation sweeper task.

- Celery beat job: forkchat.sweep_stale_generations (every 60s)
- Query: role='assistant' AND status IN (waiting, thinking, streaming)
  AND updated_at < now() - STALE_GENERATION_MINUTES
- If generation_active:{message_id} exists in Redis → skip (still driven)
- Finalize via conditional update: status='error',
  server_error.type='E_ORPHANED_GENERATION', parts kept as last flushed
- The thread is marked failed only while it is still generating and no
  other assistant message in it is active
- Log count + oldest age
"""

from datetime import timedelta

import redis
from sqlalchemy import and_, exists, select, update
from sqlalchemy.orm import Session, aliased, sessionmaker

from forkchat.celery import celery_app
from forkchat.config import get_settings
from forkchat.db.models import (
    ACTIVE_MESSAGE_STATUSES,
    GenerationStatus,
    Message,
    MessageRole,
    MessageStatus,
    Thread,
    as_utc,
    utcnow,
)
from forkchat.db.session import get_session_factory
from forkchat.logging import clear_task_context, configure_task_logging, get_logger
from forkchat.services.stream_liveness import check_liveness_marker

logger = get_logger(__name__)

E_ORPHANED_GENERATION = "E_ORPHANED_GENERATION"
ORPHANED_MESSAGE = "Generation was interrupted. Please try again."


def sweep_stale_generations(
    session_factory: sessionmaker[Session] | None = None,
    redis_client=None,
    stale_minutes: int | None = None,
) -> int:
    """Finalize assistant messages whose generation died without a terminal write.

    Args:
        session_factory: Session factory; defaults to the process-wide one.
        redis_client: Sync Redis client for liveness checks. If None, skip
            the liveness check and rely on the age threshold alone.
        stale_minutes: Age threshold; defaults to STALE_GENERATION_MINUTES.

    Returns:
        Number of messages finalized.
    """
    if session_factory is None:
        session_factory = get_session_factory()
    if stale_minutes is None:
        stale_minutes = get_settings().stale_generation_minutes

    db = session_factory()
    finalized_count = 0

    try:
        now = utcnow()
        threshold = now - timedelta(minutes=stale_minutes)

        rows = db.execute(
            select(Message.message_id, Message.thread_id, Message.updated_at)
            .where(
                Message.role == MessageRole.assistant.value,
                Message.status.in_(ACTIVE_MESSAGE_STATUSES),
                Message.updated_at < threshold,
            )
            .order_by(Message.updated_at.asc())
        ).all()

        if not rows:
            return 0

        oldest_age_seconds = 0
        other = aliased(Message)

        for message_id, thread_id, updated_at in rows:
            age_seconds = int((now - as_utc(updated_at)).total_seconds())
            oldest_age_seconds = max(oldest_age_seconds, age_seconds)

            if check_liveness_marker(redis_client, message_id):
                logger.debug("sweeper_skip_active", message_id=message_id, age_seconds=age_seconds)
                continue

            result = db.execute(
                update(Message)
                .where(
                    Message.message_id == message_id,
                    Message.status.in_(ACTIVE_MESSAGE_STATUSES),
                )
                .values(
                    status=MessageStatus.error.value,
                    server_error={"type": E_ORPHANED_GENERATION, "message": ORPHANED_MESSAGE},
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                continue

            db.execute(
                update(Thread)
                .where(
                    Thread.thread_id == thread_id,
                    Thread.generation_status == GenerationStatus.generating.value,
                    ~exists().where(
                        and_(
                            other.thread_id == thread_id,
                            other.status.in_(ACTIVE_MESSAGE_STATUSES),
                        )
                    ),
                )
                .values(generation_status=GenerationStatus.failed.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            finalized_count += 1
            logger.info("sweeper_finalized", message_id=message_id, age_seconds=age_seconds)

        db.commit()

        if finalized_count > 0:
            logger.info(
                "sweeper_complete",
                finalized_count=finalized_count,
                total_stale=len(rows),
                oldest_age_seconds=oldest_age_seconds,
            )
        return finalized_count

    except Exception as e:
        logger.error("sweeper_error", error=str(e))
        db.rollback()
        return 0
    finally:
        db.close()


def _sync_redis_client():
    redis_url = get_settings().redis_url
    if not redis_url:
        return None
    return redis.Redis.from_url(redis_url, decode_responses=True, socket_timeout=5)


@celery_app.task(bind=True, max_retries=0, name="forkchat.sweep_stale_generations")
def sweep_stale_generations_task(self, request_id: str | None = None) -> dict:
    """Beat entrypoint for sweep_stale_generations."""
    configure_task_logging(request_id, "forkchat.sweep_stale_generations", self.request.id)
    redis_client = _sync_redis_client()
    try:
        return {"finalized": sweep_stale_generations(redis_client=redis_client)}
    finally:
        if redis_client is not None:
            redis_client.close()
        clear_task_context()
