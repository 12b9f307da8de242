"""Tests for the stale generation sweeper.

Tests cover:
- Stale active messages without a liveness marker are finalized as errors
- A liveness marker protects a slow but live generation
- Fresh messages and terminal messages are never touched
- The thread is only marked failed while it still reports generating
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

from forkchat.config import clear_settings_cache
from forkchat.db.models import Message, Thread, utcnow
from forkchat.schemas.threads import SubmitMessageRequest
from forkchat.services import coordinator
from forkchat.services.stream_liveness import liveness_key
from forkchat.tasks import sweep_stale
from forkchat.tasks.sweep_stale import (
    E_ORPHANED_GENERATION,
    ORPHANED_MESSAGE,
    sweep_stale_generations,
    sweep_stale_generations_task,
)
from tests.fakes import FakeSyncRedis, ScriptedRouter
from tests.helpers import get_message, get_thread, new_id


@pytest.fixture
def admit(session_factory, test_user_id):
    router = ScriptedRouter()

    def _admit():
        with session_factory() as db:
            return coordinator.submit_message(
                db,
                test_user_id,
                new_id("thr"),
                SubmitMessageRequest(content="Hello", model="gemini-2.0-flash"),
                router=router,
            )

    return _admit


def age_message(session_factory, message_id: str, minutes: int, **values) -> None:
    with session_factory() as db:
        db.execute(
            update(Message)
            .where(Message.message_id == message_id)
            .values(updated_at=utcnow() - timedelta(minutes=minutes), **values)
        )
        db.commit()


class TestSweepStaleGenerations:
    def test_finalizes_orphaned_generation(self, session_factory, admit):
        result = admit()
        partial = [{"type": "text", "text": "Half an answ"}]
        age_message(
            session_factory, result.assistant_message_id, 20, status="streaming", parts=partial
        )

        finalized = sweep_stale_generations(session_factory, FakeSyncRedis(), stale_minutes=10)

        assert finalized == 1
        message = get_message(session_factory, result.assistant_message_id)
        assert message.status == "error"
        assert message.server_error == {
            "type": E_ORPHANED_GENERATION,
            "message": ORPHANED_MESSAGE,
        }
        assert message.parts == partial
        assert get_thread(session_factory, result.thread_id).generation_status == "failed"

    def test_liveness_marker_protects_generation(self, session_factory, admit):
        result = admit()
        age_message(session_factory, result.assistant_message_id, 20)
        redis = FakeSyncRedis()
        redis.set(liveness_key(result.assistant_message_id), "1", ex=600)

        finalized = sweep_stale_generations(session_factory, redis, stale_minutes=10)

        assert finalized == 0
        assert get_message(session_factory, result.assistant_message_id).status == "waiting"

    def test_fresh_messages_are_left_alone(self, session_factory, admit):
        result = admit()

        assert sweep_stale_generations(session_factory, None, stale_minutes=10) == 0
        assert get_message(session_factory, result.assistant_message_id).status == "waiting"

    def test_terminal_messages_are_ignored(self, session_factory, admit):
        result = admit()
        age_message(session_factory, result.assistant_message_id, 60, status="done")

        assert sweep_stale_generations(session_factory, None, stale_minutes=10) == 0
        assert get_message(session_factory, result.assistant_message_id).server_error is None

    def test_completed_thread_keeps_its_status(self, session_factory, admit):
        result = admit()
        age_message(session_factory, result.assistant_message_id, 20)
        with session_factory() as db:
            db.execute(
                update(Thread)
                .where(Thread.thread_id == result.thread_id)
                .values(generation_status="completed")
            )
            db.commit()

        assert sweep_stale_generations(session_factory, None, stale_minutes=10) == 1
        assert get_thread(session_factory, result.thread_id).generation_status == "completed"

    def test_finalizes_every_stale_message(self, session_factory, admit):
        results = [admit() for _ in range(3)]
        for result in results:
            age_message(session_factory, result.assistant_message_id, 30)

        assert sweep_stale_generations(session_factory, None, stale_minutes=10) == 3
        # A second pass finds nothing
        assert sweep_stale_generations(session_factory, None, stale_minutes=10) == 0


class TestSweepTask:
    def test_task_uses_settings_threshold(self, session_factory, admit, monkeypatch):
        monkeypatch.setenv("STALE_GENERATION_MINUTES", "5")
        monkeypatch.delenv("REDIS_URL", raising=False)
        clear_settings_cache()
        monkeypatch.setattr(sweep_stale, "get_session_factory", lambda: session_factory)
        stale = admit()
        fresh = admit()
        age_message(session_factory, stale.assistant_message_id, 6)
        age_message(session_factory, fresh.assistant_message_id, 4)

        result = sweep_stale_generations_task()

        assert result == {"finalized": 1}
        assert get_message(session_factory, stale.assistant_message_id).status == "error"
        assert get_message(session_factory, fresh.assistant_message_id).status == "waiting"
