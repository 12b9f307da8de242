"""Database smoke tests.

Verifies session handling and the schema constraints generation relies on:
- session_scope commits on success and rolls back on error
- at most one active assistant message per thread
- only assistant messages may be in an active status
- (thread_id, seq) is unique
"""

from uuid import uuid4

import pytest
from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from forkchat.db.models import Message, Thread
from forkchat.db.session import session_scope


def make_thread(db: Session, thread_id: str = "thr-db") -> Thread:
    thread = Thread(thread_id=thread_id, user_id=uuid4())
    db.add(thread)
    db.flush()
    return thread


def make_message(thread: Thread, seq: int, role: str, status: str) -> Message:
    return Message(
        message_id=f"{thread.thread_id}-{seq}",
        thread_id=thread.thread_id,
        user_id=thread.user_id,
        seq=seq,
        role=role,
        status=status,
    )


class TestDatabaseConnectivity:
    def test_session_opens_and_executes_query(self, db_session: Session):
        assert db_session.execute(text("SELECT 1")).scalar() == 1

    def test_thread_defaults(self, db_session: Session):
        thread = make_thread(db_session)

        assert thread.title == "New Chat"
        assert thread.generation_status == "pending"
        assert thread.generation_attempt == 0
        assert thread.next_seq == 1


class TestSessionScope:
    def test_commits_on_success(self, session_factory):
        with session_scope(session_factory) as db:
            make_thread(db, "thr-kept")

        with session_factory() as db:
            assert db.execute(select(Thread).where(Thread.thread_id == "thr-kept")).scalar()

    def test_rolls_back_on_error(self, session_factory):
        with pytest.raises(RuntimeError):
            with session_scope(session_factory) as db:
                make_thread(db, "thr-lost")
                raise RuntimeError("boom")

        with session_factory() as db:
            assert db.execute(select(Thread).where(Thread.thread_id == "thr-lost")).scalar() is None


class TestMessageConstraints:
    def test_one_active_assistant_per_thread(self, db_session: Session):
        thread = make_thread(db_session)
        db_session.add(make_message(thread, 1, "assistant", "streaming"))
        db_session.flush()

        db_session.add(make_message(thread, 2, "assistant", "waiting"))
        with pytest.raises(IntegrityError):
            db_session.flush()

    def test_terminal_assistants_do_not_count(self, db_session: Session):
        thread = make_thread(db_session)
        db_session.add_all(
            [
                make_message(thread, 1, "assistant", "done"),
                make_message(thread, 2, "assistant", "cancelled"),
                make_message(thread, 3, "assistant", "thinking"),
            ]
        )

        db_session.flush()

    def test_user_message_cannot_be_active(self, db_session: Session):
        thread = make_thread(db_session)

        db_session.add(make_message(thread, 1, "user", "waiting"))
        with pytest.raises(IntegrityError):
            db_session.flush()

    def test_seq_unique_per_thread(self, db_session: Session):
        thread = make_thread(db_session)
        db_session.add(make_message(thread, 1, "user", "done"))
        db_session.flush()

        duplicate = make_message(thread, 1, "assistant", "done")
        duplicate.message_id = "other-id"
        db_session.add(duplicate)
        with pytest.raises(IntegrityError):
            db_session.flush()

    def test_unknown_status_rejected(self, db_session: Session):
        thread = make_thread(db_session)

        db_session.add(make_message(thread, 1, "assistant", "paused"))
        with pytest.raises(IntegrityError):
            db_session.flush()

    def test_text_joins_text_parts(self, db_session: Session):
        thread = make_thread(db_session)
        message = make_message(thread, 1, "assistant", "done")
        message.parts = [
            {"type": "reasoning", "text": "hmm"},
            {"type": "text", "text": "Hello"},
            {"type": "tool-call", "toolCallId": "t1"},
            {"type": "text", "text": " world"},
        ]

        assert message.text == "Hello world"
