"""Tests for the thread generation coordinator.

Covers admission (submit / edit / retry / live), branching, stop and the
read paths. Generation itself is not run here: tests that need a finished
reply mark the assistant message terminal directly, which is what the
state machine's terminal write does.
"""

from uuid import uuid4

import pytest
from sqlalchemy import update

from forkchat.db.models import (
    GenerationStatus,
    Message,
    MessageRole,
    MessageStatus,
    Thread,
    ThreadVisibility,
)
from forkchat.errors import ApiError, ApiErrorCode
from forkchat.schemas.chat import ChatRequest
from forkchat.schemas.threads import ModelParams, SubmitMessageRequest
from forkchat.services import coordinator
from forkchat.services.llm import Turn
from tests.fakes import ScriptedRouter
from tests.helpers import get_message, get_thread, list_thread_messages, new_id

MODEL = "gemini-2.0-flash"


@pytest.fixture
def router():
    return ScriptedRouter()


@pytest.fixture
def submit(session_factory, router, test_user_id):
    """Submit in a session of its own, the way each request gets one."""

    def _submit(thread_id=None, content="Hello", user_id=None, **fields):
        with session_factory() as db:
            return coordinator.submit_message(
                db,
                user_id or test_user_id,
                thread_id or new_id("thr"),
                SubmitMessageRequest(content=content, model=fields.pop("model", MODEL), **fields),
                router=router,
            )

    return _submit


def finish(session_factory, result, text="Sure.", status=MessageStatus.done.value):
    """Mark an admitted attempt terminal the way the state machine would."""
    thread_status = (
        GenerationStatus.failed.value
        if status.startswith("error")
        else GenerationStatus.completed.value
    )
    with session_factory() as db:
        db.execute(
            update(Message)
            .where(Message.message_id == result.assistant_message_id)
            .values(status=status, parts=[{"type": "text", "text": text}])
        )
        db.execute(
            update(Thread)
            .where(Thread.thread_id == result.thread_id)
            .values(generation_status=thread_status)
        )
        db.commit()


def assert_api_error(exc_info, code: ApiErrorCode, status_code: int):
    assert exc_info.value.code == code
    assert exc_info.value.status_code == status_code


# =============================================================================
# Submit
# =============================================================================


class TestSubmitMessage:
    """submit_message appends a user/assistant pair and admits one attempt."""

    def test_first_submit_creates_thread(self, submit, session_factory, test_user_id):
        result = submit(content="What is a monad?")

        thread = get_thread(session_factory, result.thread_id)
        assert thread.user_id == test_user_id
        assert thread.title == coordinator.DEFAULT_THREAD_TITLE
        assert thread.generation_status == GenerationStatus.generating.value
        assert thread.generation_attempt == 1
        assert thread.next_seq == 3

        user, assistant = list_thread_messages(session_factory, result.thread_id)
        assert (user.seq, user.role, user.status) == (1, "user", "done")
        assert user.parts == [{"type": "text", "text": "What is a monad?"}]
        assert (assistant.seq, assistant.role, assistant.status) == (2, "assistant", "waiting")
        assert assistant.parts == []
        assert assistant.resumable_stream_id == assistant.message_id

    def test_job_carries_history_and_attempt(self, submit):
        result = submit(content="What is a monad?")

        assert result.job.message_id == result.assistant_message_id
        assert result.job.history == (Turn(role="user", content="What is a monad?"),)
        assert result.job.attempt == 1
        assert result.job.should_generate_title is True

    def test_client_ids_are_used(self, submit):
        result = submit(user_message_id="u-1", assistant_message_id="a-1")

        assert result.user_message_id == "u-1"
        assert result.assistant_message_id == "a-1"

    def test_model_params_stored_camel_case(self, submit, session_factory):
        result = submit(
            model="gemini-2.5-pro",
            model_params=ModelParams(reasoning_effort="high", temperature=0.2),
        )

        assistant = get_message(session_factory, result.assistant_message_id)
        assert assistant.model == "gemini-2.5-pro"
        assert assistant.model_params == {
            "temperature": 0.2,
            "reasoningEffort": "high",
            "includeSearch": False,
        }

    def test_follow_up_extends_history(self, submit, session_factory):
        first = submit(content="Hi")
        finish(session_factory, first, text="Hello! How can I help?")

        second = submit(thread_id=first.thread_id, content="Tell me a joke")

        assert second.job.attempt == 2
        assert second.job.should_generate_title is False
        assert [t.content for t in second.job.history] == [
            "Hi",
            "Hello! How can I help?",
            "Tell me a joke",
        ]
        seqs = [m.seq for m in list_thread_messages(session_factory, first.thread_id)]
        assert seqs == [1, 2, 3, 4]

    def test_busy_thread_is_rejected(self, submit, session_factory):
        first = submit()

        with pytest.raises(ApiError) as exc_info:
            submit(thread_id=first.thread_id, content="again")

        assert_api_error(exc_info, ApiErrorCode.E_THREAD_BUSY, 409)
        assert len(list_thread_messages(session_factory, first.thread_id)) == 2

    def test_unique_index_backs_busy_check(self, submit, monkeypatch):
        first = submit()
        monkeypatch.setattr(coordinator, "_assert_not_busy", lambda db, thread_id: None)

        with pytest.raises(ApiError) as exc_info:
            submit(thread_id=first.thread_id, content="again")

        assert_api_error(exc_info, ApiErrorCode.E_THREAD_BUSY, 409)

    def test_other_users_thread_is_not_found(self, submit, session_factory):
        first = submit()
        finish(session_factory, first)

        with pytest.raises(ApiError) as exc_info:
            submit(thread_id=first.thread_id, user_id=uuid4())

        assert_api_error(exc_info, ApiErrorCode.E_THREAD_NOT_FOUND, 404)

    @pytest.mark.parametrize("model", ["gpt-99", "gpt-4o"])
    def test_unavailable_model(self, submit, model):
        with pytest.raises(ApiError) as exc_info:
            submit(model=model)

        assert_api_error(exc_info, ApiErrorCode.E_MODEL_NOT_AVAILABLE, 400)

    def test_taken_message_id_conflicts(self, submit, session_factory):
        first = submit(user_message_id="dup-1")
        finish(session_factory, first)

        with pytest.raises(ApiError) as exc_info:
            submit(thread_id=first.thread_id, user_message_id="dup-1")

        assert_api_error(exc_info, ApiErrorCode.E_ID_CONFLICT, 409)

    def test_identical_ids_rejected(self, submit):
        with pytest.raises(ApiError) as exc_info:
            submit(user_message_id="same", assistant_message_id="same")

        assert_api_error(exc_info, ApiErrorCode.E_INVALID_REQUEST, 400)


# =============================================================================
# Edit / Retry
# =============================================================================


class TestEditMessage:
    def test_edit_rewrites_and_truncates(self, submit, db_session, router, session_factory,
                                         test_user_id):
        first = submit(content="Hi")
        finish(session_factory, first)
        second = submit(thread_id=first.thread_id, content="Second question")
        finish(session_factory, second)

        result = coordinator.edit_message(
            db_session, test_user_id, first.user_message_id, "Hi, edited", router=router
        )

        messages = list_thread_messages(session_factory, first.thread_id)
        assert [m.message_id for m in messages] == [
            first.user_message_id,
            result.assistant_message_id,
        ]
        assert messages[0].parts == [{"type": "text", "text": "Hi, edited"}]
        assert messages[1].status == MessageStatus.waiting.value
        assert messages[1].seq == 5
        assert result.job.history == (Turn(role="user", content="Hi, edited"),)
        assert result.job.attempt == 3
        assert result.job.should_generate_title is False
        assert get_thread(session_factory, first.thread_id).generation_status == "generating"

    def test_edit_can_switch_model(self, submit, db_session, router, session_factory,
                                   test_user_id):
        first = submit()
        finish(session_factory, first)

        result = coordinator.edit_message(
            db_session, test_user_id, first.user_message_id, "Again",
            router=router, model="gemini-2.5-flash",
        )

        assert result.job.model == "gemini-2.5-flash"
        assert get_message(session_factory, result.assistant_message_id).model == (
            "gemini-2.5-flash"
        )

    def test_edit_assistant_message_rejected(self, submit, db_session, router, session_factory,
                                             test_user_id):
        first = submit()
        finish(session_factory, first)

        with pytest.raises(ApiError) as exc_info:
            coordinator.edit_message(
                db_session, test_user_id, first.assistant_message_id, "x", router=router
            )

        assert_api_error(exc_info, ApiErrorCode.E_NOT_USER_MESSAGE, 400)

    def test_edit_while_busy_rejected(self, submit, db_session, router, test_user_id):
        first = submit()

        with pytest.raises(ApiError) as exc_info:
            coordinator.edit_message(
                db_session, test_user_id, first.user_message_id, "x", router=router
            )

        assert_api_error(exc_info, ApiErrorCode.E_THREAD_BUSY, 409)

    def test_edit_other_users_message_not_found(self, submit, db_session, router,
                                                session_factory):
        first = submit()
        finish(session_factory, first)

        with pytest.raises(ApiError) as exc_info:
            coordinator.edit_message(
                db_session, uuid4(), first.user_message_id, "x", router=router
            )

        assert_api_error(exc_info, ApiErrorCode.E_MESSAGE_NOT_FOUND, 404)


class TestRetryMessage:
    def test_retry_assistant_restarts_from_preceding_user(
        self, submit, db_session, router, session_factory, test_user_id
    ):
        first = submit(content="Explain TCP")
        finish(session_factory, first, status=MessageStatus.error.value, text="")

        result = coordinator.retry_message(
            db_session, test_user_id, first.assistant_message_id, router=router
        )

        assert result.user_message_id == first.user_message_id
        assert get_message(session_factory, first.assistant_message_id) is None
        assistant = get_message(session_factory, result.assistant_message_id)
        assert assistant.status == MessageStatus.waiting.value
        assert result.job.history == (Turn(role="user", content="Explain TCP"),)

    def test_retry_user_message(self, submit, db_session, router, session_factory,
                                test_user_id):
        first = submit(content="Explain UDP")
        finish(session_factory, first)

        result = coordinator.retry_message(
            db_session, test_user_id, first.user_message_id, router=router
        )

        messages = list_thread_messages(session_factory, first.thread_id)
        assert [m.message_id for m in messages] == [
            first.user_message_id,
            result.assistant_message_id,
        ]

    def test_retry_with_override_params(self, submit, db_session, router, session_factory,
                                        test_user_id):
        first = submit(model="gemini-2.5-pro")
        finish(session_factory, first)

        result = coordinator.retry_message(
            db_session,
            test_user_id,
            first.assistant_message_id,
            router=router,
            model_params=ModelParams(reasoning_effort="low"),
        )

        assert result.job.model == "gemini-2.5-pro"
        assert result.job.model_params["reasoningEffort"] == "low"

    def test_nothing_to_retry(self, db_session, router, test_user_id):
        thread = Thread(thread_id=new_id("thr"), user_id=test_user_id, next_seq=2)
        db_session.add(thread)
        db_session.flush()
        lone = Message(
            message_id=new_id("msg"),
            thread_id=thread.thread_id,
            user_id=test_user_id,
            seq=1,
            role=MessageRole.assistant.value,
            parts=[{"type": "text", "text": "Welcome!"}],
            status=MessageStatus.done.value,
            model=MODEL,
        )
        db_session.add(lone)
        db_session.commit()

        with pytest.raises(ApiError) as exc_info:
            coordinator.retry_message(db_session, test_user_id, lone.message_id, router=router)

        assert_api_error(exc_info, ApiErrorCode.E_NOTHING_TO_RETRY, 400)


# =============================================================================
# Live generation
# =============================================================================


class TestPrepareLiveGeneration:
    def chat_request(self, result, **overrides) -> ChatRequest:
        body = {
            "threadId": result.thread_id,
            "responseMessageId": result.assistant_message_id,
            "model": "gemini-2.5-pro",
            "messages": [{"role": "user", "content": "ignored"}],
        }
        body.update(overrides)
        return ChatRequest.model_validate(body)

    def test_job_comes_from_stored_rows(self, submit, db_session, router, test_user_id):
        result = submit(content="Stored content", schedule=False)

        job = coordinator.prepare_live_generation(
            db_session, test_user_id, self.chat_request(result), router=router
        )

        assert job.model == MODEL
        assert job.history == (Turn(role="user", content="Stored content"),)
        assert job.attempt == 1
        assert job.should_generate_title is True

    def test_started_message_not_waiting(self, submit, db_session, router, session_factory,
                                         test_user_id):
        result = submit(schedule=False)
        finish(session_factory, result)

        with pytest.raises(ApiError) as exc_info:
            coordinator.prepare_live_generation(
                db_session, test_user_id, self.chat_request(result), router=router
            )

        assert_api_error(exc_info, ApiErrorCode.E_MESSAGE_NOT_WAITING, 409)

    def test_user_message_not_waiting(self, submit, db_session, router, test_user_id):
        result = submit(schedule=False)

        with pytest.raises(ApiError) as exc_info:
            coordinator.prepare_live_generation(
                db_session,
                test_user_id,
                self.chat_request(result, responseMessageId=result.user_message_id),
                router=router,
            )

        assert_api_error(exc_info, ApiErrorCode.E_MESSAGE_NOT_WAITING, 409)

    def test_other_user_not_found(self, submit, db_session, router):
        result = submit(schedule=False)

        with pytest.raises(ApiError) as exc_info:
            coordinator.prepare_live_generation(
                db_session, uuid4(), self.chat_request(result), router=router
            )

        assert_api_error(exc_info, ApiErrorCode.E_THREAD_NOT_FOUND, 404)

    def test_unknown_message_not_found(self, submit, db_session, router, test_user_id):
        result = submit(schedule=False)

        with pytest.raises(ApiError) as exc_info:
            coordinator.prepare_live_generation(
                db_session,
                test_user_id,
                self.chat_request(result, responseMessageId="missing"),
                router=router,
            )

        assert_api_error(exc_info, ApiErrorCode.E_MESSAGE_NOT_FOUND, 404)


# =============================================================================
# Branch / Stop
# =============================================================================


class TestBranchThread:
    def test_branch_copies_prefix_with_fresh_ids(
        self, submit, db_session, session_factory, test_user_id
    ):
        first = submit(content="Q1")
        finish(session_factory, first, text="A1")
        second = submit(thread_id=first.thread_id, content="Q2")
        finish(session_factory, second, text="A2")

        out = coordinator.branch_thread(
            db_session, test_user_id, first.thread_id, first.assistant_message_id, "fork-1"
        )

        assert out.thread_id == "fork-1"
        assert out.generation_status == GenerationStatus.completed.value
        assert out.branch_parent_thread_id == first.thread_id
        assert out.branch_parent_message_id == first.assistant_message_id

        copies = list_thread_messages(session_factory, "fork-1")
        assert [m.text for m in copies] == ["Q1", "A1"]
        assert [m.seq for m in copies] == [1, 2]
        assert not {m.message_id for m in copies} & {
            first.user_message_id,
            first.assistant_message_id,
        }
        assert copies[1].resumable_stream_id == copies[1].message_id
        assert get_thread(session_factory, "fork-1").next_seq == 3

        origin = get_message(session_factory, first.assistant_message_id)
        assert origin.branches == ["fork-1"]
        # The origin thread is untouched
        assert len(list_thread_messages(session_factory, first.thread_id)) == 4

    def test_branch_of_active_message_is_cancelled(
        self, submit, db_session, session_factory, test_user_id
    ):
        first = submit()

        out = coordinator.branch_thread(
            db_session, test_user_id, first.thread_id, first.assistant_message_id
        )

        copies = list_thread_messages(session_factory, out.thread_id)
        assert copies[-1].status == MessageStatus.cancelled.value
        assert get_message(session_factory, first.assistant_message_id).status == "waiting"

    def test_branch_id_conflict(self, submit, db_session, session_factory, test_user_id):
        first = submit()
        finish(session_factory, first)

        with pytest.raises(ApiError) as exc_info:
            coordinator.branch_thread(
                db_session,
                test_user_id,
                first.thread_id,
                first.user_message_id,
                first.thread_id,
            )

        assert_api_error(exc_info, ApiErrorCode.E_ID_CONFLICT, 409)

    def test_message_from_other_thread_not_found(
        self, submit, db_session, session_factory, test_user_id
    ):
        first = submit()
        finish(session_factory, first)
        other = submit()
        finish(session_factory, other)

        with pytest.raises(ApiError) as exc_info:
            coordinator.branch_thread(
                db_session, test_user_id, first.thread_id, other.user_message_id
            )

        assert_api_error(exc_info, ApiErrorCode.E_MESSAGE_NOT_FOUND, 404)


class TestStopGeneration:
    def test_stop_active_generation(self, submit, db_session, session_factory, test_user_id):
        first = submit()

        result = coordinator.stop_generation(db_session, test_user_id, first.thread_id)

        assert result.stopped is True
        assert result.message_id == first.assistant_message_id
        message = get_message(session_factory, first.assistant_message_id)
        assert message.status == MessageStatus.cancelled.value
        thread = get_thread(session_factory, first.thread_id)
        assert thread.generation_status == GenerationStatus.completed.value

    def test_nothing_to_stop(self, submit, db_session, session_factory, test_user_id):
        first = submit()
        finish(session_factory, first)

        result = coordinator.stop_generation(db_session, test_user_id, first.thread_id)

        assert result.stopped is False
        assert result.reason == coordinator.NOTHING_TO_STOP

    def test_stop_finished_message_by_id(self, submit, db_session, session_factory,
                                         test_user_id):
        first = submit()
        finish(session_factory, first)

        result = coordinator.stop_generation(
            db_session, test_user_id, first.thread_id, first.assistant_message_id
        )

        assert result.stopped is False
        assert get_message(session_factory, first.assistant_message_id).status == "done"

    def test_stop_unknown_message(self, submit, db_session, test_user_id):
        first = submit()

        with pytest.raises(ApiError) as exc_info:
            coordinator.stop_generation(db_session, test_user_id, first.thread_id, "nope")

        assert_api_error(exc_info, ApiErrorCode.E_MESSAGE_NOT_FOUND, 404)

    def test_stop_frees_the_thread(self, submit, db_session, test_user_id):
        first = submit()
        coordinator.stop_generation(db_session, test_user_id, first.thread_id)

        again = submit(thread_id=first.thread_id, content="Never mind, try this")

        assert again.job.attempt == 2


# =============================================================================
# Reads / Title
# =============================================================================


class TestReads:
    def test_list_threads_newest_first_with_pagination(
        self, submit, db_session, session_factory, test_user_id
    ):
        ids = []
        for _ in range(3):
            result = submit()
            finish(session_factory, result)
            ids.append(result.thread_id)

        page1, info1 = coordinator.list_threads(db_session, test_user_id, limit=2)
        page2, info2 = coordinator.list_threads(
            db_session, test_user_id, limit=2, cursor=info1.next_cursor
        )

        assert [t.thread_id for t in page1 + page2] == list(reversed(ids))
        assert info1.next_cursor is not None
        assert info2.next_cursor is None

    def test_list_threads_scoped_to_owner(self, submit, db_session, test_user_id):
        submit(user_id=uuid4())

        threads, _ = coordinator.list_threads(db_session, test_user_id)

        assert threads == []

    def test_archived_threads_hidden_by_default(self, submit, db_session, session_factory,
                                                test_user_id):
        result = submit()
        with session_factory() as db:
            db.execute(
                update(Thread)
                .where(Thread.thread_id == result.thread_id)
                .values(visibility=ThreadVisibility.archived.value)
            )
            db.commit()

        hidden, _ = coordinator.list_threads(db_session, test_user_id)
        shown, _ = coordinator.list_threads(db_session, test_user_id, include_archived=True)

        assert hidden == []
        assert [t.thread_id for t in shown] == [result.thread_id]

    def test_invalid_cursor(self, db_session, test_user_id):
        with pytest.raises(ApiError) as exc_info:
            coordinator.list_threads(db_session, test_user_id, cursor="not-a-cursor")

        assert_api_error(exc_info, ApiErrorCode.E_INVALID_CURSOR, 400)

    def test_list_messages_pages_by_seq(self, submit, db_session, session_factory,
                                        test_user_id):
        first = submit()
        finish(session_factory, first)
        submit(thread_id=first.thread_id)

        page1, info1 = coordinator.list_messages(
            db_session, test_user_id, first.thread_id, limit=3
        )
        page2, info2 = coordinator.list_messages(
            db_session, test_user_id, first.thread_id, cursor=info1.next_cursor
        )

        assert [m.seq for m in page1] == [1, 2, 3]
        assert [m.seq for m in page2] == [4]
        assert info2.next_cursor is None

    def test_get_other_users_thread_not_found(self, submit, db_session):
        result = submit()

        with pytest.raises(ApiError) as exc_info:
            coordinator.get_thread(db_session, uuid4(), result.thread_id)

        assert_api_error(exc_info, ApiErrorCode.E_THREAD_NOT_FOUND, 404)

    def test_set_thread_title(self, submit, db_session, test_user_id):
        result = submit()

        out = coordinator.set_thread_title(db_session, test_user_id, result.thread_id, "Mine")

        assert out.title == "Mine"
        assert out.user_set_title is True
