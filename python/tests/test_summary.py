"""Tests for on-demand thread summaries."""

from uuid import uuid4

import pytest
from sqlalchemy import update

from forkchat.db.models import Message, Thread
from forkchat.errors import ApiError, ApiErrorCode, NotFoundError
from forkchat.schemas.threads import SubmitMessageRequest
from forkchat.services import coordinator
from forkchat.services.llm import LLMError, LLMErrorClass
from forkchat.services.llm.prompt import SUMMARY_SYSTEM_PROMPT
from forkchat.services.summary import summarize_thread
from tests.fakes import ScriptedRouter
from tests.helpers import get_message, get_thread, new_id

MODEL = "gemini-2.0-flash"


def submit(session_factory, user_id, content="How do I bake bread?"):
    with session_factory() as db:
        return coordinator.submit_message(
            db,
            user_id,
            new_id("thr"),
            SubmitMessageRequest(content=content, model=MODEL),
            router=ScriptedRouter(),
        )


def finish(session_factory, result, text="Knead the dough."):
    with session_factory() as db:
        db.execute(
            update(Message)
            .where(Message.message_id == result.assistant_message_id)
            .values(status="done", parts=[{"type": "text", "text": text}])
        )
        db.execute(
            update(Thread)
            .where(Thread.thread_id == result.thread_id)
            .values(generation_status="completed", title="Bread Baking")
        )
        db.commit()


async def summarize(session_factory, router, user_id, thread_id):
    with session_factory() as db:
        return await summarize_thread(
            router, db, user_id=user_id, thread_id=thread_id, model_id=MODEL
        )


class TestSummarizeThread:
    @pytest.mark.asyncio
    async def test_returns_structured_summary(self, session_factory, test_user_id):
        result = submit(session_factory, test_user_id)
        finish(session_factory, result)
        router = ScriptedRouter(title="## Main Topics\n- Bread\n")

        out = await summarize(session_factory, router, test_user_id, result.thread_id)

        assert out.thread_id == result.thread_id
        assert out.thread_title == "Bread Baking"
        assert out.message_count == 2
        assert out.summary == "## Main Topics\n- Bread"

        system, user = router.generate_calls[0].messages
        assert system.role == "system"
        assert system.content == SUMMARY_SYSTEM_PROMPT
        assert user.content.startswith("Please summarize the following conversation:\n\n[")
        assert "] User: How do I bake bread?\n\n[" in user.content
        assert user.content.endswith("] Assistant: Knead the dough.")

    @pytest.mark.asyncio
    async def test_message_without_text_is_skipped(self, session_factory, test_user_id):
        result = submit(session_factory, test_user_id)
        router = ScriptedRouter(title="Short summary")

        out = await summarize(session_factory, router, test_user_id, result.thread_id)

        assert out.message_count == 1
        assert "Assistant:" not in router.generate_calls[0].messages[1].content

    @pytest.mark.asyncio
    async def test_provider_failure_leaves_generation_state_alone(
        self, session_factory, test_user_id
    ):
        result = submit(session_factory, test_user_id)
        router = ScriptedRouter(
            title=LLMError(LLMErrorClass.RATE_LIMIT, "Slow down", provider="gemini")
        )

        with pytest.raises(ApiError) as exc_info:
            await summarize(session_factory, router, test_user_id, result.thread_id)

        assert exc_info.value.code == ApiErrorCode.E_SUMMARY_FAILED
        assert exc_info.value.status_code == 502
        assert get_message(session_factory, result.assistant_message_id).status == "waiting"
        thread = get_thread(session_factory, result.thread_id)
        assert thread.generation_status == "generating"
        assert thread.title == "New Chat"

    @pytest.mark.asyncio
    async def test_empty_summary_is_a_failure(self, session_factory, test_user_id):
        result = submit(session_factory, test_user_id)
        finish(session_factory, result)

        with pytest.raises(ApiError) as exc_info:
            await summarize(
                session_factory, ScriptedRouter(title="  \n"), test_user_id, result.thread_id
            )

        assert exc_info.value.code == ApiErrorCode.E_SUMMARY_FAILED

    @pytest.mark.asyncio
    async def test_thread_without_messages(self, session_factory, test_user_id):
        with session_factory() as db:
            db.add(Thread(thread_id="thr-empty", user_id=test_user_id))
            db.commit()
        router = ScriptedRouter()

        with pytest.raises(ApiError) as exc_info:
            await summarize(session_factory, router, test_user_id, "thr-empty")

        assert exc_info.value.code == ApiErrorCode.E_NOTHING_TO_SUMMARIZE
        assert router.generate_calls == []

    @pytest.mark.asyncio
    async def test_foreign_thread_is_not_found(self, session_factory, test_user_id):
        result = submit(session_factory, test_user_id)
        router = ScriptedRouter()

        with pytest.raises(NotFoundError):
            await summarize(session_factory, router, uuid4(), result.thread_id)

        assert router.generate_calls == []
