"""Tests for logging context and log redaction.

Covers:
- Redaction utilities (hash_text, safe_kv)
- Logging ContextVars (request, generation and task context)
- LLM router event emission (llm.request.started / finished / failed)
- No message text in provider logs
"""

import httpx
import pytest
import respx
import structlog

from forkchat.logging import (
    add_request_context,
    clear_request_context,
    clear_task_context,
    configure_task_logging,
    set_generation_context,
    set_request_context,
)
from forkchat.services.llm import LLMError, LLMRouter, ProviderKind, Turn
from forkchat.services.llm import router as llm_router
from forkchat.services.llm.gemini_adapter import GEMINI_BASE_URL
from forkchat.services.redact import FORBIDDEN_KEYS, hash_text, safe_kv

GENERATE_URL = f"{GEMINI_BASE_URL}/gemini-2.0-flash:generateContent"
SECRET_TEXT = "my bank password is hunter2"


# ─── Redaction ───────────────────────────────────────────────────────────


class TestSafeKv:
    def test_allows_sizes_and_digests(self):
        fields = safe_kv(text_chars=10, prompt_sha256=hash_text("hi"), model_id="m")
        assert fields["text_chars"] == 10

    @pytest.mark.parametrize("key", sorted(FORBIDDEN_KEYS))
    def test_forbidden_keys_raise_in_test_env(self, key):
        with pytest.raises(ValueError, match="Forbidden log keys"):
            safe_kv(_env="test", **{key: "x"})

    def test_forbidden_key_passes_in_prod(self):
        assert safe_kv(_env="prod", title="x") == {"title": "x"}

    def test_hash_text_is_stable(self):
        assert hash_text("abc") == hash_text("abc")
        assert hash_text("abc") != hash_text("abd")
        assert len(hash_text("abc")) == 64


# ─── Context vars ────────────────────────────────────────────────────────


class TestContextVars:
    def setup_method(self):
        clear_request_context()
        clear_task_context()

    def teardown_method(self):
        clear_request_context()
        clear_task_context()

    def test_request_context_injected(self):
        set_request_context("req-1", user_id="u-1", path="/chat", method="POST")

        event_dict = add_request_context(None, "info", {})

        assert event_dict == {
            "request_id": "req-1",
            "user_id": "u-1",
            "path": "/chat",
            "method": "POST",
        }

    def test_explicit_fields_win(self):
        set_request_context("req-1")

        assert add_request_context(None, "info", {"request_id": "mine"})["request_id"] == "mine"

    def test_generation_context(self):
        set_generation_context("thr-1", "msg-1")

        event_dict = add_request_context(None, "info", {})

        assert event_dict["thread_id"] == "thr-1"
        assert event_dict["message_id"] == "msg-1"

    def test_task_context_cleared(self):
        configure_task_logging("req-9", "forkchat.generate_thread_title", "task-1")
        set_generation_context("thr-1", "msg-1")
        assert add_request_context(None, "info", {})["task_name"] == (
            "forkchat.generate_thread_title"
        )

        clear_task_context()

        assert add_request_context(None, "info", {}) == {}


# ─── Router events ───────────────────────────────────────────────────────


@pytest.fixture
def log_sink(monkeypatch):
    """Capture structlog events into a list for the duration of a test.

    The router module logger is swapped for a fresh one, since app loggers
    cache their processor chain on first use.
    """
    events: list[dict] = []
    original_config = structlog.get_config()

    def capture_processor(logger, method_name, event_dict):
        events.append(event_dict.copy())
        raise structlog.DropEvent

    structlog.configure(
        processors=[capture_processor],
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )
    monkeypatch.setattr(llm_router, "logger", structlog.get_logger("forkchat.services.llm.router"))

    yield events

    structlog.configure(**original_config)


@pytest.fixture
def router():
    return LLMRouter(httpx.AsyncClient(), api_keys={ProviderKind.GEMINI: "test-gemini-key"})


class TestRouterEvents:
    @pytest.mark.asyncio
    @respx.mock
    async def test_generate_logs_sizes_not_text(self, router, log_sink):
        respx.post(GENERATE_URL).respond(
            200,
            json={
                "candidates": [{"content": {"parts": [{"text": "Security Question"}]}}],
                "usageMetadata": {"promptTokenCount": 7, "candidatesTokenCount": 2},
            },
        )
        req = router.build_request("gemini-2.0-flash", [Turn(role="user", content=SECRET_TEXT)])

        await router.generate("gemini-2.0-flash", req, log_fields={"thread_id": "thr-1"})

        names = [e["event"] for e in log_sink]
        assert names[:2] == ["llm.request.started", "llm.request.finished"]
        started, finished = log_sink[0], log_sink[1]
        assert started["message_chars"] == len(SECRET_TEXT)
        assert started["thread_id"] == "thr-1"
        assert finished["outcome"] == "success"
        assert finished["tokens_input"] == 7
        assert SECRET_TEXT not in repr(log_sink)
        assert "test-gemini-key" not in repr(log_sink)

    @pytest.mark.asyncio
    @respx.mock
    async def test_generate_failure_logs_error_class(self, router, log_sink):
        respx.post(GENERATE_URL).respond(429, json={})
        req = router.build_request("gemini-2.0-flash", [Turn(role="user", content="hi")])

        with pytest.raises(LLMError):
            await router.generate("gemini-2.0-flash", req)

        failed = [e for e in log_sink if e["event"] == "llm.request.failed"]
        assert len(failed) == 1
        assert failed[0]["error_class"] == "E_LLM_RATE_LIMIT"
        assert failed[0]["outcome"] == "error"
