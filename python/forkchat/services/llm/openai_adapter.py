"""OpenAI-compatible Chat Completions adapter.

Serves two provider kinds with one wire protocol:
- openai: POST https://api.openai.com/v1/chat/completions
- openrouter: POST https://openrouter.ai/api/v1/chat/completions

Streaming:
- Server-Sent Events, each line "data: {...}"
- Terminal event: data: [DONE]
- choices[0].delta.content → text
- choices[0].delta.reasoning / reasoning_content → reasoning (OpenRouter, DeepSeek)
- choices[0].delta.refusal or finish_reason "content_filter" → policy rejection
- {"error": {...}} data lines → in-band provider failure (OpenRouter)
- usage arrives on the last chunk when stream_options.include_usage is set

Reasoning knobs differ per kind: OpenAI takes a top-level reasoning_effort,
OpenRouter takes a reasoning object.
"""

from collections.abc import AsyncIterator
from typing import Any

import httpx

from forkchat.services.llm.adapter import (
    LLMAdapter,
    iter_sse_data,
    parse_json_data,
    raise_for_stream_status,
)
from forkchat.services.llm.errors import LLMError, LLMErrorClass, classify_stream_error
from forkchat.services.llm.types import (
    FinishEvent,
    LLMRequest,
    LLMResponse,
    LLMUsage,
    ProviderKind,
    ReasoningDelta,
    StreamEvent,
    TextDelta,
)

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"
OPENROUTER_CHAT_URL = "https://openrouter.ai/api/v1/chat/completions"


def _parse_usage(data: dict) -> LLMUsage | None:
    usage = data.get("usage")
    if not usage:
        return None
    return LLMUsage(
        prompt_tokens=usage.get("prompt_tokens"),
        completion_tokens=usage.get("completion_tokens"),
        total_tokens=usage.get("total_tokens"),
    )


class OpenAIAdapter(LLMAdapter):
    """Chat Completions adapter for OpenAI and OpenRouter."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        provider: ProviderKind = ProviderKind.OPENAI,
        chat_url: str | None = None,
    ):
        super().__init__(client)
        self.provider = provider
        if chat_url is None:
            chat_url = (
                OPENROUTER_CHAT_URL if provider == ProviderKind.OPENROUTER else OPENAI_CHAT_URL
            )
        self._chat_url = chat_url

    async def generate(
        self,
        req: LLMRequest,
        *,
        api_key: str,
        timeout_s: int,
    ) -> LLMResponse:
        """Non-streaming chat completion."""
        response = await self._client.post(
            self._chat_url,
            headers=self._build_headers(api_key),
            json=self._build_request_body(req, stream=False),
            timeout=httpx.Timeout(timeout_s, connect=10.0),
        )
        response.raise_for_status()

        data = response.json()
        choices = data.get("choices") or [{}]
        message = choices[0].get("message") or {}
        if choices[0].get("finish_reason") == "content_filter" or message.get("refusal"):
            raise LLMError(
                LLMErrorClass.CONTENT_REJECTED,
                "Provider refused the request",
                provider=self.provider.value,
            )

        return LLMResponse(
            text=message.get("content") or "",
            usage=_parse_usage(data),
            provider_request_id=response.headers.get("x-request-id") or data.get("id"),
        )

    async def generate_stream(
        self,
        req: LLMRequest,
        *,
        api_key: str,
        timeout_s: int,
    ) -> AsyncIterator[StreamEvent]:
        """Streaming chat completion using Server-Sent Events."""
        async with self._client.stream(
            "POST",
            self._chat_url,
            headers=self._build_headers(api_key),
            json=self._build_request_body(req, stream=True),
            timeout=httpx.Timeout(timeout_s, connect=10.0),
        ) as response:
            await raise_for_stream_status(response)

            provider_request_id = response.headers.get("x-request-id")
            finish_reason = "stop"
            usage: LLMUsage | None = None
            received_done = False

            async for _, data_str in iter_sse_data(response):
                if data_str == "[DONE]":
                    received_done = True
                    yield FinishEvent(
                        finish_reason=finish_reason,
                        usage=usage,
                        provider_request_id=provider_request_id,
                    )
                    break

                data = parse_json_data(data_str)
                if data is None:
                    continue

                if "error" in data:
                    error = data.get("error") or {}
                    raise LLMError(
                        classify_stream_error(self.provider.value, data),
                        str(error.get("message") or "Provider reported an error mid-stream")
                        if isinstance(error, dict)
                        else "Provider reported an error mid-stream",
                        provider=self.provider.value,
                    )

                usage = _parse_usage(data) or usage
                provider_request_id = provider_request_id or data.get("id")

                choices = data.get("choices") or []
                if not choices:
                    continue

                delta = choices[0].get("delta") or {}
                if delta.get("refusal"):
                    raise LLMError(
                        LLMErrorClass.CONTENT_REJECTED,
                        "Provider refused the request",
                        provider=self.provider.value,
                    )

                reasoning = delta.get("reasoning") or delta.get("reasoning_content")
                if reasoning:
                    yield ReasoningDelta(reasoning)

                content = delta.get("content")
                if content:
                    yield TextDelta(content)

                if choices[0].get("finish_reason"):
                    finish_reason = choices[0]["finish_reason"]
                    if finish_reason == "content_filter":
                        raise LLMError(
                            LLMErrorClass.CONTENT_REJECTED,
                            "Response blocked by the provider's content filter",
                            provider=self.provider.value,
                        )

            if not received_done:
                raise LLMError(
                    LLMErrorClass.PROVIDER_DOWN,
                    "Stream ended without [DONE] marker",
                    provider=self.provider.value,
                )

    def _build_headers(self, api_key: str) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        if self.provider == ProviderKind.OPENROUTER:
            headers["X-Title"] = "ForkChat"
        return headers

    def _build_request_body(self, req: LLMRequest, stream: bool) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": req.model_name,
            "messages": [{"role": t.role, "content": t.content} for t in req.messages],
            "stream": stream,
        }
        if stream:
            body["stream_options"] = {"include_usage": True}

        if self.provider == ProviderKind.OPENAI:
            body["max_completion_tokens"] = req.max_tokens
            if req.reasoning_effort:
                body["reasoning_effort"] = req.reasoning_effort
        else:
            body["max_tokens"] = req.max_tokens
            if req.reasoning_effort:
                body["reasoning"] = {"effort": req.reasoning_effort}
            elif req.enable_reasoning:
                body["reasoning"] = {"enabled": True}
            if req.top_k is not None:
                body["top_k"] = req.top_k

        if req.temperature is not None:
            body["temperature"] = req.temperature
        if req.top_p is not None:
            body["top_p"] = req.top_p

        return body
