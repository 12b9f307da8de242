"""Anthropic Messages API adapter.

- Endpoint: POST https://api.anthropic.com/v1/messages
- Headers: x-api-key: <key>, anthropic-version: 2023-06-01

Turn conversion:
- System turn extracted to the separate "system" field
- Remaining turns mapped to messages with role preserved

Streaming events (data.type):
- message_start: carries the message id
- content_block_start: opens a text, thinking or tool_use block
- content_block_delta: text_delta → text, thinking_delta → reasoning,
  input_json_delta → tool arguments (accumulated until the block stops)
- content_block_stop: closes a tool_use block → one tool-call event
- message_delta: stop_reason and output usage ("refusal" → rejection)
- message_stop: terminal
- error: in-band failure (overloaded_error, rate_limit_error, ...)
"""

import json
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
    ToolCallEvent,
)

ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_API_VERSION = "2023-06-01"

THINKING_BUDGETS = {"low": 1024, "medium": 4096, "high": 8192}
DEFAULT_THINKING_BUDGET = THINKING_BUDGETS["medium"]

_TOOL_BLOCK_TYPES = ("tool_use", "server_tool_use")


class AnthropicAdapter(LLMAdapter):
    """Anthropic Messages API adapter."""

    provider = ProviderKind.ANTHROPIC

    async def generate(
        self,
        req: LLMRequest,
        *,
        api_key: str,
        timeout_s: int,
    ) -> LLMResponse:
        """Non-streaming message generation."""
        response = await self._client.post(
            ANTHROPIC_MESSAGES_URL,
            headers=self._build_headers(api_key),
            json=self._build_request_body(req, stream=False),
            timeout=httpx.Timeout(timeout_s, connect=10.0),
        )
        response.raise_for_status()
        return self._parse_response(response.json())

    async def generate_stream(
        self,
        req: LLMRequest,
        *,
        api_key: str,
        timeout_s: int,
    ) -> AsyncIterator[StreamEvent]:
        """Streaming message generation using Server-Sent Events."""
        async with self._client.stream(
            "POST",
            ANTHROPIC_MESSAGES_URL,
            headers=self._build_headers(api_key),
            json=self._build_request_body(req, stream=True),
            timeout=httpx.Timeout(timeout_s, connect=10.0),
        ) as response:
            await raise_for_stream_status(response)

            provider_request_id: str | None = None
            input_tokens: int | None = None
            output_tokens: int | None = None
            stop_reason = "stop"
            received_stop = False
            # index → (id, name, partial json)
            open_tools: dict[int, tuple[str, str, list[str]]] = {}

            async for _, data_str in iter_sse_data(response):
                data = parse_json_data(data_str)
                if data is None:
                    continue

                event_type = data.get("type", "")

                if event_type == "message_start":
                    message = data.get("message") or {}
                    provider_request_id = message.get("id")
                    input_tokens = (message.get("usage") or {}).get("input_tokens")
                    continue

                if event_type == "content_block_start":
                    block = data.get("content_block") or {}
                    if block.get("type") in _TOOL_BLOCK_TYPES:
                        open_tools[data.get("index", 0)] = (
                            block.get("id", ""),
                            block.get("name", ""),
                            [],
                        )
                    continue

                if event_type == "content_block_delta":
                    delta = data.get("delta") or {}
                    delta_type = delta.get("type")
                    if delta_type == "text_delta" and delta.get("text"):
                        yield TextDelta(delta["text"])
                    elif delta_type == "thinking_delta" and delta.get("thinking"):
                        yield ReasoningDelta(delta["thinking"])
                    elif delta_type == "input_json_delta":
                        tool = open_tools.get(data.get("index", 0))
                        if tool is not None:
                            tool[2].append(delta.get("partial_json", ""))
                    continue

                if event_type == "content_block_stop":
                    tool = open_tools.pop(data.get("index", 0), None)
                    if tool is not None:
                        tool_id, name, fragments = tool
                        yield ToolCallEvent(
                            id=tool_id,
                            name=name,
                            args=_parse_tool_args("".join(fragments)),
                            status="completed",
                        )
                    continue

                if event_type == "message_delta":
                    delta = data.get("delta") or {}
                    if delta.get("stop_reason") == "refusal":
                        raise LLMError(
                            LLMErrorClass.CONTENT_REJECTED,
                            "Provider refused the request",
                            provider=self.provider.value,
                        )
                    stop_reason = delta.get("stop_reason") or stop_reason
                    output_tokens = (data.get("usage") or {}).get("output_tokens", output_tokens)
                    continue

                if event_type == "error":
                    error = data.get("error") or {}
                    raise LLMError(
                        classify_stream_error(self.provider.value, data),
                        str(error.get("message") or "Provider reported an error mid-stream"),
                        provider=self.provider.value,
                    )

                if event_type == "message_stop":
                    received_stop = True
                    total = None
                    if input_tokens is not None and output_tokens is not None:
                        total = input_tokens + output_tokens
                    usage = None
                    if input_tokens is not None or output_tokens is not None:
                        usage = LLMUsage(
                            prompt_tokens=input_tokens,
                            completion_tokens=output_tokens,
                            total_tokens=total,
                        )
                    yield FinishEvent(
                        finish_reason=stop_reason,
                        usage=usage,
                        provider_request_id=provider_request_id,
                    )
                    break

            if not received_stop:
                raise LLMError(
                    LLMErrorClass.PROVIDER_DOWN,
                    "Stream ended without message_stop event",
                    provider=self.provider.value,
                )

    def _build_headers(self, api_key: str) -> dict[str, str]:
        return {
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_API_VERSION,
            "Content-Type": "application/json",
        }

    def _build_request_body(self, req: LLMRequest, stream: bool) -> dict[str, Any]:
        system_prompt: str | None = None
        messages: list[dict[str, str]] = []
        for turn in req.messages:
            if turn.role == "system":
                system_prompt = turn.content
            else:
                messages.append({"role": turn.role, "content": turn.content})

        body: dict[str, Any] = {
            "model": req.model_name,
            "max_tokens": req.max_tokens,
            "messages": messages,
            "stream": stream,
        }
        if system_prompt:
            body["system"] = system_prompt

        if req.enable_reasoning or req.reasoning_effort:
            budget = THINKING_BUDGETS.get(req.reasoning_effort or "", DEFAULT_THINKING_BUDGET)
            body["thinking"] = {"type": "enabled", "budget_tokens": budget}
            # max_tokens must exceed the thinking budget; sampling knobs are
            # rejected while thinking is on
            body["max_tokens"] = max(req.max_tokens, budget + 1024)
        else:
            if req.temperature is not None:
                body["temperature"] = req.temperature
            if req.top_p is not None:
                body["top_p"] = req.top_p
            if req.top_k is not None:
                body["top_k"] = req.top_k

        if req.include_search:
            body["tools"] = [{"type": "web_search_20250305", "name": "web_search", "max_uses": 3}]

        return body

    def _parse_response(self, data: dict) -> LLMResponse:
        if data.get("stop_reason") == "refusal":
            raise LLMError(
                LLMErrorClass.CONTENT_REJECTED,
                "Provider refused the request",
                provider=self.provider.value,
            )

        text = "".join(
            block.get("text", "")
            for block in data.get("content", [])
            if block.get("type") == "text"
        )

        usage = None
        usage_data = data.get("usage")
        if usage_data:
            input_tokens = usage_data.get("input_tokens")
            output_tokens = usage_data.get("output_tokens")
            total = None
            if input_tokens is not None and output_tokens is not None:
                total = input_tokens + output_tokens
            usage = LLMUsage(
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
                total_tokens=total,
            )

        return LLMResponse(text=text, usage=usage, provider_request_id=data.get("id"))


def _parse_tool_args(raw: str) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {"raw": raw}
    return parsed if isinstance(parsed, dict) else {"value": parsed}
