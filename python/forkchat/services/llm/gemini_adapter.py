"""Gemini generateContent adapter.

- Non-streaming: POST {GEMINI_BASE_URL}/{model}:generateContent
- Streaming: POST {GEMINI_BASE_URL}/{model}:streamGenerateContent?alt=sse

Auth:
- Header: x-goog-api-key: <key>
- NEVER put key in query param

Turn conversion:
- System turn → systemInstruction.parts[0].text
- "assistant" role → "model" role
- Each turn's content → parts: [{"text": "..."}]

Streaming:
- Each event: data: {"candidates":[{"content":{"parts":[...]}}]}
- part.thought == true → reasoning; part.functionCall → tool call
- finishReason STOP / MAX_TOKENS → terminal
- finishReason SAFETY, RECITATION, BLOCKLIST, PROHIBITED_CONTENT, SPII, or
  promptFeedback.blockReason → policy rejection
- groundingMetadata (search tool) is reported once as a completed
  google_search tool call
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
from forkchat.services.llm.errors import LLMError, LLMErrorClass
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

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"

THINKING_BUDGETS = {"low": 1024, "medium": 8192, "high": 24576}

TERMINAL_FINISH_REASONS = {"STOP": "stop", "MAX_TOKENS": "length"}
REJECTION_FINISH_REASONS = frozenset(
    {"SAFETY", "RECITATION", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII", "IMAGE_SAFETY"}
)


def _parse_usage(data: dict) -> LLMUsage | None:
    usage_metadata = data.get("usageMetadata")
    if not usage_metadata:
        return None
    return LLMUsage(
        prompt_tokens=usage_metadata.get("promptTokenCount"),
        completion_tokens=usage_metadata.get("candidatesTokenCount"),
        total_tokens=usage_metadata.get("totalTokenCount"),
    )


def _check_blocked(data: dict) -> None:
    block_reason = (data.get("promptFeedback") or {}).get("blockReason")
    if block_reason:
        raise LLMError(
            LLMErrorClass.CONTENT_REJECTED,
            f"Prompt blocked: {block_reason}",
            provider=ProviderKind.GEMINI.value,
        )


def _grounding_tool_call(grounding: dict) -> ToolCallEvent:
    sources = [
        {"url": chunk["web"].get("uri"), "title": chunk["web"].get("title")}
        for chunk in grounding.get("groundingChunks") or []
        if chunk.get("web")
    ]
    return ToolCallEvent(
        id="google_search",
        name="google_search",
        args={"queries": grounding.get("webSearchQueries") or []},
        status="completed",
        result={"sources": sources},
    )


class GeminiAdapter(LLMAdapter):
    """Google Gemini API adapter."""

    provider = ProviderKind.GEMINI

    async def generate(
        self,
        req: LLMRequest,
        *,
        api_key: str,
        timeout_s: int,
    ) -> LLMResponse:
        """Non-streaming content generation."""
        response = await self._client.post(
            f"{GEMINI_BASE_URL}/{req.model_name}:generateContent",
            headers=self._build_headers(api_key),
            json=self._build_request_body(req),
            timeout=httpx.Timeout(timeout_s, connect=10.0),
        )
        response.raise_for_status()

        data = response.json()
        _check_blocked(data)

        candidates = data.get("candidates") or [{}]
        candidate = candidates[0]
        if candidate.get("finishReason") in REJECTION_FINISH_REASONS:
            raise LLMError(
                LLMErrorClass.CONTENT_REJECTED,
                f"Response blocked: {candidate['finishReason']}",
                provider=self.provider.value,
            )

        text = "".join(
            part.get("text", "")
            for part in (candidate.get("content") or {}).get("parts", [])
            if not part.get("thought")
        )
        return LLMResponse(text=text, usage=_parse_usage(data), provider_request_id=None)

    async def generate_stream(
        self,
        req: LLMRequest,
        *,
        api_key: str,
        timeout_s: int,
    ) -> AsyncIterator[StreamEvent]:
        """Streaming content generation using Server-Sent Events."""
        url = f"{GEMINI_BASE_URL}/{req.model_name}:streamGenerateContent?alt=sse"

        async with self._client.stream(
            "POST",
            url,
            headers=self._build_headers(api_key),
            json=self._build_request_body(req),
            timeout=httpx.Timeout(timeout_s, connect=10.0),
        ) as response:
            await raise_for_stream_status(response)

            received_stop = False
            usage: LLMUsage | None = None
            grounding: dict | None = None
            call_count = 0

            async for _, data_str in iter_sse_data(response):
                data = parse_json_data(data_str)
                if data is None:
                    continue

                _check_blocked(data)
                usage = _parse_usage(data) or usage

                candidates = data.get("candidates") or []
                if not candidates:
                    continue
                candidate = candidates[0]

                for part in (candidate.get("content") or {}).get("parts", []):
                    if "functionCall" in part:
                        call = part["functionCall"]
                        call_count += 1
                        yield ToolCallEvent(
                            id=f"call_{call_count}",
                            name=call.get("name", ""),
                            args=call.get("args") or {},
                            status="completed",
                        )
                    elif part.get("text"):
                        if part.get("thought"):
                            yield ReasoningDelta(part["text"])
                        else:
                            yield TextDelta(part["text"])

                if candidate.get("groundingMetadata"):
                    grounding = candidate["groundingMetadata"]

                finish_reason = candidate.get("finishReason")
                if finish_reason in REJECTION_FINISH_REASONS:
                    raise LLMError(
                        LLMErrorClass.CONTENT_REJECTED,
                        f"Response blocked: {finish_reason}",
                        provider=self.provider.value,
                    )
                if finish_reason in TERMINAL_FINISH_REASONS:
                    received_stop = True
                    if grounding and grounding.get("groundingChunks"):
                        yield _grounding_tool_call(grounding)
                    yield FinishEvent(
                        finish_reason=TERMINAL_FINISH_REASONS[finish_reason],
                        usage=usage,
                    )
                    break

            if not received_stop:
                raise LLMError(
                    LLMErrorClass.PROVIDER_DOWN,
                    "Stream ended without finishReason",
                    provider=self.provider.value,
                )

    def _build_headers(self, api_key: str) -> dict[str, str]:
        return {
            "x-goog-api-key": api_key,
            "Content-Type": "application/json",
        }

    def _build_request_body(self, req: LLMRequest) -> dict[str, Any]:
        system_prompt: str | None = None
        contents: list[dict[str, Any]] = []
        for turn in req.messages:
            if turn.role == "system":
                system_prompt = turn.content
            else:
                role = "model" if turn.role == "assistant" else "user"
                contents.append({"role": role, "parts": [{"text": turn.content}]})

        generation_config: dict[str, Any] = {"maxOutputTokens": req.max_tokens}
        if req.temperature is not None:
            generation_config["temperature"] = req.temperature
        if req.top_p is not None:
            generation_config["topP"] = req.top_p
        if req.top_k is not None:
            generation_config["topK"] = req.top_k
        if req.enable_reasoning or req.reasoning_effort:
            thinking: dict[str, Any] = {"includeThoughts": True}
            if req.reasoning_effort in THINKING_BUDGETS:
                thinking["thinkingBudget"] = THINKING_BUDGETS[req.reasoning_effort]
            generation_config["thinkingConfig"] = thinking

        body: dict[str, Any] = {
            "contents": contents,
            "generationConfig": generation_config,
        }
        if system_prompt:
            body["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        if req.include_search:
            body["tools"] = [{"google_search": {}}]

        return body
