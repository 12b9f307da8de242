"""Shared type definitions for the LLM adapter layer.

- Turn: Provider-agnostic conversation turn
- LLMRequest: Request handed to an adapter
- LLMUsage / LLMResponse: Non-streaming call result
- StreamEvent variants: normalized streaming output

Streaming invariants:
- An adapter yields zero or more TextDelta / ReasoningDelta / ToolCallEvent
  events followed by exactly ONE FinishEvent
- If the provider stream ends without its terminal marker the adapter raises
  E_LLM_PROVIDER_DOWN; the router turns every failure into one ErrorEvent
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal


class ProviderKind(str, Enum):
    """Wire protocols the router can dispatch to."""

    OPENAI = "openai"
    OPENROUTER = "openrouter"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"


@dataclass(frozen=True)
class Turn:
    """Provider-agnostic conversation turn."""

    role: Literal["system", "user", "assistant"]
    content: str


@dataclass(frozen=True)
class LLMUsage:
    """Token usage from provider response.

    All fields are optional as not all providers return all metrics.
    """

    prompt_tokens: int | None
    completion_tokens: int | None
    total_tokens: int | None

    def to_dict(self) -> dict[str, int | None]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
        }


@dataclass(frozen=True)
class LLMRequest:
    """Request to an LLM adapter.

    Optional knobs are None when the model does not support them; adapters
    only send what is set.

    Attributes:
        model_name: Provider-side model identifier
        messages: Turns, system turn first if present
        max_tokens: Maximum tokens in the completion
        temperature / top_p / top_k: Sampling parameters
        reasoning_effort: "low" | "medium" | "high"
        enable_reasoning: Ask the provider to stream its reasoning
        include_search: Attach the provider's search grounding tool
    """

    model_name: str
    messages: list[Turn]
    max_tokens: int
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    reasoning_effort: str | None = None
    enable_reasoning: bool = False
    include_search: bool = False


@dataclass(frozen=True)
class LLMResponse:
    """Complete response from non-streaming call."""

    text: str
    usage: LLMUsage | None
    provider_request_id: str | None


# =============================================================================
# Stream events
# =============================================================================


@dataclass(frozen=True)
class TextDelta:
    text: str
    type: str = field(default="text-delta", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass(frozen=True)
class ReasoningDelta:
    text: str
    type: str = field(default="reasoning-delta", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass(frozen=True)
class ToolCallEvent:
    """A tool invocation reported by the provider.

    Providers that execute tools server-side report them once with status
    "completed"; streamed calls report "running" and then "completed".
    """

    id: str
    name: str
    args: dict[str, Any]
    status: Literal["running", "completed", "failed"] = "completed"
    result: Any = None
    type: str = field(default="tool-call", init=False)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type,
            "id": self.id,
            "name": self.name,
            "args": self.args,
            "status": self.status,
        }
        if self.result is not None:
            data["result"] = self.result
        return data


@dataclass(frozen=True)
class FinishEvent:
    finish_reason: str = "stop"
    usage: LLMUsage | None = None
    provider_request_id: str | None = None
    type: str = field(default="finish", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "finishReason": self.finish_reason,
            "usage": self.usage.to_dict() if self.usage else None,
        }


@dataclass(frozen=True)
class ErrorEvent:
    """Terminal failure of a stream.

    error_class holds an LLMErrorClass value (or another E_* code for
    failures raised outside the provider call).
    """

    error_class: str
    message: str
    provider: str | None = None
    type: str = field(default="error", init=False)

    @property
    def rejected(self) -> bool:
        return self.error_class == "E_LLM_CONTENT_REJECTED"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "cause": {
                "type": self.error_class,
                "message": self.message,
                "rejected": self.rejected,
            },
        }


StreamEvent = TextDelta | ReasoningDelta | ToolCallEvent | FinishEvent | ErrorEvent
