"""LLM adapter layer for provider-agnostic streaming generation.

- Provider adapters (OpenAI-compatible, Anthropic, Gemini) over one shared
  httpx.AsyncClient
- Static model catalog with capability lookup
- Router binding model ids to adapters and normalizing every failure into a
  terminal ErrorEvent
- Prompt rendering (provider-agnostic)

Usage:
    router = LLMRouter(client, api_keys={ProviderKind.GEMINI: key})
    req = router.build_request("gemini-2.0-flash", turns, {"includeSearch": True})
    async for event in router.stream("gemini-2.0-flash", req):
        ...
"""

from forkchat.services.llm.adapter import LLMAdapter
from forkchat.services.llm.catalog import MODEL_CATALOG, ModelSpec, get_model_spec
from forkchat.services.llm.errors import LLMError, LLMErrorClass, classify_provider_error
from forkchat.services.llm.prompt import DEFAULT_SYSTEM_PROMPT, build_system_prompt, render_prompt
from forkchat.services.llm.router import LLMRouter
from forkchat.services.llm.types import (
    ErrorEvent,
    FinishEvent,
    LLMRequest,
    LLMResponse,
    LLMUsage,
    ProviderKind,
    ReasoningDelta,
    StreamEvent,
    TextDelta,
    ToolCallEvent,
    Turn,
)

__all__ = [
    # Core types
    "Turn",
    "LLMRequest",
    "LLMResponse",
    "LLMUsage",
    "ProviderKind",
    # Stream events
    "StreamEvent",
    "TextDelta",
    "ReasoningDelta",
    "ToolCallEvent",
    "FinishEvent",
    "ErrorEvent",
    # Catalog
    "MODEL_CATALOG",
    "ModelSpec",
    "get_model_spec",
    # Adapter interface and router
    "LLMAdapter",
    "LLMRouter",
    # Errors
    "LLMError",
    "LLMErrorClass",
    "classify_provider_error",
    # Prompt rendering
    "DEFAULT_SYSTEM_PROMPT",
    "build_system_prompt",
    "render_prompt",
]
