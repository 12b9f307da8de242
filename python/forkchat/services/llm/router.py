"""LLM router: model binding, request construction and error normalization.

Each enabled catalog model is bound to exactly one adapter when the router
is constructed. Dispatch per request is a dict lookup; an unknown or
disabled model id is a configuration error (E_MODEL_NOT_AVAILABLE), never a
fallback to another model.

Streaming contract:
- stream() never raises for provider failures. Timeouts, HTTP errors,
  network errors, in-band errors, missing keys and unexpected exceptions all
  become exactly one terminal ErrorEvent.
- asyncio.CancelledError propagates so callers can abort consumption.

Observability:
- Emits llm.request.started / llm.request.finished / llm.request.failed
- All events use safe_kv() to prevent content leakage
"""

import time
from collections.abc import AsyncIterator, Mapping
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any

import httpx

from forkchat.logging import get_logger
from forkchat.services.llm.adapter import LLMAdapter
from forkchat.services.llm.anthropic_adapter import AnthropicAdapter
from forkchat.services.llm.catalog import (
    FEATURE_PARAMETERS,
    FEATURE_REASONING_EFFORT,
    FEATURE_SEARCH,
    MODEL_CATALOG,
    ModelSpec,
)
from forkchat.services.llm.errors import (
    ERROR_CLASS_TO_MESSAGE,
    LLMError,
    LLMErrorClass,
    classify_provider_error,
)
from forkchat.services.llm.gemini_adapter import GeminiAdapter
from forkchat.services.llm.openai_adapter import OpenAIAdapter
from forkchat.services.llm.types import (
    ErrorEvent,
    FinishEvent,
    LLMRequest,
    LLMResponse,
    ProviderKind,
    StreamEvent,
    Turn,
)
from forkchat.services.redact import safe_kv

logger = get_logger(__name__)

DEFAULT_TIMEOUT_S = 60

REASONING_EFFORTS = ("low", "medium", "high")


@dataclass(frozen=True)
class ModelBinding:
    spec: ModelSpec
    adapter: LLMAdapter


def _safe_parse_json(response: httpx.Response) -> dict | None:
    try:
        parsed = response.json()
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


class LLMRouter:
    """Routes generation requests to the adapter bound to each model id."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        api_keys: Mapping[ProviderKind, str | None] | None = None,
        enable_openai: bool = True,
        enable_openrouter: bool = True,
        enable_anthropic: bool = True,
        enable_gemini: bool = True,
        catalog: Mapping[str, ModelSpec] | None = None,
        timeout_s: int = DEFAULT_TIMEOUT_S,
    ):
        """Bind every enabled, non-disabled catalog model to its adapter.

        Args:
            client: Shared httpx.AsyncClient for connection pooling.
            api_keys: Platform API key per provider kind.
            enable_*: Provider feature flags.
            catalog: Model catalog (defaults to MODEL_CATALOG).
            timeout_s: Per-request timeout.
        """
        self._client = client
        self._api_keys = dict(api_keys or {})
        self._timeout_s = timeout_s

        adapters: dict[ProviderKind, LLMAdapter] = {}
        if enable_openai:
            adapters[ProviderKind.OPENAI] = OpenAIAdapter(client)
        if enable_openrouter:
            adapters[ProviderKind.OPENROUTER] = OpenAIAdapter(
                client, provider=ProviderKind.OPENROUTER
            )
        if enable_anthropic:
            adapters[ProviderKind.ANTHROPIC] = AnthropicAdapter(client)
        if enable_gemini:
            adapters[ProviderKind.GEMINI] = GeminiAdapter(client)

        self._bindings: dict[str, ModelBinding] = {
            spec.id: ModelBinding(spec=spec, adapter=adapters[spec.provider])
            for spec in (catalog if catalog is not None else MODEL_CATALOG).values()
            if not spec.disabled and spec.provider in adapters
        }

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient, settings: Any) -> "LLMRouter":
        """Build a router from application settings (keys, flags, timeout)."""
        return cls(
            client,
            api_keys={
                ProviderKind.OPENAI: settings.openai_api_key,
                ProviderKind.OPENROUTER: settings.openrouter_api_key,
                ProviderKind.ANTHROPIC: settings.anthropic_api_key,
                ProviderKind.GEMINI: settings.gemini_api_key,
            },
            enable_openai=settings.enable_openai,
            enable_openrouter=settings.enable_openrouter,
            enable_anthropic=settings.enable_anthropic,
            enable_gemini=settings.enable_gemini,
            timeout_s=settings.llm_timeout_s,
        )

    # =========================================================================
    # Model resolution
    # =========================================================================

    def resolve(self, model_id: str) -> ModelBinding:
        """Return the binding for a model id.

        Raises:
            LLMError(MODEL_NOT_AVAILABLE): Unknown, disabled, or provider off.
        """
        binding = self._bindings.get(model_id)
        if binding is None:
            raise LLMError(
                LLMErrorClass.MODEL_NOT_AVAILABLE,
                f"Model {model_id} is not available",
            )
        return binding

    def is_model_available(self, model_id: str) -> bool:
        return model_id in self._bindings

    def available_models(self) -> list[ModelSpec]:
        return [binding.spec for binding in self._bindings.values()]

    def build_request(
        self,
        model_id: str,
        turns: list[Turn],
        model_params: Mapping[str, Any] | None = None,
        *,
        max_tokens: int | None = None,
    ) -> LLMRequest:
        """Build an LLMRequest honouring the model's feature set.

        Knobs the model does not support are dropped silently: sampling
        parameters need "parameters", search needs "search", an explicit
        effort needs "reasoningEffort".
        """
        spec = self.resolve(model_id).spec
        params = model_params or {}

        effort = params.get("reasoningEffort")
        if effort not in REASONING_EFFORTS or not spec.supports(FEATURE_REASONING_EFFORT):
            effort = None

        sampling = spec.supports(FEATURE_PARAMETERS)
        return LLMRequest(
            model_name=spec.provider_model,
            messages=turns,
            max_tokens=max_tokens or spec.output_token_budget,
            temperature=params.get("temperature") if sampling else None,
            top_p=params.get("topP") if sampling else None,
            top_k=params.get("topK") if sampling else None,
            reasoning_effort=effort,
            enable_reasoning=spec.thinks,
            include_search=bool(params.get("includeSearch")) and spec.supports(FEATURE_SEARCH),
        )

    def _api_key_for(self, provider: ProviderKind) -> str:
        api_key = self._api_keys.get(provider)
        if not api_key:
            raise LLMError(
                LLMErrorClass.INVALID_KEY,
                f"No API key configured for {provider.value}",
                provider=provider.value,
            )
        return api_key

    # =========================================================================
    # Calls
    # =========================================================================

    async def generate(
        self,
        model_id: str,
        req: LLMRequest,
        *,
        log_fields: Mapping[str, Any] | None = None,
    ) -> LLMResponse:
        """Non-streaming generation with error normalization.

        Raises:
            LLMError: With normalized error class on failure.
        """
        binding = self.resolve(model_id)
        provider = binding.spec.provider.value
        base = {
            "provider": provider,
            "model_id": model_id,
            "streaming": False,
            **(log_fields or {}),
        }

        logger.info(
            "llm.request.started",
            **safe_kv(**base, message_chars=sum(len(m.content) for m in req.messages)),
        )
        start = time.monotonic()

        try:
            response = await binding.adapter.generate(
                req,
                api_key=self._api_key_for(binding.spec.provider),
                timeout_s=self._timeout_s,
            )
        except Exception as e:
            error = self._normalize(e, provider)
            logger.error(
                "llm.request.failed",
                **safe_kv(
                    **base,
                    outcome="error",
                    error_class=error.error_class.value,
                    latency_ms=int((time.monotonic() - start) * 1000),
                ),
            )
            if error is e:
                raise
            raise error from e

        usage = response.usage
        logger.info(
            "llm.request.finished",
            **safe_kv(
                **base,
                outcome="success",
                latency_ms=int((time.monotonic() - start) * 1000),
                tokens_input=usage.prompt_tokens if usage else None,
                tokens_output=usage.completion_tokens if usage else None,
                provider_request_id=response.provider_request_id,
            ),
        )
        return response

    async def stream(
        self,
        model_id: str,
        req: LLMRequest,
        *,
        log_fields: Mapping[str, Any] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Streaming generation that ends in exactly one terminal event.

        Yields:
            Content events, then a FinishEvent on success or an ErrorEvent
            on any failure.
        """
        base = {"model_id": model_id, "streaming": True, **(log_fields or {})}
        start = time.monotonic()
        provider: str | None = None

        try:
            binding = self.resolve(model_id)
            provider = binding.spec.provider.value
            base["provider"] = provider
            logger.info(
                "llm.request.started",
                **safe_kv(**base, message_chars=sum(len(m.content) for m in req.messages)),
            )

            events = binding.adapter.generate_stream(
                req,
                api_key=self._api_key_for(binding.spec.provider),
                timeout_s=self._timeout_s,
            )
            async with aclosing(events):
                async for event in events:
                    if isinstance(event, FinishEvent):
                        usage = event.usage
                        logger.info(
                            "llm.request.finished",
                            **safe_kv(
                                **base,
                                outcome="success",
                                finish_reason=event.finish_reason,
                                latency_ms=int((time.monotonic() - start) * 1000),
                                tokens_input=usage.prompt_tokens if usage else None,
                                tokens_output=usage.completion_tokens if usage else None,
                                provider_request_id=event.provider_request_id,
                            ),
                        )
                        yield event
                        return
                    yield event

            # Adapters raise on a truncated stream; this guards custom adapters
            raise LLMError(
                LLMErrorClass.PROVIDER_DOWN,
                "Stream ended without a terminal event",
                provider=provider,
            )

        except Exception as e:
            error = self._normalize(e, provider)
            logger.error(
                "llm.request.failed",
                **safe_kv(
                    **base,
                    outcome="error",
                    error_class=error.error_class.value,
                    latency_ms=int((time.monotonic() - start) * 1000),
                ),
            )
            yield ErrorEvent(
                error_class=error.error_class.value,
                message=error.message,
                provider=error.provider,
            )

    def _normalize(self, exc: Exception, provider: str | None) -> LLMError:
        """Map any adapter exception onto an LLMError."""
        if isinstance(exc, LLMError):
            return exc

        if isinstance(exc, httpx.TimeoutException):
            error_class = LLMErrorClass.TIMEOUT
        elif isinstance(exc, httpx.HTTPStatusError):
            error_class = classify_provider_error(
                provider or "",
                exc.response.status_code,
                _safe_parse_json(exc.response),
                None,
            )
        elif isinstance(exc, httpx.NetworkError):
            error_class = LLMErrorClass.PROVIDER_DOWN
        else:
            logger.exception("llm.unexpected_error", error_type=type(exc).__name__)
            return LLMError(
                LLMErrorClass.PROVIDER_DOWN,
                f"Unexpected error: {type(exc).__name__}",
                provider=provider,
            )

        return LLMError(error_class, ERROR_CLASS_TO_MESSAGE[error_class], provider=provider)
