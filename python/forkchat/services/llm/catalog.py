"""Static model catalog.

Public model ids (what clients send as ``model``) map to a ModelSpec naming
the wire protocol, the provider-side model name, and the model's feature
set. Capability discovery is a lookup here, never a provider call.

Provider families collapse onto wire protocols:
- Google → gemini
- OpenAI / Azure → openai
- OpenRouter / Groq-hosted models → openrouter
- Anthropic → anthropic
"""

from dataclasses import dataclass

from forkchat.services.llm.types import ProviderKind

# Feature names as exposed to clients
FEATURE_IMAGES = "images"
FEATURE_PDFS = "pdfs"
FEATURE_SEARCH = "search"
FEATURE_PARAMETERS = "parameters"
FEATURE_REASONING = "reasoning"
FEATURE_REASONING_EFFORT = "reasoningEffort"
FEATURE_FAST = "fast"

DEFAULT_MAX_OUTPUT_TOKENS = 8192


@dataclass(frozen=True)
class ModelSpec:
    id: str
    name: str
    provider: ProviderKind
    provider_model: str
    developer: str
    features: frozenset[str] = frozenset()
    max_input_tokens: int | None = None
    max_output_tokens: int | None = None
    disabled: bool = False

    def supports(self, feature: str) -> bool:
        return feature in self.features

    @property
    def thinks(self) -> bool:
        """Whether the model streams a reasoning phase."""
        return self.supports(FEATURE_REASONING) or self.supports(FEATURE_REASONING_EFFORT)

    @property
    def output_token_budget(self) -> int:
        return min(self.max_output_tokens or DEFAULT_MAX_OUTPUT_TOKENS, DEFAULT_MAX_OUTPUT_TOKENS)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.provider.value,
            "developer": self.developer,
            "features": sorted(self.features),
            "limits": {
                "maxInputTokens": self.max_input_tokens,
                "maxOutputTokens": self.max_output_tokens,
            },
        }


def _spec(
    id: str,
    name: str,
    provider: ProviderKind,
    provider_model: str,
    developer: str,
    features: tuple[str, ...] = (),
    limits: tuple[int | None, int | None] = (None, None),
    disabled: bool = False,
) -> ModelSpec:
    return ModelSpec(
        id=id,
        name=name,
        provider=provider,
        provider_model=provider_model,
        developer=developer,
        features=frozenset(features),
        max_input_tokens=limits[0],
        max_output_tokens=limits[1],
        disabled=disabled,
    )


_GEMINI = ProviderKind.GEMINI
_OPENAI = ProviderKind.OPENAI
_OPENROUTER = ProviderKind.OPENROUTER
_ANTHROPIC = ProviderKind.ANTHROPIC

_SPECS: tuple[ModelSpec, ...] = (
    # Google
    _spec("gemini-2.0-flash", "Gemini 2.0 Flash", _GEMINI, "gemini-2.0-flash", "Google",
          (FEATURE_IMAGES, FEATURE_PDFS, FEATURE_SEARCH), (1_000_000, 8192)),
    _spec("gemini-2.0-flash-lite-preview-02-05", "Gemini 2.0 Flash Lite", _GEMINI,
          "gemini-2.0-flash-lite-preview-02-05", "Google",
          (FEATURE_FAST, FEATURE_IMAGES, FEATURE_PDFS), (1_000_000, 8192)),
    _spec("gemini-2.5-flash", "Gemini 2.5 Flash", _GEMINI, "gemini-2.5-flash", "Google",
          (FEATURE_IMAGES, FEATURE_PDFS, FEATURE_SEARCH), (1_000_000, 65535)),
    _spec("gemini-2.5-flash-thinking", "Gemini 2.5 Flash (Thinking)", _GEMINI,
          "gemini-2.5-flash", "Google",
          (FEATURE_IMAGES, FEATURE_PDFS, FEATURE_SEARCH, FEATURE_REASONING_EFFORT),
          (1_000_000, 65535)),
    _spec("gemini-2.5-pro", "Gemini 2.5 Pro", _GEMINI, "gemini-2.5-pro", "Google",
          (FEATURE_PARAMETERS, FEATURE_IMAGES, FEATURE_PDFS, FEATURE_SEARCH,
           FEATURE_REASONING, FEATURE_REASONING_EFFORT), (200_000, 64_000)),
    # OpenAI
    _spec("gpt-4o-mini", "GPT-4o-mini", _OPENAI, "gpt-4o-mini", "OpenAI",
          (FEATURE_IMAGES, FEATURE_PARAMETERS), (128_000, 16384)),
    _spec("gpt-4o", "GPT-4o", _OPENAI, "gpt-4o", "OpenAI",
          (FEATURE_IMAGES, FEATURE_PARAMETERS), (128_000, 16384), disabled=True),
    _spec("gpt-o3-mini", "o3-mini", _OPENAI, "o3-mini", "OpenAI",
          (FEATURE_PARAMETERS, FEATURE_REASONING, FEATURE_REASONING_EFFORT), (200_000, 100_000)),
    _spec("gpt-o4-mini", "o4-mini", _OPENAI, "o4-mini", "OpenAI",
          (FEATURE_PARAMETERS, FEATURE_IMAGES, FEATURE_REASONING, FEATURE_REASONING_EFFORT),
          (200_000, 100_000)),
    _spec("gpt-4.1", "GPT-4.1", _OPENAI, "gpt-4.1", "OpenAI",
          (FEATURE_PARAMETERS, FEATURE_IMAGES), (1_000_000, 16384)),
    _spec("gpt-4.1-mini", "GPT-4.1 Mini", _OPENAI, "gpt-4.1-mini", "OpenAI",
          (FEATURE_PARAMETERS, FEATURE_IMAGES), (1_000_000, 16384)),
    _spec("gpt-4.1-nano", "GPT-4.1 Nano", _OPENAI, "gpt-4.1-nano", "OpenAI",
          (FEATURE_PARAMETERS, FEATURE_IMAGES), (1_000_000, 16384)),
    _spec("o3-full", "o3", _OPENAI, "o3", "OpenAI",
          (FEATURE_PARAMETERS, FEATURE_IMAGES, FEATURE_REASONING, FEATURE_REASONING_EFFORT),
          (200_000, 100_000), disabled=True),
    _spec("o3-pro", "o3 Pro", _OPENAI, "o3-pro", "OpenAI",
          (FEATURE_PARAMETERS, FEATURE_IMAGES, FEATURE_REASONING, FEATURE_REASONING_EFFORT),
          (200_000, 100_000), disabled=True),
    # OpenRouter
    _spec("deepseek-r1-distill-qwen-32b", "DeepSeek R1 (Qwen Distilled)", _OPENROUTER,
          "deepseek/deepseek-r1-distill-qwen-32b", "DeepSeek",
          (FEATURE_PARAMETERS, FEATURE_REASONING), (16_000, 16384)),
    _spec("llama-4-scout", "Llama 4 Scout", _OPENROUTER, "meta-llama/llama-4-scout", "Meta",
          (FEATURE_PARAMETERS, FEATURE_IMAGES), (128_000, 8192)),
    _spec("llama-4-maverick", "Llama 4 Maverick", _OPENROUTER, "meta-llama/llama-4-maverick",
          "Meta", (FEATURE_PARAMETERS, FEATURE_IMAGES), (128_000, 8192)),
    _spec("grok-v3", "Grok 3", _OPENROUTER, "x-ai/grok-3", "xAI",
          (FEATURE_PARAMETERS,), (131_072, 16384)),
    _spec("grok-v3-mini", "Grok 3 Mini", _OPENROUTER, "x-ai/grok-3-mini", "xAI",
          (FEATURE_PARAMETERS, FEATURE_REASONING, FEATURE_REASONING_EFFORT), (131_072, 16384)),
    _spec("qwen-2.5-32b", "Qwen 2.5 32B", _OPENROUTER, "qwen/qwen-2.5-coder-32b-instruct",
          "Alibaba", (FEATURE_PARAMETERS,), (32_000, 8192)),
    # Anthropic
    _spec("claude-3.5", "Claude 3.5 Sonnet", _ANTHROPIC, "claude-3-5-sonnet-latest", "Anthropic",
          (FEATURE_IMAGES, FEATURE_PDFS, FEATURE_PARAMETERS), (30_000, 16384)),
    _spec("claude-3.7", "Claude 3.7 Sonnet", _ANTHROPIC, "claude-3-7-sonnet-latest", "Anthropic",
          (FEATURE_IMAGES, FEATURE_PDFS, FEATURE_PARAMETERS), (30_000, 16384)),
    _spec("claude-3.7-reasoning", "Claude 3.7 Sonnet (Reasoning)", _ANTHROPIC,
          "claude-3-7-sonnet-latest", "Anthropic",
          (FEATURE_IMAGES, FEATURE_PDFS, FEATURE_REASONING, FEATURE_REASONING_EFFORT),
          (30_000, 16384)),
    _spec("claude-4-sonnet", "Claude 4 Sonnet", _ANTHROPIC, "claude-sonnet-4-0", "Anthropic",
          (FEATURE_IMAGES, FEATURE_PDFS, FEATURE_PARAMETERS, FEATURE_SEARCH), (30_000, 16384)),
    _spec("claude-4-sonnet-reasoning", "Claude 4 Sonnet (Reasoning)", _ANTHROPIC,
          "claude-sonnet-4-0", "Anthropic",
          (FEATURE_IMAGES, FEATURE_PDFS, FEATURE_SEARCH, FEATURE_REASONING,
           FEATURE_REASONING_EFFORT), (30_000, 16384)),
    _spec("claude-4-opus", "Claude 4 Opus", _ANTHROPIC, "claude-opus-4-0", "Anthropic",
          (FEATURE_IMAGES, FEATURE_PDFS, FEATURE_SEARCH, FEATURE_REASONING,
           FEATURE_REASONING_EFFORT), (30_000, 16384)),
)

MODEL_CATALOG: dict[str, ModelSpec] = {spec.id: spec for spec in _SPECS}


def get_model_spec(model_id: str) -> ModelSpec | None:
    return MODEL_CATALOG.get(model_id)
