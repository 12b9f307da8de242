"""LLM error classification and normalization.

Classifies provider-specific errors into normalized error classes. Called by
the router after catching adapter exceptions, and by adapters for failures
the provider reports inside an otherwise successful stream.

Error classes:
- E_LLM_INVALID_KEY: Authentication failure (401/403) or no key configured
- E_LLM_RATE_LIMIT: Rate limit or quota exceeded (429, 402)
- E_LLM_CONTEXT_TOO_LARGE: Context length exceeded
- E_LLM_TIMEOUT: Request timed out
- E_LLM_PROVIDER_DOWN: Provider unavailable (5xx, network error, truncated stream)
- E_MODEL_NOT_AVAILABLE: Model not found, unknown or disabled
- E_LLM_CONTENT_REJECTED: Provider refused the request on policy grounds
"""

from enum import Enum

from forkchat.logging import get_logger

logger = get_logger(__name__)


class LLMErrorClass(str, Enum):
    """Normalized LLM error classifications.

    The value is stored as server_error.type on failed messages.
    """

    INVALID_KEY = "E_LLM_INVALID_KEY"
    RATE_LIMIT = "E_LLM_RATE_LIMIT"
    CONTEXT_TOO_LARGE = "E_LLM_CONTEXT_TOO_LARGE"
    TIMEOUT = "E_LLM_TIMEOUT"
    PROVIDER_DOWN = "E_LLM_PROVIDER_DOWN"
    MODEL_NOT_AVAILABLE = "E_MODEL_NOT_AVAILABLE"
    CONTENT_REJECTED = "E_LLM_CONTENT_REJECTED"


ERROR_CLASS_TO_MESSAGE: dict[LLMErrorClass, str] = {
    LLMErrorClass.INVALID_KEY: "The model provider rejected the configured API key.",
    LLMErrorClass.RATE_LIMIT: "The model provider is rate limiting requests. Try again shortly.",
    LLMErrorClass.CONTEXT_TOO_LARGE: "This conversation is too long for the selected model.",
    LLMErrorClass.TIMEOUT: "The model took too long to respond.",
    LLMErrorClass.PROVIDER_DOWN: "The model provider is unavailable right now.",
    LLMErrorClass.MODEL_NOT_AVAILABLE: "The selected model is not available.",
    LLMErrorClass.CONTENT_REJECTED: "The model provider declined to answer this request.",
}


class LLMError(Exception):
    """Exception for LLM-related errors.

    Attributes:
        error_class: The normalized error classification
        message: Human-readable error message
        provider: The provider that returned the error (if known)
    """

    def __init__(
        self,
        error_class: LLMErrorClass,
        message: str,
        provider: str | None = None,
    ):
        self.error_class = error_class
        self.message = message
        self.provider = provider
        super().__init__(message)


# Status codes every provider uses the same way. Anything >= 500 is PROVIDER_DOWN.
_COMMON_STATUS: dict[int, LLMErrorClass] = {
    401: LLMErrorClass.INVALID_KEY,
    403: LLMErrorClass.INVALID_KEY,
    404: LLMErrorClass.MODEL_NOT_AVAILABLE,
    429: LLMErrorClass.RATE_LIMIT,
}

# OpenRouter: 402 is out of credits, 403 is a moderation flag.
_OPENROUTER_STATUS: dict[int, LLMErrorClass] = {
    **_COMMON_STATUS,
    402: LLMErrorClass.RATE_LIMIT,
    403: LLMErrorClass.CONTENT_REJECTED,
    408: LLMErrorClass.TIMEOUT,
}


def _error_fields(json_body: dict | None) -> tuple[str, str, str]:
    error = (json_body or {}).get("error") or {}
    if not isinstance(error, dict):
        return "", "", str(error).lower()
    return (
        str(error.get("code") or ""),
        str(error.get("type") or ""),
        str(error.get("message") or "").lower(),
    )


def _openai_body_hint(json_body: dict | None) -> LLMErrorClass | None:
    code, _, message = _error_fields(json_body)
    if code == "context_length_exceeded" or "maximum context length" in message:
        return LLMErrorClass.CONTEXT_TOO_LARGE
    if code in ("content_policy_violation", "content_filter"):
        return LLMErrorClass.CONTENT_REJECTED
    if "model" in message and "not found" in message:
        return LLMErrorClass.MODEL_NOT_AVAILABLE
    return None


def _anthropic_body_hint(json_body: dict | None) -> LLMErrorClass | None:
    _, error_type, message = _error_fields(json_body)
    if error_type == "invalid_request_error" and "too long" in message:
        return LLMErrorClass.CONTEXT_TOO_LARGE
    return None


_GEMINI_BODY_MARKERS: tuple[tuple[str, LLMErrorClass], ...] = (
    ("api_key_invalid", LLMErrorClass.INVALID_KEY),
    ("resource_exhausted", LLMErrorClass.RATE_LIMIT),
    ("exceeds the maximum", LLMErrorClass.CONTEXT_TOO_LARGE),
    ("model not found", LLMErrorClass.MODEL_NOT_AVAILABLE),
)


def _gemini_body_hint(json_body: dict | None) -> LLMErrorClass | None:
    # Gemini puts the useful detail in error.status / details[].reason, so
    # match against the whole body.
    body = str(json_body).lower() if json_body else ""
    for marker, error_class in _GEMINI_BODY_MARKERS:
        if marker in body:
            return error_class
    return None


# provider -> (status table, body hint, hint applies to 400 only)
_PROVIDER_RULES = {
    "openai": (_COMMON_STATUS, _openai_body_hint, True),
    "openrouter": (_OPENROUTER_STATUS, _openai_body_hint, True),
    "anthropic": (_COMMON_STATUS, _anthropic_body_hint, True),
    "gemini": (_COMMON_STATUS, _gemini_body_hint, False),
}


def classify_provider_error(
    provider: str,
    status_code: int | None,
    json_body: dict | None,
    exception: Exception | None,
) -> LLMErrorClass:
    """Classify a provider failure into a normalized error class.

    Transport exceptions win over everything else. Otherwise the provider's
    body hint is consulted (always for Gemini, only on 400 for the others)
    and the status table decides the rest. Unrecognized failures are
    PROVIDER_DOWN.

    Args:
        provider: A ProviderKind value
        status_code: HTTP status code (if available)
        json_body: Parsed JSON error response (if available)
        exception: The exception that was raised (if any)
    """
    if exception is not None:
        exception_type = type(exception).__name__
        if "Timeout" in exception_type or "timeout" in str(exception).lower():
            return LLMErrorClass.TIMEOUT
        if "Network" in exception_type or "Connection" in exception_type:
            return LLMErrorClass.PROVIDER_DOWN

    if status_code is None:
        return LLMErrorClass.PROVIDER_DOWN

    rules = _PROVIDER_RULES.get(provider)
    if rules is None:
        logger.warning("unknown_provider_for_error_classification", provider=provider)
        return LLMErrorClass.PROVIDER_DOWN
    status_table, body_hint, hint_on_400_only = rules

    if json_body and (status_code == 400 or not hint_on_400_only):
        hinted = body_hint(json_body)
        if hinted is not None:
            return hinted

    if status_code in status_table:
        return status_table[status_code]
    return LLMErrorClass.PROVIDER_DOWN


def classify_stream_error(provider: str, payload: dict) -> LLMErrorClass:
    """Classify an error object delivered inside a 200 stream.

    OpenRouter reports upstream failures as ``{"error": {"code": <http status>}}``
    in a data line. Anthropic sends an ``error`` event whose ``error.type``
    names the failure.
    """
    error = payload.get("error") or {}
    if not isinstance(error, dict):
        return LLMErrorClass.PROVIDER_DOWN

    code = error.get("code")
    if isinstance(code, int):
        return classify_provider_error(provider, code, payload, None)

    error_type = str(error.get("type") or "")
    if error_type == "rate_limit_error":
        return LLMErrorClass.RATE_LIMIT
    if error_type in ("authentication_error", "permission_error"):
        return LLMErrorClass.INVALID_KEY
    if error_type == "invalid_request_error":
        return classify_provider_error(provider, 400, payload, None)
    return LLMErrorClass.PROVIDER_DOWN
