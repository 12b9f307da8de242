"""Log guard for generation and provider events.

Message text, prompts, titles and credentials never go into logs. Callers
log sizes (``*_chars``) or digests (``*_sha256``) instead, and pass every
structured field through ``safe_kv`` so a forbidden key is caught at the
call site.
"""

import hashlib
import os

import structlog

FORBIDDEN_KEYS = frozenset(
    {
        "prompt",
        "content",
        "text",
        "title",
        "reasoning",
        "api_key",
        "bearer",
        "token",
        "secret",
        "password",
        "raw_body",
    }
)

REDACTED_SUFFIXES = ("_sha256", "_hash", "_length", "_chars")


def hash_text(value: str) -> str:
    """Stable SHA-256 hex digest, for correlating identical content in logs."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _has_redacted_suffix(key: str) -> bool:
    return any(key.endswith(suffix) for suffix in REDACTED_SUFFIXES)


def safe_kv(*, _env: str | None = None, **kwargs) -> dict:
    """Return kwargs unchanged after checking for forbidden keys.

    In local and test environments a forbidden key raises ValueError so the
    offending log call fails loudly in tests. Elsewhere a warning is logged
    and the fields pass through.

    Usage:
        logger.info("llm.request.started", **safe_kv(
            provider="gemini",
            model_name="gemini-2.0-flash",
            message_chars=1234,
        ))

    Args:
        _env: Override for FORKCHAT_ENV (test-only).
    """
    violations = [
        key for key in kwargs if key in FORBIDDEN_KEYS and not _has_redacted_suffix(key)
    ]

    if violations:
        msg = f"Forbidden log keys without redacted suffix: {violations}"
        env = _env or os.environ.get("FORKCHAT_ENV", "local")
        if env in ("local", "test"):
            raise ValueError(msg)
        structlog.get_logger(__name__).warning("safe_kv_violation", forbidden_keys=violations)

    return kwargs
