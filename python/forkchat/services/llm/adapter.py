"""Abstract base class for LLM adapters.

Adapters:
- are async, built on the shared httpx.AsyncClient
- never retry
- never touch the database
- never log request/response bodies
- let raw HTTP errors bubble up to the router for classification
- convert Turn lists to the provider format internally
"""

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

import httpx

from forkchat.services.llm.types import LLMRequest, LLMResponse, ProviderKind, StreamEvent


class LLMAdapter(ABC):
    """Abstract base class for LLM provider adapters."""

    provider: ProviderKind

    def __init__(self, client: httpx.AsyncClient):
        """Initialize adapter with shared HTTP client.

        Args:
            client: Shared httpx.AsyncClient for connection pooling.
        """
        self._client = client

    @abstractmethod
    async def generate(
        self,
        req: LLMRequest,
        *,
        api_key: str,
        timeout_s: int,
    ) -> LLMResponse:
        """Non-streaming generation. Returns complete response.

        Raises:
            httpx.HTTPStatusError: On non-2xx HTTP response.
            httpx.TimeoutException: On request timeout.
            httpx.NetworkError: On network failure.
            LLMError: On in-band refusal.
        """
        pass

    @abstractmethod
    async def generate_stream(
        self,
        req: LLMRequest,
        *,
        api_key: str,
        timeout_s: int,
    ) -> AsyncIterator[StreamEvent]:
        """Streaming generation.

        Yields text, reasoning and tool-call events followed by exactly one
        FinishEvent. Never yields ErrorEvent: failures are raised and the
        router converts them.

        Raises:
            httpx.HTTPStatusError: On non-2xx HTTP response.
            httpx.TimeoutException: On request timeout.
            httpx.NetworkError: On network failure.
            LLMError: On in-band errors, refusals, or a missing terminal marker.
        """
        pass
        # This is an abstract async generator, must yield to be valid
        yield  # type: ignore


async def raise_for_stream_status(response: httpx.Response) -> None:
    """raise_for_status for streamed responses.

    The body of a streamed error response is unread; read it first so the
    router can classify on the provider's error payload.
    """
    if response.status_code >= 400:
        await response.aread()
    response.raise_for_status()


async def iter_sse_data(response: httpx.Response) -> AsyncIterator[tuple[str | None, str]]:
    """Yield (event, data) pairs from a Server-Sent Events body.

    Only single-line data fields are used by the providers we speak to.
    """
    event: str | None = None
    async for line in response.aiter_lines():
        if not line:
            event = None
            continue
        if line.startswith("event:"):
            event = line[6:].strip()
            continue
        if line.startswith("data:"):
            yield event, line[5:].strip()


def parse_json_data(data: str) -> dict | None:
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None
