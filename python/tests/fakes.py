"""In-memory doubles for Redis and the LLM router.

FakeAsyncRedis / FakeSyncRedis implement only the commands the stream
store, liveness markers and sweeper issue (set with ex/nx, get, delete,
expire, exists, ping). Expiry is recorded, not enforced; tests that need
an entry to vanish delete it explicitly.
"""

import asyncio
from collections.abc import AsyncIterator, Iterable

import httpx
from redis.exceptions import ConnectionError as RedisConnectionError

from forkchat.services.llm.router import LLMRouter
from forkchat.services.llm.types import LLMRequest, LLMResponse, StreamEvent


class _RedisState:
    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    def set(self, key: str, value: str, ex: int | None = None, nx: bool = False) -> bool | None:
        if nx and key in self.data:
            return None
        self.data[key] = value
        if ex is not None:
            self.ttls[key] = ex
        else:
            self.ttls.pop(key, None)
        return True

    def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    def expire(self, key: str, seconds: int) -> bool:
        if key not in self.data:
            return False
        self.ttls[key] = seconds
        return True

    def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if key in self.data)


class FakeAsyncRedis:
    """Async stand-in for redis.asyncio.Redis(decode_responses=True)."""

    def __init__(self, state: _RedisState | None = None) -> None:
        self._state = state or _RedisState()
        self.closed = False

    @property
    def data(self) -> dict[str, str]:
        return self._state.data

    @property
    def ttls(self) -> dict[str, int]:
        return self._state.ttls

    def sync_view(self) -> "FakeSyncRedis":
        """A synchronous client sharing this fake's keyspace."""
        return FakeSyncRedis(self._state)

    async def set(self, key, value, ex=None, nx=False):
        return self._state.set(key, value, ex=ex, nx=nx)

    async def get(self, key):
        return self._state.data.get(key)

    async def delete(self, *keys):
        return self._state.delete(*keys)

    async def expire(self, key, seconds):
        return self._state.expire(key, seconds)

    async def exists(self, *keys):
        return self._state.exists(*keys)

    async def ping(self):
        return True

    async def aclose(self):
        self.closed = True


class FakeSyncRedis:
    """Sync stand-in for redis.Redis, as used by the sweeper."""

    def __init__(self, state: _RedisState | None = None) -> None:
        self._state = state or _RedisState()

    def set(self, key, value, ex=None, nx=False):
        return self._state.set(key, value, ex=ex, nx=nx)

    def get(self, key):
        return self._state.data.get(key)

    def delete(self, *keys):
        return self._state.delete(*keys)

    def exists(self, *keys):
        return self._state.exists(*keys)

    def close(self):
        pass


class FailingRedis(FakeAsyncRedis):
    """Accepts the first ``fail_after`` writes, then every command fails."""

    def __init__(self, fail_after: int = 0) -> None:
        super().__init__()
        self._writes_left = fail_after

    def _check(self) -> None:
        if self._writes_left <= 0:
            raise RedisConnectionError("redis is down")

    async def set(self, key, value, ex=None, nx=False):
        self._check()
        self._writes_left -= 1
        return await super().set(key, value, ex=ex, nx=nx)

    async def get(self, key):
        self._check()
        return await super().get(key)

    async def delete(self, *keys):
        self._check()
        return await super().delete(*keys)

    async def expire(self, key, seconds):
        self._check()
        return await super().expire(key, seconds)


class ScriptedRouter(LLMRouter):
    """LLMRouter whose provider calls return scripted results.

    Model resolution and request building are the real ones, so unknown or
    disabled models behave exactly as in production.

    Args:
        events: Yielded by stream() in order.
        gate: When set, stream() waits on it before each event after the
            first ``release_first`` events.
        title: Text returned by generate(), or an exception to raise.
    """

    def __init__(
        self,
        events: Iterable[StreamEvent] = (),
        *,
        gate: asyncio.Event | None = None,
        release_first: int = 0,
        title: str | Exception = "Scripted Title",
    ) -> None:
        super().__init__(httpx.AsyncClient(), api_keys={})
        self.events = list(events)
        self.gate = gate
        self.release_first = release_first
        self.title = title
        self.stream_calls: list[LLMRequest] = []
        self.generate_calls: list[LLMRequest] = []

    async def stream(self, model_id, req, *, log_fields=None) -> AsyncIterator[StreamEvent]:
        self.stream_calls.append(req)
        for i, event in enumerate(self.events):
            if self.gate is not None and i >= self.release_first:
                await self.gate.wait()
            yield event

    async def generate(self, model_id, req, *, log_fields=None) -> LLMResponse:
        self.generate_calls.append(req)
        if isinstance(self.title, Exception):
            raise self.title
        return LLMResponse(text=self.title, usage=None, provider_request_id=None)
