"""Resumable stream store: a TTL-bounded replay log per response message.

Redis layout (all values JSON strings):
    stream:{id}:meta        {"totalParts": n, "isComplete": bool, "startTime": ms}
    stream:{id}:part:{i}    {"index": i, "part": <event dict>, "timestamp": ms}

Lifecycle:
- begin: meta reset with the grace TTL (~5 min); parts untouched
- append: part written once (SET NX) with the active TTL (~1 h), then meta
  advanced to totalParts = index + 1 with the active TTL
- complete: isComplete = true, TTL shortened to the grace window
- purge: every part key, then meta

The store is a replay buffer only; the message row stays authoritative.
Write failures are logged and reported, never raised, so a Redis outage
cannot abort LLM consumption. Read failures look like a missing entry,
which the resume endpoint reports as "not found or expired".
"""

import asyncio
import json
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from redis.exceptions import RedisError

from forkchat.logging import get_logger

logger = get_logger(__name__)

DEFAULT_ACTIVE_TTL_S = 3600
DEFAULT_GRACE_TTL_S = 300

_STORE_ERRORS = (RedisError, OSError, ValueError)


def _now_ms() -> int:
    return int(time.time() * 1000)


def meta_key(stream_id: str) -> str:
    return f"stream:{stream_id}:meta"


def part_key(stream_id: str, index: int) -> str:
    return f"stream:{stream_id}:part:{index}"


@dataclass(frozen=True)
class StreamMeta:
    total_parts: int
    is_complete: bool
    start_time: int

    def to_json(self) -> str:
        return json.dumps(
            {
                "totalParts": self.total_parts,
                "isComplete": self.is_complete,
                "startTime": self.start_time,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "StreamMeta":
        data = json.loads(raw)
        return cls(
            total_parts=int(data.get("totalParts", 0)),
            is_complete=bool(data.get("isComplete", False)),
            start_time=int(data.get("startTime", 0)),
        )


class ResumableStreamStore:
    """Append-only chunk log keyed by response message id.

    Args:
        redis: redis.asyncio client created with decode_responses=True, or
            None when Redis is not configured (every operation degrades).
        active_ttl_s: Expiry while the stream is being written.
        grace_ttl_s: Expiry after begin and after completion.
    """

    def __init__(
        self,
        redis,
        *,
        active_ttl_s: int = DEFAULT_ACTIVE_TTL_S,
        grace_ttl_s: int = DEFAULT_GRACE_TTL_S,
    ):
        self._redis = redis
        self._active_ttl_s = active_ttl_s
        self._grace_ttl_s = grace_ttl_s

    @property
    def available(self) -> bool:
        return self._redis is not None

    async def begin(self, stream_id: str) -> bool:
        if self._redis is None:
            return False
        meta = StreamMeta(total_parts=0, is_complete=False, start_time=_now_ms())
        try:
            await self._redis.set(meta_key(stream_id), meta.to_json(), ex=self._grace_ttl_s)
        except _STORE_ERRORS as e:
            logger.warning("stream_store_begin_failed", stream_id=stream_id, error=str(e))
            return False
        return True

    async def append(self, stream_id: str, index: int, chunk: dict[str, Any]) -> bool:
        """Write chunk ``index`` and advance the meta counter.

        Returns:
            True if the part was written; False if it already existed or the
            store is unavailable.
        """
        if self._redis is None:
            return False
        now = _now_ms()
        record = json.dumps({"index": index, "part": chunk, "timestamp": now})
        try:
            written = await self._redis.set(
                part_key(stream_id, index), record, ex=self._active_ttl_s, nx=True
            )
            if not written:
                logger.warning("stream_store_part_exists", stream_id=stream_id, index=index)
                return False

            current = await self._read_meta(stream_id)
            meta = StreamMeta(
                total_parts=index + 1,
                is_complete=False,
                start_time=current.start_time if current else now,
            )
            await self._redis.set(meta_key(stream_id), meta.to_json(), ex=self._active_ttl_s)
        except _STORE_ERRORS as e:
            logger.warning(
                "stream_store_append_failed", stream_id=stream_id, index=index, error=str(e)
            )
            return False
        return True

    async def complete(self, stream_id: str) -> bool:
        if self._redis is None:
            return False
        try:
            current = await self._read_meta(stream_id)
            if current is None:
                return False
            meta = StreamMeta(
                total_parts=current.total_parts,
                is_complete=True,
                start_time=current.start_time,
            )
            await self._redis.set(meta_key(stream_id), meta.to_json(), ex=self._grace_ttl_s)
        except _STORE_ERRORS as e:
            logger.warning("stream_store_complete_failed", stream_id=stream_id, error=str(e))
            return False
        return True

    async def get_meta(self, stream_id: str) -> StreamMeta | None:
        """Return the entry's metadata, or None if missing or unreadable."""
        if self._redis is None:
            return None
        try:
            return await self._read_meta(stream_id)
        except _STORE_ERRORS as e:
            logger.warning("stream_store_meta_failed", stream_id=stream_id, error=str(e))
            return None

    async def replay(self, stream_id: str, from_index: int = 0) -> AsyncIterator[dict[str, Any]]:
        """Yield stored chunks from ``from_index`` through the last written one.

        Empty for an unknown id. Stops at the first missing part so a
        consumer never sees a gap. Each call re-reads the store, so the
        sequence is restartable.
        """
        meta = await self.get_meta(stream_id)
        if meta is None:
            return

        for index in range(max(from_index, 0), meta.total_parts):
            try:
                raw = await self._redis.get(part_key(stream_id, index))
            except _STORE_ERRORS as e:
                logger.warning(
                    "stream_store_replay_failed", stream_id=stream_id, index=index, error=str(e)
                )
                return
            if raw is None:
                logger.info("stream_store_part_missing", stream_id=stream_id, index=index)
                return
            yield json.loads(raw)["part"]

    async def purge(self, stream_id: str) -> None:
        """Delete all part keys, then the meta key. Safe to repeat."""
        if self._redis is None:
            return
        try:
            meta = await self._read_meta(stream_id)
            if meta is not None and meta.total_parts:
                await self._redis.delete(
                    *(part_key(stream_id, i) for i in range(meta.total_parts))
                )
            await self._redis.delete(meta_key(stream_id))
        except _STORE_ERRORS as e:
            logger.warning("stream_store_purge_failed", stream_id=stream_id, error=str(e))

    async def _read_meta(self, stream_id: str) -> StreamMeta | None:
        raw = await self._redis.get(meta_key(stream_id))
        if raw is None:
            return None
        return StreamMeta.from_json(raw)

    def writer(self, stream_id: str) -> "StreamWriter":
        return StreamWriter(self, stream_id)


class StreamWriter:
    """Per-attempt writer assigning contiguous indices from 0.

    Appends for one stream are serialized by a lock. After the first failed
    append the writer stops writing and purges the entry, so a reconnecting
    client gets "not found" and falls back to the message row instead of
    replaying a log with a hole in it.
    """

    def __init__(self, store: ResumableStreamStore, stream_id: str):
        self._store = store
        self.stream_id = stream_id
        self._next_index = 0
        self._lock = asyncio.Lock()
        self.degraded = not store.available

    @property
    def next_index(self) -> int:
        return self._next_index

    async def begin(self) -> None:
        if self.degraded:
            return
        if not await self._store.begin(self.stream_id):
            self.degraded = True

    async def append(self, chunk: dict[str, Any]) -> int | None:
        """Append the next chunk. Returns its index, or None once degraded."""
        async with self._lock:
            if self.degraded:
                return None
            index = self._next_index
            if not await self._store.append(self.stream_id, index, chunk):
                self.degraded = True
                logger.warning(
                    "stream_writer_degraded", stream_id=self.stream_id, failed_index=index
                )
                await self._store.purge(self.stream_id)
                return None
            self._next_index += 1
            return index

    async def complete(self) -> None:
        if self.degraded:
            return
        await self._store.complete(self.stream_id)
