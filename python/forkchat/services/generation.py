"""Generation state machine: drives one assistant message to a terminal status.

States: waiting → (thinking →) streaming → done, with error, error.rejected
and cancelled terminals. Every exit path of run() funnels through exactly
one conditional terminal write; the only way a message stays active after
run() returns is a database outage, which the stale-generation sweeper
repairs.

Persistence model:
- Text and reasoning are accumulated in memory and written as full
  snapshots (parts replaced, never patched).
- A snapshot is flushed when the accumulated buffer contains a sentence
  delimiter (. ! ? ; , newline) or its length crosses a multiple of the
  flush modulus. Phase changes and tool calls always flush.
- Every write is conditional on the message still being active. A write
  that matches no row means a stop (or an edit that deleted the message)
  won the race; the event being applied is discarded.
- Once a stop is committed, the parts already stored are final. Content
  applied in memory but not yet flushed is dropped with the rest of the
  tail.
- Thread writes are conditional on generation_attempt, so a superseded
  attempt never overwrites the thread status of a newer one.

Every provider event is appended to the resumable stream store and published
to the optional live relay before it is applied.
"""

import asyncio
import contextlib
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from forkchat.db.models import (
    ACTIVE_MESSAGE_STATUSES,
    GenerationStatus,
    Message,
    MessageStatus,
    Thread,
    utcnow,
)
from forkchat.db.session import session_scope
from forkchat.logging import get_logger, set_generation_context
from forkchat.services.llm.errors import LLMError, LLMErrorClass
from forkchat.services.llm.prompt import (
    build_system_prompt,
    clean_title,
    render_prompt,
    render_title_prompt,
)
from forkchat.services.llm.router import LLMRouter
from forkchat.services.llm.types import (
    ErrorEvent,
    FinishEvent,
    ReasoningDelta,
    StreamEvent,
    TextDelta,
    ToolCallEvent,
    Turn,
)
from forkchat.services.redact import safe_kv
from forkchat.services.relay import LiveRelay
from forkchat.services.stream_liveness import (
    clear_liveness_marker,
    refresh_liveness_marker,
    set_liveness_marker,
)
from forkchat.services.stream_store import ResumableStreamStore, StreamWriter

logger = get_logger(__name__)

FLUSH_DELIMITERS = frozenset(".!?;,\n")
DEFAULT_FLUSH_MODULUS = 50
DEFAULT_CANCEL_POLL_INTERVAL_S = 1.0

E_GENERATION_INTERRUPTED = "E_GENERATION_INTERRUPTED"
E_INTERNAL = "E_INTERNAL"

_END = object()

TitleRetry = Callable[[str], Awaitable[None]]


@dataclass(frozen=True)
class GenerationJob:
    """Everything a generation attempt needs, captured at admission."""

    thread_id: str
    message_id: str
    user_id: UUID
    model: str
    model_params: dict[str, Any]
    history: tuple[Turn, ...]
    attempt: int
    should_generate_title: bool = False


# =============================================================================
# Snapshot accumulation
# =============================================================================


def should_flush(before: str, delta: str, modulus: int) -> bool:
    """Flush when the buffer holds a clause break or crosses a size step."""
    if any(ch in FLUSH_DELIMITERS for ch in before + delta):
        return True
    return len(before) // modulus != (len(before) + len(delta)) // modulus


@dataclass(frozen=True)
class MessageSnapshot:
    """Immutable accumulation of a message's streamed content.

    A pure function of the ordered event sequence: applying the same events
    to an empty snapshot always yields the same parts.
    """

    text: str = ""
    reasoning: str = ""
    tool_calls: tuple[dict[str, Any], ...] = field(default_factory=tuple)

    def apply(self, event: StreamEvent) -> "MessageSnapshot":
        if isinstance(event, TextDelta):
            return replace(self, text=self.text + event.text)
        if isinstance(event, ReasoningDelta):
            return replace(self, reasoning=self.reasoning + event.text)
        if isinstance(event, ToolCallEvent):
            call = {k: v for k, v in event.to_dict().items() if k != "type"}
            calls = [c for c in self.tool_calls if c["id"] != event.id]
            existing = next((i for i, c in enumerate(self.tool_calls) if c["id"] == event.id), None)
            if existing is None:
                calls.append(call)
            else:
                calls.insert(existing, call)
            return replace(self, tool_calls=tuple(calls))
        return self

    def parts(self) -> list[dict[str, Any]]:
        """Render order: reasoning, tool calls, text."""
        parts: list[dict[str, Any]] = []
        if self.reasoning:
            parts.append({"type": "reasoning", "reasoning": self.reasoning})
        for call in self.tool_calls:
            parts.append({"type": "tool-call", **call})
        if self.text:
            parts.append({"type": "text", "text": self.text})
        return parts


# =============================================================================
# Database units of work (run in a worker thread)
# =============================================================================


def _admit(factory: sessionmaker[Session], message_id: str) -> bool:
    with session_scope(factory) as db:
        result = db.execute(
            update(Message)
            .where(
                Message.message_id == message_id,
                Message.status == MessageStatus.waiting.value,
            )
            .values(status=MessageStatus.streaming.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


def _current_status(factory: sessionmaker[Session], message_id: str) -> str | None:
    with session_scope(factory) as db:
        return db.execute(
            select(Message.status).where(Message.message_id == message_id)
        ).scalar_one_or_none()


def _write_message(
    factory: sessionmaker[Session],
    message_id: str,
    *,
    allowed_statuses: tuple[str, ...],
    values: dict[str, Any],
) -> bool:
    with session_scope(factory) as db:
        result = db.execute(
            update(Message)
            .where(
                Message.message_id == message_id,
                Message.status.in_(allowed_statuses),
            )
            .values(**values, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


def _write_thread(
    factory: sessionmaker[Session],
    thread_id: str,
    attempt: int,
    values: dict[str, Any],
) -> bool:
    now = utcnow()
    with session_scope(factory) as db:
        result = db.execute(
            update(Thread)
            .where(Thread.thread_id == thread_id, Thread.generation_attempt == attempt)
            .values(**values, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


def _write_generated_title(factory: sessionmaker[Session], thread_id: str, title: str) -> bool:
    with session_scope(factory) as db:
        result = db.execute(
            update(Thread)
            .where(Thread.thread_id == thread_id, Thread.user_set_title.is_(False))
            .values(title=title, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


# =============================================================================
# Title generation
# =============================================================================


async def generate_title(
    router: LLMRouter,
    session_factory: sessionmaker[Session],
    *,
    thread_id: str,
    user_message: str,
    assistant_message: str,
    model_id: str,
) -> str | None:
    """Generate and store a thread title. Raises LLMError on provider failure.

    Returns the stored title, or None if the model returned nothing usable
    or the user has set their own title meanwhile.
    """
    req = router.build_request(
        model_id,
        render_title_prompt(user_message, assistant_message),
        max_tokens=64,
    )
    response = await router.generate(model_id, req)
    title = clean_title(response.text)
    if not title:
        return None
    if not await run_in_threadpool(_write_generated_title, session_factory, thread_id, title):
        return None
    return title


# =============================================================================
# State machine
# =============================================================================


class GenerationStateMachine:
    """Owns the lifecycle of one assistant message per run() call."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        router: LLMRouter,
        stream_store: ResumableStreamStore,
        *,
        redis=None,
        flush_modulus: int = DEFAULT_FLUSH_MODULUS,
        cancel_poll_interval_s: float = DEFAULT_CANCEL_POLL_INTERVAL_S,
        title_model_id: str = "gemini-2.0-flash",
        title_retry: TitleRetry | None = None,
    ):
        self._factory = session_factory
        self._router = router
        self._store = stream_store
        self._redis = redis
        self._flush_modulus = flush_modulus
        self._poll_interval = cancel_poll_interval_s
        self._title_model_id = title_model_id
        self._title_retry = title_retry

    async def run(
        self,
        job: GenerationJob,
        relay: LiveRelay | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> str:
        """Drive the job's assistant message to a terminal status.

        Returns:
            The message's terminal status, or its current status if this
            attempt was not admitted.
        """
        set_generation_context(job.thread_id, job.message_id)
        cancel_event = cancel_event or asyncio.Event()

        if not await run_in_threadpool(_admit, self._factory, job.message_id):
            status = await run_in_threadpool(_current_status, self._factory, job.message_id)
            logger.info("generation_not_admitted", current_status=status)
            if relay is not None:
                relay.close()
            return status or MessageStatus.deleted.value

        writer = self._store.writer(job.message_id)
        run_state = _RunState()
        watcher: asyncio.Task | None = None
        outcome = MessageStatus.error.value

        try:
            await writer.begin()
            await set_liveness_marker(self._redis, job.message_id)
            watcher = asyncio.create_task(self._watch_for_stop(job.message_id, cancel_event))
            logger.info(
                "generation_started",
                **safe_kv(model_id=job.model, attempt=job.attempt, history_turns=len(job.history)),
            )

            binding = self._router.resolve(job.model)
            params = job.model_params or {}
            turns = render_prompt(
                list(job.history),
                build_system_prompt(
                    reasoning_effort=params.get("reasoningEffort"),
                    include_search=bool(params.get("includeSearch")),
                ),
                max_input_tokens=binding.spec.max_input_tokens,
            )
            request = self._router.build_request(job.model, turns, params)
            events = self._router.stream(job.model, request)
            outcome = await self._consume(job, events, run_state, writer, relay, cancel_event)

        except asyncio.CancelledError:
            logger.warning("generation_interrupted")
            await self._finish_error(
                job,
                run_state,
                ErrorEvent(E_GENERATION_INTERRUPTED, "Generation was interrupted"),
                writer,
                relay,
            )
            raise

        except LLMError as e:
            outcome = await self._finish_error(
                job,
                run_state,
                ErrorEvent(e.error_class.value, e.message, e.provider),
                writer,
                relay,
            )

        except Exception as e:
            logger.exception("generation_crashed", error_type=type(e).__name__)
            outcome = await self._finish_error(
                job,
                run_state,
                ErrorEvent(E_INTERNAL, "Internal error during generation"),
                writer,
                relay,
            )

        finally:
            if watcher is not None:
                watcher.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await watcher
            await clear_liveness_marker(self._redis, job.message_id)
            await writer.complete()
            if relay is not None:
                relay.close()

        if outcome == MessageStatus.done.value and job.should_generate_title:
            await self._title_best_effort(job, run_state.snapshot.text)

        return outcome

    # -------------------------------------------------------------------------
    # Event loop
    # -------------------------------------------------------------------------

    async def _consume(
        self,
        job: GenerationJob,
        events: AsyncIterator[StreamEvent],
        state: "_RunState",
        writer: StreamWriter,
        relay: LiveRelay | None,
        cancel_event: asyncio.Event,
    ) -> str:
        stop_wait = asyncio.create_task(cancel_event.wait())
        next_event: asyncio.Task | None = None
        try:
            while True:
                next_event = asyncio.create_task(_next_or_end(events))
                done, _ = await asyncio.wait(
                    {next_event, stop_wait}, return_when=asyncio.FIRST_COMPLETED
                )

                if stop_wait in done:
                    # Whatever the provider was about to deliver is discarded
                    await _discard(next_event)
                    return await self._finish_cancelled(job, state)

                event = next_event.result()
                if event is _END:
                    return await self._finish_error(
                        job,
                        state,
                        ErrorEvent(
                            LLMErrorClass.PROVIDER_DOWN.value,
                            "Stream ended without a terminal event",
                        ),
                        writer,
                        relay,
                    )

                await self._emit(writer, relay, event)

                if isinstance(event, FinishEvent):
                    return await self._finish_done(job, state)

                if isinstance(event, ErrorEvent):
                    return await self._finish_error(job, state, event, writer, relay, emit=False)

                if not await self._apply(job, state, event):
                    return await self._finish_cancelled(job, state)
        finally:
            stop_wait.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await stop_wait
            if next_event is not None and not next_event.done():
                await _discard(next_event)
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                with contextlib.suppress(Exception):
                    await aclose()

    async def _apply(self, job: GenerationJob, state: "_RunState", event: StreamEvent) -> bool:
        """Apply one content event; returns False if a stop won the race."""
        before = state.snapshot
        candidate = before.apply(event)

        status = state.status
        if isinstance(event, ReasoningDelta) and not candidate.text:
            status = MessageStatus.thinking.value
        elif isinstance(event, TextDelta):
            status = MessageStatus.streaming.value

        if isinstance(event, TextDelta):
            flush = should_flush(before.text, event.text, self._flush_modulus)
        elif isinstance(event, ReasoningDelta):
            flush = should_flush(before.reasoning, event.text, self._flush_modulus)
        else:
            flush = True
        flush = flush or status != state.status

        if flush:
            written = await run_in_threadpool(
                _write_message,
                self._factory,
                job.message_id,
                allowed_statuses=ACTIVE_MESSAGE_STATUSES,
                values={"parts": candidate.parts(), "status": status},
            )
            if not written:
                logger.info("generation_flush_skipped", event_type=event.type)
                return False
            state.persisted = candidate

        state.snapshot = candidate
        state.status = status
        return True

    async def _emit(
        self, writer: StreamWriter, relay: LiveRelay | None, event: StreamEvent
    ) -> None:
        payload = event.to_dict()
        await writer.append(payload)
        if relay is not None:
            relay.publish(payload)

    # -------------------------------------------------------------------------
    # Terminal writes
    # -------------------------------------------------------------------------

    async def _finish_done(self, job: GenerationJob, state: "_RunState") -> str:
        written = await run_in_threadpool(
            _write_message,
            self._factory,
            job.message_id,
            allowed_statuses=ACTIVE_MESSAGE_STATUSES,
            values={"parts": state.snapshot.parts(), "status": MessageStatus.done.value},
        )
        if not written:
            return await self._finish_cancelled(job, state)

        now = utcnow()
        await run_in_threadpool(
            _write_thread,
            self._factory,
            job.thread_id,
            job.attempt,
            {"generation_status": GenerationStatus.completed.value, "last_message_at": now},
        )
        logger.info(
            "generation_finished",
            **safe_kv(
                outcome=MessageStatus.done.value,
                text_chars=len(state.snapshot.text),
                reasoning_chars=len(state.snapshot.reasoning),
                tool_calls=len(state.snapshot.tool_calls),
            ),
        )
        return MessageStatus.done.value

    async def _finish_error(
        self,
        job: GenerationJob,
        state: "_RunState",
        error: ErrorEvent,
        writer: StreamWriter,
        relay: LiveRelay | None,
        *,
        emit: bool = True,
    ) -> str:
        if emit:
            await self._emit(writer, relay, error)

        status = MessageStatus.error_rejected.value if error.rejected else MessageStatus.error.value
        written = await run_in_threadpool(
            _write_message,
            self._factory,
            job.message_id,
            allowed_statuses=ACTIVE_MESSAGE_STATUSES,
            values={
                "parts": state.snapshot.parts(),
                "status": status,
                "server_error": {"type": error.error_class, "message": error.message},
            },
        )
        if not written:
            return await self._finish_cancelled(job, state)

        await run_in_threadpool(
            _write_thread,
            self._factory,
            job.thread_id,
            job.attempt,
            {"generation_status": GenerationStatus.failed.value},
        )
        logger.warning(
            "generation_failed",
            **safe_kv(outcome=status, error_class=error.error_class, provider=error.provider),
        )
        return status

    async def _finish_cancelled(self, job: GenerationJob, state: "_RunState") -> str:
        """Finalize the message as cancelled.

        If the message is still active, the cancel signal reached this
        attempt before any stop was committed, so everything applied so far
        is kept. If a stop already marked it cancelled, its stored parts
        (the last successful flush) stay as they are. A message deleted by
        an edit, or finished by another writer, is left alone.
        """
        final = state.snapshot
        written = await run_in_threadpool(
            _write_message,
            self._factory,
            job.message_id,
            allowed_statuses=ACTIVE_MESSAGE_STATUSES,
            values={"parts": final.parts(), "status": MessageStatus.cancelled.value},
        )
        if not written:
            status = await run_in_threadpool(_current_status, self._factory, job.message_id)
            if status != MessageStatus.cancelled.value:
                logger.info("generation_superseded", current_status=status)
                return status or MessageStatus.deleted.value
            final = state.persisted

        await run_in_threadpool(
            _write_thread,
            self._factory,
            job.thread_id,
            job.attempt,
            {"generation_status": GenerationStatus.completed.value},
        )
        logger.info(
            "generation_cancelled",
            **safe_kv(
                text_chars=len(final.text),
                discarded_chars=len(state.snapshot.text) - len(final.text),
            ),
        )
        return MessageStatus.cancelled.value

    # -------------------------------------------------------------------------
    # Side tasks
    # -------------------------------------------------------------------------

    async def _watch_for_stop(self, message_id: str, cancel_event: asyncio.Event) -> None:
        """Poll the message status; a stop from any process sets cancel_event."""
        while not cancel_event.is_set():
            await asyncio.sleep(self._poll_interval)
            try:
                status = await run_in_threadpool(_current_status, self._factory, message_id)
            except Exception as e:
                logger.warning("generation_watch_failed", error=str(e))
                continue
            if status not in ACTIVE_MESSAGE_STATUSES:
                logger.info("generation_stop_observed", current_status=status)
                cancel_event.set()
                return
            await refresh_liveness_marker(self._redis, message_id)

    async def _title_best_effort(self, job: GenerationJob, assistant_text: str) -> None:
        user_message = next((t.content for t in job.history if t.role == "user"), "")
        try:
            await generate_title(
                self._router,
                self._factory,
                thread_id=job.thread_id,
                user_message=user_message,
                assistant_message=assistant_text,
                model_id=self._title_model_id,
            )
        except LLMError as e:
            logger.warning("title_generation_failed", error_class=e.error_class.value)
            if e.error_class not in (
                LLMErrorClass.MODEL_NOT_AVAILABLE,
                LLMErrorClass.INVALID_KEY,
                LLMErrorClass.CONTENT_REJECTED,
            ):
                await self._enqueue_title_retry(job.thread_id)
        except Exception as e:
            logger.exception("title_generation_crashed", error_type=type(e).__name__)
            await self._enqueue_title_retry(job.thread_id)

    async def _enqueue_title_retry(self, thread_id: str) -> None:
        if self._title_retry is None:
            return
        try:
            await self._title_retry(thread_id)
        except Exception as e:
            logger.warning("title_retry_enqueue_failed", error=str(e))


@dataclass
class _RunState:
    snapshot: MessageSnapshot = field(default_factory=MessageSnapshot)
    # Last snapshot a conditional write actually stored
    persisted: MessageSnapshot = field(default_factory=MessageSnapshot)
    status: str = MessageStatus.streaming.value


async def _next_or_end(events: AsyncIterator[StreamEvent]) -> Any:
    try:
        return await anext(events)
    except StopAsyncIteration:
        return _END


async def _discard(task: asyncio.Task) -> None:
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError, Exception):
        await task
