"""Thread generation coordinator.

Admission and the other thread-level entry points. Each mutating operation
runs in a single transaction with the thread row locked, and returns before
any LLM work starts: the route hands the resulting GenerationJob to the
scheduler only after the commit.

Rules:
- At most one assistant message per thread in waiting/thinking/streaming.
  Submit, edit and retry on a busy thread raise E_THREAD_BUSY (409).
- Every admission bumps thread.generation_attempt; the job carries the new
  value so terminal thread writes of superseded attempts are ignored.
- The assistant message is inserted last.
- Ownership mismatches are reported as not found.

Service functions correspond 1:1 with route handlers.
"""

import base64
import copy
import json
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from forkchat.db.models import (
    ACTIVE_MESSAGE_STATUSES,
    GenerationStatus,
    Message,
    MessageRole,
    MessageStatus,
    Thread,
    ThreadVisibility,
    as_utc,
    utcnow,
)
from forkchat.db.session import transaction
from forkchat.errors import (
    ApiErrorCode,
    ConflictError,
    InvalidRequestError,
    NotFoundError,
)
from forkchat.logging import get_logger
from forkchat.schemas.chat import ChatRequest
from forkchat.schemas.threads import (
    MessageOut,
    ModelParams,
    PageInfo,
    StopOut,
    SubmitMessageRequest,
    SubmitOut,
    ThreadOut,
)
from forkchat.services.generation import GenerationJob
from forkchat.services.llm.router import LLMRouter
from forkchat.services.llm.types import Turn

logger = get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

DEFAULT_THREAD_TITLE = "New Chat"

DEFAULT_LIMIT = 50
MIN_LIMIT = 1
MAX_LIMIT = 100

NOTHING_TO_STOP = "nothing to stop"

ACTIVE_ASSISTANT_INDEX = "uix_one_active_assistant_per_thread"


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class SubmitResult:
    """Outcome of an admission: the new message pair and the job to run."""

    thread_id: str
    user_message_id: str
    assistant_message_id: str
    job: GenerationJob

    def to_out(self, scheduled: bool) -> SubmitOut:
        return SubmitOut(
            thread_id=self.thread_id,
            user_message_id=self.user_message_id,
            assistant_message_id=self.assistant_message_id,
            generation_attempt=self.job.attempt,
            scheduled=scheduled,
        )


@dataclass(frozen=True)
class StopResult:
    stopped: bool
    message_id: str | None = None
    reason: str | None = None

    def to_out(self) -> StopOut:
        return StopOut(stopped=self.stopped, message_id=self.message_id, reason=self.reason)


# =============================================================================
# Cursor Encoding/Decoding
# =============================================================================


def _encode_cursor(payload: dict) -> str:
    json_bytes = json.dumps(payload).encode("utf-8")
    return base64.urlsafe_b64encode(json_bytes).decode("ascii").rstrip("=")


def _decode_cursor(cursor: str) -> dict:
    padding = 4 - len(cursor) % 4
    if padding != 4:
        cursor += "=" * padding
    return json.loads(base64.urlsafe_b64decode(cursor).decode("utf-8"))


def encode_thread_cursor(last_message_at: datetime, id: UUID) -> str:
    """Cursor payload: {"last_message_at": "<iso>", "id": "<uuid>"}, base64url."""
    return _encode_cursor({"last_message_at": last_message_at.isoformat(), "id": str(id)})


def decode_thread_cursor(cursor: str) -> tuple[datetime, UUID]:
    try:
        payload = _decode_cursor(cursor)
        return datetime.fromisoformat(payload["last_message_at"]), UUID(payload["id"])
    except Exception:
        raise InvalidRequestError(ApiErrorCode.E_INVALID_CURSOR, "Invalid cursor") from None


def encode_message_cursor(seq: int) -> str:
    return _encode_cursor({"seq": seq})


def decode_message_cursor(cursor: str) -> int:
    try:
        return int(_decode_cursor(cursor)["seq"])
    except Exception:
        raise InvalidRequestError(ApiErrorCode.E_INVALID_CURSOR, "Invalid cursor") from None


# =============================================================================
# Helper Functions
# =============================================================================


def new_client_id() -> str:
    return str(uuid4())


def clamp_limit(limit: int) -> int:
    """Clamp limit to valid range [MIN_LIMIT, MAX_LIMIT]."""
    return min(max(limit, MIN_LIMIT), MAX_LIMIT)


def text_parts(content: str) -> list[dict]:
    return [{"type": "text", "text": content}]


def get_thread_for_viewer_or_404(
    db: Session, user_id: UUID, thread_id: str, *, for_update: bool = False
) -> Thread:
    """Load a thread and verify ownership.

    Raises:
        NotFoundError(E_THREAD_NOT_FOUND): Missing, or owned by someone else.
    """
    stmt = select(Thread).where(Thread.thread_id == thread_id)
    if for_update:
        stmt = stmt.with_for_update()
    thread = db.execute(stmt).scalar_one_or_none()
    if thread is None or thread.user_id != user_id:
        raise NotFoundError(ApiErrorCode.E_THREAD_NOT_FOUND, "Thread not found")
    return thread


def get_message_for_viewer_or_404(db: Session, user_id: UUID, message_id: str) -> Message:
    message = db.execute(
        select(Message).where(Message.message_id == message_id)
    ).scalar_one_or_none()
    if message is None or message.user_id != user_id:
        raise NotFoundError(ApiErrorCode.E_MESSAGE_NOT_FOUND, "Message not found")
    return message


def find_active_assistant(db: Session, thread_id: str) -> Message | None:
    """Most recent assistant message still in waiting/thinking/streaming."""
    return db.execute(
        select(Message)
        .where(
            Message.thread_id == thread_id,
            Message.role == MessageRole.assistant.value,
            Message.status.in_(ACTIVE_MESSAGE_STATUSES),
        )
        .order_by(Message.seq.desc())
        .limit(1)
    ).scalar_one_or_none()


def _assert_not_busy(db: Session, thread_id: str) -> None:
    if find_active_assistant(db, thread_id) is not None:
        raise ConflictError(
            ApiErrorCode.E_THREAD_BUSY, "A generation is already running on this thread"
        )


def _insert_assistant(db: Session, assistant: Message) -> None:
    """Insert the new assistant message; the partial unique index backs the busy check."""
    db.add(assistant)
    try:
        db.flush()
    except IntegrityError as e:
        constraint_name = getattr(getattr(e.orig, "diag", None), "constraint_name", None)
        # SQLite reports the indexed columns instead of the index name
        msg = str(e.orig) if e.orig else str(e)
        if constraint_name == ACTIVE_ASSISTANT_INDEX or msg.endswith("messages.thread_id"):
            raise ConflictError(
                ApiErrorCode.E_THREAD_BUSY, "A generation is already running on this thread"
            ) from e
        raise


def _validate_model(router: LLMRouter, model: str | None) -> str:
    if not model or not router.is_model_available(model):
        raise InvalidRequestError(
            ApiErrorCode.E_MODEL_NOT_AVAILABLE, f"Model {model} is not available"
        )
    return model


def _ensure_message_ids_free(db: Session, *message_ids: str) -> None:
    if len(set(message_ids)) != len(message_ids):
        raise InvalidRequestError(ApiErrorCode.E_INVALID_REQUEST, "Message ids must differ")
    taken = db.execute(
        select(Message.message_id).where(Message.message_id.in_(message_ids)).limit(1)
    ).scalar_one_or_none()
    if taken is not None:
        raise ConflictError(ApiErrorCode.E_ID_CONFLICT, "Message id already exists")


def _assign_seq(thread: Thread) -> int:
    """Take the thread's next position. Caller holds the thread row lock."""
    seq = thread.next_seq
    thread.next_seq = seq + 1
    return seq


def load_history(db: Session, thread_id: str, before_seq: int) -> tuple[Turn, ...]:
    """Conversation turns preceding ``before_seq``, oldest first."""
    messages = db.execute(
        select(Message)
        .where(
            Message.thread_id == thread_id,
            Message.seq < before_seq,
            Message.role.in_((MessageRole.user.value, MessageRole.assistant.value)),
        )
        .order_by(Message.seq)
    ).scalars()
    return tuple(Turn(role=m.role, content=m.text) for m in messages if m.text)


def _new_assistant_message(
    thread: Thread,
    user_id: UUID,
    message_id: str,
    model: str,
    params: dict,
) -> Message:
    return Message(
        message_id=message_id,
        thread_id=thread.thread_id,
        user_id=user_id,
        seq=_assign_seq(thread),
        role=MessageRole.assistant.value,
        parts=[],
        status=MessageStatus.waiting.value,
        model=model,
        model_params=params,
        attachment_ids=[],
        resumable_stream_id=message_id,
        branches=[],
    )


def _start_attempt(thread: Thread, model: str) -> None:
    now = utcnow()
    thread.generation_status = GenerationStatus.generating.value
    thread.generation_attempt = (thread.generation_attempt or 0) + 1
    thread.model = model
    thread.last_message_at = now
    thread.updated_at = now


# =============================================================================
# Admission
# =============================================================================


def submit_message(
    db: Session,
    user_id: UUID,
    thread_id: str,
    request: SubmitMessageRequest,
    *,
    router: LLMRouter,
) -> SubmitResult:
    """Append a user/assistant message pair and admit a generation attempt.

    The thread is created on first submit.

    Raises:
        InvalidRequestError(E_MODEL_NOT_AVAILABLE): Unknown or disabled model.
        NotFoundError(E_THREAD_NOT_FOUND): Thread owned by another user.
        ConflictError(E_THREAD_BUSY): A generation is already active.
        ConflictError(E_ID_CONFLICT): A client-supplied message id is taken.
    """
    model = _validate_model(router, request.model)
    params = request.model_params.to_params()
    user_message_id = request.user_message_id or new_client_id()
    assistant_message_id = request.assistant_message_id or new_client_id()

    with transaction(db):
        thread = db.execute(
            select(Thread).where(Thread.thread_id == thread_id).with_for_update()
        ).scalar_one_or_none()
        is_new = thread is None

        if is_new:
            thread = Thread(
                thread_id=thread_id,
                user_id=user_id,
                title=DEFAULT_THREAD_TITLE,
                generation_status=GenerationStatus.generating.value,
                generation_attempt=1,
                next_seq=1,
                model=model,
            )
            db.add(thread)
            db.flush()
        else:
            if thread.user_id != user_id:
                raise NotFoundError(ApiErrorCode.E_THREAD_NOT_FOUND, "Thread not found")
            _assert_not_busy(db, thread_id)
            _start_attempt(thread, model)

        _ensure_message_ids_free(db, user_message_id, assistant_message_id)

        user_message = Message(
            message_id=user_message_id,
            thread_id=thread_id,
            user_id=user_id,
            seq=_assign_seq(thread),
            role=MessageRole.user.value,
            parts=text_parts(request.content),
            status=MessageStatus.done.value,
            model=model,
            model_params=params,
            attachment_ids=list(request.attachment_ids),
            branches=[],
        )
        db.add(user_message)
        db.flush()

        assistant = _new_assistant_message(thread, user_id, assistant_message_id, model, params)
        _insert_assistant(db, assistant)

        job = GenerationJob(
            thread_id=thread_id,
            message_id=assistant_message_id,
            user_id=user_id,
            model=model,
            model_params=params,
            history=load_history(db, thread_id, assistant.seq),
            attempt=thread.generation_attempt,
            should_generate_title=is_new,
        )

    logger.info(
        "generation_admitted",
        operation="submit",
        thread_id=thread_id,
        message_id=assistant_message_id,
        attempt=job.attempt,
        new_thread=is_new,
    )
    return SubmitResult(
        thread_id=thread_id,
        user_message_id=user_message_id,
        assistant_message_id=assistant_message_id,
        job=job,
    )


def _restart_from(
    db: Session,
    user_id: UUID,
    target: Message,
    content: str,
    model: str,
    params: dict,
    operation: str,
) -> SubmitResult:
    """Rewrite ``target`` (a user message), drop everything after it, admit."""
    with transaction(db):
        thread = get_thread_for_viewer_or_404(db, user_id, target.thread_id, for_update=True)
        _assert_not_busy(db, thread.thread_id)

        removed = db.execute(
            delete(Message).where(
                Message.thread_id == thread.thread_id,
                Message.seq > target.seq,
            )
        ).rowcount

        target.parts = text_parts(content)
        target.model = model
        target.model_params = params
        target.updated_at = utcnow()
        _start_attempt(thread, model)

        assistant_message_id = new_client_id()
        assistant = _new_assistant_message(thread, user_id, assistant_message_id, model, params)
        _insert_assistant(db, assistant)

        job = GenerationJob(
            thread_id=thread.thread_id,
            message_id=assistant_message_id,
            user_id=user_id,
            model=model,
            model_params=params,
            history=load_history(db, thread.thread_id, assistant.seq),
            attempt=thread.generation_attempt,
            should_generate_title=False,
        )

    logger.info(
        "generation_admitted",
        operation=operation,
        thread_id=thread.thread_id,
        message_id=assistant_message_id,
        attempt=job.attempt,
        removed_messages=removed,
    )
    return SubmitResult(
        thread_id=thread.thread_id,
        user_message_id=target.message_id,
        assistant_message_id=assistant_message_id,
        job=job,
    )


def edit_message(
    db: Session,
    user_id: UUID,
    message_id: str,
    content: str,
    *,
    router: LLMRouter,
    model: str | None = None,
    model_params: ModelParams | None = None,
) -> SubmitResult:
    """Rewrite a user message and restart the thread from it.

    Every later message is deleted; branches hanging off them are not
    preserved. Model and params default to the ones stored on the message.

    Raises:
        NotFoundError(E_MESSAGE_NOT_FOUND): Missing or not owned.
        InvalidRequestError(E_NOT_USER_MESSAGE): Target is not a user message.
        ConflictError(E_THREAD_BUSY): A generation is already active.
    """
    target = get_message_for_viewer_or_404(db, user_id, message_id)
    if target.role != MessageRole.user.value:
        raise InvalidRequestError(
            ApiErrorCode.E_NOT_USER_MESSAGE, "Only user messages can be edited"
        )
    model = _validate_model(router, model or target.model)
    params = model_params.to_params() if model_params is not None else dict(target.model_params)
    return _restart_from(db, user_id, target, content, model, params, "edit")


def retry_message(
    db: Session,
    user_id: UUID,
    message_id: str,
    *,
    router: LLMRouter,
    model: str | None = None,
    model_params: ModelParams | None = None,
) -> SubmitResult:
    """Regenerate a reply.

    For an assistant target the preceding user message is re-submitted; for
    a user target the message itself is. Model and params default to the
    target's.

    Raises:
        NotFoundError(E_MESSAGE_NOT_FOUND): Missing or not owned.
        InvalidRequestError(E_NOTHING_TO_RETRY): No user message to restart from.
        ConflictError(E_THREAD_BUSY): A generation is already active.
    """
    target = get_message_for_viewer_or_404(db, user_id, message_id)

    if target.role == MessageRole.user.value:
        source = target
    elif target.role == MessageRole.assistant.value:
        source = db.execute(
            select(Message)
            .where(
                Message.thread_id == target.thread_id,
                Message.seq < target.seq,
                Message.role == MessageRole.user.value,
            )
            .order_by(Message.seq.desc())
            .limit(1)
        ).scalar_one_or_none()
    else:
        source = None

    if source is None or not source.text:
        raise InvalidRequestError(
            ApiErrorCode.E_NOTHING_TO_RETRY, "No user message precedes this message"
        )

    model = _validate_model(router, model or target.model or source.model)
    if model_params is not None:
        params = model_params.to_params()
    else:
        params = dict(target.model_params or source.model_params or {})
    return _restart_from(db, user_id, source, source.text, model, params, "retry")


def prepare_live_generation(
    db: Session, user_id: UUID, request: ChatRequest, *, router: LLMRouter
) -> GenerationJob:
    """Build the job for a waiting assistant message driven by /chat.

    The stored message is authoritative: model, params and history come
    from the database, not from the request body.

    Raises:
        NotFoundError: Thread or message missing or not owned.
        ConflictError(E_MESSAGE_NOT_WAITING): Already started or finished.
        InvalidRequestError(E_MODEL_NOT_AVAILABLE): Model was disabled since.
    """
    thread = get_thread_for_viewer_or_404(db, user_id, request.thread_id)
    message = db.execute(
        select(Message).where(
            Message.message_id == request.response_message_id,
            Message.thread_id == thread.thread_id,
        )
    ).scalar_one_or_none()
    if message is None or message.user_id != user_id:
        raise NotFoundError(ApiErrorCode.E_MESSAGE_NOT_FOUND, "Message not found")
    if (
        message.role != MessageRole.assistant.value
        or message.status != MessageStatus.waiting.value
    ):
        raise ConflictError(
            ApiErrorCode.E_MESSAGE_NOT_WAITING, "Message is not waiting for generation"
        )

    model = _validate_model(router, message.model)
    user_turns = db.execute(
        select(func.count())
        .select_from(Message)
        .where(Message.thread_id == thread.thread_id, Message.role == MessageRole.user.value)
    ).scalar_one()

    return GenerationJob(
        thread_id=thread.thread_id,
        message_id=message.message_id,
        user_id=user_id,
        model=model,
        model_params=dict(message.model_params or {}),
        history=load_history(db, thread.thread_id, message.seq),
        attempt=thread.generation_attempt,
        should_generate_title=(
            user_turns == 1
            and not thread.user_set_title
            and thread.title == DEFAULT_THREAD_TITLE
        ),
    )


# =============================================================================
# Branch / Stop
# =============================================================================


def branch_thread(
    db: Session,
    user_id: UUID,
    thread_id: str,
    message_id: str,
    new_thread_id: str | None = None,
) -> ThreadOut:
    """Fork a thread at ``message_id`` into a new, idle thread.

    Messages up to and including the branch point are copied with fresh
    ids. Copies of messages still generating are marked cancelled. The
    origin message records the new thread in its branches.

    Raises:
        NotFoundError: Thread or message missing, not owned, or the message
            belongs to another thread.
        ConflictError(E_ID_CONFLICT): new_thread_id already exists.
    """
    new_thread_id = new_thread_id or new_client_id()

    with transaction(db):
        origin_thread = get_thread_for_viewer_or_404(db, user_id, thread_id, for_update=True)
        origin = get_message_for_viewer_or_404(db, user_id, message_id)
        if origin.thread_id != origin_thread.thread_id:
            raise NotFoundError(ApiErrorCode.E_MESSAGE_NOT_FOUND, "Message not found")

        exists = db.execute(
            select(Thread.id).where(Thread.thread_id == new_thread_id)
        ).scalar_one_or_none()
        if exists is not None:
            raise ConflictError(ApiErrorCode.E_ID_CONFLICT, "Thread id already exists")

        source_messages = list(
            db.execute(
                select(Message)
                .where(Message.thread_id == thread_id, Message.seq <= origin.seq)
                .order_by(Message.seq)
            ).scalars()
        )

        now = utcnow()
        branch = Thread(
            thread_id=new_thread_id,
            user_id=user_id,
            title=origin_thread.title,
            user_set_title=origin_thread.user_set_title,
            generation_status=GenerationStatus.completed.value,
            generation_attempt=0,
            next_seq=len(source_messages) + 1,
            model=origin_thread.model,
            folder_id=origin_thread.folder_id,
            visibility=ThreadVisibility.visible.value,
            branch_parent_thread_id=origin_thread.thread_id,
            branch_parent_message_id=origin.message_id,
            last_message_at=now,
            created_at=now,
            updated_at=now,
        )
        db.add(branch)
        db.flush()

        for seq, source in enumerate(source_messages, start=1):
            copy_id = new_client_id()
            status = source.status
            if status in ACTIVE_MESSAGE_STATUSES:
                status = MessageStatus.cancelled.value
            db.add(
                Message(
                    message_id=copy_id,
                    thread_id=new_thread_id,
                    user_id=user_id,
                    seq=seq,
                    role=source.role,
                    parts=copy.deepcopy(source.parts or []),
                    status=status,
                    model=source.model,
                    model_params=dict(source.model_params or {}),
                    attachment_ids=list(source.attachment_ids or []),
                    server_error=copy.deepcopy(source.server_error),
                    resumable_stream_id=(
                        copy_id if source.role == MessageRole.assistant.value else None
                    ),
                    branches=[],
                )
            )

        # JSON columns only track reassignment
        origin.branches = [*(origin.branches or []), new_thread_id]
        origin.updated_at = now
        db.flush()
        out = ThreadOut.model_validate(branch)

    logger.info(
        "thread_branched",
        thread_id=thread_id,
        message_id=message_id,
        new_thread_id=new_thread_id,
        copied_messages=len(source_messages),
    )
    return out


def stop_generation(
    db: Session,
    user_id: UUID,
    thread_id: str,
    message_id: str | None = None,
) -> StopResult:
    """Mark the active assistant message cancelled and the thread completed.

    The running attempt notices through its cancel event (same process) or
    its status watcher (any process). The parts stored at this commit are
    final; anything the attempt applies afterwards is discarded.
    Having nothing to stop is reported, not raised.

    Raises:
        NotFoundError: Thread, or the explicit message, missing or not owned.
    """
    with transaction(db):
        thread = get_thread_for_viewer_or_404(db, user_id, thread_id, for_update=True)

        if message_id is not None:
            target = db.execute(
                select(Message).where(
                    Message.message_id == message_id,
                    Message.thread_id == thread.thread_id,
                )
            ).scalar_one_or_none()
            if target is None:
                raise NotFoundError(ApiErrorCode.E_MESSAGE_NOT_FOUND, "Message not found")
        else:
            target = find_active_assistant(db, thread.thread_id)

        if target is None:
            return StopResult(stopped=False, reason=NOTHING_TO_STOP)

        now = utcnow()
        result = db.execute(
            update(Message)
            .where(
                Message.message_id == target.message_id,
                Message.status.in_(ACTIVE_MESSAGE_STATUSES),
            )
            .values(status=MessageStatus.cancelled.value, updated_at=now)
        )
        if result.rowcount == 0:
            return StopResult(stopped=False, message_id=target.message_id, reason=NOTHING_TO_STOP)

        db.execute(
            update(Thread)
            .where(Thread.thread_id == thread.thread_id)
            .values(generation_status=GenerationStatus.completed.value, updated_at=now)
        )

    logger.info("generation_stop_requested", thread_id=thread_id, message_id=target.message_id)
    return StopResult(stopped=True, message_id=target.message_id)


# =============================================================================
# Reads / Title
# =============================================================================


def get_thread(db: Session, user_id: UUID, thread_id: str) -> ThreadOut:
    return ThreadOut.model_validate(get_thread_for_viewer_or_404(db, user_id, thread_id))


def list_threads(
    db: Session,
    user_id: UUID,
    limit: int = DEFAULT_LIMIT,
    cursor: str | None = None,
    include_archived: bool = False,
) -> tuple[list[ThreadOut], PageInfo]:
    """List the user's threads, most recently active first.

    Raises:
        InvalidRequestError(E_INVALID_CURSOR): If cursor is malformed.
    """
    limit = clamp_limit(limit)

    stmt = select(Thread).where(Thread.user_id == user_id)
    if not include_archived:
        stmt = stmt.where(Thread.visibility == ThreadVisibility.visible.value)
    if cursor:
        cursor_at, cursor_id = decode_thread_cursor(cursor)
        # (last_message_at, id) < cursor, spelled out for SQLite
        stmt = stmt.where(
            or_(
                Thread.last_message_at < cursor_at,
                and_(Thread.last_message_at == cursor_at, Thread.id < cursor_id),
            )
        )
    stmt = stmt.order_by(Thread.last_message_at.desc(), Thread.id.desc()).limit(limit + 1)

    rows = list(db.execute(stmt).scalars())
    has_more = len(rows) > limit
    rows = rows[:limit]

    next_cursor = None
    if has_more and rows:
        last = rows[-1]
        next_cursor = encode_thread_cursor(last.last_message_at, last.id)

    return [ThreadOut.model_validate(t) for t in rows], PageInfo(next_cursor=next_cursor)


def list_messages(
    db: Session,
    user_id: UUID,
    thread_id: str,
    limit: int = DEFAULT_LIMIT,
    cursor: str | None = None,
) -> tuple[list[MessageOut], PageInfo]:
    """List a thread's messages in seq order.

    Raises:
        NotFoundError(E_THREAD_NOT_FOUND): Missing or not owned.
        InvalidRequestError(E_INVALID_CURSOR): If cursor is malformed.
    """
    limit = clamp_limit(limit)
    get_thread_for_viewer_or_404(db, user_id, thread_id)

    stmt = select(Message).where(Message.thread_id == thread_id)
    if cursor:
        stmt = stmt.where(Message.seq > decode_message_cursor(cursor))
    stmt = stmt.order_by(Message.seq).limit(limit + 1)

    rows = list(db.execute(stmt).scalars())
    has_more = len(rows) > limit
    rows = rows[:limit]

    next_cursor = encode_message_cursor(rows[-1].seq) if has_more and rows else None
    return [MessageOut.model_validate(m) for m in rows], PageInfo(next_cursor=next_cursor)


def set_thread_title(db: Session, user_id: UUID, thread_id: str, title: str) -> ThreadOut:
    """Set a user-chosen title; generated titles never overwrite it afterwards."""
    with transaction(db):
        thread = get_thread_for_viewer_or_404(db, user_id, thread_id, for_update=True)
        thread.title = title
        thread.user_set_title = True
        thread.updated_at = utcnow()
        db.flush()
        out = ThreadOut.model_validate(thread)
    return out


@dataclass(frozen=True)
class SummaryInputs:
    thread_id: str
    thread_title: str
    # (timestamp, role, text), oldest first
    transcript: tuple[tuple[str, str, str], ...]


def load_summary_inputs(db: Session, user_id: UUID, thread_id: str) -> SummaryInputs:
    """Collect the user/assistant messages that carry text, in seq order.

    Messages still generating contribute whatever text they have so far.

    Raises:
        NotFoundError(E_THREAD_NOT_FOUND): Missing or not owned.
        InvalidRequestError(E_NOTHING_TO_SUMMARIZE): No message has text.
    """
    thread = get_thread_for_viewer_or_404(db, user_id, thread_id)
    messages = db.execute(
        select(Message)
        .where(
            Message.thread_id == thread.thread_id,
            Message.role.in_((MessageRole.user.value, MessageRole.assistant.value)),
        )
        .order_by(Message.seq)
    ).scalars()
    transcript = tuple(
        (as_utc(m.created_at).strftime("%Y-%m-%d %H:%M:%S UTC"), m.role, m.text)
        for m in messages
        if m.text
    )
    if not transcript:
        raise InvalidRequestError(
            ApiErrorCode.E_NOTHING_TO_SUMMARIZE, "Thread has no messages to summarize"
        )
    return SummaryInputs(
        thread_id=thread.thread_id, thread_title=thread.title, transcript=transcript
    )
