"""SQLAlchemy ORM models for ForkChat.

Threads and messages use portable column types (Uuid, JSON, DateTime with
timezone) so the same models run on Postgres in deployment and SQLite in
tests. Status enums are stored as text guarded by check constraints.
"""

from datetime import UTC, datetime
from enum import Enum as PyEnum
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# =============================================================================
# Enums
# =============================================================================


class MessageRole(str, PyEnum):
    user = "user"
    assistant = "assistant"
    system = "system"


class MessageStatus(str, PyEnum):
    """Assistant message generation lifecycle.

    States:
        waiting: Created by admission, no generation attempt started yet
        thinking: Provider is emitting reasoning before any text
        streaming: Text is being accumulated
        done: Stream exhausted normally
        error: Provider, transport or internal failure
        error_rejected: Provider refused the request on policy grounds
        cancelled: User stopped the generation
        deleted: Tombstone, never produced by generation itself
    """

    waiting = "waiting"
    thinking = "thinking"
    streaming = "streaming"
    done = "done"
    error = "error"
    error_rejected = "error.rejected"
    cancelled = "cancelled"
    deleted = "deleted"


ACTIVE_MESSAGE_STATUSES: tuple[str, ...] = (
    MessageStatus.waiting.value,
    MessageStatus.thinking.value,
    MessageStatus.streaming.value,
)

_ACTIVE_ASSISTANT_PREDICATE = (
    "role = 'assistant' AND status IN ('waiting', 'thinking', 'streaming')"
)

TERMINAL_MESSAGE_STATUSES: tuple[str, ...] = (
    MessageStatus.done.value,
    MessageStatus.error.value,
    MessageStatus.error_rejected.value,
    MessageStatus.cancelled.value,
)


class GenerationStatus(str, PyEnum):
    """Thread-level aggregate of the latest generation attempt."""

    pending = "pending"
    generating = "generating"
    completed = "completed"
    failed = "failed"


class ThreadVisibility(str, PyEnum):
    visible = "visible"
    archived = "archived"


# =============================================================================
# Models
# =============================================================================


class Thread(Base):
    """A conversation thread owned by one user.

    generation_attempt is bumped every time a new generation is admitted on
    the thread. Terminal thread writes compare against it so a superseded
    attempt cannot overwrite the status of a newer one.
    """

    __tablename__ = "threads"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    thread_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False, default="New Chat")
    user_set_title: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    generation_status: Mapped[str] = mapped_column(
        Text, nullable=False, default=GenerationStatus.pending.value
    )
    generation_attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    model: Mapped[str | None] = mapped_column(Text, nullable=True)
    pinned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    folder_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    visibility: Mapped[str] = mapped_column(
        Text, nullable=False, default=ThreadVisibility.visible.value
    )
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    branch_parent_thread_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    branch_parent_message_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_message_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "generation_status IN ('pending', 'generating', 'completed', 'failed')",
            name="ck_threads_generation_status",
        ),
        CheckConstraint(
            "visibility IN ('visible', 'archived')",
            name="ck_threads_visibility",
        ),
        CheckConstraint("next_seq >= 1", name="ck_threads_next_seq_positive"),
        Index("ix_threads_user_last_message", "user_id", "last_message_at"),
    )

    messages: Mapped[list["Message"]] = relationship(
        "Message",
        back_populates="thread",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Message.seq",
    )


class Message(Base):
    """A single message in a thread.

    parts is the ordered fragment list rendered by clients. It is always
    rewritten as a whole snapshot, never patched.
    """

    __tablename__ = "messages"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    message_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    thread_id: Mapped[str] = mapped_column(
        Text,
        ForeignKey("threads.thread_id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    role: Mapped[str] = mapped_column(Text, nullable=False)
    parts: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    model: Mapped[str | None] = mapped_column(Text, nullable=True)
    model_params: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    attachment_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    server_error: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    resumable_stream_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    branches: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint("seq >= 1", name="ck_messages_seq_positive"),
        CheckConstraint(
            "role IN ('user', 'assistant', 'system')",
            name="ck_messages_role",
        ),
        CheckConstraint(
            "status IN ('waiting', 'thinking', 'streaming', 'done', 'error', "
            "'error.rejected', 'cancelled', 'deleted')",
            name="ck_messages_status",
        ),
        CheckConstraint(
            "(status NOT IN ('waiting', 'thinking', 'streaming') OR role = 'assistant')",
            name="ck_messages_active_only_assistant",
        ),
        UniqueConstraint("thread_id", "seq", name="uix_messages_thread_seq"),
        Index("ix_messages_thread_status", "thread_id", "status"),
        # At most one active assistant message per thread
        Index(
            "uix_one_active_assistant_per_thread",
            "thread_id",
            unique=True,
            postgresql_where=text(_ACTIVE_ASSISTANT_PREDICATE),
            sqlite_where=text(_ACTIVE_ASSISTANT_PREDICATE),
        ),
    )

    thread: Mapped["Thread"] = relationship("Thread", back_populates="messages")

    @property
    def text(self) -> str:
        """Concatenated text fragments."""
        return "".join(p.get("text", "") for p in self.parts or [] if p.get("type") == "text")
