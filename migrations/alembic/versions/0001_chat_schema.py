"""Chat schema - threads and messages

Revision ID: 0001
Revises:
Create Date: 2026-10-17

Creates the two tables behind branching chat threads:
- threads: ownership, title, generation_status/generation_attempt aggregate,
  branch origin, per-thread seq allocator (next_seq)
- messages: ordered by (thread_id, seq), parts snapshot as JSON, assistant
  generation status, server_error

The partial unique index makes "at most one active assistant message per
thread" a physical invariant; a violation surfaces as E_THREAD_BUSY.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # ==========================================================================
    # threads table
    # ==========================================================================
    op.create_table(
        "threads",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("thread_id", sa.Text(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.Text(), server_default="New Chat", nullable=False),
        sa.Column("user_set_title", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("generation_status", sa.Text(), server_default="pending", nullable=False),
        sa.Column("generation_attempt", sa.Integer(), server_default="0", nullable=False),
        sa.Column("next_seq", sa.Integer(), server_default="1", nullable=False),
        sa.Column("model", sa.Text(), nullable=True),
        sa.Column("pinned", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("folder_id", sa.Text(), nullable=True),
        sa.Column("visibility", sa.Text(), server_default="visible", nullable=False),
        sa.Column("is_public", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("branch_parent_thread_id", sa.Text(), nullable=True),
        sa.Column("branch_parent_message_id", sa.Text(), nullable=True),
        sa.Column(
            "last_message_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("thread_id"),
        sa.CheckConstraint(
            "generation_status IN ('pending', 'generating', 'completed', 'failed')",
            name="ck_threads_generation_status",
        ),
        sa.CheckConstraint("visibility IN ('visible', 'archived')", name="ck_threads_visibility"),
        sa.CheckConstraint("next_seq >= 1", name="ck_threads_next_seq_positive"),
    )
    op.create_index("ix_threads_user_last_message", "threads", ["user_id", "last_message_at"])

    # ==========================================================================
    # messages table
    # ==========================================================================
    op.create_table(
        "messages",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("message_id", sa.Text(), nullable=False),
        sa.Column("thread_id", sa.Text(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("role", sa.Text(), nullable=False),
        sa.Column("parts", sa.JSON(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("model", sa.Text(), nullable=True),
        sa.Column("model_params", sa.JSON(), nullable=False),
        sa.Column("attachment_ids", sa.JSON(), nullable=False),
        sa.Column("server_error", sa.JSON(), nullable=True),
        sa.Column("resumable_stream_id", sa.Text(), nullable=True),
        sa.Column("branches", sa.JSON(), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("message_id"),
        sa.UniqueConstraint("thread_id", "seq", name="uix_messages_thread_seq"),
        sa.ForeignKeyConstraint(["thread_id"], ["threads.thread_id"], ondelete="CASCADE"),
        sa.CheckConstraint("seq >= 1", name="ck_messages_seq_positive"),
        sa.CheckConstraint("role IN ('user', 'assistant', 'system')", name="ck_messages_role"),
        sa.CheckConstraint(
            "status IN ('waiting', 'thinking', 'streaming', 'done', 'error', "
            "'error.rejected', 'cancelled', 'deleted')",
            name="ck_messages_status",
        ),
        sa.CheckConstraint(
            "(status NOT IN ('waiting', 'thinking', 'streaming') OR role = 'assistant')",
            name="ck_messages_active_only_assistant",
        ),
    )
    op.create_index("ix_messages_thread_status", "messages", ["thread_id", "status"])

    op.execute(
        """
        CREATE UNIQUE INDEX uix_one_active_assistant_per_thread
        ON messages (thread_id)
        WHERE role = 'assistant' AND status IN ('waiting', 'thinking', 'streaming')
        """
    )


def downgrade() -> None:
    op.drop_index("uix_one_active_assistant_per_thread", table_name="messages")
    op.drop_index("ix_messages_thread_status", table_name="messages")
    op.drop_table("messages")
    op.drop_index("ix_threads_user_last_message", table_name="threads")
    op.drop_table("threads")
