"""Database module for ForkChat.

Provides engine creation, session management, transaction helpers, and ORM models.
"""

from forkchat.db.engine import create_db_engine, get_engine
from forkchat.db.models import (
    ACTIVE_MESSAGE_STATUSES,
    TERMINAL_MESSAGE_STATUSES,
    Base,
    GenerationStatus,
    Message,
    MessageRole,
    MessageStatus,
    Thread,
    ThreadVisibility,
)
from forkchat.db.session import session_scope, transaction

__all__ = [
    # Engine and session
    "create_db_engine",
    "get_engine",
    "session_scope",
    "transaction",
    # Base
    "Base",
    # Enums
    "GenerationStatus",
    "MessageRole",
    "MessageStatus",
    "ThreadVisibility",
    "ACTIVE_MESSAGE_STATUSES",
    "TERMINAL_MESSAGE_STATUSES",
    # Models
    "Thread",
    "Message",
]
