"""FastAPI dependencies for route handlers.

Everything here reads from app.state, which the lifespan populates once at
startup: the session factory, the LLM router, the resumable stream store
and the generation scheduler.
"""

from collections.abc import Generator

from fastapi import Request
from sqlalchemy.orm import Session, sessionmaker

from forkchat.services.llm import LLMRouter
from forkchat.services.scheduler import GenerationScheduler
from forkchat.services.stream_store import ResumableStreamStore

__all__ = [
    "get_db",
    "get_llm_router",
    "get_scheduler",
    "get_session_factory",
    "get_stream_store",
]


def get_session_factory(request: Request) -> sessionmaker[Session]:
    return request.app.state.session_factory


def get_db(request: Request) -> Generator[Session, None, None]:
    """Request-scoped database session, always closed after the response."""
    db = get_session_factory(request)()
    try:
        yield db
    finally:
        db.close()


def get_llm_router(request: Request) -> LLMRouter:
    """The shared LLMRouter (one httpx.AsyncClient for all providers)."""
    return request.app.state.llm_router


def get_stream_store(request: Request) -> ResumableStreamStore:
    return request.app.state.stream_store


def get_scheduler(request: Request) -> GenerationScheduler:
    return request.app.state.scheduler
