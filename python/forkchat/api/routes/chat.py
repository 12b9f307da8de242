"""Streaming chat routes: POST /chat and POST /chat/resume.

Both respond with chunked text/plain NDJSON, one normalized stream event
per line. Failures use the flat {"error": "..."} body the streaming client
expects instead of the API envelope. CORS is handled by ChatCORSMiddleware.

/chat drives a waiting assistant message created by
POST /threads/{id}/messages with schedule=false. The generation runs as a
scheduler task, not inside the response: when the client disconnects the
relay is detached and generation keeps persisting to the database and the
stream store, from where /chat/resume replays it.
"""

from typing import Annotated

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from forkchat.api.deps import get_llm_router, get_scheduler, get_session_factory, get_stream_store
from forkchat.auth.middleware import Viewer, get_viewer
from forkchat.db.session import session_scope
from forkchat.errors import ApiError
from forkchat.logging import get_logger
from forkchat.responses import (
    STREAM_INTERNAL_ERROR_MESSAGE,
    STREAM_NOT_FOUND_MESSAGE,
    stream_error_response,
)
from forkchat.schemas.chat import ChatRequest, ResumeRequest
from forkchat.services import coordinator
from forkchat.services.llm import LLMRouter
from forkchat.services.relay import LiveRelay, encode_ndjson
from forkchat.services.scheduler import GenerationScheduler
from forkchat.services.stream_store import ResumableStreamStore

logger = get_logger(__name__)

router = APIRouter(tags=["chat"])

NDJSON_MEDIA_TYPE = "text/plain; charset=utf-8"
STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "X-Accel-Buffering": "no",
}


def _owns_message(factory: sessionmaker[Session], viewer: Viewer, message_id: str) -> bool:
    with session_scope(factory) as db:
        try:
            coordinator.get_message_for_viewer_or_404(db, viewer.user_id, message_id)
        except ApiError:
            return False
    return True


def _prepare(
    factory: sessionmaker[Session], viewer: Viewer, body: ChatRequest, llm_router: LLMRouter
):
    with session_scope(factory) as db:
        return coordinator.prepare_live_generation(db, viewer.user_id, body, router=llm_router)


@router.post("/chat", response_model=None)
async def chat(
    body: ChatRequest,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    factory: Annotated[sessionmaker[Session], Depends(get_session_factory)],
    llm_router: Annotated[LLMRouter, Depends(get_llm_router)],
    scheduler: Annotated[GenerationScheduler, Depends(get_scheduler)],
) -> StreamingResponse | JSONResponse:
    try:
        job = await run_in_threadpool(_prepare, factory, viewer, body, llm_router)
    except ApiError as e:
        return stream_error_response(e.status_code, e.message)
    except Exception as e:
        logger.exception(
            "chat_failed",
            thread_id=body.thread_id,
            message_id=body.response_message_id,
            error_type=type(e).__name__,
        )
        return stream_error_response(500, STREAM_INTERNAL_ERROR_MESSAGE)

    relay = LiveRelay()
    scheduler.schedule(job, relay=relay)
    return StreamingResponse(relay.ndjson(), media_type=NDJSON_MEDIA_TYPE, headers=STREAM_HEADERS)


@router.post("/chat/resume", response_model=None)
async def resume_chat(
    body: ResumeRequest,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    factory: Annotated[sessionmaker[Session], Depends(get_session_factory)],
    store: Annotated[ResumableStreamStore, Depends(get_stream_store)],
) -> StreamingResponse | JSONResponse:
    """Replay chunks after lastReceivedPartIndex.

    Entries of messages the caller does not own look missing. A completed
    entry is purged once the replay has been fully written.
    """
    stream_id = body.response_message_id
    if not await run_in_threadpool(_owns_message, factory, viewer, stream_id):
        return stream_error_response(404, STREAM_NOT_FOUND_MESSAGE)

    meta = await store.get_meta(stream_id)
    if meta is None:
        return stream_error_response(404, STREAM_NOT_FOUND_MESSAGE)

    async def replay():
        async for part in store.replay(stream_id, body.last_received_part_index + 1):
            yield encode_ndjson(part)
        if meta.is_complete:
            await store.purge(stream_id)
            logger.info("stream_entry_purged", stream_id=stream_id)

    return StreamingResponse(replay(), media_type=NDJSON_MEDIA_TYPE, headers=STREAM_HEADERS)
