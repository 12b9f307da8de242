"""Thread and message routes.

Routes are transport-only: each calls exactly one coordinator function
(in the threadpool, since the coordinator is synchronous) or the summary
service. For admissions the route hands the resulting job to the
scheduler after the commit.
Handlers are async so scheduling happens on the event loop that will run
the generation.

All routes require authentication.
Response envelope: {"data": ...} or {"data": [...], "page": {...}}
Error envelope: {"error": {"code": "...", "message": "...", "request_id": "..."}}
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from forkchat.api.deps import get_db, get_llm_router, get_scheduler
from forkchat.auth.middleware import Viewer, get_viewer
from forkchat.config import get_settings
from forkchat.responses import success_response
from forkchat.schemas.threads import (
    BranchRequest,
    EditMessageRequest,
    RetryMessageRequest,
    StopRequest,
    SubmitMessageRequest,
    TitleRequest,
)
from forkchat.services import coordinator, summary
from forkchat.services.llm import LLMRouter
from forkchat.services.scheduler import GenerationScheduler

router = APIRouter(tags=["threads"])


# =============================================================================
# Admission
# =============================================================================


@router.post("/threads/{thread_id}/messages", status_code=202)
async def submit_message(
    thread_id: str,
    body: SubmitMessageRequest,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    llm_router: Annotated[LLMRouter, Depends(get_llm_router)],
    scheduler: Annotated[GenerationScheduler, Depends(get_scheduler)],
) -> dict:
    """Append a user message and start generating the reply.

    Creates the thread on first use. Returns 202 as soon as the message
    pair is committed. With schedule=false the assistant message stays
    waiting until POST /chat drives it.

    Errors:
        E_MODEL_NOT_AVAILABLE (400), E_THREAD_NOT_FOUND (404),
        E_THREAD_BUSY (409), E_ID_CONFLICT (409)
    """
    result = await run_in_threadpool(
        coordinator.submit_message, db, viewer.user_id, thread_id, body, router=llm_router
    )
    if body.schedule:
        scheduler.schedule(result.job)
    return success_response(result.to_out(scheduled=body.schedule).model_dump(mode="json"))


@router.post("/messages/{message_id}/edit", status_code=202)
async def edit_message(
    message_id: str,
    body: EditMessageRequest,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    llm_router: Annotated[LLMRouter, Depends(get_llm_router)],
    scheduler: Annotated[GenerationScheduler, Depends(get_scheduler)],
) -> dict:
    """Rewrite a user message, drop everything after it, regenerate.

    Errors:
        E_MESSAGE_NOT_FOUND (404), E_NOT_USER_MESSAGE (400), E_THREAD_BUSY (409)
    """
    result = await run_in_threadpool(
        coordinator.edit_message,
        db,
        viewer.user_id,
        message_id,
        body.content,
        router=llm_router,
        model=body.model,
        model_params=body.model_params,
    )
    if body.schedule:
        scheduler.schedule(result.job)
    return success_response(result.to_out(scheduled=body.schedule).model_dump(mode="json"))


@router.post("/messages/{message_id}/retry", status_code=202)
async def retry_message(
    message_id: str,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    llm_router: Annotated[LLMRouter, Depends(get_llm_router)],
    scheduler: Annotated[GenerationScheduler, Depends(get_scheduler)],
    body: RetryMessageRequest | None = None,
) -> dict:
    """Regenerate the reply to a user message (or the one before an assistant message).

    Errors:
        E_MESSAGE_NOT_FOUND (404), E_NOTHING_TO_RETRY (400), E_THREAD_BUSY (409)
    """
    body = body or RetryMessageRequest()
    result = await run_in_threadpool(
        coordinator.retry_message,
        db,
        viewer.user_id,
        message_id,
        router=llm_router,
        model=body.model,
        model_params=body.model_params,
    )
    if body.schedule:
        scheduler.schedule(result.job)
    return success_response(result.to_out(scheduled=body.schedule).model_dump(mode="json"))


@router.post("/threads/{thread_id}/branches", status_code=201)
async def branch_thread(
    thread_id: str,
    body: BranchRequest,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    """Fork the thread at a message into a new idle thread.

    Errors:
        E_THREAD_NOT_FOUND (404), E_MESSAGE_NOT_FOUND (404), E_ID_CONFLICT (409)
    """
    result = await run_in_threadpool(
        coordinator.branch_thread,
        db,
        viewer.user_id,
        thread_id,
        body.message_id,
        body.new_thread_id,
    )
    return success_response(result.model_dump(mode="json"))


@router.post("/threads/{thread_id}/stop")
async def stop_generation(
    thread_id: str,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    scheduler: Annotated[GenerationScheduler, Depends(get_scheduler)],
    body: StopRequest | None = None,
) -> dict:
    """Stop the active generation. Nothing to stop is a 200 with stopped=false."""
    result = await run_in_threadpool(
        coordinator.stop_generation,
        db,
        viewer.user_id,
        thread_id,
        body.message_id if body else None,
    )
    if result.stopped and result.message_id:
        scheduler.cancel(result.message_id)
    return success_response(result.to_out().model_dump(mode="json"))


# =============================================================================
# Reads / Title
# =============================================================================


@router.get("/threads")
def list_threads(
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    limit: int = Query(default=50, ge=1, le=100, description="Maximum results (1-100)"),
    cursor: str | None = Query(default=None, description="Pagination cursor"),
    include_archived: bool = Query(default=False),
) -> dict:
    """List threads ordered by last_message_at DESC, id DESC.

    Errors:
        E_INVALID_CURSOR (400): Cursor is malformed or unparseable.
    """
    threads, page = coordinator.list_threads(
        db, viewer.user_id, limit=limit, cursor=cursor, include_archived=include_archived
    )
    return {
        "data": [t.model_dump(mode="json") for t in threads],
        "page": page.model_dump(mode="json"),
    }


@router.get("/threads/{thread_id}")
def get_thread(
    thread_id: str,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    result = coordinator.get_thread(db, viewer.user_id, thread_id)
    return success_response(result.model_dump(mode="json"))


@router.get("/threads/{thread_id}/messages")
def list_messages(
    thread_id: str,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    limit: int = Query(default=50, ge=1, le=100, description="Maximum results (1-100)"),
    cursor: str | None = Query(default=None, description="Pagination cursor"),
) -> dict:
    """List messages in seq order.

    Errors:
        E_THREAD_NOT_FOUND (404), E_INVALID_CURSOR (400)
    """
    messages, page = coordinator.list_messages(
        db, viewer.user_id, thread_id, limit=limit, cursor=cursor
    )
    return {
        "data": [m.model_dump(mode="json") for m in messages],
        "page": page.model_dump(mode="json"),
    }


@router.post("/threads/{thread_id}/title")
def set_thread_title(
    thread_id: str,
    body: TitleRequest,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    """Set a title chosen by the user; generated titles stop overwriting it."""
    result = coordinator.set_thread_title(db, viewer.user_id, thread_id, body.title)
    return success_response(result.model_dump(mode="json"))


@router.post("/threads/{thread_id}/summary")
async def summarize_thread(
    thread_id: str,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    llm_router: Annotated[LLMRouter, Depends(get_llm_router)],
) -> dict:
    """Summarize the thread with the auxiliary model. Nothing is stored.

    Errors:
        E_THREAD_NOT_FOUND (404), E_NOTHING_TO_SUMMARIZE (400),
        E_SUMMARY_FAILED (502)
    """
    result = await summary.summarize_thread(
        llm_router,
        db,
        user_id=viewer.user_id,
        thread_id=thread_id,
        model_id=get_settings().title_model_id,
    )
    return success_response(result.model_dump(mode="json"))
