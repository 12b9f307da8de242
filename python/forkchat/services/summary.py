"""On-demand thread summaries.

A summary is a single non-streaming call against the auxiliary model. It
reads the thread but writes nothing: message statuses, thread generation
state and titles are untouched whether it succeeds or fails.
"""

from uuid import UUID

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from forkchat.errors import ApiError, ApiErrorCode
from forkchat.logging import get_logger
from forkchat.schemas.threads import SummaryOut
from forkchat.services.coordinator import load_summary_inputs
from forkchat.services.llm.errors import LLMError
from forkchat.services.llm.prompt import render_summary_prompt
from forkchat.services.llm.router import LLMRouter
from forkchat.services.redact import safe_kv

logger = get_logger(__name__)

MAX_SUMMARY_TOKENS = 2048


async def summarize_thread(
    router: LLMRouter,
    db: Session,
    *,
    user_id: UUID,
    thread_id: str,
    model_id: str,
) -> SummaryOut:
    """Summarize a thread the viewer owns.

    Raises:
        NotFoundError(E_THREAD_NOT_FOUND): Missing or not owned.
        InvalidRequestError(E_NOTHING_TO_SUMMARIZE): No message has text.
        ApiError(E_SUMMARY_FAILED): The provider failed or returned nothing.
    """
    inputs = await run_in_threadpool(load_summary_inputs, db, user_id, thread_id)
    req = router.build_request(
        model_id,
        render_summary_prompt(list(inputs.transcript)),
        max_tokens=MAX_SUMMARY_TOKENS,
    )

    try:
        response = await router.generate(model_id, req, log_fields={"thread_id": thread_id})
    except LLMError as e:
        logger.warning(
            "summary_generation_failed",
            **safe_kv(thread_id=thread_id, error_class=e.error_class.value, provider=e.provider),
        )
        raise ApiError(ApiErrorCode.E_SUMMARY_FAILED, "Failed to generate chat summary") from e

    summary = response.text.strip()
    if not summary:
        logger.warning("summary_generation_empty", thread_id=thread_id)
        raise ApiError(ApiErrorCode.E_SUMMARY_FAILED, "Failed to generate chat summary")

    logger.info(
        "summary_generated",
        **safe_kv(
            thread_id=thread_id,
            message_count=len(inputs.transcript),
            summary_chars=len(summary),
        ),
    )
    return SummaryOut(
        thread_id=inputs.thread_id,
        thread_title=inputs.thread_title,
        message_count=len(inputs.transcript),
        summary=summary,
    )
