"""FastAPI application creation and configuration.

This module creates and configures the FastAPI application instance.
It registers exception handlers, auth middleware, request-id middleware,
chat CORS middleware and routes.

Middleware Ordering (Critical):
- Middleware runs in reverse order of registration
- RequestIDMiddleware is added LAST so it runs FIRST (outermost)
- ChatCORSMiddleware is added after auth so preflights never need a token

Actual execution order per request:
1. RequestIDMiddleware (sets request_id, starts timer)
2. ChatCORSMiddleware (/chat* only: preflight, origin headers)
3. AuthMiddleware (verifies auth, sets viewer)
4. Route handler

Lifespan:
- Engine and session factory built from DATABASE_URL, stored in app.state
- One httpx.AsyncClient shared by every provider adapter
- redis.asyncio client for the stream store and liveness markers
- Scheduler tasks are cancelled (and finalized as interrupted) at shutdown
"""

import json
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from starlette.exceptions import HTTPException as StarletteHTTPException

from forkchat.api.routes import create_api_router
from forkchat.auth.middleware import AuthMiddleware
from forkchat.auth.verifier import JwksVerifier
from forkchat.config import get_settings
from forkchat.db.engine import create_db_engine
from forkchat.db.session import create_session_factory
from forkchat.errors import ApiError, ApiErrorCode
from forkchat.logging import configure_logging, get_logger
from forkchat.middleware.chat_cors import ChatCORSMiddleware, is_chat_path
from forkchat.middleware.request_id import RequestIDMiddleware
from forkchat.responses import (
    api_error_handler,
    error_response,
    http_exception_handler,
    stream_error_response,
    unhandled_exception_handler,
)
from forkchat.services.generation import GenerationStateMachine
from forkchat.services.llm import LLMRouter
from forkchat.services.scheduler import GenerationScheduler
from forkchat.services.stream_store import ResumableStreamStore

# Configure structured logging at import time
configure_logging()

logger = get_logger(__name__)


def create_token_verifier() -> JwksVerifier:
    """Create the JWKS token verifier from settings."""
    settings = get_settings()

    return JwksVerifier(
        jwks_url=settings.auth_jwks_url,  # type: ignore[arg-type]
        issuer=settings.normalized_issuer,  # type: ignore[arg-type]
        audiences=settings.audience_list,
    )


def create_title_retry():
    """Return a callback that enqueues the Celery title task, or None without a broker."""
    if not get_settings().effective_celery_broker_url:
        return None

    from starlette.concurrency import run_in_threadpool

    from forkchat.tasks.titles import generate_thread_title

    async def enqueue(thread_id: str) -> None:
        await run_in_threadpool(generate_thread_title.apply_async, args=[thread_id])

    return enqueue


async def _connect_redis(redis_url: str | None):
    if not redis_url:
        return None

    import redis.asyncio as aioredis

    client = aioredis.Redis.from_url(redis_url, decode_responses=True, socket_timeout=5)
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        logger.warning("redis_client_init_failed", error=str(e))
        await client.aclose()
        return None
    logger.info("redis_client_initialized")
    return client


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build shared clients once and tear them down on shutdown."""
    settings = get_settings()

    engine = create_db_engine(settings.database_url)
    app.state.session_factory = create_session_factory(engine)

    app.state.httpx_client = httpx.AsyncClient(
        timeout=httpx.Timeout(float(settings.llm_timeout_s), connect=10.0),
        limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
    )
    app.state.llm_router = LLMRouter.from_settings(app.state.httpx_client, settings)
    logger.info(
        "llm_router_initialized",
        enable_openai=settings.enable_openai,
        enable_openrouter=settings.enable_openrouter,
        enable_anthropic=settings.enable_anthropic,
        enable_gemini=settings.enable_gemini,
    )

    injected_redis = getattr(app.state, "injected_redis", None)
    redis_client = injected_redis or await _connect_redis(settings.redis_url)
    app.state.redis_client = redis_client

    app.state.stream_store = ResumableStreamStore(
        redis_client,
        active_ttl_s=settings.stream_active_ttl_s,
        grace_ttl_s=settings.stream_grace_ttl_s,
    )
    machine = GenerationStateMachine(
        app.state.session_factory,
        app.state.llm_router,
        app.state.stream_store,
        redis=redis_client,
        flush_modulus=settings.flush_chunk_modulus,
        cancel_poll_interval_s=settings.cancel_poll_interval_s,
        title_model_id=settings.title_model_id,
        title_retry=create_title_retry(),
    )
    app.state.scheduler = GenerationScheduler(machine)

    yield

    await app.state.scheduler.shutdown()
    await app.state.httpx_client.aclose()
    if redis_client is not None and injected_redis is None:
        await redis_client.aclose()
    engine.dispose()
    logger.info("app_shutdown_complete")


def create_app(
    skip_auth_middleware: bool = False,
    token_verifier=None,
    redis_client=None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        skip_auth_middleware: If True, skip adding auth middleware (for testing).
        token_verifier: Optional custom token verifier (for testing).
        redis_client: Optional async Redis client used instead of REDIS_URL
            (for testing).

    Returns:
        Configured FastAPI application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title="ForkChat API",
        description="Generation backend for ForkChat - branching, resumable LLM chat",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.injected_redis = redis_client

    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Handle request validation errors (including malformed JSON)."""
        if is_chat_path(request.url.path):
            return stream_error_response(400, "Invalid request body")
        return JSONResponse(
            status_code=400,
            content=error_response(ApiErrorCode.E_INVALID_REQUEST, "Invalid request body"),
        )

    @app.middleware("http")
    async def catch_json_decode_errors(request: Request, call_next):
        """Catch JSON decode errors before they reach route handlers."""
        if request.method in ("POST", "PUT", "PATCH"):
            content_type = request.headers.get("content-type", "")
            if "application/json" in content_type:
                body = await request.body()
                if body:
                    try:
                        json.loads(body)
                    except json.JSONDecodeError:
                        if is_chat_path(request.url.path):
                            return stream_error_response(400, "Malformed JSON body")
                        return JSONResponse(
                            status_code=400,
                            content=error_response(
                                ApiErrorCode.E_INVALID_REQUEST, "Malformed JSON body"
                            ),
                        )
        return await call_next(request)

    # Use router factory to avoid import-time settings loading
    app.include_router(create_api_router())

    if not skip_auth_middleware:
        verifier = token_verifier or create_token_verifier()
        app.add_middleware(AuthMiddleware, verifier=verifier)
        logger.info("auth_middleware_enabled", env=settings.forkchat_env.value)

    # Added after auth so it runs before it: preflights carry no token
    cors_origins = settings.cors_origin_list
    app.add_middleware(ChatCORSMiddleware, allowed_origins=cors_origins)
    logger.info("chat_cors_middleware_enabled", origins=cors_origins)

    return app


def add_request_id_middleware(app: FastAPI, log_requests: bool = True) -> None:
    """Add request-id middleware to the app.

    This should be called AFTER all other middleware is added, so it runs FIRST.
    This ensures every response includes X-Request-ID, including auth failures.
    """
    app.add_middleware(RequestIDMiddleware, log_requests=log_requests)
    logger.info("request_id_middleware_enabled")
