"""Test helpers for authentication and common test operations.

Provides:
- Token minting for test authentication
- Header generation for test requests
- Row seeding and polling helpers for generation tests
"""

import asyncio
import json
import time
from uuid import UUID, uuid4

import jwt
from sqlalchemy.orm import Session, sessionmaker

from forkchat.db.models import Message, Thread
from tests.support.test_verifier import MockJwtVerifier

# Default test token settings
DEFAULT_ISSUER = "test-issuer"
DEFAULT_AUDIENCE = "test-audience"
DEFAULT_EXPIRES_IN = 3600  # 1 hour


def mint_test_token(
    user_id: UUID | str,
    expires_in: int = DEFAULT_EXPIRES_IN,
    issuer: str = DEFAULT_ISSUER,
    audience: str = DEFAULT_AUDIENCE,
    **extra_claims,
) -> str:
    """Mint a valid RS256 test JWT for the given user."""
    now = int(time.time())
    payload = {
        "sub": str(user_id),
        "iss": issuer,
        "aud": audience,
        "iat": now,
        "exp": now + expires_in,
        **extra_claims,
    }
    return jwt.encode(payload, MockJwtVerifier.get_private_key(), algorithm="RS256")


def mint_expired_token(
    user_id: UUID | str,
    issuer: str = DEFAULT_ISSUER,
    audience: str = DEFAULT_AUDIENCE,
) -> str:
    """Mint a token that expired 1 hour ago."""
    return mint_test_token(user_id, expires_in=-3600, issuer=issuer, audience=audience)


def mint_token_with_bad_signature(user_id: UUID | str) -> str:
    """Mint a token signed with a different key (bad signature)."""
    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.asymmetric import rsa

    other_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = other_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )

    now = int(time.time())
    payload = {
        "sub": str(user_id),
        "iss": DEFAULT_ISSUER,
        "aud": DEFAULT_AUDIENCE,
        "iat": now,
        "exp": now + DEFAULT_EXPIRES_IN,
    }
    return jwt.encode(payload, pem, algorithm="RS256")


def auth_headers(user_id: UUID | str, **token_kwargs) -> dict[str, str]:
    """Return headers dict with valid Authorization for the given user."""
    token = mint_test_token(user_id, **token_kwargs)
    return {"Authorization": f"Bearer {token}"}


def create_test_user_id() -> UUID:
    """Generate a random UUID for a test user."""
    return uuid4()


def new_id(prefix: str) -> str:
    """Client-style opaque id, e.g. new_id("thr")."""
    return f"{prefix}-{uuid4().hex[:12]}"


# =============================================================================
# Database helpers
# =============================================================================


def get_message(factory: sessionmaker[Session], message_id: str) -> Message | None:
    """Read a message in a fresh session so the row reflects committed state."""
    with factory() as db:
        return db.query(Message).filter(Message.message_id == message_id).one_or_none()


def get_thread(factory: sessionmaker[Session], thread_id: str) -> Thread | None:
    with factory() as db:
        return db.query(Thread).filter(Thread.thread_id == thread_id).one_or_none()


def list_thread_messages(factory: sessionmaker[Session], thread_id: str) -> list[Message]:
    with factory() as db:
        return (
            db.query(Message).filter(Message.thread_id == thread_id).order_by(Message.seq).all()
        )


def wait_for_status(
    factory: sessionmaker[Session],
    message_id: str,
    statuses: tuple[str, ...],
    timeout: float = 5.0,
) -> Message:
    """Poll until the message reaches one of the given statuses.

    Used by route tests where generation runs on the app's event loop
    behind a TestClient.
    """
    deadline = time.monotonic() + timeout
    while True:
        message = get_message(factory, message_id)
        if message is not None and message.status in statuses:
            return message
        if time.monotonic() > deadline:
            current = message.status if message is not None else None
            raise AssertionError(f"{message_id} stuck in {current!r}, wanted {statuses}")
        time.sleep(0.02)


def wait_until(predicate, timeout: float = 5.0, message: str = "condition not met"):
    """Poll a zero-argument predicate until it returns a truthy value."""
    deadline = time.monotonic() + timeout
    while True:
        value = predicate()
        if value:
            return value
        if time.monotonic() > deadline:
            raise AssertionError(message)
        time.sleep(0.02)


def gemini_sse(*texts: str, finish_reason: str = "STOP") -> bytes:
    """Gemini streamGenerateContent body: one SSE event per text chunk."""
    chunks = [{"candidates": [{"content": {"parts": [{"text": t}]}}]} for t in texts]
    chunks[-1]["candidates"][0]["finishReason"] = finish_reason
    return "".join(f"data: {json.dumps(c)}\n\n" for c in chunks).encode()


def parse_ndjson(body: str) -> list[dict]:
    return [json.loads(line) for line in body.splitlines() if line.strip()]


async def async_wait_for_status(
    factory: sessionmaker[Session],
    message_id: str,
    statuses: tuple[str, ...],
    timeout: float = 5.0,
) -> Message:
    """Async variant of wait_for_status for tests that own the event loop."""
    deadline = time.monotonic() + timeout
    while True:
        message = get_message(factory, message_id)
        if message is not None and message.status in statuses:
            return message
        if time.monotonic() > deadline:
            current = message.status if message is not None else None
            raise AssertionError(f"{message_id} stuck in {current!r}, wanted {statuses}")
        await asyncio.sleep(0.02)
