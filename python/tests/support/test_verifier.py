"""Test-only token verifier using a locally generated RSA keypair.

MockJwtVerifier checks the same claims as JwksVerifier (exp with skew,
iss, aud, UUID sub) so a misconfigured audience or issuer fails in tests
exactly as it would against the identity provider. It is never imported
by runtime code.
"""

import logging
import threading
from typing import Any

import jwt
from jwt.exceptions import (
    DecodeError,
    ExpiredSignatureError,
    InvalidAudienceError,
    InvalidIssuerError,
    InvalidSignatureError,
    InvalidTokenError,
)

from forkchat.auth.verifier import CLOCK_SKEW_SECONDS, require_uuid_sub
from forkchat.errors import ApiError, ApiErrorCode

logger = logging.getLogger(__name__)

_FAILURES: tuple[tuple[type[Exception], str, str], ...] = (
    (ExpiredSignatureError, "expired_token", "Token expired"),
    (InvalidSignatureError, "invalid_signature", "Invalid token signature"),
    (InvalidIssuerError, "invalid_issuer", "Invalid token issuer"),
    (InvalidAudienceError, "invalid_audience", "Invalid token audience"),
    (DecodeError, "decode_error", "Invalid token format"),
)


class MockJwtVerifier:
    """Verifies RS256 tokens minted by tests.helpers.

    Usage:
        verifier = MockJwtVerifier()
        claims = verifier.verify(token)

        # To mint tokens:
        private_key = MockJwtVerifier.get_private_key()
    """

    # Generated once per process
    _private_key: bytes | None = None
    _public_key: bytes | None = None
    _lock = threading.Lock()

    def __init__(self, issuer: str = "test-issuer", audiences: list[str] | None = None):
        self.issuer = issuer
        self.audiences = audiences or ["test-audience"]
        self._ensure_keypair()

    @classmethod
    def _ensure_keypair(cls) -> None:
        with cls._lock:
            if cls._private_key is not None:
                return

            from cryptography.hazmat.primitives import serialization
            from cryptography.hazmat.primitives.asymmetric import rsa

            key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
            cls._private_key = key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
            cls._public_key = key.public_key().public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )

    @classmethod
    def get_private_key(cls) -> bytes:
        cls._ensure_keypair()
        assert cls._private_key is not None
        return cls._private_key

    @classmethod
    def get_public_key(cls) -> bytes:
        cls._ensure_keypair()
        assert cls._public_key is not None
        return cls._public_key

    def verify(self, token: str) -> dict[str, Any]:
        """Verify a test JWT.

        Raises:
            ApiError(E_UNAUTHENTICATED): Token is invalid.
        """
        try:
            payload = jwt.decode(
                token,
                self.get_public_key(),
                algorithms=["RS256"],
                audience=self.audiences,
                issuer=self.issuer,
                leeway=CLOCK_SKEW_SECONDS,
                options={"require": ["exp", "iss", "sub"], "verify_aud": True},
            )
        except InvalidTokenError as e:
            for exc_type, reason, message in _FAILURES:
                if isinstance(e, exc_type):
                    break
            else:
                reason, message = "invalid_token", "Invalid token"
            logger.warning("auth_failure", extra={"reason": reason})
            raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, message) from e

        return require_uuid_sub(payload)
