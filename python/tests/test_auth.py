"""Tests for the authentication boundary.

Tests cover:
- Missing, malformed and empty Authorization headers
- Tokens rejected by the verifier (signature, expiry, audience, sub)
- Verifier outages surfacing as 503 E_AUTH_UNAVAILABLE
- Public paths and CORS preflights bypassing auth
- get_viewer refusing requests the middleware never saw
"""

import pytest
from fastapi.testclient import TestClient

from forkchat.app import create_app
from forkchat.errors import ApiError, ApiErrorCode
from tests.helpers import (
    auth_headers,
    create_test_user_id,
    mint_expired_token,
    mint_test_token,
    mint_token_with_bad_signature,
)


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class UnavailableVerifier:
    """Verifier whose key endpoint is down."""

    def verify(self, token: str) -> dict:
        raise ApiError(ApiErrorCode.E_AUTH_UNAVAILABLE, "Authentication service unavailable")


class TestAuthBoundary:
    """Requests without a valid bearer token never reach a route."""

    def test_no_authorization_header(self, authenticated_client):
        response = authenticated_client.get("/threads")

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "E_UNAUTHENTICATED"
        assert error["message"] == "Authentication required"

    @pytest.mark.parametrize("header", ["Basic abc123", "Bearer ", "Bearer", "token"])
    def test_malformed_authorization_header(self, authenticated_client, header):
        response = authenticated_client.get("/threads", headers={"Authorization": header})

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid authorization header format"

    def test_bearer_prefix_is_case_insensitive(self, authenticated_client):
        token = mint_test_token(create_test_user_id())

        response = authenticated_client.get("/threads", headers={"Authorization": f"bearer {token}"})

        assert response.status_code == 200

    def test_bad_signature(self, authenticated_client):
        token = mint_token_with_bad_signature(create_test_user_id())

        response = authenticated_client.get("/threads", headers=bearer(token))

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid token signature"

    def test_expired_token(self, authenticated_client):
        token = mint_expired_token(create_test_user_id())

        response = authenticated_client.get("/threads", headers=bearer(token))

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Token expired"

    def test_wrong_audience(self, authenticated_client):
        token = mint_test_token(create_test_user_id(), audience="someone-else")

        response = authenticated_client.get("/threads", headers=bearer(token))

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid token audience"

    def test_sub_must_be_uuid(self, authenticated_client):
        response = authenticated_client.get("/threads", headers=bearer(mint_test_token("alice")))

        assert response.status_code == 401
        assert "UUID" in response.json()["error"]["message"]

    def test_chat_requires_auth(self, authenticated_client):
        """The streaming endpoints use the envelope for auth failures too."""
        response = authenticated_client.post("/chat/resume", json={"responseMessageId": "m"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "E_UNAUTHENTICATED"

    def test_verifier_unavailable(self, engine, fake_redis):
        app = create_app(token_verifier=UnavailableVerifier(), redis_client=fake_redis)

        with TestClient(app) as client:
            response = client.get("/threads", headers=auth_headers(create_test_user_id()))

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "E_AUTH_UNAVAILABLE"


class TestViewerIdentity:
    """The token sub becomes the viewer every query is scoped to."""

    def test_threads_are_scoped_to_the_token_subject(self, authenticated_client):
        alice, bob = create_test_user_id(), create_test_user_id()
        created = authenticated_client.post(
            "/threads/thr-alice/messages",
            json={"content": "Hi", "model": "gemini-2.0-flash", "schedule": False},
            headers=auth_headers(alice),
        )
        assert created.status_code == 202

        mine = authenticated_client.get("/threads", headers=auth_headers(alice)).json()
        theirs = authenticated_client.get("/threads", headers=auth_headers(bob)).json()

        assert [t["thread_id"] for t in mine["data"]] == ["thr-alice"]
        assert theirs["data"] == []

    def test_get_viewer_without_middleware(self, client):
        """Routes refuse to run when no middleware attached a viewer."""
        response = client.get("/threads")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "E_UNAUTHENTICATED"


class TestPublicPaths:
    @pytest.mark.parametrize("path", ["/health", "/openapi.json"])
    def test_no_auth_required(self, authenticated_client, path):
        response = authenticated_client.get(path)

        assert response.status_code == 200

    def test_chat_preflight_needs_no_token(self, authenticated_client):
        response = authenticated_client.options(
            "/chat",
            headers={"Origin": "https://app.example", "Access-Control-Request-Method": "POST"},
        )

        assert response.status_code == 200
