"""Pure ASGI CORS middleware for the /chat streaming endpoints only.

Starlette's CORSMiddleware is not path-scoped, and BaseHTTPMiddleware would
sit between the NDJSON body and the socket, so this injects headers on the
http.response.start message and nothing else. Preflights are answered
before auth runs.
"""

from starlette.datastructures import Headers, MutableHeaders
from starlette.responses import Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

CHAT_PATH_PREFIX = "/chat"
ALLOW_METHODS = "GET, POST, PUT, DELETE, OPTIONS"
ALLOW_HEADERS = "Content-Type, Authorization"
EXPOSE_HEADERS = "X-Request-ID"


def is_chat_path(path: str) -> bool:
    return path == CHAT_PATH_PREFIX or path.startswith(CHAT_PATH_PREFIX + "/")


class ChatCORSMiddleware:
    """Path-scoped CORS for /chat and /chat/*.

    With "*" in allowed_origins every origin gets ``*``; otherwise a listed
    origin is echoed and anything else is refused with 403.
    """

    def __init__(self, app: ASGIApp, allowed_origins: list[str]):
        self.app = app
        self.allow_any = "*" in allowed_origins
        self.allowed_origins = set(allowed_origins)

    def _allow_origin_value(self, origin: str | None) -> str | None:
        if self.allow_any:
            return "*"
        if origin is not None and origin in self.allowed_origins:
            return origin
        return None

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not is_chat_path(scope["path"]):
            await self.app(scope, receive, send)
            return

        origin = Headers(scope=scope).get("origin")
        allow_origin = self._allow_origin_value(origin)

        if allow_origin is None and origin is not None:
            response = Response(status_code=403, content="origin not allowed")
            await response(scope, receive, send)
            return

        if scope["method"] == "OPTIONS":
            response = Response(
                status_code=200,
                headers={
                    "access-control-allow-origin": allow_origin or "*",
                    "access-control-allow-methods": ALLOW_METHODS,
                    "access-control-allow-headers": ALLOW_HEADERS,
                    "access-control-max-age": "600",
                },
            )
            await response(scope, receive, send)
            return

        if allow_origin is None:
            # No Origin header: not a browser, nothing to add
            await self.app(scope, receive, send)
            return

        async def send_with_cors(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                headers.append("access-control-allow-origin", allow_origin)
                headers.append("access-control-expose-headers", EXPOSE_HEADERS)
                if allow_origin != "*":
                    headers.append("vary", "Origin")
            await send(message)

        await self.app(scope, receive, send_with_cors)
