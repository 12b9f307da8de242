"""Middleware modules for the ForkChat API."""

from forkchat.middleware.chat_cors import ChatCORSMiddleware
from forkchat.middleware.request_id import REQUEST_ID_HEADER, RequestIDMiddleware

__all__ = ["ChatCORSMiddleware", "RequestIDMiddleware", "REQUEST_ID_HEADER"]
