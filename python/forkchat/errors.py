"""API error definitions.

All API errors are defined here with their corresponding HTTP status codes.
Generation failures are not API errors: they end up on the assistant
message as ``server_error`` and never reach the envelope.
"""

from enum import Enum


class ApiErrorCode(str, Enum):
    """Standardized error codes for the API.

    Format: E_CATEGORY_NAME
    """

    # Authentication errors (401)
    E_UNAUTHENTICATED = "E_UNAUTHENTICATED"

    # Authorization errors (403)
    E_FORBIDDEN = "E_FORBIDDEN"

    # Not found errors (404)
    E_NOT_FOUND = "E_NOT_FOUND"
    E_THREAD_NOT_FOUND = "E_THREAD_NOT_FOUND"
    E_MESSAGE_NOT_FOUND = "E_MESSAGE_NOT_FOUND"

    # Validation errors (400)
    E_INVALID_REQUEST = "E_INVALID_REQUEST"
    E_MODEL_NOT_AVAILABLE = "E_MODEL_NOT_AVAILABLE"
    E_NOT_USER_MESSAGE = "E_NOT_USER_MESSAGE"
    E_NOTHING_TO_RETRY = "E_NOTHING_TO_RETRY"
    E_INVALID_CURSOR = "E_INVALID_CURSOR"
    E_NOTHING_TO_SUMMARIZE = "E_NOTHING_TO_SUMMARIZE"

    # Conflict errors (409)
    E_THREAD_BUSY = "E_THREAD_BUSY"
    E_MESSAGE_NOT_WAITING = "E_MESSAGE_NOT_WAITING"
    E_ID_CONFLICT = "E_ID_CONFLICT"

    # Server errors
    E_SUMMARY_FAILED = "E_SUMMARY_FAILED"  # 502
    E_AUTH_UNAVAILABLE = "E_AUTH_UNAVAILABLE"  # 503
    E_INTERNAL = "E_INTERNAL"  # 500


ERROR_CODE_TO_STATUS: dict[ApiErrorCode, int] = {
    ApiErrorCode.E_UNAUTHENTICATED: 401,
    ApiErrorCode.E_FORBIDDEN: 403,
    ApiErrorCode.E_NOT_FOUND: 404,
    ApiErrorCode.E_THREAD_NOT_FOUND: 404,
    ApiErrorCode.E_MESSAGE_NOT_FOUND: 404,
    ApiErrorCode.E_INVALID_REQUEST: 400,
    ApiErrorCode.E_MODEL_NOT_AVAILABLE: 400,
    ApiErrorCode.E_NOT_USER_MESSAGE: 400,
    ApiErrorCode.E_NOTHING_TO_RETRY: 400,
    ApiErrorCode.E_INVALID_CURSOR: 400,
    ApiErrorCode.E_NOTHING_TO_SUMMARIZE: 400,
    ApiErrorCode.E_THREAD_BUSY: 409,
    ApiErrorCode.E_MESSAGE_NOT_WAITING: 409,
    ApiErrorCode.E_ID_CONFLICT: 409,
    ApiErrorCode.E_SUMMARY_FAILED: 502,
    ApiErrorCode.E_AUTH_UNAVAILABLE: 503,
    ApiErrorCode.E_INTERNAL: 500,
}


class ApiError(Exception):
    """Base exception for API errors.

    Attributes:
        code: The error code enum value
        message: Human-readable error message
        status_code: HTTP status code (derived from code)
    """

    def __init__(self, code: ApiErrorCode, message: str):
        self.code = code
        self.message = message
        self.status_code = ERROR_CODE_TO_STATUS.get(code, 500)
        super().__init__(message)


class NotFoundError(ApiError):
    """Resource not found error."""

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_NOT_FOUND, message: str = "Not found"):
        super().__init__(code, message)


class ForbiddenError(ApiError):
    """Authorization failure error."""

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_FORBIDDEN, message: str = "Forbidden"):
        super().__init__(code, message)


class InvalidRequestError(ApiError):
    """Invalid request error."""

    def __init__(
        self, code: ApiErrorCode = ApiErrorCode.E_INVALID_REQUEST, message: str = "Invalid request"
    ):
        super().__init__(code, message)


class ConflictError(ApiError):
    """State conflict error (busy thread, message already running)."""

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_THREAD_BUSY, message: str = "Conflict"):
        super().__init__(code, message)
