"""Thread and Message Pydantic schemas.

Response models read straight from ORM rows (from_attributes). Request
models for admission operations accept camelCase model params, the same
shape the streaming client sends in /chat.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from forkchat.db.models import as_utc

# Limits
MAX_MESSAGE_CONTENT_LENGTH = 20000
MAX_TITLE_LENGTH = 200
MAX_ATTACHMENTS = 10
MAX_CLIENT_ID_LENGTH = 128

REASONING_EFFORTS = Literal["low", "medium", "high"]


# =============================================================================
# Shared
# =============================================================================


class ModelParams(BaseModel):
    """Generation knobs frozen onto the assistant message at creation."""

    temperature: float | None = Field(default=None, ge=0, le=2)
    top_p: float | None = Field(default=None, gt=0, le=1)
    top_k: int | None = Field(default=None, ge=1)
    reasoning_effort: REASONING_EFFORTS | None = None
    include_search: bool = False

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_params(self) -> dict[str, Any]:
        """Stored form: camelCase keys, unset knobs omitted."""
        return self.model_dump(by_alias=True, exclude_none=True)


# =============================================================================
# Response Schemas
# =============================================================================


class ThreadOut(BaseModel):
    """Response schema for a thread."""

    thread_id: str
    title: str
    user_set_title: bool
    generation_status: str  # "pending" | "generating" | "completed" | "failed"
    model: str | None = None
    pinned: bool
    folder_id: str | None = None
    visibility: str
    is_public: bool
    branch_parent_thread_id: str | None = None
    branch_parent_message_id: str | None = None
    last_message_at: datetime
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator("last_message_at", "created_at", "updated_at", mode="after")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class MessageOut(BaseModel):
    """Response schema for a message.

    parts is the render-ordered fragment list; while the message is
    waiting it is empty. server_error is only set for error statuses.
    """

    message_id: str
    thread_id: str
    seq: int
    role: str
    parts: list[dict[str, Any]]
    status: str
    model: str | None = None
    model_params: dict[str, Any]
    attachment_ids: list[str]
    server_error: dict[str, Any] | None = None
    resumable_stream_id: str | None = None
    branches: list[str]
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True, protected_namespaces=())

    @field_validator("created_at", "updated_at", mode="after")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class PageInfo(BaseModel):
    """Pagination information for list responses."""

    next_cursor: str | None = None


class SubmitOut(BaseModel):
    """Acknowledgement of an admitted generation attempt."""

    thread_id: str
    user_message_id: str
    assistant_message_id: str
    generation_attempt: int
    scheduled: bool


class StopOut(BaseModel):
    stopped: bool
    message_id: str | None = None
    reason: str | None = None


class SummaryOut(BaseModel):
    """A generated, unstored summary of a thread."""

    thread_id: str
    thread_title: str
    message_count: int
    summary: str


# =============================================================================
# Request Schemas
# =============================================================================


class SubmitMessageRequest(BaseModel):
    """Request schema for appending a user message and starting generation.

    Ids are optional; clients that render optimistically send their own.
    schedule=false leaves the assistant message waiting for a /chat call
    to drive it with a live stream.
    """

    content: str = Field(min_length=1, max_length=MAX_MESSAGE_CONTENT_LENGTH)
    model: str
    model_params: ModelParams = Field(
        default_factory=ModelParams,
        validation_alias=AliasChoices("model_params", "modelParams"),
    )
    attachment_ids: list[str] = Field(
        default_factory=list,
        max_length=MAX_ATTACHMENTS,
        validation_alias=AliasChoices("attachment_ids", "attachmentIds"),
    )
    user_message_id: str | None = Field(
        default=None,
        max_length=MAX_CLIENT_ID_LENGTH,
        validation_alias=AliasChoices("user_message_id", "userMessageId"),
    )
    assistant_message_id: str | None = Field(
        default=None,
        max_length=MAX_CLIENT_ID_LENGTH,
        validation_alias=AliasChoices("assistant_message_id", "assistantMessageId"),
    )
    schedule: bool = True

    model_config = ConfigDict(str_strip_whitespace=True, protected_namespaces=())


class EditMessageRequest(BaseModel):
    """Rewrite a user message. model/model_params default to the stored ones."""

    content: str = Field(min_length=1, max_length=MAX_MESSAGE_CONTENT_LENGTH)
    model: str | None = None
    model_params: ModelParams | None = Field(
        default=None,
        validation_alias=AliasChoices("model_params", "modelParams"),
    )
    schedule: bool = True

    model_config = ConfigDict(str_strip_whitespace=True, protected_namespaces=())


class RetryMessageRequest(BaseModel):
    model: str | None = None
    model_params: ModelParams | None = Field(
        default=None,
        validation_alias=AliasChoices("model_params", "modelParams"),
    )
    schedule: bool = True

    model_config = ConfigDict(protected_namespaces=())


class BranchRequest(BaseModel):
    message_id: str = Field(validation_alias=AliasChoices("message_id", "messageId"))
    new_thread_id: str | None = Field(
        default=None,
        max_length=MAX_CLIENT_ID_LENGTH,
        validation_alias=AliasChoices("new_thread_id", "newThreadId"),
    )


class StopRequest(BaseModel):
    message_id: str | None = Field(
        default=None, validation_alias=AliasChoices("message_id", "messageId")
    )


class TitleRequest(BaseModel):
    title: str = Field(min_length=1, max_length=MAX_TITLE_LENGTH)

    model_config = ConfigDict(str_strip_whitespace=True)
