"""Pydantic schemas for API request/response models."""

from forkchat.schemas.chat import ChatMessageIn, ChatRequest, ResumeRequest
from forkchat.schemas.threads import (
    BranchRequest,
    EditMessageRequest,
    MessageOut,
    ModelParams,
    PageInfo,
    RetryMessageRequest,
    StopOut,
    StopRequest,
    SubmitMessageRequest,
    SubmitOut,
    ThreadOut,
    TitleRequest,
)

__all__ = [
    "BranchRequest",
    "ChatMessageIn",
    "ChatRequest",
    "EditMessageRequest",
    "MessageOut",
    "ModelParams",
    "PageInfo",
    "ResumeRequest",
    "RetryMessageRequest",
    "StopOut",
    "StopRequest",
    "SubmitMessageRequest",
    "SubmitOut",
    "ThreadOut",
    "TitleRequest",
]
