"""Request schemas for the streaming chat endpoints.

These bodies come from the browser streaming client and use camelCase on
the wire.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from forkchat.schemas.threads import ModelParams


class ChatMessageIn(BaseModel):
    """A message as the client renders it. Accepted for compatibility only:
    generation history is always rebuilt from the stored thread."""

    role: str
    content: str = ""
    parts: list[dict[str, Any]] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")


class ChatRequest(BaseModel):
    messages: list[ChatMessageIn] = Field(default_factory=list)
    model: str
    model_params: ModelParams = Field(default_factory=ModelParams)
    thread_id: str
    response_message_id: str

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, protected_namespaces=()
    )


class ResumeRequest(BaseModel):
    response_message_id: str
    last_received_part_index: int = Field(default=-1, ge=-1)

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
