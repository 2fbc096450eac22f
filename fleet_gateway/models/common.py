# The module is to define the common models for the chat gateway.
# Date: 2026-10-19
# Version: 0.1.0

from datetime import datetime, timezone
from enum import Enum
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Any, Dict, Literal, Optional

# Only these two roles take part in a gateway conversation.
Role = Literal["user", "assistant"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase JSON keys while keeping snake_case attributes."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatMessage(CamelModel):
    """
    Represents one message of the client-side transcript.
    Attributes:
        role (Role): Who authored the message; matched case-insensitively.
        content (str): The message text.
        timestamp (Optional[datetime]): When the message was created, also accepted as 'createdAt'.
        id (Optional[str]): Client-side message id, carried through untouched.
    """
    role: Role = Field(..., description="The role of the message sender.")
    content: str = Field(default="", description="The content of the message.")
    timestamp: Optional[datetime] = Field(
        default=None,
        validation_alias=AliasChoices("timestamp", "createdAt"),
        description="When the message was created.",
    )
    id: Optional[str] = None

    @field_validator("role", mode="before")
    @classmethod
    def _normalize_role(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class ConversationSession(CamelModel):
    """
    Maps a caller-visible conversation id to the agent backend's session (thread) id.
    The backend session id never changes once the entry exists.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    conversation_id: str
    backend_session_id: str
    created_at: datetime = Field(default_factory=utc_now)


class EventType(str, Enum):
    """Types of the frames written to a chat event stream."""
    METADATA = "metadata"
    CHUNK = "chunk"
    DONE = "done"
    ERROR = "error"


class WireEvent(BaseModel):
    """
    One frame of the event stream: {"type": ..., "data": {...}}.
    Per request the order is one metadata, any number of chunks, then exactly one done or error.
    """
    type: EventType
    data: Dict[str, Any] = Field(default_factory=dict)
