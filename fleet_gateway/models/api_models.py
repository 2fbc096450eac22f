# The module is to define the API models for the chat gateway.
# Date: 2026-10-19
# Version: 0.1.0

from datetime import datetime
from pydantic import Field, field_validator
from typing import Any, Dict, List, Optional

from fleet_gateway.models.common import CamelModel, ChatMessage, utc_now

class ChatRequest(CamelModel):
    """
    Defines the request body for the POST /chat endpoint.
    Attributes:
        messages (List[ChatMessage]): The client-side transcript, oldest first.
        conversation_id (Optional[str]): The conversation to continue; a new one is started when absent.
        options (Optional[dict]): Free-form client options, accepted and ignored.
    """
    messages: List[ChatMessage] = Field(default_factory=list, description="The conversation transcript.")
    conversation_id: Optional[str] = Field(default=None, description="The unique ID of the conversation.")
    options: Optional[Dict[str, Any]] = None

    @field_validator("conversation_id", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value


class MetadataPayload(CamelModel):
    """Payload of the first frame: where the answer belongs and what it will be called."""
    conversation_id: str
    message_id: str
    timestamp: datetime = Field(default_factory=utc_now)


class ChunkPayload(CamelModel):
    """Payload of a chunk frame: one fragment of the answer, in order."""
    content: str


class DonePayload(CamelModel):
    """Payload of the final frame of a successful answer."""
    message_id: str
    total_content: str
    timestamp: datetime = Field(default_factory=utc_now)


class ErrorPayload(CamelModel):
    """Payload of the final frame of a failed answer. The message never carries internal details."""
    message: str
    correlation_id: str


class ErrorResponse(CamelModel):
    """Defines the JSON body of 4xx/5xx responses returned before any streaming starts."""
    error: str
    correlation_id: Optional[str] = None


class HealthResponse(CamelModel):
    """Defines the response body for the GET /chat/health endpoint."""
    status: str = "healthy"
    timestamp: datetime = Field(default_factory=utc_now)
    service: str
    version: str


class ReadinessResponse(CamelModel):
    """Defines the response body for the GET /chat/ready endpoint. `reason` never carries backend details."""
    status: str
    timestamp: datetime = Field(default_factory=utc_now)
    service: str
    version: str
    reason: Optional[str] = None
