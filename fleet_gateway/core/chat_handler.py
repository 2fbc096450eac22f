# fleet_gateway/core/chat_handler.py
# Drives one chat request from validation to the final event of its stream.
# Date: 2026-10-19
# Version: 0.1.0

import asyncio
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from fleet_gateway.core.exceptions import CancellationError, StreamingError, ValidationError
from fleet_gateway.models.api_models import (
    ChatRequest,
    ChunkPayload,
    DonePayload,
    ErrorPayload,
    MetadataPayload,
)
from fleet_gateway.models.common import EventType
from fleet_gateway.services.agent_client import BaseAgentClient
from fleet_gateway.services.event_stream import EventStreamWriter
from fleet_gateway.services.session_registry import SessionRegistry
from fleet_gateway.utils.aio import next_item, until_cancelled
from fleet_gateway.utils.logger import console

# The only text a client ever sees about a streaming failure.
STREAM_ERROR_MESSAGE = "An error occurred while streaming the response."

# Kinds of items passed from the producer task to the writer loop.
_FRAGMENT = "fragment"
_FAILED = "failed"
_END = "end"


class ChatState(str, Enum):
    """States of a chat request. COMPLETING, ERRORING and CANCELLED are terminal."""
    VALIDATING = "validating"
    SESSION_RESOLVING = "session_resolving"
    STREAMING = "streaming"
    COMPLETING = "completing"
    ERRORING = "erroring"
    CANCELLED = "cancelled"


@dataclass
class PreparedChat:
    """Everything the streaming phase needs, resolved before the response opens."""
    correlation_id: str
    conversation_id: str
    backend_session_id: str
    message: str
    message_id: str = field(default_factory=lambda: str(uuid4()))


def new_correlation_id() -> str:
    return str(uuid4())


class ChatRequestHandler:
    """
    Orchestrates a single chat request.

    `prepare` validates the request and resolves the backend session; its
    errors surface as plain HTTP responses because nothing has been streamed
    yet. `stream` writes metadata, one chunk per fragment and exactly one
    done or error event, and never raises for backend failures. Once the
    cancel event is set it stops without writing anything else.

    A handler instance serves one request.
    """

    def __init__(self, registry: SessionRegistry, agent_client: BaseAgentClient, queue_size: int = 16):
        self._registry = registry
        self._agent = agent_client
        self._queue_size = queue_size
        self.state = ChatState.VALIDATING

    def _transition(self, state: ChatState, correlation_id: str):
        console.debug(f"Chat request {self.state.value} -> {state.value}. CorrelationId: {correlation_id}")
        self.state = state

    def validate(self, request: ChatRequest) -> str:
        """Returns the content of the most recent user message."""
        if not request.messages:
            raise ValidationError("Messages array is required")

        last_user_message = next((m for m in reversed(request.messages) if m.role == "user"), None)
        if last_user_message is None or not last_user_message.content.strip():
            raise ValidationError("At least one user message is required")
        return last_user_message.content

    async def prepare(self, request: ChatRequest, correlation_id: Optional[str] = None) -> PreparedChat:
        """
        Runs the validating and session-resolving states.

        Raises:
            ValidationError: If the request carries no usable user message.
            SessionCreationError: If no backend session could be obtained.
        """
        correlation_id = correlation_id or new_correlation_id()
        self.state = ChatState.VALIDATING
        try:
            message = self.validate(request)
        except ValidationError as e:
            console.warning(f"Invalid chat request - {e.message}. CorrelationId: {correlation_id}")
            raise

        self._transition(ChatState.SESSION_RESOLVING, correlation_id)
        conversation_id = request.conversation_id or str(uuid4())
        console.info(
            f"Processing chat message ({len(message)} chars), ConversationId: {conversation_id}, "
            f"CorrelationId: {correlation_id}"
        )
        try:
            backend_session_id = await self._registry.get_or_create_session(conversation_id)
        except Exception:
            self._transition(ChatState.ERRORING, correlation_id)
            console.exception(f"Session resolution failed. CorrelationId: {correlation_id}")
            raise

        return PreparedChat(
            correlation_id=correlation_id,
            conversation_id=conversation_id,
            backend_session_id=backend_session_id,
            message=message,
        )

    async def _produce(self, prepared: PreparedChat, channel: asyncio.Queue, cancel: asyncio.Event):
        """Feeds fragments from the agent into the bounded channel, then one end or failure marker."""
        try:
            fragments = self._agent.stream_response(prepared.backend_session_id, prepared.message, cancel)
            async with aclosing(fragments):
                async for fragment in fragments:
                    await channel.put((_FRAGMENT, fragment))
        except Exception as e:
            await channel.put((_FAILED, e))
        else:
            await channel.put((_END, None))

    async def stream(self, prepared: PreparedChat, writer: EventStreamWriter,
                     cancel: Optional[asyncio.Event] = None) -> None:
        cancel = cancel or asyncio.Event()
        correlation_id = prepared.correlation_id
        self._transition(ChatState.STREAMING, correlation_id)

        channel: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        producer: Optional[asyncio.Task] = None
        parts: List[str] = []
        try:
            metadata = MetadataPayload(conversation_id=prepared.conversation_id, message_id=prepared.message_id)
            if not await writer.write_event(EventType.METADATA, metadata):
                raise CancellationError("transport closed before metadata")

            producer = asyncio.create_task(self._produce(prepared, channel, cancel))
            while True:
                item = await until_cancelled(next_item(channel, producer), cancel)
                if item is None:
                    raise StreamingError("Agent stream stopped without an end marker")
                kind, value = item
                if kind == _FRAGMENT:
                    parts.append(value)
                    if cancel.is_set() or not await writer.write_event(EventType.CHUNK, ChunkPayload(content=value)):
                        raise CancellationError("transport closed while streaming")
                elif kind == _FAILED:
                    raise value
                else:
                    break

            if cancel.is_set():
                raise CancellationError("cancelled after the last fragment")

            self._transition(ChatState.COMPLETING, correlation_id)
            done = DonePayload(message_id=prepared.message_id, total_content="".join(parts).strip())
            await writer.write_event(EventType.DONE, done)
            console.success(
                f"Successfully completed streaming chat response. ConversationId: {prepared.conversation_id}, "
                f"CorrelationId: {correlation_id}"
            )
        except CancellationError:
            cancel.set()
            self._transition(ChatState.CANCELLED, correlation_id)
            console.info(f"Chat request cancelled during streaming. CorrelationId: {correlation_id}")
        except Exception:
            if cancel.is_set() or writer.closed:
                cancel.set()
                self._transition(ChatState.CANCELLED, correlation_id)
                console.info(f"Chat request cancelled while failing. CorrelationId: {correlation_id}")
            else:
                self._transition(ChatState.ERRORING, correlation_id)
                console.exception(f"Error during streaming. CorrelationId: {correlation_id}")
                try:
                    await writer.write_event(
                        EventType.ERROR,
                        ErrorPayload(message=STREAM_ERROR_MESSAGE, correlation_id=correlation_id),
                    )
                except Exception:
                    console.exception(f"Could not deliver the error event. CorrelationId: {correlation_id}")
        finally:
            if producer is not None:
                producer.cancel()
                await asyncio.gather(producer, return_exceptions=True)
