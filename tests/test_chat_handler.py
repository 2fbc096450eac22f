import asyncio
import uuid

import pytest
from conftest import ScriptedAgentClient, assert_event_grammar, parse_events

from fleet_gateway.core.chat_handler import STREAM_ERROR_MESSAGE, ChatRequestHandler, ChatState
from fleet_gateway.core.exceptions import RunFailedError, SessionCreationError, ValidationError
from fleet_gateway.models.api_models import ChatRequest
from fleet_gateway.services.event_stream import EventStreamWriter
from fleet_gateway.services.session_registry import InMemorySessionStore, SessionRegistry


class Transport:
    """Collects frames; optionally fails from the n-th send or sets a cancel event after it."""

    def __init__(self, fail_on=None, cancel=None, cancel_after=None):
        self.frames = []
        self.calls = 0
        self.fail_on = fail_on
        self.cancel = cancel
        self.cancel_after = cancel_after

    async def send(self, frame):
        self.calls += 1
        if self.fail_on is not None and self.calls >= self.fail_on:
            raise BrokenPipeError("client gone")
        self.frames.append(frame)
        if self.cancel is not None and len(self.frames) == self.cancel_after:
            self.cancel.set()

    @property
    def events(self):
        return parse_events(b"".join(self.frames))


def make_handler(agent, queue_size=16):
    registry = SessionRegistry(InMemorySessionStore(), agent.create_session)
    return ChatRequestHandler(registry, agent, queue_size=queue_size)


def user_request(content="How is my fleet?", conversation_id=None):
    body = {"messages": [{"role": "user", "content": content}]}
    if conversation_id:
        body["conversationId"] = conversation_id
    return ChatRequest.model_validate(body)


async def run_chat(handler, request, transport, cancel=None):
    prepared = await handler.prepare(request)
    await handler.stream(prepared, EventStreamWriter(transport.send), cancel)
    return prepared


def test_successful_stream_follows_event_grammar():
    agent = ScriptedAgentClient()
    handler = make_handler(agent)
    transport = Transport()

    prepared = asyncio.run(run_chat(handler, user_request(conversation_id="conv-1"), transport))

    events = transport.events
    assert_event_grammar(events)
    assert [e["type"] for e in events] == ["metadata", "chunk", "chunk", "chunk", "done"]
    assert events[0]["data"]["conversationId"] == "conv-1"
    assert events[0]["data"]["messageId"] == events[-1]["data"]["messageId"] == prepared.message_id
    assert "".join(e["data"]["content"] for e in events[1:-1]) == "Hello, world"
    assert events[-1]["data"]["totalContent"] == "Hello, world"
    assert handler.state is ChatState.COMPLETING


def test_total_content_is_trimmed():
    agent = ScriptedAgentClient(fragments=("Fuel ", "is ", "fine. "))
    transport = Transport()
    asyncio.run(run_chat(make_handler(agent), user_request(), transport))

    events = transport.events
    assert events[-1]["data"]["totalContent"] == "Fuel is fine."
    assert [e["data"]["content"] for e in events[1:-1]] == ["Fuel ", "is ", "fine. "]


def test_small_queue_keeps_fragment_order():
    fragments = [f"w{i} " for i in range(40)]
    agent = ScriptedAgentClient(fragments=fragments)
    transport = Transport()
    asyncio.run(run_chat(make_handler(agent, queue_size=1), user_request(), transport))

    assert [e["data"]["content"] for e in transport.events[1:-1]] == fragments


def test_backend_failure_ends_with_a_single_generic_error_event():
    agent = ScriptedAgentClient(
        fragments=("one ", "two "),
        error=RunFailedError("run-1", "failed", "quota exhausted for subscription 1234"),
    )
    handler = make_handler(agent)
    transport = Transport()

    prepared = asyncio.run(run_chat(handler, user_request(), transport))

    events = transport.events
    assert_event_grammar(events)
    assert [e["type"] for e in events] == ["metadata", "chunk", "chunk", "error"]
    assert events[-1]["data"] == {"message": STREAM_ERROR_MESSAGE, "correlationId": prepared.correlation_id}
    assert b"quota" not in b"".join(transport.frames)
    assert handler.state is ChatState.ERRORING


def test_cancel_stops_the_stream_without_a_final_event():
    async def main():
        cancel = asyncio.Event()
        transport = Transport(cancel=cancel, cancel_after=2)
        agent = ScriptedAgentClient(fragments=("a", "b", "c"))
        handler = make_handler(agent)
        await run_chat(handler, user_request(), transport, cancel)
        return handler, transport

    handler, transport = asyncio.run(main())
    assert [e["type"] for e in transport.events] == ["metadata", "chunk"]
    assert handler.state is ChatState.CANCELLED


def test_failure_after_cancel_is_not_reported():
    async def main():
        cancel = asyncio.Event()
        transport = Transport(cancel=cancel, cancel_after=1)
        agent = ScriptedAgentClient(fragments=(), error=RunFailedError("run-1", "failed"))
        handler = make_handler(agent)
        await run_chat(handler, user_request(), transport, cancel)
        return handler, transport

    handler, transport = asyncio.run(main())
    assert [e["type"] for e in transport.events] == ["metadata"]
    assert handler.state is ChatState.CANCELLED


def test_transport_closing_mid_stream_counts_as_cancellation():
    agent = ScriptedAgentClient(fragments=("a", "b", "c"))
    handler = make_handler(agent)
    transport = Transport(fail_on=3)

    asyncio.run(run_chat(handler, user_request(), transport))

    assert [e["type"] for e in transport.events] == ["metadata", "chunk"]
    assert handler.state is ChatState.CANCELLED


@pytest.mark.parametrize("body, message", [
    ({"messages": []}, "Messages array is required"),
    ({}, "Messages array is required"),
    ({"messages": [{"role": "assistant", "content": "Hi"}]}, "At least one user message is required"),
    ({"messages": [{"role": "user", "content": "   "}]}, "At least one user message is required"),
])
def test_invalid_requests_are_rejected_before_any_backend_call(body, message):
    agent = ScriptedAgentClient()
    handler = make_handler(agent)

    with pytest.raises(ValidationError) as excinfo:
        asyncio.run(handler.prepare(ChatRequest.model_validate(body)))
    assert excinfo.value.message == message
    assert agent.created == 0


def test_most_recent_user_message_is_sent():
    agent = ScriptedAgentClient()
    request = ChatRequest.model_validate({"messages": [
        {"role": "user", "content": "first question"},
        {"role": "assistant", "content": "first answer"},
        {"role": "USER", "content": "second question"},
        {"role": "assistant", "content": "thinking..."},
    ]})
    asyncio.run(run_chat(make_handler(agent), request, Transport()))

    assert agent.received == [("thread-1", "second question")]


def test_conversation_id_is_generated_when_absent():
    agent = ScriptedAgentClient()
    prepared = asyncio.run(make_handler(agent).prepare(user_request()))
    assert uuid.UUID(prepared.conversation_id)
    assert prepared.backend_session_id == "thread-1"


def test_same_conversation_reuses_the_backend_session():
    agent = ScriptedAgentClient()
    registry = SessionRegistry(InMemorySessionStore(), agent.create_session)

    async def main():
        first = await ChatRequestHandler(registry, agent).prepare(user_request(conversation_id="conv-9"))
        second = await ChatRequestHandler(registry, agent).prepare(user_request(conversation_id="conv-9"))
        return first, second

    first, second = asyncio.run(main())
    assert first.backend_session_id == second.backend_session_id
    assert first.message_id != second.message_id
    assert agent.created == 1


def test_session_failure_moves_to_erroring():
    agent = ScriptedAgentClient(create_error=SessionCreationError("backend unavailable"))
    handler = make_handler(agent)

    with pytest.raises(SessionCreationError):
        asyncio.run(handler.prepare(user_request(conversation_id="conv-1")))
    assert handler.state is ChatState.ERRORING


class ProducerAborted(BaseException):
    """Escapes `except Exception`, like an interpreter-level abort inside the agent stream."""


class AbortingAgentClient(ScriptedAgentClient):
    async def stream_response(self, session_id, message, cancel=None):
        yield "partial "
        raise ProducerAborted()


def test_producer_dying_without_end_marker_ends_with_error_event():
    agent = AbortingAgentClient()
    handler = make_handler(agent)
    transport = Transport()

    async def main():
        return await asyncio.wait_for(run_chat(handler, user_request(), transport), timeout=5)

    prepared = asyncio.run(main())
    events = transport.events
    assert_event_grammar(events)
    assert [e["type"] for e in events] == ["metadata", "chunk", "error"]
    assert events[-1]["data"]["correlationId"] == prepared.correlation_id
    assert handler.state is ChatState.ERRORING
