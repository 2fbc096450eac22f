import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from fleet_gateway.api.deps import get_agent_client, get_session_registry
from fleet_gateway.core.config import Settings, get_settings
from fleet_gateway.main import create_app
from fleet_gateway.services.agent_client import BaseAgentClient
from fleet_gateway.services.session_registry import InMemorySessionStore, SessionRegistry


class ScriptedAgentClient(BaseAgentClient):
    """Agent backend that replays a fixed list of fragments, optionally failing afterwards."""
    name = "SCRIPTED"

    def __init__(self, fragments=("Hello", ", ", "world"), error=None, create_error=None, healthy=True):
        self.fragments = list(fragments)
        self.healthy = healthy
        self.error = error
        self.create_error = create_error
        self.created = 0
        self.received = []

    async def create_session(self):
        self.created += 1
        if self.create_error is not None:
            raise self.create_error
        return f"thread-{self.created}"

    async def check_health(self):
        return self.healthy

    async def stream_response(self, session_id, message, cancel=None):
        self.received.append((session_id, message))
        for fragment in self.fragments:
            await asyncio.sleep(0)
            if cancel is not None and cancel.is_set():
                return
            yield fragment
        if self.error is not None:
            raise self.error


def parse_events(body):
    """Splits an event-stream body into the decoded JSON of each frame."""
    if isinstance(body, bytes):
        body = body.decode("utf-8")
    events = []
    for frame in body.split("\n\n"):
        if frame.startswith("data: "):
            events.append(json.loads(frame[len("data: "):]))
    return events


def assert_event_grammar(events):
    """metadata, chunk*, then exactly one of done/error."""
    types = [e["type"] for e in events]
    assert types, "no events written"
    assert types[0] == "metadata"
    assert types[-1] in ("done", "error")
    assert all(t == "chunk" for t in types[1:-1])


@pytest.fixture
def settings():
    return Settings(AGENT_PROVIDER="MOCK", SERVICE_NAME="Fleet Test Chat", SERVICE_VERSION="9.9.9")


@pytest.fixture
def agent():
    return ScriptedAgentClient()


@pytest.fixture
def registry(agent):
    return SessionRegistry(InMemorySessionStore(), agent.create_session)


@pytest.fixture
def client(settings, agent, registry):
    app = create_app(settings)
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_agent_client] = lambda: agent
    app.dependency_overrides[get_session_registry] = lambda: registry
    return TestClient(app)
