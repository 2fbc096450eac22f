# fleet_gateway/services/agent_client.py
# Adapter over the hosted agent's thread/run protocol (OpenAI SDK), exposed as a cancellable stream of text fragments.
# Date: 2026-10-19
# Version: 0.1.0

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Dict, Iterator, List, Optional

import httpx
from openai import APIError, APIStatusError, AsyncOpenAI

from fleet_gateway.core.config import Settings
from fleet_gateway.core.exceptions import (
    AgentServiceError,
    CancellationError,
    RunFailedError,
    RunTimeoutError,
    SessionCreationError,
)
from fleet_gateway.utils.aio import until_cancelled
from fleet_gateway.utils.logger import console


class RunStatus(str, Enum):
    """Lifecycle states of a run, as reported by the agent service."""
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    CANCELLING = "cancelling"
    REQUIRES_ACTION = "requires_action"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    INCOMPLETE = "incomplete"

    @classmethod
    def parse(cls, value: Any) -> Optional["RunStatus"]:
        try:
            return cls(str(value).lower())
        except ValueError:
            return None

    @property
    def is_terminal(self) -> bool:
        return self not in (RunStatus.QUEUED, RunStatus.IN_PROGRESS, RunStatus.CANCELLING)


@dataclass(frozen=True)
class PollPolicy:
    """
    Timing of run status polls.
    Attributes:
        interval (float): Delay before the first poll, in seconds.
        backoff (float): Multiplier applied after each poll; 1.0 keeps the delay fixed.
        max_interval (float): Upper bound for a single delay.
        max_duration (float): Polling gives up once a run has been pending this long.
    """
    interval: float = 0.5
    backoff: float = 1.0
    max_interval: float = 5.0
    max_duration: float = 300.0

    def delays(self) -> Iterator[float]:
        delay = self.interval
        while True:
            yield delay
            delay = min(delay * self.backoff, self.max_interval)


class BaseAgentClient(ABC):
    """
    Interface of an agent backend as seen by the gateway.
    """
    name: str

    @abstractmethod
    async def create_session(self) -> str:
        """
        Creates a backend session (thread) and returns its id.

        Raises:
            SessionCreationError: If the backend cannot create the session.
        """
        pass

    @abstractmethod
    def stream_response(self, session_id: str, message: str,
                        cancel: Optional[asyncio.Event] = None) -> AsyncIterator[str]:
        """
        Sends `message` into the session and yields the answer as text fragments, in order.

        The iterator is single-use. Setting `cancel` ends it without yielding
        anything further. A failed run ends it with a StreamingError after the
        fragments produced so far.
        """
        pass

    @abstractmethod
    async def check_health(self) -> bool:
        """Returns whether the backend is reachable and answering. Never raises."""
        pass

    async def aclose(self):
        pass


def _message_text(message: Dict[str, Any]) -> str:
    parts = []
    for item in message.get("content") or []:
        if item.get("type") == "text":
            text = item.get("text")
            parts.append(text.get("value", "") if isinstance(text, dict) else str(text or ""))
    return "".join(parts)


class _RunOutput:
    """
    Remembers how much of each message of a run has been yielded already.

    `cursor` is the id of the last message that was completed and fully
    yielded; listings start after it. A message still being written is
    re-read on the next poll and only its new suffix is returned.
    """
    ASSISTANT_ROLES = ("assistant", "agent")

    def __init__(self):
        self.cursor: Optional[str] = None
        self._emitted: Dict[str, int] = {}

    def collect(self, messages: List[Dict[str, Any]]) -> List[str]:
        fragments = []
        for message in messages:
            message_id = message.get("id")
            if message.get("role") in self.ASSISTANT_ROLES:
                text = _message_text(message)
                emitted = self._emitted.get(message_id, 0)
                if len(text) > emitted:
                    fragments.append(text[emitted:])
                    self._emitted[message_id] = len(text)
                if message.get("status") == "in_progress":
                    # Later messages wait until this one is finished
                    break
            self.cursor = message_id
            self._emitted.pop(message_id, None)
        return fragments


class FoundryAgentClient(BaseAgentClient):
    """
    Talks to a hosted agent service that exposes the OpenAI Assistants protocol
    of threads, messages and runs (Azure AI Foundry Agents and compatible services).

    One answer is produced by posting the user message, starting a run, then
    polling the run while listing the messages it writes.
    """
    name = "FOUNDRY"

    def __init__(self, endpoint: str, agent_id: str, api_key: Optional[str] = None,
                 api_version: Optional[str] = None, poll_policy: Optional[PollPolicy] = None,
                 timeout: float = 30.0, max_retries: int = 2,
                 http_client: Optional[httpx.AsyncClient] = None):
        self._client = AsyncOpenAI(
            base_url=endpoint,
            # The SDK requires a key; Azure-style services read the 'api-key' header instead
            api_key=api_key or "unused",
            default_headers={"api-key": api_key} if api_key else None,
            default_query={"api-version": api_version} if api_version else None,
            timeout=timeout,
            max_retries=max_retries,
            http_client=http_client,
        )
        self._agent_id = agent_id
        self._poll = poll_policy or PollPolicy()
        console.info(f"Agent client initialized with endpoint: {endpoint}, AgentId: {agent_id}")

    async def aclose(self):
        await self._client.close()

    async def _call(self, action: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except APIStatusError as e:
            raise AgentServiceError(f"{action} returned HTTP {e.status_code}", status_code=e.status_code) from e
        except APIError as e:
            raise AgentServiceError(f"{action} failed: {e.__class__.__name__}") from e

    async def create_session(self) -> str:
        try:
            thread = await self._call("Thread creation", self._client.beta.threads.create())
        except AgentServiceError as e:
            raise SessionCreationError(f"Could not create a thread: {e.message}", status_code=e.status_code) from e

        thread_id = getattr(thread, "id", None)
        if not thread_id:
            raise SessionCreationError("Thread creation returned no id")
        console.info(f"Created new thread {thread_id}")
        return thread_id

    async def check_health(self) -> bool:
        try:
            await self._call("Agent listing", self._client.beta.assistants.list(limit=1))
        except AgentServiceError as e:
            console.warning(f"Agent service health check failed: {e.message}")
            return False
        return True

    async def _post_message(self, thread_id: str, message: str):
        await self._call(
            f"Posting a message to thread '{thread_id}'",
            self._client.beta.threads.messages.create(thread_id, role="user", content=message),
        )

    async def _create_run(self, thread_id: str) -> Dict[str, Any]:
        run = await self._call(
            f"Run creation on thread '{thread_id}'",
            self._client.beta.threads.runs.create(thread_id, assistant_id=self._agent_id),
        )
        run = run.to_dict()
        if not run.get("id"):
            raise AgentServiceError(f"Run creation on thread '{thread_id}' returned no id")
        return run

    async def _get_run(self, thread_id: str, run_id: str) -> Dict[str, Any]:
        run = await self._call(
            f"Status of run '{run_id}'",
            self._client.beta.threads.runs.retrieve(run_id, thread_id=thread_id),
        )
        return run.to_dict()

    async def _cancel_run(self, thread_id: str, run_id: str):
        try:
            await self._call(
                f"Cancelling run '{run_id}'",
                self._client.beta.threads.runs.cancel(run_id, thread_id=thread_id),
            )
            console.info(f"Requested cancellation of run {run_id}")
        except AgentServiceError as e:
            console.warning(f"Could not cancel run {run_id}: {e.message}")

    async def _collect_messages(self, thread_id: str, run_id: str, after: Optional[str]) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"order": "asc", "run_id": run_id, "limit": 100}
        if after:
            params["after"] = after
        # The paginator follows has_more/last_id across pages
        pages = self._client.beta.threads.messages.list(thread_id, **params)
        return [message.to_dict() async for message in pages]

    async def _list_new_messages(self, thread_id: str, run_id: str, after: Optional[str]) -> List[Dict[str, Any]]:
        return await self._call(
            f"Listing messages of run '{run_id}'",
            self._collect_messages(thread_id, run_id, after),
        )

    async def stream_response(self, session_id: str, message: str,
                              cancel: Optional[asyncio.Event] = None) -> AsyncIterator[str]:
        cancel = cancel or asyncio.Event()
        loop = asyncio.get_running_loop()
        run_id = None
        try:
            await until_cancelled(self._post_message(session_id, message), cancel)
            run = await until_cancelled(self._create_run(session_id), cancel)
            run_id = run["id"]
            console.debug(f"Created run {run_id} for thread {session_id}")

            output = _RunOutput()
            started = loop.time()
            delays = self._poll.delays()
            while True:
                await until_cancelled(asyncio.sleep(next(delays)), cancel)
                run = await until_cancelled(self._get_run(session_id, run_id), cancel)
                status = RunStatus.parse(run.get("status"))
                if status is None:
                    console.warning(f"Run {run_id} reported unknown status '{run.get('status')}', still waiting.")

                messages = await until_cancelled(self._list_new_messages(session_id, run_id, output.cursor), cancel)
                for fragment in output.collect(messages):
                    if cancel.is_set():
                        return
                    yield fragment

                if status is not None and status.is_terminal:
                    break

                waited = loop.time() - started
                if waited >= self._poll.max_duration:
                    await self._cancel_run(session_id, run_id)
                    raise RunTimeoutError(run_id, waited)

            if status is not RunStatus.COMPLETED:
                if status is RunStatus.REQUIRES_ACTION:
                    # Tool outputs are never submitted from here, so the run would block the thread.
                    await self._cancel_run(session_id, run_id)
                last_error = run.get("last_error") or {}
                raise RunFailedError(run_id, status.value, last_error.get("message"))

            console.debug(f"Completed streaming for run {run_id}")
        except CancellationError:
            console.info(f"Streaming for run {run_id or '(not started)'} on thread {session_id} cancelled by the caller.")


def build_agent_client(settings: Settings) -> BaseAgentClient:
    """
    Acts as a factory for the agent backend selected by AGENT_PROVIDER.

    Raises:
        ValueError: If the provider is unknown or its settings are incomplete.
    """
    provider = settings.AGENT_PROVIDER.upper()

    if provider == "MOCK":
        from fleet_gateway.services.mock_agent import MockAgentClient
        return MockAgentClient(chunk_delay=settings.MOCK_CHUNK_DELAY)

    if provider == "FOUNDRY":
        if not settings.FOUNDRY_AGENT_ENDPOINT:
            raise ValueError("FOUNDRY_AGENT_ENDPOINT configuration is required")
        if not settings.FOUNDRY_AGENT_ID:
            raise ValueError("FOUNDRY_AGENT_ID configuration is required")
        return FoundryAgentClient(
            endpoint=settings.FOUNDRY_AGENT_ENDPOINT,
            agent_id=settings.FOUNDRY_AGENT_ID,
            api_key=settings.FOUNDRY_API_KEY,
            api_version=settings.FOUNDRY_API_VERSION,
            poll_policy=PollPolicy(
                interval=settings.AGENT_POLL_INTERVAL,
                backoff=settings.AGENT_POLL_BACKOFF,
                max_interval=settings.AGENT_POLL_MAX_INTERVAL,
                max_duration=settings.AGENT_MAX_RUN_DURATION,
            ),
            timeout=settings.AGENT_REQUEST_TIMEOUT,
            max_retries=settings.AGENT_MAX_RETRIES,
        )

    raise ValueError(f"Unsupported or misconfigured agent provider: {provider}")
