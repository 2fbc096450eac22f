# The module wires the gateway services into FastAPI dependencies.
# Date: 2026-10-19
# Version: 0.1.0

from functools import lru_cache

from fastapi import Depends

from fleet_gateway.core.chat_handler import ChatRequestHandler
from fleet_gateway.core.config import Settings, get_settings
from fleet_gateway.services.agent_client import BaseAgentClient, build_agent_client
from fleet_gateway.services.session_registry import (
    InMemorySessionStore,
    RedisSessionStore,
    SessionRegistry,
    SessionStore,
)


def build_session_store(settings: Settings) -> SessionStore:
    """
    Acts as a factory for the session store selected by SESSION_BACKEND.

    Raises:
        ValueError: If the backend is unknown or REDIS is chosen without REDIS_URL.
    """
    backend = settings.SESSION_BACKEND.upper()
    if backend == "MEMORY":
        return InMemorySessionStore(ttl=settings.SESSION_TTL, max_entries=settings.SESSION_MAX_ENTRIES)
    if backend == "REDIS":
        if not settings.REDIS_URL:
            raise ValueError("REDIS_URL configuration is required when SESSION_BACKEND is REDIS")
        return RedisSessionStore.from_url(settings.REDIS_URL, ttl=settings.SESSION_TTL)
    raise ValueError(f"Unsupported session backend: {backend}")


# One agent client and one registry per process, created on first use.
@lru_cache
def get_agent_client() -> BaseAgentClient:
    return build_agent_client(get_settings())


@lru_cache
def get_session_registry() -> SessionRegistry:
    agent_client = get_agent_client()
    return SessionRegistry(build_session_store(get_settings()), agent_client.create_session)


def get_chat_handler(
    registry: SessionRegistry = Depends(get_session_registry),
    agent_client: BaseAgentClient = Depends(get_agent_client),
    settings: Settings = Depends(get_settings),
) -> ChatRequestHandler:
    return ChatRequestHandler(registry, agent_client, queue_size=settings.STREAM_QUEUE_SIZE)


async def close_services():
    """Releases the process-wide clients if they were ever created."""
    if get_session_registry.cache_info().currsize:
        await get_session_registry().close()
        get_session_registry.cache_clear()
    if get_agent_client.cache_info().currsize:
        await get_agent_client().aclose()
        get_agent_client.cache_clear()
