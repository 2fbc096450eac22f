# The module is to define the configuration settings for the chat gateway.
# Date: 2026-10-19
# Version: 0.1.0

from pydantic import Field
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional, Dict, Any

class Settings(BaseSettings):
    """
    The Settings class is used to define the configuration settings for the gateway.
    It inherits from BaseSettings, which allows it to load environment variables
    and provides type validation for the settings.
    Attributes:
        AGENT_PROVIDER (str): Which agent backend to use, 'FOUNDRY' or 'MOCK'.
        FOUNDRY_AGENT_ENDPOINT (str): Base URL of the hosted agent REST API.
        FOUNDRY_AGENT_ID (str): The agent (assistant) id that runs are started with.
        FOUNDRY_API_KEY (str): Key sent in the 'api-key' header.
        FOUNDRY_API_VERSION (str): Value of the 'api-version' query parameter.
        AGENT_MAX_RETRIES (int): Retries the SDK makes on connection errors and 5xx answers.
        AGENT_POLL_INTERVAL (float): Delay before the first run status poll, in seconds.
        AGENT_POLL_BACKOFF (float): Multiplier applied to the delay after every poll.
        AGENT_POLL_MAX_INTERVAL (float): Upper bound for the poll delay.
        AGENT_MAX_RUN_DURATION (float): Polling gives up on a run after this many seconds.
        SESSION_BACKEND (str): Where conversation sessions live, 'MEMORY' or 'REDIS'.
        SESSION_TTL (int): Lifetime of a conversation session in seconds, unset means forever. Must be positive.
        SESSION_MAX_ENTRIES (int): Cap on in-memory sessions, oldest evicted first.
        STREAM_QUEUE_SIZE (int): Fragments buffered between the agent and the client.
    """
    # Service
    SERVICE_NAME: str = "Fleet Assistant Chat"
    SERVICE_VERSION: str = "1.0.0"
    API_PREFIX: str = ""
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"
    CORS_ALLOW_ORIGIN: str = "*"

    # Agent Provider Switch
    AGENT_PROVIDER: str = "FOUNDRY"

    # FOUNDRY
    FOUNDRY_AGENT_ENDPOINT: Optional[str] = None
    FOUNDRY_AGENT_ID: Optional[str] = None
    FOUNDRY_API_KEY: Optional[str] = None
    FOUNDRY_API_VERSION: Optional[str] = None

    # Run polling
    AGENT_REQUEST_TIMEOUT: float = 30.0
    AGENT_MAX_RETRIES: int = 2
    AGENT_POLL_INTERVAL: float = 0.5
    AGENT_POLL_BACKOFF: float = 1.0
    AGENT_POLL_MAX_INTERVAL: float = 5.0
    AGENT_MAX_RUN_DURATION: float = 300.0

    # MOCK
    MOCK_CHUNK_DELAY: float = 0.075

    # Sessions
    SESSION_BACKEND: str = "MEMORY"
    SESSION_TTL: Optional[int] = Field(default=None, gt=0)
    SESSION_MAX_ENTRIES: Optional[int] = Field(default=None, gt=0)

    # REDIS
    REDIS_URL: Optional[str] = None

    # Streaming
    STREAM_QUEUE_SIZE: int = 16

    class Config:
        env_file = ".env"
        env_file_encoding = 'utf-8'

    def masked_summary(self) -> Dict[str, Any]:
        """Returns the settings as a dict with secrets replaced, for startup display."""
        summary = self.model_dump()
        for key in ("FOUNDRY_API_KEY", "REDIS_URL"):
            if summary.get(key):
                summary[key] = "***"
        return summary

# lru_cache to cache the settings instance.
@lru_cache
def get_settings() -> Settings:
    return Settings()
