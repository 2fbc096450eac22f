# The module is to define the error taxonomy of the chat gateway.
# Date: 2026-10-19
# Version: 0.1.0

from typing import Optional


class GatewayError(Exception):
    """
    Base class for every error raised by the gateway.

    Attributes:
        code (str): Machine readable error code.
        message (str): Human readable description, safe for logs.
        http_status (int): Status code used when the error surfaces before streaming.
        extra (dict): Additional context such as run or thread ids.
    """
    code: str = "GATEWAY_ERROR"
    http_status: int = 500

    def __init__(self, message: str, **extra):
        self.message = message
        self.extra = extra
        super().__init__(message)


class ValidationError(GatewayError):
    """The chat request is malformed or carries no usable user message."""
    code = "VALIDATION_ERROR"
    http_status = 400


class SessionCreationError(GatewayError):
    """The agent backend could not establish a session for a conversation."""
    code = "SESSION_CREATION_ERROR"


class StreamingError(GatewayError):
    """The agent backend failed while a response was being streamed."""
    code = "STREAMING_ERROR"


class AgentServiceError(StreamingError):
    """A call to the agent backend failed at the transport or HTTP level."""
    code = "AGENT_SERVICE_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None, **extra):
        self.status_code = status_code
        super().__init__(message, status_code=status_code, **extra)


class RunFailedError(StreamingError):
    """A run reached a terminal state other than 'completed'."""
    code = "RUN_FAILED"

    def __init__(self, run_id: str, status: str, detail: Optional[str] = None):
        self.run_id = run_id
        self.status = status
        self.detail = detail
        message = f"Run '{run_id}' ended with status '{status}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, run_id=run_id, status=status)


class RunTimeoutError(StreamingError):
    """A run did not reach a terminal state within the configured duration."""
    code = "RUN_TIMEOUT"

    def __init__(self, run_id: str, waited: float):
        self.run_id = run_id
        self.waited = waited
        super().__init__(f"Run '{run_id}' still pending after {waited:.1f}s", run_id=run_id)


class CancellationError(GatewayError):
    """Processing was halted because the cancel signal fired. Never shown to clients."""
    code = "CANCELLED"
