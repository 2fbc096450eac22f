# The module is to define the API endpoints for streaming chat interactions.
# Date: 2026-10-19
# Version: 0.1.0

from typing import Dict

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse

from fleet_gateway.api.deps import get_agent_client, get_chat_handler
from fleet_gateway.core.chat_handler import ChatRequestHandler, new_correlation_id
from fleet_gateway.core.config import Settings, get_settings
from fleet_gateway.core.exceptions import GatewayError, ValidationError
from fleet_gateway.models.api_models import ChatRequest, ErrorResponse, HealthResponse, ReadinessResponse
from fleet_gateway.services.agent_client import BaseAgentClient
from fleet_gateway.services.event_stream import event_stream_response
from fleet_gateway.utils.logger import console

router = APIRouter()


def cors_headers(settings: Settings) -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": settings.CORS_ALLOW_ORIGIN,
        "Access-Control-Allow-Methods": "POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Authorization",
    }


def error_response(status_code: int, error: str, correlation_id: str = None) -> JSONResponse:
    body = ErrorResponse(error=error, correlation_id=correlation_id)
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True, exclude_none=True))


@router.post("", summary="Stream a chat answer as Server-Sent Events")
async def chat(
    request: ChatRequest,
    handler: ChatRequestHandler = Depends(get_chat_handler),
    settings: Settings = Depends(get_settings),
):
    """
    Answers the most recent user message of the transcript.

    The response is a `text/event-stream` of `metadata`, `chunk`... and a final
    `done` or `error` event. Invalid requests get HTTP 400, and failures before
    the stream opens get HTTP 500 with a correlation id.
    """
    correlation_id = new_correlation_id()
    console.info(f"Received chat request. CorrelationId: {correlation_id}")

    try:
        prepared = await handler.prepare(request, correlation_id)
    except ValidationError as e:
        return error_response(e.http_status, e.message)
    except GatewayError as e:
        console.error(f"Error processing chat request ({e.code}). CorrelationId: {correlation_id}")
        return error_response(e.http_status, "Internal server error", correlation_id)
    except Exception:
        console.error(f"Error processing chat request. CorrelationId: {correlation_id}")
        return error_response(500, "Internal server error", correlation_id)

    async def produce(writer, cancel):
        await handler.stream(prepared, writer, cancel)

    return event_stream_response(produce, headers=cors_headers(settings))


@router.options("", summary="CORS preflight for the chat endpoint")
def chat_preflight(settings: Settings = Depends(get_settings)):
    console.info("Handling CORS preflight for chat endpoint")
    headers = cors_headers(settings)
    headers["Access-Control-Max-Age"] = "86400"
    return Response(status_code=200, headers=headers)


@router.get("/health", response_model=HealthResponse, response_model_by_alias=True, summary="Health Check")
def chat_health(settings: Settings = Depends(get_settings)):
    """Reports that the chat gateway is up."""
    return HealthResponse(service=settings.SERVICE_NAME, version=settings.SERVICE_VERSION)


@router.get("/ready",
            response_model=ReadinessResponse,
            response_model_by_alias=True,
            responses={503: {"model": ReadinessResponse}},
            summary="Readiness Check")
async def chat_ready(
    agent_client: BaseAgentClient = Depends(get_agent_client),
    settings: Settings = Depends(get_settings),
):
    """
    Reports whether the agent backend answers. Returns 503 when it does not,
    so load balancers stop routing chats to an instance that cannot serve them.
    """
    if await agent_client.check_health():
        return ReadinessResponse(status="ready", service=settings.SERVICE_NAME, version=settings.SERVICE_VERSION)

    console.warning(f"Readiness check failed: the {agent_client.name} agent backend is unreachable.")
    body = ReadinessResponse(
        status="unavailable",
        service=settings.SERVICE_NAME,
        version=settings.SERVICE_VERSION,
        reason="Agent service is unreachable",
    )
    return JSONResponse(status_code=503, content=body.model_dump(mode="json", by_alias=True))
