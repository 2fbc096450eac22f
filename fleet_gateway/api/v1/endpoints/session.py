# The module is to define the API endpoints for conversation session management.
# Date: 2026-10-19
# Version: 0.1.0

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse

from fleet_gateway.api.deps import get_session_registry
from fleet_gateway.models.api_models import ErrorResponse
from fleet_gateway.models.common import ConversationSession
from fleet_gateway.services.session_registry import SessionRegistry
from fleet_gateway.utils.logger import console

router = APIRouter()

NOT_FOUND = ErrorResponse(error="Conversation not found").model_dump(by_alias=True, exclude_none=True)


@router.get("/{conversation_id}",
            response_model=ConversationSession,
            response_model_by_alias=True,
            responses={404: {"model": ErrorResponse}})
async def get_session(conversation_id: str, registry: SessionRegistry = Depends(get_session_registry)):
    """
    Returns the backend session a conversation is bound to.
    """
    session = await registry.get(conversation_id)
    if session is None:
        return JSONResponse(status_code=404, content=NOT_FOUND)
    return session


@router.delete("/{conversation_id}", status_code=204, responses={404: {"model": ErrorResponse}})
async def forget_session(conversation_id: str, registry: SessionRegistry = Depends(get_session_registry)):
    """
    Unbinds a conversation from its backend session. The next chat request
    for this conversation starts a fresh backend session.
    """
    if not await registry.forget(conversation_id):
        return JSONResponse(status_code=404, content=NOT_FOUND)
    console.info(f"Conversation '{conversation_id}' detached from its backend session.")
    return Response(status_code=204)
