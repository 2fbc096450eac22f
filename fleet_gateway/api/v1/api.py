# The module is to define the API router for the chat gateway.
# Date: 2026-10-19
# Version: 0.1.0

from fastapi import APIRouter
from fleet_gateway.api.v1.endpoints import session, chat

api_router = APIRouter()

# Include the session router with a '/chat/sessions' prefix; registered first so
# '/chat/sessions/...' is never shadowed by a chat route
api_router.include_router(session.router, prefix="/chat/sessions", tags=["Session Management"])

# Include the chat router with a '/chat' prefix
api_router.include_router(chat.router, prefix="/chat", tags=["Conversation"])
