# The module provides the FastAPI application that serves as the main entry point for the chat gateway.
# Date: 2026-10-19
# Version: 0.1.0

from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from fleet_gateway.api.deps import close_services
from fleet_gateway.api.v1.api import api_router
from fleet_gateway.core.config import Settings, get_settings
from fleet_gateway.utils.logger import console


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    console.rule(settings.SERVICE_NAME)
    console.display_data_as_table(settings.masked_summary(), "Gateway configuration")
    yield
    await close_services()
    console.info("Chat gateway services closed.")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    console.set_level(settings.LOG_LEVEL)

    app = FastAPI(
        title=settings.SERVICE_NAME,
        version=settings.SERVICE_VERSION,
        description="Streams answers of the hosted fleet assistant agent as Server-Sent Events.",
        lifespan=lifespan,
    )

    @app.exception_handler(RequestValidationError)
    async def invalid_request_handler(request: Request, exc: RequestValidationError):
        console.warning(f"Rejected malformed request to {request.url.path}: {len(exc.errors())} validation error(s).")
        return JSONResponse(status_code=400, content={"error": "Invalid request format"})

    @app.get("/", summary="Health Check", tags=["Status"])
    def read_root():
        """Root endpoint to check if the service is alive."""
        console.info("Health check endpoint was hit.")
        return {"message": f"{settings.SERVICE_NAME} is alive and running!"}

    app.include_router(api_router, prefix=settings.API_PREFIX)
    return app


app = create_app()


def run():
    settings = get_settings()
    uvicorn.run("fleet_gateway.main:app", host=settings.HOST, port=settings.PORT)
