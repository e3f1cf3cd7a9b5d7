"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from devark.api import admin, completions
from devark.api.services import build_services
from devark.core.config import load_config
from devark.logging import configure_logging, get_correlation_id
from devark.middleware.request_context import RequestContextMiddleware

configure_logging()

logger = logging.getLogger("devark.app")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    services = build_services(load_config())
    app.state.services = services
    await services.start()
    try:
        yield
    finally:
        await services.shutdown()


app = FastAPI(
    title="DevArk Copilot Core",
    version="0.1.0",
    lifespan=lifespan,
    openapi_url="/api/openapi.json",
)
app.include_router(completions.router)
app.include_router(admin.router)
app.add_middleware(RequestContextMiddleware)


@app.get("/health")
def health(request: Request) -> dict:
    services = getattr(request.app.state, "services", None)
    return {
        "status": "ok",
        "manager_initialized": bool(services and services.manager.is_initialized()),
        "hooks_running": bool(services and services.pipeline.is_running),
    }


@app.exception_handler(Exception)
async def unexpected_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "Unhandled error",
        extra={
            "event": "request_error",
            "path": request.url.path,
            "request_id": get_correlation_id(),
        },
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "message": "Internal server error",
                "type": "internal_server_error",
                "code": "internal_error",
            }
        },
    )
