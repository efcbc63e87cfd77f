"""
Pushfan Backend — FastAPI Entry Point

This is the main application module for the push notification service.
It initializes the FastAPI app, registers the route handlers, and maps
service errors to HTTP responses.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.api.notifications import router as notifications_router
from app.api.tokens import router as tokens_router
from app.core.config import PROJECT_NAME
from app.core.exceptions import GatewayError, PushServiceError

logger = logging.getLogger(__name__)

app = FastAPI(
    title=f"{PROJECT_NAME} API",
    description="Push notification fan-out with failure-driven token cleanup",
    version="0.1.0",
)

# --- Register API routers ---
app.include_router(tokens_router)
app.include_router(notifications_router)


@app.exception_handler(PushServiceError)
async def push_service_error_handler(request: Request, exc: PushServiceError):
    """Render service errors as `{"detail": ...}` with their status code."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    content = {"detail": exc.message}
    if isinstance(exc, GatewayError) and exc.notification_id:
        content["notification_id"] = exc.notification_id
    return JSONResponse(status_code=exc.status_code, content=content)


@app.get("/health")
async def health_check():
    """Health check endpoint. Returns service status."""
    return {"status": "ok"}
