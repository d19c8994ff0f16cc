"""HTTP error boundary for conversation errors."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse

from turnguard.config import Settings
from turnguard.errors import (
    CheckpointError,
    CheckpointNotFoundError,
    ConversationIntegrityError,
    ConversationNotFoundError,
    TurnRejectedError,
)

logger = logging.getLogger(__name__)

USER_MESSAGE = "I encountered a conversation error. Please refresh and try again."

ERROR_PAGE = (
    "<html><body><h1>Conversation Error</h1>"
    "<p>Please refresh and try again.</p></body></html>"
)


def wants_json(request: Request) -> bool:
    return (
        "application/json" in request.headers.get("accept", "")
        or "application/json" in request.headers.get("content-type", "")
        or request.url.path.startswith("/api/")
    )


def install_error_handlers(app: FastAPI, settings: Settings) -> None:
    """Register exception handlers on the app.

    Corruption becomes a 500 with a user-facing message; rejected turns are
    409, as are refused checkpoint requests, and unknown conversations or
    checkpoints 404. With conversation_error_middleware off, integrity
    errors are left to the framework's default handling.
    """

    @app.exception_handler(TurnRejectedError)
    async def turn_rejected_handler(request: Request, exc: TurnRejectedError):
        return JSONResponse(
            status_code=409,
            content={
                "error": "turn_rejected",
                "reason": exc.reason,
                "conversation_id": exc.conversation_id,
                "detail": str(exc),
            },
        )

    @app.exception_handler(ConversationNotFoundError)
    async def conversation_not_found_handler(request: Request, exc: ConversationNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(CheckpointNotFoundError)
    async def checkpoint_not_found_handler(request: Request, exc: CheckpointNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(CheckpointError)
    async def checkpoint_refused_handler(request: Request, exc: CheckpointError):
        return JSONResponse(
            status_code=409,
            content={
                "error": "checkpoint_refused",
                "conversation_id": exc.conversation_id,
                "detail": str(exc),
            },
        )

    if not settings.conversation_error_middleware:
        return

    @app.exception_handler(ConversationIntegrityError)
    async def integrity_error_handler(request: Request, exc: ConversationIntegrityError):
        user_id = request.headers.get("x-user-id")
        logger.error(
            f"Conversation error in request {request.method} {request.url.path} "
            f"(user {user_id}): {exc}"
        )
        if settings.debug_conversation_errors:
            raise exc

        if wants_json(request):
            return JSONResponse(
                status_code=500,
                content={
                    "error": "conversation_integrity",
                    "reason": exc.reason,
                    "conversation_id": exc.conversation_id,
                    "message": USER_MESSAGE,
                },
            )
        return HTMLResponse(status_code=500, content=ERROR_PAGE)
