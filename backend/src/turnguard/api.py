"""FastAPI application exposing conversation integrity operations."""

import logging

from fastapi import FastAPI, Header
from dbos import DBOS

from turnguard.config import settings
from turnguard.middleware import install_error_handlers
from turnguard.models import (
    CaptureCheckpointRequest,
    CaptureCheckpointResponse,
    CheckpointListResponse,
    ConversationResponse,
    CreateConversationRequest,
    HistoryResponse,
    RecordTurnRequest,
    ResetResponse,
    RestoreRequest,
    RestoreResponse,
    TurnListResponse,
)
from turnguard.runtime import manager, store, sweeper
from turnguard_models import (
    CheckpointSummary,
    ConversationInspection,
    RecordTurnResult,
    SweepReport,
)

# Import DBOS config to initialize DBOS before defining workflows
from turnguard.workflows.dbos_config import dbos_config  # noqa: F401

# Import workflows so they are registered with DBOS
from turnguard.workflows.sweeper import scheduled_sweep  # noqa: F401

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Turnguard API",
    description="Conversation integrity and recovery for tool-using chat",
    version="0.1.0",
)

install_error_handlers(app, settings)


@app.on_event("startup")
async def startup_event():
    """Initialize storage and DBOS on startup."""
    await store.connect()
    await store.ensure_tables_exist()

    if settings.sweep_enabled:
        DBOS.launch()
    else:
        logger.info("Scheduled sweep disabled")


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up on shutdown."""
    await store.disconnect()


def get_user_id(user_id: str | None) -> str:
    return user_id or "local-dev-user"


# ============= Health & Info =============


@app.get("/")
async def root():
    return {"message": "Turnguard API", "version": "0.1.0"}


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "storage": settings.storage_backend,
        "sweep": "active" if settings.sweep_enabled else "disabled",
    }


# ============= Conversation Endpoints =============


@app.post("/conversations", response_model=ConversationResponse)
async def create_conversation(
    request: CreateConversationRequest,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """Start a new, empty conversation."""
    conversation = await manager.create_conversation(get_user_id(user_id), request.title)
    return ConversationResponse(conversation=conversation)


@app.get("/conversations/{conversation_id}", response_model=ConversationInspection)
async def inspect_conversation(conversation_id: str):
    """Integrity diagnostics for a conversation."""
    return await manager.inspect(conversation_id)


@app.get("/conversations/{conversation_id}/turns", response_model=TurnListResponse)
async def list_turns(conversation_id: str, include_superseded: bool = False):
    turns = await manager.list_turns(conversation_id, include_superseded)
    return TurnListResponse(conversation_id=conversation_id, turns=turns, total=len(turns))


@app.post("/conversations/{conversation_id}/turns", response_model=RecordTurnResult)
async def record_turn(
    conversation_id: str,
    request: RecordTurnRequest,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """Append a turn. Rejected turns return 409, corruption 500."""
    return await manager.record_turn(
        conversation_id,
        request.turn,
        actor_id=get_user_id(user_id),
        force_checkpoint=request.force_checkpoint,
    )


@app.get("/conversations/{conversation_id}/history", response_model=HistoryResponse)
async def provider_history(conversation_id: str):
    """Chat history safe to replay to a model provider."""
    messages = await manager.provider_history(conversation_id)
    return HistoryResponse(conversation_id=conversation_id, messages=messages)


# ============= Recovery Endpoints =============


@app.get("/conversations/{conversation_id}/checkpoints", response_model=CheckpointListResponse)
async def list_checkpoints(conversation_id: str, limit: int = 10):
    checkpoints = await manager.list_checkpoints(conversation_id, limit=limit)
    return CheckpointListResponse(conversation_id=conversation_id, checkpoints=checkpoints)


@app.post(
    "/conversations/{conversation_id}/checkpoints", response_model=CaptureCheckpointResponse
)
async def capture_checkpoint(conversation_id: str, request: CaptureCheckpointRequest):
    checkpoint, created = await manager.capture_checkpoint(conversation_id, request.reason)
    return CaptureCheckpointResponse(
        conversation_id=conversation_id,
        checkpoint=CheckpointSummary.from_checkpoint(checkpoint),
        created=created,
    )


@app.post("/conversations/{conversation_id}/restore", response_model=RestoreResponse)
async def restore_conversation(
    conversation_id: str,
    request: RestoreRequest,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """Operator recovery: roll the conversation back to a checkpoint."""
    checkpoint = await manager.force_restore(
        conversation_id, request.checkpoint_name, actor_id=get_user_id(user_id)
    )
    return RestoreResponse(
        conversation_id=conversation_id,
        checkpoint=CheckpointSummary.from_checkpoint(checkpoint),
    )


@app.post("/conversations/{conversation_id}/reset", response_model=ResetResponse)
async def reset_conversation(
    conversation_id: str,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """Operator recovery: clear the conversation's log."""
    cleared = await manager.reset(conversation_id, actor_id=get_user_id(user_id))
    return ResetResponse(conversation_id=conversation_id, turns_cleared=cleared)


@app.post("/conversations/{conversation_id}/branch", response_model=ConversationResponse)
async def branch_conversation(
    conversation_id: str,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """Operator recovery: archive the conversation and continue in a copy of its stable prefix."""
    branched = await manager.branch(conversation_id, actor_id=get_user_id(user_id))
    return ConversationResponse(conversation=branched)


# ============= Admin Endpoints =============


@app.post("/admin/sweep", response_model=SweepReport)
async def run_sweep():
    """Run a sweeper pass now instead of waiting for the schedule."""
    return await sweeper.run_once()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)
