"""API-specific request and response models."""

from typing import Any
from pydantic import BaseModel, Field

from turnguard_models import CheckpointSummary, Conversation, NewTurn, Turn


class CreateConversationRequest(BaseModel):
    """Request model for starting a conversation."""

    title: str | None = Field(None, description="Conversation title")


class RecordTurnRequest(BaseModel):
    """Request model for appending a turn."""

    turn: NewTurn
    force_checkpoint: bool = Field(False, description="Capture a checkpoint if the log ends stable")


class TurnListResponse(BaseModel):
    """Response model for a conversation's message log."""

    conversation_id: str
    turns: list[Turn]
    total: int


class HistoryResponse(BaseModel):
    """Provider-ready chat history."""

    conversation_id: str
    messages: list[dict[str, Any]]


class CheckpointListResponse(BaseModel):
    conversation_id: str
    checkpoints: list[CheckpointSummary]


class CaptureCheckpointRequest(BaseModel):
    reason: str = Field("manual", description="Recorded in the checkpoint's context data")


class CaptureCheckpointResponse(BaseModel):
    conversation_id: str
    checkpoint: CheckpointSummary
    created: bool


class RestoreRequest(BaseModel):
    """Request model for an operator restore."""

    checkpoint_name: str = Field("latest", description="Checkpoint name, or 'latest'")


class RestoreResponse(BaseModel):
    conversation_id: str
    checkpoint: CheckpointSummary


class ResetResponse(BaseModel):
    conversation_id: str
    turns_cleared: int


class ConversationResponse(BaseModel):
    conversation: Conversation
