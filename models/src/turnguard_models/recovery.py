"""Checkpoint, recovery context and report models."""

from datetime import datetime, timezone
from typing import Any
from pydantic import BaseModel, Field
import uuid

from turnguard_models.conversation import (
    ConversationState,
    ConversationStatus,
    Turn,
)


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Checkpoint(BaseModel):
    """Immutable snapshot of a conversation at a confirmed-stable point."""

    id: str = Field(default_factory=_uuid, description="Unique checkpoint ID")
    conversation_id: str = Field(..., description="Parent conversation ID")
    checkpoint_name: str = Field(..., description="Name, unique within the conversation")
    message_count: int = Field(..., ge=0, description="Active turns at capture time")
    tool_call_count: int = Field(..., ge=0, description="Tool calls on active turns at capture time")
    conversation_state: ConversationState = Field(
        default=ConversationState.STABLE, description="State at capture time"
    )
    messages_snapshot: list[dict[str, Any]] = Field(
        default_factory=list, description="Serialized tail of the message log"
    )
    context_data: dict[str, Any] = Field(default_factory=dict, description="Auxiliary context")
    created_at: datetime = Field(default_factory=_utcnow, description="Creation timestamp")


class CheckpointSummary(BaseModel):
    """Checkpoint listing entry without the snapshot payload."""

    name: str
    message_count: int
    tool_call_count: int
    created_at: datetime
    context: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_checkpoint(cls, checkpoint: Checkpoint) -> "CheckpointSummary":
        return cls(
            name=checkpoint.checkpoint_name,
            message_count=checkpoint.message_count,
            tool_call_count=checkpoint.tool_call_count,
            created_at=checkpoint.created_at,
            context=checkpoint.context_data,
        )


class RecoveryContext(BaseModel):
    """Short-lived record of an interrupted operation awaiting resolution."""

    id: str = Field(default_factory=_uuid, description="Unique context ID")
    user_id: str = Field(..., description="Owning user ID")
    conversation_id: str = Field(..., description="Conversation ID")
    context_data: dict[str, Any] = Field(..., description="Interrupted operation payload")
    expires_at: datetime = Field(..., description="Expiry timestamp")
    created_at: datetime = Field(default_factory=_utcnow, description="Creation timestamp")
    updated_at: datetime = Field(default_factory=_utcnow, description="Last refresh timestamp")

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    @property
    def outstanding_call_ids(self) -> list[str]:
        return list(self.context_data.get("outstanding_call_ids", []))


class RecordTurnResult(BaseModel):
    """Outcome of recording a turn."""

    conversation_id: str
    turn: Turn
    state: ConversationState
    checkpoint_created: bool = False
    repaired: bool = False


class ConversationInspection(BaseModel):
    """Diagnostic view of a conversation's integrity."""

    conversation_id: str
    state: ConversationState
    status: ConversationStatus
    state_reason: str | None = None
    last_stable_at: datetime | None = None
    last_cleanup_at: datetime | None = None
    open_recovery: bool = False
    message_count: int = 0
    tool_call_count: int = 0
    outstanding_call_ids: list[str] = Field(default_factory=list)
    checkpoints: list[CheckpointSummary] = Field(default_factory=list)
    health_score: int = 100


class SweepReport(BaseModel):
    """Counters from one sweeper pass."""

    conversations_checked: int = 0
    promoted: int = 0
    repaired: int = 0
    corrupted: int = 0
    recovery_contexts_removed: int = 0
    checkpoints_pruned: int = 0
    errors: int = 0
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: datetime | None = None
