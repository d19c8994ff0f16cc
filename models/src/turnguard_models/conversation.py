"""Conversation, turn and tool-call models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal
from pydantic import BaseModel, Field, model_validator
import uuid


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


Role = Literal["user", "assistant", "tool", "system"]


class ConversationState(str, Enum):
    """Integrity state of a conversation's message log."""

    STABLE = "stable"
    PENDING = "pending"  # Tool call in flight, inside the grace window
    REPAIRING = "repairing"
    CORRUPTED = "corrupted"  # Terminal until restore or reset


class ConversationStatus(str, Enum):
    """Lifecycle status, independent of integrity state."""

    ACTIVE = "active"
    ARCHIVED = "archived"
    ERROR = "error"


class ReasonCode(str, Enum):
    """Machine-readable reasons attached to rejections and state changes."""

    DUPLICATE_TOOL_CALL_ID = "duplicate_tool_call_id"
    ORPHANED_TOOL_RESULT = "orphaned_tool_result"
    MISSING_TOOL_CALL_ID = "missing_tool_call_id"
    ABANDONED_TOOL_CALL = "abandoned_tool_call"
    DANGLING_TOOL_CALL = "dangling_tool_call"
    INCOMPLETE_TOOL_BATCH = "incomplete_tool_batch"
    NO_CHECKPOINT = "no_checkpoint"
    WOULD_DISCARD_USER_CONTENT = "would_discard_user_content"
    REPAIR_UNSUCCESSFUL = "repair_unsuccessful"
    CONVERSATION_CORRUPTED = "conversation_corrupted"


class Conversation(BaseModel):
    """A chat whose message log is under integrity tracking."""

    id: str = Field(default_factory=_uuid, description="Unique conversation ID")
    user_id: str = Field(..., description="Owning user ID")
    title: str | None = Field(None, description="Conversation title")
    status: ConversationStatus = Field(
        default=ConversationStatus.ACTIVE, description="Lifecycle status"
    )
    conversation_state: ConversationState = Field(
        default=ConversationState.STABLE, description="Integrity state"
    )
    state_reason: str | None = Field(
        None, description="Reason code for the last non-stable transition"
    )
    last_stable_at: datetime | None = Field(
        None, description="Last time the log was confirmed valid"
    )
    last_cleanup_at: datetime | None = Field(None, description="Last sweep touching this conversation")
    created_at: datetime = Field(default_factory=_utcnow, description="Creation timestamp")
    updated_at: datetime = Field(default_factory=_utcnow, description="Last update timestamp")


class ToolCallSpec(BaseModel):
    """A tool call as requested by the model provider."""

    call_id: str = Field(..., min_length=1, description="Provider-issued call identifier")
    name: str = Field(..., description="Tool name")
    arguments: dict[str, Any] = Field(default_factory=dict, description="Opaque tool arguments")


class ToolCallRequest(BaseModel):
    """A persisted tool call attached to an assistant turn."""

    id: str = Field(default_factory=_uuid, description="Unique request ID")
    conversation_id: str = Field(..., description="Parent conversation ID")
    turn_id: str = Field(..., description="Assistant turn that issued the call")
    call_id: str = Field(..., description="Provider-issued call identifier")
    name: str = Field(..., description="Tool name")
    arguments: dict[str, Any] = Field(default_factory=dict, description="Opaque tool arguments")
    abandoned: bool = Field(False, description="Given up on during repair or restore")
    created_at: datetime = Field(default_factory=_utcnow, description="Creation timestamp")


class NewTurn(BaseModel):
    """A turn as submitted by the model-invocation layer, before persistence."""

    role: Role = Field(..., description="Turn role")
    content: str = Field("", description="Turn content")
    tool_calls: list[ToolCallSpec] = Field(
        default_factory=list, description="Tool calls requested by an assistant turn"
    )
    tool_call_id: str | None = Field(None, description="Call identifier answered by a tool turn")
    blocked: bool = Field(False, description="Withheld by moderation")

    @model_validator(mode="after")
    def check_tool_linkage(self) -> "NewTurn":
        if self.tool_calls and self.role != "assistant":
            raise ValueError("only assistant turns may request tool calls")
        call_ids = [call.call_id for call in self.tool_calls]
        if len(call_ids) != len(set(call_ids)):
            raise ValueError("tool call identifiers must be unique within a turn")
        if self.role == "tool" and not self.tool_call_id:
            raise ValueError("tool turns must carry a tool_call_id")
        if self.role != "tool" and self.tool_call_id is not None:
            raise ValueError("only tool turns may carry a tool_call_id")
        return self


class Turn(BaseModel):
    """A persisted entry in a conversation's message log."""

    id: str = Field(default_factory=_uuid, description="Unique turn ID")
    conversation_id: str = Field(..., description="Parent conversation ID")
    seq: int = Field(..., description="Position in the conversation's total order")
    role: Role = Field(..., description="Turn role")
    content: str = Field("", description="Turn content")
    tool_calls: list[ToolCallRequest] = Field(
        default_factory=list, description="Tool calls requested by this turn"
    )
    tool_call_id: str | None = Field(None, description="Call identifier answered by this turn")
    blocked: bool = Field(False, description="Withheld by moderation")
    superseded: bool = Field(False, description="Soft-removed by a restore, kept for audit")
    created_at: datetime = Field(default_factory=_utcnow, description="Creation timestamp")
