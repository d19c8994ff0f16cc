"""Shared Pydantic models for turnguard."""

from turnguard_models.conversation import (
    Conversation,
    ConversationState,
    ConversationStatus,
    NewTurn,
    ReasonCode,
    Role,
    ToolCallRequest,
    ToolCallSpec,
    Turn,
)
from turnguard_models.recovery import (
    Checkpoint,
    CheckpointSummary,
    ConversationInspection,
    RecordTurnResult,
    RecoveryContext,
    SweepReport,
)

__all__ = [
    # Conversation log
    "Conversation",
    "ConversationState",
    "ConversationStatus",
    "NewTurn",
    "ReasonCode",
    "Role",
    "ToolCallRequest",
    "ToolCallSpec",
    "Turn",
    # Recovery
    "Checkpoint",
    "CheckpointSummary",
    "ConversationInspection",
    "RecordTurnResult",
    "RecoveryContext",
    "SweepReport",
]
