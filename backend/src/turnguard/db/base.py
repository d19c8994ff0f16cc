"""Storage interface for conversations, turns, checkpoints and recovery contexts.

All mutation happens through a session obtained from Store.locked(), which
serializes work per conversation. Store.session() gives unlocked access for
read-only callers and for creating new conversations.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import datetime

from turnguard_models import (
    Checkpoint,
    Conversation,
    ConversationState,
    ConversationStatus,
    NewTurn,
    RecoveryContext,
    Turn,
)


class StoreSession(ABC):
    """Operations available inside a (possibly locked) storage session."""

    # ============= Conversation Operations =============

    @abstractmethod
    async def create_conversation(
        self, user_id: str, title: str | None, now: datetime
    ) -> Conversation: ...

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Conversation | None: ...

    @abstractmethod
    async def set_conversation_state(
        self,
        conversation_id: str,
        state: ConversationState,
        reason: str | None,
        now: datetime,
        last_stable_at: datetime | None = None,
    ) -> None:
        """Set integrity state and reason; last_stable_at only when given."""

    @abstractmethod
    async def set_conversation_status(
        self,
        conversation_id: str,
        status: ConversationStatus,
        now: datetime,
        title: str | None = None,
    ) -> None:
        """Set lifecycle status; the title only when given."""

    @abstractmethod
    async def mark_cleaned(self, conversation_id: str, at: datetime) -> None: ...

    @abstractmethod
    async def list_conversation_ids_by_state(
        self, states: list[ConversationState]
    ) -> list[str]: ...

    # ============= Turn Operations =============

    @abstractmethod
    async def list_turns(
        self, conversation_id: str, include_superseded: bool = False
    ) -> list[Turn]:
        """Turns ordered by seq with their tool calls attached."""

    @abstractmethod
    async def append_turn(
        self, conversation_id: str, new_turn: NewTurn, now: datetime
    ) -> Turn:
        """Persist a turn and its tool calls at the next sequence number."""

    @abstractmethod
    async def supersede_turns(self, turn_ids: list[str]) -> int: ...

    @abstractmethod
    async def delete_turns(self, turn_ids: list[str]) -> int: ...

    @abstractmethod
    async def abandon_tool_calls(self, conversation_id: str, call_ids: list[str]) -> int: ...

    # ============= Checkpoint Operations =============

    @abstractmethod
    async def insert_checkpoint(self, checkpoint: Checkpoint) -> tuple[Checkpoint, bool]:
        """Insert unless the name exists; returns (stored checkpoint, created)."""

    @abstractmethod
    async def get_checkpoint(
        self, conversation_id: str, checkpoint_name: str
    ) -> Checkpoint | None: ...

    @abstractmethod
    async def latest_checkpoint(self, conversation_id: str) -> Checkpoint | None: ...

    @abstractmethod
    async def list_checkpoints(
        self, conversation_id: str, limit: int = 10
    ) -> list[Checkpoint]:
        """Most recent first."""

    @abstractmethod
    async def delete_checkpoints_after(self, conversation_id: str, message_count: int) -> int:
        """Delete checkpoints captured past the given message count."""

    @abstractmethod
    async def prune_checkpoints(
        self, conversation_id: str, keep: int, older_than: datetime
    ) -> int:
        """Delete checkpoints beyond the newest `keep` or created before
        `older_than`. The latest checkpoint always survives."""

    @abstractmethod
    async def list_conversation_ids_with_prunable_checkpoints(
        self, keep: int, older_than: datetime
    ) -> list[str]: ...

    # ============= Recovery Context Operations =============

    @abstractmethod
    async def upsert_recovery_context(self, context: RecoveryContext) -> RecoveryContext:
        """Insert, or refresh payload and expiry of the (user, conversation) row."""

    @abstractmethod
    async def get_recovery_context(
        self, user_id: str, conversation_id: str
    ) -> RecoveryContext | None: ...

    @abstractmethod
    async def get_conversation_recovery_context(
        self, conversation_id: str
    ) -> RecoveryContext | None: ...

    @abstractmethod
    async def delete_recovery_context(self, context_id: str) -> bool: ...

    @abstractmethod
    async def delete_conversation_recovery_contexts(self, conversation_id: str) -> int: ...

    @abstractmethod
    async def delete_expired_recovery_contexts(self, now: datetime) -> int: ...


class Store(ABC):
    """A durable (or in-process) backend."""

    async def connect(self):
        """Open connections."""

    async def disconnect(self):
        """Close connections."""

    async def ensure_tables_exist(self):
        """Create schema if missing."""

    @abstractmethod
    def locked(self, conversation_id: str) -> AbstractAsyncContextManager[StoreSession]:
        """Session holding the conversation's lock for its whole lifetime."""

    @abstractmethod
    def session(self) -> AbstractAsyncContextManager[StoreSession]:
        """Unlocked session for reads and conversation creation."""
