"""In-process store for tests and single-process development."""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator

from turnguard_models import (
    Checkpoint,
    Conversation,
    ConversationState,
    ConversationStatus,
    NewTurn,
    RecoveryContext,
    ToolCallRequest,
    Turn,
)
from turnguard.db.base import Store, StoreSession


class MemorySession(StoreSession):
    """Reads return deep copies so callers never alias stored rows."""

    def __init__(self, store: "MemoryStore"):
        self._store = store
        self.created: list[str] = []

    # ============= Conversation Operations =============

    async def create_conversation(
        self, user_id: str, title: str | None, now: datetime
    ) -> Conversation:
        conversation = Conversation(
            user_id=user_id,
            title=title or "New Conversation",
            created_at=now,
            updated_at=now,
        )
        self._store.conversations[conversation.id] = conversation
        self.created.append(conversation.id)
        return conversation.model_copy(deep=True)

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        conversation = self._store.conversations.get(conversation_id)
        return conversation.model_copy(deep=True) if conversation else None

    async def set_conversation_state(
        self,
        conversation_id: str,
        state: ConversationState,
        reason: str | None,
        now: datetime,
        last_stable_at: datetime | None = None,
    ) -> None:
        conversation = self._store.conversations[conversation_id]
        conversation.conversation_state = state
        conversation.state_reason = reason
        conversation.updated_at = now
        if last_stable_at is not None:
            conversation.last_stable_at = last_stable_at

    async def set_conversation_status(
        self,
        conversation_id: str,
        status: ConversationStatus,
        now: datetime,
        title: str | None = None,
    ) -> None:
        conversation = self._store.conversations[conversation_id]
        conversation.status = status
        conversation.updated_at = now
        if title is not None:
            conversation.title = title

    async def mark_cleaned(self, conversation_id: str, at: datetime) -> None:
        conversation = self._store.conversations.get(conversation_id)
        if conversation:
            conversation.last_cleanup_at = at

    async def list_conversation_ids_by_state(
        self, states: list[ConversationState]
    ) -> list[str]:
        return [
            c.id for c in self._store.conversations.values() if c.conversation_state in states
        ]

    # ============= Turn Operations =============

    async def list_turns(
        self, conversation_id: str, include_superseded: bool = False
    ) -> list[Turn]:
        turns = sorted(self._store.turns[conversation_id], key=lambda t: t.seq)
        return [
            t.model_copy(deep=True) for t in turns if include_superseded or not t.superseded
        ]

    async def append_turn(
        self, conversation_id: str, new_turn: NewTurn, now: datetime
    ) -> Turn:
        log = self._store.turns[conversation_id]
        seq = max((t.seq for t in log), default=0) + 1
        turn = Turn(
            conversation_id=conversation_id,
            seq=seq,
            role=new_turn.role,
            content=new_turn.content,
            tool_call_id=new_turn.tool_call_id,
            blocked=new_turn.blocked,
            created_at=now,
        )
        turn.tool_calls = [
            ToolCallRequest(
                conversation_id=conversation_id,
                turn_id=turn.id,
                call_id=requested.call_id,
                name=requested.name,
                arguments=requested.arguments,
                created_at=now,
            )
            for requested in new_turn.tool_calls
        ]
        log.append(turn)
        conversation = self._store.conversations.get(conversation_id)
        if conversation:
            conversation.updated_at = now
        return turn.model_copy(deep=True)

    async def supersede_turns(self, turn_ids: list[str]) -> int:
        count = 0
        ids = set(turn_ids)
        for log in self._store.turns.values():
            for turn in log:
                if turn.id in ids and not turn.superseded:
                    turn.superseded = True
                    count += 1
        return count

    async def delete_turns(self, turn_ids: list[str]) -> int:
        ids = set(turn_ids)
        count = 0
        for conversation_id, log in self._store.turns.items():
            kept = [t for t in log if t.id not in ids]
            count += len(log) - len(kept)
            self._store.turns[conversation_id] = kept
        return count

    async def abandon_tool_calls(self, conversation_id: str, call_ids: list[str]) -> int:
        ids = set(call_ids)
        count = 0
        for turn in self._store.turns[conversation_id]:
            for call in turn.tool_calls:
                if call.call_id in ids and not call.abandoned:
                    call.abandoned = True
                    count += 1
        return count

    # ============= Checkpoint Operations =============

    async def insert_checkpoint(self, checkpoint: Checkpoint) -> tuple[Checkpoint, bool]:
        existing = await self.get_checkpoint(checkpoint.conversation_id, checkpoint.checkpoint_name)
        if existing:
            return existing, False
        self._store.checkpoints[checkpoint.conversation_id].append(checkpoint.model_copy(deep=True))
        return checkpoint, True

    async def get_checkpoint(
        self, conversation_id: str, checkpoint_name: str
    ) -> Checkpoint | None:
        for checkpoint in self._store.checkpoints[conversation_id]:
            if checkpoint.checkpoint_name == checkpoint_name:
                return checkpoint.model_copy(deep=True)
        return None

    async def latest_checkpoint(self, conversation_id: str) -> Checkpoint | None:
        checkpoints = await self.list_checkpoints(conversation_id, limit=1)
        return checkpoints[0] if checkpoints else None

    async def list_checkpoints(
        self, conversation_id: str, limit: int = 10
    ) -> list[Checkpoint]:
        ordered = sorted(
            self._store.checkpoints[conversation_id],
            key=lambda c: (c.message_count, c.created_at),
            reverse=True,
        )
        return [c.model_copy(deep=True) for c in ordered[:limit]]

    async def delete_checkpoints_after(self, conversation_id: str, message_count: int) -> int:
        checkpoints = self._store.checkpoints[conversation_id]
        kept = [c for c in checkpoints if c.message_count <= message_count]
        self._store.checkpoints[conversation_id] = kept
        return len(checkpoints) - len(kept)

    async def prune_checkpoints(
        self, conversation_id: str, keep: int, older_than: datetime
    ) -> int:
        ordered = await self.list_checkpoints(conversation_id, limit=len(self._store.checkpoints[conversation_id]))
        doomed = {
            c.id
            for rank, c in enumerate(ordered)
            if rank > 0 and (rank >= keep or c.created_at < older_than)
        }
        checkpoints = self._store.checkpoints[conversation_id]
        self._store.checkpoints[conversation_id] = [c for c in checkpoints if c.id not in doomed]
        return len(doomed)

    async def list_conversation_ids_with_prunable_checkpoints(
        self, keep: int, older_than: datetime
    ) -> list[str]:
        result = []
        for conversation_id, checkpoints in self._store.checkpoints.items():
            if len(checkpoints) < 2:
                continue
            if len(checkpoints) > keep or any(c.created_at < older_than for c in checkpoints):
                result.append(conversation_id)
        return result

    # ============= Recovery Context Operations =============

    async def upsert_recovery_context(self, context: RecoveryContext) -> RecoveryContext:
        key = (context.user_id, context.conversation_id)
        existing = self._store.recovery_contexts.get(key)
        if existing:
            existing.context_data = context.context_data
            existing.expires_at = context.expires_at
            existing.updated_at = context.updated_at
            return existing.model_copy(deep=True)
        self._store.recovery_contexts[key] = context.model_copy(deep=True)
        return context

    async def get_recovery_context(
        self, user_id: str, conversation_id: str
    ) -> RecoveryContext | None:
        context = self._store.recovery_contexts.get((user_id, conversation_id))
        return context.model_copy(deep=True) if context else None

    async def get_conversation_recovery_context(
        self, conversation_id: str
    ) -> RecoveryContext | None:
        for context in self._store.recovery_contexts.values():
            if context.conversation_id == conversation_id:
                return context.model_copy(deep=True)
        return None

    async def delete_recovery_context(self, context_id: str) -> bool:
        for key, context in list(self._store.recovery_contexts.items()):
            if context.id == context_id:
                del self._store.recovery_contexts[key]
                return True
        return False

    async def delete_conversation_recovery_contexts(self, conversation_id: str) -> int:
        keys = [k for k, c in self._store.recovery_contexts.items() if c.conversation_id == conversation_id]
        for key in keys:
            del self._store.recovery_contexts[key]
        return len(keys)

    async def delete_expired_recovery_contexts(self, now: datetime) -> int:
        keys = [k for k, c in self._store.recovery_contexts.items() if c.is_expired(now)]
        for key in keys:
            del self._store.recovery_contexts[key]
        return len(keys)


class MemoryStore(Store):
    """Dictionaries guarded by one asyncio.Lock per conversation.

    A locked block that raises is rolled back: the conversation's rows are
    restored from a snapshot taken on entry, and conversations created
    inside the block are dropped.
    """

    def __init__(self):
        self.conversations: dict[str, Conversation] = {}
        self.turns: dict[str, list[Turn]] = defaultdict(list)
        self.checkpoints: dict[str, list[Checkpoint]] = defaultdict(list)
        self.recovery_contexts: dict[tuple[str, str], RecoveryContext] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def locked(self, conversation_id: str) -> AsyncIterator[StoreSession]:
        async with self._locks[conversation_id]:
            snapshot = self._snapshot(conversation_id)
            session = MemorySession(self)
            try:
                yield session
            except BaseException:
                for created_id in session.created:
                    self._drop(created_id)
                self._drop(conversation_id)
                self._restore(conversation_id, snapshot)
                raise

    @asynccontextmanager
    async def session(self) -> AsyncIterator[StoreSession]:
        yield MemorySession(self)

    def _snapshot(self, conversation_id: str) -> dict:
        conversation = self.conversations.get(conversation_id)
        return {
            "conversation": conversation.model_copy(deep=True) if conversation else None,
            "turns": [t.model_copy(deep=True) for t in self.turns.get(conversation_id, [])],
            "checkpoints": [
                c.model_copy(deep=True) for c in self.checkpoints.get(conversation_id, [])
            ],
            "recovery_contexts": {
                key: c.model_copy(deep=True)
                for key, c in self.recovery_contexts.items()
                if c.conversation_id == conversation_id
            },
        }

    def _drop(self, conversation_id: str) -> None:
        self.conversations.pop(conversation_id, None)
        self.turns.pop(conversation_id, None)
        self.checkpoints.pop(conversation_id, None)
        for key in [k for k, c in self.recovery_contexts.items() if c.conversation_id == conversation_id]:
            del self.recovery_contexts[key]

    def _restore(self, conversation_id: str, snapshot: dict) -> None:
        if snapshot["conversation"] is not None:
            self.conversations[conversation_id] = snapshot["conversation"]
        if snapshot["turns"]:
            self.turns[conversation_id] = snapshot["turns"]
        if snapshot["checkpoints"]:
            self.checkpoints[conversation_id] = snapshot["checkpoints"]
        self.recovery_contexts.update(snapshot["recovery_contexts"])
