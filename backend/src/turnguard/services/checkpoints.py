"""Checkpoint capture and restore.

Checkpoints are named after the message count they capture, so capturing
twice at the same point returns the existing checkpoint instead of a copy.
Callers hold the conversation lock and pass in its session.
"""

import logging
from datetime import datetime, timedelta

from turnguard_models import Checkpoint, Conversation, ConversationState, Turn
from turnguard.config import Settings
from turnguard.db.base import StoreSession
from turnguard.errors import CheckpointError
from turnguard.services.integrity import live_turns, message_count, tool_call_count

logger = logging.getLogger(__name__)


class CheckpointManager:
    """Creates, finds, restores and prunes conversation checkpoints."""

    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def max_age(self) -> timedelta:
        return timedelta(days=self.settings.checkpoint_max_age_days)

    @staticmethod
    def checkpoint_name(count: int) -> str:
        return f"msg-{count:06d}"

    def is_due(self, count: int, latest: Checkpoint | None) -> bool:
        """Debounce automatic captures to one per checkpoint_interval turns.

        A non-empty conversation whose only checkpoint (if any) is of the
        empty log is always due.
        """
        if latest is None or latest.message_count == 0:
            return count > 0
        return count - latest.message_count >= self.settings.checkpoint_interval

    async def capture(
        self,
        session: StoreSession,
        conversation: Conversation,
        turns: list[Turn],
        reason: str,
        now: datetime,
    ) -> tuple[Checkpoint, bool]:
        """Capture the current log; returns (checkpoint, created)."""
        live = live_turns(turns)
        count = message_count(live)
        checkpoint = Checkpoint(
            conversation_id=conversation.id,
            checkpoint_name=self.checkpoint_name(count),
            message_count=count,
            tool_call_count=tool_call_count(live),
            conversation_state=ConversationState.STABLE,
            messages_snapshot=self._snapshot(live),
            context_data=self._context(conversation, live, reason),
            created_at=now,
        )
        stored, created = await session.insert_checkpoint(checkpoint)
        if created:
            logger.info(
                f"Created checkpoint '{stored.checkpoint_name}' for conversation "
                f"{conversation.id} ({reason})"
            )
        return stored, created

    async def latest(self, session: StoreSession, conversation_id: str) -> Checkpoint | None:
        return await session.latest_checkpoint(conversation_id)

    async def restore(
        self,
        session: StoreSession,
        conversation: Conversation,
        checkpoint: Checkpoint,
        now: datetime,
    ) -> int:
        """Cut the log back to the checkpoint and mark the conversation stable.

        Turns past the checkpoint are superseded or deleted per restore_mode,
        their tool calls abandoned. Checkpoints captured past this one describe
        history that no longer exists and are dropped. Returns the number of
        turns removed from the log.
        """
        live = await session.list_turns(conversation.id)
        if checkpoint.message_count > len(live):
            raise CheckpointError(
                f"Checkpoint '{checkpoint.checkpoint_name}' is ahead of conversation "
                f"{conversation.id} ({checkpoint.message_count} > {len(live)} turns)",
                conversation.id,
            )

        beyond = live[checkpoint.message_count:]
        call_ids = [call.call_id for turn in beyond for call in turn.tool_calls]
        turn_ids = [turn.id for turn in beyond]

        await session.abandon_tool_calls(conversation.id, call_ids)
        if self.settings.restore_mode == "delete":
            await session.delete_turns(turn_ids)
        else:
            await session.supersede_turns(turn_ids)
        dropped = await session.delete_checkpoints_after(conversation.id, checkpoint.message_count)

        await session.set_conversation_state(
            conversation.id, ConversationState.STABLE, None, now, last_stable_at=now
        )
        logger.info(
            f"Restored conversation {conversation.id} to '{checkpoint.checkpoint_name}': "
            f"{len(beyond)} turns {self.settings.restore_mode}d, {dropped} later checkpoints dropped"
        )
        return len(beyond)

    async def prune(self, session: StoreSession, conversation_id: str, now: datetime) -> int:
        """Apply the retention policy. The latest checkpoint is always kept."""
        return await session.prune_checkpoints(
            conversation_id, self.settings.checkpoint_retention, now - self.max_age
        )

    def _snapshot(self, live: list[Turn]) -> list[dict]:
        tail = live[-self.settings.snapshot_tail_size:] if self.settings.snapshot_tail_size else []
        return [turn.model_dump(mode="json") for turn in tail]

    def _context(self, conversation: Conversation, live: list[Turn], reason: str) -> dict:
        return {
            "reason": reason,
            "user_id": conversation.user_id,
            "title": conversation.title,
            "conversation_length": len(live),
            "last_seq": live[-1].seq if live else 0,
        }
