"""Conversation state machine - the single entry point for log mutation.

Every append goes through record_turn, which holds the conversation lock
around read, classify and write:

    stable    --append-->            stable | pending
    pending   --result supplied-->   stable
    pending   --grace elapsed-->     repairing
    repairing --repair succeeds-->   stable
    repairing --repair fails-->      corrupted

Corrupted is terminal for automated handling; only force_restore or reset
bring a conversation back. The grace window is evaluated lazily, on the next
record_turn or evaluate call (the sweeper calls evaluate for idle
conversations).
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from turnguard_models import (
    Checkpoint,
    CheckpointSummary,
    Conversation,
    ConversationInspection,
    ConversationState,
    ConversationStatus,
    NewTurn,
    ReasonCode,
    RecordTurnResult,
    RecoveryContext,
    ToolCallSpec,
    Turn,
)
from turnguard.config import Settings, settings as default_settings
from turnguard.db.base import Store, StoreSession
from turnguard.errors import (
    CheckpointError,
    CheckpointNotFoundError,
    ConversationIntegrityError,
    ConversationNotFoundError,
    TurnRejectedError,
)
from turnguard.services.checkpoints import CheckpointManager
from turnguard.services.history import build_provider_messages
from turnguard.services.integrity import (
    Classification,
    Verdict,
    check_append,
    classify,
    live_turns,
    message_count,
    tool_call_count,
)
from turnguard.services.recovery import RecoveryContextStore

logger = logging.getLogger(__name__)

LATEST = "latest"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TransitionOutcome:
    """Where a conversation ended up after one locked evaluation."""

    previous_state: ConversationState
    state: ConversationState
    checkpoint_created: bool = False
    repaired: bool = False
    error: ConversationIntegrityError | None = None


def health_score(
    conversation: Conversation, outstanding: int, now: datetime
) -> int:
    """0-100 score for dashboards; 100 is a quiet, confirmed-stable log."""
    score = 100
    score -= 10 * outstanding
    if conversation.conversation_state == ConversationState.CORRUPTED:
        score -= 30
    elif conversation.conversation_state == ConversationState.REPAIRING:
        score -= 15
    elif conversation.conversation_state == ConversationState.PENDING:
        score -= 5
    if conversation.last_stable_at and conversation.last_stable_at < now - timedelta(hours=1):
        score -= 20
    return max(score, 0)


class ConversationStateManager:
    """Orchestrates validation, checkpointing and recovery per conversation."""

    def __init__(
        self,
        store: Store,
        settings: Settings = default_settings,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.settings = settings
        self.checkpoints = CheckpointManager(settings)
        self.recovery = RecoveryContextStore(settings)
        self._clock = clock or _utcnow

    def now(self) -> datetime:
        return self._clock()

    @property
    def grace_window(self) -> timedelta:
        return timedelta(seconds=self.settings.grace_window_seconds)

    # ============= Public Operations =============

    async def create_conversation(self, user_id: str, title: str | None = None) -> Conversation:
        async with self.store.session() as session:
            conversation = await session.create_conversation(user_id, title, self.now())
        logger.info(f"Created conversation {conversation.id} for user {user_id}")
        return conversation

    async def record_turn(
        self,
        conversation_id: str,
        turn: NewTurn,
        *,
        actor_id: str | None = None,
        force_checkpoint: bool = False,
    ) -> RecordTurnResult:
        """Append a turn and move the conversation to its new state.

        Raises TurnRejectedError when the turn would break a hard invariant
        (nothing is persisted) and ConversationIntegrityError when the
        conversation is, or becomes, corrupted.
        """
        now = self.now()
        async with self.store.locked(conversation_id) as session:
            conversation = await self._get_conversation(session, conversation_id)
            self._raise_if_corrupted(conversation)

            turns = await session.list_turns(conversation_id)
            rejection = check_append(turns, turn)
            if rejection:
                logger.warning(
                    f"Rejected {turn.role} turn for conversation {conversation_id}: "
                    f"{rejection.reason.value} ({rejection.detail})"
                )
                raise TurnRejectedError(rejection.reason, conversation_id, rejection.detail)

            stored = await session.append_turn(conversation_id, turn, now)
            turns.append(stored)
            logger.debug(
                f"Recorded {stored.role} turn {stored.seq} for conversation {conversation_id}"
                + (f" (actor {actor_id})" if actor_id else "")
            )
            outcome = await self._settle(
                session, conversation, turns, now, force_checkpoint=force_checkpoint
            )

        # Raised after the lock is released so the corrupted state is committed
        if outcome.error:
            raise outcome.error

        return RecordTurnResult(
            conversation_id=conversation_id,
            turn=stored,
            state=outcome.state,
            checkpoint_created=outcome.checkpoint_created,
            repaired=outcome.repaired,
        )

    async def evaluate(
        self, conversation_id: str, raise_on_corrupted: bool = True
    ) -> TransitionOutcome:
        """Re-classify the stored log and apply the resulting transition."""
        now = self.now()
        async with self.store.locked(conversation_id) as session:
            conversation = await self._get_conversation(session, conversation_id)
            if conversation.conversation_state == ConversationState.CORRUPTED:
                outcome = TransitionOutcome(
                    previous_state=ConversationState.CORRUPTED,
                    state=ConversationState.CORRUPTED,
                    error=self._integrity_error(conversation),
                )
            else:
                turns = await session.list_turns(conversation_id)
                outcome = await self._settle(session, conversation, turns, now)

        if outcome.error and raise_on_corrupted:
            raise outcome.error
        return outcome

    async def force_restore(
        self,
        conversation_id: str,
        checkpoint_name: str = LATEST,
        *,
        actor_id: str | None = None,
    ) -> Checkpoint:
        """Operator recovery: cut the log back to a named (or the latest) checkpoint."""
        now = self.now()
        async with self.store.locked(conversation_id) as session:
            conversation = await self._get_conversation(session, conversation_id)
            if checkpoint_name == LATEST:
                checkpoint = await self.checkpoints.latest(session, conversation_id)
            else:
                checkpoint = await session.get_checkpoint(conversation_id, checkpoint_name)
            if checkpoint is None:
                raise CheckpointNotFoundError(conversation_id, checkpoint_name)

            removed = await self.checkpoints.restore(session, conversation, checkpoint, now)
            await session.delete_conversation_recovery_contexts(conversation_id)
            await self._reactivate(session, conversation, now)

        logger.info(
            f"Conversation {conversation_id} force-restored to '{checkpoint.checkpoint_name}' "
            f"by {actor_id or 'system'} ({removed} turns removed, was "
            f"{conversation.conversation_state.value})"
        )
        return checkpoint

    async def reset(self, conversation_id: str, *, actor_id: str | None = None) -> int:
        """Operator recovery: clear the log and start over from an empty, stable state."""
        now = self.now()
        async with self.store.locked(conversation_id) as session:
            conversation = await self._get_conversation(session, conversation_id)
            turns = await session.list_turns(conversation_id)

            call_ids = [call.call_id for t in turns for call in t.tool_calls]
            turn_ids = [t.id for t in turns]
            await session.abandon_tool_calls(conversation_id, call_ids)
            if self.settings.restore_mode == "delete":
                await session.delete_turns(turn_ids)
            else:
                await session.supersede_turns(turn_ids)
            await session.delete_checkpoints_after(conversation_id, -1)
            await session.delete_conversation_recovery_contexts(conversation_id)
            await session.set_conversation_state(
                conversation_id, ConversationState.STABLE, None, now, last_stable_at=now
            )
            await self._reactivate(session, conversation, now)

        logger.warning(
            f"Conversation {conversation_id} reset by {actor_id or 'system'}: "
            f"{len(turn_ids)} turns cleared (was {conversation.conversation_state.value})"
        )
        return len(turn_ids)

    async def branch(self, conversation_id: str, *, actor_id: str | None = None) -> Conversation:
        """Operator recovery: continue in a fresh conversation from the last checkpoint.

        The new conversation receives copies of the source's live turns up
        to its latest checkpoint (none when there is no checkpoint) and a
        checkpoint of its own. The source is archived with its log intact.
        """
        now = self.now()
        async with self.store.locked(conversation_id) as session:
            source = await self._get_conversation(session, conversation_id)
            checkpoint = await self.checkpoints.latest(session, conversation_id)
            turns = await session.list_turns(conversation_id)
            prefix = turns[: checkpoint.message_count] if checkpoint else []

            created = await session.create_conversation(
                source.user_id, f"{source.title or 'Conversation'} (Recovery)", now
            )
            for turn in prefix:
                await session.append_turn(created.id, self._copy_turn(turn), now)
            await session.abandon_tool_calls(
                created.id,
                [call.call_id for turn in prefix for call in turn.tool_calls if call.abandoned],
            )
            await session.set_conversation_state(
                created.id, ConversationState.STABLE, None, now, last_stable_at=now
            )
            if prefix:
                copied = await session.list_turns(created.id)
                await self.checkpoints.capture(session, created, copied, "branch", now)

            suffix = " (Corrupted)" if source.conversation_state == ConversationState.CORRUPTED else ""
            await session.set_conversation_status(
                conversation_id,
                ConversationStatus.ARCHIVED,
                now,
                title=f"{source.title}{suffix}" if suffix else None,
            )
            await session.delete_conversation_recovery_contexts(conversation_id)
            branched = await session.get_conversation(created.id)

        logger.warning(
            f"Conversation {conversation_id} branched to {created.id} by {actor_id or 'system'}: "
            f"{len(prefix)} turns carried over (was {source.conversation_state.value})"
        )
        return branched

    async def capture_checkpoint(
        self, conversation_id: str, reason: str = "manual"
    ) -> tuple[Checkpoint, bool]:
        """Capture now, ignoring the debounce. The log must be confirmed stable."""
        now = self.now()
        async with self.store.locked(conversation_id) as session:
            conversation = await self._get_conversation(session, conversation_id)
            self._raise_if_corrupted(conversation)
            turns = await session.list_turns(conversation_id)
            recovery = await session.get_conversation_recovery_context(conversation_id)
            classification = classify(
                turns, now=now, grace_window=self.grace_window, recovery=recovery
            )
            if not classification.checkpointable:
                raise CheckpointError(
                    f"Conversation {conversation_id} is not stable "
                    f"({classification.verdict.value}); refusing to checkpoint",
                    conversation_id,
                )
            return await self.checkpoints.capture(session, conversation, turns, reason, now)

    async def prune_checkpoints(self, conversation_id: str) -> int:
        async with self.store.locked(conversation_id) as session:
            return await self.checkpoints.prune(session, conversation_id, self.now())

    async def inspect(self, conversation_id: str) -> ConversationInspection:
        """Read-only diagnostics; takes no lock and changes nothing."""
        now = self.now()
        async with self.store.session() as session:
            conversation = await self._get_conversation(session, conversation_id)
            turns = await session.list_turns(conversation_id)
            recovery = await session.get_conversation_recovery_context(conversation_id)
            checkpoints = await session.list_checkpoints(conversation_id, limit=10)

        classification = classify(turns, now=now, grace_window=self.grace_window, recovery=recovery)
        return ConversationInspection(
            conversation_id=conversation_id,
            state=conversation.conversation_state,
            status=conversation.status,
            state_reason=conversation.state_reason,
            last_stable_at=conversation.last_stable_at,
            last_cleanup_at=conversation.last_cleanup_at,
            open_recovery=recovery is not None and not recovery.is_expired(now),
            message_count=message_count(turns),
            tool_call_count=tool_call_count(turns),
            outstanding_call_ids=classification.outstanding_ids,
            checkpoints=[CheckpointSummary.from_checkpoint(c) for c in checkpoints],
            health_score=health_score(conversation, len(classification.outstanding_ids), now),
        )

    async def list_checkpoints(
        self, conversation_id: str, limit: int = 10
    ) -> list[CheckpointSummary]:
        async with self.store.session() as session:
            await self._get_conversation(session, conversation_id)
            checkpoints = await session.list_checkpoints(conversation_id, limit=limit)
        return [CheckpointSummary.from_checkpoint(c) for c in checkpoints]

    async def list_turns(
        self, conversation_id: str, include_superseded: bool = False
    ) -> list[Turn]:
        async with self.store.session() as session:
            await self._get_conversation(session, conversation_id)
            return await session.list_turns(conversation_id, include_superseded)

    async def provider_history(self, conversation_id: str) -> list[dict]:
        """Chat history safe to send to a model provider."""
        async with self.store.session() as session:
            conversation = await self._get_conversation(session, conversation_id)
            self._raise_if_corrupted(conversation)
            turns = await session.list_turns(conversation_id)
        return build_provider_messages(turns)

    # ============= Transitions =============

    async def _settle(
        self,
        session: StoreSession,
        conversation: Conversation,
        turns: list[Turn],
        now: datetime,
        force_checkpoint: bool = False,
    ) -> TransitionOutcome:
        recovery = await session.get_conversation_recovery_context(conversation.id)
        classification = classify(
            turns, now=now, grace_window=self.grace_window, recovery=recovery
        )
        logger.debug(
            f"Conversation {conversation.id} classified {classification.verdict.value}"
            + (f" ({classification.reason.value})" if classification.reason else "")
        )

        if classification.verdict == Verdict.CORRUPT:
            return await self._mark_corrupted(session, conversation, classification.reason, now)
        if classification.verdict == Verdict.REPAIRABLE:
            return await self._repair(session, conversation, turns, classification, now)
        if classification.verdict == Verdict.STABLE_PENDING:
            return await self._mark_pending(session, conversation, turns, classification, recovery, now)
        return await self._mark_stable(
            session, conversation, turns, recovery, now, force_checkpoint=force_checkpoint
        )

    async def _mark_stable(
        self,
        session: StoreSession,
        conversation: Conversation,
        turns: list[Turn],
        recovery: RecoveryContext | None,
        now: datetime,
        force_checkpoint: bool = False,
        reason: str = "stable",
    ) -> TransitionOutcome:
        previous = conversation.conversation_state
        if recovery is not None:
            await self.recovery.resolve(session, recovery)
        await session.set_conversation_state(
            conversation.id, ConversationState.STABLE, None, now, last_stable_at=now
        )
        if previous != ConversationState.STABLE:
            logger.info(f"Conversation {conversation.id} {previous.value} -> stable")

        created = False
        latest = await self.checkpoints.latest(session, conversation.id)
        if force_checkpoint or self.checkpoints.is_due(message_count(turns), latest):
            _, created = await self.checkpoints.capture(session, conversation, turns, reason, now)

        return TransitionOutcome(previous, ConversationState.STABLE, checkpoint_created=created)

    async def _mark_pending(
        self,
        session: StoreSession,
        conversation: Conversation,
        turns: list[Turn],
        classification: Classification,
        recovery: RecoveryContext | None,
        now: datetime,
    ) -> TransitionOutcome:
        previous = conversation.conversation_state
        deadline = classification.oldest_outstanding_at + self.grace_window
        if recovery is not None and not recovery.is_expired(now):
            deadline = max(deadline, recovery.expires_at)

        await self.recovery.open(
            session,
            conversation.user_id,
            conversation.id,
            {
                "operation": "awaiting_tool_results",
                "outstanding_call_ids": classification.outstanding_ids,
                "message_count": message_count(turns),
            },
            now,
            ttl=deadline - now,
        )
        await session.set_conversation_state(
            conversation.id, ConversationState.PENDING, None, now
        )
        if previous != ConversationState.PENDING:
            logger.info(
                f"Conversation {conversation.id} {previous.value} -> pending, awaiting "
                f"{', '.join(classification.outstanding_ids)} until {deadline.isoformat()}"
            )
        return TransitionOutcome(previous, ConversationState.PENDING)

    async def _repair(
        self,
        session: StoreSession,
        conversation: Conversation,
        turns: list[Turn],
        classification: Classification,
        now: datetime,
    ) -> TransitionOutcome:
        previous = conversation.conversation_state
        logger.warning(
            f"Conversation {conversation.id} {previous.value} -> repairing: "
            f"{classification.reason.value} ({', '.join(classification.affected_ids)})"
        )
        await session.set_conversation_state(
            conversation.id, ConversationState.REPAIRING, classification.reason.value, now
        )
        context = await self.recovery.open(
            session,
            conversation.user_id,
            conversation.id,
            {
                "operation": "repair",
                "strategy": self.settings.repair_strategy,
                "reason": classification.reason.value,
                "outstanding_call_ids": classification.affected_ids,
                "message_count": message_count(turns),
            },
            now,
        )

        failure = await self._attempt_repair(session, conversation, turns, classification, now)
        if failure is not None:
            outcome = await self._mark_corrupted(session, conversation, failure, now)
            outcome.previous_state = previous
            return outcome

        repaired_turns = await session.list_turns(conversation.id)
        after = classify(repaired_turns, now=now, grace_window=self.grace_window)
        if after.verdict == Verdict.STABLE_PENDING:
            outcome = await self._mark_pending(
                session, conversation, repaired_turns, after, None, now
            )
        elif after.verdict == Verdict.STABLE:
            outcome = await self._mark_stable(
                session, conversation, repaired_turns, context, now, reason="repaired"
            )
        else:
            outcome = await self._mark_corrupted(
                session, conversation, ReasonCode.REPAIR_UNSUCCESSFUL, now
            )
            outcome.previous_state = previous
            return outcome

        outcome.previous_state = previous
        outcome.repaired = True
        logger.info(f"Repaired conversation {conversation.id} ({self.settings.repair_strategy})")
        return outcome

    async def _attempt_repair(
        self,
        session: StoreSession,
        conversation: Conversation,
        turns: list[Turn],
        classification: Classification,
        now: datetime,
    ) -> ReasonCode | None:
        """Run the configured strategy; returns the failure reason, if any."""
        latest = await self.checkpoints.latest(session, conversation.id)
        if latest is None:
            return ReasonCode.NO_CHECKPOINT

        if self.settings.repair_strategy == "abandon":
            abandoned = await session.abandon_tool_calls(conversation.id, classification.affected_ids)
            logger.info(
                f"Abandoned {abandoned} dangling tool calls in conversation {conversation.id}"
            )
            return None

        live = live_turns(turns)
        if latest.message_count > len(live):
            return ReasonCode.REPAIR_UNSUCCESSFUL
        if any(t.role == "user" and not t.blocked for t in live[latest.message_count:]):
            return ReasonCode.WOULD_DISCARD_USER_CONTENT
        await self.checkpoints.restore(session, conversation, latest, now)
        return None

    async def _mark_corrupted(
        self,
        session: StoreSession,
        conversation: Conversation,
        reason: ReasonCode,
        now: datetime,
    ) -> TransitionOutcome:
        await session.delete_conversation_recovery_contexts(conversation.id)
        await session.set_conversation_state(
            conversation.id, ConversationState.CORRUPTED, reason.value, now
        )
        if conversation.status == ConversationStatus.ACTIVE:
            await session.set_conversation_status(conversation.id, ConversationStatus.ERROR, now)
        logger.error(f"Conversation {conversation.id} is corrupted: {reason.value}")
        return TransitionOutcome(
            conversation.conversation_state,
            ConversationState.CORRUPTED,
            error=ConversationIntegrityError(reason, conversation.id),
        )

    # ============= Helpers =============

    async def _reactivate(self, session: StoreSession, conversation: Conversation, now: datetime) -> None:
        if conversation.status == ConversationStatus.ERROR:
            await session.set_conversation_status(conversation.id, ConversationStatus.ACTIVE, now)

    @staticmethod
    def _copy_turn(turn: Turn) -> NewTurn:
        return NewTurn(
            role=turn.role,
            content=turn.content,
            tool_calls=[
                ToolCallSpec(call_id=call.call_id, name=call.name, arguments=call.arguments)
                for call in turn.tool_calls
            ],
            tool_call_id=turn.tool_call_id,
            blocked=turn.blocked,
        )

    async def _get_conversation(self, session: StoreSession, conversation_id: str) -> Conversation:
        conversation = await session.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def _integrity_error(self, conversation: Conversation) -> ConversationIntegrityError:
        return ConversationIntegrityError(
            conversation.state_reason or ReasonCode.CONVERSATION_CORRUPTED, conversation.id
        )

    def _raise_if_corrupted(self, conversation: Conversation) -> None:
        if conversation.conversation_state == ConversationState.CORRUPTED:
            raise self._integrity_error(conversation)
