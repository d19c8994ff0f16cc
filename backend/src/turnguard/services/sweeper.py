"""Periodic sweep over conversations that need attention."""

import logging

from turnguard_models import ConversationState, SweepReport
from turnguard.services.state_manager import ConversationStateManager

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """One pass: evaluate unsettled conversations, drop expired recovery
    contexts, prune old checkpoints.

    Failures are logged and counted per conversation; a pass never raises
    for a single bad conversation, and the next pass retries it.
    """

    def __init__(self, manager: ConversationStateManager):
        self.manager = manager
        self.settings = manager.settings

    async def run_once(self) -> SweepReport:
        report = SweepReport(started_at=self.manager.now())

        async with self.manager.store.session() as session:
            conversation_ids = await session.list_conversation_ids_by_state(
                [ConversationState.PENDING, ConversationState.REPAIRING]
            )

        for conversation_id in conversation_ids:
            report.conversations_checked += 1
            try:
                outcome = await self.manager.evaluate(conversation_id, raise_on_corrupted=False)
                if outcome.state == ConversationState.CORRUPTED:
                    report.corrupted += 1
                elif outcome.repaired:
                    report.repaired += 1
                elif outcome.state == ConversationState.STABLE:
                    report.promoted += 1
                async with self.manager.store.session() as session:
                    await session.mark_cleaned(conversation_id, self.manager.now())
            except Exception as e:
                report.errors += 1
                logger.error(f"Sweep failed for conversation {conversation_id}: {e}")

        try:
            async with self.manager.store.session() as session:
                report.recovery_contexts_removed = await self.manager.recovery.sweep_expired(
                    session, self.manager.now()
                )
        except Exception as e:
            report.errors += 1
            logger.error(f"Failed to sweep expired recovery contexts: {e}")

        report.checkpoints_pruned = await self._prune_checkpoints(report)
        report.finished_at = self.manager.now()
        self._log_summary(report)
        return report

    async def _prune_checkpoints(self, report: SweepReport) -> int:
        now = self.manager.now()
        try:
            async with self.manager.store.session() as session:
                conversation_ids = await session.list_conversation_ids_with_prunable_checkpoints(
                    self.settings.checkpoint_retention,
                    now - self.manager.checkpoints.max_age,
                )
        except Exception as e:
            report.errors += 1
            logger.error(f"Failed to list prunable checkpoints: {e}")
            return 0

        pruned = 0
        for conversation_id in conversation_ids:
            try:
                pruned += await self.manager.prune_checkpoints(conversation_id)
                async with self.manager.store.session() as session:
                    await session.mark_cleaned(conversation_id, self.manager.now())
            except Exception as e:
                report.errors += 1
                logger.error(f"Checkpoint pruning failed for conversation {conversation_id}: {e}")
        return pruned

    def _log_summary(self, report: SweepReport) -> None:
        if report.conversations_checked:
            healthy = report.conversations_checked - report.corrupted - report.errors
            health = 100.0 * max(healthy, 0) / report.conversations_checked
        else:
            health = 100.0

        logger.info(
            f"Sweep: checked={report.conversations_checked} promoted={report.promoted} "
            f"repaired={report.repaired} corrupted={report.corrupted} "
            f"contexts_removed={report.recovery_contexts_removed} "
            f"checkpoints_pruned={report.checkpoints_pruned} errors={report.errors} "
            f"health={health:.1f}%"
        )
        if health < self.settings.health_alert_threshold:
            logger.warning(
                f"Conversation health {health:.1f}% is below "
                f"{self.settings.health_alert_threshold:.1f}%"
            )
