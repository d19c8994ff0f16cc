"""Tests for the expiry sweeper."""

import logging
from datetime import timedelta

import pytest

from turnguard.services.checkpoints import CheckpointManager
from turnguard_models import Checkpoint, ConversationState


class TestExpirySweeper:
    """One sweeper pass over pending and repairing conversations."""

    @pytest.mark.asyncio
    async def test_empty_pass(self, sweeper, clock):
        report = await sweeper.run_once()

        assert report.conversations_checked == 0
        assert report.errors == 0
        assert report.started_at == clock()
        assert report.finished_at == clock()

    @pytest.mark.asyncio
    async def test_leaves_calls_inside_grace_window(self, manager, sweeper, turns, clock):
        conversation = await manager.create_conversation("u1")
        await manager.record_turn(conversation.id, turns.user())
        await manager.record_turn(conversation.id, turns.assistant("", "c1"))
        clock.advance(60)

        report = await sweeper.run_once()

        assert report.conversations_checked == 1
        assert report.promoted == report.repaired == report.corrupted == 0
        inspection = await manager.inspect(conversation.id)
        assert inspection.state == ConversationState.PENDING
        assert inspection.last_cleanup_at == clock()

    @pytest.mark.asyncio
    async def test_counts_corruption_without_raising(self, manager, sweeper, turns, clock, caplog):
        conversation = await manager.create_conversation("u1")
        await manager.record_turn(conversation.id, turns.assistant("", "c1"))
        clock.advance(300)

        with caplog.at_level(logging.WARNING):
            report = await sweeper.run_once()

        assert report.corrupted == 1
        assert "below" in caplog.text
        inspection = await manager.inspect(conversation.id)
        assert inspection.state == ConversationState.CORRUPTED

    @pytest.mark.asyncio
    async def test_corrupted_conversations_are_not_revisited(self, manager, sweeper, turns, clock):
        conversation = await manager.create_conversation("u1")
        await manager.record_turn(conversation.id, turns.assistant("", "c1"))
        clock.advance(300)
        await sweeper.run_once()

        report = await sweeper.run_once()

        assert report.conversations_checked == 0

    @pytest.mark.asyncio
    async def test_removes_expired_recovery_contexts(self, manager, sweeper, store, clock):
        async with store.session() as session:
            await manager.recovery.open(
                session,
                "u1",
                "gone",
                {"outstanding_call_ids": [], "message_count": 0},
                clock(),
                ttl=timedelta(seconds=5),
            )
        clock.advance(10)

        report = await sweeper.run_once()

        assert report.recovery_contexts_removed == 1
        assert store.recovery_contexts == {}

    @pytest.mark.asyncio
    async def test_prunes_checkpoints(self, manager, sweeper, store, clock):
        conversation = await manager.create_conversation("u1")
        async with store.session() as session:
            for count in range(1, 8):
                await session.insert_checkpoint(
                    Checkpoint(
                        conversation_id=conversation.id,
                        checkpoint_name=CheckpointManager.checkpoint_name(count),
                        message_count=count,
                        tool_call_count=0,
                        created_at=clock(),
                    )
                )

        report = await sweeper.run_once()

        assert report.checkpoints_pruned == 2
        assert len(await manager.list_checkpoints(conversation.id)) == 5
        assert (await manager.inspect(conversation.id)).last_cleanup_at == clock()

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_pass(
        self, manager, sweeper, turns, clock, monkeypatch
    ):
        healthy = await manager.create_conversation("u1")
        broken = await manager.create_conversation("u2")
        for conversation in (healthy, broken):
            await manager.record_turn(conversation.id, turns.user())
            await manager.record_turn(conversation.id, turns.assistant("", f"{conversation.id}-c1"))
        clock.advance(300)

        evaluate = manager.evaluate

        async def flaky_evaluate(conversation_id, raise_on_corrupted=True):
            if conversation_id == broken.id:
                raise RuntimeError("database went away")
            return await evaluate(conversation_id, raise_on_corrupted)

        monkeypatch.setattr(manager, "evaluate", flaky_evaluate)

        report = await sweeper.run_once()

        assert report.conversations_checked == 2
        assert report.errors == 1
        assert report.repaired == 1
