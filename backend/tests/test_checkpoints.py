"""Tests for checkpoint capture, restore and pruning."""

from datetime import timedelta

import pytest

from turnguard.errors import CheckpointError
from turnguard.services.checkpoints import CheckpointManager
from turnguard_models import Checkpoint


def make_checkpoint(conversation_id, count, created_at):
    return Checkpoint(
        conversation_id=conversation_id,
        checkpoint_name=CheckpointManager.checkpoint_name(count),
        message_count=count,
        tool_call_count=0,
        created_at=created_at,
    )


class TestDebounce:
    def test_first_capture_is_always_due(self, test_settings):
        checkpoints = CheckpointManager(test_settings)
        assert checkpoints.is_due(1, None)
        assert not checkpoints.is_due(0, None)

    def test_interval_between_captures(self, test_settings, clock):
        checkpoints = CheckpointManager(test_settings)
        latest = make_checkpoint("c", 4, clock())
        assert not checkpoints.is_due(6, latest)
        assert checkpoints.is_due(7, latest)

    def test_empty_log_checkpoint_does_not_debounce(self, test_settings, clock):
        checkpoints = CheckpointManager(test_settings)
        empty = make_checkpoint("c", 0, clock())
        assert checkpoints.is_due(1, empty)
        assert not checkpoints.is_due(0, empty)

    def test_names_sort_by_message_count(self):
        assert CheckpointManager.checkpoint_name(9) < CheckpointManager.checkpoint_name(10)


class TestCapture:
    @pytest.mark.asyncio
    async def test_capture_is_idempotent(self, manager, turns):
        conversation = await manager.create_conversation("u1")
        await manager.record_turn(conversation.id, turns.user())

        first, _ = await manager.capture_checkpoint(conversation.id)
        second, created = await manager.capture_checkpoint(conversation.id)

        assert not created
        assert second.id == first.id
        assert len(await manager.list_checkpoints(conversation.id)) == 1

    @pytest.mark.asyncio
    async def test_snapshot_holds_log_tail(self, manager, turns, test_settings):
        test_settings.snapshot_tail_size = 2
        conversation = await manager.create_conversation("u1", "Tail")
        for text in ("one", "two", "three"):
            await manager.record_turn(conversation.id, turns.user(text))

        checkpoint, _ = await manager.capture_checkpoint(conversation.id, reason="test")

        assert checkpoint.message_count == 3
        assert [m["content"] for m in checkpoint.messages_snapshot] == ["two", "three"]
        assert checkpoint.context_data["reason"] == "test"
        assert checkpoint.context_data["title"] == "Tail"
        assert checkpoint.context_data["conversation_length"] == 3

    @pytest.mark.asyncio
    async def test_refuses_while_calls_outstanding(self, manager, turns):
        conversation = await manager.create_conversation("u1")
        await manager.record_turn(conversation.id, turns.user())
        await manager.record_turn(conversation.id, turns.assistant("", "c1"))

        with pytest.raises(CheckpointError, match="not stable"):
            await manager.capture_checkpoint(conversation.id)


class TestRestore:
    @pytest.mark.asyncio
    async def test_restore_ahead_of_log_fails(self, manager, store, turns, clock):
        conversation = await manager.create_conversation("u1")
        await manager.record_turn(conversation.id, turns.user())

        async with store.locked(conversation.id) as session:
            stored = await session.get_conversation(conversation.id)
            with pytest.raises(CheckpointError, match="ahead"):
                await manager.checkpoints.restore(
                    session, stored, make_checkpoint(conversation.id, 5, clock()), clock()
                )

    @pytest.mark.asyncio
    async def test_delete_mode_removes_rows(self, manager, store, turns, test_settings):
        test_settings.restore_mode = "delete"
        conversation = await manager.create_conversation("u1")
        await manager.record_turn(conversation.id, turns.user("keep"))
        await manager.record_turn(conversation.id, turns.user("drop"))

        await manager.force_restore(conversation.id, "msg-000001")

        remaining = await manager.list_turns(conversation.id, include_superseded=True)
        assert [t.content for t in remaining] == ["keep"]


class TestPrune:
    @pytest.mark.asyncio
    async def test_keeps_newest_n(self, manager, store, clock, test_settings):
        conversation = await manager.create_conversation("u1")
        async with store.session() as session:
            for count in range(1, 9):
                await session.insert_checkpoint(make_checkpoint(conversation.id, count, clock()))

        pruned = await manager.prune_checkpoints(conversation.id)

        remaining = await manager.list_checkpoints(conversation.id, limit=50)
        assert pruned == 3
        assert [c.message_count for c in remaining] == [8, 7, 6, 5, 4]

    @pytest.mark.asyncio
    async def test_age_limit_never_drops_latest(self, manager, store, clock):
        conversation = await manager.create_conversation("u1")
        old = clock() - timedelta(days=30)
        async with store.session() as session:
            await session.insert_checkpoint(make_checkpoint(conversation.id, 1, old))
            await session.insert_checkpoint(make_checkpoint(conversation.id, 2, old))

        pruned = await manager.prune_checkpoints(conversation.id)

        remaining = await manager.list_checkpoints(conversation.id)
        assert pruned == 1
        assert [c.message_count for c in remaining] == [2]
