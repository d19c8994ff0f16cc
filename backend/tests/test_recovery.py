"""Tests for the recovery context store."""

from datetime import timedelta

import pytest

from turnguard.services.recovery import RecoveryContextStore

PAYLOAD = {"outstanding_call_ids": ["c1"], "message_count": 2}


class TestRecoveryContextStore:
    """Open, find, resolve and expire recovery contexts."""

    @pytest.mark.asyncio
    async def test_open_and_find(self, store, test_settings, clock):
        recovery = RecoveryContextStore(test_settings)
        async with store.session() as session:
            context = await recovery.open(session, "u1", "conv-1", PAYLOAD, clock())
            found = await recovery.find(session, "u1", "conv-1", clock())

        assert found.id == context.id
        assert found.outstanding_call_ids == ["c1"]
        assert context.expires_at == clock() + timedelta(seconds=3600)

    @pytest.mark.asyncio
    async def test_reopen_refreshes_single_context(self, store, test_settings, clock):
        recovery = RecoveryContextStore(test_settings)
        async with store.session() as session:
            first = await recovery.open(session, "u1", "conv-1", PAYLOAD, clock())
            clock.advance(60)
            second = await recovery.open(
                session,
                "u1",
                "conv-1",
                {"outstanding_call_ids": ["c1", "c2"], "message_count": 3},
                clock(),
                ttl=timedelta(seconds=30),
            )

        assert second.id == first.id
        assert second.outstanding_call_ids == ["c1", "c2"]
        assert second.expires_at == clock() + timedelta(seconds=30)
        assert len(store.recovery_contexts) == 1

    @pytest.mark.asyncio
    async def test_payload_must_name_outstanding_calls(self, store, test_settings, clock):
        recovery = RecoveryContextStore(test_settings)
        async with store.session() as session:
            with pytest.raises(ValueError, match="outstanding_call_ids"):
                await recovery.open(session, "u1", "conv-1", {"message_count": 1}, clock())

    @pytest.mark.asyncio
    async def test_expired_context_is_not_found(self, store, test_settings, clock):
        recovery = RecoveryContextStore(test_settings)
        async with store.session() as session:
            await recovery.open(session, "u1", "conv-1", PAYLOAD, clock(), ttl=timedelta(seconds=10))
            clock.advance(10)
            assert await recovery.find(session, "u1", "conv-1", clock()) is None

    @pytest.mark.asyncio
    async def test_resolve_deletes(self, store, test_settings, clock):
        recovery = RecoveryContextStore(test_settings)
        async with store.session() as session:
            context = await recovery.open(session, "u1", "conv-1", PAYLOAD, clock())
            await recovery.resolve(session, context)
            assert await recovery.find(session, "u1", "conv-1", clock()) is None

    @pytest.mark.asyncio
    async def test_sweep_removes_only_expired(self, store, test_settings, clock):
        recovery = RecoveryContextStore(test_settings)
        async with store.session() as session:
            await recovery.open(session, "u1", "conv-1", PAYLOAD, clock(), ttl=timedelta(seconds=10))
            await recovery.open(session, "u2", "conv-2", PAYLOAD, clock(), ttl=timedelta(hours=1))
            clock.advance(60)
            removed = await recovery.sweep_expired(session, clock())
            assert removed == 1
            assert await recovery.find(session, "u2", "conv-2", clock()) is not None
