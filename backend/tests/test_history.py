"""Tests for provider-safe history rendering."""

import json

import pytest


class TestProviderHistory:
    @pytest.mark.asyncio
    async def test_renders_answered_calls(self, manager, turns):
        conversation = await manager.create_conversation("u1")
        await manager.record_turn(conversation.id, turns.user("weather?"))
        await manager.record_turn(conversation.id, turns.assistant("", "c1"))
        await manager.record_turn(conversation.id, turns.tool("c1", "sunny"))
        await manager.record_turn(conversation.id, turns.assistant("It is sunny."))

        messages = await manager.provider_history(conversation.id)

        assert [m["role"] for m in messages] == ["user", "assistant", "tool", "assistant"]
        call = messages[1]["tool_calls"][0]
        assert call["id"] == "c1"
        assert call["function"]["name"] == "search"
        assert json.loads(call["function"]["arguments"]) == {"q": "c1"}
        assert messages[2] == {"role": "tool", "tool_call_id": "c1", "content": "sunny"}

    @pytest.mark.asyncio
    async def test_omits_unanswered_and_blocked(self, manager, turns):
        conversation = await manager.create_conversation("u1")
        await manager.record_turn(conversation.id, turns.user("hi"))
        await manager.record_turn(conversation.id, turns.user("bad words", blocked=True))
        await manager.record_turn(conversation.id, turns.assistant("let me look", "c1"))

        messages = await manager.provider_history(conversation.id)

        assert messages == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "let me look"},
        ]

    @pytest.mark.asyncio
    async def test_omits_abandoned_calls(self, manager, sweeper, turns, clock):
        conversation = await manager.create_conversation("u1")
        await manager.record_turn(conversation.id, turns.user("go"))
        await manager.record_turn(conversation.id, turns.assistant("", "c1", "c2"))
        await manager.record_turn(conversation.id, turns.tool("c1", "done"))
        clock.advance(300)
        await sweeper.run_once()

        messages = await manager.provider_history(conversation.id)

        assert [m["role"] for m in messages] == ["user", "assistant", "tool"]
        assert [c["id"] for c in messages[1]["tool_calls"]] == ["c1"]

    @pytest.mark.asyncio
    async def test_blocked_result_drops_the_call(self, manager, turns):
        conversation = await manager.create_conversation("u1")
        await manager.record_turn(conversation.id, turns.user("go"))
        await manager.record_turn(conversation.id, turns.assistant("", "c1"))
        await manager.record_turn(conversation.id, turns.tool("c1", "secret", blocked=True))

        messages = await manager.provider_history(conversation.id)

        assert messages == [{"role": "user", "content": "go"}]
