"""Shared fixtures: an in-memory store driven by a controllable clock."""

from datetime import datetime, timedelta, timezone

import pytest

from turnguard.config import Settings
from turnguard.db import MemoryStore
from turnguard.services.state_manager import ConversationStateManager
from turnguard.services.sweeper import ExpirySweeper
from turnguard_models import NewTurn, ToolCallSpec


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current


class TurnFactory:
    """Builds NewTurn payloads the way the model-invocation layer sends them."""

    def user(self, content: str = "hello", blocked: bool = False) -> NewTurn:
        return NewTurn(role="user", content=content, blocked=blocked)

    def assistant(self, content: str = "", *call_ids: str, blocked: bool = False) -> NewTurn:
        return NewTurn(
            role="assistant",
            content=content,
            tool_calls=[
                ToolCallSpec(call_id=call_id, name="search", arguments={"q": call_id})
                for call_id in call_ids
            ],
            blocked=blocked,
        )

    def tool(self, call_id: str, content: str = "result", blocked: bool = False) -> NewTurn:
        return NewTurn(role="tool", content=content, tool_call_id=call_id, blocked=blocked)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def test_settings():
    return Settings(
        storage_backend="memory",
        grace_window_seconds=120,
        checkpoint_interval=3,
        checkpoint_retention=5,
        checkpoint_max_age_days=7,
        snapshot_tail_size=50,
        recovery_ttl_seconds=3600,
        restore_mode="archive",
        repair_strategy="abandon",
        sweep_enabled=False,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def manager(store, test_settings, clock):
    return ConversationStateManager(store, test_settings, clock=clock)


@pytest.fixture
def sweeper(manager):
    return ExpirySweeper(manager)


@pytest.fixture
def turns():
    return TurnFactory()
