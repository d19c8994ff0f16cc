"""Process-wide store, state manager and sweeper."""

from turnguard.config import settings
from turnguard.db import create_store
from turnguard.services.state_manager import ConversationStateManager
from turnguard.services.sweeper import ExpirySweeper

store = create_store(settings)
manager = ConversationStateManager(store, settings)
sweeper = ExpirySweeper(manager)
