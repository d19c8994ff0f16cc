"""Recovery contexts: expiring records of interrupted operations."""

import logging
from datetime import datetime, timedelta
from typing import Any

from turnguard_models import RecoveryContext
from turnguard.config import Settings
from turnguard.db.base import StoreSession

logger = logging.getLogger(__name__)

REQUIRED_KEYS = ("outstanding_call_ids", "message_count")


class RecoveryContextStore:
    """One open context per (user, conversation); opening again refreshes it."""

    def __init__(self, settings: Settings):
        self.settings = settings

    async def open(
        self,
        session: StoreSession,
        user_id: str,
        conversation_id: str,
        context_data: dict[str, Any],
        now: datetime,
        ttl: timedelta | None = None,
    ) -> RecoveryContext:
        """Open a context, or refresh payload and expiry of the existing one.

        context_data must name the outstanding tool-call ids and the message
        count at the time recovery was opened.
        """
        missing = [key for key in REQUIRED_KEYS if key not in context_data]
        if missing:
            raise ValueError(f"Recovery context data missing {', '.join(missing)}")

        if ttl is None:
            ttl = timedelta(seconds=self.settings.recovery_ttl_seconds)
        context = RecoveryContext(
            user_id=user_id,
            conversation_id=conversation_id,
            context_data=context_data,
            expires_at=now + ttl,
            created_at=now,
            updated_at=now,
        )
        stored = await session.upsert_recovery_context(context)
        logger.debug(
            f"Recovery context {stored.id} open for conversation {conversation_id} "
            f"until {stored.expires_at.isoformat()}"
        )
        return stored

    async def find(
        self, session: StoreSession, user_id: str, conversation_id: str, now: datetime
    ) -> RecoveryContext | None:
        """The active (unexpired) context for the pair, if any."""
        context = await session.get_recovery_context(user_id, conversation_id)
        if context is None or context.is_expired(now):
            return None
        return context

    async def resolve(self, session: StoreSession, context: RecoveryContext) -> None:
        if await session.delete_recovery_context(context.id):
            logger.debug(
                f"Resolved recovery context {context.id} for conversation {context.conversation_id}"
            )

    async def sweep_expired(self, session: StoreSession, now: datetime) -> int:
        removed = await session.delete_expired_recovery_contexts(now)
        if removed:
            logger.info(f"Cleaned up {removed} expired recovery contexts")
        return removed
