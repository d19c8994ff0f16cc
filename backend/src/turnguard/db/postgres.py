"""PostgreSQL store for conversation integrity tracking."""

import json
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

import asyncpg

from turnguard_models import (
    Checkpoint,
    Conversation,
    ConversationState,
    ConversationStatus,
    NewTurn,
    ReasonCode,
    RecoveryContext,
    ToolCallRequest,
    Turn,
)
from turnguard.config import Settings
from turnguard.db.base import Store, StoreSession
from turnguard.errors import TurnRejectedError

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
-- Conversations under integrity tracking
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    conversation_state TEXT NOT NULL DEFAULT 'stable',
    state_reason TEXT,
    last_stable_at TIMESTAMPTZ,
    last_cleanup_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_conversations_user_id ON conversations(user_id);
CREATE INDEX IF NOT EXISTS idx_conversations_state ON conversations(conversation_state);

-- Append-only message log
CREATE TABLE IF NOT EXISTS turns (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    seq INTEGER NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL DEFAULT '',
    tool_call_id TEXT,
    blocked BOOLEAN NOT NULL DEFAULT FALSE,
    superseded BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (conversation_id, seq)
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_turns_tool_result
    ON turns(conversation_id, tool_call_id)
    WHERE role = 'tool' AND NOT superseded;

-- Tool calls requested by assistant turns
CREATE TABLE IF NOT EXISTS tool_call_requests (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    turn_id TEXT NOT NULL REFERENCES turns(id) ON DELETE CASCADE,
    call_id TEXT NOT NULL,
    name TEXT NOT NULL,
    arguments JSONB DEFAULT '{}',
    abandoned BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_tool_call_requests_conversation
    ON tool_call_requests(conversation_id, call_id);

-- Checkpoints of confirmed-stable states
CREATE TABLE IF NOT EXISTS conversation_checkpoints (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    checkpoint_name TEXT NOT NULL,
    message_count INTEGER NOT NULL DEFAULT 0,
    tool_call_count INTEGER NOT NULL DEFAULT 0,
    conversation_state TEXT NOT NULL DEFAULT 'stable',
    messages_snapshot JSONB DEFAULT '[]',
    context_data JSONB DEFAULT '{}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (conversation_id, checkpoint_name)
);
CREATE INDEX IF NOT EXISTS idx_checkpoints_created_at ON conversation_checkpoints(created_at);

-- Recovery contexts for interrupted operations
CREATE TABLE IF NOT EXISTS recovery_contexts (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    context_data JSONB NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (user_id, conversation_id)
);
CREATE INDEX IF NOT EXISTS idx_recovery_contexts_expires_at ON recovery_contexts(expires_at);
"""


def _load_json(value: Any, default: Any) -> Any:
    if isinstance(value, (dict, list)):
        return value
    return json.loads(value) if value else default


def _count(status: str) -> int:
    """Row count from an asyncpg command status like 'DELETE 3'."""
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError):
        return 0


class PostgresSession(StoreSession):
    """Session bound to one pooled connection."""

    def __init__(self, conn: asyncpg.Connection):
        self._conn = conn

    # ============= Conversation Operations =============

    async def create_conversation(
        self, user_id: str, title: str | None, now: datetime
    ) -> Conversation:
        conversation = Conversation(
            user_id=user_id,
            title=title or "New Conversation",
            created_at=now,
            updated_at=now,
        )
        await self._conn.execute(
            """
            INSERT INTO conversations
            (id, user_id, title, status, conversation_state, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            """,
            conversation.id,
            conversation.user_id,
            conversation.title,
            conversation.status.value,
            conversation.conversation_state.value,
            conversation.created_at,
            conversation.updated_at,
        )
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        row = await self._conn.fetchrow(
            "SELECT * FROM conversations WHERE id = $1", conversation_id
        )
        if not row:
            return None
        return Conversation(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            status=ConversationStatus(row["status"]),
            conversation_state=ConversationState(row["conversation_state"]),
            state_reason=row["state_reason"],
            last_stable_at=row["last_stable_at"],
            last_cleanup_at=row["last_cleanup_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def set_conversation_state(
        self,
        conversation_id: str,
        state: ConversationState,
        reason: str | None,
        now: datetime,
        last_stable_at: datetime | None = None,
    ) -> None:
        await self._conn.execute(
            """
            UPDATE conversations
            SET conversation_state = $1,
                state_reason = $2,
                updated_at = $3,
                last_stable_at = COALESCE($4, last_stable_at)
            WHERE id = $5
            """,
            state.value,
            reason,
            now,
            last_stable_at,
            conversation_id,
        )

    async def set_conversation_status(
        self,
        conversation_id: str,
        status: ConversationStatus,
        now: datetime,
        title: str | None = None,
    ) -> None:
        await self._conn.execute(
            """
            UPDATE conversations
            SET status = $1,
                updated_at = $2,
                title = COALESCE($3, title)
            WHERE id = $4
            """,
            status.value,
            now,
            title,
            conversation_id,
        )

    async def mark_cleaned(self, conversation_id: str, at: datetime) -> None:
        await self._conn.execute(
            "UPDATE conversations SET last_cleanup_at = $1 WHERE id = $2",
            at,
            conversation_id,
        )

    async def list_conversation_ids_by_state(
        self, states: list[ConversationState]
    ) -> list[str]:
        rows = await self._conn.fetch(
            "SELECT id FROM conversations WHERE conversation_state = ANY($1::text[])",
            [state.value for state in states],
        )
        return [row["id"] for row in rows]

    # ============= Turn Operations =============

    async def list_turns(
        self, conversation_id: str, include_superseded: bool = False
    ) -> list[Turn]:
        query = "SELECT * FROM turns WHERE conversation_id = $1"
        if not include_superseded:
            query += " AND NOT superseded"
        query += " ORDER BY seq ASC"
        rows = await self._conn.fetch(query, conversation_id)

        call_rows = await self._conn.fetch(
            """
            SELECT * FROM tool_call_requests
            WHERE conversation_id = $1
            ORDER BY created_at ASC, id ASC
            """,
            conversation_id,
        )
        calls_by_turn: dict[str, list[ToolCallRequest]] = defaultdict(list)
        for row in call_rows:
            calls_by_turn[row["turn_id"]].append(self._row_to_tool_call(row))

        return [
            Turn(
                id=row["id"],
                conversation_id=row["conversation_id"],
                seq=row["seq"],
                role=row["role"],
                content=row["content"],
                tool_calls=calls_by_turn.get(row["id"], []),
                tool_call_id=row["tool_call_id"],
                blocked=row["blocked"],
                superseded=row["superseded"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def append_turn(
        self, conversation_id: str, new_turn: NewTurn, now: datetime
    ) -> Turn:
        seq = await self._conn.fetchval(
            "SELECT COALESCE(MAX(seq), 0) + 1 FROM turns WHERE conversation_id = $1",
            conversation_id,
        )
        turn = Turn(
            conversation_id=conversation_id,
            seq=seq,
            role=new_turn.role,
            content=new_turn.content,
            tool_call_id=new_turn.tool_call_id,
            blocked=new_turn.blocked,
            created_at=now,
        )
        turn.tool_calls = [
            ToolCallRequest(
                conversation_id=conversation_id,
                turn_id=turn.id,
                call_id=requested.call_id,
                name=requested.name,
                arguments=requested.arguments,
                created_at=now,
            )
            for requested in new_turn.tool_calls
        ]
        try:
            await self._conn.execute(
                """
                INSERT INTO turns
                (id, conversation_id, seq, role, content, tool_call_id, blocked, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                turn.id,
                turn.conversation_id,
                turn.seq,
                turn.role,
                turn.content,
                turn.tool_call_id,
                turn.blocked,
                turn.created_at,
            )
        except asyncpg.UniqueViolationError as e:
            raise TurnRejectedError(
                ReasonCode.DUPLICATE_TOOL_CALL_ID, conversation_id, str(e)
            ) from e

        if turn.tool_calls:
            await self._conn.executemany(
                """
                INSERT INTO tool_call_requests
                (id, conversation_id, turn_id, call_id, name, arguments, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                [
                    (
                        call.id,
                        call.conversation_id,
                        call.turn_id,
                        call.call_id,
                        call.name,
                        json.dumps(call.arguments),
                        call.created_at,
                    )
                    for call in turn.tool_calls
                ],
            )

        await self._conn.execute(
            "UPDATE conversations SET updated_at = $1 WHERE id = $2",
            now,
            conversation_id,
        )
        return turn

    async def supersede_turns(self, turn_ids: list[str]) -> int:
        if not turn_ids:
            return 0
        status = await self._conn.execute(
            "UPDATE turns SET superseded = TRUE WHERE id = ANY($1::text[]) AND NOT superseded",
            turn_ids,
        )
        return _count(status)

    async def delete_turns(self, turn_ids: list[str]) -> int:
        if not turn_ids:
            return 0
        status = await self._conn.execute(
            "DELETE FROM turns WHERE id = ANY($1::text[])", turn_ids
        )
        return _count(status)

    async def abandon_tool_calls(self, conversation_id: str, call_ids: list[str]) -> int:
        if not call_ids:
            return 0
        status = await self._conn.execute(
            """
            UPDATE tool_call_requests
            SET abandoned = TRUE
            WHERE conversation_id = $1 AND call_id = ANY($2::text[]) AND NOT abandoned
            """,
            conversation_id,
            call_ids,
        )
        return _count(status)

    def _row_to_tool_call(self, row: asyncpg.Record) -> ToolCallRequest:
        return ToolCallRequest(
            id=row["id"],
            conversation_id=row["conversation_id"],
            turn_id=row["turn_id"],
            call_id=row["call_id"],
            name=row["name"],
            arguments=_load_json(row["arguments"], {}),
            abandoned=row["abandoned"],
            created_at=row["created_at"],
        )

    # ============= Checkpoint Operations =============

    async def insert_checkpoint(self, checkpoint: Checkpoint) -> tuple[Checkpoint, bool]:
        inserted = await self._conn.fetchval(
            """
            INSERT INTO conversation_checkpoints
            (id, conversation_id, checkpoint_name, message_count, tool_call_count,
             conversation_state, messages_snapshot, context_data, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            ON CONFLICT (conversation_id, checkpoint_name) DO NOTHING
            RETURNING id
            """,
            checkpoint.id,
            checkpoint.conversation_id,
            checkpoint.checkpoint_name,
            checkpoint.message_count,
            checkpoint.tool_call_count,
            checkpoint.conversation_state.value,
            json.dumps(checkpoint.messages_snapshot),
            json.dumps(checkpoint.context_data),
            checkpoint.created_at,
        )
        if inserted:
            return checkpoint, True
        existing = await self.get_checkpoint(checkpoint.conversation_id, checkpoint.checkpoint_name)
        return existing or checkpoint, False

    async def get_checkpoint(
        self, conversation_id: str, checkpoint_name: str
    ) -> Checkpoint | None:
        row = await self._conn.fetchrow(
            """
            SELECT * FROM conversation_checkpoints
            WHERE conversation_id = $1 AND checkpoint_name = $2
            """,
            conversation_id,
            checkpoint_name,
        )
        if not row:
            return None
        return self._row_to_checkpoint(row)

    async def latest_checkpoint(self, conversation_id: str) -> Checkpoint | None:
        checkpoints = await self.list_checkpoints(conversation_id, limit=1)
        return checkpoints[0] if checkpoints else None

    async def list_checkpoints(
        self, conversation_id: str, limit: int = 10
    ) -> list[Checkpoint]:
        rows = await self._conn.fetch(
            """
            SELECT * FROM conversation_checkpoints
            WHERE conversation_id = $1
            ORDER BY message_count DESC, created_at DESC
            LIMIT $2
            """,
            conversation_id,
            limit,
        )
        return [self._row_to_checkpoint(row) for row in rows]

    async def delete_checkpoints_after(self, conversation_id: str, message_count: int) -> int:
        status = await self._conn.execute(
            """
            DELETE FROM conversation_checkpoints
            WHERE conversation_id = $1 AND message_count > $2
            """,
            conversation_id,
            message_count,
        )
        return _count(status)

    async def prune_checkpoints(
        self, conversation_id: str, keep: int, older_than: datetime
    ) -> int:
        status = await self._conn.execute(
            """
            DELETE FROM conversation_checkpoints
            WHERE id IN (
                SELECT id FROM (
                    SELECT id, created_at,
                           ROW_NUMBER() OVER (ORDER BY message_count DESC, created_at DESC) AS rn
                    FROM conversation_checkpoints
                    WHERE conversation_id = $1
                ) ranked
                WHERE rn > 1 AND (rn > $2 OR created_at < $3)
            )
            """,
            conversation_id,
            keep,
            older_than,
        )
        return _count(status)

    async def list_conversation_ids_with_prunable_checkpoints(
        self, keep: int, older_than: datetime
    ) -> list[str]:
        rows = await self._conn.fetch(
            """
            SELECT conversation_id FROM conversation_checkpoints
            GROUP BY conversation_id
            HAVING COUNT(*) > 1
               AND (COUNT(*) > $1 OR MIN(created_at) < $2)
            """,
            keep,
            older_than,
        )
        return [row["conversation_id"] for row in rows]

    def _row_to_checkpoint(self, row: asyncpg.Record) -> Checkpoint:
        return Checkpoint(
            id=row["id"],
            conversation_id=row["conversation_id"],
            checkpoint_name=row["checkpoint_name"],
            message_count=row["message_count"],
            tool_call_count=row["tool_call_count"],
            conversation_state=ConversationState(row["conversation_state"]),
            messages_snapshot=_load_json(row["messages_snapshot"], []),
            context_data=_load_json(row["context_data"], {}),
            created_at=row["created_at"],
        )

    # ============= Recovery Context Operations =============

    async def upsert_recovery_context(self, context: RecoveryContext) -> RecoveryContext:
        row = await self._conn.fetchrow(
            """
            INSERT INTO recovery_contexts
            (id, user_id, conversation_id, context_data, expires_at, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (user_id, conversation_id) DO UPDATE
            SET context_data = EXCLUDED.context_data,
                expires_at = EXCLUDED.expires_at,
                updated_at = EXCLUDED.updated_at
            RETURNING *
            """,
            context.id,
            context.user_id,
            context.conversation_id,
            json.dumps(context.context_data),
            context.expires_at,
            context.created_at,
            context.updated_at,
        )
        return self._row_to_recovery_context(row)

    async def get_recovery_context(
        self, user_id: str, conversation_id: str
    ) -> RecoveryContext | None:
        row = await self._conn.fetchrow(
            "SELECT * FROM recovery_contexts WHERE user_id = $1 AND conversation_id = $2",
            user_id,
            conversation_id,
        )
        if not row:
            return None
        return self._row_to_recovery_context(row)

    async def get_conversation_recovery_context(
        self, conversation_id: str
    ) -> RecoveryContext | None:
        row = await self._conn.fetchrow(
            """
            SELECT * FROM recovery_contexts
            WHERE conversation_id = $1
            ORDER BY updated_at DESC
            LIMIT 1
            """,
            conversation_id,
        )
        if not row:
            return None
        return self._row_to_recovery_context(row)

    async def delete_recovery_context(self, context_id: str) -> bool:
        status = await self._conn.execute(
            "DELETE FROM recovery_contexts WHERE id = $1", context_id
        )
        return _count(status) > 0

    async def delete_conversation_recovery_contexts(self, conversation_id: str) -> int:
        status = await self._conn.execute(
            "DELETE FROM recovery_contexts WHERE conversation_id = $1", conversation_id
        )
        return _count(status)

    async def delete_expired_recovery_contexts(self, now: datetime) -> int:
        status = await self._conn.execute(
            "DELETE FROM recovery_contexts WHERE expires_at <= $1", now
        )
        return _count(status)

    def _row_to_recovery_context(self, row: asyncpg.Record) -> RecoveryContext:
        return RecoveryContext(
            id=row["id"],
            user_id=row["user_id"],
            conversation_id=row["conversation_id"],
            context_data=_load_json(row["context_data"], {}),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class PostgresStore(Store):
    """PostgreSQL-backed store using an asyncpg connection pool."""

    def __init__(self, settings: Settings):
        self._settings = settings
        self._pool: asyncpg.Pool | None = None

    async def connect(self):
        """Create connection pool."""
        self._pool = await asyncpg.create_pool(
            self._settings.database_url,
            min_size=self._settings.db_pool_min_size,
            max_size=self._settings.db_pool_max_size,
        )
        logger.info(f"Connected to PostgreSQL at {self._settings.db_host}:{self._settings.db_port}")

    async def disconnect(self):
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[asyncpg.Connection]:
        """Get a connection from the pool."""
        if not self._pool:
            raise RuntimeError("Database not connected")
        async with self._pool.acquire() as conn:
            yield conn

    async def ensure_tables_exist(self):
        """Create tables if they don't exist."""
        async with self.connection() as conn:
            await conn.execute(SCHEMA_SQL)

    @asynccontextmanager
    async def locked(self, conversation_id: str) -> AsyncIterator[StoreSession]:
        # Advisory lock is released when the transaction ends
        async with self.connection() as conn:
            async with conn.transaction():
                await conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtextextended($1, 0))",
                    conversation_id,
                )
                yield PostgresSession(conn)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[StoreSession]:
        async with self.connection() as conn:
            yield PostgresSession(conn)
