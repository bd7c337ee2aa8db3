"""Persistence gateway for conversations, messages and simulated responses.

``ChatStore`` names the operations the rest of the application is allowed to
perform against the database.  ``PgChatStore`` talks to PostgreSQL through an
async ``psycopg`` connection pool; ``MemoryChatStore`` keeps the same three
tables in dictionaries and is used when no DSN is configured and by the unit
tests.

Every operation is a coroutine.  Failures of the underlying database are
translated into ``StoreError`` carrying the operation name, with the driver
exception chained, so callers never need to import ``psycopg`` themselves.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from . import config
from .models import Conversation, Message, Response


CLEAR_STAGES: Tuple[str, ...] = ("responses", "messages", "conversations")


class StoreError(RuntimeError):
    """Raised when a store operation fails in transport or on a constraint."""

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
        self.message = message


class ClearError(StoreError):
    """Raised when ``clear_all`` stops part-way; earlier stages stay deleted."""

    def __init__(self, stage: str, message: str, *, completed: Sequence[str] = ()) -> None:
        super().__init__(f"clear_all.{stage}", message)
        self.stage = stage
        self.completed = tuple(completed)


def _title_or_default(title: Optional[str]) -> str:
    return title if title else config.DEFAULT_TITLE


def _check_branch_shape(operation: str, is_branch: bool, parent_id: Optional[int]) -> None:
    if is_branch and parent_id is None:
        raise StoreError(operation, "a branch needs a parent message")
    if not is_branch and parent_id is not None:
        raise StoreError(operation, "an original message cannot have a parent")


class ChatStore(ABC):
    @abstractmethod
    async def create_conversation(self, title: str) -> Conversation:
        ...

    @abstractmethod
    async def send_message(
        self,
        conversation_id: int,
        content: str,
        is_branch: bool = False,
        parent_id: Optional[int] = None,
        *,
        thread_level: int = 0,
    ) -> Message:
        ...

    async def edit_message(
        self,
        conversation_id: int,
        parent_id: int,
        new_content: str,
        thread_level: int,
    ) -> Message:
        """Fork ``parent_id`` by inserting a branch; the parent row is untouched."""

        return await self.send_message(
            conversation_id,
            new_content,
            is_branch=True,
            parent_id=parent_id,
            thread_level=thread_level,
        )

    @abstractmethod
    async def save_response(self, message_id: int, content: str) -> Response:
        ...

    @abstractmethod
    async def fetch_conversations(self) -> List[Conversation]:
        ...

    @abstractmethod
    async def fetch_messages(self, conversation_id: int) -> List[Message]:
        ...

    @abstractmethod
    async def fetch_children(self, parent_id: int) -> List[Message]:
        ...

    @abstractmethod
    async def fetch_response(self, message_id: int) -> Optional[Response]:
        ...

    @abstractmethod
    async def clear_all(self) -> None:
        ...

    async def close(self) -> None:
        return None


class MemoryChatStore(ChatStore):
    """Dictionary-backed store with the same ordering and constraints as Postgres."""

    def __init__(self, *, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._ids = itertools.count(1)
        self.conversations: Dict[int, Conversation] = {}
        self.messages: Dict[int, Message] = {}
        self.responses: Dict[int, Response] = {}

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def create_conversation(self, title: str) -> Conversation:
        conversation = Conversation(id=next(self._ids), title=_title_or_default(title), created_at=self._now())
        self.conversations[conversation.id] = conversation
        return conversation

    async def send_message(
        self,
        conversation_id: int,
        content: str,
        is_branch: bool = False,
        parent_id: Optional[int] = None,
        *,
        thread_level: int = 0,
    ) -> Message:
        operation = "edit_message" if is_branch else "send_message"
        _check_branch_shape(operation, is_branch, parent_id)
        if conversation_id not in self.conversations:
            raise StoreError(operation, f"conversation {conversation_id} does not exist")
        if parent_id is not None:
            parent = self.messages.get(parent_id)
            if parent is None:
                raise StoreError(operation, f"parent message {parent_id} does not exist")
            if parent.is_branch or parent.conversation_id != conversation_id:
                raise StoreError(
                    operation,
                    f"parent message {parent_id} is not an original message of conversation {conversation_id}",
                )
        message = Message(
            id=next(self._ids),
            conversation_id=conversation_id,
            content=content,
            is_branch=is_branch,
            parent_id=parent_id,
            thread_level=thread_level,
            created_at=self._now(),
        )
        self.messages[message.id] = message
        return message

    async def save_response(self, message_id: int, content: str) -> Response:
        if message_id not in self.messages:
            raise StoreError("save_response", f"message {message_id} does not exist")
        response = Response(id=next(self._ids), message_id=message_id, content=content, created_at=self._now())
        self.responses[response.id] = response
        return response

    async def fetch_conversations(self) -> List[Conversation]:
        return sorted(self.conversations.values(), key=lambda c: (c.created_at, c.id), reverse=True)

    async def fetch_messages(self, conversation_id: int) -> List[Message]:
        rows = [
            m for m in self.messages.values()
            if m.conversation_id == conversation_id and not m.is_branch
        ]
        return sorted(rows, key=lambda m: (m.created_at, m.id))

    async def fetch_children(self, parent_id: int) -> List[Message]:
        rows = [m for m in self.messages.values() if m.parent_id == parent_id]
        return sorted(rows, key=lambda m: (m.created_at, m.id))

    async def fetch_response(self, message_id: int) -> Optional[Response]:
        rows = [r for r in self.responses.values() if r.message_id == message_id]
        if not rows:
            return None
        return min(rows, key=lambda r: (r.created_at, r.id))

    async def clear_all(self) -> None:
        for stage in CLEAR_STAGES:
            getattr(self, stage).clear()
            self._logger.info("All %s cleared.", stage)


_CONVERSATION_COLUMNS = "id, title, created_at"
_MESSAGE_COLUMNS = "id, conversation_id, content, is_branch, parent_id, thread_level, created_at"
_RESPONSE_COLUMNS = "id, message_id, content, created_at"


class PgChatStore(ChatStore):
    """PostgreSQL implementation backed by ``psycopg_pool.AsyncConnectionPool``.

    The pool is opened and the tables created on first use so the store can be
    constructed at import time, outside of a running event loop.
    """

    CONVERSATIONS_TABLE = "conversations"
    MESSAGES_TABLE = "messages"
    RESPONSES_TABLE = "responses"

    def __init__(
        self,
        dsn: str,
        *,
        schema: Optional[str] = None,
        min_size: int = 1,
        max_size: int = 5,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if not dsn:
            raise ValueError("PgChatStore requires a DSN")
        self.dsn = dsn
        self.schema = schema
        self.min_size = min_size
        self.max_size = max_size
        self._logger = logger or logging.getLogger(__name__)
        self._pool = None
        self._sql = None
        self._dict_row = None
        self._db_errors: Tuple[type, ...] = ()
        self._init_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _configure_connection(self, conn) -> None:
        await conn.execute(
            self._sql.SQL("SET search_path TO {}, pg_catalog").format(
                self._sql.Identifier(self.schema)
            )
        )

    async def _ensure_pool(self):
        if self._pool is not None:
            return self._pool
        async with self._init_lock:
            if self._pool is not None:
                return self._pool

            import psycopg
            from psycopg import sql as pg_sql
            from psycopg.rows import dict_row
            from psycopg_pool import AsyncConnectionPool

            self._db_errors = (psycopg.Error,)
            self._sql = pg_sql
            self._dict_row = dict_row

            pool = AsyncConnectionPool(
                conninfo=self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                kwargs={"autocommit": True},
                configure=self._configure_connection if self.schema else None,
                open=False,
            )
            try:
                await pool.open(wait=True)
                await self._ensure_schema(pool)
            except BaseException:
                await pool.close()
                raise
            self._pool = pool
            self._logger.info("Connected chat store to PostgreSQL (schema=%s)", self.schema or "default")
        return self._pool

    async def _ensure_schema(self, pool) -> None:
        async with pool.connection() as conn:
            if self.schema:
                await conn.execute(
                    self._sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(
                        self._sql.Identifier(self.schema)
                    )
                )
                await self._configure_connection(conn)
            for statement in schema_statements():
                await conn.execute(statement)

    async def _execute(
        self,
        operation: str,
        query: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        fetch: Optional[str] = None,
    ):
        try:
            pool = await self._ensure_pool()
            async with pool.connection() as conn:
                async with conn.cursor(row_factory=self._dict_row) as cur:
                    await cur.execute(query, params)
                    if fetch == "one":
                        return await cur.fetchone()
                    if fetch == "all":
                        return await cur.fetchall()
                    return None
        except self._db_errors as exc:
            self._logger.error("%s failed: %s", operation, exc)
            raise StoreError(operation, str(exc)) from exc

    async def _insert(self, operation: str, query: str, params: Dict[str, Any]) -> Dict[str, Any]:
        row = await self._execute(operation, query, params, fetch="one")
        if row is None:
            raise StoreError(operation, "insert returned no row")
        return row

    # ------------------------------------------------------------------
    # ChatStore interface
    # ------------------------------------------------------------------
    async def create_conversation(self, title: str) -> Conversation:
        row = await self._insert(
            "create_conversation",
            f"""
            INSERT INTO {self.CONVERSATIONS_TABLE} (title)
            VALUES (%(title)s)
            RETURNING {_CONVERSATION_COLUMNS}
            """,
            {"title": _title_or_default(title)},
        )
        return Conversation.from_row(row)

    async def send_message(
        self,
        conversation_id: int,
        content: str,
        is_branch: bool = False,
        parent_id: Optional[int] = None,
        *,
        thread_level: int = 0,
    ) -> Message:
        operation = "edit_message" if is_branch else "send_message"
        _check_branch_shape(operation, is_branch, parent_id)
        params = {
            "conversation_id": conversation_id,
            "content": content,
            "is_branch": is_branch,
            "parent_id": parent_id,
            "thread_level": thread_level,
        }
        if parent_id is None:
            row = await self._insert(
                operation,
                f"""
                INSERT INTO {self.MESSAGES_TABLE} (conversation_id, content, is_branch, parent_id, thread_level)
                VALUES (%(conversation_id)s, %(content)s, %(is_branch)s, %(parent_id)s, %(thread_level)s)
                RETURNING {_MESSAGE_COLUMNS}
                """,
                params,
            )
            return Message.from_row(row)

        # Branches may only hang off an original message of the same conversation.
        row = await self._execute(
            operation,
            f"""
            INSERT INTO {self.MESSAGES_TABLE} (conversation_id, content, is_branch, parent_id, thread_level)
            SELECT %(conversation_id)s::bigint, %(content)s::text, %(is_branch)s::boolean,
                   %(parent_id)s::bigint, %(thread_level)s::integer
            WHERE EXISTS (
                SELECT 1 FROM {self.MESSAGES_TABLE}
                WHERE id = %(parent_id)s AND conversation_id = %(conversation_id)s AND is_branch = FALSE
            )
            RETURNING {_MESSAGE_COLUMNS}
            """,
            params,
            fetch="one",
        )
        if row is None:
            raise StoreError(
                operation,
                f"parent message {parent_id} is not an original message of conversation {conversation_id}",
            )
        return Message.from_row(row)

    async def save_response(self, message_id: int, content: str) -> Response:
        row = await self._insert(
            "save_response",
            f"""
            INSERT INTO {self.RESPONSES_TABLE} (message_id, content)
            VALUES (%(message_id)s, %(content)s)
            RETURNING {_RESPONSE_COLUMNS}
            """,
            {"message_id": message_id, "content": content},
        )
        return Response.from_row(row)

    async def fetch_conversations(self) -> List[Conversation]:
        rows = await self._execute(
            "fetch_conversations",
            f"""
            SELECT {_CONVERSATION_COLUMNS}
            FROM {self.CONVERSATIONS_TABLE}
            ORDER BY created_at DESC, id DESC
            """,
            fetch="all",
        )
        return [Conversation.from_row(row) for row in rows or []]

    async def fetch_messages(self, conversation_id: int) -> List[Message]:
        rows = await self._execute(
            "fetch_messages",
            f"""
            SELECT {_MESSAGE_COLUMNS}
            FROM {self.MESSAGES_TABLE}
            WHERE conversation_id = %(conversation_id)s AND is_branch = FALSE
            ORDER BY created_at, id
            """,
            {"conversation_id": conversation_id},
            fetch="all",
        )
        return [Message.from_row(row) for row in rows or []]

    async def fetch_children(self, parent_id: int) -> List[Message]:
        rows = await self._execute(
            "fetch_children",
            f"""
            SELECT {_MESSAGE_COLUMNS}
            FROM {self.MESSAGES_TABLE}
            WHERE parent_id = %(parent_id)s
            ORDER BY created_at, id
            """,
            {"parent_id": parent_id},
            fetch="all",
        )
        return [Message.from_row(row) for row in rows or []]

    async def fetch_response(self, message_id: int) -> Optional[Response]:
        row = await self._execute(
            "fetch_response",
            f"""
            SELECT {_RESPONSE_COLUMNS}
            FROM {self.RESPONSES_TABLE}
            WHERE message_id = %(message_id)s
            ORDER BY created_at, id
            LIMIT 1
            """,
            {"message_id": message_id},
            fetch="one",
        )
        if row is None:
            return None
        return Response.from_row(row)

    async def clear_all(self) -> None:
        completed: List[str] = []
        for stage in CLEAR_STAGES:
            try:
                await self._execute(f"clear_all.{stage}", f"DELETE FROM {stage}")
            except StoreError as exc:
                self._logger.error("Failed to clear %s after %s", stage, completed or "nothing")
                raise ClearError(stage, exc.message, completed=completed) from exc
            completed.append(stage)
            self._logger.info("All %s cleared.", stage)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None


def schema_statements() -> List[str]:
    """DDL for the three chat tables, safe to run repeatedly."""

    return [
        """
        CREATE TABLE IF NOT EXISTS conversations (
            id BIGINT GENERATED ALWAYS AS IDENTITY PRIMARY KEY,
            title TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS messages (
            id BIGINT GENERATED ALWAYS AS IDENTITY PRIMARY KEY,
            conversation_id BIGINT NOT NULL REFERENCES conversations (id),
            content TEXT NOT NULL,
            is_branch BOOLEAN NOT NULL DEFAULT FALSE,
            parent_id BIGINT NULL REFERENCES messages (id),
            thread_level INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT messages_branch_parent_check CHECK (is_branch = (parent_id IS NOT NULL))
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS responses (
            id BIGINT GENERATED ALWAYS AS IDENTITY PRIMARY KEY,
            message_id BIGINT NOT NULL REFERENCES messages (id),
            content TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """,
        "CREATE INDEX IF NOT EXISTS messages_conversation_created_idx ON messages (conversation_id, created_at)",
        "CREATE INDEX IF NOT EXISTS messages_parent_idx ON messages (parent_id)",
        "CREATE INDEX IF NOT EXISTS responses_message_idx ON responses (message_id)",
    ]


def build_store(
    storage: Optional[str] = None,
    dsn: Optional[str] = None,
    schema: Optional[str] = None,
    *,
    logger: Optional[logging.Logger] = None,
) -> ChatStore:
    """Pick the store implementation named by ``storage`` (defaults from config)."""

    log = logger or logging.getLogger(__name__)
    selected = (storage or config.STORAGE or "memory").lower()
    dsn = dsn if dsn is not None else config.PG_DSN
    schema = schema if schema is not None else config.PG_SCHEMA

    if selected == "memory":
        return MemoryChatStore(logger=logger)
    if selected == "pg":
        if not dsn:
            log.warning(
                "BRANCHCHAT_STORAGE=pg but BRANCHCHAT_PG_DSN not configured; using in-memory placeholder store."
            )
            return MemoryChatStore(logger=logger)
        return PgChatStore(
            dsn,
            schema=schema,
            min_size=config.PG_POOL_MIN,
            max_size=config.PG_POOL_MAX,
            logger=logger,
        )
    raise ValueError(f"Unknown storage backend: {storage}")


__all__ = [
    "CLEAR_STAGES",
    "ChatStore",
    "ClearError",
    "MemoryChatStore",
    "PgChatStore",
    "StoreError",
    "build_store",
    "schema_statements",
]
