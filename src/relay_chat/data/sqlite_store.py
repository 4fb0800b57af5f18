import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import aiosqlite

from ..errors import NotFoundError, StorageError
from .models import (
    Conversation,
    ConversationListItem,
    ConversationOptions,
    Message,
    Model,
    NewConversation,
    NewMessage,
    NewModel,
    SeedMessage,
    Setting,
)

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS models (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL DEFAULT '',
    provider TEXT NOT NULL,
    config TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS conversations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    model_id INTEGER NOT NULL REFERENCES models(id),
    subject TEXT NOT NULL,
    options TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id INTEGER NOT NULL REFERENCES conversations(id),
    role INTEGER NOT NULL CHECK (role IN (0, 1)),
    content TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, id);
"""

MESSAGE_COLUMNS = "id, conversation_id, role, content, created_at"
MODEL_COLUMNS = "id, name, provider, config, created_at"


def _now() -> str:
    return datetime.now(UTC).isoformat()


class SQLiteStore:
    """Conversation store over a single shared aiosqlite connection.

    Every failure surfaces as StorageError (or NotFoundError for missing rows).
    Reads and writes share one lock, so a multi-statement write commits or
    rolls back as one unit and no reader sees it half done. A write that is
    interrupted, cancellation included, is rolled back before the lock is
    released.
    """

    def __init__(self, path: str) -> None:
        self._path = path
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    @property
    def db(self) -> aiosqlite.Connection:
        """Return the database connection, raising if not initialized."""
        if self._db is None:
            raise RuntimeError("SQLiteStore not initialized, call initialize() first")
        return self._db

    async def initialize(self) -> None:
        self._db = await aiosqlite.connect(self._path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys = ON")
        await self._db.executescript(SCHEMA_SQL)
        await self._db.commit()
        logger.info("Database ready at %s", self._path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @asynccontextmanager
    async def _transaction(self, cause: str):
        async with self._lock:
            try:
                yield self.db
                await self.db.commit()
            except aiosqlite.Error as e:
                await self.db.rollback()
                logger.error("%s: %s", cause, e)
                raise StorageError(f"{cause}: {e}") from e
            except BaseException:
                await self.db.rollback()
                raise

    @asynccontextmanager
    async def _reading(self, cause: str):
        async with self._lock:
            try:
                yield
            except aiosqlite.Error as e:
                logger.error("%s: %s", cause, e)
                raise StorageError(f"{cause}: {e}") from e

    # --- Models ---

    async def create_model(self, model: NewModel) -> Model:
        now = _now()
        async with self._transaction("Failed to insert model") as db:
            cursor = await db.execute(
                "INSERT INTO models (name, provider, config, created_at) VALUES (?, ?, ?, ?)",
                (model.name, model.provider, model.config, now),
            )
        return Model(
            id=cursor.lastrowid,
            name=model.name,
            provider=model.provider,
            config=model.config,
            created_at=now,
        )

    async def list_models(self) -> list[Model]:
        async with self._reading("Failed to list models"):
            cursor = await self.db.execute(f"SELECT {MODEL_COLUMNS} FROM models ORDER BY id")
            rows = await cursor.fetchall()
        return [Model(**dict(r)) for r in rows]

    # --- Settings ---

    async def list_settings(self) -> list[Setting]:
        async with self._reading("Failed to list settings"):
            cursor = await self.db.execute("SELECT key, value FROM settings ORDER BY key")
            rows = await cursor.fetchall()
        return [Setting(**dict(r)) for r in rows]

    async def upsert_setting(self, setting: Setting) -> Setting:
        async with self._transaction("Failed to upsert setting") as db:
            await db.execute(
                "INSERT INTO settings (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (setting.key, setting.value),
            )
        return setting

    # --- Conversations ---

    async def create_conversation_with_message(
        self, conversation: NewConversation, message: SeedMessage
    ) -> tuple[Conversation, Message]:
        now = _now()
        async with self._transaction("Failed to insert conversation") as db:
            cursor = await db.execute(
                "INSERT INTO conversations (model_id, subject, options, created_at) VALUES (?, ?, '', ?)",
                (conversation.model_id, conversation.subject, now),
            )
            cid = cursor.lastrowid
            cursor = await db.execute(
                "INSERT INTO messages (conversation_id, role, content, created_at) VALUES (?, ?, ?, ?)",
                (cid, int(message.role), message.content, now),
            )
            mid = cursor.lastrowid
        created = Conversation(
            id=cid,
            model_id=conversation.model_id,
            subject=conversation.subject,
            options="",
            created_at=now,
        )
        seed = Message(
            id=mid,
            conversation_id=cid,
            role=message.role,
            content=message.content,
            created_at=now,
        )
        return created, seed

    async def get_conversation(self, conversation_id: int) -> Conversation:
        async with self._reading("Failed to get conversation"):
            cursor = await self.db.execute(
                "SELECT id, model_id, subject, options, created_at FROM conversations WHERE id = ?",
                (conversation_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"Conversation with id = {conversation_id} not found")
        return Conversation(**dict(row))

    async def list_conversations(self) -> list[ConversationListItem]:
        # Inner join on models hides conversations whose model is gone.
        async with self._reading("Failed to list conversations"):
            cursor = await self.db.execute(
                """SELECT c.id, c.model_id, c.subject, c.options, c.created_at,
                          m.provider AS model_provider, COUNT(msg.id) AS message_count
                   FROM conversations c
                   INNER JOIN models m ON m.id = c.model_id
                   LEFT JOIN messages msg ON msg.conversation_id = c.id
                   GROUP BY c.id
                   ORDER BY c.id DESC"""
            )
            rows = await cursor.fetchall()
        return [ConversationListItem(**dict(r)) for r in rows]

    async def get_conversation_options(self, conversation_id: int) -> ConversationOptions:
        async with self._reading("Failed to get conversation options"):
            cursor = await self.db.execute(
                """SELECT c.id AS conversation_id, m.provider, c.options
                   FROM conversations c INNER JOIN models m ON m.id = c.model_id
                   WHERE c.id = ?""",
                (conversation_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"Options of conversation with id = {conversation_id} not found")
        return ConversationOptions(**dict(row))

    async def get_conversation_config(self, conversation_id: int) -> Model:
        async with self._reading("Failed to get conversation config"):
            cursor = await self.db.execute(
                """SELECT m.id, m.name, m.provider, m.config, m.created_at
                   FROM models m INNER JOIN conversations c ON c.model_id = m.id
                   WHERE c.id = ?""",
                (conversation_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"Model of conversation with id = {conversation_id} not found")
        return Model(**dict(row))

    async def update_conversation_options(
        self, conversation_id: int, options: str
    ) -> ConversationOptions:
        async with self._transaction("Failed to update conversation options") as db:
            cursor = await db.execute(
                "UPDATE conversations SET options = ? WHERE id = ?",
                (options, conversation_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Conversation with id = {conversation_id} not found")
        return await self.get_conversation_options(conversation_id)

    # --- Messages ---

    async def create_message(self, message: NewMessage) -> Message:
        now = _now()
        async with self._transaction("Failed to insert message") as db:
            cursor = await db.execute(
                "INSERT INTO messages (conversation_id, role, content, created_at) VALUES (?, ?, ?, ?)",
                (message.conversation_id, int(message.role), message.content, now),
            )
        return Message(
            id=cursor.lastrowid,
            conversation_id=message.conversation_id,
            role=message.role,
            content=message.content,
            created_at=now,
        )

    async def get_message(self, message_id: int) -> Message:
        async with self._reading("Failed to get message"):
            cursor = await self.db.execute(
                f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE id = ?", (message_id,)
            )
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"Message with id = {message_id} not found")
        return Message(**dict(row))

    async def list_messages(self, conversation_id: int) -> list[Message]:
        async with self._reading("Failed to list messages"):
            cursor = await self.db.execute(
                f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE conversation_id = ? ORDER BY id",
                (conversation_id,),
            )
            rows = await cursor.fetchall()
        return [Message(**dict(r)) for r in rows]

    async def get_last_message(self, conversation_id: int) -> Message:
        async with self._reading("Failed to get last message"):
            cursor = await self.db.execute(
                f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE conversation_id = ? "
                "ORDER BY id DESC LIMIT 1",
                (conversation_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"Conversation with id = {conversation_id} has no messages")
        return Message(**dict(row))

    async def get_model_of_message(self, message: Message) -> Model:
        return await self.get_conversation_config(message.conversation_id)
