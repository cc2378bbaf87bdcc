# =============================================================================
# Database Connection and Schema Management
# =============================================================================
# Manages the SQLite database that backs the default message store.
#
# Schema overview:
#   - messages: Processed messages, keyed by the stable "<account>-<uid>" id
#   - attachments: Attachment metadata (never the payload)
#   - messages_fts: Full-text index over subject/sender/body
#
# Uses aiosqlite for async operations, with WAL mode so readers (a search
# API, a shell) don't block the sync engine's writes.
# =============================================================================

import logging
from pathlib import Path

import aiosqlite

from hawk_sync.config import Config

logger = logging.getLogger(__name__)

# Current schema version - increment when making schema changes
SCHEMA_VERSION = 1


class Database:
    """
    Manages the SQLite database connection and schema.

    Usage:
        >>> db = Database()
        >>> await db.connect()
        >>> store = SqliteMessageStore(db)
        >>> await db.close()

    Attributes:
        db_path: Path to the SQLite database file, or ":memory:".
    """

    def __init__(self, db_path: Path | str | None = None) -> None:
        self.db_path = db_path or Config.database_path()
        self._connection: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """
        Open the database connection and bring the schema up to date.

        Creates the database file (and its directory) if needed.
        """
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self.db_path)
        await self._connection.execute("PRAGMA foreign_keys = ON")
        await self._connection.execute("PRAGMA journal_mode = WAL")
        await self._init_schema()
        logger.debug(f"Opened message database at {self.db_path}")

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    @property
    def conn(self) -> aiosqlite.Connection:
        """
        Get the active database connection.

        Raises:
            RuntimeError: If not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    async def schema_version(self) -> int:
        try:
            async with self.conn.execute("SELECT version FROM schema_version") as cursor:
                row = await cursor.fetchone()
                return row[0] if row else 0
        except aiosqlite.OperationalError:
            # Fresh database
            return 0

    async def _init_schema(self) -> None:
        current_version = await self.schema_version()
        if current_version < SCHEMA_VERSION:
            logger.info(f"Creating message schema (v{current_version} -> v{SCHEMA_VERSION})")
            await self._create_schema()

    async def _create_schema(self) -> None:
        """Create the database schema from scratch."""
        schema = """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY
        );

        -- Processed messages
        CREATE TABLE IF NOT EXISTS messages (
            id TEXT PRIMARY KEY,            -- "<account_id>-<uid>"
            account_id TEXT NOT NULL,
            uid INTEGER NOT NULL,
            folder TEXT NOT NULL DEFAULT 'INBOX',
            message_id TEXT,
            subject TEXT,
            sender TEXT,
            sender_name TEXT,
            recipients TEXT,                -- JSON array
            cc TEXT,                        -- JSON array
            bcc TEXT,                       -- JSON array
            date_sent TEXT,
            processed_at TEXT,
            flags INTEGER NOT NULL DEFAULT 0,
            size INTEGER NOT NULL DEFAULT 0,
            category TEXT NOT NULL DEFAULT 'unclassified',
            confidence REAL NOT NULL DEFAULT 0.0,
            body_text TEXT,
            body_html TEXT,
            body TEXT,
            UNIQUE(account_id, uid)
        );

        -- Attachment metadata
        CREATE TABLE IF NOT EXISTS attachments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            message_id TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
            filename TEXT NOT NULL,
            content_type TEXT NOT NULL,
            size INTEGER NOT NULL,
            content_id TEXT,
            is_inline INTEGER NOT NULL DEFAULT 0
        );

        -- Full-text search index for messages
        CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
            subject,
            sender,
            sender_name,
            body,
            content='messages',
            content_rowid='rowid'
        );

        CREATE TRIGGER IF NOT EXISTS messages_ai AFTER INSERT ON messages BEGIN
            INSERT INTO messages_fts(rowid, subject, sender, sender_name, body)
            VALUES (new.rowid, new.subject, new.sender, new.sender_name, new.body);
        END;

        CREATE TRIGGER IF NOT EXISTS messages_ad AFTER DELETE ON messages BEGIN
            INSERT INTO messages_fts(messages_fts, rowid, subject, sender, sender_name, body)
            VALUES ('delete', old.rowid, old.subject, old.sender, old.sender_name, old.body);
        END;

        CREATE TRIGGER IF NOT EXISTS messages_au AFTER UPDATE ON messages BEGIN
            INSERT INTO messages_fts(messages_fts, rowid, subject, sender, sender_name, body)
            VALUES ('delete', old.rowid, old.subject, old.sender, old.sender_name, old.body);
            INSERT INTO messages_fts(rowid, subject, sender, sender_name, body)
            VALUES (new.rowid, new.subject, new.sender, new.sender_name, new.body);
        END;

        CREATE INDEX IF NOT EXISTS idx_messages_account_uid ON messages(account_id, uid);
        CREATE INDEX IF NOT EXISTS idx_messages_date ON messages(date_sent DESC);
        CREATE INDEX IF NOT EXISTS idx_messages_category ON messages(category);
        CREATE INDEX IF NOT EXISTS idx_attachments_message ON attachments(message_id);
        """

        await self.conn.executescript(schema)
        await self.conn.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,)
        )
        await self.conn.commit()
