# =============================================================================
# Database Connection and Schema Management
# =============================================================================
# Manages the SQLite database that keeps the mail cache across restarts.
#
# Schema overview:
#   - folders: Mailboxes with their roles and sync cursors
#   - messages: One row per (folder, message) copy, envelope, flags and
#               the body once it has been fetched
#
# The database only ever holds server truth (synced deltas and fetched
# bodies). Optimistic changes live in memory until the server confirms
# them and a later sync writes them here.
#
# Uses aiosqlite for async operations, with WAL mode for better
# concurrent performance.
# =============================================================================

import aiosqlite
from pathlib import Path

from kestrel_tui.config import Config


# Current schema version - increment when making schema changes
SCHEMA_VERSION = 1


class Database:
    """
    Manages the SQLite database connection and schema.

    Usage:
        >>> db = Database()
        >>> await db.connect()
        >>> await db.conn.execute("SELECT ...")
        >>> await db.close()

    Attributes:
        db_path: Path to the SQLite database file (":memory:" for tests).
    """

    def __init__(self, db_path: Path | str | None = None) -> None:
        """
        Initialize the database manager.

        Args:
            db_path: Path to database file. Defaults to XDG data location.
        """
        self.db_path = db_path or Config.database_path()
        self._connection: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """
        Open the database connection and ensure schema is up to date.

        Creates the database file if it doesn't exist.
        """
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self.db_path)

        # Enable WAL mode for better concurrent performance
        await self._connection.execute("PRAGMA journal_mode = WAL")

        await self._init_schema()

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

    async def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        try:
            async with self.conn.execute(
                "SELECT version FROM schema_version"
            ) as cursor:
                row = await cursor.fetchone()
                current_version = row[0] if row else 0
        except aiosqlite.OperationalError:
            # Table doesn't exist, this is a fresh database
            current_version = 0

        if current_version < SCHEMA_VERSION:
            await self._create_schema()

    async def _create_schema(self) -> None:
        """Create the database schema from scratch."""
        schema = """
        -- Schema version tracking
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY
        );

        -- Mailboxes, keyed by their IMAP name
        CREATE TABLE IF NOT EXISTS folders (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            folder_type TEXT NOT NULL DEFAULT 'other',
            cursor TEXT,
            stale INTEGER NOT NULL DEFAULT 0,
            total_messages INTEGER DEFAULT 0,
            unread_count INTEGER DEFAULT 0,
            last_sync TEXT
        );

        -- Message copies; Gmail lists one message in several mailboxes
        CREATE TABLE IF NOT EXISTS messages (
            folder_id TEXT NOT NULL REFERENCES folders(id) ON DELETE CASCADE,
            id TEXT NOT NULL,
            thread_id TEXT NOT NULL,
            uid INTEGER NOT NULL DEFAULT 0,
            message_id TEXT,
            in_reply_to TEXT,
            "references" TEXT,  -- JSON array of Message-IDs
            subject TEXT,
            sender TEXT,
            sender_name TEXT,
            recipients TEXT,    -- JSON array
            cc TEXT,            -- JSON array
            date_sent TEXT,
            flags INTEGER NOT NULL DEFAULT 0,
            body TEXT,
            PRIMARY KEY (folder_id, id)
        );

        -- Indexes for common queries
        CREATE INDEX IF NOT EXISTS idx_messages_id ON messages(id);
        CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(folder_id, thread_id);
        """

        await self.conn.executescript(schema)
        await self.conn.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,)
        )
        await self.conn.commit()
