# =============================================================================
# Database Connection and Schema Management
# =============================================================================
# Manages SQLite database connection and schema migrations.
#
# Schema overview:
#   - domains: Configured mailbox sources and their operational status
#   - imap_configs: IMAP connection settings + sync bookkeeping per domain
#   - personal_imap_accounts: Encrypted personal credentials per domain
#   - inbound_messages: Messages pulled from the remote mailboxes
#
# Uses aiosqlite for async operations, with WAL mode for better
# concurrent performance.
# =============================================================================

from pathlib import Path

import aiosqlite


# Current schema version - increment when making schema changes
SCHEMA_VERSION = 1


class Database:
    """
    Manages the SQLite database connection and schema.

    Usage:
        >>> db = Database(Path("mailpull.db"))
        >>> await db.connect()
        >>> async with db.conn.execute("SELECT ...") as cursor:
        ...     rows = await cursor.fetchall()
        >>> await db.close()

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """
        Open the database connection and ensure schema is up to date.

        Creates the database file if it doesn't exist.
        """
        # Ensure parent directory exists
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row

        # Enable foreign keys (off by default in SQLite)
        await self._connection.execute("PRAGMA foreign_keys = ON")

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
        """
        Initialize the database schema.

        Creates tables if they don't exist, runs migrations if needed.
        """
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

        -- Configured mailbox sources
        CREATE TABLE IF NOT EXISTS domains (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            source_kind TEXT NOT NULL DEFAULT 'IMAP'
                CHECK(source_kind IN ('IMAP', 'PERSONAL_IMAP')),
            status TEXT NOT NULL DEFAULT 'PENDING'
                CHECK(status IN ('PENDING', 'ACTIVE', 'ERROR', 'INACTIVE')),
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );

        -- IMAP connection settings and sync bookkeeping (one per domain)
        CREATE TABLE IF NOT EXISTS imap_configs (
            domain_id TEXT PRIMARY KEY REFERENCES domains(id) ON DELETE CASCADE,
            host TEXT NOT NULL,
            port INTEGER NOT NULL DEFAULT 993,
            secure INTEGER NOT NULL DEFAULT 1,
            username TEXT NOT NULL DEFAULT '',
            password TEXT NOT NULL DEFAULT '',
            sync_interval INTEGER NOT NULL DEFAULT 60,
            last_sync TEXT,
            last_full_sync TEXT,
            last_synced_uid INTEGER,
            last_uid_validity INTEGER,
            consecutive_errors INTEGER NOT NULL DEFAULT 0,
            last_error TEXT
        );

        -- Personal IMAP credentials (password stored AES-GCM encrypted)
        CREATE TABLE IF NOT EXISTS personal_imap_accounts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            domain_id TEXT NOT NULL UNIQUE REFERENCES domains(id) ON DELETE CASCADE,
            username TEXT NOT NULL,
            password_ciphertext TEXT NOT NULL,
            password_iv TEXT NOT NULL,
            password_tag TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'ACTIVE'
                CHECK(status IN ('ACTIVE', 'DISABLED'))
        );

        -- Messages pulled from remote mailboxes
        CREATE TABLE IF NOT EXISTS inbound_messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            domain_id TEXT NOT NULL REFERENCES domains(id) ON DELETE CASCADE,
            uid INTEGER,
            message_id TEXT NOT NULL,
            from_address TEXT,
            to_addresses TEXT,      -- JSON array
            subject TEXT,
            received_at TEXT,
            raw_content BLOB,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(domain_id, message_id)
        );

        -- Indexes for common queries
        CREATE INDEX IF NOT EXISTS idx_domains_status ON domains(status);
        CREATE INDEX IF NOT EXISTS idx_inbound_domain ON inbound_messages(domain_id);
        CREATE INDEX IF NOT EXISTS idx_inbound_received ON inbound_messages(received_at DESC);
        """

        await self.conn.executescript(schema)

        await self.conn.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,)
        )
        await self.conn.commit()
