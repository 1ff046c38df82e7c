# =============================================================================
# Data Repository
# =============================================================================
# Provides a clean interface for database operations.
#
# The Repository pattern separates data access logic from business logic.
# Workers and the sync engine use this class instead of writing SQL directly.
#
# Write ownership:
#   - Domain status: ACTIVE/ERROR transitions come from the sync worker
#   - imap_configs bookkeeping: written by the sync engine
#   - Domain/config rows: written by whoever configures domains
# =============================================================================

import json
from datetime import datetime

import aiosqlite

from mailpull.core import (
    Domain,
    DomainStatus,
    ImapSettings,
    InboundMessage,
    PersonalAccount,
    PersonalAccountStatus,
    SourceKind,
)
from mailpull.storage.database import Database

# Longest error message kept in imap_configs.last_error
MAX_ERROR_LENGTH = 500


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Repository:
    """
    Data access layer for mailpull.

    Usage:
        >>> repo = Repository(db)
        >>> domains = await repo.list_sync_domains()
        >>> await repo.set_domain_status(domains[0].id, DomainStatus.ACTIVE)
    """

    def __init__(self, db: Database) -> None:
        """
        Initialize the repository.

        Args:
            db: Connected Database instance.
        """
        self.db = db

    # =========================================================================
    # Domain Operations
    # =========================================================================

    _DOMAIN_SELECT = """
        SELECT d.id, d.name, d.description, d.source_kind, d.status, d.created_at,
               c.host, c.port, c.secure, c.username, c.password, c.sync_interval,
               c.last_sync, c.last_full_sync, c.last_synced_uid, c.last_uid_validity,
               c.consecutive_errors, c.last_error,
               p.id AS personal_id, p.username AS personal_username,
               p.password_ciphertext, p.password_iv, p.password_tag,
               p.status AS personal_status
        FROM domains d
        JOIN imap_configs c ON c.domain_id = d.id
        LEFT JOIN personal_imap_accounts p ON p.domain_id = d.id
    """

    async def get_domain(self, domain_id: str) -> Domain | None:
        """
        Get a domain (with IMAP config) by ID.

        Returns:
            Domain if found and it has an IMAP config, None otherwise.
        """
        async with self.db.conn.execute(
            self._DOMAIN_SELECT + " WHERE d.id = ?", (domain_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_domain(row) if row else None

    async def list_domains(self) -> list[Domain]:
        """Get every domain that has an IMAP config, oldest first."""
        async with self.db.conn.execute(
            self._DOMAIN_SELECT + " ORDER BY d.created_at, d.id"
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_domain(row) for row in rows]

    async def list_sync_domains(self) -> list[Domain]:
        """
        Get the domains that should have a running sync worker.

        These are IMAP / PERSONAL_IMAP domains with an IMAP config whose
        status is anything but INACTIVE, ordered by creation time.
        """
        async with self.db.conn.execute(
            self._DOMAIN_SELECT
            + " WHERE d.source_kind IN (?, ?) AND d.status != ?"
            + " ORDER BY d.created_at, d.id",
            (SourceKind.IMAP.value, SourceKind.PERSONAL_IMAP.value, DomainStatus.INACTIVE.value),
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_domain(row) for row in rows]

    async def save_domain(self, domain: Domain) -> Domain:
        """
        Save a domain with its IMAP config and personal account.

        Connection settings are upserted; sync bookkeeping on an existing
        config row is left untouched.
        """
        conn = self.db.conn
        await conn.execute(
            """INSERT INTO domains (id, name, description, source_kind, status, created_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   name=excluded.name, description=excluded.description,
                   source_kind=excluded.source_kind, status=excluded.status""",
            (domain.id, domain.name, domain.description, domain.source_kind.value,
             domain.status.value, _to_iso(domain.created_at))
        )

        imap = domain.imap
        await conn.execute(
            """INSERT INTO imap_configs
               (domain_id, host, port, secure, username, password, sync_interval)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(domain_id) DO UPDATE SET
                   host=excluded.host, port=excluded.port, secure=excluded.secure,
                   username=excluded.username, password=excluded.password,
                   sync_interval=excluded.sync_interval""",
            (domain.id, imap.host, imap.port, int(imap.secure), imap.username,
             imap.password, imap.sync_interval)
        )

        personal = domain.personal_account
        if personal is None:
            await conn.execute(
                "DELETE FROM personal_imap_accounts WHERE domain_id = ?", (domain.id,)
            )
        else:
            cursor = await conn.execute(
                """INSERT INTO personal_imap_accounts
                   (domain_id, username, password_ciphertext, password_iv, password_tag, status)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(domain_id) DO UPDATE SET
                       username=excluded.username,
                       password_ciphertext=excluded.password_ciphertext,
                       password_iv=excluded.password_iv,
                       password_tag=excluded.password_tag,
                       status=excluded.status""",
                (domain.id, personal.username, personal.password_ciphertext,
                 personal.password_iv, personal.password_tag, personal.status.value)
            )
            if personal.id is None:
                personal.id = cursor.lastrowid

        await conn.commit()
        return domain

    async def delete_domain(self, domain_id: str) -> None:
        """Delete a domain and everything attached to it."""
        await self.db.conn.execute("DELETE FROM domains WHERE id = ?", (domain_id,))
        await self.db.conn.commit()

    async def set_domain_status(self, domain_id: str, status: DomainStatus) -> None:
        """Set the operational status of a domain."""
        await self.db.conn.execute(
            "UPDATE domains SET status = ? WHERE id = ?",
            (status.value, domain_id)
        )
        await self.db.conn.commit()

    async def get_domain_status(self, domain_id: str) -> DomainStatus | None:
        async with self.db.conn.execute(
            "SELECT status FROM domains WHERE id = ?", (domain_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return DomainStatus(row[0]) if row else None

    def _row_to_domain(self, row: aiosqlite.Row) -> Domain:
        """Convert a joined domain/config/personal row to a Domain."""
        personal = None
        if row["personal_id"] is not None:
            personal = PersonalAccount(
                id=row["personal_id"],
                username=row["personal_username"],
                password_ciphertext=row["password_ciphertext"],
                password_iv=row["password_iv"],
                password_tag=row["password_tag"],
                status=PersonalAccountStatus(row["personal_status"]),
            )

        return Domain(
            id=row["id"],
            name=row["name"],
            description=row["description"] or "",
            source_kind=SourceKind(row["source_kind"]),
            status=DomainStatus(row["status"]),
            created_at=_from_iso(row["created_at"]) or datetime.now(),
            imap=ImapSettings(
                host=row["host"],
                port=row["port"],
                secure=bool(row["secure"]),
                username=row["username"],
                password=row["password"],
                sync_interval=row["sync_interval"],
                last_sync=_from_iso(row["last_sync"]),
                last_full_sync=_from_iso(row["last_full_sync"]),
                last_synced_uid=row["last_synced_uid"],
                last_uid_validity=row["last_uid_validity"],
                consecutive_errors=row["consecutive_errors"],
                last_error=row["last_error"],
            ),
            personal_account=personal,
        )

    # =========================================================================
    # Sync Bookkeeping
    # =========================================================================

    async def get_uid_state(self, domain_id: str) -> tuple[int | None, int | None]:
        """
        Stored sync position of a domain.

        Returns:
            (last_synced_uid, last_uid_validity), either of which may be None.
        """
        async with self.db.conn.execute(
            "SELECT last_synced_uid, last_uid_validity FROM imap_configs WHERE domain_id = ?",
            (domain_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return (row[0], row[1]) if row else (None, None)

    async def reset_uid_state(self, domain_id: str, uid_validity: int | None) -> None:
        """
        Forget the stored UID position after a UIDVALIDITY change.

        The mailbox was rebuilt on the server, so every stored UID is stale.
        """
        await self.db.conn.execute(
            """UPDATE imap_configs SET last_synced_uid = NULL, last_uid_validity = ?
               WHERE domain_id = ?""",
            (uid_validity, domain_id)
        )
        await self.db.conn.commit()

    async def record_range_sync(
        self,
        domain_id: str,
        synced_at: datetime,
        highest_uid: int,
        uid_validity: int | None,
    ) -> None:
        """Record a completed UID range sync and clear error bookkeeping."""
        await self.db.conn.execute(
            """UPDATE imap_configs SET
                   last_sync = ?, last_full_sync = ?,
                   last_synced_uid = CASE WHEN ? > 0 THEN ? ELSE last_synced_uid END,
                   last_uid_validity = ?,
                   consecutive_errors = 0, last_error = NULL
               WHERE domain_id = ?""",
            (_to_iso(synced_at), _to_iso(synced_at), highest_uid, highest_uid,
             uid_validity, domain_id)
        )
        await self.db.conn.commit()

    async def record_unseen_sync(
        self,
        domain_id: str,
        synced_at: datetime,
        highest_uid: int,
    ) -> None:
        """Record a completed unseen-only sync, advancing the UID position."""
        await self.db.conn.execute(
            """UPDATE imap_configs SET
                   last_sync = ?,
                   last_synced_uid = CASE
                       WHEN ? > COALESCE(last_synced_uid, 0) THEN ?
                       ELSE last_synced_uid END
               WHERE domain_id = ?""",
            (_to_iso(synced_at), highest_uid, highest_uid, domain_id)
        )
        await self.db.conn.commit()

    async def increment_sync_errors(self, domain_id: str, message: str) -> None:
        """Count one more failure and remember its message."""
        await self.db.conn.execute(
            """UPDATE imap_configs SET
                   consecutive_errors = consecutive_errors + 1, last_error = ?
               WHERE domain_id = ?""",
            (message[:MAX_ERROR_LENGTH], domain_id)
        )
        await self.db.conn.commit()

    async def reset_sync_errors(self, domain_id: str) -> None:
        await self.db.conn.execute(
            """UPDATE imap_configs SET consecutive_errors = 0, last_error = NULL
               WHERE domain_id = ?""",
            (domain_id,)
        )
        await self.db.conn.commit()

    # =========================================================================
    # Message Operations
    # =========================================================================

    async def save_inbound_message(self, message: InboundMessage) -> bool:
        """
        Store a pulled message exactly once.

        Returns:
            True if the message was inserted, False if a message with the
            same Message-ID already exists for the domain.
        """
        cursor = await self.db.conn.execute(
            """INSERT OR IGNORE INTO inbound_messages
               (domain_id, uid, message_id, from_address, to_addresses,
                subject, received_at, raw_content)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (message.domain_id, message.uid, message.message_id,
             message.from_address, json.dumps(message.to_addresses),
             message.subject, _to_iso(message.received_at), message.raw_content)
        )
        await self.db.conn.commit()

        if cursor.rowcount == 0:
            return False
        message.id = cursor.lastrowid
        return True

    async def get_inbound_messages(self, domain_id: str, limit: int = 50) -> list[InboundMessage]:
        """Most recently stored messages for a domain."""
        async with self.db.conn.execute(
            """SELECT * FROM inbound_messages WHERE domain_id = ?
               ORDER BY id DESC LIMIT ?""",
            (domain_id, limit)
        ) as cursor:
            rows = await cursor.fetchall()

        return [
            InboundMessage(
                id=row["id"],
                domain_id=row["domain_id"],
                uid=row["uid"],
                message_id=row["message_id"],
                from_address=row["from_address"] or "",
                to_addresses=json.loads(row["to_addresses"] or "[]"),
                subject=row["subject"] or "",
                received_at=_from_iso(row["received_at"]),
                raw_content=row["raw_content"] or b"",
            )
            for row in rows
        ]

    async def count_messages(self, domain_id: str) -> int:
        async with self.db.conn.execute(
            "SELECT COUNT(*) FROM inbound_messages WHERE domain_id = ?",
            (domain_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0
