# =============================================================================
# Domain Model
# =============================================================================
# Represents a configured external mailbox source ("domain") and the IMAP
# connection settings attached to it.
#
# A domain is one of two kinds:
#   - IMAP:          shared credentials stored with the domain's IMAP config
#   - PERSONAL_IMAP: a personal account whose password is stored encrypted
#                    (AES-256-GCM ciphertext + IV + auth tag)
#
# The sync worker only ever mutates a domain's status (ACTIVE on connect,
# ERROR on fatal failure). Everything else is owned by whoever configures
# the domain.
# =============================================================================

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class SourceKind(str, Enum):
    """Where a domain's credentials come from."""
    IMAP = "IMAP"                       # Shared domain credentials
    PERSONAL_IMAP = "PERSONAL_IMAP"     # Personal account, encrypted password


class DomainStatus(str, Enum):
    """Operational status of a domain, persisted with the domain."""
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    ERROR = "ERROR"
    INACTIVE = "INACTIVE"


class PersonalAccountStatus(str, Enum):
    """Administrative status of a personal IMAP account."""
    ACTIVE = "ACTIVE"
    DISABLED = "DISABLED"


@dataclass
class ImapSettings:
    """
    IMAP connection parameters plus persisted sync bookkeeping.

    Attributes:
        host: Hostname of the IMAP server.
        port: Port for the IMAP connection (993 for TLS, 143 for plain).
        secure: Connect with TLS from the start. When False the client
                upgrades with STARTTLS if the server offers it.
        username: Login name for shared credentials.
        password: Password for shared credentials.
        sync_interval: Polling interval in seconds (part of the connection
                       fingerprint).

        last_sync: When the last successful sync finished.
        last_full_sync: When the last UID range sync finished.
        last_synced_uid: Highest UID already pulled into storage.
        last_uid_validity: UIDVALIDITY the stored UIDs belong to.
        consecutive_errors: Failures recorded since the last clean connect.
        last_error: Message of the most recent recorded failure.
    """

    host: str = ""
    port: int = 993
    secure: bool = True
    username: str = ""
    password: str = ""
    sync_interval: int = 60

    # Sync bookkeeping (written by the sync engine)
    last_sync: datetime | None = None
    last_full_sync: datetime | None = None
    last_synced_uid: int | None = None
    last_uid_validity: int | None = None
    consecutive_errors: int = 0
    last_error: str | None = None


@dataclass
class PersonalAccount:
    """
    A personal IMAP account whose password is stored encrypted.

    The password is kept as its three-part AES-GCM representation and only
    decrypted at connect time.
    """

    username: str
    password_ciphertext: str
    password_iv: str
    password_tag: str
    status: PersonalAccountStatus = PersonalAccountStatus.ACTIVE
    id: int | None = None

    @property
    def is_disabled(self) -> bool:
        return self.status == PersonalAccountStatus.DISABLED


@dataclass
class Domain:
    """
    A configured external mailbox source.

    Attributes:
        id: Unique identifier of the domain.
        name: Display name (e.g. "example.com"). Cosmetic; changing it never
              restarts a running worker.
        source_kind: Shared or personal credentials.
        status: Operational status (see DomainStatus).
        imap: IMAP connection settings and sync bookkeeping.
        personal_account: Encrypted personal credentials, required for
                          PERSONAL_IMAP domains.
        description: Free-form text, cosmetic.
        created_at: Creation timestamp, used for stable worker ordering.

    Example:
        >>> domain = Domain(
        ...     id="d1",
        ...     name="example.com",
        ...     imap=ImapSettings(host="imap.example.com", username="a", password="b"),
        ... )
    """

    id: str
    name: str
    source_kind: SourceKind = SourceKind.IMAP
    status: DomainStatus = DomainStatus.PENDING
    imap: ImapSettings = field(default_factory=ImapSettings)
    personal_account: PersonalAccount | None = None
    description: str = ""
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def last_sync(self) -> datetime | None:
        """Timestamp of the last successful sync for this domain."""
        return self.imap.last_sync

    @property
    def is_personal(self) -> bool:
        return self.source_kind == SourceKind.PERSONAL_IMAP

    def __str__(self) -> str:
        return f"{self.name} ({self.source_kind.value})"

    def __repr__(self) -> str:
        return (
            f"Domain(id={self.id!r}, name={self.name!r}, "
            f"kind={self.source_kind.value}, status={self.status.value}, "
            f"imap={self.imap.host}:{self.imap.port})"
        )
