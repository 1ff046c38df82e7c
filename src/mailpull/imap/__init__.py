# =============================================================================
# IMAP Module
# =============================================================================
# Everything that talks to a remote mailbox:
#   - IMAPClient: one authenticated session (SSL/STARTTLS, IDLE, UID fetch)
#   - Credential resolution (shared or encrypted personal credentials)
#   - SyncEngine: pulls messages from a session into storage
#   - DomainWorker: keeps one session alive per domain and self-heals
#
# This module uses aioimaplib for async IMAP operations.
# =============================================================================

from mailpull.imap.client import (
    ConnectionParams,
    IMAPClient,
    IMAPError,
    IMAPConnectionError,
    IMAPAuthenticationError,
    MailboxHandle,
)
from mailpull.imap.credentials import (
    CredentialError,
    LoginCredentials,
    PersonalCredentials,
    SharedCredentials,
    credentials_for,
    resolve_credentials,
)
from mailpull.imap.state import (
    InvalidTransitionError,
    WorkerPhase,
    WorkerState,
    WorkerStatus,
    is_fatal_error,
    reconnect_delay,
)
from mailpull.imap.sync import SyncEngine, SyncResult
from mailpull.imap.worker import DomainWorker

__all__ = [
    # Client
    "ConnectionParams",
    "IMAPClient",
    "IMAPError",
    "IMAPConnectionError",
    "IMAPAuthenticationError",
    "MailboxHandle",
    # Credentials
    "CredentialError",
    "LoginCredentials",
    "PersonalCredentials",
    "SharedCredentials",
    "credentials_for",
    "resolve_credentials",
    # Worker
    "DomainWorker",
    "InvalidTransitionError",
    "WorkerPhase",
    "WorkerState",
    "WorkerStatus",
    "is_fatal_error",
    "reconnect_delay",
    # Sync
    "SyncEngine",
    "SyncResult",
]
