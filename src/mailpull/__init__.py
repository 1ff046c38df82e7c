# =============================================================================
# mailpull: Mailbox Synchronization Service
# =============================================================================
#
#   "Keeps the line open so the mail comes to you."
#
# mailpull is a long-running background service that holds one persistent,
# authenticated IMAP session per configured mail source ("domain"), listens
# for new mail with IMAP IDLE, and pulls new messages into local storage.
#
# Features:
#   - One self-healing worker per domain (reconnect with backoff + jitter)
#   - IMAP IDLE push notifications with explicit interrupt handling
#   - Shared and personal (encrypted) credentials
#   - Configuration fingerprinting to avoid needless reconnects
#   - SQLite storage with exactly-once message ingestion
#   - XDG Base Directory compliant
#
# =============================================================================

__version__ = "0.1.0"
__app_name__ = "mailpull"

# Main entry point - this is what gets called by the 'mailpull' command
from mailpull.app import main

__all__ = ["main", "__version__", "__app_name__"]
