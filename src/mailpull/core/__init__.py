# =============================================================================
# mailpull Core Module
# =============================================================================
# Core domain models. Apart from the secrets helper (cryptography/keyring),
# these are plain dataclasses that can be imported anywhere without causing
# circular imports.
#
#   - Domain: a configured mailbox source with IMAP settings
#   - PersonalAccount: encrypted personal credentials
#   - ConnectionFingerprint: connection-relevant config summary
#   - InboundMessage: a message pulled from a remote mailbox
#   - SecretBox: AES-GCM decryption of stored passwords
# =============================================================================

from mailpull.core.domain import (
    Domain,
    DomainStatus,
    ImapSettings,
    PersonalAccount,
    PersonalAccountStatus,
    SourceKind,
)
from mailpull.core.fingerprint import ConnectionFingerprint, compute_fingerprint
from mailpull.core.message import InboundMessage
from mailpull.core.secrets import EncryptedSecret, SecretBox, SecretError

__all__ = [
    "Domain",
    "DomainStatus",
    "ImapSettings",
    "PersonalAccount",
    "PersonalAccountStatus",
    "SourceKind",
    "ConnectionFingerprint",
    "compute_fingerprint",
    "InboundMessage",
    "EncryptedSecret",
    "SecretBox",
    "SecretError",
]
