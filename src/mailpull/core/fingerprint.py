# =============================================================================
# Connection Fingerprint
# =============================================================================
# A deterministic summary of the configuration fields that affect a live
# IMAP connection. The supervisor compares a freshly loaded domain's
# fingerprint with a running worker's to decide whether the worker must be
# replaced.
#
# Only whitelisted fields participate. Cosmetic fields (name, description)
# and bookkeeping (last_sync, error counters) never do, so editing them does
# not tear down a healthy, idling connection.
# =============================================================================

import hashlib
import json
from dataclasses import asdict, dataclass

from mailpull.core.domain import Domain


@dataclass(frozen=True)
class ConnectionFingerprint:
    """Connection-relevant fields of a domain."""

    source_kind: str
    host: str
    port: int
    secure: bool
    username: str
    password: str
    sync_interval: int
    personal_status: str | None = None
    personal_username: str | None = None
    personal_password_ciphertext: str | None = None
    personal_password_iv: str | None = None
    personal_password_tag: str | None = None

    @classmethod
    def from_domain(cls, domain: Domain) -> "ConnectionFingerprint":
        imap = domain.imap
        personal = domain.personal_account
        return cls(
            source_kind=domain.source_kind.value,
            host=imap.host,
            port=imap.port,
            secure=imap.secure,
            username=imap.username,
            password=imap.password,
            sync_interval=imap.sync_interval,
            personal_status=personal.status.value if personal else None,
            personal_username=personal.username if personal else None,
            personal_password_ciphertext=personal.password_ciphertext if personal else None,
            personal_password_iv=personal.password_iv if personal else None,
            personal_password_tag=personal.password_tag if personal else None,
        )

    def digest(self) -> str:
        """
        Stable SHA-256 hex digest of the fingerprint.

        Keys are sorted before serialization so the digest never depends
        on field declaration order.
        """
        payload = json.dumps(asdict(self), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def compute_fingerprint(domain: Domain) -> str:
    """Shortcut for ConnectionFingerprint.from_domain(domain).digest()."""
    return ConnectionFingerprint.from_domain(domain).digest()
