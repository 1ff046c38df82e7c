# =============================================================================
# Inbound Message Model
# =============================================================================
# A message pulled from a remote mailbox, ready to be stored.
#
# Only the headers needed for deduplication and listing are extracted here.
# Full MIME parsing (bodies, attachments) happens downstream from the raw
# RFC 822 source, which is stored unchanged.
# =============================================================================

import email
import email.header
import email.policy
import email.utils
from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class InboundMessage:
    """
    A message fetched from a domain's mailbox.

    Attributes:
        domain_id: Domain the message was pulled for.
        message_id: RFC 5322 Message-ID, or a synthetic "imap:<domain>:<uid>"
                    when the message has none. Unique per domain.
        uid: IMAP UID at fetch time (only meaningful with its UIDVALIDITY).
        from_address: Sender address.
        to_addresses: Lower-cased To/Cc/Bcc addresses, deduplicated.
        subject: Decoded subject ("(No subject)" if empty).
        received_at: Date header, falling back to fetch time.
        raw_content: The unmodified RFC 822 source.
    """

    domain_id: str
    message_id: str
    uid: int | None = None
    from_address: str = ""
    to_addresses: list[str] = field(default_factory=list)
    subject: str = ""
    received_at: datetime | None = None
    raw_content: bytes = b""
    id: int | None = None

    @classmethod
    def from_raw(
        cls,
        domain_id: str,
        uid: int | None,
        raw: bytes,
        fetched_at: datetime | None = None,
    ) -> "InboundMessage":
        """
        Build a message from its raw RFC 822 source.

        Raises:
            ValueError: If the source is empty.
        """
        if not raw:
            raise ValueError(f"Empty message source for uid={uid}")

        parsed = email.message_from_bytes(raw, policy=email.policy.compat32)

        message_id = (parsed.get("Message-ID") or "").strip()
        if not message_id:
            message_id = f"imap:{domain_id}:{uid}"

        _, from_address = email.utils.parseaddr(parsed.get("From", ""))

        recipients: list[str] = []
        for header in ("To", "Cc", "Bcc"):
            for _, addr in email.utils.getaddresses(parsed.get_all(header, [])):
                addr = addr.strip().lower()
                if addr and addr not in recipients:
                    recipients.append(addr)

        received_at = fetched_at or datetime.now()
        date_header = parsed.get("Date")
        if date_header:
            try:
                received_at = email.utils.parsedate_to_datetime(date_header)
            except (TypeError, ValueError):
                pass

        return cls(
            domain_id=domain_id,
            message_id=message_id,
            uid=uid,
            from_address=from_address or "unknown@unknown.com",
            to_addresses=recipients,
            subject=_decode_header(parsed.get("Subject", "")) or "(No subject)",
            received_at=received_at,
            raw_content=raw,
        )


def _decode_header(value: str) -> str:
    """Decode an RFC 2047 encoded header into a plain string."""
    if not value:
        return ""
    parts = []
    for text, charset in email.header.decode_header(value):
        if isinstance(text, bytes):
            try:
                parts.append(text.decode(charset or "utf-8", errors="replace"))
            except LookupError:
                # Unknown charset label
                parts.append(text.decode("utf-8", errors="replace"))
        else:
            parts.append(text)
    return "".join(parts).strip()
