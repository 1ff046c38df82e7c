# =============================================================================
# IMAP Sync Engine
# =============================================================================
# Pulls messages from an open IMAP session into local storage.
#
# Sync strategies:
#   1. UID range sync: every UID above the stored position, regardless of
#      \Seen. Used after every fresh connect and on explicit triggers, so
#      nothing that arrived while disconnected is missed.
#   2. Unseen sync: only UNSEEN messages, marked \Seen afterwards. Used
#      after each IDLE wake while the connection was held continuously.
#
# Key concepts:
#   - UIDVALIDITY: If this changes, the stored UID position is invalid and
#     the range sync starts again from UID 1.
#   - Exactly-once storage: messages are keyed on (domain, Message-ID), so
#     re-fetching a message never stores it twice.
#   - "n:*" quirk: a UID range whose start is above the highest UID still
#     matches the last message, so results are filtered client side.
# =============================================================================

import logging
from dataclasses import dataclass
from datetime import datetime

from mailpull.core import Domain, DomainStatus, InboundMessage
from mailpull.imap.client import IMAPClient, MailboxHandle
from mailpull.storage.repository import Repository

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """
    Result of a sync operation.

    Attributes:
        success: True if every fetched message was stored (or was a duplicate).
        processed: Messages newly stored.
        errors: Messages that could not be parsed or stored.
        new_highest_uid: Highest UID seen during the sync.
        uid_validity: UIDVALIDITY the UIDs belong to.
    """
    success: bool = True
    processed: int = 0
    errors: int = 0
    new_highest_uid: int | None = None
    uid_validity: int | None = None


class SyncEngine:
    """
    Moves messages from a session into the repository.

    Usage:
        >>> engine = SyncEngine(repo)
        >>> result = await engine.sync_by_uid_range(client, domain, mailbox)
        >>> print(f"Stored {result.processed} new messages")
    """

    def __init__(
        self,
        repository: Repository,
        batch_size: int = 200,
        mark_seen: bool = True,
    ) -> None:
        """
        Initialize the sync engine.

        Args:
            repository: Storage for messages and sync bookkeeping.
            batch_size: UIDs per FETCH command.
            mark_seen: Mark fetched messages \\Seen after an unseen sync.
        """
        self.repository = repository
        self.batch_size = batch_size
        self.mark_seen = mark_seen

    # =========================================================================
    # Range Sync
    # =========================================================================

    async def sync_by_uid_range(
        self,
        session: IMAPClient,
        domain: Domain,
        mailbox: MailboxHandle,
    ) -> SyncResult:
        """
        Fetch every message above the stored UID position.

        Args:
            session: Connected session with `mailbox` selected.
            domain: Domain being synced.
            mailbox: Handle returned when the mailbox was selected.
        """
        last_uid, stored_validity = await self.repository.get_uid_state(domain.id)

        if (
            mailbox.uid_validity is not None
            and stored_validity is not None
            and stored_validity != mailbox.uid_validity
        ):
            logger.warning(
                f"UIDVALIDITY changed for {domain.name} "
                f"({stored_validity} -> {mailbox.uid_validity}), restarting from UID 1"
            )
            await self.repository.reset_uid_state(domain.id, mailbox.uid_validity)
            last_uid = None

        start = (last_uid or 0) + 1
        result = SyncResult(new_highest_uid=last_uid, uid_validity=mailbox.uid_validity)

        if mailbox.uid_next is not None and start >= mailbox.uid_next:
            logger.debug(f"Range sync {domain.name}: no new messages")
            uids = []
        else:
            end = str(mailbox.uid_next - 1) if mailbox.uid_next is not None else "*"
            uids = await session.search_uids(f"UID {start}:{end}")
            uids = [uid for uid in uids if uid >= start]

        if uids:
            logger.debug(f"Range sync {domain.name}: {len(uids)} UIDs from {start}")
            await self._fetch_and_store(session, domain, uids, result)

        await self.repository.record_range_sync(
            domain.id,
            synced_at=datetime.now(),
            highest_uid=result.new_highest_uid or 0,
            uid_validity=mailbox.uid_validity,
        )

        # A successful sync proves the domain works
        status = await self.repository.get_domain_status(domain.id)
        if status in (DomainStatus.PENDING, DomainStatus.ERROR):
            await self.repository.set_domain_status(domain.id, DomainStatus.ACTIVE)

        result.success = result.errors == 0
        if result.processed:
            logger.info(f"Range sync {domain.name}: {result.processed} new messages")
        return result

    # =========================================================================
    # Unseen Sync
    # =========================================================================

    async def sync_unseen_messages(self, session: IMAPClient, domain: Domain) -> SyncResult:
        """
        Fetch UNSEEN messages and mark them \\Seen.

        Args:
            session: Connected session with the watched mailbox selected.
            domain: Domain being synced.
        """
        mailbox = session.mailbox
        result = SyncResult(uid_validity=mailbox.uid_validity if mailbox else None)

        uids = await session.search_uids("UNSEEN")
        if not uids:
            logger.debug(f"Unseen sync {domain.name}: no new messages")
        else:
            fetched = await self._fetch_and_store(session, domain, uids, result)
            if self.mark_seen and fetched:
                await session.mark_seen(fetched)

        await self.repository.record_unseen_sync(
            domain.id,
            synced_at=datetime.now(),
            highest_uid=result.new_highest_uid or 0,
        )

        result.success = result.errors == 0
        if result.processed:
            logger.info(f"Unseen sync {domain.name}: {result.processed} new messages")
        return result

    async def _fetch_and_store(
        self,
        session: IMAPClient,
        domain: Domain,
        uids: list[int],
        result: SyncResult,
    ) -> list[int]:
        """
        Fetch UIDs in batches and store each message.

        Session errors propagate. A message that fails to parse or store
        only counts towards result.errors.

        Returns:
            UIDs the server returned a source for.
        """
        fetched: list[int] = []

        for i in range(0, len(uids), self.batch_size):
            batch = uids[i:i + self.batch_size]
            for uid, raw in await session.fetch_raw(batch):
                fetched.append(uid)
                if result.new_highest_uid is None or uid > result.new_highest_uid:
                    result.new_highest_uid = uid

                try:
                    message = InboundMessage.from_raw(domain.id, uid, raw)
                    if await self.repository.save_inbound_message(message):
                        result.processed += 1
                except Exception as e:
                    result.errors += 1
                    logger.error(f"Failed to store UID {uid} for {domain.name}: {e}")

        return fetched

    # =========================================================================
    # Error Bookkeeping
    # =========================================================================

    async def record_sync_error(self, domain_id: str, error: BaseException | str) -> None:
        """Remember a failure for the domain. Never raises."""
        try:
            await self.repository.increment_sync_errors(domain_id, str(error))
        except Exception as e:
            logger.warning(f"Could not record sync error for {domain_id}: {e}")

    async def reset_sync_errors(self, domain_id: str) -> None:
        """Clear recorded failures for the domain. Never raises."""
        try:
            await self.repository.reset_sync_errors(domain_id)
        except Exception as e:
            logger.warning(f"Could not reset sync errors for {domain_id}: {e}")
