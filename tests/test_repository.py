# =============================================================================
# Repository Tests
# =============================================================================

from datetime import datetime

import pytest

from mailpull.core import (
    Domain,
    DomainStatus,
    ImapSettings,
    InboundMessage,
    PersonalAccountStatus,
    SourceKind,
)


class TestDomains:

    @pytest.mark.asyncio
    async def test_save_and_get_domain(self, repo, sample_domain):
        await repo.save_domain(sample_domain)

        loaded = await repo.get_domain("d1")

        assert loaded is not None
        assert loaded.name == "example.com"
        assert loaded.source_kind == SourceKind.IMAP
        assert loaded.status == DomainStatus.PENDING
        assert loaded.imap.host == "imap.example.com"
        assert loaded.imap.secure is True
        assert loaded.imap.password == "hunter2"
        assert loaded.personal_account is None
        assert loaded.created_at == datetime(2024, 1, 15, 10, 30, 0)

    @pytest.mark.asyncio
    async def test_get_missing_domain(self, repo):
        assert await repo.get_domain("nope") is None

    @pytest.mark.asyncio
    async def test_personal_account_round_trip(self, repo, personal_domain):
        await repo.save_domain(personal_domain)

        loaded = await repo.get_domain("d2")

        assert loaded.is_personal
        account = loaded.personal_account
        assert account.id is not None
        assert account.username == "me@personal.example.com"
        assert account.password_ciphertext == personal_domain.personal_account.password_ciphertext
        assert account.status == PersonalAccountStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_save_keeps_sync_bookkeeping(self, repo, sample_domain):
        await repo.save_domain(sample_domain)
        await repo.record_range_sync("d1", datetime(2024, 3, 1), highest_uid=42, uid_validity=7)

        sample_domain.imap.host = "imap2.example.com"
        await repo.save_domain(sample_domain)

        loaded = await repo.get_domain("d1")
        assert loaded.imap.host == "imap2.example.com"
        assert loaded.imap.last_synced_uid == 42
        assert loaded.imap.last_uid_validity == 7

    @pytest.mark.asyncio
    async def test_list_sync_domains(self, repo, sample_domain, personal_domain):
        inactive = Domain(
            id="d3",
            name="old.example.com",
            status=DomainStatus.INACTIVE,
            imap=ImapSettings(host="imap.old.example.com"),
            created_at=datetime(2023, 1, 1),
        )
        for domain in (personal_domain, inactive, sample_domain):
            await repo.save_domain(domain)

        domains = await repo.list_sync_domains()

        # Ordered by creation, INACTIVE excluded
        assert [d.id for d in domains] == ["d1", "d2"]
        assert len(await repo.list_domains()) == 3

    @pytest.mark.asyncio
    async def test_set_domain_status(self, repo, sample_domain):
        await repo.save_domain(sample_domain)

        await repo.set_domain_status("d1", DomainStatus.ERROR)

        assert await repo.get_domain_status("d1") == DomainStatus.ERROR

    @pytest.mark.asyncio
    async def test_delete_domain(self, repo, sample_domain):
        await repo.save_domain(sample_domain)

        await repo.delete_domain("d1")

        assert await repo.get_domain("d1") is None


class TestSyncBookkeeping:

    @pytest.mark.asyncio
    async def test_error_counter(self, repo, sample_domain):
        await repo.save_domain(sample_domain)

        await repo.increment_sync_errors("d1", "first")
        await repo.increment_sync_errors("d1", "x" * 1000)

        imap = (await repo.get_domain("d1")).imap
        assert imap.consecutive_errors == 2
        assert len(imap.last_error) == 500

        await repo.reset_sync_errors("d1")
        imap = (await repo.get_domain("d1")).imap
        assert imap.consecutive_errors == 0
        assert imap.last_error is None

    @pytest.mark.asyncio
    async def test_range_sync_clears_errors(self, repo, sample_domain):
        await repo.save_domain(sample_domain)
        await repo.increment_sync_errors("d1", "boom")

        await repo.record_range_sync("d1", datetime(2024, 3, 1), highest_uid=10, uid_validity=5)

        imap = (await repo.get_domain("d1")).imap
        assert imap.consecutive_errors == 0
        assert imap.last_sync == datetime(2024, 3, 1)
        assert imap.last_full_sync == datetime(2024, 3, 1)
        assert await repo.get_uid_state("d1") == (10, 5)

    @pytest.mark.asyncio
    async def test_unseen_sync_only_advances(self, repo, sample_domain):
        await repo.save_domain(sample_domain)
        await repo.record_range_sync("d1", datetime(2024, 3, 1), highest_uid=10, uid_validity=5)

        await repo.record_unseen_sync("d1", datetime(2024, 3, 2), highest_uid=4)
        assert await repo.get_uid_state("d1") == (10, 5)

        await repo.record_unseen_sync("d1", datetime(2024, 3, 3), highest_uid=12)
        assert await repo.get_uid_state("d1") == (12, 5)

    @pytest.mark.asyncio
    async def test_reset_uid_state(self, repo, sample_domain):
        await repo.save_domain(sample_domain)
        await repo.record_range_sync("d1", datetime(2024, 3, 1), highest_uid=10, uid_validity=5)

        await repo.reset_uid_state("d1", 6)

        assert await repo.get_uid_state("d1") == (None, 6)


class TestMessages:

    @pytest.mark.asyncio
    async def test_message_stored_once(self, repo, sample_domain, sample_raw_message):
        await repo.save_domain(sample_domain)
        message = InboundMessage.from_raw("d1", 1, sample_raw_message)

        assert await repo.save_inbound_message(message) is True
        assert message.id is not None

        duplicate = InboundMessage.from_raw("d1", 1, sample_raw_message)
        assert await repo.save_inbound_message(duplicate) is False
        assert await repo.count_messages("d1") == 1

    @pytest.mark.asyncio
    async def test_get_inbound_messages(self, repo, sample_domain, sample_raw_message):
        await repo.save_domain(sample_domain)
        await repo.save_inbound_message(InboundMessage.from_raw("d1", 1, sample_raw_message))

        [stored] = await repo.get_inbound_messages("d1")

        assert stored.message_id == "<order-1@example.org>"
        assert stored.to_addresses == ["support@example.com", "bob@example.com", "carol@example.com"]
        assert stored.raw_content == sample_raw_message
