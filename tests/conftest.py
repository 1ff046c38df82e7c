# =============================================================================
# Pytest Configuration and Fixtures
# =============================================================================
# Shared fixtures for the mailpull test suite.
#
# The worker is tested against in-memory fakes:
#   - FakeServer / FakeSession: scripted IMAP sessions (connect failures,
#     IDLE failures, disconnect tracking)
#   - FakeSyncEngine: counts syncs and error bookkeeping calls
#   - FakeStatusStore: records domain status writes
#
# The supervisor and control API run FakeWorkers over a FakeDomainStore.
# =============================================================================

import asyncio
import copy
from datetime import datetime
from pathlib import Path

import pytest
import pytest_asyncio

from mailpull.config import Config, WorkerConfig
from mailpull.core import (
    Domain,
    DomainStatus,
    ImapSettings,
    PersonalAccount,
    SecretBox,
    SourceKind,
    compute_fingerprint,
)
from mailpull.imap import (
    ConnectionParams,
    DomainWorker,
    MailboxHandle,
    SyncResult,
    WorkerState,
    WorkerStatus,
)
from mailpull.service import Supervisor
from mailpull.storage import Database, Repository

TEST_KEY = bytes(range(32))


# =============================================================================
# Helpers
# =============================================================================

async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll `predicate` until it's true, failing the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(interval)


# =============================================================================
# Fakes
# =============================================================================

class FakeSession:
    """In-memory stand-in for IMAPClient."""

    def __init__(self, server: "FakeServer", params: ConnectionParams) -> None:
        self.server = server
        self.params = params
        self.on_new_mail = None
        self.connected = False
        self.disconnected = False
        self.idling = False
        self.idle_rounds = 0
        self._mailbox: MailboxHandle | None = None
        self._closed = asyncio.Event()

    @property
    def mailbox(self) -> MailboxHandle | None:
        return self._mailbox

    @property
    def is_usable(self) -> bool:
        return self.connected and not self.disconnected

    async def connect(self) -> None:
        self.server.connect_attempts += 1
        if self.server.connect_errors:
            raise self.server.connect_errors.pop(0)
        self.connected = True

    async def select_mailbox(self, name: str) -> MailboxHandle:
        self._mailbox = MailboxHandle(name=name, uid_validity=1, uid_next=4, exists=3)
        return self._mailbox

    def supports_idle(self) -> bool:
        return self.server.idle_supported

    async def idle_start(self, timeout: float = 0) -> None:
        if not self.server.idle_supported:
            raise AssertionError("IDLE used on a server without IDLE")
        self.idling = True
        self.idle_rounds += 1

    async def idle_wait(self, timeout: float = 0) -> list[str]:
        if self.server.idle_errors:
            raise self.server.idle_errors.pop(0)
        try:
            await asyncio.wait_for(self._closed.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return []

    async def idle_done(self) -> None:
        self.idling = False

    async def disconnect(self) -> None:
        self.disconnected = True
        self.connected = False
        self.idling = False
        self._closed.set()


class FakeServer:
    """Builds FakeSessions and holds the script they follow."""

    def __init__(self) -> None:
        self.connect_errors: list[Exception] = []
        self.idle_errors: list[Exception] = []
        self.idle_supported = True
        self.connect_attempts = 0
        self.sessions: list[FakeSession] = []

    def session_factory(self, params: ConnectionParams) -> FakeSession:
        session = FakeSession(self, params)
        self.sessions.append(session)
        return session

    @property
    def last_session(self) -> FakeSession | None:
        return self.sessions[-1] if self.sessions else None


class FakeSyncEngine:
    """Records calls made by the worker."""

    def __init__(self) -> None:
        self.range_processed = 0
        self.range_calls = 0
        self.unseen_calls = 0
        self.sync_writes = 0
        self.range_error: Exception | None = None
        self.unseen_error: Exception | None = None
        self.recorded_errors: list[str] = []
        self.resets = 0

    async def sync_by_uid_range(self, session, domain, mailbox) -> SyncResult:
        self.range_calls += 1
        if self.range_error is not None:
            raise self.range_error
        self.sync_writes += 1
        return SyncResult(processed=self.range_processed, uid_validity=mailbox.uid_validity)

    async def sync_unseen_messages(self, session, domain) -> SyncResult:
        self.unseen_calls += 1
        if self.unseen_error is not None:
            raise self.unseen_error
        self.sync_writes += 1
        return SyncResult(processed=0)

    async def record_sync_error(self, domain_id: str, error) -> None:
        self.recorded_errors.append(str(error))

    async def reset_sync_errors(self, domain_id: str) -> None:
        self.resets += 1


class FakeStatusStore:
    """Records domain status writes."""

    def __init__(self) -> None:
        self.statuses: dict[str, DomainStatus] = {}
        self.history: list[tuple[str, DomainStatus]] = []

    async def set_domain_status(self, domain_id: str, status: DomainStatus) -> None:
        self.statuses[domain_id] = status
        self.history.append((domain_id, status))


class FakeWorker:
    """Minimal worker honouring the supervisor's contract."""

    def __init__(self, domain) -> None:
        self.domain = domain
        self.fingerprint = compute_fingerprint(domain)
        self.status = WorkerStatus.IDLE
        self.started = False
        self.stopped = False
        self.triggers = 0
        self.trigger_gate: asyncio.Event | None = None

    def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True
        self.status = WorkerStatus.STOPPED

    async def trigger_sync(self) -> None:
        if self.trigger_gate is not None:
            await self.trigger_gate.wait()
        self.triggers += 1

    def matches_config(self, domain) -> bool:
        return compute_fingerprint(domain) == self.fingerprint

    @property
    def state(self) -> WorkerState:
        return WorkerState(status=self.status, domain_id=self.domain.id,
                           domain_name=self.domain.name)


class FakeDomainStore:
    def __init__(self, domains) -> None:
        self.domains = list(domains)

    async def list_sync_domains(self):
        return [copy.deepcopy(d) for d in self.domains]


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def sample_domain():
    """A shared-credential IMAP domain."""
    return Domain(
        id="d1",
        name="example.com",
        description="Support inbox",
        imap=ImapSettings(
            host="imap.example.com",
            port=993,
            secure=True,
            username="support@example.com",
            password="hunter2",
            sync_interval=60,
        ),
        created_at=datetime(2024, 1, 15, 10, 30, 0),
    )


@pytest.fixture
def secret_box():
    return SecretBox(TEST_KEY)


@pytest.fixture
def personal_domain(secret_box):
    """A personal-account domain with an encrypted password."""
    sealed = secret_box.encrypt("personal-secret")
    return Domain(
        id="d2",
        name="personal.example.com",
        source_kind=SourceKind.PERSONAL_IMAP,
        imap=ImapSettings(host="imap.personal.example.com", port=993),
        personal_account=PersonalAccount(
            username="me@personal.example.com",
            password_ciphertext=sealed.ciphertext,
            password_iv=sealed.iv,
            password_tag=sealed.tag,
        ),
        created_at=datetime(2024, 2, 1, 9, 0, 0),
    )


@pytest.fixture
def worker_config():
    """Worker timings short enough for tests, without jitter."""
    return WorkerConfig(
        idle_timeout_minutes=0.001,         # 60 ms IDLE rounds
        reconnect_min_seconds=0.005,
        reconnect_max_seconds=0.04,
        reconnect_jitter_seconds=0.0,
        max_consecutive_errors=10,
        stop_grace_seconds=1.0,
    )


@pytest.fixture
def fake_server():
    return FakeServer()


@pytest.fixture
def fake_sync():
    return FakeSyncEngine()


@pytest.fixture
def status_store():
    return FakeStatusStore()


@pytest.fixture
def domain_store(sample_domain, personal_domain):
    return FakeDomainStore([sample_domain, personal_domain])


@pytest.fixture
def created_workers():
    return []


@pytest.fixture
def supervisor(domain_store, fake_sync, created_workers):
    def factory(domain):
        worker = FakeWorker(domain)
        created_workers.append(worker)
        return worker

    return Supervisor(domain_store, fake_sync, Config(), worker_factory=factory)


@pytest_asyncio.fixture
async def make_worker(fake_server, fake_sync, status_store, worker_config, secret_box):
    """Factory for workers wired to the fakes; stops them all afterwards."""
    workers: list[DomainWorker] = []

    def _make(domain: Domain, config: WorkerConfig | None = None) -> DomainWorker:
        worker = DomainWorker(
            domain,
            fake_sync,
            status_store,
            config or worker_config,
            session_factory=fake_server.session_factory,
            secret_box_factory=lambda: secret_box,
        )
        workers.append(worker)
        return worker

    yield _make

    for worker in workers:
        await worker.stop()


@pytest.fixture
def temp_dir(tmp_path) -> Path:
    """Directory for test databases and config files."""
    return tmp_path


@pytest_asyncio.fixture
async def repo(temp_dir):
    """A Repository on a fresh SQLite database."""
    db = Database(temp_dir / "test.db")
    await db.connect()
    yield Repository(db)
    await db.close()


@pytest.fixture
def sample_raw_message():
    """A small RFC 822 message."""
    return (
        b"From: Alice Example <alice@example.org>\r\n"
        b"To: support@example.com, Bob <BOB@example.com>\r\n"
        b"Cc: carol@example.com\r\n"
        b"Subject: =?utf-8?q?Caf=C3=A9_order?=\r\n"
        b"Date: Mon, 15 Jan 2024 10:30:00 +0000\r\n"
        b"Message-ID: <order-1@example.org>\r\n"
        b"\r\n"
        b"One coffee please.\r\n"
    )
