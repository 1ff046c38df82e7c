# =============================================================================
# Domain Worker
# =============================================================================
# Long-running background worker that keeps one IMAP session open for a
# single domain and pulls new mail into storage.
#
# Cycle (repeated until stopped or given up):
#   1. Resolve credentials and connect      (CONNECTING)
#   2. Mark domain ACTIVE, select mailbox, range sync   (SYNCING)
#   3. IDLE until push / timeout / trigger  (LISTENING)
#      Servers without IDLE are polled every sync_interval seconds instead.
#   4. Unseen sync, back to 3               (SYNCING -> LISTENING)
#
# On any session-level failure the session is torn down and the failure is
# classified: authentication-class errors stop the worker at once, anything
# else is retried with exponential backoff until max_consecutive_errors is
# reached. Giving up marks the domain ERROR. The failure count only resets
# once a reconnected session has completed a whole listen round.
#
# Concurrency:
#   - One asyncio task per worker runs the cycle.
#   - A per-worker lock serialises IDLE sections, idle-triggered syncs and
#     explicitly triggered syncs, so two commands never share the session.
#   - The wake event breaks a pending IDLE wait (new mail, trigger, stop).
# =============================================================================

import asyncio
import logging
import random
from datetime import datetime
from typing import Callable

from mailpull.config import WorkerConfig
from mailpull.core import Domain, DomainStatus, SecretBox, compute_fingerprint
from mailpull.imap.client import (
    ConnectionParams,
    IMAPClient,
    IMAPConnectionError,
    MailboxHandle,
)
from mailpull.imap.credentials import (
    SecretBoxFactory,
    credentials_for,
    resolve_credentials,
)
from mailpull.imap.state import (
    InvalidTransitionError,
    TRANSITIONS,
    WorkerPhase,
    WorkerState,
    WorkerStatus,
    is_fatal_error,
    reconnect_delay,
)
from mailpull.imap.sync import SyncEngine
from mailpull.storage.repository import Repository

logger = logging.getLogger(__name__)

SessionFactory = Callable[[ConnectionParams], IMAPClient]

# How long stop() waits for a graceful LOGOUT before dropping the socket
DISCONNECT_TIMEOUT = 1.0

# Poll interval (seconds) for servers without IDLE when the domain sets none
DEFAULT_POLL_INTERVAL = 60.0


class DomainWorker:
    """
    Keeps one domain's mailbox in sync over a persistent IMAP session.

    Usage:
        >>> worker = DomainWorker(domain, sync_engine, repo, config.worker)
        >>> worker.start()
        >>> # ... later ...
        >>> await worker.trigger_sync()
        >>> await worker.stop()

    A stopped worker never restarts; build a new one instead.
    """

    def __init__(
        self,
        domain: Domain,
        sync_engine: SyncEngine,
        repository: Repository,
        config: WorkerConfig | None = None,
        *,
        session_factory: SessionFactory = IMAPClient,
        secret_box_factory: SecretBoxFactory = SecretBox.from_environment,
        rng: random.Random | None = None,
    ) -> None:
        """
        Initialize the worker.

        Args:
            domain: Domain to sync. Its connection fields are fingerprinted now.
            sync_engine: Pulls messages and keeps error bookkeeping.
            repository: Where the domain's ACTIVE/ERROR status is written.
            config: Timings and limits.
            session_factory: Builds a session from connection parameters.
            secret_box_factory: Builds the decryptor for personal passwords.
            rng: Random source for reconnect jitter.
        """
        self.domain = domain
        self.sync_engine = sync_engine
        self.repository = repository
        self.config = config or WorkerConfig()
        self._session_factory = session_factory
        self._secret_box_factory = secret_box_factory
        self._rng = rng

        self._fingerprint = compute_fingerprint(domain)
        self._phase = WorkerPhase.NEW

        self._consecutive_errors = 0
        self._attempt = 0
        self._last_error: str | None = None
        self._last_sync: datetime | None = domain.last_sync
        self._connected_at: datetime | None = None

        self._session: IMAPClient | None = None
        self._mailbox: MailboxHandle | None = None

        self._lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._stop_task: asyncio.Task | None = None

    # =========================================================================
    # Public State
    # =========================================================================

    @property
    def phase(self) -> WorkerPhase:
        return self._phase

    @property
    def status(self) -> WorkerStatus:
        return self._phase.status

    @property
    def is_running(self) -> bool:
        """Check if the run loop is active."""
        return self._task is not None and not self._task.done()

    @property
    def state(self) -> WorkerState:
        """Snapshot of the worker for operators and the supervisor."""
        return WorkerState(
            status=self.status,
            domain_id=self.domain.id,
            domain_name=self.domain.name,
            last_sync=self._last_sync,
            last_error=self._last_error,
            consecutive_errors=self._consecutive_errors,
            connected_at=self._connected_at,
        )

    def matches_config(self, domain: Domain) -> bool:
        """True if `domain` would connect exactly like this worker does."""
        return compute_fingerprint(domain) == self._fingerprint

    def get_config_fingerprint(self) -> str:
        return self._fingerprint

    @property
    def _stopping(self) -> bool:
        return self._phase == WorkerPhase.STOPPED or self._stop_event.is_set()

    def _transition(self, target: WorkerPhase) -> bool:
        """
        Move to `target` through the transition table.

        Returns:
            False if the worker is already stopped (the change is dropped).

        Raises:
            InvalidTransitionError: If the table forbids the change.
        """
        current = self._phase
        if current == WorkerPhase.STOPPED:
            return False
        if target not in TRANSITIONS[current]:
            raise InvalidTransitionError(current, target)

        self._phase = target
        logger.debug(f"[{self.domain.name}] {current.value} -> {target.value}")
        return True

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """
        Start the run loop in a background task.

        Calling start() on a running or stopped worker does nothing.
        """
        if self._task is not None:
            return
        if self._phase == WorkerPhase.STOPPED:
            logger.warning(f"[{self.domain.name}] Worker already stopped, not starting")
            return

        logger.info(f"[{self.domain.name}] Starting worker")
        self._task = asyncio.create_task(self._run(), name=f"worker-{self.domain.name}")

    async def stop(self) -> None:
        """
        Stop the worker and wait for the run loop to exit.

        Safe to call repeatedly; every call waits on the same shutdown.
        """
        if self._stop_task is None:
            self._stop_task = asyncio.create_task(self._shutdown())
        await asyncio.shield(self._stop_task)

    async def _shutdown(self) -> None:
        if self._phase != WorkerPhase.STOPPED:
            logger.info(f"[{self.domain.name}] Stopping worker")
        self._transition(WorkerPhase.STOPPED)
        self._stop_event.set()
        self._wake.set()

        session = self._session
        if session is not None:
            try:
                await asyncio.wait_for(session.disconnect(), timeout=DISCONNECT_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning(f"[{self.domain.name}] Timeout disconnecting session")
            except Exception as e:
                logger.warning(f"[{self.domain.name}] Error disconnecting session: {e}")

        task = self._task
        if task is None or task.done():
            return

        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self.config.stop_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"[{self.domain.name}] Worker did not stop cleanly, cancelling")
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _run(self) -> None:
        """Connect, sync and listen, reconnecting until stopped or given up."""
        while not self._stopping:
            error: Exception | None = None
            try:
                await self._connect_and_listen()
            except Exception as e:
                error = e
            finally:
                await self._teardown()

            if self._stopping:
                break

            if error is None:
                # Only reachable if the listen loop exited without an error
                error = IMAPConnectionError("Session ended unexpectedly")

            if await self._handle_failure(error):
                break

            delay = reconnect_delay(self._attempt, self.config, self._rng)
            logger.info(
                f"[{self.domain.name}] Reconnecting in {delay:.1f}s "
                f"(attempt {self._attempt})"
            )
            await self._sleep(delay)

        logger.info(f"[{self.domain.name}] Worker stopped")

    async def _handle_failure(self, error: Exception) -> bool:
        """
        Record and classify a failed cycle.

        Returns:
            True if the worker gave up.
        """
        if not self._transition(WorkerPhase.ERROR):
            return True

        self._consecutive_errors += 1
        self._attempt += 1
        self._last_error = str(error) or error.__class__.__name__
        await self.sync_engine.record_sync_error(self.domain.id, self._last_error)

        if is_fatal_error(error):
            logger.error(f"[{self.domain.name}] Authentication failed, giving up: {error}")
            await self._give_up()
            return True

        if self._consecutive_errors >= self.config.max_consecutive_errors:
            logger.error(
                f"[{self.domain.name}] {self._consecutive_errors} consecutive errors, "
                f"giving up. Last error: {error}"
            )
            await self._give_up()
            return True

        logger.warning(
            f"[{self.domain.name}] Sync error "
            f"({self._consecutive_errors}/{self.config.max_consecutive_errors}): {error}"
        )
        return False

    async def _give_up(self) -> None:
        try:
            await self.repository.set_domain_status(self.domain.id, DomainStatus.ERROR)
        except Exception as e:
            logger.warning(f"[{self.domain.name}] Could not mark domain ERROR: {e}")
        self._transition(WorkerPhase.STOPPED)

    async def _sleep(self, delay: float) -> None:
        """Backoff sleep that returns early when the worker is stopped."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _teardown(self) -> None:
        session, self._session = self._session, None
        self._mailbox = None
        self._connected_at = None
        if session is None:
            return
        try:
            await session.disconnect()
        except Exception as e:
            logger.warning(f"[{self.domain.name}] Error during disconnect: {e}")

    # =========================================================================
    # Session
    # =========================================================================

    async def _connect_and_listen(self) -> None:
        if not self._transition(WorkerPhase.CONNECTING):
            return

        credentials = resolve_credentials(
            credentials_for(self.domain), self._secret_box_factory
        )
        session = self._session_factory(ConnectionParams(
            host=self.domain.imap.host,
            port=self.domain.imap.port,
            secure=self.domain.imap.secure,
            username=credentials.username,
            password=credentials.password,
            timeout=self.config.connect_timeout_seconds,
        ))
        session.on_new_mail = self._on_new_mail
        self._session = session

        await session.connect()
        if self._stopping:
            return

        self._connected_at = datetime.now()
        await self.repository.set_domain_status(self.domain.id, DomainStatus.ACTIVE)
        await self.sync_engine.reset_sync_errors(self.domain.id)

        self._mailbox = await session.select_mailbox(self.config.mailbox)

        async with self._lock:
            if not self._transition(WorkerPhase.SYNCING):
                return
            result = await self.sync_engine.sync_by_uid_range(session, self.domain, self._mailbox)
            self._last_sync = datetime.now()
            if not self._transition(WorkerPhase.LISTENING):
                return

        use_idle = session.supports_idle()
        logger.info(
            f"[{self.domain.name}] Connected, {result.processed} new messages, "
            + ("listening" if use_idle else f"polling every {self._poll_interval:g}s (no IDLE)")
        )

        while not self._stopping:
            completed = await self._listen_once(session, use_idle)
            if completed and self._consecutive_errors:
                # A full connect/listen/sync cycle went through
                logger.info(f"[{self.domain.name}] Recovered after {self._consecutive_errors} errors")
                self._consecutive_errors = 0
                self._attempt = 0
                self._last_error = None

    @property
    def _poll_interval(self) -> float:
        interval = self.domain.imap.sync_interval
        return interval if interval and interval > 0 else DEFAULT_POLL_INTERVAL

    async def _listen_once(self, session: IMAPClient, use_idle: bool = True) -> bool:
        """
        One IDLE (or polling) round followed by an unseen sync.

        Returns:
            True if the round completed and the unseen sync succeeded.

        Raises:
            IMAPConnectionError: If the session died before, during or
                                 right after the wait.
        """
        async with self._lock:
            if self._stopping:
                return False
            if not session.is_usable:
                raise IMAPConnectionError("Connection closed by server")

            self._wake.clear()
            if use_idle:
                await self._idle_round(session)
            else:
                await self._poll_round()

            if self._stopping:
                return False

            if not self._transition(WorkerPhase.SYNCING):
                return False
            try:
                await self.sync_engine.sync_unseen_messages(session, self.domain)
                self._last_sync = datetime.now()
                completed = True
            except IMAPConnectionError:
                raise
            except Exception as e:
                # The session is still up; the next round tries again
                logger.warning(f"[{self.domain.name}] Unseen sync failed: {e}")
                await self.sync_engine.record_sync_error(self.domain.id, e)
                completed = False
            self._transition(WorkerPhase.LISTENING)
            return completed

    async def _idle_round(self, session: IMAPClient) -> None:
        """Race IDLE against the wake event, then leave IDLE."""
        await session.idle_start(timeout=self.config.idle_timeout_seconds)

        listen_task = asyncio.create_task(
            session.idle_wait(timeout=self.config.idle_timeout_seconds)
        )
        wake_task = asyncio.create_task(self._wake.wait())
        try:
            await asyncio.wait({listen_task, wake_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (listen_task, wake_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(listen_task, wake_task, return_exceptions=True)

        if self._stopping:
            return
        if not listen_task.cancelled() and listen_task.exception() is not None:
            raise listen_task.exception()

        await session.idle_done()

    async def _poll_round(self) -> None:
        """Wait one poll interval for servers without IDLE. Wakes early on trigger/stop."""
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self._poll_interval)
        except asyncio.TimeoutError:
            pass

    def _on_new_mail(self, notification: str) -> None:
        logger.info(f"[{self.domain.name}] New mail: {notification}")
        self._wake.set()

    # =========================================================================
    # Triggered Sync
    # =========================================================================

    async def trigger_sync(self) -> None:
        """
        Run a UID range sync now on the live session.

        Interrupts IDLE, waits for the session to be free, syncs, and hands
        the session back to the listen loop. Does nothing when there is no
        live session. Failures are logged, never raised.
        """
        if self._session is None or self._mailbox is None or not self._phase.has_session:
            logger.debug(f"[{self.domain.name}] No live session, trigger ignored")
            return

        self._wake.set()
        async with self._lock:
            session, mailbox = self._session, self._mailbox
            if session is None or mailbox is None or self._phase != WorkerPhase.LISTENING:
                return

            self._transition(WorkerPhase.SYNCING)
            try:
                result = await self.sync_engine.sync_by_uid_range(session, self.domain, mailbox)
                self._last_sync = datetime.now()
                logger.info(
                    f"[{self.domain.name}] Triggered sync: {result.processed} new messages"
                )
            except Exception as e:
                logger.warning(f"[{self.domain.name}] Triggered sync failed: {e}")
            finally:
                if self._phase == WorkerPhase.SYNCING:
                    self._transition(WorkerPhase.LISTENING)

    def __repr__(self) -> str:
        return f"DomainWorker(domain={self.domain.name!r}, status={self.status.value})"
