# =============================================================================
# Worker Supervisor
# =============================================================================
# Owns one DomainWorker per syncable domain and keeps that set in line with
# the database.
#
# Periodic tasks:
#   - reconcile:    start/stop/replace workers as domains change
#   - full_sync:    trigger a UID range sync on every live worker
#   - health_check: log workers that are erroring or have given up
#
# A worker is only replaced when its connection fingerprint no longer
# matches the stored domain. Renaming a domain never drops its session.
#
# Replacement and triggered syncs take the same lock, so a worker is never
# torn down halfway through a triggered fetch. Periodic reconciles skip when
# one is already running. reconcile_now() queues behind it instead.
# =============================================================================

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from mailpull.config import Config
from mailpull.core import Domain
from mailpull.imap import DomainWorker, SyncEngine, WorkerState, WorkerStatus
from mailpull.service.scheduler import ScheduledTaskStatus, Scheduler
from mailpull.storage.repository import Repository

logger = logging.getLogger(__name__)

WorkerFactory = Callable[[Domain], DomainWorker]

# Workers in these states can't run a sync
_DEAD_STATUSES = (WorkerStatus.ERROR, WorkerStatus.STOPPED)


@dataclass
class SupervisorStatus:
    """
    Overall service status.

    Attributes:
        running: True between start() and stop().
        started_at: When start() was called.
        workers: Snapshot of every worker.
        tasks: Status of the periodic tasks.
    """
    running: bool
    started_at: datetime | None
    workers: list[WorkerState] = field(default_factory=list)
    tasks: list[ScheduledTaskStatus] = field(default_factory=list)


class Supervisor:
    """
    Starts, stops and replaces domain workers.

    Usage:
        >>> supervisor = Supervisor(repo, SyncEngine(repo), config)
        >>> await supervisor.start()
        >>> ok, message = await supervisor.sync_domain("d1")
        >>> await supervisor.stop()
    """

    def __init__(
        self,
        repository: Repository,
        sync_engine: SyncEngine,
        config: Config | None = None,
        *,
        worker_factory: WorkerFactory | None = None,
    ) -> None:
        """
        Initialize the supervisor.

        Args:
            repository: Source of domains; also handed to every worker.
            sync_engine: Shared by all workers.
            config: Service configuration.
            worker_factory: Builds a worker for a domain. Defaults to a
                            DomainWorker using config.worker.
        """
        self.repository = repository
        self.sync_engine = sync_engine
        self.config = config or Config()
        self._worker_factory = worker_factory or self._create_worker

        self._workers: dict[str, DomainWorker] = {}
        self._lock = asyncio.Lock()
        self._reconcile_lock = asyncio.Lock()
        self._scheduler = Scheduler()
        self._started_at: datetime | None = None

    def _create_worker(self, domain: Domain) -> DomainWorker:
        return DomainWorker(domain, self.sync_engine, self.repository, self.config.worker)

    @property
    def is_running(self) -> bool:
        return self._started_at is not None

    @property
    def workers(self) -> dict[str, DomainWorker]:
        """Running workers by domain ID (read-only view)."""
        return dict(self._workers)

    def get_worker(self, domain_id: str) -> DomainWorker | None:
        return self._workers.get(domain_id)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the periodic tasks. The first reconcile runs immediately."""
        if self._started_at is not None:
            logger.warning("Supervisor already running")
            return

        self._started_at = datetime.now()
        intervals = self.config.supervisor
        logger.info("Starting supervisor")

        self._scheduler.schedule("reconcile", intervals.reconcile_seconds, self.reconcile)
        self._scheduler.schedule("full_sync", intervals.full_sync_seconds, self._full_sync)
        self._scheduler.schedule("health_check", intervals.health_check_seconds, self.health_check)

    async def stop(self) -> None:
        """Stop the periodic tasks, then every worker concurrently."""
        logger.info("Stopping supervisor")
        await self._scheduler.stop()

        async with self._lock:
            workers = list(self._workers.values())
            self._workers.clear()
            if workers:
                await asyncio.gather(*(worker.stop() for worker in workers))

        self._started_at = None
        logger.info(f"Supervisor stopped ({len(workers)} workers)")

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def reconcile(self) -> None:
        """
        Bring the set of workers in line with the database.

        - Workers for deleted or INACTIVE domains are stopped.
        - Workers whose connection settings changed are stopped, then
          replaced by a fresh worker.
        - New domains get a worker.

        A worker that gave up stays stopped until its settings change.
        Overlapping periodic calls are skipped.
        """
        if self._reconcile_lock.locked():
            logger.debug("Reconcile already in progress, skipping")
            return

        async with self._reconcile_lock:
            await self._reconcile()

    async def reconcile_now(self) -> None:
        """Reconcile on operator request, waiting for a running pass to finish first."""
        logger.info("Reconcile requested")
        async with self._reconcile_lock:
            await self._reconcile()

    async def _reconcile(self) -> None:
        domains = await self.repository.list_sync_domains()
        wanted = {domain.id: domain for domain in domains}

        async with self._lock:
            removed = [self._workers.pop(domain_id)
                       for domain_id in list(self._workers)
                       if domain_id not in wanted]
            if removed:
                logger.info(f"Stopping {len(removed)} workers for removed domains")
                await asyncio.gather(*(worker.stop() for worker in removed))

            for domain in domains:
                worker = self._workers.get(domain.id)
                if worker is not None:
                    if worker.matches_config(domain):
                        continue
                    logger.info(f"Configuration changed for {domain.name}, replacing worker")
                    del self._workers[domain.id]
                    await worker.stop()

                new_worker = self._worker_factory(domain)
                self._workers[domain.id] = new_worker
                new_worker.start()

    # =========================================================================
    # Syncing
    # =========================================================================

    async def sync_domain(self, domain_id: str) -> tuple[bool, str]:
        """
        Trigger an immediate range sync for one domain.

        Returns:
            (success, message) suitable for showing to an operator.
        """
        async with self._lock:
            worker = self._workers.get(domain_id)
            if worker is None:
                return False, f"No worker running for domain {domain_id}"
            if worker.status in _DEAD_STATUSES:
                return False, f"Worker for {worker.domain.name} is {worker.status.value}"

            await worker.trigger_sync()
            return True, f"Sync triggered for {worker.domain.name}"

    async def sync_all(self) -> int:
        """
        Trigger a range sync on every live worker.

        Returns:
            Number of workers that were asked to sync.
        """
        async with self._lock:
            workers = [w for w in self._workers.values() if w.status not in _DEAD_STATUSES]
            if workers:
                await asyncio.gather(*(worker.trigger_sync() for worker in workers))
        return len(workers)

    async def _full_sync(self) -> None:
        count = await self.sync_all()
        logger.debug(f"Periodic full sync triggered on {count} workers")

    # =========================================================================
    # Health
    # =========================================================================

    async def health_check(self) -> None:
        """Log unhealthy workers and a status summary."""
        states = [worker.state for worker in self._workers.values()]

        for state in states:
            if state.status in _DEAD_STATUSES:
                logger.warning(
                    f"Worker {state.domain_name} is {state.status.value} "
                    f"({state.consecutive_errors} errors): {state.last_error}"
                )

        counts = Counter(state.status.value for state in states)
        summary = ", ".join(f"{status}={count}" for status, count in sorted(counts.items()))
        logger.info(f"Health check: {len(states)} workers ({summary or 'none'})")

    def status(self) -> SupervisorStatus:
        return SupervisorStatus(
            running=self.is_running,
            started_at=self._started_at,
            workers=[worker.state for worker in self._workers.values()],
            tasks=self._scheduler.task_status(),
        )
