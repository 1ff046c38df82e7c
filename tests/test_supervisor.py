# =============================================================================
# Supervisor and Scheduler Tests
# =============================================================================

import asyncio

import pytest

from mailpull.imap import WorkerStatus
from mailpull.service import Scheduler

from conftest import wait_until


class TestReconcile:

    @pytest.mark.asyncio
    async def test_starts_worker_per_domain(self, supervisor, created_workers):
        await supervisor.reconcile()

        assert set(supervisor.workers) == {"d1", "d2"}
        assert all(w.started for w in created_workers)

    @pytest.mark.asyncio
    async def test_unchanged_domains_keep_workers(self, supervisor, created_workers, domain_store):
        await supervisor.reconcile()
        domain_store.domains[0].name = "Renamed"
        domain_store.domains[0].description = "Cosmetic change"

        await supervisor.reconcile()

        assert len(created_workers) == 2
        assert not any(w.stopped for w in created_workers)

    @pytest.mark.asyncio
    async def test_changed_config_replaces_worker(self, supervisor, created_workers, domain_store):
        await supervisor.reconcile()
        old = supervisor.get_worker("d1")
        domain_store.domains[0].imap.password = "rotated"

        await supervisor.reconcile()

        new = supervisor.get_worker("d1")
        assert new is not old
        assert old.stopped
        assert new.started
        assert new.domain.imap.password == "rotated"

    @pytest.mark.asyncio
    async def test_removed_domain_stops_worker(self, supervisor, domain_store):
        await supervisor.reconcile()
        old = supervisor.get_worker("d2")
        domain_store.domains.pop()

        await supervisor.reconcile()

        assert old.stopped
        assert supervisor.get_worker("d2") is None

    @pytest.mark.asyncio
    async def test_replacement_waits_for_triggered_sync(self, supervisor, domain_store):
        await supervisor.reconcile()
        old = supervisor.get_worker("d1")
        old.trigger_gate = asyncio.Event()

        sync = asyncio.create_task(supervisor.sync_domain("d1"))
        await asyncio.sleep(0.01)
        domain_store.domains[0].imap.host = "imap2.example.com"
        reconcile = asyncio.create_task(supervisor.reconcile())
        await asyncio.sleep(0.01)

        # The triggered sync is still in flight, so the worker must survive
        assert not old.stopped

        old.trigger_gate.set()
        assert await sync == (True, "Sync triggered for example.com")
        await reconcile
        assert old.stopped
        assert old.triggers == 1

    @pytest.mark.asyncio
    async def test_overlapping_reconcile_is_skipped(self, supervisor, domain_store):
        gate = asyncio.Event()
        calls = []
        original = domain_store.list_sync_domains

        async def gated():
            calls.append(1)
            domains = await original()
            await gate.wait()
            return domains

        domain_store.list_sync_domains = gated
        first = asyncio.create_task(supervisor.reconcile())
        await asyncio.sleep(0.01)

        await supervisor.reconcile()
        assert len(calls) == 1

        gate.set()
        await first

    @pytest.mark.asyncio
    async def test_reconcile_now_waits_for_running_pass(
        self, supervisor, domain_store, created_workers
    ):
        gate = asyncio.Event()
        calls = []
        original = domain_store.list_sync_domains

        async def gated():
            calls.append(1)
            domains = await original()
            await gate.wait()
            return domains

        domain_store.list_sync_domains = gated
        first = asyncio.create_task(supervisor.reconcile())
        await asyncio.sleep(0.01)

        forced = asyncio.create_task(supervisor.reconcile_now())
        await asyncio.sleep(0.01)
        assert len(calls) == 1

        domain_store.domains.pop()
        gate.set()
        await first
        await forced

        # The forced pass ran after the first and saw the removal
        assert len(calls) == 2
        assert set(supervisor.workers) == {"d1"}
        assert len(created_workers) == 2


class TestSyncing:

    @pytest.mark.asyncio
    async def test_sync_domain(self, supervisor):
        await supervisor.reconcile()

        ok, message = await supervisor.sync_domain("d1")

        assert ok
        assert supervisor.get_worker("d1").triggers == 1

    @pytest.mark.asyncio
    async def test_sync_unknown_domain(self, supervisor):
        ok, message = await supervisor.sync_domain("missing")

        assert not ok
        assert "missing" in message

    @pytest.mark.asyncio
    async def test_sync_stopped_worker(self, supervisor):
        await supervisor.reconcile()
        supervisor.get_worker("d1").status = WorkerStatus.STOPPED

        ok, message = await supervisor.sync_domain("d1")

        assert not ok
        assert "stopped" in message

    @pytest.mark.asyncio
    async def test_sync_all_skips_dead_workers(self, supervisor):
        await supervisor.reconcile()
        supervisor.get_worker("d2").status = WorkerStatus.ERROR

        assert await supervisor.sync_all() == 1
        assert supervisor.get_worker("d1").triggers == 1
        assert supervisor.get_worker("d2").triggers == 0


class TestSupervisorLifecycle:

    @pytest.mark.asyncio
    async def test_start_reconciles_and_stop_stops_workers(self, supervisor, created_workers):
        await supervisor.start()
        await wait_until(lambda: len(created_workers) == 2)

        status = supervisor.status()
        assert status.running
        assert {t.name for t in status.tasks} == {"reconcile", "full_sync", "health_check"}
        assert len(status.workers) == 2

        await supervisor.stop()

        assert all(w.stopped for w in created_workers)
        assert supervisor.workers == {}
        assert not supervisor.status().running

    @pytest.mark.asyncio
    async def test_health_check_logs_dead_workers(self, supervisor, caplog):
        await supervisor.reconcile()
        supervisor.get_worker("d1").status = WorkerStatus.ERROR

        with caplog.at_level("INFO"):
            await supervisor.health_check()

        assert "example.com is error" in caplog.text
        assert "2 workers" in caplog.text


class TestScheduler:

    @pytest.mark.asyncio
    async def test_runs_immediately_and_repeats(self):
        scheduler = Scheduler()
        calls = []

        async def handler():
            calls.append(1)

        scheduler.schedule("tick", 0.01, handler)
        await wait_until(lambda: len(calls) >= 3)
        await scheduler.stop()

        [status] = scheduler.task_status()
        assert status.name == "tick"
        assert status.runs >= 3
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_kill_task(self):
        scheduler = Scheduler()
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("transient")

        scheduler.schedule("flaky", 0.01, flaky)
        await wait_until(lambda: len(calls) >= 2)
        await scheduler.stop()

        [status] = scheduler.task_status()
        assert status.runs >= 2
        assert status.last_error is None

    @pytest.mark.asyncio
    async def test_duplicate_name_rejected(self):
        scheduler = Scheduler()

        async def handler():
            pass

        scheduler.schedule("tick", 10, handler)
        try:
            with pytest.raises(ValueError):
                scheduler.schedule("tick", 10, handler)
        finally:
            await scheduler.stop()
