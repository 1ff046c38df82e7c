# =============================================================================
# Periodic Task Scheduler
# =============================================================================
# Runs named coroutines on fixed intervals.
#
# Each task runs once immediately, then every `interval` seconds measured
# from the end of the previous run, so a slow handler never overlaps with
# itself. A failing handler is logged and retried on the next tick.
# =============================================================================

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

TaskHandler = Callable[[], Awaitable[None]]


@dataclass
class ScheduledTaskStatus:
    """
    Status of one scheduled task.

    Attributes:
        name: Task name.
        interval: Seconds between runs.
        last_run: When the last run finished.
        last_error: Error from the last run, None if it succeeded.
        runs: Completed runs, successful or not.
    """
    name: str
    interval: float
    last_run: datetime | None = None
    last_error: str | None = None
    runs: int = 0


class Scheduler:
    """
    Runs periodic asyncio tasks by name.

    Usage:
        >>> scheduler = Scheduler()
        >>> scheduler.schedule("reconcile", 30, supervisor.reconcile)
        >>> # ... later ...
        >>> await scheduler.stop()
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}
        self._status: dict[str, ScheduledTaskStatus] = {}

    def schedule(self, name: str, interval: float, handler: TaskHandler) -> None:
        """
        Start running `handler` every `interval` seconds.

        Raises:
            ValueError: If a task with this name is already scheduled.
        """
        if name in self._tasks:
            raise ValueError(f"Task already scheduled: {name}")

        self._status[name] = ScheduledTaskStatus(name=name, interval=interval)
        self._tasks[name] = asyncio.create_task(
            self._loop(name, interval, handler),
            name=f"scheduler-{name}",
        )
        logger.debug(f"Scheduled {name} every {interval}s")

    async def _loop(self, name: str, interval: float, handler: TaskHandler) -> None:
        status = self._status[name]
        while True:
            try:
                await handler()
                status.last_error = None
            except asyncio.CancelledError:
                raise
            except Exception as e:
                status.last_error = str(e)
                logger.error(f"Scheduled task {name} failed: {e}", exc_info=True)
            status.last_run = datetime.now()
            status.runs += 1

            await asyncio.sleep(interval)

    async def stop(self) -> None:
        """Cancel all tasks and wait for them to finish."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.debug("Scheduler stopped")

    def task_status(self) -> list[ScheduledTaskStatus]:
        """Status of every scheduled task, in scheduling order."""
        return list(self._status.values())

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())
