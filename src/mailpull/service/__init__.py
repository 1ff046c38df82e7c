# =============================================================================
# Service Module
# =============================================================================
# Runs the workers:
#   - Scheduler: named periodic asyncio tasks
#   - Supervisor: one worker per domain, reconciled against the database
#   - ControlServer: operator HTTP API over the supervisor
# =============================================================================

from mailpull.service.http import ControlServer
from mailpull.service.scheduler import ScheduledTaskStatus, Scheduler
from mailpull.service.supervisor import Supervisor, SupervisorStatus

__all__ = [
    "ControlServer",
    "ScheduledTaskStatus",
    "Scheduler",
    "Supervisor",
    "SupervisorStatus",
]
