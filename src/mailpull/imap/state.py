# =============================================================================
# Worker State Machine
# =============================================================================
# Lifecycle of a domain worker, plus the two policy helpers that drive it:
# failure classification and reconnect backoff.
#
#     NEW ──start()──> CONNECTING ──> SYNCING ──> LISTENING ──┐
#                          ^   │         │  ^          │      │
#                          │   v         v  └──────────┘      │
#                          └─ ERROR <────┴─────────────────────┘
#
#   Every phase can move to STOPPED, which is terminal.
#
# NEW and LISTENING are both reported as "idle": NEW means "not started",
# LISTENING means "connected and waiting in IDLE".
# =============================================================================

import random
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from mailpull.config import WorkerConfig
from mailpull.imap.client import IMAPAuthenticationError, IMAPConnectionError
from mailpull.imap.credentials import CredentialError


class WorkerStatus(str, Enum):
    """Externally visible worker status."""
    IDLE = "idle"
    CONNECTING = "connecting"
    SYNCING = "syncing"
    ERROR = "error"
    STOPPED = "stopped"


class WorkerPhase(Enum):
    """Internal lifecycle phase of a worker."""
    NEW = "new"
    CONNECTING = "connecting"
    SYNCING = "syncing"
    LISTENING = "listening"
    ERROR = "error"
    STOPPED = "stopped"

    @property
    def status(self) -> WorkerStatus:
        if self in (WorkerPhase.NEW, WorkerPhase.LISTENING):
            return WorkerStatus.IDLE
        return WorkerStatus(self.value)

    @property
    def has_session(self) -> bool:
        """Phases in which a live session may exist."""
        return self in (WorkerPhase.CONNECTING, WorkerPhase.SYNCING, WorkerPhase.LISTENING)


TRANSITIONS: dict[WorkerPhase, frozenset[WorkerPhase]] = {
    WorkerPhase.NEW: frozenset({WorkerPhase.CONNECTING, WorkerPhase.STOPPED}),
    WorkerPhase.CONNECTING: frozenset({WorkerPhase.SYNCING, WorkerPhase.ERROR, WorkerPhase.STOPPED}),
    WorkerPhase.SYNCING: frozenset({WorkerPhase.LISTENING, WorkerPhase.ERROR, WorkerPhase.STOPPED}),
    WorkerPhase.LISTENING: frozenset({WorkerPhase.SYNCING, WorkerPhase.ERROR, WorkerPhase.STOPPED}),
    WorkerPhase.ERROR: frozenset({WorkerPhase.CONNECTING, WorkerPhase.STOPPED}),
    WorkerPhase.STOPPED: frozenset(),
}


class InvalidTransitionError(Exception):
    """Raised on a phase change the state machine does not allow."""

    def __init__(self, current: WorkerPhase, target: WorkerPhase) -> None:
        super().__init__(f"Illegal worker transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


def can_transition(current: WorkerPhase, target: WorkerPhase) -> bool:
    return target in TRANSITIONS[current]


@dataclass
class WorkerState:
    """
    Read-only snapshot of a worker.

    Attributes:
        status: Current lifecycle status.
        domain_id: Domain the worker syncs.
        domain_name: Display name of the domain.
        last_sync: When the last sync completed.
        last_error: Message of the most recent failure.
        consecutive_errors: Failed cycles since the last clean run.
        connected_at: When the current session was established.
    """
    status: WorkerStatus
    domain_id: str
    domain_name: str
    last_sync: datetime | None = None
    last_error: str | None = None
    consecutive_errors: int = 0
    connected_at: datetime | None = None


# =============================================================================
# Failure Classification
# =============================================================================

AUTH_FAILURE_PHRASES = (
    "authentication",
    "auth failed",
    "invalid credentials",
    "login failed",
    "authenticationfailed",
)


def is_fatal_error(error: BaseException) -> bool:
    """
    True if retrying cannot fix the failure.

    Rejected logins and unusable credentials are fatal. So is any error
    whose message carries a known authentication failure phrase, since
    servers report those through generic NO responses too.

    Network-level errors are never fatal. Their text is ours (host names,
    socket errors), not a server response.
    """
    if isinstance(error, (IMAPAuthenticationError, CredentialError)):
        return True
    if isinstance(error, (IMAPConnectionError, OSError, TimeoutError)):
        return False
    message = str(error).lower()
    return any(phrase in message for phrase in AUTH_FAILURE_PHRASES)


# =============================================================================
# Reconnect Backoff
# =============================================================================

# Exponent cap for the doubling
MAX_BACKOFF_EXPONENT = 10


def reconnect_delay(
    attempt: int,
    config: WorkerConfig,
    rng: random.Random | None = None,
) -> float:
    """
    Seconds to wait before reconnect attempt number `attempt` (1-based).

    min_delay * 2^attempt, capped at max_delay, plus up to
    reconnect_jitter_seconds of random jitter.
    """
    exponent = min(max(attempt, 0), MAX_BACKOFF_EXPONENT)
    base = min(config.reconnect_max_seconds, config.reconnect_min_seconds * (2 ** exponent))
    jitter = (rng or random).uniform(0, config.reconnect_jitter_seconds)
    return base + jitter
