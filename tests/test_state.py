# =============================================================================
# Worker State Machine Tests
# =============================================================================

import random

import pytest

from mailpull.config import WorkerConfig
from mailpull.imap import (
    CredentialError,
    IMAPAuthenticationError,
    IMAPConnectionError,
    WorkerPhase,
    WorkerStatus,
    is_fatal_error,
    reconnect_delay,
)
from mailpull.imap.state import TRANSITIONS, can_transition


class TestPhases:

    def test_new_and_listening_report_idle(self):
        assert WorkerPhase.NEW.status == WorkerStatus.IDLE
        assert WorkerPhase.LISTENING.status == WorkerStatus.IDLE
        assert WorkerPhase.SYNCING.status == WorkerStatus.SYNCING
        assert WorkerPhase.STOPPED.status == WorkerStatus.STOPPED

    def test_stopped_is_terminal(self):
        assert TRANSITIONS[WorkerPhase.STOPPED] == frozenset()
        for phase in WorkerPhase:
            if phase != WorkerPhase.STOPPED:
                assert can_transition(phase, WorkerPhase.STOPPED)

    def test_cannot_skip_connecting(self):
        assert not can_transition(WorkerPhase.NEW, WorkerPhase.SYNCING)
        assert not can_transition(WorkerPhase.ERROR, WorkerPhase.LISTENING)
        assert not can_transition(WorkerPhase.LISTENING, WorkerPhase.CONNECTING)

    def test_listen_sync_cycle(self):
        assert can_transition(WorkerPhase.LISTENING, WorkerPhase.SYNCING)
        assert can_transition(WorkerPhase.SYNCING, WorkerPhase.LISTENING)
        assert can_transition(WorkerPhase.ERROR, WorkerPhase.CONNECTING)


class TestFailureClassification:

    @pytest.mark.parametrize("message", [
        "Authentication failed.",
        "AUTH FAILED",
        "Invalid credentials (Failure)",
        "LOGIN failed.",
        "[AUTHENTICATIONFAILED] bad password",
    ])
    def test_auth_phrases_are_fatal(self, message):
        assert is_fatal_error(RuntimeError(message))

    def test_typed_errors_are_fatal(self):
        assert is_fatal_error(IMAPAuthenticationError("NO"))
        assert is_fatal_error(CredentialError("account disabled"))

    def test_network_errors_are_transient(self):
        assert not is_fatal_error(IMAPConnectionError("Connection reset by peer"))
        assert not is_fatal_error(TimeoutError("timed out"))
        assert not is_fatal_error(OSError("Network is unreachable"))

    def test_host_names_are_not_server_responses(self):
        error = IMAPConnectionError(
            "Failed to connect to authentication.example.com:993: Connection refused"
        )
        assert not is_fatal_error(error)
        assert not is_fatal_error(OSError("getaddrinfo failed for login failed.example.net"))


class TestReconnectDelay:

    def test_doubles_from_min(self):
        config = WorkerConfig(reconnect_min_seconds=1, reconnect_max_seconds=300,
                              reconnect_jitter_seconds=0)
        assert reconnect_delay(0, config) == 1
        assert reconnect_delay(1, config) == 2
        assert reconnect_delay(3, config) == 8

    def test_capped_at_max(self):
        config = WorkerConfig(reconnect_min_seconds=1, reconnect_max_seconds=300,
                              reconnect_jitter_seconds=0)
        assert reconnect_delay(9, config) == 300
        assert reconnect_delay(50, config) == 300

    def test_non_decreasing_and_bounded(self):
        config = WorkerConfig()
        delays = [reconnect_delay(n, config, random.Random(42)) for n in range(1, 30)]
        bases = [reconnect_delay(n, WorkerConfig(reconnect_jitter_seconds=0)) for n in range(1, 30)]

        assert bases == sorted(bases)
        limit = config.reconnect_max_seconds + config.reconnect_jitter_seconds
        assert all(d <= limit for d in delays)

    def test_jitter_within_bound(self):
        config = WorkerConfig(reconnect_min_seconds=1, reconnect_jitter_seconds=0.5)
        rng = random.Random(7)
        for _ in range(100):
            delay = reconnect_delay(2, config, rng)
            assert 4 <= delay <= 4.5
