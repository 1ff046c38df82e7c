# =============================================================================
# Configuration Management
# =============================================================================
# Handles loading, saving, and validating mailpull configuration.
#
# XDG Base Directory Compliance (https://specifications.freedesktop.org/basedir-spec/):
#   - Config:  $XDG_CONFIG_HOME/mailpull/  (default: ~/.config/mailpull/)
#   - Data:    $XDG_DATA_HOME/mailpull/    (default: ~/.local/share/mailpull/)
#   - State:   $XDG_STATE_HOME/mailpull/   (default: ~/.local/state/mailpull/)
#
# Files:
#   - config.toml: Service configuration (worker timings, supervisor intervals,
#                  control API address)
#   - mailpull.db: SQLite database (in data directory)
#
# Domains themselves live in the database, not in the config file.
# =============================================================================

import os
import tomllib  # Built into Python 3.11+
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomli_w  # For writing TOML (tomllib is read-only)


# =============================================================================
# XDG Directory Management
# =============================================================================

# Application identifier used in all XDG paths
APP_NAME = "mailpull"


def get_xdg_config_home() -> Path:
    """
    Returns the XDG config directory for mailpull.

    Respects $XDG_CONFIG_HOME if set, otherwise uses ~/.config/mailpull/
    """
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base = Path(xdg_config)
    else:
        base = Path.home() / ".config"
    return base / APP_NAME


def get_xdg_data_home() -> Path:
    """
    Returns the XDG data directory for mailpull.

    Respects $XDG_DATA_HOME if set, otherwise uses ~/.local/share/mailpull/
    This is where the SQLite database lives.
    """
    xdg_data = os.environ.get("XDG_DATA_HOME")
    if xdg_data:
        base = Path(xdg_data)
    else:
        base = Path.home() / ".local" / "share"
    return base / APP_NAME


def get_xdg_state_home() -> Path:
    """
    Returns the XDG state directory for mailpull.

    Respects $XDG_STATE_HOME if set, otherwise uses ~/.local/state/mailpull/
    """
    xdg_state = os.environ.get("XDG_STATE_HOME")
    if xdg_state:
        base = Path(xdg_state)
    else:
        base = Path.home() / ".local" / "state"
    return base / APP_NAME


def ensure_directories() -> dict[str, Path]:
    """
    Creates all required XDG directories if they don't exist.

    Returns:
        Dictionary mapping directory type to path.
    """
    dirs = {
        "config": get_xdg_config_home(),
        "data": get_xdg_data_home(),
        "state": get_xdg_state_home(),
    }

    for dir_path in dirs.values():
        dir_path.mkdir(parents=True, exist_ok=True)

    return dirs


# =============================================================================
# Configuration Data Structures
# =============================================================================

@dataclass
class GeneralConfig:
    """
    General service settings.

    Attributes:
        log_level: Logging level name ("DEBUG", "INFO", ...).
        database_path: SQLite database location. Empty string means the
                       default XDG data location.
    """
    log_level: str = "INFO"
    database_path: str = ""


@dataclass
class WorkerConfig:
    """
    Timings and limits for a single domain worker.

    Attributes:
        idle_timeout_minutes: Maximum time to stay in one IDLE command.
                              Must stay below the 29 minute ceiling of RFC 2177.
        reconnect_min_seconds: Base reconnect delay (doubled per attempt).
        reconnect_max_seconds: Upper bound for the reconnect delay.
        reconnect_jitter_seconds: Upper bound of the random offset added to
                                  each delay so workers don't reconnect in lockstep.
        max_consecutive_errors: Give up after this many failed cycles in a row.
        mailbox: The single mailbox each worker watches.
        connect_timeout_seconds: Timeout for individual IMAP commands.
        stop_grace_seconds: How long stop() waits before cancelling the run loop.
    """
    idle_timeout_minutes: float = 25
    reconnect_min_seconds: float = 1.0
    reconnect_max_seconds: float = 300.0
    reconnect_jitter_seconds: float = 0.5
    max_consecutive_errors: int = 10
    mailbox: str = "INBOX"
    connect_timeout_seconds: float = 30.0
    stop_grace_seconds: float = 2.0

    @property
    def idle_timeout_seconds(self) -> float:
        return self.idle_timeout_minutes * 60


@dataclass
class SupervisorConfig:
    """
    Intervals for the supervisor's periodic tasks (seconds).

    Attributes:
        reconcile_seconds: How often to reload domains and start/stop workers.
        full_sync_seconds: How often to trigger a range sync on every worker.
        health_check_seconds: How often to log worker health.
    """
    reconcile_seconds: float = 30.0
    full_sync_seconds: float = 300.0
    health_check_seconds: float = 60.0


@dataclass
class SyncConfig:
    """
    Configuration for message synchronization.

    Attributes:
        batch_size: Number of UIDs fetched per FETCH command.
        mark_seen: Mark messages \\Seen on the server after an unseen-only sync.
    """
    batch_size: int = 200
    mark_seen: bool = True


@dataclass
class HttpConfig:
    """
    Operator control API.

    Attributes:
        enabled: Serve the API alongside the supervisor.
        host: Interface to bind. Keep it on loopback unless a proxy sits in front.
        port: TCP port to listen on.
    """
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 3001


@dataclass
class Config:
    """
    Main configuration container for mailpull.

    Usage:
        >>> config = Config.load()
        >>> config.worker.max_consecutive_errors
        10
    """
    general: GeneralConfig = field(default_factory=GeneralConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    http: HttpConfig = field(default_factory=HttpConfig)

    # Where this config was loaded from (not serialized)
    source_path: Path | None = field(default=None, compare=False, repr=False)

    # -------------------------------------------------------------------------
    # File Paths
    # -------------------------------------------------------------------------

    @staticmethod
    def config_file_path() -> Path:
        """Returns the path to the main config file."""
        return get_xdg_config_home() / "config.toml"

    @staticmethod
    def default_database_path() -> Path:
        """Returns the default path to the SQLite database."""
        return get_xdg_data_home() / "mailpull.db"

    def database_path(self) -> Path:
        """Returns the configured database path, or the XDG default."""
        if self.general.database_path:
            return Path(self.general.database_path).expanduser()
        return self.default_database_path()

    # -------------------------------------------------------------------------
    # Loading and Saving
    # -------------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """
        Load configuration from a TOML file.

        If the file doesn't exist, returns default configuration.

        Args:
            path: Config file to read. Defaults to the XDG config location.

        Raises:
            ConfigError: If the config file exists but is invalid.
        """
        config_path = path or cls.config_file_path()

        if not config_path.exists():
            config = cls()
            config.source_path = config_path
            return config

        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid config file: {e}") from e

        config = cls._from_dict(data)
        config.source_path = config_path
        return config

    def save(self, path: Path | None = None) -> Path:
        """
        Save configuration to a TOML file.

        Creates the parent directory if it doesn't exist.

        Returns:
            The path that was written.
        """
        config_path = path or self.source_path or self.config_file_path()
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "wb") as f:
            tomli_w.dump(self._to_dict(), f)

        return config_path

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """
        Create a Config object from a dictionary (parsed TOML).
        """
        config = cls()

        general = data.get("general", {})
        config.general = GeneralConfig(
            log_level=str(general.get("log_level", "INFO")).upper(),
            database_path=general.get("database_path", ""),
        )

        worker = data.get("worker", {})
        config.worker = WorkerConfig(
            idle_timeout_minutes=worker.get("idle_timeout_minutes", 25),
            reconnect_min_seconds=worker.get("reconnect_min_seconds", 1.0),
            reconnect_max_seconds=worker.get("reconnect_max_seconds", 300.0),
            reconnect_jitter_seconds=worker.get("reconnect_jitter_seconds", 0.5),
            max_consecutive_errors=worker.get("max_consecutive_errors", 10),
            mailbox=worker.get("mailbox", "INBOX"),
            connect_timeout_seconds=worker.get("connect_timeout_seconds", 30.0),
            stop_grace_seconds=worker.get("stop_grace_seconds", 2.0),
        )

        supervisor = data.get("supervisor", {})
        config.supervisor = SupervisorConfig(
            reconcile_seconds=supervisor.get("reconcile_seconds", 30.0),
            full_sync_seconds=supervisor.get("full_sync_seconds", 300.0),
            health_check_seconds=supervisor.get("health_check_seconds", 60.0),
        )

        sync = data.get("sync", {})
        config.sync = SyncConfig(
            batch_size=sync.get("batch_size", 200),
            mark_seen=sync.get("mark_seen", True),
        )

        http = data.get("http", {})
        config.http = HttpConfig(
            enabled=http.get("enabled", True),
            host=http.get("host", "127.0.0.1"),
            port=http.get("port", 3001),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """
        Check values that would make the service misbehave.

        Raises:
            ConfigError: If a value is out of range.
        """
        if not 0 < self.worker.idle_timeout_minutes < 29:
            raise ConfigError("worker.idle_timeout_minutes must be between 0 and 29")
        if self.worker.reconnect_min_seconds <= 0:
            raise ConfigError("worker.reconnect_min_seconds must be positive")
        if self.worker.reconnect_max_seconds < self.worker.reconnect_min_seconds:
            raise ConfigError("worker.reconnect_max_seconds must be >= reconnect_min_seconds")
        if self.worker.reconnect_jitter_seconds < 0:
            raise ConfigError("worker.reconnect_jitter_seconds must not be negative")
        if self.worker.max_consecutive_errors < 1:
            raise ConfigError("worker.max_consecutive_errors must be at least 1")
        if self.sync.batch_size < 1:
            raise ConfigError("sync.batch_size must be at least 1")
        if not 0 < self.http.port < 65536:
            raise ConfigError("http.port must be between 1 and 65535")

    def _to_dict(self) -> dict[str, Any]:
        """
        Convert Config to a dictionary for TOML serialization.
        """
        return {
            "general": {
                "log_level": self.general.log_level,
                "database_path": self.general.database_path,
            },
            "worker": {
                "idle_timeout_minutes": self.worker.idle_timeout_minutes,
                "reconnect_min_seconds": self.worker.reconnect_min_seconds,
                "reconnect_max_seconds": self.worker.reconnect_max_seconds,
                "reconnect_jitter_seconds": self.worker.reconnect_jitter_seconds,
                "max_consecutive_errors": self.worker.max_consecutive_errors,
                "mailbox": self.worker.mailbox,
                "connect_timeout_seconds": self.worker.connect_timeout_seconds,
                "stop_grace_seconds": self.worker.stop_grace_seconds,
            },
            "supervisor": {
                "reconcile_seconds": self.supervisor.reconcile_seconds,
                "full_sync_seconds": self.supervisor.full_sync_seconds,
                "health_check_seconds": self.supervisor.health_check_seconds,
            },
            "sync": {
                "batch_size": self.sync.batch_size,
                "mark_seen": self.sync.mark_seen,
            },
            "http": {
                "enabled": self.http.enabled,
                "host": self.http.host,
                "port": self.http.port,
            },
        }


# =============================================================================
# Exceptions
# =============================================================================

class ConfigError(Exception):
    """Raised when there's an error loading or parsing configuration."""
    pass


# =============================================================================
# Utility Functions
# =============================================================================

def print_paths(config: Config | None = None) -> None:
    """
    Print all XDG paths for debugging.
    Useful for operators wondering where config/data is stored.
    """
    config = config or Config()
    print(f"Config:  {get_xdg_config_home()}")
    print(f"Data:    {get_xdg_data_home()}")
    print(f"State:   {get_xdg_state_home()}")
    print()
    print(f"Config file:  {config.source_path or Config.config_file_path()}")
    print(f"Database:     {config.database_path()}")
