# =============================================================================
# mailpull Main Application
# =============================================================================
# Command-line entry point for the sync service.
#
# The service:
#   - Loads configuration (TOML, XDG paths)
#   - Opens the SQLite database
#   - Runs the Supervisor until SIGINT/SIGTERM
#   - Serves the operator control API next to it (config [http])
#   - Stops every worker gracefully (LOGOUT) before exiting
# =============================================================================

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from mailpull import __version__, __app_name__
from mailpull.config import Config, ConfigError, ensure_directories, print_paths
from mailpull.imap import SyncEngine
from mailpull.service import ControlServer, Supervisor
from mailpull.storage import Database, Repository

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def setup_logging(level: str, debug: bool = False) -> None:
    """Configure root logging once for the whole process."""
    logging.basicConfig(
        level=logging.DEBUG if debug else getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    if not debug:
        # aioimaplib logs every IMAP line at DEBUG
        logging.getLogger("aioimaplib").setLevel(logging.WARNING)


async def run_service(config: Config) -> None:
    """
    Run the supervisor until the process is asked to stop.

    Args:
        config: Loaded configuration.
    """
    db = Database(config.database_path())
    await db.connect()
    logger.info(f"Database: {db.db_path}")

    repo = Repository(db)
    sync_engine = SyncEngine(
        repo,
        batch_size=config.sync.batch_size,
        mark_seen=config.sync.mark_seen,
    )
    supervisor = Supervisor(repo, sync_engine, config)
    control = ControlServer(supervisor, config.http)

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    try:
        await supervisor.start()
        await control.start()
        logger.info(f"{__app_name__} {__version__} running")
        await stop_requested.wait()
        logger.info("Shutdown requested")
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await control.stop()
        await supervisor.stop()
        await db.close()


# =============================================================================
# CLI Entry Point
# =============================================================================

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        prog=__app_name__,
        description="mailpull: keeps IMAP mailboxes synced into local storage",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--paths",
        action="store_true",
        help="Print configuration paths and exit",
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config file (default: XDG config location)",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode (verbose logging)",
    )

    parser.add_argument(
        "--write-config",
        action="store_true",
        help="Write the current (or default) configuration to the config file and exit",
    )

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for mailpull.

    This function:
        1. Parses command-line arguments
        2. Loads configuration
        3. Handles one-shot commands (--paths, --write-config)
        4. Runs the service until interrupted

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = parse_args(argv)

    try:
        config = Config.load(args.config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.paths:
        print_paths(config)
        return 0

    if args.write_config:
        path = config.save(args.config)
        print(f"Wrote {path}")
        return 0

    setup_logging(config.general.log_level, debug=args.debug)
    ensure_directories()

    try:
        asyncio.run(run_service(config))
    except KeyboardInterrupt:
        pass

    return 0


if __name__ == "__main__":
    sys.exit(main())
