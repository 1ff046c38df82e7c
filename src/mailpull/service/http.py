# =============================================================================
# Operator Control API
# =============================================================================
# Small JSON-over-HTTP surface for operators and deploy scripts:
#
#   GET  /health            liveness, always 200 while the process is up
#   GET  /status            supervisor snapshot (503 until started)
#   POST /reconcile         reload domains now
#   POST /sync/all          range sync on every live worker
#   POST /sync/{domain_id}  range sync on one worker (404 if it can't run)
#
# Unknown paths get a JSON 404. There is no authentication. The default
# bind address is loopback.
# =============================================================================

import logging
from dataclasses import asdict
from datetime import datetime
from enum import Enum
from typing import Any

from aiohttp import web

from mailpull.config import HttpConfig
from mailpull.service.supervisor import Supervisor

logger = logging.getLogger(__name__)

DOMAIN_ID_PATTERN = r"[A-Za-z0-9_-]+"


def _to_json(value: Any) -> Any:
    """Convert datetimes and enums inside a status payload to JSON types."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _to_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json(item) for item in value]
    return value


@web.middleware
async def json_errors(request: web.Request, handler) -> web.StreamResponse:
    """Answer unknown routes and handler crashes with JSON bodies."""
    try:
        return await handler(request)
    except web.HTTPNotFound:
        return web.json_response({"error": "Not found"}, status=404)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Control API error on {request.method} {request.path}")
        return web.json_response({"error": str(e) or e.__class__.__name__}, status=500)


class ControlServer:
    """
    Serves the control API for one supervisor.

    Usage:
        >>> server = ControlServer(supervisor, config.http)
        >>> await server.start()
        >>> # ... later ...
        >>> await server.stop()
    """

    def __init__(self, supervisor: Supervisor, config: HttpConfig | None = None) -> None:
        self.supervisor = supervisor
        self.config = config or HttpConfig()

        self.app = web.Application(middlewares=[json_errors])
        self._setup_routes()

        # Set by start()
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None

    def _setup_routes(self) -> None:
        router = self.app.router
        router.add_get("/health", self.handle_health)
        router.add_get("/status", self.handle_status)
        router.add_post("/reconcile", self.handle_reconcile)
        # /sync/all has to be matched before the per-domain route
        router.add_post("/sync/all", self.handle_sync_all)
        router.add_post(f"/sync/{{domain_id:{DOMAIN_ID_PATTERN}}}", self.handle_sync_domain)

    @property
    def is_running(self) -> bool:
        return self.site is not None

    # =========================================================================
    # Handlers
    # =========================================================================

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "timestamp": datetime.now().isoformat()})

    async def handle_status(self, request: web.Request) -> web.Response:
        """
        Supervisor snapshot.

        Returns:
            200 with started_at, workers_count, workers and tasks,
            or 503 if the supervisor is not running.
        """
        status = self.supervisor.status()
        if not status.running:
            return web.json_response({"error": "Service not started"}, status=503)

        payload = _to_json(asdict(status))
        payload["workers_count"] = len(status.workers)
        return web.json_response(payload)

    async def handle_reconcile(self, request: web.Request) -> web.Response:
        await self.supervisor.reconcile_now()
        return web.json_response({"success": True, "message": "Reconcile triggered"})

    async def handle_sync_all(self, request: web.Request) -> web.Response:
        count = await self.supervisor.sync_all()
        logger.info(f"Sync requested for all domains ({count} workers)")
        return web.json_response({"success": True, "count": count})

    async def handle_sync_domain(self, request: web.Request) -> web.Response:
        domain_id = request.match_info["domain_id"]
        success, message = await self.supervisor.sync_domain(domain_id)
        logger.info(f"Sync requested for {domain_id}: {message}")
        return web.json_response(
            {"success": success, "message": message},
            status=200 if success else 404,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Bind and start serving. Does nothing when the API is disabled."""
        if not self.config.enabled:
            logger.info("Control API is disabled, not starting")
            return
        if self.site is not None:
            return

        self.runner = web.AppRunner(self.app)
        await self.runner.setup()

        self.site = web.TCPSite(self.runner, self.config.host, self.config.port)
        try:
            await self.site.start()
        except OSError:
            await self.runner.cleanup()
            self.runner = None
            self.site = None
            raise

        logger.info(f"Control API listening on {self.config.host}:{self.config.port}")

    async def stop(self) -> None:
        """Stop serving. Safe to call when not started."""
        if self.site is not None:
            await self.site.stop()
            self.site = None
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
            logger.info("Control API stopped")
