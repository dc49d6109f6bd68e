"""HTTP health checks for the relay, served next to the WebSocket port."""

import logging
import time

from aiohttp import web

from src.azancast.relay.server import RelayServer

logger = logging.getLogger(__name__)


class HealthCheckHandler:
    """Answers /health from the relay's routing tables and /liveness unconditionally."""

    def __init__(self, relay: RelayServer) -> None:
        self.relay = relay
        self.start_time = time.time()

    def _uptime(self) -> float:
        return time.time() - self.start_time

    async def health_check(self, request: web.Request) -> web.Response:
        """Report relay readiness.

        Responds 200 with ``status: healthy`` while the relay accepts
        connections and 503 with ``status: unhealthy`` once it stopped. The
        body also carries ``uptime_seconds`` and the ``peers``, ``calls`` and
        ``answered_calls`` counts.
        """
        serving = self.relay.is_running
        body: dict[str, object] = {
            **self.relay.stats(),
            "status": "healthy" if serving else "unhealthy",
            "uptime_seconds": self._uptime(),
        }

        if not serving:
            logger.warning("Health check while relay is stopped")
        return web.json_response(body, status=200 if serving else 503)

    async def liveness_check(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "alive", "uptime_seconds": self._uptime()})


def setup_health_routes(app: web.Application, relay: RelayServer) -> None:
    """Mount /health and /liveness for ``relay`` on ``app``."""
    handler = HealthCheckHandler(relay)
    app.router.add_get("/health", handler.health_check)
    app.router.add_get("/liveness", handler.liveness_check)
    logger.info("Relay health endpoints mounted", extra={"paths": ["/health", "/liveness"]})
