"""Health check and metrics endpoints for the relay.

Provides HTTP endpoints for load balancers, monitoring systems and
orchestration tools (Docker healthcheck, Kubernetes health checks), plus a JSON
listing of sessions for operators.
"""

import logging
import time
from typing import Any

from aiohttp import web

from src.relay.errors import SessionNotFound
from src.relay.metrics import MetricsCollector, get_metrics_collector

logger = logging.getLogger(__name__)


class HealthCheckHandler:
    """Health check handler for the relay.

    Provides /health that checks:
    - WebSocket transport is accepting connections
    - Session capacity is not exhausted
    - Service uptime
    """

    def __init__(
        self,
        controller: Any = None,
        transport: Any = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Initialize health check handler.

        Args:
            controller: SessionLifecycleController instance (optional)
            transport: Transport instance (optional)
            metrics: Metrics collector (global collector when omitted)
        """
        self.controller = controller
        self.transport = transport
        self.start_time = time.time()
        self.metrics_collector = metrics or get_metrics_collector()

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        Returns:
            200 OK: Service is healthy and ready
            503 Service Unavailable: Service is unhealthy

        Response format:
        {
            "status": "healthy" | "unhealthy",
            "uptime_seconds": float,
            "checks": {
                "transport": {"ok": bool},
                "capacity": {"ok": bool, "live_sessions": int, "max_sessions": int}
            }
        }
        """
        checks: dict[str, Any] = {}

        transport_ok = self.transport is None or bool(self.transport.is_running)
        checks["transport"] = {"ok": transport_ok}

        capacity_ok = True
        if self.controller is not None:
            live = len(self.controller.registry.live_sessions())
            max_sessions = self.controller.config.session.max_sessions
            capacity_ok = live < max_sessions
            checks["capacity"] = {
                "ok": capacity_ok,
                "live_sessions": live,
                "max_sessions": max_sessions,
            }

        # Full capacity still serves existing sessions, so it does not fail health
        overall_healthy = transport_ok
        status_code = 200 if overall_healthy else 503

        response_data = {
            "status": "healthy" if overall_healthy else "unhealthy",
            "uptime_seconds": time.time() - self.start_time,
            "checks": checks,
        }

        logger.debug(
            "Health check performed",
            extra={"status": response_data["status"], "checks": checks},
        )

        return web.json_response(response_data, status=status_code)

    async def liveness_check(self, request: web.Request) -> web.Response:
        """Liveness check endpoint.

        Returns OK if the process is running, regardless of dependencies.
        """
        return web.json_response(
            {
                "status": "alive",
                "uptime_seconds": time.time() - self.start_time,
            },
            status=200,
        )

    async def metrics_endpoint(self, request: web.Request) -> web.Response:
        """Prometheus metrics endpoint.

        Returns:
            200 OK: Metrics in Prometheus text format
        """
        try:
            metrics_text = self.metrics_collector.export_prometheus()
            return web.Response(
                text=metrics_text,
                content_type="text/plain",
                charset="utf-8",
                headers={"X-Prometheus-Format": "0.0.4"},
                status=200,
            )

        except Exception as e:
            logger.error("Failed to export metrics", extra={"error": str(e)}, exc_info=True)
            return web.Response(
                text=f"# Error exporting metrics: {e}\n",
                content_type="text/plain",
                status=500,
            )

    async def metrics_summary(self, request: web.Request) -> web.Response:
        """Human-readable metrics summary endpoint.

        Returns:
            200 OK: Metrics summary and relay statistics in JSON format
        """
        try:
            response: dict[str, Any] = {
                "status": "ok",
                "uptime_seconds": time.time() - self.start_time,
                "metrics": self.metrics_collector.get_summary(),
            }
            if self.controller is not None:
                response["relay"] = self.controller.statistics()
            return web.json_response(response, status=200)

        except Exception as e:
            logger.error(
                "Failed to generate metrics summary", extra={"error": str(e)}, exc_info=True
            )
            return web.json_response({"status": "error", "error": str(e)}, status=500)

    async def list_sessions(self, request: web.Request) -> web.Response:
        """Sanitised snapshot of every registered session."""
        if self.controller is None:
            return web.json_response({"sessions": []})
        sessions = await self.controller.list_sessions()
        return web.json_response({"sessions": sessions})

    async def session_detail(self, request: web.Request) -> web.Response:
        """Snapshot and quality report of one session."""
        if self.controller is None:
            raise web.HTTPNotFound()
        session_id = request.match_info["session_id"]
        try:
            snapshot = await self.controller.session_snapshot(session_id)
            quality = await self.controller.quality_report(session_id)
        except SessionNotFound as e:
            return web.json_response({"error": e.code, "message": e.message}, status=404)
        return web.json_response({"session": snapshot, "quality": quality})


def setup_health_routes(
    app: web.Application,
    controller: Any = None,
    transport: Any = None,
    metrics: MetricsCollector | None = None,
) -> None:
    """Set up health check routes on application.

    Args:
        app: aiohttp Application instance
        controller: SessionLifecycleController instance (optional)
        transport: Transport instance (optional)
        metrics: Metrics collector (global collector when omitted)
    """
    handler = HealthCheckHandler(controller=controller, transport=transport, metrics=metrics)

    app.router.add_get("/health", handler.health_check)
    app.router.add_get("/liveness", handler.liveness_check)
    app.router.add_get("/metrics", handler.metrics_endpoint)
    app.router.add_get("/metrics/summary", handler.metrics_summary)
    app.router.add_get("/sessions", handler.list_sessions)
    app.router.add_get("/sessions/{session_id}", handler.session_detail)

    logger.info(
        "Health check endpoints configured: "
        "/health, /liveness, /metrics, /metrics/summary, /sessions"
    )
