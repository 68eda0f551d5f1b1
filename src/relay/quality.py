"""Connection quality monitoring.

Each watched connection gets one ping task, bound to the connection's
lifetime, that measures a round trip every ``ping_interval_s`` and reports
a ``ConnectionQuality`` sample. Tiers are informational only: they are shown
to operators and the broadcaster but never change what a subscriber receives.

Tier thresholds (round-trip latency):
    excellent  <= 100 ms
    good       <= 300 ms
    fair       <= 500 ms
    poor        > 500 ms (also used for timed-out pings)
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from src.relay.metrics import MetricsCollector, get_metrics_collector
from src.relay.models import ConnectionQuality, QualityTier

logger = logging.getLogger(__name__)

EXCELLENT_MAX_MS = 100.0
GOOD_MAX_MS = 300.0
FAIR_MAX_MS = 500.0

Ping = Callable[[], Awaitable[float]]
SampleCallback = Callable[[ConnectionQuality], Awaitable[None] | None]


def classify_latency(latency_ms: float) -> QualityTier:
    """Map a round-trip latency to a quality tier."""
    if latency_ms <= EXCELLENT_MAX_MS:
        return QualityTier.EXCELLENT
    if latency_ms <= GOOD_MAX_MS:
        return QualityTier.GOOD
    if latency_ms <= FAIR_MAX_MS:
        return QualityTier.FAIR
    return QualityTier.POOR


def make_sample(latency_ms: float) -> ConnectionQuality:
    return ConnectionQuality(latency_ms=latency_ms, tier=classify_latency(latency_ms))


class ConnectionQualityMonitor:
    """Periodic latency pinging for a set of connections.

    Args:
        ping_interval_s: Time between pings of one connection
        ping_timeout_s: Deadline for a single ping
        metrics: Metrics collector (global collector when omitted)
    """

    def __init__(
        self,
        ping_interval_s: float = 5.0,
        ping_timeout_s: float = 2.0,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.ping_interval_s = ping_interval_s
        self.ping_timeout_s = ping_timeout_s
        self._metrics = metrics or get_metrics_collector()
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._latest: dict[str, ConnectionQuality] = {}

    def is_watching(self, connection_id: str) -> bool:
        return connection_id in self._tasks

    def latest(self, connection_id: str) -> ConnectionQuality | None:
        return self._latest.get(connection_id)

    def watch(self, connection_id: str, ping: Ping, on_sample: SampleCallback) -> None:
        """Start pinging a connection, replacing any existing ping task.

        Args:
            connection_id: Connection to ping
            ping: Coroutine factory returning round-trip latency in ms
            on_sample: Called with every sample (may be a coroutine function)
        """
        self.cancel(connection_id)
        self._tasks[connection_id] = asyncio.create_task(
            self._ping_loop(connection_id, ping, on_sample),
            name=f"quality-{connection_id}",
        )

    def cancel(self, connection_id: str) -> bool:
        """Cancel a ping task without waiting for it.

        Returns:
            Whether the connection was being watched
        """
        task = self._tasks.pop(connection_id, None)
        self._latest.pop(connection_id, None)
        if task is None:
            return False
        task.cancel()
        return True

    async def unwatch(self, connection_id: str) -> None:
        """Stop pinging a connection and wait for its task to finish."""
        task = self._tasks.pop(connection_id, None)
        self._latest.pop(connection_id, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def close(self) -> None:
        """Stop all ping tasks."""
        for connection_id in list(self._tasks):
            await self.unwatch(connection_id)

    async def ping_once(self, connection_id: str, ping: Ping) -> ConnectionQuality:
        """Run one ping; a timeout or broken connection is reported as poor.

        Args:
            connection_id: Connection being pinged
            ping: Coroutine factory returning round-trip latency in ms

        Returns:
            ConnectionQuality sample
        """
        start = time.monotonic()
        try:
            latency_ms = await asyncio.wait_for(ping(), timeout=self.ping_timeout_s)
        except TimeoutError:
            latency_ms = self.ping_timeout_s * 1000.0
            sample = ConnectionQuality(latency_ms=latency_ms, tier=QualityTier.POOR)
        except ConnectionError:
            latency_ms = (time.monotonic() - start) * 1000.0
            sample = ConnectionQuality(latency_ms=latency_ms, tier=QualityTier.POOR)
        else:
            sample = make_sample(latency_ms)

        self._latest[connection_id] = sample
        self._metrics.record_quality_sample(
            sample.latency_ms / 1000.0, poor=sample.tier is QualityTier.POOR
        )
        return sample

    async def _ping_loop(
        self, connection_id: str, ping: Ping, on_sample: SampleCallback
    ) -> None:
        while True:
            await asyncio.sleep(self.ping_interval_s)
            sample = await self.ping_once(connection_id, ping)

            if sample.tier is QualityTier.POOR:
                logger.info(
                    "Poor connection quality",
                    extra={
                        "connection_id": connection_id,
                        "latency_ms": round(sample.latency_ms, 1),
                    },
                )

            try:
                outcome = on_sample(sample)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # The owning session may have ended between pings
                logger.debug(
                    "Quality sample callback failed, stopping ping",
                    extra={"connection_id": connection_id, "error": str(e)},
                )
                self._tasks.pop(connection_id, None)
                return
