"""Prometheus-compatible metrics for relay observability.

This module provides metrics collection for monitoring:
- Chunk pipeline health (received, dropped, processing latency)
- Adapter failures per stage (transcription, translation, synthesis)
- Dual output cache effectiveness (hits, misses per tier)
- Fan-out delivery (broadcasts, personal deliveries, outbound drops)
- Session and subscriber population
- Connection quality pings

Metrics are collected in-memory and exposed via the /metrics endpoint in
Prometheus exposition format.

Architecture:
    Session actors → MetricsCollector → export_prometheus() → /metrics
                          ↓
                     In-memory storage (thread-safe)
                          ↓
                     Aggregation (p50/p95/p99)
"""

import logging
import threading
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class HistogramBucket:
    """Cumulative bucket of a histogram."""

    le: float  # Upper bound (less-than-or-equal)
    count: int = 0  # Number of observations <= le


def _latency_buckets() -> list[HistogramBucket]:
    # 10ms to 30s, chunk processing spans several adapter round trips
    bounds = [0.010, 0.050, 0.100, 0.200, 0.300, 0.500, 1.0, 2.0, 3.0, 5.0, 8.0, 15.0, 30.0]
    return [HistogramBucket(le=b) for b in bounds] + [HistogramBucket(le=float("inf"))]


def _count_buckets() -> list[HistogramBucket]:
    bounds = [1, 2, 5, 10, 25, 50, 100, 250, 500]
    return [HistogramBucket(le=float(b)) for b in bounds] + [HistogramBucket(le=float("inf"))]


@dataclass
class Histogram:
    """Fixed-bucket distribution of chunk latencies or delivery counts.

    Maintains cumulative fixed buckets for approximate percentiles.
    """

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)
    buckets: list[HistogramBucket] = field(default_factory=_latency_buckets)

    sum: float = 0.0  # Sum of all observed values
    count: int = 0  # Total number of observations

    def observe(self, value: float) -> None:
        """Record an observation.

        Args:
            value: Observation in base units (seconds or counts)
        """
        self.sum += value
        self.count += 1

        for bucket in self.buckets:
            if value <= bucket.le:
                bucket.count += 1

    def quantile(self, q: float) -> float | None:
        """Approximate quantile ``q`` (0.95 for p95).

        Uses linear interpolation within the bucket holding the target rank.
        Bucket counts are cumulative.

        Args:
            q: Quantile in [0, 1]

        Returns:
            Interpolated value, or None before the first observation
        """
        if self.count == 0:
            return None

        target_rank = int(q * self.count)

        prev_count = 0
        for i, bucket in enumerate(self.buckets):
            if bucket.count >= target_rank:
                if i == 0:
                    return bucket.le / 2.0

                prev_bucket = self.buckets[i - 1]
                bucket_count = bucket.count - prev_count
                if bucket.le == float("inf"):
                    return prev_bucket.le
                if bucket_count == 0:
                    return bucket.le

                rank_in_bucket = target_rank - prev_count
                bucket_width = bucket.le - prev_bucket.le
                return prev_bucket.le + (rank_in_bucket / bucket_count) * bucket_width

            prev_count = bucket.count

        return self.buckets[-1].le


@dataclass
class Counter:
    """Monotonic counter."""

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0

    def inc(self, amount: float = 1.0) -> None:
        self.value += amount


@dataclass
class Gauge:
    """Point-in-time value."""

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0

    def set(self, value: float) -> None:
        self.value = value

    def inc(self, amount: float = 1.0) -> None:
        self.value += amount

    def dec(self, amount: float = 1.0) -> None:
        self.value -= amount


class MetricsCollector:
    """In-memory relay metrics with Prometheus text export.

    Every public method takes the collector lock, so session actors and the
    health endpoint may use it concurrently.
    """

    def __init__(self) -> None:
        """Create every metric at zero so the first scrape is complete."""
        self._lock = threading.RLock()

        self._counters: dict[str, Counter] = {}
        self._gauges: dict[str, Gauge] = {}
        self._histograms: dict[str, Histogram] = {}

        self._init_pipeline_metrics()
        self._init_cache_metrics()
        self._init_delivery_metrics()
        self._init_session_metrics()
        self._init_quality_metrics()

        logger.info("MetricsCollector initialized")

    def _counter(self, name: str, help: str) -> None:
        self._counters[name] = Counter(name=name, help=help)

    def _gauge(self, name: str, help: str) -> None:
        self._gauges[name] = Gauge(name=name, help=help)

    def _init_pipeline_metrics(self) -> None:
        """Initialize chunk pipeline metrics."""
        self._counter("chunks_received_total", "Audio chunks admitted to a session sequencer")
        self._counter("chunks_dropped_total", "Chunks dropped by backpressure or reorder timeout")
        self._counter("chunks_processed_total", "Chunks that finished processing")
        self._counter("decode_errors_total", "Inbound chunks rejected by the codec")
        self._counter("transcription_errors_total", "Failed or empty transcriptions")
        self._counter("translation_errors_total", "Per-language translation failures")
        self._counter("synthesis_errors_total", "Per-language synthesis failures")
        self._histograms["chunk_processing_seconds"] = Histogram(
            name="chunk_processing_seconds",
            help="Chunk latency in seconds (received to all languages resolved)",
        )
        self._gauge("chunks_in_flight", "Chunks currently being processed across sessions")

    def _init_cache_metrics(self) -> None:
        """Initialize dual output cache metrics."""
        self._counter("translation_cache_hits_total", "Translation LRU hits")
        self._counter("translation_cache_misses_total", "Translation LRU misses")
        self._counter("synthesis_cache_hits_total", "Synthesis LRU hits")
        self._counter("synthesis_cache_misses_total", "Synthesis LRU misses")

    def _init_delivery_metrics(self) -> None:
        """Initialize fan-out delivery metrics."""
        self._counter("broadcasts_total", "translation_broadcast events dispatched")
        self._counter("personal_deliveries_total", "personal_translation events dispatched")
        self._counter("outbound_events_dropped_total", "Events dropped from full outbound queues")

    def _init_session_metrics(self) -> None:
        """Initialize session lifecycle metrics."""
        self._gauge("sessions_active", "Sessions that have not ended")
        self._gauge("subscribers_active", "Active subscribers across sessions")
        self._gauge("connections_active", "Open client connections")
        self._counter("sessions_created_total", "Sessions created")
        self._counter("broadcaster_reconnections_total", "Broadcasters that reclaimed a session")
        self._histograms["session_duration_seconds"] = Histogram(
            name="session_duration_seconds",
            help="Session duration in seconds",
            buckets=[
                HistogramBucket(le=b)
                for b in (60.0, 300.0, 900.0, 1800.0, 3600.0, 7200.0, 21600.0, float("inf"))
            ],
        )
        self._histograms["session_peak_subscribers"] = Histogram(
            name="session_peak_subscribers",
            help="Peak concurrent subscribers per session",
            buckets=_count_buckets(),
        )

    def _init_quality_metrics(self) -> None:
        """Initialize connection quality metrics."""
        self._histograms["ping_latency_seconds"] = Histogram(
            name="ping_latency_seconds",
            help="Connection quality ping round-trip latency in seconds",
        )
        self._counter("poor_quality_samples_total", "Quality samples classified as poor")

    # === Pipeline metrics ===

    def record_chunk_received(self) -> None:
        with self._lock:
            self._counters["chunks_received_total"].inc()
            self._gauges["chunks_in_flight"].inc()

    def record_chunks_dropped(self, count: int = 1) -> None:
        """Record dropped chunks.

        Args:
            count: Number of chunks dropped
        """
        if count <= 0:
            return
        with self._lock:
            self._counters["chunks_dropped_total"].inc(count)
            self._gauges["chunks_in_flight"].dec(count)

    def record_decode_error(self) -> None:
        with self._lock:
            self._counters["decode_errors_total"].inc()

    def record_chunk_processed(
        self,
        processing_seconds: float,
        failed_stage: str | None = None,
        degraded: list[str] | None = None,
    ) -> None:
        """Record one processed chunk.

        Args:
            processing_seconds: Time from receipt to result
            failed_stage: Stage that failed the whole chunk, if any
            degraded: Degradation reasons of individual language entries
        """
        with self._lock:
            self._counters["chunks_processed_total"].inc()
            self._gauges["chunks_in_flight"].dec()
            if failed_stage is not None:
                self._counters["transcription_errors_total"].inc()
                return
            self._histograms["chunk_processing_seconds"].observe(processing_seconds)
            for reason in degraded or ():
                if reason == "translation_failed":
                    self._counters["translation_errors_total"].inc()
                elif reason == "synthesis_failed":
                    self._counters["synthesis_errors_total"].inc()

    def record_chunks_cancelled(self, count: int) -> None:
        """Release in-flight accounting for chunks cancelled at session end."""
        if count <= 0:
            return
        with self._lock:
            self._gauges["chunks_in_flight"].dec(count)

    # === Cache metrics ===

    def record_cache_lookup(self, tier: str, hit: bool) -> None:
        """Record a cache lookup.

        Args:
            tier: "translation" or "synthesis"
            hit: Whether the lookup was served from the cache
        """
        name = f"{tier}_cache_{'hits' if hit else 'misses'}_total"
        with self._lock:
            counter = self._counters.get(name)
            if counter is not None:
                counter.inc()

    # === Delivery metrics ===

    def record_dispatch(self, personal_deliveries: int) -> None:
        """Record the fan-out of one result.

        Args:
            personal_deliveries: Number of personal_translation events sent
        """
        with self._lock:
            self._counters["broadcasts_total"].inc()
            self._counters["personal_deliveries_total"].inc(personal_deliveries)

    def record_outbound_dropped(self) -> None:
        with self._lock:
            self._counters["outbound_events_dropped_total"].inc()

    # === Session metrics ===

    def record_session_start(self) -> None:
        with self._lock:
            self._counters["sessions_created_total"].inc()
            self._gauges["sessions_active"].inc()

    def record_session_end(self, duration_seconds: float, peak_subscribers: int) -> None:
        """Record session end with statistics.

        Args:
            duration_seconds: Total session duration
            peak_subscribers: Peak concurrent subscriber count
        """
        with self._lock:
            self._gauges["sessions_active"].dec()
            self._histograms["session_duration_seconds"].observe(duration_seconds)
            self._histograms["session_peak_subscribers"].observe(float(peak_subscribers))

    def record_subscriber_joined(self) -> None:
        with self._lock:
            self._gauges["subscribers_active"].inc()

    def record_subscriber_left(self, count: int = 1) -> None:
        with self._lock:
            self._gauges["subscribers_active"].dec(count)

    def record_reconnection(self) -> None:
        with self._lock:
            self._counters["broadcaster_reconnections_total"].inc()

    def record_connection_opened(self) -> None:
        with self._lock:
            self._gauges["connections_active"].inc()

    def record_connection_closed(self) -> None:
        with self._lock:
            self._gauges["connections_active"].dec()

    # === Quality metrics ===

    def record_quality_sample(self, latency_seconds: float, poor: bool) -> None:
        """Record a connection quality ping.

        Args:
            latency_seconds: Ping round-trip latency
            poor: Whether the sample was classified as poor
        """
        with self._lock:
            self._histograms["ping_latency_seconds"].observe(latency_seconds)
            if poor:
                self._counters["poor_quality_samples_total"].inc()

    # === Export ===

    def export_prometheus(self) -> str:
        """Render every metric in Prometheus text exposition format.

        Returns:
            Metrics in Prometheus text format for scraping
        """
        with self._lock:
            lines: list[str] = []

            for counter in self._counters.values():
                lines.append(f"# HELP {counter.name} {counter.help}")
                lines.append(f"# TYPE {counter.name} counter")
                lines.append(f"{counter.name}{self._format_labels(counter.labels)} {counter.value}")

            for gauge in self._gauges.values():
                lines.append(f"# HELP {gauge.name} {gauge.help}")
                lines.append(f"# TYPE {gauge.name} gauge")
                lines.append(f"{gauge.name}{self._format_labels(gauge.labels)} {gauge.value}")

            for histogram in self._histograms.values():
                lines.append(f"# HELP {histogram.name} {histogram.help}")
                lines.append(f"# TYPE {histogram.name} histogram")

                labels_str = self._format_labels(histogram.labels)
                for bucket in histogram.buckets:
                    le = "+Inf" if bucket.le == float("inf") else str(bucket.le)
                    bucket_labels_str = self._format_labels({**histogram.labels, "le": le})
                    lines.append(f"{histogram.name}_bucket{bucket_labels_str} {bucket.count}")

                lines.append(f"{histogram.name}_sum{labels_str} {histogram.sum}")
                lines.append(f"{histogram.name}_count{labels_str} {histogram.count}")

            return "\n".join(lines) + "\n"

    def _format_labels(self, labels: dict[str, str]) -> str:
        if not labels:
            return ""

        label_pairs = [f'{k}="{v}"' for k, v in sorted(labels.items())]
        return "{" + ",".join(label_pairs) + "}"

    # === Summary statistics ===

    def get_summary(self) -> dict[str, float | None]:
        """Key counters and percentiles for /metrics/summary.

        Returns:
            Dictionary with key metrics and percentiles
        """
        with self._lock:
            processing = self._histograms["chunk_processing_seconds"]
            pings = self._histograms["ping_latency_seconds"]

            p50 = processing.quantile(0.50)
            p95 = processing.quantile(0.95)
            p99 = processing.quantile(0.99)
            ping_p95 = pings.quantile(0.95)

            translation_lookups = (
                self._counters["translation_cache_hits_total"].value
                + self._counters["translation_cache_misses_total"].value
            )
            synthesis_lookups = (
                self._counters["synthesis_cache_hits_total"].value
                + self._counters["synthesis_cache_misses_total"].value
            )

            return {
                # Pipeline
                "chunks_received": self._counters["chunks_received_total"].value,
                "chunks_processed": self._counters["chunks_processed_total"].value,
                "chunks_dropped": self._counters["chunks_dropped_total"].value,
                "chunks_in_flight": self._gauges["chunks_in_flight"].value,
                "decode_errors": self._counters["decode_errors_total"].value,
                "transcription_errors": self._counters["transcription_errors_total"].value,
                "translation_errors": self._counters["translation_errors_total"].value,
                "synthesis_errors": self._counters["synthesis_errors_total"].value,
                "processing_p50_ms": p50 * 1000 if p50 is not None else None,
                "processing_p95_ms": p95 * 1000 if p95 is not None else None,
                "processing_p99_ms": p99 * 1000 if p99 is not None else None,
                # Cache
                "translation_cache_hit_rate": (
                    self._counters["translation_cache_hits_total"].value / translation_lookups
                    if translation_lookups
                    else None
                ),
                "synthesis_cache_hit_rate": (
                    self._counters["synthesis_cache_hits_total"].value / synthesis_lookups
                    if synthesis_lookups
                    else None
                ),
                # Delivery
                "broadcasts": self._counters["broadcasts_total"].value,
                "personal_deliveries": self._counters["personal_deliveries_total"].value,
                "outbound_events_dropped": self._counters["outbound_events_dropped_total"].value,
                # Sessions
                "sessions_active": self._gauges["sessions_active"].value,
                "subscribers_active": self._gauges["subscribers_active"].value,
                "connections_active": self._gauges["connections_active"].value,
                # Quality
                "ping_latency_p95_ms": ping_p95 * 1000 if ping_p95 is not None else None,
                "poor_quality_samples": self._counters["poor_quality_samples_total"].value,
            }


# Global metrics collector singleton
_metrics_collector: MetricsCollector | None = None
_collector_lock = threading.Lock()


def get_metrics_collector() -> MetricsCollector:
    """Return the process-wide collector, creating it on first use.

    Returns:
        Global MetricsCollector instance

    Thread-safety: Safe for concurrent access.
    """
    global _metrics_collector

    if _metrics_collector is None:
        with _collector_lock:
            if _metrics_collector is None:
                _metrics_collector = MetricsCollector()

    return _metrics_collector
