"""
Prometheus metrics exporter for changes followers.

Exports low-cardinality metrics only: no db name, document id or sequence
labels.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge
from prometheus_client.registry import CollectorRegistry

from changefeed.follower.controller import FollowerState

if TYPE_CHECKING:
    from changefeed.follower.controller import FollowerMetrics

# Labels that would cause cardinality explosion
FORBIDDEN_LABELS = frozenset(
    {
        "db",
        "doc_id",
        "id",
        "seq",
        "since",
        "rev",
        "endpoint",
        "path",
        "query",
        "ip",
    }
)

_STATE_VALUES: dict[FollowerState, int] = {
    FollowerState.IDLE: 0,
    FollowerState.RUNNING: 1,
    FollowerState.STOPPED: 2,
    FollowerState.ERRORED: 3,
}


class FollowerMetricsExporter:
    """
    Syncs FollowerMetrics into a Prometheus registry.

    Usage:
        registry = CollectorRegistry()
        exporter = FollowerMetricsExporter(registry=registry)
        exporter.update(follower.metrics)
        # generate_latest(registry) -> bytes for /metrics endpoint
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry()

        self._batches_fetched = Counter(
            "changefeed_batches_fetched",
            "Total pages fetched successfully",
            registry=self._registry,
        )
        self._changes_emitted = Counter(
            "changefeed_changes_emitted",
            "Total change records delivered and acknowledged",
            registry=self._registry,
        )
        self._transient_errors = Counter(
            "changefeed_transient_errors",
            "Total failed fetches classified as transient",
            registry=self._registry,
        )
        self._retries = Counter(
            "changefeed_retries",
            "Total backoff waits scheduled",
            registry=self._registry,
        )
        self._terminal_errors = Counter(
            "changefeed_terminal_errors",
            "Total runs that ended in ERRORED",
            registry=self._registry,
        )
        self._pending = Gauge(
            "changefeed_pending",
            "Last server-reported estimate of unread changes",
            registry=self._registry,
        )
        self._state = Gauge(
            "changefeed_state",
            "Follower state (0=IDLE, 1=RUNNING, 2=STOPPED, 3=ERRORED)",
            registry=self._registry,
        )

        # Last seen values: counters are monotonic, increment by delta
        self._last: dict[str, int] = {}

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def _inc(self, counter: Counter, key: str, current: int) -> None:
        delta = current - self._last.get(key, 0)
        if delta > 0:
            counter.inc(delta)
        self._last[key] = current

    def update(self, metrics: FollowerMetrics) -> None:
        """
        Update all metrics from a follower's counters.

        Call periodically (or on scrape).
        """
        self._inc(self._batches_fetched, "batches_fetched", metrics.batches_fetched)
        self._inc(self._changes_emitted, "changes_emitted", metrics.changes_emitted)
        self._inc(self._transient_errors, "transient_errors", metrics.transient_errors)
        self._inc(self._retries, "retries", metrics.retries)
        self._inc(self._terminal_errors, "terminal_errors", metrics.terminal_errors)

        self._pending.set(metrics.pending)
        self._state.set(_STATE_VALUES[metrics.state])


# Counters are exported with _total suffix by prometheus_client
REQUIRED_METRIC_NAMES: frozenset[str] = frozenset(
    {
        "changefeed_batches_fetched_total",
        "changefeed_changes_emitted_total",
        "changefeed_transient_errors_total",
        "changefeed_retries_total",
        "changefeed_terminal_errors_total",
        "changefeed_pending",
        "changefeed_state",
    }
)
