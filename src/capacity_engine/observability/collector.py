# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Unified metrics collector mirroring dict-based metrics into Prometheus.

This module provides the UnifiedMetricsCollector class that serves as the
single source of truth for all metrics in the capacity engine.

Features:
    1. Thread-safe counter/gauge/histogram operations
    2. Prometheus metric registration (default or injected registry)
    3. Dict-based snapshot for JSON export and assertions
    4. Label cardinality protection (max 1000 unique combinations per metric)
    5. Optional HTTP server for Prometheus scraping

Usage:
    >>> from capacity_engine.observability.collector import get_metrics_collector
    >>> collector = get_metrics_collector()
    >>> collector.inc_counter('capacity_engine_holds_created_total',
    ...                       labels={'tier': 'vip'})
    >>> metrics = collector.get_metrics()
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, ClassVar

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from .constants import (
    AUDIT_FAILURES_TOTAL,
    AVAILABLE_SLOTS,
    BACKEND_CONNECTION_ERRORS_TOTAL,
    BACKEND_LUA_EXECUTIONS_TOTAL,
    CASCADE_BUCKETS,
    CASCADE_LENGTH,
    HOLDS_CONFIRMED_TOTAL,
    HOLDS_CREATED_TOTAL,
    HOLDS_EXPIRED_TOTAL,
    HOLDS_REJECTED_TOTAL,
    HOLDS_RELEASED_TOTAL,
    NOTIFIER_FAILURES_TOTAL,
    VERSION_CONFLICTS_TOTAL,
    WAITLIST_CANCELLED_TOTAL,
    WAITLIST_CONFIRMED_TOTAL,
    WAITLIST_DEPTH,
    WAITLIST_EXPIRED_TOTAL,
    WAITLIST_JOINED_TOTAL,
    WAITLIST_PROMOTED_TOTAL,
)

logger = logging.getLogger(__name__)


@dataclass
class MetricDefinition:
    """
    Definition for a metric that can be instantiated.

    This dataclass defines the schema for metrics, including their type,
    description, labels, and histogram buckets.
    """

    name: str
    metric_type: str  # 'counter', 'gauge', 'histogram'
    description: str
    label_names: tuple[str, ...] = ()
    buckets: list[float] | None = None


# Pre-defined metrics for the library
METRIC_DEFINITIONS: dict[str, MetricDefinition] = {
    # === Hold Counters ===
    HOLDS_CREATED_TOTAL: MetricDefinition(
        HOLDS_CREATED_TOTAL, "counter", "Total holds granted", ("tier",)
    ),
    HOLDS_REJECTED_TOTAL: MetricDefinition(
        HOLDS_REJECTED_TOTAL,
        "counter",
        "Total hold requests rejected for insufficient capacity",
        ("tier",),
    ),
    HOLDS_CONFIRMED_TOTAL: MetricDefinition(
        HOLDS_CONFIRMED_TOTAL, "counter", "Total holds confirmed", ("tier",)
    ),
    HOLDS_RELEASED_TOTAL: MetricDefinition(
        HOLDS_RELEASED_TOTAL,
        "counter",
        "Total holds released explicitly",
        ("tier", "reason"),
    ),
    HOLDS_EXPIRED_TOTAL: MetricDefinition(
        HOLDS_EXPIRED_TOTAL, "counter", "Total holds expired", ("tier",)
    ),
    # === Waitlist Counters ===
    WAITLIST_JOINED_TOTAL: MetricDefinition(
        WAITLIST_JOINED_TOTAL, "counter", "Total waitlist joins", ("tier",)
    ),
    WAITLIST_PROMOTED_TOTAL: MetricDefinition(
        WAITLIST_PROMOTED_TOTAL, "counter", "Total waitlist promotions", ("tier",)
    ),
    WAITLIST_CONFIRMED_TOTAL: MetricDefinition(
        WAITLIST_CONFIRMED_TOTAL,
        "counter",
        "Total promoted entries confirmed",
        ("tier",),
    ),
    WAITLIST_EXPIRED_TOTAL: MetricDefinition(
        WAITLIST_EXPIRED_TOTAL,
        "counter",
        "Total promoted entries expired",
        ("tier",),
    ),
    WAITLIST_CANCELLED_TOTAL: MetricDefinition(
        WAITLIST_CANCELLED_TOTAL,
        "counter",
        "Total waitlist entries cancelled",
        ("tier",),
    ),
    CASCADE_LENGTH: MetricDefinition(
        CASCADE_LENGTH,
        "histogram",
        "Entries promoted per cascade",
        ("tier",),
        buckets=CASCADE_BUCKETS,
    ),
    # === Collaborator Counters ===
    NOTIFIER_FAILURES_TOTAL: MetricDefinition(
        NOTIFIER_FAILURES_TOTAL,
        "counter",
        "Total notifier failures",
        ("reason",),
    ),
    AUDIT_FAILURES_TOTAL: MetricDefinition(
        AUDIT_FAILURES_TOTAL, "counter", "Total audit recorder failures", ()
    ),
    # === Gauges ===
    AVAILABLE_SLOTS: MetricDefinition(
        AVAILABLE_SLOTS,
        "gauge",
        "Sellable slots per ledger",
        ("event_id", "tier"),
    ),
    WAITLIST_DEPTH: MetricDefinition(
        WAITLIST_DEPTH,
        "gauge",
        "Queued waitlist entries",
        ("event_id", "tier"),
    ),
    # === Storage ===
    VERSION_CONFLICTS_TOTAL: MetricDefinition(
        VERSION_CONFLICTS_TOTAL,
        "counter",
        "Total version conflicts",
        ("operation",),
    ),
    BACKEND_LUA_EXECUTIONS_TOTAL: MetricDefinition(
        BACKEND_LUA_EXECUTIONS_TOTAL,
        "counter",
        "Total Lua script executions",
        ("script_name",),
    ),
    BACKEND_CONNECTION_ERRORS_TOTAL: MetricDefinition(
        BACKEND_CONNECTION_ERRORS_TOTAL,
        "counter",
        "Total backend connection errors",
        ("error_type",),
    ),
}


class UnifiedMetricsCollector:
    """
    Unified metrics collector supporting both dict-based and Prometheus metrics.

    Thread Safety:
        All operations use RLock for thread-safe access. The lock is reentrant
        to allow nested calls from callbacks.

    Cardinality Protection:
        To prevent unbounded memory growth, a maximum of MAX_LABEL_COMBINATIONS
        unique label combinations are tracked per metric.

    Example:
        >>> collector = UnifiedMetricsCollector(registry=CollectorRegistry())
        >>> collector.inc_counter('capacity_engine_holds_created_total',
        ...                       labels={'tier': 'default'})
        >>> collector.get_counter('capacity_engine_holds_created_total',
        ...                       labels={'tier': 'default'})
        1
    """

    MAX_LABEL_COMBINATIONS: ClassVar[int] = 1000

    def __init__(
        self,
        enable_prometheus: bool = True,
        registry: CollectorRegistry | None = None,
    ) -> None:
        """
        Initialize the metrics collector.

        Args:
            enable_prometheus: Whether to mirror metrics into Prometheus
            registry: Optional Prometheus CollectorRegistry for testing
        """
        self._enable_prometheus = enable_prometheus
        self._registry = registry if registry is not None else REGISTRY

        self._counters: dict[str, dict[str, int]] = defaultdict(
            lambda: defaultdict(int)
        )
        self._gauges: dict[str, dict[str, float]] = defaultdict(
            lambda: defaultdict(float)
        )
        self._histograms: dict[str, dict[str, list[float]]] = defaultdict(
            lambda: defaultdict(list)
        )

        self._lock = threading.RLock()

        # Prometheus metric instances (lazy initialized)
        self._prom_metrics: dict[str, Any] = {}

        self._label_combinations: dict[str, set[str]] = defaultdict(set)
        self._server_running = False

        logger.debug(
            f"UnifiedMetricsCollector initialized "
            f"(prometheus={'enabled' if self._enable_prometheus else 'disabled'})"
        )

    def _labels_to_key(self, labels: dict[str, str] | None) -> str:
        """Convert labels dict to a stable string key."""
        if not labels:
            return ""
        return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))

    def _check_cardinality(self, name: str, label_key: str) -> bool:
        """
        Check if adding this label combination would exceed cardinality limit.

        Returns:
            True if the label combination is allowed, False otherwise
        """
        if label_key in self._label_combinations[name]:
            return True
        if len(self._label_combinations[name]) >= self.MAX_LABEL_COMBINATIONS:
            logger.warning(
                f"Cardinality limit ({self.MAX_LABEL_COMBINATIONS}) reached "
                f"for metric {name}. Dropping label combination: {label_key}"
            )
            return False
        self._label_combinations[name].add(label_key)
        return True

    def _get_or_create_prom_metric(
        self, name: str, metric_type: str, labels: dict[str, str] | None
    ) -> Any | None:
        """Get or create the Prometheus metric backing ``name``."""
        if not self._enable_prometheus:
            return None

        with self._lock:
            if name in self._prom_metrics:
                return self._prom_metrics[name]

            defn = METRIC_DEFINITIONS.get(name)
            if defn is None or defn.metric_type != metric_type:
                # Dynamic metric (not pre-defined)
                defn = MetricDefinition(
                    name,
                    metric_type,
                    f"Dynamic {metric_type}: {name}",
                    tuple(sorted(labels)) if labels else (),
                )

            try:
                if metric_type == "counter":
                    metric: Any = Counter(
                        name,
                        defn.description,
                        list(defn.label_names),
                        registry=self._registry,
                    )
                elif metric_type == "gauge":
                    metric = Gauge(
                        name,
                        defn.description,
                        list(defn.label_names),
                        registry=self._registry,
                    )
                else:
                    metric = Histogram(
                        name,
                        defn.description,
                        list(defn.label_names),
                        buckets=defn.buckets or CASCADE_BUCKETS,
                        registry=self._registry,
                    )
            except ValueError as e:
                # Duplicated timeseries in a shared registry
                logger.warning(f"Failed to create Prometheus {metric_type} {name}: {e}")
                return None

            self._prom_metrics[name] = metric
            return metric

    def _mirror(
        self,
        name: str,
        metric_type: str,
        method: str,
        value: float,
        labels: dict[str, str] | None,
    ) -> None:
        metric = self._get_or_create_prom_metric(name, metric_type, labels)
        if metric is None:
            return
        try:
            target = metric.labels(**labels) if labels else metric
            getattr(target, method)(value)
        except ValueError as e:
            logger.debug(f"Prometheus {metric_type} update failed for {name}: {e}")

    # === Counter Operations ===

    def inc_counter(
        self,
        name: str,
        value: int = 1,
        labels: dict[str, str] | None = None,
    ) -> None:
        """
        Increment a counter metric.

        Args:
            name: Metric name (should follow Prometheus naming convention)
            value: Value to increment by (must be positive)
            labels: Optional labels dict

        Raises:
            ValueError: If value is negative
        """
        if value < 0:
            raise ValueError("Counter increment must be non-negative")

        label_key = self._labels_to_key(labels)

        with self._lock:
            if not self._check_cardinality(name, label_key):
                return
            self._counters[name][label_key] += value

        self._mirror(name, "counter", "inc", value, labels)

    # === Gauge Operations ===

    def set_gauge(
        self,
        name: str,
        value: float,
        labels: dict[str, str] | None = None,
    ) -> None:
        """Set a gauge metric to a specific value."""
        label_key = self._labels_to_key(labels)

        with self._lock:
            if not self._check_cardinality(name, label_key):
                return
            self._gauges[name][label_key] = value

        self._mirror(name, "gauge", "set", value, labels)

    # === Histogram Operations ===

    def observe_histogram(
        self,
        name: str,
        value: float,
        labels: dict[str, str] | None = None,
    ) -> None:
        """Record an observation in a histogram."""
        label_key = self._labels_to_key(labels)

        with self._lock:
            if not self._check_cardinality(name, label_key):
                return
            self._histograms[name][label_key].append(value)
            # Keep only recent observations to prevent memory growth
            if len(self._histograms[name][label_key]) > 10000:
                self._histograms[name][label_key] = self._histograms[name][label_key][
                    -5000:
                ]

        self._mirror(name, "histogram", "observe", value, labels)

    # === Snapshot Operations ===

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        """Current value of one counter series, 0 if never incremented."""
        with self._lock:
            return self._counters.get(name, {}).get(self._labels_to_key(labels), 0)

    def get_gauge(
        self, name: str, labels: dict[str, str] | None = None
    ) -> float | None:
        """Current value of one gauge series, None if never set."""
        with self._lock:
            return self._gauges.get(name, {}).get(self._labels_to_key(labels))

    def get_metrics(self) -> dict[str, Any]:
        """
        Get a snapshot of all metrics.

        Returns a dict suitable for JSON serialization with structure:
        {
            "counters": {"metric_name": {"label_key": value, ...}, ...},
            "gauges": {"metric_name": {"label_key": value, ...}, ...},
            "histograms": {"metric_name": {"label_key": {...}, ...}, ...}
        }
        """
        with self._lock:
            counters = {
                name: dict(label_values)
                for name, label_values in self._counters.items()
            }
            gauges = {
                name: dict(label_values) for name, label_values in self._gauges.items()
            }

            histograms: dict[str, dict[str, dict[str, Any]]] = {}
            for name, label_values in self._histograms.items():
                histograms[name] = {}
                for label_key, observations in label_values.items():
                    if observations:
                        histograms[name][label_key] = {
                            "count": len(observations),
                            "sum": sum(observations),
                            "avg": sum(observations) / len(observations),
                            "min": min(observations),
                            "max": max(observations),
                        }

        return {
            "counters": counters,
            "gauges": gauges,
            "histograms": histograms,
        }

    # === Lifecycle ===

    def reset(self) -> None:
        """Reset all dict-based metrics to zero."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._label_combinations.clear()

        logger.debug("Metrics collector reset")

    # === Prometheus HTTP Server ===

    def start_http_server(self, host: str = "127.0.0.1", port: int = 9090) -> bool:
        """
        Start the Prometheus HTTP server for metrics scraping.

        Args:
            host: Host to bind to (default: 127.0.0.1 for localhost only).
            port: Port to bind to

        Returns:
            True if server started successfully, False otherwise
        """
        if self._server_running:
            logger.warning("Prometheus server already running")
            return True

        try:
            start_http_server(port, addr=host, registry=self._registry)
        except OSError as e:
            logger.error(f"Failed to start Prometheus server: {e}")
            return False

        self._server_running = True
        logger.info(f"Prometheus metrics server started on {host}:{port}")
        return True

    @property
    def prometheus_enabled(self) -> bool:
        return self._enable_prometheus

    @property
    def server_running(self) -> bool:
        return self._server_running


# =============================================================================
# Singleton Pattern
# =============================================================================

_global_collector: UnifiedMetricsCollector | None = None
_collector_lock = threading.Lock()


def get_metrics_collector(
    enable_prometheus: bool = True,
) -> UnifiedMetricsCollector:
    """
    Get or create the global metrics collector singleton.

    Args:
        enable_prometheus: Whether to enable Prometheus metrics
            (only used on first call)

    Returns:
        The UnifiedMetricsCollector singleton
    """
    global _global_collector

    if _global_collector is None:
        with _collector_lock:
            if _global_collector is None:
                _global_collector = UnifiedMetricsCollector(
                    enable_prometheus=enable_prometheus
                )

    return _global_collector


def reset_metrics_collector() -> None:
    """
    Reset the global metrics collector singleton (mainly for testing).

    Prometheus series already registered in the default registry are kept,
    so a new singleton logs a warning and only tracks dict-based values.
    """
    global _global_collector
    with _collector_lock:
        if _global_collector:
            _global_collector.reset()
        _global_collector = None


__all__ = [
    "METRIC_DEFINITIONS",
    "MetricDefinition",
    "UnifiedMetricsCollector",
    "get_metrics_collector",
    "reset_metrics_collector",
]
