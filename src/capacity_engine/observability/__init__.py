# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Observability and metrics for the capacity engine.

Classes:
    UnifiedMetricsCollector: Unified metrics collector supporting dict and Prometheus.
    MetricDefinition: Schema of a pre-defined metric.

Functions:
    get_metrics_collector: Get the global metrics collector singleton.
    reset_metrics_collector: Reset the global metrics collector singleton.

Constants:
    All metric name constants from constants module.
"""

from .collector import (
    METRIC_DEFINITIONS,
    MetricDefinition,
    UnifiedMetricsCollector,
    get_metrics_collector,
    reset_metrics_collector,
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
    METRIC_PREFIX,
    NOTIFIER_FAILURES_TOTAL,
    VERSION_CONFLICTS_TOTAL,
    WAITLIST_CANCELLED_TOTAL,
    WAITLIST_CONFIRMED_TOTAL,
    WAITLIST_DEPTH,
    WAITLIST_EXPIRED_TOTAL,
    WAITLIST_JOINED_TOTAL,
    WAITLIST_PROMOTED_TOTAL,
)

__all__ = [
    "AUDIT_FAILURES_TOTAL",
    "AVAILABLE_SLOTS",
    "BACKEND_CONNECTION_ERRORS_TOTAL",
    "BACKEND_LUA_EXECUTIONS_TOTAL",
    "CASCADE_BUCKETS",
    "CASCADE_LENGTH",
    "HOLDS_CONFIRMED_TOTAL",
    "HOLDS_CREATED_TOTAL",
    "HOLDS_EXPIRED_TOTAL",
    "HOLDS_REJECTED_TOTAL",
    "HOLDS_RELEASED_TOTAL",
    "METRIC_DEFINITIONS",
    "METRIC_PREFIX",
    "NOTIFIER_FAILURES_TOTAL",
    "VERSION_CONFLICTS_TOTAL",
    "WAITLIST_CANCELLED_TOTAL",
    "WAITLIST_CONFIRMED_TOTAL",
    "WAITLIST_DEPTH",
    "WAITLIST_EXPIRED_TOTAL",
    "WAITLIST_JOINED_TOTAL",
    "WAITLIST_PROMOTED_TOTAL",
    # Unified collector
    "MetricDefinition",
    "UnifiedMetricsCollector",
    "get_metrics_collector",
    "reset_metrics_collector",
]
