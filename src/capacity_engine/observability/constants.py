# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Metric name constants following Prometheus naming conventions.

All metric names use the `capacity_engine_` prefix.

Naming Conventions:
    - Counter metrics end with `_total`
    - Histogram metrics for time end with `_seconds`
    - Gauges use present-tense descriptive names

Label Best Practices:
    To prevent label cardinality explosion, use only:
    - `tier` - Access tier (categorical: default, vip, *)
    - `event_id` - Event identifier, gauges only
    - `reason` - Release or failure reason (enum)

    NEVER use:
    - `user_id` - Unique per user (unbounded!)
    - `hold_id` / `entry_id` - Unique per record (unbounded!)

Usage:
    >>> from capacity_engine.observability.constants import HOLDS_CREATED_TOTAL
    >>> print(HOLDS_CREATED_TOTAL)
    'capacity_engine_holds_created_total'
"""


# =============================================================================
# Global Prefix
# =============================================================================

METRIC_PREFIX = "capacity_engine"
"""Prefix for all Prometheus metrics in this library."""


# =============================================================================
# Hold Metrics (holds/manager.py)
# =============================================================================

HOLDS_CREATED_TOTAL = f"{METRIC_PREFIX}_holds_created_total"
"""Total holds granted."""

HOLDS_REJECTED_TOTAL = f"{METRIC_PREFIX}_holds_rejected_total"
"""Total hold requests rejected for insufficient capacity."""

HOLDS_CONFIRMED_TOTAL = f"{METRIC_PREFIX}_holds_confirmed_total"
"""Total holds converted into confirmed allocations."""

HOLDS_RELEASED_TOTAL = f"{METRIC_PREFIX}_holds_released_total"
"""Total holds released explicitly."""

HOLDS_EXPIRED_TOTAL = f"{METRIC_PREFIX}_holds_expired_total"
"""Total holds expired by timer or sweep."""


# =============================================================================
# Waitlist Metrics (waitlist/queue.py, promotion/coordinator.py)
# =============================================================================

WAITLIST_JOINED_TOTAL = f"{METRIC_PREFIX}_waitlist_joined_total"
"""Total waitlist joins."""

WAITLIST_PROMOTED_TOTAL = f"{METRIC_PREFIX}_waitlist_promoted_total"
"""Total waitlist entries offered a held slot."""

WAITLIST_CONFIRMED_TOTAL = f"{METRIC_PREFIX}_waitlist_confirmed_total"
"""Total promoted entries that claimed their slot."""

WAITLIST_EXPIRED_TOTAL = f"{METRIC_PREFIX}_waitlist_expired_total"
"""Total promoted entries whose confirmation window elapsed."""

WAITLIST_CANCELLED_TOTAL = f"{METRIC_PREFIX}_waitlist_cancelled_total"
"""Total entries that left or declined."""

CASCADE_LENGTH = f"{METRIC_PREFIX}_cascade_length"
"""Entries promoted per capacity-released cascade (histogram)."""


# =============================================================================
# Collaborator Metrics
# =============================================================================

NOTIFIER_FAILURES_TOTAL = f"{METRIC_PREFIX}_notifier_failures_total"
"""Total notifier calls that raised or timed out."""

AUDIT_FAILURES_TOTAL = f"{METRIC_PREFIX}_audit_failures_total"
"""Total audit recorder calls that raised."""


# =============================================================================
# Active State Gauges (real-time operational state)
# =============================================================================

AVAILABLE_SLOTS = f"{METRIC_PREFIX}_available_slots"
"""Sellable slots per ledger after the last mutation."""

WAITLIST_DEPTH = f"{METRIC_PREFIX}_waitlist_depth"
"""ACTIVE plus NOTIFIED entries per queue after the last mutation."""


# =============================================================================
# Storage Metrics (backends, retry.py)
# =============================================================================

VERSION_CONFLICTS_TOTAL = f"{METRIC_PREFIX}_version_conflicts_total"
"""Total compare-and-set conflicts and lock timeouts that were retried."""

BACKEND_LUA_EXECUTIONS_TOTAL = f"{METRIC_PREFIX}_backend_lua_executions_total"
"""Total Lua script executions (Redis backend)."""

BACKEND_CONNECTION_ERRORS_TOTAL = f"{METRIC_PREFIX}_backend_connection_errors_total"
"""Total backend connection errors."""


# =============================================================================
# Histogram Buckets
# =============================================================================

CASCADE_BUCKETS: list[float] = [0.0, 1.0, 2.0, 3.0, 5.0, 10.0, 25.0, 50.0, 100.0]
"""Buckets for the number of entries promoted by one cascade."""


__all__ = [
    "AUDIT_FAILURES_TOTAL",
    # Gauges
    "AVAILABLE_SLOTS",
    "BACKEND_CONNECTION_ERRORS_TOTAL",
    # Storage
    "BACKEND_LUA_EXECUTIONS_TOTAL",
    # Buckets
    "CASCADE_BUCKETS",
    "CASCADE_LENGTH",
    # Holds
    "HOLDS_CONFIRMED_TOTAL",
    "HOLDS_CREATED_TOTAL",
    "HOLDS_EXPIRED_TOTAL",
    "HOLDS_REJECTED_TOTAL",
    "HOLDS_RELEASED_TOTAL",
    # Prefix
    "METRIC_PREFIX",
    # Collaborators
    "NOTIFIER_FAILURES_TOTAL",
    "VERSION_CONFLICTS_TOTAL",
    "WAITLIST_CANCELLED_TOTAL",
    "WAITLIST_CONFIRMED_TOTAL",
    "WAITLIST_DEPTH",
    "WAITLIST_EXPIRED_TOTAL",
    # Waitlist
    "WAITLIST_JOINED_TOTAL",
    "WAITLIST_PROMOTED_TOTAL",
]
