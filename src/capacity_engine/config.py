# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Engine Configuration for the Capacity Engine

This module provides the configuration dataclass shared by the capacity
ledger, hold manager, waitlist queue and promotion coordinator.
"""

from dataclasses import dataclass, field
from enum import Enum


class AlertLevel(Enum):
    """Utilization alert levels reported by capacity status queries."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class AlertThresholds:
    """Utilization percentages at which each alert level starts."""

    low: float = 80.0
    medium: float = 90.0
    high: float = 95.0

    def __post_init__(self) -> None:
        if not 0 <= self.low <= self.medium <= self.high <= 100:
            raise ValueError("alert thresholds must satisfy 0 <= low <= medium <= high <= 100")

    def level_for(self, utilization: float) -> AlertLevel | None:
        """Return the alert level for a utilization percentage, if any."""
        if utilization >= self.high:
            return AlertLevel.HIGH
        if utilization >= self.medium:
            return AlertLevel.MEDIUM
        if utilization >= self.low:
            return AlertLevel.LOW
        return None


@dataclass
class EngineConfig:
    """
    Configuration for the reservation engine.

    All durations are expressed in seconds.
    """

    # === Holds ===

    hold_ttl: float = 900.0
    """Default lifetime of a checkout hold (15 minutes)."""

    hold_grace_period: float = 60.0
    """Extra lifetime given to holds created for waitlist offers.

    The confirmation window timer fires first and releases the hold in order;
    the hold's own expiry only acts as a safety net.
    """

    settled_ticket_history: int = 1000
    """Settled tickets remembered per ledger for idempotent confirm/release."""

    # === Waitlist ===

    confirm_window: float = 86400.0
    """How long a promoted waitlist entry has to claim its offer (24 hours)."""

    # === Conflict Handling ===

    max_conflict_retries: int = 3
    """Attempts made when a compare-and-set loses the race."""

    retry_base_delay: float = 0.01
    """Base delay for exponential backoff between conflict retries."""

    retry_max_delay: float = 0.5
    """Maximum delay between conflict retries."""

    # === Side Effects ===

    notifier_timeout: float = 5.0
    """Upper bound on a single notifier call before it is abandoned."""

    # === Reporting ===

    alert_thresholds: AlertThresholds = field(default_factory=AlertThresholds)
    """Utilization thresholds reported by capacity status queries."""

    # === Metrics and Monitoring ===

    metrics_enabled: bool = True
    """Enable metrics collection."""

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if self.hold_ttl <= 0:
            raise ValueError("hold_ttl must be positive")
        if self.confirm_window <= 0:
            raise ValueError("confirm_window must be positive")
        if self.hold_grace_period < 0:
            raise ValueError("hold_grace_period must be non-negative")
        if self.settled_ticket_history < 1:
            raise ValueError("settled_ticket_history must be at least 1")
        if self.max_conflict_retries < 1:
            raise ValueError("max_conflict_retries must be at least 1")
        if self.retry_base_delay < 0 or self.retry_max_delay < self.retry_base_delay:
            raise ValueError("retry delays must satisfy 0 <= base <= max")
        if self.notifier_timeout <= 0:
            raise ValueError("notifier_timeout must be positive")


__all__ = [
    "AlertLevel",
    "AlertThresholds",
    "EngineConfig",
]
