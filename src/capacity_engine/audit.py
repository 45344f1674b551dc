# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Audit recorders and the fault-isolating dispatch used by every component.

Records are dispatched only after the transition they describe has been
stored and every lock released. A failing recorder is logged and counted,
never raised: losing an audit line must not undo a reservation.
"""

import logging
from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel

from .observability.collector import UnifiedMetricsCollector
from .observability.constants import AUDIT_FAILURES_TOTAL
from .protocols.audit import AuditRecorderProtocol
from .types.audit import AuditRecord

# Also the audit trail logger: __name__ is "capacity_engine.audit"
logger = logging.getLogger(__name__)


def snapshot(record: BaseModel | None) -> dict[str, Any] | None:
    """JSON-friendly copy of a stored record for before/after fields."""
    return record.model_dump(mode="json") if record is not None else None


class LoggingAuditRecorder:
    """Writes each record to the ``capacity_engine.audit`` logger at INFO."""

    def __init__(self, log: logging.Logger | None = None):
        self._log = log or logger

    async def record(self, record: AuditRecord) -> None:
        self._log.info(
            f"{record.action.value} {record.entity_type}={record.entity_id} "
            f"event={record.event_id} tier={record.tier} actor={record.actor}",
            extra={"audit": record.to_dict()},
        )


class MemoryAuditRecorder:
    """Keeps records in a list; handy for tests and single-process tooling."""

    def __init__(self) -> None:
        self.records: list[AuditRecord] = []

    async def record(self, record: AuditRecord) -> None:
        self.records.append(record)

    def actions(self) -> list[str]:
        return [r.action.value for r in self.records]


async def dispatch_audit(
    recorder: AuditRecorderProtocol | None,
    records: Iterable[AuditRecord],
    metrics: UnifiedMetricsCollector | None = None,
) -> None:
    """Hand records to the recorder, swallowing and logging its faults."""
    if recorder is None:
        return
    for record in records:
        try:
            await recorder.record(record)
        except Exception:
            logger.exception(
                f"Audit recorder failed for {record.action.value} "
                f"{record.entity_type}={record.entity_id}"
            )
            if metrics is not None:
                metrics.inc_counter(AUDIT_FAILURES_TOTAL)


__all__ = [
    "LoggingAuditRecorder",
    "MemoryAuditRecorder",
    "dispatch_audit",
    "snapshot",
]
