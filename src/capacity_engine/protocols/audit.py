# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Protocol for audit trail sinks."""

from typing import Protocol, runtime_checkable

from ..types.audit import AuditRecord


@runtime_checkable
class AuditRecorderProtocol(Protocol):
    """Receives one record per state transition, after the change is stored."""

    async def record(self, record: AuditRecord) -> None: ...
