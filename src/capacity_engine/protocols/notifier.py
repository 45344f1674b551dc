# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Protocol for delivering waitlist messages to users."""

from datetime import datetime
from typing import Protocol, runtime_checkable


@runtime_checkable
class NotifierProtocol(Protocol):
    """
    Outbound user messaging.

    Calls are made outside every lock and bounded by
    ``EngineConfig.notifier_timeout``. Failures are logged and counted but
    never undo the transition that triggered them.
    """

    async def notify(
        self, user_id: str, event_id: str, hold_id: str, expires_at: datetime
    ) -> None:
        """Tell a promoted user that a slot is held for them until ``expires_at``."""
        ...

    async def notify_joined(self, user_id: str, event_id: str, position: int) -> None:
        """Confirm to a user that they joined the waitlist at ``position``."""
        ...
