# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Exception classes for the capacity engine.

This module defines the exception hierarchy used throughout the library.
All exceptions inherit from CapacityEngineError, making it easy to catch
all engine-related exceptions with a single except clause. Every class
carries a stable ``code`` string that callers can map to user-facing
messages without matching on class names.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .types.waitlist import WaitlistEntry


class CapacityEngineError(Exception):
    """Base exception for all capacity engine errors.

    Example:
        try:
            await engine.checkout("evt-1", "vip", 2, holder_id="user-9")
        except CapacityEngineError as e:
            logger.error(f"Checkout failed ({e.code}): {e}")
    """

    code: str = "CAPACITY_ENGINE_ERROR"


class InsufficientCapacityError(CapacityEngineError):
    """Raised when a ledger cannot cover the requested quantity.

    This is a business condition, not a fault. The caller should offer the
    waitlist instead of retrying.

    Attributes:
        event_id: Event the reservation was attempted against.
        tier: Access tier of the ledger.
        requested: Quantity that was requested.
        available: Slots that were available at the time of the check.

    Example:
        try:
            hold = await engine.checkout("evt-1", "default", 1, holder_id=user_id)
        except InsufficientCapacityError:
            entry = await engine.join_waitlist("evt-1", "default", user_id)
    """

    code = "INSUFFICIENT_CAPACITY"

    def __init__(
        self,
        message: str,
        event_id: str | None = None,
        tier: str | None = None,
        requested: int | None = None,
        available: int | None = None,
    ):
        super().__init__(message)
        self.event_id = event_id
        self.tier = tier
        self.requested = requested
        self.available = available


class AlreadyQueuedError(CapacityEngineError):
    """Raised when a user already holds a live waitlist entry.

    The existing entry is attached so the caller can report the user's
    current position instead of failing opaquely.

    Attributes:
        existing_entry: The user's ACTIVE or NOTIFIED entry.
        position: Shortcut for ``existing_entry.position``.
    """

    code = "ALREADY_QUEUED"

    def __init__(self, existing_entry: WaitlistEntry):
        super().__init__(
            f"User {existing_entry.user_id} is already queued for "
            f"{existing_entry.event_id} at position {existing_entry.position}"
        )
        self.existing_entry = existing_entry
        self.position = existing_entry.position


class HoldNotFoundError(CapacityEngineError):
    """Raised when a hold or ticket is unknown or already settled.

    Under at-least-once delivery this is usually benign: the operation was
    already applied by an earlier attempt, or lost the race to an expiry.

    Attributes:
        hold_id: The hold or ticket identifier.
    """

    code = "HOLD_NOT_FOUND"

    def __init__(self, hold_id: str, message: str | None = None):
        super().__init__(message or f"Hold not found or no longer active: {hold_id}")
        self.hold_id = hold_id


class EntryNotFoundError(CapacityEngineError):
    """Raised when a waitlist entry does not exist.

    Attributes:
        entry_id: The waitlist entry identifier.
    """

    code = "ENTRY_NOT_FOUND"

    def __init__(self, entry_id: str):
        super().__init__(f"Waitlist entry not found: {entry_id}")
        self.entry_id = entry_id


class ForbiddenError(CapacityEngineError):
    """Raised when the acting user does not own the entry or hold.

    Attributes:
        resource_id: Identifier of the entry or hold.
        actor: The user that attempted the operation.
    """

    code = "FORBIDDEN"

    def __init__(self, resource_id: str, actor: str):
        super().__init__(f"User {actor} may not modify {resource_id}")
        self.resource_id = resource_id
        self.actor = actor


class ConcurrentModificationError(CapacityEngineError):
    """Raised when a compare-and-set lost the race or a lock was unavailable.

    Public operations retry this internally a bounded number of times. When
    it surfaces, the caller should retry the whole operation rather than
    assume failure.

    Attributes:
        key: The record or lock key that was contended.
    """

    code = "CONCURRENT_MODIFICATION"

    def __init__(self, message: str, key: str | None = None):
        super().__init__(message)
        self.key = key


class LedgerNotFoundError(CapacityEngineError):
    """Raised when capacity has not been configured for an event and tier.

    Attributes:
        event_id: The event identifier.
        tier: The access tier.
    """

    code = "CAPACITY_NOT_CONFIGURED"

    def __init__(self, event_id: str, tier: str):
        super().__init__(f"Capacity not configured for {event_id}/{tier}")
        self.event_id = event_id
        self.tier = tier


class WaitlistDisabledError(CapacityEngineError):
    """Raised when joining the waitlist of a ledger that has it disabled."""

    code = "WAITLIST_DISABLED"

    def __init__(self, event_id: str, tier: str):
        super().__init__(f"Waitlist is not enabled for {event_id}/{tier}")
        self.event_id = event_id
        self.tier = tier


class InvalidEntryStateError(CapacityEngineError):
    """Raised when a waitlist transition is attempted from the wrong status.

    Attributes:
        entry_id: The waitlist entry identifier.
        status: The status the entry was actually in.
    """

    code = "INVALID_WAITLIST_STATUS"

    def __init__(self, entry_id: str, status: str, expected: str):
        super().__init__(
            f"Waitlist entry {entry_id} is {status}, expected {expected}"
        )
        self.entry_id = entry_id
        self.status = status
        self.expected = expected


class ConfirmationExpiredError(CapacityEngineError):
    """Raised when a user tries to claim an offer after its window elapsed."""

    code = "WAITLIST_EXPIRED"

    def __init__(self, entry_id: str):
        super().__init__(f"Confirmation window elapsed for waitlist entry {entry_id}")
        self.entry_id = entry_id


class ConfigurationError(CapacityEngineError):
    """Raised when a capacity configuration is invalid.

    Common causes include:
    - Negative totals
    - Reducing a total below the slots already confirmed or held
    """

    code = "INVALID_CONFIGURATION"


class BackendConnectionError(CapacityEngineError):
    """Raised when connection to the storage backend fails.

    Example:
        try:
            await backend.health_check()
        except BackendConnectionError:
            logger.warning("Redis unavailable")
    """

    code = "BACKEND_ERROR"


class BackendOperationError(CapacityEngineError):
    """Raised when a backend operation fails after connecting.

    This could be due to serialization issues, script errors, or other
    backend-specific failures.
    """

    code = "BACKEND_ERROR"
