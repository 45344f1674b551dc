# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Key helpers for addressing per-(event, tier) records and locks."""

DEFAULT_TIER = "default"
"""Tier used when an event sells a single undifferentiated pool."""

ANY_TIER = "*"
"""Queue key for waitlist entries that accept any tier."""


def pair_key(event_id: str, tier: str | None) -> str:
    """Return the storage key of an (event, tier) pair.

    A ``None`` tier maps to the wildcard queue used by any-tier waitlist
    entries; ledgers always have a concrete tier.
    """
    return f"{event_id}|{tier if tier is not None else ANY_TIER}"


def ledger_lock_key(event_id: str, tier: str) -> str:
    return f"ledger:{pair_key(event_id, tier)}"


def waitlist_lock_key(event_id: str, tier: str | None) -> str:
    return f"waitlist:{pair_key(event_id, tier)}"


def hold_lock_key(hold_id: str) -> str:
    return f"hold:{hold_id}"


def promotion_lock_key(event_id: str, tier: str) -> str:
    return f"promotion:{pair_key(event_id, tier)}"


__all__ = [
    "ANY_TIER",
    "DEFAULT_TIER",
    "hold_lock_key",
    "ledger_lock_key",
    "pair_key",
    "promotion_lock_key",
    "waitlist_lock_key",
]
