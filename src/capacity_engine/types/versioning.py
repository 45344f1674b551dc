# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Helpers for producing the next version of a stored record."""

from typing import Any, TypeVar

from pydantic import BaseModel

RecordT = TypeVar("RecordT", bound=BaseModel)


def next_version(record: RecordT, **changes: Any) -> RecordT:
    """
    Return a validated copy of ``record`` with ``changes`` applied.

    The copy's ``version`` is one higher than the original, which is what
    backends compare against on write. ``model_copy(update=...)`` is not used
    because it skips validation.
    """
    data = record.model_dump()
    version = data["version"]
    data.update(changes)
    data["version"] = version + 1
    return type(record).model_validate(data)


__all__ = ["next_version"]
