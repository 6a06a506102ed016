"""Bounded read-modify-write against a single versioned record."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

from jobfleet.errors import ConflictRetriesExhaustedError
from jobfleet.services.record_store import Versioned, WriteResult

logger = logging.getLogger("jobfleet.optimistic")

T = TypeVar("T")


class UpdateStatus(str, Enum):
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    MISSING = "missing"


@dataclass(frozen=True)
class UpdateOutcome(Generic[T]):
    status: UpdateStatus
    current: Versioned[T] | None = None

    @property
    def updated(self) -> bool:
        return self.status == UpdateStatus.UPDATED


def backoff_delay(attempt: int, base_seconds: float) -> float:
    """Linear backoff with up to one extra *base_seconds* of jitter."""
    if base_seconds <= 0:
        return 0.0
    return base_seconds * attempt + random.uniform(0, base_seconds)


async def optimistic_update(
    load: Callable[[], Awaitable[Versioned[T] | None]],
    mutate: Callable[[T], T | None],
    write: Callable[[T, str], Awaitable[WriteResult]],
    *,
    attempts: int,
    backoff_seconds: float,
    what: str,
    initial: Versioned[T] | None = None,
) -> UpdateOutcome[T]:
    """Apply *mutate* to the record and write it back conditionally.

    *mutate* returns the new record, or ``None`` when no change is needed (the
    state check that makes callers idempotent).  On a revision conflict the
    record is re-read and *mutate* re-applied, up to *attempts* writes.

    Returns ``MISSING`` if the record does not exist (or vanished mid-way).
    Raises ``ConflictRetriesExhaustedError`` when every attempt conflicted.
    """
    current = initial if initial is not None else await load()
    for attempt in range(1, attempts + 1):
        if current is None:
            return UpdateOutcome(UpdateStatus.MISSING)
        updated = mutate(current.record)
        if updated is None:
            return UpdateOutcome(UpdateStatus.UNCHANGED, current)
        result = await write(updated, current.revision)
        if result.ok:
            return UpdateOutcome(UpdateStatus.UPDATED, Versioned(updated, result.revision))
        if result.not_found:
            return UpdateOutcome(UpdateStatus.MISSING)

        logger.debug("Revision conflict updating %s (attempt %d/%d)", what, attempt, attempts)
        if attempt < attempts:
            await asyncio.sleep(backoff_delay(attempt, backoff_seconds))
            current = await load()

    raise ConflictRetriesExhaustedError(what, attempts)
