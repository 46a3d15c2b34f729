# Copyright (c) 2025.
# This file is part of omnigraph, released under the MIT License.
"""
Fixed-capacity slot pools for factors and landmarks.

A pool preallocates ``capacity`` records, each carrying a ``used`` flag, and
keeps the free slot indices in a binary heap. Allocation therefore always
returns the lowest free index (deterministic tie-break) in O(log n), and a
released slot is immediately eligible for reuse.

Exhaustion is not an error: `allocate` returns ``None`` and the caller
decides whether to skip the constraint for this step.

A released record is kept untouched (only ``used`` is cleared) until its
slot is allocated again, at which point it is replaced by a fresh record
from the pool factory.
"""

from __future__ import annotations

import heapq
from typing import Callable, Generic, Iterator, List, Optional, TypeVar

from .types import Factor

T = TypeVar("T")


class SlotPool(Generic[T]):
    """Arena of ``capacity`` records with a lowest-index-first free list."""

    def __init__(self, capacity: int, factory: Callable[[int], T]) -> None:
        if capacity < 0:
            raise ValueError(f"Pool capacity must be non-negative, got {capacity}")
        self._factory = factory
        self._records: List[T] = [factory(i) for i in range(capacity)]
        self._free: List[int] = list(range(capacity))
        heapq.heapify(self._free)

    def allocate(self) -> Optional[int]:
        if not self._free:
            return None
        slot = heapq.heappop(self._free)
        record = self._factory(slot)
        record.used = True
        self._records[slot] = record
        return slot

    def release(self, slot: int) -> None:
        record = self._records[slot]
        if not record.used:
            raise ValueError(f"Slot {slot} is not in use")
        record.used = False
        heapq.heappush(self._free, slot)

    def capacity(self) -> int:
        return len(self._records)

    def n_used(self) -> int:
        return len(self._records) - len(self._free)

    def n_free(self) -> int:
        return len(self._free)

    def has_free(self) -> bool:
        return bool(self._free)

    def used_slots(self) -> List[int]:
        return [i for i, r in enumerate(self._records) if r.used]

    def __getitem__(self, slot: int) -> T:
        return self._records[slot]

    def __iter__(self) -> Iterator[T]:
        """Iterate over the used records in slot order."""
        return (r for r in self._records if r.used)


class FactorPool(SlotPool[Factor]):
    def __init__(self, capacity: int) -> None:
        super().__init__(capacity, lambda slot: Factor(slot=slot))
