"""Keeps track of noteworthy allocations.

This is the basis for the operator view: every in-progress allocation, plus
the recent failures worth keeping around.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional

if TYPE_CHECKING:
    from ..nodes.node import MansionNode
    from .allocation import Allocation

# Only keep up to this many failures
FAILURE_CAP = 8


class AllocationRegistry:
    """Thread-safe, duplicate-free, insertion-ordered set of allocations."""

    def __init__(self, failure_cap: int = FAILURE_CAP):
        self.failure_cap = failure_cap
        self._data: Dict[str, "Allocation"] = {}
        self._lock = threading.RLock()

    def __iter__(self) -> Iterator["Allocation"]:
        with self._lock:
            return iter(list(self._data.values()))

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, allocation: "Allocation") -> bool:
        return self._data.get(allocation.id) is allocation

    def on_started(self, allocation: "Allocation") -> None:
        """Start tracking a newly created allocation."""
        with self._lock:
            self._data.setdefault(allocation.id, allocation)

    def update(self) -> None:
        """Trim the content to remove uninteresting entries.

        Called whenever an allocation changes status.
        """
        with self._lock:
            failures: List["Allocation"] = []
            for allocation in list(self._data.values()):
                if not allocation.is_noteworthy():
                    del self._data[allocation.id]
                elif allocation.problem is not None:
                    failures.append(allocation)

            # drop the oldest failures first to prefer newer ones
            excess = len(failures) - self.failure_cap
            if excess > 0:
                failures.sort(key=lambda a: a.finished_at or a.started_at)
                for allocation in failures[:excess]:
                    self._data.pop(allocation.id, None)

    def get(self, allocation_id: str) -> Optional["Allocation"]:
        with self._lock:
            allocation = self._data.get(allocation_id)
            if allocation is not None:
                return allocation
            for candidate in self._data.values():
                if candidate.display_name == allocation_id:
                    return candidate
        return None

    def find_by_node(self, node: "MansionNode") -> Optional["Allocation"]:
        """The allocation that produced ``node``, matched by identity."""
        for allocation in self:
            if allocation.node is node:
                return allocation
        return None

    def in_provisioning_count(self) -> int:
        """Number of tracked allocations that have not failed."""
        return sum(1 for a in self if a.problem is None)

    def failures(self) -> List["Allocation"]:
        return [a for a in self if a.problem is not None]
