"""Exponential backoff for templates that keep failing to provision."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

log = logging.getLogger(__name__)


class BackoffCounter:
    """A counter which implements exponential backoff.

    After ``n`` consecutive errors provisioning is held off for
    ``min(first_backoff * 2**(n-1), max_backoff)`` seconds counted from the
    last error. All times are in seconds.
    """

    def __init__(
        self,
        id: str,
        first_backoff: float = 2,
        max_backoff: float = 600,
        clock: Callable[[], float] = time.time,
    ):
        self.id = id
        self.first_backoff = first_backoff
        self.max_backoff = max_backoff
        self.clock = clock
        self.error_count = 0
        self.last_error_at = 0.0
        self._lock = threading.Lock()

    def record_error(self) -> None:
        """Records an error event."""
        with self._lock:
            self.last_error_at = self.clock()
            self.error_count += 1
            backoff = self.backoff()
        log.warning("Provisioning of %s failed (%d in a row); will try again in %.0f seconds.",
                    self.id, self.error_count, backoff)

    def backoff(self) -> float:
        """The amount of time to back off after the last error."""
        return compute_backoff(self.error_count, self.first_backoff, self.max_backoff)

    def next_attempt(self) -> float:
        """When the back off restriction lifts, as an epoch timestamp."""
        with self._lock:
            return self.last_error_at + self.backoff()

    def is_backoff_in_effect(self) -> bool:
        """Should we hold off sending a request now?"""
        return self.clock() < self.next_attempt()

    def clear(self) -> None:
        """Call this when the service responds acceptably."""
        with self._lock:
            self.error_count = 0
            self.last_error_at = 0.0

    def to_dict(self):
        return {
            "id": self.id,
            "error_count": self.error_count,
            "backoff_seconds": self.backoff(),
            "next_attempt": self.next_attempt() if self.error_count else None,
            "in_effect": self.is_backoff_in_effect(),
        }


def compute_backoff(error_count: int, first_backoff: float, max_backoff: float) -> float:
    """Backoff after ``error_count`` errors: doubling from ``first_backoff``, capped."""
    if error_count <= 0:
        return 0
    # Cap the exponent so huge error counts don't build huge integers
    exponent = min(error_count - 1, 62)
    return min(first_backoff * (2 ** exponent), max_backoff)
