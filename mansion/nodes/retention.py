"""Retention of live nodes: idle eviction and never-connected cleanup."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Executor, Future
from typing import Callable, Iterable, Optional, Set

from .node import MansionNode

log = logging.getLogger(__name__)

# How long a node can be idle before being terminated
IDLE_TIMEOUT = 5
# How long a node gets to complete its first connection
CONNECT_GRACE = 2 * 60
# Pause between marking a node unavailable and re-checking it is still idle
RECHECK_DELAY = 2


class RetentionController:
    """Decides when live nodes are terminated.

    Two policies apply to every node checked:

    * a node that is offline, not connecting, still accepting tasks and
      older than the connect grace period is killed outright;
    * a node idle for longer than ``idle_timeout`` (counted from when it
      became idle, never from before it connected) is evicted.

    Eviction first stops the node from accepting tasks, waits
    ``recheck_delay`` for a task that raced the decision to show up, and then
    re-checks under ``queue_lock``. Whatever assigns work to nodes must hold
    the same lock.
    """

    def __init__(
        self,
        queue_lock: threading.RLock,
        executor: Executor,
        idle_timeout: float = IDLE_TIMEOUT,
        connect_grace: float = CONNECT_GRACE,
        recheck_delay: float = RECHECK_DELAY,
        clock: Callable[[], float] = time.time,
    ):
        self.queue_lock = queue_lock
        self.executor = executor
        self.idle_timeout = idle_timeout
        self.connect_grace = connect_grace
        self.recheck_delay = recheck_delay
        self.clock = clock
        self._evicting: Set[str] = set()
        self._evicting_lock = threading.Lock()
        self._stop_event = threading.Event()

    def stop(self) -> None:
        """Abort evictions that are still waiting for their recheck."""
        self._stop_event.set()

    # --- Policies ---

    def should_have_connected_by_now(self, node: MansionNode) -> bool:
        return self.clock() - node.created_at > self.connect_grace

    def is_idle_for_too_long(self, node: MansionNode) -> bool:
        """Idleness is not considered before the node connects."""
        return (node.is_online() or self.should_have_connected_by_now(node)) and (
            self.clock() - node.idle_start_after_connect() > self.idle_timeout
        )

    def check(self, node: MansionNode) -> Optional[Future]:
        """Apply both policies to ``node``.

        Returns:
            The pending eviction, if one was started.
        """
        if node.is_terminated():
            return None

        if (
            node.is_offline()
            and not node.is_connecting()
            and node.accepting_tasks
            and self.should_have_connected_by_now(node)
        ):
            log.info("Removing %s because it should have connected by now", node.name)
            node.terminate()
            return None

        if node.is_idle() and node.accepting_tasks and self.is_idle_for_too_long(node):
            return self.evict(node)
        return None

    def check_all(self, nodes: Iterable[MansionNode]) -> None:
        for node in list(nodes):
            self.check(node)

    def schedule_check(self, nodes_provider: Callable[[], Iterable[MansionNode]]) -> Future:
        """Check every node once a just-finished task had time to leave them idle."""
        delay = self.idle_timeout + self.recheck_delay

        def delayed_check():
            if self._stop_event.wait(delay):
                return
            self.check_all(nodes_provider())

        return self.executor.submit(delayed_check)

    # --- Eviction ---

    def evict(self, node: MansionNode) -> Optional[Future]:
        """Take an idle node out of service, unless work reaches it meanwhile.

        Returns:
            Future of the background recheck, or None if one is already
            running for this node.
        """
        log.debug("Taking node %s offline since it seems to be idle", node.name)
        node.disconnect_in_progress = True
        node.accepting_tasks = False
        with self._evicting_lock:
            if node.name in self._evicting:
                return None
            self._evicting.add(node.name)
        return self.executor.submit(self._finish_eviction, node)

    def _finish_eviction(self, node: MansionNode) -> bool:
        try:
            # a task may have been assigned after the idleness check but
            # before accepting_tasks was cleared
            if self._stop_event.wait(self.recheck_delay):
                log.debug("Interrupted while waiting before removing node %s", node.name)
                self._restore(node)
                return False

            with self.queue_lock:
                if not node.is_idle() and node.is_online():
                    log.info("%s is no longer idle, aborting termination.", node.name)
                    self._restore(node)
                    return False
                node.interrupt_executors()
                log.info("Finally removing node %s", node.name)
                try:
                    node.terminate()
                except Exception:
                    log.warning("Failed to terminate %s", node.name, exc_info=True)
                    self._restore(node)
                    return False
                return True
        finally:
            with self._evicting_lock:
                self._evicting.discard(node.name)

    @staticmethod
    def _restore(node: MansionNode) -> None:
        node.accepting_tasks = True
        node.disconnect_in_progress = False
