"""Live worker nodes backed by broker VMs."""

from __future__ import annotations

import hashlib
import logging
import re
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..broker.base import VirtualMachineRef
from ..data.clan import FileSystemClan
from ..data.models import Template
from .base import Connectable, Leasable, NodeListener, Provisionable

log = logging.getLogger(__name__)

# VM ids made of these characters and no longer than this are used as-is
_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9._-]+$")
MAX_ID_LENGTH = 8

# Renewal staleness after which the broker has surely reclaimed the VM
DEFAULT_RENEWAL_CEILING = 30 * 60


def massage_id(vm_id: str) -> str:
    """Node name for a VM id.

    The id is used as-is to assist diagnostics, unless it contains a
    problematic character or is too long; then a short digest is used.
    """
    if not _SAFE_ID_RE.match(vm_id) or len(vm_id) > MAX_ID_LENGTH:
        return hashlib.md5(vm_id.encode("utf-8")).hexdigest()[:MAX_ID_LENGTH]
    return vm_id


class BuildHistory:
    """Tasks run on a node, posted to the VM as a memo before disposal."""

    def __init__(self):
        self._builds: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def add(self, record: Dict[str, Any]) -> None:
        with self._lock:
            self._builds.append(dict(record))

    def __len__(self) -> int:
        return len(self._builds)

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            if not self._builds:
                return {}
            return {"builds": list(self._builds)}


class MansionNode(Provisionable, Leasable, Connectable):
    """A VM handed out by the broker, attached (or being attached) as a worker.

    The node owns its VM for its whole lifetime: ``terminate`` snapshots the
    persistent file systems into the template's clan and disposes the VM.
    """

    def __init__(
        self,
        vm: VirtualMachineRef,
        template: Template,
        label: str,
        clan: FileSystemClan,
        listeners: Sequence[NodeListener] = (),
        clock: Callable[[], float] = time.time,
        renewal_ceiling: float = DEFAULT_RENEWAL_CEILING,
    ):
        self.vm = vm
        self.template = template
        self.label = label
        self.clan = clan
        self.listeners = list(listeners)
        self.clock = clock
        self.renewal_ceiling = renewal_ceiling

        self.name = massage_id(vm.id)
        self.created_at = clock()
        self.connected_at: Optional[float] = None
        self.idle_since = self.created_at
        self.renewed_at = self.created_at
        self.accepting_tasks = True
        self.disconnect_in_progress = False
        self.history = BuildHistory()

        self._online = False
        self._connecting = False
        self._terminated = False
        self._busy: Dict[str, float] = {}
        self._lock = threading.RLock()

    def __repr__(self) -> str:
        return f"MansionNode({self.name!r}, {self.vm.url!r})"

    # --- Connectable ---

    def is_online(self) -> bool:
        return self._online

    def is_offline(self) -> bool:
        return not self._online

    def is_connecting(self) -> bool:
        return self._connecting

    def is_terminated(self) -> bool:
        return self._terminated

    def begin_connect(self) -> None:
        self._connecting = True

    def on_connect_failed(self) -> None:
        self._connecting = False

    def on_connected(self) -> None:
        with self._lock:
            if self._terminated:
                return
            self._connecting = False
            self._online = True
            self.connected_at = self.clock()
        log.info("%s is online", self.name)
        for listener in self.listeners:
            listener.on_online(self)

    def on_disconnected(self) -> None:
        with self._lock:
            was_online = self._online
            self._online = False
            self._connecting = False
        if was_online:
            log.info("%s went offline", self.name)
            for listener in self.listeners:
                listener.on_offline(self)

    @property
    def initial_connection_established(self) -> bool:
        return self.connected_at is not None

    # --- Work tracking ---

    def is_idle(self) -> bool:
        return not self._busy

    def busy_tasks(self) -> List[str]:
        with self._lock:
            return list(self._busy)

    def start_task(self, task_id: str) -> None:
        """Occupy an executor.

        Whoever assigns work is expected to hold the cloud's queue lock and
        to have checked ``accepting_tasks``.
        """
        with self._lock:
            self._busy[task_id] = self.clock()

    def complete_task(self, task_id: str, **details: Any) -> None:
        """Free the executor running ``task_id`` and record it in the history."""
        with self._lock:
            started = self._busy.pop(task_id, None)
            now = self.clock()
            if not self._busy:
                self.idle_since = now
        if started is not None:
            record = {"task": task_id, "started_at": started, "duration": now - started}
            record.update(details)
            self.history.add(record)

    def interrupt_executors(self) -> List[str]:
        """Abort whatever is running; returns the interrupted task ids."""
        with self._lock:
            interrupted = list(self._busy)
            self._busy.clear()
            self.idle_since = self.clock()
        if interrupted:
            log.info("Interrupted %s on %s", ", ".join(interrupted), self.name)
        return interrupted

    def idle_start_after_connect(self) -> float:
        """When the node became idle, counting no earlier than its connection.

        ``idle_since`` starts at creation, whereas ``connected_at`` is set
        only after the connection completes.
        """
        return max(self.idle_since, self.connected_at or 0)

    # --- Leasable ---

    def renew_lease(self) -> None:
        self.vm.renew()
        self.renewed_at = self.clock()
        log.debug("Renewed a lease of %s", self.vm.url)

    def is_not_renewed_for_too_long(self) -> bool:
        return self.clock() - self.renewed_at > self.renewal_ceiling

    # --- Provisionable ---

    def terminate(self) -> None:
        with self._lock:
            if self._terminated:
                return
            self._terminated = True
            self.accepting_tasks = False
            self._online = False
            self._connecting = False

        try:
            self._update_clan()
            self._post_memo()
        finally:
            try:
                self._dispose_vm()
            finally:
                for listener in self.listeners:
                    listener.on_offline(self)
                for listener in self.listeners:
                    listener.on_terminated(self)

    def _update_clan(self) -> None:
        # best-effort: whatever the broker reports, the VM still gets disposed
        try:
            self.clan.update(self.vm.get_state(), self.created_at)
        except Exception:
            log.warning("Failed to update the file system clan of %s", self.template.id, exc_info=True)

    def _post_memo(self) -> None:
        memo = self.history.to_dict()
        if memo:
            try:
                self.vm.set_memo(memo)
            except OSError:
                log.warning("Failed to set memo %s", self.vm.url, exc_info=True)

    def _dispose_vm(self) -> None:
        try:
            self.vm.dispose()
            log.info("Disposed %s last renewal was %s", self.vm.url,
                     time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(self.renewed_at)))
        except OSError:
            log.info("Failed to dispose %s", self.vm.url, exc_info=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "vm": self.vm.url,
            "template": self.template.id,
            "label": self.label,
            "created_at": self.created_at,
            "connected_at": self.connected_at,
            "online": self._online,
            "connecting": self._connecting,
            "accepting_tasks": self.accepting_tasks,
            "idle_since": self.idle_start_after_connect(),
            "busy": self.busy_tasks(),
            "renewed_at": self.renewed_at,
        }
