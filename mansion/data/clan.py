"""Snapshot lineages carried over between VMs of the same template.

Some file systems of a template (typically the workspace) are not treated as
ephemeral. A snapshot is taken when a VM is torn down, and the next VM created
from the same template starts from that snapshot instead of the template's
baseline. Each persistent path therefore produces a sequence of snapshots, a
lineage; the set of lineages of one template is its clan.

Snapshots only exist on the broker host that took them, so a lineage is
applied only to VMs allocated on that same host.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional

from ..broker.base import BrokerClient
from ..broker.spec import VirtualMachineSpec, VirtualMachineState, url_host
from .models import Template
from .persistence import ClanStore

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileSystemLineage:
    """Most recent snapshot of one persistent file system."""

    path: str  # Mount point inside the VM
    snapshot: str  # Snapshot URL on the broker

    @property
    def host(self) -> Optional[str]:
        return url_host(self.snapshot)

    def apply_to(self, spec: VirtualMachineSpec, vm_host: Optional[str]) -> bool:
        """Start the file system from this snapshot if it lives on ``vm_host``."""
        if self.host != vm_host:
            return False
        spec.fs(self.snapshot, self.path)
        return True

    def obsoletes(self, other: "FileSystemLineage") -> bool:
        """True if ``other`` can be safely forgotten once this one is kept."""
        return other.path == self.path and other.host == self.host

    def to_dict(self):
        return {"path": self.path, "snapshot": self.snapshot}


class FileSystemClan:
    """The lineages of one template, persisted through a ``ClanStore``."""

    def __init__(
        self,
        template: Template,
        broker: BrokerClient,
        store: ClanStore,
        clock: Callable[[], float] = time.time,
    ):
        self.template = template
        self.broker = broker
        self.store = store
        self.clock = clock
        self.last_destroyed_at: Optional[float] = None
        self._lineages: List[FileSystemLineage] = []
        self._lock = threading.Lock()

    def __iter__(self) -> Iterator[FileSystemLineage]:
        with self._lock:
            return iter(list(self._lineages))

    def __len__(self) -> int:
        return len(self._lineages)

    def is_empty(self) -> bool:
        return not self._lineages

    def apply_to(self, spec: VirtualMachineSpec, vm_host: Optional[str]) -> None:
        """Overlay the snapshots that live on ``vm_host`` onto ``spec``."""
        for lineage in self:
            lineage.apply_to(spec, vm_host)

    def add(self, lineage: FileSystemLineage) -> None:
        """Make ``lineage`` the latest generation of its path on its host.

        The snapshot it supersedes is disposed on the broker; a failure to do
        so only leaks that snapshot and is logged.
        """
        superseded = None
        with self._lock:
            for existing in self._lineages:
                if lineage.obsoletes(existing):
                    superseded = existing
                    self._lineages.remove(existing)
                    break
            self._lineages.append(lineage)

        if superseded is not None and superseded.snapshot != lineage.snapshot:
            self._dispose(superseded)

    def update(self, vm_state: VirtualMachineState, vm_created_at: float) -> None:
        """Snapshot the persistent file systems of a VM being torn down.

        Nothing is recorded if the clan was destroyed after the VM was
        created, so a wipe is not undone by VMs that were already running.
        """
        if not vm_state.file_systems:
            return
        if self.last_destroyed_at is not None and self.last_destroyed_at > vm_created_at:
            log.info("Not snapshotting %s: clan of %s was destroyed after it was created",
                     vm_state.id, self.template.id)
            return

        for path in self.template.persistent_paths:
            fs_url = vm_state.file_system_url_for(path)
            if fs_url is None:
                continue
            try:
                snapshot = self.broker.file_system(fs_url).snapshot()
            except OSError:
                log.warning("Failed to take snapshot of %s", fs_url, exc_info=True)
                continue
            self.add(FileSystemLineage(path, snapshot.url))
            log.info("Recorded snapshot %s for %s of %s", snapshot.url, path, self.template.id)

        self._save_quietly()

    def dispose_all(self) -> None:
        """Delete every snapshot and revert to the template's clean image."""
        with self._lock:
            lineages = list(self._lineages)
            self._lineages.clear()
            self.last_destroyed_at = self.clock()

        for lineage in lineages:
            self._dispose(lineage)

        self._save_quietly()

    def _dispose(self, lineage: FileSystemLineage) -> None:
        try:
            self.broker.snapshot(lineage.snapshot).dispose()
            log.info("Disposed snapshot %s", lineage.snapshot)
        except OSError:
            log.warning("Failed to dispose %s", lineage.snapshot, exc_info=True)

    # --- Persistence ---

    def to_dict(self):
        with self._lock:
            return {
                "template": self.template.id,
                "last_destroyed_at": self.last_destroyed_at,
                "lineages": [l.to_dict() for l in self._lineages],
            }

    def save(self) -> None:
        self.store.save_clan(self.template.id, self.to_dict())

    def load(self) -> None:
        """Replace the in-memory state with the stored record, if any."""
        data = self.store.load_clan(self.template.id)
        if data is None:
            return
        with self._lock:
            self.last_destroyed_at = data.get("last_destroyed_at")
            self._lineages = [
                FileSystemLineage(item["path"], item["snapshot"])
                for item in data.get("lineages", [])
            ]

    def _save_quietly(self) -> None:
        try:
            self.save()
        except OSError:
            log.warning("Failed to persist the clan of %s", self.template.id, exc_info=True)
