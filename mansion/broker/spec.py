"""Value objects exchanged with the VM broker.

A ``VirtualMachineSpec`` is an ordered list of configuration fragments that
is posted to a freshly allocated VM. File-system fragments describe where a
file system is mounted and which snapshot it starts from; templates provide
the baseline fragments and the clan overlays newer snapshots on top.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

FILE_SYSTEM_KIND = "file-system"


@dataclass(frozen=True)
class HardwareSpec:
    """Box size requested from the broker ('small', 'large', 'xlarge')."""

    size: str

    def to_dict(self) -> Dict[str, Any]:
        return {"size": self.size}


@dataclass
class VirtualMachineSpec:
    """Configuration fragments to be passed to ``VirtualMachineRef.setup``."""

    configs: List[Dict[str, Any]] = field(default_factory=list)

    def fs(self, snapshot: str, path: str) -> None:
        """Mount ``path`` starting from ``snapshot``.

        An existing file-system fragment for the same path is replaced in
        place, so a persisted snapshot overlays the template's baseline.
        """
        fragment = {"kind": FILE_SYSTEM_KIND, "from": snapshot, "path": path}
        for i, existing in enumerate(self.configs):
            if existing.get("kind") == FILE_SYSTEM_KIND and existing.get("path") == path:
                self.configs[i] = fragment
                return
        self.configs.append(fragment)

    def file_systems(self) -> Dict[str, str]:
        """Mapping of mount path to starting snapshot."""
        return {
            c["path"]: c.get("from")
            for c in self.configs
            if c.get("kind") == FILE_SYSTEM_KIND and "path" in c
        }

    def copy(self) -> "VirtualMachineSpec":
        return VirtualMachineSpec(configs=copy.deepcopy(self.configs))

    def to_dict(self) -> Dict[str, Any]:
        return {"configs": copy.deepcopy(self.configs)}


class VmStateId(str, Enum):
    """Lifecycle state reported by the broker for a VM."""

    CONFIG = "config"
    BOOTING = "booting"
    RUNNING = "running"
    ERROR = "error"
    UNKNOWN = "unknown"  # any state this client does not know about

    @classmethod
    def parse(cls, value: Optional[str]) -> "VmStateId":
        if not value:
            return cls.CONFIG
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


@dataclass
class VirtualMachineState:
    """Snapshot of a VM as reported by ``VirtualMachineRef.get_state``.

    ``file_systems`` maps each mounted path to the URL of the live file
    system backing it; the clan snapshots those at teardown.
    """

    id: str
    state: VmStateId
    message: Optional[str] = None
    file_systems: Optional[Dict[str, str]] = None
    sshd_host: Optional[str] = None
    sshd_port: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def file_system_url_for(self, path: str) -> Optional[str]:
        if not self.file_systems:
            return None
        return self.file_systems.get(path)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VirtualMachineState":
        state = data.get("state") or {}
        state_id = state.get("id") if isinstance(state, dict) else state
        sshd = data.get("sshd") or {}
        fs = data.get("fileSystems")
        return cls(
            id=str(data.get("id", "")),
            state=VmStateId.parse(state_id),
            message=state.get("message") if isinstance(state, dict) else None,
            file_systems=dict(fs) if isinstance(fs, dict) else None,
            sshd_host=sshd.get("host"),
            sshd_port=sshd.get("port"),
            raw=data,
        )


def url_host(url: str) -> Optional[str]:
    """Host part of a broker URL, used to decide snapshot locality."""
    return urlparse(url).hostname
