"""Data models for the provisioner.

1. TEMPLATES
   - A template names a mansion type (the broker-side image family) and the
     configuration fragments handed to each VM created from it.
   - Identity (id, mansion_type) is fixed; only `enabled` changes at runtime.

2. SIZES
   - Canonical hardware sizes are small, large and xlarge.
   - "standard" and "hi-speed" are user-facing synonyms of large and xlarge.

3. ALLOCATION STATUS
   - REQUESTING -> ALLOCATED -> CONFIGURING -> BOOTING -> CONNECTING
   - Terminal: ONLINE or FAILED
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


# =============================================================================
# Hardware Sizes
# =============================================================================


class Size(str, Enum):
    """Hardware size a template can be provisioned with."""

    SMALL = "small"
    LARGE = "large"
    XLARGE = "xlarge"

    @property
    def label(self) -> str:
        """Marketing name of the size."""
        return _SIZE_LABELS[self]

    @property
    def hardware_size(self) -> str:
        """Value sent to the broker in the hardware spec."""
        return self.value

    @classmethod
    def parse(cls, text: Optional[str]) -> Optional["Size"]:
        """Resolve a canonical name or synonym; None if unrecognized."""
        if not text:
            return None
        return _SIZE_ATOMS.get(text.strip().lower())


_SIZE_LABELS = {
    Size.SMALL: "small",
    Size.LARGE: "standard",
    Size.XLARGE: "hi-speed",
}

# Every label atom that selects a size
_SIZE_ATOMS = {
    "small": Size.SMALL,
    "large": Size.LARGE,
    "standard": Size.LARGE,
    "xlarge": Size.XLARGE,
    "hi-speed": Size.XLARGE,
}

SIZE_ATOMS = frozenset(_SIZE_ATOMS)


# =============================================================================
# Allocation Status
# =============================================================================


class AllocationStatus(str, Enum):
    """Where an allocation is in its lifecycle."""

    REQUESTING = "Requesting"  # Waiting for the broker to hand out a VM
    ALLOCATED = "Allocated"  # VM handle obtained
    CONFIGURING = "Configuring"  # Spec being applied
    BOOTING = "Booting"  # Blocking boot on the broker
    CONNECTING = "Connecting"  # Node created, attaching worker
    ONLINE = "Online"  # Worker connected
    FAILED = "Failed"  # Gave up; problem recorded

    @property
    def is_terminal(self) -> bool:
        return self in (AllocationStatus.ONLINE, AllocationStatus.FAILED)


# =============================================================================
# Templates
# =============================================================================


@dataclass
class Template:
    """A machine template VMs are provisioned from.

    `spec` is the list of configuration fragments posted to the VM;
    `persistent_paths` designates the file systems of that spec which carry
    over (as snapshots) to the next VM of the same template.
    """

    id: str
    mansion_type: str
    display_name: Optional[str] = None
    enabled: bool = True
    account: Optional[str] = None  # Which broker credential to use
    spec: List[Dict[str, Any]] = field(default_factory=list)
    persistent_paths: Tuple[str, ...] = ()
    default_size: Size = Size.XLARGE
    name_match_required: bool = False

    def __post_init__(self):
        # Ordered, duplicate-free
        self.persistent_paths = tuple(dict.fromkeys(self.persistent_paths))
        if not self.display_name:
            self.display_name = self.id

    @property
    def label(self) -> str:
        """Nodes provisioned from this template carry this label."""
        return self.id

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Template":
        spec = data.get("spec") or {}
        configs = spec.get("configs", []) if isinstance(spec, dict) else list(spec)
        return cls(
            id=data["id"],
            mansion_type=data["mansion_type"],
            display_name=data.get("display_name"),
            enabled=data.get("enabled", True),
            account=data.get("account"),
            spec=configs,
            persistent_paths=tuple(data.get("persistent_file_systems", []) or ()),
            default_size=Size.parse(data.get("default_size")) or Size.XLARGE,
            name_match_required=data.get("name_match_required", False),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "mansion_type": self.mansion_type,
            "display_name": self.display_name,
            "enabled": self.enabled,
            "account": self.account,
            "spec": {"configs": list(self.spec)},
            "persistent_file_systems": list(self.persistent_paths),
            "default_size": self.default_size.value,
            "name_match_required": self.name_match_required,
        }
