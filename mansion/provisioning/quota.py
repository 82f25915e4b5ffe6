"""Keeps track of problems related to quota over-usage.

This can include:

- Not having a subscription
- Being suspended for non-payment
- Using sizes/hardware which aren't allowed
- Using too many virtual machines at once

Most quota problems are related to a specific mansion type. For example, if
the account is using the maximum number of lxc machines it should still be
allowed to provision additional osx machines.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterator, List, Optional

from ..broker.base import QuotaExceededError, TooManyVirtualMachinesError
from ..broker.spec import HardwareSpec
from ..data.models import Template

log = logging.getLogger(__name__)


class QuotaScope(str, Enum):
    """What a quota problem prevents from being provisioned."""

    GLOBAL = "GLOBAL"  # Everything
    TYPE = "TYPE"  # All sizes of one mansion type
    SIZE = "SIZE"  # One size of one mansion type
    NONE = "NONE"  # A size without a type; blocks nothing


@dataclass
class QuotaProblem:
    """A quota error reported by the broker, kept to gate provisioning."""

    error: QuotaExceededError
    recorded_at: float = field(default_factory=time.time)

    @property
    def vm_type(self) -> Optional[str]:
        return self.error.vm_type

    @property
    def hardware_size(self) -> Optional[str]:
        return self.error.hardware_size

    @property
    def too_many_vms(self) -> bool:
        return isinstance(self.error, TooManyVirtualMachinesError)

    @property
    def scope(self) -> QuotaScope:
        if self.vm_type is None:
            return QuotaScope.GLOBAL if self.hardware_size is None else QuotaScope.NONE
        return QuotaScope.TYPE if self.hardware_size is None else QuotaScope.SIZE

    def blocks_provisioning_of(self, hardware: HardwareSpec, mansion_type: str) -> bool:
        scope = self.scope
        if scope == QuotaScope.GLOBAL:
            return True
        if scope == QuotaScope.TYPE:
            return mansion_type == self.vm_type
        if scope == QuotaScope.SIZE:
            return mansion_type == self.vm_type and hardware.size == self.hardware_size
        return False

    @property
    def message(self) -> str:
        scope = self.scope
        if scope == QuotaScope.TYPE:
            suffix = " (Will retry automatically)" if self.too_many_vms else ""
            return f"Unable to provision {self.vm_type} : {self.error}{suffix}"
        if scope == QuotaScope.SIZE:
            return f"Unable to provision {self.hardware_size} from: {self.vm_type} : {self.error}"
        return str(self.error)

    def to_dict(self):
        return {
            "scope": self.scope.value,
            "vm_type": self.vm_type,
            "hardware_size": self.hardware_size,
            "too_many_vms": self.too_many_vms,
            "message": self.message,
            "recorded_at": self.recorded_at,
        }


class QuotaTracker:
    """The two lists of quota problems.

    General problems are not expected to change until someone upgrades the
    account, so they stay until an operator clears them. Too-many-VMs problems
    reflect current usage and are cleared automatically.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._problems: List[QuotaProblem] = []
        self._too_many_vm_problems: List[QuotaProblem] = []
        self._lock = threading.Lock()

    def add_problem(self, error: QuotaExceededError) -> None:
        with self._lock:
            self._problems.append(QuotaProblem(error, self.clock()))
        log.warning("Quota problem recorded: %s", error)

    def add_too_many_vms_problem(self, error: TooManyVirtualMachinesError) -> None:
        with self._lock:
            self._too_many_vm_problems.append(QuotaProblem(error, self.clock()))
        log.info("Too many virtual machines: %s", error)

    def record(self, error: QuotaExceededError) -> None:
        """File ``error`` in the list matching its kind."""
        if isinstance(error, TooManyVirtualMachinesError):
            self.add_too_many_vms_problem(error)
        else:
            self.add_problem(error)

    def is_blocked(self, hardware: HardwareSpec, template: Template) -> bool:
        return any(p.blocks_provisioning_of(hardware, template.mansion_type) for p in self)

    def clear(self) -> None:
        """Operator action: forget every problem."""
        with self._lock:
            self._problems.clear()
            self._too_many_vm_problems.clear()

    def clear_too_many_vms_problems(self) -> None:
        """Self-heal: capacity may have become available."""
        with self._lock:
            if self._too_many_vm_problems:
                log.debug("Clearing %d too-many-VMs problem(s)", len(self._too_many_vm_problems))
            self._too_many_vm_problems.clear()

    def __iter__(self) -> Iterator[QuotaProblem]:
        with self._lock:
            return iter(list(itertools.chain(self._problems, self._too_many_vm_problems)))

    def __len__(self) -> int:
        with self._lock:
            return len(self._problems) + len(self._too_many_vm_problems)

    @property
    def problems(self) -> List[QuotaProblem]:
        with self._lock:
            return list(self._problems)

    @property
    def too_many_vm_problems(self) -> List[QuotaProblem]:
        with self._lock:
            return list(self._too_many_vm_problems)
