"""The activity of turning broker capacity into a connected worker.

One ``Allocation`` is created per unit of excess workload. Its ``run`` method
executes on a pool thread and walks the allocation through::

    Requesting -> Allocated -> Configuring -> Booting -> Connecting -> Online
                                                                    \\-> Failed

The allocation's ``future`` is handed to the caller of ``provision`` right
away and resolves once, with the booted node or with the failure.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from concurrent.futures import CancelledError, Future
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Sequence

from ..broker.base import (
    BrokerClient,
    QuotaExceededError,
    VirtualMachineConfigurationError,
    VirtualMachineRef,
)
from ..broker.spec import HardwareSpec, VirtualMachineSpec
from ..data.clan import FileSystemClan
from ..data.models import AllocationStatus, Template
from ..nodes.base import Connector, NodeListener
from ..nodes.connector import CONNECT_RETRY_DELAY, MAX_CONNECT_ATTEMPTS, connect_with_retries
from ..nodes.node import DEFAULT_RENEWAL_CEILING, MansionNode
from ..nodes.retention import CONNECT_GRACE, IDLE_TIMEOUT, RECHECK_DELAY
from .backoff import BackoffCounter
from .quota import QuotaTracker
from .registry import FAILURE_CAP, AllocationRegistry

log = logging.getLogger(__name__)

# Debug switch to inject a fault in allocation to test error handling
INJECT_FAULT = False

# How long a failure stays visible, in seconds
PROBLEM_RETENTION_SPAN = 4 * 60 * 60


class ProvisioningError(Exception):
    """An allocation could not produce a worker."""


class VmConfigurator(ABC):
    """Contributes configuration fragments to every VM before the template's own."""

    @abstractmethod
    def configure(self, template: Template, label: str, spec: VirtualMachineSpec) -> None:
        pass


@dataclass
class ProvisioningSettings:
    """Tunables of the provisioning lifecycle (seconds unless noted)."""

    connect_attempts: int = MAX_CONNECT_ATTEMPTS
    connect_retry_delay: float = CONNECT_RETRY_DELAY
    problem_retention: float = PROBLEM_RETENTION_SPAN
    renewal_ceiling: float = DEFAULT_RENEWAL_CEILING
    first_backoff: float = 2
    max_backoff: float = 600
    failure_cap: int = FAILURE_CAP
    idle_timeout: float = IDLE_TIMEOUT
    connect_grace: float = CONNECT_GRACE
    recheck_delay: float = RECHECK_DELAY


@dataclass
class ProvisioningContext:
    """Collaborators an allocation needs, injected by the cloud."""

    broker_for: Callable[[Template], BrokerClient]
    clan_for: Callable[[Template], FileSystemClan]
    quota: QuotaTracker
    registry: AllocationRegistry
    connector: Connector
    configurators: Sequence[VmConfigurator] = ()
    listeners: Sequence[NodeListener] = ()
    settings: ProvisioningSettings = field(default_factory=ProvisioningSettings)
    clock: Callable[[], float] = time.time
    wait: Callable[[float], object] = time.sleep


class Allocation:
    """One attempt to acquire a worker from the broker."""

    def __init__(
        self,
        template: Template,
        label: str,
        hardware: HardwareSpec,
        backoff: BackoffCounter,
        context: ProvisioningContext,
    ):
        self.id = uuid.uuid4().hex[:12]
        self.template = template
        self.label = label
        self.hardware = hardware
        self.backoff = backoff
        self.context = context

        self.future: "Future[MansionNode]" = Future()
        self.vm: Optional[VirtualMachineRef] = None
        self.node: Optional[MansionNode] = None
        self.status = AllocationStatus.REQUESTING
        self.problem: Optional[BaseException] = None
        self.dismissed = False
        self.started_at = context.clock()
        self.finished_at = 0.0
        self._settled = threading.Event()

        context.registry.on_started(self)

    def __repr__(self) -> str:
        return f"Allocation({self.id!r}, {self.template.id!r}, {self.status.value})"

    @property
    def display_name(self) -> str:
        return self.vm.id if self.vm is not None else self.template.display_name

    @property
    def mansion_type(self) -> str:
        return self.template.mansion_type

    def is_provisioning(self) -> bool:
        """Still waiting for the broker to hand out a VM."""
        return not self.finished_at and self.vm is None

    def is_finished(self) -> bool:
        return bool(self.finished_at)

    def wait_until_settled(self, timeout: Optional[float] = None) -> bool:
        """Block until the allocation is Online or Failed."""
        return self._settled.wait(timeout)

    def _set_status(self, status: AllocationStatus) -> None:
        self.status = status
        self.context.registry.update()

    # --- Lifecycle ---

    def run(self) -> None:
        """Synchronously acquire, configure, boot and connect a VM."""
        if not self.future.set_running_or_notify_cancel():
            self.on_cancelled()
            return

        thread = threading.current_thread()
        old_name = thread.name
        try:
            try:
                node = self._provision(thread, old_name)
            except Exception as e:
                self._fail(e)
                self.future.set_exception(e)
                return

            self.finished_at = self.context.clock()
            self.future.set_result(node)
            self.context.registry.update()

            thread.name = f"{old_name} : connecting {node.name}"
            self._connect(node)
        finally:
            thread.name = old_name

    def _provision(self, thread: threading.Thread, old_name: str) -> MansionNode:
        broker = self.context.broker_for(self.template)
        try:
            vm = broker.create_virtual_machine(self.template.mansion_type, self.hardware)
        except QuotaExceededError as e:
            self.context.quota.record(e)
            raise
        self.on_virtual_machine_provisioned(vm)

        thread.name = f"{old_name} : configuring {vm.url}"
        self._set_status(AllocationStatus.CONFIGURING)
        clan = self.context.clan_for(self.template)
        self._configure(vm, clan)

        if INJECT_FAULT:
            raise ProvisioningError("Injected failure")

        thread.name = f"{old_name} : booting {vm.url}"
        self._set_status(AllocationStatus.BOOTING)
        vm.boot_sync()
        log.debug("Booted %s", vm.url)

        node = MansionNode(
            vm,
            self.template,
            self.label,
            clan,
            listeners=self.context.listeners,
            clock=self.context.clock,
            renewal_ceiling=self.context.settings.renewal_ceiling,
        )
        self.node = node
        self._set_status(AllocationStatus.CONNECTING)
        return node

    def on_virtual_machine_provisioned(self, vm: VirtualMachineRef) -> None:
        if self.vm is not None:
            raise RuntimeError("VirtualMachineRef already allocated")
        self.vm = vm
        log.debug("Allocated %s", vm.url)
        self._set_status(AllocationStatus.ALLOCATED)

    def build_spec(self) -> VirtualMachineSpec:
        """Baseline spec: configurators first, then the template's fragments."""
        spec = VirtualMachineSpec()
        for configurator in self.context.configurators:
            configurator.configure(self.template, self.label, spec)
        spec.configs.extend(copy.deepcopy(self.template.spec))
        return spec

    def _configure(self, vm: VirtualMachineRef, clan: FileSystemClan) -> None:
        spec = self.build_spec()
        with_snapshots = spec.copy()
        clan.apply_to(with_snapshots, vm.host)
        try:
            vm.setup(with_snapshots)
        except VirtualMachineConfigurationError:
            log.warning("Couldn't use snapshots for %s, trying with originals", vm.url, exc_info=True)
            try:
                vm.setup(spec)
            except VirtualMachineConfigurationError as e:
                raise ProvisioningError(f"Failed to configure {vm.url}") from e

    def _connect(self, node: MansionNode) -> None:
        settings = self.context.settings
        try:
            connect_with_retries(
                node,
                self.context.connector,
                attempts=settings.connect_attempts,
                delay=settings.connect_retry_delay,
                wait=self.context.wait,
            )
        except Exception as e:
            self.on_connect_failure(e)
            node.terminate()

    # --- Outcomes ---

    def _fail(self, problem: BaseException) -> None:
        log.warning("Failed to provision %s from %s: %s", self.display_name, self.template.id, problem,
                    exc_info=problem)
        self.problem = problem
        if not self.finished_at:
            self.finished_at = self.context.clock()
        self.backoff.record_error()
        self._set_status(AllocationStatus.FAILED)
        self._settled.set()

    def on_cancelled(self) -> None:
        if self.finished_at:
            return
        self.problem = CancelledError()
        self.dismissed = True
        self.finished_at = self.context.clock()
        self._set_status(AllocationStatus.FAILED)
        self._settled.set()

    def on_online(self) -> None:
        """The node of this allocation completed its first connection."""
        if self.status == AllocationStatus.ONLINE:
            return
        self.backoff.clear()
        self._set_status(AllocationStatus.ONLINE)
        self._settled.set()

    def on_connect_failure(self, problem: BaseException) -> None:
        log.warning("Could not connect %s", self.display_name)
        self._fail(problem)

    def on_terminate(self) -> None:
        self.context.registry.update()

    def renew_lease(self) -> None:
        if self.problem is None and self.vm is not None:
            self.vm.renew()
            log.debug("Renewed a lease of %s", self.vm.url)

    def dismiss(self) -> None:
        """Hide a failure from the operator view. Does not cancel anything."""
        self.dismissed = True
        self.context.registry.update()

    def is_noteworthy(self) -> bool:
        """Is this allocation worth showing to an operator?"""
        if not self.finished_at:
            return True
        if (
            self.problem is not None
            and not self.dismissed
            and self.context.clock() < self.finished_at + self.context.settings.problem_retention
        ):
            return True
        node = self.node
        if node is not None and self.problem is None:
            return not node.is_terminated() and not node.initial_connection_established
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.display_name,
            "template": self.template.id,
            "mansion_type": self.template.mansion_type,
            "label": self.label,
            "size": self.hardware.size,
            "vm": self.vm.url if self.vm is not None else None,
            "status": self.status.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at or None,
            "problem": str(self.problem) if self.problem is not None else None,
            "dismissed": self.dismissed,
            "node": self.node.name if self.node is not None else None,
        }
