"""The Mansion cloud: turns excess workload into broker VMs and manages them.

The cloud is the single owner of the provisioning state of one controller
process: per-template backoff counters, quota problems, the allocation
registry, the file system clans and the live nodes. Blocking broker and
connection work runs on a shared thread pool, so ``provision`` returns as
soon as the allocations are submitted.
"""

from __future__ import annotations

import functools
import logging
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from ..broker.base import BrokerClient
from ..data.clan import FileSystemClan
from ..data.models import Template
from ..data.persistence import ClanStore
from ..nodes.base import Connector, NodeListener
from ..nodes.lease import LeaseRenewal
from ..nodes.node import MansionNode
from ..nodes.retention import RetentionController
from .allocation import (
    Allocation,
    ProvisioningContext,
    ProvisioningError,
    ProvisioningSettings,
    VmConfigurator,
)
from .backoff import BackoffCounter
from .quota import QuotaProblem, QuotaTracker
from .registry import AllocationRegistry
from .templates import TemplateList, node_label

log = logging.getLogger(__name__)

DEFAULT_POOL_SIZE = 16


class _CloudListener(NodeListener):
    """Routes node events back to the cloud's own bookkeeping."""

    def __init__(self, cloud: "MansionCloud"):
        self.cloud = cloud

    def on_online(self, node: MansionNode) -> None:
        allocation = self.cloud.registry.find_by_node(node)
        if allocation is not None:
            allocation.on_online()

    def on_offline(self, node: MansionNode) -> None:
        # a VM went away, so the broker may have capacity again
        self.cloud.quota.clear_too_many_vms_problems()

    def on_terminated(self, node: MansionNode) -> None:
        self.cloud._forget_node(node)
        allocation = self.cloud.registry.find_by_node(node)
        if allocation is not None:
            allocation.on_terminate()


class MansionCloud:
    """Provisions workers from templates and keeps track of them.

    Args:
        templates: Templates this cloud can provision.
        brokers: Broker clients keyed by account name.
        connector: Attaches workers to booted VMs.
        store: Where clan records are persisted.
        default_account: Account used by templates that don't name one.
        settings: Lifecycle tunables.
        configurators: Contribute VM configuration, in order, before each
            template's own fragments.
        listeners: Extra node listeners, called after the cloud's own.
        executor: Pool for blocking work. A private pool is created (and
            shut down by ``shutdown``) when omitted.
        clock: Time source, seconds since the epoch.
        wait: Sleep function used between connection attempts.
    """

    def __init__(
        self,
        templates: TemplateList,
        brokers: Mapping[str, BrokerClient],
        connector: Connector,
        store: ClanStore,
        default_account: Optional[str] = None,
        settings: Optional[ProvisioningSettings] = None,
        configurators: Sequence[VmConfigurator] = (),
        listeners: Sequence[NodeListener] = (),
        executor: Optional[Executor] = None,
        pool_size: int = DEFAULT_POOL_SIZE,
        clock: Callable[[], float] = time.time,
        wait: Callable[[float], object] = time.sleep,
    ):
        self.templates = templates
        self.brokers = dict(brokers)
        self.default_account = default_account
        self.store = store
        self.settings = settings or ProvisioningSettings()
        self.clock = clock

        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(
            max_workers=pool_size, thread_name_prefix="mansion-provisioner"
        )

        # Everything that hands work to nodes synchronizes on this lock
        self.queue_lock = threading.RLock()

        self.quota = QuotaTracker(clock=clock)
        self.registry = AllocationRegistry(failure_cap=self.settings.failure_cap)
        self.retention = RetentionController(
            self.queue_lock,
            self.executor,
            idle_timeout=self.settings.idle_timeout,
            connect_grace=self.settings.connect_grace,
            recheck_delay=self.settings.recheck_delay,
            clock=clock,
        )
        self.lease_renewal = LeaseRenewal(self.nodes, self.registry)

        self._backoffs: Dict[str, BackoffCounter] = {}
        self._clans: Dict[str, FileSystemClan] = {}
        self._nodes: Dict[str, MansionNode] = {}
        self._lock = threading.Lock()

        self.context = ProvisioningContext(
            broker_for=self.broker_for,
            clan_for=self.clan_for,
            quota=self.quota,
            registry=self.registry,
            connector=connector,
            configurators=tuple(configurators),
            listeners=(_CloudListener(self),) + tuple(listeners),
            settings=self.settings,
            clock=clock,
            wait=wait,
        )

    # --- Collaborators ---

    def broker_for(self, template: Template) -> BrokerClient:
        """Broker client of the account the template is provisioned with."""
        account = template.account or self.default_account
        broker = self.brokers.get(account) if account else None
        if broker is None and self.default_account:
            broker = self.brokers.get(self.default_account)
        if broker is None and self.brokers:
            broker = next(iter(self.brokers.values()))
        if broker is None:
            raise ProvisioningError(f"No broker account configured for {template.id}")
        return broker

    def clan_for(self, template: Template) -> FileSystemClan:
        """The clan of ``template``, loaded from the store on first use."""
        with self._lock:
            clan = self._clans.get(template.id)
            if clan is not None:
                return clan
            clan = FileSystemClan(template, self.broker_for(template), self.store, clock=self.clock)
            try:
                clan.load()
            except (OSError, ValueError):
                log.warning("Failed to load the clan of %s, starting clean", template.id, exc_info=True)
            self._clans[template.id] = clan
            return clan

    def backoff_counter(self, template: Template) -> BackoffCounter:
        with self._lock:
            counter = self._backoffs.get(template.id)
            if counter is None:
                counter = BackoffCounter(
                    template.id,
                    first_backoff=self.settings.first_backoff,
                    max_backoff=self.settings.max_backoff,
                    clock=self.clock,
                )
                self._backoffs[template.id] = counter
            return counter

    # --- Provisioning ---

    def can_provision(self, template: Template, label: Optional[str] = None) -> bool:
        if not template.enabled:
            log.debug("%s is disabled", template.id)
            return False
        if self.backoff_counter(template).is_backoff_in_effect():
            log.info("Backing off from provisioning %s", template.id)
            return False
        hardware = self.templates.hardware_for(template, label)
        if self.quota.is_blocked(hardware, template):
            log.info("Not provisioning %s (%s) due to quota problems", template.id, hardware.size)
            return False
        return True

    def provision(self, template: Template, excess_workload: int,
                  label: Optional[str] = None) -> List[Allocation]:
        """Start one allocation per unit of ``excess_workload``.

        Returns immediately. Each allocation's ``future`` resolves with the
        booted node or with the failure.

        Returns:
            The started allocations; empty when the template is disabled,
            backing off or blocked by a quota problem.
        """
        if excess_workload <= 0 or not self.can_provision(template, label):
            return []

        hardware = self.templates.hardware_for(template, label)
        backoff = self.backoff_counter(template)
        allocations = []
        for _ in range(excess_workload):
            allocation = Allocation(template, node_label(template, hardware), hardware, backoff, self.context)
            allocation.future.add_done_callback(functools.partial(self._on_allocation_done, allocation))
            self.executor.submit(allocation.run)
            allocations.append(allocation)

        log.info("Provisioning %d %s (%s) node(s)", len(allocations), template.id, hardware.size)
        return allocations

    def provision_label(self, label: Optional[str], excess_workload: int) -> List[Allocation]:
        """Provision from the first template matching ``label``."""
        template = self.templates.resolve(label)
        if template is None:
            log.debug("No template matches %r", label)
            return []
        return self.provision(template, excess_workload, label)

    def _on_allocation_done(self, allocation: Allocation, future: Future) -> None:
        if future.cancelled():
            allocation.on_cancelled()
            return
        if future.exception() is not None:
            return
        node = future.result()
        with self._lock:
            self._nodes[node.name] = node

    def _forget_node(self, node: MansionNode) -> None:
        with self._lock:
            if self._nodes.get(node.name) is node:
                del self._nodes[node.name]

    # --- Work ---

    def dispatch(self, node: MansionNode, task_id: str) -> bool:
        """Assign a task to ``node`` if it still takes work."""
        with self.queue_lock:
            if node.is_terminated() or not node.is_online() or not node.accepting_tasks:
                return False
            node.start_task(task_id)
            return True

    def complete_task(self, node: MansionNode, task_id: str, **details: Any) -> None:
        """Record the end of a task and check idleness once it had time to show."""
        node.complete_task(task_id, **details)
        self.retention.schedule_check(self.nodes)

    # --- Operator actions ---

    def dismiss(self, allocation_id: str) -> bool:
        allocation = self.registry.get(allocation_id)
        if allocation is None:
            return False
        allocation.dismiss()
        return True

    def retry_now(self, template_id: str) -> bool:
        """Lift the backoff of a template."""
        template = self.templates.get(template_id)
        if template is None:
            return False
        self.backoff_counter(template).clear()
        log.info("Backoff of %s cleared", template_id)
        return True

    def dispose_clan(self, template_id: str) -> Optional[Future]:
        """Delete every snapshot of a template, on the pool.

        Returns:
            Future of the disposal, or None for an unknown template.
        """
        template = self.templates.get(template_id)
        if template is None:
            return None
        clan = self.clan_for(template)
        log.info("Disposing the file system clan of %s", template_id)
        return self.executor.submit(clan.dispose_all)

    def clear_quota_problems(self) -> None:
        self.quota.clear()
        log.info("Quota problems cleared")

    # --- Periodic maintenance ---

    def renew_leases(self) -> int:
        return self.lease_renewal.sweep()

    def check_retention(self) -> None:
        self.retention.check_all(self.nodes())

    def clear_too_many_vms_problems(self) -> None:
        self.quota.clear_too_many_vms_problems()

    # --- Accessors ---

    def allocations(self) -> List[Allocation]:
        return list(self.registry)

    def quota_problems(self) -> List[QuotaProblem]:
        return list(self.quota)

    def backoff_counters(self) -> Dict[str, BackoffCounter]:
        with self._lock:
            return dict(self._backoffs)

    def nodes(self) -> List[MansionNode]:
        with self._lock:
            return list(self._nodes.values())

    def get_node(self, name: str) -> Optional[MansionNode]:
        with self._lock:
            return self._nodes.get(name)

    # --- Shutdown ---

    def shutdown(self, terminate_nodes: bool = False, wait: bool = True) -> None:
        """Stop background work; optionally dispose every live node first."""
        self.retention.stop()
        if terminate_nodes:
            for node in self.nodes():
                node.terminate()
        if self._owns_executor:
            self.executor.shutdown(wait=wait)

    def close_brokers(self) -> None:
        for broker in self.brokers.values():
            broker.close()
