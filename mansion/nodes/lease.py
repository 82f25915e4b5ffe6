"""Periodic renewal of broker leases.

The broker reclaims any VM whose lease is not renewed, so every live node
and every allocation past the requesting stage gets renewed on each sweep.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Iterable

from .node import MansionNode

if TYPE_CHECKING:
    from ..provisioning.registry import AllocationRegistry

log = logging.getLogger(__name__)

# Seconds between two sweeps
RENEWAL_INTERVAL = 30


class LeaseRenewal:
    """One renewal sweep over the live nodes and the allocation registry."""

    def __init__(
        self,
        nodes_provider: Callable[[], Iterable[MansionNode]],
        registry: "AllocationRegistry",
    ):
        self.nodes_provider = nodes_provider
        self.registry = registry

    def renew_node(self, node: MansionNode) -> bool:
        """Renew the lease of ``node``; terminate it if renewals stopped too long ago."""
        if not (node.is_online() or node.is_connecting()):
            log.info("Skipping renewal of %s since it's not online", node.name)
            return False
        try:
            node.renew_lease()
            return True
        except OSError:
            log.warning("Failed to renew the lease of %s", node.name, exc_info=True)
            if node.is_not_renewed_for_too_long():
                log.warning("%s was not renewed for too long, terminating it", node.name)
                node.terminate()
            return False

    def sweep(self) -> int:
        """Renew everything that holds a VM.

        Returns:
            Number of node leases renewed.
        """
        renewed = 0
        for node in list(self.nodes_provider()):
            if node.is_terminated():
                continue
            if self.renew_node(node):
                renewed += 1

        for allocation in self.registry:
            if allocation.is_provisioning():
                continue
            try:
                allocation.renew_lease()
            except OSError:
                log.warning("Failed to renew the lease of %s", allocation.display_name, exc_info=True)

        self.registry.update()
        return renewed
