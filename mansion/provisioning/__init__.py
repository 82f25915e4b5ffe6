"""Provisioning - allocations, backoff, quota and the cloud controller."""

from .allocation import (
    Allocation,
    ProvisioningContext,
    ProvisioningError,
    ProvisioningSettings,
    VmConfigurator,
)
from .backoff import BackoffCounter
from .cloud import MansionCloud
from .quota import QuotaProblem, QuotaScope, QuotaTracker
from .registry import AllocationRegistry
from .templates import TemplateList, node_label, parse_label

__all__ = [
    "Allocation",
    "ProvisioningContext",
    "ProvisioningError",
    "ProvisioningSettings",
    "VmConfigurator",
    "BackoffCounter",
    "MansionCloud",
    "QuotaProblem",
    "QuotaScope",
    "QuotaTracker",
    "AllocationRegistry",
    "TemplateList",
    "node_label",
    "parse_label",
]
