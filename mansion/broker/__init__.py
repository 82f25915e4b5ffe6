"""Broker client - VM allocation, file systems and snapshots."""

from .base import (
    AuthenticationError,
    BrokerClient,
    BrokerError,
    FileSystemRef,
    QuotaExceededError,
    SnapshotRef,
    TooManyVirtualMachinesError,
    VirtualMachineConfigurationError,
    VirtualMachineRef,
)
from .http import HttpBrokerClient
from .spec import HardwareSpec, VirtualMachineSpec, VirtualMachineState, VmStateId

__all__ = [
    "AuthenticationError",
    "BrokerClient",
    "BrokerError",
    "FileSystemRef",
    "QuotaExceededError",
    "SnapshotRef",
    "TooManyVirtualMachinesError",
    "VirtualMachineConfigurationError",
    "VirtualMachineRef",
    "HttpBrokerClient",
    "HardwareSpec",
    "VirtualMachineSpec",
    "VirtualMachineState",
    "VmStateId",
]
