"""Broker client contract.

Everything the provisioning core needs from the VM broker is expressed here as
abstract references. ``mansion.broker.http`` implements them over HTTP; tests
use in-memory fakes.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from .spec import HardwareSpec, VirtualMachineSpec, VirtualMachineState, url_host


class BrokerError(OSError):
    """Broker call failed (network, HTTP status or protocol error)."""

    def __init__(self, message: str, cause: Optional[Exception] = None, status_code: Optional[int] = None):
        self.cause = cause
        self.status_code = status_code
        super().__init__(message)


class AuthenticationError(BrokerError):
    """Broker rejected the account credential."""


class VirtualMachineConfigurationError(BrokerError):
    """VM refused the spec passed to ``setup`` (e.g. a snapshot is gone)."""


class QuotaExceededError(BrokerError):
    """Broker refused to allocate because of a subscription/quota limit.

    ``vm_type`` and ``hardware_size`` narrow the scope of the limit; both
    unset means the limit applies to every request.
    """

    def __init__(
        self,
        message: str,
        vm_type: Optional[str] = None,
        hardware_size: Optional[str] = None,
        cause: Optional[Exception] = None,
    ):
        self.vm_type = vm_type
        self.hardware_size = hardware_size
        super().__init__(message, cause)


class TooManyVirtualMachinesError(QuotaExceededError):
    """Concurrent VM limit reached. Clears itself as VMs go away."""


class RemoteReference(ABC):
    """Something living on the broker, identified by its URL."""

    def __init__(self, url: str):
        self.url = url

    @property
    def host(self) -> Optional[str]:
        return url_host(self.url)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.url!r})"


class SnapshotRef(RemoteReference):
    """A file-system snapshot held by the broker."""

    @abstractmethod
    def dispose(self) -> None:
        """Tell the broker the snapshot is no longer needed."""


class FileSystemRef(RemoteReference):
    """A live file system attached to a VM."""

    @abstractmethod
    def snapshot(self) -> SnapshotRef:
        """Take a snapshot of the file system in its current state."""


class VirtualMachineRef(RemoteReference):
    """A VM allocated by the broker."""

    @property
    def id(self) -> str:
        return self.url.rstrip("/").rsplit("/", 1)[-1]

    @abstractmethod
    def setup(self, spec: VirtualMachineSpec) -> None:
        """Configure the VM.

        Raises:
            VirtualMachineConfigurationError: If the spec cannot be applied.
        """

    @abstractmethod
    def boot_sync(self) -> None:
        """Boot the VM and block until it is running."""

    @abstractmethod
    def renew(self) -> None:
        """Extend the lease on this VM."""

    @abstractmethod
    def dispose(self) -> None:
        """Release the VM."""

    @abstractmethod
    def get_state(self) -> VirtualMachineState:
        """Fetch the current state of the VM."""

    def set_memo(self, memo: Dict[str, Any]) -> None:
        """Attach an informational memo (build history) before disposal."""


class BrokerClient(ABC):
    """Entry point to one broker with one account credential."""

    @abstractmethod
    def create_virtual_machine(self, mansion_type: str, hardware: HardwareSpec) -> VirtualMachineRef:
        """Allocate a VM of the given mansion type and size.

        Raises:
            QuotaExceededError: If an account limit prevents allocation.
            BrokerError: For any other broker failure.
        """

    @abstractmethod
    def file_system(self, url: str) -> FileSystemRef:
        """Reference to a live file system by URL."""

    @abstractmethod
    def snapshot(self, url: str) -> SnapshotRef:
        """Reference to an existing snapshot by URL."""

    def close(self) -> None:
        """Release connections held by the client."""
