"""Interfaces between live nodes and the components that manage them."""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .node import MansionNode


class Provisionable(ABC):
    """Something created from a template that can be torn down."""

    @abstractmethod
    def terminate(self) -> None:
        """Release the underlying VM and stop managing the node."""


class Leasable(ABC):
    """Something whose broker lease must be renewed periodically."""

    @abstractmethod
    def renew_lease(self) -> None:
        """Renew the lease. Raises ``OSError`` on failure."""

    @abstractmethod
    def is_not_renewed_for_too_long(self) -> bool:
        """True once the broker has presumably reclaimed the VM."""


class Connectable(ABC):
    """Something a worker channel is attached to."""

    @abstractmethod
    def is_online(self) -> bool:
        pass

    @abstractmethod
    def is_connecting(self) -> bool:
        pass

    @abstractmethod
    def on_connected(self) -> None:
        """Record that the worker channel is established."""

    @abstractmethod
    def on_disconnected(self) -> None:
        """Record that the worker channel is gone."""


class Connector(ABC):
    """Attaches a worker to a booted VM.

    Implementations establish the channel for ``node`` or raise. ``OSError``
    (and its subclasses) signals an I/O failure worth retrying; any other
    exception aborts the connection attempt.
    """

    @abstractmethod
    def connect(self, node: "MansionNode") -> None:
        pass


class NodeListener:
    """Receives node lifecycle events. Methods are no-ops by default.

    Listeners are registered in order when the cloud is built and are invoked
    synchronously on the thread where the event happened.
    """

    def on_online(self, node: "MansionNode") -> None:
        pass

    def on_offline(self, node: "MansionNode") -> None:
        pass

    def on_terminated(self, node: "MansionNode") -> None:
        pass
