"""Attaching workers to booted VMs."""

from __future__ import annotations

import logging
import socket
import time
from typing import TYPE_CHECKING, Callable, Optional

from .base import Connector

if TYPE_CHECKING:
    from .node import MansionNode

log = logging.getLogger(__name__)

MAX_CONNECT_ATTEMPTS = 10
CONNECT_RETRY_DELAY = 5


def connect_with_retries(
    node: "MansionNode",
    connector: Connector,
    attempts: int = MAX_CONNECT_ATTEMPTS,
    delay: float = CONNECT_RETRY_DELAY,
    wait: Callable[[float], object] = time.sleep,
) -> None:
    """Connect ``node``, retrying I/O failures up to ``attempts`` times.

    Raises:
        OSError: The last I/O failure once every attempt is used up.
        Exception: Any non-I/O failure, immediately.
    """
    last_error: Optional[OSError] = None
    # the node counts as connecting for the whole loop, waits included
    node.begin_connect()
    try:
        for attempt in range(1, max(1, attempts) + 1):
            if node.is_terminated():
                raise ConnectionAbortedError(f"{node.name} was terminated while connecting")
            try:
                connector.connect(node)
            except OSError as e:
                last_error = e
                log.info("Connection attempt %d/%d to %s failed: %s", attempt, attempts, node.name, e)
                if attempt < attempts:
                    wait(delay)
                continue
            node.on_connected()
            return
    except Exception:
        node.on_connect_failed()
        raise

    node.on_connect_failed()
    raise last_error


class TcpProbeConnector(Connector):
    """Considers a node connected once its sshd endpoint accepts TCP.

    The worker protocol itself is run by an external launcher; this only
    establishes that the endpoint the launcher will use is reachable.
    """

    def __init__(self, timeout: float = 10, default_port: int = 22):
        self.timeout = timeout
        self.default_port = default_port

    def connect(self, node: "MansionNode") -> None:
        state = node.vm.get_state()
        host = state.sshd_host or node.vm.host
        port = state.sshd_port or self.default_port
        if not host:
            raise ValueError(f"No sshd endpoint advertised by {node.vm.url}")
        with socket.create_connection((host, port), timeout=self.timeout):
            pass
