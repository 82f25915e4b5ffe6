"""Live nodes - connection, lease renewal and retention."""

from .base import Connectable, Connector, Leasable, NodeListener, Provisionable
from .connector import TcpProbeConnector, connect_with_retries
from .lease import LeaseRenewal
from .node import BuildHistory, MansionNode, massage_id
from .retention import RetentionController

__all__ = [
    "Connectable",
    "Connector",
    "Leasable",
    "NodeListener",
    "Provisionable",
    "TcpProbeConnector",
    "connect_with_retries",
    "LeaseRenewal",
    "BuildHistory",
    "MansionNode",
    "massage_id",
    "RetentionController",
]
