"""Mansion cloud provisioner - ephemeral broker VMs as build workers."""

__version__ = "1.0.0"
