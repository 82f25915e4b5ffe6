"""Data layer - templates, clan records and persistence."""

from .clan import FileSystemClan, FileSystemLineage
from .models import AllocationStatus, Size, Template
from .persistence import ClanStore, get_data_dir

__all__ = [
    "FileSystemClan",
    "FileSystemLineage",
    "AllocationStatus",
    "Size",
    "Template",
    "ClanStore",
    "get_data_dir",
]
