"""Persistence layer for provisioner state.

Clan records (the latest snapshot of each persistent file system of a
template) are kept as one JSON file per template under ~/.mansion/clans/
so warm workspaces survive restarts of the provisioner.
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

_SAFE_FILE_RE = re.compile(r"[^A-Za-z0-9._-]")


def get_data_dir() -> Path:
    """Get user-persistent data directory.

    Returns ~/.mansion/ by default, or MANSION_DATA_DIR env var.
    Creates subdirectories if they don't exist.
    """
    data_dir = Path(os.environ.get("MANSION_DATA_DIR", Path.home() / ".mansion"))

    for subdir in ["clans", "logs"]:
        (data_dir / subdir).mkdir(parents=True, exist_ok=True)

    return data_dir


class ClanStore:
    """JSON file store for clan records, one file per template."""

    def __init__(self, data_dir: Optional[Path] = None):
        self.data_dir = Path(data_dir) if data_dir else get_data_dir()
        self.clan_dir = self.data_dir / "clans"
        self.clan_dir.mkdir(parents=True, exist_ok=True)

    def _clan_file(self, template_id: str) -> Path:
        return self.clan_dir / f"{_SAFE_FILE_RE.sub('_', template_id)}.json"

    def save_clan(self, template_id: str, data: Dict[str, Any]) -> None:
        """Write a clan record atomically."""
        clan_file = self._clan_file(template_id)
        tmp = clan_file.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        os.replace(tmp, clan_file)

    def load_clan(self, template_id: str) -> Optional[Dict[str, Any]]:
        """Load a clan record.

        Returns:
            The stored record, or None if it doesn't exist.

        Raises:
            ValueError: If the file exists but is not valid JSON.
        """
        clan_file = self._clan_file(template_id)
        if not clan_file.exists():
            return None
        return json.loads(clan_file.read_text(encoding="utf-8"))
