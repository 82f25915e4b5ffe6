"""Resolution of scheduling labels to templates and hardware sizes.

A label is a whitespace- or ``&&``-separated set of atoms. It matches a
template when every atom is either the template's own label or a size
specifier (small, large, standard, xlarge, hi-speed). Templates flagged
``name_match_required`` additionally need their name to be present.
"""

from __future__ import annotations

import logging
import re
import threading
from typing import Dict, Iterable, List, Optional

from ..broker.spec import HardwareSpec
from ..data.models import SIZE_ATOMS, Size, Template

log = logging.getLogger(__name__)

_ATOM_SPLIT_RE = re.compile(r"\s*&&\s*|\s+")


def parse_label(label: Optional[str]) -> List[str]:
    """Split a label expression into its atoms."""
    if not label:
        return []
    return [atom for atom in _ATOM_SPLIT_RE.split(label.strip()) if atom]


class TemplateList:
    """The templates the cloud can provision, keyed by id."""

    def __init__(self, templates: Iterable[Template] = ()):
        self._templates: Dict[str, Template] = {}
        self._lock = threading.Lock()
        for template in templates:
            self.add(template)
        log.info("%d template(s) loaded", len(self._templates))

    def __iter__(self):
        with self._lock:
            return iter(list(self._templates.values()))

    def __len__(self) -> int:
        return len(self._templates)

    def add(self, template: Template) -> None:
        with self._lock:
            self._templates[template.id] = template

    def get(self, template_id: str) -> Optional[Template]:
        return self._templates.get(template_id)

    def set_enabled(self, template_id: str, enabled: bool) -> bool:
        template = self.get(template_id)
        if template is None:
            return False
        template.enabled = enabled
        return True

    def resolve(self, label: Optional[str]) -> Optional[Template]:
        """First template, in configuration order, matching ``label``."""
        atoms = parse_label(label)
        if not atoms:
            return None
        exact = self.get(label.strip())
        if exact is not None:
            return exact
        for template in self:
            if self.matches(template, atoms):
                return template
        return None

    @staticmethod
    def matches(template: Template, atoms: List[str], size: Optional[str] = None) -> bool:
        """Does the label made of ``atoms`` select ``template``?

        With ``size`` given, only that size specifier is accepted besides the
        template's label.
        """
        if not atoms:
            return False
        allowed = {template.label}
        allowed.update([size] if size else SIZE_ATOMS)
        if not all(atom in allowed for atom in atoms):
            return False
        if template.name_match_required:
            return template.label in atoms
        return True

    def hardware_for(self, template: Template, label: Optional[str] = None) -> HardwareSpec:
        """Figure out the size of the box to provision.

        The template's default size applies when the label has no size
        specifier.
        """
        for atom in parse_label(label):
            size = Size.parse(atom)
            if size is not None:
                return HardwareSpec(size.hardware_size)
        return HardwareSpec(template.default_size.hardware_size)


def node_label(template: Template, hardware: HardwareSpec) -> str:
    """Label of a node: template label, size, and the size's marketing synonym."""
    label = f"{template.label} {hardware.size}"
    if hardware.size == Size.LARGE.value:
        label += " standard"
    elif hardware.size == Size.XLARGE.value:
        label += " hi-speed"
    return label
