"""
Display Control - Resolution and mirroring management for X11
=============================================================

View and change the resolution/refresh rate of each connected display:
- Per-display mode lists, deduplicated and sorted
- Live reconciliation with hotplug, mode and mirroring changes
- Atomic mode change and mirror toggle transactions via xrandr
"""

__version__ = "1.0.0"
__author__ = "Display Control"

from .backend import DisplayBackend, XRandRBackend
from .catalog import DisplayCatalog
from .config import Config
from .engine import ReconciliationEngine
from .modes import ModeKey
from .records import DisplayRecord, ListMode

__all__ = [
    "DisplayBackend",
    "XRandRBackend",
    "DisplayCatalog",
    "Config",
    "ReconciliationEngine",
    "ModeKey",
    "DisplayRecord",
    "ListMode",
]
