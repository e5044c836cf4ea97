"""
Display Records - Per-display snapshot built from a full host query
===================================================================
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from .backend import DisplayBackend, DisplayFlags
from .errors import OsQueryFailed
from .modes import ModeKey, SENTINEL_MODE, dedupe_and_sort

logger = logging.getLogger(__name__)

BUILD_ATTEMPTS = 2


class ListMode(Enum):
    """How much of a display's mode list to capture."""
    BASIC = "basic"  # skip mode enumeration, identity probing only
    SAFE = "safe"    # modes usable for a standard desktop
    ALL = "all"      # every raw mode, including unsafe ones

    @classmethod
    def from_name(cls, name: str) -> 'ListMode':
        try:
            return cls(str(name).lower())
        except ValueError:
            raise ValueError(f"Unknown list mode {name!r}, expected one of "
                             f"{', '.join(m.value for m in cls)}") from None


class ConsistencyFault(Exception):
    """The active mode is missing from a freshly enumerated mode list."""
    pass


@dataclass
class DisplayRecord:
    """
    Snapshot of one display.

    The boolean flags are queried live from the backend on every access.
    If available_modes is non-empty, available_modes[current_mode_index]
    is always current_mode.
    """
    display_id: int
    label: str
    available_modes: List[ModeKey] = field(default_factory=list)
    current_mode: ModeKey = SENTINEL_MODE
    current_mode_index: int = 0
    degraded: bool = False
    backend: Optional[DisplayBackend] = field(default=None, repr=False, compare=False)

    def _flags(self) -> DisplayFlags:
        if self.backend is None:
            return DisplayFlags()
        try:
            return self.backend.query_display_flags(self.display_id)
        except OsQueryFailed as e:
            logger.debug(f"Flag query failed for display {self.display_id}: {e}")
            return DisplayFlags()

    @property
    def is_builtin(self) -> bool:
        return self._flags().is_builtin

    @property
    def is_main(self) -> bool:
        return self._flags().is_main

    @property
    def is_in_mirror_set(self) -> bool:
        return self._flags().is_in_mirror_set

    @property
    def is_online(self) -> bool:
        return self._flags().is_online

    def check_online(self) -> bool:
        """
        Query the online flag without a fallback.

        Raises:
            OsQueryFailed: If the host could not be queried
        """
        if self.backend is None:
            return False
        return self.backend.query_display_flags(self.display_id).is_online

    def index_of(self, mode: ModeKey) -> Optional[int]:
        try:
            return self.available_modes.index(mode)
        except ValueError:
            return None

    def set_current_mode(self, mode: ModeKey) -> bool:
        """Move the current mode within the captured list. Returns False if absent."""
        index = self.index_of(mode)
        if index is None:
            return False
        self.current_mode = mode
        self.current_mode_index = index
        return True

    def is_consistent(self) -> bool:
        if not self.available_modes:
            return True
        return (0 <= self.current_mode_index < len(self.available_modes) and
                self.available_modes[self.current_mode_index] == self.current_mode)

    def copy(self) -> 'DisplayRecord':
        return dataclasses.replace(self, available_modes=list(self.available_modes))

    def __str__(self):
        return f"{self.label} ({self.display_id})"


def _build_once(backend: DisplayBackend, display_id: int, label: str,
                list_mode: ListMode) -> DisplayRecord:
    raw_modes = backend.query_display_modes(display_id, list_mode is ListMode.SAFE)
    available = dedupe_and_sort(raw_modes)
    current = ModeKey.from_raw(backend.query_current_mode(display_id))

    record = DisplayRecord(display_id=display_id, label=label,
                           available_modes=available, backend=backend)
    if not record.set_current_mode(current):
        raise ConsistencyFault(f"Active mode {current} of display {display_id} "
                               f"not among {len(available)} enumerated modes")
    return record


def build_record(backend: DisplayBackend, display_id: int,
                 list_mode: ListMode = ListMode.SAFE) -> DisplayRecord:
    """
    Build a record by a full query of the host.

    Mode enumeration and the active mode query can race a concurrent
    hardware change. The whole construction is retried once; after a
    second failure the record is built without modes and flagged degraded.

    Args:
        backend: Host display backend
        display_id: Display to query
        list_mode: How much of the mode list to capture

    Returns:
        DisplayRecord satisfying the current mode index invariant
    """
    if list_mode is ListMode.BASIC:
        return DisplayRecord(display_id=display_id, label=str(display_id), backend=backend)

    label = backend.resolve_display_label(display_id) or str(display_id)

    for attempt in range(BUILD_ATTEMPTS):
        try:
            record = _build_once(backend, display_id, label, list_mode)
            logger.debug(f"Built record for {record}: {len(record.available_modes)} modes, "
                         f"current {record.current_mode}")
            return record
        except (ConsistencyFault, OsQueryFailed) as e:
            logger.warning(f"Building record for display {display_id} failed "
                           f"(attempt {attempt + 1}/{BUILD_ATTEMPTS}): {e}")

    logger.error(f"Display {display_id} ({label}) degraded: mode list unavailable")
    return DisplayRecord(display_id=display_id, label=label, degraded=True, backend=backend)
