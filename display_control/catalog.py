"""
Display Catalog - Authoritative collection of display records
=============================================================
"""

import bisect
import logging
from typing import Dict, Iterator, List, Optional, Tuple

from .backend import DisplayBackend
from .errors import DuplicateDisplay, OsQueryFailed, StaleModeList, UnknownDisplay
from .modes import ModeKey, nearest_match
from .records import DisplayRecord, ListMode, build_record

logger = logging.getLogger(__name__)


class DisplayCatalog:
    """
    Display records keyed by display id, iterated in ascending id order.

    Not thread-safe by itself; the owning engine serializes access.
    """

    def __init__(self, backend: DisplayBackend):
        self.backend = backend
        self._records: Dict[int, DisplayRecord] = {}
        self._order: List[int] = []

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, display_id) -> bool:
        return display_id in self._records

    def __iter__(self) -> Iterator[DisplayRecord]:
        return iter([self._records[display_id] for display_id in self._order])

    @property
    def display_ids(self) -> List[int]:
        return list(self._order)

    def get(self, display_id: int) -> DisplayRecord:
        """
        Raises:
            UnknownDisplay: If no record has this id
        """
        try:
            return self._records[display_id]
        except KeyError:
            raise UnknownDisplay(display_id) from None

    def snapshot(self) -> Tuple[DisplayRecord, ...]:
        """Copies of every record in ascending id order."""
        return tuple(record.copy() for record in self)

    def populate(self, list_mode: ListMode = ListMode.SAFE) -> 'DisplayCatalog':
        """
        Fill the catalog from a full enumeration of online displays.

        A failed enumeration leaves the catalog empty. A display whose
        record cannot be built is kept as a degraded record.
        """
        self.clear()
        try:
            display_ids = self.backend.enumerate_online_displays()
        except OsQueryFailed as e:
            logger.error(f"Display enumeration failed, starting with an empty catalog: {e}")
            return self

        for display_id in sorted(set(display_ids)):
            self.insert(build_record(self.backend, display_id, list_mode))

        logger.info(f"Catalog populated with {len(self)} display(s): "
                    f"{', '.join(str(r) for r in self)}")
        return self

    def clear(self):
        self._records.clear()
        self._order.clear()

    def insert(self, record: DisplayRecord):
        """
        Raises:
            DuplicateDisplay: If the id is already present
        """
        if record.display_id in self._records:
            raise DuplicateDisplay(record.display_id)
        self._records[record.display_id] = record
        bisect.insort(self._order, record.display_id)

    def remove(self, display_id: int) -> DisplayRecord:
        """
        Raises:
            UnknownDisplay: If the id is absent
        """
        record = self._records.pop(display_id, None)
        if record is None:
            raise UnknownDisplay(display_id)
        self._order.remove(display_id)
        return record

    def replace(self, record: DisplayRecord):
        """
        Swap in a freshly built record for an existing id.

        Raises:
            UnknownDisplay: If the id is absent
        """
        if record.display_id not in self._records:
            raise UnknownDisplay(record.display_id)
        self._records[record.display_id] = record

    def update_mode(self, display_id: int, new_mode: ModeKey):
        """
        Mark new_mode as current for a display.

        Raises:
            UnknownDisplay: If the id is absent
            StaleModeList: If new_mode is not in the captured mode list
        """
        record = self.get(display_id)
        if not record.set_current_mode(new_mode):
            raise StaleModeList(display_id, new_mode)

    def prune_offline(self) -> List[int]:
        """
        Remove every record whose display is no longer online.

        A record whose online state cannot be queried is kept.

        Returns:
            Ids of the removed records
        """
        pruned = []
        for record in self:
            try:
                if not record.check_online():
                    pruned.append(record.display_id)
            except OsQueryFailed as e:
                logger.warning(f"Online state of {record} unknown, keeping it: {e}")
        for display_id in pruned:
            self.remove(display_id)
            logger.info(f"Pruned offline display {display_id}")
        return pruned

    def nearest_mode(self, display_id: int, target: ModeKey) -> Optional[ModeKey]:
        """Best captured substitute for target on a display (see nearest_match)."""
        return nearest_match(self.get(display_id).available_modes, target)
