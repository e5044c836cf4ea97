"""
Change notifications (host -> engine) and change events (engine -> subscribers)
"""

from dataclasses import dataclass
from enum import IntFlag


class ChangeFlags(IntFlag):
    """Independent change bits; the host may coalesce several into one notification."""
    NONE = 0
    ADDED = 1
    REMOVED = 2
    MODE_CHANGED = 4
    MIRROR_ON = 8
    MIRROR_OFF = 16


@dataclass(frozen=True)
class DisplayNotification:
    """A single hardware change notification."""
    display_id: int
    flags: ChangeFlags

    def __str__(self):
        names = [flag.name for flag in ChangeFlags if flag and flag in self.flags]
        return f"display {self.display_id}: {'|'.join(names) or 'NONE'}"


class ChangeEvent:
    """Base class for events telling subscribers what to re-render."""
    pass


@dataclass(frozen=True)
class DisplayAdded(ChangeEvent):
    display_id: int


@dataclass(frozen=True)
class DisplayRemoved(ChangeEvent):
    display_id: int


@dataclass(frozen=True)
class ModeUpdated(ChangeEvent):
    display_id: int


@dataclass(frozen=True)
class RecordReplaced(ChangeEvent):
    display_id: int


@dataclass(frozen=True)
class MirrorStateChanged(ChangeEvent):
    mirroring: bool
