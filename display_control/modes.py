"""
Display Modes - Canonical mode keys, deduplication and matching
===============================================================
"""

import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Sequence


@dataclass(frozen=True, order=True)
class ModeKey:
    """
    A display mode as a comparable value.

    Ordered by width, then height, then refresh rate. The all-zero key is
    the "no mode" sentinel used by records built without mode enumeration.
    """
    width: int
    height: int
    refresh_rate: float = 0.0

    def __post_init__(self):
        if self.width < 0 or self.height < 0 or self.refresh_rate < 0:
            raise ValueError(f"Invalid mode {self.width}x{self.height}@{self.refresh_rate}")
        if (self.width == 0) != (self.height == 0):
            raise ValueError(f"Invalid mode {self.width}x{self.height}@{self.refresh_rate}")
        # Normalise so 60 and 60.0 compare and hash alike
        object.__setattr__(self, 'refresh_rate', float(self.refresh_rate))

    @classmethod
    def from_raw(cls, raw) -> 'ModeKey':
        """Build a key from any descriptor with width, height and refresh_rate."""
        return cls(int(raw.width), int(raw.height), float(raw.refresh_rate))

    @property
    def is_sentinel(self) -> bool:
        return self.width == 0 and self.height == 0

    @property
    def aspect_ratio(self) -> float:
        """Aspect ratio truncated to two decimal digits."""
        return truncated_aspect_ratio(self.width, self.height)

    def matches(self, raw) -> bool:
        """Check if a raw descriptor describes this mode (value equality)."""
        return (raw.width == self.width and
                raw.height == self.height and
                float(raw.refresh_rate) == self.refresh_rate)

    def __str__(self):
        if self.refresh_rate > 0:
            return f"{self.width}x{self.height}@{self.refresh_rate:g}Hz"
        return f"{self.width}x{self.height}"


SENTINEL_MODE = ModeKey(0, 0, 0.0)


class AspectClass(Enum):
    """Aspect ratio classes used by presentation."""
    RATIO_4_3 = "4:3"
    RATIO_16_9 = "16:9"
    RATIO_16_10 = "16:10"
    OTHER = "other"


def truncated_aspect_ratio(width: int, height: int) -> float:
    if height <= 0:
        return 0.0
    return math.floor(width / height * 100) / 100


_ASPECT_CLASSES = {
    truncated_aspect_ratio(4, 3): AspectClass.RATIO_4_3,
    truncated_aspect_ratio(16, 9): AspectClass.RATIO_16_9,
    truncated_aspect_ratio(16, 10): AspectClass.RATIO_16_10,
}


def aspect_class(mode: ModeKey) -> AspectClass:
    """Classify a mode by its truncated aspect ratio."""
    return _ASPECT_CLASSES.get(mode.aspect_ratio, AspectClass.OTHER)


def dedupe_and_sort(raw_modes: Iterable) -> List[ModeKey]:
    """
    Build mode keys for raw descriptors, collapse duplicates and sort.

    Hosts commonly report the same (width, height, rate) several times,
    e.g. once per pixel encoding or timing variant.

    Args:
        raw_modes: Descriptors with width, height and refresh_rate

    Returns:
        Ascending list of unique ModeKey values
    """
    return sorted({ModeKey.from_raw(raw) for raw in raw_modes})


def nearest_match(sorted_modes: Sequence[ModeKey], target: ModeKey) -> Optional[ModeKey]:
    """
    Find the best available substitute for a target mode.

    Returns the greatest mode that does not exceed the target in width,
    height or refresh rate. If every mode exceeds the target, the smallest
    mode is returned. Returns None only for an empty sequence.
    """
    if not sorted_modes:
        return None
    for mode in reversed(sorted_modes):
        if (mode.width <= target.width and
                mode.height <= target.height and
                mode.refresh_rate <= target.refresh_rate):
            return mode
    return sorted_modes[0]


_MODE_PATTERN = re.compile(r'^\s*(\d+)\s*[xX×]\s*(\d+)(?:\s*@\s*(\d+(?:\.\d+)?)\s*(?:Hz)?)?\s*$')


def parse_mode(text: str) -> ModeKey:
    """
    Parse a mode typed as WIDTHxHEIGHT or WIDTHxHEIGHT@RATE.

    Raises:
        ValueError: If the text is not a mode
    """
    match = _MODE_PATTERN.match(text)
    if not match:
        raise ValueError(f"Not a display mode: {text!r} (expected e.g. 1920x1080@60)")
    rate = float(match.group(3)) if match.group(3) else 0.0
    return ModeKey(int(match.group(1)), int(match.group(2)), rate)
