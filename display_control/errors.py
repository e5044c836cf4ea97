"""
Display Control Errors
======================
"""

from typing import Optional


class DisplayControlError(Exception):
    """Base class for display control errors."""
    pass


class OsQueryFailed(DisplayControlError):
    """Exception raised when a display query against the host fails."""
    pass


class DuplicateDisplay(DisplayControlError):
    """A record with this display id is already in the catalog."""

    def __init__(self, display_id: int):
        super().__init__(f"Display {display_id} is already in the catalog")
        self.display_id = display_id


class UnknownDisplay(DisplayControlError):
    """No record with this display id is in the catalog."""

    def __init__(self, display_id: int):
        super().__init__(f"Display {display_id} is not in the catalog")
        self.display_id = display_id


class DisplayOffline(DisplayControlError):
    """The display is in the catalog but no longer online."""

    def __init__(self, display_id: int):
        super().__init__(f"Display {display_id} is offline")
        self.display_id = display_id


class StaleModeList(DisplayControlError):
    """
    The live mode of a display is missing from its captured mode list.

    The record has to be rebuilt from a full scan, never patched.
    """

    def __init__(self, display_id: int, mode=None):
        super().__init__(f"Mode {mode} not in captured mode list of display {display_id}")
        self.display_id = display_id
        self.mode = mode


class InsufficientDisplays(DisplayControlError):
    """Mirroring needs at least two displays."""
    pass


class ModeChangeFailed(DisplayControlError):
    """A mode change transaction was rejected by the host."""

    def __init__(self, display_id: int, code: int, reason: Optional[str] = None):
        message = f"Mode change failed for display {display_id} (code {code})"
        if reason:
            message += f": {reason}"
        super().__init__(message)
        self.display_id = display_id
        self.code = code


class MirrorToggleFailed(DisplayControlError):
    """A mirroring transaction was rejected by the host."""

    def __init__(self, code: int):
        super().__init__(f"Mirror toggle failed (code {code})")
        self.code = code
