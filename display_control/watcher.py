"""
Display Change Watcher - Turn RandR changes into display notifications
======================================================================

The watcher rescans the host whenever X11 delivers a RandR event (or on a
polling interval when no X connection is available), diffs the result
against the previous scan and reports (display_id, flags) per display.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from Xlib import display as xdisplay
from Xlib import error as xerror
from Xlib.ext import randr

from .events import ChangeFlags
from .modes import ModeKey

logger = logging.getLogger(__name__)

RANDR_EVENT_MASK = (randr.RRScreenChangeNotifyMask |
                    randr.RRCrtcChangeNotifyMask |
                    randr.RROutputChangeNotifyMask)


@dataclass(frozen=True)
class OutputState:
    """What the watcher remembers about an online display between scans."""
    mode: ModeKey
    in_mirror_set: bool = False


def diff_snapshots(previous: Dict[int, OutputState],
                   current: Dict[int, OutputState]) -> List[Tuple[int, ChangeFlags]]:
    """
    Compute change notifications between two scans.

    Args:
        previous: Online displays at the last scan
        current: Online displays now

    Returns:
        List of (display_id, flags) in ascending id order, non-empty flags only
    """
    changes = []
    for display_id in sorted(set(previous) | set(current)):
        before = previous.get(display_id)
        after = current.get(display_id)
        flags = ChangeFlags.NONE

        if before is None:
            flags |= ChangeFlags.ADDED
        elif after is None:
            flags |= ChangeFlags.REMOVED
        elif before.mode != after.mode:
            flags |= ChangeFlags.MODE_CHANGED

        was_mirrored = before is not None and before.in_mirror_set
        is_mirrored = after is not None and after.in_mirror_set
        if is_mirrored and not was_mirrored:
            flags |= ChangeFlags.MIRROR_ON
        elif was_mirrored and not is_mirrored:
            flags |= ChangeFlags.MIRROR_OFF

        if flags:
            changes.append((display_id, flags))
    return changes


class DisplayChangeWatcher:
    """
    Watches for display configuration changes.

    Event-driven through the RandR extension when an X connection can be
    opened, polling otherwise.
    """

    def __init__(
        self,
        snapshot: Callable[[], Dict[int, OutputState]],
        callback: Callable[[int, ChangeFlags], None],
        x_display: Optional[str] = None,
        event_driven: bool = True,
        poll_interval: float = 2.0,
    ):
        """
        Initialize watcher.

        Args:
            snapshot: Returns the current online display states
            callback: Called with (display_id, flags) for every change
            x_display: X display name, or None for $DISPLAY
            event_driven: Try RandR events before falling back to polling
            poll_interval: Seconds between rescans when polling
        """
        self._snapshot = snapshot
        self._callback = callback
        self._x_display = x_display
        self._event_driven = event_driven
        self._poll_interval = poll_interval
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._display = None
        self._last_state: Dict[int, OutputState] = {}

    @property
    def is_event_driven(self) -> bool:
        return self._display is not None

    def _open_display(self):
        """Open an X connection subscribed to RandR change events, or None."""
        try:
            dpy = xdisplay.Display(self._x_display)
        except (xerror.DisplayError, OSError) as e:
            logger.warning(f"Cannot open X display for RandR events: {e}")
            return None

        if not dpy.has_extension('RANDR'):
            logger.warning("X server has no RANDR extension, falling back to polling")
            dpy.close()
            return None

        dpy.screen().root.xrandr_select_input(RANDR_EVENT_MASK)
        dpy.flush()
        return dpy

    def start_monitoring(self):
        """Take the initial scan and start the watcher thread."""
        if self._running:
            return

        self._last_state = self._safe_snapshot() or {}
        if self._event_driven:
            self._display = self._open_display()

        self._running = True
        self._thread = threading.Thread(target=self._monitor_loop, daemon=True)
        self._thread.start()
        if self._display is not None:
            logger.info("Started display change monitoring (RandR events)")
        else:
            logger.info(f"Started display change monitoring (polling every {self._poll_interval}s)")

    def stop_monitoring(self):
        """Stop the watcher thread and close the X connection."""
        self._running = False
        if self._thread:
            self._thread.join(timeout=2)
            self._thread = None
        if self._display is not None:
            try:
                self._display.close()
            except xerror.ConnectionClosedError:
                pass
            self._display = None
        logger.info("Stopped display change monitoring")

    def _safe_snapshot(self) -> Optional[Dict[int, OutputState]]:
        try:
            return self._snapshot()
        except Exception as e:
            logger.warning(f"Display scan failed: {e}")
            return None

    def _drain_events(self) -> bool:
        """Consume pending RandR events. Returns True if any arrived."""
        seen = False
        while self._display.pending_events():
            self._display.next_event()
            seen = True
        return seen

    def _monitor_loop(self):
        """Main loop - rescan on RandR events or on the polling interval."""
        last_scan = time.monotonic()
        while self._running:
            try:
                if self._display is not None:
                    dirty = self._drain_events()
                else:
                    dirty = time.monotonic() - last_scan >= self._poll_interval

                if dirty:
                    last_scan = time.monotonic()
                    self.rescan()

                time.sleep(0.1)

            except xerror.ConnectionClosedError as e:
                logger.error(f"X connection lost, falling back to polling: {e}")
                self._display = None
            except Exception as e:
                logger.error(f"Error in display watcher loop: {e}")
                time.sleep(1)

    def rescan(self):
        """Scan now and report differences to the callback."""
        state = self._safe_snapshot()
        if state is None:
            return

        changes = diff_snapshots(self._last_state, state)
        self._last_state = state
        for display_id, flags in changes:
            logger.debug(f"Display {display_id} changed: {flags!r}")
            try:
                self._callback(display_id, flags)
            except Exception as e:
                logger.error(f"Error in display change callback: {e}")
