"""
Reconciliation Engine - Keep the display catalog in step with the host
======================================================================

The backend change callback only enqueues notifications. A single worker
thread drains the queue in delivery order and applies each notification
to the catalog under the catalog lock. User commands validate under the
same lock, then release it before running the blocking reconfiguration
transaction; the resulting change arrives as an ordinary notification.
"""

import logging
import queue
import threading
from typing import Callable, List, Optional, Tuple

from .backend import (
    DisplayBackend,
    ERR_ILLEGAL_ARGUMENT,
    ERR_NOT_AVAILABLE,
    RESULT_NAMES,
    SUCCESS,
)
from .catalog import DisplayCatalog
from .errors import (
    DisplayOffline,
    InsufficientDisplays,
    MirrorToggleFailed,
    ModeChangeFailed,
    OsQueryFailed,
    StaleModeList,
    UnknownDisplay,
)
from .events import (
    ChangeEvent,
    ChangeFlags,
    DisplayAdded,
    DisplayNotification,
    DisplayRemoved,
    MirrorStateChanged,
    ModeUpdated,
    RecordReplaced,
)
from .modes import ModeKey
from .records import DisplayRecord, ListMode, build_record

logger = logging.getLogger(__name__)

Listener = Callable[[ChangeEvent], None]

ALL_FLAGS = (ChangeFlags.ADDED | ChangeFlags.REMOVED | ChangeFlags.MODE_CHANGED |
             ChangeFlags.MIRROR_ON | ChangeFlags.MIRROR_OFF)


class ReconciliationEngine:
    """
    Owns the display catalog and applies change notifications to it.

    Subscribers receive ChangeEvent objects after each reconciliation step
    and may issue mode change and mirror toggle commands.
    """

    def __init__(
        self,
        backend: DisplayBackend,
        list_mode: ListMode = ListMode.SAFE,
        nearest_match: bool = False,
        queue_size: int = 64,
    ):
        """
        Initialize engine.

        Args:
            backend: Host display backend
            list_mode: Mode list captured for records
            nearest_match: Substitute the nearest available mode for
                unavailable mode change targets
            queue_size: Maximum pending notifications
        """
        self.backend = backend
        self.catalog = DisplayCatalog(backend)
        self.list_mode = list_mode
        self.nearest_match = nearest_match

        self._lock = threading.RLock()
        self._command_lock = threading.Lock()
        self._queue: "queue.Queue[DisplayNotification]" = queue.Queue(maxsize=max(1, queue_size))
        self._resync_needed = threading.Event()
        self._listeners: List[Listener] = []
        self._listeners_lock = threading.Lock()
        self._mirroring = False
        self._running = False
        self._thread: Optional[threading.Thread] = None

    # === Lifecycle ===

    def start(self):
        """
        Register for changes, populate the catalog and start the worker.

        Notifications arriving while the catalog is populated wait in the
        queue; any overlap with the initial enumeration is ignored as a
        duplicate add.
        """
        if self._running:
            return

        self._running = True
        self.backend.register_change_callback(self.on_display_change)

        with self._lock:
            self.catalog.populate(self.list_mode)
            self._mirroring = any(r.is_in_mirror_set for r in self.catalog)

        self._thread = threading.Thread(target=self._worker_loop, name="display-reconciler", daemon=True)
        self._thread.start()
        logger.info(f"Reconciliation engine started ({len(self.catalog)} display(s), "
                    f"mirroring {'on' if self._mirroring else 'off'})")

    def stop(self):
        """Deregister from the backend and stop the worker."""
        if not self._running:
            return
        self.backend.unregister_change_callback(self.on_display_change)
        self._running = False
        if self._thread:
            self._thread.join(timeout=2)
            self._thread = None
        logger.info("Reconciliation engine stopped")

    # === Presentation surface ===

    @property
    def mirroring(self) -> bool:
        return self._mirroring

    def current_snapshot(self) -> Tuple[DisplayRecord, ...]:
        """Copies of all records in ascending id order."""
        with self._lock:
            return self.catalog.snapshot()

    def subscribe(self, listener: Listener):
        with self._listeners_lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def unsubscribe(self, listener: Listener):
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _emit(self, events: List[ChangeEvent]):
        with self._listeners_lock:
            listeners = list(self._listeners)
        for event in events:
            for listener in listeners:
                try:
                    listener(event)
                except Exception as e:
                    logger.error(f"Error in change listener for {event}: {e}")

    # === Notification intake ===

    def on_display_change(self, display_id: int, flags):
        """Backend callback: enqueue only, never touch the catalog here."""
        notification = DisplayNotification(display_id, ChangeFlags(int(flags) & ALL_FLAGS))
        try:
            self._queue.put_nowait(notification)
        except queue.Full:
            logger.error(f"Notification queue full, dropped {notification}; scheduling full resync")
            self._resync_needed.set()

    def _worker_loop(self):
        while self._running:
            try:
                notification = self._queue.get(timeout=0.2)
            except queue.Empty:
                notification = None

            try:
                if notification is not None:
                    self.process(notification)
                if self._resync_needed.is_set() and self._queue.empty():
                    self._resync_needed.clear()
                    self.resync()
            except Exception as e:
                logger.error(f"Error reconciling {notification}: {e}")

    # === Reconciliation ===

    def process(self, notification: DisplayNotification) -> List[ChangeEvent]:
        """
        Apply one notification to the catalog and emit the resulting events.

        Steps run in a fixed order whatever the bit order: added, removed,
        mode changed, mirroring, then a sweep for offline displays.

        Returns:
            Events emitted, in order
        """
        logger.info(f"Reconciling {notification}")
        with self._lock:
            events = []
            display_id = notification.display_id
            flags = notification.flags

            if ChangeFlags.ADDED in flags:
                events.extend(self._handle_added(display_id))
            if ChangeFlags.REMOVED in flags:
                events.extend(self._handle_removed(display_id))
            if ChangeFlags.MODE_CHANGED in flags:
                events.extend(self._handle_mode_changed(display_id))
            if flags & (ChangeFlags.MIRROR_ON | ChangeFlags.MIRROR_OFF):
                events.extend(self._handle_mirror(flags))

            events.extend(DisplayRemoved(i) for i in self.catalog.prune_offline())

        self._emit(events)
        return events

    def _handle_added(self, display_id: int) -> List[ChangeEvent]:
        if display_id in self.catalog:
            logger.warning(f"DuplicateAddIgnored: display {display_id} is already in the catalog")
            return []
        record = build_record(self.backend, display_id, self.list_mode)
        self.catalog.insert(record)
        logger.info(f"Display connected: {record}")
        return [DisplayAdded(display_id)]

    def _handle_removed(self, display_id: int) -> List[ChangeEvent]:
        try:
            record = self.catalog.remove(display_id)
        except UnknownDisplay:
            logger.warning(f"UnknownRemoveIgnored: display {display_id} is not in the catalog")
            return []
        logger.info(f"Display removed: {record}")
        return [DisplayRemoved(display_id)]

    def _handle_mode_changed(self, display_id: int) -> List[ChangeEvent]:
        try:
            record = self.catalog.get(display_id)
            if not record.check_online():
                raise DisplayOffline(display_id)
            live_mode = ModeKey.from_raw(self.backend.query_current_mode(display_id))
        except (UnknownDisplay, DisplayOffline, OsQueryFailed) as e:
            logger.warning(f"Mode change for display {display_id} ignored: {e}")
            return []

        try:
            self.catalog.update_mode(display_id, live_mode)
        except StaleModeList:
            logger.info(f"New mode {live_mode} for {record} not in last scan, rescanning")
            self.catalog.replace(build_record(self.backend, display_id, self.list_mode))
            return [RecordReplaced(display_id)]

        logger.info(f"Mode changed for {record}: {live_mode}")
        return [ModeUpdated(display_id)]

    def _handle_mirror(self, flags: ChangeFlags) -> List[ChangeEvent]:
        if ChangeFlags.MIRROR_ON in flags:
            if len(self.catalog) <= 1:
                logger.warning(f"Mirroring reported with {len(self.catalog)} display(s), ignored")
                return []
            mirroring = True
        else:
            mirroring = False

        if mirroring == self._mirroring:
            return []
        self._mirroring = mirroring
        logger.info(f"Mirroring {'activated' if mirroring else 'deactivated'}")
        return [MirrorStateChanged(mirroring)]

    def resync(self) -> List[ChangeEvent]:
        """
        Rebuild the catalog against a fresh enumeration.

        Used when notifications were lost, e.g. on queue overflow.
        """
        with self._lock:
            try:
                online = set(self.backend.enumerate_online_displays())
            except OsQueryFailed as e:
                logger.error(f"Resync failed: {e}")
                return []

            events: List[ChangeEvent] = []
            for display_id in self.catalog.display_ids:
                if display_id not in online:
                    self.catalog.remove(display_id)
                    events.append(DisplayRemoved(display_id))

            for display_id in sorted(online):
                record = build_record(self.backend, display_id, self.list_mode)
                if display_id not in self.catalog:
                    self.catalog.insert(record)
                    events.append(DisplayAdded(display_id))
                elif record != self.catalog.get(display_id):
                    self.catalog.replace(record)
                    events.append(RecordReplaced(display_id))

            mirroring = any(r.is_in_mirror_set for r in self.catalog)
            if mirroring != self._mirroring:
                self._mirroring = mirroring
                events.append(MirrorStateChanged(mirroring))

        logger.info(f"Resync complete: {len(events)} change(s)")
        self._emit(events)
        return events

    # === Commands ===

    def request_mode_change(self, display_id: int, target_mode: ModeKey,
                            allow_nearest: Optional[bool] = None) -> bool:
        """
        Switch a display to a mode from its captured list.

        The catalog is not touched here; the host's change notification
        updates it once the switch has happened.

        Args:
            display_id: Display to reconfigure
            target_mode: Requested mode
            allow_nearest: Override the engine's nearest_match setting

        Returns:
            True if a reconfiguration was committed, False if already current

        Raises:
            UnknownDisplay: If the display is not in the catalog
            DisplayOffline: If the display is not online
            ModeChangeFailed: If the mode is unavailable or the host rejects it
        """
        with self._command_lock:
            with self._lock:
                record = self.catalog.get(display_id)
                try:
                    online = record.check_online()
                except OsQueryFailed as e:
                    raise ModeChangeFailed(display_id, ERR_NOT_AVAILABLE, str(e)) from e
                if not online:
                    raise DisplayOffline(display_id)
                if target_mode == record.current_mode:
                    logger.debug(f"{record} already at {target_mode}")
                    return False

                target = target_mode
                if record.index_of(target) is None:
                    use_nearest = self.nearest_match if allow_nearest is None else allow_nearest
                    nearest = self.catalog.nearest_mode(display_id, target) if use_nearest else None
                    if nearest is None:
                        raise ModeChangeFailed(display_id, ERR_ILLEGAL_ARGUMENT,
                                               f"{target} is not an available mode")
                    logger.info(f"{target} unavailable on {record}, using nearest match {nearest}")
                    target = nearest
                    if target == record.current_mode:
                        return False

            # Blocking host calls run outside the catalog lock
            try:
                raw_mode = next((m for m in self.backend.query_display_modes(display_id, False)
                                 if target.matches(m)), None)
                if raw_mode is None:
                    raise ModeChangeFailed(display_id, ERR_ILLEGAL_ARGUMENT,
                                           f"{target} is no longer offered by the display")
                transaction = self.backend.begin_reconfiguration()
            except OsQueryFailed as e:
                raise ModeChangeFailed(display_id, ERR_NOT_AVAILABLE, str(e)) from e

            code = self.backend.configure_mode(transaction, display_id, raw_mode)
            if code == SUCCESS:
                code = self.backend.commit(transaction)
            else:
                self.backend.cancel_reconfiguration(transaction)

            if code != SUCCESS:
                logger.error(f"Mode not changed for display {display_id}: "
                             f"{RESULT_NAMES.get(code, code)} ({code})")
                raise ModeChangeFailed(display_id, code)

            logger.info(f"Mode change to {target} committed for display {display_id}")
            return True

    def request_mirror_toggle(self) -> bool:
        """
        Mirror every non-main online display onto the main display, or undo it.

        All displays are configured in one transaction; any failure cancels
        the whole transaction. The mirroring indicator changes only when
        the host's notification arrives.

        Returns:
            True if mirroring was requested, False if un-mirroring

        Raises:
            InsufficientDisplays: If the catalog has fewer than two displays
            MirrorToggleFailed: If the host rejects the configuration
        """
        with self._command_lock:
            with self._lock:
                if len(self.catalog) <= 1:
                    raise InsufficientDisplays(f"Mirroring needs at least 2 displays, "
                                               f"{len(self.catalog)} connected")
                records = list(self.catalog)
                main = next((r for r in records if r.is_main), None)
                if main is None:
                    raise MirrorToggleFailed(ERR_ILLEGAL_ARGUMENT)
                target = None if main.is_in_mirror_set else main.display_id
                others = [r.display_id for r in records
                          if r.display_id != main.display_id and r.is_online]

            try:
                transaction = self.backend.begin_reconfiguration()
            except OsQueryFailed as e:
                logger.error(f"Mirror toggle failed: {e}")
                raise MirrorToggleFailed(ERR_NOT_AVAILABLE) from e

            for display_id in others:
                code = self.backend.configure_mirror(transaction, display_id, target)
                if code != SUCCESS:
                    self.backend.cancel_reconfiguration(transaction)
                    logger.error(f"Mirror toggle aborted at display {display_id}: "
                                 f"{RESULT_NAMES.get(code, code)} ({code})")
                    raise MirrorToggleFailed(code)

            code = self.backend.commit(transaction)
            if code != SUCCESS:
                logger.error(f"Mirror toggle result: error ({code})")
                raise MirrorToggleFailed(code)

            logger.info(f"Mirror toggle result: {'mirroring' if target is not None else 'un-mirroring'} committed")
            return target is not None

