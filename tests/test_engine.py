#!/usr/bin/env python3
"""
Tests for notification reconciliation and user commands.
"""

import sys
import threading
import time
import unittest
from pathlib import Path
from unittest.mock import Mock, patch

sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from display_control.backend import (
    ERR_COMMAND_FAILED,
    ERR_ILLEGAL_ARGUMENT,
    ERR_NOT_AVAILABLE,
    XRandRBackend,
    parse_xrandr_query,
)
from display_control.engine import ReconciliationEngine
from display_control.errors import (
    DisplayOffline,
    InsufficientDisplays,
    MirrorToggleFailed,
    ModeChangeFailed,
    UnknownDisplay,
)
from display_control.events import (
    ChangeFlags,
    DisplayAdded,
    DisplayNotification,
    DisplayRemoved,
    MirrorStateChanged,
    ModeUpdated,
    RecordReplaced,
)
from display_control.modes import ModeKey
from fake_backend import FakeBackend, FakeDisplay, raw, two_display_backend


class EngineTestCase(unittest.TestCase):
    """Engine over the two-display fake, populated but not started."""

    def setUp(self):
        self.backend = two_display_backend()
        self.engine = ReconciliationEngine(self.backend)
        self.engine.catalog.populate(self.engine.list_mode)
        self.events = []
        self.engine.subscribe(self.events.append)

    def process(self, display_id, flags):
        return self.engine.process(DisplayNotification(display_id, flags))

    def assert_consistent(self):
        for record in self.engine.current_snapshot():
            self.assertTrue(record.is_consistent(), f"{record} index invariant broken")


class TestReconciliation(EngineTestCase):

    def test_added_display_inserted(self):
        self.backend.displays[2] = FakeDisplay([raw(1280, 1024), raw(1024, 768)], raw(1280, 1024))

        events = self.process(2, ChangeFlags.ADDED)

        self.assertEqual(events, [DisplayAdded(2)])
        self.assertEqual(self.events, [DisplayAdded(2)])
        self.assertEqual(self.engine.catalog.display_ids, [1, 2, 4])
        self.assert_consistent()

    def test_duplicate_add_ignored(self):
        before = self.engine.catalog.get(4)

        events = self.process(4, ChangeFlags.ADDED)

        self.assertEqual(events, [])
        self.assertIs(self.engine.catalog.get(4), before)
        self.assertEqual(self.engine.catalog.display_ids, [1, 4])

    def test_removed_display(self):
        self.backend.displays[4].online = False
        self.assertEqual(self.process(4, ChangeFlags.REMOVED), [DisplayRemoved(4)])
        self.assertNotIn(4, self.engine.catalog)

    def test_unknown_remove_ignored(self):
        self.assertEqual(self.process(9, ChangeFlags.REMOVED), [])
        self.assertEqual(self.engine.catalog.display_ids, [1, 4])

    def test_remove_then_mode_change_in_one_notification(self):
        events = self.process(4, ChangeFlags.MODE_CHANGED | ChangeFlags.REMOVED)

        self.assertEqual(events, [DisplayRemoved(4)])
        self.assertNotIn(4, self.engine.catalog)
        self.assert_consistent()

    def test_mode_change_within_captured_list(self):
        self.backend.displays[4].current = raw(1280, 720)

        events = self.process(4, ChangeFlags.MODE_CHANGED)

        self.assertEqual(events, [ModeUpdated(4)])
        record = self.engine.catalog.get(4)
        self.assertEqual(record.current_mode, ModeKey(1280, 720, 60))
        self.assertEqual(record.current_mode_index, 1)

    def test_mode_change_to_new_mode_rebuilds_record(self):
        custom = raw(1600, 900, 60, name="1600x900_60.00")
        self.backend.displays[4].modes.append(custom)
        self.backend.displays[4].current = custom
        old = self.engine.catalog.get(4)

        events = self.process(4, ChangeFlags.MODE_CHANGED)

        self.assertEqual(events, [RecordReplaced(4)])
        record = self.engine.catalog.get(4)
        self.assertIsNot(record, old)
        self.assertIn(ModeKey(1600, 900, 60), record.available_modes)
        self.assertEqual(record.current_mode, ModeKey(1600, 900, 60))
        self.assert_consistent()

    def test_mode_change_for_unknown_display(self):
        self.assertEqual(self.process(9, ChangeFlags.MODE_CHANGED), [])

    def test_mode_change_for_offline_display_skipped_then_pruned(self):
        self.backend.displays[4].online = False
        self.backend.displays[4].current = raw(1280, 720)

        events = self.process(4, ChangeFlags.MODE_CHANGED)

        self.assertEqual(events, [DisplayRemoved(4)])

    def test_added_and_mode_changed_together(self):
        self.backend.displays[2] = FakeDisplay([raw(800, 600), raw(1024, 768)], raw(800, 600))

        events = self.process(2, ChangeFlags.MODE_CHANGED | ChangeFlags.ADDED)

        self.assertEqual(events, [DisplayAdded(2), ModeUpdated(2)])

    def test_mirror_on_and_off(self):
        self.assertEqual(self.process(4, ChangeFlags.MIRROR_ON), [MirrorStateChanged(True)])
        self.assertTrue(self.engine.mirroring)
        self.assertEqual(self.process(1, ChangeFlags.MIRROR_ON), [])
        self.assertEqual(self.process(4, ChangeFlags.MIRROR_OFF), [MirrorStateChanged(False)])
        self.assertFalse(self.engine.mirroring)

    def test_mirror_on_with_single_display_ignored(self):
        self.engine.catalog.remove(4)
        self.assertEqual(self.process(1, ChangeFlags.MIRROR_ON), [])
        self.assertFalse(self.engine.mirroring)

    def test_sweep_prunes_silently_removed_display(self):
        self.backend.displays[4].online = False
        self.backend.displays[1].current = raw(1680, 1050)

        events = self.process(1, ChangeFlags.MODE_CHANGED)

        self.assertEqual(events, [ModeUpdated(1), DisplayRemoved(4)])
        self.assertEqual(self.engine.catalog.display_ids, [1])

    def test_transient_query_failure_keeps_display(self):
        self.backend.fail_queries.add(4)
        self.backend.displays[1].current = raw(1680, 1050)

        self.assertEqual(self.process(1, ChangeFlags.MODE_CHANGED), [ModeUpdated(1)])
        self.assertIn(4, self.engine.catalog)

        self.backend.fail_queries.clear()
        self.backend.displays[4].current = raw(1280, 720)
        self.assertEqual(self.process(4, ChangeFlags.MODE_CHANGED), [ModeUpdated(4)])
        self.assertEqual(self.engine.catalog.get(4).current_mode, ModeKey(1280, 720, 60))

    def test_mode_change_with_failed_flag_query_ignored(self):
        self.backend.fail_queries.add(4)
        self.assertEqual(self.process(4, ChangeFlags.MODE_CHANGED), [])
        self.assertIn(4, self.engine.catalog)

    def test_listener_errors_do_not_stop_emission(self):
        failing = Mock(side_effect=RuntimeError("boom"))
        after = Mock()
        self.engine.subscribe(failing)
        self.engine.subscribe(after)
        self.backend.displays[4].current = raw(1024, 768)

        self.process(4, ChangeFlags.MODE_CHANGED)

        failing.assert_called_once_with(ModeUpdated(4))
        after.assert_called_once_with(ModeUpdated(4))
        self.assertEqual(self.events, [ModeUpdated(4)])

    def test_unsubscribe(self):
        self.engine.unsubscribe(self.events.append)
        self.backend.displays[4].current = raw(1024, 768)
        self.process(4, ChangeFlags.MODE_CHANGED)
        self.assertEqual(self.events, [])

    def test_resync_after_lost_notifications(self):
        self.backend.displays[4].online = False
        self.backend.displays[6] = FakeDisplay([raw(800, 600)], raw(800, 600))
        self.backend.displays[1].current = raw(1440, 900)

        events = self.engine.resync()

        self.assertEqual(events, [DisplayRemoved(4), RecordReplaced(1), DisplayAdded(6)])
        self.assertEqual(self.engine.catalog.display_ids, [1, 6])
        self.assert_consistent()


class TestNotificationQueue(unittest.TestCase):

    def test_callback_only_enqueues(self):
        backend = two_display_backend()
        engine = ReconciliationEngine(backend, queue_size=1)
        engine.catalog.populate(engine.list_mode)

        engine.on_display_change(4, ChangeFlags.REMOVED)
        self.assertIn(4, engine.catalog)

        engine.on_display_change(1, ChangeFlags.REMOVED)
        self.assertTrue(engine._resync_needed.is_set())

    def test_started_engine_processes_notifications(self):
        backend = two_display_backend()
        engine = ReconciliationEngine(backend)
        received = threading.Event()
        engine.subscribe(lambda event: received.set())

        engine.start()
        try:
            self.assertEqual(len(backend.handlers), 1)
            backend.displays[4].current = raw(1280, 720)
            backend.fire(4, ChangeFlags.MODE_CHANGED)
            self.assertTrue(received.wait(2))
            self.assertEqual(engine.catalog.get(4).current_mode, ModeKey(1280, 720, 60))
        finally:
            engine.stop()
        self.assertEqual(backend.handlers, [])

    def test_start_with_failed_enumeration(self):
        backend = two_display_backend()
        backend.fail_enumeration = True
        engine = ReconciliationEngine(backend)
        engine.start()
        try:
            self.assertEqual(engine.current_snapshot(), ())
        finally:
            engine.stop()

    @patch('display_control.backend.subprocess.run', side_effect=FileNotFoundError("xrandr"))
    def test_hotplug_while_starting_is_not_lost(self, mock_run):
        one_output = parse_xrandr_query(
            "eDP-1 connected primary 1920x1080+0+0 (normal left inverted right x axis y axis)\n"
            "   1920x1080     60.00*+\n"
            "HDMI-1 disconnected (normal left inverted right x axis y axis)\n"
        )
        two_outputs = parse_xrandr_query(
            "eDP-1 connected primary 1920x1080+0+0 (normal left inverted right x axis y axis)\n"
            "   1920x1080     60.00*+\n"
            "HDMI-1 connected 1280x1024+1920+0 (normal left inverted right x axis y axis)\n"
            "   1280x1024     60.02*+\n"
        )
        plugged = threading.Event()
        backend = XRandRBackend(event_driven=False, poll_interval=60)
        backend.query_outputs = lambda: two_outputs if plugged.is_set() else one_output
        register = backend.register_change_callback

        def register_then_plug(handler):
            # HDMI-1 appears just as the watcher takes its first scan
            plugged.set()
            register(handler)

        backend.register_change_callback = register_then_plug
        engine = ReconciliationEngine(backend)

        engine.start()
        try:
            backend._watcher.rescan()
            self.assertEqual(engine.catalog.display_ids, [0, 1])
        finally:
            engine.stop()


class TestModeChangeCommand(EngineTestCase):

    def setUp(self):
        super().setUp()
        self.backend.notify_on_commit = False

    def test_unknown_display(self):
        with self.assertRaises(UnknownDisplay):
            self.engine.request_mode_change(9, ModeKey(800, 600, 60))

    def test_offline_display(self):
        self.backend.displays[4].online = False
        with self.assertRaises(DisplayOffline):
            self.engine.request_mode_change(4, ModeKey(1280, 720, 60))

    def test_current_mode_is_noop(self):
        self.assertFalse(self.engine.request_mode_change(4, ModeKey(1920, 1080, 60)))
        self.assertEqual(self.backend.committed, [])

    def test_commits_transaction_without_touching_catalog(self):
        self.assertTrue(self.engine.request_mode_change(4, ModeKey(1280, 720, 60)))

        self.assertEqual(len(self.backend.committed), 1)
        kind, handle = self.backend.committed[0]["4"]
        self.assertEqual(kind, "mode")
        self.assertEqual((handle.width, handle.height, handle.refresh_rate), (1280, 720, 60.0))
        # Catalog follows only the host notification
        self.assertEqual(self.engine.catalog.get(4).current_mode, ModeKey(1920, 1080, 60))

        self.process(4, ChangeFlags.MODE_CHANGED)
        self.assertEqual(self.engine.catalog.get(4).current_mode, ModeKey(1280, 720, 60))

    def test_host_failure_leaves_catalog_unchanged(self):
        self.backend.commit_code = ERR_COMMAND_FAILED
        before = self.engine.current_snapshot()

        with self.assertRaises(ModeChangeFailed) as ctx:
            self.engine.request_mode_change(4, ModeKey(1280, 720, 60))

        self.assertEqual(ctx.exception.code, ERR_COMMAND_FAILED)
        self.assertEqual(ctx.exception.display_id, 4)
        self.assertEqual(self.engine.current_snapshot(), before)

    def test_failed_flag_query_rejected(self):
        self.backend.fail_queries.add(4)
        with self.assertRaises(ModeChangeFailed) as ctx:
            self.engine.request_mode_change(4, ModeKey(1280, 720, 60))
        self.assertEqual(ctx.exception.code, ERR_NOT_AVAILABLE)
        self.assertEqual(self.backend.committed, [])

    def test_unavailable_mode_rejected(self):
        with self.assertRaises(ModeChangeFailed) as ctx:
            self.engine.request_mode_change(4, ModeKey(1600, 900, 60))
        self.assertEqual(ctx.exception.code, ERR_ILLEGAL_ARGUMENT)
        self.assertEqual(self.backend.committed, [])

    def test_unavailable_mode_uses_nearest_match_when_enabled(self):
        self.assertTrue(self.engine.request_mode_change(4, ModeKey(1600, 900, 60), allow_nearest=True))
        _, handle = self.backend.committed[0]["4"]
        self.assertEqual((handle.width, handle.height), (1280, 720))

    def test_nearest_match_from_engine_setting(self):
        self.engine.nearest_match = True
        self.assertTrue(self.engine.request_mode_change(1, ModeKey(1600, 1000, 60)))
        _, handle = self.backend.committed[0]["1"]
        self.assertEqual((handle.width, handle.height), (1440, 900))

    def test_mode_vanished_from_host(self):
        self.backend.displays[4].modes = [raw(1920, 1080)]
        with self.assertRaises(ModeChangeFailed):
            self.engine.request_mode_change(4, ModeKey(1280, 720, 60))
        self.assertEqual(self.backend.committed, [])


class TestMirrorToggleCommand(EngineTestCase):

    def test_single_display_insufficient(self):
        self.engine.catalog.remove(4)
        with self.assertRaises(InsufficientDisplays):
            self.engine.request_mirror_toggle()
        self.assertFalse(self.engine.mirroring)
        self.assertEqual(self.backend.committed, [])

    def test_mirror_onto_main(self):
        self.assertTrue(self.engine.request_mirror_toggle())
        self.assertEqual(self.backend.committed, [{"4": ["mirror", 1]}])
        # Indicator waits for the host notification
        self.assertFalse(self.engine.mirroring)

    def test_unmirror_when_main_is_mirrored(self):
        self.backend.displays[1].mirrored = True
        self.backend.displays[4].mirrored = True
        self.assertFalse(self.engine.request_mirror_toggle())
        self.assertEqual(self.backend.committed, [{"4": ["mirror", None]}])

    def test_partial_failure_aborts_transaction(self):
        self.backend.displays[6] = FakeDisplay([raw(800, 600)], raw(800, 600))
        self.engine.catalog.populate()
        self.backend.mirror_codes[6] = ERR_ILLEGAL_ARGUMENT

        with self.assertRaises(MirrorToggleFailed) as ctx:
            self.engine.request_mirror_toggle()

        self.assertEqual(ctx.exception.code, ERR_ILLEGAL_ARGUMENT)
        self.assertEqual(self.backend.committed, [])
        self.assertEqual(self.backend.cancelled, 1)

    def test_commit_failure(self):
        self.backend.commit_code = ERR_COMMAND_FAILED
        with self.assertRaises(MirrorToggleFailed):
            self.engine.request_mirror_toggle()


class TestSerialization(unittest.TestCase):

    def test_concurrent_notifications_and_commands(self):
        """Host notifications and user commands racing on the same display."""
        modes = [raw(800, 600), raw(1024, 768), raw(1280, 1024)]
        backend = FakeBackend({3: FakeDisplay(modes, modes[0], main=True)})
        engine = ReconciliationEngine(backend, queue_size=1024)
        violations = []

        def check(event):
            for record in engine.current_snapshot():
                if not record.is_consistent():
                    violations.append((event, record))

        engine.subscribe(check)
        engine.start()
        try:
            def host_agent():
                # Another agent switching modes behind our back
                for i in range(60):
                    with backend._lock:
                        backend.displays[3].current = modes[i % len(modes)]
                    backend.fire(3, ChangeFlags.MODE_CHANGED)
                    time.sleep(0.001)

            def user():
                for i in range(60):
                    target = modes[(i + 1) % len(modes)]
                    try:
                        engine.request_mode_change(3, ModeKey.from_raw(target))
                    except ModeChangeFailed:
                        pass

            threads = [threading.Thread(target=host_agent), threading.Thread(target=user)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(10)

            deadline = time.monotonic() + 5
            while not engine._queue.empty() and time.monotonic() < deadline:
                time.sleep(0.01)
            time.sleep(0.1)
        finally:
            engine.stop()

        self.assertEqual(violations, [])
        record = engine.catalog.get(3)
        self.assertTrue(record.is_consistent())
        self.assertEqual(record.current_mode, ModeKey.from_raw(backend.displays[3].current))


if __name__ == '__main__':
    unittest.main()
