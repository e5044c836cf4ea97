#!/usr/bin/env python3
"""
Display Control - Resolution and Mirroring Management for X11
=============================================================

View and change the resolution/refresh rate of each connected display and
follow hotplug, mode and mirroring changes as they happen.

Usage:
    python main.py [--config PATH] [--debug] [--list | --set ID MODE | --mirror | --watch]

    Options:
        --config PATH   Path to configuration file
        --debug         Enable debug logging
        --list          List displays and their modes, then exit
        --all-modes     Include modes not usable for the desktop
        --set ID MODE   Switch display ID to MODE (e.g. 1920x1080@60), then exit
        --nearest       With --set, fall back to the nearest available mode
        --mirror        Toggle mirroring of all displays onto the main display
        --watch         Follow display changes until interrupted (default)
"""

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

from display_control.backend import XRandRBackend, check_xrandr_available
from display_control.config import Config
from display_control.engine import ReconciliationEngine
from display_control.errors import DisplayControlError
from display_control.events import ChangeEvent
from display_control.modes import ModeKey, aspect_class, parse_mode
from display_control.records import DisplayRecord, ListMode


def setup_logging(debug: bool = False, log_file: Optional[Path] = None):
    """Configure logging."""
    level = logging.DEBUG if debug else logging.INFO

    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        handlers=handlers,
    )

logger = logging.getLogger(__name__)


def build_engine(config: Config) -> ReconciliationEngine:
    """Create the backend and engine from configuration."""
    backend = XRandRBackend(
        command=config.xrandr.command,
        timeout=config.xrandr.timeout,
        retry_count=config.xrandr.retry_count,
        x_display=config.xrandr.x_display,
        event_driven=config.watcher.event_driven,
        poll_interval=config.watcher.poll_interval,
    )
    return ReconciliationEngine(
        backend,
        list_mode=config.display.list_mode,
        nearest_match=config.display.nearest_match,
        queue_size=config.engine.queue_size,
    )


def format_record(record: DisplayRecord) -> str:
    """Multi-line description of a display and its modes."""
    flags = []
    if record.is_main:
        flags.append("main")
    if record.is_builtin:
        flags.append("built-in")
    if record.is_in_mirror_set:
        flags.append("mirrored")
    if record.degraded:
        flags.append("degraded")

    lines = [f"Display {record.display_id}: {record.label}"
             + (f" [{', '.join(flags)}]" if flags else "")]
    if record.current_mode.is_sentinel:
        lines.append("    (mode list unavailable)")
    for index, mode in enumerate(record.available_modes):
        marker = "*" if index == record.current_mode_index else " "
        lines.append(f"  {marker} {mode.width:>5} × {mode.height:<5} "
                     f"{'@ %gHz' % mode.refresh_rate if mode.refresh_rate > 0 else '':<10} "
                     f"{aspect_class(mode).value}")
    return "\n".join(lines)


def list_displays(engine: ReconciliationEngine) -> int:
    """Print every display with its modes."""
    engine.catalog.populate(engine.list_mode)
    if not len(engine.catalog):
        print("No online displays found.")
        return 1
    for record in engine.current_snapshot():
        print(format_record(record))
        print()
    return 0


def resolve_target(record: DisplayRecord, target: ModeKey) -> ModeKey:
    """Pick the highest refresh rate when the user gave only a resolution."""
    if target.refresh_rate > 0:
        return target
    candidates = [m for m in record.available_modes
                  if m.width == target.width and m.height == target.height]
    return candidates[-1] if candidates else target


def set_mode(engine: ReconciliationEngine, display_id: int, mode_text: str, nearest: bool) -> int:
    """Switch one display to the requested mode."""
    try:
        target = parse_mode(mode_text)
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    engine.catalog.populate(engine.list_mode)
    try:
        record = engine.catalog.get(display_id)
        target = resolve_target(record, target)
        changed = engine.request_mode_change(display_id, target, allow_nearest=nearest or None)
    except DisplayControlError as e:
        print(f"Error: {e}")
        return 1

    if changed:
        print(f"Display {display_id} ({record.label}) switched to {target}")
    else:
        print(f"Display {display_id} ({record.label}) already at {record.current_mode}")
    return 0


def toggle_mirroring(engine: ReconciliationEngine) -> int:
    """Toggle mirroring onto the main display."""
    engine.catalog.populate(engine.list_mode)
    try:
        mirroring = engine.request_mirror_toggle()
    except DisplayControlError as e:
        print(f"Error: {e}")
        return 1
    print("Mirroring enabled" if mirroring else "Mirroring disabled")
    return 0


def watch(engine: ReconciliationEngine) -> int:
    """Run the engine and log change events until interrupted."""
    stop_event = threading.Event()

    def on_event(event: ChangeEvent):
        logger.info(f"Change event: {event}")

    def on_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop_event.set()

    signal.signal(signal.SIGINT, on_signal)
    signal.signal(signal.SIGTERM, on_signal)

    engine.subscribe(on_event)
    engine.start()
    for record in engine.current_snapshot():
        logger.info(f"{record}: {record.current_mode}, {len(record.available_modes)} modes")

    try:
        while not stop_event.is_set():
            stop_event.wait(0.5)
    finally:
        engine.stop()
    return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Display Control - resolution and mirroring management",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    parser.add_argument(
        '--config', '-c',
        type=Path,
        help='Path to configuration file'
    )
    parser.add_argument(
        '--debug', '-d',
        action='store_true',
        help='Enable debug logging'
    )
    parser.add_argument(
        '--list', '-l',
        action='store_true',
        help='List displays and their modes, then exit'
    )
    parser.add_argument(
        '--all-modes',
        action='store_true',
        help='Include modes not usable for the desktop'
    )
    parser.add_argument(
        '--set', '-s',
        nargs=2,
        metavar=('ID', 'MODE'),
        help='Switch display ID to MODE (e.g. 1920x1080@60) and exit'
    )
    parser.add_argument(
        '--nearest',
        action='store_true',
        help='With --set, use the nearest available mode if MODE is unavailable'
    )
    parser.add_argument(
        '--mirror', '-m',
        action='store_true',
        help='Toggle mirroring onto the main display and exit'
    )
    parser.add_argument(
        '--watch', '-w',
        action='store_true',
        help='Follow display changes until interrupted (default)'
    )

    args = parser.parse_args()

    config = Config(args.config)
    config.load()
    if args.all_modes:
        config.display.list_mode = ListMode.ALL

    # Only the long-running mode writes a log file
    one_shot = args.list or args.set or args.mirror
    setup_logging(args.debug, None if one_shot else config.log_file)

    available, msg = check_xrandr_available(config.xrandr.command, config.xrandr.x_display, config.xrandr.timeout)
    if not available:
        print(f"Error: {msg}")
        return 1

    engine = build_engine(config)

    if args.list:
        return list_displays(engine)

    if args.set:
        try:
            display_id = int(args.set[0])
        except ValueError:
            print(f"Error: display ID must be a number, got {args.set[0]!r}")
            return 1
        return set_mode(engine, display_id, args.set[1], args.nearest)

    if args.mirror:
        return toggle_mirroring(engine)

    return watch(engine)


if __name__ == '__main__':
    sys.exit(main())
