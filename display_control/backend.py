"""
Display Backend - Host display subsystem interface via xrandr
=============================================================

The core only talks to the abstract DisplayBackend. XRandRBackend
implements it for X11 with the xrandr command line tool; change
notifications come from a DisplayChangeWatcher.
"""

import os
import re
import subprocess
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Tuple
from dataclasses import dataclass, field

from .errors import OsQueryFailed
from .events import ChangeFlags
from .modes import ModeKey
from .watcher import DisplayChangeWatcher, OutputState

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[int, ChangeFlags], None]

# Reconfiguration result codes
SUCCESS = 0
ERR_ILLEGAL_ARGUMENT = 1001
ERR_COMMAND_FAILED = 1002
ERR_TIMEOUT = 1003
ERR_NOT_AVAILABLE = 1004

RESULT_NAMES = {
    SUCCESS: "success",
    ERR_ILLEGAL_ARGUMENT: "illegal argument",
    ERR_COMMAND_FAILED: "command failed",
    ERR_TIMEOUT: "timed out",
    ERR_NOT_AVAILABLE: "not available",
}

# Smallest mode considered usable for a standard desktop
MIN_DESKTOP_WIDTH = 640
MIN_DESKTOP_HEIGHT = 480

BUILTIN_CONNECTORS = ("eDP", "LVDS", "DSI")


@dataclass(frozen=True)
class RawMode:
    """A mode as reported by the host. Identity is never used, only the value."""
    name: str
    width: int
    height: int
    refresh_rate: float
    interlaced: bool = False
    preferred: bool = False

    @property
    def usable_for_desktop(self) -> bool:
        return (not self.interlaced and
                self.width >= MIN_DESKTOP_WIDTH and
                self.height >= MIN_DESKTOP_HEIGHT)

    @property
    def key(self) -> ModeKey:
        return ModeKey.from_raw(self)


@dataclass(frozen=True)
class DisplayFlags:
    """Live display flags."""
    is_builtin: bool = False
    is_main: bool = False
    is_in_mirror_set: bool = False
    is_online: bool = False


@dataclass
class ReconfigurationTransaction:
    """Pending reconfiguration, applied atomically by commit()."""
    output_names: Dict[int, str] = field(default_factory=dict)
    output_args: Dict[str, List[str]] = field(default_factory=dict)
    main_name: Optional[str] = None
    last_placed: Optional[str] = None
    closed: bool = False

    @property
    def command_args(self) -> List[str]:
        args = []
        for name, output_args in self.output_args.items():
            args.extend(["--output", name] + output_args)
        return args


class DisplayBackend(ABC):
    """Collaborator surface of the host display subsystem."""

    @abstractmethod
    def enumerate_online_displays(self) -> List[int]:
        """Return ids of all online displays. Raises OsQueryFailed."""

    @abstractmethod
    def query_display_modes(self, display_id: int, filter_usable_for_desktop: bool) -> List[RawMode]:
        """Return raw modes of a display. Raises OsQueryFailed."""

    @abstractmethod
    def query_current_mode(self, display_id: int) -> RawMode:
        """Return the active mode of a display. Raises OsQueryFailed."""

    @abstractmethod
    def query_display_flags(self, display_id: int) -> DisplayFlags:
        """Return live flags of a display. Raises OsQueryFailed."""

    @abstractmethod
    def resolve_display_label(self, display_id: int) -> str:
        """Best-effort human-readable name; falls back to str(display_id)."""

    @abstractmethod
    def begin_reconfiguration(self) -> ReconfigurationTransaction:
        """Start a reconfiguration transaction. Raises OsQueryFailed."""

    @abstractmethod
    def configure_mode(self, transaction: ReconfigurationTransaction,
                       display_id: int, mode: RawMode) -> int:
        """Queue a mode change. Returns a result code."""

    @abstractmethod
    def configure_mirror(self, transaction: ReconfigurationTransaction,
                         display_id: int, target_id: Optional[int]) -> int:
        """Queue mirroring of display_id onto target_id, or un-mirroring for None."""

    @abstractmethod
    def commit(self, transaction: ReconfigurationTransaction) -> int:
        """Apply the transaction atomically. Returns a result code."""

    @abstractmethod
    def cancel_reconfiguration(self, transaction: ReconfigurationTransaction):
        """Discard a transaction without applying it."""

    @abstractmethod
    def register_change_callback(self, handler: ChangeHandler):
        """Register a (display_id, flags) change handler."""

    @abstractmethod
    def unregister_change_callback(self, handler: ChangeHandler):
        """Remove a change handler."""


@dataclass
class XRandROutput:
    """One output from `xrandr --query`."""
    index: int
    name: str
    connected: bool
    primary: bool = False
    geometry: Optional[Tuple[int, int, int, int]] = None  # x, y, width, height
    modes: List[RawMode] = field(default_factory=list)
    current_mode: Optional[RawMode] = None

    @property
    def is_online(self) -> bool:
        return self.connected and self.current_mode is not None

    @property
    def is_builtin(self) -> bool:
        return self.name.startswith(BUILTIN_CONNECTORS)


_OUTPUT_RE = re.compile(
    r'^(\S+)\s+(connected|disconnected|unknown connection)\s*(primary\s+)?'
    r'(?:(\d+)x(\d+)\+(-?\d+)\+(-?\d+))?'
)
_MODE_LINE_RE = re.compile(r'^\s+(\d+)x(\d+)(\S*)\s+(.*)$')
_RATE_RE = re.compile(r'^(\d+(?:\.\d+)?)(\*?)(\+?)$')


def parse_xrandr_query(text: str) -> List[XRandROutput]:
    """
    Parse `xrandr --query` output.

    Output indices follow xrandr's listing order, which includes
    disconnected outputs and so stays stable for the X session.

    Args:
        text: stdout of `xrandr --query`

    Returns:
        List of XRandROutput in listing order
    """
    outputs: List[XRandROutput] = []
    current: Optional[XRandROutput] = None

    for line in text.split('\n'):
        if not line.strip() or line.startswith('Screen '):
            continue

        match = _OUTPUT_RE.match(line)
        if match and not line[0].isspace():
            geometry = None
            if match.group(4):
                geometry = (int(match.group(6)), int(match.group(7)),
                            int(match.group(4)), int(match.group(5)))
            current = XRandROutput(
                index=len(outputs),
                name=match.group(1),
                connected=match.group(2) == 'connected',
                primary=bool(match.group(3)),
                geometry=geometry,
            )
            outputs.append(current)
            continue

        if current is None:
            continue

        mode_match = _MODE_LINE_RE.match(line)
        if not mode_match:
            continue

        width = int(mode_match.group(1))
        height = int(mode_match.group(2))
        suffix = mode_match.group(3)
        name = f"{width}x{height}{suffix}"
        interlaced = suffix.startswith('i')

        # Rates look like "60.02*+  59.97" or "60.00 +"; a lone "*" or "+"
        # belongs to the rate before it.
        rates: List[List] = []
        for token in mode_match.group(4).split():
            rate_match = _RATE_RE.match(token)
            if rate_match:
                rates.append([float(rate_match.group(1)),
                              bool(rate_match.group(2)),
                              bool(rate_match.group(3))])
            elif rates and token.strip('*+') == '':
                rates[-1][1] = rates[-1][1] or '*' in token
                rates[-1][2] = rates[-1][2] or '+' in token

        for rate, is_current, is_preferred in rates:
            raw = RawMode(name=name, width=width, height=height, refresh_rate=rate,
                          interlaced=interlaced, preferred=is_preferred)
            current.modes.append(raw)
            if is_current:
                current.current_mode = raw

    return outputs


def parse_edid_blocks(verbose_text: str) -> Dict[str, bytes]:
    """
    Extract raw EDID per output name from `xrandr --verbose` output.

    Returns:
        Dictionary mapping output name to EDID bytes
    """
    blocks: Dict[str, bytes] = {}
    output_name = None
    hex_lines: Optional[List[str]] = None

    for line in verbose_text.split('\n'):
        if hex_lines is not None:
            stripped = line.strip()
            if re.fullmatch(r'[0-9a-fA-F]{32}', stripped):
                hex_lines.append(stripped)
                continue
            if output_name and hex_lines:
                blocks[output_name] = bytes.fromhex(''.join(hex_lines))
            hex_lines = None

        match = _OUTPUT_RE.match(line)
        if match and not line[0].isspace():
            output_name = match.group(1)
        elif line.strip() == 'EDID:':
            hex_lines = []

    if hex_lines and output_name:
        blocks[output_name] = bytes.fromhex(''.join(hex_lines))
    return blocks


EDID_HEADER = b'\x00\xff\xff\xff\xff\xff\xff\x00'


def edid_vendor_product(edid: bytes) -> Optional[Tuple[str, int]]:
    """Return (PNP vendor id, product code) from an EDID base block."""
    if len(edid) < 128 or edid[:8] != EDID_HEADER:
        return None
    vendor = (edid[8] << 8) | edid[9]
    pnp = ''.join(chr(((vendor >> shift) & 0x1F) + ord('A') - 1) for shift in (10, 5, 0))
    product = edid[10] | (edid[11] << 8)
    return pnp, product


def edid_monitor_name(edid: bytes) -> Optional[str]:
    """Return the monitor name descriptor (tag 0xFC) of an EDID base block."""
    if len(edid) < 128 or edid[:8] != EDID_HEADER:
        return None
    for offset in (54, 72, 90, 108):
        descriptor = edid[offset:offset + 18]
        if descriptor[0:2] == b'\x00\x00' and descriptor[3] == 0xFC:
            name = descriptor[5:18].decode('ascii', errors='replace').split('\n')[0].strip()
            return name or None
    return None


class XRandRBackend(DisplayBackend):
    """
    DisplayBackend for X11 using the xrandr command line tool.

    Every query runs xrandr afresh; nothing is cached between calls.
    """

    def __init__(
        self,
        command: str = "xrandr",
        timeout: float = 5.0,
        retry_count: int = 1,
        x_display: Optional[str] = None,
        event_driven: bool = True,
        poll_interval: float = 2.0,
    ):
        """
        Initialize xrandr backend.

        Args:
            command: xrandr executable
            timeout: Command timeout in seconds
            retry_count: Attempts per query before OsQueryFailed
            x_display: X display name, or None for $DISPLAY
            event_driven: Use RandR events for change notification
            poll_interval: Rescan interval when polling
        """
        self.command = command
        self.timeout = timeout
        self.retry_count = max(1, retry_count)
        self.x_display = x_display
        self.event_driven = event_driven
        self.poll_interval = poll_interval
        self._lock = threading.Lock()
        self._handlers_lock = threading.Lock()
        self._change_handlers: List[ChangeHandler] = []
        self._watcher: Optional[DisplayChangeWatcher] = None

    def _environ(self) -> Optional[Dict[str, str]]:
        if not self.x_display:
            return None
        env = dict(os.environ)
        env['DISPLAY'] = self.x_display
        return env

    def _run_xrandr(self, args: List[str]) -> subprocess.CompletedProcess:
        """
        Run an xrandr query with retry logic.

        Raises:
            OsQueryFailed: If the command fails after retries
        """
        full_command = [self.command] + args
        last_error = None

        with self._lock:
            for attempt in range(self.retry_count):
                try:
                    logger.debug(f"Running: {' '.join(full_command)}")
                    return subprocess.run(
                        full_command,
                        capture_output=True,
                        text=True,
                        timeout=self.timeout,
                        check=True,
                        env=self._environ(),
                    )
                except subprocess.CalledProcessError as e:
                    last_error = e
                    stderr_msg = e.stderr.strip() if e.stderr else "(no stderr)"
                    logger.warning(
                        f"xrandr failed (attempt {attempt + 1}/{self.retry_count}): "
                        f"{' '.join(args)} → {stderr_msg}"
                    )
                except subprocess.TimeoutExpired as e:
                    last_error = e
                    logger.warning(
                        f"xrandr timed out after {self.timeout:.1f}s "
                        f"(attempt {attempt + 1}/{self.retry_count}): {' '.join(args)}"
                    )
                except OSError as e:
                    # Missing binary will not fix itself
                    raise OsQueryFailed(f"Cannot run {self.command}: {e}") from e
                if attempt < self.retry_count - 1:
                    time.sleep(0.3 * (attempt + 1))

        raise OsQueryFailed(f"xrandr {' '.join(args)} failed after {self.retry_count} attempts: {last_error}")

    def query_outputs(self) -> List[XRandROutput]:
        """Return all outputs, connected or not."""
        result = self._run_xrandr(["--query"])
        return parse_xrandr_query(result.stdout)

    def _find_output(self, outputs: List[XRandROutput], display_id: int) -> XRandROutput:
        if 0 <= display_id < len(outputs):
            return outputs[display_id]
        raise OsQueryFailed(f"No xrandr output with id {display_id}")

    @staticmethod
    def _main_output(outputs: List[XRandROutput]) -> Optional[XRandROutput]:
        online = [o for o in outputs if o.is_online]
        for output in online:
            if output.primary:
                return output
        return online[0] if online else None

    @staticmethod
    def _mirror_set(outputs: List[XRandROutput]) -> List[int]:
        """Ids of online outputs sharing their origin with another online output."""
        online = [o for o in outputs if o.is_online and o.geometry]
        mirrored = []
        for output in online:
            origin = output.geometry[:2]
            if any(other is not output and other.geometry[:2] == origin for other in online):
                mirrored.append(output.index)
        return mirrored

    def enumerate_online_displays(self) -> List[int]:
        return [o.index for o in self.query_outputs() if o.is_online]

    def query_display_modes(self, display_id: int, filter_usable_for_desktop: bool) -> List[RawMode]:
        output = self._find_output(self.query_outputs(), display_id)
        if filter_usable_for_desktop:
            return [m for m in output.modes if m.usable_for_desktop]
        return list(output.modes)

    def query_current_mode(self, display_id: int) -> RawMode:
        output = self._find_output(self.query_outputs(), display_id)
        if output.current_mode is None:
            raise OsQueryFailed(f"Display {display_id} ({output.name}) has no active mode")
        return output.current_mode

    def query_display_flags(self, display_id: int) -> DisplayFlags:
        outputs = self.query_outputs()
        output = self._find_output(outputs, display_id)
        main = self._main_output(outputs)
        return DisplayFlags(
            is_builtin=output.is_builtin,
            is_main=main is output,
            is_in_mirror_set=display_id in self._mirror_set(outputs),
            is_online=output.is_online,
        )

    def resolve_display_label(self, display_id: int) -> str:
        """Monitor name from EDID, falling back to the stringified id."""
        try:
            outputs = self.query_outputs()
            output = self._find_output(outputs, display_id)
            edid = parse_edid_blocks(self._run_xrandr(["--verbose"]).stdout).get(output.name)
        except OsQueryFailed as e:
            logger.debug(f"Could not resolve label for display {display_id}: {e}")
            return str(display_id)

        if not edid:
            logger.debug(f"No EDID for display {display_id} ({output.name})")
            return str(display_id)

        vendor_product = edid_vendor_product(edid)
        name = edid_monitor_name(edid)
        if vendor_product:
            logger.debug(f"Display {display_id} ({output.name}): vendor {vendor_product[0]}, "
                         f"product 0x{vendor_product[1]:04x}, name {name!r}")
        return name or str(display_id)

    def snapshot(self) -> Dict[int, OutputState]:
        """State of every online output, used for change detection."""
        outputs = self.query_outputs()
        mirrored = set(self._mirror_set(outputs))
        return {
            o.index: OutputState(
                mode=o.current_mode.key,
                in_mirror_set=o.index in mirrored,
            )
            for o in outputs if o.is_online
        }

    def begin_reconfiguration(self) -> ReconfigurationTransaction:
        outputs = self.query_outputs()
        main = self._main_output(outputs)
        return ReconfigurationTransaction(
            output_names={o.index: o.name for o in outputs if o.connected},
            main_name=main.name if main else None,
        )

    def configure_mode(self, transaction: ReconfigurationTransaction,
                       display_id: int, mode: RawMode) -> int:
        name = transaction.output_names.get(display_id)
        if transaction.closed or name is None:
            return ERR_ILLEGAL_ARGUMENT
        args = ["--mode", mode.name]
        if mode.refresh_rate > 0:
            args.extend(["--rate", f"{mode.refresh_rate:.2f}"])
        transaction.output_args[name] = args
        return SUCCESS

    def configure_mirror(self, transaction: ReconfigurationTransaction,
                         display_id: int, target_id: Optional[int]) -> int:
        name = transaction.output_names.get(display_id)
        if transaction.closed or name is None:
            return ERR_ILLEGAL_ARGUMENT

        if target_id is None:
            # Lay un-mirrored outputs out side by side to the right of main
            anchor = transaction.last_placed or transaction.main_name
            if anchor is None or anchor == name:
                return ERR_ILLEGAL_ARGUMENT
            transaction.output_args[name] = ["--auto", "--right-of", anchor]
            transaction.last_placed = name
        else:
            target_name = transaction.output_names.get(target_id)
            if target_name is None or target_name == name:
                return ERR_ILLEGAL_ARGUMENT
            transaction.output_args[name] = ["--auto", "--same-as", target_name]
        return SUCCESS

    def commit(self, transaction: ReconfigurationTransaction) -> int:
        if transaction.closed:
            return ERR_ILLEGAL_ARGUMENT
        transaction.closed = True
        if not transaction.output_args:
            return SUCCESS

        full_command = [self.command] + transaction.command_args
        logger.info(f"Applying display configuration: {' '.join(full_command)}")
        try:
            with self._lock:
                subprocess.run(
                    full_command,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                    check=True,
                    env=self._environ(),
                )
        except subprocess.CalledProcessError as e:
            stderr_msg = e.stderr.strip() if e.stderr else "(no stderr)"
            logger.error(f"xrandr rejected configuration (exit {e.returncode}): {stderr_msg}")
            return ERR_COMMAND_FAILED
        except subprocess.TimeoutExpired:
            logger.error(f"xrandr timed out after {self.timeout:.1f}s applying configuration")
            return ERR_TIMEOUT
        except OSError as e:
            logger.error(f"Cannot run {self.command}: {e}")
            return ERR_NOT_AVAILABLE
        return SUCCESS

    def cancel_reconfiguration(self, transaction: ReconfigurationTransaction):
        transaction.output_args.clear()
        transaction.closed = True

    def register_change_callback(self, handler: ChangeHandler):
        with self._handlers_lock:
            if handler in self._change_handlers:
                return
            self._change_handlers.append(handler)
            if self._watcher is None:
                self._watcher = DisplayChangeWatcher(
                    snapshot=self.snapshot,
                    callback=self._dispatch_change,
                    x_display=self.x_display,
                    event_driven=self.event_driven,
                    poll_interval=self.poll_interval,
                )
                self._watcher.start_monitoring()

    def unregister_change_callback(self, handler: ChangeHandler):
        with self._handlers_lock:
            if handler in self._change_handlers:
                self._change_handlers.remove(handler)
            watcher = self._watcher if not self._change_handlers else None
            if watcher is not None:
                self._watcher = None
        if watcher is not None:
            watcher.stop_monitoring()

    def _dispatch_change(self, display_id: int, flags: ChangeFlags):
        with self._handlers_lock:
            handlers = list(self._change_handlers)
        for handler in handlers:
            try:
                handler(display_id, flags)
            except Exception as e:
                logger.error(f"Error in display change handler: {e}")


def check_xrandr_available(command: str = "xrandr", x_display: Optional[str] = None,
                           timeout: float = 5.0) -> Tuple[bool, str]:
    """
    Check that xrandr runs and reaches an X server with RandR outputs.

    Runs one `xrandr --query` against the configured display.

    Returns:
        Tuple of (is_available, message)
    """
    backend = XRandRBackend(command=command, timeout=timeout, x_display=x_display)
    try:
        outputs = backend.query_outputs()
    except OsQueryFailed as e:
        if isinstance(e.__cause__, FileNotFoundError):
            return False, f"{command} not found. Install with: sudo apt install x11-xserver-utils"
        return False, f"Cannot query X server {x_display or os.environ.get('DISPLAY', '(unset)')}: {e}"

    if not outputs:
        return False, "X server reports no RandR outputs"
    connected = [o.name for o in outputs if o.connected]
    return True, f"{len(outputs)} output(s), connected: {', '.join(connected) or 'none'}"
