"""
Configuration Management
========================
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional
from dataclasses import dataclass, asdict

import yaml

from .records import ListMode

logger = logging.getLogger(__name__)


@dataclass
class DisplayConfig:
    """How display records are built and commands resolved."""
    list_mode: ListMode = ListMode.SAFE
    nearest_match: bool = False


@dataclass
class XRandRConfig:
    """xrandr invocation settings."""
    command: str = "xrandr"
    timeout: float = 5.0
    retry_count: int = 1
    x_display: Optional[str] = None


@dataclass
class WatcherConfig:
    """Change notification settings."""
    event_driven: bool = True
    poll_interval: float = 2.0


@dataclass
class EngineConfig:
    """Reconciliation engine settings."""
    queue_size: int = 64


class Config:
    """
    Configuration manager for display control.

    Handles loading, saving, and accessing configuration settings.
    Missing files and invalid values fall back to defaults.
    """

    DEFAULT_CONFIG_PATH = Path.home() / ".config" / "display-control" / "config.yaml"
    DEFAULT_LOG_PATH = Path.home() / ".local" / "share" / "display-control" / "display-control.log"

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to configuration file, or None for default
        """
        self.config_path = Path(config_path) if config_path else self.DEFAULT_CONFIG_PATH
        self._data: Dict[str, Any] = {}

        self.display = DisplayConfig()
        self.xrandr = XRandRConfig()
        self.watcher = WatcherConfig()
        self.engine = EngineConfig()
        self.log_file: Optional[Path] = self.DEFAULT_LOG_PATH

    def load(self) -> bool:
        """
        Load configuration from file.

        Returns:
            True if configuration was loaded successfully
        """
        if not self.config_path.exists():
            logger.info(f"Configuration file not found, using defaults: {self.config_path}")
            return False

        try:
            with open(self.config_path, 'r') as f:
                self._data = yaml.safe_load(f) or {}

            if not isinstance(self._data, dict):
                logger.error(f"Configuration root must be a mapping: {self.config_path}")
                self._data = {}
                return False

            self._parse_config()
            logger.info(f"Loaded configuration from {self.config_path}")
            return True

        except yaml.YAMLError as e:
            logger.error(f"Failed to parse configuration: {e}")
            return False
        except OSError as e:
            logger.error(f"Failed to load configuration: {e}")
            return False

    @staticmethod
    def _number(section: Dict[str, Any], key: str, default, minimum=0):
        value = section.get(key, default)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < minimum:
            logger.warning(f"Invalid value for {key}: {value!r}, using {default}")
            return default
        return type(default)(value)

    def _section(self, name: str) -> Dict[str, Any]:
        section = self._data.get(name)
        if section is None:
            return {}
        if not isinstance(section, dict):
            logger.warning(f"Configuration section '{name}' must be a mapping, got {section!r}; using defaults")
            return {}
        return section

    def _parse_config(self):
        """Parse loaded configuration data into typed objects."""
        display = self._section('display')
        try:
            list_mode = ListMode.from_name(display.get('list_mode', ListMode.SAFE.value))
        except ValueError as e:
            logger.warning(f"{e}; using {ListMode.SAFE.value}")
            list_mode = ListMode.SAFE
        self.display = DisplayConfig(
            list_mode=list_mode,
            nearest_match=bool(display.get('nearest_match', False)),
        )

        xrandr = self._section('xrandr')
        self.xrandr = XRandRConfig(
            command=str(xrandr.get('command', 'xrandr')),
            timeout=self._number(xrandr, 'timeout', 5.0, minimum=0.1),
            retry_count=self._number(xrandr, 'retry_count', 1, minimum=1),
            x_display=xrandr.get('x_display'),
        )

        watcher = self._section('watcher')
        self.watcher = WatcherConfig(
            event_driven=bool(watcher.get('event_driven', True)),
            poll_interval=self._number(watcher, 'poll_interval', 2.0, minimum=0.1),
        )

        engine = self._section('engine')
        self.engine = EngineConfig(
            queue_size=self._number(engine, 'queue_size', 64, minimum=1),
        )

        log = self._section('logging')
        log_file = log.get('file')
        self.log_file = Path(log_file).expanduser() if log_file else self.DEFAULT_LOG_PATH

    def to_dict(self) -> Dict[str, Any]:
        """Current settings in the file layout."""
        display = asdict(self.display)
        display['list_mode'] = self.display.list_mode.value
        return {
            'display': display,
            'xrandr': asdict(self.xrandr),
            'watcher': asdict(self.watcher),
            'engine': asdict(self.engine),
            'logging': {'file': str(self.log_file) if self.log_file else None},
        }

    def save(self) -> bool:
        """
        Save current configuration to file.

        Returns:
            True if configuration was saved successfully
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, 'w') as f:
                yaml.safe_dump(self.to_dict(), f, default_flow_style=False)
            logger.info(f"Saved configuration to {self.config_path}")
            return True
        except OSError as e:
            logger.error(f"Failed to save configuration: {e}")
            return False
