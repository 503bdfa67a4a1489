"""
rrdb Configuration Management

Provides the layer and store configuration structures and a loader that
merges built-in defaults, an optional JSON file and environment variables.
"""

import copy
import json
import os
import re
from pathlib import Path
from typing import Dict, Any, List, Optional, Union
from dataclasses import dataclass, field

from .errors import ConfigError


DURATION_UNITS = {
    's': 1,
    'm': 60,
    'h': 60 * 60,
    'd': 24 * 60 * 60,
    'w': 7 * 24 * 60 * 60,
    'y': 365 * 24 * 60 * 60,
}

_DURATION_RE = re.compile(r'^\s*(\d+)\s*([smhdwy])\s*$')


def parse_duration(value: Union[int, str]) -> int:
    """
    Convert a duration such as "15s", "3w" or 3600 into whole seconds.

    Args:
        value: Positive integer seconds or a number followed by one of s, m, h, d, w, y

    Returns:
        Duration in seconds
    """
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}")
    if isinstance(value, int):
        seconds = value
    elif isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            seconds = int(text)
        else:
            match = _DURATION_RE.match(text)
            if not match:
                raise ConfigError(f"Invalid duration: {value!r}")
            seconds = int(match.group(1)) * DURATION_UNITS[match.group(2)]
    else:
        raise ConfigError(f"Invalid duration: {value!r}")

    if seconds <= 0:
        raise ConfigError(f"Duration must be positive: {value!r}")
    return seconds


@dataclass(frozen=True)
class LayerConfig:
    """Shape of one precision tier."""
    precision_seconds: int
    capacity_points: int

    @classmethod
    def from_durations(cls, precision: Union[int, str], retention: Union[int, str]) -> 'LayerConfig':
        """Build a layer from a bucket width and a retention span, e.g. ("1m", "3w")."""
        precision_seconds = parse_duration(precision)
        retention_seconds = parse_duration(retention)
        if retention_seconds < precision_seconds:
            raise ConfigError(f"Retention {retention!r} is shorter than precision {precision!r}")
        return cls(precision_seconds, retention_seconds // precision_seconds)

    @property
    def span_seconds(self) -> int:
        return self.precision_seconds * self.capacity_points


DEFAULT_LAYERS = [
    {"precision": "15s", "retention": "1w"},
    {"precision": "1m", "retention": "3w"},
    {"precision": "1h", "retention": "5y"},
]


def default_layers() -> List[LayerConfig]:
    """The fine/medium/coarse chain used when no layers are configured."""
    return [LayerConfig.from_durations(l["precision"], l["retention"]) for l in DEFAULT_LAYERS]


@dataclass
class StoreConfig:
    """Every option LayeredStore recognizes."""
    layers: List[LayerConfig] = field(default_factory=default_layers)
    xff: float = 0.5
    persist_path: Optional[str] = None
    initial_buffer: Optional[bytearray] = None
    flush_delay: float = 0.2

    def validate(self) -> 'StoreConfig':
        """Check every field; raises ConfigError on the first bad value."""
        if not self.layers:
            raise ConfigError("At least one layer is required")
        for layer in self.layers:
            if not isinstance(layer, LayerConfig):
                raise ConfigError(f"Expected LayerConfig, got {type(layer).__name__}")
        try:
            xff = float(self.xff)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"xff must be a number, got {self.xff!r}") from e
        if not 0.0 <= xff <= 1.0:
            raise ConfigError(f"xff must be between 0 and 1, got {self.xff}")
        self.xff = xff
        if self.flush_delay < 0:
            raise ConfigError(f"flush_delay must not be negative, got {self.flush_delay}")
        return self


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str
    log_dir: Optional[str]
    console_output: bool


DEFAULT_CONFIG = {
    "store": {
        "layers": DEFAULT_LAYERS,
        "xff": 0.5,
        "persist_path": None,
        "flush_delay_ms": 200,
    },
    "logging": {
        "level": "INFO",
        "log_dir": None,
        "console_output": False,
    },
}


class RRDBConfig:
    """Main rrdb configuration manager."""

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to JSON config file. If None, uses defaults and environment only.
        """
        self.config_path = config_path
        self._config_data = {}
        self._load_config()
        self._create_config_objects()

    def _load_config(self):
        """Load configuration from defaults, JSON file and environment variables."""
        self._config_data = copy.deepcopy(DEFAULT_CONFIG)

        if self.config_path:
            config_path = Path(self.config_path)
            if not config_path.exists():
                raise FileNotFoundError(f"Config file not found: {config_path}")
            with open(config_path, 'r') as f:
                try:
                    custom_config = json.load(f)
                except json.JSONDecodeError as e:
                    raise ConfigError(f"Config file {config_path} is not valid JSON: {e}") from e
            self._merge_configs(self._config_data, custom_config)

        self._load_env_overrides()

    def _merge_configs(self, default: dict, custom: dict, path: str = ""):
        """Recursively merge custom config into default config, rejecting unknown keys."""
        for key, value in custom.items():
            if key not in default:
                raise ConfigError(f"Unknown configuration key: {path}{key}")
            if isinstance(default[key], dict) and isinstance(value, dict):
                self._merge_configs(default[key], value, f"{path}{key}.")
            else:
                default[key] = value

    def _load_env_overrides(self):
        """Load configuration overrides from environment variables."""
        env_mappings = {
            'RRDB_PERSIST_PATH': ('store', 'persist_path'),
            'RRDB_XFF': ('store', 'xff'),
            'RRDB_FLUSH_DELAY_MS': ('store', 'flush_delay_ms'),
            'RRDB_LOG_LEVEL': ('logging', 'level'),
            'RRDB_LOG_DIR': ('logging', 'log_dir'),
        }

        for env_var, (section, key) in env_mappings.items():
            value = os.getenv(env_var)
            if value is None:
                continue
            try:
                if key == 'xff':
                    value = float(value)
                elif key == 'flush_delay_ms':
                    value = int(value)
            except ValueError as e:
                raise ConfigError(f"{env_var}={value!r} is not a number") from e
            self._config_data[section][key] = value

    def _create_config_objects(self):
        """Create typed configuration objects from loaded data."""
        store = self._config_data['store']
        try:
            layers = [LayerConfig.from_durations(l['precision'], l['retention']) for l in store['layers']]
        except (KeyError, TypeError) as e:
            raise ConfigError(f"Each layer needs 'precision' and 'retention': {e}") from e

        self.store = StoreConfig(
            layers=layers,
            xff=store["xff"],
            persist_path=store['persist_path'],
            flush_delay=store['flush_delay_ms'] / 1000.0,
        ).validate()
        self.logging = LoggingConfig(**self._config_data['logging'])

    def store_config(self) -> StoreConfig:
        """Fresh copy of the store section, safe to modify per store."""
        return copy.copy(self.store)

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary."""
        return copy.deepcopy(self._config_data)

    def save_to_file(self, path: str):
        """Save current configuration to JSON file."""
        with open(path, 'w') as f:
            json.dump(self._config_data, f, indent=2)

    def __repr__(self) -> str:
        return f"RRDBConfig(config_path={self.config_path})"


# Global configuration instance
_global_config: Optional[RRDBConfig] = None


def get_config(config_path: Optional[str] = None) -> RRDBConfig:
    """
    Get the global rrdb configuration instance.

    Args:
        config_path: Path to config file. Only used on first call.

    Returns:
        RRDBConfig instance
    """
    global _global_config
    if _global_config is None:
        _global_config = RRDBConfig(config_path)
    return _global_config


def reset_config():
    """Reset the global configuration (mainly for testing)."""
    global _global_config
    _global_config = None
