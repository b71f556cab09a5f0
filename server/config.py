"""
Bridge configuration and rule persistence.
"""
import json
import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

from midi.rule_store import DEFAULT_CAPACITY, MAX_CAPACITY
from midi.validation import is_ipv4

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.json"

MODE_OSC = "osc"
MODE_PRESS = "press"
MODES = (MODE_OSC, MODE_PRESS)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(Exception):
    """Raised for configuration values that cannot be used."""


@dataclass
class BridgeConfig:
    """Runtime configuration.

    ``midi_port_index`` of -1 means no port was chosen; ``midi_port`` (a
    name) takes precedence when both are set.
    """
    mode: str = MODE_OSC
    midi_port_index: int = -1
    midi_port: Optional[str] = None
    midi_auto_connect: bool = False
    companion_host: str = "127.0.0.1"
    companion_port: int = 8000
    press_delay_ms: int = 500
    press_queue_size: int = 64
    max_rules: int = DEFAULT_CAPACITY
    rules_file: str = "rules.json"
    rules_text_file: Optional[str] = None
    ws_host: str = "localhost"
    ws_port: int = 8765
    log_level: str = "INFO"
    enable_logging: bool = False

    def validate(self) -> None:
        """Raise ConfigError on the first unusable value."""
        if self.mode not in MODES:
            raise ConfigError(f"mode must be one of {MODES}, got {self.mode!r}")
        if not is_ipv4(self.companion_host) and self.companion_host != "localhost":
            raise ConfigError(f"companion_host must be an IPv4 address, got {self.companion_host!r}")
        for name in ("companion_port", "ws_port"):
            value = getattr(self, name)
            if not isinstance(value, int) or not 1 <= value <= 65535:
                raise ConfigError(f"{name} must be a port number, got {value!r}")
        if not isinstance(self.press_delay_ms, int) or self.press_delay_ms < 0:
            raise ConfigError(f"press_delay_ms must be a non-negative integer, got {self.press_delay_ms!r}")
        if not isinstance(self.press_queue_size, int) or self.press_queue_size < 1:
            raise ConfigError(f"press_queue_size must be at least 1, got {self.press_queue_size!r}")
        if not isinstance(self.max_rules, int) or not 1 <= self.max_rules <= MAX_CAPACITY:
            raise ConfigError(f"max_rules must be between 1 and {MAX_CAPACITY}, got {self.max_rules!r}")
        if str(self.log_level).upper() not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {LOG_LEVELS}, got {self.log_level!r}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BridgeConfig':
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {unknown}")
        config = cls(**{key: value for key, value in data.items() if key in known})
        config.validate()
        return config

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def load_config(path: str = DEFAULT_CONFIG_PATH, overrides: Optional[Dict[str, Any]] = None) -> BridgeConfig:
    """Load configuration from ``path``, then apply non-None ``overrides``.

    A missing or unreadable file falls back to defaults; invalid values raise
    ConfigError.
    """
    data: Dict[str, Any] = {}
    try:
        with open(path, 'r') as f:
            data = json.load(f)
        logger.info(f"Loaded configuration from {path}")
    except FileNotFoundError:
        logger.warning(f"{path} not found. Using default configuration.")
    except json.JSONDecodeError as e:
        logger.error(f"Error decoding JSON from {path}: {e}. Using default configuration.")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a JSON object")

    data = dict(data)
    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value
    return BridgeConfig.from_dict(data)


def load_slots(path: str) -> Dict[str, Any]:
    """Load the persisted slot mapping; an empty mapping if there is none."""
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except FileNotFoundError:
        logger.info(f"{path} not found. Starting with default rules.")
        return {}
    except json.JSONDecodeError as e:
        logger.error(f"Error decoding JSON from {path}: {e}. Starting with default rules.")
        return {}
    if not isinstance(data, dict):
        logger.error(f"{path} does not contain a slot mapping. Starting with default rules.")
        return {}
    return data


def save_slots(path: str, slots: Dict[str, Any]) -> bool:
    """Write the slot mapping atomically."""
    tmp_path = f"{path}.tmp"
    try:
        with open(tmp_path, 'w') as f:
            json.dump(slots, f, indent=2)
        os.replace(tmp_path, path)
        logger.debug(f"Saved rules to {path}")
        return True
    except OSError as e:
        logger.error(f"Error saving rules to {path}: {e}")
        return False


def load_rules_text(path: str) -> Optional[str]:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return f.read()
    except OSError as e:
        logger.error(f"Error reading rules text from {path}: {e}")
        return None
