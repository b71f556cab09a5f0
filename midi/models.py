"""
Models for translation rules.
"""
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, NamedTuple, Optional

from .events import EventKind

logger = logging.getLogger(__name__)

ANY_CHANNEL = 0
ANY_BANK = -1
MAX_BANK = 16383

DEFAULT_OSC_IP = "127.0.0.1"
DEFAULT_OSC_PORT = 8000
DEFAULT_OSC_ARGS = "$(value)"
DEFAULT_NOTE = 60


class TriggerMode(Enum):
    """Which note transitions fire a note rule."""
    ON = "on"
    OFF = "off"
    BOTH = "both"


class ButtonLocation(NamedTuple):
    """Companion button coordinates."""
    page: int
    row: int
    column: int

    def __str__(self) -> str:
        return f"{self.page}/{self.row}/{self.column}"


def _parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _parse_kind(value: Any) -> EventKind:
    if isinstance(value, EventKind):
        return value
    try:
        return EventKind(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Invalid rule type: {value!r}") from None


def _parse_trigger(value: Any) -> TriggerMode:
    if isinstance(value, TriggerMode):
        return value
    try:
        return TriggerMode(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Invalid trigger mode: {value!r}") from None


@dataclass
class Rule:
    """One MIDI → output translation rule.

    ``number`` is the note number, the CC number or, for program change
    rules, the program number. ``bank`` only applies to program change
    rules and ``trigger`` only to note rules. ``group`` ties together rules
    that were written on one mini-language line.
    """
    name: str = "Rule 1"
    enabled: bool = False
    match_type: EventKind = EventKind.NOTE
    channel: int = ANY_CHANNEL
    number: int = DEFAULT_NOTE
    trigger: TriggerMode = TriggerMode.ON
    bank: int = ANY_BANK
    osc_ip: str = DEFAULT_OSC_IP
    osc_port: int = DEFAULT_OSC_PORT
    osc_address: str = f"/midi/note/{DEFAULT_NOTE}"
    osc_args: str = DEFAULT_OSC_ARGS
    button: Optional[ButtonLocation] = None
    group: Optional[int] = None

    @classmethod
    def default(cls, index: int = 0) -> 'Rule':
        """The disabled placeholder rule shown for a fresh slot."""
        return cls(name=f"Rule {index + 1}")

    def copy(self, **changes: Any) -> 'Rule':
        return replace(self, **changes)

    def describe_trigger(self) -> str:
        channel = "any" if self.channel == ANY_CHANNEL else str(self.channel)
        if self.match_type == EventKind.PROGRAM_CHANGE:
            bank = "any" if self.bank == ANY_BANK else str(self.bank)
            return f"PC {self.number} bank {bank} ch {channel}"
        if self.match_type == EventKind.CONTROL_CHANGE:
            return f"CC {self.number} ch {channel}"
        return f"Note {self.number} ({self.trigger.value}) ch {channel}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the export/import dictionary format."""
        is_program = self.match_type == EventKind.PROGRAM_CHANGE
        data: Dict[str, Any] = {
            "name": self.name,
            "enabled": self.enabled,
            "channel": self.channel,
            "type": self.match_type.value,
            "noteOrCC": self.number,
            "trigger": self.trigger.value,
            "bank": self.bank,
            "program": self.number if is_program else 0,
            "oscIP": self.osc_ip,
            "oscPort": self.osc_port,
            "oscAddress": self.osc_address,
            "oscArgs": self.osc_args,
        }
        if self.button is not None:
            data.update(page=self.button.page, row=self.button.row, column=self.button.column)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], index: int = 0) -> 'Rule':
        """Create a rule from export data.

        Missing fields take the same defaults as a fresh slot. Exports from
        before trigger modes existed fire on both note transitions.
        Raises ValueError/TypeError on fields that cannot be converted.
        """
        if not isinstance(data, dict):
            raise TypeError(f"Rule {index + 1} must be an object, got {type(data).__name__}")
        kind = _parse_kind(data.get("type") or EventKind.NOTE.value)
        if kind == EventKind.PROGRAM_CHANGE and data.get("program") is not None:
            number = int(data["program"])
        else:
            number = int(data["noteOrCC"]) if data.get("noteOrCC") is not None else DEFAULT_NOTE
        button = None
        if all(data.get(key) is not None for key in ("page", "row", "column")):
            button = ButtonLocation(int(data["page"]), int(data["row"]), int(data["column"]))
        return cls(
            name=str(data.get("name") or f"Rule {index + 1}"),
            enabled=_parse_bool(data.get("enabled", False)),
            match_type=kind,
            channel=int(data["channel"]) if data.get("channel") is not None else ANY_CHANNEL,
            number=number,
            trigger=_parse_trigger(data.get("trigger") or TriggerMode.BOTH.value),
            bank=int(data["bank"]) if data.get("bank") is not None else ANY_BANK,
            osc_ip=str(data.get("oscIP") or DEFAULT_OSC_IP),
            osc_port=int(data["oscPort"]) if data.get("oscPort") is not None else DEFAULT_OSC_PORT,
            osc_address=str(data.get("oscAddress") or "/midi"),
            osc_args=str(data.get("oscArgs") or DEFAULT_OSC_ARGS),
            button=button,
        )
