"""Placeholder substitution and typed tokenization of OSC arguments."""

import math
from typing import Any, List, NamedTuple, Optional

from .events import EventKind, MidiEvent

# Value substituted for $(value) on decoded program changes, which carry no velocity
PROGRAM_CHANGE_VALUE = 127

ARG_TYPE_INT = "i"
ARG_TYPE_FLOAT = "f"
ARG_TYPE_STRING = "s"


class OscArg(NamedTuple):
    """An OSC argument with its type tag."""
    type: str
    value: Any


def placeholder_values(event: MidiEvent):
    """Placeholder → replacement text for one event."""
    values = {
        "$(channel)": event.channel,
        "$(type)": event.kind.value,
    }
    if event.kind == EventKind.PROGRAM_CHANGE:
        values["$(value)"] = PROGRAM_CHANGE_VALUE if event.value is None else event.value
        values["$(bank)"] = event.bank
        values["$(program)"] = event.program
    else:
        values["$(value)"] = event.value
        values["$(notecc)"] = event.number
    return {key: str(value) for key, value in values.items()}


def render(template: str, event: MidiEvent) -> str:
    """Substitute every known placeholder in ``template``.

    Placeholders that do not apply to the event, or that are not known at
    all, are left untouched.
    """
    if not template:
        return ""
    rendered = template
    for placeholder, replacement in placeholder_values(event).items():
        rendered = rendered.replace(placeholder, replacement)
    return rendered


def _parse_number(token: str) -> Optional[float]:
    # float() also takes digit separators, which are not numbers here
    if "_" in token:
        return None
    try:
        number = float(token)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def tokenize(rendered: str) -> List[OscArg]:
    """Split a rendered argument string into typed OSC arguments.

    Tokens are comma separated and trimmed. A token that is a number becomes
    a float if it contains a '.', an int otherwise; everything else is a
    string. There is no quoting, so string arguments cannot contain commas.
    """
    if not rendered or not rendered.strip():
        return []

    args: List[OscArg] = []
    for token in (part.strip() for part in rendered.split(",")):
        number = _parse_number(token) if token else None
        if number is None:
            args.append(OscArg(ARG_TYPE_STRING, token))
        elif "." in token:
            args.append(OscArg(ARG_TYPE_FLOAT, number))
        else:
            args.append(OscArg(ARG_TYPE_INT, int(number)))
    return args
