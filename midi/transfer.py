"""
Export and lenient import of rules as JSON.

Exports are written to the log line by line between copy markers so they can
be copied out of a log viewer. The importer accepts that text as pasted,
including log timestamps, source prefixes, the markers and any other noise
around the JSON.
"""
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

from .models import Rule
from .validation import MessageValidator, RuleValidator

logger = logging.getLogger(__name__)

COPY_START_MARKER = "=====COPY FROM HERE INCLUDING THIS LINE====="
COPY_END_MARKER = "=====COPY TO HERE INCLUDING THIS LINE====="

# "DD.MM.YY HH:MM:SS <source>: " as written by the log viewer
TIMESTAMP_PREFIX = re.compile(r"^\d{2}\.\d{2}\.\d{2}\s+\d{2}:\d{2}:\d{2}\s+[^:]+:\s+(.*)$")

DEBUG_PREFIX_LEN = 200


class ImportRulesError(Exception):
    """Raised when pasted text does not contain importable rules."""

    def __init__(self, message: str, extracted: Optional[str] = None):
        super().__init__(message)
        self.extracted = extracted

    @property
    def debug_prefix(self) -> str:
        if not self.extracted:
            return "undefined"
        return self.extracted[:DEBUG_PREFIX_LEN]


@dataclass
class ImportResult:
    rules: List[Rule]
    midi_port: Optional[str] = None


# --- Export ---
def export_rules(rules: List[Rule], midi_port: Optional[str] = None) -> str:
    """Serialize rules in the export format (object with ``mappings``)."""
    data = {
        "midiPort": midi_port or "",
        "mappings": [rule.to_dict() for rule in rules],
    }
    return json.dumps(data, indent=2)


def export_single_rule(rule: Rule) -> str:
    """Single rules use the bare array format."""
    return json.dumps([rule.to_dict()], indent=2)


def log_export(text: str, log: Callable[[str], Any] = logger.warning) -> None:
    """Write an export to the log between copy markers."""
    log(COPY_START_MARKER)
    for line in text.split("\n"):
        log(line)
    log(COPY_END_MARKER)
    log("INSTRUCTIONS: Copy everything between and including the COPY markers above")


# --- Import ---
def strip_timestamps(text: str) -> str:
    """Remove the log timestamp prefix from every line that has one."""
    lines = []
    for line in text.split("\n"):
        match = TIMESTAMP_PREFIX.match(line.rstrip("\r"))
        lines.append(match.group(1) if match else line)
    return "\n".join(lines)


def find_balanced(text: str, open_char: str, close_char: str) -> Optional[Tuple[int, int]]:
    """Find the first balanced ``open_char ... close_char`` span.

    Brackets inside double-quoted strings are ignored; backslash escapes are
    honoured. Returns (start, end) with ``end`` inclusive, or None.
    """
    start = text.find(open_char)
    if start < 0:
        return None
    depth = 0
    in_string = False
    escape_next = False
    for i in range(start, len(text)):
        char = text[i]
        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == open_char:
            depth += 1
        elif char == close_char:
            depth -= 1
            if depth == 0:
                return start, i
    return None


def extract_json(text: str) -> str:
    """Pull the first top-level array, or failing that object, out of ``text``.

    An array that sits inside the first balanced object (the ``mappings`` of
    the export format) is not top-level; the enclosing object is used.
    """
    cleaned = strip_timestamps(text)
    array_span = find_balanced(cleaned, "[", "]")
    object_span = find_balanced(cleaned, "{", "}")
    if array_span is not None and not (
            object_span is not None and object_span[0] < array_span[0] and array_span[1] < object_span[1]):
        span = array_span
        logger.debug(f"Found JSON array from position {span[0]} to {span[1]}")
    elif object_span is not None:
        span = object_span
        logger.debug(f"Found JSON object from position {span[0]} to {span[1]}")
    else:
        raise ImportRulesError("Could not find valid JSON array or object in the input")
    return cleaned[span[0]:span[1] + 1]


def parse_import(text: str, require_osc: bool = True) -> ImportResult:
    """Parse pasted export text into rules.

    Every rule is validated for the output mode given by ``require_osc``.
    Raises ImportRulesError for anything that cannot be imported as a whole;
    nothing is partially imported.
    """
    extracted = None
    try:
        extracted = extract_json(text)
        logger.debug(f"Extracted JSON length: {len(extracted)} chars")
        data = json.loads(extracted)

        midi_port = None
        if isinstance(data, list):
            mappings = data
        elif isinstance(data, dict) and isinstance(data.get("mappings"), list):
            mappings = data["mappings"]
            midi_port = data.get("midiPort") or None
        else:
            raise ImportRulesError("Invalid mappings format - expected an array or object with mappings array",
                                   extracted)

        rules = [Rule.from_dict(item, index) for index, item in enumerate(mappings)]
        if not rules:
            raise ImportRulesError("No rules found in the input", extracted)
        for index, rule in enumerate(rules):
            errors = RuleValidator.validate_rule(rule, require_osc=require_osc)
            if errors:
                raise ImportRulesError(f"Rule {index + 1} ({rule.name}): {MessageValidator.format_errors(errors)}",
                                       extracted)
        return ImportResult(rules=rules, midi_port=midi_port)
    except ImportRulesError as e:
        if e.extracted is None:
            e.extracted = extracted
        raise
    except json.JSONDecodeError as e:
        raise ImportRulesError(f"Invalid JSON: {e}", extracted) from e
    except (TypeError, ValueError, KeyError) as e:
        raise ImportRulesError(f"Invalid rule data: {e}", extracted) from e
