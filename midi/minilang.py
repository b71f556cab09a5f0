"""
Line-oriented rule language.

One line per button::

    {MIDI: N60@1.both, CC7} {1/0/2}
    {MIDI: CC00.1, CC32.5, PC12@3} {2/1/0}
    // comment

Commands:

* ``N<note>[@<channel>][.<on|off|both>]`` note (any channel, note-on by default)
* ``CC<number>[@<channel>]`` control change
* ``PC<program>[@<channel>]`` program change (any bank unless bank components
  are given on the same line)
* ``CC00.<msb>`` / ``CC32.<lsb>`` bank select components for the line's PC

A plain ``CC0`` / ``CC32`` is an ordinary control change trigger unless the
line also has a PC command; then it is reserved for bank select and skipped.
"""
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, NamedTuple, Optional, Tuple

from .events import EventKind, BANK_SELECT_LSB_CC, BANK_SELECT_MSB_CC
from .models import Rule, ButtonLocation, TriggerMode, ANY_BANK, ANY_CHANNEL

logger = logging.getLogger(__name__)

COMMENT_PREFIX = "//"
PUNCTUATION = "{}:,/@."
DIGITS = "0123456789"

KIND_NOTE = "N"
KIND_CC = "CC"
KIND_PC = "PC"
COMMAND_KINDS = (KIND_NOTE, KIND_CC, KIND_PC)


class MiniLanguageError(Exception):
    """Raised for a malformed line or command."""
    pass


class Token(NamedTuple):
    kind: str  # 'punct', 'word' or 'number'
    text: str
    column: int


@dataclass
class MidiCommand:
    """One parsed command inside the ``{MIDI: ...}`` block."""
    kind: str
    number: int
    channel: Optional[int] = None
    trigger: Optional[TriggerMode] = None
    value: Optional[int] = None
    text: str = ""

    @property
    def is_bank_component(self) -> bool:
        return self.kind == KIND_CC and self.value is not None


@dataclass
class ParseResult:
    """Rules produced from a text plus one diagnostic per skipped item."""
    rules: List[Rule] = field(default_factory=list)
    diagnostics: List[str] = field(default_factory=list)


# --- Tokenizer ---
def tokenize_line(line: str) -> List[Token]:
    tokens: List[Token] = []
    i = 0
    while i < len(line):
        char = line[i]
        if char.isspace():
            i += 1
        elif char in PUNCTUATION:
            tokens.append(Token("punct", char, i))
            i += 1
        elif char in DIGITS:
            start = i
            while i < len(line) and line[i] in DIGITS:
                i += 1
            tokens.append(Token("number", line[start:i], start))
        elif char.isalpha():
            start = i
            while i < len(line) and line[i].isalpha():
                i += 1
            tokens.append(Token("word", line[start:i], start))
        else:
            raise MiniLanguageError(f"Unexpected character {char!r} at column {i + 1}")
    return tokens


class _TokenStream:
    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.pos = 0

    def peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def next(self, what: str) -> Token:
        token = self.peek()
        if token is None:
            raise MiniLanguageError(f"Expected {what}, found end of line")
        self.pos += 1
        return token

    def expect(self, text: str) -> Token:
        token = self.next(repr(text))
        if token.text.upper() != text.upper():
            raise MiniLanguageError(f"Expected {text!r} at column {token.column + 1}, found {token.text!r}")
        return token

    def number(self, what: str) -> int:
        token = self.next(what)
        if token.kind != "number":
            raise MiniLanguageError(f"Expected {what} at column {token.column + 1}, found {token.text!r}")
        return int(token.text)

    def at_end(self) -> bool:
        return self.pos >= len(self.tokens)


# --- Parser ---
def _check_range(value: int, low: int, high: int, what: str) -> int:
    if not low <= value <= high:
        raise MiniLanguageError(f"{what} {value} out of range {low}-{high}")
    return value


def parse_command(tokens: List[Token]) -> MidiCommand:
    """Parse the tokens of a single command, e.g. ``N 60 @ 1 . on``."""
    if not tokens:
        raise MiniLanguageError("Empty command")
    stream = _TokenStream(tokens)
    head = stream.next("command")
    kind = head.text.upper()
    if head.kind != "word" or kind not in COMMAND_KINDS:
        raise MiniLanguageError(f"Unknown command {head.text!r}")
    command = MidiCommand(kind, _check_range(stream.number(f"{kind} number"), 0, 127, f"{kind} number"))

    while not stream.at_end():
        marker = stream.next("suffix")
        if marker.text == "@":
            if command.channel is not None:
                raise MiniLanguageError("Channel given twice")
            command.channel = _check_range(stream.number("channel"), 1, 16, "Channel")
        elif marker.text == ".":
            suffix = stream.next("suffix after '.'")
            if kind == KIND_NOTE and suffix.kind == "word":
                try:
                    command.trigger = TriggerMode(suffix.text.lower())
                except ValueError:
                    raise MiniLanguageError(f"Unknown trigger {suffix.text!r}, use on, off or both") from None
            elif kind == KIND_CC and suffix.kind == "number":
                if command.number not in (BANK_SELECT_MSB_CC, BANK_SELECT_LSB_CC):
                    raise MiniLanguageError(f"Only CC00 and CC32 take a bank value, not CC{command.number}")
                command.value = _check_range(int(suffix.text), 0, 127, "Bank select value")
            else:
                raise MiniLanguageError(f"Invalid suffix .{suffix.text} for {kind}")
        else:
            raise MiniLanguageError(f"Unexpected {marker.text!r} at column {marker.column + 1}")

    command.text = "".join(token.text for token in tokens)
    return command


def _split_commands(tokens: List[Token]) -> List[List[Token]]:
    parts: List[List[Token]] = [[]]
    for token in tokens:
        if token.text == ",":
            parts.append([])
        else:
            parts[-1].append(token)
    return parts


def parse_line_structure(line: str) -> Tuple[List[List[Token]], ButtonLocation]:
    """Split a line into command token lists and the button location."""
    stream = _TokenStream(tokenize_line(line))
    stream.expect("{")
    stream.expect("MIDI")
    stream.expect(":")
    body: List[Token] = []
    while True:
        token = stream.next("'}'")
        if token.text == "}":
            break
        if token.text == "{":
            raise MiniLanguageError(f"Unexpected '{{' at column {token.column + 1}")
        body.append(token)
    stream.expect("{")
    page = stream.number("page")
    stream.expect("/")
    row = stream.number("row")
    stream.expect("/")
    column = stream.number("column")
    stream.expect("}")
    if not stream.at_end():
        extra = stream.peek()
        raise MiniLanguageError(f"Unexpected {extra.text!r} after button location at column {extra.column + 1}")
    if page < 1:
        raise MiniLanguageError("Page must be 1 or higher")
    return _split_commands(body), ButtonLocation(page, row, column)


def _commands_to_rules(commands: List[MidiCommand], location: ButtonLocation,
                       name: str, group: int, diagnostics: List[str], where: str) -> List[Rule]:
    programs = [c for c in commands if c.kind == KIND_PC]
    msb: Optional[int] = None
    lsb: Optional[int] = None
    rules: List[Rule] = []

    for command in commands:
        if command.is_bank_component:
            if not programs:
                diagnostics.append(f"{where}: {command.text} skipped, bank select needs a PC on the same line")
            elif command.number == BANK_SELECT_MSB_CC:
                msb = command.value
            else:
                lsb = command.value

    bank = ANY_BANK if msb is None and lsb is None else (msb or 0) * 128 + (lsb or 0)

    for command in commands:
        if command.is_bank_component:
            continue
        channel = command.channel if command.channel is not None else ANY_CHANNEL
        base = Rule(name=name, enabled=True, channel=channel, number=command.number,
                    button=location, group=group)
        if command.kind == KIND_NOTE:
            rules.append(base.copy(match_type=EventKind.NOTE, trigger=command.trigger or TriggerMode.ON))
        elif command.kind == KIND_CC:
            if programs and command.number in (BANK_SELECT_MSB_CC, BANK_SELECT_LSB_CC):
                diagnostics.append(f"{where}: {command.text} skipped, CC{command.number} is reserved "
                                   f"for bank select on a line with a PC command")
                continue
            rules.append(base.copy(match_type=EventKind.CONTROL_CHANGE))
        else:
            rules.append(base.copy(match_type=EventKind.PROGRAM_CHANGE, bank=bank))
    return rules


def parse_line(line: str, group: int = 0, line_number: int = 1) -> ParseResult:
    """Parse one line. Comments and blank lines give an empty result."""
    result = ParseResult()
    text = line.strip()
    if not text or text.startswith(COMMENT_PREFIX):
        return result
    where = f"Line {line_number}"
    try:
        command_tokens, location = parse_line_structure(text)
    except MiniLanguageError as e:
        result.diagnostics.append(f"{where}: {e} ({text})")
        return result

    commands: List[MidiCommand] = []
    for tokens in command_tokens:
        try:
            commands.append(parse_command(tokens))
        except MiniLanguageError as e:
            shown = "".join(token.text for token in tokens) or "<empty>"
            result.diagnostics.append(f"{where}: command {shown!r} skipped: {e}")

    result.rules = _commands_to_rules(commands, location, text, group, result.diagnostics, where)
    if not result.rules:
        result.diagnostics.append(f"{where}: no usable commands ({text})")
    return result


def parse_rules(text: str) -> ParseResult:
    """Parse a whole document. Bad lines and commands are skipped."""
    result = ParseResult()
    group = 0
    for line_number, line in enumerate(text.splitlines(), start=1):
        line_result = parse_line(line, group=group, line_number=line_number)
        if line_result.rules:
            result.rules.extend(line_result.rules)
            group += 1
        result.diagnostics.extend(line_result.diagnostics)
    for diagnostic in result.diagnostics:
        logger.warning(diagnostic)
    logger.info(f"Parsed {len(result.rules)} rules from {group} lines "
                f"({len(result.diagnostics)} problems)")
    return result


# --- Serializer ---
def format_command(rule: Rule) -> str:
    channel = f"@{rule.channel}" if rule.channel != ANY_CHANNEL else ""
    if rule.match_type == EventKind.NOTE:
        trigger = f".{rule.trigger.value}" if rule.trigger != TriggerMode.ON else ""
        return f"{KIND_NOTE}{rule.number}{channel}{trigger}"
    if rule.match_type == EventKind.CONTROL_CHANGE:
        return f"{KIND_CC}{rule.number}{channel}"
    return f"{KIND_PC}{rule.number}{channel}"


def _bank_components(bank: int) -> List[str]:
    if bank == ANY_BANK:
        return []
    return [f"CC00.{bank // 128}", f"CC32.{bank % 128}"]


def _format_line(commands: List[str], location: ButtonLocation, enabled: bool) -> str:
    line = f"{{MIDI: {', '.join(commands)}}} {{{location}}}"
    return line if enabled else f"{COMMENT_PREFIX} {line}"


def _units(rules: List[Rule]) -> List[List[Rule]]:
    units: List[List[Rule]] = []
    for rule in rules:
        if units and rule.group is not None and units[-1][-1].group == rule.group:
            units[-1].append(rule)
        else:
            units.append([rule])
    return units


def format_rules(rules: Iterable[Rule]) -> str:
    """Render rules as mini-language text.

    Rules without a button location cannot be expressed and are skipped.
    Disabled lines are written as comments, which parsing ignores, so only
    enabled rules survive a format and parse round trip.
    """
    lines: List[str] = []
    for unit in _units(list(rules)):
        located = [rule for rule in unit if rule.button is not None]
        if len(located) < len(unit):
            logger.warning(f"Skipping {len(unit) - len(located)} rule(s) without a button location")
        # One line per location so a unit edited into mixed targets still round-trips
        locations: List[ButtonLocation] = []
        for rule in located:
            if rule.button not in locations:
                locations.append(rule.button)
        for location in locations:
            at_location = [rule for rule in located if rule.button == location]
            enabled = any(rule.enabled for rule in at_location)
            programs = [rule for rule in at_location if rule.match_type == EventKind.PROGRAM_CHANGE]
            others = [rule for rule in at_location if rule.match_type != EventKind.PROGRAM_CHANGE]
            reserved = [rule for rule in others if rule.match_type == EventKind.CONTROL_CHANGE
                        and rule.number in (BANK_SELECT_MSB_CC, BANK_SELECT_LSB_CC)]
            plain = [rule for rule in others if not any(rule is r for r in reserved)]

            banks: List[int] = []
            for rule in programs:
                if rule.bank not in banks:
                    banks.append(rule.bank)

            if not banks:
                lines.append(_format_line([format_command(r) for r in plain + reserved], location, enabled))
                continue
            for i, bank in enumerate(banks):
                commands = [format_command(r) for r in plain] if i == 0 else []
                commands += _bank_components(bank)
                commands += [format_command(r) for r in programs if r.bank == bank]
                lines.append(_format_line(commands, location, enabled))
            if reserved:
                lines.append(_format_line([format_command(r) for r in reserved], location, enabled))
    return "\n".join(lines) + ("\n" if lines else "")
