import pytest
from midi.events import EventKind
from midi.minilang import (
    MiniLanguageError, format_rules, parse_command, parse_line, parse_rules, tokenize_line,
)
from midi.models import ButtonLocation, Rule, TriggerMode


def command(text):
    return parse_command(tokenize_line(text))


# --- Commands ---

def test_note_command_defaults():
    cmd = command("N60")
    assert (cmd.kind, cmd.number, cmd.channel, cmd.trigger) == ("N", 60, None, None)


def test_note_command_with_channel_and_trigger():
    cmd = command("N60@2.BOTH")
    assert cmd.channel == 2
    assert cmd.trigger == TriggerMode.BOTH


def test_bank_component():
    cmd = command("CC00.3")
    assert cmd.number == 0
    assert cmd.value == 3
    assert cmd.is_bank_component


@pytest.mark.parametrize("text", ["X12", "N", "N128", "N60@0", "N60@17", "N60.up", "CC7.3", "PC5.on", "N60@1@2"])
def test_malformed_commands(text):
    with pytest.raises(MiniLanguageError):
        command(text)


def test_tokenizer_rejects_unknown_characters():
    with pytest.raises(MiniLanguageError):
        tokenize_line("{MIDI: N60#} {1/0/0}")


# --- Lines ---

def test_parse_simple_line():
    result = parse_line("{MIDI: N60@1, CC7} {1/0/2}")
    assert result.diagnostics == []
    note, cc = result.rules
    assert note.match_type == EventKind.NOTE
    assert note.channel == 1
    assert note.trigger == TriggerMode.ON
    assert note.button == ButtonLocation(1, 0, 2)
    assert note.enabled
    assert cc.match_type == EventKind.CONTROL_CHANGE
    assert cc.number == 7
    assert cc.channel == 0
    assert note.group == cc.group


def test_bank_components_combine_with_program():
    result = parse_line("{MIDI: CC00.1, CC32.5, PC12@3} {2/1/0}")
    assert len(result.rules) == 1
    rule = result.rules[0]
    assert rule.match_type == EventKind.PROGRAM_CHANGE
    assert rule.number == 12
    assert rule.bank == 133
    assert rule.channel == 3


def test_program_without_bank_is_any_bank():
    rule = parse_line("{MIDI: PC4} {1/0/0}").rules[0]
    assert rule.bank == -1


def test_plain_cc0_is_trigger_without_program():
    result = parse_line("{MIDI: CC0, CC32} {1/0/0}")
    assert [r.number for r in result.rules] == [0, 32]
    assert result.diagnostics == []


def test_plain_cc0_reserved_with_program():
    result = parse_line("{MIDI: CC0, PC1} {1/0/0}")
    assert [r.match_type for r in result.rules] == [EventKind.PROGRAM_CHANGE]
    assert len(result.diagnostics) == 1


def test_bank_component_without_program_skipped():
    result = parse_line("{MIDI: CC00.1, N60} {1/0/0}")
    assert [r.match_type for r in result.rules] == [EventKind.NOTE]
    assert "bank select" in result.diagnostics[0]


def test_bad_command_skipped_rest_kept():
    result = parse_line("{MIDI: N60, Q1, CC7} {1/0/0}")
    assert [r.number for r in result.rules] == [60, 7]
    assert len(result.diagnostics) == 1


@pytest.mark.parametrize("line", [
    "{MIDI: N60}",
    "{MIDI: N60} {1/0}",
    "{MIDI N60} {1/0/0}",
    "{MIDI: N60} {0/0/0}",
    "{MIDI: N60} {1/0/0} extra",
])
def test_malformed_lines_skipped(line):
    result = parse_line(line)
    assert result.rules == []
    assert result.diagnostics


def test_comments_and_blank_lines_ignored():
    assert parse_line("// {MIDI: N60} {1/0/0}").rules == []
    assert parse_line("   ").diagnostics == []


# --- Documents ---

def test_parse_document_continues_after_errors():
    text = "\n".join([
        "// buttons",
        "{MIDI: N60} {1/0/0}",
        "garbage",
        "{MIDI: CC00.0, CC32.2, PC7} {1/0/1}",
    ])
    result = parse_rules(text)
    assert [r.match_type for r in result.rules] == [EventKind.NOTE, EventKind.PROGRAM_CHANGE]
    assert result.rules[0].group != result.rules[1].group
    assert result.rules[1].bank == 2
    assert len(result.diagnostics) == 1


# --- Serializer ---

def test_format_round_trip():
    text = "\n".join([
        "{MIDI: N60@1.both, CC7} {1/0/2}",
        "{MIDI: CC00.1, CC32.5, PC12@3} {2/1/0}",
        "{MIDI: PC4} {1/0/0}",
    ]) + "\n"
    assert format_rules(parse_rules(text).rules) == text
    assert parse_rules(format_rules(parse_rules(text).rules)).rules == parse_rules(text).rules


def test_format_reserved_cc_on_own_line():
    rules = parse_rules("{MIDI: CC0} {1/0/0}").rules
    rules += [r.copy(match_type=EventKind.PROGRAM_CHANGE, number=3, bank=-1) for r in rules]
    assert format_rules(rules) == "{MIDI: PC3} {1/0/0}\n{MIDI: CC0} {1/0/0}\n"


def test_format_disabled_and_unlocated():
    rules = [
        Rule(name="off", number=61, button=ButtonLocation(1, 2, 3)),
        Rule(name="no button", enabled=True),
    ]
    assert format_rules(rules) == "// {MIDI: N61} {1/2/3}\n"


def test_format_empty():
    assert format_rules([]) == ""


def test_disabled_rules_dropped_by_round_trip():
    rules = [
        Rule(name="on", enabled=True, number=60, button=ButtonLocation(1, 0, 0)),
        Rule(name="off", number=61, button=ButtonLocation(1, 0, 1)),
    ]
    parsed = parse_rules(format_rules(rules)).rules
    assert [(r.number, r.button) for r in parsed] == [(60, ButtonLocation(1, 0, 0))]
