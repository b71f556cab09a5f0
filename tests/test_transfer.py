import json
import pytest
from unittest.mock import MagicMock
from midi.events import EventKind
from midi.models import ButtonLocation, Rule, TriggerMode
from midi.transfer import (
    COPY_END_MARKER, COPY_START_MARKER, ImportRulesError, export_rules, export_single_rule,
    extract_json, find_balanced, log_export, parse_import, strip_timestamps,
)


RULES = [
    Rule(name="Kick", enabled=True, channel=10, number=36, trigger=TriggerMode.BOTH,
         osc_address="/drums/kick", osc_args="$(value), hit"),
    Rule(name="Scene", enabled=True, match_type=EventKind.PROGRAM_CHANGE, number=12, bank=133,
         osc_address="/scene", button=ButtonLocation(1, 2, 3)),
]


# --- Export ---

def test_export_shape():
    data = json.loads(export_rules(RULES, "USB Keys"))
    assert data["midiPort"] == "USB Keys"
    assert data["mappings"][0] == {
        "name": "Kick", "enabled": True, "channel": 10, "type": "note", "noteOrCC": 36,
        "trigger": "both", "bank": -1, "program": 0, "oscIP": "127.0.0.1", "oscPort": 8000,
        "oscAddress": "/drums/kick", "oscArgs": "$(value), hit",
    }
    assert data["mappings"][1]["program"] == 12
    assert data["mappings"][1]["page"] == 1


def test_export_single_rule_is_array():
    assert json.loads(export_single_rule(RULES[0]))[0]["name"] == "Kick"


def test_log_export_wraps_in_markers():
    log = MagicMock()
    log_export('{\n  "a": 1\n}', log=log)
    lines = [call.args[0] for call in log.call_args_list]
    assert lines[0] == COPY_START_MARKER
    assert lines[1:4] == ["{", '  "a": 1', "}"]
    assert lines[4] == COPY_END_MARKER


# --- Import helpers ---

def test_strip_timestamps():
    text = "21.03.24 14:05:09 MIDI2OSC: [\nplain line\n01.01.25 00:00:00 Log:   ]"
    assert strip_timestamps(text) == "[\nplain line\n]"


def test_find_balanced_skips_brackets_in_strings():
    text = 'x ["a]", "b\\"]"] tail ]'
    start, end = find_balanced(text, "[", "]")
    assert text[start:end + 1] == '["a]", "b\\"]"]'


def test_extract_nested_array_uses_enclosing_object():
    text = '{"midiPort": "x", "mappings": [1]}'
    assert extract_json(text) == text


def test_extract_array_before_object():
    assert extract_json('[1] {"a": [2]}') == "[1]"


def test_extract_object_when_no_array():
    assert extract_json('noise {"a": 1} more') == '{"a": 1}'


def test_extract_nothing():
    with pytest.raises(ImportRulesError):
        extract_json("no json here")


# --- parse_import ---

def test_round_trip_through_log_paste():
    """An export copied out of the log viewer imports back unchanged."""
    exported = export_rules(RULES, "USB Keys")
    logged = [COPY_START_MARKER] + exported.split("\n") + [COPY_END_MARKER]
    pasted = "\n".join(f"21.03.24 14:05:09 MIDI2OSC: {line}" for line in logged) + "\ntrailing noise ]"
    result = parse_import(pasted)
    assert result.rules == RULES
    assert result.midi_port == "USB Keys"


def test_import_object_keeps_midi_port():
    result = parse_import('{"midiPort": "Keys", "mappings": [{"name": "A"}]}')
    assert result.midi_port == "Keys"
    assert [rule.name for rule in result.rules] == ["A"]


def test_import_empty_mappings_rejected():
    with pytest.raises(ImportRulesError):
        parse_import('{"midiPort": "Keys", "mappings": []}')


def test_import_bare_array_defaults():
    result = parse_import('[{"name": "Old", "enabled": true, "type": "note", "noteOrCC": 40}]')
    rule = result.rules[0]
    assert result.midi_port is None
    assert rule.trigger == TriggerMode.BOTH
    assert rule.bank == -1
    assert rule.osc_args == "$(value)"


def test_import_program_uses_program_field():
    result = parse_import('[{"type": "program", "noteOrCC": 1, "program": 9, "bank": 4}]')
    assert result.rules[0].number == 9
    assert result.rules[0].bank == 4


def test_import_invalid_json_keeps_prefix():
    text = "[" + "x" * 300 + "]"
    with pytest.raises(ImportRulesError) as exc_info:
        parse_import(text)
    assert exc_info.value.debug_prefix == text[:200]


def test_import_invalid_rule_rejected():
    with pytest.raises(ImportRulesError):
        parse_import('[{"type": "sysex"}]')
    with pytest.raises(ImportRulesError):
        parse_import('[{"channel": "abc"}]')
    with pytest.raises(ImportRulesError):
        parse_import('[42]')


def test_import_wrong_object_shape():
    with pytest.raises(ImportRulesError) as exc_info:
        parse_import('{"rules": 1}')
    assert "mappings" in str(exc_info.value)


def test_import_out_of_range_fields_rejected():
    text = '[{"type": "note", "channel": 99, "noteOrCC": 500, "oscPort": 70000, "bank": -7}]'
    with pytest.raises(ImportRulesError) as exc_info:
        parse_import(text)
    message = str(exc_info.value)
    for field in ("channel", "noteOrCC", "bank", "oscPort"):
        assert field in message
    assert exc_info.value.extracted == text


def test_import_rejected_as_a_whole():
    text = '[{"name": "good"}, {"name": "bad", "oscIP": "300.0.0.1"}]'
    with pytest.raises(ImportRulesError) as exc_info:
        parse_import(text)
    assert str(exc_info.value).startswith("Rule 2 (bad)")


def test_import_for_press_mode_needs_buttons():
    located = '[{"name": "a", "enabled": true, "page": 1, "row": 0, "column": 2, "oscIP": "x"}]'
    assert parse_import(located, require_osc=False).rules[0].button == ButtonLocation(1, 0, 2)
    with pytest.raises(ImportRulesError):
        parse_import('[{"name": "a", "enabled": true}]', require_osc=False)
