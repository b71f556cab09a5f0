import pytest
from unittest.mock import patch
from midi.events import EventKind
from midi.models import ButtonLocation, Rule, TriggerMode
from midi.rule_store import RuleStore
from midi.slots import (
    apply_pending_actions, rules_from_slots, rules_to_slots, slot_count, strip_slots,
)


RULES = [
    Rule(name="A", enabled=True, channel=2, number=40, trigger=TriggerMode.OFF),
    Rule(name="B", enabled=True, match_type=EventKind.PROGRAM_CHANGE, number=3, bank=7,
         button=ButtonLocation(1, 0, 4), group=0),
    Rule(name="C", match_type=EventKind.CONTROL_CHANGE, number=11, osc_args="$(value),x"),
]


def slots_for(rules):
    return rules_to_slots(rules)


# --- Encoding ---

def test_encode_keys():
    slots = rules_to_slots(RULES)
    assert slots["mappingCount"] == 3
    assert slots["mapping_0_name"] == "A"
    assert slots["mapping_0_trigger"] == "off"
    assert slots["mapping_0_action"] == "none"
    assert slots["mapping_1_program"] == 3
    assert slots["mapping_1_bank"] == 7
    assert slots["mapping_1_page"] == 1
    assert slots["mapping_1_group"] == 0
    assert "mapping_0_page" not in slots
    assert "mapping_0_group" not in slots


def test_decode_inverts_encode():
    assert rules_from_slots(rules_to_slots(RULES)) == RULES


def test_legacy_count_key():
    slots = rules_to_slots(RULES)
    slots["count"] = slots.pop("mappingCount")
    assert slot_count(slots) == 3
    assert len(rules_from_slots(slots)) == 3


def test_missing_fields_take_slot_defaults():
    rules = rules_from_slots({"mappingCount": 2, "mapping_0_name": "only name"})
    assert rules[0].name == "only name"
    assert rules[0].number == 60
    assert rules[1].name == "Rule 2"
    assert rules[1].number == 61
    assert rules[1].osc_address == "/midi/note/61"
    assert not rules[1].enabled


def test_invalid_slot_becomes_default():
    rules = rules_from_slots({"mappingCount": 1, "mapping_0_type": "sysex"})
    assert rules == [Rule.default(0)]


def test_invalid_count():
    assert slot_count({"mappingCount": "many"}) == 0


def test_strip_slots():
    slots = rules_to_slots(RULES)
    slots["midiPort"] = "Keys"
    assert strip_slots(slots) == {"midiPort": "Keys"}


# --- Pending actions ---

def test_slot_action_duplicate_and_reset():
    slots = slots_for(RULES)
    slots["mapping_0_action"] = "duplicate"
    store = RuleStore(rules_from_slots(slots))
    assert apply_pending_actions(slots, store)
    assert [r.name for r in store] == ["A", "A", "B", "C"]
    assert slots["mapping_0_action"] == "none"


def test_slot_action_delete_last_rejected():
    slots = slots_for(RULES[:1])
    slots["mapping_0_action"] = "delete"
    store = RuleStore(rules_from_slots(slots))
    assert not apply_pending_actions(slots, store)
    assert len(store) == 1
    assert slots["mapping_0_action"] == "none"


def test_slot_action_move():
    slots = slots_for(RULES)
    slots["mapping_2_action"] = "move_up"
    store = RuleStore(rules_from_slots(slots))
    assert apply_pending_actions(slots, store)
    assert [r.name for r in store] == ["A", "C", "B"]


def test_slot_action_export_logs_without_change():
    slots = slots_for(RULES)
    slots["mapping_1_action"] = "export"
    store = RuleStore(rules_from_slots(slots))
    with patch("midi.slots.log_export") as mock_log_export:
        assert not apply_pending_actions(slots, store)
    mock_log_export.assert_called_once()
    assert '"name": "B"' in mock_log_export.call_args.args[0]


def test_global_clear_all():
    slots = slots_for(RULES)
    slots["global_action"] = "clear_all"
    slots["mapping_0_action"] = "delete"
    store = RuleStore(rules_from_slots(slots))
    assert apply_pending_actions(slots, store)
    assert store.rules == [Rule.default(0)]
    assert slots["global_action"] == "none"
    assert slots["mapping_0_action"] == "none"


def test_global_export_all():
    slots = slots_for(RULES)
    slots["global_action"] = "export_all"
    slots["midiPort"] = "Keys"
    store = RuleStore(rules_from_slots(slots))
    with patch("midi.slots.log_export") as mock_log_export:
        assert not apply_pending_actions(slots, store)
    assert '"midiPort": "Keys"' in mock_log_export.call_args.args[0]


def test_import_json_replaces_rules():
    slots = slots_for(RULES)
    slots["import_json"] = '12.01.24 10:00:00 log: {"midiPort": "Pads", "mappings": [{"name": "New"}]}'
    store = RuleStore(rules_from_slots(slots))
    assert apply_pending_actions(slots, store)
    assert [r.name for r in store] == ["New"]
    assert slots["import_json"] == ""
    assert slots["midiPort"] == "Pads"


def test_failed_import_leaves_rules():
    slots = slots_for(RULES)
    slots["import_json"] = "not json at all"
    store = RuleStore(rules_from_slots(slots))
    assert not apply_pending_actions(slots, store)
    assert [r.name for r in store] == ["A", "B", "C"]
    assert slots["import_json"] == ""


@pytest.mark.parametrize("action", ["none", ""])
def test_no_actions(action):
    slots = slots_for(RULES)
    slots["mapping_0_action"] = action
    store = RuleStore(rules_from_slots(slots))
    assert not apply_pending_actions(slots, store)


def test_out_of_range_slot_becomes_default():
    slots = rules_to_slots(RULES[:2])
    slots["mapping_1_channel"] = 99
    slots["mapping_1_oscPort"] = 70000
    rules = rules_from_slots(slots)
    assert rules[0] == RULES[0]
    assert rules[1] == Rule.default(1)


def test_pending_import_validated():
    slots = slots_for(RULES)
    slots["import_json"] = '[{"name": "New", "noteOrCC": 500}]'
    store = RuleStore(rules_from_slots(slots))
    assert not apply_pending_actions(slots, store)
    assert [r.name for r in store] == ["A", "B", "C"]
