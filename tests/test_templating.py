import pytest
from midi.events import EventKind, MidiEvent
from midi.templating import OscArg, render, tokenize


NOTE = MidiEvent(EventKind.NOTE, 2, number=60, value=100)
CC = MidiEvent(EventKind.CONTROL_CHANGE, 1, number=7, value=64)
PROGRAM = MidiEvent(EventKind.PROGRAM_CHANGE, 3, bank=133, program=12)


# --- render ---

def test_render_note_placeholders():
    assert render("$(value),$(channel),$(type),$(notecc)", NOTE) == "100,2,note,60"


def test_render_cc_type():
    assert render("$(type) $(notecc) $(value)", CC) == "cc 7 64"


def test_render_program_placeholders():
    assert render("$(bank),$(program),$(channel),$(value)", PROGRAM) == "133,12,3,127"


def test_render_program_value_override():
    event = MidiEvent(EventKind.PROGRAM_CHANGE, 3, value=90, bank=0, program=1)
    assert render("$(value)", event) == "90"


def test_inapplicable_placeholders_pass_through():
    assert render("$(bank) $(program)", NOTE) == "$(bank) $(program)"
    assert render("$(notecc)", PROGRAM) == "$(notecc)"


def test_unknown_placeholder_passes_through():
    assert render("$(velocity) $(value)", NOTE) == "$(velocity) 100"


def test_repeated_placeholder():
    assert render("$(value)/$(value)", NOTE) == "100/100"


def test_render_empty_template():
    assert render("", NOTE) == ""


# --- tokenize ---

def test_tokenize_mixed():
    assert tokenize("100, 1.5, hello") == [OscArg("i", 100), OscArg("f", 1.5), OscArg("s", "hello")]


def test_tokenize_trims_whitespace():
    assert tokenize("  1 ,  two  ") == [OscArg("i", 1), OscArg("s", "two")]


def test_tokenize_empty():
    assert tokenize("") == []
    assert tokenize("   ") == []


def test_tokenize_empty_token_is_empty_string():
    assert tokenize("1,,2") == [OscArg("i", 1), OscArg("s", ""), OscArg("i", 2)]


@pytest.mark.parametrize("token", ["12abc", "inf", "nan", "1e400", "0x10"])
def test_tokenize_partial_numbers_are_strings(token):
    assert tokenize(token) == [OscArg("s", token)]


def test_tokenize_negative_and_float_types():
    assert tokenize("-3,-0.25,2.0") == [OscArg("i", -3), OscArg("f", -0.25), OscArg("f", 2.0)]


def test_tokenize_exponent_without_dot_is_int():
    assert tokenize("1e3") == [OscArg("i", 1000)]


def test_tokenize_unresolved_placeholder_is_string():
    assert tokenize(render("$(bank)", NOTE)) == [OscArg("s", "$(bank)")]


def test_tokenize_digit_separators_stay_strings():
    assert tokenize("1_000, 2") == [OscArg("s", "1_000"), OscArg("i", 2)]
    assert tokenize("0.5_0") == [OscArg("s", "0.5_0")]
