"""Matching of decoded events against the rule set."""

import logging
from typing import Iterable, List

from .events import EventKind, MidiEvent
from .models import Rule, TriggerMode, ANY_BANK, ANY_CHANNEL

logger = logging.getLogger(__name__)


def rule_accepts(rule: Rule, event: MidiEvent) -> bool:
    """Check one rule's predicate against an event. Ignores ``enabled``."""
    if rule.match_type != event.kind:
        return False
    if rule.channel != ANY_CHANNEL and rule.channel != event.channel:
        return False

    if event.kind == EventKind.NOTE:
        if rule.number != event.number:
            return False
        if rule.trigger == TriggerMode.ON:
            return bool(event.value)
        if rule.trigger == TriggerMode.OFF:
            return not event.value
        return True

    if event.kind == EventKind.CONTROL_CHANGE:
        return rule.number == event.number

    if rule.bank != ANY_BANK and rule.bank != event.bank:
        return False
    return rule.number == event.program


def match(event: MidiEvent, rules: Iterable[Rule]) -> List[Rule]:
    """Return every enabled rule accepting ``event``, in store order.

    All matching rules fire; the first match does not stop the scan.
    """
    matches = [rule for rule in rules if rule.enabled and rule_accepts(rule, event)]
    if matches:
        logger.debug(f"{event.describe()} matched {len(matches)} rule(s): {[r.name for r in matches]}")
    return matches
