"""
Flat slot form of the rule set.

The persisted configuration stores rules as ``mapping_<i>_<field>`` keys plus
``mappingCount``. Only this module knows that layout; everything else works
with Rule objects. Each slot also carries an ``action`` selector, and the
configuration may hold a ``global_action`` and an ``import_json`` field, all
of which are processed once by apply_pending_actions and then reset.
"""
import logging
from typing import Any, Dict, List, Optional

from .models import Rule
from .rule_store import RuleStore, MOVE_DOWN, MOVE_UP
from .validation import MessageValidator, RuleValidator
from .transfer import ImportRulesError, export_rules, export_single_rule, log_export, parse_import

logger = logging.getLogger(__name__)

COUNT_KEY = "mappingCount"
LEGACY_COUNT_KEY = "count"
GLOBAL_ACTION_KEY = "global_action"
IMPORT_KEY = "import_json"
MIDI_PORT_KEY = "midiPort"

ACTION_NONE = "none"
ACTION_DUPLICATE = "duplicate"
ACTION_DELETE = "delete"
ACTION_MOVE_UP = "move_up"
ACTION_MOVE_DOWN = "move_down"
ACTION_EXPORT = "export"

GLOBAL_EXPORT_ALL = "export_all"
GLOBAL_CLEAR_ALL = "clear_all"

SLOT_FIELDS = (
    "name", "enabled", "action", "channel", "type", "noteOrCC", "trigger", "bank", "program",
    "oscIP", "oscPort", "oscAddress", "oscArgs", "page", "row", "column", "group",
)


def slot_key(index: int, field: str) -> str:
    return f"mapping_{index}_{field}"


def slot_count(config: Dict[str, Any]) -> int:
    """Number of slots, from ``mappingCount`` or the older ``count`` key."""
    raw = config.get(COUNT_KEY, config.get(LEGACY_COUNT_KEY, 0))
    try:
        return max(0, int(raw))
    except (TypeError, ValueError):
        logger.warning(f"Invalid mapping count {raw!r}, treating as 0")
        return 0


def rules_to_slots(rules: List[Rule]) -> Dict[str, Any]:
    """Encode rules as flat slot keys. Action selectors are reset to none."""
    config: Dict[str, Any] = {COUNT_KEY: len(rules)}
    for index, rule in enumerate(rules):
        data = rule.to_dict()
        data["action"] = ACTION_NONE
        if rule.group is not None:
            data["group"] = rule.group
        for field, value in data.items():
            config[slot_key(index, field)] = value
    return config


def _read_slot(config: Dict[str, Any], index: int) -> Rule:
    data = {}
    for field in SLOT_FIELDS:
        key = slot_key(index, field)
        if key in config:
            data[field] = config[key]
    # Fresh slots number their notes upward from 60
    data.setdefault("noteOrCC", 60 + index)
    data.setdefault("oscAddress", f"/midi/note/{60 + index}")
    rule = Rule.from_dict(data, index)
    errors = RuleValidator.validate_ranges(rule)
    if errors:
        raise ValueError(MessageValidator.format_errors(errors))
    group = data.get("group")
    if group is not None and group != "":
        rule = rule.copy(group=int(group))
    return rule


def rules_from_slots(config: Dict[str, Any]) -> List[Rule]:
    """Decode the flat slot form.

    A slot that cannot be decoded or holds out-of-range values becomes a
    default rule.
    """
    rules = []
    for index in range(slot_count(config)):
        try:
            rules.append(_read_slot(config, index))
        except (TypeError, ValueError) as e:
            logger.error(f"Invalid rule in slot {index + 1}: {e}")
            rules.append(Rule.default(index))
    return rules


def strip_slots(config: Dict[str, Any]) -> Dict[str, Any]:
    """Return ``config`` without any slot keys or the count."""
    return {
        key: value for key, value in config.items()
        if not key.startswith("mapping_") and key not in (COUNT_KEY, LEGACY_COUNT_KEY)
    }


def apply_rule_action(store: RuleStore, index: int, action: str) -> bool:
    """Run one per-rule action against ``store``. Returns True if the store changed."""
    if action == ACTION_DUPLICATE:
        return store.duplicate(index)
    if action == ACTION_DELETE:
        return store.delete(index)
    if action == ACTION_MOVE_UP:
        return store.move(index, MOVE_UP)
    if action == ACTION_MOVE_DOWN:
        return store.move(index, MOVE_DOWN)
    if action == ACTION_EXPORT:
        if 0 <= index < len(store):
            log_export(export_single_rule(store[index]))
        return False
    logger.warning(f"Unknown action {action!r} for rule {index + 1}")
    return False


def apply_pending_actions(config: Dict[str, Any], store: RuleStore,
                          midi_port: Optional[str] = None, require_osc: bool = True) -> bool:
    """Process import, global and per-slot actions found in ``config``.

    ``store`` must already hold the rules decoded from ``config``. Order is
    import, then the global action, then slot actions in slot order; an
    import or a global action that changes the store ends processing. All
    selectors in ``config`` are reset. Returns True if the store changed.
    """
    import_text = config.get(IMPORT_KEY) or ""
    config[IMPORT_KEY] = ""
    if import_text.strip():
        try:
            result = parse_import(import_text, require_osc=require_osc)
            store.replace(result.rules)
            if result.midi_port:
                config[MIDI_PORT_KEY] = result.midi_port
            logger.info(f"Imported {len(store)} rules")
            _reset_slot_actions(config)
            return True
        except ImportRulesError as e:
            logger.error(f"Failed to import rules: {e}")
            logger.error(f"First {len(e.debug_prefix)} chars of extracted JSON: {e.debug_prefix}")

    global_action = config.get(GLOBAL_ACTION_KEY) or ACTION_NONE
    config[GLOBAL_ACTION_KEY] = ACTION_NONE
    if global_action == GLOBAL_EXPORT_ALL:
        log_export(export_rules(store.rules, midi_port or config.get(MIDI_PORT_KEY)))
    elif global_action == GLOBAL_CLEAR_ALL:
        store.clear()
        _reset_slot_actions(config)
        return True
    elif global_action != ACTION_NONE:
        logger.warning(f"Unknown global action {global_action!r}")

    pending = []
    for index in range(slot_count(config)):
        action = config.get(slot_key(index, "action")) or ACTION_NONE
        if action != ACTION_NONE:
            pending.append((index, action))
    _reset_slot_actions(config)

    changed = False
    for index, action in pending:
        changed = apply_rule_action(store, index, action) or changed
    return changed


def _reset_slot_actions(config: Dict[str, Any]) -> None:
    for index in range(slot_count(config)):
        key = slot_key(index, "action")
        if key in config:
            config[key] = ACTION_NONE
