"""
Bridge engine: MIDI in, rule matching, OSC or button press out.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from midi.diagnostics import Diagnostics
from midi.error_tracking import ErrorTracker, SOURCE_CONFIG, SOURCE_MIDI, SOURCE_OSC, SOURCE_PRESS
from midi.events import EventKind, MidiDecoder, MidiEvent
from midi.matcher import match
from midi.minilang import format_rules, parse_rules
from midi.models import ANY_BANK, ANY_CHANNEL, Rule
from midi.ports import MidiInput
from midi.rule_store import RuleStore
from midi.slots import (
    MIDI_PORT_KEY, apply_pending_actions, apply_rule_action, rules_from_slots, rules_to_slots, strip_slots,
)
from midi.templating import render, tokenize
from midi.transfer import ImportResult, export_rules, log_export, parse_import
from midi.validation import MessageValidator, RuleValidator, ValidationError
from dispatch.osc_sender import OscSender
from dispatch.press_sequencer import PressSequencer
from .config import BridgeConfig, MODE_PRESS, load_rules_text, load_slots, save_slots

logger = logging.getLogger(__name__)

MIDI_WAITING_TEXT = "Waiting for MIDI input..."
OSC_WAITING_TEXT = "No OSC messages sent yet..."
MATCHED_TEXT = "✓ MATCHED"
NO_MATCH_TEXT = "✗ No match"

TEST_OSC_ADDRESS = "/test"
TEST_OSC_ARGS = "1, hello, 3.14"

EDITABLE_FIELDS = (
    "name", "enabled", "channel", "type", "noteOrCC", "trigger", "bank", "program",
    "oscIP", "oscPort", "oscAddress", "oscArgs", "page", "row", "column",
)


class BridgeEngine:
    """Owns the rule store, the decoder and the output sinks.

    All methods run on the event loop. MIDI messages arrive through
    handle_midi, called by MidiInput for each raw message.
    """

    def __init__(self, config: Optional[BridgeConfig] = None,
                 osc_sender: Optional[OscSender] = None,
                 press_sequencer: Optional[PressSequencer] = None,
                 midi_input: Optional[MidiInput] = None):
        self.config = config or BridgeConfig()
        self.errors = ErrorTracker()
        self.diagnostics = Diagnostics()
        self.decoder = MidiDecoder()
        self.store = RuleStore(capacity=self.config.max_rules)
        self.osc = osc_sender or OscSender(self.errors, log_messages=self.config.enable_logging)
        self.presses = press_sequencer or PressSequencer(
            host=self.config.companion_host,
            port=self.config.companion_port,
            inter_press_delay=self.config.press_delay_ms / 1000,
            max_queue=self.config.press_queue_size,
            errors=self.errors,
        )
        self.midi = midi_input
        self.last_midi_text = MIDI_WAITING_TEXT
        self.last_osc_text = OSC_WAITING_TEXT
        self._extra_settings: Dict[str, Any] = {}
        self._listeners: List[Callable[[], None]] = []

    # --- Lifecycle ---
    async def start(self) -> None:
        """Load rules, open the OSC socket and connect MIDI as configured."""
        self.load_persisted_rules()
        if self.config.rules_text_file:
            text = load_rules_text(self.config.rules_text_file)
            if text is not None:
                self.load_rules_text(text)
        self.osc.open()

        if self.midi is None:
            self.midi = MidiInput(asyncio.get_running_loop())
        self.midi.on_message(self.handle_midi)
        self.midi.refresh_ports()
        self._initial_connect()

    def _initial_connect(self) -> None:
        if not self.midi.available:
            logger.warning("MIDI support not available")
            return
        if self.config.midi_port:
            self.midi.open_port_by_name(self.config.midi_port)
        elif self.config.midi_port_index >= 0:
            if self.config.midi_port_index < len(self.midi.ports):
                self.midi.open_port(self.config.midi_port_index)
            else:
                logger.warning(f"Port index {self.config.midi_port_index} out of range "
                               f"({len(self.midi.ports)} ports available)")
        elif self.midi.ports and self.config.midi_auto_connect:
            logger.info("Auto-connecting to first available MIDI port")
            self.midi.open_port(0)

    async def stop(self) -> None:
        logger.info("Stopping bridge engine...")
        if self.midi is not None:
            self.midi.close_port()
        await self.presses.close()
        self.osc.close()
        logger.info("Bridge engine stopped.")

    # --- Change notification ---
    def add_listener(self, callback: Callable[[], None]) -> None:
        self._listeners.append(callback)

    def _notify(self) -> None:
        for callback in self._listeners:
            try:
                callback()
            except Exception:
                logger.exception("Error in state listener")

    # --- MIDI path ---
    def handle_midi(self, message: Sequence[int]) -> None:
        """Decode one raw message and dispatch it to every matching rule."""
        logger.debug(f"MIDI Message: {list(message)}")
        event = self.decoder.decode_message(message)
        if event is None:
            return
        self.diagnostics.record_received()

        matches = match(event, self.store.rules)
        self.last_midi_text = f"{event.describe()} | {MATCHED_TEXT if matches else NO_MATCH_TEXT}"
        for rule in matches:
            self.dispatch(rule, event)
        self._notify()

    def dispatch(self, rule: Rule, event: MidiEvent) -> bool:
        """Send one rule's output for ``event``. Returns False if nothing was sent."""
        if self.config.mode == MODE_PRESS:
            if rule.button is None:
                logger.warning(f"Rule '{rule.name}' has no button location, skipping press")
                return False
            if not self.presses.enqueue(rule.button):
                return False
            self.diagnostics.record_sent()
            self.last_osc_text = f"Press → {self.config.companion_host}:{self.config.companion_port} | {rule.button}"
            return True

        rendered = render(rule.osc_args, event)
        if not self.osc.send(rule.osc_ip, rule.osc_port, rule.osc_address, tokenize(rendered)):
            return False
        self.diagnostics.record_sent()
        self.last_osc_text = f"OSC → {rule.osc_ip}:{rule.osc_port} | {rule.osc_address} {rendered}"
        return True

    def trigger_rule(self, index: int, value: int = 127) -> bool:
        """Fire rule ``index`` by hand with ``value``, bypassing matching."""
        if not 0 <= index < len(self.store):
            logger.warning(f"Rule {index + 1} does not exist")
            return False
        rule = self.store[index]
        if not rule.enabled:
            logger.warning(f"Rule {index + 1} is not configured or disabled")
            return False

        channel = rule.channel if rule.channel != ANY_CHANNEL else 1
        if rule.match_type == EventKind.PROGRAM_CHANGE:
            bank = rule.bank if rule.bank != ANY_BANK else 0
            event = MidiEvent(rule.match_type, channel, value=value, bank=bank, program=rule.number)
        else:
            event = MidiEvent(rule.match_type, channel, number=rule.number, value=value)

        sent = self.dispatch(rule, event)
        if sent:
            logger.info(f"Triggered rule {index + 1}: {rule.osc_address}")
        self._notify()
        return sent

    def send_test_osc(self, address: str = TEST_OSC_ADDRESS, args: str = TEST_OSC_ARGS,
                      host: str = "127.0.0.1", port: int = 8000) -> bool:
        """Send one OSC message outside of any rule."""
        if not self.osc.send(host, port, address, tokenize(args)):
            return False
        self.diagnostics.record_sent()
        self.last_osc_text = f"OSC → {host}:{port} | {address} {args}"
        logger.info(f"Sent test OSC message to {host}:{port}")
        self._notify()
        return True

    # --- MIDI ports ---
    def connect_midi(self, index: int) -> bool:
        if self.midi is None:
            return False
        connected = self.midi.open_port(index)
        if connected:
            self.config.midi_port = self.midi.port_name
            self.config.midi_port_index = index
        else:
            self.errors.add_error(SOURCE_MIDI, f"Failed to open MIDI port {index}")
        self._notify()
        return connected

    def disconnect_midi(self) -> None:
        if self.midi is not None:
            self.midi.close_port()
        self._notify()

    def refresh_ports(self) -> List[str]:
        """Re-scan ports and re-open the current one by name if it was open."""
        if self.midi is None:
            return []
        if self.midi.connected:
            self.midi.reconnect()
        else:
            self.midi.refresh_ports()
        self._notify()
        return self.port_names()

    def port_names(self) -> List[str]:
        return [port.name for port in self.midi.ports] if self.midi is not None else []

    # --- Rules ---
    @property
    def _require_osc(self) -> bool:
        return self.config.mode != MODE_PRESS

    def _check_rules(self) -> None:
        for index, rule in enumerate(self.store.rules):
            if not rule.enabled:
                continue
            errors = RuleValidator.validate_rule(rule, require_osc=self._require_osc)
            if errors:
                logger.warning(f"Rule {index + 1} ({rule.name}): {MessageValidator.format_errors(errors)}")

    def _rules_changed(self) -> None:
        self._check_rules()
        self.save_rules()
        self._notify()

    def load_persisted_rules(self) -> None:
        """Load the slot file and run any actions pending in it."""
        slots = load_slots(self.config.rules_file)
        self.store.replace(rules_from_slots(slots))
        midi_port = self.config.midi_port or slots.get(MIDI_PORT_KEY)
        apply_pending_actions(slots, self.store, midi_port=midi_port, require_osc=self._require_osc)
        self._extra_settings = strip_slots(slots)
        if not self.config.midi_port and slots.get(MIDI_PORT_KEY):
            self.config.midi_port = slots[MIDI_PORT_KEY]
        logger.info(f"Loaded {len(self.store)} rules ({len(self.store.enabled_rules())} enabled)")
        self._check_rules()
        self.save_rules()

    def save_rules(self) -> bool:
        data = dict(self._extra_settings)
        if self.config.midi_port:
            data[MIDI_PORT_KEY] = self.config.midi_port
        data.update(rules_to_slots(self.store.rules))
        saved = save_slots(self.config.rules_file, data)
        if not saved:
            self.errors.add_error(SOURCE_CONFIG, f"Could not save rules to {self.config.rules_file}")
        return saved

    def rule_action(self, index: int, action: str) -> bool:
        changed = apply_rule_action(self.store, index, action)
        if changed:
            self._rules_changed()
        return changed

    def clear_rules(self) -> None:
        self.store.clear()
        self._rules_changed()

    def _edited_rule(self, rule: Rule, index: int,
                     fields: Dict[str, Any]) -> Tuple[Optional[Rule], List[ValidationError]]:
        unknown = sorted(set(fields) - set(EDITABLE_FIELDS))
        if unknown:
            return None, [ValidationError("fields", f"Unknown rule fields: {', '.join(unknown)}")]
        data = rule.to_dict()
        # Program follows noteOrCC unless given explicitly
        data.pop("program")
        data.update(fields)
        try:
            edited = Rule.from_dict(data, index).copy(group=rule.group)
        except (TypeError, ValueError) as e:
            return None, [ValidationError("fields", str(e))]
        return edited, RuleValidator.validate_rule(edited, require_osc=self._require_osc)

    def add_rule(self, fields: Optional[Dict[str, Any]] = None) -> List[ValidationError]:
        """Append an enabled rule, with ``fields`` applied over the defaults of its slot."""
        index = len(self.store)
        base = Rule.default(index).copy(enabled=True, channel=1, number=60 + index,
                                        osc_address=f"/midi/note/{60 + index}")
        rule, errors = self._edited_rule(base, index, fields or {})
        if errors:
            logger.warning(f"Rejected new rule: {MessageValidator.format_errors(errors)}")
            return errors
        if not self.store.append(rule):
            return [ValidationError("count", f"Maximum number of rules ({self.store.capacity}) reached")]
        logger.info(f"Added rule {index + 1}")
        self._rules_changed()
        return []

    def update_rule(self, index: int, fields: Dict[str, Any]) -> List[ValidationError]:
        """Change individual fields of rule ``index``. Nothing changes if any field is invalid."""
        if not 0 <= index < len(self.store):
            return [ValidationError("index", f"Rule {index + 1} does not exist")]
        rule, errors = self._edited_rule(self.store[index], index, fields)
        if errors:
            logger.warning(f"Rejected edit of rule {index + 1}: {MessageValidator.format_errors(errors)}")
            return errors
        self.store.update(index, rule)
        self._rules_changed()
        return []

    def set_rule_count(self, count: int) -> bool:
        """Grow with default rules or drop rules from the end."""
        if not self.store.resize(count):
            return False
        self._rules_changed()
        return True

    def export_rules(self) -> str:
        text = export_rules(self.store.rules, self.config.midi_port)
        log_export(text)
        return text

    def import_rules(self, text: str) -> ImportResult:
        """Replace all rules with an import. Raises ImportRulesError, leaving rules untouched."""
        result = parse_import(text, require_osc=self._require_osc)
        self.store.replace(result.rules)
        logger.info(f"Successfully imported {len(self.store)} rules")
        self._rules_changed()
        return result

    def load_rules_text(self, text: str) -> List[str]:
        """Replace all rules with those parsed from mini-language text.

        Returns the parse diagnostics. Text that yields no rules leaves the
        current rules in place.
        """
        result = parse_rules(text)
        if not result.rules:
            logger.warning("No rules found in rules text, keeping current rules")
            return result.diagnostics
        self.store.replace(result.rules)
        self._rules_changed()
        return result.diagnostics

    def rules_text(self) -> str:
        return format_rules(self.store.rules)

    # --- Status ---
    def get_status(self) -> Dict[str, Any]:
        midi = self.midi
        return {
            "mode": self.config.mode,
            "midi_status": midi.status if midi is not None else "Not Available",
            "midi_port": (midi.port_name if midi is not None else None) or "None",
            "messages_received": self.diagnostics.messages_received,
            "messages_sent": self.diagnostics.messages_sent,
            "errors": self.errors.total,
            "mappings_count": len(self.store.enabled_rules()),
            "last_midi_message": self.last_midi_text,
            "last_osc_message": self.last_osc_text,
            "press_queue": self.presses.pending,
        }

    def reset_stats(self) -> None:
        """Zero the message and error counters."""
        self.diagnostics.reset()
        self.errors.reset()
        logger.info("Statistics reset")
        self._notify()

    def get_rules(self) -> List[Dict[str, Any]]:
        rules = []
        for index, rule in enumerate(self.store.rules):
            data = rule.to_dict()
            data.update(index=index, description=rule.describe_trigger(), group=rule.group)
            rules.append(data)
        return rules

    def get_diagnostics(self) -> Dict[str, Any]:
        """Performance report plus error breakdown and host information."""
        report = self.diagnostics.get_performance_report(
            error_rate=float(len(self.errors.get_recent_errors(60))),
            queue_size=self.presses.pending,
        )
        last = self.errors.last_error()
        report["errors"] = self.errors.summary()
        report["error_rates"] = {
            source: self.errors.get_error_rate(source)
            for source in (SOURCE_MIDI, SOURCE_OSC, SOURCE_PRESS, SOURCE_CONFIG)
        }
        report["last_error"] = {"source": last.source, "message": last.message} if last else None
        report["system"] = self.diagnostics.get_system_info()
        return report
