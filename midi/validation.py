"""Validation of rules and control messages."""

import ipaddress
from typing import Dict, Any, List
from dataclasses import dataclass
from enum import Enum

from .events import EventKind
from .models import Rule, ANY_BANK, MAX_BANK


class MessageType(Enum):
    GET_STATUS = "get_status"
    GET_MIDI_PORTS = "get_midi_ports"
    REFRESH_PORTS = "refresh_ports"
    CONNECT_MIDI = "connect_midi"
    DISCONNECT_MIDI = "disconnect_midi"
    GET_RULES = "get_rules"
    RULE_ACTION = "rule_action"
    CLEAR_RULES = "clear_rules"
    EXPORT_RULES = "export_rules"
    IMPORT_RULES = "import_rules"
    LOAD_RULES_TEXT = "load_rules_text"
    TRIGGER_RULE = "trigger_rule"
    GET_DIAGNOSTICS = "get_diagnostics"
    ADD_RULE = "add_rule"
    UPDATE_RULE = "update_rule"
    SET_RULE_COUNT = "set_rule_count"
    RESET_STATS = "reset_stats"
    SEND_TEST_OSC = "send_test_osc"


RULE_ACTIONS = ("duplicate", "delete", "move_up", "move_down", "export")


@dataclass
class ValidationError:
    """Validation error details."""
    field: str
    message: str


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def is_ipv4(value: str) -> bool:
    try:
        ipaddress.IPv4Address(value)
        return True
    except (ipaddress.AddressValueError, ValueError):
        return False


class RuleValidator:
    """Checks rule fields against their documented ranges."""

    @staticmethod
    def validate_ranges(rule: Rule) -> List[ValidationError]:
        """Check the numeric fields only."""
        errors: List[ValidationError] = []

        if not 0 <= rule.channel <= 16:
            errors.append(ValidationError("channel", "Channel must be between 0 (any) and 16"))
        if not 0 <= rule.number <= 127:
            label = "Program" if rule.match_type == EventKind.PROGRAM_CHANGE else "Note/CC number"
            errors.append(ValidationError("noteOrCC", f"{label} must be between 0 and 127"))
        if not ANY_BANK <= rule.bank <= MAX_BANK:
            errors.append(ValidationError("bank", f"Bank must be between {ANY_BANK} (any) and {MAX_BANK}"))
        if not 1 <= rule.osc_port <= 65535:
            errors.append(ValidationError("oscPort", "Port must be between 1 and 65535"))
        if rule.button is not None:
            if rule.button.page < 1:
                errors.append(ValidationError("page", "Page must be 1 or higher"))
            if rule.button.row < 0 or rule.button.column < 0:
                errors.append(ValidationError("button", "Row and column must not be negative"))
        return errors

    @staticmethod
    def validate_rule(rule: Rule, require_osc: bool = True) -> List[ValidationError]:
        """Validate one rule for the given output mode.

        OSC targets are checked when ``require_osc`` is set; otherwise an
        enabled rule needs a button location.

        Returns:
            List of validation errors. Empty list means validation passed.
        """
        errors = RuleValidator.validate_ranges(rule)

        if require_osc:
            if not is_ipv4(rule.osc_ip):
                errors.append(ValidationError("oscIP", f"Invalid IPv4 address: {rule.osc_ip}"))
            if not rule.osc_address.startswith("/"):
                errors.append(ValidationError("oscAddress", "OSC address must start with '/'"))
        elif rule.enabled and rule.button is None:
            errors.append(ValidationError("button", "Button location is required"))

        return errors


class MessageValidator:
    """Validates incoming WebSocket messages."""

    @staticmethod
    def validate_message(data: Dict[str, Any]) -> List[ValidationError]:
        """Validate a message based on its type.

        Returns:
            List of validation errors. Empty list means validation passed.
        """
        if not isinstance(data, dict):
            return [ValidationError("message", "Message must be a JSON object")]

        if "type" not in data:
            return [ValidationError("type", "Message type is required")]

        try:
            msg_type = MessageType(data["type"])
        except ValueError:
            return [ValidationError("type", f"Invalid message type: {data['type']}")]

        payload = data.get("payload", {})
        if not isinstance(payload, dict):
            return [ValidationError("payload", "Payload must be an object")]

        if msg_type == MessageType.CONNECT_MIDI:
            return MessageValidator._validate_connect_midi(payload)
        if msg_type == MessageType.RULE_ACTION:
            return MessageValidator._validate_rule_action(payload)
        if msg_type in (MessageType.IMPORT_RULES, MessageType.LOAD_RULES_TEXT):
            return MessageValidator._validate_text(payload)
        if msg_type == MessageType.TRIGGER_RULE:
            return MessageValidator._validate_trigger_rule(payload)
        if msg_type == MessageType.ADD_RULE:
            return MessageValidator._validate_fields(payload, required=False)
        if msg_type == MessageType.UPDATE_RULE:
            return MessageValidator._validate_update_rule(payload)
        if msg_type == MessageType.SET_RULE_COUNT:
            return MessageValidator._validate_rule_count(payload)
        if msg_type == MessageType.SEND_TEST_OSC:
            return MessageValidator._validate_test_osc(payload)
        return []

    @staticmethod
    def _validate_connect_midi(payload: Dict[str, Any]) -> List[ValidationError]:
        errors = []
        if "port" not in payload:
            errors.append(ValidationError("port", "Port index is required"))
        elif not _is_int(payload["port"]):
            errors.append(ValidationError("port", "Port index must be an integer"))
        return errors

    @staticmethod
    def _validate_rule_action(payload: Dict[str, Any]) -> List[ValidationError]:
        errors = []
        if "index" not in payload:
            errors.append(ValidationError("index", "Rule index is required"))
        elif not _is_int(payload["index"]):
            errors.append(ValidationError("index", "Rule index must be an integer"))

        if payload.get("action") not in RULE_ACTIONS:
            errors.append(ValidationError("action", f"Action must be one of {', '.join(RULE_ACTIONS)}"))
        return errors

    @staticmethod
    def _validate_text(payload: Dict[str, Any]) -> List[ValidationError]:
        if not isinstance(payload.get("text"), str):
            return [ValidationError("text", "Text is required")]
        return []

    @staticmethod
    def _validate_trigger_rule(payload: Dict[str, Any]) -> List[ValidationError]:
        errors = []
        if not _is_int(payload.get("index")):
            errors.append(ValidationError("index", "Rule index must be an integer"))
        value = payload.get("value", 127)
        if not _is_int(value) or not 0 <= value <= 127:
            errors.append(ValidationError("value", "Value must be an integer between 0 and 127"))
        return errors

    @staticmethod
    def _validate_fields(payload: Dict[str, Any], required: bool) -> List[ValidationError]:
        if "fields" not in payload:
            return [ValidationError("fields", "Rule fields are required")] if required else []
        if not isinstance(payload["fields"], dict):
            return [ValidationError("fields", "Rule fields must be an object")]
        return []

    @staticmethod
    def _validate_update_rule(payload: Dict[str, Any]) -> List[ValidationError]:
        errors = []
        if not _is_int(payload.get("index")):
            errors.append(ValidationError("index", "Rule index must be an integer"))
        errors.extend(MessageValidator._validate_fields(payload, required=True))
        return errors

    @staticmethod
    def _validate_rule_count(payload: Dict[str, Any]) -> List[ValidationError]:
        if not _is_int(payload.get("count")) or payload["count"] < 1:
            return [ValidationError("count", "Rule count must be a positive integer")]
        return []

    @staticmethod
    def _validate_test_osc(payload: Dict[str, Any]) -> List[ValidationError]:
        errors = []
        address = payload.get("address", "/")
        if not isinstance(address, str) or not address.startswith("/"):
            errors.append(ValidationError("address", "OSC address must start with '/'"))
        if not isinstance(payload.get("args", ""), str):
            errors.append(ValidationError("args", "Arguments must be a string"))
        host = payload.get("host", "127.0.0.1")
        if not isinstance(host, str) or not is_ipv4(host):
            errors.append(ValidationError("host", f"Invalid IPv4 address: {host}"))
        port = payload.get("port", 8000)
        if not _is_int(port) or not 1 <= port <= 65535:
            errors.append(ValidationError("port", "Port must be between 1 and 65535"))
        return errors

    @staticmethod
    def format_errors(errors: List[ValidationError]) -> str:
        """Format validation errors into a human-readable message."""
        if not errors:
            return ""

        messages = [f"{error.field}: {error.message}" for error in errors]
        return "Validation failed: " + "; ".join(messages)
