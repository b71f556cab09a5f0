import sys
import os
import logging
import pytest
from unittest.mock import MagicMock

# Add project root to Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from server.config import BridgeConfig  # noqa: E402
from server.engine import BridgeEngine  # noqa: E402


@pytest.fixture(autouse=True)
def configure_logging():
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.DEBUG,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


@pytest.fixture
def bridge_config(tmp_path):
    """Configuration writing its rule file into a temporary directory."""
    return BridgeConfig(rules_file=str(tmp_path / "rules.json"))


@pytest.fixture
def engine(bridge_config):
    """Engine with mocked OSC, press and MIDI sinks."""
    osc = MagicMock()
    osc.send.return_value = True
    presses = MagicMock()
    presses.enqueue.return_value = True
    presses.pending = 0
    midi = MagicMock()
    midi.ports = []
    midi.port_name = None
    midi.status = "Disconnected"
    return BridgeEngine(bridge_config, osc_sender=osc, press_sequencer=presses, midi_input=midi)
