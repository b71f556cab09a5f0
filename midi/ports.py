"""
MIDI input ports using rtmidi.
"""
import asyncio
import logging
from typing import Callable, List, NamedTuple, Optional, Tuple

try:
    import rtmidi
except ImportError:
    rtmidi = None
    logging.getLogger(__name__).warning("python-rtmidi not found. MIDI input will be disabled.")

logger = logging.getLogger(__name__)

# Loopback ports that would only echo our own traffic
FILTERED_PORT_NAMES = ("Midi Through",)

STATUS_CONNECTED = "Connected"
STATUS_DISCONNECTED = "Disconnected"
STATUS_ERROR = "Error"
STATUS_NOT_AVAILABLE = "Not Available"

MessageCallback = Callable[[Tuple[int, ...]], None]


class MidiPort(NamedTuple):
    """A selectable input port. ``index`` is the position in the filtered list."""
    index: int
    name: str
    system_index: int


class MidiInput:
    """One open MIDI input delivering raw messages on the event loop.

    rtmidi calls back on its own thread; every message is handed to the loop
    with call_soon_threadsafe and the registered callback runs there.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.loop = loop
        self.ports: List[MidiPort] = []
        self.port_name: Optional[str] = None
        self.status = STATUS_DISCONNECTED if rtmidi is not None else STATUS_NOT_AVAILABLE
        self._midi_in = None
        self._callback: Optional[MessageCallback] = None

    @property
    def available(self) -> bool:
        return rtmidi is not None

    @property
    def connected(self) -> bool:
        return self._midi_in is not None

    def on_message(self, callback: MessageCallback) -> None:
        self._callback = callback

    def refresh_ports(self) -> List[MidiPort]:
        """Re-read the system input ports, skipping loopback ports."""
        if rtmidi is None:
            logger.debug("rtmidi not available for port refresh")
            self.ports = []
            return self.ports
        try:
            midi_in = rtmidi.MidiIn()
            names = midi_in.get_ports()
            del midi_in
        except Exception as e:
            logger.error(f"Failed to get MIDI ports: {e}")
            self.ports = []
            return self.ports

        ports = []
        for system_index, name in enumerate(names):
            if any(filtered in name for filtered in FILTERED_PORT_NAMES):
                continue
            ports.append(MidiPort(len(ports), name or "Unknown MIDI Device", system_index))
            logger.info(f"Found MIDI Port {len(ports) - 1}: {name}")
        logger.info(f"Total MIDI input ports found: {len(ports)}")
        self.ports = ports
        return ports

    def open_port(self, index: int) -> bool:
        """Open the port at ``index`` in the filtered list, closing any open port."""
        if rtmidi is None:
            logger.error("Cannot open MIDI port: python-rtmidi not found.")
            return False
        self.close_port()
        if not 0 <= index < len(self.ports):
            logger.error(f"Invalid MIDI port index: {index}")
            return False

        port = self.ports[index]
        try:
            midi_in = rtmidi.MidiIn()
            midi_in.open_port(port.system_index)
            midi_in.ignore_types(sysex=True, timing=True, active_sense=True)
            midi_in.set_callback(self._midi_callback)
        except Exception:
            logger.exception(f"Failed to open MIDI port {port.name}")
            self.status = STATUS_ERROR
            self.port_name = None
            return False

        self._midi_in = midi_in
        self.port_name = port.name
        self.status = STATUS_CONNECTED
        logger.info(f"Connected to MIDI port {index}: {port.name}")
        return True

    def open_port_by_name(self, name: str) -> bool:
        for port in self.ports:
            if port.name == name:
                return self.open_port(port.index)
        logger.warning(f"MIDI port '{name}' not found. Available: {[p.name for p in self.ports]}")
        return False

    def reconnect(self) -> bool:
        """Refresh the port list and re-open the current port by name."""
        name = self.port_name
        self.refresh_ports()
        if not name:
            return False
        return self.open_port_by_name(name)

    def close_port(self) -> None:
        if self._midi_in is not None:
            try:
                self._midi_in.cancel_callback()
                self._midi_in.close_port()
                logger.info(f"Closed MIDI port: {self.port_name}")
            except Exception as e:
                logger.error(f"Error closing MIDI port: {e}")
            self._midi_in = None
        self.port_name = None
        if self.status != STATUS_NOT_AVAILABLE:
            self.status = STATUS_DISCONNECTED

    def _midi_callback(self, event, data=None):
        """Runs on the rtmidi thread."""
        message, deltatime = event
        self.loop.call_soon_threadsafe(self._deliver, tuple(message))

    def _deliver(self, message: Tuple[int, ...]) -> None:
        if self._callback is None:
            return
        try:
            self._callback(message)
        except Exception:
            logger.exception(f"Error handling MIDI message {message}")
