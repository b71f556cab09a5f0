"""
OSC output over a single UDP socket.
"""
import logging
import socket
import struct
from typing import List, Optional

from pythonosc.osc_message_builder import OscMessageBuilder, BuildError

from midi.error_tracking import ErrorTracker, SOURCE_OSC
from midi.templating import OscArg

logger = logging.getLogger(__name__)


def build_message(address: str, args: List[OscArg]) -> bytes:
    """Encode an OSC message with explicit type tags."""
    builder = OscMessageBuilder(address=address)
    for arg in args:
        builder.add_arg(arg.value, arg.type)
    return builder.build().dgram


class OscSender:
    """Fire-and-forget OSC sender.

    One socket is opened for the lifetime of the bridge and used for every
    destination. Sends are at most once; failures are logged, counted and
    reported by a False return.
    """

    def __init__(self, errors: Optional[ErrorTracker] = None, log_messages: bool = False):
        self.errors = errors or ErrorTracker()
        self.log_messages = log_messages
        self._sock: Optional[socket.socket] = None

    @property
    def is_open(self) -> bool:
        return self._sock is not None

    def open(self) -> None:
        if self._sock is not None:
            return
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self._sock.setblocking(False)
        logger.info("OSC sender ready")

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None
            logger.info("OSC sender closed")

    def send(self, host: str, port: int, address: str, args: List[OscArg]) -> bool:
        if self._sock is None:
            self.errors.add_error(SOURCE_OSC, "OSC socket not initialized")
            return False
        try:
            dgram = build_message(address, args)
            self._sock.sendto(dgram, (host, port))
        except (BuildError, OSError, ValueError, struct.error) as e:
            self.errors.add_error(SOURCE_OSC, f"Error sending OSC message to {host}:{port}{address}", str(e))
            return False

        if self.log_messages:
            logger.debug(f"Sent OSC: {host}:{port}{address} {[arg.value for arg in args]}")
        return True
