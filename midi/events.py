"""Decoding of raw MIDI bytes into structured events."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Sequence

logger = logging.getLogger(__name__)

# Status nibbles
NOTE_OFF = 0x80
NOTE_ON = 0x90
CONTROL_CHANGE = 0xB0
PROGRAM_CHANGE = 0xC0

# Bank select controllers
BANK_SELECT_MSB_CC = 0
BANK_SELECT_LSB_CC = 32

MIDI_CHANNELS = range(1, 17)


class EventKind(Enum):
    NOTE = "note"
    CONTROL_CHANGE = "cc"
    PROGRAM_CHANGE = "program"


@dataclass(frozen=True)
class MidiEvent:
    """A decoded MIDI message.

    ``number`` and ``value`` are set for notes and control changes,
    ``bank`` and ``program`` only for program changes.
    """
    kind: EventKind
    channel: int
    number: Optional[int] = None
    value: Optional[int] = None
    bank: Optional[int] = None
    program: Optional[int] = None

    @property
    def is_note_on(self) -> bool:
        return self.kind == EventKind.NOTE and bool(self.value)

    def describe(self) -> str:
        """Short human readable form used in logs and the status display."""
        if self.kind == EventKind.PROGRAM_CHANGE:
            return f"Program Change | Ch {self.channel} | Bank {self.bank} | Prog {self.program}"
        type_text = "Note" if self.kind == EventKind.NOTE else "CC"
        return f"{type_text} | Ch {self.channel} | #{self.number} | Val {self.value}"


@dataclass
class ChannelBankState:
    """Bank select MSB/LSB last seen on one channel."""
    msb: int = 0
    lsb: int = 0

    @property
    def bank(self) -> int:
        return self.msb * 128 + self.lsb


class MidiDecoder:
    """Turns status/data byte triples into MidiEvents.

    Keeps the bank select state of every channel so a later program change
    can be resolved to ``msb * 128 + lsb``. Messages must be decoded one at a
    time in arrival order.
    """

    def __init__(self):
        self.banks: Dict[int, ChannelBankState] = {}
        self.reset()

    def reset(self) -> None:
        """Forget all bank select state."""
        self.banks = {ch: ChannelBankState() for ch in MIDI_CHANNELS}

    def bank_for(self, channel: int) -> int:
        return self.banks[channel].bank

    def decode_message(self, message: Sequence[int]) -> Optional[MidiEvent]:
        """Decode a raw message as delivered by the input port.

        Program change messages only carry two bytes, a missing third byte
        is read as 0. Anything shorter than two bytes is dropped.
        """
        if not message or len(message) < 2:
            logger.debug(f"Ignoring short MIDI message: {list(message or [])}")
            return None
        data2 = message[2] if len(message) > 2 else 0
        return self.decode(message[0], message[1], data2)

    def decode(self, status: int, data1: int, data2: int = 0) -> Optional[MidiEvent]:
        try:
            return self._decode(int(status), int(data1), int(data2))
        except (TypeError, ValueError) as e:
            logger.warning(f"Malformed MIDI message ({status!r}, {data1!r}, {data2!r}): {e}")
            return None

    def _decode(self, status: int, data1: int, data2: int) -> Optional[MidiEvent]:
        if not 0x80 <= status <= 0xFF:
            logger.debug(f"Ignoring non-status byte {status:#04x}")
            return None
        data1 &= 0x7F
        data2 &= 0x7F
        channel = (status & 0x0F) + 1
        message_type = status & 0xF0

        if message_type == NOTE_ON and data2 > 0:
            logger.debug(f"Note ON: ch={channel} note={data1} vel={data2}")
            return MidiEvent(EventKind.NOTE, channel, number=data1, value=data2)

        if message_type in (NOTE_ON, NOTE_OFF):
            # Velocity zero note-on is a note-off
            logger.debug(f"Note OFF: ch={channel} note={data1}")
            return MidiEvent(EventKind.NOTE, channel, number=data1, value=0)

        if message_type == CONTROL_CHANGE:
            state = self.banks[channel]
            if data1 == BANK_SELECT_MSB_CC:
                state.msb = data2
                logger.debug(f"Bank Select MSB: ch={channel} value={data2} (bank now {state.bank})")
            elif data1 == BANK_SELECT_LSB_CC:
                state.lsb = data2
                logger.debug(f"Bank Select LSB: ch={channel} value={data2} (bank now {state.bank})")
            return MidiEvent(EventKind.CONTROL_CHANGE, channel, number=data1, value=data2)

        if message_type == PROGRAM_CHANGE:
            state = self.banks[channel]
            logger.debug(f"Program Change: ch={channel} bank={state.bank} program={data1} "
                         f"(MSB:{state.msb} LSB:{state.lsb})")
            return MidiEvent(EventKind.PROGRAM_CHANGE, channel, bank=state.bank, program=data1)

        logger.info(f"Unsupported MIDI message type: {message_type:#04x}")
        return None
