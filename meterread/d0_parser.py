"""Settings and a byte-wise telegram parser for IEC 62056-21 (D0) meters."""

from __future__ import annotations

import enum
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .lineformat import parse_leading_float
from .reading import MeterError, OptionNotFoundError, Reading, lookup_option

log = logging.getLogger(__name__)

STX = 0x02
_CR, _LF = 0x0D, 0x0A
_SLASH, _QUESTION, _EXCLAMATION = ord("/"), ord("?"), ord("!")
_OPEN, _CLOSE, _STAR = ord("("), ord(")"), ord("*")

BAUDRATES = frozenset(
    {50, 75, 110, 134, 150, 200, 300, 600, 1200, 1800, 2400, 4800, 9600,
     19200, 38400, 57600, 115200, 230400}
)
DEFAULT_ACK = b"\x06\x30\x30\x30\x0d\x0a"
_ACK_BAUDRATES = {"1": 600, "2": 1200, "3": 2400, "4": 4800, "5": 9600, "6": 19200}

_VENDOR_LEN = 3
_IDENTIFICATION_LEN = 16
_OBIS_LEN = 16
_VALUE_LEN = 32
_UNIT_LEN = 16
_READING_START = frozenset(b"0123456789CF")

_HEX = re.compile(r"\s*([+-]?)([0-9a-fA-F]*)")
_PAIRS = re.compile(r".{1,2}", re.DOTALL)


def _hex_byte(chunk: str) -> int:
    sign, digits = _HEX.match(chunk).groups()
    value = int(digits, 16) if digits else 0
    return (-value if sign == "-" else value) & 0xFF


def parse_hex_sequence(text: str) -> bytes:
    """Turn ``"063030300d0a"`` into bytes, two hex digits per byte."""
    return bytes(_hex_byte(pair) for pair in _PAIRS.findall(text))


def parse_baudrate(value: int) -> int:
    """Check that ``value`` is a supported serial baud rate."""
    if value not in BAUDRATES:
        raise MeterError(f"Invalid baudrate: {value}")
    return value


def ack_for_baudrate_char(char: str) -> tuple[bytes, int]:
    """Build the mode C acknowledge for the identification's baud rate character.

    Returns the acknowledge sequence and the baud rate to read at.
    Unknown characters (and ``'0'``) keep the sequence and mean 300 baud.
    """
    baudrate = _ACK_BAUDRATES.get(char)
    if baudrate is None:
        return DEFAULT_ACK, 300
    ack = bytearray(DEFAULT_ACK)
    ack[2] = ord(char)
    return bytes(ack), baudrate


class Parity(enum.Enum):
    """Character framing of the serial line."""

    P8N1 = "8n1"
    P7N1 = "7n1"
    P7E1 = "7e1"
    P7O1 = "7o1"

    @classmethod
    def parse(cls, text: str) -> Parity:
        try:
            return cls(text.lower())
        except ValueError:
            raise MeterError(f"Invalid parity: {text!r}") from None

    @property
    def bytesize(self) -> int:
        return int(self.value[0])

    @property
    def parity(self) -> str:
        """Parity as ``'N'``, ``'E'`` or ``'O'``."""
        return self.value[1].upper()


def _optional(options: Mapping[str, Any], key: str, kind: type, default: Any) -> Any:
    try:
        return lookup_option(options, key, kind)
    except OptionNotFoundError:
        return default


@dataclass
class D0Settings:
    """Connection and protocol settings of a D0 meter."""

    host: str = ""
    device: str = ""
    dump_file: str = ""
    pull: bytes = b""
    ack: bytes = b""
    auto_ack: bool = False
    baudrate: int = 9600
    baudrate_read: int = 9600
    parity: Parity = Parity.P7E1
    wait_sync_end: bool = False
    read_timeout_s: int = 10
    baudrate_change_delay_ms: int = 0

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> D0Settings:
        """Build settings from meter options; ``host`` or ``device`` is required."""
        host = device = ""
        try:
            host = lookup_option(options, "host", str)
        except OptionNotFoundError:
            try:
                device = lookup_option(options, "device", str)
            except MeterError:
                log.error("Missing device or host")
                raise
            if not device:
                log.error("Missing device or host")
                raise MeterError("device without length")
        except MeterError:
            log.error("Missing device or host")
            raise

        pull_text = _optional(options, "pullseq", str, None)
        pull = parse_hex_sequence(pull_text) if pull_text is not None else b""

        auto_ack = False
        ack = b""
        ack_text = _optional(options, "ackseq", str, None)
        if ack_text == "auto":
            auto_ack = True
        elif ack_text is not None:
            ack = parse_hex_sequence(ack_text)

        baudrate = parse_baudrate(_optional(options, "baudrate", int, 9600))
        baudrate_read = _optional(options, "baudrate_read", int, None)
        baudrate_read = baudrate if baudrate_read is None else parse_baudrate(baudrate_read)

        parity_text = _optional(options, "parity", str, None)
        parity = Parity.P7E1 if parity_text is None else Parity.parse(parity_text)

        wait_sync_end = False
        wait_sync = _optional(options, "wait_sync", str, None)
        if wait_sync is not None:
            mode = wait_sync.lower()
            if mode not in ("end", "off"):
                raise MeterError(f"Invalid wait_sync: {wait_sync!r}")
            wait_sync_end = mode == "end"

        return cls(
            host=host,
            device=device,
            dump_file=_optional(options, "dump_file", str, ""),
            pull=pull,
            ack=ack,
            auto_ack=auto_ack,
            baudrate=baudrate,
            baudrate_read=baudrate_read,
            parity=parity,
            wait_sync_end=wait_sync_end,
            read_timeout_s=_optional(options, "read_timeout", int, 10),
            baudrate_change_delay_ms=_optional(options, "baudrate_change_delay", int, 0),
        )


class ParseEvent(enum.Enum):
    """What feeding a byte brought about."""

    ACK = "ack"
    READING = "reading"
    COMPLETE = "complete"
    ERROR = "error"


class _State(enum.Enum):
    START = enum.auto()
    VENDOR = enum.auto()
    BAUDRATE = enum.auto()
    IDENTIFICATION = enum.auto()
    ACK = enum.auto()
    OBIS_CODE = enum.auto()
    VALUE = enum.auto()
    UNIT = enum.auto()
    END = enum.auto()


def _is_alpha(byte: int) -> bool:
    return 0x41 <= byte <= 0x5A or 0x61 <= byte <= 0x7A


def _is_printable(byte: int) -> bool:
    return 0x20 <= byte <= 0x7E


def _text(buffer: bytearray) -> str:
    return bytes(buffer).decode("latin-1")


class D0Parser:
    """State machine that turns a D0 telegram, byte by byte, into readings.

    ``feed`` returns ``ParseEvent.ACK`` when the identification line has
    ended and an acknowledge may be sent, ``READING`` when a reading was
    added to ``readings``, ``COMPLETE`` at the closing ``!`` and ``ERROR``
    on malformed input.
    """

    def __init__(self, max_readings: int | None = None):
        self.max_readings = max_readings
        self.reaction_time_ms = 200
        self.reset()

    def reset(self) -> None:
        """Forget the current telegram and wait for a new one."""
        self.readings: list[Reading] = []
        self.vendor = ""
        self.baudrate_char = ""
        self.identification = ""
        self.last_byte = 0
        self._state = _State.START
        self._field = bytearray()
        self._obis = ""
        self._value = ""
        self._unit = ""
        self._done = False

    @property
    def started(self) -> bool:
        """True once the telegram start has been seen."""
        return self._state is not _State.START

    @property
    def done(self) -> bool:
        """True after ``COMPLETE`` or ``ERROR``."""
        return self._done

    def feed(self, byte: int | bytes) -> ParseEvent | None:
        """Process one byte."""
        if isinstance(byte, (bytes, bytearray)):
            if len(byte) != 1:
                raise ValueError("feed takes exactly one byte")
            byte = byte[0]
        if self._done:
            raise MeterError("telegram already finished, call reset()")

        self.last_byte = byte
        if byte == _SLASH and not self._field:
            self._state = _State.VENDOR
        elif byte in (_QUESTION, _EXCLAMATION) and self._state is not _State.END:
            self._state = _State.END
            self._field.clear()

        match self._state:
            case _State.VENDOR:
                event = self._on_vendor(byte)
            case _State.BAUDRATE:
                event = self._on_baudrate(byte)
            case _State.IDENTIFICATION:
                event = self._on_identification(byte)
            case _State.ACK:
                event = self._on_ack()
            case _State.OBIS_CODE:
                event = self._on_obis_code(byte)
            case _State.VALUE:
                event = self._on_value(byte)
            case _State.UNIT:
                event = self._on_unit(byte)
            case _State.END:
                event = self._on_end(byte)
            case _:
                event = None

        if event in (ParseEvent.COMPLETE, ParseEvent.ERROR):
            self._done = True
        return event

    def _on_vendor(self, byte: int) -> ParseEvent | None:
        if byte in (_CR, _LF, _SLASH):
            self._field.clear()
            self.readings.clear()
            return None
        if not _is_alpha(byte):
            log.error("vendor id must be alphabetic (byte=0x%X)", byte)
            return ParseEvent.ERROR
        self._field.append(byte)
        if len(self._field) >= _VENDOR_LEN:
            self.vendor = _text(self._field)
            self.reaction_time_ms = 20 if self.vendor[2].islower() else 200
            self._field.clear()
            self._state = _State.BAUDRATE
        return None

    def _on_baudrate(self, byte: int) -> None:
        self.baudrate_char = chr(byte)
        self._field.clear()
        self._state = _State.IDENTIFICATION

    def _on_identification(self, byte: int) -> None:
        if byte in (_CR, _LF):
            self.identification = _text(self._field)
            log.debug(
                "Pull answer (vendor=%s, baudrate=%s, identification=%s)",
                self.vendor, self.baudrate_char, self.identification,
            )
            self._field.clear()
            self._state = _State.ACK
        elif not _is_printable(byte):
            log.error("binary character 0x%X in identification", byte)
        elif len(self._field) < _IDENTIFICATION_LEN:
            self._field.append(byte)
        else:
            log.error("Too much data for identification (byte=0x%X)", byte)

    def _on_ack(self) -> ParseEvent:
        self._state = _State.OBIS_CODE
        return ParseEvent.ACK

    def _on_obis_code(self, byte: int) -> None:
        if byte in (_LF, _CR, STX):
            return
        if byte == _OPEN:
            self._obis = _text(self._field)
            self._field.clear()
            self._state = _State.VALUE
        elif len(self._field) < _OBIS_LEN:
            self._field.append(byte)
        else:
            log.error("Too much data for obis_code (byte=0x%X)", byte)

    def _on_value(self, byte: int) -> ParseEvent | None:
        if byte in (_STAR, _CLOSE):
            self._value = _text(self._field)
            self._field.clear()
            if byte == _CLOSE:
                self._unit = ""
                return self._finish_line()
            self._state = _State.UNIT
        elif len(self._field) < _VALUE_LEN:
            self._field.append(byte)
        else:
            log.error("Too much data for value (byte=0x%X)", byte)
        return None

    def _on_unit(self, byte: int) -> ParseEvent | None:
        if byte == _CLOSE:
            self._unit = _text(self._field)
            self._field.clear()
            return self._finish_line()
        if len(self._field) < _UNIT_LEN:
            self._field.append(byte)
        else:
            log.error("Too much data for unit (byte=0x%X)", byte)
        return None

    def _on_end(self, byte: int) -> ParseEvent | None:
        if byte == _EXCLAMATION:
            if not self._field:
                log.debug(
                    "Read package with %d tuples (vendor=%s, baudrate=%s, identification=%s)",
                    len(self.readings), self.vendor, self.baudrate_char, self.identification,
                )
                return ParseEvent.COMPLETE
            # "?!" asks for the identification again
            self._state = _State.VENDOR
            self._field.clear()
            return None
        if byte == _QUESTION:
            if not self._field:
                self._field.append(byte)
            return None
        if byte == STX:
            self._state = _State.OBIS_CODE
        elif byte == _SLASH:
            self._state = _State.VENDOR
        self._field.clear()
        return None

    def _finish_line(self) -> ParseEvent | None:
        self._state = _State.OBIS_CODE
        self._field.clear()
        room = self.max_readings is None or len(self.readings) < self.max_readings
        if not (room and self._obis and self._value):
            return None
        if ord(self._obis[0]) not in _READING_START:
            log.debug(
                "Ignored reading (OBIS code=%s, value=%s, unit=%s)",
                self._obis, self._value, self._unit,
            )
            return None
        log.debug(
            "Parsed reading (OBIS code=%s, value=%s, unit=%s)",
            self._obis, self._value, self._unit,
        )
        self.readings.append(Reading.now(parse_leading_float(self._value)[0], self._obis))
        return ParseEvent.READING