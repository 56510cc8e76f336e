"""Meter that parses the SPI output of a FluksoV2 from a fifo."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any, BinaryIO

from .reading import MeterError, OptionNotFoundError, Reading, lookup_option

log = logging.getLogger(__name__)

DEFAULT_FIFO = "/var/run/spid/delta/out"
_MAX_LINE = 64
_SEPARATOR = re.compile(r"[ \t]")
_INTEGER = re.compile(r"\s*[+-]?\d+")


def _leading_int(text: str) -> int:
    """Parse an integer at the start of ``text``; 0 when there is none."""
    match = _INTEGER.match(text)
    return int(match.group()) if match else 0


def parse_fluksov2_line(line: str) -> list[Reading]:
    """Parse ``"<timestamp> <channel> <consumption> <power> ..."``.

    Each channel gives two readings: the consumption with the negative and
    the power with the positive channel number plus one as identifier, so
    that channel 0 can be told apart in both signs. Tokens are separated by
    single spaces or tabs; an empty token counts as 0.
    """
    tokens = iter(_SEPARATOR.split(line))
    timestamp = float(_leading_int(next(tokens)))
    readings: list[Reading] = []
    for channel_token in tokens:
        try:
            consumption = next(tokens)
            power = next(tokens)
        except StopIteration:
            raise MeterError(f"incomplete channel data in line {line!r}") from None
        channel = _leading_int(channel_token) + 1
        readings.append(Reading(float(_leading_int(consumption)), -channel, timestamp))
        readings.append(Reading(float(_leading_int(power)), channel, timestamp))
    return readings


class MeterFluksoV2:
    """Reads one line per call from the FluksoV2 fifo.

    Options: ``fifo`` (default ``/var/run/spid/delta/out``).
    """

    def __init__(self, options: Mapping[str, Any]):
        try:
            self.fifo: str = lookup_option(options, "fifo", str)
        except OptionNotFoundError:
            self.fifo = DEFAULT_FIFO
        except MeterError:
            log.error("Failed to parse fifo")
            raise
        self._stream: BinaryIO | None = None

    def open(self) -> None:
        """Open the fifo for reading."""
        try:
            self._stream = open(self.fifo, "rb", buffering=0)
        except OSError as exc:
            raise MeterError(f"cannot open {self.fifo}: {exc}") from exc

    def close(self) -> None:
        """Close the fifo."""
        if self._stream is not None:
            self._stream.close()
            self._stream = None

    def __enter__(self) -> MeterFluksoV2:
        self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _read_line(self) -> bytes | None:
        """Read up to 64 bytes or until a newline; ``None`` at end of input."""
        line = bytearray()
        while len(line) < _MAX_LINE:
            try:
                byte = self._stream.read(1)
            except OSError as exc:
                raise MeterError(f"cannot read {self.fifo}: {exc}") from exc
            if not byte:
                return bytes(line) if line else None
            if byte == b"\n":
                return bytes(line)
            line += byte
        return bytes(line)

    def read(self, max_readings: int) -> list[Reading]:
        """Read the next non-empty line and return up to ``max_readings`` readings."""
        if self._stream is None:
            raise MeterError("meter is not open")
        while True:
            line = self._read_line()
            if line is None:
                return []
            if line:
                break
        return parse_fluksov2_line(line.decode("ascii", "replace"))[:max_readings]