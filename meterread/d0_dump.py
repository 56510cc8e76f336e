"""Annotated dump of the traffic on a D0 connection."""

from __future__ import annotations

import enum
import os
import time
from collections.abc import Callable
from typing import BinaryIO

_CTRL_START = b"##### "
_IN_START = b">>>>> "
_OUT_START = b"<<<<< "
_LINE_END = b"\n"

_BYTES_PER_ROW = 16
_HEX_WIDTH = 3 * _BYTES_PER_ROW
_CHARS_AT = _HEX_WIDTH + 2
_ROW_WIDTH = _HEX_WIDTH + 2 + 18


class DumpMode(enum.Enum):
    """Kind of data written to the dump."""

    NONE = "none"
    CTRL = "ctrl"
    DUMP_IN = "in"
    DUMP_OUT = "out"


def _is_printable(byte: int) -> bool:
    return 0x20 <= byte <= 0x7E


class DumpWriter:
    """Writes control messages as text and traffic as hex rows.

    Traffic is shown sixteen bytes to a row: the hex codes followed by the
    printable characters. Each change of mode starts a new line with a
    marker and a timestamp taken from ``clock`` (nanoseconds).
    """

    def __init__(
        self,
        target: str | os.PathLike | BinaryIO,
        *,
        clock: Callable[[], int] = time.monotonic_ns,
    ):
        if isinstance(target, (str, os.PathLike)):
            self._stream: BinaryIO = open(target, "ab")
            self._owned = True
        else:
            self._stream = target
            self._owned = False
        self._clock = clock
        self._old_mode = DumpMode.NONE
        self._pending = bytearray()
        self._last_ms: int | None = None

    def _render_row(self) -> bytes:
        hex_part = "".join(f"{b:02x} " for b in self._pending).ljust(_HEX_WIDTH)
        chars = "".join(chr(b) if _is_printable(b) else " " for b in self._pending)
        row = (hex_part + "  " + chars.ljust(_BYTES_PER_ROW)).ljust(_ROW_WIDTH - 1) + "\n"
        return row.encode("latin-1")

    def _flush_row(self) -> None:
        self._stream.write(self._render_row())
        self._pending.clear()

    def _timestamp(self) -> bytes:
        now_ns = self._clock()
        sec, nsec = divmod(now_ns, 1_000_000_000)
        now_ms = now_ns // 1_000_000
        delta = 0 if self._last_ms is None else now_ms - self._last_ms
        self._last_ms = now_ms
        return f"{sec % 100:2d}.{nsec:09d}s ({delta:6d} ms) ".encode("latin-1")

    def write(self, mode: DumpMode, data: bytes | str) -> None:
        """Add ``data`` to the dump."""
        if isinstance(data, str):
            data = data.encode("latin-1", "replace")

        if mode is not self._old_mode:
            if self._pending:
                self._flush_row()
            self._stream.write(_LINE_END)
            self._stream.flush()
            if mode is DumpMode.DUMP_IN:
                start, end = _IN_START, _LINE_END
            elif mode is DumpMode.DUMP_OUT:
                start, end = _OUT_START, _LINE_END
            else:
                start, end = _CTRL_START, b""
            self._stream.write(start)
            self._stream.write(self._timestamp())
            self._stream.write(end)

        if mode is DumpMode.CTRL:
            self._stream.write(data)
        elif mode in (DumpMode.DUMP_IN, DumpMode.DUMP_OUT):
            for byte in data:
                self._pending.append(byte)
                if len(self._pending) >= _BYTES_PER_ROW:
                    self._flush_row()

        # control messages stand on a line of their own
        self._old_mode = DumpMode.NONE if mode is DumpMode.CTRL else mode

    def close(self) -> None:
        """Flush the stream and close it if it was opened here."""
        self._stream.flush()
        if self._owned:
            self._stream.close()

    def __enter__(self) -> DumpWriter:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()