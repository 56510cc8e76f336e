"""Meter that reads values from a file or fifo."""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Mapping
from typing import Any

from .lineformat import LineFormat, compile_format, reading_from_line
from .reading import MeterError, OptionNotFoundError, Reading, lookup_option

log = logging.getLogger(__name__)

_MAX_LINE = 255


def _optional(options: Mapping[str, Any], key: str, kind: type, default: Any) -> Any:
    try:
        return lookup_option(options, key, kind)
    except OptionNotFoundError:
        return default


def _snapshot(path: str) -> tuple[int, int, int]:
    st = os.stat(path)
    return st.st_ino, st.st_size, st.st_mtime_ns


class MeterFile:
    """Reads one reading per line from a file.

    Options: ``path`` (required), ``format``, ``rewind`` (default False)
    and ``interval``. With an interval of zero or less, each read waits
    until the file has changed.
    """

    def __init__(self, options: Mapping[str, Any], *, poll_interval: float = 0.1):
        try:
            self.path: str = lookup_option(options, "path", str)
        except MeterError:
            log.error("Missing path or invalid type")
            raise
        template = _optional(options, "format", str, None)
        self.line_format: LineFormat | None = (
            compile_format(template) or None if template is not None else None
        )
        if self.line_format is not None:
            log.debug("Parsed format string %r", template)
        self.rewind: bool = _optional(options, "rewind", bool, False)
        self.interval: int = _optional(options, "interval", int, -1)
        self._poll_interval = poll_interval
        self._file = None
        self._watching = False
        self._last_state: tuple[int, int, int] | None = None

    def open(self) -> None:
        """Open the file and start watching it if no interval is set."""
        self._watching = False
        if self.interval <= 0:
            log.debug("Watching file %r for changes", self.path)
            try:
                self._last_state = _snapshot(self.path)
                self._watching = True
            except OSError as exc:
                log.error("cannot watch %s: %s", self.path, exc)
                self.interval = 1
        try:
            self._file = open(self.path, "rb")
        except OSError as exc:
            self._watching = False
            raise MeterError(f"cannot open {self.path}: {exc}") from exc

    def close(self) -> None:
        """Stop watching and close the file."""
        self._watching = False
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> MeterFile:
        self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _wait_for_change(self) -> None:
        while True:
            try:
                current = _snapshot(self.path)
            except OSError:
                current = None
            if current is None or current[0] != self._last_state[0]:
                log.error("%s was moved or deleted, falling back to polling", self.path)
                self._watching = False
                self.interval = 1
                return
            if current != self._last_state:
                self._last_state = current
                return
            time.sleep(self._poll_interval)

    def read(self, max_readings: int) -> list[Reading]:
        """Read up to ``max_readings`` readings from the file."""
        if self._file is None:
            raise MeterError("meter is not open")
        if self._watching:
            self._wait_for_change()
        if self.rewind:
            self._file.seek(0)

        readings: list[Reading] = []
        while len(readings) < max_readings:
            raw = self._file.readline(_MAX_LINE)
            if not raw:
                break
            reading = reading_from_line(raw.decode("utf-8", "replace"), self.line_format)
            if reading is not None:
                readings.append(reading)
        return readings