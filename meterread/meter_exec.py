"""Meter that reads values from the output of a shell command."""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping
from typing import Any

from .lineformat import LineFormat, compile_format, parse_leading_float, reading_from_line
from .reading import MeterError, OptionNotFoundError, Reading, lookup_option

log = logging.getLogger(__name__)

_MAX_LINE = 255


def _is_root() -> bool:
    geteuid = getattr(os, "geteuid", None)
    return geteuid is not None and geteuid() == 0


class MeterExec:
    """Runs ``command`` through the shell and reads readings from its output.

    Options: ``command`` (required) and ``format``. Without a format each
    output line counts as a value, 0.0 when no number can be read.
    """

    def __init__(self, options: Mapping[str, Any], *, allow_root: bool = False):
        try:
            self.command: str = lookup_option(options, "command", str)
        except MeterError:
            log.error("Missing command or invalid type")
            raise
        try:
            template = lookup_option(options, "format", str)
        except OptionNotFoundError:
            self.line_format: LineFormat | None = None
        else:
            self.line_format = compile_format(template) or None
            log.debug("Parsed format string %r", template)
        self.allow_root = allow_root

    def _spawn(self) -> subprocess.Popen:
        return subprocess.Popen(self.command, shell=True, stdout=subprocess.PIPE)

    def open(self) -> None:
        """Check privileges and run the command once to make sure it starts."""
        if not self.allow_root and _is_root():
            raise MeterError("the exec meter cannot be run with root privileges")
        log.debug("Executing command line %r", self.command)
        try:
            proc = self._spawn()
        except OSError as exc:
            raise MeterError(f"cannot run {self.command!r}: {exc}") from exc
        proc.stdout.close()
        proc.wait()

    def close(self) -> None:
        """Nothing is held open between reads."""

    def __enter__(self) -> MeterExec:
        self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def read(self, max_readings: int) -> list[Reading]:
        """Run the command and read up to ``max_readings`` readings from it."""
        log.debug("Calling %r", self.command)
        try:
            proc = self._spawn()
        except OSError as exc:
            log.warning("cannot run %r: %s", self.command, exc)
            return []

        readings: list[Reading] = []
        with proc:
            while len(readings) < max_readings:
                raw = proc.stdout.readline(_MAX_LINE)
                if not raw:
                    break
                line = raw.decode("utf-8", "replace")
                if self.line_format is None:
                    readings.append(Reading.now(parse_leading_float(line)[0], ""))
                else:
                    reading = reading_from_line(line, self.line_format)
                    if reading is not None:
                        readings.append(reading)
        return readings