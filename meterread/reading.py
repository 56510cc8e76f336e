"""Readings, meter protocol identifiers, errors and option lookup."""

from __future__ import annotations

import enum
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any


class MeterProtocol(enum.IntEnum):
    """Protocols a meter can speak."""

    NONE = 0
    FILE = 1
    EXEC = 2
    RANDOM = 3
    S0 = 4
    D0 = 5
    SML = 6
    FLUKSOV2 = 7
    OCR = 8
    W1THERM = 9
    OMS = 10


class MeterError(Exception):
    """Raised when a meter cannot be configured, opened or read."""


class OptionNotFoundError(MeterError):
    """Raised when a required option is missing."""


class InvalidTypeError(MeterError, TypeError):
    """Raised when an option holds a value of the wrong type."""


@dataclass(frozen=True)
class Reading:
    """A single measured value with its identifier and timestamp (epoch seconds)."""

    value: float
    identifier: str | int
    time: float

    @classmethod
    def now(cls, value: float, identifier: str | int) -> Reading:
        """Create a reading stamped with the current time."""
        return cls(float(value), identifier, time.time())


def lookup_option(options: Mapping[str, Any], key: str, kind: type) -> Any:
    """Return ``options[key]`` checked against ``kind``.

    Integers are accepted where a float is wanted; booleans are never
    accepted as numbers.
    """
    try:
        value = options[key]
    except KeyError:
        raise OptionNotFoundError(f"option {key!r} not found") from None

    is_bool = isinstance(value, bool)
    if kind is float and isinstance(value, int) and not is_bool:
        return float(value)
    if kind in (int, float) and is_bool:
        raise InvalidTypeError(f"option {key!r} must be {kind.__name__}, not bool")
    if not isinstance(value, kind):
        raise InvalidTypeError(
            f"option {key!r} must be {kind.__name__}, not {type(value).__name__}"
        )
    return value