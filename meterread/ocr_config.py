"""Configuration and digit arithmetic for reading meters from images."""

from __future__ import annotations

import enum
import logging
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from .reading import InvalidTypeError, MeterError, OptionNotFoundError

log = logging.getLogger(__name__)

MIN_RADIUS = 10


class BoxType(enum.Enum):
    """Shape of the area a bounding box describes."""

    BOX = "box"
    CIRCLE = "circle"


@dataclass
class Reads:
    """Value recognised for one identifier, with its lowest confidence."""

    value: float = 0.0
    conf_id: str = ""
    min_conf: float = sys.float_info.max


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else str(value)


def _as_int(value: Any) -> int:
    return int(value)


@dataclass
class BoundingBox:
    """Area of the image that holds one digit or needle.

    A box is given by ``x1, y1, x2, y2``, a circle by ``cx, cy, cr`` and an
    ``offset``. ``ac_dx`` and ``ac_dy`` hold the centre correction found
    by autocentering and change while the meter runs.
    """

    identifier: str
    conf_id: str = ""
    scaler: int = 0
    digit: bool = False
    box_type: BoxType = BoxType.BOX
    x1: int = -1
    y1: int = -1
    x2: int = -1
    y2: int = -1
    cx: int = -1
    cy: int = -1
    cr: int = -1
    offset: float = 0.0
    autocenter: bool = True
    ac_dx: int = field(default=0, compare=False)
    ac_dy: int = field(default=0, compare=False)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> BoundingBox:
        """Build a bounding box from its configuration object."""
        if not isinstance(config, Mapping):
            raise InvalidTypeError("boundingbox must be an object")
        if "identifier" not in config:
            raise OptionNotFoundError("boundingbox identifier")
        box = cls(identifier=_as_str(config["identifier"]))
        if "confidence_id" in config:
            box.conf_id = _as_str(config["confidence_id"])
        if "scaler" in config:
            box.scaler = _as_int(config["scaler"])
        if "digit" in config:
            box.digit = bool(config["digit"])

        if "box" in config:
            coords = config["box"]
            if "x1" in coords:
                box.x1 = _as_int(coords["x1"])
            if "y1" in coords:
                box.y1 = _as_int(coords["y1"])
            if "x2" in coords:
                box.x2 = _as_int(coords["x2"])
                if box.x2 < box.x1:
                    raise OptionNotFoundError("boundingbox x2 < x1")
            if "y2" in coords:
                box.y2 = _as_int(coords["y2"])
                if box.y2 < box.y1:
                    raise OptionNotFoundError("boundingbox y2 < y1")
        elif "circle" in config:
            box.box_type = BoxType.CIRCLE
            coords = config["circle"]
            if "cx" in coords:
                box.cx = _as_int(coords["cx"])
            if "cy" in coords:
                box.cy = _as_int(coords["cy"])
            if "cr" in coords:
                box.cr = _as_int(coords["cr"])
            if "offset" in coords:
                box.offset = float(coords["offset"])
                if box.offset < -10.0 or box.offset > 10.0:
                    raise MeterError("offset invalid value <-10 or >10")
            if box.cx < box.cr or box.cy < box.cr or box.cr < MIN_RADIUS:
                raise OptionNotFoundError("circle cx < cr or cy < cr or cr < 10")

        log.debug(
            "boundingbox <%s>: conf_id=%s, scaler=%d, digit=%d, (%d,%d)-(%d,%d)",
            box.identifier, box.conf_id, box.scaler, box.digit,
            box.x1, box.y1, box.x2, box.y2,
        )
        return box


def parse_boxes(config: Mapping[str, Any]) -> list[BoundingBox]:
    """Read the ``boundingboxes`` of a recognizer, smallest scaler first."""
    if "boundingboxes" not in config:
        raise OptionNotFoundError("no boundingboxes given")
    entries = config["boundingboxes"]
    if entries is None:
        raise OptionNotFoundError("empty boundingboxes given")
    if isinstance(entries, (str, bytes, Mapping)) or not isinstance(entries, Sequence):
        raise InvalidTypeError("boundingboxes must be an array")
    if not entries:
        raise OptionNotFoundError("empty boundingboxes given")
    boxes = [BoundingBox.from_config(entry) for entry in entries]
    return sorted(boxes, key=lambda box: box.scaler)


def debounce(prev_digit: int, value: float) -> int:
    """Hold on to the previous digit while the new one is still close to it.

    The new digit is ``value`` truncated, so 0.99 counts as 0.
    """
    new_digit = int(value)
    result = new_digit
    if prev_digit == 0:
        if new_digit == 9 and value > 9.5:
            result = 0
        if new_digit == 1 and value < 1.5:
            result = 0
    elif prev_digit == 9:
        if new_digit == 0 and value < 0.5:
            result = 9
        if new_digit == 8 and value >= 8.5:
            result = 9
    else:
        previous = float(prev_digit)
        if value > previous:
            if value - previous < 1.5:
                result = prev_digit
        elif previous - value < 0.5:
            result = prev_digit
    if result != new_digit:
        log.debug(
            "digit debounced: prev_dig=%d nr=%d fnr=%f -> %d",
            prev_digit, new_digit, value, result,
        )
    return result


def round_based_on_smaller_digits(
    current: int, fnr: float, smaller: float, conf: int
) -> tuple[int, int]:
    """Correct a digit using the fraction read from the next smaller digit.

    ``smaller`` is the smaller digit as a fraction (0.x). Returns the digit
    and the confidence, lowered by 10 when rounded up and by 15 when
    rounded down.
    """
    nr = current
    if smaller < 0.5:
        rounded = int(fnr + 0.5 - smaller)
        if rounded != nr:
            nr = 0 if rounded >= 10 else rounded
            conf -= 10
            log.debug("rounded up: smaller=%f nr=%d fnr=%f", smaller, nr, fnr)
    if smaller >= 0.5:
        rounded = 9 if fnr < smaller - 0.5 else int(fnr - smaller + 0.5)
        if rounded != nr:
            nr = rounded
            conf -= 15
            log.debug("rounded down: smaller=%f nr=%d fnr=%f", smaller, nr, fnr)
    return nr, conf


def calc_impulses(value: float, old_value: float, impulses: int) -> int:
    """Impulses between two readings, assuming a wrap on large jumps.

    With 10 or more impulses per unit a jump of more than half a unit is
    taken as the counter wrapping around.
    """
    imp = int(round((value - old_value) * impulses))
    if impulses >= 10 and abs(imp) > impulses // 2:
        if imp < 0:
            while imp < 0:
                imp += impulses
        else:
            while imp > 0:
                imp -= impulses
    return imp