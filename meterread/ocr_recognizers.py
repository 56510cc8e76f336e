"""Recognizers that read needle dials and impulse lamps from images."""

from __future__ import annotations

import abc
import logging
import math
from collections.abc import Mapping, MutableMapping, Sequence
from typing import Any

import numpy as np
from PIL import Image

from .ocr_config import (
    BoundingBox,
    BoxType,
    Reads,
    debounce,
    parse_boxes,
    round_based_on_smaller_digits,
)
from .reading import MeterError, OptionNotFoundError

log = logging.getLogger(__name__)

RED_COLOR_LIMIT = 0x80000000
_RED = 0xFF000000
_GREEN = 0x00FF0000
_BLUE = 0x0000FF00
_WHITE = 0xFFFFFF00

DEFAULT_KERNEL = ((2.0, -1.0, -1.0), (0.0, 0.0, 0.0), (0.0, 0.0, 0.0))

_PI_RAD = np.float32(np.float32(3.14159265358979) / np.float32(180))


def _rad(deg: int) -> float:
    """Degrees to radians, computed in single precision like the scanner expects."""
    return float(np.float32(deg) * _PI_RAD)


def _cdiv(a: int, b: int) -> int:
    """Integer division truncating toward zero."""
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b >= 0) else -q


def _to_rgb(image: Any) -> np.ndarray:
    if isinstance(image, Image.Image):
        return np.array(image.convert("RGB"), dtype=np.uint8)
    arr = np.asarray(image)
    if arr.ndim == 2:
        arr = np.stack([arr] * 3, axis=-1)
    elif arr.ndim != 3 or arr.shape[2] < 3:
        raise MeterError(f"unsupported image shape {arr.shape}")
    return np.array(arr[..., :3], dtype=np.uint8)


def _parse_kernel(kernel: Any) -> np.ndarray:
    if kernel is None:
        return np.array(DEFAULT_KERNEL, dtype=np.float64)
    if isinstance(kernel, str):
        try:
            values = [float(v) for v in kernel.split()]
        except ValueError:
            raise MeterError(f"invalid color kernel {kernel!r}") from None
        if len(values) != 9:
            raise MeterError(f"color kernel needs 9 values, got {len(values)}")
        return np.array(values, dtype=np.float64).reshape(3, 3)
    matrix = np.asarray(kernel, dtype=np.float64)
    if matrix.shape != (3, 3):
        raise MeterError(f"color kernel must be 3x3, not {matrix.shape}")
    return matrix


def apply_color_kernel(image: Any, kernel: Any) -> np.ndarray:
    """Multiply every RGB pixel by a 3x3 matrix and clip to 0..255.

    ``kernel`` is a 3x3 array, a string of nine numbers (row by row) or
    ``None`` for the default that amplifies red against green and blue.
    """
    rgb = _to_rgb(image).astype(np.float64)
    matrix = _parse_kernel(kernel)
    mixed = np.einsum("ij,hwj->hwi", matrix, rgb)
    return np.clip(np.trunc(mixed), 0, 255).astype(np.uint8)


def _crop(image: np.ndarray, x0: int, y0: int, width: int, height: int) -> np.ndarray:
    out = np.zeros((max(height, 0), max(width, 0), 3), dtype=np.uint8)
    src_h, src_w = image.shape[:2]
    sx0, sy0 = max(x0, 0), max(y0, 0)
    sx1, sy1 = min(x0 + width, src_w), min(y0 + height, src_h)
    if sx1 > sx0 and sy1 > sy0:
        out[sy0 - y0 : sy1 - y0, sx0 - x0 : sx1 - x0] = image[sy0:sy1, sx0:sx1]
    return out


def _get(image: np.ndarray, x: int, y: int) -> int:
    h, w = image.shape[:2]
    if not (0 <= x < w and 0 <= y < h):
        return 0
    r, g, b = (int(c) for c in image[y, x])
    return (r << 24) | (g << 16) | (b << 8)


def _put(image: np.ndarray, x: int, y: int, color: int) -> None:
    h, w = image.shape[:2]
    if 0 <= x < w and 0 <= y < h:
        image[y, x] = ((color >> 24) & 0xFF, (color >> 16) & 0xFF, (color >> 8) & 0xFF)


def _kernel_option(config: Mapping[str, Any]) -> np.ndarray:
    text = config.get("kernelColorString")
    return _parse_kernel(text if text else None)


class Recognizer(abc.ABC):
    """Reads values from the bounding boxes of one image area."""

    def __init__(self, type_name: str, config: Mapping[str, Any]):
        self.type_name = type_name
        try:
            self.boxes: list[BoundingBox] = parse_boxes(config)
        except OptionNotFoundError:
            raise
        except MeterError:
            log.error("Failed to parse 'boundingboxes'")
            raise
        self.min_x = self.min_y = math.inf
        self.max_x = self.max_y = -math.inf
        self.debug_images: list[np.ndarray] | None = None

    def _save_debug(self, image: np.ndarray) -> None:
        if self.debug_images is not None:
            self.debug_images.append(image.copy())

    def _prepare(self, image: Any, dx: int, dy: int, kernel: np.ndarray) -> np.ndarray:
        rgb = _to_rgb(image)
        log.debug(
            "Cropping image to (%d,%d)-(%d,%d)", self.min_x, self.min_y, self.max_x, self.max_y
        )
        cropped = _crop(
            rgb, self.min_x + dx, self.min_y + dy,
            self.max_x - self.min_x, self.max_y - self.min_y,
        )
        self._save_debug(cropped)
        filtered = apply_color_kernel(cropped, kernel)
        self._save_debug(filtered)
        return filtered

    def capture_coords(self) -> tuple[int, int, int, int]:
        """The image area this recognizer looks at: ``(min_x, min_y, max_x, max_y)``."""
        return self.min_x, self.min_y, self.max_x, self.max_y

    @abc.abstractmethod
    def recognize(
        self,
        image: Any,
        dx: int,
        dy: int,
        readings: MutableMapping[str, Reads],
        old_readings: Mapping[str, Reads] | None,
    ) -> bool:
        """Add what is recognised in ``image`` (shifted by dx, dy) to ``readings``."""


class RecognizerNeedle(Recognizer):
    """Reads red needle dials, one digit per circle.

    Boxes are scanned smallest scaler first; digits not marked ``digit``
    are rounded using the fraction of the smaller digit already read.
    """

    def __init__(self, config: Mapping[str, Any]):
        super().__init__("needle", config)
        self.kernel = _kernel_option(config)
        for box in self.boxes:
            if box.box_type is not BoxType.CIRCLE:
                raise OptionNotFoundError("boundingbox without circle")
            r = box.cr * 2 if box.autocenter else box.cr
            self.min_x = min(self.min_x, box.cx - r)
            self.min_y = min(self.min_y, box.cy - r)
            self.max_x = max(self.max_x, box.cx + r)
            self.max_y = max(self.max_y, box.cy + r)

    def _center_is_red(self, image: np.ndarray, box: BoundingBox, cx: int, cy: int) -> bool:
        if box.autocenter:
            return _get(image, cx, cy) >= RED_COLOR_LIMIT
        return all(
            _get(image, x, y) >= RED_COLOR_LIMIT
            for x in range(cx - 1, cx + 2)
            for y in range(cy - 1, cy + 2)
        )

    def _scan_circle(
        self, image: np.ndarray, box: BoundingBox, cx: int, cy: int
    ) -> tuple[int, int]:
        deg_from = deg_to = -1
        last = (-1, -1)
        wrap = False
        for deg in range(360):
            px = math.trunc(cx + box.cr * math.sin(_rad(deg)))
            py = math.trunc(cy - box.cr * math.cos(_rad(deg)))
            if (px, py) == last:
                continue
            if _get(image, px, py) > RED_COLOR_LIMIT:
                if deg == 0:
                    wrap = True
                if wrap:
                    # needle around 0 degrees, e.g. 355..5 gives -5..5
                    if deg < 180:
                        deg_to = deg
                    elif deg - 360 < deg_from:
                        deg_from = deg - 360
                else:
                    if deg_from < 0:
                        deg_from = deg
                    deg_to = deg
                _put(image, px, py, _RED)
            else:
                _put(image, px, py, _BLUE)
            last = (px, py)
        return deg_from, deg_to

    def _autocenter(
        self, image: np.ndarray, box: BoundingBox, cx: int, cy: int, deg_avg: int
    ) -> bool:
        """Shift the box centre so the needle's sides are equally far away."""
        radii: list[int] = []
        for deg in range(deg_avg + 90, deg_avg + 360, 90):
            last = (-1, -1)
            r = box.cr - 1
            while r > 0:
                px = math.trunc(cx + r * math.sin(_rad(deg)))
                py = math.trunc(cy - r * math.cos(_rad(deg)))
                if (px, py) != last:
                    if _get(image, px, py) > RED_COLOR_LIMIT:
                        break
                    last = (px, py)
                r -= 1
            if r <= 0:
                break
            radii.append(r)
            log.debug("scanning at %d: r=%d", deg, r)
        if len(radii) < 3:
            log.error("couldn't autocenter!")
            return False
        half = (radii[0] + radii[2]) / 2.0
        ndx = (radii[0] - half) * math.sin(_rad(deg_avg + 90))
        ndy = -(radii[0] - half) * math.cos(_rad(deg_avg + 90))
        ndx += (radii[1] - half) * math.sin(_rad(deg_avg + 180))
        ndy += -(radii[1] - half) * math.cos(_rad(deg_avg + 180))
        log.debug("ndx=%f ndy=%f", ndx, ndy)
        _put(image, cx + round(ndx), cy + round(ndy), _WHITE)
        if abs(ndx) > 1.0 or abs(ndy) > 1.0:
            box.ac_dx += round(ndx)
            box.ac_dy += round(ndy)
            return True
        return False

    def _read_box(self, image: np.ndarray, box: BoundingBox) -> tuple[int, int, int, int]:
        redo_count = 0
        deg_from = deg_to = deg_avg = -1
        while True:
            cx = box.cx + box.ac_dx - self.min_x
            cy = box.cy + box.ac_dy - self.min_y
            conf = 100
            if not self._center_is_red(image, box, cx, cy):
                log.error("recognizerNeedle center not red!")
                return 0, -1, -1, -1
            _put(image, cx, cy, _GREEN)
            deg_from, deg_to = self._scan_circle(image, box, cx, cy)
            deg_avg = _cdiv(deg_from + deg_to, 2)
            redo = False
            if deg_to < 0:
                conf = 0
            elif box.autocenter:
                redo = self._autocenter(image, box, cx, cy, deg_avg)
                if redo:
                    redo_count += 1
            if not (redo and redo_count < 3):
                return conf, deg_from, deg_to, deg_avg

    def recognize(self, image, dx, dy, readings, old_readings):
        """Read every dial and add its digit, scaled, to the box's reading."""
        if image is None:
            return False
        work = self._prepare(image, dx, dy, self.kernel)

        for box in self.boxes:
            conf, deg_from, deg_to, deg_avg = self._read_box(work, box)
            entry = readings.setdefault(box.identifier, Reads())
            if box.conf_id:
                entry.conf_id = box.conf_id
            if not conf:
                entry.value = math.nan
                entry.min_conf = 0
                continue

            nr = int(box.offset + _cdiv(deg_avg, 36))
            if nr < 0:
                nr += 10
            if nr > 9:
                nr -= 10
            fnr = box.offset + (deg_from + deg_to) / 72
            if fnr < 0:
                fnr += 10.0
            if fnr > 10.0:
                fnr -= 10.0

            if not box.digit:
                smaller = math.modf(entry.value / 10**box.scaler)[0]
                nr, conf = round_based_on_smaller_digits(nr, fnr, smaller, conf)
            elif old_readings is not None and box.identifier in old_readings:
                old = old_readings[box.identifier]
                prev_digit = round(math.modf(old.value / 10 ** (box.scaler + 1))[0] * 10)
                nr = debounce(prev_digit, fnr)

            entry.value += nr * 10.0**box.scaler
            if conf < entry.min_conf:
                entry.min_conf = conf

        self._save_debug(work)
        return True


class RecognizerBinary(Recognizer):
    """Detects a lamp switching on inside exactly one box, as one impulse."""

    EDGE_HIGH = 70
    EDGE_LOW = 30

    def __init__(self, config: Mapping[str, Any]):
        super().__init__("binary", config)
        self.kernel = _kernel_option(config)
        if len(self.boxes) != 1:
            raise OptionNotFoundError("Recognizer binary just needs exactly one boundingbox")
        for box in self.boxes:
            if box.box_type is not BoxType.BOX:
                raise OptionNotFoundError("boundingbox without box")
            self.min_x = min(self.min_x, box.x1)
            self.min_y = min(self.min_y, box.y1)
            self.max_x = max(self.max_x, box.x2)
            self.max_y = max(self.max_y, box.y2)
        self.state = False
        self._max_val = 0

    def recognize(self, image, dx, dy, readings, old_readings):
        """Set the box's reading to 1 when the lamp goes from dark to lit."""
        if image is None:
            return False
        work = self._prepare(image, dx, dy, self.kernel)

        for box in self.boxes:
            cx = box.x1 - self.min_x
            cy = box.y1 - self.min_y
            w = max(box.x2 - box.x1, 1)
            h = max(box.y2 - box.y1, 1)
            samples = max(0, h - cy) * max(0, w - cx)
            val = (samples * (_get(work, cx, cy) >> 24)) // (w * h)
            self._max_val = max(self._max_val, val)
            log.debug("recognizerBinary maxval=%d val=%d", self._max_val, val)

            new_state = self.state
            if not self.state and val > self.EDGE_HIGH:
                new_state = True
            elif self.state and val < self.EDGE_LOW:
                new_state = False
            if new_state != self.state:
                if new_state:
                    readings.setdefault(box.identifier, Reads()).value = 1
                    log.info("recognizerBinary detected impulse val=%d", val)
                self.state = new_state

        self._save_debug(work)
        return True


def create_recognizer(config: Mapping[str, Any]) -> Recognizer:
    """Build the recognizer named by ``type`` (default ``tesseract``)."""
    if not isinstance(config, Mapping):
        raise MeterError("recognizer must be an object")
    rtype = config.get("type", "tesseract")
    if rtype == "needle":
        return RecognizerNeedle(config)
    if rtype == "binary":
        return RecognizerBinary(config)
    raise OptionNotFoundError("recognizer type unknown!")


__all__: Sequence[str] = (
    "Recognizer",
    "RecognizerNeedle",
    "RecognizerBinary",
    "create_recognizer",
    "apply_color_kernel",
)