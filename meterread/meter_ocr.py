"""Meter that reads values from images of needle dials and impulse lamps."""

from __future__ import annotations

import logging
import math
import os
import stat
from collections.abc import Mapping
from typing import Any

import numpy as np
from PIL import Image

from .ocr_config import Reads, calc_impulses
from .ocr_recognizers import Recognizer, create_recognizer
from .reading import (
    MeterError,
    OptionNotFoundError,
    Reading,
    lookup_option,
)

log = logging.getLogger(__name__)

_EDGE_THRESHOLD = 40
_RED_WEIGHT, _GREEN_WEIGHT, _BLUE_WEIGHT = 0.3, 0.5, 0.2


def _as_rgb(image: Any) -> np.ndarray:
    if isinstance(image, Image.Image):
        return np.array(image.convert("RGB"), dtype=np.uint8)
    arr = np.asarray(image)
    if arr.ndim == 2:
        arr = np.stack([arr] * 3, axis=-1)
    elif arr.ndim != 3 or arr.shape[2] < 3:
        raise MeterError(f"unsupported image shape {arr.shape}")
    return np.array(arr[..., :3], dtype=np.uint8)


def _crop(image: np.ndarray, x0: int, y0: int, width: int, height: int) -> np.ndarray:
    """Cut a window out of ``image``; parts outside the image stay black."""
    out = np.zeros((height, width, 3), dtype=np.uint8)
    src_h, src_w = image.shape[:2]
    sx0, sy0 = max(x0, 0), max(y0, 0)
    sx1, sy1 = min(x0 + width, src_w), min(y0 + height, src_h)
    if sx1 > sx0 and sy1 > sy0:
        out[sy0 - y0 : sy1 - y0, sx0 - x0 : sx1 - x0] = image[sy0:sy1, sx0:sx1]
    return out


def _luminance(rgb: np.ndarray) -> np.ndarray:
    channels = rgb.astype(np.float64)
    gray = (
        _RED_WEIGHT * channels[..., 0]
        + _GREEN_WEIGHT * channels[..., 1]
        + _BLUE_WEIGHT * channels[..., 2]
        + 0.5
    )
    return gray.astype(np.int32)


def _two_sided_edges(gray: np.ndarray, along_rows: bool) -> np.ndarray:
    """Edge strength where the gradient keeps its sign on both sides of a pixel."""
    g = gray if along_rows else gray.T
    out = np.zeros_like(g)
    if g.shape[1] >= 3:
        left = g[:, 1:-1] - g[:, :-2]
        right = g[:, 2:] - g[:, 1:-1]
        strength = np.where(left < 0, -np.maximum(left, right), np.minimum(left, right))
        out[:, 1:-1] = np.where(left * right > 0, strength, 0)
    return out if along_rows else out.T


def _last_on_from_left(row: np.ndarray) -> int:
    for loc, on in enumerate(row):
        if not on:
            return loc - 1
    return len(row) - 1


def _last_on_from_bottom(column: np.ndarray) -> int:
    for loc in range(len(column) - 1, -1, -1):
        if not column[loc]:
            return loc + 1
    return 0


def autofix_detection(image: Any, x: int, y: int, search_range: int) -> tuple[int, int] | None:
    """Find how far the image has moved, using two edges around ``(x, y)``.

    Searches a window of ``search_range`` pixels around the point for a
    vertical edge (from the left) and a horizontal edge (from the bottom)
    and returns the offset ``(dx, dy)`` of their crossing, or ``None``.
    """
    if search_range < 1:
        return None
    width = 2 * search_range + 1
    window = _crop(_as_rgb(image), x - search_range, y - search_range, width, width)
    gray = _luminance(window)
    on_vertical = _two_sided_edges(gray, along_rows=True) < _EDGE_THRESHOLD
    on_horizontal = _two_sided_edges(gray, along_rows=False) < _EDGE_THRESHOLD

    min_on_x = width
    min_on_y = -1
    for i in range(width):
        min_on_x = min(min_on_x, _last_on_from_left(on_vertical[i]))
        min_on_y = max(min_on_y, _last_on_from_bottom(on_horizontal[:, i]))

    if 0 < min_on_x < width and 0 < min_on_y < width:
        dx, dy = min_on_x - search_range, min_on_y - search_range
        log.debug("autofixDetection: dX=%d, dY=%d", dx, dy)
        return dx, dy
    log.error("autofixDetection: not found!")
    return None


def _stack_images(images: list[np.ndarray]) -> np.ndarray:
    width = max(img.shape[1] for img in images)
    height = sum(img.shape[0] for img in images)
    canvas = np.zeros((height, width, 3), dtype=np.uint8)
    top = 0
    for img in images:
        canvas[top : top + img.shape[0], : img.shape[1]] = img
        top += img.shape[0]
    return canvas


def _save_jpeg(image: np.ndarray, path: str) -> None:
    try:
        Image.fromarray(image).save(path, "JPEG", quality=100)
    except (OSError, ValueError) as exc:
        log.error("couldn't write debug file %s: %s", path, exc)


class MeterOCR:
    """Reads meter values from an image file with a list of recognizers.

    Options: ``file`` (or ``v4l2_dev``), ``recognizer`` (list of recognizer
    configurations, required), ``impulses``, ``rotate`` (degrees),
    ``autofix`` (``range``, ``x``, ``y``) and ``generate_debug_image``.
    """

    def __init__(self, options: Mapping[str, Any]):
        self.file = ""
        try:
            self.file = lookup_option(options, "v4l2_dev", str)
        except MeterError:
            pass
        self.use_v4l2 = bool(self.file)
        if not self.use_v4l2:
            try:
                self.file = lookup_option(options, "file", str)
            except MeterError:
                log.error("Missing image file name")
                raise

        self.generate_debug_image: bool = self._optional(
            options, "generate_debug_image", bool, False
        )
        self.impulses: int = self._optional(options, "impulses", int, 0)
        self.rotate: float = self._optional(options, "rotate", float, 0.0)

        self.autofix_range = 0
        self.autofix_x = -1
        self.autofix_y = -1
        self._parse_autofix(options)

        self.recognizers: list[Recognizer] = []
        self.min_x = self.min_y = math.inf
        self.max_x = self.max_y = -math.inf
        self._parse_recognizers(options)

        self._forced_file_changed = True
        self._watching = False
        self._signature: tuple[int, int] | None = None
        self._last_reads: dict[str, Reads] | None = None

    @staticmethod
    def _optional(options: Mapping[str, Any], key: str, kind: type, default: Any) -> Any:
        try:
            return lookup_option(options, key, kind)
        except OptionNotFoundError:
            return default
        except MeterError:
            log.error("Failed to parse %r", key)
            raise

    def _parse_autofix(self, options: Mapping[str, Any]) -> None:
        try:
            config = lookup_option(options, "autofix", Mapping)
        except OptionNotFoundError:
            return
        except MeterError:
            log.error("Failed to parse 'autofix'")
            raise
        try:
            search_range = int(config.get("range", 0))
            x = int(config.get("x", -1))
            y = int(config.get("y", -1))
        except (TypeError, ValueError) as exc:
            raise MeterError(f"Failed to parse 'autofix': {exc}") from exc
        if search_range < 1 or x < search_range or y < search_range:
            log.warning("autofix ignored: range < 1 or x < range or y < range")
            return
        self.autofix_range, self.autofix_x, self.autofix_y = search_range, x, y

    def _parse_recognizers(self, options: Mapping[str, Any]) -> None:
        try:
            configs = lookup_option(options, "recognizer", list)
            if not configs:
                raise OptionNotFoundError("no recognizer given")
            for config in configs:
                recognizer = create_recognizer(config)
                self.recognizers.append(recognizer)
                min_x, min_y, max_x, max_y = recognizer.capture_coords()
                self.min_x = min(self.min_x, min_x)
                self.min_y = min(self.min_y, min_y)
                self.max_x = max(self.max_x, max_x)
                self.max_y = max(self.max_y, max_y)
        except OptionNotFoundError:
            raise
        except MeterError:
            log.error("Failed to parse 'recognizer'")
            raise

    def _stat_signature(self) -> tuple[int, int] | None:
        try:
            st = os.stat(self.file)
        except OSError:
            return None
        return st.st_mtime_ns, st.st_size

    def open(self) -> None:
        """Check that the image can be read and start watching it for changes."""
        self.close()
        if self.use_v4l2:
            try:
                st = os.stat(self.file)
            except OSError as exc:
                raise MeterError(f"cannot identify {self.file!r}: {exc}") from exc
            if not stat.S_ISCHR(st.st_mode):
                raise MeterError(f"{self.file!r} is no device")
            raise MeterError(f"video capture from {self.file!r} is not supported")
        try:
            with open(self.file, "rb"):
                pass
        except OSError as exc:
            raise MeterError(f"cannot open {self.file}: {exc}") from exc
        self._signature = self._stat_signature()
        self._watching = True

    def close(self) -> None:
        """Stop watching the image file."""
        self._watching = False
        self._signature = None

    def __enter__(self) -> MeterOCR:
        self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def force_file_changed(self) -> None:
        """Make the next read process the image even if it has not changed."""
        self._forced_file_changed = True

    def _file_changed(self) -> bool:
        if not self._watching:
            return True
        signature = self._stat_signature()
        changed = signature != self._signature
        self._signature = signature
        return changed

    def _load_image(self) -> np.ndarray | None:
        try:
            with Image.open(self.file) as img:
                rgb = np.array(img.convert("RGB"), dtype=np.uint8)
        except (OSError, ValueError) as exc:
            log.debug("cannot read image %s: %s", self.file, exc)
            return None
        log.info("image = %d x %d", rgb.shape[1], rgb.shape[0])
        return rgb

    def _rotated(self, image: np.ndarray) -> np.ndarray:
        # positive angles turn clockwise
        rotated = Image.fromarray(image).rotate(
            -self.rotate,
            resample=Image.Resampling.BILINEAR,
            fillcolor=(255, 255, 255),
        )
        return np.array(rotated, dtype=np.uint8)

    def read(self, max_readings: int) -> list[Reading]:
        """Recognise the current image and return up to ``max_readings`` readings."""
        if max_readings < 1:
            return []
        if self.use_v4l2:
            raise MeterError("video capture is not supported")
        if not self._file_changed() and not self._forced_file_changed:
            return []
        self._forced_file_changed = False

        image = self._load_image()
        if image is None:
            return []

        debug: list[np.ndarray] | None = [] if self.generate_debug_image else None
        if abs(self.rotate) >= 0.1:
            image = self._rotated(image)
        if debug is not None:
            debug.append(image.copy())

        dx = dy = 0
        if self.autofix_range > 0:
            found = autofix_detection(image, self.autofix_x, self.autofix_y, self.autofix_range)
            if found is not None:
                dx, dy = found

        new_reads: dict[str, Reads] = {}
        for recognizer in self.recognizers:
            recognizer.debug_images = debug
            recognizer.recognize(image, dx, dy, new_reads, self._last_reads)

        if debug:
            _save_jpeg(_stack_images(debug), f"{self.file}_debug.jpg")

        readings, was_nan = self._collect(new_reads, max_readings, image, debug is not None)
        # only a fully successful reading serves as reference for the next one
        self._last_reads = None if was_nan else new_reads
        return readings

    def _collect(
        self,
        new_reads: dict[str, Reads],
        max_readings: int,
        image: np.ndarray,
        with_debug: bool,
    ) -> tuple[list[Reading], bool]:
        results: list[Reading] = []
        was_nan = False
        if self.impulses and self._last_reads is None:
            return results, was_nan

        for identifier, reads in sorted(new_reads.items()):
            if not math.isnan(reads.value):
                if self.impulses:
                    old = self._last_reads.get(identifier, Reads())
                    value = calc_impulses(reads.value, old.value, self.impulses)
                    log.debug(
                        "returning: id <%s> impulses <%d> (abs value: %f)",
                        identifier, value, reads.value,
                    )
                    if value < 0 and with_debug:
                        _save_jpeg(image, f"{self.file}_debug_{reads.value:g}.jpg")
                else:
                    value = reads.value
                    log.debug("returning: id <%s> value <%f>", identifier, value)
                results.append(Reading.now(value, identifier))
                if len(results) >= max_readings:
                    break
            else:
                was_nan = True
            if reads.conf_id:
                results.append(Reading.now(reads.min_conf, reads.conf_id))
                if len(results) >= max_readings:
                    break
        return results, was_nan