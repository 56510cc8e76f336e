import os

import numpy as np
import pytest
from PIL import Image

from meterread.meter_ocr import MeterOCR, autofix_detection
from meterread.reading import InvalidTypeError, MeterError, OptionNotFoundError


def _dial_png(path, needle=True):
    img = np.full((60, 60, 3), 255, dtype=np.uint8)
    if needle:
        img[30:46, 29:32] = (255, 0, 0)
    Image.fromarray(img).save(path)
    return path


def _needle_options(path, **extra):
    options = {
        "file": str(path),
        "recognizer": [
            {
                "type": "needle",
                "boundingboxes": [
                    {
                        "identifier": "dial",
                        "confidence_id": "dial_conf",
                        "circle": {"cx": 30, "cy": 30, "cr": 10},
                    }
                ],
            }
        ],
    }
    options.update(extra)
    return options


def test_needle_pointing_down_reads_five(tmp_path):
    path = _dial_png(tmp_path / "dial.png")
    meter = MeterOCR(_needle_options(path))
    readings = meter.read(10)
    assert [r.identifier for r in readings] == ["dial", "dial_conf"]
    assert readings[0].value == 5.0
    assert 0 < readings[1].value <= 100


def test_max_readings_limits_result(tmp_path):
    path = _dial_png(tmp_path / "dial.png")
    meter = MeterOCR(_needle_options(path))
    readings = meter.read(1)
    assert [r.identifier for r in readings] == ["dial"]


def test_zero_max_readings_returns_nothing(tmp_path):
    path = _dial_png(tmp_path / "dial.png")
    meter = MeterOCR(_needle_options(path))
    assert meter.read(0) == []


def test_blank_image_gives_only_confidence_zero(tmp_path):
    path = _dial_png(tmp_path / "dial.png", needle=False)
    meter = MeterOCR(_needle_options(path))
    readings = meter.read(10)
    assert [r.identifier for r in readings] == ["dial_conf"]
    assert readings[0].value == 0


def test_unchanged_file_is_not_read_again(tmp_path):
    path = _dial_png(tmp_path / "dial.png")
    with MeterOCR(_needle_options(path)) as meter:
        assert len(meter.read(10)) == 2
        assert meter.read(10) == []
        st = os.stat(path)
        os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 10**9))
        assert len(meter.read(10)) == 2


def test_force_file_changed_reads_again(tmp_path):
    path = _dial_png(tmp_path / "dial.png")
    with MeterOCR(_needle_options(path)) as meter:
        first = meter.read(10)
        meter.force_file_changed()
        second = meter.read(10)
    assert [r.value for r in first] == [r.value for r in second]


def test_impulses_first_read_empty_then_delta(tmp_path):
    path = _dial_png(tmp_path / "dial.png")
    with MeterOCR(_needle_options(path, impulses=10)) as meter:
        assert meter.read(10) == []
        meter.force_file_changed()
        readings = meter.read(10)
    assert readings[0].identifier == "dial"
    assert readings[0].value == 0.0


def test_binary_recognizer_detects_impulse(tmp_path):
    path = tmp_path / "lamp.png"
    Image.fromarray(np.full((20, 20, 3), (255, 0, 0), dtype=np.uint8)).save(path)
    options = {
        "file": str(path),
        "recognizer": [
            {
                "type": "binary",
                "boundingboxes": [
                    {"identifier": "lamp", "box": {"x1": 0, "y1": 0, "x2": 10, "y2": 10}}
                ],
            }
        ],
    }
    readings = MeterOCR(options).read(5)
    assert [(r.identifier, r.value) for r in readings] == [("lamp", 1.0)]


def test_debug_image_is_written(tmp_path):
    path = _dial_png(tmp_path / "dial.png")
    meter = MeterOCR(_needle_options(path, generate_debug_image=True))
    readings = meter.read(10)
    assert readings[0].value == 5.0
    debug_path = tmp_path / "dial.png_debug.jpg"
    assert debug_path.exists()
    with Image.open(debug_path) as img:
        assert img.size[0] >= 60


def test_unreadable_image_returns_nothing(tmp_path):
    path = tmp_path / "dial.png"
    path.write_bytes(b"not an image")
    meter = MeterOCR(_needle_options(path))
    assert meter.read(10) == []


def test_open_missing_file_raises(tmp_path):
    meter = MeterOCR(_needle_options(tmp_path / "missing.png"))
    with pytest.raises(MeterError):
        meter.open()


def test_v4l2_on_regular_file_raises(tmp_path):
    path = _dial_png(tmp_path / "dial.png")
    options = _needle_options(path)
    del options["file"]
    options["v4l2_dev"] = str(path)
    meter = MeterOCR(options)
    with pytest.raises(MeterError):
        meter.open()


def test_missing_file_option():
    with pytest.raises(OptionNotFoundError):
        MeterOCR({"recognizer": [{"type": "needle"}]})


def test_missing_recognizer(tmp_path):
    with pytest.raises(OptionNotFoundError):
        MeterOCR({"file": str(tmp_path / "x.png")})


def test_empty_recognizer_list(tmp_path):
    with pytest.raises(OptionNotFoundError):
        MeterOCR({"file": str(tmp_path / "x.png"), "recognizer": []})


def test_unknown_recognizer_type(tmp_path):
    options = _needle_options(tmp_path / "x.png")
    options["recognizer"][0]["type"] = "tesseract"
    with pytest.raises(OptionNotFoundError):
        MeterOCR(options)


def test_rotate_must_be_number(tmp_path):
    with pytest.raises(InvalidTypeError):
        MeterOCR(_needle_options(tmp_path / "x.png", rotate="left"))


def test_capture_coords_cover_recognizers(tmp_path):
    meter = MeterOCR(_needle_options(tmp_path / "x.png"))
    assert meter.min_x <= 20 and meter.max_x >= 40
    assert meter.min_y <= 20 and meter.max_y >= 40


def test_invalid_autofix_is_disabled(tmp_path):
    meter = MeterOCR(_needle_options(tmp_path / "x.png", autofix={"range": 5, "x": 2, "y": 20}))
    assert meter.autofix_range == 0


def test_autofix_uniform_image_not_found():
    image = np.full((40, 40, 3), 128, dtype=np.uint8)
    assert autofix_detection(image, 20, 20, 5) is None


def test_autofix_finds_edge_crossing():
    image = np.zeros((40, 40, 3), dtype=np.uint8)
    ramp = np.zeros(40, dtype=np.int32)
    # window spans 15..25; a two-pixel ramp puts an edge at window index 4 / 6
    ramp[19] = 50
    ramp[20:] = 100
    vramp = np.zeros(40, dtype=np.int32)
    vramp[21] = 50
    vramp[22:] = 100
    gray = (ramp[np.newaxis, :] + vramp[:, np.newaxis]).astype(np.uint8)
    image[...] = gray[..., np.newaxis]
    assert autofix_detection(image, 20, 20, 5) == (-2, 2)


def test_autofix_zero_range_disabled():
    image = np.zeros((10, 10, 3), dtype=np.uint8)
    assert autofix_detection(image, 5, 5, 0) is None