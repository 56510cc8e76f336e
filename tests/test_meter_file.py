import pytest

from meterread.meter_file import MeterFile
from meterread.reading import InvalidTypeError, MeterError, OptionNotFoundError


def _meter(path, **extra):
    options = {"path": str(path), "interval": 1, **extra}
    return MeterFile(options, poll_interval=0.01)


def test_reads_values_skipping_bad_lines(tmp_path):
    path = tmp_path / "values.txt"
    path.write_text("1\n2.5\nfoo\n3\n")
    with _meter(path) as meter:
        readings = meter.read(10)
    assert [r.value for r in readings] == [1.0, 2.5, 3.0]
    assert all(r.identifier == "" for r in readings)


def test_max_readings_limits_result(tmp_path):
    path = tmp_path / "values.txt"
    path.write_text("1\n2\n3\n4\n")
    with _meter(path) as meter:
        assert [r.value for r in meter.read(2)] == [1.0, 2.0]
        assert [r.value for r in meter.read(2)] == [3.0, 4.0]


def test_without_rewind_only_new_lines_are_read(tmp_path):
    path = tmp_path / "log.txt"
    path.write_text("1\n")
    with _meter(path) as meter:
        assert len(meter.read(10)) == 1
        assert meter.read(10) == []
        with open(path, "a") as handle:
            handle.write("9\n")
        assert [r.value for r in meter.read(10)] == [9.0]


def test_rewind_reads_from_start(tmp_path):
    path = tmp_path / "values.txt"
    path.write_text("5\n6\n")
    with _meter(path, rewind=True) as meter:
        first = [r.value for r in meter.read(10)]
        second = [r.value for r in meter.read(10)]
    assert first == second == [5.0, 6.0]


def test_format_with_identifier_and_timestamp(tmp_path):
    path = tmp_path / "values.txt"
    path.write_text("power 12 1500000000\n")
    with _meter(path, format="$i $v $t") as meter:
        (reading,) = meter.read(10)
    assert reading.identifier == "power"
    assert reading.value == 12.0
    assert reading.time == 1500000000.0


def test_watch_returns_after_change(tmp_path):
    path = tmp_path / "watched.txt"
    path.write_text("")
    meter = MeterFile({"path": str(path)}, poll_interval=0.01)
    meter.open()
    try:
        with open(path, "a") as handle:
            handle.write("4\n")
        assert [r.value for r in meter.read(10)] == [4.0]
    finally:
        meter.close()


def test_watch_falls_back_to_interval_when_deleted(tmp_path):
    path = tmp_path / "watched.txt"
    path.write_text("")
    meter = MeterFile({"path": str(path)}, poll_interval=0.01)
    meter.open()
    try:
        path.unlink()
        assert meter.read(10) == []
        assert meter.interval == 1
    finally:
        meter.close()


def test_missing_path_option():
    with pytest.raises(OptionNotFoundError):
        MeterFile({})


def test_invalid_rewind_type(tmp_path):
    with pytest.raises(InvalidTypeError):
        MeterFile({"path": str(tmp_path / "x"), "rewind": "yes"})


def test_open_missing_file(tmp_path):
    meter = _meter(tmp_path / "missing.txt")
    with pytest.raises(MeterError):
        meter.open()


def test_read_before_open(tmp_path):
    meter = _meter(tmp_path / "x.txt")
    with pytest.raises(MeterError):
        meter.read(1)