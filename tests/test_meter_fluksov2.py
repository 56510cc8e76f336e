import pytest

from meterread.meter_fluksov2 import MeterFluksoV2, parse_fluksov2_line
from meterread.reading import InvalidTypeError, MeterError


def test_parse_single_channel():
    readings = parse_fluksov2_line("1300000000 0 250 1200")
    assert [r.identifier for r in readings] == [-1, 1]
    assert [r.value for r in readings] == [250.0, 1200.0]
    assert all(r.time == 1300000000.0 for r in readings)


def test_parse_two_channels_identifiers():
    readings = parse_fluksov2_line("1300000000 0 1 2 2 3 4")
    assert [r.identifier for r in readings] == [-1, 1, -3, 3]
    assert [r.value for r in readings] == [1.0, 2.0, 3.0, 4.0]


def test_parse_tab_separator():
    readings = parse_fluksov2_line("10\t1\t5\t6")
    assert [(r.identifier, r.value) for r in readings] == [(-2, 5.0), (2, 6.0)]


def test_parse_timestamp_only():
    assert parse_fluksov2_line("1300000000") == []


def test_parse_incomplete_channel_raises():
    with pytest.raises(MeterError):
        parse_fluksov2_line("1300000000 0 250")


def test_parse_non_numeric_tokens_count_as_zero():
    readings = parse_fluksov2_line("100 x y z")
    assert [r.identifier for r in readings] == [-1, 1]
    assert [r.value for r in readings] == [0.0, 0.0]


def test_parse_empty_token_counts_as_zero():
    readings = parse_fluksov2_line("5 0  7")
    assert [r.value for r in readings] == [0.0, 7.0]


def test_default_fifo():
    assert MeterFluksoV2({}).fifo == "/var/run/spid/delta/out"


def test_invalid_fifo_type():
    with pytest.raises(InvalidTypeError):
        MeterFluksoV2({"fifo": 5})


def test_open_missing_file(tmp_path):
    meter = MeterFluksoV2({"fifo": str(tmp_path / "missing")})
    with pytest.raises(MeterError):
        meter.open()


def test_read_without_open():
    with pytest.raises(MeterError):
        MeterFluksoV2({"fifo": "unused"}).read(4)


def test_read_lines_from_file(tmp_path):
    path = tmp_path / "out"
    path.write_bytes(b"\n1300000000 0 10 20\n1300000001 1 30 40\n")
    with MeterFluksoV2({"fifo": str(path)}) as meter:
        first = meter.read(8)
        second = meter.read(8)
        third = meter.read(8)
    assert [(r.identifier, r.value) for r in first] == [(-1, 10.0), (1, 20.0)]
    assert [(r.identifier, r.value, r.time) for r in second] == [
        (-2, 30.0, 1300000001.0),
        (2, 40.0, 1300000001.0),
    ]
    assert third == []


def test_read_limits_readings(tmp_path):
    path = tmp_path / "out"
    path.write_bytes(b"1 0 10 20 1 30 40\n")
    with MeterFluksoV2({"fifo": str(path)}) as meter:
        readings = meter.read(3)
    assert [r.value for r in readings] == [10.0, 20.0, 30.0]