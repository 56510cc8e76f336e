import shlex
import sys
from unittest import mock

import pytest

from meterread.meter_exec import MeterExec
from meterread.reading import InvalidTypeError, MeterError, OptionNotFoundError


def _python_command(code):
    return shlex.join([sys.executable, "-c", code])


def test_default_format_reads_one_value_per_line():
    meter = MeterExec({"command": _python_command("print('1.5'); print('2.5')")}, allow_root=True)
    readings = meter.read(10)
    assert [r.value for r in readings] == [1.5, 2.5]
    assert all(r.identifier == "" for r in readings)


def test_default_format_counts_non_numbers_as_zero():
    meter = MeterExec({"command": _python_command("print('abc')")}, allow_root=True)
    readings = meter.read(10)
    assert [r.value for r in readings] == [0.0]


def test_format_with_identifier():
    code = "print('power 3'); print('energy 4')"
    meter = MeterExec({"command": _python_command(code), "format": "$i $v"}, allow_root=True)
    readings = meter.read(10)
    assert [(r.identifier, r.value) for r in readings] == [("power", 3.0), ("energy", 4.0)]


def test_format_with_timestamp():
    code = "print('5 1500000000')"
    meter = MeterExec({"command": _python_command(code), "format": "$v $t"}, allow_root=True)
    (reading,) = meter.read(10)
    assert reading.value == 5.0
    assert reading.time == 1500000000.0


def test_format_skips_unmatched_lines():
    code = "print('x'); print('7')"
    meter = MeterExec({"command": _python_command(code), "format": "$v"}, allow_root=True)
    assert [r.value for r in meter.read(10)] == [7.0]


def test_max_readings_limits_result():
    code = "[print(n) for n in range(5)]"
    meter = MeterExec({"command": _python_command(code)}, allow_root=True)
    assert [r.value for r in meter.read(2)] == [0.0, 1.0]


def test_open_refuses_root():
    meter = MeterExec({"command": _python_command("pass")})
    with mock.patch("os.geteuid", return_value=0, create=True):
        with pytest.raises(MeterError):
            meter.open()


def test_open_runs_command(tmp_path):
    marker = tmp_path / "ran"
    code = f"open({str(marker)!r}, 'a').write('x')"
    meter = MeterExec({"command": _python_command(code)})
    with mock.patch("os.geteuid", return_value=1000, create=True):
        meter.open()
        assert marker.read_text() == "x"
        readings = meter.read(5)
    assert readings == []
    assert marker.read_text() == "xx"


def test_missing_command():
    with pytest.raises(OptionNotFoundError):
        MeterExec({})


def test_invalid_command_type():
    with pytest.raises(InvalidTypeError):
        MeterExec({"command": 5})