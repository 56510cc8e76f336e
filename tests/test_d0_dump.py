import io

from meterread.d0_dump import DumpMode, DumpWriter


def _fixed_clock(ns=5_000_000_000):
    return lambda: ns


def test_ctrl_message_layout():
    buf = io.BytesIO()
    writer = DumpWriter(buf, clock=_fixed_clock())
    writer.write(DumpMode.CTRL, "opened")
    assert buf.getvalue() == b"\n##### " + b" 5.000000000s (     0 ms) " + b"opened"


def test_ctrl_messages_each_get_own_marker():
    buf = io.BytesIO()
    writer = DumpWriter(buf, clock=_fixed_clock())
    writer.write(DumpMode.CTRL, "read")
    writer.write(DumpMode.CTRL, "timeout!")
    assert buf.getvalue().count(b"##### ") == 2


def test_incoming_bytes_marker_and_partial_row():
    buf = io.BytesIO()
    writer = DumpWriter(buf, clock=_fixed_clock())
    writer.write(DumpMode.DUMP_IN, b"A")
    assert buf.getvalue().startswith(b"\n>>>>> ")
    assert buf.getvalue().endswith(b"ms) \n")
    before = len(buf.getvalue())
    writer.write(DumpMode.CTRL, "x")
    out = buf.getvalue()[before:]
    row, rest = out.split(b"\n", 1)
    row += b"\n"
    assert len(row) == 68
    assert row.startswith(b"41 ")
    assert row[50:51] == b"A"
    assert rest.startswith(b"##### ")


def test_full_row_written_immediately():
    buf = io.BytesIO()
    writer = DumpWriter(buf, clock=_fixed_clock())
    writer.write(DumpMode.DUMP_OUT, b"0123456789abcdef")
    value = buf.getvalue()
    assert value.startswith(b"\n<<<<< ")
    row = value.split(b"\n")[-2] + b"\n"
    assert len(row) == 68
    assert row.startswith(b"30 31 32 ")
    assert row[50:66] == b"0123456789abcdef"


def test_unprintable_bytes_shown_as_space():
    buf = io.BytesIO()
    writer = DumpWriter(buf, clock=_fixed_clock())
    writer.write(DumpMode.DUMP_IN, b"\x06" + b"B" * 15)
    row = buf.getvalue().split(b"\n")[-2]
    assert row.startswith(b"06 42 ")
    assert row[50:51] == b" "
    assert row[51:66] == b"B" * 15


def test_consecutive_traffic_in_same_mode_shares_rows():
    buf = io.BytesIO()
    writer = DumpWriter(buf, clock=_fixed_clock())
    for byte in b"0123456789abcdef":
        writer.write(DumpMode.DUMP_IN, bytes([byte]))
    assert buf.getvalue().count(b">>>>> ") == 1
    assert b"0123456789abcdef" in buf.getvalue()


def test_timestamp_delta_between_markers():
    times = iter([1_000_000_000, 1_250_000_000])
    buf = io.BytesIO()
    writer = DumpWriter(buf, clock=lambda: next(times))
    writer.write(DumpMode.CTRL, "a")
    writer.write(DumpMode.CTRL, "b")
    assert b"(   250 ms) b" in buf.getvalue()


def test_path_target_appends(tmp_path):
    path = tmp_path / "dump.txt"
    path.write_bytes(b"old")
    with DumpWriter(path, clock=_fixed_clock()) as writer:
        writer.write(DumpMode.CTRL, "opened")
    content = path.read_bytes()
    assert content.startswith(b"old\n##### ")
    assert content.endswith(b"opened")


def test_close_leaves_foreign_stream_open():
    buf = io.BytesIO()
    writer = DumpWriter(buf, clock=_fixed_clock())
    writer.write(DumpMode.CTRL, "x")
    writer.close()
    assert buf.closed is False
    assert buf.getvalue().endswith(b"x")