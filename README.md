# meterread

Read values from energy meters and turn them into timestamped readings.

There is one reader class for each kind of source. You build a reader from a
mapping of options, call `open()`, call `read(max_readings)` as often as
needed, and call `close()` when finished. Every reader is also a context
manager. `read` returns a list of `meterread.reading.Reading` objects. Each
reading is a frozen dataclass with three fields:

- `value` (float)
- `identifier` (str or int)
- `time` (epoch seconds)

| Reader | Module | Source |
| --- | --- | --- |
| `MeterD0` | `meterread.meter_d0` | IEC 62056-21 (D0) plain-text telegrams from a serial device or a TCP host |
| `MeterFile` | `meterread.meter_file` | Lines in a file or fifo |
| `MeterExec` | `meterread.meter_exec` | Output of a shell command, run on every read |
| `MeterFluksoV2` | `meterread.meter_fluksov2` | SPI delta output of a Flukso v2, read from a fifo |
| `MeterOCR` | `meterread.meter_ocr` | Needle dials and impulse lamps in an image file |

Configuration problems and failures to open a source raise
`meterread.reading.MeterError`. That class has two subclasses:
`OptionNotFoundError` for missing options and `InvalidTypeError` for options
of the wrong type. `meterread.reading.lookup_option(options, key, kind)` is
the type-checked option lookup that all the readers use.
`meterread.reading.MeterProtocol` enumerates the meter protocols.

## Installation

```
pip install meterread
```

To run the tests:

```
pip install "meterread[test]"
pytest
```

## Line formats

`MeterFile` and `MeterExec` accept an optional `format` option. A format is a
template with three placeholders:

- `$v` reads the value.
- `$i` reads an identifier that contains no whitespace.
- `$t` reads a Unix timestamp.

Whitespace in the template matches any run of whitespace. Every other
character must match the input literally.

```python
from meterread.lineformat import compile_format, reading_from_line

fmt = compile_format("$i: $v $t")
parsed = fmt.parse("power: 230.5 1700000000")
# ParsedLine(value=230.5, identifier='power', timestamp=1700000000.0, matched=3)

reading = reading_from_line("power: 230.5 1700000000\n", fmt)
```

A line that uses a format counts as a reading only if at least one
placeholder matched. If no identifier was read, the identifier becomes
`"<null>"`. If the timestamp is missing or negative, the current time is used.

Lines without a format are handled differently by the two readers:

- `MeterFile` reads one number per line and skips lines that do not start
  with a number.
- `MeterExec` turns every output line into a reading, with the value 0.0 when
  the line holds no number.

## Files

```python
from meterread.meter_file import MeterFile

with MeterFile({"path": "/tmp/values.txt", "rewind": True, "interval": 5}) as meter:
    for reading in meter.read(10):
        print(reading.identifier, reading.value, reading.time)
```

`MeterFile` takes these options:

- `path` (required)
- `format`
- `rewind`: re-read from the start on every read (default `False`)
- `interval`

If `interval` is zero or less, or not given, each `read` blocks until the
file's size or modification time changes. The file is polled to detect this.
If the file is moved or deleted, the reader falls back to reading without
waiting.

## Commands

```python
from meterread.meter_exec import MeterExec

meter = MeterExec({"command": "echo 42.5", "format": "$v"})
meter.open()  # runs the command once to check that it starts
print(meter.read(5))
```

The command runs through the shell on every `read`. `open()` refuses to run
as root unless the reader was built with `allow_root=True`.

## Flukso v2

`MeterFluksoV2` reads one line per call from the fifo given by `fifo`. The
default fifo is `/var/run/spid/delta/out`. A line holds a timestamp followed
by groups of channel, consumption and power. Each group gives two readings:

- the consumption, with the identifier `-(channel + 1)`
- the power, with the identifier `channel + 1`

`meterread.meter_fluksov2.parse_fluksov2_line` parses a single line.

## D0 meters

```python
from meterread.meter_d0 import MeterD0

meter = MeterD0({
    "device": "/dev/ttyUSB0",
    "baudrate": 300,
    "parity": "7e1",
    "pullseq": "2f3f210d0a",
    "ackseq": "auto",
})
with meter:
    readings = meter.read(32)
```

Connection options (give one):

- `device`: a serial port
- `host`: `"name:port"` for a TCP connection

Other options:

- `baudrate`, `baudrate_read`: supported serial rates from 50 to 230400
- `parity`: `8n1`, `7n1`, `7e1` or `7o1`
- `pullseq`, `ackseq`: hex strings. `ackseq` can also be `auto`, which builds
  the mode C acknowledge from the baud rate character in the meter's
  identification.
- `wait_sync`: `end` or `off`
- `read_timeout`: seconds, default 10
- `baudrate_change_delay`: milliseconds
- `dump_file`

The readings use the OBIS code as identifier. Only codes that start with a
digit, `C` or `F` are kept. If the read times out or the input is malformed,
the readings gathered so far are returned.

### Parsing without a serial port

`meterread.d0_parser.D0Parser` is the telegram state machine. It works without
a serial port, so you can use it to decode recorded telegrams. Pass it one
byte at a time with `feed()`, which returns one of these `ParseEvent` values:

- `ACK`: the identification line has ended
- `READING`: a reading was added to `parser.readings`
- `COMPLETE`: the telegram has ended
- `ERROR`: the input is malformed

`D0Settings.from_options` validates options on its own.

### Traffic dumps

If `dump_file` is set, the traffic is appended to that file through
`meterread.d0_dump.DumpWriter`:

- Received and sent bytes are written as hex rows of sixteen bytes, with
  their printable characters alongside.
- Control messages are written as text lines.
- Each change of mode starts a new line with a marker and a timestamp.

## Images

`MeterOCR` reads an image file with Pillow. It processes the image on the
first read and then only when the file has changed. Call
`force_file_changed()` to process the image on the next read regardless.

Options:

- `file` (required)
- `recognizer`: a required list of recognizer configurations
- `impulses`: report the change since the last reading, in impulses, instead
  of the value
- `rotate`: degrees
- `autofix`: an object with `range`, `x` and `y`. The image shift is detected
  from two edges around the point (`x`, `y`); see
  `meterread.meter_ocr.autofix_detection`.
- `generate_debug_image`: writes `<file>_debug.jpg`

The recognizers are in `meterread.ocr_recognizers`:

- `needle` (`RecognizerNeedle`) reads red dial needles in circular bounding
  boxes, one digit per circle. It can autocenter the circles.
- `binary` (`RecognizerBinary`) watches a single box. After the red-weighted
  colour filter, it sets the reading to 1 when the box goes from dark to lit.

Each recognizer can take a `kernelColorString` of nine numbers. This replaces
the default colour matrix; `apply_color_kernel` applies such a matrix.
Bounding boxes are described in `meterread.ocr_config`. That module also has
the helpers `debounce`, `round_based_on_smaller_digits` and `calc_impulses`,
which you can use on their own.

## What this package does not do

- It reads meters only. It does not store readings, send them anywhere, run
  as a background service or provide a command line tool.
- `MeterOCR` cannot recognize printed digits, because there is no `tesseract`
  recognizer; an unknown recognizer type raises `OptionNotFoundError`.
- `MeterOCR` cannot capture from a video device. With `v4l2_dev` set,
  `open()` and `read()` raise `MeterError`.