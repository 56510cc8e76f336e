"""Meter that reads IEC 62056-21 (D0) telegrams from a serial port or socket."""

from __future__ import annotations

import logging
import select
import socket
import time
from collections.abc import Callable, Mapping
from typing import Any, Protocol

import serial

from .d0_dump import DumpMode, DumpWriter
from .d0_parser import D0Parser, D0Settings, ParseEvent, ack_for_baudrate_char
from .reading import MeterError, Reading

log = logging.getLogger(__name__)

_SYNC_SEARCH_LIMIT = 1024
_IDLE_WAIT_S = 0.005
_SERIAL_READ_TIMEOUT_S = 5.0


class _Link(Protocol):
    def read_byte(self) -> bytes: ...
    def write(self, data: bytes) -> int: ...
    def set_baudrate(self, baudrate: int) -> None: ...
    def flush_io(self) -> None: ...
    def drain(self) -> None: ...
    def close(self) -> None: ...


class _SerialLink:
    def __init__(self, settings: D0Settings):
        try:
            self._port = serial.Serial(
                settings.device,
                baudrate=settings.baudrate,
                bytesize=settings.parity.bytesize,
                parity=settings.parity.parity,
                stopbits=serial.STOPBITS_ONE,
                timeout=_SERIAL_READ_TIMEOUT_S,
                xonxoff=False,
                rtscts=False,
            )
        except (serial.SerialException, ValueError) as exc:
            raise MeterError(f"cannot open {settings.device}: {exc}") from exc
        self._port.reset_input_buffer()
        self._port.reset_output_buffer()

    def read_byte(self) -> bytes:
        return self._port.read(1)

    def write(self, data: bytes) -> int:
        return self._port.write(data) or 0

    def set_baudrate(self, baudrate: int) -> None:
        self._port.baudrate = baudrate

    def flush_io(self) -> None:
        self._port.reset_input_buffer()
        self._port.reset_output_buffer()

    def drain(self) -> None:
        self._port.flush()

    def close(self) -> None:
        self._port.close()


class _SocketLink:
    def __init__(self, host: str, timeout: float):
        node, _, rest = host.partition(":")
        service = rest.partition(":")[0]
        if not service:
            raise MeterError(f"missing port in host {host!r}")
        try:
            port = int(service) if service.isdigit() else socket.getservbyname(service)
            self._sock = socket.create_connection((node, port))
        except OSError as exc:
            raise MeterError(f"connect({node}, {service}): {exc}") from exc
        self._timeout = timeout
        self._sock.settimeout(timeout)
        self.baudrate: int | None = None

    def read_byte(self) -> bytes:
        try:
            return self._sock.recv(1)
        except socket.timeout:
            return b""

    def write(self, data: bytes) -> int:
        self._sock.sendall(data)
        return len(data)

    def set_baudrate(self, baudrate: int) -> None:
        # The remote end owns the line speed; remember what was asked for.
        self.baudrate = baudrate

    def flush_io(self) -> None:
        """Discard any input that has already arrived."""
        self._sock.setblocking(False)
        try:
            while self._sock.recv(4096):
                continue
        except (BlockingIOError, InterruptedError):
            pass
        finally:
            self._sock.settimeout(self._timeout)

    def drain(self) -> None:
        """Wait until the socket can take more data, i.e. the send buffer has room."""
        select.select([], [self._sock], [], self._timeout)

    def close(self) -> None:
        self._sock.close()


class MeterD0:
    """Reads D0 telegrams, optionally sending a pull and an acknowledge sequence.

    Options are those of :meth:`D0Settings.from_options`. A ready ``link``
    (an object with ``read_byte``, ``write``, ``set_baudrate``,
    ``flush_io``, ``drain`` and ``close``) may be given instead of a real
    connection.
    """

    def __init__(
        self,
        options: Mapping[str, Any],
        *,
        link: _Link | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = D0Settings.from_options(options)
        self._given_link = link
        self._link: _Link | None = None
        self._dump: DumpWriter | None = None
        self._sleep = sleep
        self._clock = clock

    def _dump_write(self, mode: DumpMode, data: bytes | str) -> None:
        if self._dump is not None:
            self._dump.write(mode, data)

    def open(self) -> None:
        """Open the dump file if configured, then the connection."""
        if self.settings.dump_file:
            if self._dump is not None:
                self._dump.close()
                self._dump = None
            try:
                self._dump = DumpWriter(self.settings.dump_file)
            except OSError as exc:
                log.error("Failed to open dump_file %s: %s", self.settings.dump_file, exc)
            self._dump_write(DumpMode.CTRL, "opened")

        if self._given_link is not None:
            self._link = self._given_link
        elif self.settings.device:
            self._link = _SerialLink(self.settings)
        elif self.settings.host:
            self._link = _SocketLink(self.settings.host, float(self.settings.read_timeout_s))
        else:
            raise MeterError("Missing device or host")

    def close(self) -> None:
        """Close the dump file and the connection."""
        self._dump_write(DumpMode.CTRL, "closed\n")
        if self._dump is not None:
            self._dump.close()
            self._dump = None
        if self._link is not None:
            self._link.close()
            self._link = None

    def __enter__(self) -> MeterD0:
        self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _delay_ms(self, ms: int) -> None:
        if ms:
            self._sleep(ms / 1000)

    def _wait_for_sync_end(self) -> None:
        skipped = 0
        while self.settings.wait_sync_end:
            byte = self._link.read_byte()
            if not byte:
                return
            self._dump_write(DumpMode.DUMP_IN, byte)
            if byte == b"!":
                self.settings.wait_sync_end = False
                log.debug("found wait_sync_end. skipped %d bytes.", skipped)
            else:
                skipped += 1
                if skipped > _SYNC_SEARCH_LIMIT:
                    self.settings.wait_sync_end = False
                    log.error(
                        "stopped searching for wait_sync_end after %d bytes without success!",
                        skipped,
                    )

    def _acknowledge(self, parser: D0Parser, baudrate_connect: int, baudrate_read: int) -> int:
        settings = self.settings
        if not (settings.auto_ack or settings.ack):
            return baudrate_read
        self._delay_ms(parser.reaction_time_ms)
        if not settings.ack:
            settings.ack, baudrate_read = ack_for_baudrate_char(parser.baudrate_char)
            settings.baudrate_read = baudrate_read

        written = self._link.write(settings.ack)
        self._dump_write(DumpMode.DUMP_OUT, settings.ack[: max(written, 0)])
        if not settings.baudrate_change_delay_ms:
            self._link.drain()
        log.debug("Sending ack sequence (len:%d is:%d)", len(settings.ack), written)
        self._delay_ms(settings.baudrate_change_delay_ms)

        if baudrate_read != baudrate_connect:
            self._link.set_baudrate(baudrate_read)
            if settings.baudrate_change_delay_ms:
                self._dump_write(DumpMode.CTRL, "usleep cfsetispeed")
            else:
                self._dump_write(DumpMode.CTRL, "tcdrain cfsetispeed")
        return baudrate_read

    def read(self, max_readings: int) -> list[Reading]:
        """Read one telegram and return up to ``max_readings`` readings.

        On a timeout or malformed input the readings gathered so far are
        returned.
        """
        if self._link is None:
            raise MeterError("meter is not open")
        settings = self.settings
        self._dump_write(DumpMode.CTRL, "read")

        baudrate_connect = settings.baudrate
        baudrate_read = settings.baudrate_read

        if settings.pull:
            self._dump_write(DumpMode.CTRL, "TCIOFLUSH and cfsetiospeed")
            self._link.flush_io()
            self._link.set_baudrate(baudrate_connect)
            self._delay_ms(settings.baudrate_change_delay_ms)
            written = self._link.write(settings.pull)
            self._dump_write(DumpMode.DUMP_OUT, settings.pull[: max(written, 0)])
            log.debug("sending pull sequence (len:%d is:%d).", len(settings.pull), written)

        start_time = self._clock()
        parser = D0Parser(max_readings)

        if settings.wait_sync_end:
            self._wait_for_sync_end()

        while True:
            if self._clock() - start_time > settings.read_timeout_s:
                log.error("nothing received for more than %d seconds", settings.read_timeout_s)
                self._dump_write(DumpMode.CTRL, "timeout!")
                break

            try:
                byte = self._link.read_byte()
            except OSError as exc:
                log.error("error reading a byte: %s", exc)
                break
            if not byte:
                self._sleep(_IDLE_WAIT_S)
                continue
            self._dump_write(DumpMode.DUMP_IN, byte)

            if parser.started:
                start_time = self._clock()

            event = parser.feed(byte)
            if event is ParseEvent.ACK:
                baudrate_read = self._acknowledge(parser, baudrate_connect, baudrate_read)
            elif event is ParseEvent.COMPLETE:
                return parser.readings
            elif event is ParseEvent.ERROR:
                log.error("Something unexpected happened while parsing the telegram")
                return parser.readings

        log.error("read timed out!, last byte 0x%x", parser.last_byte)
        return parser.readings