"""Serial link transport for the half-duplex RS-485 bus.

Owns the serial port (via pyserial-asyncio), the transceiver direction
lines and the line framing.  Outbound messages are written with the
driver enabled and the receiver restored afterwards; inbound bytes are
split into lines and decoded as JSON.  A dropped port is reopened on a
fixed interval until it comes back or the transport is destroyed.

Events (``Signal`` attributes):

- ``on_status(LinkStatus)``: link state changed.
- ``on_error(Exception)``: open, I/O or close failure.
- ``on_data(bytes)``: raw chunk read from the port.
- ``on_line(str)``: non-empty inbound line.
- ``on_message(object)``: inbound line that parsed as JSON.
- ``on_tx(bytes)``: bytes written and flushed.

Example:
    >>> from rs485link.config import LinkConfig
    >>> from rs485link.transport import LinkTransport
    >>> link = LinkTransport(LinkConfig(port="/dev/ttyUSB0"))
    >>> link.on_message.connect(print)
    >>> await link.init()
    True
    >>> await link.send_command({"cmd": "ping", "id": "000"})
"""

import asyncio
import contextlib
import enum
import logging

import serial
import serial_asyncio

from rs485link.config import LinkConfig
from rs485link.direction import DirectionControl
from rs485link.events import Signal
from rs485link.protocol import (
    LineSplitter,
    decode_line,
    encode_command,
    parse_line,
)

log = logging.getLogger(__name__)

_PARITY = {
    "none": serial.PARITY_NONE,
    "even": serial.PARITY_EVEN,
    "odd": serial.PARITY_ODD,
    "mark": serial.PARITY_MARK,
    "space": serial.PARITY_SPACE,
}

_STOPBITS = {1: serial.STOPBITS_ONE, 2: serial.STOPBITS_TWO}

_READ_SIZE = 1024

# Upper bound on waiting for the port to close during destroy().
CLOSE_TIMEOUT_S = 2.0


class LinkStatus(str, enum.Enum):
    """Physical link state."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAIL = "fail"


class LinkClosedError(ConnectionError):
    """Raised when sending on a destroyed transport."""


class LinkTransport:
    """Half-duplex RS-485 link with framing and auto-reconnect.

    Args:
        config: Port, framing, pin and reconnect settings.

    Example:
        >>> link = LinkTransport(LinkConfig(port="/dev/ttyUSB0"))
        >>> await link.init()
        >>> await link.send_raw(b"hello\\n")
        >>> await link.destroy()
    """

    def __init__(self, config: LinkConfig):
        """Set up state; nothing is opened until init()."""
        self._config = config
        self._direction = DirectionControl(
            enable_pin=config.enable_pin,
            driver_enable_pin=config.driver_enable_pin,
            receiver_enable_pin=config.receiver_enable_pin,
            receiver_enable_active_low=config.receiver_enable_active_low,
            turnaround_ms=config.turnaround_ms,
        )
        self._splitter = LineSplitter(config.delimiter)

        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._read_task: asyncio.Task | None = None
        self._opening: asyncio.Task | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        self._destroyed = False

        self._status = LinkStatus.DISCONNECTED
        self._last_error: str | None = None

        self.on_status = Signal("status")
        self.on_error = Signal("error")
        self.on_data = Signal("data")
        self.on_line = Signal("line")
        self.on_message = Signal("message")
        self.on_tx = Signal("tx")

    # -- State ---------------------------------------------------------------

    @property
    def status(self) -> LinkStatus:
        return self._status

    @property
    def last_error(self) -> str | None:
        """Text of the most recent error, cleared on reconnect."""
        return self._last_error

    @property
    def is_open(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    @property
    def reconnect_pending(self) -> bool:
        """True while a reconnect attempt is scheduled."""
        return self._reconnect_handle is not None

    @property
    def direction(self) -> DirectionControl:
        return self._direction

    # -- Lifecycle -----------------------------------------------------------

    async def init(self) -> bool:
        """Configure direction lines and open the port.

        An open failure is reported through ``on_status``/``on_error``
        and hands over to the reconnect loop instead of raising.

        Returns:
            bool: True if the port is open.

        Raises:
            RuntimeError: If the transport was destroyed.
        """
        if self._destroyed:
            raise RuntimeError("cannot initialize a destroyed RS-485 transport")

        self._direction.configure()
        if not self._direction.controlled:
            log.info("no direction-control hardware; running without DE/RE")
        try:
            await self._open_port()
        except OSError as exc:
            log.warning("failed to open %s: %s", self._config.port, exc)
            return False
        return True

    async def destroy(self) -> None:
        """Close the port and release the direction lines.  Terminal.

        A request waiting on a reply is not failed here; its own
        timeout reports it.
        """
        if self._destroyed:
            return
        self._destroyed = True
        self._clear_reconnect()

        opening = self._opening
        if opening is not None:
            # An open still in flight notices the flag and closes itself;
            # its failure was already reported.
            with contextlib.suppress(OSError):
                await opening
        await self._stop_reader()
        await self._close_port()
        for task in list(self._tasks):
            task.cancel()

        self._set_status(LinkStatus.DISCONNECTED)
        self._direction.release()
        log.info("link on %s destroyed", self._config.port)

    # -- Sending -------------------------------------------------------------

    async def send_raw(self, payload) -> None:
        """Transmit *payload* (bytes or str) with the driver enabled.

        Waits for the port to be open, reopening it if needed.  The
        receive direction and turnaround delay follow on every path.

        Raises:
            LinkClosedError: If the transport was destroyed.
            OSError: If the port cannot be opened or the write fails.
        """
        if not payload:
            return
        if self._destroyed:
            raise LinkClosedError("RS-485 transport destroyed")

        await self._ensure_port_ready()
        data = payload.encode("utf-8") if isinstance(payload, str) else bytes(payload)
        writer = self._writer

        if self._config.log_traffic:
            log.debug("=> %s", data.hex())

        try:
            async with self._direction.transmitting():
                writer.write(data)
                await self._drain(writer)
                await self._flush(writer)
        except OSError as exc:
            self._handle_port_error(exc, writer)
            raise
        self.on_tx.emit(data)

    async def send_command(self, message) -> None:
        """Serialize *message* as one JSON line and transmit it."""
        data = encode_command(message, self._config.delimiter)
        if self._config.log_traffic:
            log.debug("=> %s", data.decode("utf-8").rstrip())
        await self.send_raw(data)

    async def _drain(self, writer) -> None:
        """Wait until the transport has handed every byte to the OS.

        ``drain()`` alone only waits for the high-water mark; with the
        limit set to zero in _connect() it resumes once the buffer is
        empty.
        """
        await writer.drain()
        while writer.transport.get_write_buffer_size():
            await writer.drain()

    async def _flush(self, writer) -> None:
        """Block (off-loop) until the UART has shifted out every byte."""
        port = getattr(writer.transport, "serial", None)
        if port is None:
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, port.flush)

    # -- Port handling -------------------------------------------------------

    async def _ensure_port_ready(self) -> None:
        if self.is_open:
            return
        await self._open_port()

    async def _open_port(self) -> None:
        """Open the port, sharing one attempt between concurrent callers."""
        if self.is_open:
            return
        if self._opening is None or self._opening.done():
            self._opening = asyncio.get_running_loop().create_task(self._connect())
        opening = self._opening
        try:
            await asyncio.shield(opening)
        finally:
            if self._opening is opening and opening.done():
                self._opening = None

    async def _connect(self) -> None:
        cfg = self._config
        try:
            reader, writer = await serial_asyncio.open_serial_connection(
                url=cfg.port,
                baudrate=cfg.baudrate,
                bytesize=cfg.bytesize,
                parity=_PARITY[cfg.parity],
                stopbits=_STOPBITS[cfg.stopbits],
            )
        except OSError as exc:
            self._set_status(LinkStatus.FAIL, exc)
            self._schedule_reconnect()
            raise

        if self._destroyed:
            writer.close()
            raise LinkClosedError("RS-485 transport destroyed")

        # Pause the writer until its buffer is empty, not merely below 64 KiB.
        writer.transport.set_write_buffer_limits(high=0)
        self._reader = reader
        self._writer = writer
        self._splitter.reset()
        self._read_task = asyncio.get_running_loop().create_task(
            self._read_loop(reader, writer)
        )
        log.info("opened %s @ %d", cfg.port, cfg.baudrate)
        self._last_error = None
        self._set_status(LinkStatus.CONNECTED)

    async def _read_loop(self, reader, writer) -> None:
        """Pump inbound bytes until EOF or a port error."""
        try:
            while True:
                chunk = await reader.read(_READ_SIZE)
                if not chunk:
                    break
                self._handle_incoming(chunk)
        except OSError as exc:
            self._handle_port_error(exc, writer)
            return
        self._handle_port_closed(writer)

    def _handle_incoming(self, chunk: bytes) -> None:
        self.on_data.emit(chunk)
        for raw in self._splitter.feed(chunk):
            text = decode_line(raw)
            if not text:
                continue
            if self._config.log_traffic:
                log.debug("<= %s", text)
            self.on_line.emit(text)
            message = parse_line(text)
            if message is not None:
                self.on_message.emit(message)

    def _handle_port_error(self, exc: Exception, writer) -> None:
        if writer is not self._writer:
            return
        log.warning("port error on %s: %s", self._config.port, exc)
        self._drop_port()
        self.on_error.emit(exc)
        self._set_status(LinkStatus.FAIL)
        self._schedule_reconnect()

    def _handle_port_closed(self, writer) -> None:
        if writer is not self._writer:
            return
        log.warning("port %s closed", self._config.port)
        self._drop_port()
        self._set_status(LinkStatus.DISCONNECTED)
        self._schedule_reconnect()

    def _drop_port(self) -> None:
        """Forget the current connection, closing it if still open."""
        writer = self._writer
        self._reader = None
        self._writer = None
        if self._read_task is not None and self._read_task is not asyncio.current_task():
            self._read_task.cancel()
        self._read_task = None
        if writer is not None and not writer.is_closing():
            try:
                writer.close()
            except OSError as exc:
                log.debug("error closing dropped port: %s", exc)

    async def _stop_reader(self) -> None:
        task = self._read_task
        self._read_task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _close_port(self) -> None:
        """Close the port; failures become error events."""
        writer = self._writer
        self._reader = None
        self._writer = None
        if writer is None:
            return
        try:
            writer.close()
            await asyncio.wait_for(writer.wait_closed(), CLOSE_TIMEOUT_S)
        except TimeoutError:
            log.warning("timed out closing %s; aborting", self._config.port)
            writer.transport.abort()
            self.on_error.emit(
                TimeoutError("timed out closing %s" % self._config.port)
            )
        except OSError as exc:
            log.warning("failed to close %s: %s", self._config.port, exc)
            self.on_error.emit(exc)

    # -- Status and reconnect ------------------------------------------------

    def _set_status(self, status: LinkStatus, error: Exception | None = None) -> None:
        if error is not None:
            self._last_error = str(error)
        if self._status == status and error is None:
            return
        if self._status != status:
            log.info("link %s -> %s", self._status.value, status.value)
        self._status = status
        self.on_status.emit(status)
        if error is not None:
            self.on_error.emit(error)

    def _schedule_reconnect(self) -> None:
        if self._destroyed or not self._config.auto_reconnect:
            return
        if self._reconnect_handle is not None:
            return
        delay = self._config.reconnect_interval_ms / 1000.0
        log.debug("reconnect to %s in %.1fs", self._config.port, delay)
        self._reconnect_handle = asyncio.get_running_loop().call_later(
            delay, self._on_reconnect_timer
        )

    def _clear_reconnect(self) -> None:
        if self._reconnect_handle is None:
            return
        self._reconnect_handle.cancel()
        self._reconnect_handle = None

    def _on_reconnect_timer(self) -> None:
        self._reconnect_handle = None
        if self._destroyed:
            return
        task = asyncio.get_running_loop().create_task(self._reconnect())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _reconnect(self) -> None:
        try:
            await self._open_port()
        except OSError as exc:
            # _connect already reported it and armed the next attempt.
            log.debug("reconnect to %s failed: %s", self._config.port, exc)
