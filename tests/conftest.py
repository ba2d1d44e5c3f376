"""Shared pytest fixtures and test doubles for rs485link tests."""

import asyncio
import sys

import pytest

from rs485link.config import LinkConfig
from rs485link.events import Signal


def make_config(**overrides) -> LinkConfig:
    """LinkConfig without pins or turnaround and a short reconnect interval."""
    fields = {
        "port": "/dev/ttyTEST",
        "driver_enable_pin": None,
        "receiver_enable_pin": None,
        "turnaround_ms": 0,
        "reconnect_interval_ms": 50,
    }
    fields.update(overrides)
    return LinkConfig(**fields)


@pytest.fixture
def linux(monkeypatch):
    """Pretend to run on Linux so direction lines get configured."""
    monkeypatch.setattr(sys, "platform", "linux")


class FakeLine:
    """Test double for gpiozero.DigitalOutputDevice: records writes.

    Every level written is appended to *trace* as ``(pin, level)``.
    """

    def __init__(self, pin: int, trace: list | None = None):
        """Create a low output on *pin*."""
        self.pin = pin
        self.trace = trace if trace is not None else []
        self.closed = False
        self.fail_writes = False
        self._value = 0

    @property
    def value(self) -> int:
        return self._value

    @value.setter
    def value(self, level: int) -> None:
        if self.fail_writes:
            raise OSError("gpio write failed")
        self._value = level
        self.trace.append((self.pin, level))

    def close(self) -> None:
        self.closed = True


class LineFactory:
    """Stand-in for the DigitalOutputDevice class.

    Records every line it creates; pins listed in *broken* fail to open.
    """

    def __init__(self, trace: list | None = None, broken=()):
        """Start with no lines."""
        self.trace = trace if trace is not None else []
        self.broken = set(broken)
        self.lines: dict[int, FakeLine] = {}

    def __call__(self, pin: int) -> FakeLine:
        if pin in self.broken:
            raise OSError("GPIO %d busy" % pin)
        line = FakeLine(pin, self.trace)
        self.lines[pin] = line
        return line

    def levels(self) -> dict[int, int]:
        """Current level of every created line."""
        return {pin: line.value for pin, line in self.lines.items()}


class FakePort:
    """Test double for the pyserial object behind the transport."""

    def __init__(self, trace: list, fail_flush: bool = False):
        self.trace = trace
        self.fail_flush = fail_flush

    def flush(self) -> None:
        if self.fail_flush:
            raise OSError("flush failed")
        self.trace.append("flush")


class FakeTransport:
    """Test double for pyserial-asyncio's SerialTransport.

    ``buffered`` counts bytes written but not yet handed to the OS.
    """

    def __init__(self, trace: list, fail_flush: bool = False):
        self.serial = FakePort(trace, fail_flush)
        self.buffered = 0
        self.limits = None
        self.aborted = False

    def set_write_buffer_limits(self, high=None, low=None) -> None:
        self.limits = (high, low)

    def get_write_buffer_size(self) -> int:
        return self.buffered

    def abort(self) -> None:
        self.aborted = True


class FakeWriter:
    """Test double for the StreamWriter of a serial connection.

    Written bytes accumulate in ``written`` and are logged to *trace*.
    With *drain_chunk* set, each drain() moves only that many bytes out
    of the transport buffer and logs ``("drain", remaining)``; otherwise
    one drain() empties it.  *stall_close* makes wait_closed() hang.
    """

    def __init__(self, trace: list | None = None, fail_write=False,
                 fail_flush=False, fail_close=False, drain_chunk=None,
                 stall_close=False):
        """Create an open writer."""
        self.trace = trace if trace is not None else []
        self.written = bytearray()
        self.fail_write = fail_write
        self.fail_close = fail_close
        self.drain_chunk = drain_chunk
        self.stall_close = stall_close
        self.closed = False
        self.transport = FakeTransport(self.trace, fail_flush)

    def write(self, data: bytes) -> None:
        if self.fail_write:
            raise OSError("write failed")
        self.written.extend(data)
        self.transport.buffered += len(data)
        self.trace.append(("write", bytes(data)))

    async def drain(self) -> None:
        await asyncio.sleep(0)
        if self.drain_chunk is None:
            self.transport.buffered = 0
            return
        self.transport.buffered = max(0, self.transport.buffered - self.drain_chunk)
        self.trace.append(("drain", self.transport.buffered))

    def close(self) -> None:
        self.closed = True
        if self.fail_close:
            raise OSError("close failed")

    async def wait_closed(self) -> None:
        if self.stall_close:
            await asyncio.Event().wait()

    def is_closing(self) -> bool:
        return self.closed


def open_pair(**writer_kwargs):
    """Return a ``(StreamReader, FakeWriter)`` pair.  Call inside a loop."""
    return asyncio.StreamReader(), FakeWriter(**writer_kwargs)


class FakeLink:
    """Test double for LinkTransport as seen by the manager and monitor.

    Records sent commands; ``fail_sends`` makes the next sends raise.
    """

    def __init__(self):
        """Create a link with empty signals."""
        self.on_status = Signal("status")
        self.on_error = Signal("error")
        self.on_message = Signal("message")
        self.sent = []
        self.fail_sends = 0
        self.send_delay = 0.0

    async def send_command(self, message) -> None:
        if self.fail_sends:
            self.fail_sends -= 1
            raise OSError("port gone")
        self.sent.append(message)
        await asyncio.sleep(self.send_delay)

    def reply(self, message) -> None:
        """Deliver *message* as if it came off the wire."""
        self.on_message.emit(message)
