"""Direction control for a half-duplex RS-485 transceiver.

The transceiver's driver-enable (DE) and receiver-enable (RE) inputs are
wired to GPIO output lines.  Two wirings are supported:

- legacy: one line drives DE and RE together (high = transmit);
- split: separate DE and RE lines, RE active-low or active-high.

Hardware control is best effort.  When a line cannot be configured
(no GPIO backend, not a Linux host, pin busy) it is logged and left
uncontrolled; framing and I/O carry on without it.

Example:
    >>> from rs485link.direction import DirectionControl
    >>> direction = DirectionControl(driver_enable_pin=18, receiver_enable_pin=23)
    >>> direction.configure()
    >>> async with direction.transmitting():
    ...     await write_bytes()
"""

import asyncio
import contextlib
import logging
import sys

from gpiozero import DigitalOutputDevice

log = logging.getLogger(__name__)


class DirectionControl:
    """DE/RE line driver with scoped transmit discipline.

    Args:
        enable_pin: Legacy single DE+RE line, or None.
        driver_enable_pin: DE line, or None.
        receiver_enable_pin: RE line, or None.  Equal to
            *driver_enable_pin* means legacy wiring.
        receiver_enable_active_low: True when RE enables the receiver
            at logic 0 (MAX485 style).
        turnaround_ms: Settle time after switching back to receive.
    """

    def __init__(self, enable_pin=None, driver_enable_pin=None,
                 receiver_enable_pin=None, receiver_enable_active_low=True,
                 turnaround_ms=0):
        """Store the wiring; no line is touched until configure()."""
        self._enable_pin = enable_pin
        self._driver_pin = driver_enable_pin
        self._receiver_pin = receiver_enable_pin
        self._re_active = 0 if receiver_enable_active_low else 1
        self._turnaround_s = max(turnaround_ms, 0) / 1000.0

        self._legacy = None
        self._driver = None
        self._receiver = None

    @property
    def controlled(self) -> bool:
        """True when at least one line is under hardware control."""
        return any(
            line is not None
            for line in (self._legacy, self._driver, self._receiver)
        )

    def configure(self) -> None:
        """Claim the configured lines and put the transceiver in receive.

        Safe to call again; lines already claimed are kept.
        """
        if not sys.platform.startswith("linux"):
            log.warning("GPIO control skipped: not running on Linux")
            return

        legacy_pin = self._enable_pin
        if legacy_pin is None and (
            self._driver_pin is not None
            and self._driver_pin == self._receiver_pin
        ):
            legacy_pin = self._driver_pin

        if legacy_pin is not None:
            if self._legacy is None:
                self._legacy = self._open_line(legacy_pin, "DE/RE")
                self._write(self._legacy, 0, "DE/RE")
            return

        if self._driver_pin is not None and self._driver is None:
            self._driver = self._open_line(self._driver_pin, "DE")
            self._write(self._driver, 0, "DE")

        if self._receiver_pin is not None and self._receiver is None:
            self._receiver = self._open_line(self._receiver_pin, "RE")
            self._write(self._receiver, self._re_active, "RE")

    def drive(self, transmit: bool) -> None:
        """Switch the transceiver to transmit (True) or receive (False)."""
        level = 1 if transmit else 0
        if self._driver is not None:
            self._write(self._driver, level, "DE")
        elif self._legacy is not None:
            self._write(self._legacy, level, "DE/RE")

        if self._receiver is not None:
            inactive = 1 - self._re_active
            self._write(
                self._receiver, inactive if transmit else self._re_active, "RE"
            )

    @contextlib.asynccontextmanager
    async def transmitting(self):
        """Hold transmit direction for the body of an ``async with``.

        Receive direction is restored on every exit path, followed by
        the turnaround delay.
        """
        self.drive(True)
        try:
            yield
        finally:
            self.drive(False)
            if self._turnaround_s > 0:
                await asyncio.sleep(self._turnaround_s)

    def release(self) -> None:
        """Drive every claimed line low and give it back."""
        for attr, label in (("_legacy", "DE/RE"), ("_driver", "DE"),
                            ("_receiver", "RE")):
            line = getattr(self, attr)
            if line is None:
                continue
            setattr(self, attr, None)
            try:
                line.value = 0
            except Exception as exc:
                log.warning("failed to drive %s low during shutdown: %s",
                            label, exc)
            try:
                line.close()
            except Exception as exc:
                log.warning("failed to release %s line: %s", label, exc)

    def _open_line(self, pin: int, label: str):
        """Claim *pin* as an output, or return None on failure."""
        try:
            line = DigitalOutputDevice(pin)
        except Exception as exc:
            log.warning("failed to configure GPIO %d (%s): %s", pin, label, exc)
            return None
        log.debug("GPIO %d configured as %s", pin, label)
        return line

    def _write(self, line, level: int, label: str) -> None:
        if line is None:
            return
        try:
            line.value = level
        except Exception as exc:
            log.warning("failed to toggle %s line: %s", label, exc)
