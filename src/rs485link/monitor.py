"""Remote-device liveness from in-band hello/heartbeat messages.

The remote controller announces itself with ``{"hello": name,
"speed": baud}`` and keeps sending ``{"heartbeat": name}``.  The
monitor turns those, plus the link's own status and errors, into a
``StatusReport`` for the status broadcast, and flags the remote as gone
when heartbeats stop for longer than the configured timeout.

Example:
    >>> from rs485link.monitor import ConnectionMonitor
    >>> monitor = ConnectionMonitor(link, heartbeat_timeout_ms=15000)
    >>> monitor.attach()
    >>> monitor.start()
    >>> monitor.snapshot()["remote"]["connected"]
    False
"""

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass, field

from rs485link.config import HEARTBEAT_TIMEOUT_MS, MONITOR_MIN_INTERVAL_MS
from rs485link.events import Signal
from rs485link.transport import LinkStatus

log = logging.getLogger(__name__)

HEARTBEAT_TIMEOUT_REASON = "Remote heartbeat timeout"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RemoteStatus:
    """Presence of the remote device.  Timestamps are epoch milliseconds."""

    connected: bool = False
    device: str | None = None
    speed: float | None = None
    last_heartbeat: int | None = None
    connected_at: int | None = None
    disconnected_at: int | None = None
    reason: str | None = None


@dataclass
class StatusReport:
    """Link status as published to status subscribers."""

    status: LinkStatus = LinkStatus.DISCONNECTED
    error: str | None = None
    remote: RemoteStatus = field(default_factory=RemoteStatus)


class ConnectionMonitor:
    """Tracks remote presence independently of the physical link.

    Args:
        transport: Object with ``on_status``, ``on_error`` and
            ``on_message`` signals, normally a LinkTransport.
        heartbeat_timeout_ms: Remote is dropped after this long without
            hello/heartbeat.  ``<= 0`` disables the check.
        clock: Returns the current time in epoch milliseconds.

    Events:
        ``on_change(dict)``: the snapshot, whenever it changes.
    """

    def __init__(self, transport, heartbeat_timeout_ms: int = HEARTBEAT_TIMEOUT_MS,
                 clock=_now_ms):
        """Start with the link disconnected and no remote seen."""
        self._transport = transport
        self._timeout_ms = heartbeat_timeout_ms
        self._clock = clock
        self._report = StatusReport()
        self._task: asyncio.Task | None = None
        self._attached = False
        self.on_change = Signal("change")

    @property
    def interval_ms(self) -> int:
        """Tick period: half the heartbeat timeout, at least one second."""
        return max(MONITOR_MIN_INTERVAL_MS, self._timeout_ms // 2)

    @property
    def remote(self) -> RemoteStatus:
        return self._report.remote

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def snapshot(self) -> dict:
        """Return a JSON-ready copy of the current status report."""
        data = dataclasses.asdict(self._report)
        data["status"] = self._report.status.value
        return data

    # -- Wiring --------------------------------------------------------------

    def attach(self) -> None:
        """Subscribe to the transport's status, error and message events."""
        if self._attached:
            return
        self._transport.on_status.connect(self.handle_link_status)
        self._transport.on_error.connect(self.handle_link_error)
        self._transport.on_message.connect(self.handle_message)
        self._attached = True

    def detach(self) -> None:
        if not self._attached:
            return
        self._transport.on_status.disconnect(self.handle_link_status)
        self._transport.on_error.disconnect(self.handle_link_error)
        self._transport.on_message.disconnect(self.handle_message)
        self._attached = False

    def start(self) -> None:
        """Start the periodic heartbeat check on the running loop."""
        if self.running or self._timeout_ms <= 0:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        interval_s = self.interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval_s)
            self.check()

    # -- Handlers ------------------------------------------------------------

    def check(self, now: int | None = None) -> bool:
        """Drop the remote if its last heartbeat is older than the timeout.

        Returns:
            bool: True if the remote was marked disconnected.
        """
        remote = self._report.remote
        if self._timeout_ms <= 0 or not remote.connected:
            return False
        if remote.last_heartbeat is None:
            return False
        now = self._clock() if now is None else now
        if now - remote.last_heartbeat <= self._timeout_ms:
            return False

        log.warning("no heartbeat from %s for %dms",
                    remote.device, now - remote.last_heartbeat)
        if self.mark_remote_disconnected(HEARTBEAT_TIMEOUT_REASON):
            self._changed()
            return True
        return False

    def handle_message(self, message) -> None:
        """Update presence from a hello or heartbeat message."""
        if not isinstance(message, dict):
            return
        remote = self._report.remote
        hello = message.get("hello")
        heartbeat = message.get("heartbeat")

        if isinstance(hello, str):
            if remote.device != hello:
                log.info("remote device %s said hello", hello)
            remote.device = hello
            speed = message.get("speed")
            if isinstance(speed, (int, float)) and not isinstance(speed, bool):
                remote.speed = speed
        elif isinstance(heartbeat, str):
            if not remote.device:
                remote.device = heartbeat
        else:
            return

        now = self._clock()
        if not remote.connected:
            remote.connected = True
            remote.connected_at = now
        remote.last_heartbeat = now
        remote.disconnected_at = None
        remote.reason = None
        self._report.status = LinkStatus.CONNECTED
        self._report.error = None
        self._changed()

    def handle_link_status(self, status: LinkStatus) -> None:
        """Follow a link status change."""
        self._report.status = status
        if status == LinkStatus.CONNECTED:
            self._report.error = None
        else:
            self.mark_remote_disconnected(
                "RS485 link %s" % status.value, override_error=False
            )
        self._changed()

    def handle_link_error(self, error: Exception) -> None:
        """Record a link error and drop the remote."""
        self._report.status = LinkStatus.FAIL
        self._report.error = str(error)
        self.mark_remote_disconnected(str(error))
        self._changed()

    def mark_remote_disconnected(self, reason: str | None = None,
                                 override_error: bool = True) -> bool:
        """Mark the remote as gone.

        A connected link status is downgraded to ``disconnected``.  The
        recorded error becomes *reason* unless one is already set and
        *override_error* is False.

        Returns:
            bool: True if the remote was connected before the call.
        """
        remote = self._report.remote
        if not remote.connected:
            if reason:
                remote.reason = reason
            return False

        remote.connected = False
        remote.disconnected_at = self._clock()
        remote.reason = reason
        if self._report.status == LinkStatus.CONNECTED:
            self._report.status = LinkStatus.DISCONNECTED
        if reason and (override_error or not self._report.error):
            self._report.error = reason
        return True

    def _changed(self) -> None:
        self.on_change.emit(self.snapshot())
