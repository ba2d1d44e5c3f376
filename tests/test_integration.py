"""Integration tests: transport + manager + monitor over a socat PTY pair.

These tests require socat and are excluded from the default run
(marker: ``integration``).

Run with::

    pytest -m integration
"""

import asyncio
import os
import shutil
import subprocess
import sys
import time

import pytest

from rs485link.config import LinkConfig
from rs485link.monitor import ConnectionMonitor
from rs485link.transaction import RequestTimeoutError, TransactionManager
from rs485link.transport import LinkStatus, LinkTransport

pytestmark = pytest.mark.integration

MASTER_PTY = "/tmp/rs485link-test-master"
REMOTE_PTY = "/tmp/rs485link-test-remote"
SIM_NAME = "ctrl-sim"
TOOLS_DIR = os.path.join(os.path.dirname(__file__), "..", "tools")


def _socat_available():
    return shutil.which("socat") is not None


@pytest.fixture
def pty_pair():
    """Create a socat PTY pair and start the simulator on the remote end.

    Yields:
        str: Path to the master-side PTY.
    """
    socat = subprocess.Popen(
        [
            "socat", "-d", "-d",
            "PTY,raw,echo=0,link={}".format(MASTER_PTY),
            "PTY,raw,echo=0,link={}".format(REMOTE_PTY),
        ],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )

    for _ in range(40):
        if os.path.exists(MASTER_PTY) and os.path.exists(REMOTE_PTY):
            break
        time.sleep(0.05)

    sim = subprocess.Popen(
        [sys.executable, os.path.join(TOOLS_DIR, "simulator.py"),
         REMOTE_PTY, SIM_NAME],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    time.sleep(0.3)

    yield MASTER_PTY

    sim.terminate()
    sim.wait()
    socat.terminate()
    socat.wait()
    for p in (MASTER_PTY, REMOTE_PTY):
        if os.path.exists(p):
            os.unlink(p)


def _link(port):
    return LinkTransport(LinkConfig(
        port=port,
        driver_enable_pin=None,
        receiver_enable_pin=None,
        turnaround_ms=0,
        auto_reconnect=False,
    ))


@pytest.mark.skipif(not _socat_available(), reason="socat not installed")
class TestIntegration:
    """End-to-end tests against the simulator."""

    def test_ping_round_trip(self, pty_pair):
        async def scenario():
            link = _link(pty_pair)
            manager = TransactionManager(link, timeout_ms=2000)
            manager.attach()
            assert await link.init()
            try:
                return await manager.request({"cmd": "ping"})
            finally:
                await link.destroy()

        assert asyncio.run(scenario()) == {"replyTo": "000", "pong": True}

    def test_requests_in_order(self, pty_pair):
        async def scenario():
            link = _link(pty_pair)
            manager = TransactionManager(link, timeout_ms=2000)
            manager.attach()
            await link.init()
            try:
                return await asyncio.gather(
                    manager.request({"cmd": "ping"}),
                    manager.request({"cmd": "who"}),
                    manager.request({"cmd": "ping"}),
                )
            finally:
                await link.destroy()

        replies = asyncio.run(scenario())
        assert [r["replyTo"] for r in replies] == ["000", "001", "002"]
        assert replies[1]["device"] == SIM_NAME

    def test_unknown_command_times_out(self, pty_pair):
        async def scenario():
            link = _link(pty_pair)
            manager = TransactionManager(link, timeout_ms=300)
            manager.attach()
            await link.init()
            try:
                with pytest.raises(RequestTimeoutError):
                    await manager.request({"cmd": "reboot"})
            finally:
                await link.destroy()

        asyncio.run(scenario())

    def test_heartbeat_marks_remote_connected(self, pty_pair):
        """The simulator's periodic heartbeat brings the remote up."""
        async def scenario():
            link = _link(pty_pair)
            monitor = ConnectionMonitor(link, heartbeat_timeout_ms=5000)
            monitor.attach()
            await link.init()
            try:
                for _ in range(50):
                    if monitor.remote.connected:
                        break
                    await asyncio.sleep(0.1)
                return monitor.snapshot()
            finally:
                await link.destroy()

        snap = asyncio.run(scenario())
        assert snap["status"] == LinkStatus.CONNECTED.value
        assert snap["remote"]["connected"] is True
        assert snap["remote"]["device"] == SIM_NAME
