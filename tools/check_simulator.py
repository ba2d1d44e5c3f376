#!/usr/bin/env python3
"""Quick smoke test for the simulator.

Opens the master PTY through LinkTransport, sends a ``ping`` through
TransactionManager, and verifies that a correlated reply comes back.
Exits 0 on success, 1 on failure.

Expects socat and the simulator to be running already.

Usage:
    python check_simulator.py <master_pty>

Example:
    python check_simulator.py /tmp/rs485-master
"""

import asyncio
import sys

sys.path.insert(0, str(__import__("pathlib").Path(__file__).resolve().parents[1] / "src"))

from rs485link.config import LinkConfig
from rs485link.transaction import TransactionManager
from rs485link.transport import LinkTransport


async def check(master_pty):
    """Ping the simulator once.

    Returns:
        int: 0 on success, 1 on failure.
    """
    link = LinkTransport(LinkConfig(
        port=master_pty,
        driver_enable_pin=None,
        receiver_enable_pin=None,
        auto_reconnect=False,
    ))
    manager = TransactionManager(link, timeout_ms=2000)
    manager.attach()
    try:
        if not await link.init():
            print("FAIL: cannot open {}".format(master_pty))
            return 1
        try:
            reply = await manager.request({"cmd": "ping"})
        except (TimeoutError, OSError) as exc:
            print("FAIL: {}".format(exc))
            return 1
        if reply.get("pong") is not True:
            print("FAIL: unexpected reply {}".format(reply))
            return 1
        print("OK: {}".format(reply))
        return 0
    finally:
        manager.detach()
        await link.destroy()


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("usage: check_simulator.py <master_pty>", file=sys.stderr)
        sys.exit(1)
    sys.exit(asyncio.run(check(sys.argv[1])))
