#!/usr/bin/env python3
"""Virtual remote controller for rs485link.

Listens on a serial port (typically a socat PTY) and behaves like the
remote device: says hello on start, sends a heartbeat every few
seconds, and answers ``ping`` and ``who`` commands.  Non-JSON lines
are ignored.

Usage:
    python simulator.py <port> [name]

Args:
    port: Serial port path (e.g. /tmp/rs485-remote).
    name: Device name to announce (default ``ctrl-sim``).

Example:
    python simulator.py /tmp/rs485-remote ctrl-1
"""

import json
import sys
import time

import serial

BAUDRATE = 115200
HEARTBEAT_S = 2.0


def reply_for(message, name):
    """Return the reply dict for a command, or None to stay silent.

    Args:
        message: Decoded inbound JSON value.
        name: Device name of this simulator.

    Example:
        >>> reply_for({"cmd": "ping", "id": "004"}, "ctrl-1")
        {'replyTo': '004', 'pong': True}
    """
    if not isinstance(message, dict):
        return None
    cmd = message.get("cmd")
    request_id = message.get("id")
    if cmd == "ping":
        return {"replyTo": request_id, "pong": True}
    if cmd == "who":
        return {"replyTo": request_id, "device": name}
    return None


def send(ser, message):
    """Write one JSON line."""
    ser.write(json.dumps(message, separators=(",", ":")).encode("utf-8") + b"\n")
    ser.flush()


def run(port, name):
    """Run the simulator loop until interrupted.

    Args:
        port: Serial port device path.
        name: Device name to announce.
    """
    ser = serial.Serial(port, BAUDRATE, timeout=0.1)
    print("simulator: {} listening on {}".format(name, port), flush=True)

    buf = b""
    send(ser, {"hello": name, "speed": BAUDRATE})
    next_beat = time.monotonic() + HEARTBEAT_S

    try:
        while True:
            if time.monotonic() >= next_beat:
                send(ser, {"heartbeat": name})
                next_beat = time.monotonic() + HEARTBEAT_S

            buf += ser.read(256)
            while b"\n" in buf:
                line, buf = buf.split(b"\n", 1)
                try:
                    message = json.loads(line.decode("utf-8"))
                except ValueError:
                    continue
                reply = reply_for(message, name)
                if reply is not None:
                    send(ser, reply)
    except KeyboardInterrupt:
        pass
    finally:
        ser.close()


if __name__ == "__main__":
    if len(sys.argv) not in (2, 3):
        print("usage: simulator.py <port> [name]", file=sys.stderr)
        sys.exit(1)
    run(sys.argv[1], sys.argv[2] if len(sys.argv) == 3 else "ctrl-sim")
