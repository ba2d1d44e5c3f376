"""Line framing and reply correlation for the RS-485 JSON protocol.

Messages travel as UTF-8 JSON, one object per line, terminated by a
configurable delimiter (newline by default).  Replies are matched to
requests by a correlation id carried under one of several aliases.

Example:
    >>> from rs485link.protocol import encode_command, extract_reply_id
    >>> encode_command({"cmd": "ping", "id": "000"})
    b'{"cmd":"ping","id":"000"}\\n'
    >>> extract_reply_id({"replyTo": "005", "pong": True})
    '5'
"""

import json
import re

# -- Protocol constants ------------------------------------------------------

DEFAULT_DELIMITER = "\n"

# Reply fields checked for a correlation id, in priority order.
REPLY_ID_FIELDS = ("replyTo", "id", "reply_to", "responseTo")

_LEADING_ZEROS = re.compile(r"^0+(?=\d)")


def delimiter_bytes(delimiter) -> bytes:
    """Return *delimiter* (str, bytes or None) as bytes.

    Example:
        >>> delimiter_bytes("\\r\\n")
        b'\\r\\n'
    """
    if delimiter is None:
        return b""
    if isinstance(delimiter, str):
        return delimiter.encode("utf-8")
    return bytes(delimiter)


# -- Encoding ----------------------------------------------------------------


def encode_command(message, delimiter=DEFAULT_DELIMITER) -> bytes:
    """Serialize *message* as compact UTF-8 JSON plus *delimiter*.

    Args:
        message: JSON-serializable object, normally a command dict.
        delimiter: Line terminator (str or bytes).

    Returns:
        bytes: The framed line, ready for the wire.

    Raises:
        TypeError: If *message* is not JSON-serializable.

    Example:
        >>> encode_command({"cmd": "who", "id": "007"})
        b'{"cmd":"who","id":"007"}\\n'
    """
    text = json.dumps(message, separators=(",", ":"), ensure_ascii=False)
    return text.encode("utf-8") + delimiter_bytes(delimiter)


# -- Decoding ----------------------------------------------------------------


class LineSplitter:
    """Reassemble delimiter-terminated lines from arbitrary chunks.

    Bytes after the last delimiter are held until more data arrives.
    With an empty delimiter every chunk is returned as one line.

    Args:
        delimiter: Line terminator (str or bytes).

    Example:
        >>> splitter = LineSplitter("\\n")
        >>> splitter.feed(b'{"a":1}\\n{"b"')
        [b'{"a":1}']
        >>> splitter.feed(b':2}\\n')
        [b'{"b":2}']
    """

    def __init__(self, delimiter=DEFAULT_DELIMITER):
        """Initialize with an empty buffer."""
        self._delimiter = delimiter_bytes(delimiter)
        self._buf = bytearray()

    def feed(self, chunk: bytes) -> list[bytes]:
        """Add *chunk* and return every complete line it finished."""
        if not self._delimiter:
            return [bytes(chunk)] if chunk else []

        self._buf.extend(chunk)
        lines = []
        while True:
            idx = self._buf.find(self._delimiter)
            if idx < 0:
                break
            lines.append(bytes(self._buf[:idx]))
            del self._buf[: idx + len(self._delimiter)]
        return lines

    def reset(self) -> None:
        """Drop any partial line (e.g. after the port is reopened)."""
        self._buf.clear()

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet terminated."""
        return len(self._buf)


def decode_line(raw: bytes) -> str:
    """Decode a raw line as UTF-8 and trim surrounding whitespace.

    Invalid byte sequences are replaced rather than rejected.

    Example:
        >>> decode_line(b'  {"hello":"ctrl-1"}\\r')
        '{"hello":"ctrl-1"}'
    """
    return raw.decode("utf-8", errors="replace").strip()


def parse_line(text: str):
    """Parse a line as JSON.

    Returns:
        The decoded value, or None when the line is not JSON.  Non-JSON
        lines are legal traffic, not errors.

    Example:
        >>> parse_line('{"heartbeat":"ctrl-1"}')
        {'heartbeat': 'ctrl-1'}
        >>> parse_line("boot ok") is None
        True
    """
    try:
        return json.loads(text)
    except ValueError:
        return None


# -- Correlation -------------------------------------------------------------


def normalize_id(value) -> str | None:
    """Normalize a correlation id for comparison.

    Trims whitespace and strips leading zeros from numeric-looking
    values so that ``"5"`` and ``"005"`` compare equal.  Empty or
    missing ids return None.

    Example:
        >>> normalize_id("005"), normalize_id(7), normalize_id("000")
        ('5', '7', '0')
        >>> normalize_id("  ") is None
        True
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    return _LEADING_ZEROS.sub("", text)


def extract_reply_id(message) -> str | None:
    """Return the normalized correlation id carried by *message*.

    The first non-null field of ``REPLY_ID_FIELDS`` wins.  Non-dict
    messages and messages without any alias return None.

    Example:
        >>> extract_reply_id({"reply_to": "012"})
        '12'
        >>> extract_reply_id({"heartbeat": "ctrl-1"}) is None
        True
    """
    if not isinstance(message, dict):
        return None
    for field in REPLY_ID_FIELDS:
        value = message.get(field)
        if value is not None:
            return normalize_id(value)
    return None
