"""Observer lists for component events.

Each component exposes one ``Signal`` per event kind (``on_status``,
``on_message``, ...).  Observers are plain callables receiving the
event payload.

Example:
    >>> from rs485link.events import Signal
    >>> on_line = Signal("line")
    >>> seen = []
    >>> on_line.connect(seen.append)
    >>> on_line.emit("hello")
    >>> seen
    ['hello']
"""

import logging

log = logging.getLogger(__name__)


class Signal:
    """Ordered list of callbacks for one kind of event.

    Args:
        name: Event kind, used in log records.
    """

    def __init__(self, name: str):
        """Create an empty observer list."""
        self.name = name
        self._callbacks = []

    def connect(self, callback):
        """Register *callback*; duplicates are ignored.

        Returns the callback so it can be used as a decorator.
        """
        if callback not in self._callbacks:
            self._callbacks.append(callback)
        return callback

    def disconnect(self, callback) -> None:
        """Remove *callback* if registered."""
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def emit(self, *args) -> None:
        """Deliver *args* to every observer in registration order.

        A failing observer is logged and skipped; the rest still run.
        """
        for callback in list(self._callbacks):
            try:
                callback(*args)
            except Exception:
                log.exception("%s observer %r failed", self.name, callback)

    def __len__(self) -> int:
        return len(self._callbacks)
