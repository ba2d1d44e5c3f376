"""Request/reply transactions over the shared RS-485 link.

The bus is half-duplex, so only one request may be outstanding at a
time.  ``TransactionManager`` queues requests, transmits them one by one
and resolves each with the first inbound message whose correlation id
matches, or fails it after a timeout.

Example:
    >>> from rs485link.transaction import TransactionManager
    >>> manager = TransactionManager(link)
    >>> manager.attach()
    >>> reply = await manager.request({"cmd": "ping"})
    >>> reply
    {'replyTo': '000', 'pong': True}
"""

import asyncio
import collections
import logging
from dataclasses import dataclass

from rs485link.config import REQUEST_TIMEOUT_MS
from rs485link.protocol import extract_reply_id, normalize_id

log = logging.getLogger(__name__)

# Auto-assigned ids rotate through 000..999.
_ID_MODULUS = 1000


class RequestTimeoutError(TimeoutError):
    """No matching reply arrived in time.

    Attributes:
        request_id: Id of the request that timed out.
        timeout_ms: Timeout the request was given.
        elapsed_ms: Measured time since transmission.
    """

    def __init__(self, request_id: str, timeout_ms: int, elapsed_ms: float):
        super().__init__(
            "request %s timed out after %dms" % (request_id, timeout_ms)
        )
        self.request_id = request_id
        self.timeout_ms = timeout_ms
        self.elapsed_ms = elapsed_ms


@dataclass
class PendingRequest:
    """A queued or in-flight request."""

    id: str
    payload: dict
    timeout_ms: int
    future: asyncio.Future
    timer: asyncio.TimerHandle | None = None
    sent_at: float | None = None


class TransactionManager:
    """Serializes requests on the link and correlates their replies.

    Args:
        transport: Object with ``send_command(message)`` (coroutine) and
            an ``on_message`` signal, normally a LinkTransport.
        timeout_ms: Default reply timeout for request().

    Example:
        >>> manager = TransactionManager(link, timeout_ms=3000)
        >>> manager.attach()
        >>> await manager.request({"cmd": "who"})
        {'replyTo': '000', 'device': 'ctrl-1'}
    """

    def __init__(self, transport, timeout_ms: int = REQUEST_TIMEOUT_MS):
        """Initialize with an empty queue; call attach() to start matching."""
        self._transport = transport
        self._timeout_ms = timeout_ms
        self._queue: collections.deque[PendingRequest] = collections.deque()
        self._current: PendingRequest | None = None
        # Request whose bytes are on the wire; may outlive _current when
        # the reply beats the end of transmission.
        self._sending: PendingRequest | None = None
        self._next_id = 0
        self._attached = False
        self._tasks: set[asyncio.Task] = set()

    @property
    def current_id(self) -> str | None:
        """Id of the in-flight request, or None when idle."""
        return self._current.id if self._current is not None else None

    @property
    def queued(self) -> int:
        """Number of requests waiting behind the current one."""
        return len(self._queue)

    def attach(self) -> None:
        """Start observing inbound messages.  Idempotent."""
        if self._attached:
            return
        self._transport.on_message.connect(self._handle_message)
        self._attached = True

    def detach(self) -> None:
        """Stop observing inbound messages.

        Outstanding requests are left to their timeouts.
        """
        if not self._attached:
            return
        self._transport.on_message.disconnect(self._handle_message)
        self._attached = False

    def next_request_id(self) -> str:
        """Return the next auto-assigned id (``"000"`` .. ``"999"``).

        Example:
            >>> manager.next_request_id(), manager.next_request_id()
            ('000', '001')
        """
        value = self._next_id
        self._next_id = (self._next_id + 1) % _ID_MODULUS
        return "%03d" % value

    def request(self, payload: dict, timeout_ms: int | None = None) -> asyncio.Future:
        """Queue *payload* for transmission and return a reply future.

        An ``id`` is assigned when *payload* has none; the caller's dict
        is left untouched.  Requests run in call order, one at a time.

        Args:
            payload: Command dict, at least ``{"cmd": ...}``.
            timeout_ms: Reply timeout; defaults to the manager's.

        Returns:
            asyncio.Future: Resolves with the reply message, or fails
                with the send error or RequestTimeoutError.

        Example:
            >>> await manager.request({"cmd": "ping"}, 100)
            {'replyTo': '000', 'pong': True}
        """
        loop = asyncio.get_running_loop()
        request_id = payload.get("id")
        if request_id is None:
            request_id = self.next_request_id()
        packet = dict(payload, id=request_id)

        pending = PendingRequest(
            id=str(request_id),
            payload=packet,
            timeout_ms=self._timeout_ms if timeout_ms is None else timeout_ms,
            future=loop.create_future(),
        )
        self._queue.append(pending)
        log.debug("queued %s id=%s (%d waiting)",
                  packet.get("cmd"), pending.id, len(self._queue))
        self._process_queue()
        return pending.future

    # -- Queue ---------------------------------------------------------------

    def _process_queue(self) -> None:
        if self._current is not None or self._sending is not None:
            return
        while self._queue:
            pending = self._queue.popleft()
            if pending.future.done():
                # Cancelled by the caller while waiting.
                continue
            self._current = pending
            self._sending = pending
            task = asyncio.get_running_loop().create_task(self._transmit(pending))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return

    async def _transmit(self, pending: PendingRequest) -> None:
        loop = asyncio.get_running_loop()
        try:
            await self._transport.send_command(pending.payload)
        except Exception as exc:
            self._sending = None
            log.warning("failed to send request %s: %s", pending.id, exc)
            self._finish(pending, error=exc)
            return
        self._sending = None

        if pending is not self._current:
            # Answered while still on the wire; the bus is free now.
            self._process_queue()
            return

        pending.sent_at = loop.time()
        pending.timer = loop.call_later(
            pending.timeout_ms / 1000.0, self._handle_timeout, pending
        )

    def _handle_message(self, message) -> None:
        current = self._current
        if current is None:
            return
        reply_id = extract_reply_id(message)
        if reply_id is None:
            log.debug("ignoring message without reply id")
            return

        expected = normalize_id(current.id)
        if reply_id != expected:
            log.warning("received reply for id=%s, expected %s",
                        reply_id, expected)
            return
        self._finish(current, result=message)

    def _handle_timeout(self, pending: PendingRequest) -> None:
        if pending is not self._current:
            return
        elapsed_ms = (asyncio.get_running_loop().time() - pending.sent_at) * 1000.0
        error = RequestTimeoutError(pending.id, pending.timeout_ms, elapsed_ms)
        log.warning("%s", error)
        self._finish(pending, error=error)

    def _finish(self, pending: PendingRequest, result=None, error=None) -> None:
        """Settle *pending* and move the queue on."""
        if pending.timer is not None:
            pending.timer.cancel()
            pending.timer = None

        if not pending.future.done():
            if error is not None:
                pending.future.set_exception(error)
            else:
                pending.future.set_result(result)

        if pending is self._current:
            self._current = None
        self._process_queue()
