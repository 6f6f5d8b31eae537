"""In-process duplex message channels."""

import asyncio
import copy
from collections import deque
from collections.abc import Callable
from collections.abc import Iterable

from loguru import logger

from workercom.errors import DataCloneError

Listener = Callable[[object], None]


class Endpoint:
    """Channel contract consumed by :func:`workercom.wrap` and :func:`workercom.expose`.

    Implementations deliver each sent message exactly once, in send order,
    to every listener subscribed on the far end. ``activate`` and ``close``
    are optional; callers probe for them before use.
    """

    def send(self, message: object, transfer: Iterable[object] = ()) -> None:
        """Send one message to the far end.

        :param message: Message value.
        :param transfer: Resources carried by reference rather than cloned.
        """
        raise NotImplementedError

    def subscribe(self, listener: Listener) -> None:
        """Register a listener for incoming messages.

        :param listener: Callable receiving each incoming message.
        """
        raise NotImplementedError

    def unsubscribe(self, listener: Listener) -> None:
        """Remove a previously registered listener.

        :param listener: Listener to remove.
        """
        raise NotImplementedError


def structured_clone(message: object, transfer: Iterable[object] = ()) -> object:
    """Deep-copy ``message`` while passing transferables by reference.

    :param message: Message value to clone.
    :param transfer: Objects to carry over without copying.
    :returns: Cloned message.
    :raises DataCloneError: If some part of the message cannot be copied.
    """
    memo: dict[int, object] = {}
    for resource in transfer:
        memo[id(resource)] = resource
    try:
        return copy.deepcopy(message, memo)
    except DataCloneError:
        raise
    except (TypeError, copy.Error) as exc:
        raise DataCloneError(f"Message could not be cloned: {exc}") from exc


class MessagePort(Endpoint):
    """One end of an entangled in-process channel."""

    _peer: "MessagePort | None"
    _listeners: list[Listener]
    _pending: deque[object]
    _is_active: bool
    _is_closed: bool
    _drain_scheduled: bool

    def __init__(self) -> None:
        """Initialize a detached, inactive port."""
        self._peer = None
        self._listeners = []
        self._pending = deque()
        self._is_active = False
        self._is_closed = False
        self._drain_scheduled = False

    @property
    def closed(self) -> bool:
        """Report whether this port has been closed.

        :returns: ``True`` once :meth:`close` has run.
        """
        return self._is_closed

    def send(self, message: object, transfer: Iterable[object] = ()) -> None:
        """Clone ``message`` and schedule its delivery on the peer port.

        :param message: Message value.
        :param transfer: Resources carried by reference rather than cloned.
        :raises DataCloneError: If the message cannot be cloned.
        """
        if self._is_closed is True:
            return
        cloned: object = structured_clone(message, list(transfer))
        peer: MessagePort | None = self._peer
        if peer is None:
            return
        loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        loop.call_soon(peer._receive, cloned)

    def subscribe(self, listener: Listener) -> None:
        """Register a listener for incoming messages.

        :param listener: Callable receiving each incoming message.
        """
        if self._is_closed is True:
            return
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        """Remove a previously registered listener.

        :param listener: Listener to remove.
        """
        try:
            self._listeners.remove(listener)
        except ValueError:
            return

    def activate(self) -> None:
        """Start delivering messages, flushing anything queued so far."""
        if self._is_active is True or self._is_closed is True:
            return
        self._is_active = True
        has_pending: bool = len(self._pending) > 0
        if has_pending is True:
            self._schedule_drain()

    def close(self) -> None:
        """Disentangle this port and stop all delivery."""
        if self._is_closed is True:
            return
        self._is_closed = True
        peer: MessagePort | None = self._peer
        self._peer = None
        if peer is not None and peer._peer is self:
            peer._peer = None
        self._listeners.clear()
        self._pending.clear()
        logger.debug("channel.port.closed port={}", id(self))

    def _schedule_drain(self) -> None:
        """Schedule one drain of the queue on the running loop."""
        if self._drain_scheduled is True:
            return
        self._drain_scheduled = True
        loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        loop.call_soon(self._drain)

    def _drain(self) -> None:
        """Dispatch queued messages in arrival order."""
        self._drain_scheduled = False
        while len(self._pending) > 0 and self._is_closed is False:
            message: object = self._pending.popleft()
            self._dispatch(message)

    def _receive(self, message: object) -> None:
        """Accept one message from the peer.

        :param message: Cloned message.
        """
        if self._is_closed is True:
            return
        # queued messages must go out before anything that arrives later
        must_queue: bool = self._is_active is False or len(self._pending) > 0
        if must_queue is True:
            self._pending.append(message)
            return
        self._dispatch(message)

    def _dispatch(self, message: object) -> None:
        """Hand one message to every current listener.

        :param message: Delivered message.
        """
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception:
                logger.exception("channel.listener.error port={}", id(self))

    def __deepcopy__(self, memo: dict[int, object]) -> "MessagePort":
        """Refuse to clone ports that were not listed as transferables.

        :param memo: Deep-copy memo.
        :raises DataCloneError: Always.
        """
        raise DataCloneError("A MessagePort must be listed in the transfer list to be sent")

    def __repr__(self) -> str:
        """Return a debugging representation.

        :returns: Representation string.
        """
        state: str = "closed" if self._is_closed is True else "open"
        return f"<MessagePort {state} at {id(self):#x}>"


def entangle(first: MessagePort, second: MessagePort) -> None:
    """Pair two detached ports so that each delivers to the other.

    :param first: First port.
    :param second: Second port.
    :raises ValueError: If either port is already entangled or closed.
    """
    for port in (first, second):
        if port._peer is not None or port.closed is True:
            raise ValueError("Ports must be detached and open to be entangled")
    first._peer = second
    second._peer = first


class MessageChannel:
    """Allocate an entangled pair of :class:`MessagePort` objects."""

    port1: MessagePort
    port2: MessagePort

    def __init__(self) -> None:
        """Create and entangle both ports."""
        self.port1 = MessagePort()
        self.port2 = MessagePort()
        entangle(self.port1, self.port2)
