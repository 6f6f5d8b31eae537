"""Exposure side: service requests arriving on an endpoint against one root object."""

import asyncio
import inspect
import types
from collections.abc import Mapping
from collections.abc import MutableMapping
from collections.abc import MutableSequence

from loguru import logger

from workercom.channel import Endpoint
from workercom.channel import MessageChannel
from workercom.errors import ProtocolError
from workercom.marshaling import decode_value
from workercom.marshaling import decode_values
from workercom.marshaling import encode_value
from workercom.protocol import APPLY
from workercom.protocol import ENDPOINT
from workercom.protocol import GET
from workercom.protocol import PATH_MESSAGE_TYPES
from workercom.protocol import RELEASE
from workercom.protocol import RETURN_FIELD
from workercom.protocol import SET
from workercom.protocol import PathSegment
from workercom.protocol import activate_endpoint
from workercom.protocol import close_endpoint
from workercom.protocol import require_arguments
from workercom.protocol import require_endpoint
from workercom.protocol import require_kwargs
from workercom.protocol import require_path
from workercom.protocol import require_request_id
from workercom.proxy import CONSTRUCT as CONSTRUCT_MARKER
from workercom.proxy import RemoteProxy


class Thrown:
    """Mark a value raised by an exposed operation so the caller re-raises it."""

    __slots__ = ("value",)

    value: object

    def __init__(self, value: object) -> None:
        """Wrap a raised value.

        :param value: Raised exception or other thrown value.
        """
        self.value = value

    def __repr__(self) -> str:
        """Return a debugging representation.

        :returns: Representation string.
        """
        return f"Thrown({self.value!r})"


def _step(current: object, segment: PathSegment) -> object:
    """Take one path step from ``current``.

    :param current: Object reached so far.
    :param segment: Key, index or attribute name.
    :returns: Value one step deeper.
    """
    if isinstance(current, Mapping) is True:
        if segment in current:
            return current[segment]
        if isinstance(segment, str) is True:
            return getattr(current, segment)
        raise KeyError(segment)
    if isinstance(segment, int) is True:
        return current[segment]  # type: ignore[index]
    return getattr(current, segment)


def resolve_path(root: object, path: tuple[PathSegment, ...]) -> object:
    """Walk ``path`` from ``root``.

    Mappings are walked by key, falling back to attributes for names that
    are not keys. Integer segments index sequences. Everything else is an
    attribute lookup.

    :param root: Exposed root object.
    :param path: Path segments.
    :returns: Value at the end of the path.
    """
    current: object = root
    for segment in path:
        current = _step(current, segment)
    return current


def assign_path(parent: object, segment: PathSegment, value: object) -> None:
    """Store ``value`` on ``parent`` under ``segment``.

    :param parent: Object owning the slot.
    :param segment: Key, index or attribute name.
    :param value: New value.
    """
    if isinstance(parent, MutableMapping) is True:
        parent[segment] = value
        return
    if isinstance(parent, MutableSequence) is True and isinstance(segment, int) is True:
        parent[segment] = value
        return
    setattr(parent, segment, value)  # type: ignore[arg-type]


class Exposure:
    """Listener servicing requests for one exposed object on one endpoint."""

    _root: object
    _endpoint: Endpoint
    _receiver: object
    _is_active: bool
    _tasks: set["asyncio.Task[None]"]

    def __init__(self, root: object, endpoint: Endpoint, receiver: object = None) -> None:
        """Initialize an exposure without subscribing it.

        :param root: Exposed root object.
        :param endpoint: Endpoint receiving requests.
        :param receiver: Optional object used as the receiver for APPLY.
        """
        self._root = root
        self._endpoint = endpoint
        self._receiver = receiver
        self._is_active = False
        self._tasks = set()

    @property
    def active(self) -> bool:
        """Report whether requests are still serviced.

        :returns: ``False`` once a RELEASE request has been seen.
        """
        return self._is_active

    def start(self) -> None:
        """Subscribe to the endpoint and activate it."""
        if self._is_active is True:
            return
        self._is_active = True
        self._endpoint.subscribe(self._on_message)
        activate_endpoint(self._endpoint)

    def _deactivate(self) -> None:
        """Stop servicing requests and drop the endpoint subscription."""
        self._is_active = False
        self._endpoint.unsubscribe(self._on_message)

    def _on_message(self, message: object) -> None:
        """Schedule one incoming request.

        A RELEASE request deactivates the exposure before it is handled, so
        later requests are ignored.

        :param message: Raw incoming message.
        """
        if self._is_active is False:
            return
        if isinstance(message, dict) is False or "type" not in message:
            return
        if message.get("type") == RELEASE:
            self._deactivate()

        loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        task: asyncio.Task[None] = loop.create_task(self._handle(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _handle(self, message: dict[str, object]) -> None:
        """Run one request and send its correlated reply.

        :param message: Request message.
        """
        try:
            request_id: str = require_request_id(message)
        except ProtocolError as exc:
            logger.warning("dispatch.request.rejected error={!r}", exc)
            if message.get("type") == RELEASE:
                close_endpoint(self._endpoint)
            return

        message_type: object = message.get("type")
        logger.debug("dispatch.request type={} id={} path={}", message_type, request_id, message.get("path"))
        result: object
        try:
            result = self._execute(message_type, message)
            if inspect.isawaitable(result) is True:
                result = await result
        except Exception as exc:
            logger.debug("dispatch.request.raised id={} error={!r}", request_id, exc)
            result = Thrown(exc)

        self._reply(request_id, result)
        if message_type == RELEASE:
            close_endpoint(self._endpoint)
            logger.debug("dispatch.released id={}", request_id)

    def _execute(self, message_type: object, message: dict[str, object]) -> object:
        """Perform one request against the exposed root.

        :param message_type: Request type.
        :param message: Request message.
        :returns: Result, possibly awaitable.
        :raises ProtocolError: If the request is malformed.
        """
        if message_type == ENDPOINT:
            channel: MessageChannel = MessageChannel()
            expose(self._root, channel.port1)
            return channel.port2
        if message_type == RELEASE:
            return None
        if message_type not in PATH_MESSAGE_TYPES:
            raise ProtocolError(f"Unknown message type: {message_type!r}")

        path: tuple[PathSegment, ...] = require_path(message)
        if message_type == SET:
            if len(path) == 0:
                raise ProtocolError("set requires a non-empty path")
            parent: object = resolve_path(self._root, path[:-1])
            assign_path(parent, path[-1], decode_value(message.get("value")))
            return True

        target: object = resolve_path(self._root, path)
        if message_type == GET:
            return target

        decoded: list[object] = decode_values([require_arguments(message), require_kwargs(message)])
        args: list[object] = decoded[0]  # type: ignore[assignment]
        kwargs: dict[str, object] = decoded[1]  # type: ignore[assignment]
        if message_type == APPLY:
            return self._apply(target, args, kwargs)
        return _construct(target, args, kwargs)

    def _apply(self, target: object, args: list[object], kwargs: dict[str, object]) -> object:
        """Call ``target``, binding plain functions to the receiver.

        :param target: Resolved value.
        :param args: Decoded positional arguments.
        :param kwargs: Decoded keyword arguments.
        :returns: Call result.
        :raises TypeError: If ``target`` is not callable.
        """
        receiver: object = self._receiver
        if receiver is not None and inspect.isfunction(target) is True:
            target = types.MethodType(target, receiver)
        if callable(target) is False:
            raise TypeError(f"{type(target).__name__!r} object is not callable")
        return target(*args, **kwargs)

    def _reply(self, request_id: str, result: object) -> None:
        """Encode and send one reply, falling back to an error reply.

        :param request_id: Correlation identifier of the request.
        :param result: Return value or :class:`Thrown` wrapper.
        """
        try:
            wire, transferables = encode_value(result)
            self._endpoint.send({"id": request_id, RETURN_FIELD: wire}, transferables)
            return
        except Exception as exc:
            logger.warning("dispatch.reply.failed id={} error={!r}", request_id, exc)
            failure: Exception = exc

        wire, transferables = encode_value(Thrown(failure))
        self._endpoint.send({"id": request_id, RETURN_FIELD: wire}, transferables)


def _construct(target: object, args: list[object], kwargs: dict[str, object]) -> object:
    """Instantiate ``target``, forwarding to the far side for stand-ins.

    :param target: Resolved class or stand-in.
    :param args: Decoded positional arguments.
    :param kwargs: Decoded keyword arguments.
    :returns: New instance, or an awaitable for stand-ins.
    :raises TypeError: If ``target`` is not a class.
    """
    if isinstance(target, RemoteProxy) is True:
        return target[CONSTRUCT_MARKER](*args, **kwargs)  # type: ignore[index]
    if isinstance(target, type) is False:
        raise TypeError(f"{target!r} is not a class and cannot be constructed")
    return target(*args, **kwargs)


def expose(obj: object, endpoint: Endpoint, receiver: object = None) -> Exposure:
    """Service requests for ``obj`` arriving on ``endpoint``.

    :param obj: Root object to expose.
    :param endpoint: Endpoint connected to the requesting side.
    :param receiver: Optional object plain functions are bound to on APPLY.
    :returns: Started exposure.
    :raises TypeError: If ``endpoint`` does not satisfy the channel contract.
    """
    exposure: Exposure = Exposure(obj, require_endpoint(endpoint), receiver)
    exposure.start()
    return exposure
