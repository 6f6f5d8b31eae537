"""Client-side stand-ins that turn local operations into requests."""

import asyncio
from collections.abc import Iterable
from typing import Any

from loguru import logger

from workercom.channel import Endpoint
from workercom.errors import UnsupportedInteractionError
from workercom.marshaling import decode_value
from workercom.marshaling import encode_value
from workercom.marshaling import encode_values
from workercom.protocol import APPLY
from workercom.protocol import CONSTRUCT as CONSTRUCT_MESSAGE
from workercom.protocol import ENDPOINT
from workercom.protocol import GET
from workercom.protocol import RELEASE
from workercom.protocol import SET
from workercom.protocol import MessageType
from workercom.protocol import PathSegment
from workercom.protocol import close_endpoint
from workercom.protocol import request_response
from workercom.protocol import require_endpoint

DISPLAY_KEY: str = "__workercom_display__"


class _Marker:
    """Well-known key that selects a reserved stand-in operation."""

    __slots__ = ("_name",)

    def __init__(self, name: str) -> None:
        """Name the marker.

        :param name: Display name.
        """
        self._name = name

    def __repr__(self) -> str:
        """Return the display name in angle brackets.

        :returns: Representation string.
        """
        return f"<{self._name}>"


CREATE_ENDPOINT: _Marker = _Marker("workercom.endpoint")
RELEASE_PROXY: _Marker = _Marker("workercom.releaseProxy")
CONSTRUCT: _Marker = _Marker("workercom.construct")

ProxySegment = PathSegment | _Marker


def _is_path_key(key: object) -> bool:
    """Report whether ``key`` can extend a stand-in path.

    :param key: Candidate key.
    :returns: ``True`` for markers, strings and non-bool integers.
    """
    if isinstance(key, _Marker) is True:
        return True
    if isinstance(key, bool) is True:
        return False
    return isinstance(key, (str, int))


def _is_dunder(name: str) -> bool:
    """Report whether ``name`` is a double-underscore name."""
    return name.startswith("__") and name.endswith("__")


def _wire_path(path: Iterable[ProxySegment]) -> list[PathSegment]:
    """Convert a stand-in path into its wire form.

    :param path: Accumulated stand-in path.
    :returns: Wire path.
    :raises UnsupportedInteractionError: If a reserved marker appears in the path.
    """
    wire_path: list[PathSegment] = []
    for segment in path:
        if isinstance(segment, _Marker) is True:
            raise UnsupportedInteractionError(
                f"Reserved marker {segment!r} can only be invoked as the last path segment"
            )
        wire_path.append(segment)  # type: ignore[arg-type]
    return wire_path


async def _resolved(value: object) -> object:
    """Resolve to ``value`` without a round trip."""
    return value


async def _settle(future: "asyncio.Future[object]") -> Any:
    """Await one response and decode its return value.

    :param future: Future from :func:`request_response`.
    :returns: Decoded value.
    """
    wire: object = await future
    return decode_value(wire)


async def _settle_release(endpoint: Endpoint, future: "asyncio.Future[object]") -> None:
    """Await the RELEASE reply, then close the endpoint.

    :param endpoint: Endpoint the stand-in was using.
    :param future: Future from :func:`request_response`.
    """
    await future
    close_endpoint(endpoint)


def _report_set_failure(future: "asyncio.Future[object]") -> None:
    """Log a failed fire-and-forget SET.

    :param future: Completed SET future.
    """
    if future.cancelled() is True:
        return
    try:
        decode_value(future.result())
    except Exception as exc:
        logger.warning("proxy.set.failed error={!r}", exc)


class RemoteProxy:
    """Stand-in for a location in an object graph exposed on the far side.

    Attribute and item reads only extend the path. Writes post SET, calls
    post APPLY and ``await`` posts GET; each request is sent at the moment
    the operation happens.
    """

    _endpoint: Endpoint
    _path: tuple[ProxySegment, ...]
    _patch: dict[object, object] | None

    def __init__(
        self,
        endpoint: Endpoint,
        path: Iterable[ProxySegment] = (),
        patch: dict[object, object] | None = None,
    ) -> None:
        """Initialize a stand-in.

        :param endpoint: Endpoint connected to the exposing side.
        :param path: Path from the exposed root.
        :param patch: Local override map consulted before the remote side.
        """
        object.__setattr__(self, "_endpoint", endpoint)
        object.__setattr__(self, "_path", tuple(path))
        object.__setattr__(self, "_patch", patch)

    def _extend(self, segment: ProxySegment) -> object:
        """Return the override value for ``segment`` or a deeper stand-in.

        :param segment: Path segment or marker.
        :returns: Override value or child stand-in.
        """
        patch: dict[object, object] | None = self._patch
        if patch is not None and segment in patch:
            return patch[segment]
        return RemoteProxy(self._endpoint, self._path + (segment,))

    def __getattr__(self, attr_name: str) -> object:
        """Return a stand-in one attribute deeper.

        :param attr_name: Attribute name.
        :returns: Child stand-in, or the local override value.
        :raises AttributeError: For dunder names absent from the override map.
        """
        if _is_dunder(attr_name) is True:
            patch: dict[object, object] | None = self._patch
            if patch is not None and attr_name in patch:
                return patch[attr_name]
            raise AttributeError(attr_name)
        return self._extend(attr_name)

    def __getitem__(self, key: object) -> object:
        """Return a stand-in one item deeper, or a reserved operation.

        :param key: String key, integer index or reserved marker.
        :returns: Child stand-in, or the local override value.
        :raises TypeError: If ``key`` cannot be a path segment.
        """
        if _is_path_key(key) is False:
            raise TypeError(f"Remote path segments must be str or int, got {type(key).__name__}")
        return self._extend(key)  # type: ignore[arg-type]

    def __setattr__(self, attr_name: str, value: object) -> None:
        """Post SET for one attribute without waiting for confirmation.

        :param attr_name: Attribute name.
        :param value: New value.
        """
        self._assign(attr_name, value)

    def __setitem__(self, key: object, value: object) -> None:
        """Post SET for one item without waiting for confirmation.

        :param key: String key or integer index.
        :param value: New value.
        :raises TypeError: If ``key`` cannot be a path segment.
        """
        if _is_path_key(key) is False or isinstance(key, _Marker) is True:
            raise TypeError(f"Remote path segments must be str or int, got {type(key).__name__}")
        self._assign(key, value)  # type: ignore[arg-type]

    def __delattr__(self, attr_name: str) -> None:
        """Refuse remote deletion.

        :param attr_name: Attribute name.
        :raises UnsupportedInteractionError: Always.
        """
        raise UnsupportedInteractionError("Remote attributes cannot be deleted through a proxy")

    def _assign(self, segment: PathSegment, value: object) -> None:
        """Store into the override map, or post SET.

        :param segment: Last path segment.
        :param value: New value.
        """
        patch: dict[object, object] | None = self._patch
        if patch is not None:
            patch[segment] = value
            return

        wire_path: list[PathSegment] = _wire_path(self._path + (segment,))
        wire_value, transferables = encode_value(value)
        future: asyncio.Future[object] = request_response(
            self._endpoint,
            {"type": SET, "path": wire_path, "value": wire_value},
            transferables,
        )
        future.add_done_callback(_report_set_failure)

    def __call__(self, *args: object, **kwargs: object) -> Any:
        """Invoke the remote value at this path.

        A final ``bind`` segment returns the stand-in for the bound function,
        ``call`` drops its first argument and ``apply`` takes its second
        argument as the argument list. Reserved markers select ENDPOINT,
        RELEASE and CONSTRUCT.

        :param args: Positional arguments.
        :param kwargs: Keyword arguments.
        :returns: Awaitable resolving with the decoded result.
        """
        path: tuple[ProxySegment, ...] = self._path
        last: ProxySegment | None = path[-1] if len(path) > 0 else None

        if last is CREATE_ENDPOINT:
            return _settle(request_response(self._endpoint, {"type": ENDPOINT}))
        if last is RELEASE_PROXY:
            future: asyncio.Future[object] = request_response(self._endpoint, {"type": RELEASE})
            return _settle_release(self._endpoint, future)
        if last is CONSTRUCT:
            return self._invoke(CONSTRUCT_MESSAGE, path[:-1], args, kwargs)

        if last == "bind":
            return RemoteProxy(self._endpoint, path[:-1])
        if last == "call":
            return self._invoke(APPLY, path[:-1], args[1:], kwargs)
        if last == "apply":
            arg_list: object = args[1] if len(args) > 1 else None
            if arg_list is None:
                arg_list = ()
            return self._invoke(APPLY, path[:-1], tuple(arg_list), kwargs)  # type: ignore[arg-type]

        return self._invoke(APPLY, path, args, kwargs)

    def _invoke(
        self,
        message_type: MessageType,
        path: tuple[ProxySegment, ...],
        args: tuple[object, ...],
        kwargs: dict[str, object],
    ) -> Any:
        """Post an APPLY or CONSTRUCT request.

        :param message_type: Request type.
        :param path: Target path.
        :param args: Positional arguments.
        :param kwargs: Keyword arguments.
        :returns: Awaitable resolving with the decoded result.
        """
        wire_path: list[PathSegment] = _wire_path(path)
        wire_values, transferables = encode_values([list(args), dict(kwargs)])
        future: asyncio.Future[object] = request_response(
            self._endpoint,
            {
                "type": message_type,
                "path": wire_path,
                "arguments": wire_values[0],
                "kwargs": wire_values[1],
            },
            transferables,
        )
        return _settle(future)

    def __await__(self) -> Any:
        """Fetch the remote value at this path.

        The root stand-in resolves to itself without a round trip.

        :returns: Iterator driving the GET request.
        """
        if len(self._path) == 0:
            return _resolved(self).__await__()
        wire_path: list[PathSegment] = _wire_path(self._path)
        future: asyncio.Future[object] = request_response(self._endpoint, {"type": GET, "path": wire_path})
        return _settle(future).__await__()

    def __iter__(self) -> object:
        """Refuse synchronous iteration.

        :raises TypeError: Always.
        """
        raise TypeError("RemoteProxy is not iterable; await it to fetch the remote value")

    def __repr__(self) -> str:
        """Return the captured remote text, or a description of the path.

        :returns: Representation string.
        """
        patch: dict[object, object] | None = self._patch
        if patch is not None:
            display: object = patch.get(DISPLAY_KEY)
            if isinstance(display, str) is True:
                return display
        path_text: str = ".".join(
            repr(segment) if isinstance(segment, _Marker) else str(segment) for segment in self._path
        )
        if len(path_text) == 0:
            path_text = "<root>"
        return f"<RemoteProxy {path_text}>"

    def __reduce__(self) -> object:
        """Block pickling of stand-ins.

        :raises UnsupportedInteractionError: Always.
        """
        raise UnsupportedInteractionError("RemoteProxy objects cannot be pickled")

    def __reduce_ex__(self, protocol: int) -> object:
        """Block pickling of stand-ins.

        :param protocol: Pickle protocol version.
        :raises UnsupportedInteractionError: Always.
        """
        raise UnsupportedInteractionError("RemoteProxy objects cannot be pickled")


def wrap(endpoint: Endpoint) -> RemoteProxy:
    """Create the root stand-in for the object exposed on ``endpoint``.

    :param endpoint: Endpoint connected to an exposing side.
    :returns: Root stand-in.
    """
    return RemoteProxy(require_endpoint(endpoint))
