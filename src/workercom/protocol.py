"""Request/response message shapes and correlation over an endpoint."""

import asyncio
import uuid
from collections.abc import Iterable
from typing import Literal

from workercom.channel import Endpoint
from workercom.errors import ProtocolError

MessageType = Literal["get", "set", "apply", "construct", "endpoint", "release"]
GET: MessageType = "get"
SET: MessageType = "set"
APPLY: MessageType = "apply"
CONSTRUCT: MessageType = "construct"
ENDPOINT: MessageType = "endpoint"
RELEASE: MessageType = "release"
MESSAGE_TYPES: frozenset[str] = frozenset({GET, SET, APPLY, CONSTRUCT, ENDPOINT, RELEASE})
PATH_MESSAGE_TYPES: frozenset[str] = frozenset({GET, SET, APPLY, CONSTRUCT})
RETURN_FIELD: str = "return"

PathSegment = str | int


def generate_id() -> str:
    """Return a fresh correlation identifier.

    :returns: Random hex string, unique per request.
    """
    return uuid.uuid4().hex


def require_endpoint(endpoint: object) -> Endpoint:
    """Validate that ``endpoint`` satisfies the channel contract.

    :param endpoint: Candidate endpoint.
    :returns: The same endpoint.
    :raises TypeError: If a required channel method is missing.
    """
    for method_name in ("send", "subscribe", "unsubscribe"):
        method: object = getattr(endpoint, method_name, None)
        if callable(method) is False:
            raise TypeError(f"endpoint must provide a callable {method_name}()")
    return endpoint  # type: ignore[return-value]


def activate_endpoint(endpoint: Endpoint) -> None:
    """Invoke the optional ``activate`` step of an endpoint.

    :param endpoint: Endpoint to activate.
    """
    activate: object = getattr(endpoint, "activate", None)
    if callable(activate) is True:
        activate()


def close_endpoint(endpoint: Endpoint) -> bool:
    """Invoke the optional ``close`` step of an endpoint.

    :param endpoint: Endpoint to close.
    :returns: ``True`` when the endpoint supports closing.
    """
    close: object = getattr(endpoint, "close", None)
    if callable(close) is False:
        return False
    close()
    return True


def require_request_id(message: dict[str, object]) -> str:
    """Extract and validate the correlation identifier.

    :param message: Request message.
    :returns: Correlation identifier.
    :raises ProtocolError: If ``id`` is missing or invalid.
    """
    request_id: object = message.get("id")
    if isinstance(request_id, str) is False:
        raise ProtocolError("id must be a string")
    return request_id


def require_path(message: dict[str, object]) -> tuple[PathSegment, ...]:
    """Extract and validate the property path.

    :param message: Request message.
    :returns: Path as a tuple of segments.
    :raises ProtocolError: If ``path`` is missing or holds invalid segments.
    """
    raw_path: object = message.get("path")
    if isinstance(raw_path, (list, tuple)) is False:
        raise ProtocolError("path must be a list")
    for segment in raw_path:
        is_bool: bool = isinstance(segment, bool)
        is_valid: bool = isinstance(segment, (str, int)) and is_bool is False
        if is_valid is False:
            raise ProtocolError(f"path segments must be strings or integers, got {segment!r}")
    return tuple(raw_path)


def require_arguments(message: dict[str, object]) -> list[object]:
    """Extract the wire-encoded positional argument list.

    :param message: Request message.
    :returns: Wire-encoded positional arguments.
    :raises ProtocolError: If ``arguments`` is not a list.
    """
    raw_arguments: object = message.get("arguments", [])
    if isinstance(raw_arguments, list) is False:
        raise ProtocolError("arguments must be a list")
    return raw_arguments


def require_kwargs(message: dict[str, object]) -> dict[str, object]:
    """Extract the wire-encoded keyword argument map.

    :param message: Request message.
    :returns: Wire-encoded keyword arguments.
    :raises ProtocolError: If ``kwargs`` is not a dict of string keys.
    """
    raw_kwargs: object = message.get("kwargs", {})
    if isinstance(raw_kwargs, dict) is False:
        raise ProtocolError("kwargs must be a dict")
    for key in raw_kwargs:
        if isinstance(key, str) is False:
            raise ProtocolError("kwargs keys must be strings")
    return raw_kwargs


def request_response(
    endpoint: Endpoint,
    message: dict[str, object],
    transfer: Iterable[object] = (),
) -> "asyncio.Future[object]":
    """Send one request and return a future for its correlated response.

    The request is sent before this function returns. The future resolves
    with the raw wire value carried in the response's ``return`` field.

    :param endpoint: Endpoint to send on.
    :param message: Request body without ``id``.
    :param transfer: Transferable resources referenced by ``message``.
    :returns: Future resolved by the matching response.
    """
    loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
    future: asyncio.Future[object] = loop.create_future()
    request_id: str = generate_id()

    def listener(incoming: object) -> None:
        """Resolve the future with the matching response and unsubscribe."""
        if isinstance(incoming, dict) is False:
            return
        if incoming.get("id") != request_id or RETURN_FIELD not in incoming:
            return
        endpoint.unsubscribe(listener)
        if future.done() is False:
            future.set_result(incoming[RETURN_FIELD])

    endpoint.subscribe(listener)
    activate_endpoint(endpoint)

    request: dict[str, object] = {"id": request_id}
    request.update(message)
    try:
        endpoint.send(request, list(transfer))
    except Exception:
        endpoint.unsubscribe(listener)
        raise
    return future
