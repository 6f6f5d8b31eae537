"""User-facing API entrypoints for workercom."""

from typing import Any

from workercom.proxy import CONSTRUCT
from workercom.proxy import CREATE_ENDPOINT
from workercom.proxy import RELEASE_PROXY
from workercom.proxy import RemoteProxy


def _require_proxy(proxy: object) -> RemoteProxy:
    """Check that ``proxy`` is a stand-in.

    :param proxy: Candidate value.
    :returns: The stand-in.
    :raises TypeError: If ``proxy`` is not a :class:`RemoteProxy`.
    """
    if isinstance(proxy, RemoteProxy) is False:
        raise TypeError(f"Expected a RemoteProxy, got {type(proxy).__name__}")
    return proxy


def create_endpoint(proxy: RemoteProxy) -> Any:
    """Ask the exposing side for a nested channel serving the same object.

    :param proxy: Any stand-in on the channel.
    :returns: Awaitable resolving with the new :class:`MessagePort`.
    """
    return _require_proxy(proxy)[CREATE_ENDPOINT]()


def release_proxy(proxy: RemoteProxy) -> Any:
    """Stop the remote listener and close the channel when supported.

    :param proxy: Any stand-in on the channel.
    :returns: Awaitable resolving once the release is acknowledged.
    """
    return _require_proxy(proxy)[RELEASE_PROXY]()


def construct(proxy: RemoteProxy, *args: object, **kwargs: object) -> Any:
    """Instantiate the remote class a stand-in points at.

    :param proxy: Stand-in for a remote class.
    :param args: Constructor positional arguments.
    :param kwargs: Constructor keyword arguments.
    :returns: Awaitable resolving with the decoded instance.
    """
    return _require_proxy(proxy)[CONSTRUCT](*args, **kwargs)
