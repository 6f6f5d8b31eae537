"""Integration tests for wrapping and exposing objects over channels."""

import asyncio
import importlib
import inspect
import pickle
import threading
import types

import pytest
from loguru import logger

from tests.fixtures.exposed_target import build_target
from tests.fixtures.exposed_target import greet
from workercom import CONSTRUCT
from workercom import CREATE_ENDPOINT
from workercom import DataCloneError
from workercom import Exposure
from workercom import MessageChannel
from workercom import MessagePort
from workercom import RemoteError
from workercom import RemoteProxy
from workercom import UnsupportedInteractionError
from workercom import construct
from workercom import create_endpoint
from workercom import expose
from workercom import release_proxy
from workercom import wrap
from workercom.channel import entangle


class CountingPort(MessagePort):
    """Port that records how often it is closed."""

    close_calls: int

    def __init__(self) -> None:
        """Initialize the counter."""
        super().__init__()
        self.close_calls = 0

    def close(self) -> None:
        """Count the call and close the port."""
        self.close_calls += 1
        super().close()


def _connect(root: object, receiver: object = None) -> tuple[RemoteProxy, Exposure]:
    """Expose ``root`` on a fresh channel and wrap the other end.

    :param root: Object to expose.
    :param receiver: Optional receiver override.
    :returns: Root stand-in and the exposure servicing it.
    """
    channel: MessageChannel = MessageChannel()
    exposure: Exposure = expose(root, channel.port1, receiver)
    return wrap(channel.port2), exposure


async def _drain_loop() -> None:
    """Let pending request and reply callbacks run."""
    for _ in range(20):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_get_and_set_follow_program_order() -> None:
    """Read a nested value, overwrite it, and read the new value."""
    root: dict[str, object] = build_target()
    proxy, _ = _connect(root)

    assert await proxy.a.b == 42
    proxy.a.b = 7
    assert await proxy.a.b == 7
    assert root["a"]["b"] == 7  # type: ignore[index]


@pytest.mark.asyncio
async def test_integer_segments_index_sequences() -> None:
    """Walk and assign list elements with integer path segments."""
    root: dict[str, object] = build_target()
    proxy, _ = _connect(root)

    assert await proxy["items"][1] == 20
    proxy["items"][0] = 11
    assert await proxy["items"] == [11, 20, 30]


@pytest.mark.asyncio
async def test_apply_calls_remote_function() -> None:
    """Invoke an exposed function with positional arguments."""
    proxy, _ = _connect(build_target())
    assert await proxy.greet("world") == "hi world"


@pytest.mark.asyncio
async def test_remote_exception_rejects_the_call() -> None:
    """Raise the remote builtin exception with its message intact."""
    proxy, _ = _connect(build_target())

    with pytest.raises(ValueError) as exc_info:
        await proxy.boom()
    assert str(exc_info.value) == "boom"
    assert "boom" in exc_info.value.remote_traceback  # type: ignore[attr-defined]


@pytest.mark.asyncio
async def test_custom_remote_exception_keeps_its_fields() -> None:
    """Carry custom exception attributes through RemoteError."""
    proxy, _ = _connect(build_target())

    with pytest.raises(RemoteError) as exc_info:
        await proxy.counter.fail("bad state")
    assert exc_info.value.remote_type_name == "TargetRaisedError"
    assert exc_info.value.remote_message == "bad state"
    assert exc_info.value.code == 42  # type: ignore[attr-defined]


@pytest.mark.asyncio
async def test_unclonable_error_attribute_is_sent_as_text() -> None:
    """Deliver the raised error when one of its attributes cannot be cloned."""
    proxy, _ = _connect(build_target())

    with pytest.raises(RemoteError) as exc_info:
        await proxy.fail_locked()
    assert exc_info.value.remote_type_name == "LockedError"
    assert exc_info.value.remote_message == "disk full"
    assert exc_info.value.volume == "data"  # type: ignore[attr-defined]
    lock_text: object = exc_info.value.lock  # type: ignore[attr-defined]
    assert isinstance(lock_text, str) is True
    assert "lock" in lock_text


@pytest.mark.asyncio
async def test_stop_iteration_from_sync_function_keeps_its_name() -> None:
    """Report StopIteration raised by a plain function under its own name."""
    proxy, _ = _connect(build_target())

    with pytest.raises(RemoteError) as exc_info:
        await proxy.exhausted()
    assert exc_info.value.remote_type_name == "StopIteration"
    assert "coroutine raised StopIteration" not in exc_info.value.remote_traceback


@pytest.mark.asyncio
async def test_missing_path_rejects_with_attribute_error() -> None:
    """Report lookups of absent names as rejections."""
    proxy, _ = _connect(build_target())
    with pytest.raises(AttributeError):
        await proxy.does_not_exist


@pytest.mark.asyncio
async def test_responses_are_matched_by_id_not_order() -> None:
    """Resolve each caller when replies arrive in reverse order."""
    channel: MessageChannel = MessageChannel()
    requests: list[dict[str, object]] = []
    channel.port1.subscribe(requests.append)
    channel.port1.activate()
    proxy: RemoteProxy = wrap(channel.port2)

    first = proxy.first()
    second = proxy.second()
    await _drain_loop()

    assert [request["path"] for request in requests] == [["first"], ["second"]]
    assert requests[0]["id"] != requests[1]["id"]
    channel.port1.send({"id": requests[1]["id"], "return": "two"})
    channel.port1.send({"id": requests[0]["id"], "return": "one"})

    assert await first == "one"
    assert await second == "two"


@pytest.mark.asyncio
async def test_release_makes_listener_inert_and_closes_once() -> None:
    """Stop servicing requests after release and close each port once."""
    exposed_port: CountingPort = CountingPort()
    wrapped_port: CountingPort = CountingPort()
    entangle(exposed_port, wrapped_port)
    exposure: Exposure = expose(build_target(), exposed_port)
    proxy: RemoteProxy = wrap(wrapped_port)

    assert await proxy.greet("before") == "hi before"
    released = release_proxy(proxy)
    late_call = proxy.greet("after")
    await released

    assert exposure.active is False
    assert exposed_port.close_calls == 1
    assert wrapped_port.close_calls == 1
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(late_call, timeout=0.05)


@pytest.mark.asyncio
async def test_response_leaves_no_listener_on_wrapped_port() -> None:
    """Unsubscribe each request's reply listener once its response arrives."""
    channel: MessageChannel = MessageChannel()
    expose(build_target(), channel.port1)
    proxy: RemoteProxy = wrap(channel.port2)

    assert await proxy.greet("x") == "hi x"
    assert await proxy.a.b == 42
    assert channel.port2._listeners == []
    assert len(channel.port1._listeners) == 1


@pytest.mark.asyncio
async def test_release_with_invalid_id_still_closes_the_endpoint() -> None:
    """Close the exposed port when a release request carries a bad id."""
    exposed_port: CountingPort = CountingPort()
    wrapped_port: CountingPort = CountingPort()
    entangle(exposed_port, wrapped_port)
    exposure: Exposure = expose(build_target(), exposed_port)

    wrapped_port.send({"type": "release", "id": 5})
    await _drain_loop()

    assert exposure.active is False
    assert exposed_port.close_calls == 1
    assert exposed_port._listeners == []


@pytest.mark.asyncio
async def test_function_argument_is_called_back_locally() -> None:
    """Invoke a local callback from the exposing side through a nested channel."""
    proxy, _ = _connect(build_target())
    seen: list[int] = []

    def callback(value: int) -> int:
        """Record and double the value."""
        seen.append(value)
        return value * 2

    assert await proxy.apply_callback(callback, 4) == 8
    assert await proxy.await_callback(callback, 5) == 10
    assert seen == [4, 5]


@pytest.mark.asyncio
async def test_shared_argument_decodes_to_one_object() -> None:
    """Preserve identity between two positions of one argument list."""
    proxy, _ = _connect(build_target())
    shared: dict[str, int] = {"n": 1}
    assert await proxy.is_same(shared, shared) is True
    assert await proxy.is_same(shared, {"n": 1}) is False


@pytest.mark.asyncio
async def test_bind_call_and_apply_final_segments() -> None:
    """Treat bind, call and apply like their function-object counterparts."""
    proxy, _ = _connect(build_target())

    bound: RemoteProxy = proxy.greet.bind(None)
    assert await bound("bound") == "hi bound"
    assert await proxy.greet.call(None, "called") == "hi called"
    assert await proxy.greet.apply(None, ["applied"]) == "hi applied"


@pytest.mark.asyncio
async def test_keyword_arguments_and_methods() -> None:
    """Call a method on an exposed instance with keyword arguments."""
    root: dict[str, object] = build_target()
    proxy, _ = _connect(root)

    assert await proxy.counter.increment(delta=2) == 7
    assert await proxy.counter.value == 7
    assert await proxy.counter.tag == "shared"


@pytest.mark.asyncio
async def test_async_methods_run_concurrently() -> None:
    """Await coroutine results and interleave outstanding requests."""
    proxy, _ = _connect(build_target())

    slow = proxy.counter.slow_increment(10, 0.05)
    fast = proxy.counter.slow_increment(1, 0.0)
    fast_result, slow_result = await asyncio.gather(fast, slow)

    assert fast_result == 6
    assert slow_result == 16


@pytest.mark.asyncio
async def test_construct_remote_class() -> None:
    """Instantiate an exposed class and call methods on the copy it returns."""
    proxy, _ = _connect(build_target())

    instance: object = await construct(proxy.Counter, 3, tag="made")
    assert isinstance(instance, types.SimpleNamespace) is True
    assert instance.value == 3  # type: ignore[attr-defined]
    assert instance.tag == "made"  # type: ignore[attr-defined]
    assert await instance.increment(2) == 5  # type: ignore[attr-defined]

    other: object = await proxy.Counter[CONSTRUCT]()
    assert other.value == 0  # type: ignore[attr-defined]


@pytest.mark.asyncio
async def test_construct_rejects_non_class_targets() -> None:
    """Reject construction of plain functions."""
    proxy, _ = _connect(build_target())
    with pytest.raises(TypeError):
        await construct(proxy.greet, "x")


@pytest.mark.asyncio
async def test_create_endpoint_serves_the_same_root() -> None:
    """Fork a nested channel exposing the same object."""
    root: dict[str, object] = build_target()
    proxy, _ = _connect(root)

    port: object = await create_endpoint(proxy)
    assert isinstance(port, MessagePort) is True
    nested: RemoteProxy = wrap(port)  # type: ignore[arg-type]
    nested.a.b = 99
    assert await nested.a.b == 99
    assert root["a"]["b"] == 99  # type: ignore[index]
    assert await nested.greet("nested") == "hi nested"
    await release_proxy(nested)
    assert port.closed is True  # type: ignore[attr-defined]


@pytest.mark.asyncio
async def test_awaiting_root_resolves_to_itself() -> None:
    """Resolve the root stand-in without a round trip."""
    channel: MessageChannel = MessageChannel()
    proxy: RemoteProxy = wrap(channel.port2)
    assert await proxy is proxy


@pytest.mark.asyncio
async def test_fetched_function_is_a_plausible_local_function() -> None:
    """Return exposed functions as callable stand-ins with their metadata."""
    proxy, _ = _connect(build_target())

    fetched: RemoteProxy = await proxy.greet
    assert repr(fetched) == repr(greet)
    assert fetched.__name__ == "greet"
    assert await fetched("again") == "hi again"


@pytest.mark.asyncio
async def test_receiver_override_binds_plain_functions() -> None:
    """Use the receiver supplied at exposure time as the bound instance."""

    def whoami(self: types.SimpleNamespace, suffix: str) -> str:
        """Return the bound name with a suffix."""
        return self.name + suffix

    proxy, _ = _connect(whoami, receiver=types.SimpleNamespace(name="bob"))
    assert await proxy("!") == "bob!"


@pytest.mark.asyncio
async def test_unclonable_reply_rejects_instead_of_hanging() -> None:
    """Turn reply encoding failures into rejections."""
    proxy, _ = _connect({"lock": threading.Lock()})
    with pytest.raises(DataCloneError):
        await proxy.lock


@pytest.mark.asyncio
async def test_failed_set_is_logged() -> None:
    """Log SET requests that fail on the exposing side."""
    messages: list[str] = []
    sink_id: int = logger.add(messages.append, level="WARNING", format="{message}")
    logger.enable("workercom")
    try:
        proxy, _ = _connect(build_target())
        proxy.missing.deep = 1
        await _drain_loop()
    finally:
        logger.disable("workercom")
        logger.remove(sink_id)

    assert any("proxy.set.failed" in message for message in messages) is True


@pytest.mark.asyncio
async def test_unsupported_interactions_are_refused() -> None:
    """Refuse deletion, iteration, pickling and misplaced markers."""
    proxy, _ = _connect(build_target())

    with pytest.raises(UnsupportedInteractionError):
        del proxy.a
    with pytest.raises(TypeError):
        iter(proxy)
    with pytest.raises(UnsupportedInteractionError):
        pickle.dumps(proxy)
    with pytest.raises(UnsupportedInteractionError):
        proxy[CREATE_ENDPOINT].greet()
    with pytest.raises(TypeError):
        proxy[1.5]


def test_wrap_and_expose_validate_endpoints() -> None:
    """Reject objects that do not provide the channel contract."""
    with pytest.raises(TypeError):
        wrap(object())  # type: ignore[arg-type]
    with pytest.raises(TypeError):
        expose({}, object())  # type: ignore[arg-type]


def test_every_module_function_is_documented() -> None:
    """Require a docstring on each function and method, private ones included."""
    undocumented: list[str] = []
    module_names: tuple[str, ...] = (
        "api",
        "channel",
        "dispatch",
        "errors",
        "marshaling",
        "protocol",
        "proxy",
        "registry",
        "transfers",
    )
    for module_name in module_names:
        module: types.ModuleType = importlib.import_module(f"workercom.{module_name}")
        for name, member in vars(module).items():
            if getattr(member, "__module__", None) != module.__name__:
                continue
            if inspect.isfunction(member) is True and member.__doc__ is None:
                undocumented.append(f"{module_name}.{name}")
            if inspect.isclass(member) is False:
                continue
            for attr_name, attr in vars(member).items():
                if inspect.isfunction(attr) is True and attr.__doc__ is None:
                    undocumented.append(f"{module_name}.{name}.{attr_name}")
    assert undocumented == []
