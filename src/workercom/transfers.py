"""Built-in transfer handlers installed when the package is imported."""

import array
import base64
import binascii
import builtins
import traceback
from collections.abc import Mapping

from loguru import logger

from workercom import errors
from workercom.channel import MessageChannel
from workercom.channel import MessagePort
from workercom.channel import structured_clone
from workercom.dispatch import Thrown
from workercom.dispatch import expose
from workercom.errors import DataCloneError
from workercom.errors import ProtocolError
from workercom.errors import RemoteError
from workercom.errors import RemoteThrownValue
from workercom.marshaling import decode_value
from workercom.marshaling import encode_value
from workercom.proxy import DISPLAY_KEY
from workercom.proxy import RemoteProxy
from workercom.registry import TransferHandler
from workercom.registry import install_transfer

_SCALAR_TYPES: tuple[type, ...] = (type(None), bool, int, float, complex, str)
_REBUILD_MODULES: dict[str, object] = {
    "builtins": builtins,
    "workercom.errors": errors,
}


def _require_payload(payload: object, transfer_name: str) -> dict[str, object]:
    """Validate that a handler payload is a dict.

    :param payload: Raw payload.
    :param transfer_name: Handler name used in the error message.
    :returns: The payload.
    :raises ProtocolError: If the payload is not a dict.
    """
    if isinstance(payload, dict) is False:
        raise ProtocolError(f"{transfer_name} payload must be a dict")
    return payload


def _b64encode(raw: bytes) -> str:
    """Encode bytes as ASCII base64 text.

    :param raw: Raw bytes.
    :returns: Base64 text.
    """
    return base64.b64encode(raw).decode("ascii")


def _b64decode(payload: dict[str, object], transfer_name: str) -> bytes:
    """Decode the base64 field of a buffer payload.

    :param payload: Buffer payload.
    :param transfer_name: Handler name used in error messages.
    :returns: Raw bytes.
    :raises ProtocolError: If the field is missing or malformed.
    """
    text: object = payload.get("base64")
    if isinstance(text, str) is False:
        raise ProtocolError(f"{transfer_name} payload is missing base64 data")
    try:
        return base64.b64decode(text, validate=True)
    except binascii.Error as exc:
        raise ProtocolError(f"{transfer_name} payload holds invalid base64 data") from exc


def _function_properties(value: object) -> dict[str, object]:
    """Collect the public own attributes sent alongside a function.

    Classes contribute only plain data attributes; methods and descriptors
    stay reachable through the stand-in path instead.

    :param value: Callable being transferred.
    :returns: Attribute mapping.
    """
    namespace: object = getattr(value, "__dict__", None)
    if isinstance(namespace, Mapping) is False:
        return {}

    properties: dict[str, object] = {}
    for name, item in namespace.items():
        if isinstance(name, str) is False or name.startswith("_"):
            continue
        if isinstance(value, type) is True:
            if callable(item) is True or hasattr(type(item), "__get__") is True:
                continue
        properties[name] = item
    return properties


class FunctionTransfer(TransferHandler):
    """Carry callables as stand-ins served over a nested channel."""

    def can_handle(self, value: object) -> bool:
        """Claim every callable, classes and stand-ins included.

        :param value: Candidate value.
        :returns: ``True`` when ``value`` is callable.
        """
        return callable(value)

    def serialize(self, value: object, receiver: object) -> tuple[object, list[object]]:
        """Expose ``value`` on a new channel and describe it.

        :param value: Callable to carry.
        :param receiver: Object plain functions are bound to when invoked.
        :returns: Payload holding the far port, attributes and display text.
        """
        channel: MessageChannel = MessageChannel()
        expose(value, channel.port1, receiver)
        properties_wire, transferables = encode_value(_function_properties(value))

        payload: dict[str, object] = {
            "port": channel.port2,
            "properties": properties_wire,
            "text": repr(value),
        }
        for field_name in ("__name__", "__qualname__"):
            field_value: object = getattr(value, field_name, None)
            if isinstance(field_value, str) is True:
                payload[field_name] = field_value
        return payload, [channel.port2, *transferables]

    def deserialize(self, payload: object) -> object:
        """Build a root stand-in over the received port.

        :param payload: Function payload.
        :returns: Stand-in whose override map holds the carried attributes.
        :raises ProtocolError: If the payload carries no port.
        """
        fields: dict[str, object] = _require_payload(payload, "function")
        port: object = fields.get("port")
        if isinstance(port, MessagePort) is False:
            raise ProtocolError("function payload must carry a MessagePort")

        properties: object = decode_value(fields.get("properties"))
        patch: dict[object, object] = {}
        if isinstance(properties, dict) is True:
            patch.update(properties)
        for field_name in ("__name__", "__qualname__"):
            field_value: object = fields.get(field_name)
            if isinstance(field_value, str) is True:
                patch[field_name] = field_value
        text: object = fields.get("text")
        if isinstance(text, str) is True:
            patch[DISPLAY_KEY] = text
        return RemoteProxy(port, (), patch)


def _error_attributes(error: BaseException) -> dict[str, object]:
    """Collect the custom attributes sent with an exception.

    Attributes that cannot be cloned are sent as their ``repr`` text so the
    exception itself still reaches the caller.

    :param error: Exception being carried.
    :returns: Attribute mapping.
    """
    attributes: dict[str, object] = {}
    for name, item in vars(error).items():
        if name.startswith("_") or callable(item) is True:
            continue
        try:
            structured_clone(item)
        except DataCloneError:
            logger.debug("transfer.error.attribute_unclonable name={} type={}", name, type(item).__name__)
            attributes[name] = repr(item)
            continue
        attributes[name] = item
    return attributes


class ErrorTransfer(TransferHandler):
    """Carry exceptions, re-raising them on the caller when they were thrown."""

    def can_handle(self, value: object) -> bool:
        """Claim exceptions and values wrapped as thrown.

        :param value: Candidate value.
        :returns: ``True`` for :class:`Thrown` wrappers and exceptions.
        """
        return isinstance(value, (Thrown, BaseException))

    def serialize(self, value: object, receiver: object) -> tuple[object, list[object]]:
        """Describe an exception or thrown value.

        :param value: Exception or :class:`Thrown` wrapper.
        :param receiver: Unused.
        :returns: Error payload and its transferables.
        """
        is_thrown: bool = isinstance(value, Thrown)
        error: object = value.value if is_thrown is True else value  # type: ignore[attr-defined]

        if isinstance(error, BaseException) is False:
            value_wire, transferables = encode_value(error)
            return {"thrown": is_thrown, "is_error": False, "value": value_wire}, transferables

        attributes_wire, transferables = encode_value(_error_attributes(error))

        error_args: list[object] | None = list(error.args)
        for item in error.args:
            if isinstance(item, _SCALAR_TYPES) is False:
                error_args = None
                break

        payload: dict[str, object] = {
            "thrown": is_thrown,
            "is_error": True,
            "name": type(error).__name__,
            "module": type(error).__module__,
            "message": str(error),
            "stack": "".join(traceback.format_exception(error)),
            "args": error_args,
            "attributes": attributes_wire,
        }
        return payload, transferables

    def deserialize(self, payload: object) -> object:
        """Rebuild the exception, raising it when it was thrown.

        :param payload: Error payload.
        :returns: Rebuilt exception or value when it was returned.
        :raises RemoteThrownValue: If a non-exception value was thrown.
        """
        fields: dict[str, object] = _require_payload(payload, "error")
        is_thrown: bool = fields.get("thrown") is True

        if fields.get("is_error") is not True:
            value: object = decode_value(fields.get("value"))
            if is_thrown is True:
                raise RemoteThrownValue(value)
            return value

        error: BaseException = _rebuild_error(fields)
        if is_thrown is True:
            raise error
        return error


def _rebuild_error(fields: dict[str, object]) -> BaseException:
    """Rebuild a local exception from an error payload.

    Builtin and workercom exception classes are rebuilt as themselves;
    anything else becomes :class:`RemoteError`. ``StopIteration`` also
    becomes :class:`RemoteError` because it cannot leave a coroutine.

    :param fields: Error payload.
    :returns: Exception carrying the remote details.
    """
    name: str = str(fields.get("name", "Exception"))
    message: str = str(fields.get("message", ""))
    stack: str = str(fields.get("stack", ""))

    error_type: object = None
    source_module: object = _REBUILD_MODULES.get(str(fields.get("module")))
    if source_module is not None:
        error_type = getattr(source_module, name, None)

    error: BaseException | None = None
    is_rebuildable: bool = (
        isinstance(error_type, type)
        and issubclass(error_type, Exception)
        and issubclass(error_type, StopIteration) is False
    )
    if is_rebuildable is True:
        error_args: object = fields.get("args")
        candidates: list[tuple[object, ...]] = [(message,)]
        if isinstance(error_args, list) is True:
            candidates.insert(0, tuple(error_args))
        for candidate in candidates:
            try:
                error = error_type(*candidate)  # type: ignore[operator]
                break
            except TypeError:
                continue
    if error is None:
        error = RemoteError(name, message, stack)

    error.remote_type_name = name  # type: ignore[attr-defined]
    error.remote_message = message  # type: ignore[attr-defined]
    error.remote_traceback = stack  # type: ignore[attr-defined]
    attributes: object = decode_value(fields.get("attributes"))
    if isinstance(attributes, dict) is True:
        for attr_name, attr_value in attributes.items():
            if isinstance(attr_name, str) is True:
                setattr(error, attr_name, attr_value)
    return error


class ArrayBufferTransfer(TransferHandler):
    """Carry ``bytes`` and ``bytearray`` as base64 text."""

    def can_handle(self, value: object) -> bool:
        """Claim byte strings and byte arrays.

        :param value: Candidate value.
        :returns: ``True`` for ``bytes`` and ``bytearray``.
        """
        return isinstance(value, (bytes, bytearray))

    def serialize(self, value: object, receiver: object) -> tuple[object, list[object]]:
        """Encode the buffer contents.

        :param value: Byte buffer.
        :param receiver: Unused.
        :returns: Base64 payload with a mutability flag.
        """
        payload: dict[str, object] = {
            "base64": _b64encode(bytes(value)),  # type: ignore[arg-type]
            "mutable": isinstance(value, bytearray),
        }
        return payload, []

    def deserialize(self, payload: object) -> object:
        """Rebuild the buffer with its original mutability.

        :param payload: Buffer payload.
        :returns: ``bytes`` or ``bytearray``.
        """
        fields: dict[str, object] = _require_payload(payload, "arraybuffer")
        raw: bytes = _b64decode(fields, "arraybuffer")
        if fields.get("mutable") is True:
            return bytearray(raw)
        return raw


class TypedArrayTransfer(TransferHandler):
    """Carry ``array.array`` and one-dimensional ``memoryview`` values."""

    def can_handle(self, value: object) -> bool:
        """Claim arrays and flat memoryviews.

        :param value: Candidate value.
        :returns: ``True`` for ``array.array`` and 1-D ``memoryview``.
        """
        if isinstance(value, array.array) is True:
            return True
        return isinstance(value, memoryview) and value.ndim == 1

    def serialize(self, value: object, receiver: object) -> tuple[object, list[object]]:
        """Encode the backing bytes with the element type.

        :param value: Array or memoryview.
        :param receiver: Unused.
        :returns: Base64 payload with typecode or format.
        """
        if isinstance(value, array.array) is True:
            payload: dict[str, object] = {
                "kind": "array",
                "typecode": value.typecode,
                "base64": _b64encode(value.tobytes()),
            }
            return payload, []

        view: memoryview = value  # type: ignore[assignment]
        payload = {
            "kind": "memoryview",
            "format": view.format,
            "readonly": view.readonly,
            "base64": _b64encode(view.tobytes()),
        }
        return payload, []

    def deserialize(self, payload: object) -> object:
        """Rebuild the array or memoryview.

        :param payload: Typed array payload.
        :returns: ``array.array`` or ``memoryview``.
        :raises ProtocolError: If the element type cannot be rebuilt.
        """
        fields: dict[str, object] = _require_payload(payload, "typedarray")
        raw: bytes = _b64decode(fields, "typedarray")
        kind: object = fields.get("kind")

        if kind == "array":
            typecode: object = fields.get("typecode")
            if isinstance(typecode, str) is False:
                raise ProtocolError("typedarray payload is missing its typecode")
            try:
                return array.array(typecode, raw)
            except (TypeError, ValueError) as exc:
                raise ProtocolError(f"Cannot rebuild array with typecode {typecode!r}") from exc

        if kind == "memoryview":
            view_format: object = fields.get("format")
            if isinstance(view_format, str) is False:
                raise ProtocolError("typedarray payload is missing its format")
            backing: bytes | bytearray = raw if fields.get("readonly") is True else bytearray(raw)
            view: memoryview = memoryview(backing)
            if view_format == "B":
                return view
            try:
                return view.cast(view_format)
            except (TypeError, ValueError) as exc:
                raise ProtocolError(f"Cannot rebuild memoryview with format {view_format!r}") from exc

        raise ProtocolError(f"Unknown typedarray kind: {kind!r}")


class PortTransfer(TransferHandler):
    """Carry :class:`MessagePort` objects by reference."""

    def can_handle(self, value: object) -> bool:
        """Claim message ports.

        :param value: Candidate value.
        :returns: ``True`` for :class:`MessagePort` instances.
        """
        return isinstance(value, MessagePort)

    def serialize(self, value: object, receiver: object) -> tuple[object, list[object]]:
        """List the port as a transferable and carry it as is.

        :param value: Port to carry.
        :param receiver: Unused.
        :returns: The port and a one-item transfer list.
        """
        return value, [value]

    def deserialize(self, payload: object) -> object:
        """Return the transferred port.

        :param payload: Port payload.
        :returns: The port.
        :raises ProtocolError: If the payload is not a port.
        """
        if isinstance(payload, MessagePort) is False:
            raise ProtocolError("port payload must be a MessagePort")
        return payload


def install_default_transfers() -> None:
    """Register the built-in handlers in precedence order."""
    install_transfer("function", FunctionTransfer())
    install_transfer("error", ErrorTransfer())
    install_transfer("arraybuffer", ArrayBufferTransfer())
    install_transfer("typedarray", TypedArrayTransfer())
    install_transfer("port", PortTransfer())


install_default_transfers()
