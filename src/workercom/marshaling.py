"""Recursive value marshaling with transfer handlers and identity tracking."""

import enum
import inspect
import types
from collections.abc import Iterable

from loguru import logger

from workercom.errors import ProtocolError
from workercom.errors import UnsupportedInteractionError
from workercom.registry import TRANSFER_TAG
from workercom.registry import get_transfer
from workercom.registry import registered_transfers

OBJECT_TAG: str = "__workercom_object_v1__"
_PRIMITIVE_TYPES: tuple[type, ...] = (type(None), bool, int, float, complex, str)


def _is_primitive(value: object) -> bool:
    """Report whether ``value`` is an immutable scalar with no identity to track.

    :param value: Candidate value.
    :returns: ``True`` for ``None``, booleans, numbers and strings.
    """
    return isinstance(value, _PRIMITIVE_TYPES)


def is_plain_object(value: object) -> bool:
    """Report whether ``value`` is a user-class instance walked attribute by attribute.

    :param value: Candidate value.
    :returns: ``True`` when ``value`` has an instance ``__dict__`` and is not
        a class, module, enum member or builtin.
    """
    if isinstance(value, (type, types.ModuleType, enum.Enum)) is True:
        return False
    value_type: type = type(value)
    if value_type.__module__ == "builtins":
        return False
    instance_dict: object = getattr(value, "__dict__", None)
    return isinstance(instance_dict, dict)


def _object_members(value: object) -> list[tuple[str, object, object]]:
    """List the members marshaled for one plain object.

    Instance attributes come first. Public plain functions defined on the
    class hierarchy follow, paired with ``value`` as their receiver so a
    remote caller invokes them as bound methods.

    :param value: Plain object instance.
    :returns: ``(name, member, receiver)`` triples.
    """
    instance_dict: dict[str, object] = vars(value)
    members: list[tuple[str, object, object]] = []
    for name, item in instance_dict.items():
        members.append((name, item, None))

    seen_names: set[str] = set(instance_dict)
    for klass in type(value).__mro__:
        if klass is object:
            continue
        for name, item in vars(klass).items():
            if name.startswith("_") or name in seen_names:
                continue
            seen_names.add(name)
            if inspect.isfunction(item) is False:
                continue
            members.append((name, item, value))
    return members


def _require_hashable(value: object, message: str) -> None:
    """Raise when ``value`` cannot serve as a dict key or set member.

    :param value: Encoded or decoded key.
    :param message: Error message.
    :raises UnsupportedInteractionError: If ``value`` is unhashable.
    """
    try:
        hash(value)
    except TypeError as exc:
        raise UnsupportedInteractionError(message) from exc


class FrozenEnvelope:
    """Hashable holder for a handler envelope placed in a hash-based position.

    Envelopes are dicts, so a claimed value used as a dict key, a set member
    or a tuple member is wrapped in this holder. Holders hash by identity;
    the decoder unwraps them wherever they appear.
    """

    __slots__ = ("envelope",)

    envelope: dict[str, object]

    def __init__(self, envelope: dict[str, object]) -> None:
        """Wrap one envelope.

        :param envelope: Handler envelope.
        """
        self.envelope = envelope

    def __repr__(self) -> str:
        """Return a debugging representation.

        :returns: Representation string.
        """
        return f"FrozenEnvelope({self.envelope.get('transfer')!r})"


def _is_envelope(wire: object) -> bool:
    """Report whether ``wire`` is a handler envelope.

    :param wire: Wire value.
    :returns: ``True`` for tagged envelope dicts.
    """
    return isinstance(wire, dict) and wire.get(TRANSFER_TAG) is True


def _freeze(wire: object) -> object:
    """Make an envelope usable where a hashable wire value is required.

    :param wire: Wire value.
    :returns: ``wire`` itself, or a :class:`FrozenEnvelope` holding it.
    """
    if _is_envelope(wire) is True:
        return FrozenEnvelope(wire)  # type: ignore[arg-type]
    return wire


class _Encoder:
    """Encode one value graph; lives for a single encode call."""

    _cache: dict[int, tuple[object, object]]
    transferables: list[object]

    def __init__(self) -> None:
        """Initialize an empty identity cache."""
        self._cache = {}
        self.transferables = []

    def _remember(self, value: object, wire: object) -> None:
        """Cache the wire form of ``value`` for the rest of this call.

        :param value: Runtime value, kept alive by the cache.
        :param wire: Its wire form.
        """
        self._cache[id(value)] = (value, wire)

    def encode(self, value: object, receiver: object) -> object:
        """Encode one value.

        :param value: Runtime value.
        :param receiver: Object ``value`` would be bound to, or ``None``.
        :returns: Wire value.
        :raises UnsupportedInteractionError: If a dict key or set item stops being hashable.
        """
        is_primitive: bool = _is_primitive(value)
        if is_primitive is False:
            cached: tuple[object, object] | None = self._cache.get(id(value))
            if cached is not None:
                return cached[1]

        for name, handler in registered_transfers():
            if handler.can_handle(value) is False:
                continue
            payload, transferables = handler.serialize(value, receiver)
            envelope: dict[str, object] = {
                TRANSFER_TAG: True,
                "transfer": name,
                "raw": payload,
            }
            if is_primitive is False:
                self._remember(value, envelope)
            self.transferables.extend(transferables)
            return envelope

        if is_primitive is True:
            return value

        if isinstance(value, list) is True:
            list_shell: list[object] = []
            self._remember(value, list_shell)
            for item in value:
                list_shell.append(self.encode(item, None))
            return list_shell

        if isinstance(value, dict) is True:
            dict_shell: dict[object, object] = {}
            self._remember(value, dict_shell)
            for key, item in value.items():
                encoded_key: object = _freeze(self.encode(key, None))
                _require_hashable(encoded_key, "Encoded dict keys must stay hashable")
                dict_shell[encoded_key] = self.encode(item, None)
            return dict_shell

        if isinstance(value, (tuple, set, frozenset)) is True:
            return self._encode_sealed(value)

        if is_plain_object(value) is True:
            attrs: dict[str, object] = {}
            node: dict[str, object] = {OBJECT_TAG: True, "attrs": attrs}
            self._remember(value, node)
            for name, member, member_receiver in _object_members(value):
                attrs[name] = self.encode(member, member_receiver)
            return node

        return value

    def _encode_sealed(self, value: tuple[object, ...] | set[object] | frozenset[object]) -> object:
        """Encode an immutable or hash-based composite.

        Members are encoded before the composite itself can exist, so the
        cache is checked again afterward: a cycle through a mutable member
        may already have produced this node.

        :param value: Tuple, set or frozenset.
        :returns: Wire composite of the same type.
        """
        items: list[object] = [_freeze(self.encode(item, None)) for item in value]
        cached: tuple[object, object] | None = self._cache.get(id(value))
        if cached is not None:
            return cached[1]

        wire: object
        if isinstance(value, tuple) is True:
            wire = tuple(items)
        else:
            for item in items:
                _require_hashable(item, "Encoded set items must stay hashable")
            if isinstance(value, frozenset) is True:
                wire = frozenset(items)
            else:
                wire = set(items)
        self._remember(value, wire)
        return wire


class _Decoder:
    """Decode one wire graph; lives for a single decode call."""

    _cache: dict[int, tuple[object, object]]

    def __init__(self) -> None:
        """Initialize an empty identity cache."""
        self._cache = {}

    def _remember(self, wire: object, value: object) -> None:
        """Cache the runtime value decoded from ``wire``.

        :param wire: Wire value, kept alive by the cache.
        :param value: Decoded runtime value.
        """
        self._cache[id(wire)] = (wire, value)

    def decode(self, wire: object) -> object:
        """Decode one wire value.

        :param wire: Wire value.
        :returns: Runtime value.
        :raises ProtocolError: If an object node carries non-string attribute names.
        """
        if _is_primitive(wire) is True:
            return wire

        cached: tuple[object, object] | None = self._cache.get(id(wire))
        if cached is not None:
            return cached[1]

        if isinstance(wire, FrozenEnvelope) is True:
            return self.decode(wire.envelope)

        if isinstance(wire, dict) is True:
            if wire.get(TRANSFER_TAG) is True:
                transfer_name: object = wire.get("transfer")
                handler = get_transfer(transfer_name) if isinstance(transfer_name, str) else None
                if handler is not None:
                    value: object = handler.deserialize(wire.get("raw"))
                    self._remember(wire, value)
                    return value
                logger.warning("marshal.unknown_transfer name={!r}", transfer_name)
            elif wire.get(OBJECT_TAG) is True and isinstance(wire.get("attrs"), dict):
                return self._decode_object(wire)

            dict_shell: dict[object, object] = {}
            self._remember(wire, dict_shell)
            for key, item in wire.items():
                decoded_key: object = self.decode(key)
                _require_hashable(decoded_key, "Decoded dict keys must stay hashable")
                dict_shell[decoded_key] = self.decode(item)
            return dict_shell

        if isinstance(wire, list) is True:
            list_shell: list[object] = []
            self._remember(wire, list_shell)
            for item in wire:
                list_shell.append(self.decode(item))
            return list_shell

        if isinstance(wire, (tuple, set, frozenset)) is True:
            items: list[object] = [self.decode(item) for item in wire]
            cached = self._cache.get(id(wire))
            if cached is not None:
                return cached[1]
            rebuilt: object
            if isinstance(wire, tuple) is True:
                rebuilt = tuple(items)
            elif isinstance(wire, frozenset) is True:
                rebuilt = frozenset(items)
            else:
                rebuilt = set(items)
            self._remember(wire, rebuilt)
            return rebuilt

        return wire

    def _decode_object(self, wire: dict[object, object]) -> types.SimpleNamespace:
        """Rebuild a plain object node as a namespace, shell first.

        :param wire: Tagged object node.
        :returns: Namespace carrying the decoded attributes.
        :raises ProtocolError: If an attribute name is not a string.
        """
        attrs: dict[object, object] = wire["attrs"]  # type: ignore[assignment]
        namespace: types.SimpleNamespace = types.SimpleNamespace()
        self._remember(wire, namespace)
        for name, item in attrs.items():
            if isinstance(name, str) is False:
                raise ProtocolError("Object attribute names must be strings")
            setattr(namespace, name, self.decode(item))
        return namespace


def encode_values(values: Iterable[object], receiver: object = None) -> tuple[list[object], list[object]]:
    """Encode a list of values sharing one identity cache.

    Shared references between positions stay shared and cycles terminate.

    :param values: Runtime values, such as a call's argument list.
    :param receiver: Receiver handed to handlers for top-level values.
    :returns: Tuple of ``(wire_values, transferables)``.
    """
    encoder: _Encoder = _Encoder()
    wire_values: list[object] = [encoder.encode(value, receiver) for value in values]
    return wire_values, encoder.transferables


def encode_value(value: object, receiver: object = None) -> tuple[object, list[object]]:
    """Encode a single value.

    :param value: Runtime value.
    :param receiver: Receiver handed to handlers for the top-level value.
    :returns: Tuple of ``(wire_value, transferables)``.
    """
    wire_values, transferables = encode_values([value], receiver)
    return wire_values[0], transferables


def decode_values(wire_values: Iterable[object]) -> list[object]:
    """Decode a list of wire values sharing one identity cache.

    :param wire_values: Wire values.
    :returns: Runtime values.
    """
    decoder: _Decoder = _Decoder()
    return [decoder.decode(wire) for wire in wire_values]


def decode_value(wire: object) -> object:
    """Decode a single wire value.

    :param wire: Wire value.
    :returns: Runtime value.
    """
    return decode_values([wire])[0]
