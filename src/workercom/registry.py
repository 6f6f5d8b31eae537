"""Process-wide registry of transfer handlers."""

TRANSFER_TAG: str = "__workercom_transfer_v1__"


class TransferHandler:
    """Codec for one value shape that plain structural copy cannot carry.

    Subclasses recognize values with :meth:`can_handle`, turn them into a
    wire payload with :meth:`serialize` and rebuild them with
    :meth:`deserialize`. Both sides of a channel must register equivalent
    handlers under the same names.
    """

    def can_handle(self, value: object) -> bool:
        """Report whether this handler claims ``value``.

        :param value: Candidate value.
        :returns: ``True`` when this handler should serialize ``value``.
        """
        raise NotImplementedError

    def serialize(self, value: object, receiver: object) -> tuple[object, list[object]]:
        """Convert ``value`` into a wire payload.

        :param value: Claimed value.
        :param receiver: Object ``value`` would be bound to, or ``None``.
        :returns: Tuple of ``(payload, transferables)``.
        """
        raise NotImplementedError

    def deserialize(self, payload: object) -> object:
        """Rebuild a value from its wire payload.

        :param payload: Payload produced by :meth:`serialize` on the far side.
        :returns: Rebuilt value.
        """
        raise NotImplementedError


_TRANSFERS: dict[str, TransferHandler] = {}


def install_transfer(name: str, handler: TransferHandler) -> None:
    """Register ``handler`` under ``name``.

    Handlers are consulted in registration order and the first match wins.
    Registering an existing name replaces that handler in place.

    :param name: Unique handler name carried on the wire.
    :param handler: Handler instance.
    :raises TypeError: If ``name`` or ``handler`` has the wrong type.
    :raises ValueError: If ``name`` is empty.
    """
    if isinstance(name, str) is False:
        raise TypeError("transfer name must be a string")
    if len(name) == 0:
        raise ValueError("transfer name cannot be empty")
    if isinstance(handler, TransferHandler) is False:
        raise TypeError("handler must be a TransferHandler instance")
    _TRANSFERS[name] = handler


def get_transfer(name: str) -> TransferHandler | None:
    """Return the handler registered under ``name``.

    :param name: Handler name.
    :returns: Handler or ``None`` when unknown.
    """
    return _TRANSFERS.get(name)


def registered_transfers() -> list[tuple[str, TransferHandler]]:
    """Return an ordered snapshot of the registry.

    :returns: ``(name, handler)`` pairs in precedence order.
    """
    return list(_TRANSFERS.items())
