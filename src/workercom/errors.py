"""Custom error types for workercom."""


class WorkercomError(Exception):
    """Base class for all workercom errors."""


class ProtocolError(WorkercomError):
    """Raised for malformed request or response messages on a channel."""


class DataCloneError(WorkercomError):
    """Raised when a message cannot be structurally cloned for sending."""


class UnsupportedInteractionError(WorkercomError):
    """Raised when an interaction cannot be proxied across a channel."""


class RemoteError(WorkercomError):
    """Raised when the remote side reports an exception with no local class."""

    remote_type_name: str
    remote_message: str
    remote_traceback: str

    def __init__(
        self,
        remote_type_name: str,
        remote_message: str,
        remote_traceback: str,
    ) -> None:
        """Initialize a remote exception wrapper.

        :param remote_type_name: Original remote exception type name.
        :param remote_message: Original remote exception message.
        :param remote_traceback: Original remote traceback text.
        """
        self.remote_type_name = remote_type_name
        self.remote_message = remote_message
        self.remote_traceback = remote_traceback
        super().__init__(remote_message)

    def __str__(self) -> str:
        """Return the remote message prefixed with the remote type name.

        :returns: Display string.
        """
        return f"{self.remote_type_name}: {self.remote_message}"


class RemoteThrownValue(WorkercomError):
    """Raised when the remote side threw a value that is not an exception."""

    value: object

    def __init__(self, value: object) -> None:
        """Initialize a thrown-value wrapper.

        :param value: Decoded value thrown by the remote side.
        """
        self.value = value
        super().__init__(f"Remote side threw a non-exception value: {value!r}")
