"""Custom error types for enclave."""


class EnclaveError(Exception):
    """Base class for all enclave errors."""


class EnclaveProtocolError(EnclaveError):
    """Raised for wire payloads that pass validation but cannot be decoded."""


class HandshakeError(EnclaveError):
    """Raised when the guest cannot complete the initialization handshake."""


class OriginMismatchError(HandshakeError):
    """Raised when the handshake arrives from an unexpected origin."""

    expected_origin: str
    actual_origin: str

    def __init__(self, expected_origin: str, actual_origin: str) -> None:
        """Initialize an origin mismatch error.

        :param expected_origin: Origin the guest was told to trust.
        :param actual_origin: Origin the handshake was sent from.
        """
        self.expected_origin = expected_origin
        self.actual_origin = actual_origin
        super().__init__(f"Origin mismatch: expected {expected_origin}, got {actual_origin}")


class MissingPortError(HandshakeError):
    """Raised when the handshake does not transfer a channel port."""


class HandshakeTimeoutError(HandshakeError):
    """Raised when no handshake arrives within the initialization timeout."""


class FunctionCallError(EnclaveError):
    """Base class for failures of one cross-boundary function call."""


class FunctionNotFoundError(FunctionCallError):
    """Raised when a function id is unknown or was released by its owner."""


class CallTimeoutError(FunctionCallError):
    """Raised when a remote call does not receive a response in time."""


class EnclaveRemoteError(FunctionCallError):
    """Raised when the remote function itself raised."""

    remote_type_name: str
    remote_message: str

    def __init__(self, remote_type_name: str, remote_message: str) -> None:
        """Initialize a remote exception wrapper.

        :param remote_type_name: Remote exception type name.
        :param remote_message: Remote exception message.
        """
        self.remote_type_name = remote_type_name
        self.remote_message = remote_message
        super().__init__(remote_message)


class ResourceLimitError(EnclaveError):
    """Base class for serialization guard failures."""


class SerializationDepthError(ResourceLimitError):
    """Raised when a value nests deeper than the serialization depth limit."""


class FunctionRegistryFullError(ResourceLimitError):
    """Raised when exporting another function would exceed the registry cap."""


class TransportError(EnclaveError):
    """Base class for channel send failures."""


class DataCloneError(TransportError):
    """Raised when a message contains a value that cannot be cloned."""


class ChannelClosedError(TransportError):
    """Raised when sending on, or waiting for, a closed channel."""


class DocumentLoadError(EnclaveError):
    """Raised when a sandboxed sub-document fails to load."""
