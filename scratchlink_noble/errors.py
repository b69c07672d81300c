"""Errors raised or emitted by the Scratch Link bindings."""


class ScratchLinkError(Exception):
    """Base error for scratchlink_noble."""


class ConfigurationError(ScratchLinkError):
    """Raised when the Scratch Link endpoint URL cannot be used."""


class TransportError(ScratchLinkError):
    """Raised when the websocket is not available for sending."""


class ProtocolViolation(ScratchLinkError):
    """Malformed or version-mismatched JSON-RPC message."""


class RequestError(ScratchLinkError):
    """A request did not complete successfully.

    Binding-level errors are annotated with the peripheral and, where
    applicable, the service and characteristic the request addressed.
    """

    def __init__(self, message, error=None, peripheral_id=None, service_uuid=None, characteristic_uuid=None):
        super().__init__(message)
        self.message = message
        self.error = error
        self.peripheral_id = peripheral_id
        self.service_uuid = service_uuid
        self.characteristic_uuid = characteristic_uuid


class RemoteError(RequestError):
    """The remote side answered with an ``error`` member."""

    def __init__(self, error):
        message = error.get("message") if isinstance(error, dict) else None
        super().__init__(message or f"remote error: {error!r}", error=error)


class ChannelClosedError(RequestError):
    """The channel closed, or was already closed, before a response arrived."""


class DisconnectError(ScratchLinkError):
    """The peripheral connection was lost without being asked to disconnect."""

    def __init__(self, message, peripheral_id=None):
        super().__init__(message)
        self.message = message
        self.peripheral_id = peripheral_id
