"""Error taxonomy for the bridge."""

from typing import Optional


class BridgeError(Exception):
    """Base class for bridge errors."""


class ConnectError(BridgeError):
    """Broker transport, authentication or subscribe failure. Always retried."""


class SchemaError(BridgeError):
    """Table provisioning failed. Logged at startup, never fatal."""


class StorageError(BridgeError):
    """A row could not be written. The message is dropped."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause
