"""Gateway client error taxonomy."""
from typing import Optional, Union


class GatewayError(Exception):
    """Base class for failures talking to the Moltbot gateway."""


class TransportError(GatewayError):
    """Connecting to, writing to or reading from the gateway socket failed."""


class HandshakeTimeout(GatewayError):
    """The gateway never sent ``connect.challenge``."""

    def __init__(self, timeout: float):
        super().__init__(f"gateway handshake timed out after {timeout:g}s")
        self.timeout = timeout


class AuthRejected(GatewayError):
    """The gateway refused the ``connect`` request."""

    def __init__(self, message: str):
        super().__init__(f"authentication rejected: {message}")
        self.message = message


class RequestTimeout(GatewayError):
    """No correlated response arrived in time."""

    def __init__(self, method: str, timeout: float):
        super().__init__(f"request '{method}' timed out after {timeout:g}s")
        self.method = method
        self.timeout = timeout


class InvokeFailed(GatewayError):
    """The gateway rejected an agent turn."""

    def __init__(self, message: str, code: Union[str, int, None] = None):
        super().__init__(f"agent request failed: {message}")
        self.message = message
        self.code = code


class DecodeError(GatewayError):
    """A frame or payload could not be parsed."""
