"""Error taxonomy for remote and local failures."""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for every failure raised by the sync engine."""

    def __init__(
        self, message: str, status: int | None = None, body: str = ""
    ) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class AuthError(GatewayError):
    """The access token was rejected (HTTP 401)."""


class DuplicateError(GatewayError):
    """The server already holds this entity (HTTP 409). Not a failure."""


class TransientError(GatewayError):
    """Network failure, timeout, or server-side error. Worth retrying."""


class ServerError(TransientError):
    """HTTP 5xx from the server."""


class ClientRequestError(GatewayError):
    """Any other 4xx response. Retrying the same request will not help."""


class MalformedMessageError(GatewayError):
    """A remote message could not be mapped to a local send request."""


class ConfigurationError(GatewayError):
    """Required local configuration or state is missing."""

    def __init__(self, message: str = "Missing gateway configuration") -> None:
        super().__init__(message)
        self.code = "missing_configuration"


def error_for_status(status: int, body: str = "") -> GatewayError:
    """Map an HTTP error status to the matching exception."""
    message = f"HTTP {status} from gateway: {body[:200]}"
    if status == 401:
        return AuthError(message, status, body)
    if status == 409:
        return DuplicateError(message, status, body)
    if status >= 500:
        return ServerError(message, status, body)
    return ClientRequestError(message, status, body)
