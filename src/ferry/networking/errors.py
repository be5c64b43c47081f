"""Error types raised or returned by the Ferry networking layer."""

from __future__ import annotations

import enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .transport import TransportResponse


class TransportStatus(enum.Enum):
    """Why a transport operation did not produce a clean response."""

    PROTOCOL_ERROR = "protocol_error"
    REQUEST_CANCELED = "request_canceled"
    CONNECT_FAILURE = "connect_failure"
    NAME_RESOLUTION_FAILURE = "name_resolution_failure"
    PROXY_FAILURE = "proxy_failure"
    TRUST_FAILURE = "trust_failure"
    SEND_FAILURE = "send_failure"
    RECEIVE_FAILURE = "receive_failure"
    TIMEOUT = "timeout"
    REDIRECT_LIMIT = "redirect_limit"
    UNKNOWN_ERROR = "unknown_error"


class HttpClientError(Exception):
    """Base class for Ferry client errors."""


class ConfigurationLockedError(HttpClientError, RuntimeError):
    """A configuration setter was called after the first request was sent."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(
            message
            or "This client has already started one or more requests. "
            "Properties can only be modified before sending the first request."
        )


class InvalidConfigurationError(HttpClientError, ValueError):
    """A configuration value is out of range or inconsistent."""


class ClientDisposedError(HttpClientError, RuntimeError):
    """The client was used after dispose()."""


class RequestTooLargeError(HttpClientError):
    """A request body of unknown length exceeded the buffering cap."""

    def __init__(self, limit: int) -> None:
        super().__init__(
            f"request content exceeds the buffer limit of {limit} bytes"
        )
        self.limit = limit


class TransportFailureError(HttpClientError):
    """The transport failed without producing an HTTP response."""

    def __init__(self, message: str, status: TransportStatus) -> None:
        super().__init__(message)
        self.status = status


class OperationCancelledError(HttpClientError):
    """An operation bound to a cancelled token was attempted."""


class TransportError(Exception):
    """Raised by transports.

    ``response`` is only set for ``PROTOCOL_ERROR``, where the remote end
    returned a valid HTTP response with an error status.
    """

    def __init__(
        self,
        message: str,
        status: TransportStatus = TransportStatus.UNKNOWN_ERROR,
        response: TransportResponse | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.response = response
