"""Asynchronous HTTP client interface for the Ferry networking layer.

The client owns one :class:`ClientConfiguration` and one connection group on
the transport. Requests are executed by :class:`RequestExecutor`; methods
return a result that is either ``Ok`` with the response, ``Err`` with the
failure, or ``Cancelled``.
"""

from __future__ import annotations

import threading
from typing import Any, Mapping

import structlog

from .cancellation import CancellationToken
from .config import ClientConfiguration, HttpClientConfig
from .content import BytesContent, RequestContent
from .errors import ClientDisposedError
from .executor import RequestExecutor
from .messages import OutboundRequest
from .requests_transport import RequestsTransport
from .transport import Transport
from .types import SendResult

logger = structlog.get_logger(__name__)


class HttpClient:
    """Core HTTP client interface (async).

    Configuration may be changed through :attr:`configuration` until the
    first request is sent; after that every setter raises
    ``ConfigurationLockedError``.
    """

    def __init__(
        self,
        config: HttpClientConfig | None = None,
        *,
        transport: Transport | None = None,
    ) -> None:
        """Create a new HttpClient.

        Args:
            config: Initial policy settings. Defaults to ``HttpClientConfig()``.
            transport: Transport to drive. Defaults to a ``RequestsTransport``
                owned by the client and closed by :meth:`dispose`.
        """
        self._configuration = ClientConfiguration.from_config(
            config or HttpClientConfig()
        )
        self._owned_transport: RequestsTransport | None = None
        if transport is None:
            transport = self._owned_transport = RequestsTransport()
        self._transport = transport
        self._executor = RequestExecutor(self._configuration, self._transport)
        self._dispose_lock = threading.Lock()
        self._disposed = False

    @property
    def configuration(self) -> ClientConfiguration:
        return self._configuration

    @property
    def disposed(self) -> bool:
        return self._disposed

    async def send(
        self,
        request: OutboundRequest,
        cancellation: CancellationToken | None = None,
    ) -> SendResult:
        """Send a request.

        Args:
            request: Request to send; ``request.uri`` is updated to the final
                URI when a response is produced.
            cancellation: Optional token; cancelling it aborts the request.

        Returns:
            ``Ok`` with an ``InboundResponse`` for any HTTP status,
            ``Cancelled`` if the token was cancelled, or ``Err``.

        Raises:
            ClientDisposedError: dispose() was already called.
        """
        if self._disposed:
            raise ClientDisposedError(
                f"{type(self).__name__} has been disposed"
            )
        return await self._executor.send(request, cancellation)

    async def _request(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None,
        content: RequestContent | bytes | str | None,
        cancellation: CancellationToken | None,
    ) -> SendResult:
        if isinstance(content, (bytes, str)):
            content = BytesContent(content)
        request = OutboundRequest(
            method=method, uri=url, headers=headers or {}, content=content
        )
        return await self.send(request, cancellation)

    async def get(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        cancellation: CancellationToken | None = None,
    ) -> SendResult:
        """Perform an HTTP GET request."""
        return await self._request(
            "GET", url, headers=headers, content=None, cancellation=cancellation
        )

    async def head(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        cancellation: CancellationToken | None = None,
    ) -> SendResult:
        """Perform an HTTP HEAD request."""
        return await self._request(
            "HEAD", url, headers=headers, content=None, cancellation=cancellation
        )

    async def post(
        self,
        url: str,
        *,
        content: RequestContent | bytes | str | None = None,
        headers: Mapping[str, str] | None = None,
        cancellation: CancellationToken | None = None,
    ) -> SendResult:
        """Perform an HTTP POST request.

        Args:
            url: Absolute URL to request.
            content: Body as bytes, text (UTF-8 encoded) or a RequestContent.
            headers: Optional request headers.
            cancellation: Optional cancellation token.
        """
        return await self._request(
            "POST",
            url,
            headers=headers,
            content=content,
            cancellation=cancellation,
        )

    async def put(
        self,
        url: str,
        *,
        content: RequestContent | bytes | str | None = None,
        headers: Mapping[str, str] | None = None,
        cancellation: CancellationToken | None = None,
    ) -> SendResult:
        """Perform an HTTP PUT request."""
        return await self._request(
            "PUT", url, headers=headers, content=content, cancellation=cancellation
        )

    async def delete(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        cancellation: CancellationToken | None = None,
    ) -> SendResult:
        """Perform an HTTP DELETE request."""
        return await self._request(
            "DELETE", url, headers=headers, content=None, cancellation=cancellation
        )

    def dispose(self) -> None:
        """Release the client's connection group.

        Safe to call more than once. In-flight requests are not aborted;
        requests sent afterwards raise ``ClientDisposedError``.
        """
        with self._dispose_lock:
            if self._disposed:
                return
            self._disposed = True
        group = self._configuration.connection_group_name
        self._transport.close_connection_group(group)
        logger.debug("connection_group_released", connection_group=group)
        if self._owned_transport is not None:
            self._owned_transport.close()

    close = dispose

    def __enter__(self) -> HttpClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.dispose()

    async def __aenter__(self) -> HttpClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.dispose()
