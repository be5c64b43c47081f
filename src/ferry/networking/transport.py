"""Interfaces consumed from the lower-level transport.

The executor never touches sockets or framing. It fills in a
:class:`TransportRequest`, streams the body through a :class:`RequestStream`
and reads a :class:`TransportResponse`. Two extension points replace any
need to reach into transport internals:

* ``TransportRequest.headers`` is the header writer. Whatever is added there
  is emitted verbatim, without header validation.
* ``TransportRequest.resend_content`` is a re-invokable body producer, used
  when the body has to be sent again (redirects, auth challenges).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable, Protocol, Sequence
from urllib.parse import urlsplit

from urllib3 import HTTPHeaderDict

from .config import DecompressionMethods
from .headers import HTTP_11, HttpVersion


class ProxyResolver(Protocol):
    def get_proxy(self, uri: str) -> str | None:
        """Return the proxy URL for ``uri``, or None to connect directly."""

    def is_bypassed(self, uri: str) -> bool:
        """Return True if ``uri`` must not go through the proxy."""


class StaticProxy:
    """A single proxy URL with an optional host bypass list.

    Bypass entries match a host exactly, or as a domain suffix when they
    start with a dot.
    """

    def __init__(self, url: str, bypass: Sequence[str] = ()) -> None:
        self.url = url
        self.bypass = tuple(entry.lower() for entry in bypass)

    def get_proxy(self, uri: str) -> str | None:
        return None if self.is_bypassed(uri) else self.url

    def is_bypassed(self, uri: str) -> bool:
        host = (urlsplit(uri).hostname or "").lower()
        for entry in self.bypass:
            if entry.startswith("."):
                if host.endswith(entry) or host == entry[1:]:
                    return True
            elif host == entry:
                return True
        return False

    def __repr__(self) -> str:
        return f"StaticProxy({self.url!r}, bypass={list(self.bypass)!r})"


class RequestStream(ABC):
    """Writable request body handed out by the transport."""

    @abstractmethod
    async def write(self, data: bytes) -> None: ...

    @abstractmethod
    async def aclose(self) -> None: ...


class ResponseStream(ABC):
    """Readable response body."""

    @abstractmethod
    async def read_chunk(self) -> bytes:
        """Return the next chunk, or ``b""`` at end of body."""

    @abstractmethod
    def close(self) -> None: ...


class TransportResponse(ABC):
    status_code: int
    reason: str
    version: HttpVersion
    headers: HTTPHeaderDict
    response_uri: str

    @abstractmethod
    def open_stream(self) -> ResponseStream: ...

    @abstractmethod
    def close(self) -> None:
        """Release the connection; must be safe to call more than once."""


class TransportRequest(ABC):
    """One request on the transport; used for a single send only."""

    def __init__(self, uri: str) -> None:
        self.uri = uri
        self.method = "GET"
        self.version: HttpVersion = HTTP_11
        self.headers = HTTPHeaderDict()
        self.keep_alive = True
        self.expect_continue = False
        self.allow_auto_redirect = True
        self.max_automatic_redirections = 50
        self.automatic_decompression = DecompressionMethods.NONE
        self.pre_authenticate = False
        self.cookie_jar: Any = None
        self.credentials: Any = None
        self.use_default_credentials = False
        self.proxy: ProxyResolver | None = None
        self.use_proxy = False
        self.connection_group_name: str | None = None
        self.content_length: int | None = None
        self.resend_content: Callable[[], Iterable[bytes]] | None = None

    @abstractmethod
    async def open_request_stream(self) -> RequestStream:
        """Start the request and return a stream for its body.

        ``content_length`` must be set first: the transport does not buffer
        and cannot send a body of unknown length.
        """

    @abstractmethod
    async def get_response(self) -> TransportResponse:
        """Wait for the response.

        Raises:
            TransportError: the request failed, was aborted, or (for
                transports that report it that way) the server answered
                with an error status.
        """

    @abstractmethod
    def abort(self) -> None:
        """Abort the operation from any thread.

        A pending :meth:`get_response` must fail promptly with
        ``TransportStatus.REQUEST_CANCELED``.
        """


class Transport(ABC):
    @abstractmethod
    def create_request(self, uri: str) -> TransportRequest: ...

    @abstractmethod
    def close_connection_group(self, name: str) -> None:
        """Release pooled connections that belong to ``name``."""
