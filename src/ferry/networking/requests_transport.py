"""A :class:`Transport` backed by ``requests``.

Each connection group maps to its own :class:`requests.Session`, so a
client's connections are pooled apart from other clients and can be released
together. The blocking ``Session.send`` calls run on the transport's own
thread pool.

The request body is never buffered by this transport. The executor hands it
to a bounded queue from the event loop, and the worker thread drains that
queue while urllib3 sends it with the declared ``Content-Length``. When the
body has to be sent a second time (307/308 redirects, basic auth challenges)
it is produced again through ``resend_content``.

Aborting a request shuts down the socket it went out on, so a worker blocked
on a silent peer is released.
"""

from __future__ import annotations

import asyncio
import http.cookiejar
import queue
import socket
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterator, TypeVar
from urllib.parse import urlsplit

import requests
import structlog
import urllib3
from requests.adapters import HTTPAdapter
from requests.auth import HTTPBasicAuth
from requests.cookies import RequestsCookieJar
from requests.structures import CaseInsensitiveDict
from requests.utils import get_environ_proxies, get_netrc_auth
from urllib3 import HTTPHeaderDict
from urllib3.connection import HTTPConnection, HTTPSConnection
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool

from .config import DecompressionMethods
from .errors import TransportError, TransportStatus
from .headers import HTTP_10, HTTP_11, HttpVersion, connection_close
from .transport import (
    RequestStream,
    ResponseStream,
    Transport,
    TransportRequest,
    TransportResponse,
)

logger = structlog.get_logger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024
_DEFAULT_GROUP = "default"
_POLL_SECONDS = 0.1
_END = object()

T = TypeVar("T")

# The transport request a worker thread is currently sending.
_active = threading.local()


def _status_for(error: requests.exceptions.RequestException) -> TransportStatus:
    """Map a requests exception onto a transport status."""
    if isinstance(error, requests.exceptions.ProxyError):
        return TransportStatus.PROXY_FAILURE
    if isinstance(error, requests.exceptions.SSLError):
        return TransportStatus.TRUST_FAILURE
    if isinstance(error, requests.exceptions.Timeout):
        return TransportStatus.TIMEOUT
    if isinstance(error, requests.exceptions.ConnectionError):
        reason = getattr(error.args[0], "reason", None) if error.args else None
        if isinstance(reason, urllib3.exceptions.NameResolutionError):
            return TransportStatus.NAME_RESOLUTION_FAILURE
        return TransportStatus.CONNECT_FAILURE
    if isinstance(error, requests.exceptions.TooManyRedirects):
        return TransportStatus.REDIRECT_LIMIT
    if isinstance(
        error,
        (
            requests.exceptions.ChunkedEncodingError,
            requests.exceptions.ContentDecodingError,
        ),
    ):
        return TransportStatus.RECEIVE_FAILURE
    if isinstance(error, requests.exceptions.UnrewindableBodyError):
        return TransportStatus.SEND_FAILURE
    return TransportStatus.UNKNOWN_ERROR


def _blocking_cookie_jar() -> RequestsCookieJar:
    """A jar that accepts and returns no cookies."""
    return RequestsCookieJar(
        policy=http.cookiejar.DefaultCookiePolicy(allowed_domains=[])
    )


class _AbortableConnectionMixin:
    """Hands the connection a request goes out on to its transport request."""

    def request(self, *args: Any, **kwargs: Any) -> None:
        owner = getattr(_active, "request", None)
        if owner is not None:
            owner.attach_connection(self)
        super().request(*args, **kwargs)  # type: ignore[misc]


class _AbortableHTTPConnection(_AbortableConnectionMixin, HTTPConnection):
    pass


class _AbortableHTTPSConnection(_AbortableConnectionMixin, HTTPSConnection):
    pass


class _AbortableHTTPConnectionPool(HTTPConnectionPool):
    ConnectionCls = _AbortableHTTPConnection


class _AbortableHTTPSConnectionPool(HTTPSConnectionPool):
    ConnectionCls = _AbortableHTTPSConnection


_POOL_CLASSES = {
    "http": _AbortableHTTPConnectionPool,
    "https": _AbortableHTTPSConnectionPool,
}


class _AbortableAdapter(HTTPAdapter):
    """HTTPAdapter whose pools report connections to the sending request."""

    def init_poolmanager(self, *args: Any, **kwargs: Any) -> None:
        super().init_poolmanager(*args, **kwargs)
        self.poolmanager.pool_classes_by_scheme = _POOL_CLASSES

    def proxy_manager_for(self, proxy: str, **proxy_kwargs: Any) -> Any:
        manager = super().proxy_manager_for(proxy, **proxy_kwargs)
        # SOCKS managers bring their own pool classes.
        if not proxy.lower().startswith("socks"):
            manager.pool_classes_by_scheme = _POOL_CLASSES
        return manager


def _sever(connection: HTTPConnection) -> None:
    sock = connection.sock
    if sock is not None:
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as exc:
            logger.debug("connection_shutdown_failed", error=str(exc))
    connection.close()


class _StreamedBody:
    """Request body fed from the event loop and drained by urllib3."""

    def __init__(
        self,
        transport_request: RequestsTransportRequest,
        maxsize: int,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self._request = transport_request
        self._queue: queue.Queue[Any] = queue.Queue(maxsize)
        self._loop = loop
        self._space = asyncio.Event()
        self._reader_done = threading.Event()
        self._iterated = False

    def __iter__(self) -> Iterator[bytes]:
        if not self._iterated:
            self._iterated = True
            return self._drain()
        resend = self._request.resend_content
        if resend is None:
            raise requests.exceptions.UnrewindableBodyError(
                "request body cannot be sent again"
            )
        return iter(resend())

    def _drain(self) -> Iterator[bytes]:
        while True:
            if self._request.aborted:
                raise ConnectionAbortedError("request aborted")
            try:
                item = self._queue.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                continue
            self.wake()
            if item is _END:
                return
            yield item

    def finish_reading(self) -> None:
        self._reader_done.set()
        self.wake()

    def wake(self) -> None:
        """Wake a writer waiting for queue space; safe from any thread."""
        if not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._space.set)

    async def put(self, item: Any) -> None:
        while True:
            if self._request.aborted:
                if item is _END:
                    return
                raise TransportError(
                    "request aborted", TransportStatus.REQUEST_CANCELED
                )
            if self._reader_done.is_set():
                # The send already finished or failed; get_response reports it.
                return
            self._space.clear()
            try:
                self._queue.put_nowait(item)
                return
            except queue.Full:
                await self._space.wait()


class _QueueRequestStream(RequestStream):
    def __init__(self, body: _StreamedBody) -> None:
        self._body = body
        self._closed = False

    async def write(self, data: bytes) -> None:
        if self._closed:
            raise ValueError("write to a closed request stream")
        if data:
            await self._body.put(bytes(data))

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._body.put(_END)


class _RawResponseStream(ResponseStream):
    def __init__(
        self, response: requests.Response, decode: bool, chunk_size: int
    ) -> None:
        self._response = response
        self._chunks = response.raw.stream(chunk_size, decode_content=decode)

    def _next_chunk(self) -> bytes:
        try:
            return next(self._chunks, b"")
        except (urllib3.exceptions.HTTPError, OSError) as exc:
            raise TransportError(
                str(exc), TransportStatus.RECEIVE_FAILURE
            ) from exc

    async def read_chunk(self) -> bytes:
        return await asyncio.to_thread(self._next_chunk)

    def close(self) -> None:
        self._response.close()


def _version_of(response: requests.Response) -> HttpVersion:
    raw_version = getattr(response.raw, "version", None)
    if isinstance(raw_version, int) and raw_version >= 10:
        return HttpVersion(*divmod(raw_version, 10))
    return HTTP_11


class RequestsTransportResponse(TransportResponse):
    def __init__(
        self,
        response: requests.Response,
        decompression: DecompressionMethods,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        session: requests.Session | None = None,
    ) -> None:
        self._response = response
        self._chunk_size = chunk_size
        self._session = session
        self.status_code = response.status_code
        self.reason = response.reason or ""
        self.version = _version_of(response)
        raw_headers = getattr(response.raw, "headers", None)
        if isinstance(raw_headers, HTTPHeaderDict):
            self.headers = HTTPHeaderDict(raw_headers)
        else:
            self.headers = HTTPHeaderDict(dict(response.headers))
        self.response_uri = response.url
        codings = [
            token.strip().lower()
            for value in self.headers.getlist("Content-Encoding")
            for token in value.split(",")
            if token.strip()
        ]
        enabled = decompression.encodings
        self._decode = bool(codings) and all(c in enabled for c in codings)

    def open_stream(self) -> ResponseStream:
        return _RawResponseStream(self._response, self._decode, self._chunk_size)

    def close(self) -> None:
        self._response.close()
        if self._session is not None:
            self._session.close()


class RequestsTransportRequest(TransportRequest):
    def __init__(self, transport: RequestsTransport, uri: str) -> None:
        super().__init__(uri)
        self._transport = transport
        self._aborted = threading.Event()
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._abort_waiter: asyncio.Future[None] | None = None
        self._worker: asyncio.Future[RequestsTransportResponse] | None = None
        self._body: _StreamedBody | None = None
        self._connection: HTTPConnection | None = None
        self._response: requests.Response | None = None

    @property
    def aborted(self) -> bool:
        return self._aborted.is_set()

    async def open_request_stream(self) -> RequestStream:
        if self.content_length is None:
            raise TransportError(
                "content_length must be set before the body is written",
                TransportStatus.SEND_FAILURE,
            )
        if self._worker is not None:
            raise RuntimeError("the request was already started")
        self._body = _StreamedBody(
            self, self._transport.queue_size, asyncio.get_running_loop()
        )
        self._start()
        return _QueueRequestStream(self._body)

    async def get_response(self) -> TransportResponse:
        if self._worker is None:
            self._start()
        assert self._worker is not None and self._abort_waiter is not None
        await asyncio.wait(
            {self._worker, self._abort_waiter},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if self._worker.done():
            return self._worker.result()
        raise TransportError("request aborted", TransportStatus.REQUEST_CANCELED)

    def abort(self) -> None:
        """Abort the request; callable from any thread.

        Shuts down the connection in use, closes a response already received
        and wakes the body writer and ``get_response``.
        """
        self._aborted.set()
        with self._lock:
            response = self._response
            loop = self._loop
            waiter = self._abort_waiter
            body = self._body
            if self._connection is not None:
                _sever(self._connection)
                self._connection = None
        if response is not None:
            response.close()
        if body is not None:
            body.wake()
        if waiter is not None and loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(_resolve_waiter, waiter)

    def attach_connection(self, connection: HTTPConnection) -> None:
        """Record the connection the request is about to go out on."""
        with self._lock:
            if self.aborted:
                raise ConnectionAbortedError("request aborted")
            self._connection = connection

    def _start(self) -> None:
        loop = asyncio.get_running_loop()
        with self._lock:
            self._loop = loop
            self._abort_waiter = loop.create_future()
        if self.aborted:
            raise TransportError(
                "request aborted", TransportStatus.REQUEST_CANCELED
            )
        self._worker = self._transport.run(loop, self._perform)
        self._worker.add_done_callback(self._on_worker_done)

    def _on_worker_done(
        self, worker: asyncio.Future[RequestsTransportResponse]
    ) -> None:
        if worker.cancelled() or worker.exception() is not None:
            return
        if self.aborted:
            worker.result().close()

    def _perform(self) -> RequestsTransportResponse:
        try:
            if self.aborted:
                raise TransportError(
                    "request aborted", TransportStatus.REQUEST_CANCELED
                )
            session, owned = self._transport.checkout(self.connection_group_name)
            try:
                response = self._perform_blocking(session)
            except BaseException:
                if owned:
                    session.close()
                raise
        finally:
            if self._body is not None:
                self._body.finish_reading()
        return RequestsTransportResponse(
            response,
            self.automatic_decompression,
            self._transport.chunk_size,
            session=session if owned else None,
        )

    def _perform_blocking(self, session: requests.Session) -> requests.Response:
        session.max_redirects = self.max_automatic_redirections
        session.cookies = (
            self.cookie_jar
            if self.cookie_jar is not None
            else _blocking_cookie_jar()
        )
        if self.expect_continue:
            logger.debug("expect_continue_not_awaited", url=self.uri)
        if self.version == HTTP_10:
            logger.debug("http_10_sent_as_http_11", url=self.uri)

        auth = self._resolve_auth()
        delay_auth = (
            auth is not None
            and not self.pre_authenticate
            and isinstance(auth, (tuple, HTTPBasicAuth))
        )
        response = self._send(session, None if delay_auth else auth)
        if (
            delay_auth
            and response.status_code == 401
            and "WWW-Authenticate" in response.headers
            and (self._body is None or self.resend_content is not None)
        ):
            logger.debug("auth_challenge_answered", url=self.uri)
            response.close()
            response = self._send(session, auth)

        with self._lock:
            if self.aborted:
                response.close()
                raise TransportError(
                    "request aborted", TransportStatus.REQUEST_CANCELED
                )
            self._response = response
        return response

    def _send(
        self, session: requests.Session, auth: Any
    ) -> requests.Response:
        prepared = self._prepare(session, auth)
        _active.request = self
        try:
            return session.send(
                prepared,
                stream=True,
                allow_redirects=self.allow_auto_redirect,
                proxies=self._proxies(),
            )
        except requests.exceptions.RequestException as exc:
            if self.aborted:
                raise TransportError(
                    "request aborted", TransportStatus.REQUEST_CANCELED
                ) from exc
            raise TransportError(str(exc), _status_for(exc)) from exc
        finally:
            _active.request = None
            # From here on the connection belongs to the response.
            with self._lock:
                self._connection = None

    def _prepare(
        self, session: requests.Session, auth: Any
    ) -> requests.PreparedRequest:
        """Build the prepared request.

        Headers are assigned directly, so requests' header validation does
        not run and names and values go out as given. ``http.client`` still
        rejects values containing a bare CR or LF when the request is sent.
        """
        prepared = requests.PreparedRequest()
        prepared.prepare_method(self.method)
        prepared.prepare_url(self.uri, None)

        headers: CaseInsensitiveDict[str] = CaseInsensitiveDict()
        for name, value in self.headers.itermerged():
            headers[name] = value
        if not self.keep_alive and not connection_close(self.headers):
            headers["Connection"] = "close"
        encodings = self.automatic_decompression.encodings
        if encodings and "Accept-Encoding" not in headers:
            headers["Accept-Encoding"] = ", ".join(encodings)
        if self.content_length is not None:
            headers["Content-Length"] = str(self.content_length)
        prepared.headers = headers

        prepared.body = self._body
        prepared.prepare_cookies(session.cookies)
        prepared.prepare_auth(auth)
        return prepared

    def _resolve_auth(self) -> Any:
        if self.use_default_credentials:
            return get_netrc_auth(self.uri)
        return self.credentials

    def _proxies(self) -> dict[str, str]:
        if not self.use_proxy:
            return {}
        if self.proxy is None:
            return dict(get_environ_proxies(self.uri))
        if self.proxy.is_bypassed(self.uri):
            return {}
        proxy_url = self.proxy.get_proxy(self.uri)
        if not proxy_url:
            return {}
        return {urlsplit(self.uri).scheme or "http": proxy_url}


def _resolve_waiter(waiter: asyncio.Future[None]) -> None:
    if not waiter.done():
        waiter.set_result(None)


class RequestsTransport(Transport):
    """Transport with one ``requests.Session`` per connection group.

    Args:
        chunk_size: Read size for response bodies.
        queue_size: Body chunks buffered between the writer and the worker.
        max_workers: Threads running blocking sends; sends beyond that wait
            for a free thread.
    """

    def __init__(
        self,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        queue_size: int = 8,
        max_workers: int | None = None,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        if queue_size <= 0:
            raise ValueError("queue_size must be > 0")
        self.chunk_size = chunk_size
        self.queue_size = queue_size
        self._executor = ThreadPoolExecutor(
            max_workers, thread_name_prefix="ferry-transport"
        )
        self._sessions: dict[str, requests.Session] = {}
        self._closed_groups: set[str] = set()
        self._closed = False
        self._lock = threading.Lock()

    @property
    def groups(self) -> tuple[str, ...]:
        """Names of the connection groups with a live session."""
        with self._lock:
            return tuple(self._sessions)

    def session(self, group: str | None) -> requests.Session:
        """Return the session for ``group``, creating it on first use.

        Raises:
            TransportError: the group or the transport was closed.
        """
        key = group or _DEFAULT_GROUP
        with self._lock:
            if self._closed or key in self._closed_groups:
                raise TransportError(
                    f"connection group {key!r} is closed",
                    TransportStatus.SEND_FAILURE,
                )
            session = self._sessions.get(key)
            if session is None:
                session = _new_session()
                self._sessions[key] = session
                logger.debug("connection_group_opened", connection_group=key)
        return session

    def checkout(self, group: str | None) -> tuple[requests.Session, bool]:
        """Return a session for one send and whether the caller owns it.

        A send still in flight when its group is closed gets a session of its
        own, which it must close when done.
        """
        try:
            return self.session(group), False
        except TransportError:
            logger.debug(
                "closed_group_session_opened",
                connection_group=group or _DEFAULT_GROUP,
            )
            return _new_session(), True

    def run(
        self, loop: asyncio.AbstractEventLoop, func: Callable[[], T]
    ) -> asyncio.Future[T]:
        """Run a blocking send on the transport's thread pool."""
        with self._lock:
            if self._closed:
                raise TransportError(
                    "transport is closed", TransportStatus.SEND_FAILURE
                )
            return loop.run_in_executor(self._executor, func)

    def create_request(self, uri: str) -> RequestsTransportRequest:
        return RequestsTransportRequest(self, uri)

    def close_connection_group(self, name: str) -> None:
        with self._lock:
            self._closed_groups.add(name)
            session = self._sessions.pop(name, None)
        if session is not None:
            session.close()
            logger.debug("connection_group_closed", connection_group=name)

    def close(self) -> None:
        """Close every session and stop accepting sends.

        Sends already running finish on their threads.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            sessions = list(self._sessions.items())
            self._sessions.clear()
        for name, session in sessions:
            session.close()
            logger.debug("connection_group_closed", connection_group=name)
        self._executor.shutdown(wait=False)


def _new_session() -> requests.Session:
    session = requests.Session()
    # Proxies and netrc credentials are resolved per request.
    session.trust_env = False
    adapter = _AbortableAdapter()
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session
