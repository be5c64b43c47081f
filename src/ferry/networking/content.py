"""Request and response bodies.

Request bodies carry their own content headers (``Content-Type``,
``Content-Length``, ...). A body without a declared length can be loaded into
a bounded in-memory buffer so its length is known before transmission.
Response bodies are read lazily from the transport and are bound to the
cancellation token of the send that produced them.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterable,
    AsyncIterator,
    Iterable,
    Iterator,
    Mapping,
    Union,
)

from urllib3 import HTTPHeaderDict

from .errors import OperationCancelledError, RequestTooLargeError
from .headers import parse_content_length

if TYPE_CHECKING:
    from .cancellation import CancellationToken
    from .transport import RequestStream, ResponseStream, TransportResponse

DEFAULT_CHUNK_SIZE = 64 * 1024

StreamSource = Union[AsyncIterable[bytes], Iterable[bytes], Any]


class RequestContent(ABC):
    """Base class for request bodies."""

    def __init__(self, headers: Mapping[str, str] | None = None) -> None:
        self.headers = HTTPHeaderDict(headers or {})
        self._buffer: bytes | None = None

    @property
    def length(self) -> int | None:
        """Declared length, from the ``Content-Length`` content header."""
        return parse_content_length(self.headers)

    @property
    def is_buffered(self) -> bool:
        return self._buffer is not None

    @property
    def can_replay(self) -> bool:
        """True when :meth:`replay` can produce the body again."""
        return self._buffer is not None

    async def load_into_buffer(self, limit: int) -> None:
        """Read the whole body into memory and record its length.

        Raises:
            RequestTooLargeError: the body is larger than ``limit`` bytes.
        """
        if self._buffer is not None:
            if len(self._buffer) > limit:
                raise RequestTooLargeError(limit)
            return
        buffer = bytearray()
        async for chunk in self._read_source():
            if len(buffer) + len(chunk) > limit:
                raise RequestTooLargeError(limit)
            buffer.extend(chunk)
        self._buffer = bytes(buffer)
        self.headers["Content-Length"] = str(len(self._buffer))

    async def copy_to(self, stream: RequestStream) -> None:
        if self._buffer is not None:
            for chunk in self.replay():
                await stream.write(chunk)
            return
        async for chunk in self._read_source():
            if chunk:
                await stream.write(chunk)

    def replay(self) -> Iterator[bytes]:
        """Yield the buffered body again, e.g. to resend it after a redirect."""
        if self._buffer is None:
            raise RuntimeError("content is not buffered and cannot be replayed")
        view = memoryview(self._buffer)
        for start in range(0, len(view), DEFAULT_CHUNK_SIZE):
            yield bytes(view[start : start + DEFAULT_CHUNK_SIZE])

    @abstractmethod
    def _read_source(self) -> AsyncIterator[bytes]:
        """Yield the body from its original source."""


class BytesContent(RequestContent):
    """An in-memory body; its length is always known."""

    def __init__(
        self,
        data: bytes | str,
        content_type: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(headers)
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._buffer = bytes(data)
        self.headers["Content-Length"] = str(len(self._buffer))
        if content_type is not None:
            self.headers["Content-Type"] = content_type

    async def _read_source(self) -> AsyncIterator[bytes]:
        assert self._buffer is not None
        yield self._buffer


class StreamContent(RequestContent):
    """A body read from an async iterable, an iterable or a file-like object.

    The source is consumed once. Pass ``length`` when it is known; otherwise
    the executor buffers the body to learn it.
    """

    def __init__(
        self,
        source: StreamSource,
        *,
        length: int | None = None,
        headers: Mapping[str, str] | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        super().__init__(headers)
        if length is not None:
            if length < 0:
                raise ValueError("length must be >= 0")
            self.headers["Content-Length"] = str(length)
        if chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        if isinstance(source, (bytes, bytearray, memoryview)):
            source = [bytes(source)]
        self._source = source
        self._chunk_size = chunk_size
        self._consumed = False

    async def _read_source(self) -> AsyncIterator[bytes]:
        if self._consumed:
            raise RuntimeError("stream content can only be read once")
        self._consumed = True
        source = self._source
        if hasattr(source, "__aiter__"):
            async for chunk in source:
                yield bytes(chunk)
        elif hasattr(source, "read"):
            while True:
                chunk = await asyncio.to_thread(source.read, self._chunk_size)
                if not chunk:
                    break
                yield bytes(chunk)
        else:
            for chunk in source:
                yield bytes(chunk)


class ResponseContent:
    """Lazily read response body.

    Cancelling the token closes the transport response; reads after that
    raise :class:`OperationCancelledError` instead of blocking.

    The content stays registered on the token until it is read to the end or
    closed, so a response that is never read must be closed.
    """

    def __init__(
        self,
        transport_response: TransportResponse,
        cancellation: CancellationToken,
    ) -> None:
        self.headers = HTTPHeaderDict()
        self._response = transport_response
        self._cancellation = cancellation
        self._stream: ResponseStream | None = None
        self._closed = False
        self._registration = cancellation.register(self._abort)

    @property
    def length(self) -> int | None:
        return parse_content_length(self.headers)

    @property
    def closed(self) -> bool:
        return self._closed

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        """Yield the body; the content is closed once iteration stops."""
        self._cancellation.raise_if_cancellation_requested()
        if self._closed:
            raise RuntimeError("response content is closed")
        if self._stream is None:
            self._stream = self._response.open_stream()
        try:
            while True:
                self._cancellation.raise_if_cancellation_requested()
                try:
                    chunk = await self._stream.read_chunk()
                except Exception as exc:
                    if self._cancellation.is_cancellation_requested:
                        raise OperationCancelledError(
                            "the operation was cancelled"
                        ) from exc
                    raise
                if not chunk:
                    break
                yield chunk
        finally:
            self.close()

    async def read(self) -> bytes:
        """Read the rest of the body."""
        return b"".join([chunk async for chunk in self.iter_chunks()])

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._registration.unregister()
        self._response.close()

    async def aclose(self) -> None:
        self.close()

    def _abort(self) -> None:
        self._response.close()
