# pyright: reportUnknownParameterType=false, reportUnknownMemberType=false
# pyright: reportMissingParameterType=false
from __future__ import annotations

from typing import Any, Awaitable, Callable

import pytest
from urllib3 import HTTPHeaderDict

from ferry.networking.client import HttpClient
from ferry.networking.errors import TransportError, TransportStatus
from ferry.networking.headers import HTTP_11
from ferry.networking.transport import (
    RequestStream,
    ResponseStream,
    Transport,
    TransportRequest,
    TransportResponse,
)


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeResponseStream(ResponseStream):
    def __init__(self, chunks):
        self._chunks = list(chunks)
        self.closed = False

    async def read_chunk(self):
        if self.closed:
            raise OSError("stream closed")
        return self._chunks.pop(0) if self._chunks else b""

    def close(self):
        self.closed = True


class FakeResponse(TransportResponse):
    def __init__(
        self,
        *,
        status_code: int = 200,
        reason: str = "OK",
        headers: Any = None,
        body: bytes = b"",
        uri: str = "http://example.com/",
        version=HTTP_11,
    ):
        self.status_code = status_code
        self.reason = reason
        self.headers = HTTPHeaderDict(headers or {})
        self.response_uri = uri
        self.version = version
        self.body = body
        self.close_calls = 0
        self.stream: FakeResponseStream | None = None

    def open_stream(self):
        self.stream = FakeResponseStream([self.body] if self.body else [])
        return self.stream

    def close(self):
        self.close_calls += 1
        if self.stream is not None:
            self.stream.close()


class FakeRequestStream(RequestStream):
    def __init__(self):
        self.data = bytearray()
        self.closed = False

    async def write(self, data):
        self.data.extend(data)

    async def aclose(self):
        self.closed = True


class FakeTransportRequest(TransportRequest):
    def __init__(self, transport: FakeTransport, uri: str):
        super().__init__(uri)
        self._transport = transport
        self.stream: FakeRequestStream | None = None
        self.abort_calls = 0

    async def open_request_stream(self):
        if self.abort_calls:
            raise TransportError("aborted", TransportStatus.REQUEST_CANCELED)
        self.stream = FakeRequestStream()
        return self.stream

    async def get_response(self):
        if self._transport.before_response is not None:
            await self._transport.before_response(self)
        outcome = self._transport.outcome
        if isinstance(outcome, BaseException):
            raise outcome
        if self.abort_calls:
            raise TransportError("aborted", TransportStatus.REQUEST_CANCELED)
        return outcome

    def abort(self):
        self.abort_calls += 1
        if self._transport.abort_error is not None:
            raise self._transport.abort_error


class FakeTransport(Transport):
    """Records every transport request and answers with ``outcome``."""

    def __init__(self):
        self.requests: list[FakeTransportRequest] = []
        self.closed_groups: list[str] = []
        self.outcome: Any = FakeResponse()
        self.abort_error: BaseException | None = None
        self.before_response: (
            Callable[[FakeTransportRequest], Awaitable[None]] | None
        ) = None

    @property
    def last_request(self) -> FakeTransportRequest:
        return self.requests[-1]

    def create_request(self, uri):
        request = FakeTransportRequest(self, uri)
        self.requests.append(request)
        return request

    def close_connection_group(self, name):
        self.closed_groups.append(name)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def client(transport):
    return HttpClient(transport=transport)


@pytest.fixture
def make_response():
    return FakeResponse
