"""High-level request and response messages."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from urllib3 import HTTPHeaderDict

from .content import RequestContent, ResponseContent
from .headers import HTTP_11, HttpVersion


def _header_dict(headers: Mapping[str, str] | None = None) -> HTTPHeaderDict:
    return HTTPHeaderDict(headers or {})


@dataclass
class OutboundRequest:
    """A request as described by the caller.

    ``uri`` is rewritten to the final URI once a response is received, which
    differs from the original after redirects.
    """

    method: str
    uri: str
    headers: HTTPHeaderDict = field(default_factory=_header_dict)
    content: RequestContent | None = None
    version: HttpVersion = HTTP_11

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        if not isinstance(self.headers, HTTPHeaderDict):
            self.headers = HTTPHeaderDict(self.headers)


@dataclass
class InboundResponse:
    """A response rebuilt from the transport.

    Message headers live in ``headers``; headers describing the body live in
    ``content.headers``. Read the body or close the response, directly or by
    using it as a context manager, to release the connection and the
    cancellation registration.
    """

    status_code: int
    reason: str
    content: ResponseContent
    request: OutboundRequest
    version: HttpVersion = HTTP_11
    headers: HTTPHeaderDict = field(default_factory=_header_dict)

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code <= 299

    @property
    def url(self) -> str:
        return self.request.uri

    async def read(self) -> bytes:
        return await self.content.read()

    def close(self) -> None:
        self.content.close()

    def __enter__(self) -> InboundResponse:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    async def __aenter__(self) -> InboundResponse:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.content.aclose()
