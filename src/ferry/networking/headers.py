"""Header classification and connection-token helpers."""

from __future__ import annotations

from typing import NamedTuple

from urllib3 import HTTPHeaderDict


class HttpVersion(NamedTuple):
    major: int
    minor: int

    def __str__(self) -> str:
        return f"HTTP/{self.major}.{self.minor}"


HTTP_10 = HttpVersion(1, 0)
HTTP_11 = HttpVersion(1, 1)

# Headers that describe the body rather than the exchange.
CONTENT_HEADERS = frozenset(
    {
        "allow",
        "content-disposition",
        "content-encoding",
        "content-language",
        "content-length",
        "content-location",
        "content-md5",
        "content-range",
        "content-type",
        "expires",
        "last-modified",
    }
)


def is_content_header(name: str) -> bool:
    return name.strip().lower() in CONTENT_HEADERS


def _tokens(headers: HTTPHeaderDict, name: str) -> set[str]:
    tokens: set[str] = set()
    for value in headers.getlist(name):
        tokens.update(
            token.strip().lower() for token in value.split(",") if token.strip()
        )
    return tokens


def connection_close(headers: HTTPHeaderDict) -> bool:
    """Return True if the request asked for ``Connection: close``."""
    return "close" in _tokens(headers, "Connection")


def connection_keep_alive(headers: HTTPHeaderDict) -> bool:
    """Return True if the request asked for ``Connection: keep-alive``."""
    return "keep-alive" in _tokens(headers, "Connection")


def expect_continue(headers: HTTPHeaderDict) -> bool:
    return "100-continue" in _tokens(headers, "Expect")


def parse_content_length(headers: HTTPHeaderDict) -> int | None:
    """Return the declared Content-Length, or None if absent or malformed."""
    values = headers.getlist("Content-Length")
    if not values:
        return None
    try:
        length = int(values[0].strip())
    except ValueError:
        return None
    return length if length >= 0 else None
