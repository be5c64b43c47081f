"""Result containers returned by the HttpClient."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar, Generic, Mapping, TypeVar, Union

if TYPE_CHECKING:
    from .errors import HttpClientError
    from .messages import InboundResponse

T = TypeVar("T")
E = TypeVar("E", bound=BaseException)


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome carrying a value and request metadata."""

    value: T
    meta: Mapping[str, Any] = field(default_factory=dict)

    ok: ClassVar[bool] = True
    cancelled: ClassVar[bool] = False


@dataclass(frozen=True)
class Err(Generic[E]):
    """Failed outcome carrying the error and request metadata."""

    error: E
    meta: Mapping[str, Any] = field(default_factory=dict)

    ok: ClassVar[bool] = False
    cancelled: ClassVar[bool] = False


@dataclass(frozen=True)
class Cancelled:
    """The operation was cancelled by the caller.

    Not an error: callers that retry on failure should not retry on this.
    """

    meta: Mapping[str, Any] = field(default_factory=dict)

    ok: ClassVar[bool] = False
    cancelled: ClassVar[bool] = True


Result = Union[Ok[T], Err[E]]
SendResult = Union[Ok["InboundResponse"], Err["HttpClientError"], Cancelled]
