"""Request execution on top of a :class:`~ferry.networking.transport.Transport`.

The executor turns an :class:`OutboundRequest` plus the client configuration
into a :class:`TransportRequest`, drives it while honouring cancellation and
rebuilds an :class:`InboundResponse` from whatever the transport returns.

Outcomes of one send::

    NotSent -> Sending -> Completed                 Ok(response)
                       -> CompletedWithErrorStatus  Ok(response), 4xx/5xx
                       -> Cancelled                 Cancelled()
                       -> Failed                    Err(error)

Error statuses are never turned into errors here, and a requested
cancellation always wins over whatever the transport reported.
"""

from __future__ import annotations

from typing import Any

import structlog

from .cancellation import CancellationToken
from .config import ClientConfiguration
from .content import RequestContent, ResponseContent
from .errors import (
    HttpClientError,
    RequestTooLargeError,
    TransportError,
    TransportFailureError,
    TransportStatus,
)
from .headers import (
    HTTP_10,
    connection_close,
    connection_keep_alive,
    expect_continue,
    is_content_header,
)
from .messages import InboundResponse, OutboundRequest
from .transport import Transport, TransportRequest, TransportResponse
from .types import Cancelled, Err, Ok, SendResult

logger = structlog.get_logger(__name__)

# Methods that get an explicit "Content-Length: 0" when sent without a body.
_BODY_METHODS = frozenset({"POST", "PUT", "DELETE"})


class RequestExecutor:
    """Sends requests for one client.

    Concurrent sends may share an executor; each send owns its own transport
    request and response.
    """

    def __init__(
        self, configuration: ClientConfiguration, transport: Transport
    ) -> None:
        self._configuration = configuration
        self._transport = transport

    async def send(
        self,
        request: OutboundRequest,
        cancellation: CancellationToken | None = None,
    ) -> SendResult:
        """Send ``request`` and return the outcome.

        Args:
            request: The request to send. Its ``uri`` is rewritten to the final
                URI when a response is produced.
            cancellation: Token that aborts the transport operation when
                cancelled.

        Returns:
            ``Ok`` with an :class:`InboundResponse` (for any status code),
            ``Cancelled`` when the token was cancelled, or ``Err`` with a
            :class:`HttpClientError`.
        """
        if request is None:
            raise ValueError("request must not be None")
        if not request.uri:
            raise ValueError("request must carry a target URI")
        token = cancellation if cancellation is not None else CancellationToken()

        if self._configuration.lock():
            logger.debug(
                "configuration_locked",
                connection_group=self._configuration.connection_group_name,
            )

        transport_request = self.create_transport_request(request)
        log = logger.bind(
            method=request.method,
            url=request.uri,
            connection_group=transport_request.connection_group_name,
        )
        log.debug("request_sending")

        transport_response: TransportResponse | None = None
        try:
            with token.register(transport_request.abort):
                transport_response = await self._transmit(
                    request.content, transport_request
                )
        except TransportError as exc:
            if token.is_cancellation_requested:
                return self._cancelled(log, request, exc.response)
            if (
                exc.status is TransportStatus.PROTOCOL_ERROR
                and exc.response is not None
            ):
                transport_response = exc.response
            else:
                log.warning(
                    "request_failed", status=exc.status.value, error=str(exc)
                )
                failure = TransportFailureError(str(exc), exc.status)
                failure.__cause__ = exc
                return Err(
                    failure,
                    meta=self._build_meta(
                        request, None, final_error=type(exc).__name__
                    ),
                )
        except RequestTooLargeError as exc:
            if token.is_cancellation_requested:
                return self._cancelled(log, request, None)
            log.warning("request_too_large", limit=exc.limit)
            return Err(
                exc,
                meta=self._build_meta(
                    request, None, final_error=type(exc).__name__
                ),
            )
        except HttpClientError as exc:
            if token.is_cancellation_requested:
                return self._cancelled(log, request, None)
            log.warning("request_failed", error=str(exc))
            return Err(
                exc,
                meta=self._build_meta(
                    request, None, final_error=type(exc).__name__
                ),
            )
        except Exception as exc:
            if token.is_cancellation_requested:
                return self._cancelled(log, request, None)
            log.error("request_failed", error=str(exc), exc_info=True)
            error = HttpClientError(str(exc))
            error.__cause__ = exc
            return Err(
                error,
                meta=self._build_meta(
                    request, None, final_error=type(exc).__name__
                ),
            )

        if token.is_cancellation_requested:
            return self._cancelled(log, request, transport_response)

        assert transport_response is not None
        response = self.create_response(transport_response, request, token)
        log.debug(
            "response_received",
            status_code=response.status_code,
            final_url=request.uri,
        )
        return Ok(response, meta=self._build_meta(request, response))

    async def _transmit(
        self,
        content: RequestContent | None,
        transport_request: TransportRequest,
    ) -> TransportResponse:
        if content is not None:
            for name, value in content.headers.iteritems():
                transport_request.headers.add(name, value)

            # The transport does not buffer, so the length must be known
            # before the body stream is opened.
            length = content.length
            if length is None:
                await content.load_into_buffer(
                    self._configuration.max_request_content_buffer_size
                )
                length = content.length
            transport_request.content_length = length
            if content.can_replay:
                transport_request.resend_content = content.replay

            stream = await transport_request.open_request_stream()
            try:
                await content.copy_to(stream)
            finally:
                await stream.aclose()
        elif transport_request.method in _BODY_METHODS:
            transport_request.content_length = 0

        return await transport_request.get_response()

    def create_transport_request(
        self, request: OutboundRequest
    ) -> TransportRequest:
        """Build the transport request with the client policy applied."""
        configuration = self._configuration
        transport_request = self._transport.create_request(request.uri)
        transport_request.connection_group_name = (
            configuration.connection_group_name
        )
        transport_request.method = request.method
        transport_request.version = request.version

        if request.version == HTTP_10:
            transport_request.keep_alive = connection_keep_alive(request.headers)
        else:
            transport_request.keep_alive = not connection_close(request.headers)
        transport_request.expect_continue = expect_continue(request.headers)

        transport_request.allow_auto_redirect = configuration.allow_auto_redirect
        if configuration.allow_auto_redirect:
            transport_request.max_automatic_redirections = (
                configuration.max_automatic_redirections
            )

        transport_request.automatic_decompression = (
            configuration.automatic_decompression
        )
        transport_request.pre_authenticate = configuration.pre_authenticate

        if configuration.use_cookies:
            transport_request.cookie_jar = configuration.cookie_jar

        if configuration.use_default_credentials:
            transport_request.use_default_credentials = True
        else:
            transport_request.credentials = configuration.credentials

        transport_request.use_proxy = configuration.use_proxy
        if configuration.use_proxy:
            transport_request.proxy = configuration.proxy

        for name, value in request.headers.iteritems():
            transport_request.headers.add(name, value)

        return transport_request

    def create_response(
        self,
        transport_response: TransportResponse,
        request: OutboundRequest,
        cancellation: CancellationToken,
    ) -> InboundResponse:
        """Rebuild an :class:`InboundResponse` from a transport response.

        Side effect: ``request.uri`` becomes the transport's final URI.
        """
        content = ResponseContent(transport_response, cancellation)
        response = InboundResponse(
            status_code=transport_response.status_code,
            reason=transport_response.reason,
            content=content,
            request=request,
            version=transport_response.version,
        )
        for name, value in transport_response.headers.iteritems():
            if is_content_header(name):
                content.headers.add(name, value)
            else:
                response.headers.add(name, value)

        request.uri = transport_response.response_uri
        return response

    def _cancelled(
        self,
        log: Any,
        request: OutboundRequest,
        transport_response: TransportResponse | None,
    ) -> Cancelled:
        if transport_response is not None:
            transport_response.close()
        log.info("request_cancelled")
        return Cancelled(meta=self._build_meta(request, None))

    def _build_meta(
        self,
        request: OutboundRequest,
        response: InboundResponse | None,
        final_error: str | None = None,
    ) -> dict[str, Any]:
        meta: dict[str, Any] = {
            "method": request.method,
            "url": request.uri,
            "connection_group": self._configuration.connection_group_name,
        }
        if response is not None:
            meta["status"] = response.status_code
            meta["status_code"] = response.status_code
            meta["reason"] = response.reason
        if final_error is not None:
            meta["final_error"] = final_error
        return meta
