# pyright: reportUnknownParameterType=false, reportUnknownMemberType=false
# pyright: reportUnknownVariableType=false, reportMissingParameterType=false
# pyright: reportUnknownArgumentType=false
import asyncio
import socket
import threading
from unittest.mock import Mock, patch

import pytest
import requests
from requests.cookies import RequestsCookieJar
from requests.structures import CaseInsensitiveDict
from urllib3 import HTTPHeaderDict

from ferry.networking.client import HttpClient
from ferry.networking.config import DecompressionMethods
from ferry.networking.content import StreamContent
from ferry.networking.errors import TransportError, TransportStatus
from ferry.networking.headers import HTTP_10
from ferry.networking.requests_transport import RequestsTransport
from ferry.networking.transport import StaticProxy

pytestmark = pytest.mark.anyio


def _mock_response(
    *,
    status: int = 200,
    reason: str = "OK",
    url: str = "http://example.com/",
    headers=None,
    chunks=(b"hello",),
    version: int = 11,
):
    raw_headers = HTTPHeaderDict(headers or [("Content-Type", "text/plain")])
    response = Mock()
    response.status_code = status
    response.reason = reason
    response.url = url
    response.headers = CaseInsensitiveDict(dict(raw_headers.itermerged()))
    response.raw.headers = raw_headers
    response.raw.version = version
    response.raw.stream.return_value = iter(chunks)
    return response


def _new_request(uri="http://example.com/", **attributes):
    transport = RequestsTransport()
    request = transport.create_request(uri)
    request.connection_group_name = "test-group"
    for name, value in attributes.items():
        setattr(request, name, value)
    return transport, request


def _sent(mock_send, index=0):
    call = mock_send.call_args_list[index]
    return call.args[0], call.kwargs


async def test_headers_are_sent_verbatim():
    _, request = _new_request(method="GET")
    request.headers.add("X-Padded", "  value")
    request.headers.add("X-Multi", "a")
    request.headers.add("X-Multi", "b")

    with patch("requests.Session.send") as mock_send:
        mock_send.return_value = _mock_response()
        await request.get_response()

    prepared, kwargs = _sent(mock_send)
    assert prepared.method == "GET"
    assert prepared.url == "http://example.com/"
    assert prepared.headers["X-Padded"] == "  value"
    assert prepared.headers["X-Multi"] == "a, b"
    assert "Connection" not in prepared.headers
    assert prepared.body is None
    assert kwargs["stream"] is True
    assert kwargs["allow_redirects"] is True
    assert kwargs["proxies"] == {}


async def test_connection_close_when_not_keep_alive():
    _, request = _new_request(keep_alive=False)

    with patch("requests.Session.send") as mock_send:
        mock_send.return_value = _mock_response()
        await request.get_response()

    prepared, _ = _sent(mock_send)
    assert prepared.headers["Connection"] == "close"


async def test_zero_content_length_is_sent():
    _, request = _new_request(method="POST", content_length=0)

    with patch("requests.Session.send") as mock_send:
        mock_send.return_value = _mock_response()
        await request.get_response()

    prepared, _ = _sent(mock_send)
    assert prepared.headers["Content-Length"] == "0"


async def test_redirect_policy_is_applied():
    transport, request = _new_request(
        allow_auto_redirect=False, max_automatic_redirections=3
    )

    with patch("requests.Session.send") as mock_send:
        mock_send.return_value = _mock_response()
        await request.get_response()

    _, kwargs = _sent(mock_send)
    assert kwargs["allow_redirects"] is False
    assert transport.session("test-group").max_redirects == 3


async def test_body_is_streamed_with_declared_length():
    _, request = _new_request(method="PUT", content_length=5)
    received = []

    def consume(prepared, **kwargs):
        received.append(b"".join(prepared.body))
        return _mock_response()

    with patch("requests.Session.send") as mock_send:
        mock_send.side_effect = consume
        stream = await request.open_request_stream()
        await stream.write(b"he")
        await stream.write(b"llo")
        await stream.aclose()
        await request.get_response()

    prepared, _ = _sent(mock_send)
    assert received == [b"hello"]
    assert prepared.headers["Content-Length"] == "5"
    assert "Transfer-Encoding" not in prepared.headers


async def test_body_is_produced_again_for_resend():
    _, request = _new_request(
        method="POST",
        content_length=5,
        resend_content=lambda: [b"hel", b"lo"],
    )
    received = []

    def consume_twice(prepared, **kwargs):
        received.append(b"".join(prepared.body))
        received.append(b"".join(prepared.body))
        return _mock_response()

    with patch("requests.Session.send") as mock_send:
        mock_send.side_effect = consume_twice
        stream = await request.open_request_stream()
        await stream.write(b"hello")
        await stream.aclose()
        await request.get_response()

    assert received == [b"hello", b"hello"]


async def test_open_request_stream_requires_length():
    _, request = _new_request(method="POST")

    with pytest.raises(TransportError) as info:
        await request.open_request_stream()

    assert info.value.status is TransportStatus.SEND_FAILURE


async def test_cookie_jar_is_used_when_enabled():
    jar = RequestsCookieJar()
    jar.set("session", "abc", domain="example.com", path="/")
    transport, request = _new_request(cookie_jar=jar)

    with patch("requests.Session.send") as mock_send:
        mock_send.return_value = _mock_response()
        await request.get_response()

    prepared, _ = _sent(mock_send)
    assert prepared.headers["Cookie"] == "session=abc"
    assert transport.session("test-group").cookies is jar


async def test_cookies_are_blocked_when_disabled():
    transport, request = _new_request(cookie_jar=None)

    with patch("requests.Session.send") as mock_send:
        mock_send.return_value = _mock_response()
        await request.get_response()

    prepared, _ = _sent(mock_send)
    assert "Cookie" not in prepared.headers
    policy = transport.session("test-group").cookies.get_policy()
    assert policy.is_not_allowed("example.com")


async def test_pre_authenticate_sends_credentials_up_front():
    _, request = _new_request(credentials=("user", "secret"), pre_authenticate=True)

    with patch("requests.Session.send") as mock_send:
        mock_send.return_value = _mock_response()
        await request.get_response()

    prepared, _ = _sent(mock_send)
    assert prepared.headers["Authorization"].startswith("Basic ")
    assert mock_send.call_count == 1


async def test_credentials_wait_for_challenge_without_pre_authenticate():
    _, request = _new_request(credentials=("user", "secret"))
    challenge = _mock_response(
        status=401,
        reason="Unauthorized",
        headers=[("WWW-Authenticate", 'Basic realm="x"')],
    )

    with patch("requests.Session.send") as mock_send:
        mock_send.side_effect = [challenge, _mock_response()]
        response = await request.get_response()

    first, _ = _sent(mock_send, 0)
    second, _ = _sent(mock_send, 1)
    assert "Authorization" not in first.headers
    assert second.headers["Authorization"].startswith("Basic ")
    assert response.status_code == 200
    challenge.close.assert_called_once_with()


async def test_default_credentials_come_from_netrc():
    _, request = _new_request(
        use_default_credentials=True,
        credentials=("ignored", "ignored"),
        pre_authenticate=True,
    )

    with patch(
        "ferry.networking.requests_transport.get_netrc_auth",
        return_value=("netrc-user", "pw"),
    ) as mock_netrc, patch("requests.Session.send") as mock_send:
        mock_send.return_value = _mock_response()
        await request.get_response()

    mock_netrc.assert_called_once_with("http://example.com/")
    prepared, _ = _sent(mock_send)
    assert prepared.headers["Authorization"] == requests.auth._basic_auth_str(
        "netrc-user", "pw"
    )


@pytest.mark.parametrize(
    ("uri", "expected"),
    [
        ("http://example.com/", {"http": "http://proxy.local:3128"}),
        ("https://example.com/", {"https": "http://proxy.local:3128"}),
        ("http://intranet.corp/", {}),
    ],
)
async def test_proxy_resolver_is_used_when_enabled(uri, expected):
    proxy = StaticProxy("http://proxy.local:3128", bypass=[".corp"])
    _, request = _new_request(uri, use_proxy=True, proxy=proxy)

    with patch("requests.Session.send") as mock_send:
        mock_send.return_value = _mock_response(url=uri)
        await request.get_response()

    _, kwargs = _sent(mock_send)
    assert kwargs["proxies"] == expected


async def test_environment_proxies_when_no_resolver(monkeypatch):
    monkeypatch.setenv("http_proxy", "http://env-proxy:8080")
    monkeypatch.delenv("REQUEST_METHOD", raising=False)
    monkeypatch.delenv("NO_PROXY", raising=False)
    monkeypatch.delenv("no_proxy", raising=False)
    _, request = _new_request(use_proxy=True)

    with patch("requests.Session.send") as mock_send:
        mock_send.return_value = _mock_response()
        await request.get_response()

    _, kwargs = _sent(mock_send)
    assert kwargs["proxies"].get("http") == "http://env-proxy:8080"


@pytest.mark.parametrize(
    ("error", "status"),
    [
        (requests.exceptions.ConnectionError("refused"), TransportStatus.CONNECT_FAILURE),
        (requests.exceptions.ConnectTimeout("slow"), TransportStatus.TIMEOUT),
        (requests.exceptions.ProxyError("proxy"), TransportStatus.PROXY_FAILURE),
        (requests.exceptions.SSLError("cert"), TransportStatus.TRUST_FAILURE),
        (requests.exceptions.TooManyRedirects("loop"), TransportStatus.REDIRECT_LIMIT),
        (requests.exceptions.RequestException("boom"), TransportStatus.UNKNOWN_ERROR),
    ],
)
async def test_requests_errors_map_to_transport_status(error, status):
    _, request = _new_request()

    with patch("requests.Session.send") as mock_send:
        mock_send.side_effect = error
        with pytest.raises(TransportError) as info:
            await request.get_response()

    assert info.value.status is status
    assert info.value.__cause__ is error


async def test_response_is_wrapped():
    _, request = _new_request(automatic_decompression=DecompressionMethods.GZIP)
    raw = _mock_response(
        status=503,
        reason="Service Unavailable",
        url="http://example.com/final",
        headers=[
            ("Content-Encoding", "gzip"),
            ("Set-Cookie", "a=1"),
            ("Set-Cookie", "b=2"),
        ],
        chunks=(b"he", b"llo"),
        version=10,
    )

    with patch("requests.Session.send") as mock_send:
        mock_send.return_value = raw
        response = await request.get_response()

    prepared, _ = _sent(mock_send)
    assert prepared.headers["Accept-Encoding"] == "gzip"
    assert response.status_code == 503
    assert response.reason == "Service Unavailable"
    assert response.response_uri == "http://example.com/final"
    assert response.version == HTTP_10
    assert response.headers.getlist("Set-Cookie") == ["a=1", "b=2"]

    stream = response.open_stream()
    assert await stream.read_chunk() == b"he"
    assert await stream.read_chunk() == b"llo"
    assert await stream.read_chunk() == b""
    raw.raw.stream.assert_called_once_with(64 * 1024, decode_content=True)

    response.close()
    raw.close.assert_called_once_with()


async def test_content_is_not_decoded_when_decompression_disabled():
    _, request = _new_request()
    raw = _mock_response(headers=[("Content-Encoding", "gzip")])

    with patch("requests.Session.send") as mock_send:
        mock_send.return_value = raw
        response = await request.get_response()

    response.open_stream()
    raw.raw.stream.assert_called_once_with(64 * 1024, decode_content=False)
    prepared, _ = _sent(mock_send)
    assert "Accept-Encoding" not in prepared.headers


async def test_abort_before_start_fails_fast():
    _, request = _new_request()
    request.abort()

    with patch("requests.Session.send") as mock_send:
        with pytest.raises(TransportError) as info:
            await request.get_response()

    assert info.value.status is TransportStatus.REQUEST_CANCELED
    mock_send.assert_not_called()


async def test_abort_unblocks_pending_response():
    _, request = _new_request()
    release = threading.Event()
    started = threading.Event()
    late_response = _mock_response()

    def slow_send(prepared, **kwargs):
        started.set()
        release.wait(5)
        return late_response

    with patch("requests.Session.send") as mock_send:
        mock_send.side_effect = slow_send
        pending = asyncio.ensure_future(request.get_response())
        await asyncio.to_thread(started.wait, 5)

        request.abort()
        with pytest.raises(TransportError) as info:
            await pending

        release.set()
        for _ in range(100):
            if late_response.close.called:
                break
            await asyncio.sleep(0.01)

    assert info.value.status is TransportStatus.REQUEST_CANCELED
    late_response.close.assert_called_once_with()


def test_sessions_are_scoped_per_connection_group():
    transport = RequestsTransport()

    first = transport.session("a")

    assert transport.session("a") is first
    assert transport.session("b") is not first
    assert first.trust_env is False


def test_close_connection_group_closes_session():
    transport = RequestsTransport()
    session = transport.session("a")

    with patch.object(session, "close") as mock_close:
        transport.close_connection_group("a")
        transport.close_connection_group("a")

    mock_close.assert_called_once_with()
    assert transport.groups == ()
    with pytest.raises(TransportError):
        transport.session("a")


async def test_client_round_trip_over_requests_transport():
    received = []

    def consume(prepared, **kwargs):
        received.append((prepared.headers["Content-Length"], b"".join(prepared.body)))
        return _mock_response(
            status=201,
            reason="Created",
            url="http://example.com/items/7",
            headers=[("Content-Length", "5"), ("X-Trace", "1")],
        )

    async def parts():
        yield b"ab"
        yield b"c"

    client = HttpClient()
    with patch("requests.Session.send") as mock_send:
        mock_send.side_effect = consume
        result = await client.post(
            "http://example.com/items", content=StreamContent(parts())
        )
        body = await result.value.read()
    client.dispose()

    assert received == [("3", b"abc")]
    assert result.ok
    assert result.value.status_code == 201
    assert result.value.url == "http://example.com/items/7"
    assert result.value.content.headers["Content-Length"] == "5"
    assert result.value.headers["X-Trace"] == "1"
    assert body == b"hello"


async def test_send_in_flight_during_dispose_does_not_reopen_group():
    transport = RequestsTransport()
    client = HttpClient(transport=transport)

    async def parts():
        client.dispose()
        yield b"ab"

    def consume(prepared, **kwargs):
        b"".join(prepared.body)
        return _mock_response()

    with patch("requests.Session.send") as mock_send, patch(
        "requests.Session.close"
    ) as mock_close:
        mock_send.side_effect = consume
        result = await client.post(
            "http://example.com/items", content=StreamContent(parts())
        )
        body = await result.value.read()

    assert result.ok
    assert body == b"hello"
    assert transport.groups == ()
    mock_close.assert_called_once_with()


def test_abort_severs_attached_connection():
    _, request = _new_request()
    connection = Mock()
    request.attach_connection(connection)

    request.abort()

    connection.sock.shutdown.assert_called_once_with(socket.SHUT_RDWR)
    connection.close.assert_called_once_with()


def test_connection_is_refused_after_abort():
    _, request = _new_request()
    request.abort()

    with pytest.raises(ConnectionAbortedError):
        request.attach_connection(Mock())


async def test_abort_wakes_writer_waiting_for_queue_space():
    transport = RequestsTransport(queue_size=1)
    request = transport.create_request("http://example.com/")
    request.method = "POST"
    request.content_length = 2
    never_started = asyncio.get_running_loop().create_future()
    transport.run = Mock(return_value=never_started)

    stream = await request.open_request_stream()
    await stream.write(b"a")
    pending = asyncio.ensure_future(stream.write(b"b"))
    await asyncio.sleep(0.05)
    assert not pending.done()

    request.abort()
    with pytest.raises(TransportError) as info:
        await asyncio.wait_for(pending, timeout=5)

    assert info.value.status is TransportStatus.REQUEST_CANCELED
    never_started.cancel()


def test_closed_transport_rejects_sends():
    transport = RequestsTransport()
    transport.session("a")

    transport.close()

    assert transport.groups == ()
    with pytest.raises(TransportError):
        transport.run(Mock(), lambda: None)
