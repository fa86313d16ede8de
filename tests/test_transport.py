"""Tests for the HTTP transports, driven through httpx.MockTransport."""

from collections.abc import AsyncIterator, Callable

import httpx
import pytest

from ssemux.client.transport import (
    Closed,
    Frame,
    HeaderStreamTransport,
    Opened,
    StreamingGetTransport,
    Transport,
    select_transport,
)
from ssemux.shared.errors import (
    AuthenticationError,
    StreamEndedError,
    TransportOpenError,
    TransportReadError,
)
from ssemux.shared.models import ConnectionOptions

URL = "http://feed.test/sse"
BODY = b"event: tick\ndata: 1\n\n"


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def collect(transport: Transport) -> list:
    return [signal async for signal in transport.stream()]


def recording(seen: list, status_code: int = 200, content: bytes = BODY):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(status_code, content=content)

    return handler


class TestHeaderStreamTransport:
    @pytest.mark.asyncio
    async def test_sends_no_cache_headers_and_caller_headers_win(self) -> None:
        seen: list[httpx.Request] = []
        options = ConnectionOptions(headers={"accept": "application/x-ndjson", "X-Tenant": "t1"}, token="abc")

        async with mock_client(recording(seen)) as client:
            await collect(HeaderStreamTransport(URL, options, client))

        headers = seen[0].headers
        assert headers["accept"] == "application/x-ndjson"
        assert headers["cache-control"] == "no-cache, no-store, must-revalidate"
        assert headers["pragma"] == "no-cache"
        assert headers["expires"] == "0"
        assert headers["x-tenant"] == "t1"
        assert headers["authorization"] == "Bearer abc"

    @pytest.mark.asyncio
    async def test_401_is_terminal_authentication_error(self) -> None:
        async with mock_client(recording([], status_code=401)) as client:
            signals = await collect(HeaderStreamTransport(URL, ConnectionOptions(token="bad"), client))

        assert len(signals) == 1
        error = signals[0].error
        assert isinstance(error, AuthenticationError)
        assert error.retryable is False
        assert error.status_code == 401

    @pytest.mark.asyncio
    async def test_other_error_status_is_retryable(self) -> None:
        async with mock_client(recording([], status_code=503)) as client:
            signals = await collect(HeaderStreamTransport(URL, ConnectionOptions(token="t"), client))

        error = signals[0].error
        assert isinstance(error, TransportOpenError)
        assert error.retryable is True
        assert error.status_code == 503


class TestStreamingGetTransport:
    @pytest.mark.asyncio
    async def test_plain_request_has_no_cache_busting_headers(self) -> None:
        seen: list[httpx.Request] = []
        async with mock_client(recording(seen)) as client:
            await collect(StreamingGetTransport(URL, ConnectionOptions(), client))

        headers = seen[0].headers
        assert headers["accept"] == "text/event-stream"
        assert "cache-control" not in headers
        assert "authorization" not in headers

    @pytest.mark.asyncio
    async def test_signals_for_a_clean_stream(self) -> None:
        async with mock_client(recording([])) as client:
            signals = await collect(StreamingGetTransport(URL, ConnectionOptions(), client))

        assert signals[0] == Opened(200)
        assert b"".join(s.data for s in signals if isinstance(s, Frame)) == BODY
        assert isinstance(signals[-1], Closed)
        assert isinstance(signals[-1].error, StreamEndedError)

    @pytest.mark.asyncio
    async def test_401_is_retryable_on_plain_get(self) -> None:
        async with mock_client(recording([], status_code=401)) as client:
            signals = await collect(StreamingGetTransport(URL, ConnectionOptions(), client))

        error = signals[0].error
        assert type(error) is TransportOpenError
        assert error.retryable is True

    @pytest.mark.asyncio
    async def test_connect_failure_is_open_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with mock_client(handler) as client:
            signals = await collect(StreamingGetTransport(URL, ConnectionOptions(), client))

        assert len(signals) == 1
        assert isinstance(signals[0].error, TransportOpenError)

    @pytest.mark.asyncio
    async def test_broken_body_is_read_error(self) -> None:
        async def body() -> AsyncIterator[bytes]:
            yield BODY
            raise httpx.ReadError("connection reset")

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=body())

        async with mock_client(handler) as client:
            signals = await collect(StreamingGetTransport(URL, ConnectionOptions(), client))

        assert signals[0] == Opened(200)
        assert signals[1] == Frame(BODY)
        assert isinstance(signals[-1].error, TransportReadError)

    @pytest.mark.asyncio
    async def test_no_signals_after_stop(self) -> None:
        async def body() -> AsyncIterator[bytes]:
            yield b"data: 1\n\n"
            yield b"data: 2\n\n"

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=body())

        signals = []
        async with mock_client(handler) as client:
            transport = StreamingGetTransport(URL, ConnectionOptions(), client)
            async for signal in transport.stream():
                signals.append(signal)
                transport.stop()

        assert signals == [Opened(200)]

    @pytest.mark.asyncio
    async def test_credentials_omit_clears_cookies(self) -> None:
        seen: list[httpx.Request] = []
        async with mock_client(recording(seen)) as client:
            client.cookies.set("session", "s1", domain="feed.test")
            await collect(StreamingGetTransport(URL, ConnectionOptions(credentials="include"), client))
            await collect(StreamingGetTransport(URL, ConnectionOptions(credentials="omit"), client))

        assert "session=s1" in seen[0].headers.get("cookie", "")
        assert "cookie" not in seen[1].headers


class TestSelectTransport:
    def test_plain_options_pick_streaming_get(self) -> None:
        assert isinstance(select_transport(URL, ConnectionOptions()), StreamingGetTransport)

    def test_headers_pick_header_transport(self) -> None:
        transport = select_transport(URL, ConnectionOptions(headers={"X-Tenant": "t1"}))
        assert isinstance(transport, HeaderStreamTransport)

    def test_token_picks_header_transport(self) -> None:
        assert isinstance(select_transport(URL, ConnectionOptions(token="abc")), HeaderStreamTransport)
