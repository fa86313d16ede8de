"""
MODULE OVERVIEW:
The two ways we open an upstream event stream, behind one contract.

WHAT IS HAPPENING HERE:
We use HTTPX `stream()` to keep the response body open and read it chunk by
chunk. Whatever happens on the wire is reported as a small signal:
    Opened          -> the server accepted us (2xx)
    Frame(bytes)    -> another raw chunk of the body
    Closed(error)   -> we are done, and `error` says why
A transport never retries and never decodes. Retrying belongs to the state
machine alone, so there is exactly one place that counts attempts. Decoding
belongs to the broker loop, so a frame that arrives after cancellation can be
dropped before it is ever parsed.

    StreamingGetTransport  - a plain GET, like a browser EventSource.
    HeaderStreamTransport  - used whenever the caller needs headers on the
                             request (auth tokens, tenant ids...). It adds
                             cache-busting headers and knows that a 401 means
                             "stop trying".
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Union

import httpx
from loguru import logger

from ssemux.shared.config import settings
from ssemux.shared.errors import (
    AuthenticationError,
    StreamEndedError,
    TransportError,
    TransportOpenError,
    TransportReadError,
)
from ssemux.shared.models import ConnectionOptions

BASE_HEADERS = {"Accept": "text/event-stream"}
NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


@dataclass(frozen=True)
class Opened:
    status_code: int = 200


@dataclass(frozen=True)
class Frame:
    data: bytes


@dataclass(frozen=True)
class Closed:
    error: TransportError


TransportSignal = Union[Opened, Frame, Closed]


def make_http_client() -> httpx.AsyncClient:
    # No read timeout: a silent stream is "connected, silent", not a failure
    timeout = httpx.Timeout(settings.CONNECT_TIMEOUT_S, read=None)
    return httpx.AsyncClient(timeout=timeout, follow_redirects=True)


class Transport(ABC):
    variant: str = "unknown"

    def __init__(self, url: str, options: ConnectionOptions, http_client: httpx.AsyncClient | None = None):
        self.url = url
        self.options = options
        self._client = http_client
        self._owns_client = http_client is None
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> None:
        """Cooperative cancellation: no frame is emitted after this returns."""
        self._stopped = True

    @abstractmethod
    def request_headers(self) -> httpx.Headers:
        ...

    def check_response(self, response: httpx.Response) -> None:
        if not response.is_success:
            raise TransportOpenError(f"HTTP error! status: {response.status_code}", response.status_code)

    async def stream(self) -> AsyncIterator[TransportSignal]:
        client = self._client or make_http_client()
        try:
            async for signal in self._run(client):
                yield signal
        finally:
            if self._owns_client:
                await client.aclose()

    async def _run(self, client: httpx.AsyncClient) -> AsyncIterator[TransportSignal]:
        if self.options.credentials == "omit":
            client.cookies.clear()

        try:
            async with client.stream("GET", self.url, headers=self.request_headers()) as response:
                self.check_response(response)
                logger.debug(f"url={self.url} transport={self.variant} event=opened status={response.status_code}")
                yield Opened(response.status_code)

                async for chunk in self._read_body(response):
                    if self._stopped:
                        return
                    yield Frame(chunk)

            if not self._stopped:
                yield Closed(StreamEndedError("Stream ended unexpectedly"))
        except TransportError as e:
            yield Closed(e)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            yield Closed(TransportOpenError(f"Connection failed: {e}"))

    async def _read_body(self, response: httpx.Response) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes():
                if chunk:
                    yield chunk
        except httpx.HTTPError as e:
            raise TransportReadError(f"Connection lost while reading stream: {e}") from e


class StreamingGetTransport(Transport):
    variant = "get"

    def request_headers(self) -> httpx.Headers:
        return httpx.Headers(BASE_HEADERS)


class HeaderStreamTransport(Transport):
    variant = "headers"

    def request_headers(self) -> httpx.Headers:
        headers = httpx.Headers({**BASE_HEADERS, **NO_CACHE_HEADERS})
        # Caller headers win on collision (httpx.Headers compares names case-insensitively)
        for name, value in self.options.caller_headers().items():
            headers[name] = value
        return headers

    def check_response(self, response: httpx.Response) -> None:
        if response.status_code == 401:
            raise AuthenticationError(f"Authentication failed! status: {response.status_code}")
        super().check_response(response)


def select_transport(
    url: str, options: ConnectionOptions, http_client: httpx.AsyncClient | None = None
) -> Transport:
    if options.caller_headers():
        return HeaderStreamTransport(url, options, http_client)
    return StreamingGetTransport(url, options, http_client)
