"""
MODULE OVERVIEW:
The error taxonomy of the stream connection manager.

WHAT IS HAPPENING HERE:
A transport never raises these at the state machine. It reports them as the
reason inside a `Closed` signal, and the state machine decides what to do with
that reason by looking at `retryable`. Only the 401 case opts out of retrying.
Cooperative cancellation uses plain `asyncio.CancelledError` and is never shown
to consumers.
"""


class SSEMuxError(Exception):
    """Base class for every error raised or reported by ssemux."""

    retryable: bool = False

    @property
    def kind(self) -> str:
        return type(self).__name__


class TransportError(SSEMuxError):
    """The upstream connection went away. Retried per backoff."""

    retryable = True


class TransportOpenError(TransportError):
    """Network, DNS, handshake failure or a non-2xx status on open."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransportReadError(TransportError):
    """The stream broke mid-flight."""


class StreamEndedError(TransportError):
    """The upstream closed the body cleanly. A live feed is expected to stay open."""


class AuthenticationError(TransportError):
    """HTTP 401. Terminal: the caller has to supply fresh credentials."""

    retryable = False

    def __init__(self, message: str, status_code: int = 401):
        super().__init__(message)
        self.status_code = status_code


class ChannelClosedError(SSEMuxError):
    """A subscriber channel was closed (its session detached or went away)."""
