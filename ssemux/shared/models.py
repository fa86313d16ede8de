"""
MODULE OVERVIEW:
The strictly typed data structures shared by the broker, the state machine and
the session handles, powered by Pydantic v2.

WHAT IS HAPPENING HERE:
Three families of models live here:
  1. What the upstream gives us: `StreamEvent`.
  2. What a caller asks for: `ConnectionOptions`.
  3. What the broker tells its subscribers: the `Notification` union.
Notifications are plain JSON-able models on purpose. A session may live in the
same process as its broker or on the other side of a pipe, and the same
messages work for both.
"""
from datetime import datetime, timezone
from typing import Annotated, Any, Callable, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ssemux.shared.config import settings

ConnectionStatus = Literal["disconnected", "connecting", "connected", "error", "closed"]
ConnectionMode = Literal["auto", "manual"]
CredentialsPolicy = Literal["omit", "same-origin", "include"]


class StreamEvent(BaseModel):
    """One decoded frame. `data` is the parsed JSON value, or the raw text when it is not JSON."""

    model_config = ConfigDict(frozen=True)

    type: str = "message"
    data: Any = None
    id: str | None = None
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ErrorInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    name: str

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorInfo":
        return cls(message=str(exc), name=getattr(exc, "kind", type(exc).__name__))


class ConnectionOptions(BaseModel):
    """
    Caller-supplied knobs for one upstream connection.
    Validated once per connect attempt; retry timings are in milliseconds.
    """

    model_config = ConfigDict(frozen=True)

    mode: ConnectionMode = "auto"
    auto_connect_delay_ms: int = Field(default=0, ge=0)
    initial_retry_delay_ms: int = Field(default_factory=lambda: settings.INITIAL_RETRY_DELAY_MS, gt=0)
    max_retry_delay_ms: int = Field(default_factory=lambda: settings.MAX_RETRY_DELAY_MS, gt=0)
    max_retries: int = Field(default_factory=lambda: settings.MAX_RETRIES, ge=0)
    headers: dict[str, str] = Field(default_factory=dict)
    token: str | None = None
    auto_reconnect: bool = True
    # Replaces the exponential term only; the ceiling is still applied by BackoffPolicy
    retry_delay_fn: Callable[[int], float] | None = Field(default=None, exclude=True)
    credentials: CredentialsPolicy = "same-origin"

    @field_validator("headers")
    @classmethod
    def _unique_header_names(cls, headers: dict[str, str]) -> dict[str, str]:
        seen: set[str] = set()
        for name in headers:
            folded = name.strip().lower()
            if not folded:
                raise ValueError("header names must not be empty")
            if folded in seen:
                raise ValueError(f"duplicate header name: {name}")
            seen.add(folded)
        return headers

    @model_validator(mode="after")
    def _ceiling_above_floor(self) -> "ConnectionOptions":
        if self.max_retry_delay_ms < self.initial_retry_delay_ms:
            raise ValueError("max_retry_delay_ms must be >= initial_retry_delay_ms")
        return self

    @classmethod
    def coerce(cls, value: "ConnectionOptions | dict[str, Any] | None") -> "ConnectionOptions":
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        return cls.model_validate(value)

    def caller_headers(self) -> dict[str, str]:
        """Headers the caller wants on the wire, the bearer token included."""
        merged = dict(self.headers)
        if self.token and not any(name.lower() == "authorization" for name in merged):
            merged["Authorization"] = f"Bearer {self.token}"
        return merged


# ==========================
# BROKER -> SUBSCRIBER NOTIFICATIONS
# ==========================
class ConnectedNotification(BaseModel):
    type: Literal["CONNECTED"] = "CONNECTED"
    url: str


class DisconnectedNotification(BaseModel):
    type: Literal["DISCONNECTED"] = "DISCONNECTED"


class StatusNotification(BaseModel):
    type: Literal["STATUS"] = "STATUS"
    status: ConnectionStatus


class EventNotification(BaseModel):
    type: Literal["EVENT"] = "EVENT"
    event: StreamEvent


# Priming push on attach. Carries the newest event without counting as history,
# so a later subscribe() replay never delivers it twice.
class LastEventNotification(BaseModel):
    type: Literal["LAST_EVENT"] = "LAST_EVENT"
    event: StreamEvent


class ErrorNotification(BaseModel):
    type: Literal["ERROR"] = "ERROR"
    error: ErrorInfo


class RetryCountNotification(BaseModel):
    type: Literal["RETRY_COUNT"] = "RETRY_COUNT"
    count: int


Notification = Annotated[
    Union[
        ConnectedNotification,
        DisconnectedNotification,
        StatusNotification,
        EventNotification,
        LastEventNotification,
        ErrorNotification,
        RetryCountNotification,
    ],
    Field(discriminator="type"),
]


class SessionState(BaseModel):
    url: str | None
    status: ConnectionStatus
    last_event: StreamEvent | None
    events: list[StreamEvent]
    error: ErrorInfo | None
    retry_count: int


class BrokerStats(BaseModel):
    name: str
    url: str | None
    status: ConnectionStatus
    attached: int
    subscribed: int
    buffered_events: int
    total_events: int
    retry_count: int
    dropped_notifications: int
