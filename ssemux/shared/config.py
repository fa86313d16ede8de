"""
MODULE OVERVIEW:
Application-wide configuration using Pydantic Settings.

WHAT IS HAPPENING HERE:
Every default that the connection manager relies on (retry timings, how many
events we remember, how deep a subscriber queue may grow) is declared here once.
ConnectionOptions take their defaults from these values, so tuning a deployment
is a matter of exporting `SSEMUX_*` environment variables or writing a `.env` file.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SSEMUX_",
        env_file=".env",
        env_file_encoding="utf-8",
        # unrelated env vars are ignored
        extra="ignore",
    )

    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # History kept per broker and per session
    EVENT_BUFFER_CAPACITY: int = 100

    # Per-subscriber outbound queue; oldest notifications are dropped past this
    CHANNEL_MAXSIZE: int = 256

    # Reconnection
    INITIAL_RETRY_DELAY_MS: int = 1000
    MAX_RETRY_DELAY_MS: int = 30000
    MAX_RETRIES: int = 5
    BACKOFF_JITTER_MS: int = 1000

    # Only the handshake is bounded. A silent but open stream is not a fault.
    CONNECT_TIMEOUT_S: float = 10.0

    # Feature detection: share one broker per upstream URL across sessions
    SHARED_BROKER: bool = True

    # Demo feed server
    FEED_INTERVAL_S: float = 1.0
    FEED_TOKEN: str | None = None


settings = Settings()
