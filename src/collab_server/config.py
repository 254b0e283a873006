"""Configuration management using pydantic-settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Server settings
    host: str = "0.0.0.0"
    port: int = 3000  # WebSocket port
    http_port: int = 3001  # REST / health port

    # Every client connects to this single path
    ws_path: str = "/"

    log_level: str = "INFO"

    # Heartbeat settings
    ping_interval: float = 25.0  # Seconds of silence before the server pings
    pong_timeout: float = 10.0  # Seconds to wait for the pong before closing

    # Shutdown settings
    shutdown_timeout: float = 5.0  # Seconds to wait for connections to close gracefully

    # Limits
    max_message_size: int = 1024 * 1024  # Largest inbound frame in bytes
    max_chat_length: int = 500
    max_notifications: int = 100  # Per user, oldest evicted first
    max_username_length: int = 20
    max_outbox_frames: int = 1000  # Queued outbound frames before a reader counts as stalled

    def is_valid_path(self, path: str) -> bool:
        """
        Check if a request path targets the collaboration endpoint.

        Args:
            path: The URL path (query string is ignored).

        Returns:
            True if the path matches the configured endpoint.
        """
        path = path.split("?", 1)[0] or "/"
        return path.rstrip("/") == self.ws_path.rstrip("/")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
