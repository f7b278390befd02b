from __future__ import annotations

from urllib.parse import urlsplit

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def socket_origin(api_base_url: str) -> str:
    """Reduce an API base URL such as ``http://host:5000/api`` to its origin."""
    parsed = urlsplit(api_base_url)
    if parsed.scheme and parsed.netloc:
        return f"{parsed.scheme}://{parsed.netloc}"
    if api_base_url.endswith("/api"):
        return api_base_url[: -len("/api")]
    return api_base_url.replace("/api", "")


class Settings(BaseSettings):
    api_base_url: str = Field(default="http://localhost:5000/api")
    socket_url: str | None = Field(default=None)
    api_token: str | None = Field(default=None)
    branch_id: str | None = Field(default=None)

    rest_timeout_seconds: int = Field(default=20, ge=1)
    rest_max_retries: int = Field(default=3, ge=1)

    probe_interval_seconds: float = Field(default=5.0, gt=0)
    poll_interval_seconds: float = Field(default=300.0, gt=0)

    reconnection_attempts: int = Field(default=5, ge=0)
    reconnection_delay_seconds: float = Field(default=1.0, ge=0)
    connect_timeout_seconds: float = Field(default=10.0, gt=0)

    grouping_window_hours: float = Field(default=8.0, gt=0)
    pending_update_buffer_size: int = Field(default=256, ge=1)

    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False)

    model_config = SettingsConfigDict(
        env_prefix="BXS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def resolved_socket_url(self) -> str:
        if self.socket_url:
            return self.socket_url
        origin = socket_origin(self.api_base_url)
        if origin.startswith("https://"):
            return "wss://" + origin[len("https://") :] + "/ws"
        if origin.startswith("http://"):
            return "ws://" + origin[len("http://") :] + "/ws"
        return origin


settings = Settings()
