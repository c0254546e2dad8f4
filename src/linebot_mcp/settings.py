from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 3001
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_dir: Path = Path("logs")

    channel_access_token: str = ""
    destination_user_id: str = ""

    line_api_base_url: str = "https://api.line.me"
    line_request_timeout_seconds: float = 30.0

    completion_timeout_seconds: float = 120.0
    sse_ping_seconds: int = 15

    cors_origins: str = "*"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    def missing_credentials(self) -> list[str]:
        """Return the names of unset out-of-band credentials."""
        missing = []
        if not self.channel_access_token:
            missing.append("CHANNEL_ACCESS_TOKEN")
        if not self.destination_user_id:
            missing.append("DESTINATION_USER_ID")
        return missing


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
