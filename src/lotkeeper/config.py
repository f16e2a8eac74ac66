"""Configuration settings for the application."""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import OperatingMode


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="LOTKEEPER_",
        case_sensitive=False,
        extra="ignore",
    )

    # Server of record
    api_base_url: str = "http://localhost:3000"

    # Credentials for the server of record; a token skips the login call
    api_token: Optional[str] = None
    api_username: Optional[str] = None
    api_password: Optional[str] = None

    # Local mirror storage (SQLite file by default)
    mirror_database_url: str = "sqlite:///lotkeeper_mirror.db"

    # Mode a new session starts in
    operating_mode: OperatingMode = OperatingMode.LOCAL

    # History view
    history_page_size: int = 5

    # Timeouts in seconds; mutation calls have none unless configured
    login_timeout: float = 10.0
    verify_timeout: float = 5.0
    request_timeout: Optional[float] = None

    # Application settings
    debug: bool = False

    @property
    def api_root(self) -> str:
        """Base URL without a trailing slash."""
        return self.api_base_url.rstrip("/")


# Global settings instance
settings = Settings()
