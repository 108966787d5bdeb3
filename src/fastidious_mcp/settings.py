"""Application settings (env/.env)."""

from __future__ import annotations

from pydantic import AnyHttpUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

VERSION = "1.0.0"

# Fastidious API tokens all carry this prefix.
TOKEN_PREFIX = "fst_"


class Settings(BaseSettings):
    """Settings for the MCP server and the Fastidious API."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Only the stdio entrypoint needs it; hosted sessions bring their own token.
    fastidious_token: str | None = Field(default=None, alias="FASTIDIOUS_TOKEN")
    fastidious_url: AnyHttpUrl = Field(
        default="http://localhost:3000",
        alias="FASTIDIOUS_URL",
    )

    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=3000, alias="PORT", ge=1, le=65535)

    http_timeout_seconds: float | None = Field(
        default=None,
        alias="HTTP_TIMEOUT_SECONDS",
        gt=0,
    )
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @property
    def base_url(self) -> str:
        return str(self.fastidious_url).rstrip("/")
