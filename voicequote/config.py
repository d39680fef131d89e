import os
from functools import lru_cache
from typing import Literal

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def runtime_default_public_base_url() -> str:
    """Return the public base URL used when building artifact links."""

    render_url = os.getenv("RENDER_EXTERNAL_URL")
    if render_url:
        return render_url.rstrip("/")

    port = os.getenv("PORT")
    if port:
        host = os.getenv("VOICEQUOTE_RUNTIME_HOST", "127.0.0.1")
        scheme = os.getenv("VOICEQUOTE_RUNTIME_SCHEME", "http")
        return f"{scheme}://{host}:{port}".rstrip("/")

    return "http://localhost:8000"


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    app_name: str = Field(default="Voice Quote Service")
    public_base_url: AnyHttpUrl = Field(
        default_factory=runtime_default_public_base_url
    )
    parser_backend: Literal["llm", "keyword"] = Field(
        default="llm"
    )
    extractor_backend: Literal["llm", "keyword"] = Field(
        default="llm"
    )
    google_api_key: str | None = Field(
        default=None
    )
    llm_model: str = Field(
        default="gemini-2.5-flash"
    )
    llm_temperature: float = Field(
        default=0.2
    )
    llm_timeout: float = Field(
        default=30.0
    )
    transcription_timeout: float = Field(
        default=60.0
    )
    media_auth_username: str | None = Field(
        default=None
    )
    media_auth_password: str | None = Field(
        default=None
    )
    extraction_min_confidence: float = Field(
        default=0.3
    )
    quote_validity_days: int = Field(
        default=30
    )

    model_config = SettingsConfigDict(env_prefix="VOICEQUOTE_", case_sensitive=False)

    @field_validator("parser_backend", "extractor_backend", mode="before")
    def _normalize_backend(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @property
    def llm_enabled(self) -> bool:
        return bool(self.google_api_key)

    def artifact_base_url(self) -> str:
        return str(self.public_base_url).rstrip("/")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()
