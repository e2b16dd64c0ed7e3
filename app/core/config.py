"""
Application configuration via environment variables (12-factor).
Pydantic BaseSettings validates and coerces all values at startup.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # ------------------------------------------------------------------
    # Direct AI pipeline (OpenAI)
    # ------------------------------------------------------------------
    openai_api_key: str = ""           # empty = pipeline not configured
    openai_model:   str = "gpt-4o"

    assistant_poll_interval_seconds: float = 1.0
    assistant_max_poll_attempts:     int   = 15

    # ------------------------------------------------------------------
    # Externally hosted pipeline (privacy OCR + local LLM service)
    # ------------------------------------------------------------------
    privacy_api_url: str = ""          # e.g. http://localhost:5000; empty = not configured
    privacy_api_key: str = ""

    bridge_poll_interval_seconds:   float = 1.0
    bridge_request_timeout_seconds: float = 10.0
    remote_submit_timeout_seconds:  float = 300.0   # OCR + LLM on CPU can take minutes
    cancel_timeout_seconds:         float = 5.0
    health_timeout_seconds:         float = 5.0

    # ------------------------------------------------------------------
    # Job tracking
    # ------------------------------------------------------------------
    progress_grace_seconds:   float = 30.0    # terminal snapshot kept for reconnects
    result_ttl_seconds:       float = 600.0   # unclaimed results dropped after this
    stream_keepalive_seconds: float = 15.0

    max_file_size_bytes: int = 50 * 1024 * 1024   # 50 MB

    # ------------------------------------------------------------------
    # Auth: OIDC (any RS256 issuer exposing /.well-known/jwks.json)
    # ------------------------------------------------------------------
    auth_issuer:   str = ""
    auth_audience: str = ""

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------
    app_env: str = "development"   # development | staging | production
    debug: bool = False

    cors_origins:  list[str] = []   # JSON list, e.g. ["https://app.example.com"]
    allowed_hosts: list[str] = []   # TrustedHostMiddleware, production only

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def privacy_configured(self) -> bool:
        return bool(self.privacy_api_url.strip())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
