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
    # Upstream provider (OpenAI-compatible)
    # ------------------------------------------------------------------
    openai_api_key:      str = ""          # empty = ConfigurationError on chat calls
    openai_organization: str = ""
    openai_base_url:     str = "https://api.openai.com/v1"

    upstream_timeout_seconds: float = 60.0

    # ------------------------------------------------------------------
    # Request normalisation
    # ------------------------------------------------------------------
    max_input_chars:        int   = 8_000   # truncation budget (characters)
    max_tokens_out:         int   = 4_000   # ceiling for max_tokens
    default_max_tokens:     int   = 1_000
    default_temperature:    float = 0.7
    large_prompt_threshold: int   = 8_000   # chars → high-capacity model

    # ------------------------------------------------------------------
    # Response cache
    # ------------------------------------------------------------------
    cache_capacity:  int = 500
    cache_max_bytes: int = 100 * 1024       # larger bodies are never cached

    # ------------------------------------------------------------------
    # Retry / backoff
    # ------------------------------------------------------------------
    retry_max_attempts:    int   = 3
    retry_base_delay:      float = 1.0      # seconds × attempt index
    rate_limit_multiplier: float = 2.0      # extra factor on HTTP 429

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------
    upload_dir:       str = "uploads"
    max_upload_bytes: int = 10 * 1024 * 1024
    max_files:        int = 3

    file_cleanup_delay_seconds:    float = 60.0
    upload_max_age_seconds:        float = 3_600.0
    upload_sweep_interval_seconds: float = 1_800.0

    excerpt_chars:       int   = 2_000
    ocr_timeout_seconds: float = 120.0

    # Used to build image URLs the upstream can fetch; falls back to the
    # request's own base URL when empty.
    public_base_url: str = ""

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------
    app_env:          str  = "production"   # development | staging | production
    debug:            bool = False
    maintenance_mode: bool = False

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def has_upstream_credentials(self) -> bool:
        return bool(self.openai_api_key)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
