"""Application configuration."""

import os

from pydantic_settings import BaseSettings, SettingsConfigDict

from canvas_studio.domain.catalog import FLASH_IMAGE_MODEL, PRO_IMAGE_MODEL
from canvas_studio.domain.errors import QuotaRules

_ENVIRONMENT = os.getenv("ENVIRONMENT", "local")

ALLOWED_MULTIPLIERS = frozenset({1, 2, 4, 8})


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    ai_provider: str = "banana-2.5"
    image_size: str | None = None
    aspect_ratio: str | None = None
    auto_mode_multiplier: int = 1
    auto_download: bool = False
    download_dir: str = "downloads"
    enable_web_search: bool = False

    provider_backend: str = "backend"
    backend_base_url: str = "http://localhost:4000/api"
    backend_api_token: str | None = None
    openai_api_key: str | None = None
    openai_image_model: str = "gpt-image-1"
    openai_text_model: str = "gpt-5.2"
    supabase_url: str
    supabase_service_key: str
    storage_bucket: str = "canvas-assets"
    session_set_id: str = "default"
    environment: str = _ENVIRONMENT
    log_level: str = "INFO"

    placement_offset_horizontal: float = 522.0
    placement_offset_vertical: float = 552.0
    placement_max_attempts: int = 20
    placeholder_base_edge: float = 512.0
    placeholder_min_edge: float = 96.0
    progress_initial: float = 15.0
    progress_ceiling: float = 95.0
    progress_duration_ticks: int = 120
    progress_tick_seconds: float = 1.0
    fallback_min_progress: float = 35.0
    empty_result_attempts: int = 3
    empty_result_retry_delay_seconds: float = 0.8
    parallel_stagger_seconds: float = 0.2
    persist_debounce_seconds: float = 0.3
    inline_media_limit: int = 150_000
    legacy_inline_threshold: int = 350_000
    thumbnail_max_edge: int = 512
    thumbnail_quality: int = 82
    demote_grace_seconds: float = 3.0
    upload_prefix: str = "ai-chat-history/"
    max_messages: int = 50
    max_operations: int = 20
    max_image_history: int = 10
    max_recent_prompts: int = 10
    session_timeout_seconds: int = 86400

    quota_code_patterns: list[str] = ["429", "rate", "quota"]
    quota_message_patterns: list[str] = [
        "quota",
        "rate limit",
        "resource_exhausted",
        "429",
    ]
    fallback_providers: list[str] = ["gemini", "gemini-pro"]
    fallback_source_model: str = PRO_IMAGE_MODEL
    fallback_target_model: str = FLASH_IMAGE_MODEL

    model_config = SettingsConfigDict(
        env_file=(f".env.{_ENVIRONMENT}", ".env"),
        extra="ignore",
    )

    def quota_rules(self) -> QuotaRules:
        """Build the quota classification rules from settings."""
        return QuotaRules(
            code_patterns=tuple(self.quota_code_patterns),
            message_patterns=tuple(self.quota_message_patterns),
        )


def parse_multiplier(raw: int | str | None) -> int:
    """Parse the parallel-generation multiplier, defaulting to 1."""
    if raw is None:
        return 1
    if isinstance(raw, str):
        cleaned = raw.strip().lower().removeprefix("x")
        if not cleaned.isdigit():
            raise ValueError(f"Invalid multiplier: {raw!r}")
        raw = int(cleaned)
    if raw not in ALLOWED_MULTIPLIERS:
        raise ValueError(f"Multiplier must be one of {sorted(ALLOWED_MULTIPLIERS)}")
    return raw
