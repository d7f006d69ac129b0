"""
Application settings loaded from environment variables.

Uses pydantic-settings for validation and type safety.
Batch sizes and the invocation ceiling live here so the same pipeline code
runs under a time-limited function host or a long-running worker.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """
    Application settings.

    All values loaded from .env file or environment variables.
    Validation happens automatically on startup.
    """

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),  # Check current dir, then parent
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"  # Ignore extra env vars
    )

    # ===================
    # SUPABASE
    # ===================
    supabase_url: str = Field(
        ...,
        description="Supabase project URL"
    )
    supabase_key: str = Field(
        ...,
        description="Supabase anon/public key"
    )
    supabase_service_key: Optional[str] = Field(
        None,
        description="Supabase service role key (for admin operations)"
    )
    import_bucket: str = Field(
        default="ai-import",
        description="Storage bucket holding uploaded CSVs and image archives"
    )
    image_bucket: str = Field(
        default="products",
        description="Storage bucket receiving processed product images"
    )

    # ===================
    # AI ENRICHMENT
    # ===================
    anthropic_api_key: Optional[str] = Field(
        None,
        description="Anthropic API key (enrichment is disabled without it)"
    )
    ai_model: str = Field(
        default="claude-sonnet-4-20250514",
        description="Model used for product enrichment"
    )
    ai_max_tokens: int = Field(
        default=8192,
        ge=256,
        le=64000,
        description="Maximum tokens in one enrichment response"
    )
    ai_temperature: float = Field(
        default=0.3,
        ge=0,
        le=1,
        description="Sampling temperature for enrichment"
    )
    ai_timeout_seconds: float = Field(
        default=40.0,
        gt=0,
        le=600,
        description="Timeout for one model call (must stay under the invocation ceiling)"
    )

    # ===================
    # BATCH SIZING
    # ===================
    enrichment_batch_size: int = Field(
        default=50,
        ge=1,
        le=100,
        description="Default drafts per enrichment batch"
    )
    image_match_batch_size: int = Field(
        default=100,
        ge=1,
        le=500,
        description="Default drafts per image-matching batch"
    )
    image_process_batch_size: int = Field(
        default=50,
        ge=1,
        le=100,
        description="Default drafts per image-processing batch"
    )
    invocation_ceiling_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Hard wall-clock limit the host applies to one invocation"
    )
    invocation_headroom_seconds: float = Field(
        default=10.0,
        ge=0,
        description="Time reserved at the end of an invocation for persisting results"
    )
    storage_timeout_seconds: float = Field(
        default=20.0,
        gt=0,
        le=600,
        description="Timeout for blob storage get/put"
    )

    # ===================
    # MATCHING
    # ===================
    image_match_threshold: float = Field(
        default=0.7,
        ge=0,
        le=1,
        description="Minimum length-ratio score to accept a substring image match"
    )
    master_match_threshold: float = Field(
        default=0.7,
        ge=0,
        le=1,
        description="Minimum score to accept a fuzzy master-list match"
    )
    master_cache_ttl_seconds: int = Field(
        default=300,
        ge=0,
        le=3600,
        description="How long loaded master lists are reused"
    )

    # ===================
    # IMAGES
    # ===================
    image_max_width: int = Field(
        default=800,
        ge=64,
        le=4096,
        description="Images wider than this are scaled down"
    )
    image_quality: int = Field(
        default=85,
        ge=1,
        le=100,
        description="WebP output quality"
    )
    watermark_path: Optional[str] = Field(
        None,
        description="Optional watermark image composited onto product images"
    )
    watermark_opacity: float = Field(
        default=0.3,
        ge=0,
        le=1,
        description="Watermark opacity"
    )
    watermark_width: int = Field(
        default=150,
        ge=16,
        le=1024,
        description="Maximum watermark width in pixels"
    )

    # ===================
    # APP SETTINGS
    # ===================
    environment: str = Field(
        default="development",
        pattern="^(development|staging|production)$",
        description="Application environment"
    )
    debug: bool = Field(
        default=True,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Logging level"
    )
    api_host: str = Field(
        default="0.0.0.0",
        description="API host"
    )
    api_port: int = Field(
        default=8000,
        ge=1000,
        le=65535,
        description="API port"
    )
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Origins allowed to call the API (admin frontend)"
    )

    # ===================
    # COMPUTED PROPERTIES
    # ===================
    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def ai_configured(self) -> bool:
        """Check if the enrichment model is configured."""
        return bool(self.anthropic_api_key)

    @property
    def batch_time_budget_seconds(self) -> float:
        """Seconds a batch loop may spend before it stops starting new drafts."""
        return max(self.invocation_ceiling_seconds - self.invocation_headroom_seconds, 0.0)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload.

    Returns:
        Settings: Application settings

    Raises:
        ValidationError: If required env vars are missing or invalid
    """
    return Settings()


# For convenient imports: from config.settings import settings
settings = get_settings()
