"""
Application settings loaded from environment variables.

Uses pydantic-settings for validation and type safety.
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
        description="Supabase service role key (used for storage uploads)"
    )
    products_table: str = Field(
        default="products",
        description="Table holding merchant products"
    )
    product_images_bucket: str = Field(
        default="product-images",
        description="Storage bucket for product images"
    )
    placeholder_image_url: str = Field(
        default="https://placehold.co/800x800/png?text=Sin+imagen",
        description="Image URL for products intentionally left without a photo"
    )

    # ===================
    # BATCH WRITES
    # ===================
    ingestion_batch_size: int = Field(
        default=500,
        ge=1,
        le=5000,
        description="Records per persist call"
    )
    resubmit_failed_batches: bool = Field(
        default=False,
        description="Give failed batches one more pass after all other batches complete"
    )

    # ===================
    # RETRY / BACKOFF
    # ===================
    retry_max_attempts: int = Field(
        default=5,
        ge=1,
        le=10,
        description="Attempts per network call, including the first"
    )
    retry_base_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        le=60,
        description="Delay before the first retry; doubles on each attempt"
    )
    retry_max_delay_seconds: float = Field(
        default=30.0,
        ge=0,
        le=300,
        description="Cap on the exponential delay (jitter is added on top)"
    )
    retry_jitter_seconds: float = Field(
        default=1.0,
        ge=0,
        le=10,
        description="Upper bound of the uniform random jitter"
    )

    # ===================
    # MATCHING
    # ===================
    match_acceptance_threshold: float = Field(
        default=0.4,
        ge=0,
        le=1,
        description="Minimum fuzzy coefficient for an automatic image match"
    )

    # ===================
    # MEDIA
    # ===================
    compression_threshold_bytes: int = Field(
        default=1_000_000,
        ge=10_000,
        description="Images above this size are recompressed"
    )
    compression_max_dimension: int = Field(
        default=1920,
        ge=256,
        le=8192,
        description="Long edge limit in pixels for recompressed images"
    )
    compression_quality: float = Field(
        default=0.8,
        gt=0,
        le=1,
        description="Initial encoder quality"
    )
    compression_min_quality: float = Field(
        default=0.4,
        gt=0,
        le=1,
        description="Lowest quality tried before giving up on the size budget"
    )
    compression_format: str = Field(
        default="WEBP",
        pattern="^(WEBP|JPEG)$",
        description="Output codec for recompressed images"
    )

    # ===================
    # UPLOAD LIMITS
    # ===================
    max_image_bytes: int = Field(
        default=5_000_000,
        ge=100_000,
        description="Largest accepted image file"
    )
    max_sheet_bytes: int = Field(
        default=10_000_000,
        ge=10_000,
        description="Largest accepted product sheet"
    )
    max_images_per_upload: int = Field(
        default=500,
        ge=1,
        le=5000,
        description="Maximum images in one bulk upload"
    )
    max_products_per_upload: int = Field(
        default=1000,
        ge=1,
        le=10000,
        description="Maximum product rows in one bulk upload"
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
        description="Allowed browser origins (JSON list in env)"
    )

    # ===================
    # COMPUTED PROPERTIES
    # ===================
    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"


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
