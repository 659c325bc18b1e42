"""Application configuration using pydantic-settings."""
from functools import lru_cache
from urllib.parse import urlparse

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application and worker settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Database
    database_url: str
    db_pool_size: int = Field(default=10, validation_alias="DB_POOL_SIZE")
    db_max_overflow: int = Field(default=10, validation_alias="DB_MAX_OVERFLOW")

    # Development mode - bypasses the identity header and uses a local dev user
    dev_mode: bool = Field(default=False, validation_alias="DEV_MODE")

    # Header set by the upstream auth proxy with the caller's external user id
    user_header: str = Field(default="X-Forwarded-User", validation_alias="USER_HEADER")

    # CORS - comma-separated list of allowed origins (stored as string, parsed via property)
    cors_origins_str: str = Field(
        default="http://localhost:3000",
        validation_alias="CORS_ORIGINS",
    )

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    # Redis - job queue broker
    redis_url: str = Field(default="redis://localhost:6379", validation_alias="REDIS_URL")
    redis_pool_size: int = Field(default=20, validation_alias="REDIS_POOL_SIZE")

    # Job queue policy
    job_max_attempts: int = Field(default=5, ge=1, validation_alias="JOB_MAX_ATTEMPTS")
    job_backoff_base_seconds: float = Field(
        default=2.0, gt=0, validation_alias="JOB_BACKOFF_BASE_SECONDS",
    )
    job_backoff_max_seconds: float = Field(
        default=300.0, gt=0, validation_alias="JOB_BACKOFF_MAX_SECONDS",
    )
    job_timeout_seconds: float = Field(default=120.0, gt=0, validation_alias="JOB_TIMEOUT_SECONDS")
    job_lease_seconds: int = Field(default=600, ge=1, validation_alias="JOB_LEASE_SECONDS")
    job_poll_interval_seconds: float = Field(
        default=1.0, gt=0, validation_alias="JOB_POLL_INTERVAL_SECONDS",
    )
    outbox_relay_interval_seconds: float = Field(
        default=5.0, gt=0, validation_alias="OUTBOX_RELAY_INTERVAL_SECONDS",
    )

    # Crawler
    crawler_num_workers: int = Field(default=1, ge=1, validation_alias="CRAWLER_NUM_WORKERS")
    crawler_navigate_timeout_seconds: float = Field(
        default=30.0, gt=0, validation_alias="CRAWLER_NAVIGATE_TIMEOUT_SECONDS",
    )
    crawler_job_timeout_seconds: float = Field(
        default=60.0, gt=0, validation_alias="CRAWLER_JOB_TIMEOUT_SECONDS",
    )

    # Inference (OpenAI-compatible chat completions: OpenAI or Ollama)
    inference_num_workers: int = Field(default=1, ge=1, validation_alias="INFERENCE_NUM_WORKERS")
    openai_api_key: str = Field(default="", validation_alias="OPENAI_API_KEY")
    openai_base_url: str = Field(
        default="https://api.openai.com/v1", validation_alias="OPENAI_BASE_URL",
    )
    ollama_base_url: str = Field(default="", validation_alias="OLLAMA_BASE_URL")
    inference_text_model: str = Field(
        default="gpt-4o-mini", validation_alias="INFERENCE_TEXT_MODEL",
    )
    inference_image_model: str = Field(
        default="gpt-4o-mini", validation_alias="INFERENCE_IMAGE_MODEL",
    )
    inference_language: str = Field(default="english", validation_alias="INFERENCE_LANGUAGE")
    inference_max_content_chars: int = Field(
        default=6000, ge=100, validation_alias="INFERENCE_MAX_CONTENT_CHARS",
    )
    inference_timeout_seconds: float = Field(
        default=60.0, gt=0, validation_alias="INFERENCE_TIMEOUT_SECONDS",
    )

    # Search engine (Meilisearch)
    search_num_workers: int = Field(default=1, ge=1, validation_alias="SEARCH_NUM_WORKERS")
    meili_addr: str = Field(default="", validation_alias="MEILI_ADDR")
    meili_master_key: str = Field(default="", validation_alias="MEILI_MASTER_KEY")
    meili_index: str = Field(default="bookmarks", validation_alias="MEILI_INDEX")

    # Video extraction (optional)
    video_enabled: bool = Field(default=False, validation_alias="VIDEO_ENABLED")
    video_num_workers: int = Field(default=1, ge=1, validation_alias="VIDEO_NUM_WORKERS")
    video_timeout_seconds: float = Field(
        default=300.0, gt=0, validation_alias="VIDEO_TIMEOUT_SECONDS",
    )
    video_max_size_mb: int = Field(default=50, ge=1, validation_alias="VIDEO_MAX_SIZE_MB")
    yt_dlp_binary: str = Field(default="yt-dlp", validation_alias="YT_DLP_BINARY")

    # Assets
    assets_dir: str = Field(default="./data/assets", validation_alias="ASSETS_DIR")
    max_asset_size_mb: int = Field(default=4, ge=1, validation_alias="MAX_ASSET_SIZE_MB")

    # Field length limits
    max_text_edit_length: int = Field(default=2000, validation_alias="MAX_TEXT_EDIT_LENGTH")
    max_content_length: int = Field(default=512_000, validation_alias="MAX_CONTENT_LENGTH")
    max_note_length: int = Field(default=10_000, validation_alias="MAX_NOTE_LENGTH")

    @model_validator(mode="after")
    def validate_dev_mode_security(self) -> "Settings":
        """
        Prevent DEV_MODE from being enabled with a production database.

        DEV_MODE skips the identity header entirely, so it must only be used
        against local development databases.
        """
        if not self.dev_mode:
            return self

        parsed = urlparse(self.database_url)
        if parsed.scheme.startswith("sqlite"):
            return self
        hostname = parsed.hostname or ""

        local_hosts = {"localhost", "127.0.0.1", "0.0.0.0", "::1"}
        if hostname.lower() not in local_hosts:
            raise ValueError(
                f"DEV_MODE cannot be enabled with a non-local database. "
                f"Database host '{hostname}' appears to be a production database.",
            )

        return self

    @property
    def cors_origins(self) -> list[str]:
        """Parse comma-separated CORS origins string into a list."""
        if not self.cors_origins_str:
            return []
        return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]

    @property
    def inference_base_url(self) -> str:
        """Chat completions base URL; Ollama wins when configured."""
        if self.ollama_base_url:
            return self.ollama_base_url.rstrip("/") + "/v1"
        return self.openai_base_url.rstrip("/")

    @property
    def inference_configured(self) -> bool:
        """Whether an inference provider is available."""
        return bool(self.openai_api_key or self.ollama_base_url)

    @property
    def search_configured(self) -> bool:
        """Whether a search engine address is configured."""
        return bool(self.meili_addr)

    @property
    def max_asset_size_bytes(self) -> int:
        """Maximum accepted upload size in bytes."""
        return self.max_asset_size_mb * 1024 * 1024


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
