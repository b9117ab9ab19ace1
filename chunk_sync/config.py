"""
Configuration for chunk_sync.

Uses Pydantic BaseSettings to load from environment variables (and a local
.env file) with sensible defaults. Credentials are optional at load time so
that offline commands (chunk, --chunk-only) work without them; network
commands call require_credentials() before doing anything else.
"""
import os
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from .errors import ConfigError


class Settings(BaseSettings):
    """Configuration settings loaded from environment variables."""

    # Credentials
    VOYAGE_API_KEY: Optional[str] = Field(default=None, description="Voyage AI API key")
    TURBOPUFFER_API_KEY: Optional[str] = Field(default=None, description="turbopuffer API key")

    # Embedding service
    VOYAGE_URL: str = Field(default="https://api.voyageai.com/v1/embeddings", description="Voyage embeddings endpoint")
    VOYAGE_MODEL: str = Field(default="voyage-code-3", description="Embedding model")
    EMBED_BATCH_SIZE: int = Field(default=100, description="Chunks per embedding request (max 100)")
    EMBED_CONCURRENCY: int = Field(default=3, description="Embedding batches in flight")

    # Vector store
    TURBOPUFFER_REGION: Optional[str] = Field(default=None, description="turbopuffer region (closest region when unset)")
    STORE_BATCH_SIZE: int = Field(default=1000, description="Records per write request (max 1000)")
    STORE_CONCURRENCY: int = Field(default=4, description="Write requests in flight")
    STORE_PAGE_SIZE: int = Field(default=1200, description="Rows per page when listing a namespace")
    NAMESPACE_PREFIX: str = Field(default="tg", description="Prefix for derived namespace names")

    # HTTP
    REQUEST_TIMEOUT: int = Field(default=60, description="HTTP request timeout in seconds")

    # Chunking
    MAX_FILE_BYTES: int = Field(default=1_000_000, description="Skip files larger than this")
    CHUNK_WORKERS: int = Field(default_factory=lambda: os.cpu_count() or 4, description="Parser threads")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"

    @field_validator("EMBED_BATCH_SIZE")
    @classmethod
    def validate_embed_batch_size(cls, v):
        if not 1 <= v <= 100:
            raise ValueError("EMBED_BATCH_SIZE must be between 1 and 100")
        return v

    @field_validator("STORE_BATCH_SIZE")
    @classmethod
    def validate_store_batch_size(cls, v):
        if not 1 <= v <= 1000:
            raise ValueError("STORE_BATCH_SIZE must be between 1 and 1000")
        return v

    @field_validator("EMBED_CONCURRENCY", "STORE_CONCURRENCY", "CHUNK_WORKERS", "STORE_PAGE_SIZE")
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    def require_credentials(self) -> None:
        """Raise ConfigError unless both service keys are present."""
        missing = [
            name
            for name in ("VOYAGE_API_KEY", "TURBOPUFFER_API_KEY")
            if not getattr(self, name)
        ]
        if missing:
            raise ConfigError(f"Missing required environment variable(s): {', '.join(missing)}")


# Singleton instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create settings singleton."""
    global _settings
    if _settings is None:
        from dotenv import load_dotenv
        load_dotenv()
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Force reload settings (useful for testing)."""
    global _settings
    from dotenv import load_dotenv
    load_dotenv(override=True)
    _settings = Settings()
    return _settings
