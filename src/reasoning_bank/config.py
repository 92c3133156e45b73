"""Configuration settings for the reasoning bank."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Reasoning bank configuration."""

    # Database
    db_path: Path = Field(
        default=Path.home() / ".reasoning-bank" / "memories.db",
        description="Path to SQLite database",
    )

    # Embeddings
    embedding_model: str = Field(
        default="sentence-transformers/all-MiniLM-L6-v2",
        description="Sentence transformer model for embeddings",
    )
    embedding_dim: int = Field(default=384, description="Embedding dimension")
    embedding_backend: str = Field(
        default="sentence-transformers",
        description=(
            "Embedding backend: 'sentence-transformers' (default) or "
            "'mock' (deterministic word-hash vectors, no model download)"
        ),
    )
    embedding_cache_size: int = Field(
        default=1000, description="Number of embeddings kept in the LRU cache"
    )

    # Vector store
    vector_backend: str = Field(
        default="sqlite", description="Vector store backend: 'sqlite' or 'memory'"
    )
    isolation_mode: str = Field(
        default="collection",
        description=(
            "Tenant isolation: 'collection' (one collection per project) or "
            "'shared' (single collection filtered by project_id)"
        ),
    )
    default_project_id: str = Field(
        default="default", description="Project used when a tool call omits project_id"
    )

    # Confidence
    min_confidence: float = Field(
        default=0.7, description="Memories below this confidence are never returned by search"
    )
    explicit_record_confidence: float = Field(
        default=0.8, description="Declared confidence for explicitly recorded memories"
    )
    recent_signal_window_days: float = Field(
        default=30.0,
        description="Signals newer than this are read raw; older ones are rolled up",
    )
    learning_window_hours: float = Field(
        default=24.0,
        description="Signals in this window contribute to project weight learning",
    )
    record_usage_signals: bool = Field(
        default=True, description="Store a positive usage signal for every search hit"
    )

    # Search
    default_search_limit: int = Field(default=5, description="Default search result limit")
    max_search_limit: int = Field(default=100, description="Maximum results per search")
    search_overfetch_min: int = Field(
        default=30, description="Minimum candidates fetched before post-filtering"
    )
    search_overfetch_max: int = Field(
        default=200, description="Maximum candidates fetched before post-filtering"
    )

    # Secret scrubbing
    scrub_enabled: bool = Field(
        default=True, description="Redact secrets before storage and on every search result"
    )

    # Input limits
    max_content_length: int = Field(
        default=100_000, description="Maximum content length for memories"
    )
    max_tags: int = Field(default=20, description="Maximum tags per memory")

    # Logging
    log_level: str = Field(default="INFO", description="Log level: DEBUG, INFO, WARNING, ERROR")
    log_format: str = Field(
        default="pretty", description="Log format: 'pretty' (human-readable) or 'json' (structured)"
    )

    model_config = {"env_prefix": "REASONING_BANK_"}


def get_settings() -> Settings:
    """Get settings instance."""
    return Settings()


def ensure_data_dir(settings: Settings) -> None:
    """Ensure data directory exists."""
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)
