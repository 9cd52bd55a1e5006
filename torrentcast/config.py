"""Configuration management using pydantic-settings.

All environment variables are loaded and validated here.
Sensitive data (API keys) are stored as SecretStr to prevent logging.

Every field has a default so the package can be imported without any
configuration; the doctor command reports what is missing.
"""

import tempfile
from pathlib import Path

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _validate_http_url(value: str, field_name: str) -> str:
    """Check that a URL uses http(s) and strip the trailing slash."""
    value = value.strip()
    if not value.startswith(("http://", "https://")):
        raise ValueError(f"{field_name} must start with http:// or https://")
    return value.rstrip("/")


class IndexerConfig(BaseModel):
    """A single Torznab indexer endpoint."""

    name: str = Field(..., min_length=1, description="Display name of the indexer")
    url: str = Field(..., description="Torznab base URL (the /api path is appended)")
    api_key: SecretStr = Field(..., description="Indexer API key")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate indexer URL scheme."""
        return _validate_http_url(v, "indexer url")


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Variables use the TORRENTCAST_ prefix, e.g. TORRENTCAST_RACE_WIDTH=3.
    List fields (indexers, player_args) are given as JSON.
    """

    model_config = SettingsConfigDict(
        env_prefix="TORRENTCAST_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Indexers
    indexers: list[IndexerConfig] = Field(
        default_factory=list,
        description="Explicit Torznab indexers",
    )

    prowlarr_url: str | None = Field(
        default=None,
        description="Prowlarr base URL used to discover indexers (optional)",
    )

    prowlarr_api_key: SecretStr | None = Field(
        default=None,
        description="Prowlarr API key (optional)",
    )

    search_limit: int = Field(
        default=100,
        description="Maximum results requested per indexer",
        ge=1,
    )

    # Metadata
    tmdb_api_key: SecretStr | None = Field(
        default=None,
        description="TMDB API key; metadata enrichment is disabled without it",
    )

    metadata_match_threshold: float = Field(
        default=0.6,
        description="Similarity below which a metadata match is ignored",
        ge=0.0,
        le=1.0,
    )

    # Torrent engine
    engine_url: str = Field(
        default="http://127.0.0.1:3030",
        description="Base URL of the torrent engine HTTP API",
    )

    temp_dir: Path = Field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "torrentcast",
        description="Scratch directory for partial downloads",
    )

    ready_min_bytes: int = Field(
        default=10 * 1024 * 1024,
        description="Leading bytes of the video file required before playback starts",
        ge=1,
    )

    race_width: int = Field(
        default=3,
        description="Number of candidates raced concurrently (0 disables racing)",
        ge=0,
    )

    # Player
    player_command: str = Field(
        default="mpv",
        description="External media player executable",
    )

    player_args: list[str] = Field(
        default_factory=list,
        description="Extra arguments passed to the player",
    )

    # Timeouts (seconds)
    indexer_timeout: float = Field(default=15.0, gt=0)
    metadata_timeout: float = Field(default=10.0, gt=0)
    engine_timeout: float = Field(default=30.0, gt=0)
    engine_add_timeout: float = Field(default=60.0, gt=0)
    ready_timeout: float = Field(default=90.0, gt=0)
    ready_poll_interval: float = Field(default=0.5, gt=0)
    player_exit_timeout: float = Field(default=6 * 3600.0, gt=0)
    player_kill_grace: float = Field(default=3.0, gt=0)

    # Retry policy for transient network errors (indexers and metadata only)
    network_max_retries: int = Field(default=3, ge=1)
    network_retry_backoff: float = Field(default=0.5, ge=0)

    # Application Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    environment: str = Field(
        default="development",
        description="Environment name (development, production)",
    )

    log_file: Path | None = Field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "torrentcast.log",
        description="Log destination; stderr when unset",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard levels."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return v_upper

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment is development or production."""
        allowed = {"development", "production"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v_lower

    @field_validator("engine_url")
    @classmethod
    def validate_engine_url(cls, v: str) -> str:
        """Validate engine URL scheme."""
        return _validate_http_url(v, "engine_url")

    @field_validator("prowlarr_url")
    @classmethod
    def validate_prowlarr_url(cls, v: str | None) -> str | None:
        """Validate Prowlarr URL scheme when provided."""
        if v is None or not v.strip():
            return None
        return _validate_http_url(v, "prowlarr_url")

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"

    @property
    def has_prowlarr(self) -> bool:
        """Check if Prowlarr discovery is configured."""
        return all([self.prowlarr_url, self.prowlarr_api_key])

    @property
    def has_tmdb(self) -> bool:
        """Check if metadata enrichment is configured."""
        return self.tmdb_api_key is not None

    def get_safe_dict(self) -> dict[str, object]:
        """Get configuration as dict with sensitive values masked.

        Returns:
            Dictionary with SecretStr values shown as '***'
        """
        result: dict[str, object] = {}
        for field_name in type(self).model_fields:
            value = getattr(self, field_name)

            if isinstance(value, SecretStr):
                result[field_name] = "***"
            elif field_name == "indexers":
                result[field_name] = [{"name": i.name, "url": i.url, "api_key": "***"} for i in value]
            elif isinstance(value, Path):
                result[field_name] = str(value)
            else:
                result[field_name] = value

        return result


# Global settings instance
settings = Settings()
