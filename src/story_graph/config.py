"""Configuration management for Story Graph."""

from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RuleOverride(BaseModel):
    """Per-rule toggle applied when the consistency engine is built."""

    enabled: bool | None = None
    priority: int | None = None


class Settings(BaseSettings):
    """Application settings, loaded from environment and .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="STORY_GRAPH_",
        env_nested_delimiter="__",
    )

    # Paths
    data_dir: Path = Field(default=Path("data"))

    # Logging
    log_level: str = Field(default="INFO")

    # Search
    search_limit: int = Field(default=10, description="Default result cap for name lookups")
    fuzzy_threshold: int = Field(default=85, description="Minimum rapidfuzz ratio for a fuzzy name hit")

    # Consistency checking
    auto_fix_enabled: bool = Field(default=True)
    max_correction_passes: int = Field(
        default=3, ge=0, description="Auto-fixes allowed per snapshot evaluation"
    )
    rule_overrides: dict[str, RuleOverride] = Field(default_factory=dict)

    # Bootstrap
    create_default_views: bool = Field(default=True)

    @property
    def state_file(self) -> Path:
        return self.data_dir / "story_graph_state.json"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
