"""Configuration management for the sheet nesting engine."""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="NEST_",
        extra="ignore",
    )

    # Nesting defaults, applied wherever a caller leaves a field unset
    default_spacing: float = Field(default=2.0, ge=0, description="Gap between parts in mm")
    default_rotation_steps: int = Field(default=4, description="Rotation steps (1, 2 or 4)")
    default_iterations: int = Field(default=100, ge=1, description="Optimizer generations")
    default_population_size: int = Field(default=50, ge=2, description="Optimizer population size")
    default_mutation_rate: float = Field(default=0.1, ge=0, le=1, description="Optimizer mutation probability")
    default_backend: str = Field(default="auto", description="auto, heuristic or advanced")

    # Advanced optimizer
    optimizer: str = Field(default="genetic", description="Optimizer backend: genetic or none")
    random_seed: Optional[int] = Field(default=None, description="Seed for reproducible optimizer runs")

    # Logging
    log_level: str = Field(default="INFO", description="Log level for the sheetnest logger")


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def configure(settings: Settings) -> None:
    """Override global settings."""
    global _settings
    _settings = settings
