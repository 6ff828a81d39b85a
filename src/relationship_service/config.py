"""
Configuration for the relationship graph service.

Each concern gets its own pydantic-settings model with an environment
prefix, so a deployment can override any field without a config file:

    RELGRAPH_STORE_DB_PATH=/var/lib/bot/relationships.db
    RELGRAPH_MUTATION_PENDING_TTL_SECONDS=3600
    RELGRAPH_LOG_LEVEL=DEBUG
"""

import logging
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PurgePolicy = Literal["soft", "hard"]


class StoreSettings(BaseSettings):
    """SQLite relationship store location and locking behaviour."""

    model_config = SettingsConfigDict(env_prefix="RELGRAPH_STORE_", extra="ignore")

    db_path: Path = Field(default=Path.home() / ".local" / "share" / "relationship_service" / "relationships.db")
    busy_timeout_seconds: float = Field(default=5.0, gt=0.0, le=300.0)


class MutationSettings(BaseSettings):
    """Proposal lifecycle and purge policy."""

    model_config = SettingsConfigDict(env_prefix="RELGRAPH_MUTATION_", extra="ignore")

    # A pending proposal dissolves if the counterpart does not accept in time
    pending_ttl_seconds: float = Field(default=86_400.0, gt=0.0)
    sweep_interval_seconds: float = Field(default=60.0, gt=0.0)
    sweeper_enabled: bool = True

    # soft: dissolve and keep edge rows for audit; hard: delete the user's edge rows
    purge_policy: PurgePolicy = "soft"


class LoggingSettings(BaseSettings):
    """Log level applied by configure_logging()."""

    model_config = SettingsConfigDict(env_prefix="RELGRAPH_LOG_", extra="ignore")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class RelationshipSettings(BaseSettings):
    """Top-level settings for one relationship service process."""

    model_config = SettingsConfigDict(extra="ignore")

    store: StoreSettings = Field(default_factory=StoreSettings)
    mutation: MutationSettings = Field(default_factory=MutationSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def configure_logging(config: LoggingSettings | None = None) -> None:
    """Apply the configured log level to the root logger."""
    config = config or settings.logging
    logging.basicConfig(level=getattr(logging, config.level))


settings = RelationshipSettings()
