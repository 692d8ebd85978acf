"""
Persona - Configuration

Centralized configuration for the person registry.
Uses environment variables (optionally from a ``.env`` file) with sensible
defaults.
"""
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Environment(Enum):
    """Deployment environments."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class StoreBackend(Enum):
    """Where events and read models are kept."""
    MEMORY = "memory"
    POSTGRES = "postgres"


@dataclass
class DatabaseConfig:
    """Database configuration."""
    # PostgreSQL settings
    postgres_host: str = field(default_factory=lambda: os.getenv("POSTGRES_HOST", "localhost"))
    postgres_port: int = field(default_factory=lambda: int(os.getenv("POSTGRES_PORT", "5432")))
    postgres_user: str = field(default_factory=lambda: os.getenv("POSTGRES_USER", "persona"))
    postgres_password: str = field(default_factory=lambda: os.getenv("POSTGRES_PASSWORD", "password"))
    postgres_database: str = field(default_factory=lambda: os.getenv("POSTGRES_DATABASE", "persona"))

    # Redis settings
    redis_host: str = field(default_factory=lambda: os.getenv("REDIS_HOST", "localhost"))
    redis_port: int = field(default_factory=lambda: int(os.getenv("REDIS_PORT", "6379")))
    redis_password: str = field(default_factory=lambda: os.getenv("REDIS_PASSWORD", ""))
    redis_db: int = field(default_factory=lambda: int(os.getenv("REDIS_DB", "0")))

    # Connection pool settings
    pool_min_size: int = field(default_factory=lambda: int(os.getenv("DB_POOL_MIN_SIZE", "2")))
    pool_max_size: int = field(default_factory=lambda: int(os.getenv("DB_POOL_MAX_SIZE", "10")))

    @property
    def postgres_url(self) -> str:
        """Get PostgreSQL connection URL."""
        return f"postgresql://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_database}"

    @property
    def redis_url(self) -> str:
        """Get Redis connection URL."""
        auth = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"


@dataclass
class EventStoreConfig:
    """Event log settings."""
    backend: StoreBackend = field(
        default_factory=lambda: StoreBackend(os.getenv("EVENT_STORE_BACKEND", "memory"))
    )
    # Snapshot every N versions; 0 disables snapshots
    snapshot_interval: int = field(
        default_factory=lambda: int(os.getenv("EVENT_STORE_SNAPSHOT_INTERVAL", "50"))
    )


@dataclass
class CommandConfig:
    """Write-path settings."""
    publish_retries: int = field(
        default_factory=lambda: int(os.getenv("COMMAND_PUBLISH_RETRIES", "3"))
    )
    publish_retry_delay: float = field(
        default_factory=lambda: float(os.getenv("COMMAND_PUBLISH_RETRY_DELAY", "0.1"))
    )
    merge_threshold: float = field(
        default_factory=lambda: float(os.getenv("COMMAND_MERGE_THRESHOLD", "0.8"))
    )
    persist_retries: int = field(
        default_factory=lambda: int(os.getenv("COMMAND_PERSIST_RETRIES", "3"))
    )
    persist_retry_delay: float = field(
        default_factory=lambda: float(os.getenv("COMMAND_PERSIST_RETRY_DELAY", "0.05"))
    )

    def __post_init__(self) -> None:
        if self.publish_retries < 1:
            raise ValueError("publish_retries must be >= 1")
        if self.persist_retries < 1:
            raise ValueError("persist_retries must be >= 1")
        if not 0.0 <= self.merge_threshold <= 1.0:
            raise ValueError("merge_threshold must be in [0, 1]")


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    format: str = field(default_factory=lambda: os.getenv("LOG_FORMAT", "console"))
    service_name: str = field(default_factory=lambda: os.getenv("SERVICE_NAME", "persona"))


@dataclass
class Config:
    """Main configuration class combining all sub-configs."""
    env: Environment = field(default_factory=lambda: Environment(os.getenv("ENVIRONMENT", "development")))
    debug: bool = field(default_factory=lambda: os.getenv("DEBUG", "false").lower() == "true")

    # Sub-configurations
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    event_store: EventStoreConfig = field(default_factory=EventStoreConfig)
    commands: CommandConfig = field(default_factory=CommandConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.env == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.env == Environment.DEVELOPMENT

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary (excluding sensitive values)."""
        return {
            "env": self.env.value,
            "debug": self.debug,
            "event_store": {
                "backend": self.event_store.backend.value,
                "snapshot_interval": self.event_store.snapshot_interval,
            },
            "commands": {
                "publish_retries": self.commands.publish_retries,
                "merge_threshold": self.commands.merge_threshold,
            },
            "logging": {
                "level": self.logging.level,
                "format": self.logging.format,
            },
        }


# Singleton configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create configuration singleton."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def reload_config() -> Config:
    """Re-read the environment and replace the singleton."""
    global _config
    _config = Config()
    return _config
