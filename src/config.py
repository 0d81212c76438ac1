"""
Configuration module for the Policy Propagator.

Loads configuration from environment variables.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

VALID_STORE_BACKENDS = ("postgres", "memory")


@dataclass
class DatabaseConfig:
    """PostgreSQL object store configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "policy_propagator"
    user: str = "propagator"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 5
    max_pool_size: int = 20

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "policy_propagator"),
            user=os.getenv("DB_USER", "propagator"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "5")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "20")),
        )


@dataclass
class ControllerConfig:
    """Work queue and resync configuration."""

    reconcile_interval: int = 60  # seconds between full resyncs
    max_concurrent_reconciles: int = 5

    # Exponential backoff configuration
    backoff_base_delay: float = 1.0  # base delay in seconds
    backoff_max_delay: float = 300.0  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    def __post_init__(self):
        if self.max_concurrent_reconciles < 1:
            raise ValueError("max_concurrent_reconciles must be at least 1")
        if not 0 <= self.backoff_jitter_factor < 1:
            raise ValueError("backoff_jitter_factor must be in [0, 1)")

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            reconcile_interval=int(os.getenv("RECONCILE_INTERVAL", "60")),
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "1")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "300")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            level=os.getenv("LOG_LEVEL", "INFO").upper(),
            format=os.getenv(
                "LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            ),
        )


@dataclass
class StoreConfig:
    """Selects the object store backend."""

    backend: str = "postgres"

    def __post_init__(self):
        if self.backend not in VALID_STORE_BACKENDS:
            raise ValueError(
                f"Unknown store backend '{self.backend}', "
                f"expected one of {', '.join(VALID_STORE_BACKENDS)}"
            )

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(backend=os.getenv("STORE_BACKEND", "postgres").lower())


@dataclass
class Config:
    """Main configuration object."""

    database: Optional[DatabaseConfig]
    controller: ControllerConfig
    logging: LoggingConfig
    store: StoreConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        store = StoreConfig.from_env()
        # The database password is only required when postgres is in use
        database = DatabaseConfig.from_env() if store.backend == "postgres" else None
        return cls(
            database=database,
            controller=ControllerConfig.from_env(),
            logging=LoggingConfig.from_env(),
            store=store,
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            controller=ControllerConfig(),
            logging=LoggingConfig(),
            store=StoreConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
