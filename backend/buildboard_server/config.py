"""
Configuration management for Buildboard Server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for DATA_DIR

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class StorageConfig:
    """Local document storage configuration.

    Attributes:
        data_dir: Directory for the SQLite document database
        db_filename: Database file name inside data_dir
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    data_dir: str = "/var/lib/buildboard"
    db_filename: str = "documents.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -64000  # 64MB

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/buildboard"),
            db_filename=os.getenv("DB_FILENAME", "documents.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-64000")),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP server configuration.

    Attributes:
        host: Address to bind
        port: Port to listen on
        cors_origins: Allowed CORS origins
    """

    host: str = "0.0.0.0"
    port: int = 8081
    cors_origins: tuple[str, ...] = ("*",)

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8081")),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
        )


@dataclass(frozen=True)
class ReconcilerConfig:
    """Consistency reconciler configuration.

    Attributes:
        enabled: Whether the background sweep loop runs
        sweep_interval_seconds: Interval between full sweeps
        batch_size: Documents scanned per batch during a sweep
        read_repair: Repair suspect keys when they are read
        min_recount_interval_seconds: Minimum time between popularity
            recounts of the same build (forced recounts ignore it)
    """

    enabled: bool = True
    sweep_interval_seconds: int = 300
    batch_size: int = 200
    read_repair: bool = True
    min_recount_interval_seconds: int = 30

    @classmethod
    def from_env(cls) -> ReconcilerConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("RECONCILER_ENABLED", "true"),
            sweep_interval_seconds=int(os.getenv("RECONCILER_SWEEP_INTERVAL_SECONDS", "300")),
            batch_size=int(os.getenv("RECONCILER_BATCH_SIZE", "200")),
            read_repair=_env_bool("RECONCILER_READ_REPAIR", "true"),
            min_recount_interval_seconds=int(
                os.getenv("RECONCILER_MIN_RECOUNT_INTERVAL_SECONDS", "30")
            ),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    Attributes:
        storage: Local storage configuration
        http: HTTP server configuration
        reconciler: Reconciler configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    reconciler: ReconcilerConfig = field(default_factory=ReconcilerConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            http=HttpConfig.from_env(),
            reconciler=ReconcilerConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.storage.data_dir:
            raise ValueError("DATA_DIR must not be empty")

        if not 0 < self.http.port < 65536:
            raise ValueError(f"HTTP_PORT out of range: {self.http.port}")

        if self.reconciler.sweep_interval_seconds <= 0:
            raise ValueError("RECONCILER_SWEEP_INTERVAL_SECONDS must be positive")
        if self.reconciler.batch_size <= 0:
            raise ValueError("RECONCILER_BATCH_SIZE must be positive")
        if self.reconciler.min_recount_interval_seconds < 0:
            raise ValueError("RECONCILER_MIN_RECOUNT_INTERVAL_SECONDS must not be negative")

        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Server configuration loaded",
            extra={
                "data_dir": self.storage.data_dir,
                "http_bind": f"{self.http.host}:{self.http.port}",
                "reconciler_enabled": self.reconciler.enabled,
                "sweep_interval_seconds": self.reconciler.sweep_interval_seconds,
                "read_repair": self.reconciler.read_repair,
                "log_level": self.observability.log_level,
            },
        )
