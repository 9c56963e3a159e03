"""
Configuration management for the SafeBack engine.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for critical settings
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class PayloadBackend(Enum):
    """Supported snapshot payload backends."""

    LOCAL = "local"
    S3 = "s3"


@dataclass(frozen=True)
class StorageConfig:
    """Local SQLite storage configuration.

    Attributes:
        data_dir: Directory for tenant databases and the engine index
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "/var/lib/safeback"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/safeback"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class PayloadStoreConfig:
    """Snapshot payload blob storage.

    Attributes:
        backend: Where payload blobs live (local directory or S3)
        bucket: S3 bucket name
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO)
        snapshot_prefix: Key prefix for payload objects
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
        export_url_expiry_seconds: Lifetime of presigned export URLs
        compression: Compression algorithm (gzip, none)
    """

    backend: PayloadBackend = PayloadBackend.LOCAL
    bucket: str = "safeback-snapshots"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    snapshot_prefix: str = "snapshots"
    access_key_id: str | None = None
    secret_access_key: str | None = None
    export_url_expiry_seconds: int = 900
    compression: str = "gzip"

    @classmethod
    def from_env(cls) -> PayloadStoreConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("PAYLOAD_BACKEND", "local").lower()
        try:
            backend = PayloadBackend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid PAYLOAD_BACKEND '{backend_str}'. Must be one of: local, s3")

        return cls(
            backend=backend,
            bucket=os.getenv("S3_BUCKET", "safeback-snapshots"),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            snapshot_prefix=os.getenv("S3_SNAPSHOT_PREFIX", "snapshots"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
            export_url_expiry_seconds=int(os.getenv("EXPORT_URL_EXPIRY_SECONDS", "900")),
            compression=os.getenv("PAYLOAD_COMPRESSION", "gzip"),
        )


@dataclass(frozen=True)
class EngineConfig:
    """Orchestrator behaviour.

    Attributes:
        token_ttl_seconds: Lifetime of a restore confirmation token
        provider_timeout_seconds: Deadline for a single provider capture/restore
        pre_restore_snapshot: Capture a safety snapshot before restoring
        parallel_restore: Restore providers with no declared dependency concurrently
        continue_on_noncritical_failure: Keep restoring after a non-critical provider fails
        restore_lock_ttl_seconds: Age after which a restore marker is considered stale
        warn_on_truncation: Record a snapshot warning when a row cap drops rows
    """

    token_ttl_seconds: int = 600
    provider_timeout_seconds: float = 30.0
    pre_restore_snapshot: bool = True
    parallel_restore: bool = False
    continue_on_noncritical_failure: bool = False
    restore_lock_ttl_seconds: int = 900
    warn_on_truncation: bool = True

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables."""
        return cls(
            token_ttl_seconds=int(os.getenv("TOKEN_TTL_SECONDS", "600")),
            provider_timeout_seconds=float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "30")),
            pre_restore_snapshot=_env_bool("PRE_RESTORE_SNAPSHOT", "true"),
            parallel_restore=_env_bool("PARALLEL_RESTORE", "false"),
            continue_on_noncritical_failure=_env_bool("CONTINUE_ON_NONCRITICAL_FAILURE", "false"),
            restore_lock_ttl_seconds=int(os.getenv("RESTORE_LOCK_TTL_SECONDS", "900")),
            warn_on_truncation=_env_bool("WARN_ON_TRUNCATION", "true"),
        )


@dataclass(frozen=True)
class ProviderLimitsConfig:
    """Row caps applied by the domain providers.

    Attributes:
        team_chat_max_messages: Newest chat messages kept per snapshot
        booking_max_rows_per_table: Newest rows kept per booking table
        workboard_max_rows_per_table: Newest rows kept per workboard table
    """

    team_chat_max_messages: int = 5000
    booking_max_rows_per_table: int = 5000
    workboard_max_rows_per_table: int = 20000

    @classmethod
    def from_env(cls) -> ProviderLimitsConfig:
        """Load configuration from environment variables."""
        return cls(
            team_chat_max_messages=int(os.getenv("TEAM_CHAT_MAX_MESSAGES", "5000")),
            booking_max_rows_per_table=int(os.getenv("BOOKING_MAX_ROWS_PER_TABLE", "5000")),
            workboard_max_rows_per_table=int(os.getenv("WORKBOARD_MAX_ROWS_PER_TABLE", "20000")),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP server configuration."""

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
        payload: Payload blob storage configuration
        engine: Orchestrator configuration
        limits: Provider row caps
        http: HTTP server configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    payload: PayloadStoreConfig = field(default_factory=PayloadStoreConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    limits: ProviderLimitsConfig = field(default_factory=ProviderLimitsConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            payload=PayloadStoreConfig.from_env(),
            engine=EngineConfig.from_env(),
            limits=ProviderLimitsConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.payload.backend == PayloadBackend.S3 and not self.payload.bucket:
            raise ValueError("S3_BUCKET is required when PAYLOAD_BACKEND=s3")

        if self.engine.token_ttl_seconds <= 0:
            raise ValueError("TOKEN_TTL_SECONDS must be positive")

        if self.engine.provider_timeout_seconds <= 0:
            raise ValueError("PROVIDER_TIMEOUT_SECONDS must be positive")

        for name in ("team_chat_max_messages", "booking_max_rows_per_table",
                     "workboard_max_rows_per_table"):
            if getattr(self.limits, name) <= 0:
                raise ValueError(f"{name.upper()} must be positive")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "data_dir": self.storage.data_dir,
                "payload_backend": self.payload.backend.value,
                "s3_bucket": self.payload.bucket
                if self.payload.backend == PayloadBackend.S3
                else None,
                "token_ttl_seconds": self.engine.token_ttl_seconds,
                "provider_timeout_seconds": self.engine.provider_timeout_seconds,
                "pre_restore_snapshot": self.engine.pre_restore_snapshot,
                "parallel_restore": self.engine.parallel_restore,
                "http_port": self.http.port,
                "log_level": self.observability.log_level,
            },
        )
