"""
Configuration management for the model engine.

All configuration is done via environment variables. This module provides
typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Exactly one storage backend is active per engine
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep environment variable names stable; deployments depend on them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class DatabaseKind(Enum):
    """Supported storage backends."""

    MONGODB = "mongodb"
    MYSQL = "mysql"
    POSTGRES = "postgres"
    LOCAL = "local"

    @classmethod
    def from_str(cls, value: str) -> DatabaseKind:
        """Convert string representation to DatabaseKind.

        Raises:
            ValueError: If value is not a supported backend
        """
        normalized = value.strip().lower()
        aliases = {"mongo": "mongodb", "postgresql": "postgres", "sqlite": "local"}
        normalized = aliases.get(normalized, normalized)
        for kind in cls:
            if kind.value == normalized:
                return kind
        valid = ", ".join(k.value for k in cls)
        raise ValueError(f"Invalid DATABASE_KIND '{value}'. Must be one of: {valid}")


@dataclass(frozen=True)
class MongoConfig:
    """Document store configuration.

    Attributes:
        uri: MongoDB connection URI
        database: Database name
        server_selection_timeout_ms: Driver server selection timeout
    """

    uri: str = "mongodb://localhost:27017"
    database: str = "model_engine"
    server_selection_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> MongoConfig:
        """Load configuration from environment variables."""
        return cls(
            uri=os.getenv("MONGO_URI", "mongodb://localhost:27017"),
            database=os.getenv("MONGO_DATABASE", "model_engine"),
            server_selection_timeout_ms=int(os.getenv("MONGO_SERVER_SELECTION_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class MySQLConfig:
    """MySQL configuration.

    Attributes:
        host: Server host
        port: Server port
        user: Login user
        password: Login password (never logged)
        database: Schema name
        charset: Connection character set
    """

    host: str = "localhost"
    port: int = 3306
    user: str = "root"
    password: str | None = None
    database: str = "model_engine"
    charset: str = "utf8mb4"

    @classmethod
    def from_env(cls) -> MySQLConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("MYSQL_HOST", "localhost"),
            port=int(os.getenv("MYSQL_PORT", "3306")),
            user=os.getenv("MYSQL_USER", "root"),
            password=os.getenv("MYSQL_PASSWORD"),
            database=os.getenv("MYSQL_DATABASE", "model_engine"),
            charset=os.getenv("MYSQL_CHARSET", "utf8mb4"),
        )


@dataclass(frozen=True)
class PostgresConfig:
    """PostgreSQL configuration.

    Attributes:
        dsn: Connection string (takes precedence over the discrete fields)
        host: Server host
        port: Server port
        user: Login user
        password: Login password (never logged)
        database: Database name
        pool_min_size: Minimum pooled connections
        pool_max_size: Maximum pooled connections
    """

    dsn: str | None = None
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str | None = None
    database: str = "model_engine"
    pool_min_size: int = 1
    pool_max_size: int = 10

    @classmethod
    def from_env(cls) -> PostgresConfig:
        """Load configuration from environment variables."""
        return cls(
            dsn=os.getenv("POSTGRES_DSN"),
            host=os.getenv("POSTGRES_HOST", "localhost"),
            port=int(os.getenv("POSTGRES_PORT", "5432")),
            user=os.getenv("POSTGRES_USER", "postgres"),
            password=os.getenv("POSTGRES_PASSWORD"),
            database=os.getenv("POSTGRES_DATABASE", "model_engine"),
            pool_min_size=int(os.getenv("POSTGRES_POOL_MIN", "1")),
            pool_max_size=int(os.getenv("POSTGRES_POOL_MAX", "10")),
        )

    def conninfo(self) -> str:
        """Build a libpq connection string."""
        if self.dsn:
            return self.dsn
        parts = [
            f"host={self.host}",
            f"port={self.port}",
            f"user={self.user}",
            f"dbname={self.database}",
        ]
        if self.password:
            parts.append(f"password={self.password}")
        return " ".join(parts)


@dataclass(frozen=True)
class LocalConfig:
    """Embedded local store configuration.

    Attributes:
        data_dir: Directory holding the database file
        file_name: Database file name
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "./data"
    file_name: str = "model_engine.db"
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> LocalConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("LOCAL_DATA_DIR", "./data"),
            file_name=os.getenv("LOCAL_DB_FILE", "model_engine.db"),
            busy_timeout_ms=int(os.getenv("LOCAL_BUSY_TIMEOUT_MS", "5000")),
        )

    @property
    def path(self) -> str:
        return os.path.join(self.data_dir, self.file_name)


@dataclass(frozen=True)
class TenancyConfig:
    """Multi-tenancy configuration.

    Attributes:
        enabled: Whether tenant scoping is applied at all
        tenant_key: Field holding the tenant id on tenant-scoped models
        fallback_tenant_id: Tenant used when the request carries none
    """

    enabled: bool = False
    tenant_key: str = "tenantId"
    fallback_tenant_id: str = "000"

    @classmethod
    def from_env(cls) -> TenancyConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("TENANCY_ENABLED", "false"),
            tenant_key=os.getenv("TENANT_KEY", "tenantId"),
            fallback_tenant_id=os.getenv("TENANT_FALLBACK_ID", "000"),
        )


@dataclass(frozen=True)
class QueryConfig:
    """Query defaults.

    Attributes:
        default_limit: Limit applied to a fresh query specification
        default_per_page: Page size used by pagination when no limit is set
        strict_calculated_values: Raise on unparseable ordering operands
            instead of substituting the current time
    """

    default_limit: int = 10
    default_per_page: int = 10
    strict_calculated_values: bool = False

    @classmethod
    def from_env(cls) -> QueryConfig:
        """Load configuration from environment variables."""
        return cls(
            default_limit=int(os.getenv("QUERY_DEFAULT_LIMIT", "10")),
            default_per_page=int(os.getenv("QUERY_DEFAULT_PER_PAGE", "10")),
            strict_calculated_values=_env_bool("QUERY_STRICT_CALCULATED_VALUES", "false"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "text"),
        )


@dataclass
class EngineConfig:
    """Complete engine configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        database: Which storage backend to use
        mongo: Document store configuration (if database is MONGODB)
        mysql: MySQL configuration (if database is MYSQL)
        postgres: PostgreSQL configuration (if database is POSTGRES)
        local: Embedded store configuration (if database is LOCAL)
        tenancy: Tenant scoping configuration
        query: Query defaults
        observability: Logging configuration
        structure_path: Optional path to the model structure file
    """

    database: DatabaseKind = DatabaseKind.LOCAL
    mongo: MongoConfig = field(default_factory=MongoConfig)
    mysql: MySQLConfig = field(default_factory=MySQLConfig)
    postgres: PostgresConfig = field(default_factory=PostgresConfig)
    local: LocalConfig = field(default_factory=LocalConfig)
    tenancy: TenancyConfig = field(default_factory=TenancyConfig)
    query: QueryConfig = field(default_factory=QueryConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    structure_path: str | None = None

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load complete configuration from environment variables.

        Returns:
            EngineConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            database=DatabaseKind.from_str(os.getenv("DATABASE_KIND", "local")),
            mongo=MongoConfig.from_env(),
            mysql=MySQLConfig.from_env(),
            postgres=PostgresConfig.from_env(),
            local=LocalConfig.from_env(),
            tenancy=TenancyConfig.from_env(),
            query=QueryConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
            structure_path=os.getenv("MODEL_STRUCTURE_PATH"),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.database == DatabaseKind.MONGODB:
            if not self.mongo.uri:
                raise ValueError("MONGO_URI is required when DATABASE_KIND=mongodb")
            if not self.mongo.database:
                raise ValueError("MONGO_DATABASE is required when DATABASE_KIND=mongodb")
        elif self.database == DatabaseKind.MYSQL:
            if not self.mysql.host or not self.mysql.database:
                raise ValueError("MYSQL_HOST and MYSQL_DATABASE are required when DATABASE_KIND=mysql")
        elif self.database == DatabaseKind.POSTGRES:
            if not self.postgres.dsn and not self.postgres.host:
                raise ValueError("POSTGRES_DSN or POSTGRES_HOST is required when DATABASE_KIND=postgres")
            if self.postgres.pool_min_size > self.postgres.pool_max_size:
                raise ValueError("POSTGRES_POOL_MIN cannot exceed POSTGRES_POOL_MAX")

        if self.query.default_limit < 0:
            raise ValueError("QUERY_DEFAULT_LIMIT cannot be negative")
        if self.query.default_per_page <= 0:
            raise ValueError("QUERY_DEFAULT_PER_PAGE must be positive")
        if self.tenancy.enabled and not self.tenancy.tenant_key:
            raise ValueError("TENANT_KEY is required when TENANCY_ENABLED=true")

        if self.database == DatabaseKind.LOCAL and not os.path.exists(self.local.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.local.data_dir}. "
                "It will be created on first connect."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Engine configuration loaded",
            extra={
                "database": self.database.value,
                "mongo_database": self.mongo.database
                if self.database == DatabaseKind.MONGODB
                else None,
                "mysql_host": self.mysql.host if self.database == DatabaseKind.MYSQL else None,
                "postgres_host": self.postgres.host
                if self.database == DatabaseKind.POSTGRES and not self.postgres.dsn
                else None,
                "local_path": self.local.path if self.database == DatabaseKind.LOCAL else None,
                "tenancy_enabled": self.tenancy.enabled,
                "default_limit": self.query.default_limit,
                "strict_calculated_values": self.query.strict_calculated_values,
                "log_level": self.observability.log_level,
            },
        )
