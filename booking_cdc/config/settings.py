"""
Movie Booking CDC Analytics
Centralized Configuration Management

This module provides configuration management using Pydantic settings with
environment variable support, validation, and type safety.
"""

from functools import lru_cache
from typing import Optional, List
from pydantic import Field, field_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database Configuration"""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="booking_cdc", alias="database", description="Database name")
    user: str = Field(default="booking_cdc", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    pool_size: int = Field(default=20, description="Connection pool size")
    echo: bool = Field(default=False, description="Echo SQL queries")
    url: Optional[str] = Field(
        default=None,
        alias="DATABASE_URL",
        description="Full SQLAlchemy async URL (overrides host/port)",
    )

    @property
    def async_url(self) -> str:
        """Async database URL - uses DATABASE_URL if set, otherwise asyncpg from host/port"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class RedisSettings(BaseSettings):
    """Redis Cache Configuration"""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: Optional[SecretStr] = Field(default=None, description="Redis password")
    db: int = Field(default=0, description="Redis database number")
    max_connections: int = Field(default=50, description="Max connections")
    socket_timeout: int = Field(default=5, description="Socket timeout in seconds")
    decode_responses: bool = Field(default=True, description="Decode responses to strings")
    enabled: bool = Field(default=True, description="Use Redis for response caching")
    url: Optional[str] = Field(default=None, alias="REDIS_URL", description="Redis URL (overrides host/port)")

    def get_url(self) -> str:
        """Redis connection URL - uses REDIS_URL if set, otherwise builds from host/port"""
        if self.url:
            return self.url
        if self.password:
            return f"redis://:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class KafkaSettings(BaseSettings):
    """Kafka Change Stream Configuration"""

    model_config = SettingsConfigDict(env_prefix="KAFKA_")

    bootstrap_servers: str = Field(default="localhost:9092", description="Kafka bootstrap servers")
    consumer_group: str = Field(default="booking-cdc", description="Consumer group ID")
    auto_offset_reset: str = Field(default="earliest", description="Auto offset reset policy")
    max_poll_records: int = Field(default=500, description="Max poll records")
    session_timeout_ms: int = Field(default=30000, description="Session timeout")
    heartbeat_interval_ms: int = Field(default=10000, description="Heartbeat interval")

    topic_booking_changes: str = Field(default="movie_bookings.changes", description="Booking change topic")

    @property
    def dead_letter_topic(self) -> str:
        """Topic receiving envelopes that cannot be interpreted"""
        return f"{self.topic_booking_changes}.dlq"


class PipelineSettings(BaseSettings):
    """CDC Pipeline Configuration"""

    model_config = SettingsConfigDict(env_prefix="PIPELINE_")

    # Ingestion
    append_lock_stripes: int = Field(default=64, description="Per-booking append lock stripes")
    dead_letter_path: str = Field(default="./data/dead_letter", description="Dead-letter directory for rejected rows")

    # Derivation
    derivation_batch_size: int = Field(default=500, description="Events read per derivation page")
    derivation_workers: int = Field(default=4, description="Parallel derivation workers")
    reorder_window: int = Field(
        default=200,
        description="Trailing sequences re-read each run to reconcile late commits",
    )
    strict_status_validation: bool = Field(
        default=False,
        description="Treat unrecognised booking status as an invalid booking",
    )

    # Aggregation
    incremental_aggregation: bool = Field(default=True, description="Fold only new records into stored snapshots")
    aggregation_timeout_seconds: float = Field(default=10.0, description="Deadline for on-demand re-aggregation")
    default_window_days: int = Field(default=30, description="Default dashboard window in days")

    # Scheduling
    schedule_interval_seconds: int = Field(default=90, description="Pipeline run cadence")

    # Export
    export_chunk_size: int = Field(default=500, description="Rows fetched per export round trip")

    @field_validator("derivation_workers", "append_lock_stripes", "derivation_batch_size", "export_chunk_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate positive sizes"""
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator("reorder_window")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        """Validate the reorder window"""
        if v < 0:
            raise ValueError("Value must be at least 0")
        return v


class MonitoringSettings(BaseSettings):
    """Monitoring and Observability Configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    metrics_port: int = Field(default=9100, alias="METRICS_PORT", description="Prometheus exporter port")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", alias="LOG_FORMAT", description="Log format: json or text")


class Settings(BaseSettings):
    """
    Main Application Settings

    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="booking-cdc", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    debug: bool = Field(default=False, alias="DEBUG", description="Debug mode")

    # API Server
    api_host: str = Field(default="0.0.0.0", alias="API_HOST", description="API host")
    api_port: int = Field(default=8000, alias="API_PORT", description="API port")
    api_workers: int = Field(default=2, alias="API_WORKERS", description="API workers")
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8501"],
        alias="CORS_ORIGINS",
        description="Allowed CORS origins (dashboard hosts)",
    )

    # Version
    version: str = Field(default="1.0.0", description="Application version")

    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    kafka: KafkaSettings = Field(default_factory=KafkaSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development"""
        return self.app_env == "development"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses LRU cache to ensure settings are only loaded once.

    Returns:
        Settings: Application settings instance
    """
    return Settings()
