"""Shared configuration management for the bookkeeping engine.

Based on Pydantic Settings v2:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_STORAGE_BACKEND=dynamodb
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Service configuration
    service_name: str = Field(
        default="ledger-rules-engine",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # Key-value storage
    storage_backend: Literal["memory", "dynamodb"] = Field(
        default="memory",
        description="Tenant-scoped key-value store: memory (local/tests), dynamodb (AWS)",
    )
    dynamodb_table: str = Field(
        default="accounting-jobs",
        description="DynamoDB table holding rules, transactions, jobs and schedules",
    )
    aws_region: str = Field(
        default="eu-north-1",
        description="AWS region for DynamoDB",
    )
    dynamodb_endpoint_url: str | None = Field(
        default=None,
        description="Override DynamoDB endpoint (e.g. http://localhost:8000 for DynamoDB Local)",
    )

    # Queue configuration (arq / Redis)
    queue_enabled: bool = Field(
        default=False,
        description="Process documents through the background worker",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL for the job queue",
    )
    queue_max_jobs: int = Field(
        default=10,
        description="Maximum concurrent jobs per worker",
    )
    queue_job_timeout: int = Field(
        default=300,
        description="Job timeout in seconds",
    )

    # Bookkeeping engine
    vat_validation_tolerance: float = Field(
        default=1.0,
        description="Allowed difference (SEK) between stated and expected VAT",
        ge=0,
    )
    bank_match_days_before: int = Field(
        default=7,
        description="Days before the invoice date included in the bank match window",
        ge=0,
    )
    bank_match_days_after: int = Field(
        default=14,
        description="Days after the due date included in the bank match window",
        ge=0,
    )
    trigger_counter_workers: int = Field(
        default=2,
        description="Background threads recording rule trigger counts",
        ge=1,
    )


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
