"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Service
    service_name: str = "unipay"
    api_title: str = "UniPay Reconciliation API"
    api_version: str = "0.1.0"
    api_description: str = "Idempotent order reconciliation for IAP and checkout gateways"

    # Database Configuration - only required by the database-backed lock/attach stores
    database_url: str = ""
    database_pool_size: int = 10
    database_max_overflow: int = 5
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # Collaborator backends
    lock_backend: Literal["noop", "memory", "database"] = "memory"
    lock_ttl_seconds: int = 300  # Stale database locks are reclaimed after this
    attach_backend: Literal["noop", "memory", "database"] = "memory"

    # Gateway clients (shared)
    verify_max_attempts: int = 3
    http_timeout_seconds: float = 10.0

    # App Store
    appstore_shared_secret: str = ""  # App-specific shared secret for verifyReceipt
    appstore_bundle_id: str = ""  # e.g. "com.example.app"
    appstore_environment: str = "production"  # production or sandbox

    # Play Store
    playstore_package_name: str = ""  # e.g. "com.example.app"
    playstore_public_key: str = ""  # Base64 RSA license key from Play Console
    playstore_service_account_json: str = ""  # Path or raw JSON
    playstore_publisher_endpoint: str = ""  # Relay endpoint; empty = call Google directly

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        A database-backed lock or attach store without a database is a
        deployment error, not something to discover on the first purchase.
        """
        errors: list[str] = []

        needs_database = "database" in (self.lock_backend, self.attach_backend)
        if needs_database and not self.database_url:
            errors.append("DATABASE_URL is required when a database lock/attach backend is used")
        elif needs_database and not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.verify_max_attempts < 1:
            errors.append(f"VERIFY_MAX_ATTEMPTS must be >= 1, got {self.verify_max_attempts}")

        if self.lock_ttl_seconds <= 0:
            errors.append(f"LOCK_TTL_SECONDS must be positive, got {self.lock_ttl_seconds}")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
