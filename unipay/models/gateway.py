"""
Gateway configuration models - Immutable, validated configuration values.

NO DICTIONARIES - All configuration is strongly typed.

Shared settings live in GatewayConfig and are passed explicitly to every
gateway adapter alongside the store-specific config.
"""

from dataclasses import dataclass

from unipay.config import Settings

APPSTORE_PRODUCTION_URL = "https://buy.itunes.apple.com/verifyReceipt"
APPSTORE_SANDBOX_URL = "https://sandbox.itunes.apple.com/verifyReceipt"


@dataclass(frozen=True)
class GatewayConfig:
    """Configuration shared by all gateway adapters."""

    verify_max_attempts: int = 3
    http_timeout_seconds: float = 10.0

    def __post_init__(self) -> None:
        """Validate shared configuration."""
        if self.verify_max_attempts < 1:
            raise ValueError("verify_max_attempts must be at least 1")
        if self.http_timeout_seconds <= 0:
            raise ValueError("http_timeout_seconds must be positive")

    @classmethod
    def from_settings(cls, settings: Settings) -> "GatewayConfig":
        return cls(
            verify_max_attempts=settings.verify_max_attempts,
            http_timeout_seconds=settings.http_timeout_seconds,
        )


@dataclass(frozen=True)
class AppStoreConfig:
    """Configuration for App Store receipt verification."""

    shared_secret: str  # App-specific shared secret (verifyReceipt "password")
    bundle_id: str  # App bundle ID receipts must be bound to
    environment: str = "production"  # "production" or "sandbox"

    def __post_init__(self) -> None:
        """Validate configuration fields."""
        if not self.bundle_id:
            raise ValueError("App Store bundle_id is required")
        if self.environment.lower() not in ("production", "sandbox"):
            raise ValueError("Environment must be 'production' or 'sandbox'")

    @property
    def verify_url(self) -> str:
        """verifyReceipt URL for the configured environment."""
        if self.environment.lower() == "sandbox":
            return APPSTORE_SANDBOX_URL
        return APPSTORE_PRODUCTION_URL

    @classmethod
    def from_settings(cls, settings: Settings) -> "AppStoreConfig":
        return cls(
            shared_secret=settings.appstore_shared_secret,
            bundle_id=settings.appstore_bundle_id,
            environment=settings.appstore_environment,
        )


@dataclass(frozen=True)
class PlayStoreConfig:
    """Configuration for Google Play purchase verification."""

    package_name: str  # Android package name purchases must be bound to
    public_key: str = ""  # Base64 RSA license key for client-signed purchase data

    def __post_init__(self) -> None:
        """Validate configuration fields."""
        if not self.package_name:
            raise ValueError("Play Store package_name is required")

    @classmethod
    def from_settings(cls, settings: Settings) -> "PlayStoreConfig":
        return cls(
            package_name=settings.playstore_package_name,
            public_key=settings.playstore_public_key,
        )
