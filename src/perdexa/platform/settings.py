"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
This is the single source of truth for all platform configuration.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Main application settings.

    All settings can be overridden via environment variables.
    For nested settings, use double underscore: BILLING__FREE_TRIAL_DAYS=7
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Core Application Settings
    # ============================================================

    app_name: str = Field("Perdexa", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    debug: bool = Field(False, description="Debug mode")
    testing: bool = Field(False, description="Testing mode")

    public_base_url: str = Field(
        "http://localhost:3000", description="Public URL used in emailed links"
    )
    secret_key: str = Field("change-me-in-production", description="Secret key for signing")
    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:3000"], description="Allowed CORS origins"
    )

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str | None = Field(None, description="Full SQLAlchemy database URL")
        host: str = Field("localhost", description="Database host")
        port: int = Field(5432, description="Database port")
        database: str = Field("perdexa", description="Database name")
        username: str = Field("perdexa", description="Database username")
        password: str = Field("", description="Database password")

        # Connection pool (ignored for SQLite)
        pool_size: int = Field(10, description="Connection pool size")
        max_overflow: int = Field(20, description="Max overflow connections")
        pool_timeout: int = Field(30, description="Pool timeout in seconds")
        pool_recycle: int = Field(3600, description="Recycle connections after seconds")
        pool_pre_ping: bool = Field(True, description="Test connections before use")

        echo: bool = Field(False, description="Echo SQL statements")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Authentication
    # ============================================================

    class JWTSettings(BaseModel):
        """JWT configuration."""

        secret_key: str = Field("change-me", description="JWT secret key")
        algorithm: str = Field("HS256", description="JWT algorithm")
        access_token_expire_minutes: int = Field(60 * 12, description="Access token expiration")
        impersonation_token_expire_minutes: int = Field(
            5, description="Lifetime of an impersonation token"
        )
        issuer: str = Field("perdexa", description="JWT issuer")

    jwt: JWTSettings = JWTSettings()  # type: ignore[call-arg]

    class AuthSettings(BaseModel):
        """Account and password policy."""

        min_password_length: int = Field(6, description="Minimum password length")
        password_reset_expire_minutes: int = Field(60, description="Reset link lifetime")
        initial_password_length: int = Field(12, description="Generated password length")
        bcrypt_rounds: int = Field(12, description="bcrypt cost factor")

        # Bootstrap super admin (optional)
        superadmin_email: str | None = Field(None, description="Seed super admin email")
        superadmin_password: str | None = Field(None, description="Seed super admin password")
        superadmin_name: str = Field("Admin", description="Seed super admin display name")

    auth: AuthSettings = AuthSettings()  # type: ignore[call-arg]

    # ============================================================
    # Email Configuration
    # ============================================================

    class EmailSettings(BaseModel):
        """Email and SMTP configuration."""

        smtp_host: str = Field("localhost", description="SMTP server host")
        smtp_port: int = Field(587, description="SMTP server port")
        smtp_username: str = Field("", description="SMTP username")
        smtp_password: str = Field("", description="SMTP password")
        use_tls: bool = Field(True, description="Use STARTTLS for SMTP")
        use_ssl: bool = Field(False, description="Use implicit SSL for SMTP")

        from_address: str = Field("noreply@perdexa.app", description="Default from email")
        from_name: str = Field("Perdexa", description="Default from name")

        enabled: bool = Field(True, description="Enable email sending")
        timeout: int = Field(30, description="SMTP timeout in seconds")

    email: EmailSettings = EmailSettings()  # type: ignore[call-arg]

    # ============================================================
    # Tenant Settings
    # ============================================================

    class TenantSettings(BaseModel):
        """Multi-tenant configuration."""

        default_branch_name: str = Field("Merkez", description="Branch created with a tenant")
        workspace_name_template: str = Field(
            "{name}'s workspace", description="Name for auto-provisioned tenants"
        )
        fallback_owner_name: str = Field("Admin", description="Owner name when user has none")

    tenant: TenantSettings = TenantSettings()  # type: ignore[call-arg]

    # ============================================================
    # Billing Configuration
    # ============================================================

    class BillingSettings(BaseModel):
        """Subscription and billing configuration."""

        default_currency: str = Field("TRY", description="Currency for recorded invoices")
        monthly_price: Decimal = Field(Decimal("2000"), description="Price of one paid month")
        free_trial_days: int = Field(5, description="Trial length when an admin sets FREE")
        signup_trial_days: int = Field(14, description="Trial length for new workspaces")
        paid_period_days: int = Field(30, description="Period granted by checkout/resume")
        grace_period_days: int = Field(3, description="Grace after a failed payment")
        invoice_history_limit: int = Field(100, description="Invoices listed per tenant")

        billing_alert_email: str | None = Field(
            None, description="Recipient of tenant payment requests"
        )
        cron_secret: str = Field("change-me", description="Shared secret for the sweep endpoint")
        webhook_secret: str | None = Field(
            None, description="Expected X-Webhook-Secret header on provider webhooks"
        )
        sweep_interval_seconds: float = Field(3600.0, description="Periodic sweep interval")

    billing: BillingSettings = BillingSettings()  # type: ignore[call-arg]

    # ============================================================
    # Celery & Task Queue
    # ============================================================

    class CelerySettings(BaseModel):
        """Celery configuration."""

        broker_url: str = Field("redis://localhost:6379/0", description="Broker URL")
        result_backend: str = Field("redis://localhost:6379/1", description="Result backend")
        timezone: str = Field("UTC", description="Timezone")
        task_always_eager: bool = Field(False, description="Run tasks inline (tests)")

    celery: CelerySettings = CelerySettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Logging configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or text)")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Validation & Helpers
    # ============================================================

    @field_validator("environment", mode="before")
    def validate_environment(cls, v: Any) -> Any:
        """Validate environment."""
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @field_validator("secret_key")
    def validate_secret_key(cls, v: str, info: Any) -> str:
        """Validate secret key."""
        if (
            v == "change-me-in-production"
            and info.data.get("environment") == Environment.PRODUCTION
        ):
            raise ValueError("Secret key must be changed in production")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.testing or self.environment == Environment.TEST


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


# Convenience export
settings = get_settings()
