"""Configuration management with Pydantic Settings.

Environment variables are loaded from:
1. Environment variables (highest priority)
2. .env file (development)
3. Defaults (lowest priority)

Names and intervals owned by other parts of the fleet (CA secret name,
lease namespace, probe intervals) are consumed here as plain defaults and
passed through unchanged.
"""

from enum import Enum
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Deployment environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging level."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """Logging format."""

    JSON = "json"
    TEXT = "text"


class ApplierSettings(BaseSettings):
    """Declarative applier configuration."""

    model_config = SettingsConfigDict(env_prefix="APPLIER_")

    conflict_retries: int = Field(
        default=5,
        description="Read-merge-update retries after an optimistic concurrency conflict",
    )
    foreground_grace_period_seconds: int = Field(
        default=60,
        description="Grace period used with foreground deletion",
    )
    background_grace_period_seconds: int = Field(
        default=0,
        description="Grace period used with background (forced) deletion",
    )
    timeout_seconds: float | None = Field(
        default=None,
        description="Deadline for a single apply or delete call",
    )

    @field_validator("conflict_retries")
    @classmethod
    def validate_conflict_retries(cls, v: int) -> int:
        """Ensure retries is never negative."""
        return max(0, v)


class ManagedResourceSettings(BaseSettings):
    """Managed resource bundle configuration."""

    model_config = SettingsConfigDict(env_prefix="MANAGED_RESOURCE_")

    api_version: str = Field(
        default="resources.gardener.cloud/v1alpha1",
        description="API version of the bundle record consumed by the remote agent",
    )
    secret_name_prefix: str = Field(
        default="managedresource-",
        description="Name prefix of the secrets backing a bundle",
    )
    secret_size_limit: int = Field(
        default=900_000,
        description="Maximum payload bytes stored in one backing secret",
    )
    origin: str = Field(
        default="fleet-reconciler",
        description="Value of the origin label on bundle records",
    )
    bundle_label: str = Field(
        default="resources.gardener.cloud/managed-resource",
        description="Label key linking backing secrets to their bundle",
    )

    @field_validator("secret_size_limit")
    @classmethod
    def validate_secret_size_limit(cls, v: int) -> int:
        """Ensure the ceiling can hold at least one byte."""
        return max(1, v)


class AccessSettings(BaseSettings):
    """Scoped access credential and RBAC grant configuration."""

    model_config = SettingsConfigDict(env_prefix="ACCESS_")

    ca_secret_name: str = Field(default="ca", description="Name of the cluster CA secret")
    ca_bundle_data_key: str = Field(
        default="bundle.crt",
        description="Data key of the CA certificate bundle",
    )
    secret_name_prefix: str = Field(
        default="shoot-access-",
        description="Name prefix of access credential secrets",
    )
    component_name: str = Field(
        default="dependency-watchdog",
        description="Identity of the component receiving access",
    )
    service_account_namespace: str = Field(
        default="kube-system",
        description="Namespace of the service account in the target cluster",
    )
    lease_namespace: str = Field(
        default="kube-node-lease",
        description="Namespace holding coordination leases",
    )
    lock_object_name: str = Field(
        default="dependency-watchdog-probe",
        description="Name of the lease the component may read and update",
    )
    rbac_name_prefix: str = Field(default="gardener.cloud:target:")
    bundle_class: str | None = Field(
        default=None,
        description="Class of the bundle delivering the RBAC grant",
    )

    # Passed through to the watchdog, never computed here
    probe_interval_seconds: int = Field(default=30)
    watch_duration_seconds: int = Field(default=300)
    kcm_node_monitor_grace_seconds: int = Field(default=40)

    @property
    def service_account_name(self) -> str:
        return f"{self.component_name}-probe"

    @property
    def credential_secret_name(self) -> str:
        return f"{self.secret_name_prefix}{self.service_account_name}"

    @property
    def bundle_name(self) -> str:
        return f"shoot-core-{self.component_name}"

    @property
    def rbac_name(self) -> str:
        return f"{self.rbac_name_prefix}{self.component_name}"


class Settings(BaseSettings):
    """Main application settings.

    All settings can be overridden via environment variables.
    For nested settings, use the appropriate prefix (e.g., APPLIER_CONFLICT_RETRIES).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = Field(default="fleet-reconciler", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        alias="ENV",
        description="Deployment environment",
    )

    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: LogFormat = Field(default=LogFormat.JSON, description="Logging format")

    applier: ApplierSettings = Field(default_factory=ApplierSettings)
    managed_resources: ManagedResourceSettings = Field(default_factory=ManagedResourceSettings)
    access: AccessSettings = Field(default_factory=AccessSettings)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses LRU cache to avoid re-parsing environment variables.
    """
    return Settings()
