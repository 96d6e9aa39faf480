"""
Configuration — typed, validated settings loaded from environment/.env.

Uses pydantic-settings to:
  - Load from environment variables (12-factor app)
  - Fall back to .env file
  - Validate types and constraints at startup

Only AppSettings is a BaseSettings instance. Sub-settings are plain BaseModel
classes populated through env_nested_delimiter="__", so DOCUMENT_STORE__HOST
maps to document_store.host, INTAKE__MAX_EVIDENCE_FILES to
intake.max_evidence_files, and so on.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the .env file relative to the project root (two levels above this file),
# so settings load correctly regardless of the working directory at runtime.
_ENV_FILE = Path(__file__).parent.parent.parent / ".env"

MIB = 1024 * 1024


class IdentitySettings(BaseModel):
    """OpenID Connect userinfo endpoint used to resolve bearer tokens."""

    userinfo_url: str = Field(description="OpenID Connect userinfo endpoint URL")


class FeeScheduleSettings(BaseModel):
    """Remote renewal-fee settings document."""

    url: str = Field(description="URL of the renewal-fee settings document")
    token: SecretStr | None = Field(default=None, description="Bearer token for the settings API")


class ObjectStorageSettings(BaseModel):
    """REST object storage holding uploaded evidence files."""

    url: str = Field(description="Base URL of the object storage API")
    token: SecretStr | None = Field(default=None, description="Bearer token for the storage API")


class DocumentStoreSettings(BaseModel):
    """
    PostgreSQL connection for the document store.

    Accepts either a full connection string via DOCUMENT_STORE__DSN or the
    individual components. The DSN takes priority when both are provided.
    """

    dsn: SecretStr | None = Field(
        default=None,
        description="Full PostgreSQL connection string (overrides individual fields)",
    )
    host: str | None = Field(default=None, description="PostgreSQL host")
    port: int = Field(default=5432, ge=1, le=65535, description="PostgreSQL port")
    name: str | None = Field(default=None, description="PostgreSQL database name")
    username: str | None = Field(default=None, description="PostgreSQL username")
    password: SecretStr | None = Field(default=None, description="PostgreSQL password")
    table: str = Field(default="documents", pattern=r"^[a-z_][a-z0-9_]*$")

    @model_validator(mode="after")
    def resolve_dsn(self) -> DocumentStoreSettings:
        """Build the DSN from components when DOCUMENT_STORE__DSN is not set."""
        if self.dsn is not None:
            return self
        missing = [f for f, v in [
            ("DOCUMENT_STORE__HOST", self.host),
            ("DOCUMENT_STORE__NAME", self.name),
            ("DOCUMENT_STORE__USERNAME", self.username),
            ("DOCUMENT_STORE__PASSWORD", self.password),
        ] if not v]
        if missing:
            raise ValueError(
                "Set DOCUMENT_STORE__DSN or provide all of: "
                + ", ".join(missing)
            )
        dsn_value = (
            f"postgresql://{self.username}:{self.password.get_secret_value()}"  # type: ignore[union-attr]
            f"@{self.host}:{self.port}/{self.name}"
        )
        object.__setattr__(self, "dsn", SecretStr(dsn_value))
        return self

    def get_dsn(self) -> str:
        assert self.dsn is not None  # guaranteed by resolve_dsn validator
        return self.dsn.get_secret_value()


class IntakeSettings(BaseModel):
    """Limits applied to uploaded evidence files."""

    max_file_size_bytes: int = Field(default=5 * MIB, ge=1)
    max_evidence_files: int = Field(default=5, ge=1)
    allowed_content_types: frozenset[str] = Field(
        default=frozenset({"application/pdf", "image/jpeg", "image/png"})
    )


class RenewalSettings(BaseModel):
    """Business rules of the renewal workflow."""

    early_renewal_days: int = Field(default=60, ge=0)
    renewal_window_days: int = Field(default=90, ge=0)
    min_cpe_hours: int = Field(default=10, ge=0)
    init_timeout_seconds: float = Field(default=10.0, gt=0)
    session_idle_minutes: int = Field(default=30, ge=1)


class ReconciliationSettings(BaseModel):
    """
    Orphaned-upload sweep, using a standard 5-field cron expression.

    Format: minute hour day-of-month month day-of-week
      "30 3 * * *" — daily at 03:30 (default)
    """

    enabled: bool = Field(default=False)
    cron: str = Field(default="30 3 * * *")
    grace_period_hours: int = Field(default=24, ge=1)

    @field_validator("cron")
    @classmethod
    def validate_cron(cls, value: str) -> str:
        """Reject expressions that don't have exactly 5 space-separated fields."""
        fields = value.strip().split()
        if len(fields) != 5:
            raise ValueError(
                f"Cron expression must have exactly 5 fields "
                f"(minute hour dom month dow), got {len(fields)}: {value!r}"
            )
        return value.strip()


class AppSettings(BaseSettings):
    """
    Root application settings.

    Load order (highest priority first):
      1. Environment variables
      2. .env file
      3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    identity: IdentitySettings
    fee_schedule: FeeScheduleSettings
    object_storage: ObjectStorageSettings
    document_store: DocumentStoreSettings
    intake: IntakeSettings = Field(default_factory=IntakeSettings)
    renewal: RenewalSettings = Field(default_factory=RenewalSettings)
    reconciliation: ReconciliationSettings = Field(default_factory=ReconciliationSettings)

    http_timeout_seconds: int = Field(default=30, ge=1)
    log_level: str = Field(default="INFO")
