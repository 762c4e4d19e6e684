"""Application configuration models shared by services."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, HttpUrl, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


def _split_csv(value):
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


def _normalize_database_url(value):
    if value in (None, ...):
        return value
    if isinstance(value, Path):
        value = str(value)
    if isinstance(value, str) and "://" not in value:
        path = Path(value).expanduser().resolve()
        return f"sqlite+aiosqlite:///{path.as_posix()}"
    return value


class ProvisioningSettings(BaseSettings):
    """Knobs shared by the API process and the background worker."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    database_url: str = env_field(..., "STRATUS_DATABASE_URL")
    catalog_path: Optional[Path] = env_field(None, "STRATUS_CATALOG_PATH")
    broker_connect_timeout_seconds: float = env_field(5.0, "STRATUS_BROKER_CONNECT_TIMEOUT")
    broker_timeout_seconds: float = env_field(60.0, "STRATUS_BROKER_TIMEOUT")
    broker_api_version: str = env_field("2.5", "STRATUS_BROKER_API_VERSION")
    mitigate_ambiguous_broker_failures: bool = env_field(True, "STRATUS_MITIGATE_AMBIGUOUS_FAILURES")
    poll_interval_seconds: float = env_field(60.0, "STRATUS_POLL_INTERVAL")
    poll_interval_max_seconds: float = env_field(600.0, "STRATUS_POLL_INTERVAL_MAX")
    max_poll_attempts: int = env_field(200, "STRATUS_MAX_POLL_ATTEMPTS")
    max_poll_duration_seconds: int = env_field(7 * 24 * 3600, "STRATUS_MAX_POLL_DURATION")
    orphan_mitigation_max_attempts: int = env_field(3, "STRATUS_ORPHAN_MITIGATION_ATTEMPTS")
    orphan_mitigation_retry_seconds: float = env_field(30.0, "STRATUS_ORPHAN_MITIGATION_RETRY")
    uaa_url: Optional[HttpUrl] = env_field(None, "STRATUS_UAA_URL")
    uaa_client_id: Optional[str] = env_field(None, "STRATUS_UAA_CLIENT_ID")
    uaa_client_secret: Optional[SecretStr] = env_field(None, "STRATUS_UAA_CLIENT_SECRET")
    uaa_timeout_seconds: float = env_field(10.0, "STRATUS_UAA_TIMEOUT")
    ca_bundle_path: Optional[Path] = env_field(None, "STRATUS_CA_BUNDLE")
    log_level: str = env_field("INFO", "STRATUS_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "STRATUS_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "STRATUS_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "STRATUS_OTEL_SAMPLER_RATIO")

    @field_validator("database_url", mode="before")
    @classmethod
    def _normalize_database_url(cls, value):
        return _normalize_database_url(value)

    @property
    def dashboard_sso_enabled(self) -> bool:
        return bool(self.uaa_url and self.uaa_client_id and self.uaa_client_secret)

    @property
    def log_secrets(self) -> list[str]:
        """Secret values masked out of every log line."""

        return [self.uaa_client_secret.get_secret_value()] if self.uaa_client_secret else []


class ControlPlaneSettings(ProvisioningSettings):
    """Runtime settings for the control plane API service."""

    jwt_secret: SecretStr = env_field(..., "STRATUS_JWT_SECRET")
    jwt_secret_fallbacks: list[str] = Field(
        default_factory=list,
        validation_alias="STRATUS_JWT_SECRET_FALLBACKS",
    )
    allowed_subjects: list[str] = Field(default_factory=list, validation_alias="STRATUS_ALLOWED_SUBJECTS")
    metrics_token: Optional[SecretStr] = env_field(None, "STRATUS_METRICS_TOKEN")
    bind_host: str = env_field("0.0.0.0", "STRATUS_BIND_HOST")
    bind_port: int = env_field(8080, "STRATUS_BIND_PORT")

    @field_validator("jwt_secret_fallbacks", "allowed_subjects", mode="before")
    @classmethod
    def _split_lists(cls, value):
        return _split_csv(value)

    @property
    def jwt_secrets(self) -> list[str]:
        return [self.jwt_secret.get_secret_value(), *self.jwt_secret_fallbacks]

    @property
    def log_secrets(self) -> list[str]:
        secrets = [*super().log_secrets, *self.jwt_secrets]
        if self.metrics_token:
            secrets.append(self.metrics_token.get_secret_value())
        return secrets


class WorkerSettings(ProvisioningSettings):
    """Configuration for the background job worker."""

    worker_id: str = env_field("stratus-worker", "STRATUS_WORKER_ID")
    job_lease_ttl_seconds: int = env_field(300, "STRATUS_JOB_LEASE_TTL")
    idle_sleep_seconds: float = env_field(2.0, "STRATUS_WORKER_IDLE_SLEEP")
    max_job_failures: int = env_field(10, "STRATUS_WORKER_MAX_JOB_FAILURES")
    job_failure_retry_seconds: float = env_field(15.0, "STRATUS_WORKER_FAILURE_RETRY")
