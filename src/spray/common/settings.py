"""Application configuration models shared by services."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


REDIRECT_STATUS_CODES = {301, 302, 307, 308}


class SpraySettings(BaseSettings):
    """Runtime settings for the static site server."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    bucket_name: Optional[str] = env_field(None, "BUCKET_NAME")
    storage_path: Path = env_field(Path("./site"), "SPRAY_STORAGE_PATH")
    s3_endpoint_url: Optional[str] = env_field(None, "SPRAY_S3_ENDPOINT")
    s3_region: Optional[str] = env_field(None, "SPRAY_S3_REGION")
    s3_max_retries: int = env_field(2, "SPRAY_S3_MAX_RETRIES")
    s3_retry_base_seconds: float = env_field(0.1, "SPRAY_S3_RETRY_BASE")
    s3_retry_max_seconds: float = env_field(1.0, "SPRAY_S3_RETRY_MAX")
    s3_circuit_breaker_failures: int = env_field(5, "SPRAY_S3_CIRCUIT_FAILURES")
    s3_circuit_breaker_reset_seconds: float = env_field(30.0, "SPRAY_S3_CIRCUIT_RESET")
    host: str = env_field("0.0.0.0", "SPRAY_HOST")
    port: int = env_field(8080, "PORT")
    config_prefix: str = env_field(".spray", "SPRAY_CONFIG_PREFIX")
    config_reload_seconds: float = env_field(0.0, "SPRAY_CONFIG_RELOAD_SECONDS")
    redirect_status_code: int = env_field(302, "SPRAY_REDIRECT_STATUS")
    powered_by_header: Optional[str] = env_field(None, "SPRAY_POWERED_BY_HEADER")
    metrics_token: Optional[SecretStr] = env_field(None, "SPRAY_METRICS_TOKEN")
    stream_chunk_bytes: int = env_field(64 * 1024, "SPRAY_STREAM_CHUNK_BYTES")
    shutdown_grace_seconds: float = env_field(5.0, "SPRAY_SHUTDOWN_GRACE_SECONDS")
    log_level: str = env_field("INFO", "SPRAY_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "SPRAY_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "SPRAY_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "SPRAY_OTEL_SAMPLER_RATIO")

    @field_validator("redirect_status_code")
    @classmethod
    def _check_redirect_status(cls, value: int) -> int:
        if value not in REDIRECT_STATUS_CODES:
            raise ValueError(f"redirect status must be one of {sorted(REDIRECT_STATUS_CODES)}")
        return value

    @field_validator("config_prefix")
    @classmethod
    def _strip_prefix(cls, value: str) -> str:
        return value.strip("/")

    @field_validator("stream_chunk_bytes")
    @classmethod
    def _positive_chunk(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("stream chunk size must be positive")
        return value

    @property
    def site_label(self) -> str:
        """Value of the ``bucket_name`` label on metrics and logs."""
        if self.bucket_name:
            return self.bucket_name
        return self.storage_path.name or str(self.storage_path)
