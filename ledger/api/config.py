"""API configuration via pydantic-settings."""

from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Server configuration
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    # API configuration
    api_title: str = "Audit Ledger API"
    api_version: str = "1.0.0"

    # CORS origins
    cors_origins: list[str] = ["*"]

    # === LEDGER STORAGE SETTINGS ===
    storage_type: Literal["memory", "file", "postgres"] = "file"
    storage_path: str = "data/ledger"
    database_url: str | None = None
    database_pool_min_size: int = 2
    database_pool_max_size: int = 10

    # === APPEND POLICY SETTINGS ===
    max_append_attempts: int = 5
    retry_backoff_seconds: float = 0.01
    system_scope_id: str = "system"
    strict_audit_categories: list[str] = []
    export_max_records: int = 10000

    @property
    def audit_config(self):
        """Get audit ledger configuration object."""
        from ledger.audit.config import AuditConfig, StorageType
        from ledger.audit.models import AuditCategory

        return AuditConfig(
            storage_type=StorageType(self.storage_type),
            storage_path=self.storage_path,
            database_url=self.database_url,
            database_pool_min_size=self.database_pool_min_size,
            database_pool_max_size=self.database_pool_max_size,
            max_append_attempts=self.max_append_attempts,
            retry_backoff_seconds=self.retry_backoff_seconds,
            system_scope_id=self.system_scope_id,
            strict_audit_categories=[
                AuditCategory(value.upper()) for value in self.strict_audit_categories
            ],
            export_max_records=self.export_max_records,
        )
