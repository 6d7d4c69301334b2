"""Audit ledger configuration.

Storage selection and append policy. Validated at construction so a
misconfigured store fails at startup rather than on the first write.
"""

import os
from enum import Enum

from pydantic import BaseModel, Field, model_validator

from ledger.audit.models import AuditCategory


class StorageType(str, Enum):
    """Ledger storage backends."""

    MEMORY = "memory"
    FILE = "file"
    POSTGRES = "postgres"


class AuditConfig(BaseModel):
    """Audit ledger configuration.

    Append policy:
    - Failed appends are reported, not raised, so they never abort the
      business operation being audited
    - Categories listed in `strict_audit_categories` raise instead
    """

    storage_type: StorageType = Field(
        default=StorageType.FILE,
        description="Where records are persisted"
    )
    storage_path: str | None = Field(
        default="data/ledger",
        description="Directory for the JSONL file store"
    )
    database_url: str | None = Field(
        default=None,
        description="PostgreSQL DSN for the production store"
    )
    database_pool_min_size: int = Field(default=2, ge=1)
    database_pool_max_size: int = Field(default=10, ge=1)

    max_append_attempts: int = Field(
        default=5,
        ge=1,
        description="Attempts before an append fails with AppendContention"
    )
    retry_backoff_seconds: float = Field(
        default=0.01,
        ge=0,
        description="Base delay between append attempts (doubles each retry)"
    )

    system_scope_id: str = Field(
        default="system",
        min_length=1,
        description="Scope used for events that carry no company"
    )
    strict_audit_categories: list[AuditCategory] = Field(
        default_factory=list,
        description="Audit categories whose append failures must propagate"
    )
    export_max_records: int = Field(
        default=10000,
        ge=1,
        description="Upper bound on records returned by a single export"
    )

    @model_validator(mode="after")
    def validate_storage(self) -> "AuditConfig":
        """Each backend needs its own location."""
        if self.storage_type == StorageType.POSTGRES and not self.database_url:
            raise ValueError(
                "CONFIG ERROR: PostgreSQL storage requires database_url. "
                "Set LEDGER_DATABASE_URL."
            )
        if self.storage_type == StorageType.FILE and not self.storage_path:
            raise ValueError(
                "CONFIG ERROR: File storage requires storage_path. "
                "Set LEDGER_STORAGE_PATH."
            )
        if self.database_pool_min_size > self.database_pool_max_size:
            raise ValueError("database_pool_min_size cannot exceed database_pool_max_size")
        return self

    @classmethod
    def from_env(cls) -> "AuditConfig":
        """Create configuration from environment variables."""
        strict = os.getenv("LEDGER_STRICT_AUDIT_CATEGORIES", "")

        return cls(
            storage_type=StorageType(os.getenv("LEDGER_STORAGE_TYPE", "file").lower()),
            storage_path=os.getenv("LEDGER_STORAGE_PATH", "data/ledger"),
            database_url=os.getenv("LEDGER_DATABASE_URL"),
            database_pool_min_size=int(os.getenv("LEDGER_DATABASE_POOL_MIN_SIZE", "2")),
            database_pool_max_size=int(os.getenv("LEDGER_DATABASE_POOL_MAX_SIZE", "10")),
            max_append_attempts=int(os.getenv("LEDGER_MAX_APPEND_ATTEMPTS", "5")),
            retry_backoff_seconds=float(os.getenv("LEDGER_RETRY_BACKOFF_SECONDS", "0.01")),
            system_scope_id=os.getenv("LEDGER_SYSTEM_SCOPE_ID", "system"),
            strict_audit_categories=[
                AuditCategory(value.strip().upper())
                for value in strict.split(",")
                if value.strip()
            ],
            export_max_records=int(os.getenv("LEDGER_EXPORT_MAX_RECORDS", "10000")),
        )

    def is_strict(self, audit_category: AuditCategory | None) -> bool:
        """Check whether failures in this audit category must propagate."""
        return audit_category is not None and audit_category in self.strict_audit_categories
