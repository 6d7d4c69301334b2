"""Configuration tests."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from ledger.api.config import Settings
from ledger.audit.config import AuditConfig, StorageType
from ledger.audit.models import AuditCategory
from ledger.audit.storage import FileLedgerStore, InMemoryLedgerStore, create_ledger_store


class TestAuditConfig:
    """Tests for ledger configuration validation."""

    def test_defaults(self) -> None:
        config = AuditConfig()
        assert config.storage_type == StorageType.FILE
        assert config.max_append_attempts == 5
        assert config.system_scope_id == "system"
        assert config.strict_audit_categories == []

    def test_postgres_requires_database_url(self) -> None:
        with pytest.raises(ValidationError, match="database_url"):
            AuditConfig(storage_type="postgres")

    def test_file_requires_storage_path(self) -> None:
        with pytest.raises(ValidationError, match="storage_path"):
            AuditConfig(storage_type="file", storage_path=None)

    def test_pool_bounds(self) -> None:
        with pytest.raises(ValidationError):
            AuditConfig(
                storage_type="postgres",
                database_url="postgresql://localhost/ledger",
                database_pool_min_size=20,
                database_pool_max_size=5,
            )

    def test_attempts_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            AuditConfig(max_append_attempts=0)

    def test_is_strict(self) -> None:
        config = AuditConfig(strict_audit_categories=[AuditCategory.BILLING])
        assert config.is_strict(AuditCategory.BILLING)
        assert not config.is_strict(AuditCategory.GENERAL)
        assert not config.is_strict(None)

    def test_from_env(self, monkeypatch, tmp_path) -> None:
        monkeypatch.setenv("LEDGER_STORAGE_TYPE", "FILE")
        monkeypatch.setenv("LEDGER_STORAGE_PATH", str(tmp_path))
        monkeypatch.setenv("LEDGER_MAX_APPEND_ATTEMPTS", "9")
        monkeypatch.setenv("LEDGER_STRICT_AUDIT_CATEGORIES", "billing, security")
        monkeypatch.setenv("LEDGER_DATABASE_POOL_MIN_SIZE", "3")
        monkeypatch.setenv("LEDGER_DATABASE_POOL_MAX_SIZE", "20")
        monkeypatch.setenv("LEDGER_EXPORT_MAX_RECORDS", "500")

        config = AuditConfig.from_env()

        assert config.storage_type == StorageType.FILE
        assert config.storage_path == str(tmp_path)
        assert config.max_append_attempts == 9
        assert config.strict_audit_categories == [AuditCategory.BILLING, AuditCategory.SECURITY]
        assert config.database_pool_min_size == 3
        assert config.database_pool_max_size == 20
        assert config.export_max_records == 500

    def test_from_env_defaults(self, monkeypatch) -> None:
        for name in (
            "LEDGER_DATABASE_POOL_MIN_SIZE",
            "LEDGER_DATABASE_POOL_MAX_SIZE",
            "LEDGER_EXPORT_MAX_RECORDS",
        ):
            monkeypatch.delenv(name, raising=False)

        config = AuditConfig.from_env()

        assert config.database_pool_min_size == 2
        assert config.database_pool_max_size == 10
        assert config.export_max_records == 10000

    def test_from_env_validates_pool_sizes(self, monkeypatch) -> None:
        monkeypatch.setenv("LEDGER_DATABASE_POOL_MIN_SIZE", "8")
        monkeypatch.setenv("LEDGER_DATABASE_POOL_MAX_SIZE", "4")

        with pytest.raises(ValidationError):
            AuditConfig.from_env()


class TestCreateLedgerStore:
    """Tests for backend selection."""

    @pytest.mark.asyncio
    async def test_memory(self) -> None:
        store = await create_ledger_store(AuditConfig(storage_type="memory"))
        assert isinstance(store, InMemoryLedgerStore)

    @pytest.mark.asyncio
    async def test_file(self, tmp_path) -> None:
        store = await create_ledger_store(
            AuditConfig(storage_type="file", storage_path=str(tmp_path / "ledger"))
        )
        assert isinstance(store, FileLedgerStore)
        assert (tmp_path / "ledger").is_dir()


class TestSettings:
    """Tests for API settings."""

    def test_env_prefix(self, monkeypatch) -> None:
        monkeypatch.setenv("LEDGER_STORAGE_TYPE", "memory")
        monkeypatch.setenv("LEDGER_PORT", "9000")

        settings = Settings()

        assert settings.storage_type == "memory"
        assert settings.port == 9000

    def test_audit_config(self) -> None:
        settings = Settings(
            storage_type="memory",
            system_scope_id="platform",
            strict_audit_categories=["billing"],
        )

        config = settings.audit_config

        assert config.storage_type == StorageType.MEMORY
        assert config.system_scope_id == "platform"
        assert config.strict_audit_categories == [AuditCategory.BILLING]
