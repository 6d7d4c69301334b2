"""Integrity verifier tests."""

from __future__ import annotations

import json
import logging

import pytest

from ledger.audit.chain import ChainAppender
from ledger.audit.errors import (
    ChainBroken,
    ContentTampered,
    IntegrityViolation,
    MalformedGenesis,
    SequenceGap,
)
from ledger.audit.hashing import ContentHasher
from ledger.audit.models import (
    GeneralAuditPayload,
    LogCategory,
    VerificationFailure,
)
from ledger.audit.storage import FileLedgerStore, InMemoryLedgerStore
from ledger.audit.verifier import IntegrityVerifier

SCOPE = "A"
CHAIN = (SCOPE, LogCategory.GENERAL_AUDIT)


class TestIntegrityVerifier:
    """Tests for chain verification."""

    @pytest.fixture
    def store(self) -> InMemoryLedgerStore:
        return InMemoryLedgerStore()

    @pytest.fixture
    def appender(self, store) -> ChainAppender:
        return ChainAppender(store)

    @pytest.fixture
    def verifier(self, store) -> IntegrityVerifier:
        return IntegrityVerifier(store)

    @staticmethod
    async def append_many(appender: ChainAppender, count: int, scope_id: str = SCOPE) -> None:
        for i in range(count):
            await appender.append(
                scope_id,
                LogCategory.GENERAL_AUDIT,
                action=f"ACTION_{i}",
                payload=GeneralAuditPayload(metadata={"index": i}),
            )

    @staticmethod
    def replace(store: InMemoryLedgerStore, seq: int, **update) -> None:
        chain = store._chains[CHAIN]
        chain[seq] = chain[seq].model_copy(update=update)

    @staticmethod
    def forge(store: InMemoryLedgerStore, seq: int, **update) -> None:
        """Rewrite a record and give it a matching content hash."""
        chain = store._chains[CHAIN]
        forged = chain[seq].model_copy(update=update)
        chain[seq] = forged.model_copy(update={"hash": ContentHasher().hash(forged)})

    @pytest.mark.asyncio
    async def test_empty_chain_is_valid(self, verifier) -> None:
        result = await verifier.verify(SCOPE, LogCategory.GENERAL_AUDIT)

        assert result.valid
        assert result.logs_verified == 0
        assert result.message == "No logs to verify"

    @pytest.mark.asyncio
    async def test_basic_chain(self, appender, verifier) -> None:
        await self.append_many(appender, 3)

        result = await verifier.verify(SCOPE, LogCategory.GENERAL_AUDIT)

        assert result.valid
        assert result.logs_verified == 3
        assert result.first_sequence == 0
        assert result.last_sequence == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [1, 2, 7])
    async def test_sequential_appends_verify(self, appender, verifier, count) -> None:
        await self.append_many(appender, count)

        result = await verifier.verify(SCOPE, LogCategory.GENERAL_AUDIT)

        assert result.valid
        assert result.logs_verified == count

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seq", [0, 2, 4])
    async def test_detects_content_tampering(self, appender, verifier, store, seq) -> None:
        await self.append_many(appender, 5)
        self.replace(store, seq, action="TAMPERED ACTION")

        result = await verifier.verify(SCOPE, LogCategory.GENERAL_AUDIT)

        assert not result.valid
        assert result.failure == VerificationFailure.CONTENT_TAMPERED
        assert result.failed_sequence == seq
        assert result.tampered_record.action == "TAMPERED ACTION"
        assert result.expected_hash != result.actual_hash

    @pytest.mark.asyncio
    async def test_detects_payload_tampering(self, appender, verifier, store) -> None:
        await self.append_many(appender, 3)
        self.replace(store, 1, payload=GeneralAuditPayload(metadata={"index": 99}))

        result = await verifier.verify(SCOPE, LogCategory.GENERAL_AUDIT)

        assert result.failure == VerificationFailure.CONTENT_TAMPERED
        assert result.failed_sequence == 1

    @pytest.mark.asyncio
    async def test_detects_deletion(self, appender, verifier, store) -> None:
        await self.append_many(appender, 5)
        del store._chains[CHAIN][2]

        result = await verifier.verify(SCOPE, LogCategory.GENERAL_AUDIT)

        assert not result.valid
        assert result.failure == VerificationFailure.SEQUENCE_GAP
        assert result.possible_deletion is True
        assert result.missing_sequences == 1
        assert result.failed_sequence == 3
        assert result.previous_record.sequence_num == 1

    @pytest.mark.asyncio
    async def test_detects_broken_link(self, appender, verifier, store) -> None:
        await self.append_many(appender, 3)
        self.forge(store, 2, previous_hash="f" * 64)

        result = await verifier.verify(SCOPE, LogCategory.GENERAL_AUDIT)

        assert result.failure == VerificationFailure.CHAIN_BROKEN
        assert result.failed_sequence == 2

    @pytest.mark.asyncio
    async def test_rewritten_sequence_number_is_tampering(
        self, appender, verifier, store
    ) -> None:
        await self.append_many(appender, 5)
        original = store._chains[CHAIN][2]
        self.replace(store, 2, sequence_num=7)

        result = await verifier.verify(SCOPE, LogCategory.GENERAL_AUDIT)

        assert result.failure == VerificationFailure.CONTENT_TAMPERED
        assert result.tampered_record.record_id == original.record_id
        assert result.failed_sequence == 7

    @pytest.mark.asyncio
    async def test_detects_tampering_before_linkage(self, appender, verifier, store) -> None:
        await self.append_many(appender, 4)
        self.replace(store, 1, previous_hash="f" * 64)

        result = await verifier.verify(SCOPE, LogCategory.GENERAL_AUDIT)

        assert result.failure == VerificationFailure.CONTENT_TAMPERED
        assert result.failed_sequence == 1

    @pytest.mark.asyncio
    async def test_rehashed_rewrite_breaks_the_next_link(
        self, appender, verifier, store
    ) -> None:
        await self.append_many(appender, 4)
        self.forge(store, 1, action="TAMPERED ACTION")

        result = await verifier.verify(SCOPE, LogCategory.GENERAL_AUDIT)

        assert result.failure == VerificationFailure.CHAIN_BROKEN
        assert result.failed_sequence == 2
        assert result.previous_record.action == "TAMPERED ACTION"

    @pytest.mark.asyncio
    async def test_detects_malformed_genesis(self, appender, verifier, store) -> None:
        await self.append_many(appender, 2)
        self.replace(store, 0, previous_hash="f" * 64)

        result = await verifier.verify(SCOPE, LogCategory.GENERAL_AUDIT)

        assert result.failure == VerificationFailure.MALFORMED_GENESIS
        assert result.failed_sequence == 0

    @pytest.mark.asyncio
    async def test_cleared_verified_flag_is_tampering(self, appender, verifier, store) -> None:
        await self.append_many(appender, 3)
        self.replace(store, 1, verified=False)

        result = await verifier.verify(SCOPE, LogCategory.GENERAL_AUDIT)

        assert result.failure == VerificationFailure.CONTENT_TAMPERED
        assert result.failed_sequence == 1

    @pytest.mark.asyncio
    async def test_unhashed_legacy_records_are_skipped(self, appender, verifier, store) -> None:
        await self.append_many(appender, 1)
        self.replace(store, 0, hash=None, verified=False)

        result = await verifier.verify(SCOPE, LogCategory.GENERAL_AUDIT)

        assert result.valid

    @pytest.mark.asyncio
    async def test_verification_is_idempotent(self, appender, verifier, store) -> None:
        await self.append_many(appender, 4)
        self.replace(store, 3, action="TAMPERED")

        first = await verifier.verify(SCOPE, LogCategory.GENERAL_AUDIT)
        second = await verifier.verify(SCOPE, LogCategory.GENERAL_AUDIT)

        assert first == second
        assert len(store._chains[CHAIN]) == 4

    @pytest.mark.asyncio
    async def test_failure_is_logged_to_security_channel(
        self, appender, verifier, store, caplog
    ) -> None:
        await self.append_many(appender, 2)
        self.replace(store, 1, action="TAMPERED")

        with caplog.at_level(logging.ERROR, logger="ledger.security"):
            await verifier.verify(SCOPE, LogCategory.GENERAL_AUDIT)

        assert any(r.name == "ledger.security" for r in caplog.records)

    @pytest.mark.asyncio
    async def test_raise_if_invalid(self, appender, verifier, store) -> None:
        await self.append_many(appender, 3)

        result = await verifier.verify(SCOPE, LogCategory.GENERAL_AUDIT)
        result.raise_if_invalid()

        del store._chains[CHAIN][1]
        result = await verifier.verify(SCOPE, LogCategory.GENERAL_AUDIT)
        with pytest.raises(SequenceGap) as exc_info:
            result.raise_if_invalid()

        assert isinstance(exc_info.value, IntegrityViolation)
        assert exc_info.value.result is result

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("rewrite", "update", "exc_type"),
        [
            ("replace", {"action": "X"}, ContentTampered),
            ("forge", {"previous_hash": "f" * 64}, ChainBroken),
        ],
    )
    async def test_violation_types(
        self, appender, verifier, store, rewrite, update, exc_type
    ) -> None:
        await self.append_many(appender, 3)
        getattr(self, rewrite)(store, 2, **update)

        result = await verifier.verify(SCOPE, LogCategory.GENERAL_AUDIT)

        with pytest.raises(exc_type):
            result.raise_if_invalid()

    @pytest.mark.asyncio
    async def test_malformed_genesis_violation(self, appender, verifier, store) -> None:
        await self.append_many(appender, 1)
        self.replace(store, 0, previous_hash="f" * 64)

        result = await verifier.verify(SCOPE, LogCategory.GENERAL_AUDIT)

        with pytest.raises(MalformedGenesis):
            result.raise_if_invalid()


class TestScopeVerification:
    """Tests for verifying many chains at once."""

    @pytest.mark.asyncio
    async def test_verify_scope_covers_every_category(self) -> None:
        store = InMemoryLedgerStore()
        await TestIntegrityVerifier.append_many(ChainAppender(store), 2)

        report = await IntegrityVerifier(store).verify_scope(SCOPE)

        assert report.overall_valid
        assert set(report.results) == set(LogCategory)
        assert report.results[LogCategory.GENERAL_AUDIT].logs_verified == 2
        assert report.results[LogCategory.DATA_ACCESS].logs_verified == 0

    @pytest.mark.asyncio
    async def test_verify_all_flags_the_tampered_scope(self) -> None:
        store = InMemoryLedgerStore()
        appender = ChainAppender(store)
        await TestIntegrityVerifier.append_many(appender, 2, scope_id="clean")
        await TestIntegrityVerifier.append_many(appender, 2, scope_id=SCOPE)
        TestIntegrityVerifier.replace(store, 1, action="TAMPERED")

        reports = await IntegrityVerifier(store).verify_all()

        by_scope = {r.scope_id: r for r in reports}
        assert by_scope["clean"].overall_valid
        assert not by_scope[SCOPE].overall_valid


class TestFileTampering:
    """Tampering with the JSONL file on disk."""

    @pytest.mark.asyncio
    async def test_edited_file_is_detected(self, tmp_path) -> None:
        store = FileLedgerStore(tmp_path)
        await TestIntegrityVerifier.append_many(ChainAppender(store), 3)
        verifier = IntegrityVerifier(store)

        assert (await verifier.verify(SCOPE, LogCategory.GENERAL_AUDIT)).valid

        file_path = store._chain_file(SCOPE, LogCategory.GENERAL_AUDIT)
        with open(file_path, "r", encoding="utf-8") as f:
            lines = f.readlines()
        record = json.loads(lines[1])
        record["action"] = "TAMPERED ACTION"
        lines[1] = json.dumps(record) + "\n"
        with open(file_path, "w", encoding="utf-8") as f:
            f.writelines(lines)

        result = await verifier.verify(SCOPE, LogCategory.GENERAL_AUDIT)

        assert not result.valid
        assert result.failure == VerificationFailure.CONTENT_TAMPERED
        assert result.failed_sequence == 1

    @pytest.mark.asyncio
    async def test_rewritten_sequence_number_in_file(self, tmp_path) -> None:
        store = FileLedgerStore(tmp_path)
        await TestIntegrityVerifier.append_many(ChainAppender(store), 5)

        file_path = store._chain_file(SCOPE, LogCategory.GENERAL_AUDIT)
        with open(file_path, "r", encoding="utf-8") as f:
            lines = f.readlines()
        record = json.loads(lines[2])
        record["sequence_num"] = 7
        lines[2] = json.dumps(record) + "\n"
        with open(file_path, "w", encoding="utf-8") as f:
            f.writelines(lines)

        result = await IntegrityVerifier(store).verify(SCOPE, LogCategory.GENERAL_AUDIT)

        assert result.failure == VerificationFailure.CONTENT_TAMPERED
        assert result.tampered_record.record_id == record["record_id"]
