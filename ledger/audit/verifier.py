"""Chain integrity verification.

Walks a chain from genesis to head and reports the first record that
fails a check. Read-only: safe to run while appends are in flight.
"""

import logging

from ledger.audit.hashing import ContentHasher
from ledger.audit.models import (
    LogCategory,
    LogRecord,
    ScopeVerificationReport,
    VerificationFailure,
    VerificationResult,
)
from ledger.audit.storage import LedgerStore

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("ledger.security")


class IntegrityVerifier:
    """Proves or disproves that a chain is unaltered and untruncated.

    Checks, in order:
    1. The genesis record has no previous_hash
    2. Each verified record's hash matches its recomputed content hash
    3. Sequence numbers are contiguous (a gap means deleted records)
    4. Each previous_hash equals the predecessor's hash
    """

    def __init__(self, store: LedgerStore, hasher: ContentHasher | None = None):
        self.store = store
        self.hasher = hasher or ContentHasher()

    async def verify(self, scope_id: str, category: LogCategory) -> VerificationResult:
        """Verify integrity of one chain.

        Returns:
            A valid result with counts, or an invalid result describing the
            first failing record. An empty chain is valid.
        """
        records = await self.store.range(scope_id, category)
        result = self.verify_records(scope_id, category, records)

        if result.valid:
            logger.info(
                "Chain verification passed: scope=%s category=%s records=%d",
                scope_id,
                category.value,
                result.logs_verified,
            )
        else:
            security_logger.error(
                "Chain verification FAILED: scope=%s category=%s failure=%s error=%s",
                scope_id,
                category.value,
                result.failure.value if result.failure else None,
                result.error,
            )
        return result

    def verify_records(
        self,
        scope_id: str,
        category: LogCategory,
        records: list[LogRecord],
    ) -> VerificationResult:
        """Verify an ordered list of records already read from a chain."""
        if not records:
            return VerificationResult(
                scope_id=scope_id,
                category=category,
                valid=True,
                message="No logs to verify",
            )

        first = records[0]
        if first.previous_hash is not None:
            return VerificationResult(
                scope_id=scope_id,
                category=category,
                valid=False,
                failure=VerificationFailure.MALFORMED_GENESIS,
                error="First log has invalid previous_hash (should be null)",
                failed_sequence=first.sequence_num,
                tampered_record=first,
            )

        # Content first: a record rewritten in place (its sequence number
        # included) is tampering wherever it now sorts.
        for record in records:
            tampered = self._check_content(scope_id, category, record)
            if tampered:
                return tampered

        for previous, current in zip(records, records[1:]):
            if current.sequence_num != previous.sequence_num + 1:
                return VerificationResult(
                    scope_id=scope_id,
                    category=category,
                    valid=False,
                    failure=VerificationFailure.SEQUENCE_GAP,
                    error=(
                        f"Sequence gap detected between {previous.sequence_num} "
                        f"and {current.sequence_num}"
                    ),
                    failed_sequence=current.sequence_num,
                    tampered_record=current,
                    previous_record=previous,
                    possible_deletion=True,
                    missing_sequences=current.sequence_num - previous.sequence_num - 1,
                )

            if current.previous_hash != previous.hash:
                return VerificationResult(
                    scope_id=scope_id,
                    category=category,
                    valid=False,
                    failure=VerificationFailure.CHAIN_BROKEN,
                    error=f"Hash chain broken at sequence {current.sequence_num}",
                    failed_sequence=current.sequence_num,
                    tampered_record=current,
                    previous_record=previous,
                )

        return VerificationResult(
            scope_id=scope_id,
            category=category,
            valid=True,
            logs_verified=len(records),
            first_sequence=first.sequence_num,
            last_sequence=records[-1].sequence_num,
            message=f"All {len(records)} logs verified successfully",
        )

    def _check_content(
        self,
        scope_id: str,
        category: LogCategory,
        record: LogRecord,
    ) -> VerificationResult | None:
        if not record.verified:
            # Records from before hashing carry no hash. A hash without the
            # flag means the flag was cleared after the fact.
            if record.hash is None:
                return None
            return VerificationResult(
                scope_id=scope_id,
                category=category,
                valid=False,
                failure=VerificationFailure.CONTENT_TAMPERED,
                error=f"Verified flag cleared at sequence {record.sequence_num}",
                failed_sequence=record.sequence_num,
                tampered_record=record,
                actual_hash=record.hash,
            )

        expected = self.hasher.hash(record)
        if expected == record.hash:
            return None

        return VerificationResult(
            scope_id=scope_id,
            category=category,
            valid=False,
            failure=VerificationFailure.CONTENT_TAMPERED,
            error=f"Log content tampered at sequence {record.sequence_num}",
            failed_sequence=record.sequence_num,
            tampered_record=record,
            expected_hash=expected,
            actual_hash=record.hash,
        )

    async def verify_scope(self, scope_id: str) -> ScopeVerificationReport:
        """Verify every chain of one scope."""
        results = {}
        for category in LogCategory:
            results[category] = await self.verify(scope_id, category)

        return ScopeVerificationReport(
            scope_id=scope_id,
            results=results,
            overall_valid=all(r.valid for r in results.values()),
        )

    async def verify_all(self) -> list[ScopeVerificationReport]:
        """Verify every chain of every scope known to the store."""
        reports = []
        for scope_id in await self.store.scopes():
            reports.append(await self.verify_scope(scope_id))

        failed = [r.scope_id for r in reports if not r.overall_valid]
        if failed:
            security_logger.error(
                "Integrity audit found %d invalid scope(s): %s",
                len(failed),
                ", ".join(failed),
            )
        else:
            logger.info("Integrity audit passed for %d scope(s)", len(reports))
        return reports
