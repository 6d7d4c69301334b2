"""Audit ledger exceptions."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ledger.audit.models import LogCategory, VerificationResult


class LedgerError(Exception):
    """Base class for audit ledger errors."""


class Conflict(LedgerError):
    """A record with the same sequence number already exists in the chain."""

    def __init__(self, scope_id: str, category: "LogCategory", sequence_num: int):
        self.scope_id = scope_id
        self.category = category
        self.sequence_num = sequence_num
        super().__init__(
            f"Sequence {sequence_num} already exists for "
            f"scope={scope_id} category={category.value}"
        )


class StorageUnavailable(LedgerError):
    """The underlying store could not be read or written."""


class AppendContention(LedgerError):
    """Retries exhausted while other writers kept winning the chain head.

    Transient: the caller may retry.
    """

    def __init__(self, scope_id: str, category: "LogCategory", attempts: int):
        self.scope_id = scope_id
        self.category = category
        self.attempts = attempts
        super().__init__(
            f"Could not append to scope={scope_id} category={category.value} "
            f"after {attempts} attempts"
        )


class NotFound(LedgerError):
    """No records exist for the requested chain."""


class IntegrityViolation(LedgerError):
    """A verification finding. Never retryable."""

    def __init__(self, result: "VerificationResult"):
        self.result = result
        super().__init__(result.error or "Integrity violation")


class MalformedGenesis(IntegrityViolation):
    """The first record of a chain links to a predecessor."""


class ChainBroken(IntegrityViolation):
    """A record's previous_hash does not match its predecessor's hash."""


class SequenceGap(IntegrityViolation):
    """Sequence numbers skip, implying deleted records."""


class ContentTampered(IntegrityViolation):
    """A stored hash no longer matches the stored content."""


def violation_for(result: "VerificationResult") -> IntegrityViolation:
    """Build the exception that matches a failed verification result."""
    from ledger.audit.models import VerificationFailure

    exc_type = {
        VerificationFailure.MALFORMED_GENESIS: MalformedGenesis,
        VerificationFailure.CHAIN_BROKEN: ChainBroken,
        VerificationFailure.SEQUENCE_GAP: SequenceGap,
        VerificationFailure.CONTENT_TAMPERED: ContentTampered,
    }.get(result.failure, IntegrityViolation)
    return exc_type(result)
