"""Audit Ledger Package.

Tamper-evident audit logging with per-scope hash chains for compliance
and security investigations.

Features:
- Append-only records, one chain per (scope, category)
- Cryptographic hash chaining with contiguous sequence numbers
- Fork-free appends under concurrent writers
- Chain integrity verification (tampering, deletion, broken links)
- Filtered queries and NDJSON/CSV compliance exports

Usage:
    from ledger.audit import AuditFacade, InMemoryLedgerStore, LogCategory

    audit = AuditFacade(InMemoryLedgerStore())

    # Record an event
    outcome = await audit.log_billing_operation(
        "company-123",
        action="PLAN_UPGRADED",
        user_id="user-1",
        amount=49.0,
    )

    # Verify chain integrity
    result = await audit.verify("company-123", LogCategory.GENERAL_AUDIT)
"""

from ledger.audit.chain import ChainAppender
from ledger.audit.config import AuditConfig, StorageType
from ledger.audit.errors import (
    AppendContention,
    ChainBroken,
    Conflict,
    ContentTampered,
    IntegrityViolation,
    LedgerError,
    MalformedGenesis,
    NotFound,
    SequenceGap,
    StorageUnavailable,
)
from ledger.audit.export import ExportFormat
from ledger.audit.facade import AppendOutcome, AuditFacade
from ledger.audit.hashing import ContentHasher
from ledger.audit.models import (
    AccessType,
    Actor,
    AuditAction,
    AuditCategory,
    AuditSeverity,
    DataAccessPayload,
    GeneralAuditPayload,
    LedgerQuery,
    LogCategory,
    LogRecord,
    RequestContext,
    SecurityEventPayload,
    SecurityEventType,
    SecuritySeverity,
    SecurityStats,
    VerificationFailure,
    VerificationResult,
)
from ledger.audit.storage import (
    FileLedgerStore,
    InMemoryLedgerStore,
    LedgerStore,
    PostgresLedgerStore,
    create_ledger_store,
)
from ledger.audit.verifier import IntegrityVerifier

__all__ = [
    "AccessType",
    "Actor",
    "AppendContention",
    "AppendOutcome",
    "AuditAction",
    "AuditCategory",
    "AuditConfig",
    "AuditFacade",
    "AuditSeverity",
    "ChainAppender",
    "ChainBroken",
    "Conflict",
    "ContentHasher",
    "ContentTampered",
    "DataAccessPayload",
    "ExportFormat",
    "FileLedgerStore",
    "GeneralAuditPayload",
    "InMemoryLedgerStore",
    "IntegrityVerifier",
    "IntegrityViolation",
    "LedgerError",
    "LedgerQuery",
    "LedgerStore",
    "LogCategory",
    "LogRecord",
    "MalformedGenesis",
    "NotFound",
    "PostgresLedgerStore",
    "RequestContext",
    "SecurityEventPayload",
    "SecurityEventType",
    "SecuritySeverity",
    "SecurityStats",
    "SequenceGap",
    "StorageType",
    "StorageUnavailable",
    "VerificationFailure",
    "VerificationResult",
    "create_ledger_store",
]
