"""Audit ledger data models.

Immutable, hash-linked log records and the reports produced when a chain
is verified or queried.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)

RECORD_SCHEMA_VERSION = "1"


class LogCategory(str, Enum):
    """Independent chains kept for every scope."""

    GENERAL_AUDIT = "GeneralAudit"
    SECURITY_EVENT = "SecurityEvent"
    DATA_ACCESS = "DataAccess"


class AuditCategory(str, Enum):
    """Classification of a general audit event."""

    AUTHENTICATION = "AUTHENTICATION"
    AUTHORIZATION = "AUTHORIZATION"
    DATA_ACCESS = "DATA_ACCESS"
    DATA_MODIFICATION = "DATA_MODIFICATION"
    BILLING = "BILLING"
    SECURITY = "SECURITY"
    COMPLIANCE = "COMPLIANCE"
    MFA = "MFA"
    USER_MANAGEMENT = "USER_MANAGEMENT"
    GENERAL = "GENERAL"


class AuditSeverity(str, Enum):
    """Severity levels for general audit events."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class SecuritySeverity(str, Enum):
    """Severity levels for security events."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class SecurityEventType(str, Enum):
    """Types of security events."""

    FAILED_LOGIN = "FAILED_LOGIN"
    MULTIPLE_FAILED_LOGINS = "MULTIPLE_FAILED_LOGINS"
    MULTIPLE_FAILED_MFA = "MULTIPLE_FAILED_MFA"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    UNAUTHORIZED_ACCESS_ATTEMPT = "UNAUTHORIZED_ACCESS_ATTEMPT"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"


class AccessType(str, Enum):
    """How personal data was accessed."""

    READ = "READ"
    WRITE = "WRITE"
    DELETE = "DELETE"
    EXPORT = "EXPORT"
    DOWNLOAD = "DOWNLOAD"


class AuditAction(str, Enum):
    """Well-known action names.

    Records store the action as a plain string, so callers may log actions
    outside this list.
    """

    # Authentication
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    LOGIN_FAILED = "LOGIN_FAILED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"

    # MFA
    MFA_ENABLED = "MFA_ENABLED"
    MFA_DISABLED = "MFA_DISABLED"
    MFA_VERIFIED = "MFA_VERIFIED"
    MFA_FAILED = "MFA_FAILED"
    BACKUP_CODES_GENERATED = "BACKUP_CODES_GENERATED"

    # Drivers and documents
    DRIVER_CREATED = "DRIVER_CREATED"
    DRIVER_UPDATED = "DRIVER_UPDATED"
    DRIVER_DELETED = "DRIVER_DELETED"
    DRIVER_INVITED = "DRIVER_INVITED"
    DOCUMENT_UPLOADED = "DOCUMENT_UPLOADED"
    DOCUMENT_VIEWED = "DOCUMENT_VIEWED"
    DOCUMENT_DELETED = "DOCUMENT_DELETED"
    DOCUMENT_PROCESSED = "DOCUMENT_PROCESSED"
    DOCUMENT_DOWNLOAD_URL_GENERATED = "DOCUMENT_DOWNLOAD_URL_GENERATED"

    # Billing
    PLAN_UPGRADED = "PLAN_UPGRADED"
    PLAN_DOWNGRADED = "PLAN_DOWNGRADED"
    PAYMENT_PROCESSED = "PAYMENT_PROCESSED"
    CREDITS_PURCHASED = "CREDITS_PURCHASED"

    # Team and reminders
    TEAM_MEMBER_INVITED = "TEAM_MEMBER_INVITED"
    TEAM_MEMBER_ROLE_UPDATED = "TEAM_MEMBER_ROLE_UPDATED"
    TEAM_MEMBER_REMOVED = "TEAM_MEMBER_REMOVED"
    REMINDER_CONFIGURED = "REMINDER_CONFIGURED"
    REMINDER_UPDATED = "REMINDER_UPDATED"
    REMINDER_DELETED = "REMINDER_DELETED"
    REMINDER_SENT = "REMINDER_SENT"

    # Tickets
    TICKET_CREATED = "TICKET_CREATED"
    TICKET_UPDATED = "TICKET_UPDATED"
    TICKET_STATUS_CHANGED = "TICKET_STATUS_CHANGED"

    # Compliance and security
    DATA_EXPORTED = "DATA_EXPORTED"
    CSV_IMPORTED = "CSV_IMPORTED"
    SETTINGS_UPDATED = "SETTINGS_UPDATED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    AUDIT_LOG_VIEWED = "AUDIT_LOG_VIEWED"
    AUDIT_LOG_EXPORTED = "AUDIT_LOG_EXPORTED"


class Actor(BaseModel):
    """Who performed an action. Every field is optional for system events."""

    model_config = ConfigDict(frozen=True)

    user_id: str | None = None
    email: str | None = None
    name: str | None = None


class RequestContext(BaseModel):
    """Where a request came from."""

    model_config = ConfigDict(frozen=True)

    ip_address: str | None = None
    user_agent: str | None = None


# =============================================================================
# Payloads
# =============================================================================


class GeneralAuditPayload(BaseModel):
    """Payload of a general audit record."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["general_audit"] = "general_audit"
    method: str | None = None
    endpoint: str | None = None
    status_code: int | None = None
    region: str | None = None
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    changes: list[str] | None = None
    metadata: dict[str, Any] | None = None
    error_message: str | None = None
    severity: AuditSeverity = AuditSeverity.INFO
    audit_category: AuditCategory = AuditCategory.GENERAL


class SecurityEventPayload(BaseModel):
    """Payload of a security event record."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["security_event"] = "security_event"
    event_type: SecurityEventType
    severity: SecuritySeverity = SecuritySeverity.LOW
    location: str | None = None
    description: str
    metadata: dict[str, Any] | None = None
    blocked: bool = False
    action_taken: str | None = None


class DataAccessPayload(BaseModel):
    """Payload of a data access record (GDPR/PIPEDA trail)."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["data_access"] = "data_access"
    data_type: str
    data_id: str
    data_owner_id: str | None = None
    access_type: AccessType
    operation: str
    purpose: str | None = None
    endpoint: str | None = None


Payload = Annotated[
    Union[GeneralAuditPayload, SecurityEventPayload, DataAccessPayload],
    Field(discriminator="kind"),
]

PAYLOAD_KIND_BY_CATEGORY: dict[LogCategory, str] = {
    LogCategory.GENERAL_AUDIT: "general_audit",
    LogCategory.SECURITY_EVENT: "security_event",
    LogCategory.DATA_ACCESS: "data_access",
}


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


# =============================================================================
# Log record
# =============================================================================


class LogRecord(BaseModel):
    """One immutable entry in a hash-linked chain.

    Chain integrity:
    - `hash` is SHA-256 over the canonical form of every field except
      `hash` and `verified`, so it commits to `previous_hash`
    - `previous_hash` is the `hash` of the preceding record in the same
      (scope_id, category) chain, or None for the genesis record
    - `sequence_num` starts at 0 and is contiguous within a chain
    - `verified` is False only for records written before hashing existed
    """

    model_config = ConfigDict(frozen=True)

    schema_version: str = Field(
        default=RECORD_SCHEMA_VERSION,
        description="Version of the persisted record layout",
    )
    record_id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Unique identifier for this record",
    )
    scope_id: str = Field(min_length=1, description="Partition (e.g. company) owning the chain")
    category: LogCategory = Field(description="Chain this record belongs to")
    sequence_num: int = Field(ge=0, description="Position within the chain")
    timestamp: datetime = Field(default_factory=utcnow, description="When the record was appended")

    actor: Actor = Field(default_factory=Actor)
    action: str = Field(min_length=1, description="What happened")
    resource: str | None = Field(default=None, description="Type of resource affected")
    resource_id: str | None = Field(default=None, description="ID of resource affected")
    context: RequestContext = Field(default_factory=RequestContext)
    payload: Payload

    previous_hash: str | None = Field(default=None, description="Hash of the preceding record")
    hash: str | None = Field(default=None, description="Hash of this record")
    verified: bool = Field(default=False, description="Hash computed at append time")

    @field_validator("timestamp")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    @model_validator(mode="after")
    def _payload_matches_category(self) -> "LogRecord":
        expected = PAYLOAD_KIND_BY_CATEGORY[self.category]
        if self.payload.kind != expected:
            raise ValueError(
                f"{self.category.value} records require a '{expected}' payload, "
                f"got '{self.payload.kind}'"
            )
        return self

    @property
    def chain_key(self) -> tuple[str, LogCategory]:
        return (self.scope_id, self.category)

    @property
    def severity(self) -> str:
        """Severity label regardless of payload kind."""
        severity = getattr(self.payload, "severity", None)
        return severity.value if severity is not None else AuditSeverity.INFO.value

    @property
    def audit_category(self) -> AuditCategory | None:
        return getattr(self.payload, "audit_category", None)


# =============================================================================
# Verification reports
# =============================================================================


class VerificationFailure(str, Enum):
    """Which integrity check failed."""

    MALFORMED_GENESIS = "MalformedGenesis"
    CHAIN_BROKEN = "ChainBroken"
    SEQUENCE_GAP = "SequenceGap"
    CONTENT_TAMPERED = "ContentTampered"


class VerificationResult(BaseModel):
    """Outcome of walking one chain.

    Carries no wall-clock fields: verifying an unchanged chain twice gives
    equal results.
    """

    scope_id: str
    category: LogCategory
    valid: bool
    failure: VerificationFailure | None = None
    error: str | None = None
    message: str | None = None

    logs_verified: int = 0
    first_sequence: int | None = None
    last_sequence: int | None = None

    failed_sequence: int | None = None
    tampered_record: LogRecord | None = None
    previous_record: LogRecord | None = None
    possible_deletion: bool = False
    missing_sequences: int | None = None
    expected_hash: str | None = None
    actual_hash: str | None = None

    def raise_if_invalid(self) -> None:
        """Raise the IntegrityViolation matching this result's failure."""
        if self.valid:
            return

        from ledger.audit.errors import violation_for

        raise violation_for(self)


class ScopeVerificationReport(BaseModel):
    """Integrity of every chain in one scope."""

    scope_id: str
    results: dict[LogCategory, VerificationResult]
    overall_valid: bool


class ChainStatus(BaseModel):
    """Current head of a chain."""

    scope_id: str
    category: LogCategory
    total_records: int
    last_sequence: int | None
    last_hash: str | None
    last_timestamp: datetime | None


class SecurityStats(BaseModel):
    """Security event dashboard figures.

    Severity counts, the blocked count and the recent high-severity list
    cover the last 24 hours; the event type breakdown covers 7 days.
    """

    scope_id: str | None
    by_severity: dict[str, int]
    by_time_range: dict[str, int]
    by_event_type: dict[str, int]
    blocked_events: int
    recent_critical: list[LogRecord]
    total_events: int


# =============================================================================
# Query
# =============================================================================


class LedgerQuery(BaseModel):
    """Filters for searching and paging records."""

    scope_id: str | None = Field(default=None, description="None searches every scope")
    record_id: str | None = None
    category: LogCategory | None = None
    actor_id: str | None = None
    action: str | None = None
    resource: str | None = None
    audit_category: AuditCategory | None = None
    severity: str | None = None
    blocked: bool | None = Field(default=None, description="Security events only")
    start_time: datetime | None = None
    end_time: datetime | None = None
    search: str | None = Field(
        default=None,
        description="Case-insensitive match on actor email, actor name, action and resource",
    )
    limit: int = Field(default=100, ge=1, le=10000)
    offset: int = Field(default=0, ge=0)

    def matches(self, record: LogRecord) -> bool:
        """Check a record against every filter set on this query."""
        if self.scope_id is not None and record.scope_id != self.scope_id:
            return False
        if self.record_id is not None and record.record_id != self.record_id:
            return False
        if self.category is not None and record.category != self.category:
            return False
        if self.actor_id is not None and record.actor.user_id != self.actor_id:
            return False
        if self.action is not None and record.action != self.action:
            return False
        if self.resource is not None and record.resource != self.resource:
            return False
        if self.audit_category is not None and record.audit_category != self.audit_category:
            return False
        if self.severity is not None and record.severity != self.severity:
            return False
        if self.blocked is not None and getattr(record.payload, "blocked", None) != self.blocked:
            return False
        if self.start_time is not None and record.timestamp < _as_utc(self.start_time):
            return False
        if self.end_time is not None and record.timestamp > _as_utc(self.end_time):
            return False
        if self.search:
            needle = self.search.lower()
            haystack = (
                record.actor.email,
                record.actor.name,
                record.action,
                record.resource,
            )
            if not any(value and needle in value.lower() for value in haystack):
                return False
        return True


class QueryPage(BaseModel):
    """One page of query results, newest first."""

    records: list[LogRecord]
    total: int
    limit: int
    offset: int

    @computed_field
    @property
    def has_more(self) -> bool:
        return self.offset + len(self.records) < self.total


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def newest_first(records: list[LogRecord]) -> list[LogRecord]:
    """Sort records reverse-chronologically."""
    return sorted(records, key=lambda r: (r.timestamp, r.sequence_num), reverse=True)
