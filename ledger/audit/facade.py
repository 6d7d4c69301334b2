"""Audit facade.

The surface business code calls. Category-specific helpers normalize
caller fields into log records and funnel into one chain appender; query,
export and verification delegate to the store and the verifier.

Append policy: a failed audit write never aborts the operation being
audited. Each helper returns an AppendOutcome the caller can inspect, and
the failure is logged to the `ledger.audit.ops` channel. Audit categories
configured as strict raise instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from ledger.audit.chain import ChainAppender
from ledger.audit.config import AuditConfig
from ledger.audit.errors import LedgerError, NotFound
from ledger.audit.export import ExportFormat, export_lines
from ledger.audit.hashing import ContentHasher
from ledger.audit.models import (
    AccessType,
    Actor,
    AuditAction,
    AuditCategory,
    AuditSeverity,
    ChainStatus,
    DataAccessPayload,
    GeneralAuditPayload,
    LedgerQuery,
    LogCategory,
    LogRecord,
    QueryPage,
    RequestContext,
    ScopeVerificationReport,
    SecurityEventPayload,
    SecurityEventType,
    SecuritySeverity,
    SecurityStats,
    VerificationResult,
    newest_first,
    utcnow,
)
from ledger.audit.storage import LedgerStore, create_ledger_store
from ledger.audit.verifier import IntegrityVerifier

logger = logging.getLogger(__name__)
ops_logger = logging.getLogger("ledger.audit.ops")

SUSPICIOUS_MFA_THRESHOLD = 5
SUSPICIOUS_MFA_WINDOW = timedelta(minutes=15)

STATS_TIME_RANGES = {
    "last_24_hours": timedelta(hours=24),
    "last_7_days": timedelta(days=7),
    "last_30_days": timedelta(days=30),
}
RECENT_CRITICAL_LIMIT = 10


@dataclass(frozen=True)
class AppendOutcome:
    """Result of an audit write.

    `ok` is False when the ledger could not record the event; `error`
    and `error_type` then say why.
    """

    ok: bool
    record: LogRecord | None = None
    error: str | None = None
    error_type: str | None = None


def _text(value: str | Enum) -> str:
    return value.value if isinstance(value, Enum) else value


def _with(metadata: dict[str, Any] | None, **extra: Any) -> dict[str, Any]:
    """Merge extra keys into caller metadata, skipping unset values."""
    merged = dict(metadata or {})
    merged.update({k: v for k, v in extra.items() if v is not None})
    return merged


class AuditFacade:
    """Records, verifies, queries and exports audit logs.

    Usage:
        audit = AuditFacade(InMemoryLedgerStore())

        outcome = await audit.log_auth(
            scope_id="company-123",
            user_id="user-1",
            user_email="driver@example.com",
            action=AuditAction.LOGIN,
            success=True,
        )

        result = await audit.verify("company-123", LogCategory.GENERAL_AUDIT)
    """

    def __init__(self, store: LedgerStore, config: AuditConfig | None = None):
        self.store = store
        self.config = config or AuditConfig(storage_type="memory")
        self.hasher = ContentHasher()
        self.appender = ChainAppender(
            store,
            hasher=self.hasher,
            max_attempts=self.config.max_append_attempts,
            retry_backoff_seconds=self.config.retry_backoff_seconds,
        )
        self.verifier = IntegrityVerifier(store, hasher=self.hasher)

    @classmethod
    async def from_config(cls, config: AuditConfig) -> "AuditFacade":
        """Build a facade with the store the configuration selects."""
        store = await create_ledger_store(config)
        return cls(store, config)

    async def close(self) -> None:
        await self.store.close()

    # =========================================================================
    # Generic entry point
    # =========================================================================

    async def log_event(
        self,
        scope_id: str | None,
        category: LogCategory,
        *,
        action: str | Enum,
        payload: GeneralAuditPayload | SecurityEventPayload | DataAccessPayload,
        actor: Actor | None = None,
        resource: str | None = None,
        resource_id: str | None = None,
        context: RequestContext | None = None,
        strict: bool | None = None,
    ) -> AppendOutcome:
        """Append one event to the (scope, category) chain.

        Args:
            scope_id: Owning scope; None records to the system scope
            strict: Raise ledger errors instead of reporting them. Defaults
                to the configured strict audit categories.
        """
        scope = scope_id or self.config.system_scope_id
        if strict is None:
            strict = self.config.is_strict(getattr(payload, "audit_category", None))

        try:
            record = await self.appender.append(
                scope,
                category,
                action=_text(action),
                payload=payload,
                actor=actor,
                resource=resource,
                resource_id=resource_id,
                context=context,
            )
        except LedgerError as exc:
            ops_logger.error(
                "Audit logging failed: scope=%s category=%s action=%s error=%s: %s",
                scope,
                category.value,
                _text(action),
                type(exc).__name__,
                exc,
            )
            if strict:
                raise
            return AppendOutcome(ok=False, error=str(exc), error_type=type(exc).__name__)

        return AppendOutcome(ok=True, record=record)

    # =========================================================================
    # General audit events
    # =========================================================================

    async def log_audit(
        self,
        scope_id: str | None,
        *,
        action: str | Enum,
        resource: str,
        resource_id: str | None = None,
        user_id: str | None = None,
        user_email: str | None = None,
        user_name: str | None = None,
        method: str | None = None,
        endpoint: str | None = None,
        status_code: int | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        region: str | None = None,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        changes: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        error_message: str | None = None,
        severity: AuditSeverity = AuditSeverity.INFO,
        audit_category: AuditCategory = AuditCategory.GENERAL,
        strict: bool | None = None,
    ) -> AppendOutcome:
        """Log a general audit event."""
        return await self.log_event(
            scope_id,
            LogCategory.GENERAL_AUDIT,
            action=action,
            actor=Actor(user_id=user_id, email=user_email, name=user_name),
            resource=resource,
            resource_id=resource_id,
            context=RequestContext(ip_address=ip_address, user_agent=user_agent),
            payload=GeneralAuditPayload(
                method=method,
                endpoint=endpoint,
                status_code=status_code,
                region=region,
                old_values=old_values,
                new_values=new_values,
                changes=changes,
                metadata=metadata,
                error_message=error_message,
                severity=severity,
                audit_category=audit_category,
            ),
            strict=strict,
        )

    async def log_auth(
        self,
        *,
        action: str | Enum,
        success: bool,
        scope_id: str | None = None,
        user_id: str | None = None,
        user_email: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AppendOutcome:
        """Log authentication events (login, logout, failed login)."""
        return await self.log_audit(
            scope_id,
            action=action,
            resource="Authentication",
            user_id=user_id,
            user_email=user_email,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=metadata,
            severity=AuditSeverity.INFO if success else AuditSeverity.WARNING,
            audit_category=AuditCategory.AUTHENTICATION,
        )

    async def log_mfa(
        self,
        *,
        action: str | Enum,
        method: str,
        success: bool,
        scope_id: str | None = None,
        user_id: str | None = None,
        user_email: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AppendOutcome:
        """Log MFA enrollment and verification events."""
        return await self.log_audit(
            scope_id,
            action=action,
            resource="MFA",
            user_id=user_id,
            user_email=user_email,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=_with(metadata, method=method),
            severity=AuditSeverity.INFO if success else AuditSeverity.WARNING,
            audit_category=AuditCategory.MFA,
        )

    async def log_driver_operation(
        self,
        scope_id: str,
        *,
        action: str | Enum,
        driver_id: str,
        driver_name: str | None = None,
        user_id: str | None = None,
        user_email: str | None = None,
        user_name: str | None = None,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        changes: list[str] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AppendOutcome:
        return await self.log_audit(
            scope_id,
            action=action,
            resource="Driver",
            resource_id=driver_id,
            user_id=user_id,
            user_email=user_email,
            user_name=user_name,
            ip_address=ip_address,
            user_agent=user_agent,
            old_values=old_values,
            new_values=new_values,
            changes=changes,
            metadata=_with(None, driverName=driver_name),
            audit_category=AuditCategory.DATA_MODIFICATION,
        )

    async def log_document_operation(
        self,
        scope_id: str,
        *,
        action: str | Enum,
        document_id: str,
        document_type: str | None = None,
        driver_id: str | None = None,
        driver_name: str | None = None,
        user_id: str | None = None,
        user_email: str | None = None,
        user_name: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AppendOutcome:
        return await self.log_audit(
            scope_id,
            action=action,
            resource="Document",
            resource_id=document_id,
            user_id=user_id,
            user_email=user_email,
            user_name=user_name,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=_with(
                metadata,
                documentType=document_type,
                driverId=driver_id,
                driverName=driver_name,
            ),
            audit_category=AuditCategory.DATA_MODIFICATION,
        )

    async def log_billing_operation(
        self,
        scope_id: str,
        *,
        action: str | Enum,
        amount: float | None = None,
        user_id: str | None = None,
        user_email: str | None = None,
        user_name: str | None = None,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AppendOutcome:
        return await self.log_audit(
            scope_id,
            action=action,
            resource="Billing",
            resource_id=scope_id,
            user_id=user_id,
            user_email=user_email,
            user_name=user_name,
            ip_address=ip_address,
            user_agent=user_agent,
            old_values=old_values,
            new_values=new_values,
            metadata=_with(metadata, amount=amount),
            audit_category=AuditCategory.BILLING,
        )

    async def log_data_export(
        self,
        scope_id: str,
        *,
        data_type: str,
        record_count: int,
        export_format: str,
        user_id: str | None = None,
        user_email: str | None = None,
        user_name: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AppendOutcome:
        return await self.log_audit(
            scope_id,
            action=AuditAction.DATA_EXPORTED,
            resource=data_type,
            user_id=user_id,
            user_email=user_email,
            user_name=user_name,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"recordCount": record_count, "format": export_format},
            severity=AuditSeverity.WARNING,
            audit_category=AuditCategory.COMPLIANCE,
        )

    async def log_team_operation(
        self,
        scope_id: str,
        *,
        action: str | Enum,
        target_user_id: str,
        target_user_email: str | None = None,
        user_id: str | None = None,
        user_email: str | None = None,
        user_name: str | None = None,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AppendOutcome:
        """Log team membership changes. Removals are WARNING severity."""
        return await self.log_audit(
            scope_id,
            action=action,
            resource="TeamMember",
            resource_id=target_user_id,
            user_id=user_id,
            user_email=user_email,
            user_name=user_name,
            ip_address=ip_address,
            user_agent=user_agent,
            old_values=old_values,
            new_values=new_values,
            metadata=_with(metadata, targetUserEmail=target_user_email),
            severity=AuditSeverity.WARNING if "REMOVED" in _text(action) else AuditSeverity.INFO,
            audit_category=AuditCategory.USER_MANAGEMENT,
        )

    async def log_permission_denied(
        self,
        scope_id: str | None,
        *,
        attempted_action: str,
        resource: str,
        resource_id: str | None = None,
        required_capability: str | None = None,
        role: str | None = None,
        user_id: str | None = None,
        user_email: str | None = None,
        user_name: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AppendOutcome:
        return await self.log_audit(
            scope_id,
            action=AuditAction.PERMISSION_DENIED,
            resource=resource,
            resource_id=resource_id,
            user_id=user_id,
            user_email=user_email,
            user_name=user_name,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=_with(
                None,
                attemptedAction=attempted_action,
                requiredCapability=required_capability,
                userRole=role,
            ),
            severity=AuditSeverity.WARNING,
            audit_category=AuditCategory.SECURITY,
        )

    async def log_csv_import(
        self,
        scope_id: str,
        *,
        resource_type: str,
        record_count: int,
        success_count: int,
        failed_count: int,
        user_id: str | None = None,
        user_email: str | None = None,
        user_name: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AppendOutcome:
        return await self.log_audit(
            scope_id,
            action=AuditAction.CSV_IMPORTED,
            resource=resource_type,
            user_id=user_id,
            user_email=user_email,
            user_name=user_name,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=_with(
                metadata,
                totalRecords=record_count,
                successful=success_count,
                failed=failed_count,
            ),
            audit_category=AuditCategory.DATA_MODIFICATION,
        )

    async def log_reminder_operation(
        self,
        scope_id: str,
        *,
        action: str | Enum,
        reminder_id: str,
        reminder_type: str | None = None,
        user_id: str | None = None,
        user_email: str | None = None,
        user_name: str | None = None,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AppendOutcome:
        return await self.log_audit(
            scope_id,
            action=action,
            resource="Reminder",
            resource_id=reminder_id,
            user_id=user_id,
            user_email=user_email,
            user_name=user_name,
            ip_address=ip_address,
            user_agent=user_agent,
            old_values=old_values,
            new_values=new_values,
            metadata=_with(metadata, reminderType=reminder_type),
            audit_category=AuditCategory.COMPLIANCE,
        )

    async def log_ticket_operation(
        self,
        scope_id: str,
        *,
        action: str | Enum,
        ticket_id: str,
        ticket_number: str | None = None,
        user_id: str | None = None,
        user_email: str | None = None,
        user_name: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AppendOutcome:
        return await self.log_audit(
            scope_id,
            action=action,
            resource="Ticket",
            resource_id=ticket_id,
            user_id=user_id,
            user_email=user_email,
            user_name=user_name,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=_with(metadata, ticketNumber=ticket_number),
            audit_category=AuditCategory.DATA_MODIFICATION,
        )

    # =========================================================================
    # Security and data access chains
    # =========================================================================

    async def log_security_event(
        self,
        scope_id: str | None,
        *,
        event_type: SecurityEventType,
        description: str,
        severity: SecuritySeverity = SecuritySeverity.LOW,
        user_id: str | None = None,
        user_email: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        location: str | None = None,
        metadata: dict[str, Any] | None = None,
        blocked: bool = False,
        action_taken: str | None = None,
    ) -> AppendOutcome:
        return await self.log_event(
            scope_id,
            LogCategory.SECURITY_EVENT,
            action=event_type,
            actor=Actor(user_id=user_id, email=user_email),
            context=RequestContext(ip_address=ip_address, user_agent=user_agent),
            payload=SecurityEventPayload(
                event_type=event_type,
                severity=severity,
                location=location,
                description=description,
                metadata=metadata,
                blocked=blocked,
                action_taken=action_taken,
            ),
        )

    async def log_data_access(
        self,
        scope_id: str | None,
        *,
        data_type: str,
        data_id: str,
        access_type: AccessType,
        operation: str,
        user_id: str | None = None,
        user_email: str | None = None,
        data_owner_id: str | None = None,
        purpose: str | None = None,
        ip_address: str | None = None,
        endpoint: str | None = None,
    ) -> AppendOutcome:
        """Log access to personal data (GDPR/PIPEDA)."""
        return await self.log_event(
            scope_id,
            LogCategory.DATA_ACCESS,
            action=operation,
            actor=Actor(user_id=user_id, email=user_email),
            resource=data_type,
            resource_id=data_id,
            context=RequestContext(ip_address=ip_address),
            payload=DataAccessPayload(
                data_type=data_type,
                data_id=data_id,
                data_owner_id=data_owner_id,
                access_type=access_type,
                operation=operation,
                purpose=purpose,
                endpoint=endpoint,
            ),
        )

    async def log_document_download(
        self,
        scope_id: str,
        *,
        document_id: str,
        document_type: str | None = None,
        driver_id: str | None = None,
        driver_name: str | None = None,
        storage_key: str | None = None,
        expires_in: int | None = None,
        user_id: str | None = None,
        user_email: str | None = None,
        user_name: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        purpose: str = "Document view/download",
    ) -> list[AppendOutcome]:
        """Log download-link issuance to both the audit and data access chains."""
        audit_outcome = await self.log_audit(
            scope_id,
            action=AuditAction.DOCUMENT_DOWNLOAD_URL_GENERATED,
            resource="Document",
            resource_id=document_id,
            user_id=user_id,
            user_email=user_email,
            user_name=user_name,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=_with(
                None,
                documentType=document_type,
                driverId=driver_id,
                driverName=driver_name,
                storageKey=storage_key,
                urlExpiresInSeconds=expires_in,
                purpose=purpose,
            ),
            audit_category=AuditCategory.DATA_ACCESS,
        )
        access_outcome = await self.log_data_access(
            scope_id,
            data_type="Document",
            data_id=document_id,
            access_type=AccessType.DOWNLOAD,
            operation="PRESIGNED_URL_GENERATED",
            user_id=user_id,
            user_email=user_email,
            data_owner_id=driver_id,
            purpose=purpose,
            ip_address=ip_address,
            endpoint="/api/documents/:documentId",
        )
        return [audit_outcome, access_outcome]

    async def check_suspicious_activity(
        self,
        user_id: str,
        *,
        scope_id: str | None = None,
        ip_address: str | None = None,
    ) -> bool:
        """Raise a security event after repeated MFA failures.

        Returns:
            True if the user crossed the failure threshold
        """
        scope = scope_id or self.config.system_scope_id
        failures = await self.store.count(
            LedgerQuery(
                scope_id=scope,
                category=LogCategory.GENERAL_AUDIT,
                actor_id=user_id,
                action=AuditAction.MFA_FAILED.value,
                start_time=utcnow() - SUSPICIOUS_MFA_WINDOW,
            )
        )
        if failures < SUSPICIOUS_MFA_THRESHOLD:
            return False

        window_minutes = int(SUSPICIOUS_MFA_WINDOW.total_seconds() // 60)
        await self.log_security_event(
            scope,
            event_type=SecurityEventType.MULTIPLE_FAILED_MFA,
            severity=SecuritySeverity.HIGH,
            user_id=user_id,
            ip_address=ip_address,
            description=f"{failures} failed MFA attempts in {window_minutes} minutes",
        )
        return True

    # =========================================================================
    # Verification
    # =========================================================================

    async def verify(self, scope_id: str, category: LogCategory) -> VerificationResult:
        return await self.verifier.verify(scope_id, category)

    async def verify_scope(self, scope_id: str) -> ScopeVerificationReport:
        return await self.verifier.verify_scope(scope_id)

    async def verify_all(self) -> list[ScopeVerificationReport]:
        return await self.verifier.verify_all()

    # =========================================================================
    # Query and export
    # =========================================================================

    async def query(self, query: LedgerQuery) -> QueryPage:
        """Filtered, paginated records, newest first."""
        total = await self.store.count(query)
        records = await self.store.page(query)
        return QueryPage(
            records=records,
            total=total,
            limit=query.limit,
            offset=query.offset,
        )

    async def export_range(
        self,
        scope_id: str,
        category: LogCategory,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> list[LogRecord]:
        """Records of one chain in sequence order, within a date window."""
        window = LedgerQuery(scope_id=scope_id, start_time=start_time, end_time=end_time)
        records = [
            r for r in await self.store.range(scope_id, category)
            if window.matches(r)
        ]
        if len(records) > self.config.export_max_records:
            logger.warning(
                "Export truncated: scope=%s category=%s records=%d max=%d",
                scope_id,
                category.value,
                len(records),
                self.config.export_max_records,
            )
            records = records[:self.config.export_max_records]
        return records

    async def export_lines(
        self,
        scope_id: str,
        category: LogCategory,
        fmt: ExportFormat = ExportFormat.NDJSON,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> list[str]:
        records = await self.export_range(scope_id, category, start_time, end_time)
        return list(export_lines(records, fmt))

    async def get_record(self, record_id: str, scope_id: str | None = None) -> LogRecord:
        """Look up one record by ID.

        Raises:
            NotFound: no record has this ID (within scope_id, when given)
        """
        records = await self.store.page(
            LedgerQuery(scope_id=scope_id, record_id=record_id, limit=1)
        )
        if not records:
            raise NotFound(f"Record {record_id} not found")
        return records[0]

    async def security_stats(self, scope_id: str | None = None) -> SecurityStats:
        """Security event figures for a dashboard.

        Args:
            scope_id: Scope to summarize (None = every scope)
        """
        now = utcnow()

        def events(window: timedelta, **filters: Any) -> LedgerQuery:
            return LedgerQuery(
                scope_id=scope_id,
                category=LogCategory.SECURITY_EVENT,
                start_time=now - window,
                **filters,
            )

        day = STATS_TIME_RANGES["last_24_hours"]
        week = STATS_TIME_RANGES["last_7_days"]

        by_severity = {
            severity.value: await self.store.count(events(day, severity=severity.value))
            for severity in SecuritySeverity
        }
        by_time_range = {
            name: await self.store.count(events(window))
            for name, window in STATS_TIME_RANGES.items()
        }
        by_event_type = {}
        for event_type in SecurityEventType:
            count = await self.store.count(events(week, action=event_type.value))
            if count:
                by_event_type[event_type.value] = count

        recent = []
        for severity in (SecuritySeverity.CRITICAL, SecuritySeverity.HIGH):
            recent.extend(await self.store.page(
                events(day, severity=severity.value, limit=RECENT_CRITICAL_LIMIT)
            ))

        return SecurityStats(
            scope_id=scope_id,
            by_severity=by_severity,
            by_time_range=by_time_range,
            by_event_type=by_event_type,
            blocked_events=await self.store.count(events(day, blocked=True)),
            recent_critical=newest_first(recent)[:RECENT_CRITICAL_LIMIT],
            total_events=by_time_range["last_30_days"],
        )

    async def status(self, scope_id: str, category: LogCategory) -> ChainStatus:
        """Get the current head of a chain."""
        total = await self.store.count(LedgerQuery(scope_id=scope_id, category=category))
        latest = await self.store.last_record(scope_id, category)

        return ChainStatus(
            scope_id=scope_id,
            category=category,
            total_records=total,
            last_sequence=latest.sequence_num if latest else None,
            last_hash=latest.hash if latest else None,
            last_timestamp=latest.timestamp if latest else None,
        )
