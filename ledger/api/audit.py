"""Audit API endpoints.

Provides access to the audit ledger: explicit recording, chain
verification, filtered queries and compliance exports.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from ledger.audit.errors import LedgerError, NotFound
from ledger.audit.export import ExportFormat, export_lines
from ledger.audit.facade import AuditFacade
from ledger.audit.models import (
    PAYLOAD_KIND_BY_CATEGORY,
    Actor,
    AuditAction,
    AuditCategory,
    AuditSeverity,
    ChainStatus,
    LedgerQuery,
    LogCategory,
    LogRecord,
    Payload,
    QueryPage,
    RequestContext,
    ScopeVerificationReport,
    SecurityStats,
    VerificationResult,
)

router = APIRouter(prefix="/audit", tags=["Audit"])

_payload_adapter = TypeAdapter(Payload)


def get_audit_facade(request: Request) -> AuditFacade:
    """Get the facade created at application startup."""
    return request.app.state.audit


# =============================================================================
# Request/Response Models
# =============================================================================


class RecordEventRequest(BaseModel):
    """Request to record an audit event."""

    scope_id: str = Field(min_length=1, max_length=128, description="Scope (company) ID")
    category: LogCategory = Field(default=LogCategory.GENERAL_AUDIT, description="Target chain")
    action: str = Field(min_length=1, description="Action name (e.g., 'DRIVER_CREATED')")
    user_id: str | None = Field(default=None, description="Acting user ID")
    user_email: str | None = Field(default=None, description="Acting user email")
    user_name: str | None = Field(default=None, description="Acting user display name")
    resource: str | None = Field(default=None, description="Type of resource affected")
    resource_id: str | None = Field(default=None, description="ID of resource affected")
    ip_address: str | None = Field(default=None, description="Originating address")
    user_agent: str | None = Field(default=None, description="Client agent string")
    payload: dict[str, Any] = Field(default_factory=dict, description="Category-specific payload")


class AuditQueryRequest(BaseModel):
    """Request to query audit logs."""

    scope_id: str | None = Field(default=None, description="Scope to query (None = all scopes)")
    category: LogCategory | None = Field(default=None, description="Filter by chain")
    actor_id: str | None = Field(default=None, description="Filter by actor")
    action: str | None = Field(default=None, description="Filter by action")
    resource: str | None = Field(default=None, description="Filter by resource type")
    audit_category: AuditCategory | None = Field(default=None, description="Filter by audit category")
    severity: str | None = Field(default=None, description="Filter by severity")
    start_time: datetime | None = Field(default=None, description="Start time filter")
    end_time: datetime | None = Field(default=None, description="End time filter")
    search: str | None = Field(default=None, max_length=200, description="Free-text search")
    limit: int = Field(default=100, ge=1, le=1000, description="Max records to return")
    offset: int = Field(default=0, ge=0, description="Offset for pagination")

    # Who is looking; recorded as AUDIT_LOG_VIEWED when set
    viewer_id: str | None = Field(default=None, description="Viewing user ID")
    viewer_email: str | None = Field(default=None, description="Viewing user email")
    viewer_scope_id: str | None = Field(default=None, description="Viewing user's scope")


class ChainVerificationResponse(BaseModel):
    """Response from chain verification."""

    result: VerificationResult
    verified_at: datetime


# =============================================================================
# Audit Endpoints
# =============================================================================


@router.post("/events", response_model=LogRecord, status_code=status.HTTP_201_CREATED)
async def record_event(
    request: RecordEventRequest,
    audit: AuditFacade = Depends(get_audit_facade),
) -> LogRecord:
    """Record an audit event.

    Note: Most events are recorded by business code through the facade.
    This endpoint is for explicit event recording when needed.
    """
    try:
        payload = _payload_adapter.validate_python(
            {**request.payload, "kind": PAYLOAD_KIND_BY_CATEGORY[request.category]}
        )
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=exc.errors(include_url=False),
        )

    try:
        outcome = await audit.log_event(
            request.scope_id,
            request.category,
            action=request.action,
            payload=payload,
            actor=Actor(
                user_id=request.user_id,
                email=request.user_email,
                name=request.user_name,
            ),
            resource=request.resource,
            resource_id=request.resource_id,
            context=RequestContext(
                ip_address=request.ip_address,
                user_agent=request.user_agent,
            ),
            strict=True,
        )
    except LedgerError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Audit ledger unavailable: {exc}",
        )

    return outcome.record


@router.get("/status/{scope_id}/{category}", response_model=ChainStatus)
async def get_chain_status(
    scope_id: str,
    category: LogCategory,
    audit: AuditFacade = Depends(get_audit_facade),
) -> ChainStatus:
    """Get the head of a chain."""
    return await audit.status(scope_id, category)


@router.post("/verify/{scope_id}/{category}", response_model=ChainVerificationResponse)
async def verify_chain(
    scope_id: str,
    category: LogCategory,
    audit: AuditFacade = Depends(get_audit_facade),
) -> ChainVerificationResponse:
    """Verify the integrity of one chain.

    An invalid chain is still a 200: the report names the failing record
    and the check it failed.
    """
    result = await audit.verify(scope_id, category)
    return ChainVerificationResponse(result=result, verified_at=datetime.now(UTC))


@router.post("/verify/{scope_id}", response_model=ScopeVerificationReport)
async def verify_scope(
    scope_id: str,
    audit: AuditFacade = Depends(get_audit_facade),
) -> ScopeVerificationReport:
    """Verify every chain of one scope."""
    return await audit.verify_scope(scope_id)


@router.post("/verify", response_model=list[ScopeVerificationReport])
async def verify_all(
    audit: AuditFacade = Depends(get_audit_facade),
) -> list[ScopeVerificationReport]:
    """Verify every chain of every scope."""
    return await audit.verify_all()


@router.post("/query", response_model=QueryPage)
async def query_audit_logs(
    request: AuditQueryRequest,
    audit: AuditFacade = Depends(get_audit_facade),
) -> QueryPage:
    """Query audit logs with filters, newest first."""
    query = LedgerQuery(
        **request.model_dump(exclude={"viewer_id", "viewer_email", "viewer_scope_id"})
    )
    page = await audit.query(query)

    if request.viewer_id:
        await audit.log_audit(
            request.viewer_scope_id,
            action=AuditAction.AUDIT_LOG_VIEWED,
            resource="AuditLog",
            user_id=request.viewer_id,
            user_email=request.viewer_email,
            metadata={
                "viewedScopeId": request.scope_id,
                "recordCount": page.total,
                "filters": query.model_dump(
                    mode="json",
                    exclude={"limit", "offset"},
                    exclude_none=True,
                ),
            },
            audit_category=AuditCategory.COMPLIANCE,
        )

    return page


@router.get("/records/{record_id}", response_model=LogRecord)
async def get_record(
    record_id: str,
    scope_id: str | None = Query(default=None, description="Restrict lookup to a scope"),
    audit: AuditFacade = Depends(get_audit_facade),
) -> LogRecord:
    """Get a single record by ID."""
    try:
        return await audit.get_record(record_id, scope_id)
    except NotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Record {record_id} not found",
        )


@router.get("/security/stats", response_model=SecurityStats)
async def get_security_stats(
    scope_id: str | None = Query(default=None, description="Scope to summarize (None = all)"),
    audit: AuditFacade = Depends(get_audit_facade),
) -> SecurityStats:
    """Security event statistics for the dashboard."""
    return await audit.security_stats(scope_id)


@router.get("/export/{scope_id}/{category}")
async def export_audit_logs(
    scope_id: str,
    category: LogCategory,
    format: ExportFormat = Query(default=ExportFormat.NDJSON, description="ndjson or csv"),
    start_time: datetime | None = Query(default=None, description="Window start"),
    end_time: datetime | None = Query(default=None, description="Window end"),
    exported_by: str | None = Query(default=None, description="Exporting user ID"),
    audit: AuditFacade = Depends(get_audit_facade),
) -> StreamingResponse:
    """Export one chain in sequence order for regulatory review."""
    records = await audit.export_range(scope_id, category, start_time, end_time)

    await audit.log_audit(
        scope_id,
        action=AuditAction.AUDIT_LOG_EXPORTED,
        resource="AuditLog",
        user_id=exported_by,
        metadata={
            "exportedCategory": category.value,
            "recordCount": len(records),
            "format": format.value,
            "startTime": start_time.isoformat() if start_time else None,
            "endTime": end_time.isoformat() if end_time else None,
        },
        severity=AuditSeverity.WARNING,
        audit_category=AuditCategory.COMPLIANCE,
    )

    stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ")
    filename = f"audit-{category.value}-{stamp}.{format.value}"
    return StreamingResponse(
        export_lines(records, format),
        media_type=format.media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/categories", response_model=list[str])
async def list_categories() -> list[str]:
    """List all chain categories."""
    return [c.value for c in LogCategory]
