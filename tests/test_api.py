"""API endpoint tests."""

from __future__ import annotations

import csv
import io
import json

import pytest
from fastapi.testclient import TestClient

from ledger.api import create_app
from ledger.api.audit import get_audit_facade
from ledger.api.config import Settings
from ledger.audit.errors import StorageUnavailable
from ledger.audit.export import CSV_HEADERS
from ledger.audit.facade import AuditFacade
from ledger.audit.models import LogCategory, LogRecord
from ledger.audit.storage import InMemoryLedgerStore


class BrokenStore(InMemoryLedgerStore):
    """A store whose writes always fail."""

    async def append(self, record: LogRecord) -> LogRecord:
        raise StorageUnavailable("database is down")


@pytest.fixture
def client():
    """Test client backed by an in-memory ledger."""
    app = create_app(Settings(storage_type="memory"))
    with TestClient(app) as client:
        yield client


def record_event(client: TestClient, scope_id: str = "company-1", **overrides) -> dict:
    body = {
        "scope_id": scope_id,
        "category": "GeneralAudit",
        "action": "DRIVER_CREATED",
        "user_id": "user-1",
        "user_email": "admin@example.com",
        "resource": "Driver",
        "resource_id": "driver-1",
        "ip_address": "10.0.0.1",
        "payload": {"audit_category": "DATA_MODIFICATION", "new_values": {"name": "Jane"}},
    }
    body.update(overrides)
    response = client.post("/audit/events", json=body)
    assert response.status_code == 201, response.text
    return response.json()


class TestHealthEndpoint:
    """Tests for the health check endpoint."""

    def test_health_returns_ok(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["version"] == "1.0.0"
        assert data["storage_type"] == "memory"


class TestRecordEvent:
    """Tests for explicit event recording."""

    def test_record_event(self, client: TestClient) -> None:
        first = record_event(client)
        second = record_event(client, action="DRIVER_UPDATED")

        assert first["sequence_num"] == 0
        assert first["previous_hash"] is None
        assert first["payload"]["kind"] == "general_audit"
        assert second["previous_hash"] == first["hash"]

    def test_record_security_event(self, client: TestClient) -> None:
        data = record_event(
            client,
            category="SecurityEvent",
            action="FAILED_LOGIN",
            payload={"event_type": "FAILED_LOGIN", "description": "Bad password"},
        )

        assert data["category"] == "SecurityEvent"
        assert data["payload"]["kind"] == "security_event"

    def test_invalid_payload_rejected(self, client: TestClient) -> None:
        response = client.post(
            "/audit/events",
            json={
                "scope_id": "company-1",
                "category": "SecurityEvent",
                "action": "FAILED_LOGIN",
                "payload": {"event_type": "FAILED_LOGIN"},
            },
        )
        assert response.status_code == 422

    def test_invalid_category_rejected(self, client: TestClient) -> None:
        response = client.post(
            "/audit/events",
            json={"scope_id": "company-1", "category": "Nope", "action": "X"},
        )
        assert response.status_code == 422

    def test_empty_scope_rejected(self, client: TestClient) -> None:
        response = client.post("/audit/events", json={"scope_id": "", "action": "X"})
        assert response.status_code == 422

    def test_store_failure_is_503(self, client: TestClient) -> None:
        client.app.dependency_overrides[get_audit_facade] = lambda: AuditFacade(BrokenStore())
        try:
            response = client.post(
                "/audit/events", json={"scope_id": "company-1", "action": "X"}
            )
        finally:
            client.app.dependency_overrides.clear()

        assert response.status_code == 503


class TestVerifyEndpoints:
    """Tests for chain verification endpoints."""

    def test_verify_chain(self, client: TestClient) -> None:
        for _ in range(3):
            record_event(client)

        response = client.post("/audit/verify/company-1/GeneralAudit")

        assert response.status_code == 200
        result = response.json()["result"]
        assert result["valid"] is True
        assert result["logs_verified"] == 3
        assert result["first_sequence"] == 0
        assert result["last_sequence"] == 2

    def test_verify_reports_tampering(self, client: TestClient) -> None:
        for _ in range(3):
            record_event(client)
        store = client.app.state.audit.store
        chain = store._chains[("company-1", LogCategory.GENERAL_AUDIT)]
        chain[1] = chain[1].model_copy(update={"resource_id": "driver-2"})

        response = client.post("/audit/verify/company-1/GeneralAudit")

        result = response.json()["result"]
        assert result["valid"] is False
        assert result["failure"] == "ContentTampered"
        assert result["failed_sequence"] == 1

    def test_verify_scope(self, client: TestClient) -> None:
        record_event(client)

        response = client.post("/audit/verify/company-1")

        assert response.status_code == 200
        data = response.json()
        assert data["overall_valid"] is True
        assert set(data["results"]) == {c.value for c in LogCategory}

    def test_verify_all(self, client: TestClient) -> None:
        record_event(client, scope_id="company-1")
        record_event(client, scope_id="company-2")

        response = client.post("/audit/verify")

        assert response.status_code == 200
        assert [r["scope_id"] for r in response.json()] == ["company-1", "company-2"]

    def test_unknown_category_rejected(self, client: TestClient) -> None:
        response = client.post("/audit/verify/company-1/Nope")
        assert response.status_code == 422


class TestQueryEndpoint:
    """Tests for audit log queries."""

    def test_query_newest_first(self, client: TestClient) -> None:
        record_event(client, action="FIRST")
        record_event(client, action="SECOND")

        response = client.post("/audit/query", json={"scope_id": "company-1"})

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert [r["action"] for r in data["records"]] == ["SECOND", "FIRST"]
        assert data["has_more"] is False

    def test_query_records_viewer(self, client: TestClient) -> None:
        record_event(client)

        response = client.post(
            "/audit/query",
            json={
                "scope_id": "company-1",
                "viewer_id": "admin-1",
                "viewer_scope_id": "company-1",
            },
        )
        assert response.json()["total"] == 1

        viewed = client.post(
            "/audit/query",
            json={"scope_id": "company-1", "action": "AUDIT_LOG_VIEWED"},
        ).json()
        assert viewed["total"] == 1
        assert viewed["records"][0]["actor"]["user_id"] == "admin-1"

    def test_query_limit_bounds(self, client: TestClient) -> None:
        response = client.post("/audit/query", json={"limit": 0})
        assert response.status_code == 422


class TestExportEndpoint:
    """Tests for compliance exports."""

    def test_export_ndjson(self, client: TestClient) -> None:
        for _ in range(2):
            record_event(client)

        response = client.get("/audit/export/company-1/GeneralAudit")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/x-ndjson")
        assert "attachment" in response.headers["content-disposition"]
        lines = [json.loads(line) for line in response.text.splitlines()]
        assert [line["sequence_num"] for line in lines] == [0, 1]

    def test_export_csv(self, client: TestClient) -> None:
        record_event(client)

        response = client.get("/audit/export/company-1/GeneralAudit?format=csv")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        rows = list(csv.reader(io.StringIO(response.text)))
        assert rows[0] == CSV_HEADERS
        assert rows[1][3] == "DRIVER_CREATED"

    def test_export_is_itself_audited(self, client: TestClient) -> None:
        record_event(client)

        client.get("/audit/export/company-1/GeneralAudit?exported_by=admin-1")

        status = client.get("/audit/status/company-1/GeneralAudit").json()
        assert status["total_records"] == 2
        assert status["last_sequence"] == 1

    def test_invalid_format_rejected(self, client: TestClient) -> None:
        response = client.get("/audit/export/company-1/GeneralAudit?format=xml")
        assert response.status_code == 422


class TestRecordEndpoint:
    """Tests for single-record lookup."""

    def test_get_record(self, client: TestClient) -> None:
        created = record_event(client)

        response = client.get(f"/audit/records/{created['record_id']}")

        assert response.status_code == 200
        assert response.json()["hash"] == created["hash"]

    def test_scope_mismatch_is_404(self, client: TestClient) -> None:
        created = record_event(client)

        response = client.get(
            f"/audit/records/{created['record_id']}", params={"scope_id": "company-2"}
        )

        assert response.status_code == 404

    def test_unknown_record_is_404(self, client: TestClient) -> None:
        response = client.get("/audit/records/missing")
        assert response.status_code == 404


class TestSecurityStatsEndpoint:
    """Tests for security statistics."""

    def test_security_stats(self, client: TestClient) -> None:
        record_event(
            client,
            category="SecurityEvent",
            action="ACCOUNT_LOCKED",
            payload={
                "event_type": "ACCOUNT_LOCKED",
                "severity": "CRITICAL",
                "description": "Too many failures",
                "blocked": True,
            },
        )
        record_event(
            client,
            category="SecurityEvent",
            action="FAILED_LOGIN",
            payload={"event_type": "FAILED_LOGIN", "description": "Bad password"},
        )

        response = client.get("/audit/security/stats", params={"scope_id": "company-1"})

        assert response.status_code == 200
        data = response.json()
        assert data["total_events"] == 2
        assert data["blocked_events"] == 1
        assert data["by_severity"]["CRITICAL"] == 1
        assert data["by_event_type"] == {"FAILED_LOGIN": 1, "ACCOUNT_LOCKED": 1}
        assert [r["action"] for r in data["recent_critical"]] == ["ACCOUNT_LOCKED"]

    def test_security_stats_empty(self, client: TestClient) -> None:
        response = client.get("/audit/security/stats")

        assert response.status_code == 200
        assert response.json()["total_events"] == 0


class TestCategoriesEndpoint:
    """Tests for category listing."""

    def test_list_categories(self, client: TestClient) -> None:
        response = client.get("/audit/categories")
        assert response.status_code == 200
        assert response.json() == ["GeneralAudit", "SecurityEvent", "DataAccess"]
