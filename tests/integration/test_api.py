"""
Integration Tests - HTTP API
"""
import csv
import io
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from booking_cdc.serving.api.main import create_api_app
from booking_cdc.serving.cache import snapshot_cache

pytestmark = pytest.mark.usefixtures("database")

WINDOW = {"start_date": "2024-03-01", "end_date": "2024-03-31"}


def envelope(booking_id, status="BOOKED", ticket_count=1, ticket_price="15.00", minute=0, operation="INSERT"):
    return {
        "operation": operation,
        "before": None,
        "after": {
            "booking_id": booking_id,
            "customer_id": "C1",
            "movie_id": "M1",
            "status": status,
            "ticket_count": ticket_count,
            "ticket_price": ticket_price,
        },
        "timestamp": f"2024-03-01T12:{minute:02d}:00Z",
    }


@pytest.fixture
async def client():
    app = create_api_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def loaded(client):
    """Ingest the five M1 bookings and run one pipeline tick"""
    prices = ["10.00", "15.00", "20.00", "25.00", "8.00"]
    batch = [
        envelope(f"B{i}", status="CANCELLED" if price == "25.00" else "BOOKED", ticket_price=price, minute=i)
        for i, price in enumerate(prices, start=1)
    ]
    response = await client.post("/api/v1/ingest/events", json=batch)
    assert response.status_code == 200

    response = await client.post("/api/v1/pipeline/run", params=WINDOW)
    assert response.status_code == 200
    return response.json()


class TestHealth:

    async def test_liveness(self, client):
        response = await client.get("/api/v1/health/live")
        assert response.json() == {"status": "alive"}

    async def test_readiness(self, client):
        response = await client.get("/api/v1/health/ready")
        assert response.status_code == 200

    async def test_health_reports_database(self, client):
        response = await client.get("/api/v1/health")

        body = response.json()
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["status"] in ("healthy", "degraded")

    async def test_request_id_header(self, client):
        response = await client.get("/api/v1/info", headers={"X-Request-ID": "abc123"})

        assert response.headers["X-Request-ID"] == "abc123"
        assert "X-Response-Time" in response.headers


class TestIngest:

    async def test_single_event_created(self, client):
        response = await client.post("/api/v1/ingest/event", json=envelope("B1"))

        assert response.status_code == 201
        assert response.json()["dedup_key"] == "B1|2024-03-01T12:00:00|INSERT"

    async def test_duplicate_is_conflict(self, client):
        await client.post("/api/v1/ingest/event", json=envelope("B1"))

        response = await client.post("/api/v1/ingest/event", json=envelope("B1"))

        assert response.status_code == 409
        assert response.json()["error_type"] == "DuplicateEventError"

    async def test_malformed_envelope_is_unprocessable(self, client):
        response = await client.post("/api/v1/ingest/event", json={"operation": "MERGE", "timestamp": "x"})

        assert response.status_code == 422
        assert response.json()["error_type"] == "MalformedEnvelopeError"

    async def test_batch_reports_each_outcome(self, client):
        batch = [envelope("B1"), envelope("B1"), {"after": {}}, envelope("B2")]

        response = await client.post("/api/v1/ingest/events", json=batch)

        body = response.json()
        assert len(body["appended"]) == 2
        assert body["duplicates"] == ["B1|2024-03-01T12:00:00|INSERT"]
        assert body["rejected"][0]["index"] == 2


class TestPipelineRoutes:

    async def test_run_derives_and_aggregates(self, loaded):
        assert loaded["derivation"]["records_derived"] == 5
        assert loaded["refresh"]["mode"] == "full"
        assert loaded["refresh"]["valid_bookings"] == 5

    async def test_runs_are_listed(self, client, loaded):
        response = await client.get("/api/v1/pipeline/runs")

        names = {run["job_name"] for run in response.json()}
        assert names == {"derive_records", "refresh_snapshot"}

    async def test_second_run_is_unchanged(self, client, loaded):
        response = await client.post("/api/v1/pipeline/run", params=WINDOW)

        assert response.json()["derivation"]["records_derived"] == 0
        assert response.json()["refresh"]["mode"] == "unchanged"


class TestBookingRoutes:

    async def test_list(self, client, loaded):
        response = await client.get("/api/v1/bookings", params={"limit": 2})

        body = response.json()
        assert body["total"] == 5
        assert [item["booking_id"] for item in body["items"]] == ["B1", "B2"]

    async def test_status_filter(self, client, loaded):
        response = await client.get("/api/v1/bookings", params={"status": "CANCELLED"})

        assert [item["booking_id"] for item in response.json()["items"]] == ["B4"]

    async def test_audit_is_empty_for_clean_data(self, client, loaded):
        response = await client.get("/api/v1/bookings/audit")
        assert response.json()["total"] == 0

    async def test_export_csv(self, client, loaded):
        response = await client.get("/api/v1/bookings/export.csv", params={"movie_id": "M1"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "booking_changes_" in response.headers["content-disposition"]
        assert response.headers["x-generated-at"].endswith("Z")
        rows = list(csv.DictReader(io.StringIO(response.text)))
        assert len(rows) == 5

    async def test_limit_is_validated(self, client):
        response = await client.get("/api/v1/bookings", params={"limit": 0})
        assert response.status_code == 422


class TestAnalyticsRoutes:

    async def test_snapshot(self, client, loaded):
        response = await client.get("/api/v1/analytics/snapshot", params=WINDOW)

        body = response.json()
        assert body["degraded"] is False
        assert body["snapshot"]["active_revenue"] == "53.00"
        assert body["snapshot"]["lost_revenue"] == "25.00"
        assert body["snapshot"]["cancellation_rate"] == 0.2
        assert body["snapshot"]["data_quality_score"] == 1.0

    async def test_manual_refresh(self, client, loaded):
        response = await client.post("/api/v1/analytics/refresh", params=WINDOW)

        assert response.json()["refresh_mode"] == "full"

    async def test_snapshot_export(self, client, loaded):
        response = await client.get("/api/v1/analytics/snapshot/export.csv", params=WINDOW)

        rows = list(csv.DictReader(io.StringIO(response.text)))
        assert {"by_movie", "by_price_category"} <= {row["breakdown"] for row in rows}

    async def test_refresh_bypasses_cache(self, client, loaded, monkeypatch):
        stale = {"snapshot": {"total_records": 0}, "refresh_mode": "full"}
        monkeypatch.setattr(snapshot_cache, "get", AsyncMock(return_value=stale))

        response = await client.get("/api/v1/analytics/snapshot", params=WINDOW)

        assert response.json()["snapshot"]["total_records"] == 5
        snapshot_cache.get.assert_not_awaited()

    async def test_cached_answer_is_marked(self, client, loaded, monkeypatch):
        stale = {"snapshot": {"total_records": 0}, "refresh_mode": "full"}
        monkeypatch.setattr(snapshot_cache, "get", AsyncMock(return_value=stale))

        response = await client.get("/api/v1/analytics/snapshot", params={**WINDOW, "refresh": "false"})

        assert response.json()["refresh_mode"] == "cached"
        assert response.json()["snapshot"]["total_records"] == 0
