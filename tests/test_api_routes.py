import logging

import pytest
from fastapi.testclient import TestClient

from ticketsync.api import dependencies
from ticketsync.api.main import app
from ticketsync.config import settings
from ticketsync.connectors.resolution import PipelineStageCache
from ticketsync.models import database


logger = logging.getLogger(__name__)


@pytest.fixture
def api(monkeypatch, db_url, fake_hubspot):
    monkeypatch.setattr(settings, "DATABASE_URL", db_url)
    monkeypatch.setattr(settings, "AUTO_CREATE_TABLES", True)
    monkeypatch.setattr(settings, "SYNC_PROCESS_BATCH_DELAY_SECONDS", 0)
    monkeypatch.setattr(settings, "SYNC_SAVE_BATCH_DELAY_SECONDS", 0)
    monkeypatch.setattr(settings, "REFRESH_DELAY_SECONDS", 0)
    monkeypatch.setattr(database, "_engine", None)
    monkeypatch.setattr(database, "_session_factory", None)

    stage_cache = PipelineStageCache()
    app.dependency_overrides[dependencies.get_connector] = lambda: fake_hubspot.connector()
    app.dependency_overrides[dependencies.get_stage_cache] = lambda: stage_cache
    try:
        with TestClient(app) as client:
            yield client
    finally:
        app.dependency_overrides.clear()


def test_health_checks(api) -> None:
    assert api.get("/").json() == {"status": "ok"}
    assert api.get("/health").json() == {"status": "ok"}
    db = api.get("/health/db").json()
    assert db["status"] == "ok"


def test_sync_then_browse_tickets(api, fake_hubspot, ticket_payloads) -> None:
    fake_hubspot.tickets = ticket_payloads(3, hubspot_owner_id="1", hs_ticket_category="BUG")

    response = api.post("/api/sync", json={"trigger": "sync_all"})
    logger.info("Sync response", extra={"status_code": response.status_code, "body": response.json()})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["counts"] == {"fetched": 3, "processed": 3, "saved": 3, "failed": 0}

    listing = api.get("/api/tickets", params={"limit": 2}).json()
    assert listing["pagination"] == {"page": 1, "limit": 2, "total": 3, "total_pages": 2}
    assert len(listing["tickets"]) == 2
    assert listing["tickets"][0]["owner_name"] == "Ada Lovelace"
    assert listing["tickets"][0]["category_label"] == "Bug report"

    single = api.get("/api/tickets/2")
    assert single.status_code == 200
    assert single.json()["subject"] == "Ticket 2"

    filters = api.get("/api/tickets/filters").json()
    assert filters == {"categories": ["Bug report"], "owners": ["Ada Lovelace"]}

    logs = api.get("/api/sync/logs").json()
    assert logs["stats"] == {"total_syncs": 1, "total_fetched": 3, "total_saved": 3}
    assert logs["logs"][0]["status"] == "success"
    assert logs["logs"][0]["sync_type"] == "sync_all"


def test_invalid_trigger_is_a_bad_request(api, fake_hubspot) -> None:
    response = api.post("/api/sync", json={"trigger": "sync_everything"})

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert fake_hubspot.requests == []


def test_fetch_failure_returns_500_with_result_body(api, fake_hubspot, ticket_payloads) -> None:
    fake_hubspot.tickets = ticket_payloads(2)
    fake_hubspot.search_failures = {1: 500}

    response = api.post("/api/sync", json={"trigger": "sync_7_days"})

    assert response.status_code == 500
    body = response.json()
    assert body["success"] is False
    assert body["error_type"] == "fetch"

    logs = api.get("/api/sync/logs", params={"status": "failed"}).json()
    assert logs["pagination"]["total"] == 1


def test_ticket_list_date_filter_and_limit_bounds(api, fake_hubspot, ticket_payloads) -> None:
    fake_hubspot.tickets = (
        ticket_payloads(2, createdate="2024-05-01T10:00:00.000Z")
        + ticket_payloads(1, start=3, createdate="2024-06-15T10:00:00.000Z")
    )
    api.post("/api/sync", json={"trigger": "sync_all"})

    june = api.get("/api/tickets", params={"start_date": "2024-06-01", "end_date": "2024-06-30"}).json()
    assert [t["external_id"] for t in june["tickets"]] == ["3"]

    assert api.get("/api/tickets", params={"limit": 101}).status_code == 422
    assert api.get("/api/tickets", params={"sort": "owner"}).status_code == 422


def test_unknown_ticket_is_404(api) -> None:
    assert api.get("/api/tickets/does-not-exist").status_code == 404


def test_refresh_endpoints(api, fake_hubspot, ticket_payloads) -> None:
    fake_hubspot.tickets = ticket_payloads(2)
    api.post("/api/sync", json={"trigger": "sync_all"})

    fake_hubspot.tickets[0]["properties"]["subject"] = "Edited in HubSpot"
    refreshed = api.post("/api/tickets/1/refresh")
    assert refreshed.status_code == 200
    assert refreshed.json()["subject"] == "Edited in HubSpot"

    assert api.post("/api/tickets/999/refresh").status_code == 404

    summary = api.post("/api/tickets/refresh-all").json()
    assert summary["total"] == 2
    assert summary["success"] == 2
    assert summary["errors"] == 0
