"""Tests for the HTTP API."""

from decimal import Decimal
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from portfolio_recon.api.app import app
from portfolio_recon.api.deps import get_coordinator, get_store
from portfolio_recon.core.brokers import BrokerClientRegistry, BrokerId, StoredRecordsClient
from portfolio_recon.core.errors import ConcurrentSyncInProgressError
from portfolio_recon.core.portfolio.repository import SqlPortfolioStore
from portfolio_recon.core.reconciliation import ReconciliationCoordinator
from portfolio_recon.db.database import create_session_factory, init_db

from helpers import NOW, StaticPriceFeed, holding_record

SCHWAB_CSV = b'''"Positions for account Individual ...123 as of 09:30 AM ET, 2024/06/03"

"Symbol","Description","Qty (Quantity)","Price","Cost Basis","Security Type"
"MSFT","MICROSOFT CORP","4","$400.00","$1,200.00","Equity"
'''


@pytest.fixture
def store():
    factory = create_session_factory("sqlite://", poolclass=StaticPool)
    init_db(factory)
    store = SqlPortfolioStore(factory)
    store.add_connection("p1", BrokerId.MANUAL, default_exchange="XNAS", connection_id="m1")
    store.add_connection("p1", BrokerId.CSV, default_exchange="XNAS", connection_id="c1")
    store.add_connection("p1", BrokerId.PLAID, access_token="access-sandbox", connection_id="pl1")
    store.disable_connection("pl1")
    store.replace_source_records("m1", [holding_record("AAPL", 10, 150)])
    store.replace_source_records("c1", [holding_record("AAPL", 10, 150)])
    return store


@pytest.fixture
def coordinator(store):
    registry = BrokerClientRegistry([
        StoredRecordsClient(store, BrokerId.MANUAL),
        StoredRecordsClient(store, BrokerId.CSV),
    ])
    return ReconciliationCoordinator(
        store, registry, price_feed=StaticPriceFeed({"AAPL@XNAS": "200"}), clock=lambda: NOW
    )


@pytest.fixture
def client(store, coordinator):
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestHealth:
    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestReconcileEndpoints:
    """Tests for reconcile, snapshot and history endpoints."""

    def test_reconcile_commits(self, client):
        response = client.post("/api/portfolios/p1/reconcile")

        assert response.status_code == 200
        data = response.json()
        assert data["committed"] is True
        assert data["state"] == "committed"
        assert data["holdings_count"] == 1
        assert data["pending_duplicates"] == 1
        assert Decimal(data["total_value"]) == Decimal("4000")

    def test_snapshot_after_reconcile(self, client):
        assert client.get("/api/portfolios/p1/snapshot").status_code == 404

        client.post("/api/portfolios/p1/reconcile")
        response = client.get("/api/portfolios/p1/snapshot")

        assert response.status_code == 200
        snapshot = response.json()
        assert snapshot["base_currency"] == "USD"
        holding = snapshot["holdings"][0]
        assert holding["instrument_key"] == "AAPL@XNAS"
        assert len(holding["contributing_positions"]) == 2

        history = client.get("/api/portfolios/p1/snapshots").json()
        assert len(history) == 1

    def test_all_connections_failed(self, client):
        response = client.post("/api/portfolios/empty/reconcile")
        assert response.status_code == 502

    def test_sync_in_progress(self, client):
        busy = Mock()
        busy.reconcile.side_effect = ConcurrentSyncInProgressError("Sync already in progress")
        app.dependency_overrides[get_coordinator] = lambda: busy

        response = client.post("/api/portfolios/p1/reconcile")

        assert response.status_code == 409

    def test_cancel_when_idle(self, client):
        response = client.post("/api/portfolios/p1/cancel")
        assert response.json() == {"portfolio_id": "p1", "cancelled": False}


class TestDuplicateEndpoints:
    """Tests for the review queue."""

    def test_confirm_duplicate_applies_next_cycle(self, client, coordinator):
        client.post("/api/portfolios/p1/reconcile")
        queue = client.get("/api/portfolios/p1/duplicates?status=pending").json()
        assert len(queue) == 1
        candidate = queue[0]
        assert {p["position_id"] for p in candidate["positions"]} == {"c1/AAPL@XNAS", "m1/AAPL@XNAS"}

        response = client.post(
            f"/api/portfolios/p1/duplicates/{candidate['candidate_id']}/resolution",
            json={"decision": "confirmed_duplicate", "canonical_position_id": "m1/AAPL@XNAS"},
        )
        assert response.status_code == 201
        assert response.json()["canonical_position_id"] == "m1/AAPL@XNAS"

        # Decisions apply from cycles fetched after they were recorded
        coordinator.clock = lambda: NOW.replace(year=2100)
        data = client.post("/api/portfolios/p1/reconcile").json()
        assert Decimal(data["total_value"]) == Decimal("2000")
        assert data["pending_duplicates"] == 0

    def test_unknown_candidate(self, client):
        client.post("/api/portfolios/p1/reconcile")
        response = client.post(
            "/api/portfolios/p1/duplicates/nope/resolution",
            json={"decision": "confirmed_distinct"},
        )
        assert response.status_code == 404

    def test_canonical_outside_candidate(self, client):
        client.post("/api/portfolios/p1/reconcile")
        candidate_id = client.get("/api/portfolios/p1/duplicates").json()[0]["candidate_id"]

        response = client.post(
            f"/api/portfolios/p1/duplicates/{candidate_id}/resolution",
            json={"decision": "confirmed_duplicate", "canonical_position_id": "x/AAPL@XNAS"},
        )

        assert response.status_code == 400

    def test_invalid_decision(self, client):
        response = client.post(
            "/api/portfolios/p1/duplicates/abc/resolution", json={"decision": "maybe"}
        )
        assert response.status_code == 422


class TestConnectionEndpoints:
    """Tests for connection management and CSV import."""

    def test_list_connections(self, client):
        connections = client.get("/api/portfolios/p1/connections").json()
        statuses = {c["id"]: c["status"] for c in connections}
        assert statuses == {"m1": "connected", "c1": "connected", "pl1": "disconnected"}

    def test_create_connection(self, client):
        response = client.post(
            "/api/portfolios/p1/connections",
            json={"broker_id": "csv", "currency": "nok", "default_exchange": "XOSL"},
        )
        assert response.status_code == 201
        assert response.json()["currency"] == "NOK"

    def test_live_broker_needs_token(self, client):
        response = client.post("/api/portfolios/p1/connections", json={"broker_id": "schwab"})
        assert response.status_code == 400

    def test_disable(self, client):
        response = client.post("/api/connections/m1/disable")
        assert response.status_code == 200
        assert response.json()["status"] == "disconnected"
        assert client.post("/api/connections/missing/disable").status_code == 404

    def test_import_csv(self, client, store):
        response = client.post(
            "/api/portfolios/p1/import/csv",
            params={"connection_id": "c1"},
            files={"file": ("positions.csv", SCHWAB_CSV, "text/csv")},
        )

        assert response.status_code == 200
        assert response.json()["format"] == "schwab"
        assert response.json()["stored"] == 1
        assert [r.symbol for r in store.load_source_records("c1")] == ["MSFT"]

    def test_import_into_live_connection_rejected(self, client):
        response = client.post(
            "/api/portfolios/p1/import/csv",
            params={"connection_id": "pl1"},
            files={"file": ("positions.csv", SCHWAB_CSV, "text/csv")},
        )
        assert response.status_code == 400

    def test_import_unknown_connection(self, client):
        response = client.post(
            "/api/portfolios/p1/import/csv",
            params={"connection_id": "nope"},
            files={"file": ("positions.csv", SCHWAB_CSV, "text/csv")},
        )
        assert response.status_code == 404
