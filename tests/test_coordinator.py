"""Tests for the reconciliation coordinator."""

import threading
from datetime import timedelta
from decimal import Decimal

import pytest

from portfolio_recon.core.brokers.base import BrokerClientRegistry
from portfolio_recon.core.brokers.models import BrokerId, ConnectionStatus
from portfolio_recon.core.duplicates import ResolutionDecision, ResolutionStatus, candidate_id_for
from portfolio_recon.core.errors import AllConnectionsFailedError, ConcurrentSyncInProgressError
from portfolio_recon.core.reconciliation import ReconciliationCoordinator, SyncState

from helpers import (
    NOW,
    BlockingClient,
    FakeBrokerClient,
    InMemoryStore,
    StaticFxRates,
    StaticPriceFeed,
    holding_record,
    make_connection,
)

AAPL_CANDIDATE = candidate_id_for("AAPL@XNAS", ["m1/AAPL@XNAS", "s1/AAPL@XNAS"])


def make_coordinator(store, client, **kwargs):
    kwargs.setdefault("price_feed", StaticPriceFeed({"AAPL@XNAS": "200", "EQNR@XOSL": "300"}))
    kwargs.setdefault("fx_rates", StaticFxRates({"NOK": "0.1"}))
    kwargs.setdefault("fetch_timeout", 2)
    kwargs.setdefault("fetch_retries", 1)
    kwargs.setdefault("clock", lambda: NOW)
    return ReconciliationCoordinator(
        store,
        BrokerClientRegistry([client]),
        base_currency="USD",
        max_concurrent_fetches=4,
        **kwargs,
    )


@pytest.fixture
def store():
    return InMemoryStore([make_connection("m1"), make_connection("s1")])


class TestReconcile:
    """Tests for a full cycle."""

    def test_commits_snapshot_and_statuses(self, store):
        client = FakeBrokerClient(BrokerId.MANUAL, {
            "m1": [[holding_record("AAPL", 10, 150)]],
            "s1": [[holding_record("EQNR.OL", 100, 250, currency="NOK")]],
        })

        result = make_coordinator(store, client).reconcile("p1")

        assert result.committed
        assert result.states == [
            SyncState.FETCHING,
            SyncState.NORMALIZING,
            SyncState.DETECTING,
            SyncState.AGGREGATING,
            SyncState.COMMITTED,
        ]
        assert store.snapshots == [result.snapshot]
        snapshot = result.snapshot
        assert snapshot.as_of == NOW
        assert snapshot.total_value == Decimal("2000") + Decimal("3000.0")
        assert not snapshot.has_degraded_conversions
        assert sorted(u[:3] for u in store.status_updates) == [
            ("m1", ConnectionStatus.CONNECTED, NOW),
            ("s1", ConnectionStatus.CONNECTED, NOW),
        ]

    def test_failing_connection_retried_then_reported(self, store):
        """X fails both attempts; the cycle still commits Y's data."""
        client = FakeBrokerClient(BrokerId.MANUAL, {
            "m1": [RuntimeError("HTTP 503")],
            "s1": [[holding_record("AAPL", 10, 150)]],
        })

        result = make_coordinator(store, client).reconcile("p1")

        assert result.committed
        assert client.calls["m1"] == 2
        assert result.failed_connections == ["m1"]
        outcome = next(o for o in result.outcomes if o.connection.id == "m1")
        assert outcome.attempts == 2
        assert outcome.error_message == "HTTP 503"

        assert ("m1", ConnectionStatus.ERROR, None, "HTTP 503") in store.status_updates
        assert result.snapshot.error_report.summary() == ["1 connection failed to sync"]
        assert [h.instrument_key for h in result.snapshot.holdings] == ["AAPL@XNAS"]

    def test_retry_recovers_transient_failure(self, store):
        client = FakeBrokerClient(BrokerId.MANUAL, {
            "m1": [RuntimeError("reset"), [holding_record("AAPL", 10, 150)]],
            "s1": [[]],
        })

        result = make_coordinator(store, client).reconcile("p1")

        assert result.failed_connections == []
        assert client.calls["m1"] == 2

    def test_slow_connection_times_out(self, store):
        slow = FakeBrokerClient(BrokerId.MANUAL, {"m1": [[]]}, delay=0.5)
        fast = FakeBrokerClient(BrokerId.PLAID, {"s1": [[holding_record("AAPL", 1, 100)]]})
        store.connections["s1"] = make_connection("s1", broker_id=BrokerId.PLAID)
        coordinator = ReconciliationCoordinator(
            store,
            BrokerClientRegistry([slow, fast]),
            fetch_timeout=0.05,
            fetch_retries=0,
            clock=lambda: NOW,
        )

        result = coordinator.reconcile("p1")

        assert result.committed
        failed = next(o for o in result.outcomes if not o.success)
        assert failed.connection.id == "m1"
        assert failed.error_message.startswith("Timed out")

    def test_disconnected_connection_skipped(self, store):
        store.connections["s1"] = make_connection("s1", status=ConnectionStatus.DISCONNECTED)
        client = FakeBrokerClient(BrokerId.MANUAL, {"m1": [[holding_record("AAPL", 10, 150)]]})

        result = make_coordinator(store, client).reconcile("p1")

        assert "s1" not in client.calls
        assert [o.connection.id for o in result.outcomes] == ["m1"]
        assert all(u[0] != "s1" for u in store.status_updates)

    def test_missing_client_counts_as_failure(self, store):
        store.connections["s1"] = make_connection("s1", broker_id=BrokerId.SCHWAB)
        client = FakeBrokerClient(BrokerId.MANUAL, {"m1": [[holding_record("AAPL", 10, 150)]]})

        result = make_coordinator(store, client).reconcile("p1")

        assert result.committed
        assert result.failed_connections == ["s1"]

    def test_account_number_flows_into_detection(self, store):
        """Overlapping connections reporting one account number are a strong match."""
        client = FakeBrokerClient(
            BrokerId.MANUAL,
            {"m1": [[holding_record("AAPL", 10, 150)]], "s1": [[holding_record("AAPL", 3, 150)]]},
            account_numbers={"m1": "1234-5678", "s1": "12345678"},
        )

        snapshot = make_coordinator(store, client).reconcile("p1").snapshot

        assert len(snapshot.duplicates) == 1
        assert snapshot.duplicates[0].confidence == 1.0
        assert snapshot.duplicates[0].candidate_id == AAPL_CANDIDATE


class TestFailureModes:
    """Tests for cycles that do not commit."""

    def test_all_connections_failed(self, store):
        client = FakeBrokerClient(BrokerId.MANUAL, {
            "m1": [RuntimeError("down")],
            "s1": [RuntimeError("down")],
        })
        coordinator = make_coordinator(store, client)

        with pytest.raises(AllConnectionsFailedError):
            coordinator.reconcile("p1")

        assert store.snapshots == []
        assert coordinator.state("p1") == SyncState.ERRORED
        assert {u[0] for u in store.status_updates} == {"m1", "s1"}
        assert all(u[1] == ConnectionStatus.ERROR for u in store.status_updates)

    def test_no_enabled_connections(self):
        store = InMemoryStore([])
        coordinator = make_coordinator(store, FakeBrokerClient(BrokerId.MANUAL, {}))

        with pytest.raises(AllConnectionsFailedError):
            coordinator.reconcile("p1")

    def test_concurrent_sync_rejected(self, store):
        blocking = BlockingClient(BrokerId.MANUAL, [holding_record("AAPL", 10, 150)])
        coordinator = make_coordinator(store, blocking)
        results = []

        worker = threading.Thread(target=lambda: results.append(coordinator.reconcile("p1")))
        worker.start()
        assert blocking.started.wait(timeout=5)

        try:
            assert coordinator.is_running("p1")
            with pytest.raises(ConcurrentSyncInProgressError):
                coordinator.reconcile("p1")
        finally:
            blocking.release.set()
            worker.join(timeout=5)

        assert results[0].committed
        assert not coordinator.is_running("p1")

    def test_cancel_mid_fetch_commits_nothing(self, store):
        blocking = BlockingClient(BrokerId.MANUAL, [holding_record("AAPL", 10, 150)])
        coordinator = make_coordinator(store, blocking)
        results = []

        worker = threading.Thread(target=lambda: results.append(coordinator.reconcile("p1")))
        worker.start()
        assert blocking.started.wait(timeout=5)
        assert coordinator.cancel("p1")
        blocking.release.set()
        worker.join(timeout=5)

        result = results[0]
        assert result.cancelled
        assert result.state == SyncState.IDLE
        assert result.snapshot is None
        assert store.snapshots == []
        assert store.status_updates == []
        assert coordinator.state("p1") == SyncState.IDLE

    def test_cancel_before_start(self, store):
        client = FakeBrokerClient(BrokerId.MANUAL, {"m1": [[]], "s1": [[]]})
        event = threading.Event()
        event.set()

        result = make_coordinator(store, client).reconcile("p1", cancel_event=event)

        assert result.states == [SyncState.IDLE]
        assert client.calls == {}

    def test_cancel_when_idle(self, store):
        client = FakeBrokerClient(BrokerId.MANUAL, {})
        assert not make_coordinator(store, client).cancel("p1")


class TestResolutionTiming:
    """Tests for when recorded decisions take effect."""

    def _client(self):
        return FakeBrokerClient(BrokerId.MANUAL, {
            "m1": [[holding_record("AAPL", 10, 150)]],
            "s1": [[holding_record("AAPL", 10, 150)]],
        })

    def test_decision_before_barrier_applied(self, store):
        store.resolutions.append(("p1", ResolutionDecision(
            candidate_id=AAPL_CANDIDATE,
            decision=ResolutionStatus.CONFIRMED_DUPLICATE,
            canonical_position_id="m1/AAPL@XNAS",
            recorded_at=NOW - timedelta(minutes=1),
        )))

        snapshot = make_coordinator(store, self._client()).reconcile("p1").snapshot

        assert snapshot.holdings[0].total_quantity == Decimal("10")
        assert snapshot.duplicates[0].resolution_status == ResolutionStatus.CONFIRMED_DUPLICATE

    def test_decision_after_barrier_waits_for_next_cycle(self, store):
        store.resolutions.append(("p1", ResolutionDecision(
            candidate_id=AAPL_CANDIDATE,
            decision=ResolutionStatus.CONFIRMED_DUPLICATE,
            canonical_position_id="m1/AAPL@XNAS",
            recorded_at=NOW + timedelta(minutes=1),
        )))

        snapshot = make_coordinator(store, self._client()).reconcile("p1").snapshot

        assert snapshot.holdings[0].total_quantity == Decimal("20")
        assert snapshot.duplicates[0].resolution_status == ResolutionStatus.PENDING

    def test_vanished_candidate_decisions_expire(self, store):
        store.resolutions.append(("p1", ResolutionDecision(
            candidate_id="gone",
            decision=ResolutionStatus.CONFIRMED_DISTINCT,
            recorded_at=NOW - timedelta(days=1),
        )))

        make_coordinator(store, self._client()).reconcile("p1")

        assert store.expired == ["gone"]


class TestBoundedFetching:
    """Tests for the fetch concurrency cap and per-call timeouts under load."""

    def test_calls_in_flight_never_exceed_cap(self):
        """Timed-out calls keep their slot until they return, retries included."""
        ids = [f"c{i}" for i in range(8)]
        store = InMemoryStore([make_connection(cid) for cid in ids])
        client = FakeBrokerClient(BrokerId.MANUAL, {cid: [[]] for cid in ids}, delay=0.2)
        coordinator = make_coordinator(store, client, fetch_timeout=0.05, fetch_retries=1)

        with pytest.raises(AllConnectionsFailedError):
            coordinator.reconcile("p1")

        assert client.peak_in_flight <= 4
        assert client.calls == {cid: 2 for cid in ids}

    def test_queued_connections_are_called_before_timing_out(self):
        """Slow connections holding every slot do not starve the ones queued behind."""
        slow_ids = ["c0", "c1", "c2", "c3"]
        store = InMemoryStore(
            [make_connection(cid) for cid in slow_ids]
            + [make_connection("f1", broker_id=BrokerId.PLAID),
               make_connection("f2", broker_id=BrokerId.PLAID)]
        )
        slow = FakeBrokerClient(BrokerId.MANUAL, {cid: [[]] for cid in slow_ids}, delay=0.3)
        fast = FakeBrokerClient(BrokerId.PLAID, {
            "f1": [[holding_record("AAPL", 10, 150)]],
            "f2": [[holding_record("MSFT", 5, 300)]],
        })
        coordinator = ReconciliationCoordinator(
            store,
            BrokerClientRegistry([slow, fast]),
            price_feed=StaticPriceFeed({"AAPL@XNAS": "200", "MSFT@XNAS": "400"}),
            base_currency="USD",
            max_concurrent_fetches=2,
            fetch_timeout=0.05,
            fetch_retries=0,
            clock=lambda: NOW,
        )

        result = coordinator.reconcile("p1")

        assert result.committed
        assert sorted(result.failed_connections) == slow_ids
        assert slow.calls == {cid: 1 for cid in slow_ids}
        assert fast.calls == {"f1": 1, "f2": 1}
        assert [h.instrument_key for h in result.snapshot.holdings] == ["AAPL@XNAS", "MSFT@XNAS"]


class TestSyncSchedule:
    """Tests for connection sync times and per-connection frequency."""

    def _client(self):
        return FakeBrokerClient(BrokerId.MANUAL, {
            "m1": [[holding_record("AAPL", 10, 150)]],
            "s1": [[holding_record("EQNR.OL", 100, 250, currency="NOK")]],
        })

    def test_connections_share_barrier_sync_time(self, store):
        """Sync time does not depend on which broker answered first."""
        ticks = iter([NOW + timedelta(seconds=i) for i in range(100)])
        coordinator = make_coordinator(store, self._client(), clock=lambda: next(ticks))

        coordinator.reconcile("p1")

        sync_times = {u[2] for u in store.status_updates if u[1] == ConnectionStatus.CONNECTED}
        assert len(sync_times) == 1
        assert len(store.status_updates) == 2

    def test_due_only_skips_recent_connections(self, store):
        """A connection inside its sync frequency keeps its committed positions."""
        client = self._client()
        coordinator = make_coordinator(store, client)
        coordinator.reconcile("p1")

        store.connections["m1"] = make_connection("m1", last_sync_time=NOW - timedelta(minutes=5))
        store.connections["s1"] = make_connection("s1", last_sync_time=NOW - timedelta(minutes=45))
        result = coordinator.reconcile("p1", due_only=True)

        assert result.committed
        assert client.calls == {"m1": 1, "s1": 2}
        assert [o.connection.id for o in result.outcomes] == ["s1"]
        assert [u[0] for u in store.status_updates[2:]] == ["s1"]
        assert [h.instrument_key for h in result.snapshot.holdings] == ["AAPL@XNAS", "EQNR@XOSL"]
        assert result.snapshot.total_value == Decimal("2000") + Decimal("3000.0")

    def test_nothing_due_runs_no_cycle(self, store):
        store.connections["m1"] = make_connection("m1", last_sync_time=NOW)
        store.connections["s1"] = make_connection("s1", last_sync_time=NOW)
        client = self._client()

        result = make_coordinator(store, client).reconcile("p1", due_only=True)

        assert result.states == []
        assert not result.committed
        assert client.calls == {}
        assert store.snapshots == []

    def test_forced_sync_ignores_frequency(self, store):
        store.connections["m1"] = make_connection("m1", last_sync_time=NOW)
        client = self._client()

        make_coordinator(store, client).reconcile("p1")

        assert client.calls == {"m1": 1, "s1": 1}
