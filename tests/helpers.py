"""Fakes and builders shared by the test modules."""

import threading
import time
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from portfolio_recon.core.brokers.base import BrokerClient
from portfolio_recon.core.brokers.models import BrokerConnection, BrokerId, ConnectionStatus
from portfolio_recon.core.positions.models import Position, RawSourceRecord
from portfolio_recon.core.reconciliation.interfaces import (
    FxRateProvider,
    PortfolioStore,
    PriceFeed,
)

NOW = datetime(2024, 6, 3, 12, 0, 0)


def D(value) -> Decimal:
    return Decimal(str(value))


def make_connection(
    connection_id: str,
    broker_id: BrokerId = BrokerId.MANUAL,
    currency: str = "USD",
    default_exchange: Optional[str] = "XNAS",
    last_sync_time: Optional[datetime] = None,
    status: ConnectionStatus = ConnectionStatus.CONNECTED,
    portfolio_id: str = "p1",
) -> BrokerConnection:
    return BrokerConnection(
        id=connection_id,
        broker_id=broker_id,
        status=status,
        currency=currency,
        default_exchange=default_exchange,
        last_sync_time=last_sync_time,
        portfolio_id=portfolio_id,
    )


def make_position(
    instrument_key: str = "AAPL@XNAS",
    source_account_id: str = "conn-a",
    quantity="10",
    average_cost="100",
    currency: str = "USD",
    current_price=None,
    previous_close=None,
    price_currency: Optional[str] = None,
    account_number: Optional[str] = None,
    connection_last_sync: Optional[datetime] = None,
    broker_id: str = "manual",
    connection_id: Optional[str] = None,
    asset_class: str = "equity",
) -> Position:
    return Position(
        instrument_key=instrument_key,
        source_account_id=source_account_id,
        quantity=D(quantity),
        average_cost=D(average_cost),
        currency=currency,
        last_updated=NOW,
        current_price=None if current_price is None else D(current_price),
        price_currency=price_currency,
        previous_close=None if previous_close is None else D(previous_close),
        connection_id=connection_id or source_account_id.split(":")[0],
        broker_id=broker_id,
        account_number=account_number,
        connection_last_sync=connection_last_sync,
        symbol=instrument_key.split("@")[0],
        asset_class=asset_class,
    )


def holding_record(symbol: str, quantity, average_cost, **kwargs) -> RawSourceRecord:
    return RawSourceRecord(symbol=symbol, quantity=D(quantity), average_cost=D(average_cost), **kwargs)


class FakeBrokerClient(BrokerClient):
    """Serves canned records; an Exception value is raised instead of returned.

    A list of outcomes per connection is consumed one per call, the last
    one repeating. ``peak_in_flight`` records the most concurrent calls seen.
    """

    def __init__(self, broker_id: BrokerId, outcomes: Dict[str, list], delay: float = 0.0,
                 account_numbers: Optional[Dict[str, str]] = None):
        self._broker_id = broker_id
        self.outcomes = outcomes
        self.delay = delay
        self.account_numbers = account_numbers or {}
        self.calls: Dict[str, int] = {}
        self.in_flight = 0
        self.peak_in_flight = 0
        self._lock = threading.Lock()

    @property
    def broker_id(self) -> BrokerId:
        return self._broker_id

    def fetch_positions(self, connection_id: str) -> List[RawSourceRecord]:
        with self._lock:
            count = self.calls.get(connection_id, 0)
            self.calls[connection_id] = count + 1
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
        finally:
            with self._lock:
                self.in_flight -= 1
        sequence = self.outcomes[connection_id]
        outcome = sequence[min(count, len(sequence) - 1)]
        if isinstance(outcome, Exception):
            raise outcome
        return list(outcome)

    def fetch_account_number(self, connection_id: str) -> Optional[str]:
        return self.account_numbers.get(connection_id)


class BlockingClient(BrokerClient):
    """Blocks in fetch until released, to hold a cycle open."""

    def __init__(self, broker_id: BrokerId, records: List[RawSourceRecord]):
        self._broker_id = broker_id
        self.records = records
        self.started = threading.Event()
        self.release = threading.Event()

    @property
    def broker_id(self) -> BrokerId:
        return self._broker_id

    def fetch_positions(self, connection_id: str) -> List[RawSourceRecord]:
        self.started.set()
        self.release.wait(timeout=5)
        return list(self.records)

    def fetch_account_number(self, connection_id: str) -> Optional[str]:
        return None


class StaticPriceFeed(PriceFeed):
    def __init__(self, prices: Dict[str, str]):
        self.prices = {k: D(v) for k, v in prices.items()}

    def get_price(self, instrument_key: str) -> Optional[Decimal]:
        return self.prices.get(instrument_key)


class StaticFxRates(FxRateProvider):
    def __init__(self, rates: Dict[str, str]):
        self.rates = {k: D(v) for k, v in rates.items()}

    def get_rate(self, from_currency: str, to_currency: str) -> Optional[Decimal]:
        return self.rates.get(from_currency)


class InMemoryStore(PortfolioStore):
    """Dict-backed store recording every write."""

    def __init__(self, connections: List[BrokerConnection]):
        self.connections = {c.id: c for c in connections}
        self.snapshots = []
        self.status_updates = []
        self.resolutions = []  # (portfolio_id, decision)
        self.expired: List[str] = []
        self.source_records: Dict[str, List[RawSourceRecord]] = {}

    def load_connections(self, portfolio_id):
        return [c for c in self.connections.values() if c.portfolio_id == portfolio_id]

    def load_positions(self, portfolio_id):
        snapshot = self.load_latest_snapshot(portfolio_id)
        return snapshot.positions() if snapshot else []

    def load_source_records(self, connection_id):
        return list(self.source_records.get(connection_id, []))

    def save_snapshot(self, snapshot):
        self.snapshots.append(snapshot)

    def update_connection_status(self, connection_id, status, last_sync_time=None, error=None):
        self.status_updates.append((connection_id, status, last_sync_time, error))

    def load_pending_resolutions(self, portfolio_id, recorded_before=None):
        return [
            d for pid, d in self.resolutions
            if pid == portfolio_id
            and d.candidate_id not in self.expired
            and (recorded_before is None or d.recorded_at <= recorded_before)
        ]

    def expire_resolutions(self, portfolio_id, active_candidate_ids):
        active = set(active_candidate_ids)
        newly = [
            d.candidate_id for pid, d in self.resolutions
            if pid == portfolio_id and d.candidate_id not in active and d.candidate_id not in self.expired
        ]
        self.expired.extend(newly)
        return len(newly)

    def load_candidates(self, portfolio_id):
        snapshot = self.load_latest_snapshot(portfolio_id)
        return list(snapshot.duplicates) if snapshot else []

    def record_resolution(self, portfolio_id, decision):
        self.resolutions.append((portfolio_id, decision))

    def load_latest_snapshot(self, portfolio_id):
        matching = [s for s in self.snapshots if s.portfolio_id == portfolio_id]
        return matching[-1] if matching else None
