"""Wiring for the default store, broker clients and market data."""

from __future__ import annotations

from typing import Optional

from sqlalchemy.orm import sessionmaker

from portfolio_recon.config import get_settings
from portfolio_recon.core.brokers import (
    BrokerClientRegistry,
    BrokerId,
    PlaidBrokerClient,
    SchwabBrokerClient,
    StoredRecordsClient,
)
from portfolio_recon.core.portfolio.repository import SqlPortfolioStore
from portfolio_recon.core.reconciliation import ReconciliationCoordinator
from portfolio_recon.data.market import YahooMarketData

settings = get_settings()


def build_registry(store: SqlPortfolioStore) -> BrokerClientRegistry:
    """Clients for every supported source, backed by the given store."""
    registry = BrokerClientRegistry()
    registry.register(StoredRecordsClient(store, BrokerId.MANUAL))
    registry.register(StoredRecordsClient(store, BrokerId.CSV))
    registry.register(PlaidBrokerClient(store.get_access_token))
    registry.register(SchwabBrokerClient(store.get_access_token))
    return registry


def build_coordinator(
    session_factory: Optional[sessionmaker] = None,
    store: Optional[SqlPortfolioStore] = None,
) -> ReconciliationCoordinator:
    """Coordinator on the SQL store with Yahoo prices and FX rates."""
    store = store or SqlPortfolioStore(session_factory)
    market = YahooMarketData(store.session_factory)
    return ReconciliationCoordinator(
        store=store,
        brokers=build_registry(store),
        price_feed=market,
        fx_rates=market,
    )
