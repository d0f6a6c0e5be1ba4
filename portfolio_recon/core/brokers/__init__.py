"""Broker connections and the clients that read positions from them.

Supports:
- Manual entry and CSV imports (records stored in our database)
- Plaid (12,000+ financial institutions)
- Charles Schwab (Trader API)

Usage:
    from portfolio_recon.core.brokers import BrokerClientRegistry, StoredRecordsClient

    registry = BrokerClientRegistry([StoredRecordsClient(store)])
    records = registry.get("manual").fetch_positions(connection.id)
"""

from portfolio_recon.core.brokers.models import (
    BrokerConnection,
    BrokerId,
    ConnectionStatus,
    FetchOutcome,
)
from portfolio_recon.core.brokers.base import BrokerClient, BrokerClientRegistry
from portfolio_recon.core.brokers.stored_records import StoredRecordsClient
from portfolio_recon.core.brokers.plaid_provider import PlaidBrokerClient
from portfolio_recon.core.brokers.schwab_client import SchwabBrokerClient

__all__ = [
    # Models
    "BrokerConnection",
    "BrokerId",
    "ConnectionStatus",
    "FetchOutcome",
    # Clients
    "BrokerClient",
    "BrokerClientRegistry",
    "StoredRecordsClient",
    "PlaidBrokerClient",
    "SchwabBrokerClient",
]
