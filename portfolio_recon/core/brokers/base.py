"""Base broker client abstraction."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from portfolio_recon.core.brokers.models import BrokerId
from portfolio_recon.core.positions.models import RawSourceRecord


class BrokerClient(ABC):
    """Abstract base class for position sources.

    Each client turns whatever its source speaks (a database table, a
    Plaid item, a Schwab account) into raw source records for one
    connection. Authentication and token exchange happen elsewhere.
    """

    @property
    @abstractmethod
    def broker_id(self) -> BrokerId:
        """Return the broker identifier."""
        pass

    @abstractmethod
    def fetch_positions(self, connection_id: str) -> List[RawSourceRecord]:
        """Fetch positions for a connection.

        Args:
            connection_id: Connection to fetch

        Returns:
            Raw records as reported by the source

        Raises:
            Exception: Any failure; the coordinator treats it as a
                connection fetch error
        """
        pass

    @abstractmethod
    def fetch_account_number(self, connection_id: str) -> Optional[str]:
        """Return the broker-reported account number, if the source exposes one."""
        pass


class BrokerClientRegistry:
    """Maps broker ids to the clients that serve them."""

    def __init__(self, clients: Optional[List[BrokerClient]] = None):
        self._clients: Dict[str, BrokerClient] = {}
        for client in clients or []:
            self.register(client)

    def register(self, client: BrokerClient, broker_id: Optional[BrokerId] = None) -> None:
        key = BrokerId(broker_id or client.broker_id).value
        self._clients[key] = client

    def get(self, broker_id) -> Optional[BrokerClient]:
        return self._clients.get(BrokerId(broker_id).value)

    def __contains__(self, broker_id) -> bool:
        return self.get(broker_id) is not None
