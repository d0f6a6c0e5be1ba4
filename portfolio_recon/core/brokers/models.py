"""Broker connection data models."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional


class BrokerId(str, Enum):
    """Supported data sources."""

    MANUAL = "manual"
    CSV = "csv"
    PLAID = "plaid"
    SCHWAB = "schwab"
    INTERACTIVE_BROKERS = "interactive_brokers"
    NORDNET = "nordnet"


class ConnectionStatus(str, Enum):
    """Lifecycle status of a broker connection."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


@dataclass(frozen=True)
class BrokerConnection:
    """A link to an external data source, passed to the core by value."""

    id: str
    broker_id: BrokerId
    status: ConnectionStatus = ConnectionStatus.CONNECTED
    sync_frequency: int = 30  # minutes
    last_sync_time: Optional[datetime] = None
    last_error: Optional[str] = None
    portfolio_id: Optional[str] = None
    currency: str = "USD"
    default_exchange: Optional[str] = None
    display_name: Optional[str] = None

    @property
    def is_enabled(self) -> bool:
        """Disconnected connections are never fetched."""
        return self.status != ConnectionStatus.DISCONNECTED

    def is_due(self, now: datetime) -> bool:
        """Whether ``sync_frequency`` minutes have passed since the last sync."""
        if self.last_sync_time is None:
            return True
        return self.last_sync_time + timedelta(minutes=self.sync_frequency) <= now

    def disabled(self) -> "BrokerConnection":
        return replace(self, status=ConnectionStatus.DISCONNECTED)


@dataclass
class FetchOutcome:
    """Result of fetching one connection during a cycle."""

    connection: BrokerConnection
    success: bool
    attempts: int
    records: List = field(default_factory=list)
    account_number: Optional[str] = None
    error_message: Optional[str] = None
    fetched_at: Optional[datetime] = None

    @property
    def status(self) -> ConnectionStatus:
        return ConnectionStatus.CONNECTED if self.success else ConnectionStatus.ERROR
