"""Capabilities the reconciliation core consumes from its collaborators."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from portfolio_recon.core.aggregation.models import PortfolioSnapshot
from portfolio_recon.core.brokers.models import BrokerConnection, ConnectionStatus
from portfolio_recon.core.duplicates.models import DuplicateCandidate, ResolutionDecision
from portfolio_recon.core.positions.models import Position, RawSourceRecord


class PriceFeed(ABC):
    """Market price lookup."""

    @abstractmethod
    def get_price(self, instrument_key: str) -> Optional[Decimal]:
        """Latest price in the instrument's currency, or None if unavailable."""
        pass


class FxRateProvider(ABC):
    """Currency conversion rates."""

    @abstractmethod
    def get_rate(self, from_currency: str, to_currency: str) -> Optional[Decimal]:
        """Units of ``to_currency`` per unit of ``from_currency``, or None."""
        pass


class PortfolioStore(ABC):
    """Persistence used by the coordinator and the resolution queue."""

    @abstractmethod
    def load_connections(self, portfolio_id: str) -> List[BrokerConnection]:
        pass

    @abstractmethod
    def load_positions(self, portfolio_id: str) -> List[Position]:
        """Positions from the latest committed cycle."""
        pass

    @abstractmethod
    def load_source_records(self, connection_id: str) -> List[RawSourceRecord]:
        """Records stored for manual and CSV connections."""
        pass

    @abstractmethod
    def save_snapshot(self, snapshot: PortfolioSnapshot) -> None:
        """Persist a snapshot together with its positions and candidate queue."""
        pass

    @abstractmethod
    def update_connection_status(
        self,
        connection_id: str,
        status: ConnectionStatus,
        last_sync_time: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> None:
        pass

    @abstractmethod
    def load_pending_resolutions(
        self,
        portfolio_id: str,
        recorded_before: Optional[datetime] = None,
    ) -> List[ResolutionDecision]:
        """Unexpired decisions, optionally only those recorded up to a cutoff."""
        pass

    @abstractmethod
    def expire_resolutions(self, portfolio_id: str, active_candidate_ids: Iterable[str]) -> int:
        """Expire decisions whose candidate disappeared; returns how many."""
        pass

    @abstractmethod
    def load_candidates(self, portfolio_id: str) -> List[DuplicateCandidate]:
        """The duplicate queue from the latest committed cycle."""
        pass

    @abstractmethod
    def record_resolution(self, portfolio_id: str, decision: ResolutionDecision) -> None:
        pass

    @abstractmethod
    def load_latest_snapshot(self, portfolio_id: str) -> Optional[PortfolioSnapshot]:
        pass
