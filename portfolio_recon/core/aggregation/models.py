"""Aggregated holding and portfolio snapshot models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from portfolio_recon.core.duplicates.models import (
    DuplicateCandidate,
    MatchReason,
    ResolutionStatus,
)
from portfolio_recon.core.errors import ErrorReport
from portfolio_recon.core.positions.models import Position

ZERO = Decimal("0")


def pnl_percent(market_value: Decimal, total_cost: Decimal) -> Decimal:
    """Unrealized P&L percent; zero when there is no cost."""
    if total_cost > 0:
        return (market_value - total_cost) / total_cost * 100
    return ZERO


@dataclass(frozen=True)
class ContributingPosition:
    """A source position inside an aggregated holding, kept for drill-down."""

    position: Position
    excluded: bool = False
    market_value: Decimal = ZERO  # Base currency, zero when excluded
    cost: Decimal = ZERO

    def to_dict(self) -> dict:
        return {
            "position": self.position.to_dict(),
            "excluded": self.excluded,
            "market_value": str(self.market_value),
            "cost": str(self.cost),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ContributingPosition":
        return cls(
            position=Position.from_dict(data["position"]),
            excluded=data["excluded"],
            market_value=Decimal(data["market_value"]),
            cost=Decimal(data["cost"]),
        )


@dataclass(frozen=True)
class AggregatedHolding:
    """Consolidated view of one instrument across accounts."""

    instrument_key: str
    total_quantity: Decimal
    total_cost: Decimal
    market_value: Decimal
    unrealized_pnl: Decimal
    unrealized_pnl_percent: Decimal
    contributing_positions: Tuple[ContributingPosition, ...]
    price_stale: bool = False
    degraded_conversion: bool = False
    daily_change: Optional[Decimal] = None

    @property
    def symbol(self) -> Optional[str]:
        for cp in self.contributing_positions:
            if cp.position.symbol:
                return cp.position.symbol
        return None

    def to_dict(self) -> dict:
        return {
            "instrument_key": self.instrument_key,
            "symbol": self.symbol,
            "total_quantity": str(self.total_quantity),
            "total_cost": str(self.total_cost),
            "market_value": str(self.market_value),
            "unrealized_pnl": str(self.unrealized_pnl),
            "unrealized_pnl_percent": str(self.unrealized_pnl_percent),
            "price_stale": self.price_stale,
            "degraded_conversion": self.degraded_conversion,
            "daily_change": None if self.daily_change is None else str(self.daily_change),
            "contributing_positions": [cp.to_dict() for cp in self.contributing_positions],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AggregatedHolding":
        return cls(
            instrument_key=data["instrument_key"],
            total_quantity=Decimal(data["total_quantity"]),
            total_cost=Decimal(data["total_cost"]),
            market_value=Decimal(data["market_value"]),
            unrealized_pnl=Decimal(data["unrealized_pnl"]),
            unrealized_pnl_percent=Decimal(data["unrealized_pnl_percent"]),
            contributing_positions=tuple(
                ContributingPosition.from_dict(cp) for cp in data["contributing_positions"]
            ),
            price_stale=data.get("price_stale", False),
            degraded_conversion=data.get("degraded_conversion", False),
            daily_change=(
                Decimal(data["daily_change"]) if data.get("daily_change") is not None else None
            ),
        )


@dataclass
class PortfolioSnapshot:
    """Output of one reconciliation cycle."""

    portfolio_id: str
    as_of: datetime
    base_currency: str
    holdings: List[AggregatedHolding] = field(default_factory=list)
    duplicates: List[DuplicateCandidate] = field(default_factory=list)
    has_degraded_conversions: bool = False
    error_report: ErrorReport = field(default_factory=ErrorReport)

    @property
    def total_value(self) -> Decimal:
        return sum((h.market_value for h in self.holdings), ZERO)

    @property
    def total_cost(self) -> Decimal:
        return sum((h.total_cost for h in self.holdings), ZERO)

    @property
    def total_pnl(self) -> Decimal:
        return self.total_value - self.total_cost

    @property
    def total_pnl_percent(self) -> Decimal:
        return pnl_percent(self.total_value, self.total_cost)

    @property
    def daily_change(self) -> Optional[Decimal]:
        changes = [h.daily_change for h in self.holdings if h.daily_change is not None]
        if not changes:
            return None
        return sum(changes, ZERO)

    @property
    def pending_duplicates(self) -> List[DuplicateCandidate]:
        return [d for d in self.duplicates if d.resolution_status == ResolutionStatus.PENDING]

    def broker_breakdown(self) -> Dict[str, Decimal]:
        """Market value per broker, counting only non-excluded positions."""
        breakdown: Dict[str, Decimal] = {}
        for holding in self.holdings:
            for cp in holding.contributing_positions:
                if cp.excluded:
                    continue
                broker = cp.position.broker_id or "unknown"
                breakdown[broker] = breakdown.get(broker, ZERO) + cp.market_value
        return dict(sorted(breakdown.items()))

    def asset_allocation(self) -> Dict[str, Dict[str, Decimal]]:
        """Market value and percent of total value per asset class.

        Excluded duplicates are skipped; values are in the base currency.
        """
        values: Dict[str, Decimal] = {}
        for holding in self.holdings:
            for cp in holding.contributing_positions:
                if cp.excluded:
                    continue
                asset_class = cp.position.asset_class or "unknown"
                values[asset_class] = values.get(asset_class, ZERO) + cp.market_value

        total = sum(values.values(), ZERO)
        allocation = {}
        for asset_class, value in sorted(values.items()):
            percent = value / total * 100 if total > 0 else ZERO
            allocation[asset_class] = {"value": value, "percent": percent}
        return allocation

    def top_holdings(self, limit: int = 10) -> List[AggregatedHolding]:
        return sorted(
            self.holdings, key=lambda h: (-h.market_value, h.instrument_key)
        )[:limit]

    def positions(self) -> List[Position]:
        return [cp.position for h in self.holdings for cp in h.contributing_positions]

    def to_dict(self) -> dict:
        daily_change = self.daily_change
        return {
            "portfolio_id": self.portfolio_id,
            "as_of": self.as_of.isoformat(),
            "base_currency": self.base_currency,
            "total_value": str(self.total_value),
            "total_cost": str(self.total_cost),
            "total_pnl": str(self.total_pnl),
            "total_pnl_percent": str(self.total_pnl_percent),
            "daily_change": None if daily_change is None else str(daily_change),
            "has_degraded_conversions": self.has_degraded_conversions,
            "broker_breakdown": {k: str(v) for k, v in self.broker_breakdown().items()},
            "asset_allocation": {
                k: {"value": str(v["value"]), "percent": str(v["percent"])}
                for k, v in self.asset_allocation().items()
            },
            "holdings": [h.to_dict() for h in self.holdings],
            "duplicates": [d.to_dict() for d in self.duplicates],
            "error_report": self.error_report.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PortfolioSnapshot":
        holdings = [AggregatedHolding.from_dict(h) for h in data.get("holdings", [])]
        by_id = {
            cp.position.position_id: cp.position
            for h in holdings
            for cp in h.contributing_positions
        }
        duplicates = []
        for d in data.get("duplicates", []):
            duplicates.append(
                DuplicateCandidate(
                    candidate_id=d["candidate_id"],
                    instrument_key=d["instrument_key"],
                    positions=tuple(by_id[pid] for pid in d["position_ids"] if pid in by_id),
                    confidence=d["confidence"],
                    match_reason=MatchReason(d["match_reason"]),
                    resolution_status=ResolutionStatus(d["resolution_status"]),
                    canonical_position_id=d.get("canonical_position_id"),
                )
            )
        return cls(
            portfolio_id=data["portfolio_id"],
            as_of=datetime.fromisoformat(data["as_of"]),
            base_currency=data["base_currency"],
            holdings=holdings,
            duplicates=duplicates,
            has_degraded_conversions=data.get("has_degraded_conversions", False),
            error_report=ErrorReport.from_dict(data.get("error_report", {})),
        )
