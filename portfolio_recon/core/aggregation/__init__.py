"""Portfolio aggregation across accounts and currencies."""

from .models import AggregatedHolding, ContributingPosition, PortfolioSnapshot
from .engine import AggregationEngine, AggregationResult, aggregate, build_snapshot

__all__ = [
    "AggregatedHolding",
    "ContributingPosition",
    "PortfolioSnapshot",
    "AggregationEngine",
    "AggregationResult",
    "aggregate",
    "build_snapshot",
]
