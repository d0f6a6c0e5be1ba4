"""Reconciliation cycle orchestration."""

from .interfaces import FxRateProvider, PortfolioStore, PriceFeed
from .coordinator import CycleResult, ReconciliationCoordinator, SyncState

__all__ = [
    "FxRateProvider",
    "PortfolioStore",
    "PriceFeed",
    "CycleResult",
    "ReconciliationCoordinator",
    "SyncState",
]
