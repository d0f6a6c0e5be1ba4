"""FastAPI dependencies."""

from __future__ import annotations

from functools import lru_cache

from fastapi import Depends

from portfolio_recon.core.duplicates.resolutions import ResolutionService
from portfolio_recon.core.portfolio.repository import SqlPortfolioStore
from portfolio_recon.core.reconciliation import ReconciliationCoordinator
from portfolio_recon.core.services import build_coordinator


@lru_cache
def get_store() -> SqlPortfolioStore:
    """Process-wide store on the configured database."""
    return SqlPortfolioStore()


@lru_cache
def get_coordinator() -> ReconciliationCoordinator:
    """Shared coordinator; its per-portfolio locks must outlive a request."""
    return build_coordinator(store=get_store())


def get_resolution_service(store: SqlPortfolioStore = Depends(get_store)) -> ResolutionService:
    return ResolutionService(store)
