"""Portfolio reconciliation API routes."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile, status
from pydantic import BaseModel

from portfolio_recon.api.deps import get_coordinator, get_resolution_service, get_store
from portfolio_recon.core.brokers.models import BrokerId
from portfolio_recon.core.duplicates.models import DuplicateCandidate, ResolutionStatus
from portfolio_recon.core.duplicates.resolutions import ResolutionService
from portfolio_recon.core.errors import (
    AllConnectionsFailedError,
    CandidateNotFoundError,
    ConcurrentSyncInProgressError,
)
from portfolio_recon.core.portfolio.importers import decode_csv_bytes, import_csv
from portfolio_recon.core.portfolio.repository import SqlPortfolioStore
from portfolio_recon.core.reconciliation import ReconciliationCoordinator

router = APIRouter()


class ReconcileResponse(BaseModel):
    """Outcome of a reconciliation cycle."""

    portfolio_id: str
    state: str
    committed: bool
    cancelled: bool
    failed_connections: List[str]
    holdings_count: int = 0
    total_value: Optional[Decimal] = None
    base_currency: Optional[str] = None
    pending_duplicates: int = 0
    warnings: List[str] = []


class SnapshotSummaryResponse(BaseModel):
    """One row of snapshot history."""

    as_of: datetime
    base_currency: str
    total_value: Decimal
    total_cost: Decimal
    has_degraded_conversions: bool


class ResolutionRequest(BaseModel):
    """A decision on a duplicate candidate."""

    decision: ResolutionStatus
    canonical_position_id: Optional[str] = None


class ResolutionResponse(BaseModel):
    """A recorded decision; applied from the next cycle."""

    candidate_id: str
    decision: ResolutionStatus
    canonical_position_id: Optional[str]
    recorded_at: datetime


class ImportResultResponse(BaseModel):
    """Response for a CSV import."""

    status: str
    format: str
    stored: int
    skipped: int
    errors: List[str]


def _candidate_payload(candidate: DuplicateCandidate) -> dict:
    payload = candidate.to_dict()
    payload["positions"] = [
        {
            "position_id": p.position_id,
            "broker_id": p.broker_id,
            "account_number": p.account_number,
            "quantity": str(p.quantity),
            "average_cost": str(p.average_cost),
            "currency": p.currency,
        }
        for p in candidate.positions
    ]
    return payload


@router.post("/{portfolio_id}/reconcile", response_model=ReconcileResponse)
def reconcile_portfolio(
    portfolio_id: str,
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    """Run a reconciliation cycle and commit a new snapshot.

    Returns 409 while another cycle for the portfolio is running and 502
    when no connection could be fetched.
    """
    try:
        result = coordinator.reconcile(portfolio_id)
    except ConcurrentSyncInProgressError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except AllConnectionsFailedError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    response = ReconcileResponse(
        portfolio_id=portfolio_id,
        state=result.state.value,
        committed=result.committed,
        cancelled=result.cancelled,
        failed_connections=result.failed_connections,
    )
    if result.snapshot is not None:
        snapshot = result.snapshot
        response.holdings_count = len(snapshot.holdings)
        response.total_value = snapshot.total_value
        response.base_currency = snapshot.base_currency
        response.pending_duplicates = len(snapshot.pending_duplicates)
        response.warnings = snapshot.error_report.summary()
    return response


@router.post("/{portfolio_id}/cancel")
def cancel_reconcile(
    portfolio_id: str,
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    """Ask a running cycle to stop before its next step."""
    return {"portfolio_id": portfolio_id, "cancelled": coordinator.cancel(portfolio_id)}


@router.get("/{portfolio_id}/snapshot")
def get_latest_snapshot(
    portfolio_id: str,
    store: SqlPortfolioStore = Depends(get_store),
):
    """Latest committed snapshot with holdings and drill-down positions."""
    snapshot = store.load_latest_snapshot(portfolio_id)
    if snapshot is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No snapshot for portfolio {portfolio_id}",
        )
    return snapshot.to_dict()


@router.get("/{portfolio_id}/snapshots", response_model=List[SnapshotSummaryResponse])
def list_snapshots(
    portfolio_id: str,
    limit: int = Query(20, ge=1, le=200),
    store: SqlPortfolioStore = Depends(get_store),
):
    """Snapshot history, newest first."""
    return store.list_snapshots(portfolio_id, limit=limit)


@router.get("/{portfolio_id}/duplicates")
def list_duplicates(
    portfolio_id: str,
    resolution_status: Optional[ResolutionStatus] = Query(None, alias="status"),
    store: SqlPortfolioStore = Depends(get_store),
):
    """Duplicate review queue from the latest committed cycle."""
    candidates = store.load_candidates(portfolio_id)
    if resolution_status is not None:
        candidates = [c for c in candidates if c.resolution_status == resolution_status]
    return [_candidate_payload(c) for c in candidates]


@router.post(
    "/{portfolio_id}/duplicates/{candidate_id}/resolution",
    response_model=ResolutionResponse,
    status_code=status.HTTP_201_CREATED,
)
def resolve_duplicate(
    portfolio_id: str,
    candidate_id: str,
    payload: ResolutionRequest,
    service: ResolutionService = Depends(get_resolution_service),
):
    """Confirm a candidate as duplicate or distinct."""
    try:
        decision = service.submit_resolution(
            portfolio_id,
            candidate_id,
            payload.decision,
            canonical_position_id=payload.canonical_position_id,
        )
    except CandidateNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return ResolutionResponse(
        candidate_id=decision.candidate_id,
        decision=decision.decision,
        canonical_position_id=decision.canonical_position_id,
        recorded_at=decision.recorded_at,
    )


@router.post("/{portfolio_id}/import/csv", response_model=ImportResultResponse)
async def import_csv_file(
    portfolio_id: str,
    connection_id: str = Query(..., description="Manual or CSV connection to load into"),
    fmt: Optional[str] = Query(None, description="'schwab' or 'transactions'; detected when omitted"),
    file: UploadFile = File(..., description="Broker CSV export"),
    store: SqlPortfolioStore = Depends(get_store),
):
    """Replace a connection's stored records with a CSV export."""
    connection = store.get_connection(connection_id)
    if connection is None or connection.portfolio_id != portfolio_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Connection {connection_id} not found",
        )
    if connection.broker_id not in (BrokerId.MANUAL, BrokerId.CSV):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Connection {connection_id} is a {connection.broker_id.value} connection",
        )

    content = await file.read()
    try:
        result = import_csv(store, connection_id, decode_csv_bytes(content), fmt=fmt)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if result.errors and not result.records:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Import failed: {'; '.join(result.errors)}",
        )

    return ImportResultResponse(
        status="ok",
        format=result.format,
        stored=result.stored,
        skipped=result.skipped,
        errors=result.errors,
    )
