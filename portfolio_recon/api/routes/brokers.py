"""Broker connection API routes."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator

from portfolio_recon.api.deps import get_store
from portfolio_recon.config import get_settings
from portfolio_recon.core.brokers.models import BrokerConnection, BrokerId
from portfolio_recon.core.portfolio.repository import SqlPortfolioStore

router = APIRouter()
settings = get_settings()


# Request/Response Models

class ConnectionResponse(BaseModel):
    """A broker connection."""

    id: str
    portfolio_id: Optional[str]
    broker_id: str
    status: str
    display_name: Optional[str]
    currency: str
    default_exchange: Optional[str]
    sync_frequency: int
    last_sync_time: Optional[datetime]
    last_error: Optional[str]


class CreateConnectionRequest(BaseModel):
    """Request to register a connection."""

    broker_id: BrokerId
    display_name: Optional[str] = None
    currency: str = Field("USD", min_length=3, max_length=3)
    default_exchange: Optional[str] = None
    access_token: Optional[str] = None
    sync_frequency: int = Field(30, gt=0)

    @field_validator("currency")
    @classmethod
    def currency_uppercase(cls, v: str) -> str:
        return v.upper()


class BrokerStatusResponse(BaseModel):
    """Broker integration status."""

    plaid_configured: bool
    plaid_env: Optional[str]


def _to_response(connection: BrokerConnection) -> ConnectionResponse:
    return ConnectionResponse(
        id=connection.id,
        portfolio_id=connection.portfolio_id,
        broker_id=connection.broker_id.value,
        status=connection.status.value,
        display_name=connection.display_name,
        currency=connection.currency,
        default_exchange=connection.default_exchange,
        sync_frequency=connection.sync_frequency,
        last_sync_time=connection.last_sync_time,
        last_error=connection.last_error,
    )


# Routes

@router.get("/brokers/status", response_model=BrokerStatusResponse)
def get_broker_status():
    """Get broker integration status."""
    configured = bool(settings.plaid_client_id and settings.plaid_secret)
    return BrokerStatusResponse(
        plaid_configured=configured,
        plaid_env=settings.plaid_env if configured else None,
    )


@router.get("/portfolios/{portfolio_id}/connections", response_model=List[ConnectionResponse])
def list_connections(
    portfolio_id: str,
    store: SqlPortfolioStore = Depends(get_store),
):
    """List the portfolio's broker connections."""
    return [_to_response(c) for c in store.load_connections(portfolio_id)]


@router.post(
    "/portfolios/{portfolio_id}/connections",
    response_model=ConnectionResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_connection(
    portfolio_id: str,
    payload: CreateConnectionRequest,
    store: SqlPortfolioStore = Depends(get_store),
):
    """Register a connection. Live brokers need an access token from their link flow."""
    if payload.broker_id in (BrokerId.PLAID, BrokerId.SCHWAB) and not payload.access_token:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{payload.broker_id.value} connections require an access token",
        )
    connection = store.add_connection(
        portfolio_id,
        payload.broker_id,
        display_name=payload.display_name,
        currency=payload.currency,
        default_exchange=payload.default_exchange,
        access_token=payload.access_token,
        sync_frequency=payload.sync_frequency,
    )
    return _to_response(connection)


@router.post("/connections/{connection_id}/disable", response_model=ConnectionResponse)
def disable_connection(
    connection_id: str,
    store: SqlPortfolioStore = Depends(get_store),
):
    """Disable a connection; later cycles skip it."""
    connection = store.disable_connection(connection_id)
    if connection is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Connection {connection_id} not found",
        )
    return _to_response(connection)
