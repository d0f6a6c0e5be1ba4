"""Plaid broker client.

Plaid provides a unified API to connect to 12,000+ financial institutions.
This client reads positions through Plaid's Investments product for
connections whose access token was obtained by the (external) link flow.

Setup:
1. Create a Plaid account at https://dashboard.plaid.com/
2. Get your client_id and secret from the dashboard
3. Set PLAID_CLIENT_ID, PLAID_SECRET, PLAID_ENV in your .env

Note: Plaid Investments product requires a paid plan.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from portfolio_recon.config import get_settings
from portfolio_recon.core.brokers.base import BrokerClient
from portfolio_recon.core.brokers.models import BrokerId
from portfolio_recon.core.positions.models import RawSourceRecord, isin_from_cusip

logger = logging.getLogger(__name__)
settings = get_settings()

# Plaid security types we aggregate; cash and derivatives are skipped
SUPPORTED_SECURITY_TYPES = ("equity", "etf", "mutual fund")


class PlaidBrokerClient(BrokerClient):
    """Plaid investments holdings as raw source records."""

    def __init__(self, token_lookup: Callable[[str], Optional[str]], api=None):
        """Initialize the client.

        Args:
            token_lookup: Returns the stored Plaid access token for a connection
            api: Optional pre-built ``PlaidApi`` (tests inject a mock)
        """
        self.token_lookup = token_lookup
        self._client = api

    def _get_client(self):
        """Lazy-load the Plaid client."""
        if self._client is not None:
            return self._client

        if not settings.plaid_client_id or not settings.plaid_secret:
            raise RuntimeError("Plaid not configured - set PLAID_CLIENT_ID and PLAID_SECRET")

        import plaid
        from plaid.api import plaid_api

        env = settings.plaid_env.lower()
        if env == "production":
            host = plaid.Environment.Production
        else:
            host = plaid.Environment.Sandbox

        configuration = plaid.Configuration(
            host=host,
            api_key={
                "clientId": settings.plaid_client_id,
                "secret": settings.plaid_secret,
            },
        )
        self._client = plaid_api.PlaidApi(plaid.ApiClient(configuration))
        logger.info(f"Plaid client initialized (env={env})")
        return self._client

    @property
    def broker_id(self) -> BrokerId:
        return BrokerId.PLAID

    def is_configured(self) -> bool:
        """Check if Plaid is properly configured."""
        return self._client is not None or bool(settings.plaid_client_id and settings.plaid_secret)

    def _holdings_response(self, connection_id: str):
        access_token = self.token_lookup(connection_id)
        if not access_token:
            raise RuntimeError(f"No Plaid access token for connection {connection_id}")

        from plaid.model.investments_holdings_get_request import InvestmentsHoldingsGetRequest

        request = InvestmentsHoldingsGetRequest(access_token=access_token)
        return self._get_client().investments_holdings_get(request)

    def fetch_positions(self, connection_id: str) -> List[RawSourceRecord]:
        """Fetch holdings for every account under the connection's Plaid item."""
        response = self._holdings_response(connection_id)

        securities_map = {s["security_id"]: s for s in response["securities"]}
        accounts_map = {a["account_id"]: a for a in response["accounts"]}

        records = []
        for holding in response["holdings"]:
            security = securities_map.get(holding["security_id"], {})
            symbol = security.get("ticker_symbol")
            if not symbol:
                continue  # Skip holdings without ticker

            security_type = str(security.get("type") or "equity").lower()
            if security_type not in SUPPORTED_SECURITY_TYPES:
                continue

            account = accounts_map.get(holding["account_id"], {})
            records.append(
                RawSourceRecord(
                    symbol=symbol,
                    quantity=holding["quantity"],
                    # Plaid reports the total cost basis of the holding
                    total_cost=holding.get("cost_basis"),
                    account_id=holding["account_id"],
                    account_number=account.get("mask"),
                    isin=security.get("isin") or isin_from_cusip(security.get("cusip")),
                    current_price=holding.get("institution_price") or security.get("close_price"),
                    price_currency=holding.get("iso_currency_code") or security.get("iso_currency_code"),
                    currency=holding.get("iso_currency_code"),
                    name=security.get("name"),
                    asset_class=security_type,
                )
            )

        logger.info(f"Plaid returned {len(records)} holding(s) for {connection_id}")
        return records

    def fetch_account_number(self, connection_id: str) -> Optional[str]:
        # Plaid exposes per-account masks only; they are attached per record
        return None
