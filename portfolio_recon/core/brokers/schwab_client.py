"""Charles Schwab Trader API client (positions only).

OAuth is handled outside the core; this client only needs the access token
stored for a connection.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

import requests

from portfolio_recon.config import get_settings
from portfolio_recon.core.brokers.base import BrokerClient
from portfolio_recon.core.brokers.models import BrokerId
from portfolio_recon.core.positions.models import RawSourceRecord, isin_from_cusip

logger = logging.getLogger(__name__)
settings = get_settings()

# Schwab asset types we aggregate
SUPPORTED_ASSET_TYPES = ("EQUITY", "COLLECTIVE_INVESTMENT", "MUTUAL_FUND")


class SchwabBrokerClient(BrokerClient):
    """Reads positions from the Schwab Trader API."""

    def __init__(
        self,
        token_lookup: Callable[[str], Optional[str]],
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.token_lookup = token_lookup
        self.base_url = (base_url or settings.schwab_api_base).rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def broker_id(self) -> BrokerId:
        return BrokerId.SCHWAB

    def _get(self, connection_id: str, path: str, params: Optional[dict] = None):
        token = self.token_lookup(connection_id)
        if not token:
            raise RuntimeError(f"No Schwab access token for connection {connection_id}")

        response = self.session.get(
            f"{self.base_url}{path}",
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            params=params,
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    def _accounts(self, connection_id: str) -> list:
        return self._get(connection_id, "/accounts", params={"fields": "positions"})

    def fetch_positions(self, connection_id: str) -> List[RawSourceRecord]:
        records = []
        for entry in self._accounts(connection_id):
            account = entry.get("securitiesAccount", {})
            account_number = account.get("accountNumber")

            for pos in account.get("positions", []):
                instrument = pos.get("instrument", {})
                symbol = instrument.get("symbol")
                quantity = pos.get("longQuantity") or 0
                if not symbol or quantity <= 0:
                    continue
                if instrument.get("assetType") not in SUPPORTED_ASSET_TYPES:
                    continue

                market_value = pos.get("marketValue")
                current_price = market_value / quantity if market_value is not None else None

                records.append(
                    RawSourceRecord(
                        symbol=symbol,
                        quantity=quantity,
                        average_cost=pos.get("averagePrice"),
                        account_id=account_number,
                        account_number=account_number,
                        isin=isin_from_cusip(instrument.get("cusip")),
                        current_price=current_price,
                        name=instrument.get("description"),
                        asset_class=instrument.get("assetType", "EQUITY").lower(),
                    )
                )

        logger.info(f"Schwab returned {len(records)} position(s) for {connection_id}")
        return records

    def fetch_account_number(self, connection_id: str) -> Optional[str]:
        numbers = self._get(connection_id, "/accounts/accountNumbers")
        if len(numbers) == 1:
            return numbers[0].get("accountNumber")
        return None
