"""Client for sources whose records live in our own database (manual entry, CSV import)."""

from __future__ import annotations

import logging
from typing import List, Optional

from portfolio_recon.core.brokers.base import BrokerClient
from portfolio_recon.core.brokers.models import BrokerId
from portfolio_recon.core.positions.models import RawSourceRecord

logger = logging.getLogger(__name__)


class StoredRecordsClient(BrokerClient):
    """Serves records previously saved through the store.

    Manual holdings and CSV imports are written with
    ``store.replace_source_records`` and read back here each cycle, so they
    flow through the same normalize/detect/aggregate path as live brokers.
    """

    def __init__(self, store, broker_id: BrokerId = BrokerId.MANUAL):
        self.store = store
        self._broker_id = BrokerId(broker_id)

    @property
    def broker_id(self) -> BrokerId:
        return self._broker_id

    def fetch_positions(self, connection_id: str) -> List[RawSourceRecord]:
        records = self.store.load_source_records(connection_id)
        logger.debug(f"Loaded {len(records)} stored record(s) for {connection_id}")
        return records

    def fetch_account_number(self, connection_id: str) -> Optional[str]:
        numbers = {
            r.account_number
            for r in self.store.load_source_records(connection_id)
            if r.account_number
        }
        # Only meaningful when every record agrees on one account
        return numbers.pop() if len(numbers) == 1 else None
