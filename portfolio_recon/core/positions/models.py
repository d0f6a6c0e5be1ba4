"""Source records and the canonical position model."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional


# CINS codes (issuers outside North America) start with a letter and are skipped
CUSIP_PATTERN = re.compile(r"^[0-9][0-9A-Z]{7}[0-9]$")


def isin_from_cusip(cusip: Optional[str], country: str = "US") -> Optional[str]:
    """Build an ISIN from a CUSIP: country code + CUSIP + Luhn check digit.

    >>> isin_from_cusip("037833100")
    'US0378331005'
    """
    if not cusip:
        return None
    cusip = cusip.strip().upper()
    if not CUSIP_PATTERN.match(cusip):
        return None

    body = country.upper() + cusip
    digits = "".join(str(int(ch, 36)) for ch in body)
    total = 0
    for i, ch in enumerate(reversed(digits)):
        n = int(ch)
        if i % 2 == 0:
            n *= 2
            if n > 9:
                n -= 9
        total += n
    return f"{body}{(10 - total % 10) % 10}"


class TransactionType(str, Enum):
    """Transaction types found in broker exports.

    Only BUY and SELL move the position; the rest are carried so that
    imported histories do not have to be pre-filtered.
    """

    BUY = "BUY"
    SELL = "SELL"
    DIVIDEND = "DIVIDEND"
    INTEREST = "INTEREST"
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    FEE = "FEE"
    TAX = "TAX"
    TRANSFER = "TRANSFER"


@dataclass(frozen=True)
class TransactionRecord:
    """A single trade from a manual or CSV transaction history."""

    type: TransactionType
    quantity: Decimal
    price: Decimal
    fees: Decimal = Decimal("0")
    trade_date: Optional[date] = None


@dataclass
class RawSourceRecord:
    """A holding as reported by a source, before normalization.

    Carries either a pre-computed position (``quantity`` plus
    ``average_cost`` or ``total_cost``) or a ``transactions`` history.
    """

    symbol: str
    quantity: Optional[Decimal] = None
    average_cost: Optional[Decimal] = None
    total_cost: Optional[Decimal] = None
    transactions: List[TransactionRecord] = field(default_factory=list)
    account_id: Optional[str] = None  # Sub-account within the connection
    account_number: Optional[str] = None
    isin: Optional[str] = None
    exchange: Optional[str] = None
    currency: Optional[str] = None  # Account currency override
    current_price: Optional[Decimal] = None
    price_currency: Optional[str] = None
    previous_close: Optional[Decimal] = None
    name: Optional[str] = None
    asset_class: str = "equity"
    last_updated: Optional[datetime] = None


@dataclass(frozen=True)
class Position:
    """A normalized holding in one source account."""

    instrument_key: str
    source_account_id: str
    quantity: Decimal
    average_cost: Decimal
    currency: str
    last_updated: datetime
    current_price: Optional[Decimal] = None
    price_currency: Optional[str] = None
    previous_close: Optional[Decimal] = None
    # Source metadata owned by the broker client
    connection_id: Optional[str] = None
    broker_id: Optional[str] = None
    account_number: Optional[str] = None
    connection_last_sync: Optional[datetime] = None
    symbol: Optional[str] = None
    name: Optional[str] = None
    asset_class: str = "equity"

    @property
    def position_id(self) -> str:
        return f"{self.source_account_id}/{self.instrument_key}"

    @property
    def is_closed(self) -> bool:
        return self.quantity == 0

    @property
    def instrument_currency(self) -> str:
        return self.price_currency or self.currency

    @property
    def cost_value(self) -> Decimal:
        """Total cost in the account currency."""
        return self.quantity * self.average_cost

    def to_dict(self) -> dict:
        return {
            "position_id": self.position_id,
            "instrument_key": self.instrument_key,
            "source_account_id": self.source_account_id,
            "quantity": str(self.quantity),
            "average_cost": str(self.average_cost),
            "currency": self.currency,
            "current_price": _opt_str(self.current_price),
            "price_currency": self.price_currency,
            "previous_close": _opt_str(self.previous_close),
            "last_updated": self.last_updated.isoformat(),
            "connection_id": self.connection_id,
            "broker_id": self.broker_id,
            "account_number": self.account_number,
            "connection_last_sync": (
                self.connection_last_sync.isoformat() if self.connection_last_sync else None
            ),
            "symbol": self.symbol,
            "name": self.name,
            "asset_class": self.asset_class,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Position":
        return cls(
            instrument_key=data["instrument_key"],
            source_account_id=data["source_account_id"],
            quantity=Decimal(data["quantity"]),
            average_cost=Decimal(data["average_cost"]),
            currency=data["currency"],
            last_updated=datetime.fromisoformat(data["last_updated"]),
            current_price=_opt_decimal(data.get("current_price")),
            price_currency=data.get("price_currency"),
            previous_close=_opt_decimal(data.get("previous_close")),
            connection_id=data.get("connection_id"),
            broker_id=data.get("broker_id"),
            account_number=data.get("account_number"),
            connection_last_sync=(
                datetime.fromisoformat(data["connection_last_sync"])
                if data.get("connection_last_sync")
                else None
            ),
            symbol=data.get("symbol"),
            name=data.get("name"),
            asset_class=data.get("asset_class", "equity"),
        )


def _opt_str(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _opt_decimal(value: Optional[str]) -> Optional[Decimal]:
    return None if value is None else Decimal(value)
