"""Position normalizer: source records -> canonical positions."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional, Tuple

from portfolio_recon.core.brokers.models import BrokerConnection
from portfolio_recon.core.errors import (
    InvalidSourceRecordError,
    ReconciliationError,
    UnresolvedInstrumentError,
)
from portfolio_recon.core.positions.models import (
    Position,
    RawSourceRecord,
    TransactionRecord,
    TransactionType,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

ISIN_PATTERN = re.compile(r"^[A-Z]{2}[A-Z0-9]{9}[0-9]$")

# Market suffixes used by quote vendors, mapped to MIC codes
SYMBOL_SUFFIXES = {
    "OL": "XOSL",
    "ST": "XSTO",
    "CO": "XCSE",
    "HE": "XHEL",
    "L": "XLON",
    "TO": "XTSE",
    "DE": "XETR",
    "PA": "XPAR",
    "AS": "XAMS",
}

# Free-form exchange names mapped to MIC codes
EXCHANGE_ALIASES = {
    "NASDAQ": "XNAS",
    "NMS": "XNAS",
    "NYSE": "XNYS",
    "NYQ": "XNYS",
    "ARCA": "ARCX",
    "NYSEARCA": "ARCX",
    "OSE": "XOSL",
    "OSLO": "XOSL",
    "OSLO BORS": "XOSL",
    "STO": "XSTO",
    "LSE": "XLON",
    "TSX": "XTSE",
    "XETRA": "XETR",
}


def to_decimal(value, field_name: str = "value") -> Optional[Decimal]:
    """Coerce client-provided numbers (often floats) to Decimal."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise InvalidSourceRecordError(f"Invalid {field_name}: {value!r}") from e


def normalize_exchange(exchange: str) -> str:
    code = exchange.strip().upper()
    return EXCHANGE_ALIASES.get(code, code)


def split_symbol(symbol: str) -> Tuple[str, Optional[str]]:
    """Split a vendor symbol like 'EQNR.OL' into ('EQNR', 'XOSL').

    Only known market suffixes are split off; share classes such as
    'BRK.B' are left intact.
    """
    cleaned = symbol.strip().upper()
    if "." in cleaned:
        base, suffix = cleaned.rsplit(".", 1)
        if base and suffix in SYMBOL_SUFFIXES:
            return base, SYMBOL_SUFFIXES[suffix]
    return cleaned, None


def resolve_instrument_key(
    record: RawSourceRecord,
    default_exchange: Optional[str] = None,
) -> str:
    """Resolve the instrument key for a record.

    Prefers the ISIN; otherwise ``SYMBOL@MIC``.

    Raises:
        UnresolvedInstrumentError: If no exchange can be determined
    """
    if record.isin:
        isin = record.isin.strip().upper()
        if ISIN_PATTERN.match(isin):
            return isin
        logger.debug(f"Ignoring malformed ISIN {record.isin!r} for {record.symbol}")

    symbol = (record.symbol or "").strip()
    if not symbol:
        raise UnresolvedInstrumentError("Record has no symbol", subject=None)

    base, suffix_exchange = split_symbol(symbol)
    exchange = record.exchange or suffix_exchange or default_exchange
    if not exchange or not exchange.strip():
        raise UnresolvedInstrumentError(
            f"Cannot resolve exchange for {symbol.upper()}", subject=symbol.upper()
        )
    return f"{base}@{normalize_exchange(exchange)}"


def apply_transactions(
    transactions: Iterable[TransactionRecord],
    symbol: str = "",
) -> Tuple[Decimal, Decimal]:
    """Replay a transaction history using weighted-average cost.

    BUY: new_avg = (qty*avg + buy_qty*price + fees) / (qty + buy_qty)
    SELL: quantity decreases, average cost unchanged.

    Returns:
        Tuple of (quantity, average_cost)

    Raises:
        InvalidSourceRecordError: On negative amounts or selling more than held
    """
    quantity = ZERO
    average_cost = ZERO

    # Stable sort: undated trades keep their position relative to each other
    ordered = sorted(
        enumerate(transactions),
        key=lambda item: (item[1].trade_date or date.min, item[0]),
    )
    for _, tx in ordered:
        try:
            tx_type = TransactionType(tx.type)
        except ValueError as e:
            raise InvalidSourceRecordError(
                f"{symbol}: unknown transaction type {tx.type!r}", subject=symbol
            ) from e
        if tx_type not in (TransactionType.BUY, TransactionType.SELL):
            continue

        tx_qty = to_decimal(tx.quantity, "quantity")
        if tx_qty is None or tx_qty < 0:
            raise InvalidSourceRecordError(
                f"{symbol}: transaction quantity must be non-negative, got {tx.quantity}",
                subject=symbol,
            )

        if tx_type == TransactionType.BUY:
            price = to_decimal(tx.price, "price") or ZERO
            fees = to_decimal(tx.fees, "fees") or ZERO
            new_quantity = quantity + tx_qty
            if new_quantity > 0:
                average_cost = (quantity * average_cost + tx_qty * price + fees) / new_quantity
            quantity = new_quantity
        else:
            if tx_qty > quantity:
                raise InvalidSourceRecordError(
                    f"{symbol}: sell of {tx_qty} exceeds held quantity {quantity}",
                    subject=symbol,
                )
            quantity -= tx_qty

    return quantity, average_cost


@dataclass
class NormalizationResult:
    """Positions normalized from a batch, plus the records that failed."""

    positions: List[Position] = field(default_factory=list)
    errors: List[ReconciliationError] = field(default_factory=list)


class PositionNormalizer:
    """Converts raw source records into canonical positions.

    Pure transformation: every record that can be normalized is returned,
    failures are collected alongside.
    """

    def normalize(
        self,
        records: Iterable[RawSourceRecord],
        connection: BrokerConnection,
        account_number: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> NormalizationResult:
        """Normalize a batch of records reported by one connection.

        Args:
            records: Records from the connection's broker client
            connection: The reporting connection
            account_number: Connection-level external account number, used
                when a record does not carry its own
            now: Timestamp for records without ``last_updated``

        Returns:
            NormalizationResult with positions and collected errors
        """
        now = now or datetime.utcnow()
        result = NormalizationResult()
        merged: Dict[str, Position] = {}

        for record in records:
            try:
                position = self._normalize_record(record, connection, account_number, now)
            except ReconciliationError as e:
                logger.warning(f"[{connection.id}] Skipping record: {e}")
                result.errors.append(e)
                continue

            existing = merged.get(position.position_id)
            merged[position.position_id] = (
                position if existing is None else _merge_positions(existing, position)
            )

        result.positions = list(merged.values())
        return result

    def _normalize_record(
        self,
        record: RawSourceRecord,
        connection: BrokerConnection,
        account_number: Optional[str],
        now: datetime,
    ) -> Position:
        instrument_key = resolve_instrument_key(record, connection.default_exchange)
        symbol = (record.symbol or "").strip().upper()

        if record.transactions:
            quantity, average_cost = apply_transactions(record.transactions, symbol)
        else:
            quantity = to_decimal(record.quantity, "quantity")
            if quantity is None:
                raise InvalidSourceRecordError(
                    f"{symbol}: record has neither quantity nor transactions", subject=symbol
                )
            if quantity < 0:
                raise InvalidSourceRecordError(
                    f"{symbol}: short positions are not supported (quantity {quantity})",
                    subject=symbol,
                )
            average_cost = self._average_cost(record, quantity, symbol)

        if record.account_id:
            source_account_id = f"{connection.id}:{record.account_id}"
        else:
            source_account_id = connection.id

        return Position(
            instrument_key=instrument_key,
            source_account_id=source_account_id,
            quantity=quantity,
            average_cost=average_cost,
            currency=(record.currency or connection.currency).upper(),
            last_updated=record.last_updated or now,
            current_price=to_decimal(record.current_price, "current_price"),
            price_currency=record.price_currency.upper() if record.price_currency else None,
            previous_close=to_decimal(record.previous_close, "previous_close"),
            connection_id=connection.id,
            broker_id=connection.broker_id.value,
            account_number=record.account_number or account_number,
            connection_last_sync=connection.last_sync_time,
            symbol=symbol,
            name=record.name,
            asset_class=record.asset_class,
        )

    @staticmethod
    def _average_cost(record: RawSourceRecord, quantity: Decimal, symbol: str) -> Decimal:
        average_cost = to_decimal(record.average_cost, "average_cost")
        if average_cost is not None:
            return average_cost

        total_cost = to_decimal(record.total_cost, "total_cost")
        if total_cost is not None:
            return total_cost / quantity if quantity > 0 else ZERO

        raise InvalidSourceRecordError(f"{symbol}: no cost basis reported", subject=symbol)


def _merge_positions(first: Position, second: Position) -> Position:
    """Merge two lots of one instrument reported for the same account."""
    quantity = first.quantity + second.quantity
    if quantity > 0:
        average_cost = (first.cost_value + second.cost_value) / quantity
    else:
        average_cost = first.average_cost

    latest = second if second.last_updated >= first.last_updated else first
    return Position(
        instrument_key=first.instrument_key,
        source_account_id=first.source_account_id,
        quantity=quantity,
        average_cost=average_cost,
        currency=first.currency,
        last_updated=latest.last_updated,
        current_price=latest.current_price if latest.current_price is not None else first.current_price,
        price_currency=first.price_currency or second.price_currency,
        previous_close=latest.previous_close if latest.previous_close is not None else first.previous_close,
        connection_id=first.connection_id,
        broker_id=first.broker_id,
        account_number=first.account_number or second.account_number,
        connection_last_sync=first.connection_last_sync,
        symbol=first.symbol,
        name=first.name or second.name,
        asset_class=first.asset_class,
    )


def normalize(
    records: Iterable[RawSourceRecord],
    connection: BrokerConnection,
    account_number: Optional[str] = None,
) -> NormalizationResult:
    """Normalize records with a default normalizer."""
    return PositionNormalizer().normalize(records, connection, account_number=account_number)
