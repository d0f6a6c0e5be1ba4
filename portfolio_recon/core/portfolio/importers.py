"""Source record importers for broker CSV exports."""

from __future__ import annotations

import csv
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Dict, List, Optional, Tuple

from portfolio_recon.core.positions.models import (
    RawSourceRecord,
    TransactionRecord,
    TransactionType,
)

logger = logging.getLogger(__name__)

SCHWAB_FORMAT = "schwab"
TRANSACTIONS_FORMAT = "transactions"

# Column aliases for transaction exports (generic English plus Nordnet's Norwegian headers)
TRANSACTION_COLUMNS = {
    "date": ("Trade Date", "Date", "Handelsdag", "Bokføringsdag"),
    "type": ("Type", "Transaction Type", "Action", "Transaksjonstype"),
    "symbol": ("Symbol", "Ticker"),
    "name": ("Name", "Description", "Security", "Verdipapir"),
    "isin": ("ISIN",),
    "exchange": ("Exchange", "Market", "MIC"),
    "quantity": ("Quantity", "Qty", "Shares", "Antall"),
    "price": ("Price", "Kurs"),
    "fees": ("Fees", "Commission", "Totale Avgifter", "Kurtasje"),
    "currency": ("Currency", "Valuta"),
    "account": ("Account", "Portfolio", "Portefølje"),
}

TRANSACTION_TYPE_ALIASES = {
    "BUY": TransactionType.BUY,
    "BOUGHT": TransactionType.BUY,
    "KJØPT": TransactionType.BUY,
    "SELL": TransactionType.SELL,
    "SOLD": TransactionType.SELL,
    "SALG": TransactionType.SELL,
    "DIVIDEND": TransactionType.DIVIDEND,
    "AKSJEUTBYTTE": TransactionType.DIVIDEND,
    "INTEREST": TransactionType.INTEREST,
    "RENTER": TransactionType.INTEREST,
    "DEPOSIT": TransactionType.DEPOSIT,
    "INNSKUDD": TransactionType.DEPOSIT,
    "WITHDRAWAL": TransactionType.WITHDRAWAL,
    "UTTAK": TransactionType.WITHDRAWAL,
    "UTBETALING": TransactionType.WITHDRAWAL,
    "FEE": TransactionType.FEE,
    "AVGIFT": TransactionType.FEE,
    "TAX": TransactionType.TAX,
    "SKATT": TransactionType.TAX,
    "KILDESKATT": TransactionType.TAX,
    "TRANSFER": TransactionType.TRANSFER,
}

DATE_FORMATS = ("%Y-%m-%d", "%d.%m.%Y", "%m/%d/%Y")

_SCHWAB_ACCOUNT = re.compile(r"\.\.\.\s?(\d{2,4})\b")


@dataclass
class ImportResult:
    """Result of an import operation."""

    format: str
    stored: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)
    records: List[RawSourceRecord] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.stored > 0 or not self.errors


def decode_csv_bytes(raw: bytes) -> str:
    """Decode an uploaded export; European brokers often use Latin-1."""
    for encoding in ("utf-8-sig", "cp1252", "latin-1"):
        try:
            return raw.decode(encoding)
        except UnicodeDecodeError:
            continue
    return raw.decode("latin-1", errors="replace")


def parse_number(value: Optional[str]) -> Optional[Decimal]:
    """Parse '$1,234.56', '1 234,56' or '(12.50)' to Decimal.

    Returns None if the value is empty, 'N/A' or unparseable.
    """
    if value is None:
        return None
    text = value.strip()
    if text in ("", "N/A", "--", "-"):
        return None

    negative = text.startswith("-") or (text.startswith("(") and text.endswith(")"))
    cleaned = re.sub(r"[^\d,.]", "", text)
    if "," in cleaned and "." in cleaned:
        # Whichever separator comes last is the decimal point
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        if re.fullmatch(r"\d{1,3}(,\d{3})+", cleaned):
            cleaned = cleaned.replace(",", "")
        else:
            cleaned = cleaned.replace(",", ".")

    try:
        number = Decimal(cleaned)
    except InvalidOperation:
        return None
    return -number if negative else number


def parse_date(value: Optional[str]) -> Optional[date]:
    if not value or not value.strip():
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value.strip(), fmt).date()
        except ValueError:
            continue
    return None


def detect_format(csv_content: str) -> str:
    """Guess the export format from its header lines."""
    head = csv_content.lstrip("﻿")[:2000]
    if head.startswith('"Positions for account') or head.startswith("Positions for account"):
        return SCHWAB_FORMAT
    return TRANSACTIONS_FORMAT


def _find_column(fieldnames: List[str], aliases: Tuple[str, ...]) -> Optional[str]:
    normalized = {name.strip().lower(): name for name in fieldnames if name}
    for alias in aliases:
        if alias.lower() in normalized:
            return normalized[alias.lower()]
    return None


def parse_schwab_csv(csv_content: str) -> Tuple[List[RawSourceRecord], List[str]]:
    """Parse a Schwab positions CSV export.

    Schwab CSV format:
    - Line 1: Account header (e.g., "Positions for account Individual ...123 as of ...")
    - Line 2: Empty
    - Line 3: Column headers
    - Lines 4+: Data rows

    Args:
        csv_content: Raw CSV content as string

    Returns:
        Tuple of (records list, error messages list)
    """
    records: List[RawSourceRecord] = []
    errors: List[str] = []

    lines = csv_content.strip().lstrip("﻿").splitlines()
    if len(lines) < 4:
        errors.append("CSV file too short - expected at least 4 lines")
        return records, errors

    # The mask in the account header is all Schwab exposes of the number
    match = _SCHWAB_ACCOUNT.search(lines[0])
    account_number = match.group(1) if match else None

    header_idx = None
    for i, line in enumerate(lines):
        if '"Symbol"' in line or line.startswith("Symbol"):
            header_idx = i
            break
    if header_idx is None:
        errors.append("Could not find header row with 'Symbol' column")
        return records, errors

    reader = csv.DictReader(StringIO("\n".join(lines[header_idx:])))
    fieldnames = reader.fieldnames or []

    qty_col = cost_col = type_col = price_col = None
    for col in fieldnames:
        if "Qty" in col or "Quantity" in col:
            qty_col = col
        elif col == "Cost Basis":
            cost_col = col
        elif "Security Type" in col:
            type_col = col
        elif col == "Price":
            price_col = col

    if not qty_col:
        errors.append("Could not find Quantity column")
        return records, errors

    # Lots of the same symbol are summed into one record
    aggregated: "OrderedDict[str, RawSourceRecord]" = OrderedDict()

    for row_num, row in enumerate(reader, start=header_idx + 2):
        symbol = (row.get("Symbol") or "").strip()
        if not symbol:
            continue
        if symbol.lower() in ("cash & cash investments", "account total"):
            continue
        if symbol.upper() == "NO NUMBER":
            continue

        security_type = (row.get(type_col) or "").strip() if type_col else ""
        if security_type and security_type.lower() not in ("equity", "etfs & closed end funds"):
            if "warrant" not in security_type.lower():
                continue

        quantity = parse_number(row.get(qty_col))
        if quantity is None or quantity <= 0:
            continue

        total_cost = parse_number(row.get(cost_col)) if cost_col else None
        price = parse_number(row.get(price_col)) if price_col else None
        description = (row.get("Description") or "").strip() or None

        existing = aggregated.get(symbol)
        if existing:
            existing.quantity += quantity
            if existing.total_cost is not None and total_cost is not None:
                existing.total_cost += total_cost
            else:
                existing.total_cost = None
                errors.append(f"Row {row_num}: {symbol} lot without cost basis")
            continue

        if total_cost is None:
            errors.append(f"Row {row_num}: {symbol} has no cost basis")
        aggregated[symbol] = RawSourceRecord(
            symbol=symbol,
            quantity=quantity,
            total_cost=total_cost,
            account_number=account_number,
            current_price=price,
            name=description,
            currency="USD",
        )

    records = list(aggregated.values())
    return records, errors


def parse_transactions_csv(
    csv_content: str,
    default_currency: Optional[str] = None,
) -> Tuple[List[RawSourceRecord], List[str]]:
    """Parse a transaction history export into one record per holding.

    Accepts comma, semicolon or tab delimited files with either English or
    Nordnet column names. Rows are grouped by account and instrument; types
    that do not move a position are kept on the record but ignored when the
    position is replayed.

    Returns:
        Tuple of (records list, error messages list)
    """
    records: List[RawSourceRecord] = []
    errors: List[str] = []

    content = csv_content.lstrip("﻿").strip()
    if not content:
        errors.append("CSV file is empty")
        return records, errors

    try:
        dialect = csv.Sniffer().sniff(content.splitlines()[0], delimiters=",;\t")
        delimiter = dialect.delimiter
    except csv.Error:
        delimiter = ","

    reader = csv.DictReader(StringIO(content), delimiter=delimiter)
    fieldnames = reader.fieldnames or []
    columns = {key: _find_column(fieldnames, aliases) for key, aliases in TRANSACTION_COLUMNS.items()}

    for required in ("type", "quantity", "price"):
        if columns[required] is None:
            errors.append(f"Could not find {required.title()} column")
    if columns["symbol"] is None and columns["isin"] is None:
        errors.append("Could not find Symbol or ISIN column")
    if errors:
        return records, errors

    def cell(row: Dict[str, str], key: str) -> str:
        column = columns[key]
        return (row.get(column) or "").strip() if column else ""

    grouped: "OrderedDict[Tuple[str, str], RawSourceRecord]" = OrderedDict()

    for row_num, row in enumerate(reader, start=2):
        raw_type = cell(row, "type")
        tx_type = TRANSACTION_TYPE_ALIASES.get(raw_type.upper())
        if tx_type is None:
            errors.append(f"Row {row_num}: unknown transaction type '{raw_type}'")
            continue
        if tx_type not in (TransactionType.BUY, TransactionType.SELL):
            continue

        symbol = cell(row, "symbol").upper()
        isin = cell(row, "isin").upper() or None
        if not symbol and not isin:
            errors.append(f"Row {row_num}: no symbol or ISIN")
            continue

        quantity = parse_number(cell(row, "quantity"))
        price = parse_number(cell(row, "price"))
        if quantity is None or price is None:
            errors.append(f"Row {row_num}: missing quantity or price")
            continue

        account = cell(row, "account") or None
        currency = (cell(row, "currency") or default_currency or "").upper() or None
        transaction = TransactionRecord(
            type=tx_type,
            quantity=abs(quantity),
            price=abs(price),
            fees=abs(parse_number(cell(row, "fees")) or Decimal("0")),
            trade_date=parse_date(cell(row, "date")),
        )

        group_key = (account or "", isin or symbol)
        record = grouped.get(group_key)
        if record is None:
            record = RawSourceRecord(
                symbol=symbol or isin,
                isin=isin,
                exchange=cell(row, "exchange") or None,
                account_id=account,
                currency=currency,
                name=cell(row, "name") or None,
            )
            grouped[group_key] = record
        record.transactions.append(transaction)

    records = list(grouped.values())
    return records, errors


def parse_csv(csv_content: str, fmt: Optional[str] = None) -> Tuple[str, List[RawSourceRecord], List[str]]:
    """Parse an export in the given (or detected) format."""
    fmt = fmt or detect_format(csv_content)
    if fmt == SCHWAB_FORMAT:
        records, errors = parse_schwab_csv(csv_content)
    elif fmt == TRANSACTIONS_FORMAT:
        records, errors = parse_transactions_csv(csv_content)
    else:
        raise ValueError(f"Unknown CSV format: {fmt}")
    return fmt, records, errors


def import_csv(store, connection_id: str, csv_content: str, fmt: Optional[str] = None) -> ImportResult:
    """Parse an export and replace the connection's stored records.

    Args:
        store: Store with ``replace_source_records``
        connection_id: Manual or CSV connection receiving the records
        csv_content: Raw CSV content
        fmt: 'schwab' or 'transactions'; detected when omitted

    Returns:
        ImportResult with counts and any errors
    """
    fmt, records, errors = parse_csv(csv_content, fmt)
    result = ImportResult(format=fmt, errors=errors, records=records)

    if not records:
        logger.warning(f"CSV import for {connection_id} produced no records ({len(errors)} error(s))")
        return result

    result.stored = store.replace_source_records(connection_id, records)
    result.skipped = len(errors)
    logger.info(f"Imported {result.stored} record(s) into {connection_id} from {fmt} CSV")
    return result
