"""Portfolio storage and record imports."""

from .repository import SqlPortfolioStore, record_from_dict, record_to_dict
from .importers import (
    ImportResult,
    decode_csv_bytes,
    detect_format,
    import_csv,
    parse_csv,
    parse_number,
    parse_schwab_csv,
    parse_transactions_csv,
)

__all__ = [
    "SqlPortfolioStore",
    "record_from_dict",
    "record_to_dict",
    "ImportResult",
    "decode_csv_bytes",
    "detect_format",
    "import_csv",
    "parse_csv",
    "parse_number",
    "parse_schwab_csv",
    "parse_transactions_csv",
]
