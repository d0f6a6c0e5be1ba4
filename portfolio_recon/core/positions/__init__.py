"""Canonical positions and the normalizer that produces them."""

from .models import Position, RawSourceRecord, TransactionRecord, TransactionType
from .normalizer import (
    NormalizationResult,
    PositionNormalizer,
    apply_transactions,
    normalize,
    resolve_instrument_key,
)

__all__ = [
    "Position",
    "RawSourceRecord",
    "TransactionRecord",
    "TransactionType",
    "NormalizationResult",
    "PositionNormalizer",
    "apply_transactions",
    "normalize",
    "resolve_instrument_key",
]
