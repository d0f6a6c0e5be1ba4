"""Duplicate detection across broker connections."""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from portfolio_recon.config import get_settings
from portfolio_recon.core.duplicates.models import (
    DuplicateCandidate,
    MatchReason,
    candidate_id_for,
)
from portfolio_recon.core.positions.models import Position

logger = logging.getLogger(__name__)
settings = get_settings()

MASK_LENGTH = 4


def normalize_account_number(value: Optional[str]) -> Optional[str]:
    """Compare account numbers ignoring case, spaces and separators."""
    if not value:
        return None
    cleaned = re.sub(r"[^A-Z0-9]", "", value.upper())
    return cleaned or None


def within_tolerance(a: Decimal, b: Decimal, tolerance_pct: Decimal) -> bool:
    """Relative-tolerance comparison against the larger magnitude."""
    if a == b:
        return True
    scale = max(abs(a), abs(b))
    return abs(a - b) <= scale * tolerance_pct / Decimal(100)


def _valuation(position: Position) -> Tuple[Decimal, str]:
    """Market value and its currency; falls back to cost valuation."""
    if position.current_price is not None:
        return position.quantity * position.current_price, position.instrument_currency
    return position.cost_value, position.currency


def _is_well_formed(position) -> bool:
    try:
        return (
            isinstance(position.instrument_key, str)
            and bool(position.instrument_key)
            and isinstance(position.source_account_id, str)
            and bool(position.source_account_id)
            and isinstance(position.quantity, Decimal)
            and position.quantity.is_finite()
            and position.quantity >= 0
            and isinstance(position.average_cost, Decimal)
        )
    except AttributeError:
        return False


class _DisjointSet:
    """Union-find over arena indices."""

    def __init__(self, size: int):
        self.parent = list(range(size))
        self.rank = [0] * size

    def find(self, i: int) -> int:
        while self.parent[i] != i:
            self.parent[i] = self.parent[self.parent[i]]
            i = self.parent[i]
        return i

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return
        if self.rank[ra] < self.rank[rb]:
            ra, rb = rb, ra
        self.parent[rb] = ra
        if self.rank[ra] == self.rank[rb]:
            self.rank[ra] += 1


@dataclass
class DetectionResult:
    """Candidates found in one pass plus the number of skipped positions."""

    candidates: List[DuplicateCandidate] = field(default_factory=list)
    skipped: int = 0


class DuplicateDetector:
    """Flags positions reported more than once through overlapping connections.

    Positions are compared pairwise within an instrument, across different
    source accounts of different connections. Pairs scoring at least the
    value-match confidence are merged into groups with union-find, and each
    group becomes one candidate scored by its weakest pair. Instrument-only
    pairs stay separate two-position candidates without a suggested
    canonical position.
    """

    def __init__(
        self,
        quantity_tolerance_pct: Optional[float] = None,
        value_tolerance_pct: Optional[float] = None,
        account_match_confidence: Optional[float] = None,
        value_match_confidence: Optional[float] = None,
        instrument_match_confidence: Optional[float] = None,
    ):
        def pick(value, default):
            return default if value is None else value

        self.quantity_tolerance = Decimal(
            str(pick(quantity_tolerance_pct, settings.quantity_tolerance_pct))
        )
        self.value_tolerance = Decimal(str(pick(value_tolerance_pct, settings.value_tolerance_pct)))
        self.account_match_confidence = pick(
            account_match_confidence, settings.account_match_confidence
        )
        self.value_match_confidence = pick(value_match_confidence, settings.value_match_confidence)
        self.instrument_match_confidence = pick(
            instrument_match_confidence, settings.instrument_match_confidence
        )

    def score_pair(self, a: Position, b: Position) -> Optional[Tuple[float, MatchReason]]:
        """Score a pair of same-instrument positions.

        Returns:
            (confidence, reason), or None when the pair cannot be a duplicate
        """
        if a.source_account_id == b.source_account_id:
            return None
        if a.connection_id is not None and a.connection_id == b.connection_id:
            return None

        number_a = normalize_account_number(a.account_number)
        number_b = normalize_account_number(b.account_number)
        if number_a and number_b:
            if number_a == number_b:
                return self.account_match_confidence, MatchReason.ACCOUNT_NUMBER_MATCH
            shorter, longer = sorted((number_a, number_b), key=len)
            # Aggregators only expose a mask (last digits); a matching mask
            # neither corroborates nor contradicts, so fall through
            if not (len(shorter) <= MASK_LENGTH and longer.endswith(shorter)):
                return None

        value_a, currency_a = _valuation(a)
        value_b, currency_b = _valuation(b)
        if (
            currency_a == currency_b
            and within_tolerance(a.quantity, b.quantity, self.quantity_tolerance)
            and within_tolerance(value_a, value_b, self.value_tolerance)
        ):
            return self.value_match_confidence, MatchReason.VALUE_WITHIN_TOLERANCE

        return self.instrument_match_confidence, MatchReason.INSTRUMENT_ONLY

    def pick_canonical(self, positions: Iterable[Position]) -> Position:
        """Earliest-established connection, then larger quantity, then account id."""
        return min(
            positions,
            key=lambda p: (
                p.connection_last_sync is None,
                p.connection_last_sync or datetime.max,
                -p.quantity,
                p.source_account_id,
            ),
        )

    def run(self, positions: Iterable[Position]) -> DetectionResult:
        """Detect duplicate groups, counting malformed positions instead of failing."""
        result = DetectionResult()
        by_instrument: Dict[str, List[Position]] = defaultdict(list)

        for position in positions:
            if not _is_well_formed(position):
                result.skipped += 1
                continue
            if position.is_closed:
                continue
            by_instrument[position.instrument_key].append(position)

        for instrument_key, group in by_instrument.items():
            if len(group) < 2:
                continue
            result.candidates.extend(self._detect_in_group(instrument_key, group))

        if result.skipped:
            logger.warning(f"Skipped {result.skipped} malformed position(s) during detection")

        result.candidates.sort(key=lambda c: (-c.confidence, c.instrument_key, c.candidate_id))
        return result

    def detect(self, positions: Iterable[Position]) -> List[DuplicateCandidate]:
        return self.run(positions).candidates

    def _detect_in_group(
        self, instrument_key: str, group: List[Position]
    ) -> List[DuplicateCandidate]:
        # Arena order fixed by position id so output never depends on input order
        arena = sorted(group, key=lambda p: p.position_id)
        sets = _DisjointSet(len(arena))
        strong: List[Tuple[int, int, float, MatchReason]] = []
        weak: List[Tuple[int, int, float, MatchReason]] = []

        for i in range(len(arena)):
            for j in range(i + 1, len(arena)):
                scored = self.score_pair(arena[i], arena[j])
                if scored is None:
                    continue
                confidence, reason = scored
                if confidence >= self.value_match_confidence:
                    sets.union(i, j)
                    strong.append((i, j, confidence, reason))
                else:
                    weak.append((i, j, confidence, reason))

        weakest: Dict[int, Tuple[float, MatchReason]] = {}
        for i, _, confidence, reason in strong:
            root = sets.find(i)
            if root not in weakest or confidence < weakest[root][0]:
                weakest[root] = (confidence, reason)

        members: Dict[int, List[Position]] = defaultdict(list)
        for index, position in enumerate(arena):
            members[sets.find(index)].append(position)

        candidates = []
        for root, (confidence, reason) in weakest.items():
            positions = tuple(members[root])
            candidates.append(
                self._candidate(
                    instrument_key, positions, confidence, reason,
                    canonical=self.pick_canonical(positions).position_id,
                )
            )

        # Instrument-only pairs are never merged into a group; each is reviewed on its own
        for i, j, confidence, reason in weak:
            if sets.find(i) == sets.find(j):
                continue
            candidates.append(
                self._candidate(instrument_key, (arena[i], arena[j]), confidence, reason)
            )
        return candidates

    @staticmethod
    def _candidate(
        instrument_key: str,
        positions: Tuple[Position, ...],
        confidence: float,
        reason: MatchReason,
        canonical: Optional[str] = None,
    ) -> DuplicateCandidate:
        return DuplicateCandidate(
            candidate_id=candidate_id_for(instrument_key, (p.position_id for p in positions)),
            instrument_key=instrument_key,
            positions=positions,
            confidence=confidence,
            match_reason=reason,
            canonical_position_id=canonical,
        )


def detect(positions: Iterable[Position]) -> List[DuplicateCandidate]:
    """Detect duplicates with the configured default policy."""
    return DuplicateDetector().detect(positions)
