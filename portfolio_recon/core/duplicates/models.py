"""Duplicate candidate and resolution models."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional, Tuple

from portfolio_recon.core.positions.models import Position


class MatchReason(str, Enum):
    """Why a group of positions is suspected to be one holding."""

    ACCOUNT_NUMBER_MATCH = "account_number_match"
    VALUE_WITHIN_TOLERANCE = "value_within_tolerance"
    INSTRUMENT_ONLY = "instrument_only"


class ResolutionStatus(str, Enum):
    """Review state of a duplicate candidate."""

    PENDING = "pending"
    CONFIRMED_DUPLICATE = "confirmed_duplicate"
    CONFIRMED_DISTINCT = "confirmed_distinct"


def candidate_id_for(instrument_key: str, position_ids: Iterable[str]) -> str:
    """Stable id so a decision carries over to the next cycle's equivalent candidate."""
    raw = instrument_key + "|" + ",".join(sorted(position_ids))
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class DuplicateCandidate:
    """A group of positions suspected to represent the same holding."""

    candidate_id: str
    instrument_key: str
    positions: Tuple[Position, ...]
    confidence: float
    match_reason: MatchReason
    resolution_status: ResolutionStatus = ResolutionStatus.PENDING
    canonical_position_id: Optional[str] = None

    @property
    def position_ids(self) -> Tuple[str, ...]:
        return tuple(p.position_id for p in self.positions)

    @property
    def is_confirmed_duplicate(self) -> bool:
        return self.resolution_status == ResolutionStatus.CONFIRMED_DUPLICATE

    def excluded_position_ids(self) -> Tuple[str, ...]:
        """Positions that contribute nothing to aggregation."""
        if not self.is_confirmed_duplicate or self.canonical_position_id is None:
            return ()
        return tuple(pid for pid in self.position_ids if pid != self.canonical_position_id)

    def resolved(self, decision: "ResolutionDecision") -> "DuplicateCandidate":
        """Apply a user decision, returning the updated candidate."""
        canonical = decision.canonical_position_id or self.canonical_position_id
        if canonical not in self.position_ids:
            canonical = self.canonical_position_id
        return replace(self, resolution_status=decision.decision, canonical_position_id=canonical)

    def to_dict(self) -> dict:
        return {
            "candidate_id": self.candidate_id,
            "instrument_key": self.instrument_key,
            "position_ids": list(self.position_ids),
            "confidence": self.confidence,
            "match_reason": self.match_reason.value,
            "resolution_status": self.resolution_status.value,
            "canonical_position_id": self.canonical_position_id,
        }


@dataclass(frozen=True)
class ResolutionDecision:
    """A user's verdict on a duplicate candidate."""

    candidate_id: str
    decision: ResolutionStatus
    canonical_position_id: Optional[str] = None
    recorded_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        if self.decision == ResolutionStatus.PENDING:
            raise ValueError("A resolution decision cannot be 'pending'")
