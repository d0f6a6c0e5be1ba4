"""Applying and recording user decisions on duplicate candidates."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from portfolio_recon.core.duplicates.models import (
    DuplicateCandidate,
    ResolutionDecision,
    ResolutionStatus,
)
from portfolio_recon.core.errors import CandidateNotFoundError

logger = logging.getLogger(__name__)


def apply_resolutions(
    candidates: Iterable[DuplicateCandidate],
    decisions: Iterable[ResolutionDecision],
) -> List[DuplicateCandidate]:
    """Return candidates with matching decisions applied.

    The latest decision per candidate wins; candidates without a decision
    stay pending.
    """
    latest: Dict[str, ResolutionDecision] = {}
    for decision in decisions:
        current = latest.get(decision.candidate_id)
        if current is None or decision.recorded_at >= current.recorded_at:
            latest[decision.candidate_id] = decision

    resolved = []
    for candidate in candidates:
        decision = latest.get(candidate.candidate_id)
        resolved.append(candidate.resolved(decision) if decision else candidate)
    return resolved


class ResolutionService:
    """Accepts resolution decisions from the review queue.

    Decisions are validated against the most recently committed queue and
    recorded; they take effect from the next reconciliation cycle.
    """

    def __init__(self, store):
        self.store = store

    def submit_resolution(
        self,
        portfolio_id: str,
        candidate_id: str,
        decision: ResolutionStatus,
        canonical_position_id: Optional[str] = None,
    ) -> ResolutionDecision:
        """Record a decision for a candidate.

        Args:
            portfolio_id: Portfolio owning the candidate
            candidate_id: Candidate from the latest snapshot's queue
            decision: confirmed_duplicate or confirmed_distinct
            canonical_position_id: Position to keep; defaults to the
                detector's suggestion

        Returns:
            The recorded decision

        Raises:
            CandidateNotFoundError: If the candidate is not in the queue
            ValueError: If the decision or canonical position is invalid
        """
        decision = ResolutionStatus(decision)
        if decision == ResolutionStatus.PENDING:
            raise ValueError("Decision must be confirmed_duplicate or confirmed_distinct")

        candidates = {c.candidate_id: c for c in self.store.load_candidates(portfolio_id)}
        candidate = candidates.get(candidate_id)
        if candidate is None:
            raise CandidateNotFoundError(
                f"Duplicate candidate {candidate_id} not found", subject=candidate_id
            )

        if canonical_position_id is not None and canonical_position_id not in candidate.position_ids:
            raise ValueError(
                f"Position {canonical_position_id} is not part of candidate {candidate_id}"
            )

        if (
            decision == ResolutionStatus.CONFIRMED_DUPLICATE
            and canonical_position_id is None
            and candidate.canonical_position_id is None
        ):
            raise ValueError(
                "A canonical position is required to confirm a low-confidence duplicate"
            )

        recorded = ResolutionDecision(
            candidate_id=candidate_id,
            decision=decision,
            canonical_position_id=canonical_position_id or (
                candidate.canonical_position_id
                if decision == ResolutionStatus.CONFIRMED_DUPLICATE
                else None
            ),
            recorded_at=datetime.utcnow(),
        )
        self.store.record_resolution(portfolio_id, recorded)
        logger.info(
            f"Recorded {decision.value} for candidate {candidate_id} "
            f"({candidate.instrument_key}), keeping {recorded.canonical_position_id}"
        )
        return recorded
