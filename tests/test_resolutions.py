"""Tests for duplicate resolution handling."""

from datetime import timedelta
from unittest.mock import Mock

import pytest

from portfolio_recon.core.duplicates import (
    ResolutionDecision,
    ResolutionService,
    ResolutionStatus,
    apply_resolutions,
    detect,
)
from portfolio_recon.core.errors import CandidateNotFoundError

from helpers import NOW, make_position


@pytest.fixture
def strong_candidate():
    a = make_position("AAPL@XNAS", "m1", "10", "150")
    b = make_position("AAPL@XNAS", "p1", "10", "150")
    return detect([a, b])[0]


@pytest.fixture
def weak_candidate():
    a = make_position("MSFT@XNAS", "m1", "10", "300")
    b = make_position("MSFT@XNAS", "p1", "4", "300")
    return detect([a, b])[0]


@pytest.fixture
def store(strong_candidate, weak_candidate):
    store = Mock()
    store.load_candidates.return_value = [strong_candidate, weak_candidate]
    return store


class TestApplyResolutions:
    """Tests for apply_resolutions."""

    def test_latest_decision_wins(self, strong_candidate):
        older = ResolutionDecision(
            candidate_id=strong_candidate.candidate_id,
            decision=ResolutionStatus.CONFIRMED_DISTINCT,
            recorded_at=NOW,
        )
        newer = ResolutionDecision(
            candidate_id=strong_candidate.candidate_id,
            decision=ResolutionStatus.CONFIRMED_DUPLICATE,
            recorded_at=NOW + timedelta(minutes=5),
        )

        resolved = apply_resolutions([strong_candidate], [newer, older])[0]

        assert resolved.resolution_status == ResolutionStatus.CONFIRMED_DUPLICATE
        assert resolved.canonical_position_id == strong_candidate.canonical_position_id

    def test_undecided_candidates_stay_pending(self, strong_candidate, weak_candidate):
        decision = ResolutionDecision(
            candidate_id=strong_candidate.candidate_id,
            decision=ResolutionStatus.CONFIRMED_DISTINCT,
            recorded_at=NOW,
        )

        resolved = apply_resolutions([strong_candidate, weak_candidate], [decision])

        assert resolved[1].resolution_status == ResolutionStatus.PENDING
        assert resolved[0].excluded_position_ids() == ()

    def test_user_chosen_canonical_applied(self, strong_candidate):
        keep = strong_candidate.position_ids[1]
        decision = ResolutionDecision(
            candidate_id=strong_candidate.candidate_id,
            decision=ResolutionStatus.CONFIRMED_DUPLICATE,
            canonical_position_id=keep,
            recorded_at=NOW,
        )

        resolved = apply_resolutions([strong_candidate], [decision])[0]

        assert resolved.canonical_position_id == keep
        assert resolved.excluded_position_ids() == (strong_candidate.position_ids[0],)

    def test_pending_is_not_a_decision(self):
        with pytest.raises(ValueError):
            ResolutionDecision(candidate_id="abc", decision=ResolutionStatus.PENDING)


class TestResolutionService:
    """Tests for ResolutionService.submit_resolution."""

    def test_records_decision_with_suggested_canonical(self, store, strong_candidate):
        service = ResolutionService(store)

        recorded = service.submit_resolution(
            "p1", strong_candidate.candidate_id, "confirmed_duplicate"
        )

        assert recorded.decision == ResolutionStatus.CONFIRMED_DUPLICATE
        assert recorded.canonical_position_id == strong_candidate.canonical_position_id
        store.record_resolution.assert_called_once_with("p1", recorded)

    def test_distinct_has_no_canonical(self, store, weak_candidate):
        recorded = ResolutionService(store).submit_resolution(
            "p1", weak_candidate.candidate_id, ResolutionStatus.CONFIRMED_DISTINCT
        )
        assert recorded.canonical_position_id is None

    def test_unknown_candidate(self, store):
        with pytest.raises(CandidateNotFoundError):
            ResolutionService(store).submit_resolution(
                "p1", "does-not-exist", ResolutionStatus.CONFIRMED_DISTINCT
            )
        store.record_resolution.assert_not_called()

    def test_canonical_must_belong_to_candidate(self, store, strong_candidate):
        with pytest.raises(ValueError, match="not part of candidate"):
            ResolutionService(store).submit_resolution(
                "p1",
                strong_candidate.candidate_id,
                ResolutionStatus.CONFIRMED_DUPLICATE,
                canonical_position_id="x1/AAPL@XNAS",
            )

    def test_weak_candidate_needs_explicit_canonical(self, store, weak_candidate):
        service = ResolutionService(store)

        with pytest.raises(ValueError, match="canonical position is required"):
            service.submit_resolution(
                "p1", weak_candidate.candidate_id, ResolutionStatus.CONFIRMED_DUPLICATE
            )

        keep = weak_candidate.position_ids[0]
        recorded = service.submit_resolution(
            "p1", weak_candidate.candidate_id, ResolutionStatus.CONFIRMED_DUPLICATE, keep
        )
        assert recorded.canonical_position_id == keep

    def test_pending_rejected(self, store, strong_candidate):
        with pytest.raises(ValueError):
            ResolutionService(store).submit_resolution(
                "p1", strong_candidate.candidate_id, ResolutionStatus.PENDING
            )
