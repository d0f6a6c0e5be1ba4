"""Duplicate detection and the resolution queue."""

from .models import (
    DuplicateCandidate,
    MatchReason,
    ResolutionDecision,
    ResolutionStatus,
    candidate_id_for,
)
from .detector import DetectionResult, DuplicateDetector, detect
from .resolutions import ResolutionService, apply_resolutions

__all__ = [
    "DuplicateCandidate",
    "MatchReason",
    "ResolutionDecision",
    "ResolutionStatus",
    "candidate_id_for",
    "DetectionResult",
    "DuplicateDetector",
    "detect",
    "ResolutionService",
    "apply_resolutions",
]
