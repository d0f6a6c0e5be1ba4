"""Reconciliation error taxonomy and the structured error report."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional


class ReconciliationError(Exception):
    """Base class for reconciliation errors.

    ``subject`` names the item the error is about (a symbol, an instrument
    key, a connection id, a currency) so the report can be grouped.
    """

    kind = "reconciliation"

    def __init__(self, message: str, subject: Optional[str] = None):
        super().__init__(message)
        self.subject = subject


class UnresolvedInstrumentError(ReconciliationError):
    """A source record could not be mapped to an instrument key."""

    kind = "unresolved_instrument"


class InvalidSourceRecordError(ReconciliationError):
    """A source record is internally inconsistent (e.g. oversold history)."""

    kind = "invalid_record"


class ConnectionFetchError(ReconciliationError):
    """A broker connection failed to return positions."""

    kind = "connection_fetch"


class MissingFxRateError(ReconciliationError):
    """No FX rate from a currency into the base currency."""

    kind = "missing_fx_rate"


class MissingPriceError(ReconciliationError):
    """No market price for an instrument."""

    kind = "missing_price"


class AllConnectionsFailedError(ReconciliationError):
    """Every connection failed; the cycle commits nothing."""

    kind = "all_connections_failed"


class ConcurrentSyncInProgressError(ReconciliationError):
    """A cycle for this portfolio is already running."""

    kind = "sync_in_progress"


class CandidateNotFoundError(ReconciliationError):
    """A resolution referenced a candidate that is not in the queue."""

    kind = "candidate_not_found"


# Human-readable phrases for report summaries, keyed by error kind.
_SUMMARY_PHRASES = {
    UnresolvedInstrumentError.kind: "could not be matched to an instrument",
    InvalidSourceRecordError.kind: "had inconsistent source data",
    ConnectionFetchError.kind: "failed to sync",
    MissingFxRateError.kind: "had no exchange rate",
    MissingPriceError.kind: "could not be priced",
}

_SUMMARY_NOUNS = {
    UnresolvedInstrumentError.kind: "record",
    InvalidSourceRecordError.kind: "record",
    ConnectionFetchError.kind: "connection",
    MissingFxRateError.kind: "currency",
    MissingPriceError.kind: "position",
}


@dataclass(frozen=True)
class ReportedError:
    """One recoverable error captured during a cycle."""

    kind: str
    message: str
    subject: Optional[str] = None

    @classmethod
    def from_exception(cls, exc: ReconciliationError) -> "ReportedError":
        return cls(kind=exc.kind, message=str(exc), subject=exc.subject)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "subject": self.subject}


@dataclass
class ErrorReport:
    """Accumulates per-item errors instead of aborting the cycle."""

    errors: List[ReportedError] = field(default_factory=list)

    def add(self, exc: ReconciliationError) -> None:
        self.errors.append(ReportedError.from_exception(exc))

    def extend(self, excs) -> None:
        for exc in excs:
            self.add(exc)

    def merge(self, other: "ErrorReport") -> None:
        self.errors.extend(other.errors)

    def counts(self) -> Dict[str, int]:
        return dict(Counter(e.kind for e in self.errors))

    def of_kind(self, kind: str) -> List[ReportedError]:
        return [e for e in self.errors if e.kind == kind]

    def summary(self) -> List[str]:
        """Render warnings like '2 positions could not be priced'."""
        lines = []
        for kind, count in sorted(self.counts().items()):
            phrase = _SUMMARY_PHRASES.get(kind)
            if phrase is None:
                lines.append(f"{count} {kind.replace('_', ' ')} error(s)")
                continue
            noun = _SUMMARY_NOUNS[kind]
            if count != 1:
                noun = "currencies" if noun == "currency" else noun + "s"
            lines.append(f"{count} {noun} {phrase}")
        return lines

    def __bool__(self) -> bool:
        return bool(self.errors)

    def __len__(self) -> int:
        return len(self.errors)

    def to_dict(self) -> dict:
        return {
            "errors": [e.to_dict() for e in self.errors],
            "counts": self.counts(),
            "summary": self.summary(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ErrorReport":
        return cls(
            errors=[
                ReportedError(kind=e["kind"], message=e["message"], subject=e.get("subject"))
                for e in data.get("errors", [])
            ]
        )
