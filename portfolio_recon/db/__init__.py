"""Database module."""

from .database import get_db, init_db, engine, SessionLocal, create_session_factory
from .models import (
    Base,
    Portfolio,
    BrokerConnectionRecord,
    SourceRecordRow,
    SnapshotRecord,
    PositionRecord,
    DuplicateCandidateRecord,
    DuplicateResolutionRecord,
    PriceCache,
    FxRateCache,
)

__all__ = [
    "get_db",
    "init_db",
    "engine",
    "SessionLocal",
    "create_session_factory",
    "Base",
    "Portfolio",
    "BrokerConnectionRecord",
    "SourceRecordRow",
    "SnapshotRecord",
    "PositionRecord",
    "DuplicateCandidateRecord",
    "DuplicateResolutionRecord",
    "PriceCache",
    "FxRateCache",
]
