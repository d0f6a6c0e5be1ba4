"""SQLAlchemy ORM models."""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from portfolio_recon.core.brokers.models import BrokerConnection, BrokerId, ConnectionStatus

Base = declarative_base()


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Get current UTC timestamp."""
    return datetime.utcnow()


class Portfolio(Base):
    """A portfolio reconciled from one or more broker connections."""

    __tablename__ = "portfolios"

    id = Column(String(64), primary_key=True)
    name = Column(String(100), nullable=True)
    base_currency = Column(String(3), nullable=False, default="USD")
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    connections = relationship(
        "BrokerConnectionRecord", back_populates="portfolio", cascade="all, delete-orphan"
    )
    snapshots = relationship("SnapshotRecord", back_populates="portfolio", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<Portfolio(id={self.id}, base_currency={self.base_currency})>"


class BrokerConnectionRecord(Base):
    """A stored broker connection."""

    __tablename__ = "broker_connections"

    id = Column(String, primary_key=True, default=generate_uuid)
    portfolio_id = Column(String(64), ForeignKey("portfolios.id"), nullable=False, index=True)
    broker_id = Column(String(30), nullable=False)  # BrokerId value
    status = Column(String(20), nullable=False, default=ConnectionStatus.CONNECTED.value)
    sync_frequency = Column(Integer, nullable=False, default=30)  # minutes
    last_sync_time = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    currency = Column(String(3), nullable=False, default="USD")
    default_exchange = Column(String(10), nullable=True)
    display_name = Column(String(100), nullable=True)
    access_token = Column(Text, nullable=True)  # Plaid access token / OAuth bearer token
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    portfolio = relationship("Portfolio", back_populates="connections")
    source_records = relationship(
        "SourceRecordRow", back_populates="connection", cascade="all, delete-orphan"
    )

    def to_connection(self) -> BrokerConnection:
        return BrokerConnection(
            id=self.id,
            broker_id=BrokerId(self.broker_id),
            status=ConnectionStatus(self.status),
            sync_frequency=self.sync_frequency,
            last_sync_time=self.last_sync_time,
            last_error=self.last_error,
            portfolio_id=self.portfolio_id,
            currency=self.currency,
            default_exchange=self.default_exchange,
            display_name=self.display_name,
        )

    def __repr__(self) -> str:
        return f"<BrokerConnectionRecord(id={self.id}, broker={self.broker_id}, status={self.status})>"


class SourceRecordRow(Base):
    """A manually entered or CSV-imported source record."""

    __tablename__ = "source_records"

    id = Column(String, primary_key=True, default=generate_uuid)
    connection_id = Column(String, ForeignKey("broker_connections.id"), nullable=False, index=True)
    symbol = Column(String(30), nullable=False)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    connection = relationship("BrokerConnectionRecord", back_populates="source_records")

    def __repr__(self) -> str:
        return f"<SourceRecordRow(connection_id={self.connection_id}, symbol={self.symbol})>"


class SnapshotRecord(Base):
    """A committed portfolio snapshot."""

    __tablename__ = "snapshots"

    id = Column(String, primary_key=True, default=generate_uuid)
    portfolio_id = Column(String(64), ForeignKey("portfolios.id"), nullable=False, index=True)
    as_of = Column(DateTime, nullable=False, index=True)
    base_currency = Column(String(3), nullable=False)
    total_value = Column(String(40), nullable=False)  # Decimal as text
    total_cost = Column(String(40), nullable=False)
    has_degraded_conversions = Column(Boolean, default=False, nullable=False)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    portfolio = relationship("Portfolio", back_populates="snapshots")
    positions = relationship("PositionRecord", back_populates="snapshot", cascade="all, delete-orphan")
    candidates = relationship(
        "DuplicateCandidateRecord", back_populates="snapshot", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<SnapshotRecord(portfolio_id={self.portfolio_id}, as_of={self.as_of})>"


class PositionRecord(Base):
    """A normalized position as of a committed snapshot."""

    __tablename__ = "positions"

    id = Column(String, primary_key=True, default=generate_uuid)
    snapshot_id = Column(String, ForeignKey("snapshots.id"), nullable=False, index=True)
    position_id = Column(String(200), nullable=False)
    instrument_key = Column(String(40), nullable=False, index=True)
    source_account_id = Column(String(120), nullable=False)
    quantity = Column(String(40), nullable=False)
    excluded = Column(Boolean, default=False, nullable=False)
    payload = Column(JSON, nullable=False)

    snapshot = relationship("SnapshotRecord", back_populates="positions")

    def __repr__(self) -> str:
        return f"<PositionRecord(position_id={self.position_id}, quantity={self.quantity})>"


class DuplicateCandidateRecord(Base):
    """A duplicate candidate in a snapshot's review queue."""

    __tablename__ = "duplicate_candidates"

    id = Column(String, primary_key=True, default=generate_uuid)
    snapshot_id = Column(String, ForeignKey("snapshots.id"), nullable=False, index=True)
    candidate_id = Column(String(16), nullable=False)
    instrument_key = Column(String(40), nullable=False)
    confidence = Column(Float, nullable=False)
    match_reason = Column(String(30), nullable=False)
    resolution_status = Column(String(30), nullable=False)
    canonical_position_id = Column(String(200), nullable=True)
    position_ids = Column(JSON, nullable=False)

    snapshot = relationship("SnapshotRecord", back_populates="candidates")

    def __repr__(self) -> str:
        return f"<DuplicateCandidateRecord(candidate_id={self.candidate_id}, status={self.resolution_status})>"


class DuplicateResolutionRecord(Base):
    """A user decision on a duplicate candidate."""

    __tablename__ = "duplicate_resolutions"

    id = Column(String, primary_key=True, default=generate_uuid)
    portfolio_id = Column(String(64), ForeignKey("portfolios.id"), nullable=False, index=True)
    candidate_id = Column(String(16), nullable=False, index=True)
    decision = Column(String(30), nullable=False)
    canonical_position_id = Column(String(200), nullable=True)
    recorded_at = Column(DateTime, default=utcnow, nullable=False)
    expired_at = Column(DateTime, nullable=True)  # Set when the candidate disappears

    def __repr__(self) -> str:
        return f"<DuplicateResolutionRecord(candidate_id={self.candidate_id}, decision={self.decision})>"


class PriceCache(Base):
    """Market price cache model."""

    __tablename__ = "price_cache"

    instrument_key = Column(String(40), primary_key=True)
    price = Column(Float, nullable=False)
    fetched_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<PriceCache(instrument_key={self.instrument_key}, price={self.price})>"


class FxRateCache(Base):
    """Currency rate cache model."""

    __tablename__ = "fx_rate_cache"
    __table_args__ = (UniqueConstraint("from_currency", "to_currency", name="uq_fx_pair"),)

    id = Column(String, primary_key=True, default=generate_uuid)
    from_currency = Column(String(3), nullable=False)
    to_currency = Column(String(3), nullable=False)
    rate = Column(Float, nullable=False)
    fetched_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<FxRateCache({self.from_currency}/{self.to_currency}={self.rate})>"
