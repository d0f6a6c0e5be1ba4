"""SQL-backed portfolio store."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Generator, Iterable, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from portfolio_recon.config import get_settings
from portfolio_recon.core.aggregation.models import PortfolioSnapshot
from portfolio_recon.core.brokers.models import BrokerConnection, BrokerId, ConnectionStatus
from portfolio_recon.core.duplicates.models import (
    DuplicateCandidate,
    MatchReason,
    ResolutionDecision,
    ResolutionStatus,
)
from portfolio_recon.core.positions.models import (
    Position,
    RawSourceRecord,
    TransactionRecord,
    TransactionType,
)
from portfolio_recon.core.reconciliation.interfaces import PortfolioStore
from portfolio_recon.db.database import SessionLocal
from portfolio_recon.db.models import (
    BrokerConnectionRecord,
    DuplicateCandidateRecord,
    DuplicateResolutionRecord,
    Portfolio,
    PositionRecord,
    SnapshotRecord,
    SourceRecordRow,
)

logger = logging.getLogger(__name__)
settings = get_settings()

_DECIMAL_FIELDS = ("quantity", "average_cost", "total_cost", "current_price", "previous_close")


def record_to_dict(record: RawSourceRecord) -> dict:
    """Serialize a source record for JSON storage."""
    data = {
        "symbol": record.symbol,
        "account_id": record.account_id,
        "account_number": record.account_number,
        "isin": record.isin,
        "exchange": record.exchange,
        "currency": record.currency,
        "price_currency": record.price_currency,
        "name": record.name,
        "asset_class": record.asset_class,
        "last_updated": record.last_updated.isoformat() if record.last_updated else None,
        "transactions": [
            {
                "type": TransactionType(tx.type).value,
                "quantity": str(tx.quantity),
                "price": str(tx.price),
                "fees": str(tx.fees),
                "trade_date": tx.trade_date.isoformat() if tx.trade_date else None,
            }
            for tx in record.transactions
        ],
    }
    for name in _DECIMAL_FIELDS:
        value = getattr(record, name)
        data[name] = None if value is None else str(value)
    return data


def record_from_dict(data: dict) -> RawSourceRecord:
    """Rebuild a source record stored with ``record_to_dict``."""
    decimals = {
        name: Decimal(data[name]) if data.get(name) is not None else None
        for name in _DECIMAL_FIELDS
    }
    return RawSourceRecord(
        symbol=data["symbol"],
        transactions=[
            TransactionRecord(
                type=TransactionType(tx["type"]),
                quantity=Decimal(tx["quantity"]),
                price=Decimal(tx["price"]),
                fees=Decimal(tx.get("fees") or "0"),
                trade_date=date.fromisoformat(tx["trade_date"]) if tx.get("trade_date") else None,
            )
            for tx in data.get("transactions", [])
        ],
        account_id=data.get("account_id"),
        account_number=data.get("account_number"),
        isin=data.get("isin"),
        exchange=data.get("exchange"),
        currency=data.get("currency"),
        price_currency=data.get("price_currency"),
        name=data.get("name"),
        asset_class=data.get("asset_class", "equity"),
        last_updated=(
            datetime.fromisoformat(data["last_updated"]) if data.get("last_updated") else None
        ),
        **decimals,
    )


class SqlPortfolioStore(PortfolioStore):
    """Portfolio store on SQLAlchemy.

    Every method opens its own session, so the store can be shared with
    the coordinator's fetch threads.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory or SessionLocal

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Portfolios and connections
    # ------------------------------------------------------------------

    def ensure_portfolio(self, portfolio_id: str, base_currency: Optional[str] = None) -> None:
        """Create the portfolio row if it does not exist yet."""
        with self._session() as db:
            self._ensure_portfolio(db, portfolio_id, base_currency)

    @staticmethod
    def _ensure_portfolio(db: Session, portfolio_id: str, base_currency: Optional[str] = None) -> Portfolio:
        portfolio = db.query(Portfolio).filter_by(id=portfolio_id).first()
        if not portfolio:
            portfolio = Portfolio(
                id=portfolio_id,
                base_currency=(base_currency or settings.base_currency).upper(),
            )
            db.add(portfolio)
            db.flush()
        return portfolio

    def add_connection(
        self,
        portfolio_id: str,
        broker_id: BrokerId,
        display_name: Optional[str] = None,
        currency: str = "USD",
        default_exchange: Optional[str] = None,
        access_token: Optional[str] = None,
        sync_frequency: int = 30,
        connection_id: Optional[str] = None,
    ) -> BrokerConnection:
        """Register a new broker connection."""
        with self._session() as db:
            self._ensure_portfolio(db, portfolio_id)
            row = BrokerConnectionRecord(
                portfolio_id=portfolio_id,
                broker_id=BrokerId(broker_id).value,
                display_name=display_name,
                currency=currency.upper(),
                default_exchange=default_exchange,
                access_token=access_token,
                sync_frequency=sync_frequency,
            )
            if connection_id:
                row.id = connection_id
            db.add(row)
            db.flush()
            logger.info(f"Added {row.broker_id} connection {row.id} to portfolio {portfolio_id}")
            return row.to_connection()

    def get_connection(self, connection_id: str) -> Optional[BrokerConnection]:
        with self._session() as db:
            row = db.query(BrokerConnectionRecord).filter_by(id=connection_id).first()
            return row.to_connection() if row else None

    def load_connections(self, portfolio_id: str) -> List[BrokerConnection]:
        with self._session() as db:
            rows = (
                db.query(BrokerConnectionRecord)
                .filter_by(portfolio_id=portfolio_id)
                .order_by(BrokerConnectionRecord.created_at, BrokerConnectionRecord.id)
                .all()
            )
            return [row.to_connection() for row in rows]

    def disable_connection(self, connection_id: str) -> Optional[BrokerConnection]:
        """Mark a connection disconnected; it is skipped by later cycles."""
        with self._session() as db:
            row = db.query(BrokerConnectionRecord).filter_by(id=connection_id).first()
            if not row:
                return None
            row.status = ConnectionStatus.DISCONNECTED.value
            db.flush()
            logger.info(f"Disabled connection {connection_id}")
            return row.to_connection()

    def get_access_token(self, connection_id: str) -> Optional[str]:
        with self._session() as db:
            row = db.query(BrokerConnectionRecord).filter_by(id=connection_id).first()
            return row.access_token if row else None

    def update_connection_status(
        self,
        connection_id: str,
        status: ConnectionStatus,
        last_sync_time: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> None:
        with self._session() as db:
            row = db.query(BrokerConnectionRecord).filter_by(id=connection_id).first()
            if not row:
                logger.warning(f"Status update for unknown connection {connection_id}")
                return
            # A connection disabled mid-cycle stays disabled
            if row.status == ConnectionStatus.DISCONNECTED.value:
                return
            row.status = ConnectionStatus(status).value
            if last_sync_time is not None:
                row.last_sync_time = last_sync_time
            row.last_error = error

    # ------------------------------------------------------------------
    # Source records
    # ------------------------------------------------------------------

    def load_source_records(self, connection_id: str) -> List[RawSourceRecord]:
        with self._session() as db:
            rows = (
                db.query(SourceRecordRow)
                .filter_by(connection_id=connection_id)
                .order_by(SourceRecordRow.created_at, SourceRecordRow.id)
                .all()
            )
            return [record_from_dict(row.payload) for row in rows]

    def add_source_records(self, connection_id: str, records: Iterable[RawSourceRecord]) -> int:
        """Append records to a manual or CSV connection."""
        with self._session() as db:
            count = 0
            for record in records:
                db.add(
                    SourceRecordRow(
                        connection_id=connection_id,
                        symbol=record.symbol.upper(),
                        payload=record_to_dict(record),
                    )
                )
                count += 1
            return count

    def replace_source_records(self, connection_id: str, records: Iterable[RawSourceRecord]) -> int:
        """Replace all records of a connection (re-import)."""
        with self._session() as db:
            db.query(SourceRecordRow).filter_by(connection_id=connection_id).delete()
            count = 0
            for record in records:
                db.add(
                    SourceRecordRow(
                        connection_id=connection_id,
                        symbol=record.symbol.upper(),
                        payload=record_to_dict(record),
                    )
                )
                count += 1
            logger.info(f"Stored {count} source record(s) for connection {connection_id}")
            return count

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def save_snapshot(self, snapshot: PortfolioSnapshot) -> None:
        with self._session() as db:
            self._ensure_portfolio(db, snapshot.portfolio_id, snapshot.base_currency)
            record = SnapshotRecord(
                portfolio_id=snapshot.portfolio_id,
                as_of=snapshot.as_of,
                base_currency=snapshot.base_currency,
                total_value=str(snapshot.total_value),
                total_cost=str(snapshot.total_cost),
                has_degraded_conversions=snapshot.has_degraded_conversions,
                payload=snapshot.to_dict(),
            )
            db.add(record)
            db.flush()

            for holding in snapshot.holdings:
                for cp in holding.contributing_positions:
                    db.add(
                        PositionRecord(
                            snapshot_id=record.id,
                            position_id=cp.position.position_id,
                            instrument_key=cp.position.instrument_key,
                            source_account_id=cp.position.source_account_id,
                            quantity=str(cp.position.quantity),
                            excluded=cp.excluded,
                            payload=cp.position.to_dict(),
                        )
                    )
            for candidate in snapshot.duplicates:
                db.add(
                    DuplicateCandidateRecord(
                        snapshot_id=record.id,
                        candidate_id=candidate.candidate_id,
                        instrument_key=candidate.instrument_key,
                        confidence=candidate.confidence,
                        match_reason=candidate.match_reason.value,
                        resolution_status=candidate.resolution_status.value,
                        canonical_position_id=candidate.canonical_position_id,
                        position_ids=list(candidate.position_ids),
                    )
                )

    @staticmethod
    def _latest_snapshot_row(db: Session, portfolio_id: str) -> Optional[SnapshotRecord]:
        return (
            db.query(SnapshotRecord)
            .filter_by(portfolio_id=portfolio_id)
            .order_by(SnapshotRecord.as_of.desc(), SnapshotRecord.created_at.desc())
            .first()
        )

    def load_latest_snapshot(self, portfolio_id: str) -> Optional[PortfolioSnapshot]:
        with self._session() as db:
            row = self._latest_snapshot_row(db, portfolio_id)
            return PortfolioSnapshot.from_dict(row.payload) if row else None

    def list_snapshots(self, portfolio_id: str, limit: int = 20) -> List[dict]:
        """Summary rows of recent snapshots, newest first."""
        with self._session() as db:
            rows = (
                db.query(SnapshotRecord)
                .filter_by(portfolio_id=portfolio_id)
                .order_by(SnapshotRecord.as_of.desc())
                .limit(limit)
                .all()
            )
            return [
                {
                    "as_of": row.as_of,
                    "base_currency": row.base_currency,
                    "total_value": Decimal(row.total_value),
                    "total_cost": Decimal(row.total_cost),
                    "has_degraded_conversions": row.has_degraded_conversions,
                }
                for row in rows
            ]

    def load_positions(self, portfolio_id: str) -> List[Position]:
        with self._session() as db:
            snapshot = self._latest_snapshot_row(db, portfolio_id)
            if not snapshot:
                return []
            rows = (
                db.query(PositionRecord)
                .filter_by(snapshot_id=snapshot.id)
                .order_by(PositionRecord.position_id)
                .all()
            )
            return [Position.from_dict(row.payload) for row in rows]

    def load_candidates(self, portfolio_id: str) -> List[DuplicateCandidate]:
        with self._session() as db:
            snapshot = self._latest_snapshot_row(db, portfolio_id)
            if not snapshot:
                return []
            positions: Dict[str, Position] = {
                row.position_id: Position.from_dict(row.payload)
                for row in db.query(PositionRecord).filter_by(snapshot_id=snapshot.id)
            }
            rows = db.query(DuplicateCandidateRecord).filter_by(snapshot_id=snapshot.id).all()
            candidates = [
                DuplicateCandidate(
                    candidate_id=row.candidate_id,
                    instrument_key=row.instrument_key,
                    positions=tuple(positions[pid] for pid in row.position_ids if pid in positions),
                    confidence=row.confidence,
                    match_reason=MatchReason(row.match_reason),
                    resolution_status=ResolutionStatus(row.resolution_status),
                    canonical_position_id=row.canonical_position_id,
                )
                for row in rows
            ]
            candidates.sort(key=lambda c: (-c.confidence, c.instrument_key, c.candidate_id))
            return candidates

    # ------------------------------------------------------------------
    # Resolutions
    # ------------------------------------------------------------------

    def record_resolution(self, portfolio_id: str, decision: ResolutionDecision) -> None:
        with self._session() as db:
            self._ensure_portfolio(db, portfolio_id)
            db.add(
                DuplicateResolutionRecord(
                    portfolio_id=portfolio_id,
                    candidate_id=decision.candidate_id,
                    decision=decision.decision.value,
                    canonical_position_id=decision.canonical_position_id,
                    recorded_at=decision.recorded_at,
                )
            )

    def load_pending_resolutions(
        self,
        portfolio_id: str,
        recorded_before: Optional[datetime] = None,
    ) -> List[ResolutionDecision]:
        with self._session() as db:
            query = db.query(DuplicateResolutionRecord).filter(
                DuplicateResolutionRecord.portfolio_id == portfolio_id,
                DuplicateResolutionRecord.expired_at.is_(None),
            )
            if recorded_before is not None:
                query = query.filter(DuplicateResolutionRecord.recorded_at <= recorded_before)
            rows = query.order_by(DuplicateResolutionRecord.recorded_at).all()
            return [
                ResolutionDecision(
                    candidate_id=row.candidate_id,
                    decision=ResolutionStatus(row.decision),
                    canonical_position_id=row.canonical_position_id,
                    recorded_at=row.recorded_at,
                )
                for row in rows
            ]

    def expire_resolutions(self, portfolio_id: str, active_candidate_ids: Iterable[str]) -> int:
        active = set(active_candidate_ids)
        now = datetime.utcnow()
        expired = 0
        with self._session() as db:
            rows = (
                db.query(DuplicateResolutionRecord)
                .filter(
                    DuplicateResolutionRecord.portfolio_id == portfolio_id,
                    DuplicateResolutionRecord.expired_at.is_(None),
                )
                .all()
            )
            for row in rows:
                if row.candidate_id not in active:
                    row.expired_at = now
                    expired += 1
        return expired
