"""Reconciliation coordinator - runs one sync cycle per portfolio."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from portfolio_recon.config import get_settings
from portfolio_recon.core.aggregation.engine import AggregationEngine, build_snapshot
from portfolio_recon.core.aggregation.models import PortfolioSnapshot
from portfolio_recon.core.brokers.base import BrokerClient, BrokerClientRegistry
from portfolio_recon.core.brokers.models import BrokerConnection, ConnectionStatus, FetchOutcome
from portfolio_recon.core.duplicates.detector import DuplicateDetector
from portfolio_recon.core.errors import (
    AllConnectionsFailedError,
    ConcurrentSyncInProgressError,
    ConnectionFetchError,
    ErrorReport,
)
from portfolio_recon.core.positions.models import Position
from portfolio_recon.core.positions.normalizer import PositionNormalizer
from portfolio_recon.core.reconciliation.interfaces import (
    FxRateProvider,
    PortfolioStore,
    PriceFeed,
)

logger = logging.getLogger(__name__)
settings = get_settings()


class SyncState(str, Enum):
    """States of a reconciliation cycle."""

    IDLE = "idle"
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    DETECTING = "detecting"
    AGGREGATING = "aggregating"
    COMMITTED = "committed"
    ERRORED = "errored"


@dataclass
class CycleResult:
    """Outcome of one reconciliation cycle."""

    portfolio_id: str
    state: SyncState = SyncState.IDLE
    states: List[SyncState] = field(default_factory=list)
    snapshot: Optional[PortfolioSnapshot] = None
    outcomes: List[FetchOutcome] = field(default_factory=list)
    skipped_positions: int = 0
    cancelled: bool = False

    @property
    def committed(self) -> bool:
        return self.state == SyncState.COMMITTED

    @property
    def failed_connections(self) -> List[str]:
        return [o.connection.id for o in self.outcomes if not o.success]


class ReconciliationCoordinator:
    """Orchestrates fetch -> normalize -> detect -> aggregate -> commit.

    Connections are fetched concurrently on a bounded thread pool; each
    call has its own timeout and one immediate retry. Processing waits for
    every fetch to settle. Only one cycle per portfolio may run at a time.
    """

    def __init__(
        self,
        store: PortfolioStore,
        brokers: BrokerClientRegistry,
        price_feed: Optional[PriceFeed] = None,
        fx_rates: Optional[FxRateProvider] = None,
        normalizer: Optional[PositionNormalizer] = None,
        detector: Optional[DuplicateDetector] = None,
        engine: Optional[AggregationEngine] = None,
        base_currency: Optional[str] = None,
        max_concurrent_fetches: Optional[int] = None,
        fetch_timeout: Optional[float] = None,
        fetch_retries: Optional[int] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.store = store
        self.brokers = brokers
        self.price_feed = price_feed
        self.fx_rates = fx_rates
        self.normalizer = normalizer or PositionNormalizer()
        self.detector = detector or DuplicateDetector()
        self.engine = engine or AggregationEngine()
        self.base_currency = (base_currency or settings.base_currency).upper()
        self.max_concurrent_fetches = max_concurrent_fetches or settings.max_concurrent_fetches
        self.fetch_timeout = fetch_timeout or settings.fetch_timeout_seconds
        self.fetch_retries = settings.fetch_retries if fetch_retries is None else fetch_retries
        self.clock = clock

        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._cancel_events: Dict[str, threading.Event] = {}
        self._states: Dict[str, SyncState] = {}

    # ------------------------------------------------------------------
    # Cycle control
    # ------------------------------------------------------------------

    def state(self, portfolio_id: str) -> SyncState:
        """Current (or last) state of the portfolio's cycle."""
        return self._states.get(portfolio_id, SyncState.IDLE)

    def is_running(self, portfolio_id: str) -> bool:
        lock = self._locks.get(portfolio_id)
        return lock is not None and lock.locked()

    def cancel(self, portfolio_id: str) -> bool:
        """Request cancellation of the running cycle.

        Returns:
            True if a cycle was running and has been asked to stop
        """
        with self._guard:
            event = self._cancel_events.get(portfolio_id)
        if event is None:
            return False
        event.set()
        logger.info(f"[{portfolio_id}] Cancellation requested")
        return True

    def _lock_for(self, portfolio_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(portfolio_id, threading.Lock())

    def reconcile(
        self,
        portfolio_id: str,
        base_currency: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        due_only: bool = False,
    ) -> CycleResult:
        """Run one reconciliation cycle.

        Args:
            portfolio_id: Portfolio to reconcile
            base_currency: Reporting currency (defaults to the coordinator's)
            cancel_event: Optional event checked at every state transition
            due_only: Fetch only connections whose sync frequency has
                elapsed; the others keep their last committed positions

        Returns:
            CycleResult; ``state`` is COMMITTED, or IDLE when cancelled or
            when no connection is due

        Raises:
            ConcurrentSyncInProgressError: A cycle is already running
            AllConnectionsFailedError: No connection returned data
        """
        lock = self._lock_for(portfolio_id)
        if not lock.acquire(blocking=False):
            raise ConcurrentSyncInProgressError(
                f"Sync already in progress for portfolio {portfolio_id}", subject=portfolio_id
            )

        cancel_event = cancel_event or threading.Event()
        with self._guard:
            self._cancel_events[portfolio_id] = cancel_event

        cycle = CycleResult(portfolio_id=portfolio_id)
        try:
            return self._run_cycle(
                cycle, (base_currency or self.base_currency).upper(), cancel_event, due_only
            )
        except Exception as e:
            self._enter(cycle, SyncState.ERRORED)
            logger.error(f"[{portfolio_id}] Cycle failed: {e}")
            raise
        finally:
            with self._guard:
                self._cancel_events.pop(portfolio_id, None)
            lock.release()

    def _enter(self, cycle: CycleResult, state: SyncState) -> None:
        cycle.state = state
        cycle.states.append(state)
        self._states[cycle.portfolio_id] = state
        logger.debug(f"[{cycle.portfolio_id}] -> {state.value}")

    def _advance(self, cycle: CycleResult, state: SyncState, cancel_event: threading.Event) -> bool:
        """Move to the next state unless cancellation was requested."""
        if cancel_event.is_set():
            logger.info(f"[{cycle.portfolio_id}] Cancelled before {state.value}; nothing committed")
            cycle.cancelled = True
            self._enter(cycle, SyncState.IDLE)
            return False
        self._enter(cycle, state)
        return True

    def _run_cycle(
        self,
        cycle: CycleResult,
        base_currency: str,
        cancel_event: threading.Event,
        due_only: bool = False,
    ) -> CycleResult:
        portfolio_id = cycle.portfolio_id
        report = ErrorReport()

        connections = [c for c in self.store.load_connections(portfolio_id) if c.is_enabled]
        carried: List[Position] = []
        if due_only:
            now = self.clock()
            due = [c for c in connections if c.is_due(now)]
            if not due:
                logger.info(f"[{portfolio_id}] No connection due for sync")
                return cycle
            waiting = {c.id for c in connections} - {c.id for c in due}
            if waiting:
                carried = [
                    p for p in self.store.load_positions(portfolio_id) if p.connection_id in waiting
                ]
                logger.info(
                    f"[{portfolio_id}] {len(waiting)} connection(s) not due; "
                    f"keeping {len(carried)} committed position(s)"
                )
            connections = due

        # Fetching
        if not self._advance(cycle, SyncState.FETCHING, cancel_event):
            return cycle
        logger.info(f"[{portfolio_id}] Fetching {len(connections)} connection(s)")
        cycle.outcomes = self._fetch_all(connections)
        fetched_at = self.clock()

        succeeded = [o for o in cycle.outcomes if o.success]
        for outcome in cycle.outcomes:
            if not outcome.success:
                report.add(
                    ConnectionFetchError(
                        f"{outcome.connection.id} ({outcome.connection.broker_id.value}): "
                        f"{outcome.error_message}",
                        subject=outcome.connection.id,
                    )
                )

        if cancel_event.is_set():
            # In-flight fetches have settled; their results are discarded
            self._advance(cycle, SyncState.NORMALIZING, cancel_event)
            return cycle

        if not succeeded:
            self._persist_statuses(cycle.outcomes, fetched_at)
            raise AllConnectionsFailedError(
                f"All {len(connections)} connection(s) failed for portfolio {portfolio_id}",
                subject=portfolio_id,
            )

        # Normalizing
        if not self._advance(cycle, SyncState.NORMALIZING, cancel_event):
            return cycle
        positions: List[Position] = list(carried)
        for outcome in succeeded:
            normalized = self.normalizer.normalize(
                outcome.records,
                outcome.connection,
                account_number=outcome.account_number,
                now=outcome.fetched_at,
            )
            positions.extend(normalized.positions)
            report.extend(normalized.errors)

        # Detecting
        if not self._advance(cycle, SyncState.DETECTING, cancel_event):
            return cycle
        detection = self.detector.run(positions)
        cycle.skipped_positions = detection.skipped

        # Aggregating
        if not self._advance(cycle, SyncState.AGGREGATING, cancel_event):
            return cycle
        # Decisions recorded after the fetch barrier apply from the next cycle
        resolutions = self.store.load_pending_resolutions(portfolio_id, recorded_before=fetched_at)
        open_positions = [p for p in positions if not p.is_closed]
        prices = self._lookup_prices({p.instrument_key for p in open_positions})
        fx_rates = self._lookup_fx_rates(open_positions, base_currency)
        result = self.engine.aggregate(
            positions, detection.candidates, resolutions, base_currency, fx_rates, prices
        )
        snapshot = build_snapshot(
            portfolio_id, result, base_currency, error_report=report, as_of=self.clock()
        )

        # Committed
        if not self._advance(cycle, SyncState.COMMITTED, cancel_event):
            return cycle
        self.store.save_snapshot(snapshot)
        self._persist_statuses(cycle.outcomes, fetched_at)
        expired = self.store.expire_resolutions(
            portfolio_id, [c.candidate_id for c in snapshot.duplicates]
        )
        if expired:
            logger.info(f"[{portfolio_id}] Expired {expired} resolution(s) for vanished candidates")

        cycle.snapshot = snapshot
        logger.info(
            f"[{portfolio_id}] Committed snapshot: {len(snapshot.holdings)} holding(s), "
            f"value {snapshot.total_value} {base_currency}, "
            f"{len(snapshot.pending_duplicates)} pending duplicate(s), "
            f"{len(snapshot.error_report)} warning(s)"
        )
        return cycle

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def _fetch_all(self, connections: List[BrokerConnection]) -> List[FetchOutcome]:
        if not connections:
            return []

        # A slot is held for as long as a broker call runs, including calls
        # abandoned after a timeout, so calls in flight never exceed the cap
        slots = threading.Semaphore(self.max_concurrent_fetches)
        call_pool = ThreadPoolExecutor(
            max_workers=self.max_concurrent_fetches, thread_name_prefix="broker_call"
        )
        try:
            with ThreadPoolExecutor(
                max_workers=self.max_concurrent_fetches, thread_name_prefix="broker_fetch"
            ) as pool:
                return list(
                    pool.map(lambda c: self._fetch_connection(c, call_pool, slots), connections)
                )
        finally:
            call_pool.shutdown(wait=False)

    def _fetch_connection(
        self,
        connection: BrokerConnection,
        call_pool: ThreadPoolExecutor,
        slots: threading.Semaphore,
    ) -> FetchOutcome:
        client = self.brokers.get(connection.broker_id)
        if client is None:
            message = f"No client registered for broker {connection.broker_id.value}"
            logger.error(f"[{connection.id}] {message}")
            return FetchOutcome(connection=connection, success=False, attempts=0, error_message=message)

        attempts = 0
        last_error = None
        for _ in range(1 + self.fetch_retries):
            attempts += 1
            slots.acquire()
            started = threading.Event()
            future = call_pool.submit(self._call_in_slot, client, connection.id, slots, started)
            # The timeout covers the broker call only, not time spent queued
            started.wait()
            try:
                records, account_number = future.result(timeout=self.fetch_timeout)
                logger.debug(f"[{connection.id}] Fetched {len(records)} record(s)")
                return FetchOutcome(
                    connection=connection,
                    success=True,
                    attempts=attempts,
                    records=records,
                    account_number=account_number,
                    fetched_at=self.clock(),
                )
            except FuturesTimeoutError:
                last_error = f"Timed out after {self.fetch_timeout}s"
            except Exception as e:
                last_error = str(e) or e.__class__.__name__
            logger.warning(f"[{connection.id}] Fetch attempt {attempts} failed: {last_error}")

        logger.error(f"[{connection.id}] Giving up after {attempts} attempt(s): {last_error}")
        return FetchOutcome(
            connection=connection, success=False, attempts=attempts, error_message=last_error
        )

    @classmethod
    def _call_in_slot(
        cls,
        client: BrokerClient,
        connection_id: str,
        slots: threading.Semaphore,
        started: threading.Event,
    ) -> Tuple[list, Optional[str]]:
        started.set()
        try:
            return cls._call_client(client, connection_id)
        finally:
            slots.release()

    @staticmethod
    def _call_client(client: BrokerClient, connection_id: str) -> Tuple[list, Optional[str]]:
        records = list(client.fetch_positions(connection_id))
        try:
            account_number = client.fetch_account_number(connection_id)
        except Exception as e:
            logger.warning(f"[{connection_id}] Account number unavailable: {e}")
            account_number = None
        return records, account_number

    def _persist_statuses(self, outcomes: Iterable[FetchOutcome], fetched_at: datetime) -> None:
        # Every connection synced in one cycle shares the barrier time
        for outcome in outcomes:
            if outcome.success:
                self.store.update_connection_status(
                    outcome.connection.id,
                    ConnectionStatus.CONNECTED,
                    last_sync_time=fetched_at,
                )
            else:
                self.store.update_connection_status(
                    outcome.connection.id,
                    ConnectionStatus.ERROR,
                    error=outcome.error_message,
                )

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    def _lookup_prices(self, instrument_keys: Iterable[str]) -> Dict[str, Decimal]:
        prices: Dict[str, Decimal] = {}
        if self.price_feed is None:
            return prices
        for key in sorted(instrument_keys):
            try:
                price = self.price_feed.get_price(key)
            except Exception as e:
                logger.warning(f"Price lookup failed for {key}: {e}")
                continue
            if price is not None:
                prices[key] = Decimal(str(price))
        return prices

    def _lookup_fx_rates(self, positions: Iterable[Position], base_currency: str) -> Dict[str, Decimal]:
        rates: Dict[str, Decimal] = {}
        if self.fx_rates is None:
            return rates
        currencies = set()
        for position in positions:
            currencies.add(position.currency.upper())
            currencies.add(position.instrument_currency.upper())
        currencies.discard(base_currency)

        for currency in sorted(currencies):
            try:
                rate = self.fx_rates.get_rate(currency, base_currency)
            except Exception as e:
                logger.warning(f"FX lookup failed for {currency}->{base_currency}: {e}")
                continue
            if rate is not None:
                rates[currency] = Decimal(str(rate))
        return rates
