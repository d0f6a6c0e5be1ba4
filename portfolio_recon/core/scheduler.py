"""Scheduler for running periodic reconciliation cycles."""

from __future__ import annotations

import logging
import signal
import sys
from datetime import datetime
from typing import List, Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from portfolio_recon.config import get_settings
from portfolio_recon.core.errors import AllConnectionsFailedError, ConcurrentSyncInProgressError
from portfolio_recon.core.reconciliation import ReconciliationCoordinator

logger = logging.getLogger(__name__)
settings = get_settings()


class SyncScheduler:
    """Scheduler for periodic reconciliation of one or more portfolios."""

    def __init__(
        self,
        coordinator: ReconciliationCoordinator,
        portfolio_ids: Optional[List[str]] = None,
        interval_minutes: Optional[int] = None,
        scheduler=None,
    ):
        """Initialize the scheduler.

        Args:
            coordinator: Coordinator that runs the cycles
            portfolio_ids: Portfolios to reconcile (defaults to the default portfolio)
            interval_minutes: Minutes between cycles (defaults to settings)
            scheduler: APScheduler instance; a BlockingScheduler when omitted
        """
        self.coordinator = coordinator
        self.portfolio_ids = portfolio_ids or [settings.default_portfolio_id]
        self.interval = interval_minutes or settings.sync_interval_minutes
        self.scheduler = scheduler or BlockingScheduler()
        self._cycle_count = 0
        self._shutdown_requested = False

    def run_cycle(self) -> int:
        """Reconcile every portfolio once, fetching only connections that are due.

        Returns:
            Number of portfolios committed
        """
        self._cycle_count += 1
        timestamp = datetime.utcnow().strftime("%Y-%m-%d %H:%M:%S UTC")
        logger.info(f"[Cycle {self._cycle_count}] Starting at {timestamp}")

        committed = 0
        for portfolio_id in self.portfolio_ids:
            try:
                result = self.coordinator.reconcile(portfolio_id, due_only=True)
            except ConcurrentSyncInProgressError:
                logger.info(f"[Cycle {self._cycle_count}] {portfolio_id}: sync already running, skipped")
                continue
            except AllConnectionsFailedError as e:
                logger.error(f"[Cycle {self._cycle_count}] {portfolio_id}: {e}")
                continue
            except Exception as e:
                logger.error(f"[Cycle {self._cycle_count}] {portfolio_id}: unexpected error: {e}")
                continue

            if result.committed:
                committed += 1
                if result.failed_connections:
                    logger.warning(
                        f"[Cycle {self._cycle_count}] {portfolio_id}: committed with "
                        f"{len(result.failed_connections)} failed connection(s)"
                    )
        return committed

    def _handle_signal(self, signum, frame) -> None:
        """Handle shutdown signals gracefully."""
        if self._shutdown_requested:
            logger.warning("Received second shutdown signal, forcing exit...")
            sys.exit(1)

        logger.info("Received shutdown signal, cancelling running syncs...")
        self._shutdown_requested = True
        for portfolio_id in self.portfolio_ids:
            self.coordinator.cancel(portfolio_id)
        self.stop()

    def add_job(self) -> None:
        self.scheduler.add_job(
            self.run_cycle,
            trigger=IntervalTrigger(minutes=self.interval),
            id="reconcile_cycle",
            name="Portfolio Reconciliation",
            replace_existing=True,
            max_instances=1,
        )

    def start(self) -> None:
        """Start the scheduler (blocking)."""
        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)

        self.add_job()
        logger.info(
            f"Starting scheduler with {self.interval} min interval for "
            f"{len(self.portfolio_ids)} portfolio(s)"
        )
        logger.info("Press Ctrl+C to stop")

        # Run first cycle immediately
        self.run_cycle()

        try:
            self.scheduler.start()
        except (KeyboardInterrupt, SystemExit):
            pass  # Expected on shutdown
        finally:
            logger.info("Scheduler stopped")

    def stop(self) -> None:
        """Stop the scheduler."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler shutdown complete")
