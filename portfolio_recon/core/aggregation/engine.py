"""Aggregation engine: consolidates positions into portfolio holdings."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from portfolio_recon.core.aggregation.models import (
    ZERO,
    AggregatedHolding,
    ContributingPosition,
    PortfolioSnapshot,
    pnl_percent,
)
from portfolio_recon.core.duplicates.models import DuplicateCandidate, ResolutionDecision
from portfolio_recon.core.duplicates.resolutions import apply_resolutions
from portfolio_recon.core.errors import (
    ErrorReport,
    MissingFxRateError,
    MissingPriceError,
    ReconciliationError,
)
from portfolio_recon.core.positions.models import Position

logger = logging.getLogger(__name__)

ONE = Decimal("1")


@dataclass
class AggregationResult:
    """Holdings plus the recoverable errors met while building them."""

    holdings: List[AggregatedHolding] = field(default_factory=list)
    duplicates: List[DuplicateCandidate] = field(default_factory=list)
    errors: List[ReconciliationError] = field(default_factory=list)
    has_degraded_conversions: bool = False


class _Converter:
    """Converts into the base currency, recording each missing rate once."""

    def __init__(self, base_currency: str, fx_rates: Mapping[str, Decimal], errors: list):
        self.base_currency = base_currency.upper()
        self.fx_rates = {k.upper(): Decimal(str(v)) for k, v in fx_rates.items()}
        self.errors = errors
        self.missing: Set[str] = set()

    def rate(self, currency: str) -> Tuple[Decimal, bool]:
        """Return (rate, degraded)."""
        currency = currency.upper()
        if currency == self.base_currency:
            return ONE, False
        rate = self.fx_rates.get(currency)
        if rate is not None and rate > 0:
            return rate, False
        if currency not in self.missing:
            self.missing.add(currency)
            logger.warning(
                f"No FX rate {currency}->{self.base_currency}; using degraded 1:1 conversion"
            )
            self.errors.append(
                MissingFxRateError(
                    f"No FX rate from {currency} to {self.base_currency}", subject=currency
                )
            )
        return ONE, True


class AggregationEngine:
    """Consolidates normalized, de-duplicated positions per instrument.

    Only confirmed duplicates are excluded (all but the canonical position
    contribute zero). Pending candidates count in full: double counting is
    preferred to silently losing value.
    """

    def aggregate(
        self,
        positions: Iterable[Position],
        duplicates: Iterable[DuplicateCandidate],
        resolutions: Iterable[ResolutionDecision],
        base_currency: str,
        fx_rates: Mapping[str, Decimal],
        prices: Mapping[str, Decimal],
    ) -> AggregationResult:
        """Aggregate positions into holdings.

        Args:
            positions: Normalized positions; closed ones are ignored
            duplicates: Candidates from the detector
            resolutions: User decisions to apply to the candidates
            base_currency: Portfolio reporting currency
            fx_rates: Currency -> rate into ``base_currency``
            prices: Instrument key -> price in the instrument's currency

        Returns:
            AggregationResult with holdings ordered by instrument key
        """
        result = AggregationResult()
        result.duplicates = apply_resolutions(duplicates, resolutions)

        excluded: Set[str] = set()
        for candidate in result.duplicates:
            excluded.update(candidate.excluded_position_ids())

        converter = _Converter(base_currency, fx_rates, result.errors)

        by_instrument: Dict[str, List[Position]] = defaultdict(list)
        for position in positions:
            if position.is_closed:
                continue
            by_instrument[position.instrument_key].append(position)

        for instrument_key in sorted(by_instrument):
            members = sorted(by_instrument[instrument_key], key=lambda p: p.position_id)
            holding = self._aggregate_instrument(
                instrument_key, members, excluded, converter, prices, result.errors
            )
            result.holdings.append(holding)

        result.has_degraded_conversions = any(h.degraded_conversion for h in result.holdings)
        return result

    def _aggregate_instrument(
        self,
        instrument_key: str,
        members: List[Position],
        excluded: Set[str],
        converter: _Converter,
        prices: Mapping[str, Decimal],
        errors: list,
    ) -> AggregatedHolding:
        total_quantity = ZERO
        total_cost = ZERO
        market_value = ZERO
        daily_change: Optional[Decimal] = None
        price_stale = False
        degraded = False
        contributing = []

        feed_price = prices.get(instrument_key)
        for position in members:
            if position.position_id in excluded:
                contributing.append(ContributingPosition(position=position, excluded=True))
                continue

            cost_rate, cost_degraded = converter.rate(position.currency)
            cost = position.cost_value * cost_rate

            price = feed_price if feed_price is not None else position.current_price
            if price is not None:
                value_rate, value_degraded = converter.rate(position.instrument_currency)
                value = position.quantity * Decimal(price) * value_rate
                if position.previous_close is not None:
                    change = position.quantity * (Decimal(price) - position.previous_close) * value_rate
                    daily_change = change if daily_change is None else daily_change + change
            else:
                value_degraded = cost_degraded
                value = cost
                if not price_stale:
                    logger.warning(f"No price for {instrument_key}; valuing at cost basis")
                    errors.append(
                        MissingPriceError(f"No price for {instrument_key}", subject=instrument_key)
                    )
                price_stale = True

            degraded = degraded or cost_degraded or value_degraded
            total_quantity += position.quantity
            total_cost += cost
            market_value += value
            contributing.append(
                ContributingPosition(position=position, market_value=value, cost=cost)
            )

        unrealized = market_value - total_cost
        return AggregatedHolding(
            instrument_key=instrument_key,
            total_quantity=total_quantity,
            total_cost=total_cost,
            market_value=market_value,
            unrealized_pnl=unrealized,
            unrealized_pnl_percent=pnl_percent(market_value, total_cost),
            contributing_positions=tuple(contributing),
            price_stale=price_stale,
            degraded_conversion=degraded,
            daily_change=daily_change,
        )


def aggregate(
    positions: Iterable[Position],
    duplicates: Iterable[DuplicateCandidate],
    resolutions: Iterable[ResolutionDecision],
    base_currency: str,
    fx_rates: Mapping[str, Decimal],
    prices: Mapping[str, Decimal],
) -> List[AggregatedHolding]:
    """Aggregate with the default engine, returning only the holdings."""
    return (
        AggregationEngine()
        .aggregate(positions, duplicates, resolutions, base_currency, fx_rates, prices)
        .holdings
    )


def build_snapshot(
    portfolio_id: str,
    result: AggregationResult,
    base_currency: str,
    error_report: Optional[ErrorReport] = None,
    as_of: Optional[datetime] = None,
) -> PortfolioSnapshot:
    """Wrap an aggregation result into a snapshot, merging its errors into the report."""
    report = ErrorReport()
    if error_report is not None:
        report.merge(error_report)
    report.extend(result.errors)

    return PortfolioSnapshot(
        portfolio_id=portfolio_id,
        as_of=as_of or datetime.utcnow(),
        base_currency=base_currency.upper(),
        holdings=list(result.holdings),
        duplicates=list(result.duplicates),
        has_degraded_conversions=result.has_degraded_conversions,
        error_report=report,
    )
