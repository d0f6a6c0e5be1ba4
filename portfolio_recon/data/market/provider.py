"""Market data provider using yfinance with caching."""

from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Generator, Iterable, Optional

import pandas as pd
import yfinance as yf
from sqlalchemy.orm import Session, sessionmaker

from portfolio_recon.config import get_settings
from portfolio_recon.core.positions.normalizer import ISIN_PATTERN, SYMBOL_SUFFIXES
from portfolio_recon.core.reconciliation.interfaces import FxRateProvider, PriceFeed
from portfolio_recon.db.database import SessionLocal
from portfolio_recon.db.models import FxRateCache, PriceCache


def _utcnow() -> datetime:
    """Get current UTC time as naive datetime for database compatibility."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


logger = logging.getLogger(__name__)
settings = get_settings()

# Timeout for yfinance API calls (seconds)
YFINANCE_TIMEOUT = 30

# Exchanges quoted on Yahoo without a market suffix
US_MICS = {"XNAS", "XNYS", "ARCX", "BATS", "XASE", "US"}

# MIC -> Yahoo market suffix
MIC_SUFFIXES = {mic: suffix for suffix, mic in SYMBOL_SUFFIXES.items()}

# Warrant formats: /WS -> -WT (Yahoo Finance warrant suffix)
SYMBOL_MAPPINGS = {
    "/WS": "-WT",
    "/W": "-WT",
    ".WS": "-WT",
    ".W": "-WT",
}


def yahoo_symbol(instrument_key: str) -> Optional[str]:
    """Map an instrument key to a Yahoo Finance ticker.

    'EQNR@XOSL' -> 'EQNR.OL', 'AAPL@XNAS' -> 'AAPL', 'BRK.B@XNYS' -> 'BRK-B'.
    ISIN keys have no Yahoo ticker and return None.

    Args:
        instrument_key: Key produced by the normalizer

    Returns:
        Yahoo symbol or None if it cannot be derived
    """
    if ISIN_PATTERN.match(instrument_key):
        return None
    symbol, _, mic = instrument_key.upper().partition("@")
    if not symbol:
        return None

    for suffix, yahoo_suffix in SYMBOL_MAPPINGS.items():
        if symbol.endswith(suffix):
            symbol = symbol[: -len(suffix)] + yahoo_suffix
            break

    if not mic or mic in US_MICS:
        # Share classes use a dash on Yahoo
        return re.sub(r"\.(?=[A-Z]$)", "-", symbol)
    suffix = MIC_SUFFIXES.get(mic)
    if suffix is None:
        logger.debug(f"No Yahoo suffix for exchange {mic}")
        return None
    return f"{symbol}.{suffix}"


class YahooMarketData(PriceFeed, FxRateProvider):
    """Prices and FX rates from yfinance with database-backed caching.

    Cache tables are reached through the injected session factory; nothing
    is cached in process memory.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        cache_seconds: Optional[int] = None,
        fx_cache_seconds: Optional[int] = None,
        timeout: float = YFINANCE_TIMEOUT,
    ):
        """Initialize provider.

        Args:
            session_factory: Factory for cache sessions. Defaults to SessionLocal.
            cache_seconds: How long to cache prices. Defaults to settings value.
            fx_cache_seconds: How long to cache FX rates. Defaults to settings value.
            timeout: Timeout for yfinance API calls in seconds.
        """
        self.session_factory = session_factory or SessionLocal
        self.cache_seconds = cache_seconds or settings.price_cache_seconds
        self.fx_cache_seconds = fx_cache_seconds or settings.fx_cache_seconds
        self.timeout = timeout
        self._executor: Optional[ThreadPoolExecutor] = None

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="market_data")
        return self._executor

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    def _fetch_with_timeout(self, func, *args, **kwargs):
        """Execute a function with timeout protection.

        Returns:
            Function result or None on timeout
        """
        future = self._get_executor().submit(func, *args, **kwargs)
        try:
            return future.result(timeout=self.timeout)
        except FuturesTimeoutError:
            logger.warning(f"Timeout after {self.timeout}s fetching market data")
            return None

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

    @staticmethod
    def _last_price(ticker) -> Optional[float]:
        info = ticker.info or {}
        price = info.get("currentPrice") or info.get("regularMarketPrice")
        if price is None or pd.isna(price):
            hist = ticker.history(period="5d")
            if hist.empty:
                return None
            # Yahoo leaves today's close as NaN until the session settles
            closes = hist["Close"].dropna()
            if closes.empty:
                return None
            price = float(closes.iloc[-1])
        return price

    def get_price(self, instrument_key: str) -> Optional[Decimal]:
        """Get current price for an instrument.

        Args:
            instrument_key: Instrument key (e.g., 'AAPL@XNAS', 'EQNR@XOSL')

        Returns:
            Current price in the instrument's currency or None if unavailable
        """
        ticker_symbol = yahoo_symbol(instrument_key)
        if ticker_symbol is None:
            logger.debug(f"No Yahoo ticker for {instrument_key}")
            return None
        now = _utcnow()

        try:
            with self._session() as db:
                cached = db.query(PriceCache).filter_by(instrument_key=instrument_key).first()
                if cached and cached.fetched_at >= now - timedelta(seconds=self.cache_seconds):
                    logger.debug(f"Cache hit for {instrument_key}: {cached.price}")
                    return Decimal(str(cached.price))

                price = self._fetch_with_timeout(lambda: self._last_price(yf.Ticker(ticker_symbol)))
                if price is None:
                    logger.warning(f"Could not fetch price for {instrument_key} (Yahoo: {ticker_symbol})")
                    return None

                # Update cache using merge for upsert (avoids race condition)
                db.merge(PriceCache(instrument_key=instrument_key, price=float(price), fetched_at=now))
                db.flush()

                logger.debug(f"Fetched {instrument_key}: {price}")
                return Decimal(str(price))

        except Exception as e:
            logger.error(f"yfinance error for {instrument_key}: {e}")
            return None

    def get_prices(self, instrument_keys: Iterable[str]) -> Dict[str, Decimal]:
        """Get prices for multiple instruments (only successful fetches)."""
        prices = {}
        for key in instrument_keys:
            price = self.get_price(key)
            if price is not None:
                prices[key] = price
        return prices

    def get_rate(self, from_currency: str, to_currency: str) -> Optional[Decimal]:
        """Get the conversion rate from one currency to another.

        Args:
            from_currency: ISO code of the source currency (e.g., 'NOK')
            to_currency: ISO code of the target currency (e.g., 'USD')

        Returns:
            Units of to_currency per from_currency, or None if unavailable
        """
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        if from_currency == to_currency:
            return Decimal("1")
        now = _utcnow()

        try:
            with self._session() as db:
                cached = (
                    db.query(FxRateCache)
                    .filter_by(from_currency=from_currency, to_currency=to_currency)
                    .first()
                )
                if cached and cached.fetched_at >= now - timedelta(seconds=self.fx_cache_seconds):
                    logger.debug(f"Cache hit for {from_currency}/{to_currency}: {cached.rate}")
                    return Decimal(str(cached.rate))

                pair = f"{from_currency}{to_currency}=X"
                rate = self._fetch_with_timeout(lambda: self._last_price(yf.Ticker(pair)))
                if rate is None:
                    logger.warning(f"Could not fetch FX rate {pair}")
                    return None

                if cached:
                    cached.rate = float(rate)
                    cached.fetched_at = now
                else:
                    db.add(
                        FxRateCache(
                            from_currency=from_currency,
                            to_currency=to_currency,
                            rate=float(rate),
                            fetched_at=now,
                        )
                    )
                db.flush()

                logger.debug(f"Fetched {pair}: {rate}")
                return Decimal(str(rate))

        except Exception as e:
            logger.error(f"yfinance error for {from_currency}/{to_currency}: {e}")
            return None
