"""Market data feeds (prices, FX rates)."""

from .provider import YahooMarketData, yahoo_symbol

__all__ = ["YahooMarketData", "yahoo_symbol"]
