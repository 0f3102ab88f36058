"""One-year return and dividend yield for the stock fund, with a short-lived cache."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import requests

from core import EngineConfig


logger = logging.getLogger(__name__)


CHART_URL = "https://query1.finance.yahoo.com/v8/finance/chart/{ticker}"
USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"


class MarketDataError(Exception):
    """Raised when market data cannot be retrieved or understood."""


@dataclass(frozen=True)
class MarketData:
    one_year_return: float
    dividend_yield: float
    current_price: float = 0.0


@dataclass(frozen=True)
class MarketDataCache:
    data: MarketData
    fetched_at: datetime


def cached_market_data(
    cache: Optional[MarketDataCache], now: datetime, cfg: EngineConfig
) -> Optional[MarketData]:
    """Return the cached data if it was fetched less than the cache window ago."""
    if cache is None:
        return None
    if now - cache.fetched_at < timedelta(seconds=cfg.market_cache_seconds):
        return cache.data
    return None


def parse_chart_response(payload: dict) -> MarketData:
    """Extract return and trailing dividend yield from a chart API response."""
    try:
        result = payload["chart"]["result"][0]
        meta = result["meta"]
        previous_close = float(meta["chartPreviousClose"])
        current_price = float(meta["regularMarketPrice"])
    except (KeyError, IndexError, TypeError, ValueError) as exc:
        raise MarketDataError(f"Unexpected chart response: {exc}") from exc
    if previous_close <= 0:
        raise MarketDataError(f"Invalid previous close: {previous_close}")

    dividends = (result.get("events") or {}).get("dividends") or {}
    total_dividends = sum(float(d.get("amount", 0.0)) for d in dividends.values())

    return MarketData(
        one_year_return=(current_price - previous_close) / previous_close,
        dividend_yield=total_dividends / previous_close,
        current_price=current_price,
    )


def fetch_market_data(
    ticker: str, cfg: EngineConfig, session: Optional[requests.Session] = None
) -> MarketData:
    """Query the chart endpoint for the trailing year of monthly prices and dividends."""
    http = session or requests
    try:
        response = http.get(
            CHART_URL.format(ticker=ticker),
            params={"interval": "1mo", "range": "1y", "events": "div"},
            headers={"User-Agent": USER_AGENT},
            timeout=cfg.fetch_timeout,
        )
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError) as exc:
        raise MarketDataError(f"Market data request for {ticker} failed: {exc}") from exc
    data = parse_chart_response(payload)
    logger.info(
        "%s: 1y return %.4f, dividend yield %.4f", ticker, data.one_year_return, data.dividend_yield
    )
    return data


def refresh_market_data(
    ticker: str,
    cache: Optional[MarketDataCache],
    now: datetime,
    cfg: EngineConfig,
    session: Optional[requests.Session] = None,
) -> tuple[MarketData, MarketDataCache, bool]:
    """
    Serve from ``cache`` when fresh, otherwise fetch and return a new cache.

    The third element is True when the data came from the cache.  Fetch
    failures propagate as ``MarketDataError`` so the caller can fall back to
    manual entry.
    """
    data = cached_market_data(cache, now, cfg)
    if data is not None:
        return data, cache, True
    data = fetch_market_data(ticker, cfg, session=session)
    return data, MarketDataCache(data, now), False
