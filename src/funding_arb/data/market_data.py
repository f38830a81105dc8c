"""
Cross-exchange market data cache.

``MarketDataAggregator`` polls every registered connector for every symbol
and keeps the latest ``MarketSnapshot`` per (symbol, exchange). Snapshots
are only written by ``refresh``; readers get whatever the last successful
fetch produced, stale or not.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Iterable, Optional

from funding_arb.core.config import DEFAULT_STALENESS_THRESHOLD_MS
from funding_arb.core.errors import AggregationError
from funding_arb.core.models import MarketSnapshot, RefreshSummary
from funding_arb.exchanges.base import ExchangeConnector


def now_ms() -> int:
    return int(time.time() * 1000)


class MarketDataAggregator:
    """
    Parameters
    ----------
    connectors : dict[str, ExchangeConnector]
        Exchange name -> connector. Insertion order is the pair order used
        by the opportunity detector.
    staleness_threshold_ms : int
        Maximum snapshot age, and maximum timestamp gap between two
        snapshots compared against each other.
    clock : callable, optional
        Returns epoch milliseconds. Defaults to wall-clock time.
    """

    def __init__(
        self,
        connectors: Dict[str, ExchangeConnector],
        staleness_threshold_ms: int = DEFAULT_STALENESS_THRESHOLD_MS,
        logger: Optional[logging.Logger] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.connectors = dict(connectors)
        self.staleness_threshold_ms = staleness_threshold_ms
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock or now_ms

        self._snapshots: Dict[tuple, MarketSnapshot] = {}   # (symbol, exchange) -> snapshot

    @property
    def exchanges(self) -> list[str]:
        return list(self.connectors)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self, symbols: Iterable[str]) -> RefreshSummary:
        """
        Fetch funding rate and last price for every (symbol, exchange) pair
        concurrently and overwrite the successful snapshots.

        Failed pairs keep their previous snapshot and are listed in the
        returned summary.
        """
        if not self.connectors:
            raise AggregationError("no exchange connectors registered")

        pairs = [(symbol, name) for symbol in symbols for name in self.connectors]
        results = await asyncio.gather(
            *(self._fetch_pair(symbol, name) for symbol, name in pairs),
            return_exceptions=True,
        )

        summary = RefreshSummary(attempted=len(pairs))
        for (symbol, name), result in zip(pairs, results):
            if isinstance(result, BaseException):
                self.logger.warning(f"[{name}:{symbol}] market data fetch failed: {result}")
                summary.failed.append((name, symbol))
                continue
            self._snapshots[(symbol, name)] = result
            summary.succeeded += 1

        if pairs and summary.succeeded == 0:
            self.logger.error(f"Market data refresh failed for all {len(pairs)} pairs")
        else:
            self.logger.debug(f"Market data refreshed: {summary.succeeded}/{summary.attempted} pairs")
        return summary

    async def _fetch_pair(self, symbol: str, exchange: str) -> MarketSnapshot:
        market = await self.connectors[exchange].fetch_market_data(symbol)
        return MarketSnapshot(
            symbol=symbol,
            exchange=exchange,
            last_price=market.last_price,
            funding_rate=market.funding_rate,
            observed_at_ms=self.clock(),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def latest(self, symbol: str, exchange: str) -> Optional[MarketSnapshot]:
        return self._snapshots.get((symbol, exchange))

    def latest_for_symbol(self, symbol: str) -> Dict[str, MarketSnapshot]:
        """Snapshots for *symbol* keyed by exchange, in registration order."""
        out = {}
        for name in self.connectors:
            snap = self._snapshots.get((symbol, name))
            if snap is not None:
                out[name] = snap
        return out

    def is_stale(self, snapshot: MarketSnapshot, now_ms: Optional[int] = None) -> bool:
        now_ms = self.clock() if now_ms is None else now_ms
        return now_ms - snapshot.observed_at_ms > self.staleness_threshold_ms

    def is_synced(self, a: MarketSnapshot, b: MarketSnapshot) -> bool:
        return abs(a.observed_at_ms - b.observed_at_ms) <= self.staleness_threshold_ms
