"""
Funding-rate divergence detection.

For every symbol, each pair of exchanges with fresh, time-aligned snapshots
is compared. An opportunity means: go long where funding is cheaper (lower
rate), go short where it is richer (higher rate), and collect the spread.

    funding_diff    = rate_i - rate_j
    price_deviation = |price_i - price_j| / mid
    expected_profit = |funding_diff| - price_deviation

An opportunity is emitted when ``|funding_diff| > min_funding_diff`` and
``expected_profit > min_profit_threshold``.
"""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from itertools import combinations
from typing import Iterable, List, Optional, Tuple

from funding_arb.core.config import EngineConfig
from funding_arb.core.models import ArbitrageOpportunity, Side, TradeRequest
from funding_arb.data.market_data import MarketDataAggregator


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

class OpportunityDetector:
    """
    Stateless scan over the aggregator's latest snapshots.

    Parameters
    ----------
    aggregator : MarketDataAggregator
        Source of snapshots. Its exchange order defines the pair order.
    min_funding_diff : Decimal
        Minimum absolute funding-rate spread.
    min_profit_threshold : Decimal
        Minimum spread left after the price-deviation penalty.
    """

    def __init__(
        self,
        aggregator: MarketDataAggregator,
        min_funding_diff: Decimal,
        min_profit_threshold: Decimal,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.aggregator = aggregator
        self.min_funding_diff = min_funding_diff
        self.min_profit_threshold = min_profit_threshold
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(
        cls,
        aggregator: MarketDataAggregator,
        config: EngineConfig,
        logger: Optional[logging.Logger] = None,
    ) -> "OpportunityDetector":
        return cls(aggregator, config.min_funding_diff, config.min_profit_threshold, logger=logger)

    def detect(self, symbols: Iterable[str]) -> List[ArbitrageOpportunity]:
        """Return every qualifying opportunity, unsorted."""
        found = []
        detected_at = self.aggregator.clock()

        for symbol in symbols:
            snapshots = self.aggregator.latest_for_symbol(symbol)
            ordered = [snapshots[name] for name in self.aggregator.exchanges if name in snapshots]
            for snap in ordered:
                if self.aggregator.is_stale(snap, detected_at):
                    self.logger.warning(
                        f"[{symbol}] {snap.exchange} snapshot is stale ({detected_at - snap.observed_at_ms}ms old)"
                    )

            for a, b in combinations(ordered, 2):
                if not self.aggregator.is_synced(a, b):
                    self.logger.debug(
                        f"[{symbol}] {a.exchange}/{b.exchange} snapshots not synced, skipping pair"
                    )
                    continue

                mid = (a.last_price + b.last_price) / 2
                if mid <= 0:
                    continue

                funding_diff = a.funding_rate - b.funding_rate
                price_deviation = abs(a.last_price - b.last_price) / mid
                expected_profit = abs(funding_diff) - price_deviation

                if abs(funding_diff) <= self.min_funding_diff:
                    continue
                if expected_profit <= self.min_profit_threshold:
                    continue

                # Long where funding is lower, short where it is higher.
                long_snap, short_snap = (a, b) if a.funding_rate < b.funding_rate else (b, a)

                found.append(ArbitrageOpportunity(
                    symbol=symbol,
                    long_exchange=long_snap.exchange,
                    short_exchange=short_snap.exchange,
                    funding_diff=abs(funding_diff),
                    expected_profit=expected_profit,
                    detected_at_ms=detected_at,
                    price_deviation=price_deviation,
                    long_funding_rate=long_snap.funding_rate,
                    short_funding_rate=short_snap.funding_rate,
                ))

        return found


def rank_opportunities(opportunities: Iterable[ArbitrageOpportunity]) -> List[ArbitrageOpportunity]:
    """Highest expected profit first; ties by symbol, then long / short exchange."""
    return sorted(
        opportunities,
        key=lambda o: (-o.expected_profit, o.symbol, o.long_exchange, o.short_exchange),
    )


# ---------------------------------------------------------------------------
# Sizing
# ---------------------------------------------------------------------------

def compute_trade_size(opportunity: ArbitrageOpportunity, config: EngineConfig) -> Decimal:
    """
    Quote notional per leg.

    Scales ``base_position_size`` up with expected profit, capped by
    ``max_position_size`` and, when set, by
    ``initial_balance * max_position_size_percent``.
    """
    size = config.base_position_size * (1 + opportunity.expected_profit * config.max_size_multiplier)
    size = min(size, config.max_position_size)
    if config.max_position_size_percent is not None:
        size = min(size, config.initial_balance * config.max_position_size_percent)
    return size


def build_trade_requests(
    opportunity: ArbitrageOpportunity,
    config: EngineConfig,
) -> Tuple[TradeRequest, TradeRequest]:
    """Return the ``(long, short)`` request pair for an opportunity."""
    size = compute_trade_size(opportunity, config)
    long_request = TradeRequest(
        symbol=opportunity.symbol,
        exchange=opportunity.long_exchange,
        side=Side.LONG,
        size=size,
        leverage=config.default_leverage,
    )
    short_request = TradeRequest(
        symbol=opportunity.symbol,
        exchange=opportunity.short_exchange,
        side=Side.SHORT,
        size=size,
        leverage=config.default_leverage,
    )
    return long_request, short_request


# ---------------------------------------------------------------------------
# Feed
# ---------------------------------------------------------------------------

class OpportunityFeed:
    """
    Fan-out of ranked opportunity batches to subscribers.

    Each subscriber owns a bounded queue. When it is full the oldest batch
    is dropped, so slow consumers always see the most recent cycles.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self._subscribers: List[asyncio.Queue] = []

    def subscribe(self, maxsize: int = 16) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, batch: List[ArbitrageOpportunity]) -> None:
        batch = list(batch)
        for queue in self._subscribers:
            if queue.full():
                queue.get_nowait()
                self.logger.debug("Opportunity subscriber lagging, dropped oldest batch")
            queue.put_nowait(batch)

    def clear(self) -> None:
        """Tell subscribers there are no live opportunities."""
        self.publish([])
