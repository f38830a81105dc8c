"""
Fixed-interval monitoring loop.

Each cycle: refresh market data, detect and rank opportunities, publish
them, sync live positions into the risk metrics and trade when trading is
enabled, then re-read positions and close the ones that hit take-profit or
stop-loss. A cycle always finishes before the next one is scheduled.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from funding_arb.core.config import EngineConfig
from funding_arb.core.models import ArbitrageOpportunity, Position
from funding_arb.data.market_data import MarketDataAggregator
from funding_arb.execution.trade_executor import TradeExecutionOrchestrator
from funding_arb.helpers.report_helper import save_opportunities_snapshot
from funding_arb.notifications.notifier import NotificationService, NotificationType
from funding_arb.risk.risk_manager import RiskManager
from funding_arb.strategies.funding_arb import (
    OpportunityDetector,
    OpportunityFeed,
    build_trade_requests,
    rank_opportunities,
)


class MonitoringScheduler:

    def __init__(
        self,
        config: EngineConfig,
        aggregator: MarketDataAggregator,
        detector: OpportunityDetector,
        orchestrator: TradeExecutionOrchestrator,
        risk_manager: RiskManager,
        notifier: NotificationService,
        feed: Optional[OpportunityFeed] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.aggregator = aggregator
        self.detector = detector
        self.orchestrator = orchestrator
        self.risk_manager = risk_manager
        self.notifier = notifier
        self.feed = feed or OpportunityFeed()
        self.logger = logger or logging.getLogger(__name__)

        self._running = False
        self._stop_event: Optional[asyncio.Event] = None
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Announce start, log balances, refresh once and schedule the loop.

        A failing initial refresh leaves the scheduler stopped and re-raises.
        """
        if self._running:
            self.logger.warning("Monitoring scheduler is already running")
            return

        self._running = True
        self.notifier.send_system_notification(
            NotificationType.SYSTEM_START, "Funding arbitrage engine started"
        )

        try:
            await self.log_balances()
            await self.aggregator.refresh(self.config.symbols)
        except Exception as exc:
            self._running = False
            self.logger.error(f"Error starting monitoring scheduler: {exc}")
            self.notifier.send_error_notification(
                NotificationType.SYSTEM_ERROR, "Error starting funding arbitrage engine", exc
            )
            raise

        self._stop_event = asyncio.Event()
        self._loop_task = asyncio.create_task(self._loop())
        self.logger.info(
            f"Monitoring started | symbols={list(self.config.symbols)}, "
            f"exchanges={self.aggregator.exchanges}, interval={self.config.monitoring_interval_sec}s, "
            f"trading_enabled={self.config.trading_enabled}"
        )

    async def stop(self) -> None:
        """Stop scheduling cycles and wait for the current one to finish."""
        if not self._running:
            self.logger.warning("Monitoring scheduler is not running")
            return

        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None

        self.feed.clear()
        self.notifier.send_system_notification(
            NotificationType.SYSTEM_STOP, "Funding arbitrage engine stopped"
        )
        self.logger.info("Monitoring stopped")

    async def _loop(self) -> None:
        interval = self.config.monitoring_interval_sec
        loop = asyncio.get_running_loop()

        next_due = loop.time() + interval
        while self._running:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=max(0.0, next_due - loop.time()))
                break
            except asyncio.TimeoutError:
                pass

            next_due = loop.time() + interval
            await self.run_cycle()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> List[ArbitrageOpportunity]:
        """Run one monitoring cycle. Errors are logged and reported, never raised."""
        try:
            await self.aggregator.refresh(self.config.symbols)

            opportunities = rank_opportunities(self.detector.detect(self.config.symbols))
            self.feed.publish(opportunities)
            if self.config.signals_path:
                save_opportunities_snapshot(opportunities, self.config.signals_path)

            for opp in opportunities:
                self.logger.info(
                    f"[{opp.symbol}] OPPORTUNITY | long {opp.long_exchange} ({opp.long_funding_rate}) / "
                    f"short {opp.short_exchange} ({opp.short_funding_rate}), "
                    f"funding_diff={opp.funding_diff}, expected_profit={opp.expected_profit}"
                )

            if self.config.trading_enabled:
                await self.sync_positions()
                for opp in opportunities:
                    await self._execute_opportunity(opp)

            await self.manage_positions()
            return opportunities

        except Exception as exc:
            self.logger.exception(f"Error in monitoring cycle: {exc}")
            self.notifier.send_error_notification(
                NotificationType.SYSTEM_ERROR, "Error in monitoring cycle", exc
            )
            return []

    async def _execute_opportunity(self, opp: ArbitrageOpportunity) -> None:
        try:
            long_request, short_request = build_trade_requests(opp, self.config)
            await self.orchestrator.execute_arbitrage_trade(long_request, short_request)
        except Exception as exc:
            self.logger.error(f"[{opp.symbol}] error executing arbitrage: {exc}")
            self.notifier.send_error_notification(
                NotificationType.TRADE_ERROR, f"Error executing arbitrage for {opp.symbol}", exc
            )

    async def sync_positions(self) -> List[Position]:
        """Re-read live positions and recompute risk metrics from them."""
        positions = await self.orchestrator.refresh_positions(self.config.symbols)
        self.risk_manager.update_metrics(positions)
        return positions

    async def manage_positions(self) -> None:
        """Sync positions and close the ones at take-profit or stop-loss."""
        positions = await self.sync_positions()

        for position in positions:
            if self.aggregator.latest(position.symbol, position.exchange) is None:
                continue

            if self.risk_manager.should_take_profit(position):
                self.logger.info(f"[{position.exchange}:{position.symbol}] take-profit hit, pnl={position.unrealized_pnl}")
            elif self.risk_manager.should_stop_loss(position):
                self.logger.info(f"[{position.exchange}:{position.symbol}] stop-loss hit, pnl={position.unrealized_pnl}")
            else:
                continue

            await self.orchestrator.close_position(position)

    async def log_balances(self) -> None:
        connectors = self.orchestrator.connectors
        names = list(connectors)
        balances = await asyncio.gather(
            *(connectors[name].get_balance() for name in names),
            return_exceptions=True,
        )
        for name, balance in zip(names, balances):
            if isinstance(balance, BaseException):
                self.logger.warning(f"[{name}] balance unavailable: {balance}")
            else:
                self.logger.info(f"[{name}] balance: {balance}")
