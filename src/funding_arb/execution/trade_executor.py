"""
Paired-trade execution and position tracking.

Both legs of an arbitrage are risk-checked, then submitted concurrently.
There is no atomicity between the legs: when only one fills, that leg is
kept and tracked, the call reports failure and an ``unhedged_exposure``
alert goes out so an operator can decide how to flatten it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from funding_arb.core.models import Position, Side, TradeRequest, utc_now
from funding_arb.exchanges.base import ExchangeConnector
from funding_arb.notifications.notifier import NotificationService, NotificationType
from funding_arb.risk.risk_manager import RiskManager


def trade_details(request: TradeRequest) -> dict:
    return {
        "exchange": request.exchange,
        "symbol": request.symbol,
        "side": request.side.value,
        "size": request.size,
        "price": request.limit_price if request.limit_price is not None else "market",
    }


class TradeExecutionOrchestrator:
    """
    Parameters
    ----------
    connectors : dict[str, ExchangeConnector]
        Exchange name -> connector.
    risk_manager : RiskManager
        Validates each leg and receives metric updates after each fill.
    notifier : NotificationService
        Receives trade and error notifications.
    """

    def __init__(
        self,
        connectors: Dict[str, ExchangeConnector],
        risk_manager: RiskManager,
        notifier: NotificationService,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.connectors = dict(connectors)
        self.risk_manager = risk_manager
        self.notifier = notifier
        self.logger = logger or logging.getLogger(__name__)

        self._positions: Dict[tuple, Position] = {}   # (exchange, symbol, side) -> position

    # ------------------------------------------------------------------
    # Opening
    # ------------------------------------------------------------------

    async def execute_arbitrage_trade(self, long_request: TradeRequest, short_request: TradeRequest) -> bool:
        """
        Open both legs of an arbitrage.

        Risk limits apply per leg: each leg is validated on its own against
        the metrics as they stand before the pair is placed, so a pair can
        land one position over ``max_total_positions``.

        Returns
        -------
        bool
            ``True`` only when both legs filled.
        """
        symbol = long_request.symbol

        # Evaluate both legs so each rejection is logged.
        long_ok = self.risk_manager.validate_trade(long_request)
        short_ok = self.risk_manager.validate_trade(short_request)
        if not (long_ok and short_ok):
            self.logger.warning(f"[{symbol}] arbitrage abandoned: risk validation failed")
            return False

        long_connector = self.connectors.get(long_request.exchange)
        short_connector = self.connectors.get(short_request.exchange)
        if long_connector is None or short_connector is None:
            missing = [r.exchange for r, c in ((long_request, long_connector), (short_request, short_connector)) if c is None]
            self.logger.error(f"[{symbol}] no connector registered for {', '.join(missing)}")
            self.notifier.send_error_notification(
                NotificationType.TRADE_ERROR,
                f"Arbitrage trade for {symbol} abandoned",
                f"connector not found: {', '.join(missing)}",
            )
            return False

        long_result, short_result = await asyncio.gather(
            long_connector.execute_trade(long_request),
            short_connector.execute_trade(short_request),
            return_exceptions=True,
        )
        long_failed = isinstance(long_result, BaseException)
        short_failed = isinstance(short_result, BaseException)

        if not long_failed:
            self._track(long_result)
        if not short_failed:
            self._track(short_result)
        self.risk_manager.update_metrics(self._positions.values())

        if not long_failed and not short_failed:
            self.logger.info(
                f"[{symbol}] ARBITRAGE OPENED | long {long_request.exchange} / short {short_request.exchange}, "
                f"size={long_request.size}, leverage={long_request.leverage}x"
            )
            self.notifier.send_trade_notification(
                NotificationType.TRADE_EXECUTED,
                f"Arbitrage trade executed for {symbol}",
                trade_details(long_request),
                details={
                    "long_exchange": long_request.exchange,
                    "short_exchange": short_request.exchange,
                    "symbol": symbol,
                    "size": long_request.size,
                    "leverage": long_request.leverage,
                },
            )
            return True

        self.logger.error(
            f"[{symbol}] arbitrage execution failed | "
            f"long {long_request.exchange}: {long_result if long_failed else 'filled'}, "
            f"short {short_request.exchange}: {short_result if short_failed else 'filled'}"
        )

        if long_failed and short_failed:
            self.notifier.send_error_notification(
                NotificationType.TRADE_ERROR,
                f"Error executing arbitrage trade for {symbol}",
                f"long: {long_result}; short: {short_result}",
            )
        else:
            filled, failed, error = (
                (long_request, short_request, short_result) if short_failed
                else (short_request, long_request, long_result)
            )
            self.notifier.send_error_notification(
                NotificationType.UNHEDGED_EXPOSURE,
                f"Unhedged {filled.side.value} on {filled.exchange} for {symbol}: "
                f"{failed.side.value} leg on {failed.exchange} failed",
                error,
            )
        return False

    def _track(self, position: Position) -> None:
        self._positions[position.key] = position

    # ------------------------------------------------------------------
    # Closing
    # ------------------------------------------------------------------

    async def close_position(self, position: Position) -> bool:
        connector = self.connectors.get(position.exchange)
        if connector is None:
            error = f"connector not found: {position.exchange}"
            closed = False
        else:
            try:
                closed = await connector.close_position(position.symbol)
                error = None if closed else "exchange reported close failure"
            except Exception as exc:
                closed, error = False, exc

        if not closed:
            self.logger.error(f"[{position.exchange}:{position.symbol}] close {position.side.value} failed: {error}")
            self.notifier.send_error_notification(
                NotificationType.TRADE_ERROR,
                f"Failed to close {position.side.value} {position.symbol} on {position.exchange}",
                error,
            )
            return False

        self._positions.pop(position.key, None)
        self.risk_manager.update_metrics(self._positions.values())
        self.logger.info(
            f"[{position.exchange}:{position.symbol}] {position.side.value.upper()} CLOSED | "
            f"entry={position.entry_price}, size={position.size}, pnl={position.unrealized_pnl}"
        )
        self.notifier.send_trade_notification(
            NotificationType.TRADE_CLOSED,
            f"Position closed for {position.symbol}",
            {
                "exchange": position.exchange,
                "symbol": position.symbol,
                "side": position.side.value,
                "size": position.size,
                "price": position.entry_price,
            },
            details={"realized_pnl": position.unrealized_pnl, "funding_paid": position.funding_paid},
        )
        return True

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    async def refresh_positions(self, symbols: Iterable[str]) -> List[Position]:
        """
        Re-read live positions for every (exchange, symbol) and sync the
        tracked set. Tracked entries the exchange reports flat are dropped.
        """
        pairs = [(name, symbol) for name in self.connectors for symbol in symbols]
        results = await asyncio.gather(
            *(self.connectors[name].get_position(symbol) for name, symbol in pairs),
            return_exceptions=True,
        )

        for (name, symbol), live in zip(pairs, results):
            if isinstance(live, BaseException):
                self.logger.warning(f"[{name}:{symbol}] position refresh failed: {live}")
                continue

            tracked_keys = [k for k in self._positions if k[0] == name and k[1] == symbol]
            if live is None:
                for key in tracked_keys:
                    self.logger.info(f"[{name}:{symbol}] {key[2].value} no longer open on exchange, untracking")
                    del self._positions[key]
                continue

            previous = self._positions.get(live.key)
            if previous is not None:
                live.opened_at = previous.opened_at
                live.funding_paid = previous.funding_paid
            live.last_updated_at = utc_now()
            self._positions[live.key] = live

            # Exchange holds one net position per symbol; a flipped side replaces the old entry.
            for key in tracked_keys:
                if key != live.key:
                    del self._positions[key]

        return self.get_active_positions()

    def get_position(self, symbol: str, exchange: str, side: Side) -> Optional[Position]:
        return self._positions.get((exchange, symbol, Side(side)))

    def get_active_positions(self) -> List[Position]:
        return list(self._positions.values())
