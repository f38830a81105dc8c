"""
Pre-trade validation and exit triggers.

``RiskManager`` holds the current ``RiskMetrics`` snapshot. Metrics are
replaced wholesale by ``update_metrics``; every check reads them without
side effects, so validating the same request twice gives the same answer.
"""

from __future__ import annotations

import logging
from copy import deepcopy
from decimal import Decimal
from typing import Iterable, Optional

from funding_arb.core.config import EngineConfig, RiskConfig
from funding_arb.core.models import Position, RiskDecision, RiskMetrics, TradeRequest


REASON_SIZE = "position size exceeds maximum"
REASON_LEVERAGE = "leverage exceeds maximum"
REASON_SYMBOL_LIMIT = "maximum positions per symbol reached"
REASON_TOTAL_LIMIT = "maximum total positions reached"
REASON_DRAWDOWN = "projected drawdown exceeds maximum"


class RiskManager:
    """
    Parameters
    ----------
    risk_config : RiskConfig
        Leverage, position-count, drawdown and exit thresholds.
    max_position_size : Decimal
        Largest quote notional accepted for one leg.
    initial_balance : Decimal
        Account size that drawdowns are measured against.
    """

    def __init__(
        self,
        risk_config: RiskConfig,
        max_position_size: Decimal,
        initial_balance: Decimal,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = risk_config
        self.max_position_size = max_position_size
        self.initial_balance = initial_balance
        self.logger = logger or logging.getLogger(__name__)
        self._metrics = RiskMetrics()

    @classmethod
    def from_config(cls, config: EngineConfig, logger: Optional[logging.Logger] = None) -> "RiskManager":
        return cls(
            config.risk_management,
            config.max_position_size,
            config.initial_balance,
            logger=logger,
        )

    # ------------------------------------------------------------------
    # Pre-trade checks
    # ------------------------------------------------------------------

    def evaluate_trade(self, request: TradeRequest) -> RiskDecision:
        """Run the checks in fixed order and report the first failure."""
        cfg = self.config
        metrics = self._metrics

        if request.size > self.max_position_size:
            return RiskDecision(False, REASON_SIZE)
        if request.leverage > cfg.max_leverage:
            return RiskDecision(False, REASON_LEVERAGE)
        if metrics.positions_per_symbol.get(request.symbol, 0) >= cfg.max_positions_per_symbol:
            return RiskDecision(False, REASON_SYMBOL_LIMIT)
        if metrics.total_positions >= cfg.max_total_positions:
            return RiskDecision(False, REASON_TOTAL_LIMIT)

        projected_loss = request.size * request.leverage * cfg.stop_loss_percentage
        if projected_loss / self.initial_balance > cfg.max_drawdown:
            return RiskDecision(False, REASON_DRAWDOWN)

        return RiskDecision(True)

    def validate_trade(self, request: TradeRequest) -> bool:
        decision = self.evaluate_trade(request)
        if not decision.approved:
            self.logger.warning(
                f"[{request.exchange}:{request.symbol}] {request.side.value} rejected: {decision.reason} "
                f"(size={request.size}, leverage={request.leverage}x)"
            )
        return decision.approved

    # ------------------------------------------------------------------
    # Exit triggers
    # ------------------------------------------------------------------

    @staticmethod
    def pnl_ratio(position: Position) -> Optional[Decimal]:
        notional = position.size * position.entry_price
        if notional == 0:
            return None
        return position.unrealized_pnl / notional

    def should_take_profit(self, position: Position) -> bool:
        ratio = self.pnl_ratio(position)
        return ratio is not None and ratio >= self.config.take_profit_percentage

    def should_stop_loss(self, position: Position) -> bool:
        ratio = self.pnl_ratio(position)
        return ratio is not None and ratio <= -self.config.stop_loss_percentage

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def update_metrics(self, positions: Iterable[Position]) -> RiskMetrics:
        """Recompute all metrics from *positions* and return a copy."""
        positions = list(positions)

        per_symbol: dict = {}
        for p in positions:
            per_symbol[p.symbol] = per_symbol.get(p.symbol, 0) + 1

        total_pnl = sum((p.unrealized_pnl for p in positions), Decimal("0"))
        worst = min((p.unrealized_pnl / self.initial_balance for p in positions), default=Decimal("0"))

        self._metrics = RiskMetrics(
            total_positions=len(positions),
            total_exposure=sum((p.size * p.entry_price * p.leverage for p in positions), Decimal("0")),
            current_drawdown=total_pnl / self.initial_balance,
            worst_position_drawdown=min(Decimal("0"), worst),
            positions_per_symbol=per_symbol,
        )
        return self.get_metrics()

    def get_metrics(self) -> RiskMetrics:
        return deepcopy(self._metrics)
