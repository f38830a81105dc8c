from decimal import Decimal

import pytest

from funding_arb.core.config import RiskConfig
from funding_arb.core.models import Position, Side, TradeRequest
from funding_arb.risk.risk_manager import (
    REASON_DRAWDOWN,
    REASON_LEVERAGE,
    REASON_SIZE,
    REASON_SYMBOL_LIMIT,
    REASON_TOTAL_LIMIT,
    RiskManager,
)


def _manager(**risk):
    return RiskManager(RiskConfig(**risk), max_position_size=Decimal("1000"), initial_balance=Decimal("10000"))


def _request(size="100", leverage=2, symbol="BTC"):
    return TradeRequest(symbol, "A", Side.LONG, Decimal(size), leverage)


def _position(symbol="BTC", exchange="A", side=Side.LONG, size="1", price="100", pnl="0", leverage=1):
    return Position(symbol, exchange, side, Decimal(size), leverage, Decimal(price), unrealized_pnl=Decimal(pnl))


class TestValidateTrade:
    """Test pre-trade checks and their order."""

    def test_oversized_trade_is_rejected(self):
        rm = _manager()
        decision = rm.evaluate_trade(_request(size="2000"))

        assert not decision.approved
        assert decision.reason == "position size exceeds maximum"
        assert rm.validate_trade(_request(size="2000")) is False

    def test_valid_trade_is_approved(self):
        rm = _manager()
        assert rm.validate_trade(_request()) is True
        assert rm.evaluate_trade(_request()).reason == ""

    def test_leverage_limit(self):
        assert _manager(max_leverage=3).evaluate_trade(_request(leverage=5)).reason == REASON_LEVERAGE

    def test_size_checked_before_leverage(self):
        assert _manager(max_leverage=3).evaluate_trade(_request(size="5000", leverage=5)).reason == REASON_SIZE

    def test_per_symbol_limit(self):
        rm = _manager(max_positions_per_symbol=2)
        rm.update_metrics([_position(exchange="A"), _position(exchange="B", side=Side.SHORT)])

        assert rm.evaluate_trade(_request(symbol="BTC")).reason == REASON_SYMBOL_LIMIT
        assert rm.evaluate_trade(_request(symbol="ETH")).approved

    def test_total_limit(self):
        rm = _manager(max_total_positions=2, max_positions_per_symbol=5)
        rm.update_metrics([_position(symbol="ETH"), _position(symbol="SOL")])

        assert rm.evaluate_trade(_request(symbol="BTC")).reason == REASON_TOTAL_LIMIT

    def test_projected_drawdown_limit(self):
        # 1000 * 3 * 0.5 / 10000 = 0.15 > 0.1
        rm = _manager(max_leverage=5, stop_loss_percentage=Decimal("0.5"), max_drawdown=Decimal("0.1"))
        assert rm.evaluate_trade(_request(size="1000", leverage=3)).reason == REASON_DRAWDOWN

    def test_validation_is_idempotent(self):
        rm = _manager()
        rm.update_metrics([_position()])
        before = rm.get_metrics()

        results = [rm.validate_trade(_request(size=s)) for s in ("100", "2000", "100", "2000")]

        assert results == [True, False, True, False]
        assert rm.get_metrics() == before

    def test_rejection_is_logged(self, caplog):
        rm = _manager()
        with caplog.at_level("WARNING"):
            rm.validate_trade(_request(size="2000"))
        assert "position size exceeds maximum" in caplog.text


class TestExitTriggers:
    """Test take-profit and stop-loss predicates."""

    @pytest.mark.parametrize("pnl, take_profit, stop_loss", [
        ("5", True, False),      # +5% of 100 notional
        ("4.99", False, False),
        ("-2", False, True),     # -2%
        ("-1.99", False, False),
    ])
    def test_thresholds(self, pnl, take_profit, stop_loss):
        rm = _manager(take_profit_percentage=Decimal("0.05"), stop_loss_percentage=Decimal("0.02"))
        position = _position(size="1", price="100", pnl=pnl)

        assert rm.should_take_profit(position) is take_profit
        assert rm.should_stop_loss(position) is stop_loss

    def test_zero_notional_never_triggers(self):
        rm = _manager()
        position = _position(size="0", pnl="-50")

        assert rm.should_take_profit(position) is False
        assert rm.should_stop_loss(position) is False


class TestMetrics:
    """Test wholesale metrics recomputation."""

    def test_metrics_identities(self):
        rm = _manager()
        positions = [
            _position(symbol="BTC", exchange="A", size="0.01", price="50000", pnl="20", leverage=3),
            _position(symbol="BTC", exchange="B", side=Side.SHORT, size="0.01", price="50010", pnl="-50", leverage=3),
            _position(symbol="ETH", exchange="A", size="1", price="3000", pnl="10", leverage=2),
        ]

        metrics = rm.update_metrics(positions)

        assert metrics.total_positions == len(positions)
        assert metrics.total_exposure == sum(p.size * p.entry_price * p.leverage for p in positions)
        assert metrics.current_drawdown == Decimal("-20") / Decimal("10000")
        assert metrics.worst_position_drawdown == Decimal("-50") / Decimal("10000")
        assert metrics.positions_per_symbol == {"BTC": 2, "ETH": 1}

    def test_empty_positions_reset_metrics(self):
        rm = _manager()
        rm.update_metrics([_position()])
        metrics = rm.update_metrics([])

        assert metrics.total_positions == 0
        assert metrics.total_exposure == 0
        assert metrics.worst_position_drawdown == 0
        assert metrics.positions_per_symbol == {}

    def test_get_metrics_returns_copy(self):
        rm = _manager()
        rm.update_metrics([_position()])

        copy = rm.get_metrics()
        copy.positions_per_symbol["BTC"] = 99

        assert rm.get_metrics().positions_per_symbol == {"BTC": 1}
