"""Shared fixtures: in-memory exchange connectors and engine configs."""

from decimal import Decimal
from typing import Optional

import pytest

from funding_arb.core.config import EngineConfig, ExchangeCredentials, RiskConfig
from funding_arb.core.models import MarketSnapshot, Position, TradeRequest
from funding_arb.exchanges.base import ExchangeConnector


class FakeConnector(ExchangeConnector):
    """Scriptable connector that records every call."""

    def __init__(self, name, prices=None, rates=None):
        self.name = name
        self.prices = {k: Decimal(str(v)) for k, v in (prices or {}).items()}
        self.rates = {k: Decimal(str(v)) for k, v in (rates or {}).items()}
        self.fail_symbols = set()
        self.trade_error: Optional[Exception] = None
        self.positions = {}
        self.close_result = True
        self.close_error: Optional[Exception] = None
        self.balance = Decimal("1000")
        self.trades = []
        self.closed = []
        self.leverage_calls = []

    async def fetch_market_data(self, symbol):
        if symbol in self.fail_symbols:
            raise ConnectionError(f"{self.name} ticker unavailable")
        return MarketSnapshot(symbol, self.name, self.prices[symbol], self.rates[symbol], 0)

    async def fetch_funding_rate(self, symbol):
        if symbol in self.fail_symbols:
            raise ConnectionError(f"{self.name} funding unavailable")
        return self.rates[symbol]

    async def execute_trade(self, request: TradeRequest):
        self.trades.append(request)
        if self.trade_error is not None:
            raise self.trade_error
        await self.set_leverage(request.symbol, request.leverage)
        price = self.prices.get(request.symbol, Decimal("100"))
        position = Position(
            symbol=request.symbol,
            exchange=self.name,
            side=request.side,
            size=request.size / price,
            leverage=request.leverage,
            entry_price=price,
        )
        self.positions[request.symbol] = position
        return position

    async def get_position(self, symbol):
        return self.positions.get(symbol)

    async def close_position(self, symbol):
        self.closed.append(symbol)
        if self.close_error is not None:
            raise self.close_error
        if self.close_result:
            self.positions.pop(symbol, None)
        return self.close_result

    async def get_balance(self):
        return self.balance

    async def set_leverage(self, symbol, leverage):
        self.leverage_calls.append((symbol, leverage))
        return True


@pytest.fixture
def make_connector():
    """Factory: ``make_connector("A", prices={...}, rates={...})``."""
    return FakeConnector


@pytest.fixture
def engine_config():
    def _build(**overrides):
        params = dict(
            symbols=("BTC",),
            exchanges=(ExchangeCredentials("A"), ExchangeCredentials("B")),
            min_funding_diff=Decimal("0.001"),
            min_profit_threshold=Decimal("0.002"),
            base_position_size=Decimal("100"),
            max_position_size=Decimal("1000"),
            initial_balance=Decimal("10000"),
            risk_management=RiskConfig(),
        )
        params.update(overrides)
        return EngineConfig(**params)

    return _build


@pytest.fixture
def recording_notifier():
    """NotificationService stand-in that records (method, kind, message)."""

    class RecordingNotifier:
        def __init__(self):
            self.sent = []

        def send_system_notification(self, kind, message):
            self.sent.append(("system", kind, message))

        def send_trade_notification(self, kind, message, trade, details=None):
            self.sent.append(("trade", kind, message))

        def send_error_notification(self, kind, message, error):
            self.sent.append(("error", kind, message))

        async def drain(self):
            pass

        def kinds(self, channel=None):
            return [k for c, k, _ in self.sent if channel is None or c == channel]

    return RecordingNotifier()
