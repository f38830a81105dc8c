import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import ccxt.async_support as ccxt
import pytest

from funding_arb.core.config import ExchangeCredentials
from funding_arb.core.errors import ConfigurationError, ExecutionError
from funding_arb.core.models import Side, TradeRequest
from funding_arb.data.market_data import MarketDataAggregator
from funding_arb.exchanges.ccxt_connector import CcxtConnector, create_connector, normalize_symbol

SYMBOL = "BTC/USDT:USDT"


def _client():
    client = Mock()
    client.markets = {SYMBOL: {"symbol": SYMBOL, "id": "BTCUSDT", "contractSize": 1}}
    client.market = Mock(side_effect=lambda s: client.markets[s] if s in client.markets else {"symbol": SYMBOL})
    client.load_markets = AsyncMock()
    client.amount_to_precision = Mock(side_effect=lambda s, amount: f"{amount:.3f}")
    client.fetch_ticker = AsyncMock(return_value={"last": 50000.0, "timestamp": 1_700_000_000_000})
    client.fetch_funding_rate = AsyncMock(return_value={"fundingRate": 0.0001})
    client.set_leverage = AsyncMock()
    client.create_order = AsyncMock(return_value={"id": "42", "filled": 0.002, "average": 50010.0})
    client.fetch_positions = AsyncMock(return_value=[])
    client.fetch_balance = AsyncMock(return_value={"total": {"USDT": 1234.5}})
    client.close = AsyncMock()
    return client


@pytest.fixture
def client():
    return _client()


@pytest.fixture
def connector(client):
    return CcxtConnector("binance", client=client)


class TestNormalizeSymbol:
    """Test shorthand symbol conversion."""

    @pytest.mark.parametrize("raw, expected", [
        ("BTC/USDT:USDT", "BTC/USDT:USDT"),
        ("BTC-USDT", "BTC/USDT:USDT"),
        ("btc-perp", "BTC/USDT:USDT"),
        ("ETHUSDT", "ETH/USDT:USDT"),
        ("SOL", "SOL/USDT:USDT"),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_symbol(raw) == expected


class TestMarketData:
    """Test ticker and funding rate conversion."""

    def test_fetch_market_data(self, connector, client):
        snap = asyncio.run(connector.fetch_market_data("BTC-USDT"))

        assert snap.symbol == "BTC-USDT"
        assert snap.exchange == "binance"
        assert snap.last_price == Decimal("50000.0")
        assert snap.funding_rate == Decimal("0.0001")
        assert snap.observed_at_ms == 1_700_000_000_000
        client.fetch_ticker.assert_awaited_once_with(SYMBOL)
        client.load_markets.assert_awaited_once()

    def test_missing_funding_rate_raises(self, connector, client):
        client.fetch_funding_rate.return_value = {"fundingRate": None}
        with pytest.raises(ValueError):
            asyncio.run(connector.fetch_funding_rate(SYMBOL))

    def test_invalid_price_raises(self, connector, client):
        client.fetch_ticker.return_value = {"last": None}
        with pytest.raises(ValueError):
            asyncio.run(connector.fetch_market_data(SYMBOL))


class TestExecuteTrade:
    """Test order placement from a quote notional."""

    def test_market_order(self, connector, client):
        request = TradeRequest(SYMBOL, "binance", Side.LONG, Decimal("100"), 3)

        position = asyncio.run(connector.execute_trade(request))

        client.set_leverage.assert_awaited_once_with(3, SYMBOL)
        client.create_order.assert_awaited_once_with(SYMBOL, "market", "buy", 0.002, None)
        assert position.side is Side.LONG
        assert position.size == Decimal("0.002")
        assert position.entry_price == Decimal("50010.0")
        assert position.leverage == 3

    def test_limit_order_uses_limit_price(self, connector, client):
        request = TradeRequest(SYMBOL, "binance", Side.SHORT, Decimal("120"), 2, limit_price=Decimal("40000"))

        asyncio.run(connector.execute_trade(request))

        client.fetch_ticker.assert_not_awaited()
        client.create_order.assert_awaited_once_with(SYMBOL, "limit", "sell", 0.003, 40000.0)

    def test_rejected_order_raises_execution_error(self, connector, client):
        client.create_order.side_effect = ccxt.InsufficientFunds("margin")
        request = TradeRequest(SYMBOL, "binance", Side.LONG, Decimal("100"), 3)

        with pytest.raises(ExecutionError):
            asyncio.run(connector.execute_trade(request))

    def test_leverage_failure_blocks_order(self, connector, client):
        client.set_leverage.side_effect = ccxt.ExchangeError("leverage")
        request = TradeRequest(SYMBOL, "binance", Side.LONG, Decimal("100"), 3)

        with pytest.raises(ExecutionError):
            asyncio.run(connector.execute_trade(request))
        client.create_order.assert_not_awaited()

    def test_amount_rounding_to_zero_raises(self, connector, client):
        request = TradeRequest(SYMBOL, "binance", Side.LONG, Decimal("0.01"), 3)
        with pytest.raises(ValueError):
            asyncio.run(connector.execute_trade(request))


class TestPositions:
    """Test position lookups and closing."""

    RAW = {"symbol": SYMBOL, "contracts": 0.5, "contractSize": 1, "side": "short",
           "entryPrice": 50000.0, "unrealizedPnl": -12.5, "leverage": 3, "timestamp": 1_700_000_000_000}

    def test_get_position(self, connector, client):
        client.fetch_positions.return_value = [self.RAW]

        position = asyncio.run(connector.get_position(SYMBOL))

        assert position.side is Side.SHORT
        assert position.size == Decimal("0.5")
        assert position.unrealized_pnl == Decimal("-12.5")
        assert position.leverage == 3

    def test_get_position_flat(self, connector, client):
        client.fetch_positions.return_value = [dict(self.RAW, contracts=0)]
        assert asyncio.run(connector.get_position(SYMBOL)) is None

    def test_close_position_sends_reduce_only(self, connector, client):
        client.fetch_positions.return_value = [self.RAW]

        assert asyncio.run(connector.close_position(SYMBOL)) is True

        client.create_order.assert_awaited_once_with(SYMBOL, "market", "buy", 0.5, None, {"reduceOnly": True})

    def test_close_when_flat_is_success(self, connector, client):
        assert asyncio.run(connector.close_position(SYMBOL)) is True
        client.create_order.assert_not_awaited()

    def test_close_failure_returns_false(self, connector, client):
        client.fetch_positions.return_value = [self.RAW]
        client.create_order.side_effect = ccxt.NetworkError("timeout")

        assert asyncio.run(connector.close_position(SYMBOL)) is False


class TestAccount:
    """Test balance and leverage calls."""

    def test_get_balance(self, connector):
        assert asyncio.run(connector.get_balance()) == Decimal("1234.5")

    def test_set_leverage_failure_returns_false(self, connector, client):
        client.set_leverage.side_effect = ccxt.ExchangeError("nope")
        assert asyncio.run(connector.set_leverage(SYMBOL, 5)) is False

    def test_close_releases_client(self, connector, client):
        asyncio.run(connector.close())
        client.close.assert_awaited_once()


class TestCreateConnector:
    """Test the connector factory."""

    def test_okx_requires_passphrase(self):
        with pytest.raises(ConfigurationError, match="passphrase"):
            create_connector("okx", ExchangeCredentials("okx", "k", "s"))

    def test_unsupported_exchange(self):
        with pytest.raises(ConfigurationError, match="Unsupported"):
            create_connector("nosuchexchange", ExchangeCredentials("nosuchexchange", "k", "s"))

    def test_binance_maps_to_usdm_futures(self):
        async def scenario():
            connector = create_connector("binance", ExchangeCredentials("binance", "k", "s"))
            try:
                return connector.name, connector.client.id
            finally:
                await connector.close()

        assert asyncio.run(scenario()) == ("binance", "binanceusdm")


class TestAggregatorIntegration:
    """Test the connector behind the market data aggregator."""

    def test_refresh_requests_funding_rate_once_per_pair(self, connector, client):
        aggregator = MarketDataAggregator({"binance": connector}, clock=lambda: 1_000)

        summary = asyncio.run(aggregator.refresh([SYMBOL]))

        assert summary.succeeded == 1
        assert aggregator.latest(SYMBOL, "binance").funding_rate == Decimal("0.0001")
        client.fetch_funding_rate.assert_awaited_once_with(SYMBOL)
        client.fetch_ticker.assert_awaited_once_with(SYMBOL)
