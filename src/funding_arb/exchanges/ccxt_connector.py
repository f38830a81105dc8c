"""
Perpetual-futures connector backed by ``ccxt.async_support``.

One class serves every ccxt exchange the engine trades on; the
exchange-specific wire formats and request signing stay inside ccxt.

Usage::

    from funding_arb.exchanges.ccxt_connector import create_connector

    connector = create_connector("okx", credentials)
    snapshot = await connector.fetch_market_data("BTC/USDT:USDT")
    position = await connector.execute_trade(request)
    await connector.close()
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import ccxt.async_support as ccxt

from funding_arb.core.config import ExchangeCredentials
from funding_arb.core.errors import ConfigurationError, ExecutionError
from funding_arb.core.models import MarketSnapshot, Position, Side, TradeRequest, utc_now
from funding_arb.exchanges.base import ExchangeConnector


# Engine exchange name -> ccxt exchange id.
CCXT_EXCHANGE_IDS = {
    "binance": "binanceusdm",
    "bybit": "bybit",
    "okx": "okx",
}

# Exchanges that reject signed requests without an API passphrase.
PASSPHRASE_REQUIRED = {"okx"}

# binanceusdm is futures-only; the others need the swap market selected.
_DEFAULT_TYPE = {
    "bybit": "swap",
    "okx": "swap",
}

DEFAULT_QUOTE = "USDT"


def normalize_symbol(symbol: str, quote: str = DEFAULT_QUOTE) -> str:
    """
    Convert shorthand symbols to the ccxt unified linear-perp form.

    ``BTC-USDT`` / ``BTC-PERP`` / ``BTCUSDT`` -> ``BTC/USDT:USDT``.
    Symbols that already contain ``/`` are returned unchanged.
    """
    if "/" in symbol:
        return symbol
    s = symbol.upper()
    for suffix in ("-PERP", "-SWAP"):
        if s.endswith(suffix):
            s = s[: -len(suffix)]
    if "-" in s:
        base, quote = s.split("-", 1)
    elif s.endswith(quote):
        base = s[: -len(quote)]
    else:
        base = s
    return f"{base}/{quote}:{quote}"


def create_connector(
    name: str,
    credentials: ExchangeCredentials,
    logger: Optional[logging.Logger] = None,
) -> "CcxtConnector":
    """Build the connector for one configured exchange.

    Raises ``ConfigurationError`` for unsupported exchanges and for OKX
    without a passphrase.
    """
    name = name.lower()
    if name in PASSPHRASE_REQUIRED and not credentials.passphrase:
        raise ConfigurationError(f"{name} requires a passphrase in the config")

    exchange_id = CCXT_EXCHANGE_IDS.get(name, name)
    if not hasattr(ccxt, exchange_id):
        raise ConfigurationError(f"Unsupported exchange: {name}")

    return CcxtConnector(name, credentials, logger=logger)


class CcxtConnector(ExchangeConnector):
    """
    ``ExchangeConnector`` over a ccxt async client.

    Trade requests carry a quote-currency notional; it is converted to a
    contract amount at the limit price (or the last traded price for market
    orders), rounded with the exchange's amount precision.

    Parameters
    ----------
    name : str
        Engine-facing exchange name, e.g. ``"binance"``.
    credentials : ExchangeCredentials
        Keys and testnet flag. Testnet turns on ccxt sandbox mode.
    logger : logging.Logger, optional
        Falls back to the module logger.
    client : ccxt.Exchange, optional
        Pre-built ccxt client (tests inject a mock here).
    """

    def __init__(
        self,
        name: str,
        credentials: Optional[ExchangeCredentials] = None,
        logger: Optional[logging.Logger] = None,
        client=None,
        quote_currency: str = DEFAULT_QUOTE,
    ) -> None:
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self.quote_currency = quote_currency
        self.client = client if client is not None else self._build_client(name, credentials)
        self._markets_loaded = False

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _build_client(name: str, credentials: Optional[ExchangeCredentials]):
        credentials = credentials or ExchangeCredentials(name=name)
        exchange_class = getattr(ccxt, CCXT_EXCHANGE_IDS.get(name, name))

        params = {
            "apiKey": credentials.api_key,
            "secret": credentials.api_secret,
            "enableRateLimit": True,
        }
        if credentials.passphrase:
            params["password"] = credentials.passphrase
        if name in _DEFAULT_TYPE:
            params["options"] = {"defaultType": _DEFAULT_TYPE[name]}

        client = exchange_class(params)
        if credentials.testnet:
            client.set_sandbox_mode(True)
        return client

    async def _ensure_markets(self) -> None:
        if not self._markets_loaded:
            await self.client.load_markets()
            self._markets_loaded = True
            self.logger.debug(f"{self.name} market metadata loaded.")

    async def _to_ccxt_symbol(self, symbol: str) -> str:
        await self._ensure_markets()
        markets = self.client.markets or {}
        if symbol in markets:
            return symbol
        candidate = normalize_symbol(symbol, self.quote_currency)
        if candidate in markets:
            return candidate
        # Raw exchange ids such as "BTCUSDT" resolve through ccxt itself.
        return self.client.market(symbol)["symbol"]

    def _contract_size(self, ccxt_symbol: str) -> Decimal:
        market = self.client.market(ccxt_symbol)
        return Decimal(str(market.get("contractSize") or 1))

    def _calculate_amount(
        self,
        ccxt_symbol: str,
        notional: Decimal,
        price: Decimal,
    ) -> tuple[Decimal, Decimal]:
        """
        Contract amount for a quote notional at *price*.

        Returns
        -------
        (amount, contract_size) : tuple[Decimal, Decimal]
        """
        if price <= 0:
            raise ValueError(f"Invalid price for {ccxt_symbol}: {price}")
        contract_size = self._contract_size(ccxt_symbol)
        raw_amount = notional / price / contract_size
        amount = Decimal(str(self.client.amount_to_precision(ccxt_symbol, float(raw_amount))))
        if amount <= 0:
            raise ValueError(
                f"Calculated amount rounds to 0 for {ccxt_symbol} "
                f"(notional={notional}, price={price})"
            )
        return amount, contract_size

    async def _last_price(self, ccxt_symbol: str) -> Decimal:
        ticker = await self.client.fetch_ticker(ccxt_symbol)
        last = ticker.get("last")
        if last is None or Decimal(str(last)) <= 0:
            raise ValueError(f"Invalid last price for {ccxt_symbol}: {last}")
        return Decimal(str(last))

    async def _fetch_raw_position(self, ccxt_symbol: str) -> Optional[dict]:
        positions = await self.client.fetch_positions([ccxt_symbol])
        for pos in positions or []:
            if pos.get("symbol") == ccxt_symbol and Decimal(str(pos.get("contracts") or 0)) != 0:
                return pos
        return None

    def _to_position(self, symbol: str, raw: dict) -> Position:
        contracts = abs(Decimal(str(raw.get("contracts") or 0)))
        contract_size = Decimal(str(raw.get("contractSize") or 1))
        side = Side.SHORT if raw.get("side") == "short" else Side.LONG
        leverage = max(1, int(Decimal(str(raw.get("leverage") or 1))))

        ts = raw.get("timestamp")
        updated = datetime.fromtimestamp(ts / 1000, tz=timezone.utc) if ts else utc_now()

        return Position(
            symbol=symbol,
            exchange=self.name,
            side=side,
            size=contracts * contract_size,
            leverage=leverage,
            entry_price=Decimal(str(raw.get("entryPrice") or 0)),
            unrealized_pnl=Decimal(str(raw.get("unrealizedPnl") or 0)),
            opened_at=updated,
            last_updated_at=updated,
        )

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def fetch_funding_rate(self, symbol: str) -> Decimal:
        ccxt_symbol = await self._to_ccxt_symbol(symbol)
        data = await self.client.fetch_funding_rate(ccxt_symbol)
        rate = data.get("fundingRate") if data else None
        if rate is None:
            raise ValueError(f"{self.name} returned no funding rate for {ccxt_symbol}")
        return Decimal(str(rate))

    async def fetch_market_data(self, symbol: str) -> MarketSnapshot:
        ccxt_symbol = await self._to_ccxt_symbol(symbol)
        ticker = await self.client.fetch_ticker(ccxt_symbol)
        last = ticker.get("last")
        if last is None or Decimal(str(last)) <= 0:
            raise ValueError(f"Invalid last price for {ccxt_symbol}: {last}")

        funding_rate = await self.fetch_funding_rate(symbol)
        return MarketSnapshot(
            symbol=symbol,
            exchange=self.name,
            last_price=Decimal(str(last)),
            funding_rate=funding_rate,
            observed_at_ms=int(ticker.get("timestamp") or time.time() * 1000),
        )

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    async def set_leverage(self, symbol: str, leverage: int) -> bool:
        try:
            ccxt_symbol = await self._to_ccxt_symbol(symbol)
            await self.client.set_leverage(leverage, ccxt_symbol)
            self.logger.debug(f"[{self.name}] leverage set to {leverage}x for {ccxt_symbol}.")
            return True
        except ccxt.BaseError as exc:
            self.logger.warning(f"[{self.name}] set_leverage {symbol} {leverage}x failed: {exc}")
            return False

    async def execute_trade(self, request: TradeRequest) -> Position:
        """
        Set leverage, then place a market (or limit, when ``limit_price`` is
        given) order for ``request.size`` quote notional.

        Raises
        ------
        ExecutionError
            Leverage could not be set or the exchange rejected the order.
        """
        ccxt_symbol = await self._to_ccxt_symbol(request.symbol)

        if not await self.set_leverage(request.symbol, request.leverage):
            raise ExecutionError(
                f"[{self.name}] could not set {request.leverage}x leverage on {ccxt_symbol}"
            )

        if request.limit_price is not None:
            order_type, price = "limit", request.limit_price
        else:
            order_type, price = "market", await self._last_price(ccxt_symbol)

        amount, contract_size = self._calculate_amount(ccxt_symbol, request.size, price)
        order_side = "buy" if request.side is Side.LONG else "sell"

        try:
            order = await self.client.create_order(
                ccxt_symbol,
                order_type,
                order_side,
                float(amount),
                float(price) if order_type == "limit" else None,
            )
        except ccxt.BaseError as exc:
            raise ExecutionError(f"[{self.name}] {order_side} {ccxt_symbol} rejected: {exc}") from exc

        filled = Decimal(str(order.get("filled") or amount))
        average = Decimal(str(order.get("average") or price))
        self.logger.info(
            f"[{self.name}:{ccxt_symbol}] {request.side.value.upper()} OPENED | "
            f"order_id={order.get('id')}, filled={filled}, avg_price={average}, "
            f"leverage={request.leverage}x"
        )

        now = utc_now()
        return Position(
            symbol=request.symbol,
            exchange=self.name,
            side=request.side,
            size=filled * contract_size,
            leverage=request.leverage,
            entry_price=average,
            opened_at=now,
            last_updated_at=now,
        )

    async def get_position(self, symbol: str) -> Optional[Position]:
        ccxt_symbol = await self._to_ccxt_symbol(symbol)
        raw = await self._fetch_raw_position(ccxt_symbol)
        if raw is None:
            return None
        return self._to_position(symbol, raw)

    async def close_position(self, symbol: str) -> bool:
        """
        Close the live position with a reduce-only market order.

        Returns ``True`` when flat afterwards (including when already flat),
        ``False`` when the exchange call failed.
        """
        try:
            ccxt_symbol = await self._to_ccxt_symbol(symbol)
            raw = await self._fetch_raw_position(ccxt_symbol)
            if raw is None:
                return True

            contracts = abs(Decimal(str(raw.get("contracts") or 0)))
            close_side = "buy" if raw.get("side") == "short" else "sell"
            order = await self.client.create_order(
                ccxt_symbol,
                "market",
                close_side,
                float(contracts),
                None,
                {"reduceOnly": True},
            )
            self.logger.info(
                f"[{self.name}:{ccxt_symbol}] POSITION CLOSED | "
                f"order_id={order.get('id')}, filled={order.get('filled')}, "
                f"avg_price={order.get('average')}"
            )
            return True
        except Exception as exc:
            self.logger.error(f"[{self.name}:{symbol}] Failed to close position: {exc}")
            return False

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    async def get_balance(self) -> Decimal:
        balance = await self.client.fetch_balance()
        total = (balance.get("total") or {}).get(self.quote_currency) or 0
        return Decimal(str(total))

    async def close(self) -> None:
        await self.client.close()
