from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional

from funding_arb.core.models import MarketSnapshot, Position, TradeRequest


class ExchangeConnector(ABC):
    """Capability surface every exchange adapter provides to the engine.

    All methods are coroutines. Failures surface as exceptions except where
    the return type is a success flag.
    """

    name: str

    # Market Data Methods
    @abstractmethod
    async def fetch_market_data(self, symbol: str) -> MarketSnapshot:
        """Last price and current funding rate in one snapshot."""

    @abstractmethod
    async def fetch_funding_rate(self, symbol: str) -> Decimal:
        pass

    # Trading Methods
    @abstractmethod
    async def execute_trade(self, request: TradeRequest) -> Position:
        """Set leverage, then place the order. Returns the opened position."""

    @abstractmethod
    async def get_position(self, symbol: str) -> Optional[Position]:
        """Return the live position, or ``None`` when flat."""

    @abstractmethod
    async def close_position(self, symbol: str) -> bool:
        pass

    # Account Methods
    @abstractmethod
    async def get_balance(self) -> Decimal:
        pass

    @abstractmethod
    async def set_leverage(self, symbol: str, leverage: int) -> bool:
        pass

    async def close(self) -> None:
        """Release client resources. Default: nothing to release."""
