from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional


class Side(Enum):
    LONG = "long"
    SHORT = "short"

    @property
    def opposite(self) -> "Side":
        return Side.SHORT if self is Side.LONG else Side.LONG


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class MarketSnapshot:
    symbol: str
    exchange: str
    last_price: Decimal
    funding_rate: Decimal
    observed_at_ms: int   # UTC epoch milliseconds, set by the aggregator on refresh


@dataclass
class ArbitrageOpportunity:
    symbol: str
    long_exchange: str
    short_exchange: str
    funding_diff: Decimal     # absolute funding-rate difference, always >= 0
    expected_profit: Decimal  # |funding_diff| - price_deviation
    detected_at_ms: int
    price_deviation: Decimal = Decimal("0")
    long_funding_rate: Optional[Decimal] = None
    short_funding_rate: Optional[Decimal] = None


@dataclass
class Position:
    symbol: str
    exchange: str
    side: Side
    size: Decimal             # base-asset units
    leverage: int
    entry_price: Decimal
    unrealized_pnl: Decimal = Decimal("0")
    funding_paid: Decimal = Decimal("0")
    opened_at: datetime = field(default_factory=utc_now)
    last_updated_at: datetime = field(default_factory=utc_now)

    @property
    def key(self) -> tuple:
        return (self.exchange, self.symbol, self.side)

    @property
    def notional(self) -> Decimal:
        return self.size * self.entry_price


@dataclass
class TradeRequest:
    symbol: str
    exchange: str
    side: Side
    size: Decimal             # quote-currency notional, e.g. USDT
    leverage: int
    limit_price: Optional[Decimal] = None


@dataclass
class RiskMetrics:
    total_positions: int = 0
    total_exposure: Decimal = Decimal("0")
    current_drawdown: Decimal = Decimal("0")
    worst_position_drawdown: Decimal = Decimal("0")
    positions_per_symbol: Dict[str, int] = field(default_factory=dict)


@dataclass
class RiskDecision:
    approved: bool
    reason: str = ""


@dataclass
class RefreshSummary:
    attempted: int = 0
    succeeded: int = 0
    failed: list = field(default_factory=list)   # [(exchange, symbol), ...]
