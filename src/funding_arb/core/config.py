"""
Engine configuration.

The JSON config file is parsed once at startup into the frozen dataclasses
below and handed to each component's constructor. Numeric options are
converted to ``Decimal`` through ``str`` so that thresholds such as
``0.0005`` keep their exact decimal value.

File layout (``config/funding_arb_config.json``)::

    {
      "symbols": ["BTC/USDT:USDT", "ETH/USDT:USDT"],
      "exchanges": {
        "binance": {"api_key": "$BINANCE_API_KEY", "api_secret": "$BINANCE_API_SECRET", "testnet": true},
        "okx": {"api_key": "...", "api_secret": "...", "passphrase": "...", "testnet": true}
      },
      "min_funding_diff": 0.001,
      "min_profit_threshold": 0.002,
      "risk_management": {"max_leverage": 3, ...},
      "monitoring_interval_ms": 60000,
      "trading_enabled": false
    }

Credential values written as ``$NAME`` or ``${NAME}`` are looked up in the
environment mapping passed to :func:`load_config` / :meth:`EngineConfig.from_dict`.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Mapping, Optional

from funding_arb.core.errors import ConfigurationError


MIN_MONITORING_INTERVAL_MS = 1000

DEFAULT_MONITORING_INTERVAL_MS = 60_000
DEFAULT_STALENESS_THRESHOLD_MS = 60_000


def to_decimal(value, name: str) -> Decimal:
    """Convert a JSON number or numeric string to ``Decimal``."""
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be a number, got {value!r}")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from exc


def resolve_env_ref(value: Optional[str], environ: Mapping[str, str]) -> Optional[str]:
    """Expand ``$NAME`` / ``${NAME}`` to the environment value (empty if unset)."""
    if not isinstance(value, str) or not value.startswith("$"):
        return value
    name = value[1:]
    if name.startswith("{") and name.endswith("}"):
        name = name[1:-1]
    return environ.get(name, "")


@dataclass(frozen=True)
class ExchangeCredentials:
    name: str
    api_key: str = ""
    api_secret: str = ""
    passphrase: Optional[str] = None
    testnet: bool = False

    @property
    def has_keys(self) -> bool:
        return bool(self.api_key and self.api_secret)


@dataclass(frozen=True)
class RiskConfig:
    max_leverage: int = 3
    max_positions_per_symbol: int = 2
    max_total_positions: int = 6
    max_drawdown: Decimal = Decimal("0.1")
    stop_loss_percentage: Decimal = Decimal("0.02")     # fraction of notional
    take_profit_percentage: Decimal = Decimal("0.05")   # fraction of notional


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: Optional[str] = None
    chat_id: Optional[str] = None


@dataclass(frozen=True)
class DiscordConfig:
    webhook_url: Optional[str] = None


@dataclass(frozen=True)
class NotificationConfig:
    enabled: bool = False
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    discord: DiscordConfig = field(default_factory=DiscordConfig)


@dataclass(frozen=True)
class EngineConfig:
    symbols: tuple
    exchanges: tuple                                   # tuple[ExchangeCredentials, ...]
    min_funding_diff: Decimal = Decimal("0.001")
    min_profit_threshold: Decimal = Decimal("0.002")
    base_position_size: Decimal = Decimal("100")
    max_position_size: Decimal = Decimal("1000")
    max_position_size_percent: Optional[Decimal] = None
    max_size_multiplier: Decimal = Decimal("1.5")
    default_leverage: int = 3
    initial_balance: Decimal = Decimal("1000")
    risk_management: RiskConfig = field(default_factory=RiskConfig)
    monitoring_interval_ms: int = DEFAULT_MONITORING_INTERVAL_MS
    staleness_threshold_ms: int = DEFAULT_STALENESS_THRESHOLD_MS
    trading_enabled: bool = False
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    signals_path: Optional[str] = None
    log_path: str = "logs"
    log_level: str = "INFO"

    @property
    def exchange_names(self) -> list[str]:
        return [ex.name for ex in self.exchanges]

    @property
    def monitoring_interval_sec(self) -> float:
        return self.monitoring_interval_ms / 1000

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, raw: dict, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """Build and validate an ``EngineConfig`` from a parsed JSON dict."""
        if not isinstance(raw, dict):
            raise ConfigurationError("configuration root must be a JSON object")
        env = environ if environ is not None else {}

        exchanges = []
        for name, ex_raw in (raw.get("exchanges") or {}).items():
            ex_raw = ex_raw or {}
            exchanges.append(ExchangeCredentials(
                name=name.lower(),
                api_key=resolve_env_ref(ex_raw.get("api_key", ""), env) or "",
                api_secret=resolve_env_ref(ex_raw.get("api_secret", ""), env) or "",
                passphrase=resolve_env_ref(ex_raw.get("passphrase"), env) or None,
                testnet=bool(ex_raw.get("testnet", False)),
            ))

        risk_raw = raw.get("risk_management") or {}
        defaults = RiskConfig()
        risk = RiskConfig(
            max_leverage=int(risk_raw.get("max_leverage", defaults.max_leverage)),
            max_positions_per_symbol=int(
                risk_raw.get("max_positions_per_symbol", defaults.max_positions_per_symbol)
            ),
            max_total_positions=int(risk_raw.get("max_total_positions", defaults.max_total_positions)),
            max_drawdown=to_decimal(risk_raw.get("max_drawdown", defaults.max_drawdown), "max_drawdown"),
            stop_loss_percentage=to_decimal(
                risk_raw.get("stop_loss_percentage", defaults.stop_loss_percentage),
                "stop_loss_percentage",
            ),
            take_profit_percentage=to_decimal(
                risk_raw.get("take_profit_percentage", defaults.take_profit_percentage),
                "take_profit_percentage",
            ),
        )

        notif_raw = raw.get("notifications") or {}
        telegram_raw = notif_raw.get("telegram") or {}
        discord_raw = notif_raw.get("discord") or {}
        notifications = NotificationConfig(
            enabled=bool(notif_raw.get("enabled", False)),
            telegram=TelegramConfig(
                bot_token=resolve_env_ref(telegram_raw.get("bot_token"), env) or None,
                chat_id=resolve_env_ref(telegram_raw.get("chat_id"), env) or None,
            ),
            discord=DiscordConfig(
                webhook_url=resolve_env_ref(discord_raw.get("webhook_url"), env) or None,
            ),
        )

        percent = raw.get("max_position_size_percent")

        config = cls(
            symbols=tuple(raw.get("symbols") or ()),
            exchanges=tuple(exchanges),
            min_funding_diff=to_decimal(raw.get("min_funding_diff", cls.min_funding_diff), "min_funding_diff"),
            min_profit_threshold=to_decimal(
                raw.get("min_profit_threshold", cls.min_profit_threshold), "min_profit_threshold"
            ),
            base_position_size=to_decimal(
                raw.get("base_position_size", cls.base_position_size), "base_position_size"
            ),
            max_position_size=to_decimal(
                raw.get("max_position_size", cls.max_position_size), "max_position_size"
            ),
            max_position_size_percent=(
                to_decimal(percent, "max_position_size_percent") if percent is not None else None
            ),
            max_size_multiplier=to_decimal(
                raw.get("max_size_multiplier", cls.max_size_multiplier), "max_size_multiplier"
            ),
            default_leverage=int(raw.get("default_leverage", cls.default_leverage)),
            initial_balance=to_decimal(raw.get("initial_balance", cls.initial_balance), "initial_balance"),
            risk_management=risk,
            monitoring_interval_ms=int(raw.get("monitoring_interval_ms", DEFAULT_MONITORING_INTERVAL_MS)),
            staleness_threshold_ms=int(raw.get("staleness_threshold_ms", DEFAULT_STALENESS_THRESHOLD_MS)),
            trading_enabled=bool(raw.get("trading_enabled", False)),
            notifications=notifications,
            signals_path=raw.get("signals_path"),
            log_path=raw.get("log_path", "logs"),
            log_level=str(raw.get("log_level", "INFO")).upper(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Raise ``ConfigurationError`` listing every invalid option."""
        errors = []

        if not self.symbols:
            errors.append("at least one symbol must be configured")
        if len(self.exchanges) < 2:
            errors.append("at least two exchanges are required for cross-exchange arbitrage")
        if self.monitoring_interval_ms < MIN_MONITORING_INTERVAL_MS:
            errors.append(f"monitoring_interval_ms must be >= {MIN_MONITORING_INTERVAL_MS}")
        if self.staleness_threshold_ms <= 0:
            errors.append("staleness_threshold_ms must be positive")
        if self.min_funding_diff < 0:
            errors.append("min_funding_diff must be >= 0")
        if self.base_position_size < 0 or self.max_position_size < 0:
            errors.append("position sizes must be >= 0")
        if self.max_size_multiplier < 0:
            errors.append("max_size_multiplier must be >= 0")
        if self.max_position_size_percent is not None and not (0 < self.max_position_size_percent <= 1):
            errors.append("max_position_size_percent must be in (0, 1]")
        if self.initial_balance <= 0:
            errors.append("initial_balance must be positive")
        if self.default_leverage < 1:
            errors.append("default_leverage must be >= 1")

        risk = self.risk_management
        if risk.max_leverage < 1:
            errors.append("risk_management.max_leverage must be >= 1")
        if not (0 <= risk.max_drawdown <= 1):
            errors.append("risk_management.max_drawdown must be in [0, 1]")
        if risk.stop_loss_percentage < 0 or risk.take_profit_percentage < 0:
            errors.append("risk_management stop-loss / take-profit must be >= 0")
        if risk.max_positions_per_symbol < 0 or risk.max_total_positions < 0:
            errors.append("risk_management position limits must be >= 0")

        if self.trading_enabled:
            for ex in self.exchanges:
                if not ex.has_keys:
                    errors.append(f"exchange '{ex.name}' needs api_key and api_secret when trading is enabled")

        if errors:
            raise ConfigurationError("; ".join(errors))


def load_config(config_path, environ: Optional[Mapping[str, str]] = None) -> EngineConfig:
    """Read the JSON config file and return a validated ``EngineConfig``."""
    with open(Path(config_path), "r") as f:
        raw = json.load(f)
    return EngineConfig.from_dict(raw, environ=os.environ if environ is None else environ)
