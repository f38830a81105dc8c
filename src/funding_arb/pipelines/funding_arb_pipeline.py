"""
Funding Arbitrage Pipeline: main entry point.

Wires the engine together explicitly and runs it until SIGINT / SIGTERM:

    [1] INIT        Load config, setup logger, create directories
    [2] CONNECTORS  One ccxt connector per configured exchange
    [3] WIRING      Aggregator, detector, risk, execution, notifications
    [4] MONITORING  Fixed-interval scheduler until a stop signal arrives
    [5] SHUTDOWN    Finish the running cycle, flush alerts, close clients

Usage::

    funding-arb                                   # config/funding_arb_config.json
    funding-arb --config path/to/config.json
"""

import argparse
import asyncio
import logging
import signal
from dataclasses import replace
from pathlib import Path
from typing import Dict, Optional

from funding_arb.core.config import EngineConfig, load_config
from funding_arb.data.market_data import MarketDataAggregator
from funding_arb.exchanges.base import ExchangeConnector
from funding_arb.exchanges.ccxt_connector import create_connector
from funding_arb.execution.trade_executor import TradeExecutionOrchestrator
from funding_arb.notifications.notifier import NotificationService
from funding_arb.pipelines.monitoring_scheduler import MonitoringScheduler
from funding_arb.risk.risk_manager import RiskManager
from funding_arb.strategies.funding_arb import OpportunityDetector, OpportunityFeed
from funding_arb.utils.logger import setup_logger

# ---------------------------------------------------------------------------
# Project root (src/funding_arb/pipelines/ -> repo root)
# ---------------------------------------------------------------------------
ROOT = Path(__file__).resolve().parents[3]
DEFAULT_CONFIG_PATH = ROOT / "config" / "funding_arb_config.json"


# ═══════════════════════════════════════════════════════════════════════════
# STAGE 1: INIT
# ═══════════════════════════════════════════════════════════════════════════

def init(config_path: Optional[Path] = None) -> tuple[EngineConfig, logging.Logger]:
    """
    Load configuration, setup logger, ensure directories exist.

    Returns
    -------
    config : EngineConfig
        Validated engine configuration.
    logger : logging.Logger
        Configured rotating logger (parent of every ``funding_arb.*`` logger).
    """
    config_path = Path(config_path or DEFAULT_CONFIG_PATH)
    config = load_config(config_path)

    log_path = ROOT / config.log_path / "funding_arb_pipeline.log"
    logger = setup_logger("funding_arb", log_path, level=config.log_level)

    logger.info("=" * 60)
    logger.info("Funding Arbitrage Pipeline starting")
    logger.info("=" * 60)
    logger.info(f"Config loaded from: {config_path}")
    logger.info(
        f"Symbols: {list(config.symbols)} | Exchanges: {config.exchange_names} | "
        f"min_funding_diff={config.min_funding_diff}, min_profit={config.min_profit_threshold} | "
        f"trading_enabled={config.trading_enabled}"
    )

    if config.signals_path:
        signals_dir = ROOT / config.signals_path
        signals_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Signals dir: {signals_dir}")

    return config, logger


# ═══════════════════════════════════════════════════════════════════════════
# STAGES 2-3: CONNECTORS AND WIRING
# ═══════════════════════════════════════════════════════════════════════════

def build_connectors(config: EngineConfig, logger: logging.Logger) -> Dict[str, ExchangeConnector]:
    connectors = {}
    for credentials in config.exchanges:
        connectors[credentials.name] = create_connector(credentials.name, credentials, logger=logger)
        mode = "testnet" if credentials.testnet else "live"
        logger.info(f"Connector ready: {credentials.name} ({mode})")
    return connectors


def build_scheduler(
    config: EngineConfig,
    connectors: Dict[str, ExchangeConnector],
    logger: logging.Logger,
    feed: Optional[OpportunityFeed] = None,
) -> MonitoringScheduler:
    """Construct every engine component from *config* and *connectors*."""
    if config.signals_path and not Path(config.signals_path).is_absolute():
        config = replace(config, signals_path=str(ROOT / config.signals_path))

    aggregator = MarketDataAggregator(connectors, config.staleness_threshold_ms, logger=logger)
    detector = OpportunityDetector.from_config(aggregator, config, logger=logger)
    risk_manager = RiskManager.from_config(config, logger=logger)
    notifier = NotificationService(config.notifications, logger=logger)
    orchestrator = TradeExecutionOrchestrator(connectors, risk_manager, notifier, logger=logger)

    return MonitoringScheduler(
        config,
        aggregator,
        detector,
        orchestrator,
        risk_manager,
        notifier,
        feed=feed or OpportunityFeed(logger=logger),
        logger=logger,
    )


# ═══════════════════════════════════════════════════════════════════════════
# STAGES 4-5: MONITORING AND SHUTDOWN
# ═══════════════════════════════════════════════════════════════════════════

async def run(config: EngineConfig, logger: logging.Logger) -> None:
    connectors = build_connectors(config, logger)
    scheduler = build_scheduler(config, connectors, logger)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops: Ctrl+C arrives as KeyboardInterrupt in main().
            pass

    try:
        await scheduler.start()
        await stop_event.wait()
        logger.info("Stop signal received, shutting down")
    finally:
        if scheduler.is_running:
            await scheduler.stop()
        await scheduler.notifier.drain()
        await asyncio.gather(*(c.close() for c in connectors.values()), return_exceptions=True)
        logger.info("Funding Arbitrage Pipeline stopped.")


# ═══════════════════════════════════════════════════════════════════════════
# MAIN ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════════

def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Cross-exchange funding-rate arbitrage engine")
    parser.add_argument("--config", type=Path, default=None, help="path to the JSON config file")
    args = parser.parse_args(argv)

    config, logger = init(args.config)
    try:
        asyncio.run(run(config, logger))
    except KeyboardInterrupt:
        logger.info("Pipeline stopped by user.")


if __name__ == "__main__":
    main()
