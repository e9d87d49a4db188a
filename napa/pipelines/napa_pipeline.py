"""
napa — main entry point.

Trading mode orchestrates:

    [1] INIT           — Load config, setup logger
    [2] CREDENTIALS    — Read the key=value credentials file
    [3] STATE          — Restore orders/funds from the durable store and
                         reconcile open orders with the exchange
    [4] TRADING LOOP   — Candle-paced MACD loop until SIGINT/SIGTERM

Server mode runs the dashboard hub that rebroadcasts the exchange ticker.

Any failure in stages 1–3 is fatal: the process logs it once and exits
without trading, since trading on unknown order or fund state risks funds.

Usage::

    python -m napa.pipelines.napa_pipeline                  # trade
    python -m napa.pipelines.napa_pipeline server           # dashboard hub
    python -m napa.pipelines.napa_pipeline trade path/to/napa.json
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import threading
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

from napa.core.errors import ConfigError, NapaError, StartupError
from napa.dashboard.hub import BroadcastHub
from napa.data.ledger import Ledger
from napa.data.storage import DurableStore
from napa.exchanges.base import Authentication
from napa.exchanges.coinbase import CoinbaseClient
from napa.execution.coinbase_trader import CoinbaseTrader
from napa.helpers.data_helper import load_config, read_map, require
from napa.pipelines.control_loop import ControlLoop
from napa.strategies.macd import DEFAULT_SIGNAL_PERIOD, MacdSignalEngine
from napa.utils.logger import setup_logger

# ---------------------------------------------------------------------------
# Project root (two levels up: napa/pipelines/ → repo root)
# ---------------------------------------------------------------------------
ROOT = Path(__file__).resolve().parents[2]
DEFAULT_CONFIG_PATH = ROOT / "config" / "napa.json"


def _resolve(path: str) -> Path:
    p = Path(path)
    return p if p.is_absolute() else ROOT / p


# ═══════════════════════════════════════════════════════════════════════════
# STAGE 1 — INIT
# ═══════════════════════════════════════════════════════════════════════════

def init(config_path: Path = DEFAULT_CONFIG_PATH) -> tuple[dict, logging.Logger]:
    """
    Stage 1: load configuration and setup the logger.

    Raises
    ------
    ConfigError
        The config file is missing or malformed.
    """
    config = load_config(config_path)
    require(config, "product")
    data_paths = require(config, "data_paths", dict)

    log_path = _resolve(require(data_paths, "log_path", where="data_paths")) / "napa.log"
    log_level = getattr(logging, str(config.get("log_level", "INFO")).upper(), logging.INFO)
    logger = setup_logger("napa", log_path, level=log_level)

    logger.info("=" * 60)
    logger.info("napa bot starting")
    logger.info("=" * 60)
    logger.info("Stage 1 — INIT")
    logger.info(f"Config loaded from: {config_path}")
    parameters = config.get("parameters", {})
    logger.info(
        f"Product: {config['product']} | "
        f"Granularity: {parameters.get('granularity')}s | "
        f"EMA: {parameters.get('ema_short')}/{parameters.get('ema_long')}"
    )
    return config, logger


def build_engine(config: dict, logger: logging.Logger) -> MacdSignalEngine:
    parameters = require(config, "parameters", dict)
    try:
        return MacdSignalEngine(
            short_period=require(parameters, "ema_short", int, where="parameters"),
            long_period=require(parameters, "ema_long", int, where="parameters"),
            signal_period=require(
                parameters, "signal_period", int, default=DEFAULT_SIGNAL_PERIOD, where="parameters"
            ),
            logger=logger,
        )
    except ValueError as exc:
        raise ConfigError(f"parameters: {exc}") from exc


# ═══════════════════════════════════════════════════════════════════════════
# STAGE 2 — CREDENTIALS
# ═══════════════════════════════════════════════════════════════════════════

def load_credentials(path: Path, logger: logging.Logger) -> Authentication:
    """Stage 2: read ``key``, ``secret`` and ``phrase`` from *path*."""
    logger.info("Stage 2 — CREDENTIALS")
    try:
        values = read_map(path)
    except (OSError, ValueError) as exc:
        raise ConfigError(f"cannot read credentials '{path}': {exc}") from exc
    auth = Authentication(
        key=require(values, "key", where="credentials"),
        secret=require(values, "secret", where="credentials"),
        passphrase=require(values, "phrase", where="credentials"),
    )
    logger.info(f"Credentials loaded for {auth!r}")
    return auth


# ═══════════════════════════════════════════════════════════════════════════
# STAGE 3 — STATE
# ═══════════════════════════════════════════════════════════════════════════

def initial_funds(config: dict) -> dict[str, Decimal]:
    funds = config.get("initial_funds", {})
    try:
        result = {code: Decimal(str(amount)) for code, amount in funds.items()}
    except (AttributeError, InvalidOperation) as exc:
        raise ConfigError(f"initial_funds: {exc}") from exc
    if any(amount < 0 for amount in result.values()):
        raise ConfigError("initial_funds must be non-negative")
    return result


def restore_state(
    config: dict,
    client: CoinbaseClient,
    auth: Authentication,
    logger: logging.Logger,
) -> tuple[Ledger, CoinbaseTrader]:
    """Stage 3: load the ledgers and reconcile persisted orders."""
    logger.info("Stage 3 — STATE")
    store_dir = _resolve(require(config["data_paths"], "store_path", where="data_paths"))
    store = DurableStore(store_dir, logger=logger)
    ledger = Ledger.load(store, initial_funds=initial_funds(config), logger=logger)
    trader = CoinbaseTrader(config, client, auth, ledger, logger=logger)
    trader.reconcile()
    return ledger, trader


def build_trading_loop(config: dict, logger: logging.Logger) -> ControlLoop:
    """
    Stages 2 and 3 plus loop construction.

    Raises
    ------
    StartupError
        Wraps whatever prevented a safe start.
    """
    try:
        engine = build_engine(config, logger)
        credentials_path = _resolve(
            require(config["data_paths"], "credentials_path", where="data_paths")
        )
        auth = load_credentials(credentials_path, logger)
        exchange_cfg = config.get("exchange", {})
        client_kwargs = {"timeout": float(exchange_cfg.get("timeout", 10))}
        if exchange_cfg.get("rest_url"):
            client_kwargs["base_url"] = exchange_cfg["rest_url"]
        client = CoinbaseClient(logger=logger, **client_kwargs)
        ledger, trader = restore_state(config, client, auth, logger)
        return ControlLoop(config, client, engine, trader, ledger, logger=logger)
    except (NapaError, OSError, ValueError) as exc:
        raise StartupError(str(exc)) from exc


# ═══════════════════════════════════════════════════════════════════════════
# STAGE 4 — TRADING LOOP
# ═══════════════════════════════════════════════════════════════════════════

def install_signal_handlers(stop_event: threading.Event, logger: logging.Logger) -> None:
    """SIGINT/SIGTERM let the current iteration finish, then stop."""

    def _handle(signum, frame):
        logger.info(f"Signal {signal.Signals(signum).name} — stopping after this iteration.")
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def run_trading(config: dict, logger: logging.Logger) -> int:
    try:
        loop = build_trading_loop(config, logger)
    except StartupError as exc:
        logger.critical(f"Startup failed, not trading: {exc}")
        return 1
    logger.info("Stage 4 — TRADING LOOP")
    install_signal_handlers(loop.stop_event, logger)
    loop.run()
    return 0


# ═══════════════════════════════════════════════════════════════════════════
# SERVER MODE
# ═══════════════════════════════════════════════════════════════════════════

def run_server(config: dict, logger: logging.Logger) -> int:
    """Serve dashboard websockets until SIGINT/SIGTERM."""
    dashboard = config.get("dashboard", {})
    host = dashboard.get("host", "0.0.0.0")
    port = int(dashboard.get("port", 8080))
    feed_url = config.get("exchange", {}).get("feed_url")
    hub = BroadcastHub([config["product"]], url=feed_url, logger=logger)

    async def main():
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                pass  # Windows: KeyboardInterrupt below
        await hub.serve(host, port, stop)

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Dashboard hub stopped by user.")
    except OSError as exc:
        logger.critical(f"Dashboard hub could not start: {exc}")
        return 1
    return 0


# ═══════════════════════════════════════════════════════════════════════════
# MAIN ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════════

def main(argv: Optional[list[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    mode = argv[0] if argv else "trade"
    config_path = Path(argv[1]) if len(argv) > 1 else DEFAULT_CONFIG_PATH

    try:
        config, logger = init(config_path)
    except (ConfigError, OSError) as exc:
        print(f"napa: {exc}", file=sys.stderr)
        return 1

    if mode == "server":
        return run_server(config, logger)
    if mode == "trade":
        return run_trading(config, logger)
    logger.error(f"Unknown mode '{mode}' (expected 'trade' or 'server').")
    return 2


if __name__ == "__main__":
    sys.exit(main())
