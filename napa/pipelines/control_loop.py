"""
Candle-paced trading loop.

Each iteration::

    flush pending commits → fetch candles
        ├─ nothing new        → idle sleep
        └─ new candle(s)      → MACD update → sync orders → act on signal
                                → persist → regulated sleep

The first productive iteration replays the whole fetched window into a
fresh MACD engine and sleeps only until the next candle boundary; after
that single candles are fed incrementally and the loop sleeps a full
interval. Sleeping happens in short ticks on the stop event, so an operator
signal is honoured within one tick (or one in-flight request timeout).
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from napa.core.errors import (
    ConfigError,
    ExchangeAuthError,
    ExchangeProtocolError,
    TransientExchangeError,
)
from napa.core.models import Candle, Signal
from napa.data.ledger import Ledger
from napa.exchanges.base import ExchangeAdapter
from napa.execution.coinbase_trader import CoinbaseTrader
from napa.helpers.data_helper import require
from napa.strategies.macd import MacdSignalEngine

# ---------------------------------------------------------------------------
# Defaults (overridden by the ``loop`` config section)
# ---------------------------------------------------------------------------
_IDLE_DELAY_SECS = 6            # no new candle yet
_ERROR_DELAY_SECS = 1           # fetch failed
_SHORT_HISTORY_DELAY_SECS = 30  # fewer than 2 candles to seed the indicator
_SLEEP_TICK_SECS = 2            # stop-event polling granularity


class ControlLoop:
    """
    Drives fetch → indicator → decision → execution for one product.

    Parameters
    ----------
    config : dict
        Agent config; ``product``, ``parameters.granularity`` and the
        optional ``loop`` section are read.
    exchange : ExchangeAdapter
        Source of candles.
    engine : MacdSignalEngine
        Indicator; owned exclusively by this loop.
    trader : CoinbaseTrader
        Executes signals and settles orders.
    ledger : Ledger
        Orders and funds; pending commits are retried each iteration.
    stop_event : threading.Event, optional
        Set by the signal handler to end the loop after the current
        iteration.
    clock : callable, optional
        Wall-clock seconds (``time.time``); candle times are compared to it.
    """

    def __init__(
        self,
        config: dict,
        exchange: ExchangeAdapter,
        engine: MacdSignalEngine,
        trader: CoinbaseTrader,
        ledger: Ledger,
        stop_event: Optional[threading.Event] = None,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.exchange = exchange
        self.engine = engine
        self.trader = trader
        self.ledger = ledger
        self.stop_event = stop_event or threading.Event()
        self.clock = clock

        parameters = config.get("parameters", {})
        loop_cfg = config.get("loop", {})
        self.product: str = require(config, "product")
        self.granularity: int = require(parameters, "granularity", int, where="parameters")
        if self.granularity <= 0:
            raise ConfigError(f"granularity must be positive, got {self.granularity}")
        self.interval = float(self.granularity)
        self.window_secs = self.granularity * engine.long_period

        self.idle_delay = float(loop_cfg.get("idle_delay", _IDLE_DELAY_SECS))
        self.error_delay = float(loop_cfg.get("error_delay", _ERROR_DELAY_SECS))
        self.short_history_delay = float(loop_cfg.get("short_history_delay", _SHORT_HISTORY_DELAY_SECS))
        self.sleep_tick = float(loop_cfg.get("sleep_tick", _SLEEP_TICK_SECS))

        self.last_candle_time = 0
        # One-shot: re-anchor to the exchange's candle boundary once per run.
        self._regulate = True

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Iterate until the stop event is set."""
        self.logger.info(
            f"Control loop started — {self.product} every {self.granularity}s, "
            f"window {self.window_secs}s"
        )
        while not self.stop_event.is_set():
            delay = self.run_once()
            self.sleep(delay)
        self.logger.info("Control loop stopped.")

    def run_once(self) -> float:
        """Run one iteration and return how many seconds to sleep after it."""
        self.ledger.flush_pending()

        end = datetime.fromtimestamp(self.clock(), tz=timezone.utc)
        start = end - timedelta(seconds=self.window_secs)
        header = f"* {self.product} | {start:%b %d %H:%M:%S} -> {end:%b %d %H:%M:%S}"

        try:
            candles = self.exchange.fetch_candles(self.product, start, end, self.granularity)
        except ExchangeAuthError as exc:
            self.logger.critical(f"Candle fetch rejected — authentication problem: {exc}")
            return self.error_delay
        except ExchangeProtocolError as exc:
            self.logger.error(f"Candle fetch returned an unusable response: {exc}")
            return self.error_delay
        except TransientExchangeError as exc:
            self.logger.warning(f"Candle fetch failed, retrying: {exc}")
            return self.error_delay

        new = [c for c in candles if c.open_time > self.last_candle_time]
        if not new:
            self.logger.debug(f"{header} | no new candle | SLEEPING {self.idle_delay:.0f}s *")
            return self.idle_delay

        if not self.engine.initialized and len(candles) < 2:
            self.logger.info(
                f"{header} | only {len(candles)} candle(s), need 2 to seed MACD | "
                f"SLEEPING {self.short_history_delay:.0f}s *"
            )
            return self.short_history_delay

        signal = self._update_indicator(candles, new)
        newest = new[-1]
        self.last_candle_time = newest.open_time

        self.trader.sync_open_orders()
        if signal is not None:
            self.logger.info(f"[{self.product}] *** {signal.value.upper()} SIGNAL *** close={newest.close}")
            self.trader.act(signal, newest.close)
        if not self.ledger.flush_pending():
            self.logger.warning(f"Ledger not yet persisted: {sorted(self.ledger.pending)}")

        delay = self._regulated_delay(newest)
        wake = datetime.fromtimestamp(self.clock() + delay, tz=timezone.utc)
        self.logger.info(f"{header} | {self.engine.describe()} | SLEEPING -> {wake:%b %d %H:%M:%S} *")
        return delay

    def sleep(self, seconds: float) -> None:
        """Sleep up to *seconds*, waking every tick to check the stop event."""
        deadline = time.monotonic() + seconds
        while not self.stop_event.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self.stop_event.wait(min(self.sleep_tick, remaining))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _update_indicator(self, window: list[Candle], new: list[Candle]) -> Optional[Signal]:
        """Replay the window on first use, otherwise feed only *new* candles.

        Returns the signal of the newest candle; crossovers on older candles
        in the same batch are already stale.
        """
        if not self.engine.initialized:
            self.logger.info(f"Seeding MACD from {len(window)} candles.")
            return self.engine.replay(float(c.close) for c in window)
        signal = None
        for candle in new:
            signal = self.engine.update(float(candle.close))
        return signal

    def _regulated_delay(self, newest: Candle) -> float:
        if self._regulate:
            self._regulate = False
            elapsed = self.clock() - newest.open_time
            return max(0.0, self.interval - elapsed)
        return self.interval
