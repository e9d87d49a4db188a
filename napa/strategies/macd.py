"""
Incremental MACD indicator and crossover signal detection.

Signal flow
-----------
1. ``MacdSignalEngine.initialize(seed)`` — seeds both EMAs with the first
   closing price of a window; MACD and signal line start at zero.
2. ``MacdSignalEngine.update(price)`` — advances the short EMA, long EMA,
   MACD line and signal line by one closing price in O(1).
3. A change of sign of ``macd - signal`` is a crossover: upward emits
   ``Signal.BUY``, downward emits ``Signal.SELL``.

The engine keeps no price history, so the control loop can replay a full
candle window once per session and feed single candles afterwards.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from napa.core.models import IndicatorState, Signal


# ---------------------------------------------------------------------------
# Constants (defaults, overridden by config)
# ---------------------------------------------------------------------------

DEFAULT_EMA_SHORT = 12
DEFAULT_EMA_LONG = 26
DEFAULT_SIGNAL_PERIOD = 9


def smoothing(period: int) -> float:
    """EMA smoothing factor ``2 / (period + 1)``."""
    if period < 1:
        raise ValueError(f"EMA period must be >= 1, got {period}")
    return 2.0 / (period + 1)


def _sign(value: float) -> int:
    if value > 0:
        return 1
    if value < 0:
        return -1
    return 0


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class MacdSignalEngine:
    """
    Streaming MACD with a signal line smoothed over the MACD values.

    Parameters
    ----------
    short_period : int
        Short EMA period (default 12).
    long_period : int
        Long EMA period (default 26). Must exceed *short_period*.
    signal_period : int
        Smoothing period of the signal line (default 9).
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    def __init__(
        self,
        short_period: int = DEFAULT_EMA_SHORT,
        long_period: int = DEFAULT_EMA_LONG,
        signal_period: int = DEFAULT_SIGNAL_PERIOD,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if short_period >= long_period:
            raise ValueError(
                f"short period ({short_period}) must be below long period ({long_period})"
            )
        self.short_period = short_period
        self.long_period = long_period
        self.signal_period = signal_period
        self.alpha_short = smoothing(short_period)
        self.alpha_long = smoothing(long_period)
        self.alpha_signal = smoothing(signal_period)
        self.logger = logger or logging.getLogger(__name__)

        self.state: Optional[IndicatorState] = None
        self._side = 0  # sign of (macd - signal) at the last non-zero difference

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self.state is not None

    def initialize(self, seed_price: float) -> None:
        """Reset the indicator so both EMAs start at *seed_price*."""
        seed = float(seed_price)
        self.state = IndicatorState(ema_short=seed, ema_long=seed)
        self._side = 0

    def update(self, price: float) -> Optional[Signal]:
        """
        Absorb one closing price.

        Returns ``Signal.BUY`` when the MACD line crosses above the signal
        line, ``Signal.SELL`` when it crosses below, otherwise ``None``.
        The first non-zero difference after :meth:`initialize` only records
        which side the MACD is on.
        """
        if self.state is None:
            raise RuntimeError("update() called before initialize()")

        p = float(price)
        s = self.state
        s.ema_short += self.alpha_short * (p - s.ema_short)
        s.ema_long += self.alpha_long * (p - s.ema_long)
        s.macd = s.ema_short - s.ema_long
        s.signal += self.alpha_signal * (s.macd - s.signal)

        side = _sign(s.macd - s.signal)
        if side == 0:
            return None
        previous, self._side = self._side, side
        if previous == -1 and side == 1:
            return Signal.BUY
        if previous == 1 and side == -1:
            return Signal.SELL
        return None

    def replay(self, closes: Iterable[float]) -> Optional[Signal]:
        """
        Rebuild the indicator from a whole window of closing prices.

        The first close seeds the EMAs; the signal produced by the last
        update is returned (crossovers earlier in the window are history).
        """
        prices = list(closes)
        if not prices:
            raise ValueError("replay() needs at least one closing price")
        self.initialize(prices[0])
        signal = None
        for price in prices[1:]:
            signal = self.update(price)
        return signal

    def describe(self) -> str:
        """Short human-readable summary for the loop's status line."""
        if self.state is None:
            return "MACD n/a"
        return f"MACD {self.state.macd:.3f} | SIGNAL {self.state.signal:.3f}"
