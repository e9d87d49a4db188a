from dataclasses import dataclass
from decimal import Decimal
from enum import Enum


class Side(Enum):
    BUY = "buy"
    SELL = "sell"


class Signal(Enum):
    BUY = "buy"
    SELL = "sell"


# Order statuses after which the exchange never changes the order again.
TERMINAL_STATUSES = frozenset({"done", "settled", "rejected", "cancelled", "canceled", "filled"})


@dataclass(frozen=True)
class Candle:
    open_time: int   # UTC seconds since epoch, bucket open
    close: Decimal


@dataclass
class IndicatorState:
    ema_short: float
    ema_long: float
    macd: float = 0.0
    signal: float = 0.0


@dataclass
class Order:
    id: str
    product: str     # e.g. "LTC-USD"
    side: Side
    status: str
    price: Decimal
    size: Decimal


@dataclass
class Fund:
    currency: str
    balance: Decimal = Decimal("0")
    hold: Decimal = Decimal("0")

    @property
    def available(self) -> Decimal:
        return self.balance - self.hold
