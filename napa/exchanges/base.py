from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from napa.core.models import Candle, Side


@dataclass(frozen=True)
class Authentication:
    key: str
    secret: str        # base64-encoded HMAC secret
    passphrase: str

    def __repr__(self) -> str:
        return f"Authentication(key={self.key[:4]}…)"


class ExchangeAdapter(ABC):

    # Market Data Methods
    @abstractmethod
    def fetch_candles(self, product: str, start: datetime, end: datetime, granularity: int) -> List[Candle]:
        pass

    # Trading Methods
    @abstractmethod
    def place_order(self, auth: Authentication, product: str, side: Side, price: Decimal, size: Decimal) -> dict:
        pass

    @abstractmethod
    def get_order(self, auth: Authentication, order_id: str) -> Optional[dict]:
        pass

    @abstractmethod
    def get_accounts(self, auth: Authentication) -> List[dict]:
        pass
