"""
Thin client for the Coinbase Exchange (GDAX) REST API.

    GET  https://api.gdax.com/products/LTC-USD/candles
        ?start=2024-01-01T00:00:00Z&end=2024-01-01T06:00:00Z&granularity=60
    POST https://api.gdax.com/orders            (signed)
    GET  https://api.gdax.com/orders/<id>       (signed)
    GET  https://api.gdax.com/accounts          (signed)

Signed requests carry ``CB-ACCESS-SIGN``: the base64 HMAC-SHA256, keyed with
the base64-decoded API secret, of ``timestamp + method + path + body``.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, List, Optional

import pandas as pd
import requests

from napa.core.errors import (
    ExchangeAuthError,
    ExchangeProtocolError,
    TransientExchangeError,
)
from napa.core.models import Candle, Side
from napa.exchanges.base import Authentication, ExchangeAdapter

_BASE_URL = "https://api.gdax.com"
_USER_AGENT = "napa"

CANDLE_COLUMNS = ["time", "low", "high", "open", "close", "volume"]

_REQUEST_TIMEOUT = 10


def sign_request(secret: str, timestamp: str, method: str, path: str, body: str = "") -> str:
    """
    Return the ``CB-ACCESS-SIGN`` value for one request.

    The concatenation order is fixed by the exchange; any other order is
    rejected as an authentication failure.
    """
    try:
        key = base64.b64decode(secret, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ExchangeAuthError("API secret is not valid base64") from exc
    message = (timestamp + method + path + body).encode("utf-8")
    digest = hmac.new(key, message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def _rfc3339(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _error_message(body: bytes) -> str:
    try:
        payload = json.loads(body)
    except ValueError:
        return body[:200].decode("utf-8", errors="replace")
    if isinstance(payload, dict) and "message" in payload:
        return str(payload["message"])
    return str(payload)[:200]


class CoinbaseClient(ExchangeAdapter):
    """
    REST client for candles and order management.

    Parameters
    ----------
    base_url : str
        Override the default base URL (useful for the sandbox or testing).
    timeout : float
        Per-request timeout in seconds; bounds how long shutdown can wait
        on an in-flight call.
    session : requests.Session, optional
        Reused for connection pooling.
    """

    def __init__(
        self,
        base_url: str = _BASE_URL,
        timeout: float = _REQUEST_TIMEOUT,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        self.logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Raw requests
    # ------------------------------------------------------------------

    @staticmethod
    def _headers() -> dict[str, str]:
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": _USER_AGENT,
        }

    def _send(
        self,
        method: str,
        path: str,
        headers: dict[str, str],
        params: Optional[dict] = None,
        data: Optional[bytes] = None,
    ) -> tuple[int, bytes]:
        try:
            response = self._session.request(
                method,
                self._base_url + path,
                params=params,
                data=data,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TransientExchangeError(f"{method} {path} failed: {exc}") from exc
        return response.status_code, response.content

    def public_request(self, method: str, path: str, params: Optional[dict] = None) -> tuple[int, bytes]:
        """Unauthenticated request. Returns ``(status_code, body)``."""
        return self._send(method, path, self._headers(), params=params)

    def private_request(
        self,
        auth: Authentication,
        method: str,
        path: str,
        body: str = "",
    ) -> tuple[int, bytes]:
        """
        Signed request. *path* must include any query string and *body* is
        sent byte-for-byte as signed. Returns ``(status_code, body)``.
        """
        timestamp = str(int(time.time()))
        headers = self._headers()
        headers.update({
            "CB-ACCESS-KEY": auth.key,
            "CB-ACCESS-SIGN": sign_request(auth.secret, timestamp, method, path, body),
            "CB-ACCESS-TIMESTAMP": timestamp,
            "CB-ACCESS-PASSPHRASE": auth.passphrase,
        })
        data = body.encode("utf-8") if body else None
        return self._send(method, path, headers, data=data)

    @staticmethod
    def _decode(status: int, body: bytes, what: str) -> Any:
        """Map the HTTP status onto the error taxonomy and parse JSON."""
        if status in (401, 403):
            raise ExchangeAuthError(f"{what}: rejected ({status}): {_error_message(body)}", status)
        if status == 429 or status >= 500:
            raise TransientExchangeError(f"{what}: exchange returned {status}", status)
        if status >= 400:
            raise ExchangeProtocolError(f"{what}: {status}: {_error_message(body)}", status)
        try:
            return json.loads(body)
        except ValueError as exc:
            raise ExchangeProtocolError(f"{what}: malformed response body", status) from exc

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    def fetch_candles(
        self,
        product: str,
        start: datetime,
        end: datetime,
        granularity: int,
    ) -> List[Candle]:
        """
        Fetch candles for *product* in ``[start, end]``.

        Returns
        -------
        list[Candle]
            Ascending by ``open_time`` and de-duplicated. Empty when the
            exchange has nothing for the window yet.
        """
        params = {
            "start": _rfc3339(start),
            "end": _rfc3339(end),
            "granularity": granularity,
        }
        status, body = self.public_request("GET", f"/products/{product}/candles", params)
        rows = self._decode(status, body, f"candles {product}")
        if not isinstance(rows, list):
            raise ExchangeProtocolError(f"candles {product}: expected a list, got {type(rows).__name__}")
        if not rows:
            return []

        try:
            df = pd.DataFrame(rows, columns=CANDLE_COLUMNS)
            df.drop_duplicates(subset=["time"], keep="last", inplace=True)
            df.sort_values("time", inplace=True)
            return [
                Candle(open_time=int(t), close=Decimal(str(c)))
                for t, c in zip(df["time"], df["close"])
            ]
        except (TypeError, ValueError, ArithmeticError) as exc:
            raise ExchangeProtocolError(f"candles {product}: malformed rows: {exc}") from exc

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    def place_order(
        self,
        auth: Authentication,
        product: str,
        side: Side,
        price: Decimal,
        size: Decimal,
    ) -> dict:
        """Place a limit order. Returns the exchange's order dict."""
        body = json.dumps({
            "product_id": product,
            "side": side.value,
            "type": "limit",
            "price": str(price),
            "size": str(size),
        }, separators=(",", ":"))
        status, raw = self.private_request(auth, "POST", "/orders", body)
        order = self._decode(status, raw, f"place {side.value} {product}")
        if not isinstance(order, dict) or "id" not in order:
            raise ExchangeProtocolError(f"place {side.value} {product}: response has no order id")
        return order

    def get_order(self, auth: Authentication, order_id: str) -> Optional[dict]:
        """Return the order dict, or ``None`` when the exchange no longer knows it."""
        status, raw = self.private_request(auth, "GET", f"/orders/{order_id}")
        if status == 404:
            return None
        order = self._decode(status, raw, f"order {order_id}")
        if not isinstance(order, dict):
            raise ExchangeProtocolError(f"order {order_id}: expected an object")
        return order

    def get_accounts(self, auth: Authentication) -> list[dict]:
        """Return the account list (one entry per currency)."""
        status, raw = self.private_request(auth, "GET", "/accounts")
        accounts = self._decode(status, raw, "accounts")
        if not isinstance(accounts, list):
            raise ExchangeProtocolError("accounts: expected a list")
        return accounts
