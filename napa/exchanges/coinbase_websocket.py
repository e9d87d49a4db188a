"""
Coinbase Exchange (GDAX) websocket ticker feed.

Opens one connection to the exchange feed, subscribes to the ``ticker``
channel for the configured products and forwards each ticker event to the
registered *on_ticker* coroutine as a plain dict::

    {"time": "...", "product_id": "LTC-USD", "price": "71.02", "side": "buy"}

The connection lives only while someone is interested. :meth:`subscribe`
raises the flag and starts the read task unless one is already running;
:meth:`unsubscribe` lowers it. The read task checks the flag once per
inbound message and closes the connection itself when it is down, so at
most one exchange connection is open however many dashboards listen.

Usage::

    import asyncio
    from napa.exchanges.coinbase_websocket import CoinbaseTickerStream

    async def handle_ticker(ticker: dict) -> None:
        print(ticker)

    async def main():
        stream = CoinbaseTickerStream(["LTC-USD"], on_ticker=handle_ticker)
        await stream.subscribe()
        await asyncio.sleep(60)
        await stream.aclose()

    asyncio.run(main())
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable, Iterable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
_WS_URL = "wss://ws-feed.gdax.com"

TICKER_FIELDS = ("time", "product_id", "price", "side")

# Type aliases for the callbacks.
TickerCallback = Callable[[dict], Awaitable[None]]
ClosedCallback = Callable[[], Awaitable[None]]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def parse_ticker(raw) -> Optional[dict]:
    """Return the ticker fields of *raw*, or ``None`` for anything else.

    Undecodable payloads and messages of other types are not errors; the
    exchange sends heartbeats, subscription acks and new message types.
    """
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(msg, dict) or msg.get("type") != "ticker":
        return None
    return {field: str(msg.get(field, "")) for field in TICKER_FIELDS}


def _default_connect(url: str):
    return websockets.connect(url, ping_interval=20, ping_timeout=10)


# ---------------------------------------------------------------------------
# Stream client
# ---------------------------------------------------------------------------

class CoinbaseTickerStream:
    """
    Flag-guarded ticker subscription sharing one exchange connection.

    Parameters
    ----------
    products : Iterable[str]
        Product ids, e.g. ``["LTC-USD"]``.
    on_ticker : TickerCallback
        Awaited for every ticker message, on the event loop.
    on_closed : ClosedCallback, optional
        Awaited after the exchange connection has been closed.
    url : str
        Feed endpoint.
    connect : callable, optional
        ``connect(url)`` returning an awaitable websocket connection.
        Defaults to :func:`websockets.connect`.
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    def __init__(
        self,
        products: Iterable[str],
        on_ticker: TickerCallback,
        on_closed: Optional[ClosedCallback] = None,
        url: str = _WS_URL,
        channels: Iterable[str] = ("ticker",),
        connect: Optional[Callable] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.products = list(products)
        self.channels = list(channels)
        self.on_ticker = on_ticker
        self.on_closed = on_closed
        self.url = url
        self._connect = connect or _default_connect
        self.logger = logger or logging.getLogger(__name__)

        self._interested = False
        self._flag_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self.connections_opened = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def subscribe(self) -> bool:
        """Raise the interested flag. Returns ``True`` if a connection was started."""
        async with self._flag_lock:
            self._interested = True
            if self._task is not None:
                return False
            self._task = asyncio.create_task(self._run())
            return True

    async def unsubscribe(self) -> None:
        """Lower the flag; the read task closes on its next message."""
        async with self._flag_lock:
            self._interested = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def wait_closed(self) -> None:
        """Wait for the current read task, if any, to finish."""
        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def aclose(self) -> None:
        """Shut down immediately, cancelling a read blocked on the network."""
        async with self._flag_lock:
            self._interested = False
            task = self._task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _subscribe_message(self) -> str:
        return json.dumps({
            "type": "subscribe",
            "product_ids": self.products,
            "channels": self.channels,
        })

    async def _send(self, ws, message: str) -> None:
        async with self._write_lock:
            await ws.send(message)

    async def _run(self) -> None:
        """Connect, subscribe and read until uninterested or disconnected.

        The task stays registered until its socket is fully closed, so a
        subscribe arriving meanwhile never opens a second connection; it
        only raises the flag and a fresh task is chained here instead.
        """
        ws = None
        released = False
        try:
            self.logger.info(f"Connecting to exchange feed {self.url} …")
            ws = await self._connect(self.url)
            self.connections_opened += 1
            await self._send(ws, self._subscribe_message())
            self.logger.info(
                f"Listening to exchange: {','.join(self.products)} {','.join(self.channels)}"
            )
            released = await self._listen(ws)
        except ConnectionClosed as exc:
            self.logger.info(f"Exchange connection closed by peer ({exc}).")
        except (OSError, WebSocketException) as exc:
            self.logger.warning(f"Exchange connection error: {exc}")
        finally:
            try:
                if ws is not None:
                    await ws.close()
                    self.logger.info("Exchange connection closed.")
                if self.on_closed is not None:
                    await self.on_closed()
            finally:
                async with self._flag_lock:
                    if self._task is asyncio.current_task():
                        if released and self._interested:
                            self.logger.info("Resubscribed while closing; reconnecting.")
                            self._task = asyncio.create_task(self._run())
                        else:
                            self._task = None

    async def _listen(self, ws) -> bool:
        """Forward tickers. Returns ``True`` when stopped by the flag."""
        async for raw in ws:
            async with self._flag_lock:
                if not self._interested:
                    return True
            ticker = parse_ticker(raw)
            if ticker is None:
                continue
            await self.on_ticker(ticker)
        return False
