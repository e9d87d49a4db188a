"""
Websocket hub that rebroadcasts the exchange ticker to dashboard clients.

Dashboards send control messages::

    {"uid": "sub-exchange"}      start receiving tickers
    {"uid": "unsub-exchange"}    stop receiving tickers

and receive::

    {"uid": "ticker", "time": ..., "product_id": ..., "price": ..., "side": ...}
    {"uid": "log", "message": "..."}

Subscriptions are counted across sessions: the exchange feed is subscribed
when the first dashboard asks for it and released when the last one leaves,
so there is never more than one exchange connection. Each session owns a
write lock; tickers and log lines for one socket never interleave.
"""

from __future__ import annotations

import asyncio
import json
import logging
from http import HTTPStatus
from typing import Callable, Iterable, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from napa.exchanges.coinbase_websocket import CoinbaseTickerStream

SUB_EXCHANGE = "sub-exchange"
UNSUB_EXCHANGE = "unsub-exchange"


def origin_allowed(origin: Optional[str], host: Optional[str]) -> bool:
    """Only pages served by this host may open a dashboard socket."""
    return bool(origin) and bool(host) and origin == f"http://{host}"


def parse_uid(raw) -> Optional[str]:
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(msg, dict):
        return None
    uid = msg.get("uid")
    return uid if isinstance(uid, str) else None


class DashboardSession:
    """One dashboard websocket with its own write serialization."""

    def __init__(self, connection, logger: Optional[logging.Logger] = None) -> None:
        self.connection = connection
        self.logger = logger or logging.getLogger(__name__)
        self._write_lock = asyncio.Lock()

    async def send(self, message: dict) -> bool:
        payload = json.dumps(message)
        async with self._write_lock:
            try:
                await self.connection.send(payload)
            except (ConnectionClosed, OSError) as exc:
                self.logger.debug(f"Dashboard write failed: {exc}")
                return False
        self.logger.debug(f"sent {payload}")
        return True

    async def log(self, message: str) -> bool:
        return await self.send({"uid": "log", "message": message})


class BroadcastHub:
    """
    Fans exchange ticker events out to subscribed dashboard sessions.

    Parameters
    ----------
    products : Iterable[str]
        Products requested from the exchange feed.
    connect : callable, optional
        Passed to :class:`CoinbaseTickerStream` (tests use a fake).
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    def __init__(
        self,
        products: Iterable[str],
        connect: Optional[Callable] = None,
        url: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.logger = logger or logging.getLogger(__name__)
        stream_kwargs = {"url": url} if url else {}
        self.stream = CoinbaseTickerStream(
            products,
            on_ticker=self.broadcast_ticker,
            on_closed=self._on_exchange_closed,
            connect=connect,
            logger=self.logger,
            **stream_kwargs,
        )
        self._lock = asyncio.Lock()
        self._sessions: set[DashboardSession] = set()
        self._subscribers: set[DashboardSession] = set()
        self._sends: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def handle(self, connection) -> None:
        """Serve one dashboard connection until it closes."""
        session = DashboardSession(connection, logger=self.logger)
        async with self._lock:
            self._sessions.add(session)
        self.logger.info(f"Dashboard connected ({self.session_count} open).")
        try:
            async for raw in connection:
                uid = parse_uid(raw)
                if uid == SUB_EXCHANGE:
                    await self.subscribe(session)
                elif uid == UNSUB_EXCHANGE:
                    await self.unsubscribe(session)
        except ConnectionClosed as exc:
            self.logger.info(f"Dashboard connection dropped: {exc}")
        finally:
            await self.unsubscribe(session, notify=False)
            async with self._lock:
                self._sessions.discard(session)
            self.logger.info(f"Dashboard disconnected ({self.session_count} open).")

    async def subscribe(self, session: DashboardSession) -> None:
        async with self._lock:
            first_time = session not in self._subscribers
            self._subscribers.add(session)
            # Also revives a feed that dropped while sessions were subscribed.
            await self.stream.subscribe()
        if first_time:
            await session.log("subbing to exchange")

    async def unsubscribe(self, session: DashboardSession, notify: bool = True) -> None:
        async with self._lock:
            if session not in self._subscribers:
                return
            self._subscribers.discard(session)
            if not self._subscribers:
                await self.stream.unsubscribe()
        if notify:
            await session.log("unsubbing from exchange")

    async def broadcast_ticker(self, ticker: dict) -> None:
        """Queue one send per subscriber; the feed never waits on a dashboard."""
        message = {"uid": "ticker", **ticker}
        async with self._lock:
            targets = list(self._subscribers)
        for session in targets:
            task = asyncio.create_task(session.send(message))
            self._sends.add(task)
            task.add_done_callback(self._sends.discard)

    async def serve(self, host: str, port: int, stop: asyncio.Event) -> None:
        """Accept dashboards on ``ws://host:port`` until *stop* is set."""
        async with websockets.serve(self.handle, host, port, process_request=self._check_origin):
            self.logger.info(f"Dashboard hub listening on ws://{host}:{port}")
            await stop.wait()
        await self.stream.aclose()
        if self._sends:
            await asyncio.gather(*self._sends, return_exceptions=True)
        self.logger.info("Dashboard hub stopped.")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_origin(self, connection, request):
        origin = request.headers.get("Origin")
        host = request.headers.get("Host")
        if not origin_allowed(origin, host):
            self.logger.warning(f"Rejected dashboard from origin {origin!r} (host {host!r}).")
            return connection.respond(HTTPStatus.FORBIDDEN, "origin not allowed\n")
        return None

    async def _on_exchange_closed(self) -> None:
        async with self._lock:
            targets = list(self._subscribers)
        for session in targets:
            await session.log("exchange connection closed")
