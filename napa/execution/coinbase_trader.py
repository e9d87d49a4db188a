"""
Coinbase Exchange execution layer.

Turns MACD crossover signals into limit orders for one product and keeps
the order and fund ledgers in step with what the exchange reports.

Usage::

    from napa.execution.coinbase_trader import CoinbaseTrader

    trader = CoinbaseTrader(config, client, auth, ledger, logger)

    # At startup: fetch every persisted order and settle finished ones
    trader.reconcile()

    # Every productive loop iteration
    trader.sync_open_orders()
    trader.act(Signal.BUY, price=Decimal("71.02"))
"""

from __future__ import annotations

import logging
import time
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Optional

from napa.core.errors import ExchangeAuthError, ExchangeError
from napa.core.models import Order, Side, Signal, TERMINAL_STATUSES
from napa.data.ledger import Ledger
from napa.exchanges.base import Authentication, ExchangeAdapter


def split_product(product: str) -> tuple[str, str]:
    """``"LTC-USD"`` → ``("LTC", "USD")``."""
    base, sep, quote = product.partition("-")
    if not sep or not base or not quote:
        raise ValueError(f"product must look like BASE-QUOTE, got {product!r}")
    return base, quote


def _amount(remote: dict, key: str) -> Decimal:
    try:
        return Decimal(str(remote.get(key) or "0"))
    except InvalidOperation:
        return Decimal("0")


class CoinbaseTrader:
    """
    Places limit orders on MACD signals and settles them when they finish.

    Reads configuration from the ``execution`` section::

        {
            "execution": {
                "order_fraction": 0.95,
                "min_order_size": "0.01",
                "price_increment": "0.01",
                "size_increment": "0.00000001",
                "dry_run": true
            }
        }

    In **dry-run** mode no private endpoint is called: orders get synthetic
    ids and are treated as filled at their limit price on the next sync.

    Parameters
    ----------
    config : dict
        Full agent config; ``product`` and ``execution`` are read.
    exchange : ExchangeAdapter
        REST client.
    auth : Authentication
        API credentials.
    ledger : Ledger
        Authoritative orders and funds.
    logger : logging.Logger, optional
        Pipeline logger.
    """

    def __init__(
        self,
        config: dict,
        exchange: ExchangeAdapter,
        auth: Authentication,
        ledger: Ledger,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.exchange = exchange
        self.auth = auth
        self.ledger = ledger

        execution_cfg = config.get("execution", {})
        self.product: str = config["product"]
        self.base, self.quote = split_product(self.product)
        self.order_fraction = Decimal(str(execution_cfg.get("order_fraction", "0.95")))
        self.min_order_size = Decimal(str(execution_cfg.get("min_order_size", "0.01")))
        self.price_increment = Decimal(str(execution_cfg.get("price_increment", "0.01")))
        self.size_increment = Decimal(str(execution_cfg.get("size_increment", "0.00000001")))
        self.dry_run: bool = execution_cfg.get("dry_run", True)

        if not Decimal("0") < self.order_fraction <= Decimal("1"):
            raise ValueError(f"order_fraction must be in (0, 1], got {self.order_fraction}")

        mode = "DRY RUN" if self.dry_run else "LIVE"
        self.logger.info(
            f"CoinbaseTrader initialised — mode={mode}, product={self.product}, "
            f"order_fraction={self.order_fraction}"
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def reconcile(self) -> None:
        """
        Fetch every persisted order and settle those the exchange finished
        while we were down.

        Exchange errors propagate: the caller must not trade when the state
        of a persisted order is unknown.
        """
        for order in self.ledger.open_orders():
            self.logger.info(f"Fetching order: {order.id}")
            remote = self._fetch(order)
            self._apply(order, remote)
        if not self.dry_run:
            self._compare_accounts()

    def sync_open_orders(self) -> int:
        """
        Poll open orders; settle terminal ones. Returns how many settled.

        Transient failures leave the order open for the next iteration.
        """
        settled = 0
        for order in self.ledger.open_orders():
            try:
                remote = self._fetch(order)
            except ExchangeAuthError as exc:
                self.logger.critical(f"[{order.id}] Authentication rejected while polling: {exc}")
                continue
            except ExchangeError as exc:
                self.logger.warning(f"[{order.id}] Could not poll order: {exc}")
                continue
            if self._apply(order, remote):
                settled += 1
        return settled

    def act(self, signal: Signal, price: Decimal) -> Optional[Order]:
        """
        Place the order a crossover calls for, if funds allow.

        BUY spends ``order_fraction`` of the available quote currency; SELL
        offers all available base currency. Only one open order per side.
        """
        side = Side.BUY if signal == Signal.BUY else Side.SELL
        if self.ledger.open_orders(side):
            self.logger.info(f"[{self.product}] {side.value.upper()} signal ignored — order already open.")
            return None

        limit = Decimal(price).quantize(self.price_increment, rounding=ROUND_DOWN)
        if limit <= 0:
            self.logger.warning(f"[{self.product}] Invalid price {price}; no order.")
            return None

        if side == Side.BUY:
            available = self.ledger.available(self.quote)
            size = available * self.order_fraction / limit
        else:
            size = self.ledger.available(self.base)
        size = size.quantize(self.size_increment, rounding=ROUND_DOWN)

        if size <= 0 or size < self.min_order_size:
            self.logger.info(
                f"[{self.product}] {side.value.upper()} signal — size {size} below minimum "
                f"{self.min_order_size}; no order."
            )
            return None

        return self._place(side, limit, size)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _place(self, side: Side, price: Decimal, size: Decimal) -> Optional[Order]:
        if self.dry_run:
            remote = {"id": f"DRY_{self.product}_{int(time.time() * 1000)}", "status": "pending"}
            self.logger.info(f"[DRY RUN] {side.value} {self.product}: size={size}, price={price}")
        else:
            try:
                remote = self.exchange.place_order(self.auth, self.product, side, price, size)
            except ExchangeAuthError as exc:
                self.logger.critical(f"[{self.product}] Order rejected — check API signing/keys: {exc}")
                return None
            except ExchangeError as exc:
                self.logger.error(f"[{self.product}] Failed to place {side.value}: {exc}")
                return None

        order = Order(
            id=str(remote["id"]),
            product=self.product,
            side=side,
            status=str(remote.get("status", "pending")),
            price=price,
            size=size,
        )
        self.ledger.add_order(order)
        if side == Side.BUY:
            self.ledger.hold(self.quote, price * size)
        else:
            self.ledger.hold(self.base, size)
        self.logger.info(
            f"[{self.product}] {side.value.upper()} PLACED — order_id={order.id}, "
            f"size={size}, price={price}"
        )
        return order

    def _fetch(self, order: Order) -> Optional[dict]:
        if self.dry_run and order.id.startswith("DRY_"):
            return {
                "id": order.id,
                "status": "done",
                "done_reason": "filled",
                "filled_size": str(order.size),
                "executed_value": str(order.price * order.size),
                "fill_fees": "0",
            }
        return self.exchange.get_order(self.auth, order.id)

    def _apply(self, order: Order, remote: Optional[dict]) -> bool:
        """Update or settle *order* from its exchange view. ``True`` if settled."""
        if remote is not None and str(remote.get("status")) not in TERMINAL_STATUSES:
            self.ledger.set_order_status(order.id, str(remote.get("status")))
            return False
        self._settle(order, remote)
        return True

    def _settle(self, order: Order, remote: Optional[dict]) -> None:
        """Release the order's hold and book whatever filled."""
        # The exchange forgets cancelled orders, so an unknown id filled nothing.
        remote = remote or {}
        filled = _amount(remote, "filled_size")
        value = _amount(remote, "executed_value")
        fees = _amount(remote, "fill_fees")

        self.ledger.remove_order(order.id)
        if order.side == Side.BUY:
            self.ledger.release(self.quote, order.price * order.size)
            if filled > 0:
                self.ledger.debit(self.quote, value + fees)
                self.ledger.credit(self.base, filled)
        else:
            self.ledger.release(self.base, order.size)
            if filled > 0:
                self.ledger.debit(self.base, filled)
                self.ledger.credit(self.quote, value - fees)

        reason = remote.get("done_reason") or remote.get("status") or "not found"
        self.logger.info(
            f"[{self.product}] {order.side.value.upper()} {order.id} finished ({reason}) — "
            f"filled={filled}, value={value}, fees={fees}; funds: {self.ledger.describe_funds()}"
        )

    def _compare_accounts(self) -> None:
        """Warn when the exchange's balances differ from the fund ledger."""
        try:
            accounts = self.exchange.get_accounts(self.auth)
        except ExchangeError as exc:
            self.logger.warning(f"Could not fetch accounts for comparison: {exc}")
            return
        for account in accounts:
            code = account.get("currency")
            if code not in (self.base, self.quote):
                continue
            remote_balance = _amount(account, "balance")
            local = self.ledger.fund(code).balance
            if remote_balance != local:
                self.logger.warning(
                    f"{code}: ledger balance {local} differs from exchange balance {remote_balance}."
                )
