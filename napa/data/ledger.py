"""
In-memory order and fund ledgers backed by the durable store.

The ledger is the authoritative copy of what the agent believes it owns.
Every mutation commits the affected dataset. When a commit fails the dataset
is marked dirty and :meth:`Ledger.flush_pending` retries it at the start of
the next loop iteration, warning until the disk catches up.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from napa.core.errors import StoreCommitError
from napa.core.models import Fund, Order, Side
from napa.data.storage import FUNDS, ORDERS, DurableStore


class Ledger:
    """
    Orders and funds for a single product.

    Parameters
    ----------
    store : DurableStore
        Where snapshots are committed.
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    def __init__(self, store: DurableStore, logger: Optional[logging.Logger] = None) -> None:
        self.store = store
        self.logger = logger or logging.getLogger(__name__)
        self.orders: list[Order] = []
        self.funds: dict[str, Fund] = {}
        self._dirty: set[str] = set()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def load(
        cls,
        store: DurableStore,
        initial_funds: Optional[dict[str, Decimal]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> "Ledger":
        """
        Restore both ledgers from *store*.

        *initial_funds* seeds the fund ledger only when no fund snapshot has
        ever been committed. ``StoreCorruptError`` propagates: trading on
        unknown state is not allowed.
        """
        ledger = cls(store, logger=logger)
        ledger.orders = store.load(ORDERS)
        ledger.funds = store.load(FUNDS)
        if not ledger.funds and initial_funds:
            for code, balance in initial_funds.items():
                ledger.funds[code] = Fund(currency=code, balance=Decimal(balance))
            ledger.logger.info(f"Seeded funds: {ledger.describe_funds()}")
            ledger._commit(FUNDS)
        ledger.logger.info(
            f"Ledger restored — {len(ledger.orders)} open order(s), funds: {ledger.describe_funds()}"
        )
        return ledger

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def open_orders(self, side: Optional[Side] = None) -> list[Order]:
        if side is None:
            return list(self.orders)
        return [o for o in self.orders if o.side == side]

    def get_order(self, order_id: str) -> Optional[Order]:
        for order in self.orders:
            if order.id == order_id:
                return order
        return None

    def add_order(self, order: Order) -> None:
        if self.get_order(order.id) is not None:
            raise ValueError(f"order {order.id} is already in the ledger")
        self.orders.append(order)
        self._commit(ORDERS)

    def remove_order(self, order_id: str) -> Optional[Order]:
        order = self.get_order(order_id)
        if order is None:
            return None
        self.orders.remove(order)
        self._commit(ORDERS)
        return order

    def set_order_status(self, order_id: str, status: str) -> None:
        order = self.get_order(order_id)
        if order is None or order.status == status:
            return
        order.status = status
        self._commit(ORDERS)

    # ------------------------------------------------------------------
    # Funds
    # ------------------------------------------------------------------

    def fund(self, currency: str) -> Fund:
        """Return the fund for *currency*, zero if we hold none."""
        return self.funds.get(currency) or Fund(currency=currency)

    def available(self, currency: str) -> Decimal:
        return self.fund(currency).available

    def hold(self, currency: str, amount: Decimal) -> None:
        fund = self._fund_for_update(currency)
        fund.hold += amount
        self._commit(FUNDS)

    def release(self, currency: str, amount: Decimal) -> None:
        fund = self._fund_for_update(currency)
        fund.hold = max(Decimal("0"), fund.hold - amount)
        self._commit(FUNDS)

    def credit(self, currency: str, amount: Decimal) -> None:
        fund = self._fund_for_update(currency)
        fund.balance += amount
        self._commit(FUNDS)

    def debit(self, currency: str, amount: Decimal) -> None:
        fund = self._fund_for_update(currency)
        if amount > fund.balance:
            self.logger.warning(
                f"Debit of {amount} {currency} exceeds balance {fund.balance}; clamping to zero."
            )
            amount = fund.balance
        fund.balance -= amount
        self._commit(FUNDS)

    def describe_funds(self) -> str:
        if not self.funds:
            return "none"
        return ", ".join(
            f"{code} {fund.balance} (hold {fund.hold})" for code, fund in self.funds.items()
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @property
    def pending(self) -> set[str]:
        """Datasets whose last commit failed."""
        return set(self._dirty)

    def flush_pending(self) -> bool:
        """Retry failed commits. Returns ``True`` when nothing is pending."""
        for dataset in sorted(self._dirty):
            self.logger.warning(
                f"[{dataset}] Ledger and disk are inconsistent — retrying commit."
            )
            self._commit(dataset)
        return not self._dirty

    def _fund_for_update(self, currency: str) -> Fund:
        if currency not in self.funds:
            self.funds[currency] = Fund(currency=currency)
        return self.funds[currency]

    def _commit(self, dataset: str) -> None:
        snapshot = self.orders if dataset == ORDERS else self.funds
        try:
            self.store.commit(dataset, snapshot)
        except StoreCommitError as exc:
            self._dirty.add(dataset)
            self.logger.error(f"Commit failed, will retry next iteration: {exc}")
        else:
            self._dirty.discard(dataset)
