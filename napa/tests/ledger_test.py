from decimal import Decimal
from unittest.mock import patch

import pytest

from napa.core.errors import StoreCommitError, StoreCorruptError
from napa.core.models import Order, Side
from napa.data.ledger import Ledger
from napa.data.storage import FUNDS, ORDERS, DurableStore


def _order(order_id="o-1", side=Side.BUY):
    return Order(order_id, "LTC-USD", side, "pending", Decimal("70.00"), Decimal("2"))


@pytest.fixture
def store(tmp_path):
    return DurableStore(tmp_path / "store")


class TestLedgerLoad:
    """Test restoring and seeding the ledgers."""

    def test_seeds_initial_funds_once(self, store):
        ledger = Ledger.load(store, initial_funds={"USD": Decimal("1000")})
        assert ledger.available("USD") == Decimal("1000")
        ledger.debit("USD", Decimal("250"))

        # A second start must not top the balance up again.
        reloaded = Ledger.load(store, initial_funds={"USD": Decimal("1000")})
        assert reloaded.available("USD") == Decimal("750")

    def test_restores_orders(self, store):
        ledger = Ledger.load(store)
        ledger.add_order(_order("o-1"))
        ledger.add_order(_order("o-2", Side.SELL))

        reloaded = Ledger.load(store)
        assert [o.id for o in reloaded.open_orders()] == ["o-1", "o-2"]
        assert [o.id for o in reloaded.open_orders(Side.SELL)] == ["o-2"]

    def test_corrupt_store_propagates(self, store):
        store.primary_path(ORDERS).write_text("garbage\n")
        with pytest.raises(StoreCorruptError):
            Ledger.load(store)


class TestLedgerMutations:
    """Test order and fund bookkeeping."""

    def test_duplicate_order_rejected(self, store):
        ledger = Ledger.load(store)
        ledger.add_order(_order())
        with pytest.raises(ValueError):
            ledger.add_order(_order())

    def test_remove_and_status(self, store):
        ledger = Ledger.load(store)
        ledger.add_order(_order())
        ledger.set_order_status("o-1", "open")
        assert store.load(ORDERS)[0].status == "open"

        assert ledger.remove_order("o-1").id == "o-1"
        assert ledger.remove_order("o-1") is None
        assert store.load(ORDERS) == []

    def test_hold_and_release(self, store):
        ledger = Ledger.load(store, initial_funds={"USD": Decimal("100")})
        ledger.hold("USD", Decimal("40"))
        assert ledger.available("USD") == Decimal("60")
        ledger.release("USD", Decimal("100"))
        assert ledger.fund("USD").hold == Decimal("0")

    def test_debit_clamps_at_zero(self, store):
        ledger = Ledger.load(store, initial_funds={"USD": Decimal("10")})
        ledger.debit("USD", Decimal("15"))
        assert ledger.fund("USD").balance == Decimal("0")

    def test_unknown_currency_is_zero(self, store):
        ledger = Ledger.load(store)
        assert ledger.available("LTC") == Decimal("0")
        ledger.credit("LTC", Decimal("1.5"))
        assert store.load(FUNDS)["LTC"].balance == Decimal("1.5")


class TestPendingCommits:
    """Test retrying commits that failed."""

    def test_failed_commit_is_retried(self, store):
        ledger = Ledger.load(store, initial_funds={"USD": Decimal("100")})

        with patch.object(store, "commit", side_effect=StoreCommitError("disk full")):
            ledger.credit("USD", Decimal("5"))
        assert ledger.pending == {FUNDS}
        # Memory moved on, disk did not.
        assert store.load(FUNDS)["USD"].balance == Decimal("100")

        assert ledger.flush_pending() is True
        assert ledger.pending == set()
        assert store.load(FUNDS)["USD"].balance == Decimal("105")

    def test_flush_keeps_pending_while_failing(self, store, caplog):
        ledger = Ledger.load(store)
        with patch.object(store, "commit", side_effect=StoreCommitError("disk full")):
            ledger.add_order(_order())
            with caplog.at_level("WARNING"):
                assert ledger.flush_pending() is False
        assert ledger.pending == {ORDERS}
        assert "inconsistent" in caplog.text
