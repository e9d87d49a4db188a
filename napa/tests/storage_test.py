from decimal import Decimal
from unittest.mock import patch

import pytest

from napa.core.errors import StoreCommitError, StoreCorruptError
from napa.core.models import Fund, Order, Side
from napa.data.storage import FUNDS, ORDERS, DurableStore, FundsCodec, OrdersCodec


class SimulatedCrash(BaseException):
    """Stands in for the process dying mid-commit."""


def _order(order_id="abc-1", side=Side.BUY, status="open"):
    return Order(
        id=order_id,
        product="LTC-USD",
        side=side,
        status=status,
        price=Decimal("71.02"),
        size=Decimal("1.25"),
    )


def _funds(usd="1000.00", ltc="0"):
    return {
        "USD": Fund("USD", Decimal(usd), Decimal("0")),
        "LTC": Fund("LTC", Decimal(ltc), Decimal("0")),
    }


@pytest.fixture
def store(tmp_path):
    return DurableStore(tmp_path / "store")


class TestCodecs:
    """Test the per-dataset text formats."""

    def test_orders_entries_are_json_lines(self):
        [line] = OrdersCodec.entries([_order()])
        assert line == (
            '{"id": "abc-1", "price": "71.02", "product": "LTC-USD", '
            '"side": "buy", "size": "1.25", "status": "open"}'
        )

    def test_orders_parse_rejects_bad_rows(self):
        with pytest.raises(ValueError):
            OrdersCodec.parse(['{"id": "x"}'])
        with pytest.raises(ValueError):
            OrdersCodec.parse([
                '{"id": "x", "price": "-1", "product": "LTC-USD", '
                '"side": "buy", "size": "1", "status": "open"}'
            ])
        with pytest.raises(ValueError):
            OrdersCodec.parse([
                '{"id": "x", "price": "1", "product": "LTC-USD", '
                '"side": "hold", "size": "1", "status": "open"}'
            ])

    def test_funds_entries(self):
        funds = {"USD": Fund("USD", Decimal("12.50"), Decimal("2"))}
        assert FundsCodec.entries(funds) == ["USD=12.50,2"]

    def test_funds_parse_rejects_negative_and_duplicates(self):
        with pytest.raises(ValueError):
            FundsCodec.parse(["USD=-1,0"])
        with pytest.raises(ValueError):
            FundsCodec.parse(["USD=1,0", "USD=2,0"])
        with pytest.raises(ValueError):
            FundsCodec.parse(["USD=1"])


class TestDurableStore:
    """Test load/commit and crash recovery."""

    def test_file_names(self, store):
        assert store.primary_path(ORDERS).name == "orders.txt"
        assert store.backup_path(ORDERS).name == "orders_backup.txt"
        assert store.update_path(ORDERS).name == "orders_update.txt"
        assert store.update_backup_path(ORDERS).name == "orders_update_backup.txt"

    def test_fresh_store_is_empty(self, store):
        assert store.load(ORDERS) == []
        assert store.load(FUNDS) == {}

    def test_commit_then_load(self, store):
        orders = [_order("a"), _order("b", side=Side.SELL, status="pending")]
        store.commit(ORDERS, orders)
        store.commit(FUNDS, _funds())

        reopened = DurableStore(store.data_dir)
        assert reopened.load(ORDERS) == orders
        assert reopened.load(FUNDS) == _funds()

    def test_commit_writes_trailer_and_backup(self, store):
        store.commit(ORDERS, [_order("a")])
        store.commit(ORDERS, [_order("a"), _order("b")])

        assert store.primary_path(ORDERS).read_text().endswith("#count=2\n")
        assert store.backup_path(ORDERS).read_text().endswith("#count=1\n")
        assert not store.update_path(ORDERS).exists()
        assert not store.update_backup_path(ORDERS).exists()

    def test_empty_snapshot_round_trip(self, store):
        store.commit(ORDERS, [])
        assert store.primary_path(ORDERS).read_text() == "#count=0\n"
        assert store.load(ORDERS) == []

    def test_unknown_dataset(self, store):
        with pytest.raises(ValueError):
            store.load("positions")

    def test_staging_failure_leaves_files_untouched(self, store):
        store.commit(FUNDS, _funds("1000"))
        store.commit(FUNDS, _funds("900"))
        primary_before = store.primary_path(FUNDS).read_text()
        backup_before = store.backup_path(FUNDS).read_text()

        with patch.object(DurableStore, "_write_synced", side_effect=OSError("disk full")):
            with pytest.raises(StoreCommitError):
                store.commit(FUNDS, _funds("1"))

        assert store.primary_path(FUNDS).read_text() == primary_before
        assert store.backup_path(FUNDS).read_text() == backup_before
        assert store.load(FUNDS) == _funds("900")

    def test_swap_failure_raises_commit_error(self, store):
        store.commit(FUNDS, _funds("1000"))
        with patch.object(DurableStore, "_swap_in", side_effect=OSError("rename failed")):
            with pytest.raises(StoreCommitError):
                store.commit(FUNDS, _funds("1"))
        assert store.load(FUNDS) == _funds("1000")

    def test_crash_before_swap_recovers_previous_snapshot(self, store):
        store.commit(ORDERS, [_order("a")])
        store.commit(ORDERS, [_order("a"), _order("b")])

        with patch.object(DurableStore, "_swap_in", side_effect=SimulatedCrash):
            with pytest.raises(SimulatedCrash):
                store.commit(ORDERS, [])

        # Restart: the staged update is ignored, the last commit wins.
        reopened = DurableStore(store.data_dir)
        assert store.update_path(ORDERS).exists()
        assert [o.id for o in reopened.load(ORDERS)] == ["a", "b"]

    def test_crash_during_backup_recovers_previous_snapshot(self, store):
        store.commit(ORDERS, [_order("a")])
        store.commit(ORDERS, [_order("a"), _order("b")])

        with patch.object(DurableStore, "_replace_backup", side_effect=SimulatedCrash):
            with pytest.raises(SimulatedCrash):
                store.commit(ORDERS, [_order("c")])

        assert [o.id for o in DurableStore(store.data_dir).load(ORDERS)] == ["a", "b"]

    def test_truncated_primary_falls_back_to_backup(self, store):
        store.commit(ORDERS, [_order("a")])
        store.commit(ORDERS, [_order("a"), _order("b")])

        # Cut the primary mid-file: the trailer is lost.
        primary = store.primary_path(ORDERS)
        primary.write_text(primary.read_text()[:40])

        assert [o.id for o in store.load(ORDERS)] == ["a"]

    def test_commit_after_recovery_keeps_valid_backup(self, store):
        store.commit(FUNDS, _funds("1000"))
        store.commit(FUNDS, _funds("900"))
        store.primary_path(FUNDS).write_text("USD=90")
        assert store.load(FUNDS) == _funds("1000")
        backup_before = store.backup_path(FUNDS).read_text()

        with patch.object(DurableStore, "_swap_in", side_effect=SimulatedCrash):
            with pytest.raises(SimulatedCrash):
                store.commit(FUNDS, _funds("800"))

        assert store.backup_path(FUNDS).read_text() == backup_before
        assert DurableStore(store.data_dir).load(FUNDS) == _funds("1000")

    def test_commit_after_recovery_completes(self, store):
        store.commit(FUNDS, _funds("1000"))
        store.commit(FUNDS, _funds("900"))
        store.primary_path(FUNDS).write_text("USD=90")

        store.commit(FUNDS, _funds("800"))

        assert store.load(FUNDS) == _funds("800")
        assert store.backup_path(FUNDS).read_text().startswith("USD=1000,0\n")

    def test_wrong_count_falls_back_to_backup(self, store):
        store.commit(FUNDS, _funds("1000"))
        store.commit(FUNDS, _funds("900"))
        primary = store.primary_path(FUNDS)
        primary.write_text(primary.read_text().replace("#count=2", "#count=3"))

        assert store.load(FUNDS) == _funds("1000")

    def test_missing_primary_uses_backup(self, store):
        store.commit(FUNDS, _funds("1000"))
        store.commit(FUNDS, _funds("900"))
        store.primary_path(FUNDS).unlink()

        assert store.load(FUNDS) == _funds("1000")

    def test_both_corrupt_raises(self, store):
        store.commit(FUNDS, _funds("1000"))
        store.commit(FUNDS, _funds("900"))
        store.primary_path(FUNDS).write_text("USD=oops\n")
        store.backup_path(FUNDS).write_text("")

        with pytest.raises(StoreCorruptError):
            store.load(FUNDS)

    def test_invalid_values_count_as_corrupt(self, store):
        store.primary_path(FUNDS).write_text("USD=-5,0\n#count=1\n")
        with pytest.raises(StoreCorruptError):
            store.load(FUNDS)
