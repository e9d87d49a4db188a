"""
Crash-safe local persistence for the order and fund ledgers.

Every dataset is backed by four text files under ``data/store/``::

    orders.txt                 primary (the read path)
    orders_backup.txt          previous committed snapshot
    orders_update.txt          staged update
    orders_update_backup.txt   staged copy of the backup

A commit runs three steps:

    Step 1 — **Stage**
        Serialise the snapshot to the staged-update file, flush and fsync.
        A failure here leaves primary and backup untouched.

    Step 2 — **Back up**
        Copy the current primary to the staged backup file and rename it
        over the backup, so the backup is never half written either. A
        primary that does not parse is never promoted; the backup is kept.

    Step 3 — **Swap**
        Atomically rename the staged update over the primary.

Whatever step a crash interrupts, at least one of primary/backup still holds
a complete, previously committed snapshot. Each file ends with a
``#count=N`` trailer, so a truncated file is detected on load.

Usage::

    from napa.data.storage import DurableStore, ORDERS, FUNDS

    store = DurableStore(data_dir="data/store", logger=logger)
    orders = store.load(ORDERS)
    store.commit(ORDERS, orders)
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from dataclasses import asdict
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional

from napa.core.errors import StoreCommitError, StoreCorruptError
from napa.core.models import Fund, Order, Side
from napa.helpers.data_helper import parse_map

# ---------------------------------------------------------------------------
# File layout
# ---------------------------------------------------------------------------
ORDERS = "orders"
FUNDS = "funds"

_BACKUP_SUFFIX = "_backup"
_UPDATE_SUFFIX = "_update"
_UPDATE_BACKUP_SUFFIX = "_update_backup"
_TRAILER_PREFIX = "#count="

ORDER_FIELDS = ("id", "product", "side", "status", "price", "size")


# ---------------------------------------------------------------------------
# Codecs
# ---------------------------------------------------------------------------

def _decimal(value: Any, field: str) -> Decimal:
    if not isinstance(value, str):
        raise ValueError(f"{field} must be a decimal string, got {type(value).__name__}")
    try:
        result = Decimal(value)
    except InvalidOperation as exc:
        raise ValueError(f"{field} is not a decimal: {value!r}") from exc
    if not result.is_finite():
        raise ValueError(f"{field} is not finite: {value!r}")
    return result


class OrdersCodec:
    """One JSON object per line; decimals are stored as strings."""

    name = ORDERS

    @staticmethod
    def empty() -> list[Order]:
        return []

    @staticmethod
    def entries(snapshot: list[Order]) -> list[str]:
        lines = []
        for order in snapshot:
            row = asdict(order)
            row["side"] = order.side.value
            row["price"] = str(order.price)
            row["size"] = str(order.size)
            lines.append(json.dumps(row, sort_keys=True))
        return lines

    @staticmethod
    def parse(entries: list[str]) -> list[Order]:
        orders = []
        for line in entries:
            row = json.loads(line)
            if not isinstance(row, dict) or set(row) != set(ORDER_FIELDS):
                raise ValueError(f"order entry has unexpected fields: {line!r}")
            for field in ("id", "product", "status"):
                if not isinstance(row[field], str) or not row[field]:
                    raise ValueError(f"order {field} must be a non-empty string")
            price = _decimal(row["price"], "price")
            size = _decimal(row["size"], "size")
            if price < 0 or size < 0:
                raise ValueError(f"order {row['id']} has a negative price or size")
            orders.append(Order(
                id=row["id"],
                product=row["product"],
                side=Side(row["side"]),
                status=row["status"],
                price=price,
                size=size,
            ))
        return orders


class FundsCodec:
    """``CODE=balance,hold`` per line."""

    name = FUNDS

    @staticmethod
    def empty() -> dict[str, Fund]:
        return {}

    @staticmethod
    def entries(snapshot: dict[str, Fund]) -> list[str]:
        return [
            f"{code}={fund.balance},{fund.hold}"
            for code, fund in snapshot.items()
        ]

    @staticmethod
    def parse(entries: list[str]) -> dict[str, Fund]:
        funds: dict[str, Fund] = {}
        for code, value in parse_map(entries).items():
            balance_text, sep, hold_text = value.partition(",")
            if not sep:
                raise ValueError(f"fund {code} must be 'balance,hold', got {value!r}")
            balance = _decimal(balance_text.strip(), f"{code} balance")
            hold = _decimal(hold_text.strip(), f"{code} hold")
            if balance < 0 or hold < 0:
                raise ValueError(f"fund {code} has a negative amount")
            funds[code] = Fund(currency=code, balance=balance, hold=hold)
        if len(funds) != len(entries):
            raise ValueError("duplicate or blank fund entries")
        return funds


CODECS = {ORDERS: OrdersCodec, FUNDS: FundsCodec}


# ---------------------------------------------------------------------------
# DurableStore
# ---------------------------------------------------------------------------
class DurableStore:
    """
    Loads and commits ledger snapshots with staged-write-then-swap semantics.

    Parameters
    ----------
    data_dir : str | Path
        Directory holding the dataset files (e.g. ``data/store/``).
    logger : logging.Logger, optional
        Logger instance.  Falls back to a module-level logger.
    """

    def __init__(
        self,
        data_dir: str | Path,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def primary_path(self, dataset: str) -> Path:
        return self.data_dir / f"{dataset}.txt"

    def backup_path(self, dataset: str) -> Path:
        return self.data_dir / f"{dataset}{_BACKUP_SUFFIX}.txt"

    def update_path(self, dataset: str) -> Path:
        return self.data_dir / f"{dataset}{_UPDATE_SUFFIX}.txt"

    def update_backup_path(self, dataset: str) -> Path:
        return self.data_dir / f"{dataset}{_UPDATE_BACKUP_SUFFIX}.txt"

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    def load(self, dataset: str):
        """
        Return the last committed snapshot of *dataset*.

        The primary file is tried first, then the backup. When neither has
        ever been written the empty snapshot is returned (fresh install).

        Raises
        ------
        StoreCorruptError
            A snapshot file exists but neither primary nor backup is valid.
        """
        codec = _codec(dataset)
        primary = self.primary_path(dataset)
        backup = self.backup_path(dataset)

        staged = self.update_path(dataset)
        if staged.exists():
            self.logger.warning(
                f"[{dataset}] Ignoring staged update left by an interrupted commit: {staged}"
            )

        if not primary.exists() and not backup.exists():
            self.logger.info(f"[{dataset}] No snapshot on disk — starting empty.")
            return codec.empty()

        for path in (primary, backup):
            if not path.exists():
                self.logger.warning(f"[{dataset}] {path.name} is missing.")
                continue
            try:
                snapshot = codec.parse(self._read_entries(path))
            except (OSError, UnicodeDecodeError, ValueError) as exc:
                self.logger.warning(f"[{dataset}] {path.name} is unreadable: {exc}")
                continue
            if path == backup:
                self.logger.warning(f"[{dataset}] Recovered snapshot from {path.name}.")
            return snapshot

        raise StoreCorruptError(
            f"no valid snapshot for '{dataset}' in {primary} or {backup}"
        )

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def commit(self, dataset: str, snapshot) -> None:
        """
        Durably replace the committed snapshot of *dataset*.

        Raises
        ------
        StoreCommitError
            The commit did not complete. The previously committed snapshot is
            still loadable.
        """
        codec = _codec(dataset)
        entries = codec.entries(snapshot)
        text = "".join(f"{line}\n" for line in entries)
        text += f"{_TRAILER_PREFIX}{len(entries)}\n"

        primary = self.primary_path(dataset)
        staged = self.update_path(dataset)

        # Step 1 — stage
        try:
            self._write_synced(staged, text)
        except OSError as exc:
            raise StoreCommitError(f"[{dataset}] staging failed: {exc}") from exc

        # Step 2 — back up the current primary, only if it is a valid snapshot
        if self._is_valid(codec, primary):
            try:
                self._replace_backup(dataset)
            except OSError as exc:
                raise StoreCommitError(f"[{dataset}] backup failed: {exc}") from exc
        elif primary.exists():
            self.logger.warning(
                f"[{dataset}] Keeping {self.backup_path(dataset).name}: {primary.name} is not a valid snapshot."
            )

        # Step 3 — swap
        try:
            self._swap_in(staged, primary)
        except OSError as exc:
            raise StoreCommitError(f"[{dataset}] swap failed: {exc}") from exc

        self.logger.debug(f"[{dataset}] Committed {len(entries)} entries.")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _read_entries(path: Path) -> list[str]:
        """Return the entry lines of *path* after checking its trailer."""
        lines = [line for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
        if not lines or not lines[-1].startswith(_TRAILER_PREFIX):
            raise ValueError("missing count trailer (truncated write?)")
        try:
            expected = int(lines[-1][len(_TRAILER_PREFIX):])
        except ValueError as exc:
            raise ValueError(f"bad count trailer {lines[-1]!r}") from exc
        entries = lines[:-1]
        if len(entries) != expected:
            raise ValueError(f"trailer says {expected} entries, found {len(entries)}")
        return entries

    def _is_valid(self, codec, path: Path) -> bool:
        if not path.exists():
            return False
        try:
            codec.parse(self._read_entries(path))
        except (OSError, UnicodeDecodeError, ValueError):
            return False
        return True

    @staticmethod
    def _write_synced(path: Path, text: str) -> None:
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())

    def _replace_backup(self, dataset: str) -> None:
        staged_backup = self.update_backup_path(dataset)
        shutil.copyfile(self.primary_path(dataset), staged_backup)
        with open(staged_backup, "rb+") as f:
            os.fsync(f.fileno())
        os.replace(staged_backup, self.backup_path(dataset))

    def _swap_in(self, staged: Path, primary: Path) -> None:
        os.replace(staged, primary)
        self._sync_dir()

    def _sync_dir(self) -> None:
        """Persist the renames themselves (POSIX only)."""
        if os.name != "posix":
            return
        fd = os.open(self.data_dir, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)


def _codec(dataset: str):
    try:
        return CODECS[dataset]
    except KeyError:
        raise ValueError(f"unknown dataset '{dataset}'") from None
