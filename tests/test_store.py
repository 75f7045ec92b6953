"""Tests for the in-memory and JSON-file lot stores."""

import json
from datetime import date
from decimal import Decimal

import pytest

from ascentfolio.errors import AccountNotFoundError, ConcurrencyConflictError, LotNotFoundError
from ascentfolio.models import Account, AssetType, Lot, PortfolioTransaction, TransactionType
from ascentfolio.store import InMemoryLotStore, JsonFileLotStore


def _lot(symbol="AAPL", quantity="10", account_id="acct"):
    return Lot(
        account_id=account_id,
        symbol=symbol,
        asset_type=AssetType.STOCK,
        quantity=Decimal(quantity),
        average_buy_price=Decimal("100"),
    )


def _txn(account_id="acct"):
    return PortfolioTransaction(
        account_id=account_id,
        type=TransactionType.DEPOSIT,
        quantity=Decimal("100"),
        total_amount=Decimal("100"),
        currency="USD",
        date=date(2025, 1, 2),
    )


class TestInMemoryLotStore:
    def test_create_assigns_id_and_version(self):
        """Verify created lots get an id and start at version 0."""
        store = InMemoryLotStore()
        lot = store.create_lot(_lot())
        assert lot.id
        assert lot.version == 0
        assert store.get_lot(lot.id) == lot

    def test_returned_lots_are_copies(self):
        """Verify mutating a returned lot does not change the stored one."""
        store = InMemoryLotStore()
        lot = store.create_lot(_lot())
        lot.quantity = Decimal("999")
        assert store.get_lot(lot.id).quantity == Decimal("10")

    def test_update_bumps_version_and_checks_expected(self):
        """Verify updates increment the version and reject stale versions."""
        store = InMemoryLotStore()
        lot = store.create_lot(_lot())
        updated = store.update_lot(lot.id, {"quantity": Decimal("5")}, expected_version=0)
        assert updated.version == 1
        assert updated.quantity == Decimal("5")
        with pytest.raises(ConcurrencyConflictError):
            store.update_lot(lot.id, {"quantity": Decimal("4")}, expected_version=0)
        with pytest.raises(ConcurrencyConflictError):
            store.delete_lot(lot.id, expected_version=0)

    def test_update_rejects_identity_fields(self):
        """Verify only mutable lot fields can be updated."""
        store = InMemoryLotStore()
        lot = store.create_lot(_lot())
        with pytest.raises(ValueError, match="Cannot update"):
            store.update_lot(lot.id, {"account_id": "other"})

    def test_missing_records_raise(self):
        """Verify unknown lots and accounts raise their not-found errors."""
        store = InMemoryLotStore()
        with pytest.raises(LotNotFoundError):
            store.get_lot("nope")
        with pytest.raises(LotNotFoundError):
            store.delete_lot("nope")
        with pytest.raises(AccountNotFoundError):
            store.get_account("nope")

    def test_filters_by_account(self):
        """Verify lot and transaction listings filter by account."""
        store = InMemoryLotStore()
        store.create_lot(_lot(account_id="a"))
        store.create_lot(_lot(account_id="b"))
        store.append_transaction(_txn("a"))
        assert len(store.list_lots()) == 2
        assert [lot.account_id for lot in store.list_lots(account_id="b")] == ["b"]
        assert len(store.list_transactions(account_id="a")) == 1
        assert store.list_transactions(account_id="b") == []

    def test_atomic_rolls_back_lots_and_ledger(self):
        """Verify an exception inside atomic() undoes every change made in it."""
        store = InMemoryLotStore()
        kept = store.create_lot(_lot())
        with pytest.raises(RuntimeError):
            with store.atomic():
                store.update_lot(kept.id, {"quantity": Decimal("1")})
                store.create_lot(_lot("MSFT"))
                store.append_transaction(_txn())
                raise RuntimeError("boom")
        assert [lot.symbol for lot in store.list_lots()] == ["AAPL"]
        assert store.get_lot(kept.id).quantity == Decimal("10")
        assert store.get_lot(kept.id).version == 0
        assert store.list_transactions() == []

    def test_nested_atomic_joins_outer(self):
        """Verify a failure in the outer block also undoes a completed inner block."""
        store = InMemoryLotStore()
        with pytest.raises(RuntimeError):
            with store.atomic():
                with store.atomic():
                    store.create_lot(_lot())
                raise RuntimeError("boom")
        assert store.list_lots() == []

    def test_accounts_roundtrip(self):
        """Verify saving assigns an id and listing filters by workspace."""
        store = InMemoryLotStore()
        saved = store.save_account(Account(name="Main", workspace_id="w1"))
        store.save_account(Account(name="Other", workspace_id="w2"))
        assert store.get_account(saved.id).name == "Main"
        assert [a.name for a in store.list_accounts(workspace_id="w1")] == ["Main"]


class _UnwritableStore(JsonFileLotStore):
    fail = False

    def _commit(self):
        if self.fail:
            raise OSError("disk full")
        super()._commit()


class TestJsonFileLotStore:
    def test_persists_and_reloads(self, tmp_path):
        """Verify committed changes are written and read back from disk."""
        path = tmp_path / "store.json"
        store = JsonFileLotStore(path)
        account = store.save_account(Account(name="Main", base_currency="EUR"))
        lot = store.create_lot(_lot(account_id=account.id))
        store.update_lot(lot.id, {"current_price": Decimal("101.25")})
        store.append_transaction(_txn(account.id))

        document = json.loads(path.read_text())
        assert set(document) == {"accounts", "positions", "transactions"}
        assert document["positions"][0]["averageBuyPrice"] == "100"

        reloaded = JsonFileLotStore(path)
        assert reloaded.get_account(account.id).base_currency == "EUR"
        stored = reloaded.get_lot(lot.id)
        assert stored.current_price == Decimal("101.25")
        assert stored.version == 1
        assert reloaded.list_transactions()[0].type is TransactionType.DEPOSIT

    def test_rolled_back_work_is_not_written(self, tmp_path):
        """Verify a failed unit of work leaves the file as it was."""
        path = tmp_path / "store.json"
        store = JsonFileLotStore(path)
        store.create_lot(_lot())
        before = path.read_text()
        with pytest.raises(RuntimeError):
            with store.atomic():
                store.create_lot(_lot("MSFT"))
                raise RuntimeError("boom")
        assert path.read_text() == before

    def test_failed_write_restores_memory(self, tmp_path):
        """Verify a unit of work whose file write fails is undone in memory too."""
        path = tmp_path / "store.json"
        store = _UnwritableStore(path)
        lot = store.create_lot(_lot())
        before = path.read_text()
        store.fail = True
        with pytest.raises(OSError):
            with store.atomic():
                store.update_lot(lot.id, {"quantity": Decimal("4")})
                store.create_lot(_lot("MSFT"))
        assert [l.symbol for l in store.list_lots()] == ["AAPL"]
        assert store.get_lot(lot.id).quantity == Decimal("10")
        assert path.read_text() == before

    def test_missing_file_can_be_required(self, tmp_path):
        """Verify create_if_missing=False refuses to start from nothing."""
        with pytest.raises(FileNotFoundError):
            JsonFileLotStore(tmp_path / "absent.json", create_if_missing=False)
