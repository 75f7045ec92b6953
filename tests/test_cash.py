"""Tests for FIFO cash debits and credits."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from ascentfolio.cash import CashLedger
from ascentfolio.errors import InsufficientFundsError, ValidationError
from ascentfolio.models import AssetType, Lot
from ascentfolio.store import InMemoryLotStore

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _ledger_with_cash(*amounts, currency="USD"):
    store = InMemoryLotStore()
    ids = []
    for n, amount in enumerate(amounts):
        lot = store.create_lot(Lot(
            account_id="acct",
            symbol="CASH",
            asset_type=AssetType.CASH,
            quantity=Decimal(str(amount)),
            average_buy_price=Decimal("1"),
            currency=currency,
            created_date=T0 + timedelta(days=n),
        ))
        ids.append(lot.id)
    return store, CashLedger(store), ids


def test_deduct_consumes_oldest_lots_first():
    """Verify a debit empties the oldest lot and trims the next one."""
    store, ledger, (first, second, third) = _ledger_with_cash(100, 50, 30)
    debits = ledger.deduct("acct", "USD", Decimal("120"))

    assert [(d.lot_id, d.taken, d.remaining) for d in debits] == [
        (first, Decimal("100"), Decimal("0")),
        (second, Decimal("20"), Decimal("30")),
    ]
    assert debits[0].deleted
    remaining = {lot.id: lot.quantity for lot in store.list_lots()}
    assert remaining == {second: Decimal("30"), third: Decimal("30")}
    assert ledger.available_cash("acct", "USD") == Decimal("60")


def test_fifo_follows_creation_time_not_insertion_order():
    """Verify a lot created earlier is debited first even if stored later."""
    store = InMemoryLotStore()
    late = store.create_lot(Lot(
        account_id="acct", symbol="CASH", asset_type=AssetType.CASH,
        quantity=Decimal("10"), average_buy_price=Decimal("1"), created_date=T0 + timedelta(days=2),
    ))
    early = store.create_lot(Lot(
        account_id="acct", symbol="CASH", asset_type=AssetType.CASH,
        quantity=Decimal("10"), average_buy_price=Decimal("1"), created_date=T0,
    ))
    debits = CashLedger(store).deduct("acct", "USD", Decimal("5"))
    assert debits[0].lot_id == early.id
    assert store.get_lot(late.id).quantity == Decimal("10")


def test_insufficient_funds_changes_nothing():
    """Verify an oversized debit raises before touching any lot."""
    store, ledger, ids = _ledger_with_cash(100)
    with pytest.raises(InsufficientFundsError) as excinfo:
        ledger.deduct("acct", "USD", Decimal("150"))

    assert excinfo.value.available == Decimal("100")
    assert excinfo.value.required == Decimal("150")
    assert "Available: 100.00 USD, Required: 150.00 USD" in str(excinfo.value)
    lot = store.get_lot(ids[0])
    assert lot.quantity == Decimal("100")
    assert lot.version == 0


def test_deduct_only_uses_matching_currency():
    """Verify cash in another currency does not fund a debit."""
    store, ledger, _ = _ledger_with_cash(100, currency="EUR")
    with pytest.raises(InsufficientFundsError):
        ledger.deduct("acct", "USD", Decimal("1"))


def test_non_positive_amounts_are_rejected():
    """Verify zero and negative debits and credits raise ValidationError."""
    _, ledger, _ = _ledger_with_cash(100)
    with pytest.raises(ValidationError):
        ledger.deduct("acct", "USD", Decimal("0"))
    with pytest.raises(ValidationError):
        ledger.credit("acct", "USD", Decimal("-5"))


def test_each_credit_creates_a_new_lot():
    """Verify credits never merge into existing cash lots."""
    store, ledger, ids = _ledger_with_cash(100)
    lot = ledger.credit("acct", "usd", Decimal("25"), notes="dividend")
    assert lot.id not in ids
    assert lot.currency == "USD"
    assert lot.average_buy_price == Decimal("1")
    assert lot.notes == "dividend"
    assert len(store.list_lots()) == 2
    assert ledger.cash_balances("acct") == {"USD": Decimal("125")}
