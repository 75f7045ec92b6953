"""FIFO debits and credits against an account's cash lots."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from .currency import Number, normalize_currency, to_decimal
from .errors import InsufficientFundsError, ValidationError
from .models import CASH_SYMBOL, AssetType, Lot, utcnow
from .store import LotStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CashDebit:
    """One step of a FIFO debit: how much was taken from which lot."""

    lot_id: str
    taken: Decimal
    remaining: Decimal

    @property
    def deleted(self) -> bool:
        return self.remaining <= 0


def fifo_order(lots: list[Lot]) -> list[Lot]:
    """Sort lots oldest first by creation time; ties keep their input order."""
    return sorted(lots, key=lambda lot: lot.created_date)


class CashLedger:
    """Per-account, per-currency cash availability backed by Cash lots.

    Every credit is its own dated lot; debits consume the oldest lots first.
    """

    def __init__(self, store: LotStore):
        self.store = store

    def cash_lots(self, account_id: str, currency: str) -> list[Lot]:
        currency = normalize_currency(currency)
        lots = [
            lot for lot in self.store.list_lots(account_id=account_id)
            if lot.asset_type is AssetType.CASH and lot.currency == currency
        ]
        return fifo_order(lots)

    def available_cash(self, account_id: str, currency: str) -> Decimal:
        return sum((lot.quantity for lot in self.cash_lots(account_id, currency)), Decimal("0"))

    def cash_balances(self, account_id: str) -> dict[str, Decimal]:
        """Cash per currency for one account, omitting empty currencies."""
        balances: dict[str, Decimal] = defaultdict(Decimal)
        for lot in self.store.list_lots(account_id=account_id):
            if lot.asset_type is AssetType.CASH:
                balances[lot.currency] += lot.quantity
        return {code: bal for code, bal in balances.items() if bal != 0}

    def deduct(self, account_id: str, currency: str, amount: Number) -> list[CashDebit]:
        """Debit ``amount`` from the oldest cash lots first.

        The balance is checked up front so an insufficient balance raises
        before any lot changes. The walk itself runs inside one store unit of
        work, so a storage failure part-way leaves every lot as it was.

        Args:
            account_id: Account to debit.
            currency: Currency of the cash to consume.
            amount: Positive amount to remove.

        Returns:
            The per-lot debits in the order they were applied.

        Raises:
            ValidationError: If ``amount`` is not positive.
            InsufficientFundsError: If the cash lots cannot cover ``amount``.
        """
        amount = to_decimal(amount)
        currency = normalize_currency(currency)
        if amount <= 0:
            raise ValidationError("amount", f"debit must be greater than 0, got {amount}")

        with self.store.atomic():
            lots = self.cash_lots(account_id, currency)
            available = sum((lot.quantity for lot in lots), Decimal("0"))
            if available < amount:
                raise InsufficientFundsError(available, amount, currency)

            debits: list[CashDebit] = []
            remaining = amount
            for lot in lots:
                if remaining <= 0:
                    break
                assert lot.id is not None
                take = min(lot.quantity, remaining)
                left = lot.quantity - take
                if left <= 0:
                    self.store.delete_lot(lot.id, expected_version=lot.version)
                else:
                    self.store.update_lot(lot.id, {"quantity": left}, expected_version=lot.version)
                logger.debug("Debited %s %s from cash lot %s, %s left", take, currency, lot.id, left)
                debits.append(CashDebit(lot.id, take, left))
                remaining -= take

        logger.info("Debited %s %s from account %s across %d lot(s)", amount, currency, account_id, len(debits))
        return debits

    def credit(self, account_id: str, currency: str, amount: Number, notes: str = "", on: date | None = None, workspace_id: str | None = None) -> Lot:
        """Record incoming cash as a new lot dated today (or ``on``).

        Raises:
            ValidationError: If ``amount`` is not positive.
        """
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValidationError("amount", f"credit must be greater than 0, got {amount}")

        lot = self.store.create_lot(Lot(
            account_id=account_id,
            workspace_id=workspace_id,
            symbol=CASH_SYMBOL,
            asset_type=AssetType.CASH,
            quantity=amount,
            average_buy_price=Decimal("1"),
            currency=normalize_currency(currency),
            date=on or date.today(),
            notes=notes,
            created_date=utcnow(),
        ))
        logger.info("Credited %s %s to account %s as lot %s", amount, lot.currency, account_id, lot.id)
        return lot
