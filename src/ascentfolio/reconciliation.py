"""Buy, sell, deposit and withdraw operations.

Each operation runs under a per-account lock and inside a single store unit
of work: it validates, optionally funds itself from cash, mutates lots and
appends exactly one ledger entry. Either every step lands or none does.
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Callable, Iterator, TypeVar

from .aggregation import aggregation_key
from .cash import CashDebit, CashLedger, fifo_order
from .currency import Number, normalize_currency, to_decimal
from .errors import (
    InsufficientFundsError,
    LotNotFoundError,
    PartialMutationError,
    PortfolioError,
    ValidationError,
)
from .models import (
    CASH_SYMBOL,
    Account,
    AssetType,
    Holding,
    Lot,
    OptionAction,
    OptionType,
    PortfolioTransaction,
    TransactionType,
    utcnow,
)
from .store import LotStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationState(Enum):
    VALIDATED = "validated"
    FUNDED = "funded"
    UNFUNDED = "unfunded"
    LOTS_MUTATED = "lots_mutated"
    LEDGER_APPENDED = "ledger_appended"
    DONE = "done"
    REJECTED = "rejected"


class _Operation:
    """Tracks the state an operation has reached, for logs and error reports."""

    def __init__(self, name: str, account_id: str):
        self.name = name
        self.account_id = account_id
        self.state: OperationState | None = None
        self.mutated = False

    def advance(self, state: OperationState) -> None:
        logger.debug("%s on %s: %s -> %s", self.name, self.account_id, self.state.value if self.state else "start", state.value)
        self.state = state
        if state in (OperationState.FUNDED, OperationState.LOTS_MUTATED):
            self.mutated = True


# ── Requests and results ──────────────────────────────────────


@dataclass
class BuyRequest:
    """Input for a purchase (or, for Cash, a deposit).

    For options ``price`` may be left out in favour of ``premium_price``; the
    lot's average buy price is always the premium.
    """

    account_id: str
    symbol: str
    asset_type: AssetType
    quantity: Number
    price: Number | None = None
    currency: str | None = None
    date: date | None = None
    deduct_from_cash: bool = False
    notes: str = ""
    current_price: Number | None = None
    strike_price: Number | None = None
    expiration_date: date | None = None
    option_type: OptionType | None = None
    option_action: OptionAction | None = None
    premium_price: Number | None = None


@dataclass
class SellRequest:
    """Input for a full or partial sale.

    Identify the lots either with ``lot_ids`` or with an aggregated
    ``holding``; all of them must share one aggregation key.
    """

    account_id: str
    quantity: Number
    price: Number
    lot_ids: list[str] | None = None
    holding: Holding | None = None
    return_to_cash: bool = False
    notes: str = ""
    date: date | None = None


@dataclass
class CashRequest:
    account_id: str
    amount: Number
    currency: str | None = None
    date: date | None = None
    notes: str = ""


@dataclass
class BuyResult:
    lot: Lot
    transaction: PortfolioTransaction
    cash_debits: list[CashDebit] = field(default_factory=list)
    state: OperationState = OperationState.DONE


@dataclass
class SellResult:
    transaction: PortfolioTransaction
    updated_lots: list[Lot]
    deleted_lot_ids: list[str]
    proceeds: Decimal
    cost_basis_sold: Decimal
    profit_loss: Decimal
    cash_lot: Lot | None = None
    state: OperationState = OperationState.DONE

    @property
    def transactions(self) -> list[PortfolioTransaction]:
        return [self.transaction]


@dataclass
class CashResult:
    lot: Lot | None
    transaction: PortfolioTransaction
    cash_debits: list[CashDebit] = field(default_factory=list)
    state: OperationState = OperationState.DONE


# ── Validation helpers ────────────────────────────────────────


def _positive(name: str, value: Number | None) -> Decimal:
    if value is None:
        raise ValidationError(name, "is required")
    try:
        result = to_decimal(value)
    except ArithmeticError:
        raise ValidationError(name, f"{value!r} is not a number") from None
    if not result.is_finite() or result <= 0:
        raise ValidationError(name, f"must be greater than 0, got {value}")
    return result


def _non_negative(name: str, value: Number) -> Decimal:
    try:
        result = to_decimal(value)
    except ArithmeticError:
        raise ValidationError(name, f"{value!r} is not a number") from None
    if not result.is_finite() or result < 0:
        raise ValidationError(name, f"must not be negative, got {value}")
    return result


def format_pnl(profit_loss: Decimal, currency: str) -> str:
    sign = "+" if profit_loss >= 0 else ""
    return f"P&L: {sign}{profit_loss:,.2f} {currency}"


class ReconciliationEngine:
    """Executes portfolio operations against a :class:`LotStore`.

    Operations on the same account are serialized by a per-account lock held
    for the whole call; lot writes also carry the version they were read at
    so a store shared across processes rejects stale writes.
    """

    def __init__(self, store: LotStore, cash_ledger: CashLedger | None = None):
        self.store = store
        self.cash = cash_ledger or CashLedger(store)
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _account_lock(self, account_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(account_id, threading.RLock())
        with lock:
            yield

    def _run(self, name: str, account_id: str, body: Callable[[_Operation], T]) -> T:
        op = _Operation(name, account_id)
        with self._account_lock(account_id):
            try:
                with self.store.atomic():
                    result = body(op)
            except (ValidationError, InsufficientFundsError) as exc:
                op.advance(OperationState.REJECTED)
                logger.info("%s on account %s rejected: %s", name, account_id, exc)
                raise
            except PortfolioError:
                raise
            except Exception as exc:
                if op.mutated:
                    logger.error("%s on account %s failed after mutation; changes rolled back: %s", name, account_id, exc)
                    raise PartialMutationError(name, account_id, str(exc)) from exc
                raise
        op.advance(OperationState.DONE)
        return result

    def _account(self, account_id: str) -> Account:
        return self.store.get_account(account_id)

    # ── Accounts ──────────────────────────────────────────────

    def open_account(self, account: Account, initial_investment: Number = 0) -> Account:
        """Save a new account and, if given, deposit its initial investment."""
        amount = _non_negative("initial_investment", initial_investment)
        account.initial_investment = amount
        if account.id is None:
            account.id = uuid.uuid4().hex
        with self._account_lock(account.id), self.store.atomic():
            saved = self.store.save_account(account)
            assert saved.id is not None
            if amount > 0:
                self.deposit(CashRequest(
                    account_id=saved.id,
                    amount=amount,
                    currency=saved.base_currency,
                    notes="Initial investment",
                ))
        logger.info("Opened account %s (%s) in %s", saved.name, saved.id, saved.base_currency)
        return saved

    # ── Buy ───────────────────────────────────────────────────

    def buy(self, request: BuyRequest) -> BuyResult:
        """Record a purchase, optionally paid for from the account's cash.

        Raises:
            ValidationError: On non-positive quantity or price, or missing
                option fields.
            InsufficientFundsError: If ``deduct_from_cash`` is set and the
                cash lots cannot cover the cost.
            PartialMutationError: If storage fails after lots were touched.
        """
        if request.asset_type is AssetType.CASH:
            cash = self.deposit(CashRequest(
                account_id=request.account_id,
                amount=_positive("quantity", request.quantity),
                currency=request.currency,
                date=request.date,
                notes=request.notes,
            ))
            assert cash.lot is not None
            return BuyResult(cash.lot, cash.transaction, state=cash.state)

        return self._run("buy", request.account_id, lambda op: self._buy(op, request))

    def _buy(self, op: _Operation, request: BuyRequest) -> BuyResult:
        account = self._account(request.account_id)
        lot = self._build_lot(request, account)
        op.advance(OperationState.VALIDATED)

        cost = lot.cost_basis
        debits: list[CashDebit] = []
        if request.deduct_from_cash:
            debits = self.cash.deduct(account.id or request.account_id, lot.currency, cost)
            op.advance(OperationState.FUNDED)
        else:
            op.advance(OperationState.UNFUNDED)

        created = self.store.create_lot(lot)
        op.advance(OperationState.LOTS_MUTATED)

        transaction = self.store.append_transaction(PortfolioTransaction(
            account_id=created.account_id,
            type=TransactionType.BUY,
            symbol=created.symbol,
            asset_type=created.asset_type,
            quantity=created.quantity,
            price_per_unit=created.average_buy_price,
            total_amount=cost,
            currency=created.currency,
            date=created.date,
            notes=created.notes,
            position_id=created.id,
        ))
        op.advance(OperationState.LEDGER_APPENDED)
        logger.info("Bought %s %s at %s %s (cost %s)", created.quantity, created.symbol, created.average_buy_price, created.currency, cost)
        return BuyResult(created, transaction, debits)

    def _build_lot(self, request: BuyRequest, account: Account) -> Lot:
        symbol = (request.symbol or "").strip().upper()
        if not symbol:
            raise ValidationError("symbol", "is required")
        quantity = _positive("quantity", request.quantity)
        currency = normalize_currency(request.currency or account.base_currency)

        strike_price = expiration_date = option_type = option_action = premium_price = None
        if request.asset_type is AssetType.OPTION:
            premium_source = request.premium_price if request.premium_price is not None else request.price
            premium_price = _positive("premium_price", premium_source)
            strike_price = _positive("strike_price", request.strike_price)
            if request.expiration_date is None:
                raise ValidationError("expiration_date", "is required for options")
            if request.option_type is None:
                raise ValidationError("option_type", "must be Call or Put for options")
            if request.option_action is None:
                raise ValidationError("option_action", "must be Buy or Sell for options")
            expiration_date = request.expiration_date
            option_type = request.option_type
            option_action = request.option_action
            price = premium_price
        else:
            price = _positive("price", request.price)

        current_price = None
        if request.current_price is not None:
            current_price = _positive("current_price", request.current_price)

        return Lot(
            account_id=account.id or request.account_id,
            workspace_id=account.workspace_id,
            symbol=symbol,
            asset_type=request.asset_type,
            quantity=quantity,
            average_buy_price=price,
            current_price=current_price,
            currency=currency,
            date=request.date or date.today(),
            strike_price=strike_price,
            expiration_date=expiration_date,
            option_type=option_type,
            option_action=option_action,
            premium_price=premium_price,
            notes=request.notes,
            created_date=utcnow(),
        )

    # ── Sell ──────────────────────────────────────────────────

    def sell(self, request: SellRequest) -> SellResult:
        """Sell from one lot or an aggregated holding, oldest lots first.

        Cost basis sold is taken from the lots actually consumed, not from the
        holding's weighted average.

        Raises:
            ValidationError: On a non-positive quantity, a negative price,
                mismatched lots, or a quantity above what the lots hold.
            PartialMutationError: If storage fails after lots were touched.
        """
        return self._run("sell", request.account_id, lambda op: self._sell(op, request))

    def _resolve_lots(self, request: SellRequest) -> list[Lot]:
        if request.lot_ids:
            lot_ids = list(request.lot_ids)
        elif request.holding is not None:
            lot_ids = request.holding.lot_ids
        else:
            raise ValidationError("lot_ids", "a sale needs lot ids or a holding")
        if not lot_ids:
            raise ValidationError("lot_ids", "the holding has no stored lots")

        lots: list[Lot] = []
        for lot_id in dict.fromkeys(lot_ids):
            try:
                lot = self.store.get_lot(lot_id)
            except LotNotFoundError:
                raise ValidationError("lot_ids", f"lot {lot_id} no longer exists") from None
            if lot.account_id != request.account_id:
                raise ValidationError("lot_ids", f"lot {lot_id} belongs to another account")
            lots.append(lot)

        keys = {aggregation_key(lot) for lot in lots}
        if len(keys) > 1:
            raise ValidationError("lot_ids", "lots must belong to a single holding")
        currencies = {lot.currency for lot in lots}
        if len(currencies) > 1:
            raise ValidationError("lot_ids", f"lots span several currencies ({', '.join(sorted(currencies))}); sell them separately")
        if lots[0].asset_type is AssetType.CASH:
            raise ValidationError("lot_ids", "cash is withdrawn, not sold")
        return lots

    def _sell(self, op: _Operation, request: SellRequest) -> SellResult:
        quantity = _positive("quantity", request.quantity)
        price = _non_negative("price", request.price)
        lots = self._resolve_lots(request)
        held = sum((lot.quantity for lot in lots), Decimal("0"))
        if quantity > held:
            raise ValidationError("quantity", f"cannot sell {quantity}, holding has {held}")
        op.advance(OperationState.VALIDATED)

        first = lots[0]
        multiplier = first.multiplier
        remaining = quantity
        cost_sold = Decimal("0")
        updated: list[Lot] = []
        deleted: list[str] = []
        consumed_ids: list[str] = []

        for lot in fifo_order(lots):
            if remaining <= 0:
                break
            assert lot.id is not None
            take = min(lot.quantity, remaining)
            left = lot.quantity - take
            cost_sold += take * lot.average_buy_price * multiplier
            if left <= 0:
                self.store.delete_lot(lot.id, expected_version=lot.version)
                deleted.append(lot.id)
            else:
                updated.append(self.store.update_lot(lot.id, {"quantity": left}, expected_version=lot.version))
            op.advance(OperationState.LOTS_MUTATED)
            consumed_ids.append(lot.id)
            logger.debug("Sold %s from lot %s, %s left", take, lot.id, left)
            remaining -= take

        proceeds = quantity * price * multiplier
        profit_loss = proceeds - cost_sold
        pnl_line = format_pnl(profit_loss, first.currency)
        sell_date = request.date or date.today()

        cash_lot = None
        if request.return_to_cash and proceeds > 0:
            cash_lot = self.cash.credit(
                request.account_id,
                first.currency,
                proceeds,
                notes=f"Proceeds from selling {quantity} {first.symbol}",
                on=sell_date,
                workspace_id=first.workspace_id,
            )

        notes = f"{request.notes}\n{pnl_line}" if request.notes else pnl_line
        transaction = self.store.append_transaction(PortfolioTransaction(
            account_id=request.account_id,
            type=TransactionType.SELL,
            symbol=first.symbol,
            asset_type=first.asset_type,
            quantity=quantity,
            price_per_unit=price,
            total_amount=proceeds,
            currency=first.currency,
            date=sell_date,
            notes=notes,
            position_id=consumed_ids[0],
        ))
        op.advance(OperationState.LEDGER_APPENDED)
        logger.info("Sold %s %s at %s %s (%s)", quantity, first.symbol, price, first.currency, pnl_line)
        return SellResult(
            transaction=transaction,
            updated_lots=updated,
            deleted_lot_ids=deleted,
            proceeds=proceeds,
            cost_basis_sold=cost_sold,
            profit_loss=profit_loss,
            cash_lot=cash_lot,
        )

    # ── Deposit / withdraw ────────────────────────────────────

    def deposit(self, request: CashRequest) -> CashResult:
        """Credit cash as a new lot and log a deposit.

        Raises:
            ValidationError: On a non-positive amount.
        """
        return self._run("deposit", request.account_id, lambda op: self._deposit(op, request))

    def _deposit(self, op: _Operation, request: CashRequest) -> CashResult:
        account = self._account(request.account_id)
        amount = _positive("amount", request.amount)
        currency = normalize_currency(request.currency or account.base_currency)
        on = request.date or date.today()
        op.advance(OperationState.VALIDATED)
        op.advance(OperationState.UNFUNDED)

        lot = self.cash.credit(request.account_id, currency, amount, notes=request.notes, on=on, workspace_id=account.workspace_id)
        op.advance(OperationState.LOTS_MUTATED)

        transaction = self.store.append_transaction(PortfolioTransaction(
            account_id=request.account_id,
            type=TransactionType.DEPOSIT,
            symbol=CASH_SYMBOL,
            asset_type=AssetType.CASH,
            quantity=amount,
            price_per_unit=Decimal("1"),
            total_amount=amount,
            currency=currency,
            date=on,
            notes=request.notes,
            position_id=lot.id,
        ))
        op.advance(OperationState.LEDGER_APPENDED)
        return CashResult(lot, transaction)

    def withdraw(self, request: CashRequest) -> CashResult:
        """Debit cash oldest-first and log a withdrawal.

        Raises:
            ValidationError: On a non-positive amount.
            InsufficientFundsError: If the balance in that currency is short.
        """
        return self._run("withdraw", request.account_id, lambda op: self._withdraw(op, request))

    def _withdraw(self, op: _Operation, request: CashRequest) -> CashResult:
        account = self._account(request.account_id)
        amount = _positive("amount", request.amount)
        currency = normalize_currency(request.currency or account.base_currency)
        op.advance(OperationState.VALIDATED)

        debits = self.cash.deduct(request.account_id, currency, amount)
        op.advance(OperationState.FUNDED)
        op.advance(OperationState.LOTS_MUTATED)

        last = debits[-1]
        remaining_lot = None if last.deleted else self.store.get_lot(last.lot_id)
        transaction = self.store.append_transaction(PortfolioTransaction(
            account_id=request.account_id,
            type=TransactionType.WITHDRAWAL,
            symbol=CASH_SYMBOL,
            asset_type=AssetType.CASH,
            quantity=amount,
            price_per_unit=Decimal("1"),
            total_amount=amount,
            currency=currency,
            date=request.date or date.today(),
            notes=request.notes,
            position_id=debits[0].lot_id,
        ))
        op.advance(OperationState.LEDGER_APPENDED)
        return CashResult(remaining_lot, transaction, debits)


__all__ = [
    "BuyRequest",
    "BuyResult",
    "CashRequest",
    "CashResult",
    "OperationState",
    "ReconciliationEngine",
    "SellRequest",
    "SellResult",
]
