"""Persistence contract for lots, ledger entries and accounts.

The engine only talks to :class:`LotStore`. Two implementations ship here: an
in-memory store used by tests and embedding callers, and a JSON-file store
used by the command line.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any, Iterator

from .errors import AccountNotFoundError, ConcurrencyConflictError, LotNotFoundError
from .models import Account, Lot, PortfolioTransaction

logger = logging.getLogger(__name__)

# Lot attributes an update may touch. Identity, account and creation time are fixed.
UPDATABLE_LOT_FIELDS = frozenset({
    "quantity",
    "current_price",
    "last_price_update",
    "notes",
})


class LotStore(ABC):
    """Abstract storage collaborator.

    Implementations must make :meth:`atomic` a real transactional boundary:
    if the block raises, every lot and ledger change made inside it is undone.
    """

    @abstractmethod
    def list_lots(self, account_id: str | None = None, workspace_id: str | None = None) -> list[Lot]:
        raise NotImplementedError

    @abstractmethod
    def get_lot(self, lot_id: str) -> Lot:
        raise NotImplementedError

    @abstractmethod
    def create_lot(self, lot: Lot) -> Lot:
        raise NotImplementedError

    @abstractmethod
    def update_lot(self, lot_id: str, changes: dict[str, Any], expected_version: int | None = None) -> Lot:
        raise NotImplementedError

    @abstractmethod
    def delete_lot(self, lot_id: str, expected_version: int | None = None) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_transactions(self, account_id: str | None = None) -> list[PortfolioTransaction]:
        raise NotImplementedError

    @abstractmethod
    def append_transaction(self, transaction: PortfolioTransaction) -> PortfolioTransaction:
        raise NotImplementedError

    @abstractmethod
    def get_account(self, account_id: str) -> Account:
        raise NotImplementedError

    @abstractmethod
    def save_account(self, account: Account) -> Account:
        raise NotImplementedError

    @abstractmethod
    def list_accounts(self, workspace_id: str | None = None) -> list[Account]:
        raise NotImplementedError

    @abstractmethod
    def atomic(self) -> Any:
        """Return a context manager wrapping a unit of work."""
        raise NotImplementedError


def _new_id() -> str:
    return uuid.uuid4().hex


class InMemoryLotStore(LotStore):
    """Dictionary-backed store with snapshot rollback.

    Entering the outermost :meth:`atomic` block snapshots every table; an
    exception escaping the block restores the snapshot. Nested blocks join the
    outer one.
    """

    def __init__(self):
        self._lots: dict[str, Lot] = {}
        self._transactions: list[PortfolioTransaction] = []
        self._accounts: dict[str, Account] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._journal: tuple[dict[str, Lot], list[PortfolioTransaction], dict[str, Account]] | None = None

    # ── Unit of work ──────────────────────────────────────────

    @contextmanager
    def atomic(self) -> Iterator[None]:
        with self._lock:
            if self._depth == 0:
                self._journal = (
                    copy.deepcopy(self._lots),
                    list(self._transactions),
                    copy.deepcopy(self._accounts),
                )
            self._depth += 1
            try:
                yield
            except BaseException:
                self._depth -= 1
                if self._depth == 0:
                    self._rollback()
                raise
            else:
                self._depth -= 1
                if self._depth == 0:
                    try:
                        self._commit()
                    except BaseException:
                        self._rollback()
                        raise
                    self._journal = None

    def _rollback(self) -> None:
        assert self._journal is not None
        self._lots, self._transactions, self._accounts = self._journal
        self._journal = None
        logger.warning("Rolled back uncommitted lot and ledger changes")

    def _commit(self) -> None:
        """Hook for subclasses that persist state after a successful unit of work."""

    def _autocommit(self) -> None:
        if self._depth == 0:
            self._commit()

    # ── Lots ──────────────────────────────────────────────────

    def list_lots(self, account_id: str | None = None, workspace_id: str | None = None) -> list[Lot]:
        with self._lock:
            lots = [
                lot.copy() for lot in self._lots.values()
                if (account_id is None or lot.account_id == account_id)
                and (workspace_id is None or lot.workspace_id == workspace_id)
            ]
        return lots

    def get_lot(self, lot_id: str) -> Lot:
        with self._lock:
            lot = self._lots.get(lot_id)
            if lot is None:
                raise LotNotFoundError(lot_id)
            return lot.copy()

    def create_lot(self, lot: Lot) -> Lot:
        with self._lock:
            stored = lot.copy(id=lot.id or _new_id(), version=0)
            if stored.id in self._lots:
                raise ValueError(f"Lot {stored.id} already exists")
            self._lots[stored.id] = stored
            self._autocommit()
            return stored.copy()

    def _check_version(self, lot: Lot, expected_version: int | None) -> None:
        if expected_version is not None and lot.version != expected_version:
            assert lot.id is not None
            raise ConcurrencyConflictError(lot.id, expected_version, lot.version)

    def update_lot(self, lot_id: str, changes: dict[str, Any], expected_version: int | None = None) -> Lot:
        unknown = set(changes) - UPDATABLE_LOT_FIELDS
        if unknown:
            raise ValueError(f"Cannot update lot fields: {sorted(unknown)}")
        with self._lock:
            lot = self._lots.get(lot_id)
            if lot is None:
                raise LotNotFoundError(lot_id)
            self._check_version(lot, expected_version)
            updated = lot.copy(**changes, version=lot.version + 1)
            self._lots[lot_id] = updated
            self._autocommit()
            return updated.copy()

    def delete_lot(self, lot_id: str, expected_version: int | None = None) -> None:
        with self._lock:
            lot = self._lots.get(lot_id)
            if lot is None:
                raise LotNotFoundError(lot_id)
            self._check_version(lot, expected_version)
            del self._lots[lot_id]
            self._autocommit()

    # ── Ledger ────────────────────────────────────────────────

    def list_transactions(self, account_id: str | None = None) -> list[PortfolioTransaction]:
        with self._lock:
            return [
                txn for txn in self._transactions
                if account_id is None or txn.account_id == account_id
            ]

    def append_transaction(self, transaction: PortfolioTransaction) -> PortfolioTransaction:
        with self._lock:
            if transaction.id is None:
                transaction = replace(transaction, id=_new_id())
            self._transactions.append(transaction)
            self._autocommit()
            return transaction

    # ── Accounts ──────────────────────────────────────────────

    def get_account(self, account_id: str) -> Account:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            return copy.copy(account)

    def save_account(self, account: Account) -> Account:
        with self._lock:
            stored = copy.copy(account)
            if stored.id is None:
                stored.id = _new_id()
            self._accounts[stored.id] = stored
            self._autocommit()
            return copy.copy(stored)

    def list_accounts(self, workspace_id: str | None = None) -> list[Account]:
        with self._lock:
            return [
                copy.copy(account) for account in self._accounts.values()
                if workspace_id is None or account.workspace_id == workspace_id
            ]

    # ── Serialization ─────────────────────────────────────────

    def to_document(self) -> dict[str, Any]:
        with self._lock:
            return {
                "accounts": [account.to_record() for account in self._accounts.values()],
                "positions": [lot.to_record() for lot in self._lots.values()],
                "transactions": [txn.to_record() for txn in self._transactions],
            }

    def load_document(self, document: dict[str, Any]) -> None:
        """Replace the store contents with a previously saved document.

        Raises:
            ValueError: If the document is not a mapping of record lists.
        """
        if not isinstance(document, dict):
            raise ValueError("Store document must be a JSON object")
        accounts = [Account.from_record(r) for r in document.get("accounts", [])]
        lots = [Lot.from_record(r) for r in document.get("positions", [])]
        transactions = [PortfolioTransaction.from_record(r) for r in document.get("transactions", [])]
        with self._lock:
            self._accounts = {a.id: a for a in accounts if a.id is not None}
            self._lots = {lot.id: lot for lot in lots if lot.id is not None}
            self._transactions = transactions


class JsonFileLotStore(InMemoryLotStore):
    """In-memory store mirrored to a JSON file after every committed change.

    The file is rewritten through a temporary file and ``os.replace`` so a
    crash never leaves a half-written document behind.
    """

    def __init__(self, path: str | os.PathLike[str], create_if_missing: bool = True):
        """Open (or create) the store file.

        Args:
            path: Location of the JSON document.
            create_if_missing: If False, a missing file raises FileNotFoundError.
        """
        super().__init__()
        self.path = Path(path)
        if self.path.exists():
            with open(self.path, "r", encoding="utf-8") as f:
                self.load_document(json.load(f))
            logger.debug("Loaded store from %s", self.path)
        elif not create_if_missing:
            raise FileNotFoundError(f"Store file not found: {self.path}")

    def _commit(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".store-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self.to_document(), f, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
