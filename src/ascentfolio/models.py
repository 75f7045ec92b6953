"""Records the engine reads and writes: lots, ledger entries and accounts."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from .currency import PIVOT_CURRENCY, normalize_currency, to_decimal

# Per-contract factor applied to option premiums.
CONTRACT_MULTIPLIER = Decimal("100")

CASH_SYMBOL = "CASH"


class AssetType(Enum):
    """Closed set of asset variants a lot can hold."""

    STOCK = "Stock"
    ETF = "ETF"
    OPTION = "Option"
    CASH = "Cash"
    CRYPTO = "Crypto"
    OTHER = "Other"

    @property
    def multiplier(self) -> Decimal:
        if self is AssetType.OPTION:
            return CONTRACT_MULTIPLIER
        return Decimal("1")


class OptionType(Enum):
    CALL = "Call"
    PUT = "Put"


class OptionAction(Enum):
    BUY = "Buy"
    SELL = "Sell"


class TransactionType(Enum):
    """Kinds of ledger entries."""

    BUY = "buy"
    SELL = "sell"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _optional_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    return to_decimal(value)


def _format_decimal(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


@dataclass
class Lot:
    """A single purchase or deposit record; the unit of FIFO consumption."""

    account_id: str
    symbol: str
    asset_type: AssetType
    quantity: Decimal
    average_buy_price: Decimal
    currency: str = PIVOT_CURRENCY
    date: date = field(default_factory=date.today)
    current_price: Decimal | None = None
    strike_price: Decimal | None = None
    expiration_date: date | None = None
    option_type: OptionType | None = None
    option_action: OptionAction | None = None
    premium_price: Decimal | None = None
    notes: str = ""
    created_date: datetime = field(default_factory=utcnow)
    id: str | None = None
    workspace_id: str | None = None
    version: int = 0
    last_price_update: datetime | None = None

    @property
    def multiplier(self) -> Decimal:
        return self.asset_type.multiplier

    @property
    def market_price(self) -> Decimal:
        """Latest known unit price; cash is always 1, otherwise falls back to cost."""
        if self.asset_type is AssetType.CASH:
            return Decimal("1")
        if self.current_price is None:
            return self.average_buy_price
        return self.current_price

    @property
    def cost_basis(self) -> Decimal:
        return self.quantity * self.average_buy_price * self.multiplier

    @property
    def market_value(self) -> Decimal:
        return self.quantity * self.market_price * self.multiplier

    def to_record(self) -> dict[str, Any]:
        """Serialize to the persisted camelCase shape."""
        return {
            "id": self.id,
            "accountId": self.account_id,
            "workspaceId": self.workspace_id,
            "symbol": self.symbol,
            "assetType": self.asset_type.value,
            "quantity": str(self.quantity),
            "averageBuyPrice": str(self.average_buy_price),
            "currentPrice": _format_decimal(self.current_price),
            "currency": self.currency,
            "date": self.date.isoformat(),
            "strikePrice": _format_decimal(self.strike_price),
            "expirationDate": self.expiration_date.isoformat() if self.expiration_date else None,
            "optionType": self.option_type.value if self.option_type else None,
            "optionAction": self.option_action.value if self.option_action else None,
            "premiumPrice": _format_decimal(self.premium_price),
            "notes": self.notes,
            "createdDate": self.created_date.isoformat(),
            "version": self.version,
            "lastPriceUpdate": self.last_price_update.isoformat() if self.last_price_update else None,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Lot":
        """Build a Lot from a persisted record.

        Raises:
            KeyError: If a required field is missing.
            ValueError: If an enum or number field is malformed.
        """
        option_type = record.get("optionType")
        option_action = record.get("optionAction")
        created = _parse_datetime(record.get("createdDate"))
        return cls(
            id=record.get("id"),
            account_id=record["accountId"],
            workspace_id=record.get("workspaceId"),
            symbol=record["symbol"],
            asset_type=AssetType(record["assetType"]),
            quantity=to_decimal(record["quantity"]),
            average_buy_price=to_decimal(record["averageBuyPrice"]),
            current_price=_optional_decimal(record.get("currentPrice")),
            currency=normalize_currency(record.get("currency") or PIVOT_CURRENCY),
            date=_parse_date(record.get("date")) or date.today(),
            strike_price=_optional_decimal(record.get("strikePrice")),
            expiration_date=_parse_date(record.get("expirationDate")),
            option_type=OptionType(option_type) if option_type else None,
            option_action=OptionAction(option_action) if option_action else None,
            premium_price=_optional_decimal(record.get("premiumPrice")),
            notes=record.get("notes") or "",
            created_date=created or utcnow(),
            version=int(record.get("version", 0)),
            last_price_update=_parse_datetime(record.get("lastPriceUpdate")),
        )

    def copy(self, **changes: Any) -> "Lot":
        return replace(self, **changes)


@dataclass
class Holding:
    """Display-level view merging every lot that shares an aggregation key.

    Never persisted; rebuilt from lots on every read.
    """

    key: tuple[Any, ...]
    symbol: str
    asset_type: AssetType
    currency: str
    quantity: Decimal
    total_cost_basis: Decimal
    total_current_value: Decimal
    average_buy_price: Decimal
    current_price: Decimal
    date: date
    notes: str = ""
    lots: list[Lot] = field(default_factory=list)
    strike_price: Decimal | None = None
    expiration_date: date | None = None
    option_type: OptionType | None = None
    option_action: OptionAction | None = None

    @property
    def is_aggregated(self) -> bool:
        return len(self.lots) > 1

    @property
    def is_mixed_currency(self) -> bool:
        return len({lot.currency for lot in self.lots}) > 1

    @property
    def multiplier(self) -> Decimal:
        return self.asset_type.multiplier

    @property
    def lot_ids(self) -> list[str]:
        return [lot.id for lot in self.lots if lot.id is not None]

    def __repr__(self):
        return f"Holding(symbol={self.symbol}, quantity={self.quantity}, lots={len(self.lots)})"


@dataclass(frozen=True)
class PortfolioTransaction:
    """Append-only ledger entry written once per operation."""

    account_id: str
    type: TransactionType
    quantity: Decimal
    total_amount: Decimal
    currency: str
    date: date
    symbol: str | None = None
    asset_type: AssetType | None = None
    price_per_unit: Decimal = Decimal("1")
    notes: str = ""
    position_id: str | None = None
    id: str | None = None
    created_date: datetime = field(default_factory=utcnow)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "accountId": self.account_id,
            "type": self.type.value,
            "symbol": self.symbol,
            "assetType": self.asset_type.value if self.asset_type else None,
            "quantity": str(self.quantity),
            "pricePerUnit": str(self.price_per_unit),
            "totalAmount": str(self.total_amount),
            "currency": self.currency,
            "date": self.date.isoformat(),
            "notes": self.notes,
            "positionId": self.position_id,
            "createdDate": self.created_date.isoformat(),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "PortfolioTransaction":
        asset_type = record.get("assetType")
        return cls(
            id=record.get("id"),
            account_id=record["accountId"],
            type=TransactionType(record["type"]),
            symbol=record.get("symbol"),
            asset_type=AssetType(asset_type) if asset_type else None,
            quantity=to_decimal(record["quantity"]),
            price_per_unit=to_decimal(record.get("pricePerUnit") or 1),
            total_amount=to_decimal(record["totalAmount"]),
            currency=normalize_currency(record.get("currency") or PIVOT_CURRENCY),
            date=_parse_date(record["date"]) or date.today(),
            notes=record.get("notes") or "",
            position_id=record.get("positionId"),
            created_date=_parse_datetime(record.get("createdDate")) or utcnow(),
        )


@dataclass
class Account:
    """Owner of lots and ledger entries; ``base_currency`` is its reporting pivot."""

    name: str
    base_currency: str = PIVOT_CURRENCY
    account_type: str = "Brokerage"
    institution: str = ""
    notes: str = ""
    initial_investment: Decimal = Decimal("0")
    id: str | None = None
    workspace_id: str | None = None
    created_date: datetime = field(default_factory=utcnow)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.account_type,
            "baseCurrency": self.base_currency,
            "institution": self.institution,
            "notes": self.notes,
            "initialInvestment": str(self.initial_investment),
            "workspaceId": self.workspace_id,
            "createdDate": self.created_date.isoformat(),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Account":
        return cls(
            id=record.get("id"),
            name=record["name"],
            account_type=record.get("type") or "Brokerage",
            base_currency=normalize_currency(record.get("baseCurrency") or PIVOT_CURRENCY),
            institution=record.get("institution") or "",
            notes=record.get("notes") or "",
            initial_investment=to_decimal(record.get("initialInvestment") or 0),
            workspace_id=record.get("workspaceId"),
            created_date=_parse_datetime(record.get("createdDate")) or utcnow(),
        )


