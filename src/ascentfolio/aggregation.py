"""Group raw lots into display-level holdings with weighted cost basis."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Iterable

from .models import AssetType, Holding, Lot

logger = logging.getLogger(__name__)

NOTES_SEPARATOR = "\n---\n"


def aggregation_key(lot: Lot) -> tuple[Any, ...]:
    """Return the key lots are merged under.

    Options merge only with identical contracts and cash merges only within
    one currency, so ``CASH`` in USD and EUR stay separate holdings.

    Raises:
        ValueError: For an asset type without a key rule.
    """
    asset_type = lot.asset_type
    if asset_type in (AssetType.STOCK, AssetType.ETF, AssetType.CRYPTO, AssetType.OTHER):
        return (lot.symbol,)
    elif asset_type is AssetType.OPTION:
        return (
            lot.symbol,
            lot.strike_price,
            lot.option_type,
            lot.option_action,
            lot.expiration_date,
        )
    elif asset_type is AssetType.CASH:
        return (lot.symbol, lot.currency)
    raise ValueError(f"No aggregation rule for asset type {asset_type}")


@dataclass
class _Accumulator:
    first: Lot
    quantity: Decimal = Decimal("0")
    cost_basis: Decimal = Decimal("0")
    current_value: Decimal = Decimal("0")
    latest_date: date | None = None
    notes: list[str] = field(default_factory=list)
    lots: list[Lot] = field(default_factory=list)

    def add(self, lot: Lot) -> None:
        asset_type = lot.asset_type
        if asset_type is AssetType.CASH:
            self.quantity += lot.quantity
            self.cost_basis += lot.quantity
            self.current_value += lot.quantity
        elif asset_type is AssetType.OPTION:
            self.quantity += lot.quantity
            self.cost_basis += lot.quantity * lot.average_buy_price * lot.multiplier
            self.current_value += lot.quantity * lot.market_price * lot.multiplier
        elif asset_type in (AssetType.STOCK, AssetType.ETF, AssetType.CRYPTO, AssetType.OTHER):
            self.quantity += lot.quantity
            self.cost_basis += lot.quantity * lot.average_buy_price
            self.current_value += lot.quantity * lot.market_price
        else:
            raise ValueError(f"No aggregation rule for asset type {asset_type}")

        if self.latest_date is None or lot.date > self.latest_date:
            self.latest_date = lot.date
        if lot.notes:
            self.notes.append(lot.notes)
        if lot.currency != self.first.currency:
            logger.warning(
                "Lot %s for %s is in %s but the holding is in %s; holding totals are unconverted, valuations convert per lot",
                lot.id, lot.symbol, lot.currency, self.first.currency,
            )
        self.lots.append(lot)

    def to_holding(self, key: tuple[Any, ...]) -> Holding:
        first = self.first
        divisor = self.quantity * first.multiplier
        if self.quantity == 0:
            average_buy_price = Decimal("0")
            current_price = Decimal("0")
        else:
            average_buy_price = self.cost_basis / divisor
            current_price = self.current_value / divisor

        return Holding(
            key=key,
            symbol=first.symbol,
            asset_type=first.asset_type,
            currency=first.currency,
            quantity=self.quantity,
            total_cost_basis=self.cost_basis,
            total_current_value=self.current_value,
            average_buy_price=average_buy_price,
            current_price=current_price,
            date=self.latest_date or first.date,
            notes=NOTES_SEPARATOR.join(self.notes),
            lots=list(self.lots),
            strike_price=first.strike_price,
            expiration_date=first.expiration_date,
            option_type=first.option_type,
            option_action=first.option_action,
        )


def aggregate_positions(lots: Iterable[Lot]) -> list[Holding]:
    """Merge lots sharing an aggregation key into holdings.

    Holdings come back in order of first appearance, and each keeps its
    contributing lots in arrival order for later FIFO sells.

    Args:
        lots: All lots of an account, or any filtered subset.

    Returns:
        One Holding per aggregation key.
    """
    groups: dict[tuple[Any, ...], _Accumulator] = {}
    for lot in lots:
        key = aggregation_key(lot)
        acc = groups.get(key)
        if acc is None:
            acc = groups[key] = _Accumulator(first=lot)
        acc.add(lot)

    holdings = [acc.to_holding(key) for key, acc in groups.items()]
    logger.debug("Aggregated lots into %d holdings", len(holdings))
    return holdings


def find_holding(holdings: Iterable[Holding], symbol: str, asset_type: AssetType | None = None, currency: str | None = None) -> Holding | None:
    """Return the first holding matching symbol (and optionally type/currency)."""
    for holding in holdings:
        if holding.symbol != symbol:
            continue
        if asset_type is not None and holding.asset_type is not asset_type:
            continue
        if currency is not None and holding.currency != currency:
            continue
        return holding
    return None
