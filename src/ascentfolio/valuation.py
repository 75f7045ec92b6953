"""Market value, cost basis and P&L for holdings, accounts and whole portfolios.

Every amount is converted in two separate steps, lot currency to account base
currency and then account base currency to the display currency. When a rate
is missing the converter hands back the unconverted amount; valuations built
from such an amount carry ``converted=False`` so callers can mark the figure
as an estimate instead of presenting it as a clean conversion.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable, Sequence

from .aggregation import aggregate_positions
from .currency import Conversion, RateSnapshot, convert_detailed, normalize_currency
from .models import Account, AssetType, Holding, Lot

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class Valuation:
    """Figures for one holding in a given currency.

    ``currency`` is the currency the amounts are actually in. For a cash
    holding shown on its own that is its native currency.
    """

    market_value: Decimal
    cost_basis: Decimal
    pnl: Decimal
    pnl_percent: Decimal
    weight: Decimal
    currency: str
    converted: bool = True


def pnl_percent(pnl: Decimal, cost_basis: Decimal) -> Decimal:
    """Return P&L as a percentage of cost, or 0 when there is no positive cost."""
    if cost_basis > 0:
        return pnl / cost_basis * HUNDRED
    return ZERO


def weight_of(market_value: Decimal, total_value: Decimal) -> Decimal:
    if total_value > 0:
        return market_value / total_value * HUNDRED
    return ZERO


def convert_chained(amount: Decimal, lot_currency: str, account_currency: str, display_currency: str, rates: RateSnapshot) -> Conversion:
    """Convert lot currency -> account currency -> display currency.

    The two hops are applied one after the other. If the first hop falls back,
    the second starts from the currency the amount is really in.
    """
    to_account = convert_detailed(amount, lot_currency, account_currency, rates)
    to_display = convert_detailed(to_account.amount, to_account.currency, display_currency, rates)
    return Conversion(to_display.amount, to_display.currency, to_account.converted and to_display.converted)


def _as_holding(item: Holding | Lot) -> Holding:
    if isinstance(item, Holding):
        return item
    return aggregate_positions([item])[0]


def _raw_amounts(holding: Holding) -> tuple[Decimal, Decimal]:
    """Market value and cost basis in the holding's own currency."""
    asset_type = holding.asset_type
    if asset_type is AssetType.CASH:
        return holding.quantity, holding.quantity
    elif asset_type is AssetType.OPTION:
        return (
            holding.quantity * holding.current_price * holding.multiplier,
            holding.quantity * holding.average_buy_price * holding.multiplier,
        )
    elif asset_type in (AssetType.STOCK, AssetType.ETF, AssetType.CRYPTO, AssetType.OTHER):
        return holding.quantity * holding.current_price, holding.quantity * holding.average_buy_price
    raise ValueError(f"No valuation rule for asset type {asset_type}")


def _converted_amounts(holding: Holding, account_currency: str, display_currency: str, rates: RateSnapshot) -> tuple[Conversion, Conversion]:
    """Market value and cost basis converted to the display currency.

    Lots of a mixed-currency holding are converted one by one from their own
    currency. If any of them falls back, the sum is flagged as unconverted.
    """
    if not holding.is_mixed_currency:
        raw_market, raw_cost = _raw_amounts(holding)
        return (
            convert_chained(raw_market, holding.currency, account_currency, display_currency, rates),
            convert_chained(raw_cost, holding.currency, account_currency, display_currency, rates),
        )

    market = cost = ZERO
    converted = True
    for lot in holding.lots:
        lot_market = convert_chained(lot.market_value, lot.currency, account_currency, display_currency, rates)
        lot_cost = convert_chained(lot.cost_basis, lot.currency, account_currency, display_currency, rates)
        market += lot_market.amount
        cost += lot_cost.amount
        converted = converted and lot_market.converted and lot_cost.converted
    return Conversion(market, display_currency, converted), Conversion(cost, display_currency, converted)


def valuate(
    item: Holding | Lot,
    account_base_currency: str,
    display_currency: str,
    rates: RateSnapshot,
    total_account_value: Decimal | None = None,
    standalone: bool = True,
) -> Valuation:
    """Value a holding (or a single raw lot).

    Args:
        item: The holding or lot to value.
        account_base_currency: Base currency of the owning account.
        display_currency: The user's reporting currency.
        rates: Rate snapshot used for both conversion hops.
        total_account_value: Account total in ``display_currency`` used for
            the weight. Omit to get a weight of 0.
        standalone: When True, cash is reported in its native currency
            without conversion. Totals pass False so cash is converted.

    Returns:
        A Valuation in ``display_currency`` (or the native currency for
        standalone cash).
    """
    holding = _as_holding(item)
    account_base_currency = normalize_currency(account_base_currency)
    display_currency = normalize_currency(display_currency)
    raw_market, raw_cost = _raw_amounts(holding)

    market, cost = _converted_amounts(holding, account_base_currency, display_currency, rates)
    total = total_account_value if total_account_value is not None else ZERO
    weight = weight_of(market.amount, total)

    if holding.asset_type is AssetType.CASH:
        if standalone:
            return Valuation(
                market_value=raw_market,
                cost_basis=raw_cost,
                pnl=ZERO,
                pnl_percent=ZERO,
                weight=weight,
                currency=holding.currency,
                converted=market.converted,
            )
        return Valuation(market.amount, market.amount, ZERO, ZERO, weight, market.currency, market.converted)

    pnl = market.amount - cost.amount
    return Valuation(
        market_value=market.amount,
        cost_basis=cost.amount,
        pnl=pnl,
        pnl_percent=pnl_percent(pnl, cost.amount),
        weight=weight,
        currency=market.currency,
        converted=market.converted and cost.converted,
    )


@dataclass(frozen=True)
class HoldingValuation:
    """A holding, its standalone valuation, and its converted value in the display currency."""

    holding: Holding
    valuation: Valuation
    display_value: Decimal


@dataclass
class AccountSummary:
    """Per-account totals in both the account and the display currency."""

    account_id: str | None
    account_name: str
    base_currency: str
    display_currency: str
    total_value: Decimal = ZERO
    total_cost_basis: Decimal = ZERO
    total_value_display: Decimal = ZERO
    total_cost_basis_display: Decimal = ZERO
    cash_balances: dict[str, Decimal] = field(default_factory=dict)
    holdings: list[HoldingValuation] = field(default_factory=list)
    asset_breakdown: dict[AssetType, Decimal] = field(default_factory=dict)
    converted: bool = True

    @property
    def total_pnl(self) -> Decimal:
        return self.total_value - self.total_cost_basis

    @property
    def total_pnl_percent(self) -> Decimal:
        return pnl_percent(self.total_pnl, self.total_cost_basis)

    @property
    def total_pnl_display(self) -> Decimal:
        return self.total_value_display - self.total_cost_basis_display


def account_summary(account: Account, lots: Iterable[Lot], display_currency: str, rates: RateSnapshot) -> AccountSummary:
    """Aggregate and value every lot of one account.

    Cash is converted when summed into the totals but each cash holding's own
    valuation stays in its native currency.
    """
    display_currency = normalize_currency(display_currency)
    base = account.base_currency
    account_lots = [lot for lot in lots if account.id is None or lot.account_id == account.id]
    holdings = aggregate_positions(account_lots)

    summary = AccountSummary(
        account_id=account.id,
        account_name=account.name,
        base_currency=base,
        display_currency=display_currency,
    )
    breakdown: dict[AssetType, Decimal] = defaultdict(Decimal)
    cash_balances: dict[str, Decimal] = defaultdict(Decimal)

    display_values: list[Decimal] = []
    for holding in holdings:
        in_base = valuate(holding, base, base, rates, standalone=False)
        in_display = valuate(holding, base, display_currency, rates, standalone=False)
        summary.total_value += in_base.market_value
        summary.total_cost_basis += in_base.cost_basis
        summary.total_value_display += in_display.market_value
        summary.total_cost_basis_display += in_display.cost_basis
        display_values.append(in_display.market_value)
        summary.converted = summary.converted and in_base.converted and in_display.converted
        breakdown[holding.asset_type] += in_display.market_value
        if holding.asset_type is AssetType.CASH:
            cash_balances[holding.currency] += holding.quantity

    for holding, display_value in zip(holdings, display_values):
        valuation = valuate(
            holding, base, display_currency, rates,
            total_account_value=summary.total_value_display,
            standalone=True,
        )
        summary.holdings.append(HoldingValuation(holding, valuation, display_value))

    summary.cash_balances = dict(cash_balances)
    summary.asset_breakdown = dict(breakdown)
    if not summary.converted:
        logger.warning("Account %s totals include unconverted amounts", account.name)
    return summary


@dataclass
class PortfolioSummary:
    """Totals across several accounts in the user's display currency."""

    display_currency: str
    accounts: list[AccountSummary] = field(default_factory=list)

    @property
    def total_value(self) -> Decimal:
        return sum((a.total_value_display for a in self.accounts), ZERO)

    @property
    def total_cost_basis(self) -> Decimal:
        return sum((a.total_cost_basis_display for a in self.accounts), ZERO)

    @property
    def total_pnl(self) -> Decimal:
        return self.total_value - self.total_cost_basis

    @property
    def total_pnl_percent(self) -> Decimal:
        return pnl_percent(self.total_pnl, self.total_cost_basis)

    @property
    def converted(self) -> bool:
        return all(a.converted for a in self.accounts)


def portfolio_summary(accounts: Sequence[Account], lots: Iterable[Lot], display_currency: str, rates: RateSnapshot) -> PortfolioSummary:
    lots = list(lots)
    summary = PortfolioSummary(display_currency=normalize_currency(display_currency))
    for account in accounts:
        summary.accounts.append(account_summary(account, lots, display_currency, rates))
    return summary


@dataclass(frozen=True)
class AllocationSlice:
    name: str
    value: Decimal
    percentage: Decimal


def allocation_by_symbol(summary: AccountSummary) -> list[AllocationSlice]:
    """Market value per holding in the display currency, largest first."""
    values: dict[str, Decimal] = defaultdict(Decimal)
    for hv in summary.holdings:
        holding = hv.holding
        if holding.asset_type is AssetType.CASH:
            name = f"Cash ({holding.currency})"
        else:
            name = holding.symbol
        values[name] += hv.display_value

    slices = [
        AllocationSlice(name, value, weight_of(value, summary.total_value_display))
        for name, value in values.items()
        if value > 0
    ]
    slices.sort(key=lambda s: s.value, reverse=True)
    return slices


@dataclass(frozen=True)
class AccountBreakdown:
    account_id: str | None
    account_name: str
    value: Decimal


@dataclass(frozen=True)
class PortfolioSnapshot:
    """Point-in-time record of portfolio totals in the display currency."""

    date: date
    currency: str
    total_value: Decimal
    total_cost_basis: Decimal
    total_pnl: Decimal
    account_breakdown: tuple[AccountBreakdown, ...]
    asset_breakdown: tuple[tuple[AssetType, Decimal], ...]
    converted: bool = True


def take_snapshot(accounts: Sequence[Account], lots: Iterable[Lot], display_currency: str, rates: RateSnapshot, as_of: date | None = None) -> PortfolioSnapshot:
    """Capture totals, per-account values and per-asset-type values."""
    summary = portfolio_summary(accounts, lots, display_currency, rates)
    assets: dict[AssetType, Decimal] = defaultdict(Decimal)
    for account in summary.accounts:
        for asset_type, value in account.asset_breakdown.items():
            assets[asset_type] += value

    return PortfolioSnapshot(
        date=as_of or date.today(),
        currency=summary.display_currency,
        total_value=summary.total_value,
        total_cost_basis=summary.total_cost_basis,
        total_pnl=summary.total_pnl,
        account_breakdown=tuple(
            AccountBreakdown(a.account_id, a.account_name, a.total_value_display)
            for a in summary.accounts
        ),
        asset_breakdown=tuple(sorted(assets.items(), key=lambda kv: kv[0].value)),
        converted=summary.converted,
    )
