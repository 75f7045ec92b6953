"""Tests for valuations, account and portfolio summaries, and snapshots."""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from ascentfolio.aggregation import aggregate_positions
from ascentfolio.currency import RateSnapshot
from ascentfolio.models import Account, AssetType, Lot, OptionAction, OptionType
from ascentfolio.valuation import (
    account_summary,
    allocation_by_symbol,
    convert_chained,
    pnl_percent,
    portfolio_summary,
    take_snapshot,
    valuate,
)

RATES = RateSnapshot.from_mapping({"USD": 1, "EUR": "0.5", "ILS": "4"})
T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _lot(symbol, quantity, price, current=None, asset_type=AssetType.STOCK, currency="USD", account_id="acct", n=0, **kwargs):
    return Lot(
        id=f"{account_id}-{symbol}-{currency}-{n}",
        account_id=account_id,
        symbol=symbol,
        asset_type=asset_type,
        quantity=Decimal(str(quantity)),
        average_buy_price=Decimal(str(price)),
        current_price=Decimal(str(current)) if current is not None else None,
        currency=currency,
        created_date=T0 + timedelta(minutes=n),
        **kwargs,
    )


def _cash(amount, currency="USD", account_id="acct", n=0):
    return _lot("CASH", amount, 1, asset_type=AssetType.CASH, currency=currency, account_id=account_id, n=n)


def test_option_cost_basis_uses_contract_multiplier():
    """Verify 2 contracts at a 3.50 premium cost 700 and value at the current premium."""
    lot = _lot(
        "AAPL", 2, "3.50", current="5.00",
        asset_type=AssetType.OPTION,
        strike_price=Decimal("150"),
        expiration_date=date(2025, 6, 20),
        option_type=OptionType.CALL,
        option_action=OptionAction.BUY,
        premium_price=Decimal("3.50"),
    )
    valuation = valuate(lot, "USD", "USD", RATES)
    assert valuation.cost_basis == Decimal("700")
    assert valuation.market_value == Decimal("1000")
    assert valuation.pnl == Decimal("300")
    assert valuation.converted is True


def test_pnl_percent_is_zero_without_cost():
    """Verify a zero cost basis yields 0% instead of dividing by zero."""
    assert pnl_percent(Decimal("50"), Decimal("0")) == Decimal("0")
    assert pnl_percent(Decimal("50"), Decimal("200")) == Decimal("25")


def test_stock_converts_to_display_currency():
    """Verify a USD lot in a USD account is shown in EUR."""
    valuation = valuate(_lot("AAPL", 10, 100, current=120), "USD", "EUR", RATES)
    assert valuation.currency == "EUR"
    assert valuation.market_value == Decimal("600")
    assert valuation.cost_basis == Decimal("500")
    assert valuation.pnl_percent == Decimal("20")


def test_two_hop_conversion_applies_both_rates():
    """Verify lot -> account -> display conversion is applied in two steps."""
    result = convert_chained(Decimal("400"), "ILS", "USD", "EUR", RATES)
    assert result.amount == Decimal("50")
    assert result.currency == "EUR"
    assert result.converted is True


def test_failed_first_hop_is_flagged():
    """Verify a missing rate marks the result unconverted and keeps the real currency."""
    result = convert_chained(Decimal("400"), "GBP", "USD", "USD", RATES)
    assert result.amount == Decimal("400")
    assert result.currency == "GBP"
    assert result.converted is False


def test_mixed_currency_holding_converts_each_lot():
    """Verify lots of one symbol in different currencies are converted one by one."""
    holding = aggregate_positions([_lot("AAPL", 1, 100), _lot("AAPL", 1, 100, currency="ILS", n=1)])[0]
    assert holding.is_mixed_currency

    valuation = valuate(holding, "USD", "USD", RATES)
    assert valuation.market_value == Decimal("125")
    assert valuation.cost_basis == Decimal("125")
    assert valuation.currency == "USD"
    assert valuation.converted is True

    partial = valuate(holding, "USD", "USD", RateSnapshot.from_mapping({"USD": 1}))
    assert partial.converted is False


def test_standalone_cash_stays_native():
    """Verify cash shown on its own keeps its native currency and amount."""
    [holding] = aggregate_positions([_cash(200, "EUR")])
    valuation = valuate(holding, "USD", "USD", RATES, total_account_value=Decimal("800"))
    assert valuation.currency == "EUR"
    assert valuation.market_value == Decimal("200")
    assert valuation.pnl == Decimal("0")
    # Weight uses the converted value: 200 EUR = 400 USD of 800.
    assert valuation.weight == Decimal("50")


def test_cash_in_totals_is_converted():
    """Verify cash summed into totals is converted to the target currency."""
    [holding] = aggregate_positions([_cash(200, "EUR")])
    valuation = valuate(holding, "USD", "USD", RATES, standalone=False)
    assert valuation.currency == "USD"
    assert valuation.market_value == Decimal("400")
    assert valuation.cost_basis == Decimal("400")


def test_account_summary_totals_and_weights():
    """Verify account totals in base and display currency and weights summing to 100."""
    account = Account(name="Main", base_currency="USD", id="acct")
    lots = [
        _lot("AAPL", 10, 100, current=120, n=0),
        _lot("AAPL", 10, 110, current=120, n=1),
        _cash(600, "USD", n=2),
        _lot("OTHER", 1, 1, account_id="elsewhere", n=3),
    ]
    summary = account_summary(account, lots, "EUR", RATES)

    assert summary.total_value == Decimal("3000")
    assert summary.total_cost_basis == Decimal("2700")
    assert summary.total_pnl == Decimal("300")
    assert summary.total_value_display == Decimal("1500")
    assert summary.cash_balances == {"USD": Decimal("600")}
    assert summary.asset_breakdown[AssetType.STOCK] == Decimal("1200")
    assert len(summary.holdings) == 2
    weights = sum(hv.valuation.weight for hv in summary.holdings)
    assert abs(weights - Decimal("100")) < Decimal("1e-20")
    assert summary.converted is True


def test_account_summary_flags_unconverted_amounts():
    """Verify an unknown lot currency marks the account as an estimate."""
    account = Account(name="Odd", base_currency="USD", id="acct")
    summary = account_summary(account, [_lot("BP", 10, 5, currency="GBP")], "USD", RATES)
    assert summary.converted is False
    assert summary.total_value == Decimal("50")


def test_portfolio_summary_and_allocation():
    """Verify cross-account totals and allocation slices in the display currency."""
    usd = Account(name="US", base_currency="USD", id="us")
    eur = Account(name="EU", base_currency="EUR", id="eu")
    lots = [
        _lot("AAPL", 1, 100, current=300, account_id="us", n=0),
        _cash(100, "USD", account_id="us", n=1),
        _lot("SAP", 2, 50, current=50, currency="EUR", account_id="eu", n=2),
    ]
    summary = portfolio_summary([usd, eur], lots, "USD", RATES)
    assert summary.total_value == Decimal("600")
    assert summary.total_cost_basis == Decimal("400")
    assert summary.total_pnl == Decimal("200")
    assert summary.total_pnl_percent == Decimal("50")

    slices = allocation_by_symbol(summary.accounts[0])
    assert [s.name for s in slices] == ["AAPL", "Cash (USD)"]
    assert slices[0].percentage == Decimal("75")


def test_take_snapshot_records_breakdowns():
    """Verify a snapshot carries totals and per-account and per-asset values."""
    account = Account(name="Main", base_currency="USD", id="acct")
    lots = [_lot("AAPL", 1, 100, current=150, n=0), _cash(50, n=1)]
    snapshot = take_snapshot([account], lots, "USD", RATES, as_of=date(2025, 2, 1))
    assert snapshot.date == date(2025, 2, 1)
    assert snapshot.total_value == Decimal("200")
    assert snapshot.total_cost_basis == Decimal("150")
    assert snapshot.total_pnl == Decimal("50")
    assert snapshot.account_breakdown[0].value == Decimal("200")
    assert dict(snapshot.asset_breakdown) == {AssetType.CASH: Decimal("50"), AssetType.STOCK: Decimal("150")}
