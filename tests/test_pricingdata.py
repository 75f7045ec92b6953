"""Tests for pricing managers and lot price refresh."""

from datetime import datetime, timezone
from decimal import Decimal

import pandas as pd
import pytest

from ascentfolio import pricingdata
from ascentfolio.models import Account, AssetType, OptionAction, OptionType
from ascentfolio.pricingdata import (
    FixedPricingDataManager,
    PricePoint,
    PricingDataManager,
    YFinancePricingDataManager,
    refresh_prices,
)
from ascentfolio.reconciliation import BuyRequest, ReconciliationEngine
from ascentfolio.store import InMemoryLotStore

NOW = datetime(2025, 3, 3, 15, 0, tzinfo=timezone.utc)


def test_fixed_pricing_manager():
    """Verify preset prices per symbol, a default, and an error without one."""
    manager = FixedPricingDataManager({"aapl": "190.10"})
    point = manager.get_price_point("AAPL", NOW)
    assert point.price == Decimal("190.10")
    assert point.currency == "USD"
    with pytest.raises(ValueError, match="No price data"):
        manager.get_price_point("MSFT", NOW)
    assert FixedPricingDataManager(price_for_everything=1).get_price_point("X", NOW).price == Decimal("1")


def _portfolio():
    store = InMemoryLotStore()
    engine = ReconciliationEngine(store)
    account = engine.open_account(Account(name="Main"), initial_investment="500")
    for symbol in ("AAPL", "AAPL", "UNKNOWN"):
        engine.buy(BuyRequest(
            account_id=account.id, symbol=symbol, asset_type=AssetType.STOCK,
            quantity=Decimal("1"), price=Decimal("100"),
        ))
    engine.buy(BuyRequest(
        account_id=account.id, symbol="AAPL", asset_type=AssetType.OPTION,
        quantity=Decimal("1"), premium_price=Decimal("2"), strike_price=Decimal("200"),
        expiration_date=NOW.date(), option_type=OptionType.CALL, option_action=OptionAction.BUY,
    ))
    return store, account


def test_refresh_prices_updates_priced_lots_only():
    """Verify stocks get quotes while cash, options and unpriced symbols are skipped."""
    store, account = _portfolio()
    updated = refresh_prices(store, FixedPricingDataManager({"AAPL": "123.45"}), account_id=account.id, now=NOW)
    assert updated == 2

    by_type = {}
    for lot in store.list_lots(account_id=account.id):
        by_type.setdefault((lot.symbol, lot.asset_type), []).append(lot)
    for lot in by_type[("AAPL", AssetType.STOCK)]:
        assert lot.current_price == Decimal("123.45")
        assert lot.last_price_update == NOW
    assert by_type[("UNKNOWN", AssetType.STOCK)][0].current_price is None
    assert by_type[("AAPL", AssetType.OPTION)][0].current_price is None
    assert by_type[("CASH", AssetType.CASH)][0].current_price is None


def test_refresh_prices_looks_each_symbol_up_once():
    """Verify a symbol held in several lots is priced once."""

    class CountingManager(PricingDataManager):
        def __init__(self):
            self.calls = []

        def get_price_point(self, symbol, price_datetime):
            self.calls.append(symbol)
            return PricePoint(symbol, price_datetime, Decimal("10"))

    store, account = _portfolio()
    manager = CountingManager()
    refresh_prices(store, manager, now=NOW)
    assert sorted(manager.calls) == ["AAPL", "UNKNOWN"]


class _FakeTicker:
    def __init__(self, last_price, history):
        self.fast_info = {"lastPrice": last_price, "currency": "USD"}
        self._history = history

    def history(self, start, end, auto_adjust):
        return self._history


def test_yfinance_manager_uses_live_price_today(monkeypatch):
    """Verify today's price comes from fast_info lastPrice."""
    monkeypatch.setattr(pricingdata.yf, "Ticker", lambda symbol: _FakeTicker(187.234, pd.DataFrame()))
    point = YFinancePricingDataManager().get_price_point("AAPL", datetime.now())
    assert point.price == Decimal("187.23")


def test_yfinance_manager_falls_back_to_last_close(monkeypatch):
    """Verify a past date takes the latest close on or before it."""
    history = pd.DataFrame(
        {"Close": [100.0, 101.5, 103.0]},
        index=pd.DatetimeIndex(["2025-02-27", "2025-02-28", "2025-03-04"], name="Date"),
    )
    monkeypatch.setattr(pricingdata.yf, "Ticker", lambda symbol: _FakeTicker(None, history))
    point = YFinancePricingDataManager().get_price_point("AAPL", datetime(2025, 3, 2, tzinfo=timezone.utc))
    assert point.price == Decimal("101.50")
    assert point.price_datetime.date().isoformat() == "2025-02-28"


def test_yfinance_manager_raises_without_data(monkeypatch):
    """Verify an empty history raises ValueError."""
    monkeypatch.setattr(pricingdata.yf, "Ticker", lambda symbol: _FakeTicker(None, pd.DataFrame()))
    with pytest.raises(ValueError, match="No price data"):
        YFinancePricingDataManager().get_price_point("AAPL", datetime(2025, 3, 2, tzinfo=timezone.utc))
