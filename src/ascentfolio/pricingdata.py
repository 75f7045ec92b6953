from abc import ABC, abstractmethod
from decimal import Decimal
from datetime import datetime, date, timedelta, timezone
from typing import Mapping
import logging

import yfinance as yf  # type: ignore[import-untyped]
import pandas as pd

from .currency import PIVOT_CURRENCY, Number, normalize_currency, to_decimal
from .models import AssetType, utcnow
from .store import LotStore

logger = logging.getLogger(__name__)


class PricePoint:
    """A single price observation for a financial instrument."""

    def __init__(self, symbol: str, price_datetime: datetime, price: Decimal, currency: str = PIVOT_CURRENCY):
        """Initialize a PricePoint.

        Args:
            symbol: Ticker symbol (e.g., "AAPL", "VTI").
            price_datetime: The datetime the price was observed.
            price: The observed price as a Decimal.
            currency: Currency the price is quoted in.
        """
        self.symbol: str = symbol
        self.price_datetime: datetime = price_datetime
        self.price: Decimal = price
        self.currency: str = normalize_currency(currency)

    def __repr__(self):
        return f"PricePoint({self.symbol}, {self.price} {self.currency} @ {self.price_datetime.isoformat()})"


class PricingDataManager(ABC):
    """Abstract base class for all pricing data providers."""

    @abstractmethod
    def get_price_point(self, symbol: str, price_datetime: datetime) -> PricePoint:
        raise NotImplementedError("This method should be overridden by subclasses.")


class FixedPricingDataManager(PricingDataManager):
    """Pricing manager that returns preset prices, for tests and offline use."""

    def __init__(self, prices: Mapping[str, Number] | None = None, price_for_everything: Number | None = None):
        """Initialize with fixed prices.

        Args:
            prices: Price per symbol.
            price_for_everything: Price returned for symbols missing from
                ``prices``. If None, unknown symbols raise ValueError.
        """
        self.prices = {symbol.upper(): to_decimal(p) for symbol, p in (prices or {}).items()}
        self.price = to_decimal(price_for_everything) if price_for_everything is not None else None

    def get_price_point(self, symbol: str, price_datetime: datetime) -> PricePoint:
        """Return the preset price for ``symbol``.

        Raises:
            ValueError: If the symbol has no preset price and no default is set.
        """
        price = self.prices.get(symbol.upper(), self.price)
        if price is None:
            raise ValueError(f"No price data available for {symbol}")
        return PricePoint(symbol=symbol, price_datetime=price_datetime, price=price)


class YFinancePricingDataManager(PricingDataManager):
    """Latest and historical closes from Yahoo Finance."""

    def __init__(self, lookback_days: int = 10):
        """Initialize the YFinance pricing manager.

        Args:
            lookback_days: How far before the requested date to search for a
                close when the date itself was not a trading day.
        """
        self.lookback_days = lookback_days

    def _history(self, symbol: str, target_date: date) -> pd.DataFrame:
        ticker = yf.Ticker(symbol)
        df: pd.DataFrame = ticker.history(  # type: ignore[call-arg]
            start=(target_date - timedelta(days=self.lookback_days)).isoformat(),
            end=(target_date + timedelta(days=1)).isoformat(),
            auto_adjust=False,
        )
        if df.empty:
            return df
        df = df.reset_index()
        df['Date'] = pd.to_datetime(df['Date']).dt.date
        return df

    def get_price_point(self, symbol: str, price_datetime: datetime) -> PricePoint:
        """Get price for a symbol on a specific date.

        For today's date, uses the live ``lastPrice`` since the daily close
        isn't available until the market closes. Otherwise (or if the live
        quote is missing) falls back to the most recent close on or before
        the requested date.

        Raises:
            ValueError: If Yahoo Finance returns no usable data.
        """
        target_date = price_datetime.date()

        if target_date == date.today():
            fast_info = yf.Ticker(symbol).fast_info
            current_price = fast_info.get('lastPrice')
            if current_price is not None:
                currency = fast_info.get('currency') or PIVOT_CURRENCY
                return PricePoint(
                    symbol=symbol,
                    price_datetime=datetime.now(timezone.utc),
                    price=Decimal(str(current_price)).quantize(Decimal("0.01")),
                    currency=currency,
                )
            logger.debug("No live quote for %s, falling back to daily history", symbol)

        df = self._history(symbol, target_date)
        if df.empty:
            raise ValueError(f"No price data available for {symbol}")

        rows = df[df['Date'] <= target_date]
        if rows.empty:
            raise ValueError(f"No price data available for {symbol} on or before {target_date}")
        row = rows.iloc[-1]
        return PricePoint(
            symbol=symbol,
            price_datetime=datetime.combine(row['Date'], datetime.min.time(), tzinfo=timezone.utc),
            price=Decimal(str(row['Close'])).quantize(Decimal("0.01")),
        )


def refresh_prices(store: LotStore, pricing: PricingDataManager, account_id: str | None = None, now: datetime | None = None) -> int:
    """Write the latest price onto every non-cash lot.

    Options are quoted per contract by their premium and are left alone, as
    are symbols the provider cannot price; failures are logged and skipped.

    Args:
        store: Store holding the lots.
        pricing: Source of prices.
        account_id: Restrict the refresh to one account.
        now: Timestamp used for the lookup and ``last_price_update``.

    Returns:
        The number of lots updated.
    """
    now = now or utcnow()
    prices: dict[str, Decimal | None] = {}
    updated = 0

    with store.atomic():
        for lot in store.list_lots(account_id=account_id):
            if lot.asset_type in (AssetType.CASH, AssetType.OPTION):
                continue
            assert lot.id is not None
            if lot.symbol not in prices:
                try:
                    point = pricing.get_price_point(lot.symbol, now)
                except Exception as e:
                    logger.warning("Could not price %s: %s", lot.symbol, e)
                    prices[lot.symbol] = None
                else:
                    if point.currency != lot.currency:
                        logger.warning("Quote for %s is in %s but the lot is in %s", lot.symbol, point.currency, lot.currency)
                    prices[lot.symbol] = point.price
            price = prices[lot.symbol]
            if price is None:
                continue
            store.update_lot(lot.id, {"current_price": price, "last_price_update": now}, expected_version=lot.version)
            updated += 1

    logger.info("Refreshed prices on %d lot(s)", updated)
    return updated
