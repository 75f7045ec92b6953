from enum import Enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from datetime import datetime, timezone
from typing import Mapping, NamedTuple, Union
import json
import logging
import threading
import urllib.request

logger = logging.getLogger(__name__)

Number = Union[Decimal, int, float, str]

PIVOT_CURRENCY = "USD"

DEFAULT_RATES_URL = "https://api.exchangerate-api.com/v4/latest/{base}"


class Currency(Enum):
    """Currencies the dashboard knows by name.

    Any three-letter code present in a rate table converts; this enum only
    lists the ones offered when opening accounts.
    """

    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"
    ILS = "ILS"
    JPY = "JPY"
    CAD = "CAD"
    AUD = "AUD"
    CHF = "CHF"
    HKD = "HKD"
    SGD = "SGD"


def to_decimal(value: Number) -> Decimal:
    """Coerce a user-supplied number to Decimal without float artifacts."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def normalize_currency(code: "str | Currency") -> str:
    """Return an uppercase currency code for a string or Currency member.

    Raises:
        ValueError: If the code is not three letters.
    """
    if isinstance(code, Currency):
        return code.value
    normalized = str(code).strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError(f"Invalid currency code: {code!r}")
    return normalized


@dataclass(frozen=True)
class RateSnapshot:
    """An immutable table of exchange rates relative to a single base.

    ``rates[code]`` is how many units of ``code`` one unit of ``base`` buys,
    so ``rates[base] == 1``. Snapshots are passed explicitly into every
    conversion; nothing here is global.
    """

    base: str = PIVOT_CURRENCY
    rates: Mapping[str, Decimal] = field(default_factory=dict)
    fetched_at: datetime | None = None

    @classmethod
    def from_mapping(cls, rates: Mapping[str, Number], base: str = PIVOT_CURRENCY, fetched_at: datetime | None = None) -> "RateSnapshot":
        """Build a snapshot from raw (possibly float) rates.

        Non-positive rates are dropped since they cannot be inverted.
        """
        base = normalize_currency(base)
        table: dict[str, Decimal] = {}
        for code, rate in rates.items():
            value = to_decimal(rate)
            if value <= 0:
                logger.warning("Ignoring non-positive rate %s for %s", value, code)
                continue
            table[str(code).upper()] = value
        if table:
            table.setdefault(base, Decimal("1"))
        return cls(base=base, rates=table, fetched_at=fetched_at)

    @property
    def is_empty(self) -> bool:
        return not self.rates

    def has(self, code: str) -> bool:
        return code in self.rates

    def rate_for(self, code: str) -> Decimal | None:
        return self.rates.get(code)


class Conversion(NamedTuple):
    """Result of a conversion attempt.

    ``converted`` is False when the rate table could not serve the pair and
    ``amount`` is the original, unconverted value still denominated in the
    source currency.
    """

    amount: Decimal
    currency: str
    converted: bool


_reported_fallbacks: set[tuple[str, str]] = set()
_reported_lock = threading.Lock()


def _report_fallback(from_currency: str, to_currency: str, snapshot: RateSnapshot) -> None:
    key = (from_currency, to_currency)
    with _reported_lock:
        if key in _reported_fallbacks:
            return
        _reported_fallbacks.add(key)
    if snapshot.is_empty:
        logger.warning("No exchange rates available; %s -> %s left unconverted", from_currency, to_currency)
    else:
        logger.warning("Exchange rate missing for %s -> %s; amount left unconverted", from_currency, to_currency)


def convert_detailed(amount: Number, from_currency: "str | Currency", to_currency: "str | Currency", rates: RateSnapshot) -> Conversion:
    """Convert an amount between two currencies through a rate snapshot.

    Same-currency conversions return the amount untouched without a lookup.
    When the snapshot is empty or lacks either currency, the original amount
    comes back with ``converted=False`` instead of raising.

    Args:
        amount: The amount in ``from_currency``.
        from_currency: Source currency code.
        to_currency: Target currency code.
        rates: The snapshot to convert through.

    Returns:
        A Conversion carrying the amount, its actual currency, and whether a
        conversion took place.
    """
    value = to_decimal(amount)
    source = normalize_currency(from_currency)
    target = normalize_currency(to_currency)

    if source == target:
        return Conversion(value, target, True)

    from_rate = rates.rate_for(source)
    to_rate = rates.rate_for(target)
    if from_rate is None or to_rate is None:
        _report_fallback(source, target, rates)
        return Conversion(value, source, False)

    return Conversion(value * (to_rate / from_rate), target, True)


def convert(amount: Number, from_currency: "str | Currency", to_currency: "str | Currency", rates: RateSnapshot) -> Decimal:
    """Convert ``amount`` and return only the resulting Decimal.

    Falls back to the original amount when a rate is missing; use
    :func:`convert_detailed` where the caller has to flag best-effort totals.
    """
    return convert_detailed(amount, from_currency, to_currency, rates).amount


class ExchangeRateProvider(ABC):
    """Abstract base class for exchange rate sources."""

    @abstractmethod
    def get_rates(self, base: str = PIVOT_CURRENCY) -> RateSnapshot:
        """Return a snapshot of rates relative to ``base``.

        Raises:
            NotImplementedError: Always, must be overridden by subclasses.
        """
        raise NotImplementedError("This method should be overridden by subclasses.")


class FixedExchangeRateProvider(ExchangeRateProvider):
    """Exchange rate provider using fixed, hardcoded rates.

    Rates are units per one USD. Useful for testing or offline reports.
    """

    global_exchange_rates: dict[str, Decimal] = {
        "USD": Decimal("1"),
        "EUR": Decimal("0.92"),
        "GBP": Decimal("0.79"),
        "ILS": Decimal("3.70"),
        "JPY": Decimal("150.0"),
        "CAD": Decimal("1.36"),
        "AUD": Decimal("1.52"),
        "CHF": Decimal("0.88"),
        "HKD": Decimal("7.80"),
        "SGD": Decimal("1.35"),
    }

    def __init__(self, exchange_rates: Mapping[str, Number] | None = None):
        """Initialize with optional custom rates.

        Args:
            exchange_rates: Rates per USD overriding the defaults. Missing
                codes are filled from ``global_exchange_rates``.
        """
        self.exchange_rates: dict[str, Decimal] = dict(self.global_exchange_rates)
        for code, rate in (exchange_rates or {}).items():
            self.exchange_rates[normalize_currency(code)] = to_decimal(rate)

    def set_exchange_rate(self, code: str, rate: Number) -> None:
        self.exchange_rates[normalize_currency(code)] = to_decimal(rate)

    def get_rates(self, base: str = PIVOT_CURRENCY) -> RateSnapshot:
        """Rebase the fixed USD table onto ``base``.

        Raises:
            ValueError: If ``base`` is not in the table.
        """
        base = normalize_currency(base)
        if base not in self.exchange_rates:
            raise ValueError(f"Exchange rates for base {base} not available.")
        base_rate = self.exchange_rates[base]
        rebased = {code: rate / base_rate for code, rate in self.exchange_rates.items()}
        rebased[base] = Decimal("1")
        return RateSnapshot(base=base, rates=rebased, fetched_at=datetime.now(timezone.utc))


class ExchangeRateApiProvider(ExchangeRateProvider):
    """Exchange rate provider backed by the exchangerate-api.com JSON feed."""

    def __init__(self, url_template: str = DEFAULT_RATES_URL, timeout: float = 10.0):
        """Initialize the provider.

        Args:
            url_template: URL with a ``{base}`` placeholder.
            timeout: Socket timeout in seconds.
        """
        self.url_template = url_template
        self.timeout = timeout

    def get_rates(self, base: str = PIVOT_CURRENCY) -> RateSnapshot:
        """Fetch the latest rates for ``base``.

        Raises:
            ValueError: If the response carries no ``rates`` object.
            OSError: On network failures.
        """
        base = normalize_currency(base)
        url = self.url_template.format(base=base)
        headers = {
            'User-Agent': 'ascentfolio/0.1',
            'Accept': 'application/json',
        }
        req = urllib.request.Request(url, headers=headers)
        with urllib.request.urlopen(req, timeout=self.timeout) as response:
            data = json.loads(response.read().decode('utf-8'), parse_float=Decimal)

        rates = data.get("rates") if isinstance(data, dict) else None
        if not isinstance(rates, dict) or not rates:
            raise ValueError(f"Invalid response from exchange rate API for base {base}")

        logger.info("Fetched %d exchange rates for base %s", len(rates), base)
        return RateSnapshot.from_mapping(rates, base=base, fetched_at=datetime.now(timezone.utc))


class CachedExchangeRateProvider(ExchangeRateProvider):
    """Caches snapshots per base currency for the lifetime of the object.

    Each base is fetched once. If a fetch fails the last snapshot for that
    base is reused, or an empty snapshot is returned so conversions degrade to
    the unconverted fallback.
    """

    def __init__(self, provider: ExchangeRateProvider):
        self.provider = provider
        self._snapshots: dict[str, RateSnapshot] = {}
        self._lock = threading.Lock()

    def get_rates(self, base: str = PIVOT_CURRENCY) -> RateSnapshot:
        base = normalize_currency(base)
        with self._lock:
            cached = self._snapshots.get(base)
            if cached is not None and not cached.is_empty:
                return cached
            try:
                snapshot = self.provider.get_rates(base)
            except (OSError, ValueError) as exc:
                logger.error("Error fetching exchange rates for %s: %s", base, exc)
                return cached if cached is not None else RateSnapshot(base=base)
            self._snapshots[base] = snapshot
            return snapshot

    def clear(self) -> None:
        with self._lock:
            self._snapshots.clear()
