"""Runtime configuration read from the environment and an optional ``.env`` file."""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
import os
from pathlib import Path
from typing import Mapping

from dotenv import dotenv_values, find_dotenv

from .currency import (
    DEFAULT_RATES_URL,
    PIVOT_CURRENCY,
    CachedExchangeRateProvider,
    ExchangeRateApiProvider,
    ExchangeRateProvider,
    FixedExchangeRateProvider,
    normalize_currency,
)

DEFAULT_STORE_PATH = Path(".ascentfolio") / "store.json"
DEFAULT_RATES_TIMEOUT = 10.0


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"", "0", "false", "no", "off"}


def _parse_fixed_rates(raw: str) -> tuple[bool, dict[str, Decimal]]:
    """Parse ``ASCENTFOLIO_FIXED_RATES``.

    A boolean flag switches the fixed table on or off; a list such as
    ``"EUR=0.92,GBP=0.79"`` switches it on with those rates per USD.
    """

    flag = raw.strip().lower()
    if flag in _TRUE_VALUES:
        return True, {}
    if flag in _FALSE_VALUES:
        return False, {}

    rates: dict[str, Decimal] = {}
    for chunk in raw.split(","):
        if not chunk.strip():
            continue
        if "=" not in chunk:
            raise ValueError(
                f"ASCENTFOLIO_FIXED_RATES entries must look like CODE=RATE, got {chunk.strip()!r}"
            )
        code, value = chunk.split("=", 1)
        try:
            rate = Decimal(value.strip())
            code = normalize_currency(code)
        except (InvalidOperation, ValueError) as exc:
            raise ValueError(f"ASCENTFOLIO_FIXED_RATES has an invalid entry {chunk.strip()!r}") from exc
        if rate <= 0:
            raise ValueError(f"ASCENTFOLIO_FIXED_RATES rate for {code} must be positive")
        rates[code] = rate
    return True, rates


@dataclass(frozen=True)
class Settings:
    """Runtime configuration."""

    store_path: Path = DEFAULT_STORE_PATH
    display_currency: str = PIVOT_CURRENCY
    rates_url: str = DEFAULT_RATES_URL
    rates_timeout: float = DEFAULT_RATES_TIMEOUT
    use_fixed_rates: bool = False
    fixed_rates: Mapping[str, Decimal] = field(default_factory=dict)
    log_level: str | None = None

    def exchange_rate_provider(self) -> ExchangeRateProvider:
        """Build the rate source these settings describe, cached per base."""
        if self.use_fixed_rates:
            source: ExchangeRateProvider = FixedExchangeRateProvider(self.fixed_rates)
        else:
            source = ExchangeRateApiProvider(self.rates_url, timeout=self.rates_timeout)
        return CachedExchangeRateProvider(source)

    @staticmethod
    def load(env: Mapping[str, str] | None = None, use_dotenv: bool = True) -> "Settings":
        """Load settings from environment variables.

        Values from a ``.env`` file found from the working directory upwards
        are used only where the process environment does not set them.

        Raises:
            ValueError: If a variable holds a value that cannot be parsed; the
                message names the variable.
        """

        base_env = dict(os.environ if env is None else env)
        file_env: dict[str, str] = {}
        if use_dotenv:
            dotenv_path = find_dotenv(usecwd=True)
            if dotenv_path:
                file_env = {k: v for k, v in dotenv_values(dotenv_path).items() if v is not None}
        merged_env = {**file_env, **base_env}

        store_path = Path(merged_env.get("ASCENTFOLIO_STORE_PATH") or DEFAULT_STORE_PATH)

        try:
            display_currency = normalize_currency(merged_env.get("ASCENTFOLIO_DISPLAY_CURRENCY") or PIVOT_CURRENCY)
        except ValueError as exc:
            raise ValueError(f"ASCENTFOLIO_DISPLAY_CURRENCY: {exc}") from exc

        rates_url = merged_env.get("ASCENTFOLIO_RATES_URL") or DEFAULT_RATES_URL
        if "{base}" not in rates_url:
            raise ValueError("ASCENTFOLIO_RATES_URL must contain a {base} placeholder")

        timeout_raw = merged_env.get("ASCENTFOLIO_RATES_TIMEOUT")
        rates_timeout = DEFAULT_RATES_TIMEOUT
        if timeout_raw:
            try:
                rates_timeout = float(timeout_raw)
            except ValueError as exc:
                raise ValueError(f"ASCENTFOLIO_RATES_TIMEOUT must be a number, got {timeout_raw!r}") from exc
            if rates_timeout <= 0:
                raise ValueError("ASCENTFOLIO_RATES_TIMEOUT must be positive")

        use_fixed_rates, fixed_rates = _parse_fixed_rates(merged_env.get("ASCENTFOLIO_FIXED_RATES", ""))

        return Settings(
            store_path=store_path,
            display_currency=display_currency,
            rates_url=rates_url,
            rates_timeout=rates_timeout,
            use_fixed_rates=use_fixed_rates,
            fixed_rates=fixed_rates,
            log_level=merged_env.get("ASCENTFOLIO_LOG_LEVEL") or None,
        )


__all__ = ["Settings", "DEFAULT_STORE_PATH"]
