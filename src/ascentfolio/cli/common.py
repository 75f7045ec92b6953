"""Helpers shared by the subcommands: settings, store and engine wiring."""

from dataclasses import dataclass, field, replace
from datetime import date
from pathlib import Path

from rich.console import Console

from ..config import Settings
from ..currency import ExchangeRateProvider, RateSnapshot, normalize_currency
from ..models import Account
from ..reconciliation import ReconciliationEngine
from ..store import JsonFileLotStore

console = Console()


@dataclass
class CliContext:
    """Everything a subcommand needs to run against the configured store."""

    settings: Settings
    store: JsonFileLotStore
    engine: ReconciliationEngine
    rate_provider: ExchangeRateProvider = field(init=False)

    def __post_init__(self):
        self.rate_provider = self.settings.exchange_rate_provider()

    def rates(self, base: str) -> RateSnapshot:
        return self.rate_provider.get_rates(base)

    def find_account(self, key: str) -> Account:
        """Look an account up by id, id prefix or case-insensitive name.

        Raises:
            ValueError: If no account or more than one account matches.
        """
        accounts = self.store.list_accounts()
        matches = [a for a in accounts if a.id == key]
        if not matches:
            matches = [a for a in accounts if a.name.lower() == key.lower()]
        if not matches:
            matches = [a for a in accounts if a.id and a.id.startswith(key)]
        if not matches:
            raise ValueError(f"No account matches '{key}'")
        if len(matches) > 1:
            raise ValueError(f"'{key}' matches {len(matches)} accounts; use the account id")
        return matches[0]


def load_context(args) -> CliContext:
    """Load settings and open the JSON store, honouring ``--store`` and ``--currency``."""
    settings = Settings.load()
    overrides = {}
    if getattr(args, "store", None):
        overrides["store_path"] = Path(args.store)
    if getattr(args, "currency", None):
        overrides["display_currency"] = normalize_currency(args.currency)
    if overrides:
        settings = replace(settings, **overrides)

    store = JsonFileLotStore(settings.store_path)
    return CliContext(settings=settings, store=store, engine=ReconciliationEngine(store))


def parse_date(value: str) -> date:
    """argparse ``type=`` for YYYY-MM-DD dates."""
    return date.fromisoformat(value)


def signed(value, suffix: str = "") -> str:
    """Format a number green when non-negative and red when negative."""
    if value >= 0:
        return f"[green]+{value:,.2f}{suffix}[/green]"
    return f"[red]{value:,.2f}{suffix}[/red]"
