#!/usr/bin/env python3
"""Report subcommand - Display holdings, cash and P&L per account."""

from datetime import datetime

from rich.panel import Panel
from rich.table import Table

from ..currency import PIVOT_CURRENCY
from ..models import AssetType
from ..valuation import AccountSummary, allocation_by_symbol, portfolio_summary
from .common import console, load_context, signed


def register_subcommand(subparsers):
    """Register the report subcommand with the argument parser.

    Args:
        subparsers: The argparse subparsers action to add the command to.
    """
    parser = subparsers.add_parser(
        "report",
        help="Display portfolio holdings report",
        description="Display aggregated holdings, cash balances and P&L for each account.",
    )
    parser.add_argument(
        "--currency",
        "-c",
        help="Display currency (default: ASCENTFOLIO_DISPLAY_CURRENCY or USD)",
    )
    parser.add_argument(
        "--account",
        "-a",
        help="Only report this account (id or name)",
    )
    parser.add_argument(
        "--allocation",
        action="store_true",
        help="Also show allocation by symbol",
    )
    parser.set_defaults(func=run)


def _holdings_table(summary: AccountSummary) -> Table:
    table = Table(title=f"{summary.account_name} ({summary.base_currency})")
    table.add_column("Symbol", style="cyan", justify="left")
    table.add_column("Type", justify="left")
    table.add_column("Quantity", style="magenta", justify="right")
    table.add_column("Unit Price\n(Book → Market)", justify="right")
    table.add_column("Cost Basis", style="yellow", justify="right")
    table.add_column("Market Value", style="green", justify="right")
    table.add_column("P&L", justify="right")
    table.add_column("P&L %", justify="right")
    table.add_column("Weight", justify="right")

    for hv in summary.holdings:
        holding, valuation = hv.holding, hv.valuation
        if holding.asset_type is AssetType.CASH:
            continue
        symbol = holding.symbol
        if holding.asset_type is AssetType.OPTION and holding.option_type is not None:
            symbol = f"{symbol} {holding.strike_price} {holding.option_type.value} {holding.expiration_date}"
        if holding.is_aggregated:
            symbol = f"{symbol} [dim]({len(holding.lots)} lots)[/dim]"
        estimate = "" if valuation.converted else " [dim]~[/dim]"
        if holding.is_mixed_currency:
            unit_price = "[dim]mixed currencies[/dim]"
        else:
            unit_price = f"[yellow]{holding.average_buy_price:,.2f}[/yellow] → [green]{holding.current_price:,.2f}[/green] {holding.currency}"

        table.add_row(
            symbol,
            holding.asset_type.value,
            f"{holding.quantity:,f}",
            unit_price,
            f"{valuation.cost_basis:,.2f} {valuation.currency}",
            f"{valuation.market_value:,.2f} {valuation.currency}{estimate}",
            signed(valuation.pnl),
            signed(valuation.pnl_percent, "%"),
            f"{valuation.weight:.1f}%",
        )
    return table


def run(args):
    """Display each account's holdings, cash balances and a summary panel.

    Args:
        args: Parsed argparse namespace with store, currency, account and
            allocation attributes.

    Returns:
        int: Exit code (0 for success, 1 for errors).
    """
    ctx = load_context(args)
    display_currency = ctx.settings.display_currency

    if args.account:
        accounts = [ctx.find_account(args.account)]
    else:
        accounts = ctx.store.list_accounts()
    if not accounts:
        console.print("No accounts yet. Create one with 'ascentfolio open-account'.")
        return 0

    rates = ctx.rates(PIVOT_CURRENCY)
    summary = portfolio_summary(accounts, ctx.store.list_lots(), display_currency, rates)
    local_now = datetime.now().astimezone()
    console.print(f"[bold]Portfolio on {local_now.strftime('%Y-%m-%d %H:%M %Z')}[/bold]")

    for account_summary in summary.accounts:
        console.print(_holdings_table(account_summary))

        if account_summary.cash_balances:
            cash_table = Table(title="Cash Balances")
            cash_table.add_column("Currency", style="cyan", justify="left")
            cash_table.add_column("Balance", style="yellow", justify="right")
            for currency, balance in sorted(account_summary.cash_balances.items()):
                cash_table.add_row(currency, f"{balance:,.2f}")
            console.print(cash_table)

        console.print(
            f" Value: {account_summary.total_value:,.2f} {account_summary.base_currency}"
            f"  Cost: {account_summary.total_cost_basis:,.2f} {account_summary.base_currency}"
            f"  P&L: {signed(account_summary.total_pnl)} ({signed(account_summary.total_pnl_percent, '%')})"
        )

        if args.allocation:
            allocation = Table(title="Allocation")
            allocation.add_column("Holding", style="cyan")
            allocation.add_column(f"Value ({display_currency})", justify="right")
            allocation.add_column("Share", justify="right")
            for slice_ in allocation_by_symbol(account_summary):
                allocation.add_row(slice_.name, f"{slice_.value:,.2f}", f"{slice_.percentage:.1f}%")
            console.print(allocation)

    note = "" if summary.converted else "\n[dim]~ some amounts could not be converted and are shown unconverted[/dim]"
    console.print(
        Panel(
            f"[bold green]Total Portfolio Value: {summary.total_value:,.2f} {display_currency}[/bold green]\n"
            f"Cost Basis: {summary.total_cost_basis:,.2f} {display_currency}\n"
            f"P&L: {signed(summary.total_pnl)} {display_currency} ({signed(summary.total_pnl_percent, '%')})"
            f"{note}",
            title="Summary",
        )
    )
    return 0
