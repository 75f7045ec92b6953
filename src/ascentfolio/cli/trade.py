"""Account, trade and cash subcommands for the ascentfolio CLI."""

from rich.table import Table

from ..aggregation import aggregate_positions
from ..models import Account, AssetType, OptionAction, OptionType
from ..pricingdata import YFinancePricingDataManager, refresh_prices
from ..reconciliation import BuyRequest, CashRequest, SellRequest
from .common import console, load_context, parse_date


def register_subcommands(subparsers):
    """Register open-account, buy, sell, deposit, withdraw, history and refresh-prices.

    Args:
        subparsers: The argparse subparsers action to add the commands to.
    """
    parser = subparsers.add_parser(
        "open-account",
        help="Create an account",
        description="Create an account, optionally funding it with an initial cash deposit.",
    )
    parser.add_argument("name", help="Account name")
    parser.add_argument("--base-currency", "-b", default="USD", help="Account base currency (default: USD)")
    parser.add_argument("--type", dest="account_type", default="Brokerage", help="Account type label")
    parser.add_argument("--institution", default="", help="Institution name")
    parser.add_argument("--initial", default="0", help="Initial investment deposited as cash")
    parser.set_defaults(func=run_open_account)

    parser = subparsers.add_parser(
        "buy",
        help="Record a purchase",
        description="Record a purchase as a new lot, optionally paid for from the account's cash.",
    )
    parser.add_argument("account", help="Account id or name")
    parser.add_argument("symbol", help="Ticker symbol")
    parser.add_argument("quantity", help="Units (or contracts for options)")
    parser.add_argument("price", help="Unit price (premium per share for options)")
    parser.add_argument(
        "--type", "-t",
        dest="asset_type",
        default=AssetType.STOCK.value,
        choices=[t.value for t in AssetType],
        help="Asset type (default: Stock)",
    )
    parser.add_argument("--lot-currency", help="Currency of the lot (default: account base currency)")
    parser.add_argument("--date", type=parse_date, help="Trade date, YYYY-MM-DD (default: today)")
    parser.add_argument("--from-cash", action="store_true", help="Deduct the cost from cash, oldest lots first")
    parser.add_argument("--notes", default="", help="Free-form notes")
    parser.add_argument("--strike", help="Option strike price")
    parser.add_argument("--expiration", type=parse_date, help="Option expiration date, YYYY-MM-DD")
    parser.add_argument("--option-type", choices=[t.value for t in OptionType], help="Call or Put")
    parser.add_argument("--option-action", choices=[a.value for a in OptionAction], default=OptionAction.BUY.value, help="Buy or Sell to open")
    parser.set_defaults(func=run_buy)

    parser = subparsers.add_parser(
        "sell",
        help="Sell from a holding, oldest lots first",
        description="Sell part or all of a holding. Lots are consumed oldest first.",
    )
    parser.add_argument("account", help="Account id or name")
    parser.add_argument("symbol", help="Ticker symbol of the holding")
    parser.add_argument("quantity", help="Units (or contracts) to sell")
    parser.add_argument("price", help="Sale price per unit")
    parser.add_argument("--lot", action="append", dest="lot_ids", help="Sell from this lot id (repeatable)")
    parser.add_argument("--to-cash", action="store_true", help="Credit the proceeds to cash")
    parser.add_argument("--date", type=parse_date, help="Trade date, YYYY-MM-DD (default: today)")
    parser.add_argument("--notes", default="", help="Free-form notes")
    parser.set_defaults(func=run_sell)

    for name, verb, func in (("deposit", "Deposit", run_deposit), ("withdraw", "Withdraw", run_withdraw)):
        parser = subparsers.add_parser(
            name,
            help=f"{verb} cash",
            description=f"{verb} cash in one currency.",
        )
        parser.add_argument("account", help="Account id or name")
        parser.add_argument("amount", help="Amount of cash")
        parser.add_argument("--cash-currency", help="Cash currency (default: account base currency)")
        parser.add_argument("--date", type=parse_date, help="Date, YYYY-MM-DD (default: today)")
        parser.add_argument("--notes", default="", help="Free-form notes")
        parser.set_defaults(func=func)

    parser = subparsers.add_parser(
        "history",
        help="Show the transaction ledger",
        description="Show ledger entries, newest last.",
    )
    parser.add_argument("account", nargs="?", help="Account id or name (default: all accounts)")
    parser.set_defaults(func=run_history)

    parser = subparsers.add_parser(
        "refresh-prices",
        help="Fetch current prices from Yahoo Finance",
        description="Update the current price of every non-cash, non-option lot.",
    )
    parser.add_argument("account", nargs="?", help="Account id or name (default: all accounts)")
    parser.set_defaults(func=run_refresh_prices)


def run_open_account(args):
    ctx = load_context(args)
    account = ctx.engine.open_account(
        Account(
            name=args.name,
            base_currency=args.base_currency.upper(),
            account_type=args.account_type,
            institution=args.institution,
        ),
        initial_investment=args.initial,
    )
    console.print(f"Opened [cyan]{account.name}[/cyan] ({account.base_currency}) with id {account.id}")
    return 0


def run_buy(args):
    ctx = load_context(args)
    account = ctx.find_account(args.account)
    assert account.id is not None
    result = ctx.engine.buy(BuyRequest(
        account_id=account.id,
        symbol=args.symbol,
        asset_type=AssetType(args.asset_type),
        quantity=args.quantity,
        price=args.price,
        currency=args.lot_currency,
        date=args.date,
        deduct_from_cash=args.from_cash,
        notes=args.notes,
        strike_price=args.strike,
        expiration_date=args.expiration,
        option_type=OptionType(args.option_type) if args.option_type else None,
        option_action=OptionAction(args.option_action) if args.option_action else None,
    ))
    lot = result.lot
    console.print(
        f"Bought {lot.quantity} {lot.symbol} at {lot.average_buy_price:,.2f} {lot.currency}"
        f" (cost {result.transaction.total_amount:,.2f} {lot.currency}, lot {lot.id})"
    )
    return 0


def run_sell(args):
    ctx = load_context(args)
    account = ctx.find_account(args.account)
    assert account.id is not None

    holding = None
    if not args.lot_ids:
        symbol = args.symbol.upper()
        matches = [
            h for h in aggregate_positions(ctx.store.list_lots(account_id=account.id))
            if h.symbol == symbol and h.asset_type is not AssetType.CASH
        ]
        if not matches:
            console.print(f"[red]Error: {account.name} holds no {symbol}[/red]")
            return 1
        if len(matches) > 1:
            console.print(f"[red]Error: {symbol} has {len(matches)} holdings (option contracts); pass --lot[/red]")
            return 1
        holding = matches[0]

    result = ctx.engine.sell(SellRequest(
        account_id=account.id,
        quantity=args.quantity,
        price=args.price,
        lot_ids=args.lot_ids,
        holding=holding,
        return_to_cash=args.to_cash,
        notes=args.notes,
        date=args.date,
    ))
    txn = result.transaction
    console.print(
        f"Sold {txn.quantity} {txn.symbol} for {result.proceeds:,.2f} {txn.currency}"
        f" ({txn.notes.splitlines()[-1]})"
    )
    if result.cash_lot is not None:
        console.print(f"Proceeds credited to cash lot {result.cash_lot.id}")
    return 0


def run_deposit(args):
    ctx = load_context(args)
    account = ctx.find_account(args.account)
    assert account.id is not None
    result = ctx.engine.deposit(CashRequest(
        account_id=account.id,
        amount=args.amount,
        currency=args.cash_currency,
        date=args.date,
        notes=args.notes,
    ))
    txn = result.transaction
    console.print(f"Deposited {txn.total_amount:,.2f} {txn.currency} into {account.name}")
    return 0


def run_withdraw(args):
    ctx = load_context(args)
    account = ctx.find_account(args.account)
    assert account.id is not None
    result = ctx.engine.withdraw(CashRequest(
        account_id=account.id,
        amount=args.amount,
        currency=args.cash_currency,
        date=args.date,
        notes=args.notes,
    ))
    txn = result.transaction
    console.print(f"Withdrew {txn.total_amount:,.2f} {txn.currency} from {account.name}")
    return 0


def run_history(args):
    ctx = load_context(args)
    account_id = ctx.find_account(args.account).id if args.account else None
    names = {a.id: a.name for a in ctx.store.list_accounts()}

    table = Table(title="Transactions")
    table.add_column("Date", justify="left")
    table.add_column("Account", style="cyan")
    table.add_column("Type")
    table.add_column("Symbol", style="cyan")
    table.add_column("Quantity", style="magenta", justify="right")
    table.add_column("Price", justify="right")
    table.add_column("Total", style="green", justify="right")
    table.add_column("Notes")

    for txn in ctx.store.list_transactions(account_id=account_id):
        table.add_row(
            txn.date.isoformat(),
            names.get(txn.account_id, txn.account_id),
            txn.type.value,
            txn.symbol or "",
            f"{txn.quantity:,f}",
            f"{txn.price_per_unit:,.2f}",
            f"{txn.total_amount:,.2f} {txn.currency}",
            txn.notes.replace("\n", " | "),
        )
    console.print(table)
    return 0


def run_refresh_prices(args):
    ctx = load_context(args)
    account_id = ctx.find_account(args.account).id if args.account else None
    updated = refresh_prices(ctx.store, YFinancePricingDataManager(), account_id=account_id)
    console.print(f"Updated prices on {updated} lot(s)")
    return 0
