"""
Kestrel Command Line

One-shot commands against the persisted ledger, alert rules and watchlist.
Each invocation loads state, refreshes prices once, runs the command and
exits.

    python tracker_cli.py prices btc
    python tracker_cli.py trade spot buy bitcoin 0.5
    python tracker_cli.py alerts add bitcoin 70000 above
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from core.engine import TrackerEngine
from core.errors import RejectedOperationError
from core.models import BookKind, Holding, TradeAction, format_usd
from utils.logger import setup_logging


def _print_holdings(title: str, holdings: List[Holding]) -> None:
    print(f"\n{title}")
    if not holdings:
        print("  (no positions)")
        return

    for holding in holdings:
        leverage = f" x{holding.leverage}" if holding.book == BookKind.LEVERAGED else ""
        pnl = format_usd(holding.unrealized_pnl) if holding.unrealized_pnl is not None else "n/a"
        print(
            f"  {holding.name:<20} {holding.quantity:>14}{leverage:<5} "
            f"entry {format_usd(holding.average_entry_price):>14}  "
            f"value {format_usd(holding.current_value):>16}  P&L {pnl}"
        )


async def cmd_prices(engine: TrackerEngine, args) -> int:
    instruments = engine.price_table.lookup(args.query or "")[: args.limit]
    if not instruments:
        print("No matching instruments")
        return 0

    for instrument in instruments:
        star = "*" if engine.watchlist.contains(instrument.id) else " "
        print(
            f"{star} {instrument.id:<24} {instrument.symbol:<8} "
            f"{format_usd(instrument.current_price):>16}  {instrument.name}"
        )
    return 0


async def cmd_trade(engine: TrackerEngine, args) -> int:
    receipt = await engine.ledger.execute_trade(
        book=BookKind(args.book),
        instrument_id=args.instrument,
        quantity=args.quantity,
        action=TradeAction(args.action),
        leverage=args.leverage,
    )
    leverage = f" at {receipt.leverage}x" if receipt.book == BookKind.LEVERAGED else ""
    print(
        f"{receipt.action.value.upper()} {receipt.quantity} {receipt.instrument_id}{leverage} "
        f"@ {format_usd(receipt.price)} = {format_usd(receipt.cost)}"
    )
    print(f"Cash balance: {format_usd(receipt.resulting_cash_balance)}")
    return 0


async def cmd_portfolio(engine: TrackerEngine, args) -> int:
    summary = engine.ledger.summary()
    print(f"Cash balance:    {format_usd(summary['cash_balance'])}")
    print(f"Spot value:      {format_usd(summary['spot_value'])}")
    print(f"Leveraged value: {format_usd(summary['leveraged_value'])}")
    print(f"Total equity:    {format_usd(summary['total_equity'])}")

    _print_holdings("Spot", engine.ledger.holdings(BookKind.SPOT))
    _print_holdings("Leveraged", engine.ledger.holdings(BookKind.LEVERAGED))
    return 0


async def cmd_alerts(engine: TrackerEngine, args) -> int:
    if args.alerts_command == "add":
        rule = await engine.alerts.create_rule(args.instrument, args.price, args.direction)
        print(f"Created alert {rule.id}: {rule.describe()}")
        return 0

    if args.alerts_command == "rm":
        rule = await engine.alerts.delete_rule(args.rule_id)
        print(f"Removed alert {rule.id}: {rule.describe()}")
        return 0

    rules = engine.alerts.rules
    if not rules:
        print("No price alerts")
        return 0

    for rule in rules:
        status = "fired" if rule.triggered else "armed"
        price = engine.price_table.snapshot.price_of(rule.instrument_id)
        print(f"{rule.id}  [{status}]  {rule.describe()}  (now {format_usd(price)})")
    return 0


async def cmd_check(engine: TrackerEngine, args) -> int:
    fired = await engine.alerts.evaluate()
    if not fired:
        print("No alerts triggered")
        return 0

    for event in fired:
        print(f"TRIGGERED {event.rule.id}: {event.rule.describe()} (price {format_usd(event.price)})")
    return 0


async def cmd_watch(engine: TrackerEngine, args) -> int:
    if args.watch_command == "add":
        await engine.watchlist.add(args.instrument)
        print(f"Added {args.instrument} to watchlist")
        return 0

    if args.watch_command == "rm":
        if await engine.watchlist.remove(args.instrument):
            print(f"Removed {args.instrument} from watchlist")
        else:
            print(f"{args.instrument} is not on the watchlist")
        return 0

    entries = engine.watchlist.entries()
    if not entries:
        print("Watchlist is empty")
        return 0

    for instrument in entries:
        print(f"{instrument.id:<24} {instrument.symbol:<8} {format_usd(instrument.current_price):>16}")
    return 0


async def cmd_reset(engine: TrackerEngine, args) -> int:
    if not args.yes:
        print("Refusing to reset without --yes", file=sys.stderr)
        return 2

    state = await engine.ledger.reset()
    print(f"Portfolio reset. Cash balance: {format_usd(state.cash_balance)}")
    return 0


COMMANDS = {
    "prices": cmd_prices,
    "trade": cmd_trade,
    "portfolio": cmd_portfolio,
    "alerts": cmd_alerts,
    "check": cmd_check,
    "watch": cmd_watch,
    "reset": cmd_reset,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kestrel", description="Kestrel paper trading and price alerts")
    parser.add_argument("--log-level", default="WARNING", help="Log level for this run")
    subparsers = parser.add_subparsers(dest="command", required=True)

    prices = subparsers.add_parser("prices", help="List or search current prices")
    prices.add_argument("query", nargs="?", default="")
    prices.add_argument("--limit", type=int, default=25)

    trade = subparsers.add_parser("trade", help="Execute a simulated trade")
    trade.add_argument("book", choices=[kind.value for kind in BookKind])
    trade.add_argument("action", choices=[action.value for action in TradeAction])
    trade.add_argument("instrument")
    trade.add_argument("quantity")
    trade.add_argument("--leverage", type=int, default=1)

    subparsers.add_parser("portfolio", help="Show balances and positions")

    alerts = subparsers.add_parser("alerts", help="Manage price alerts")
    alerts_sub = alerts.add_subparsers(dest="alerts_command")
    alerts_sub.add_parser("list")
    alerts_add = alerts_sub.add_parser("add")
    alerts_add.add_argument("instrument")
    alerts_add.add_argument("price")
    alerts_add.add_argument("direction", choices=["above", "below"])
    alerts_rm = alerts_sub.add_parser("rm")
    alerts_rm.add_argument("rule_id")

    subparsers.add_parser("check", help="Evaluate alert rules now")

    watch = subparsers.add_parser("watch", help="Manage the watchlist")
    watch_sub = watch.add_subparsers(dest="watch_command")
    watch_sub.add_parser("list")
    for name in ("add", "rm"):
        watch_cmd = watch_sub.add_parser(name)
        watch_cmd.add_argument("instrument")

    reset = subparsers.add_parser("reset", help="Reset the portfolio to the starting balance")
    reset.add_argument("--yes", action="store_true", help="Confirm the reset")

    return parser


async def run_command(args, engine: Optional[TrackerEngine] = None) -> int:
    """
    Run one parsed command.

    Args:
        args: Parsed command line
        engine: Engine to use; built from settings when omitted

    Returns:
        int: Process exit status
    """
    engine = engine or TrackerEngine()
    try:
        await engine.load()
        if not await engine.poll_prices():
            print("Warning: could not refresh prices", file=sys.stderr)

        return await COMMANDS[args.command](engine, args)

    except RejectedOperationError as e:
        print(f"Error [{e.kind.value}]: {e.message}", file=sys.stderr)
        return 1

    finally:
        await engine.close()


def cli(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level.upper())
    return asyncio.run(run_command(args))


if __name__ == "__main__":
    sys.exit(cli())
