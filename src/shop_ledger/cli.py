"""Command-line entry points for the shop ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing results. Keeping the CLI thin ensures the same parser
configuration can be reused by tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log, reporting
from .constants import QUICK_SALE_QUANTITIES, ReportMode
from .data_manager import PartnerRow

# Commands that may run before first-run setup has been completed.
SETUP_FREE_COMMANDS = frozenset({"setup", "reset"})


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="shop-ledger",
        description="Stock, sales, and partner cash ledger for a small shop.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upwards from the working directory by default).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def _simple_spec(
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
    configure: Optional[Callable[[argparse.ArgumentParser], None]] = None,
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        if configure is not None:
            configure(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and withdrawals."""
    specs = {
        "setup": register_setup_command(subparsers),
        "add-stock": register_add_stock_command(subparsers),
        "sell": register_sell_command(subparsers),
        "quick-sell": register_quick_sell_command(subparsers),
        "expense": register_expense_command(subparsers),
        "withdraw": register_withdraw_command(subparsers),
        "add-partner": register_add_partner_command(subparsers),
        "remove-partner": register_remove_partner_command(subparsers),
        "set-price": register_set_price_command(subparsers),
        "delete": register_delete_command(subparsers),
        "reset": register_reset_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "report": register_report_command(subparsers),
        "position": register_position_command(subparsers),
        "activity": register_activity_command(subparsers),
        "export": register_export_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _partner_arg(value: str) -> PartnerRow:
    return PartnerRow(name=value, is_guest=False)


def _guest_arg(value: str) -> PartnerRow:
    return PartnerRow(name=value, is_guest=True)


def register_setup_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``setup``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--business-name", default=None)
        parser.add_argument("--initial-cash", default=None)
        parser.add_argument("--sell-price", default=None, help="Default sell price per unit.")
        parser.add_argument("--stock-quantity", default=None, help="Units in the opening stock lot.")
        parser.add_argument("--cost-price", default=None, help="Cost per unit of the opening stock lot.")
        # Both options append to the same list so the given order is kept.
        parser.add_argument(
            "--partner",
            dest="partners",
            action="append",
            type=_partner_arg,
            default=[],
            help="Profit-sharing partner (repeatable).",
        )
        parser.add_argument(
            "--guest",
            dest="partners",
            action="append",
            type=_guest_arg,
            help="Guest seller without profit share (repeatable).",
        )

    return _simple_spec("setup", "Complete first-run setup of the ledger.", run_setup, configure)


def register_add_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-stock``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--cost-price", required=True)
        parser.add_argument("--sell-price", default=None)

    return _simple_spec("add-stock", "Record a stock purchase.", run_add_stock, configure)


def register_sell_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sell``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--seller", default=None, help="Defaults to the first partner.")
        parser.add_argument("--discount", default=None)
        parser.add_argument("--notes", dest="notes", default=None)

    return _simple_spec("sell", "Record a sale at the current sell price.", run_sell, configure)


def register_quick_sell_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``quick-sell``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("quantity", type=int, choices=QUICK_SALE_QUANTITIES)
        parser.add_argument("--seller", default=None, help="Defaults to the first partner.")

    return _simple_spec("quick-sell", "Record a fixed-size sale without discount.", run_quick_sell, configure)


def register_expense_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``expense``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--amount", required=True)
        parser.add_argument("--description", default=None)

    return _simple_spec("expense", "Record a business expense.", run_expense, configure)


def register_withdraw_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``withdraw``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--amount", required=True)
        parser.add_argument("--person", default=None, help="Defaults to the first non-guest partner.")

    return _simple_spec("withdraw", "Record a partner taking cash out.", run_withdraw, configure)


def register_add_partner_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-partner``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("name")
        parser.add_argument("--guest", action="store_true", help="Add as a guest seller without profit share.")

    return _simple_spec("add-partner", "Add a partner or guest seller.", run_add_partner, configure)


def register_remove_partner_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``remove-partner``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("name")

    return _simple_spec("remove-partner", "Remove a partner or guest seller.", run_remove_partner, configure)


def register_set_price_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-price``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("price")

    return _simple_spec("set-price", "Update the default sell price.", run_set_price, configure)


def register_delete_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("kind", choices=sorted(DELETE_HANDLERS))
        parser.add_argument("record_id")

    return _simple_spec("delete", "Delete a sale, expense, withdrawal, or stock lot.", run_delete, configure)


def register_reset_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reset``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--code", required=True, help="Confirmation code.")

    return _simple_spec("reset", "Erase all ledger data.", run_reset, configure)


def register_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``report``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--mode",
            choices=[member.value for member in ReportMode],
            default=ReportMode.TODAY.value,
        )
        parser.add_argument("--month", type=int, default=None, help="1-12, for --mode custom.")
        parser.add_argument("--year", type=int, default=None, help="For --mode custom.")
        parser.add_argument("--overall", action="store_true", help="Show the overall view instead of net profit.")

    return _simple_spec("report", "Display profit and partner figures for a period.", run_report, configure)


def register_position_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``position``."""
    return _simple_spec("position", "Display stock, pricing, cash, and assets.", run_position)


def register_activity_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``activity``."""
    return _simple_spec("activity", "Display today's activity, newest first.", run_activity)


def register_export_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``export``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--output", type=Path, default=None, help="Write to this file instead of stdout.")

    return _simple_spec("export", "Export the ledger as CSV.", run_export, configure)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(config_path)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    if not context.store.setup_completed and spec.name not in SETUP_FREE_COMMANDS:
        raise core_logic.SetupRequired("Run 'shop-ledger setup' before using the ledger")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_setup(args: argparse.Namespace) -> core_logic.SetupCommand:
    """Translate CLI args into a setup command object."""
    return core_logic.SetupCommand(
        partners=tuple(args.partners or ()),
        business_name=args.business_name,
        initial_cash=args.initial_cash,
        default_sell_price=args.sell_price,
        initial_stock_quantity=args.stock_quantity,
        initial_cost_price=args.cost_price,
    )


def translate_add_stock(args: argparse.Namespace) -> core_logic.StockCommand:
    """Translate CLI args into a stock command object."""
    return core_logic.StockCommand(
        quantity=args.quantity,
        cost_price=args.cost_price,
        sell_price=args.sell_price,
    )


def translate_sell(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        quantity=args.quantity,
        seller=args.seller,
        discount=args.discount,
        notes=args.notes,
    )


def translate_expense(args: argparse.Namespace) -> core_logic.ExpenseCommand:
    """Translate CLI args into an expense command object."""
    return core_logic.ExpenseCommand(amount=args.amount, description=args.description)


def translate_withdraw(args: argparse.Namespace) -> core_logic.WithdrawalCommand:
    """Translate CLI args into a withdrawal command object."""
    return core_logic.WithdrawalCommand(amount=args.amount, person=args.person)


def _money(value: Decimal) -> str:
    return f"{value:,.2f}"


def run_setup(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute first-run setup via the BLL."""
    store = core_logic.run_first_time_setup(
        context.store,
        translate_setup(args),
        default_business_name=context.settings.default_business_name,
    )
    print(f"Set up '{store.business_name}' with {len(store.partners)} partner(s).")
    return 0


def run_add_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-stock workflow via the BLL."""
    lot = core_logic.add_stock_lot(context.store, translate_add_stock(args))
    print(f"Added {lot.quantity} units at {_money(lot.cost_price)} ({lot.lot_id}).")
    return 0


def run_sell(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    sale = core_logic.record_sale(context.store, translate_sell(args))
    print(f"Sold {sale.quantity} units for {_money(sale.total)} by {sale.seller} ({sale.sale_id}).")
    return 0


def run_quick_sell(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a quick sale via the BLL."""
    sale = core_logic.record_quick_sale(context.store, args.quantity, seller=args.seller)
    print(f"Sold {sale.quantity} units for {_money(sale.total)} by {sale.seller} ({sale.sale_id}).")
    return 0


def run_expense(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the expense workflow via the BLL."""
    expense = core_logic.record_expense(context.store, translate_expense(args))
    print(f"Recorded expense {_money(expense.amount)}: {expense.description} ({expense.expense_id}).")
    return 0


def run_withdraw(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the withdrawal workflow via the BLL."""
    withdrawal = core_logic.record_withdrawal(context.store, translate_withdraw(args))
    print(f"{withdrawal.person} withdrew {_money(withdrawal.amount)} ({withdrawal.withdrawal_id}).")
    return 0


def run_add_partner(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-partner workflow via the BLL."""
    partner = core_logic.add_partner(context.store, args.name, is_guest=args.guest)
    print(f"Added {'guest' if partner.is_guest else 'partner'} {partner.name}.")
    return 0


def run_remove_partner(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the remove-partner workflow via the BLL."""
    partner = core_logic.remove_partner(context.store, args.name)
    print(f"Removed {partner.name}.")
    return 0


def run_set_price(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the default sell-price update via the BLL."""
    price = core_logic.update_default_sell_price(context.store, args.price)
    print(f"Default sell price set to {_money(price)}.")
    return 0


DELETE_HANDLERS: Dict[str, Callable[[core_logic.LedgerStore, str], object]] = {
    "sale": core_logic.delete_sale,
    "expense": core_logic.delete_expense,
    "withdrawal": core_logic.delete_withdrawal,
    "stock": core_logic.delete_stock_lot,
}


def run_delete(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a record deletion via the BLL."""
    DELETE_HANDLERS[args.kind](context.store, args.record_id)
    print(f"Deleted {args.kind} {args.record_id}.")
    return 0


def run_reset(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the reset workflow via the BLL."""
    core_logic.reset_all(context.store, args.code)
    print("All data has been reset. Run 'shop-ledger setup' to start again.")
    return 0


def format_report(report: reporting.PeriodReport, *, overall: bool = False) -> str:
    """Render a period report as plain text."""
    lines = [
        f"Report: {report.window.title}",
        f"  Sales:            {_money(report.total_sales)} ({report.units_sold} units)",
        f"  Expenses:         {_money(report.total_expenses)}",
        f"  Withdrawals:      {_money(report.total_withdrawals)}",
    ]
    if overall:
        view = report.overall()
        lines.append(f"  Remaining:        {_money(view.remaining)}")
        lines.append(f"  Per partner:      {_money(view.per_partner_overall)}")
        lines.extend(f"    {name}: {_money(share)}" for name, share in view.by_partner.items())
    else:
        lines.extend(
            [
                f"  Cost of goods:    {_money(report.cost_of_goods_sold)}",
                f"  Stock purchased:  {_money(report.stock_purchase_cost)}",
                f"  Gross profit:     {_money(report.gross_profit)} ({_money(report.profit_per_unit)}/unit)",
                f"  Net profit:       {_money(report.net_profit_before_withdrawals)}",
                f"  Per partner:      {_money(report.per_partner_share)}",
            ]
        )
        lines.extend(
            f"    {name}: {_money(net)} (withdrew {_money(report.withdrawals_by_person[name])})"
            for name, net in report.net_profit_by_partner.items()
        )
    lines.append("  Sales by seller:")
    lines.extend(f"    {name}: {_money(total)}" for name, total in report.sales_by_seller.items())
    return "\n".join(lines)


def run_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the period reporting workflow."""
    report = reporting.build_report(context.store, args.mode, month=args.month, year=args.year)
    print(format_report(report, overall=args.overall))
    return 0


def run_position(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the position reporting workflow."""
    position = core_logic.calculate_position(context.store)
    print(f"{context.store.business_name}")
    print(f"  Stock on hand:    {position.stock_on_hand}")
    print(f"  Avg cost price:   {_money(position.average_cost_price)}")
    print(f"  Sell price:       {_money(position.effective_sell_price)}")
    print(f"  Profit per unit:  {_money(position.profit_per_unit)}")
    print(f"  Stock value:      {_money(position.inventory_value)}")
    print(f"  Cash in hand:     {_money(position.cash_on_hand)}")
    print(f"  Total assets:     {_money(position.total_assets)}")
    return 0


def run_activity(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the recent activity listing."""
    items = reporting.recent_activity(context.store)
    if not items:
        print("No activity today.")
    for item in items:
        print(f"{item.timestamp.strftime('%H:%M')}  {item.kind:<10} {_money(item.amount):>12}")
    return 0


def run_export(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the CSV export."""
    content = reporting.export_csv(context.store)
    if args.output is None:
        sys.stdout.write(content)
    else:
        args.output.write_text(content, encoding="utf-8")
        print(f"Exported ledger to '{args.output}'.")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def report_persistence_errors(context: core_logic.RuntimeContext) -> None:
    """Warn when the in-memory change could not be written to disk."""
    if context.persistence is None or not context.persistence.errors:
        return
    print(
        f"Warning: changes could not be saved to '{context.settings.data_file}': "
        f"{context.persistence.errors[-1]}",
        file=sys.stderr,
    )


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        report_persistence_errors(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
