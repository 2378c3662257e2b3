"""Command-line entry points for the sales ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing the resulting figures. Keeping the CLI thin lets tests,
scripts, or any other front-end reuse the same use cases.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, localcontext
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, data_manager, engine, log, reporting
from .constants import ConfigSection, PaymentMethod


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="ledger-cli",
        description="Command-line tools for the sales ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory when omitted).",
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


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare commands that change the workbook and are persisted afterwards."""
    specs = {
        "sale": register_sale_command(subparsers),
        "delete-sale": register_delete_sale_command(subparsers),
        "set-commissions": register_set_commissions_command(subparsers),
        "set-partners": register_set_partners_command(subparsers),
        "set-expenses": register_set_expenses_command(subparsers),
        "set-rate": register_set_rate_command(subparsers),
        "import-legacy": register_import_legacy_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only reporting commands."""
    specs = {
        "dashboard": register_dashboard_command(subparsers),
        "history": register_history_command(subparsers),
        "monthly": register_monthly_command(subparsers),
        "months": register_months_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Register a sale split by payment method."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", dest="sale_date", type=date.fromisoformat, default=None,
                            help="Business day in YYYY-MM-DD (defaults to today).")
        parser.add_argument("--amount", action="append", default=[], metavar="METHOD=VALUE",
                            help=f"Local-currency amount; methods: {', '.join(m.value for m in PaymentMethod)}.")
        parser.add_argument("--foreign-amount", action="append", default=[], metavar="METHOD=VALUE",
                            help="Foreign-currency amount (cash only).")
        parser.add_argument("--rate", default=None, help="Exchange rate snapshot (defaults to configured rate).")
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale, mutates=True)


def register_delete_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-sale``."""
    name = "delete-sale"
    help_text = "Delete a registered sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_sale, mutates=True)


def register_set_commissions_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-commissions``."""
    name = "set-commissions"
    help_text = "Update commission percentages per payment method."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--rate", action="append", required=True, metavar="METHOD=PERCENT")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_commissions, mutates=True)


def register_set_partners_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-partners``."""
    name = "set-partners"
    help_text = "Update partner profit shares."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--share", action="append", required=True, metavar="PARTNER=PERCENT")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_partners, mutates=True)


def register_set_expenses_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-expenses``."""
    name = "set-expenses"
    help_text = "Replace the list of fixed expenses."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--expense", action="append", default=[], metavar="NAME=AMOUNT",
                            help="Repeat for each expense; omit entirely to clear the list.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_expenses, mutates=True)


def register_set_rate_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-rate``."""
    name = "set-rate"
    help_text = "Update the exchange rate used for new sales."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--rate", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_rate, mutates=True)


def register_import_legacy_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``import-legacy``."""
    name = "import-legacy"
    help_text = "Import sales exported from the browser-only ledger."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--file", type=Path, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_import_legacy, mutates=True)


def register_dashboard_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dashboard``."""
    name = "dashboard"
    help_text = "Display month-to-date totals, profit, and partner shares."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--today", type=date.fromisoformat, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dashboard)


def register_history_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``history``."""
    name = "history"
    help_text = "Display sales of a month grouped by day."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--month", default=None, help="Month as YYYY-MM (defaults to the current month).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_history)


def register_monthly_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``monthly``."""
    name = "monthly"
    help_text = "Display gross and net totals per month."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_monthly)


def register_months_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``months``."""
    name = "months"
    help_text = "List the months available in the history."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--today", type=date.fromisoformat, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_months)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve and validate the runtime context for CLI operations.

    Without ``config_path`` the data layer walks up from the working directory
    looking for ``config.ini``.
    """
    target = Path(config_path) if config_path is not None else None
    context = core_logic.load_runtime_context(target)
    core_logic.ensure_schema_version(context)
    core_logic.ensure_workbook_layout(context)
    return context


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


def parse_pairs(values: Sequence[str]) -> List[Tuple[str, str]]:
    """Split ``KEY=VALUE`` arguments into pairs, keeping their order.

    Raises:
        ValueError: If an entry has no ``=`` or an empty key.
    """
    pairs: List[Tuple[str, str]] = []
    for raw in values:
        key, sep, value = raw.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Expected KEY=VALUE, got: {raw!r}")
        pairs.append((key.strip(), value.strip()))
    return pairs


def format_currency(value: Decimal) -> str:
    """Render ``value`` as whole pesos with dot thousands separators, e.g. ``$ 1.234.567``."""
    with localcontext() as ctx:
        # quantize needs one digit of precision per integer digit.
        ctx.prec = max(ctx.prec, value.adjusted() + 2)
        whole = int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    text = f"{abs(whole):,}".replace(",", ".")
    return f"-$ {text}" if whole < 0 else f"$ {text}"


def describe_sale(sale: data_manager.SaleRow, foreign_currency: str = "USD") -> str:
    """Summarize the payment breakdown of ``sale`` on one line."""
    parts = [f"{method.label}: {format_currency(amount)}" for method, amount in sale.amounts.items()]
    parts.extend(
        f"{method.label} {foreign_currency}: {amount}" for method, amount in sale.amounts_foreign.items()
    )
    return ", ".join(parts)


def translate_sale(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        sale_date=args.sale_date or date.today(),
        amounts=dict(parse_pairs(args.amount)),
        amounts_foreign=dict(parse_pairs(args.foreign_amount)),
        notes=args.notes,
        exchange_rate=args.rate,
    )


def translate_set_commissions(args: argparse.Namespace) -> core_logic.UpdateConfigCommand:
    return core_logic.UpdateConfigCommand(section=ConfigSection.COMMISSIONS, values=dict(parse_pairs(args.rate)))


def translate_set_partners(args: argparse.Namespace) -> core_logic.UpdateConfigCommand:
    return core_logic.UpdateConfigCommand(section=ConfigSection.PARTNERS, values=dict(parse_pairs(args.share)))


def translate_set_expenses(args: argparse.Namespace) -> core_logic.UpdateConfigCommand:
    return core_logic.UpdateConfigCommand(section=ConfigSection.EXPENSES, values=parse_pairs(args.expense))


def translate_set_rate(args: argparse.Namespace) -> core_logic.UpdateConfigCommand:
    return core_logic.UpdateConfigCommand(section=ConfigSection.EXCHANGE_RATE, values=args.rate)


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale registration workflow via the BLL."""
    command = translate_sale(args)
    sale = core_logic.register_sale(context, command)
    totals = engine.compute_sale_totals(sale, core_logic.get_config(context))
    day_total = reporting.selected_date_total(
        core_logic.list_sales(context), sale.sale_date, core_logic.get_config(context)
    )
    print(f"Registered sale {sale.sale_id} on {sale.sale_date.isoformat()}: {describe_sale(sale, context.settings.foreign_currency)}")
    print(f"  Gross {format_currency(totals.gross)} | Net {format_currency(totals.net)}")
    print(f"  Day total {format_currency(day_total)}")
    return 0


def run_delete_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale deletion workflow via the BLL."""
    core_logic.delete_sale(context, args.sale_id)
    print(f"Deleted sale {args.sale_id}")
    return 0


def run_set_commissions(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.update_config(context, translate_set_commissions(args))
    print("Commissions saved")
    return 0


def run_set_partners(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    config = core_logic.update_config(context, translate_set_partners(args))
    total = sum((partner.percentage for partner in config.partners), Decimal("0"))
    print("Partner shares saved")
    if total != Decimal("100"):
        print(f"  Note: shares add up to {total}%, not 100%")
    return 0


def run_set_expenses(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    config = core_logic.update_config(context, translate_set_expenses(args))
    print(f"Expenses saved ({len(config.fixed_expenses)} items, total {format_currency(engine.compute_expense_total(config))})")
    return 0


def run_set_rate(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    config = core_logic.update_config(context, translate_set_rate(args))
    print(f"Exchange rate saved: 1 {context.settings.foreign_currency} = {config.exchange_rate} {context.settings.local_currency}")
    return 0


def run_import_legacy(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the legacy import workflow via the BLL."""
    records = data_manager.read_legacy_sales(args.file)
    imported = core_logic.import_legacy_sales(context, records)
    print(f"Imported {len(imported)} of {len(records)} legacy sales")
    return 0


def run_dashboard(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print month-to-date figures and the partner distribution."""
    today = args.today or date.today()
    dashboard = core_logic.build_dashboard(context, today)
    config = core_logic.get_config(context)
    month = dashboard.month
    print(f"{context.settings.shop_name} | Resumen del Mes: {dashboard.month_label}")
    print(f"  Venta Bruta  {format_currency(month.totals.gross)}")
    print(f"  Comisiones   {format_currency(month.totals.commission)}")
    print(f"  Venta Real   {format_currency(month.totals.net)}")
    print(f"  Gastos       {format_currency(month.expenses)}")
    print(f"  Ganancia     {format_currency(month.profit)}")
    for partner in config.partners:
        amount = month.distribution.get(partner.partner_id, Decimal("0"))
        print(f"  {partner.name} ({partner.percentage}%): {format_currency(amount)}")
    print(f"Hoy {today.isoformat()}: {dashboard.today_sale_count} ventas, {format_currency(dashboard.today_totals.gross)}")
    return 0


def run_history(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the sales of one month grouped by day, newest first."""
    key = args.month or reporting.month_key(date.today())
    label = reporting.month_label(key)
    config = core_logic.get_config(context)
    month_sales = reporting.sales_for_month(core_logic.list_sales(context), key)
    print(f"{label}: {len(month_sales)} ventas")
    if not month_sales:
        print("  No hay ventas en este mes")
        return 0
    for day, group in reporting.group_by_date(month_sales, config):
        print(f"{day.isoformat()}  Total: {format_currency(group.total_gross)}")
        for sale in group.sales:
            totals = engine.compute_sale_totals(sale, config)
            print(
                f"  {sale.sale_id}  {describe_sale(sale, context.settings.foreign_currency)}"
                f"  | Bruto {format_currency(totals.gross)} | Neto {format_currency(totals.net)}"
            )
    return 0


def run_monthly(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print gross and net per month."""
    months = reporting.group_by_month(core_logic.list_sales(context), core_logic.get_config(context))
    if not months:
        print("No hay ventas registradas")
        return 0
    for key, summary in months:
        print(
            f"{key}  {summary.label}: {summary.count} ventas, "
            f"Bruto {format_currency(summary.gross)}, Neto {format_currency(summary.net)}"
        )
    return 0


def run_months(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    today = args.today or date.today()
    for key, label in reporting.list_available_months(core_logic.list_sales(context), today):
        print(f"{key}  {label}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, core_logic.PersistenceError):
        log.error("%s. Nothing was saved; please retry.", error)
        return 4
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            core_logic.persist_context(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
