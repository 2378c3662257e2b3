"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
import json
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Iterable

import pytest

from sales_ledger import cli, core_logic, data_manager
from sales_ledger.constants import ConfigSection, PaymentMethod


WRITE_COMMANDS = {
    "sale",
    "delete-sale",
    "set-commissions",
    "set-partners",
    "set-expenses",
    "set-rate",
    "import-legacy",
}

READ_COMMANDS = {
    "dashboard",
    "history",
    "monthly",
    "months",
}

# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "ledger-cli"
    assert "sales ledger" in (parser.description or "")


def test_configure_subcommands_registers_every_command(cli_parser):
    command_table = cli.configure_subcommands(cli_parser)

    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_mark_mutation(subparsers_action):
    """Only write commands trigger a save after they run."""

    specs = cli.register_write_commands(subparsers_action)

    assert set(specs) == WRITE_COMMANDS
    assert all(isinstance(spec, cli.CommandSpec) and spec.mutates for spec in specs.values())
    for name in WRITE_COMMANDS:
        assert name in subparsers_action.choices


def test_register_read_commands_do_not_mutate(subparsers_action):
    specs = cli.register_read_commands(subparsers_action)

    assert set(specs) == READ_COMMANDS
    assert not any(spec.mutates for spec in specs.values())
    for name in READ_COMMANDS:
        assert name in subparsers_action.choices


# ---------------------------------------------------------------------------
# Command registrations
# ---------------------------------------------------------------------------


def test_register_sale_command_configures_arguments():
    parser = _parser_for(cli.register_sale_command)

    args = parser.parse_args(
        [
            "sale",
            "--date",
            "2025-03-15",
            "--amount",
            "cash=1000",
            "--amount",
            "credit_3=2000",
            "--foreign-amount",
            "cash=10",
            "--rate",
            "1100",
            "--notes",
            "Sofá",
        ]
    )

    assert args.command == "sale"
    assert args.sale_date == date(2025, 3, 15)
    assert args.amount == ["cash=1000", "credit_3=2000"]
    assert args.foreign_amount == ["cash=10"]
    assert args.rate == "1100"
    assert args.notes == "Sofá"


def test_register_sale_command_defaults():
    parser = _parser_for(cli.register_sale_command)

    args = parser.parse_args(["sale"])

    assert args.sale_date is None
    assert args.amount == []
    assert args.foreign_amount == []
    assert args.rate is None


def test_register_sale_command_rejects_invalid_date():
    parser = _parser_for(cli.register_sale_command)

    with pytest.raises(SystemExit):
        parser.parse_args(["sale", "--date", "15/03/2025"])


def test_register_delete_sale_command_requires_id():
    parser = _parser_for(cli.register_delete_sale_command)

    assert parser.parse_args(["delete-sale", "--sale-id", "S-1"]).sale_id == "S-1"
    with pytest.raises(SystemExit):
        parser.parse_args(["delete-sale"])


def test_register_config_commands_configure_arguments():
    commissions = _parser_for(cli.register_set_commissions_command)
    partners = _parser_for(cli.register_set_partners_command)
    expenses = _parser_for(cli.register_set_expenses_command)
    rate = _parser_for(cli.register_set_rate_command)

    assert commissions.parse_args(["set-commissions", "--rate", "credit_3=18"]).rate == ["credit_3=18"]
    assert partners.parse_args(["set-partners", "--share", "principal=50"]).share == ["principal=50"]
    assert expenses.parse_args(["set-expenses"]).expense == []
    assert rate.parse_args(["set-rate", "--rate", "1200"]).rate == "1200"


def test_register_import_legacy_command_parses_path():
    parser = _parser_for(cli.register_import_legacy_command)

    args = parser.parse_args(["import-legacy", "--file", "ventas.json"])

    assert args.file == Path("ventas.json")


def test_register_read_commands_configure_arguments():
    dashboard = _parser_for(cli.register_dashboard_command)
    history = _parser_for(cli.register_history_command)
    months = _parser_for(cli.register_months_command)
    monthly = _parser_for(cli.register_monthly_command)

    assert dashboard.parse_args(["dashboard", "--today", "2025-03-01"]).today == date(2025, 3, 1)
    assert history.parse_args(["history", "--month", "2025-02"]).month == "2025-02"
    assert months.parse_args(["months"]).today is None
    assert monthly.parse_args(["monthly"]).command == "monthly"


# ---------------------------------------------------------------------------
# Runtime context and dispatch helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_uses_provided_path(config_file, monkeypatch):
    sentinel_context = object()
    checks = []

    def fake_loader(path: Path | None) -> object:
        assert path == config_file
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    monkeypatch.setattr(core_logic, "ensure_schema_version", lambda ctx: checks.append("schema"))
    monkeypatch.setattr(core_logic, "ensure_workbook_layout", lambda ctx: checks.append("layout"))

    assert cli.load_runtime_context(config_file) is sentinel_context
    assert checks == ["schema", "layout"]


def test_load_runtime_context_supports_defaults(monkeypatch, tmp_path):
    """Without --config the lookup is left to the data layer's upward search."""

    sentinel_context = object()

    def fake_loader(path: Path | None) -> object:
        assert path is None
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    monkeypatch.setattr(core_logic, "ensure_schema_version", lambda ctx: None)
    monkeypatch.setattr(core_logic, "ensure_workbook_layout", lambda ctx: None)
    monkeypatch.chdir(tmp_path)
    assert cli.load_runtime_context() is sentinel_context


def test_main_finds_config_in_parent_directory(config_file, monkeypatch, capsys):
    nested = config_file.parent / "reports" / "march"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert cli.main(["months", "--today", "2025-03-15"]) == 0
    assert "2025-03" in capsys.readouterr().out


def test_dispatch_command_invokes_executor(runtime_context):
    called = {}

    def executor(context, args):
        called["context"] = context
        return 0

    table = {"alpha": cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), executor)}

    assert cli.dispatch_command(runtime_context, argparse.Namespace(command="alpha"), table) == 0
    assert called["context"] is runtime_context


def test_dispatch_command_handles_unknown_commands(runtime_context):
    with pytest.raises(KeyError):
        cli.dispatch_command(runtime_context, argparse.Namespace(command="unknown"), {})


def test_build_command_table_indexes_specs(command_spec_iterable):
    table = cli.build_command_table(command_spec_iterable)
    assert set(table) == {spec.name for spec in command_spec_iterable}


def test_build_command_table_detects_duplicate_commands():
    specs = [
        cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), lambda c, a: 0),
        cli.CommandSpec("alpha", "Duplicate", lambda s: s.add_parser("alpha"), lambda c, a: 0),
    ]
    with pytest.raises(ValueError):
        cli.build_command_table(specs)


# ---------------------------------------------------------------------------
# Formatting and translation helpers
# ---------------------------------------------------------------------------


def test_parse_pairs_keeps_order_and_strips():
    assert cli.parse_pairs([" cash = 1000 ", "debit=5,5"]) == [("cash", "1000"), ("debit", "5,5")]


@pytest.mark.parametrize("raw", ["cash", "=100"])
def test_parse_pairs_rejects_malformed_entries(raw):
    with pytest.raises(ValueError):
        cli.parse_pairs([raw])


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (Decimal("1234567"), "$ 1.234.567"),
        (Decimal("999.5"), "$ 1.000"),
        (Decimal("0"), "$ 0"),
        (Decimal("-500"), "-$ 500"),
        (Decimal("-7349000.4"), "-$ 7.349.000"),
        (Decimal("1e30"), "$ 1." + ".".join(["000"] * 10)),
        (Decimal("12345678901234567890123456789.6"), "$ 12.345.678.901.234.567.890.123.456.790"),
    ],
)
def test_format_currency_uses_dot_thousands(value, expected):
    assert cli.format_currency(value) == expected


def test_describe_sale_lists_methods(make_sale):
    sale = make_sale(amounts={PaymentMethod.CASH: "1500"}, amounts_foreign={PaymentMethod.CASH: "10"})

    assert cli.describe_sale(sale) == "Efectivo: $ 1.500, Efectivo USD: 10"


def test_translate_sale_returns_sale_command():
    args = argparse.Namespace(
        sale_date=date(2025, 3, 15),
        amount=["cash=1000", "credit_3=500"],
        foreign_amount=["cash=5"],
        notes="Mesa",
        rate="1100",
    )

    command = cli.translate_sale(args)

    assert command == core_logic.SaleCommand(
        sale_date=date(2025, 3, 15),
        amounts={"cash": "1000", "credit_3": "500"},
        amounts_foreign={"cash": "5"},
        notes="Mesa",
        exchange_rate="1100",
    )


def test_translate_sale_defaults_to_today():
    args = argparse.Namespace(sale_date=None, amount=[], foreign_amount=[], notes=None, rate=None)

    assert cli.translate_sale(args).sale_date == date.today()


def test_translate_config_commands():
    commissions = cli.translate_set_commissions(argparse.Namespace(rate=["credit_3=18"]))
    partners = cli.translate_set_partners(argparse.Namespace(share=["principal=50"]))
    expenses = cli.translate_set_expenses(argparse.Namespace(expense=["Luz=400000", "Luz=1"]))
    rate = cli.translate_set_rate(argparse.Namespace(rate="1200"))

    assert commissions == core_logic.UpdateConfigCommand(ConfigSection.COMMISSIONS, {"credit_3": "18"})
    assert partners == core_logic.UpdateConfigCommand(ConfigSection.PARTNERS, {"principal": "50"})
    # Expenses keep duplicates; they are a list, not a mapping.
    assert expenses.values == [("Luz", "400000"), ("Luz", "1")]
    assert rate == core_logic.UpdateConfigCommand(ConfigSection.EXCHANGE_RATE, "1200")


# ---------------------------------------------------------------------------
# Executors against a real workbook
# ---------------------------------------------------------------------------


def test_run_sale_registers_and_prints_totals(runtime_context, capsys):
    args = argparse.Namespace(
        sale_date=date(2025, 3, 15),
        amount=["credit_12=2000"],
        foreign_amount=[],
        notes=None,
        rate=None,
    )

    assert cli.run_sale(runtime_context, args) == 0

    output = capsys.readouterr().out
    assert "Gross $ 2.000 | Net $ 1.000" in output
    assert "Day total $ 2.000" in output
    assert len(core_logic.list_sales(runtime_context)) == 1


def test_run_delete_sale_removes_sale(runtime_context, capsys):
    sale = core_logic.register_sale(
        runtime_context,
        core_logic.SaleCommand(sale_date=date(2025, 3, 15), amounts={"cash": "10"}),
    )

    assert cli.run_delete_sale(runtime_context, argparse.Namespace(sale_id=sale.sale_id)) == 0
    assert core_logic.list_sales(runtime_context) == []
    assert sale.sale_id in capsys.readouterr().out


def test_run_set_partners_notes_unbalanced_shares(runtime_context, capsys):
    cli.run_set_partners(runtime_context, argparse.Namespace(share=["principal=50"]))

    output = capsys.readouterr().out
    assert "Partner shares saved" in output
    assert "90%" in output


def test_run_set_rate_reports_new_rate(runtime_context, capsys):
    cli.run_set_rate(runtime_context, argparse.Namespace(rate="1250"))

    assert "1 USD = 1250 ARS" in capsys.readouterr().out
    assert core_logic.get_config(runtime_context).exchange_rate == Decimal("1250")


def test_run_dashboard_prints_month_summary(runtime_context, capsys):
    core_logic.register_sale(
        runtime_context,
        core_logic.SaleCommand(sale_date=date(2025, 3, 2), amounts={"transfer": "10000000"}),
    )

    cli.run_dashboard(runtime_context, argparse.Namespace(today=date(2025, 3, 10)))

    output = capsys.readouterr().out
    assert "Marzo 2025" in output
    assert "Ganancia     $ 2.650.000" in output
    assert "Socio Principal (60%): $ 1.590.000" in output
    assert "Hoy 2025-03-10: 0 ventas, $ 0" in output


def test_run_history_groups_by_day(runtime_context, capsys):
    for day, amount in ((1, "100"), (3, "200"), (3, "300")):
        core_logic.register_sale(
            runtime_context,
            core_logic.SaleCommand(sale_date=date(2025, 3, day), amounts={"cash": amount}),
        )

    cli.run_history(runtime_context, argparse.Namespace(month="2025-03"))

    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == "Marzo 2025: 3 ventas"
    day_lines = [line for line in lines if not line.startswith(" ") and "Total" in line]
    assert day_lines == ["2025-03-03  Total: $ 500", "2025-03-01  Total: $ 100"]


def test_run_history_without_sales(runtime_context, capsys):
    cli.run_history(runtime_context, argparse.Namespace(month="2024-01"))

    assert "No hay ventas en este mes" in capsys.readouterr().out


def test_run_months_includes_current_month(runtime_context, capsys):
    cli.run_months(runtime_context, argparse.Namespace(today=date(2025, 4, 2)))

    assert capsys.readouterr().out.strip() == "2025-04  Abril 2025"


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (core_logic.BusinessRuleViolation("invalid"), 2),
        (core_logic.EmptySaleError("empty"), 2),
        (FileNotFoundError("missing"), 3),
        (core_logic.PersistenceError("locked"), 4),
        (ValueError("bad value"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    caplog.set_level("ERROR")
    exit_code = cli.handle_cli_error(error)
    assert exit_code == expected
    assert caplog.records


def test_handle_cli_error_suggests_retry_on_persistence_errors(caplog: pytest.LogCaptureFixture):
    caplog.set_level("ERROR")
    cli.handle_cli_error(core_logic.PersistenceError("workbook locked"))
    assert any("retry" in record.getMessage() for record in caplog.records)


# ---------------------------------------------------------------------------
# Program entry point
# ---------------------------------------------------------------------------


def test_main_persists_mutating_commands(monkeypatch, runtime_context):
    parser = _stub_parser(command="sale")
    command_table = {"sale": cli.CommandSpec("sale", "help", lambda _: parser, lambda *_: 0, mutates=True)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)

    persisted = {}
    monkeypatch.setattr(core_logic, "persist_context", lambda ctx: persisted.setdefault("context", ctx))

    assert cli.main(["sale"]) == 0
    assert persisted["context"] is runtime_context


def test_main_skips_persist_for_read_commands(monkeypatch, runtime_context):
    parser = _stub_parser(command="monthly")
    command_table = {"monthly": cli.CommandSpec("monthly", "help", lambda _: parser, lambda *_: 0)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)
    monkeypatch.setattr(
        core_logic,
        "persist_context",
        lambda _: (_ for _ in ()).throw(AssertionError("should not persist")),
    )

    assert cli.main(["monthly"]) == 0


def test_main_handles_bll_errors(monkeypatch, runtime_context):
    parser = _stub_parser(command="sale")
    command_table = {"sale": cli.CommandSpec("sale", "help", lambda _: parser, lambda *_: 0, mutates=True)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)

    def fake_dispatch(*_: object) -> int:
        raise core_logic.EmptySaleError("empty")

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)
    monkeypatch.setattr(
        core_logic,
        "persist_context",
        lambda _: (_ for _ in ()).throw(AssertionError("should not persist")),
    )

    assert cli.main(["sale"]) == 2


def test_main_end_to_end_registers_sale(config_file, capsys):
    exit_code = cli.main(
        [
            "--config",
            str(config_file),
            "sale",
            "--date",
            "2025-03-15",
            "--amount",
            "cash=1500",
            "--foreign-amount",
            "cash=2",
        ]
    )

    assert exit_code == 0
    assert "Registered sale" in capsys.readouterr().out
    reloaded = cli.load_runtime_context(config_file)
    (sale,) = core_logic.list_sales(reloaded)
    assert sale.amounts == {PaymentMethod.CASH: Decimal("1500")}
    assert sale.amounts_foreign == {PaymentMethod.CASH: Decimal("2")}
    assert sale.exchange_rate == Decimal("1000")


def test_main_end_to_end_rejects_empty_sale(config_file):
    exit_code = cli.main(["--config", str(config_file), "sale", "--amount", "cash=0"])

    assert exit_code == 2
    reloaded = cli.load_runtime_context(config_file)
    assert core_logic.list_sales(reloaded) == []


def test_main_end_to_end_import_legacy(config_file, tmp_path, capsys):
    export = tmp_path / "ventas.json"
    export.write_text(
        json.dumps(
            [
                {"date": "2025-01-05", "amounts": {"efectivo": 1000}, "amountsUSD": {}, "usdRate": 950},
                {"date": "2025-01-06", "amounts": {}},
            ]
        ),
        encoding="utf-8",
    )

    exit_code = cli.main(["--config", str(config_file), "import-legacy", "--file", str(export)])

    assert exit_code == 0
    assert "Imported 1 of 2 legacy sales" in capsys.readouterr().out
    workbook = data_manager.open_workbook(data_manager.parse_settings(
        data_manager.read_config(config_file), base_path=config_file.parent
    ).data_file)
    (sale,) = data_manager.iter_sales(workbook)
    assert sale.exchange_rate == Decimal("950")


def test_main_import_legacy_twice_is_refused(config_file, tmp_path):
    export = tmp_path / "ventas.json"
    export.write_text(json.dumps([{"date": "2025-03-01", "amounts": {"efectivo": 1000}}]), encoding="utf-8")
    command = ["--config", str(config_file), "import-legacy", "--file", str(export)]

    assert cli.main(command) == 0
    assert cli.main(command) == 2

    reloaded = cli.load_runtime_context(config_file)
    assert len(core_logic.list_sales(reloaded)) == 1


def test_main_reports_survive_oversized_legacy_amount(config_file, tmp_path, capsys):
    export = tmp_path / "ventas.json"
    export.write_text(
        json.dumps(
            [
                {"date": "2025-03-01", "amounts": {"efectivo": 1e30}},
                {"date": "2025-03-02", "amounts": {"efectivo": 2000}},
            ]
        ),
        encoding="utf-8",
    )

    assert cli.main(["--config", str(config_file), "import-legacy", "--file", str(export)]) == 0
    assert "Imported 1 of 2 legacy sales" in capsys.readouterr().out
    assert cli.main(["--config", str(config_file), "dashboard", "--today", "2025-03-15"]) == 0
    assert cli.main(["--config", str(config_file), "history", "--month", "2025-03"]) == 0
    assert "$ 2.000" in capsys.readouterr().out


def test_main_missing_config_returns_file_not_found_code(tmp_path):
    assert cli.main(["--config", str(tmp_path / "absent.ini"), "monthly"]) == 3


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _parser_for(factory) -> argparse.ArgumentParser:
    """Build a parser holding only the sub-command produced by ``factory``."""

    parser = argparse.ArgumentParser(prog="test")
    subparsers = parser.add_subparsers(dest="command")
    spec = factory(subparsers)
    spec.register(subparsers)
    return parser


def _stub_parser(command: str) -> argparse.ArgumentParser:
    """Create a stub parser that always returns the supplied command."""

    class _Stub(argparse.ArgumentParser):
        def parse_args(self, args: Iterable[str] | None = None, namespace: argparse.Namespace | None = None):  # type: ignore[override]
            return argparse.Namespace(command=command, config=None)

    return _Stub(prog="test")


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    """Return the set of registered sub-command names for assertion helpers."""

    actions = getattr(parser, "_subparsers", None)
    if not actions:
        return set()
    group_actions = actions._group_actions  # type: ignore[attr-defined]
    if not group_actions:
        return set()
    return set(group_actions[0].choices)  # type: ignore[index]
