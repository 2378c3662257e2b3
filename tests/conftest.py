"""Shared pytest fixtures and utilities for the sales ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Mapping, Optional
from unittest.mock import Mock

import pytest

# Ensure the source package is importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from sales_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from sales_ledger.constants import PaymentMethod  # noqa: E402
from sales_ledger.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "ShopName = {shop_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Locale]\n"
    "LocalCurrency = ARS\n"
    "ForeignCurrency = USD\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    shop_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized ledger workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "ledger_workbook.xlsx",
        config: Optional[data_manager.LedgerConfig] = None,
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, config=config, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh ledger workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        shop_name: str = "Test Shop",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        config: Optional[data_manager.LedgerConfig] = None,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}", config=config)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                shop_name=shop_name,
                schema_version=schema_version,
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            shop_name=shop_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    core_logic.ensure_workbook_layout(context)
    return context


# ---------------------------------------------------------------------------
# Domain builders
# ---------------------------------------------------------------------------


def build_config(
    *,
    rates: Optional[Mapping[PaymentMethod, str]] = None,
    partners: Optional[Mapping[str, str]] = None,
    expenses: Optional[Mapping[str, str]] = None,
    exchange_rate: str = "1000",
) -> data_manager.LedgerConfig:
    """Build a :class:`LedgerConfig` from compact string literals."""

    return data_manager.LedgerConfig(
        commission_rates={method: Decimal(value) for method, value in (rates or {}).items()},
        partners=tuple(
            data_manager.Partner(partner_id, partner_id.title(), Decimal(value))
            for partner_id, value in (partners or {}).items()
        ),
        fixed_expenses=tuple(
            data_manager.FixedExpense(name.lower(), name, Decimal(value))
            for name, value in (expenses or {}).items()
        ),
        exchange_rate=Decimal(exchange_rate),
    )


@pytest.fixture
def config_builder() -> Callable[..., data_manager.LedgerConfig]:
    """Expose :func:`build_config` to tests."""

    return build_config


@pytest.fixture
def ledger_config() -> data_manager.LedgerConfig:
    """Return the default shop configuration."""

    return data_manager.default_ledger_config()


@pytest.fixture
def make_sale() -> Callable[..., data_manager.SaleRow]:
    """Factory producing sale rows with sensible defaults."""

    counter = {"next": 0}

    def _make(
        sale_date: date = date(2025, 3, 15),
        amounts: Optional[Mapping[PaymentMethod, str]] = None,
        amounts_foreign: Optional[Mapping[PaymentMethod, str]] = None,
        exchange_rate: Optional[str] = "1000",
        notes: Optional[str] = None,
    ) -> data_manager.SaleRow:
        counter["next"] += 1
        return data_manager.SaleRow(
            sale_id=f"S-{counter['next']:04d}",
            sale_date=sale_date,
            amounts={method: Decimal(value) for method, value in (amounts or {}).items()},
            amounts_foreign={method: Decimal(value) for method, value in (amounts_foreign or {}).items()},
            exchange_rate=Decimal(exchange_rate) if exchange_rate is not None else None,
            notes=notes,
            created_at_iso=f"2025-03-15T10:00:{counter['next']:02d}+00:00",
        )

    return _make


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="ledger-cli", description="Ledger CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "ledger_workbook.xlsx",
        shop_name="Test Shop",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
