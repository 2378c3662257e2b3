"""Data access layer for the sales ledger.

This module provides low-level helpers that read from and write to the
ledger workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading sales and the shop configuration, appending or
   deleting sales, and rewriting the configuration sheets as one record.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DEFAULT_COMMISSION_RATES,
    DEFAULT_EXCHANGE_RATE,
    DEFAULT_EXPENSES,
    DEFAULT_PARTNERS,
    FOREIGN_CURRENCY_METHODS,
    PaymentMethod,
    SheetName,
)


CONFIG_FILE_NAME = "config.ini"
SALES_SHEET = SheetName.SALES.value
COMMISSIONS_SHEET = SheetName.COMMISSIONS.value
PARTNERS_SHEET = SheetName.PARTNERS.value
EXPENSES_SHEET = SheetName.EXPENSES.value
SETTINGS_SHEET = SheetName.SETTINGS.value

SETTING_EXCHANGE_RATE = "ExchangeRate"
SETTING_UPDATED_AT = "UpdatedAt"
SETTING_LEGACY_IMPORTED_AT = "LegacyImportedAt"

AMOUNT_COLUMN_PREFIX = "Amount:"
FOREIGN_AMOUNT_COLUMN_PREFIX = "ForeignAmount:"

SALE_BASE_COLUMNS: Tuple[str, ...] = ("SaleID", "Date", "ExchangeRate", "Notes", "CreatedAt")
SALE_AMOUNT_COLUMNS: Tuple[str, ...] = tuple(
    f"{AMOUNT_COLUMN_PREFIX}{method.value}" for method in PaymentMethod
)
SALE_FOREIGN_AMOUNT_COLUMNS: Tuple[str, ...] = tuple(
    f"{FOREIGN_AMOUNT_COLUMN_PREFIX}{method.value}" for method in FOREIGN_CURRENCY_METHODS
)

# Flat record layout per entity, one worksheet each.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SALES_SHEET: SALE_BASE_COLUMNS + SALE_AMOUNT_COLUMNS + SALE_FOREIGN_AMOUNT_COLUMNS,
    COMMISSIONS_SHEET: ("Method", "Rate"),
    PARTNERS_SHEET: ("PartnerID", "PartnerName", "Percentage"),
    EXPENSES_SHEET: ("ExpenseID", "ExpenseName", "Amount"),
    SETTINGS_SHEET: ("Key", "Value"),
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    local_currency: str = "ARS"
    foreign_currency: str = "USD"


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` sheet.

    ``amounts`` and ``amounts_foreign`` only carry nonzero entries. The
    ``exchange_rate`` is the snapshot taken when the sale was registered and
    is never recomputed from the current configuration.
    """

    sale_id: str
    sale_date: date
    amounts: Mapping[PaymentMethod, Decimal]
    amounts_foreign: Mapping[PaymentMethod, Decimal] = field(default_factory=dict)
    exchange_rate: Optional[Decimal] = None
    notes: Optional[str] = None
    created_at_iso: str = ""

    def __post_init__(self) -> None:
        # Copy caller mappings so later mutation cannot leak into the record.
        object.__setattr__(self, "amounts", dict(self.amounts))
        object.__setattr__(self, "amounts_foreign", dict(self.amounts_foreign))


@dataclass(frozen=True)
class Partner:
    """One profit-sharing partner and the percentage of profit they receive."""

    partner_id: str
    name: str
    percentage: Decimal


@dataclass(frozen=True)
class FixedExpense:
    """A recurring expense deducted from net sales for the period."""

    expense_id: str
    name: str
    amount: Decimal


@dataclass(frozen=True)
class LedgerConfig:
    """Shop-wide configuration stored across the configuration sheets.

    Partner percentages are expected to add up to 100 but nothing enforces
    it; a drifting total is a data-quality state, not an error.
    """

    commission_rates: Mapping[PaymentMethod, Decimal]
    partners: Tuple[Partner, ...]
    fixed_expenses: Tuple[FixedExpense, ...]
    exchange_rate: Decimal

    def __post_init__(self) -> None:
        object.__setattr__(self, "commission_rates", dict(self.commission_rates))
        object.__setattr__(self, "partners", tuple(self.partners))
        object.__setattr__(self, "fixed_expenses", tuple(self.fixed_expenses))

    def commission_rate(self, method: PaymentMethod) -> Decimal:
        """Return the commission percentage for ``method`` (``0`` when unset)."""

        return self.commission_rates.get(method, Decimal("0"))


def default_ledger_config() -> LedgerConfig:
    """Build the configuration a freshly created workbook is seeded with."""

    return LedgerConfig(
        commission_rates=dict(DEFAULT_COMMISSION_RATES),
        partners=tuple(Partner(pid, name, pct) for pid, name, pct in DEFAULT_PARTNERS),
        fixed_expenses=tuple(FixedExpense(eid, name, amount) for eid, name, amount in DEFAULT_EXPENSES),
        exchange_rate=DEFAULT_EXCHANGE_RATE,
    )


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = Path(config_path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def resolve_data_file(raw: str, base_path: Optional[Path] = None) -> Path:
    """Turn a ``DataFile`` entry into an absolute path.

    Relative entries are anchored to ``base_path``, or the current working
    directory when it is omitted.
    """

    path = Path(raw).expanduser()
    if path.is_absolute():
        return path
    return ((base_path if base_path is not None else Path.cwd()) / path).resolve()


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. The ``[Locale]`` section is optional
    and falls back to pesos and dollars. Relative ``DataFile`` entries are
    anchored to ``base_path`` (or the current working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve a relative
            ``DataFile``.

    Returns:
        ConfigSettings: Immutable settings with an absolute data file path.

    Raises:
        KeyError: If one of the required sections or options is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    local_currency = parser.get("Locale", "LocalCurrency", fallback="ARS")
    foreign_currency = parser.get("Locale", "ForeignCurrency", fallback="USD")

    return ConfigSettings(
        data_file=resolve_data_file(data_file_raw, base_path),
        shop_name=shop_name,
        schema_version=schema_version,
        local_currency=local_currency,
        foreign_currency=foreign_currency,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def missing_sheets(workbook: Workbook) -> List[str]:
    """Return the managed sheet names that ``workbook`` lacks, in schema order."""

    present = set(workbook.sheetnames)
    return [name for name in SHEET_COLUMNS if name not in present]


def _header_map(sheet: Any) -> Dict[str, int]:
    """Map header titles of ``sheet`` to their 1-based column index."""

    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}


def _iter_records(sheet: Any) -> Iterable[Dict[str, object]]:
    """Yield each non-empty data row as a ``{header: value}`` dictionary."""

    headers = [cell.value for cell in sheet[1]]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield {header: value for header, value in zip(headers, raw) if header is not None}


def _to_decimal(raw: object, default: Decimal = Decimal("0")) -> Decimal:
    """Read a worksheet cell as :class:`~decimal.Decimal`, ``default`` if blank."""

    if raw is None or raw == "":
        return default
    try:
        return Decimal(str(raw))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid numeric cell value: {raw!r}") from exc


def _to_date(raw: object) -> date:
    """Read a worksheet cell as a calendar date.

    Dates are written as ISO strings, but a workbook edited by hand may hold
    real Excel dates, which ``openpyxl`` returns as ``datetime`` objects.
    """

    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(str(raw).strip()[:10])


def iter_sales(workbook: Workbook) -> Iterable[SaleRow]:
    """Stream sale records from the ``Sales`` worksheet in sheet order.

    The generator skips the header row and fully empty rows. Columns are
    matched by header title so the amount columns can follow the payment
    method enumeration.

    Args:
        workbook (Workbook): Workbook containing the sales sheet.

    Yields:
        SaleRow: Normalized sale for each populated row.
    """

    for record in _iter_records(workbook[SALES_SHEET]):
        yield deserialize_sale(record)


def append_sale(workbook: Workbook, record: SaleRow) -> None:
    """Append a sale record to the ``Sales`` worksheet.

    Values are laid out following the sheet's own header row, so a workbook
    whose columns were reordered by hand still receives correct data.
    """

    sheet = workbook[SALES_SHEET]
    values = serialize_sale(record)
    header_map = _header_map(sheet)
    unknown = [column for column in values if column not in header_map]
    if unknown:
        raise KeyError(f"Unknown sales column: {unknown[0]}")
    row_index = sheet.max_row + 1
    for column, value in values.items():
        sheet.cell(row=row_index, column=header_map[column], value=value)


def delete_sale_row(workbook: Workbook, sale_id: str) -> None:
    """Remove the row whose ``SaleID`` equals ``sale_id``.

    Raises:
        KeyError: If no sale with ``sale_id`` exists.
    """

    row_index = locate_row(workbook, SALES_SHEET, "SaleID", sale_id)
    if row_index is None:
        raise KeyError(f"Sale not found: {sale_id}")
    workbook[SALES_SHEET].delete_rows(row_index)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def read_ledger_config(workbook: Workbook) -> LedgerConfig:
    """Assemble the :class:`LedgerConfig` from the configuration sheets.

    Every payment method gets a rate: methods without a ``Commissions`` row
    read as zero. A missing ``ExchangeRate`` setting falls back to
    :data:`~sales_ledger.constants.DEFAULT_EXCHANGE_RATE`.
    """

    rates: Dict[PaymentMethod, Decimal] = {method: Decimal("0") for method in PaymentMethod}
    for record in _iter_records(workbook[COMMISSIONS_SHEET]):
        method_raw = str(record.get("Method", "")).strip()
        try:
            method = PaymentMethod(method_raw)
        except ValueError:
            log.warning("Ignoring commission row for unknown payment method '%s'", method_raw)
            continue
        rates[method] = _to_decimal(record.get("Rate"))

    partners = tuple(deserialize_partner(record) for record in _iter_records(workbook[PARTNERS_SHEET]))
    expenses = tuple(deserialize_expense(record) for record in _iter_records(workbook[EXPENSES_SHEET]))

    settings = read_settings(workbook)
    exchange_rate = _to_decimal(settings.get(SETTING_EXCHANGE_RATE), DEFAULT_EXCHANGE_RATE)

    return LedgerConfig(
        commission_rates=rates,
        partners=partners,
        fixed_expenses=expenses,
        exchange_rate=exchange_rate,
    )


def write_ledger_config(workbook: Workbook, config: LedgerConfig, *, updated_at: str) -> None:
    """Rewrite every configuration sheet from ``config``.

    All sections are written together so the stored configuration always
    reflects a single consistent record, whichever section was edited.
    Unrelated ``Settings`` keys are kept.
    """

    _replace_rows(
        workbook[COMMISSIONS_SHEET],
        [[method.value, config.commission_rate(method)] for method in PaymentMethod],
    )
    _replace_rows(workbook[PARTNERS_SHEET], [serialize_partner(partner) for partner in config.partners])
    _replace_rows(workbook[EXPENSES_SHEET], [serialize_expense(expense) for expense in config.fixed_expenses])
    settings = read_settings(workbook)
    settings[SETTING_EXCHANGE_RATE] = config.exchange_rate
    settings[SETTING_UPDATED_AT] = updated_at
    _replace_rows(workbook[SETTINGS_SHEET], [[key, value] for key, value in settings.items()])


def read_settings(workbook: Workbook) -> Dict[str, object]:
    """Return the ``Settings`` sheet as an ordered ``{key: value}`` mapping."""

    return {
        str(record.get("Key")): record.get("Value")
        for record in _iter_records(workbook[SETTINGS_SHEET])
        if record.get("Key") is not None
    }


def write_setting(workbook: Workbook, key: str, value: object) -> None:
    """Store a single ``Settings`` entry, replacing any previous value."""

    sheet = workbook[SETTINGS_SHEET]
    row_idx = locate_row(workbook, SETTINGS_SHEET, "Key", key)
    if row_idx is None:
        sheet.append([key, value])
        return
    sheet.cell(row=row_idx, column=_header_map(sheet)["Value"], value=value)


def _replace_rows(sheet: Any, rows: Iterable[Sequence[object]]) -> None:
    """Overwrite the data rows of ``sheet`` with ``rows`` and drop any leftovers."""

    previous_max = sheet.max_row
    next_row = 2
    for row in rows:
        for column, value in enumerate(row, start=1):
            sheet.cell(row=next_row, column=column, value=value)
        next_row += 1
    if previous_max >= next_row:
        sheet.delete_rows(next_row, previous_max - next_row + 1)


def serialize_sale(record: SaleRow) -> Dict[str, object]:
    """Convert a sale into ``{column: value}`` pairs for the sales sheet.

    Dates are stored as ISO strings; amounts for methods the sale does not
    use are left blank.
    """

    values: Dict[str, object] = {
        "SaleID": record.sale_id,
        "Date": record.sale_date.isoformat(),
        "ExchangeRate": record.exchange_rate,
        "Notes": record.notes,
        "CreatedAt": record.created_at_iso,
    }
    for method in PaymentMethod:
        values[f"{AMOUNT_COLUMN_PREFIX}{method.value}"] = record.amounts.get(method)
    for method in FOREIGN_CURRENCY_METHODS:
        values[f"{FOREIGN_AMOUNT_COLUMN_PREFIX}{method.value}"] = record.amounts_foreign.get(method)
    return values


def deserialize_sale(raw: Mapping[str, object]) -> SaleRow:
    """Convert a ``{header: value}`` row into a :class:`SaleRow`.

    Blank and zero amount cells are dropped so the resulting mappings only
    carry the payment methods the sale actually used.
    """

    amounts: Dict[PaymentMethod, Decimal] = {}
    amounts_foreign: Dict[PaymentMethod, Decimal] = {}
    for method in PaymentMethod:
        value = _to_decimal(raw.get(f"{AMOUNT_COLUMN_PREFIX}{method.value}"))
        if value != 0:
            amounts[method] = value
        foreign = _to_decimal(raw.get(f"{FOREIGN_AMOUNT_COLUMN_PREFIX}{method.value}"))
        if foreign != 0:
            amounts_foreign[method] = foreign

    rate_raw = raw.get("ExchangeRate")
    notes = raw.get("Notes")
    created_at = raw.get("CreatedAt")
    return SaleRow(
        sale_id=str(raw.get("SaleID")),
        sale_date=_to_date(raw.get("Date")),
        amounts=amounts,
        amounts_foreign=amounts_foreign,
        exchange_rate=_to_decimal(rate_raw) if rate_raw not in (None, "") else None,
        notes=str(notes) if notes not in (None, "") else None,
        created_at_iso=str(created_at) if created_at is not None else "",
    )


def serialize_partner(record: Partner) -> List[object]:
    """Return ``[PartnerID, PartnerName, Percentage]`` for the partners sheet."""

    return [record.partner_id, record.name, record.percentage]


def deserialize_partner(raw: Mapping[str, object]) -> Partner:
    return Partner(
        partner_id=str(raw.get("PartnerID")),
        name=str(raw.get("PartnerName") or ""),
        percentage=_to_decimal(raw.get("Percentage")),
    )


def serialize_expense(record: FixedExpense) -> List[object]:
    """Return ``[ExpenseID, ExpenseName, Amount]`` for the expenses sheet."""

    return [record.expense_id, record.name, record.amount]


def deserialize_expense(raw: Mapping[str, object]) -> FixedExpense:
    return FixedExpense(
        expense_id=str(raw.get("ExpenseID")),
        name=str(raw.get("ExpenseName") or ""),
        amount=_to_decimal(raw.get("Amount")),
    )


def read_legacy_sales(path: Path) -> List[Dict[str, Any]]:
    """Load the JSON array of sales exported by the browser-only ledger.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ValueError: If the file is not a JSON array of objects.
    """

    path = Path(path).expanduser().resolve()
    if not path.exists():
        raise FileNotFoundError(f"Legacy export not found: {path}")

    with path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)

    if not isinstance(payload, list) or not all(isinstance(item, dict) for item in payload):
        raise ValueError(f"Legacy export must be a JSON array of sale objects: {path}")
    return payload
