"""Business logic layer for the sales ledger.

This module owns the stateful side of the application: the runtime context
holding the shop configuration and the sale collection, and the use cases
that change them (registering and deleting sales, saving configuration
sections, importing legacy data). All reads and writes go through the Data
Access Layer (DAL); the arithmetic is delegated to the pure
:mod:`~sales_ledger.engine` and :mod:`~sales_ledger.reporting` modules.
"""

from __future__ import annotations

import uuid
import zipfile
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook import Workbook

from . import data_manager, engine, log, reporting
from .constants import (
    DEFAULT_EXCHANGE_RATE,
    EXPECTED_SCHEMA_VERSION,
    FOREIGN_CURRENCY_METHODS,
    LEGACY_PAYMENT_KEYS,
    MAX_AMOUNT,
    ConfigSection,
    PaymentMethod,
)


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced sale or partner is unknown."""


class EmptySaleError(BusinessRuleViolation):
    """Raised when a sale submission carries no nonzero amount."""


class PersistenceError(Exception):
    """Raised when the workbook cannot be opened, read, or saved.

    These failures are recoverable from the user's point of view: nothing
    was written, and the same action can simply be retried.
    """


_WORKBOOK_ERRORS = (OSError, InvalidFileException, zipfile.BadZipFile)

RawAmounts = Mapping[Union[str, PaymentMethod], object]


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class SaleCommand:
    """User intent for registering a sale.

    Amounts are raw form values keyed by payment method; they are coerced
    with :func:`parse_amount` when the command is executed.
    """

    sale_date: date
    amounts: RawAmounts = field(default_factory=dict)
    amounts_foreign: RawAmounts = field(default_factory=dict)
    notes: Optional[str] = None
    exchange_rate: Optional[object] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class UpdateConfigCommand:
    """User intent for saving one section of the configuration.

    The shape of ``values`` depends on ``section``:

    * ``COMMISSIONS``: mapping of payment method to percentage.
    * ``PARTNERS``: mapping of partner id to percentage.
    * ``EXPENSES``: sequence of ``(name, amount)`` pairs replacing the list.
    * ``EXCHANGE_RATE``: a single rate value.
    """

    section: ConfigSection
    values: Any
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class Dashboard:
    """Month-to-date and same-day figures for the reference date."""

    today: date
    month_key: str
    month_label: str
    month: engine.PeriodSummary
    month_sale_count: int
    today_totals: engine.SaleTotals
    today_sale_count: int


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or, when ``None``, the current UTC datetime."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return the mutable cache bucket named ``name``, creating it on demand."""

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Missing buckets are ignored so callers can invalidate without checking.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_config_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the configuration bucket on demand.

    Returns:
        dict[str, Any]: Bucket holding the ``current`` :class:`LedgerConfig`.

    Raises:
        PersistenceError: If the configuration sheets cannot be read.
    """

    bucket = _get_cache_bucket(context, "config")
    if "current" not in bucket:
        try:
            bucket["current"] = data_manager.read_ledger_config(context.workbook)
        except (KeyError, ValueError) as exc:
            log.error("Unable to read configuration from workbook: %s", exc)
            raise PersistenceError(f"Unable to read configuration: {exc}") from exc
        log.debug("Populated config cache")
    return bucket


def _ensure_sales_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the sales bucket on demand.

    Sales are kept most recent first: by business date, then by creation
    timestamp. The bucket also exposes a ``by_id`` lookup.

    Raises:
        PersistenceError: If the sales sheet cannot be read.
    """

    bucket = _get_cache_bucket(context, "sales")
    if "all" not in bucket:
        try:
            loaded = list(data_manager.iter_sales(context.workbook))
        except (KeyError, ValueError) as exc:
            log.error("Unable to read sales from workbook: %s", exc)
            raise PersistenceError(f"Unable to read sales: {exc}") from exc
        loaded.sort(key=lambda sale: (sale.sale_date, sale.created_at_iso), reverse=True)
        bucket["all"] = loaded
        bucket["by_id"] = {sale.sale_id: sale for sale in loaded}
        log.debug("Populated sales cache with %d entries", len(loaded))
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the
            configuration file. When omitted the data layer searches upward
            from the current working directory.

    Returns:
        RuntimeContext: Context ready for the use-case functions.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
        PersistenceError: If the workbook cannot be opened.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    try:
        workbook = data_manager.open_workbook(settings.data_file)
    except _WORKBOOK_ERRORS as exc:
        log.error("Unable to open workbook '%s': %s", settings.data_file, exc)
        raise PersistenceError(f"Unable to open workbook '{settings.data_file}': {exc}") from exc
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def ensure_workbook_layout(context: RuntimeContext) -> None:
    """Check that every managed sheet exists in the loaded workbook.

    Raises:
        PersistenceError: If one or more sheets are missing.
    """
    missing = data_manager.missing_sheets(context.workbook)
    if missing:
        log.error("Workbook '%s' is missing sheets: %s", context.settings.data_file, ", ".join(missing))
        raise PersistenceError(f"Workbook is missing sheets: {', '.join(missing)}")


def get_config(context: RuntimeContext) -> data_manager.LedgerConfig:
    """Return the cached shop configuration."""
    return _ensure_config_cache(context)["current"]


def list_sales(context: RuntimeContext) -> List[data_manager.SaleRow]:
    """Return a copy of the cached sales, most recent first.

    Callers may sort or filter the list freely without touching the cache.
    """
    return list(_ensure_sales_cache(context)["all"])


def get_sale(context: RuntimeContext, sale_id: str) -> data_manager.SaleRow:
    """Resolve a sale by its identifier.

    Raises:
        MissingReferenceError: If ``sale_id`` is absent from the workbook.
    """
    cache = _ensure_sales_cache(context)
    try:
        return cache["by_id"][sale_id]
    except KeyError as exc:
        log.warning("Sale lookup failed for id '%s'", sale_id)
        raise MissingReferenceError(f"Unknown sale id: {sale_id}") from exc


def parse_amount(raw: object) -> Decimal:
    """Coerce a raw form value into a nonnegative amount.

    Data entry fails open: blank, unparsable, non-finite, or negative input
    becomes ``Decimal("0")`` instead of raising. A comma is accepted as the
    decimal separator. Amounts above
    :data:`~sales_ledger.constants.MAX_AMOUNT` are treated as typos and also
    read as zero.

    Args:
        raw (object): Value as typed by the user or read from an import file.

    Returns:
        Decimal: The parsed amount, or zero.
    """
    if raw is None or isinstance(raw, bool):
        return Decimal("0")
    if isinstance(raw, Decimal):
        value = raw
    else:
        text = str(raw).strip().replace(",", ".")
        if not text:
            return Decimal("0")
        try:
            value = Decimal(text)
        except InvalidOperation:
            log.debug("Coercing unparsable amount %r to zero", raw)
            return Decimal("0")
    if not value.is_finite() or value < 0:
        log.debug("Coercing invalid amount %r to zero", raw)
        return Decimal("0")
    if value > MAX_AMOUNT:
        log.warning("Coercing out-of-range amount %r to zero", raw)
        return Decimal("0")
    return value


def parse_payment_method(raw: Union[str, PaymentMethod]) -> PaymentMethod:
    """Resolve ``raw`` into a :class:`PaymentMethod`.

    Raises:
        BusinessRuleViolation: If ``raw`` does not name a known method.
    """
    if isinstance(raw, PaymentMethod):
        return raw
    try:
        return PaymentMethod(str(raw).strip().lower())
    except ValueError as exc:
        log.error("Unsupported payment method provided: %s", raw)
        raise BusinessRuleViolation(f"Unsupported payment method: {raw}") from exc


def normalize_amounts(
    raw_amounts: RawAmounts,
    *,
    allowed: Optional[Sequence[PaymentMethod]] = None,
) -> Dict[PaymentMethod, Decimal]:
    """Coerce a raw ``method -> value`` mapping and drop zero entries.

    Args:
        raw_amounts (Mapping): Raw amounts keyed by method name or member.
        allowed (Sequence[PaymentMethod] | None): Restricts which methods may
            carry a nonzero amount; ``None`` accepts every method.

    Returns:
        dict[PaymentMethod, Decimal]: Nonzero amounts only.

    Raises:
        BusinessRuleViolation: For unknown methods, or a nonzero amount on a
            method outside ``allowed``.
    """
    normalized: Dict[PaymentMethod, Decimal] = {}
    for key, raw in raw_amounts.items():
        method = parse_payment_method(key)
        amount = parse_amount(raw)
        if amount == 0:
            continue
        if allowed is not None and method not in allowed:
            log.error("Payment method '%s' does not accept foreign currency", method.value)
            raise BusinessRuleViolation(f"Payment method '{method.value}' does not accept foreign currency")
        normalized[method] = normalized.get(method, Decimal("0")) + amount
    return normalized


def generate_sale_id() -> str:
    """Generate an opaque identifier for a new sale."""
    return f"S-{uuid.uuid4().hex}"


def generate_expense_id() -> str:
    return f"E-{uuid.uuid4().hex[:12]}"


def build_sale(
    command: SaleCommand,
    *,
    sale_id: str,
    timestamp: datetime,
    default_rate: Decimal,
) -> data_manager.SaleRow:
    """Materialize a :class:`SaleCommand` into a DAL sale row.

    The exchange rate supplied with the command wins; when it is missing or
    zero the current configuration rate becomes the sale's snapshot.

    Raises:
        EmptySaleError: If every amount is zero after coercion.
        BusinessRuleViolation: For unknown payment methods.
    """
    amounts = normalize_amounts(command.amounts)
    amounts_foreign = normalize_amounts(command.amounts_foreign, allowed=FOREIGN_CURRENCY_METHODS)
    if not amounts and not amounts_foreign:
        log.warning("Refusing to register a sale dated %s without amounts", command.sale_date)
        raise EmptySaleError("A sale needs at least one nonzero amount")

    rate = parse_amount(command.exchange_rate)
    notes = str(command.notes).strip() if command.notes else None
    return data_manager.SaleRow(
        sale_id=sale_id,
        sale_date=command.sale_date,
        amounts=amounts,
        amounts_foreign=amounts_foreign,
        exchange_rate=rate if rate > 0 else default_rate,
        notes=notes or None,
        created_at_iso=timestamp.isoformat(),
    )


def register_sale(context: RuntimeContext, command: SaleCommand) -> data_manager.SaleRow:
    """Validate and append a sale to the workbook.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (SaleCommand): Raw sale submission.

    Returns:
        data_manager.SaleRow: Newly appended sale.

    Raises:
        EmptySaleError: If the submission carries no nonzero amount.
        BusinessRuleViolation: For unknown or disallowed payment methods.
        PersistenceError: If the sales sheet cannot be written.
    """
    config = get_config(context)
    timestamp = _resolve_timestamp(command.timestamp)
    sale = build_sale(
        command,
        sale_id=generate_sale_id(),
        timestamp=timestamp,
        default_rate=config.exchange_rate,
    )
    try:
        data_manager.append_sale(context.workbook, sale)
    except KeyError as exc:
        log.error("Unable to append sale '%s': %s", sale.sale_id, exc)
        raise PersistenceError(f"Unable to store sale: {exc}") from exc
    _invalidate_cache(context, "sales")
    log.info(
        "Registered sale '%s' dated %s (methods=%s, foreign=%s)",
        sale.sale_id,
        sale.sale_date.isoformat(),
        ",".join(method.value for method in sale.amounts),
        ",".join(method.value for method in sale.amounts_foreign) or "-",
    )
    return sale


def delete_sale(context: RuntimeContext, sale_id: str) -> None:
    """Remove a sale from the workbook.

    Raises:
        MissingReferenceError: If ``sale_id`` is unknown.
    """
    get_sale(context, sale_id)
    data_manager.delete_sale_row(context.workbook, sale_id)
    _invalidate_cache(context, "sales")
    log.info("Deleted sale '%s'", sale_id)


def _apply_commissions(config: data_manager.LedgerConfig, values: Mapping[Any, object]) -> data_manager.LedgerConfig:
    rates = dict(config.commission_rates)
    for key, raw in values.items():
        rates[parse_payment_method(key)] = parse_amount(raw)
    return replace(config, commission_rates=rates)


def _apply_partners(config: data_manager.LedgerConfig, values: Mapping[str, object]) -> data_manager.LedgerConfig:
    known = {partner.partner_id for partner in config.partners}
    unknown = [partner_id for partner_id in values if partner_id not in known]
    if unknown:
        log.warning("Partner lookup failed for id '%s'", unknown[0])
        raise MissingReferenceError(f"Unknown partner id: {unknown[0]}")
    # Shares are stored as given; a total other than 100 is not corrected.
    partners = tuple(
        replace(partner, percentage=parse_amount(values[partner.partner_id]))
        if partner.partner_id in values
        else partner
        for partner in config.partners
    )
    return replace(config, partners=partners)


def _apply_expenses(
    config: data_manager.LedgerConfig,
    values: Iterable[Tuple[str, object]],
) -> data_manager.LedgerConfig:
    expenses = tuple(
        data_manager.FixedExpense(
            expense_id=generate_expense_id(),
            name=str(name).strip(),
            amount=parse_amount(raw),
        )
        for name, raw in values
    )
    return replace(config, fixed_expenses=expenses)


def _apply_exchange_rate(config: data_manager.LedgerConfig, value: object) -> data_manager.LedgerConfig:
    rate = parse_amount(value)
    return replace(config, exchange_rate=rate if rate > 0 else DEFAULT_EXCHANGE_RATE)


def update_config(context: RuntimeContext, command: UpdateConfigCommand) -> data_manager.LedgerConfig:
    """Save one configuration section and write the whole configuration back.

    Numeric values go through :func:`parse_amount`. An exchange rate that
    coerces to zero falls back to ``DEFAULT_EXCHANGE_RATE``.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (UpdateConfigCommand): Section and its new values.

    Returns:
        data_manager.LedgerConfig: The configuration after the update.

    Raises:
        BusinessRuleViolation: For an unsupported section or payment method.
        MissingReferenceError: When a partner id is unknown.
        PersistenceError: If the configuration sheets cannot be written.
    """
    try:
        section = ConfigSection(command.section)
    except ValueError as exc:
        log.error("Unsupported configuration section: %s", command.section)
        raise BusinessRuleViolation(f"Unsupported configuration section: {command.section}") from exc

    current = get_config(context)
    if section is ConfigSection.COMMISSIONS:
        updated = _apply_commissions(current, command.values)
    elif section is ConfigSection.PARTNERS:
        updated = _apply_partners(current, command.values)
    elif section is ConfigSection.EXPENSES:
        updated = _apply_expenses(current, command.values)
    elif section is ConfigSection.EXCHANGE_RATE:
        updated = _apply_exchange_rate(current, command.values)
    else:
        log.error("Unsupported configuration section: %s", section)
        raise BusinessRuleViolation(f"Unsupported configuration section: {section}")

    timestamp = _resolve_timestamp(command.timestamp)
    try:
        data_manager.write_ledger_config(context.workbook, updated, updated_at=timestamp.isoformat())
    except KeyError as exc:
        log.error("Unable to write configuration: %s", exc)
        raise PersistenceError(f"Unable to store configuration: {exc}") from exc
    _invalidate_cache(context, "config")
    log.info("Saved configuration section '%s'", section.value)
    return updated


def _legacy_amounts(raw: object) -> Dict[str, object]:
    """Translate a legacy amount mapping's Spanish keys into method values."""
    if not isinstance(raw, Mapping):
        return {}
    return {LEGACY_PAYMENT_KEYS.get(str(key), str(key)): value for key, value in raw.items()}


def import_legacy_sales(
    context: RuntimeContext,
    records: Iterable[Mapping[str, Any]],
    *,
    timestamp: Optional[datetime] = None,
) -> List[data_manager.SaleRow]:
    """Register sales exported by the old browser-only version of the ledger.

    Each record carries ``date``, ``amounts``, ``amountsUSD``, ``usdRate`` and
    ``notes``. Records without a usable date or without any nonzero amount
    are skipped with a warning; the rest go through :func:`register_sale`.

    A successful import stamps ``LegacyImportedAt`` in the ``Settings`` sheet
    and later imports are refused, so the export cannot be loaded twice.

    Returns:
        list[data_manager.SaleRow]: Sales that were imported, in input order.

    Raises:
        BusinessRuleViolation: If legacy sales were already imported.
    """
    previous = data_manager.read_settings(context.workbook).get(data_manager.SETTING_LEGACY_IMPORTED_AT)
    if previous:
        log.warning("Refusing legacy import; already imported at %s", previous)
        raise BusinessRuleViolation(f"Legacy sales were already imported at {previous}")

    imported: List[data_manager.SaleRow] = []
    for index, record in enumerate(records):
        try:
            sale_date = date.fromisoformat(str(record.get("date", "")).strip()[:10])
        except ValueError:
            log.warning("Skipping legacy record %d with invalid date %r", index, record.get("date"))
            continue
        command = SaleCommand(
            sale_date=sale_date,
            amounts=_legacy_amounts(record.get("amounts")),
            amounts_foreign=_legacy_amounts(record.get("amountsUSD")),
            notes=record.get("notes") or None,
            exchange_rate=record.get("usdRate"),
            timestamp=timestamp,
        )
        try:
            imported.append(register_sale(context, command))
        except EmptySaleError:
            log.warning("Skipping legacy record %d without amounts", index)
        except BusinessRuleViolation as exc:
            log.warning("Skipping legacy record %d: %s", index, exc)
    if imported:
        data_manager.write_setting(
            context.workbook,
            data_manager.SETTING_LEGACY_IMPORTED_AT,
            _resolve_timestamp(timestamp).isoformat(),
        )
    log.info("Imported %d legacy sales", len(imported))
    return imported


def build_dashboard(context: RuntimeContext, today: date) -> Dashboard:
    """Compute the month summary and the same-day totals for ``today``."""
    config = get_config(context)
    sales = list_sales(context)
    month_sales = reporting.current_month_sales(sales, today)
    day_sales = reporting.today_sales(sales, today)
    key = reporting.month_key(today)
    return Dashboard(
        today=today,
        month_key=key,
        month_label=reporting.month_label(key),
        month=engine.summarize_period(month_sales, config),
        month_sale_count=len(month_sales),
        today_totals=engine.aggregate(day_sales, config),
        today_sale_count=len(day_sales),
    )


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to disk.

    Raises:
        PersistenceError: If the workbook cannot be written.
    """
    try:
        data_manager.save_workbook(
            context.workbook,
            destination=context.settings.data_file,
        )
    except OSError as exc:
        log.error("Unable to save workbook '%s': %s", context.settings.data_file, exc)
        raise PersistenceError(f"Unable to save workbook '{context.settings.data_file}': {exc}") from exc
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    A new :class:`RuntimeContext` with an empty cache is returned.

    Raises:
        PersistenceError: If the backing workbook cannot be reloaded.
    """
    try:
        workbook = data_manager.refresh_workbook(context.settings.data_file)
    except _WORKBOOK_ERRORS as exc:
        log.error("Unable to reload workbook '%s': %s", context.settings.data_file, exc)
        raise PersistenceError(f"Unable to reload workbook '{context.settings.data_file}': {exc}") from exc
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)
