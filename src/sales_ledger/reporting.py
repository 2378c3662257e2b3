"""Grouping helpers that partition sales by day and month for reporting.

All functions are pure and take the reference date explicitly, so the same
inputs always produce the same output regardless of when they run. Dates sort
by their ISO string, which matches chronological order.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Sequence, Tuple

from .constants import MONTH_NAMES
from .data_manager import LedgerConfig, SaleRow
from .engine import ZERO, aggregate, compute_sale_totals


@dataclass(frozen=True)
class DayGroup:
    """Sales registered on one business day and their combined gross."""

    sales: Tuple[SaleRow, ...]
    total_gross: Decimal


@dataclass(frozen=True)
class MonthSummary:
    """Gross and net totals for one calendar month."""

    label: str
    gross: Decimal
    net: Decimal
    count: int


def month_key(day: date) -> str:
    """Return the ``YYYY-MM`` key of ``day``."""

    return f"{day.year:04d}-{day.month:02d}"


def month_label(key: str) -> str:
    """Render a ``YYYY-MM`` key as ``"<month name> <year>"``, e.g. ``Marzo 2025``.

    Raises:
        ValueError: If ``key`` is not a valid ``YYYY-MM`` string.
    """

    try:
        year_raw, month_raw = key.split("-")
        year, month = int(year_raw), int(month_raw)
    except ValueError as exc:
        raise ValueError(f"Invalid month key: {key!r}") from exc
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month key: {key!r}")
    return f"{MONTH_NAMES[month - 1]} {year}"


def group_by_date(sales: Iterable[SaleRow], config: LedgerConfig) -> List[Tuple[date, DayGroup]]:
    """Group ``sales`` by business day, most recent day first.

    Sales keep their input order inside each group, and each group carries
    the gross total of its sales.

    Args:
        sales (Iterable[SaleRow]): Sales to partition.
        config (LedgerConfig): Configuration used to convert foreign amounts.

    Returns:
        list[tuple[date, DayGroup]]: One entry per distinct date, sorted
            descending by ISO date.
    """

    buckets: Dict[date, List[SaleRow]] = {}
    totals: Dict[date, Decimal] = {}
    for sale in sales:
        buckets.setdefault(sale.sale_date, []).append(sale)
        totals[sale.sale_date] = totals.get(sale.sale_date, ZERO) + compute_sale_totals(sale, config).gross

    ordered = sorted(buckets, key=lambda day: day.isoformat(), reverse=True)
    return [(day, DayGroup(sales=tuple(buckets[day]), total_gross=totals[day])) for day in ordered]


def group_by_month(sales: Iterable[SaleRow], config: LedgerConfig) -> List[Tuple[str, MonthSummary]]:
    """Summarize ``sales`` per calendar month, most recent month first.

    Args:
        sales (Iterable[SaleRow]): Sales to partition.
        config (LedgerConfig): Configuration providing commission rates.

    Returns:
        list[tuple[str, MonthSummary]]: ``(YYYY-MM, summary)`` pairs sorted
            descending by key.
    """

    buckets: Dict[str, List[SaleRow]] = {}
    for sale in sales:
        buckets.setdefault(month_key(sale.sale_date), []).append(sale)

    result: List[Tuple[str, MonthSummary]] = []
    for key in sorted(buckets, reverse=True):
        totals = aggregate(buckets[key], config)
        result.append(
            (
                key,
                MonthSummary(
                    label=month_label(key),
                    gross=totals.gross,
                    net=totals.net,
                    count=len(buckets[key]),
                ),
            )
        )
    return result


def list_available_months(sales: Iterable[SaleRow], today: date) -> List[Tuple[str, str]]:
    """List every month with sales plus the current month, newest first.

    The month of ``today`` is always present, even without any sales, so
    the history view has something to select.

    Returns:
        list[tuple[str, str]]: ``(YYYY-MM, label)`` pairs sorted descending.
    """

    keys = {month_key(today)}
    keys.update(month_key(sale.sale_date) for sale in sales)
    return [(key, month_label(key)) for key in sorted(keys, reverse=True)]


def current_month_sales(sales: Sequence[SaleRow], today: date) -> List[SaleRow]:
    """Select sales dated within the month of ``today``, both ends inclusive."""

    first = today.replace(day=1)
    last = today.replace(day=calendar.monthrange(today.year, today.month)[1])
    return [sale for sale in sales if first <= sale.sale_date <= last]


def today_sales(sales: Sequence[SaleRow], today: date) -> List[SaleRow]:
    return [sale for sale in sales if sale.sale_date == today]


def sales_for_month(sales: Sequence[SaleRow], key: str) -> List[SaleRow]:
    """Select the sales whose ``YYYY-MM`` key equals ``key``."""

    return [sale for sale in sales if month_key(sale.sale_date) == key]


def sales_for_date(sales: Sequence[SaleRow], day: date) -> List[SaleRow]:
    return today_sales(sales, day)


def selected_date_total(sales: Sequence[SaleRow], day: date, config: LedgerConfig) -> Decimal:
    """Return the gross registered on ``day``, the registration screen's running total."""

    return aggregate(sales_for_date(sales, day), config).gross
