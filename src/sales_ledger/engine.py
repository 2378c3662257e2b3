"""Financial aggregation engine for the sales ledger.

Every function here is pure: it reads a snapshot of sales and configuration,
performs in-memory arithmetic, and returns new values. Nothing in this module
touches the workbook, the clock, or its inputs.

Commission percentages always come from the configuration passed in, while
foreign-currency conversion always uses the rate recorded on each sale.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, Mapping, Optional

from . import log
from .constants import PaymentMethod
from .data_manager import LedgerConfig, SaleRow


ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class SaleTotals:
    """Gross, commission, and net figures for one sale or a group of sales."""

    gross: Decimal = ZERO
    commission: Decimal = ZERO
    net: Decimal = ZERO

    def __add__(self, other: "SaleTotals") -> "SaleTotals":
        if not isinstance(other, SaleTotals):
            return NotImplemented
        return SaleTotals(
            gross=self.gross + other.gross,
            commission=self.commission + other.commission,
            net=self.net + other.net,
        )


@dataclass(frozen=True)
class PeriodSummary:
    """Everything the dashboard shows for a period of sales."""

    totals: SaleTotals
    expenses: Decimal
    profit: Decimal
    distribution: Mapping[str, Decimal]


def effective_exchange_rate(sale: SaleRow, config: LedgerConfig) -> Decimal:
    """Return the sale's snapshot rate, or the configured rate when it has none."""

    return sale.exchange_rate if sale.exchange_rate else config.exchange_rate


def _commission_for(method: PaymentMethod, amount: Decimal, config: LedgerConfig) -> Decimal:
    return amount * config.commission_rate(method) / HUNDRED


def compute_sale_totals(sale: SaleRow, config: LedgerConfig) -> SaleTotals:
    """Compute gross, commission, and net amounts for a single sale.

    Local-currency amounts contribute directly. Foreign-currency amounts are
    converted with :func:`effective_exchange_rate` first and then accumulate
    exactly like local amounts, using the commission rate of their payment
    method. No rounding is applied.

    Args:
        sale (SaleRow): Sale whose payment breakdown should be totalled.
        config (LedgerConfig): Configuration providing commission rates and
            the fallback exchange rate.

    Returns:
        SaleTotals: ``gross``, ``commission`` and ``net = gross - commission``.
    """

    gross = ZERO
    commission = ZERO
    for method, amount in sale.amounts.items():
        gross += amount
        commission += _commission_for(method, amount, config)

    if sale.amounts_foreign:
        rate = effective_exchange_rate(sale, config)
        for method, amount in sale.amounts_foreign.items():
            local = amount * rate
            gross += local
            commission += _commission_for(method, local, config)

    return SaleTotals(gross=gross, commission=commission, net=gross - commission)


def aggregate(sales: Iterable[SaleRow], config: LedgerConfig) -> SaleTotals:
    """Sum :func:`compute_sale_totals` over ``sales``; empty input yields zeros."""

    totals = SaleTotals()
    count = 0
    for sale in sales:
        totals = totals + compute_sale_totals(sale, config)
        count += 1
    log.debug("Aggregated %d sales: gross=%s net=%s", count, totals.gross, totals.net)
    return totals


def compute_expense_total(config: LedgerConfig) -> Decimal:
    return sum((expense.amount for expense in config.fixed_expenses), ZERO)


def compute_profit(
    sales: Iterable[SaleRow],
    config: LedgerConfig,
    *,
    totals: Optional[SaleTotals] = None,
) -> Decimal:
    """Return net sales minus fixed expenses. The result may be negative.

    Callers that already aggregated ``sales`` may pass ``totals`` to avoid a
    second pass; ``sales`` is ignored in that case.
    """

    if totals is None:
        totals = aggregate(sales, config)
    return totals.net - compute_expense_total(config)


def distribute_profit(
    sales: Iterable[SaleRow],
    config: LedgerConfig,
    *,
    profit: Optional[Decimal] = None,
) -> Dict[str, Decimal]:
    """Split the profit of ``sales`` among the configured partners.

    Each partner receives ``profit * percentage / 100``. Percentages are used
    as configured: when they do not add up to 100 the distributed total
    differs from the profit, and no normalization takes place.

    Args:
        sales (Iterable[SaleRow]): Sales whose profit is distributed.
        config (LedgerConfig): Configuration with partners and expenses.
        profit (Decimal | None): Precomputed profit; when given ``sales`` is
            not aggregated again.

    Returns:
        dict[str, Decimal]: Amount per ``partner_id`` in partner order.
    """

    if profit is None:
        profit = compute_profit(sales, config)
    return {
        partner.partner_id: profit * partner.percentage / HUNDRED
        for partner in config.partners
    }


def summarize_period(sales: Iterable[SaleRow], config: LedgerConfig) -> PeriodSummary:
    """Bundle totals, expenses, profit, and partner shares for ``sales``."""

    totals = aggregate(sales, config)
    expenses = compute_expense_total(config)
    profit = totals.net - expenses
    return PeriodSummary(
        totals=totals,
        expenses=expenses,
        profit=profit,
        distribution=distribute_profit((), config, profit=profit),
    )
