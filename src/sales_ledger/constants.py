"""Enumerations and default values shared across the sales ledger modules.

The payment methods are a closed set: every amount, commission rate, and
workbook column is keyed by a :class:`PaymentMethod` member so an unknown key
can never turn into a silently untracked category.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class PaymentMethod(str, Enum):
    """Enumerate the payment methods a sale can be split across."""

    CASH = "cash"
    TRANSFER = "transfer"
    DEBIT = "debit"
    CREDIT_1 = "credit_1"
    CREDIT_3 = "credit_3"
    CREDIT_6 = "credit_6"
    CREDIT_12 = "credit_12"

    @property
    def label(self) -> str:
        return PAYMENT_METHOD_LABELS[self]


PAYMENT_METHOD_LABELS: dict[PaymentMethod, str] = {
    PaymentMethod.CASH: "Efectivo",
    PaymentMethod.TRANSFER: "Transferencia",
    PaymentMethod.DEBIT: "Débito",
    PaymentMethod.CREDIT_1: "Crédito 1 pago",
    PaymentMethod.CREDIT_3: "Crédito 3 cuotas",
    PaymentMethod.CREDIT_6: "Crédito 6 cuotas",
    PaymentMethod.CREDIT_12: "Crédito 12 cuotas",
}

# Keys used by the browser-only version of the ledger for exported sales.
LEGACY_PAYMENT_KEYS: dict[str, str] = {
    "efectivo": PaymentMethod.CASH.value,
    "transferencia": PaymentMethod.TRANSFER.value,
    "debito": PaymentMethod.DEBIT.value,
    "credito_1": PaymentMethod.CREDIT_1.value,
    "credito_3": PaymentMethod.CREDIT_3.value,
    "credito_6": PaymentMethod.CREDIT_6.value,
    "credito_12": PaymentMethod.CREDIT_12.value,
}

# Only cash is accepted in foreign currency at the counter.
FOREIGN_CURRENCY_METHODS: tuple[PaymentMethod, ...] = (PaymentMethod.CASH,)


class ConfigSection(str, Enum):
    """Enumerate the independently editable sections of the configuration."""

    COMMISSIONS = "commissions"
    PARTNERS = "partners"
    EXPENSES = "expenses"
    EXCHANGE_RATE = "exchange_rate"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    SALES = "Sales"
    COMMISSIONS = "Commissions"
    PARTNERS = "Partners"
    EXPENSES = "Expenses"
    SETTINGS = "Settings"


MONTH_NAMES: tuple[str, ...] = (
    "Enero",
    "Febrero",
    "Marzo",
    "Abril",
    "Mayo",
    "Junio",
    "Julio",
    "Agosto",
    "Septiembre",
    "Octubre",
    "Noviembre",
    "Diciembre",
)

DEFAULT_EXCHANGE_RATE = Decimal("1000")

# Largest amount accepted from data entry or imports; anything above reads as 0.
MAX_AMOUNT = Decimal("1e15")

DEFAULT_COMMISSION_RATES: dict[PaymentMethod, Decimal] = {
    PaymentMethod.CASH: Decimal("0"),
    PaymentMethod.TRANSFER: Decimal("0"),
    PaymentMethod.DEBIT: Decimal("0"),
    PaymentMethod.CREDIT_1: Decimal("0"),
    PaymentMethod.CREDIT_3: Decimal("16.67"),
    PaymentMethod.CREDIT_6: Decimal("28.57"),
    PaymentMethod.CREDIT_12: Decimal("50"),
}

# (partner_id, name, percentage)
DEFAULT_PARTNERS: tuple[tuple[str, str, Decimal], ...] = (
    ("principal", "Socio Principal", Decimal("60")),
    ("menor1", "Socio Menor 1", Decimal("20")),
    ("menor2", "Socio Menor 2", Decimal("20")),
)

# (expense_id, name, amount)
DEFAULT_EXPENSES: tuple[tuple[str, str, Decimal], ...] = (
    ("empleados", "Empleados", Decimal("3000000")),
    ("alquileres", "Alquileres", Decimal("4000000")),
    ("luz", "Luz", Decimal("350000")),
)


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "PaymentMethod",
    "PAYMENT_METHOD_LABELS",
    "LEGACY_PAYMENT_KEYS",
    "FOREIGN_CURRENCY_METHODS",
    "ConfigSection",
    "SheetName",
    "MONTH_NAMES",
    "DEFAULT_EXCHANGE_RATE",
    "MAX_AMOUNT",
    "DEFAULT_COMMISSION_RATES",
    "DEFAULT_PARTNERS",
    "DEFAULT_EXPENSES",
]
