"""Enumerations shared across the ledger core modules.

Centralises domain constants so that the data access layer (DAL), the
business layer, and the CLI rely on a single source of truth for account
kinds, payment methods, and the workbook layout.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "2.0.0"

OWN_INVENTORY_LABEL = "Own Inventory"
DEFAULT_WAREHOUSE_LABEL = "Warehouse"
DEFAULT_CUSTOMER_LABEL = "Customer"


class AccountKind(str, Enum):
    """Enumerate the account families managed by the registry."""

    CASH = "Cash"
    BANK = "Bank"


class Direction(str, Enum):
    """Direction of a balance movement applied by the recorder."""

    ADD = "add"
    SUBTRACT = "subtract"


class PaymentMethod(str, Enum):
    """Enumerate how a purchase or expense is settled."""

    CASH = "cash"
    ONLINE = "online"
    CHEQUE = "cheque"
    CREDIT = "credit"


# Methods whose purchase settlement is deferred to an out-of-core clearing step.
DEFERRED_PURCHASE_METHODS: frozenset[PaymentMethod] = frozenset(
    {PaymentMethod.CHEQUE, PaymentMethod.CREDIT}
)

# Methods whose expense settlement debits the selected bank immediately.
BANK_DEBIT_EXPENSE_METHODS: frozenset[PaymentMethod] = frozenset(
    {PaymentMethod.ONLINE, PaymentMethod.CHEQUE}
)


class EventKind(str, Enum):
    """Kinds of product events merged into a timeline, in causal order."""

    PURCHASE = "purchase"
    ARRIVAL = "arrival"
    SALE = "sale"


# Tie-break rank for events sharing a timestamp.
EVENT_PRECEDENCE: dict[EventKind, int] = {
    EventKind.PURCHASE: 0,
    EventKind.ARRIVAL: 1,
    EventKind.SALE: 2,
}


class DeferredStatus(str, Enum):
    """Lifecycle states of a deferred payment intent."""

    PENDING = "PENDING"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    ACCOUNTS = "Accounts"
    TRANSACTIONS = "Transactions"
    SUPPLIERS = "Suppliers"
    INVENTORY = "Inventory"
    PURCHASES = "Purchases"
    SUPPLIER_LEDGER = "SupplierLedger"
    EXPENSE_LEDGER = "ExpenseLedger"
    DEFERRED_PAYMENTS = "DeferredPayments"
    STOCK_ARRIVALS = "StockArrivals"
    SALES = "Sales"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "OWN_INVENTORY_LABEL",
    "DEFAULT_WAREHOUSE_LABEL",
    "DEFAULT_CUSTOMER_LABEL",
    "AccountKind",
    "Direction",
    "PaymentMethod",
    "DEFERRED_PURCHASE_METHODS",
    "BANK_DEBIT_EXPENSE_METHODS",
    "EventKind",
    "EVENT_PRECEDENCE",
    "DeferredStatus",
    "SheetName",
]
