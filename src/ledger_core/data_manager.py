"""Data access layer for the ledger core.

This module provides low-level helpers that read from and write to the
ledger workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: the collaborator interfaces the business layer consumes
   (balances, transaction persistence, inventory and ledger writes, and the
   raw per-product event feeds).

Every function that mutates the workbook performs a single logical write. The
business layer composes these writes into multi-step operations and owns the
consequences when one of them fails.
"""


from __future__ import annotations

import configparser
from dataclasses import astuple, dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, TypeVar

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import AccountKind, SheetName


CONFIG_FILE_NAME = "config.ini"
DEFAULT_TRANSFER_DESCRIPTION = "Account Transfer"

# Column layout per sheet; dataclass field order mirrors these headers.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.ACCOUNTS.value: ["AccountID", "AccountKind", "DisplayName", "Balance", "CreatedAt"],
    SheetName.TRANSACTIONS.value: [
        "RecordID",
        "AccountID",
        "SignedAmount",
        "Description",
        "Timestamp",
        "CausedBy",
    ],
    SheetName.SUPPLIERS.value: ["SupplierID", "SupplierName"],
    SheetName.INVENTORY.value: [
        "ProductID",
        "ProductName",
        "Category",
        "Quantity",
        "UnitPrice",
        "SupplierID",
        "WarehouseID",
        "CreatedAt",
    ],
    SheetName.PURCHASES.value: ["ProductID", "Timestamp", "Amount", "Quantity", "SupplierName", "Description"],
    SheetName.SUPPLIER_LEDGER.value: [
        "EntryID",
        "SupplierID",
        "Amount",
        "Description",
        "ReferenceID",
        "Timestamp",
    ],
    SheetName.EXPENSE_LEDGER.value: [
        "EntryID",
        "ExpenseName",
        "Amount",
        "Description",
        "ExpenseDate",
        "PaymentMethod",
        "BankID",
        "ChequeDate",
        "Timestamp",
    ],
    SheetName.DEFERRED_PAYMENTS.value: [
        "DeferredID",
        "ReferenceID",
        "Amount",
        "PaymentMethod",
        "AccountID",
        "ChequeDate",
        "Status",
        "Timestamp",
    ],
    SheetName.STOCK_ARRIVALS.value: [
        "ProductID",
        "Timestamp",
        "Quantity",
        "WarehouseName",
        "RemainingInShipping",
    ],
    SheetName.SALES.value: [
        "SaleID",
        "ProductID",
        "Timestamp",
        "Quantity",
        "UnitPrice",
        "Total",
        "CustomerName",
    ],
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    cash_account_id: str
    cash_account_name: str
    step_timeout_seconds: Optional[float] = None
    default_transfer_description: str = DEFAULT_TRANSFER_DESCRIPTION


@dataclass(frozen=True)
class AccountRow:
    """In-memory view of a row from the ``Accounts`` sheet."""

    account_id: str
    account_kind: str
    display_name: str
    balance: Decimal
    created_at_iso: str


@dataclass(frozen=True)
class TransactionRow:
    """Immutable balance movement from the ``Transactions`` sheet."""

    record_id: str
    account_id: str
    signed_amount: Decimal
    description: str
    timestamp_iso: str
    caused_by: Optional[str]


@dataclass(frozen=True)
class SupplierRow:
    supplier_id: str
    supplier_name: str


@dataclass(frozen=True)
class InventoryRow:
    """Inventory record written when a product is purchased or added."""

    product_id: str
    product_name: str
    category: Optional[str]
    quantity: Decimal
    unit_price: Decimal
    supplier_id: Optional[str]
    warehouse_id: Optional[str]
    created_at_iso: str


@dataclass(frozen=True)
class PurchaseRow:
    product_id: str
    timestamp_iso: str
    amount: Decimal
    quantity: Decimal
    supplier_name: Optional[str]
    description: Optional[str]


@dataclass(frozen=True)
class SupplierLedgerRow:
    """Debit owed to a supplier, tagged with the inventory record it paid for."""

    entry_id: str
    supplier_id: str
    amount: Decimal
    description: str
    reference_id: Optional[str]
    timestamp_iso: str


@dataclass(frozen=True)
class ExpenseRow:
    entry_id: str
    expense_name: str
    amount: Decimal
    description: Optional[str]
    expense_date: str
    payment_method: str
    bank_id: Optional[str]
    cheque_date: Optional[str]
    timestamp_iso: str


@dataclass(frozen=True)
class DeferredPaymentRow:
    """Settlement intent left for an out-of-core clearing operation."""

    deferred_id: str
    reference_id: str
    amount: Decimal
    payment_method: str
    account_id: Optional[str]
    cheque_date: Optional[str]
    status: str
    timestamp_iso: str


@dataclass(frozen=True)
class ArrivalRow:
    product_id: str
    timestamp_iso: str
    quantity: Decimal
    warehouse_name: Optional[str]
    remaining_in_shipping: Optional[Decimal]


@dataclass(frozen=True)
class SaleRow:
    sale_id: str
    product_id: str
    timestamp_iso: str
    quantity: Decimal
    unit_price: Decimal
    total: Decimal
    customer_name: Optional[str]


RowT = TypeVar("RowT")


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. When no explicit path is given the function walks
    up from the current working directory toward the filesystem root looking
    for a file named ``CONFIG_FILE_NAME``. The first match is authoritative.

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
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
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

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Required options live under ``[System]`` (``DataFile``, ``BusinessName``,
    ``SchemaVersion``) and ``[Ledger]`` (``CashAccountID``). Optional ledger
    options fall back to sensible defaults: ``CashAccountName`` defaults to
    ``"Cash"``, a blank or zero ``StepTimeoutSeconds`` disables step timeouts,
    and ``DefaultTransferDescription`` defaults to ``"Account Transfer"``.

    Relative ``DataFile`` entries are expanded against ``base_path`` when
    provided, or against the current working directory as a fallback.

    Raises:
        KeyError: If one of the required sections or options is missing, or
            the timeout cannot be parsed as a number.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
        cash_account_id = parser.get("Ledger", "CashAccountID")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    cash_account_name = parser.get("Ledger", "CashAccountName", fallback="Cash")
    transfer_description = parser.get(
        "Ledger",
        "DefaultTransferDescription",
        fallback=DEFAULT_TRANSFER_DESCRIPTION,
    )
    timeout_raw = parser.get("Ledger", "StepTimeoutSeconds", fallback="").strip()
    try:
        step_timeout = float(timeout_raw) if timeout_raw else None
    except ValueError as exc:
        raise KeyError(f"Invalid StepTimeoutSeconds value: {timeout_raw!r}") from exc
    if step_timeout is not None and step_timeout <= 0:
        step_timeout = None

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        cash_account_id=cash_account_id,
        cash_account_name=cash_account_name,
        step_timeout_seconds=step_timeout,
        default_transfer_description=transfer_description,
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
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


# ---------------------------------------------------------------------------
# Generic sheet helpers
# ---------------------------------------------------------------------------


def _iter_sheet(workbook: Workbook, sheet: SheetName, deserializer: Callable[[Sequence[object]], RowT]) -> Iterable[RowT]:
    worksheet = workbook[sheet.value]
    for raw in worksheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield deserializer(raw)


def _append(workbook: Workbook, sheet: SheetName, record: object) -> None:
    workbook[sheet.value].append(serialize_row(record))


def header_map(workbook: Workbook, sheet_name: str) -> dict[str, int]:
    """Map header titles of ``sheet_name`` to their 1-based column index."""

    sheet = workbook[sheet_name]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    headers = header_map(workbook, sheet_name)
    if key_column not in headers:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = headers[key_column]
    sheet = workbook[sheet_name]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def update_cells(workbook: Workbook, sheet_name: str, row_index: int, *, field_values: Mapping[str, Any]) -> None:
    """Write ``field_values`` into the named columns of an existing row.

    Raises:
        KeyError: If any referenced column is missing from the header.
    """

    headers = header_map(workbook, sheet_name)
    sheet = workbook[sheet_name]
    for field, value in field_values.items():
        if field not in headers:
            raise KeyError(f"Unknown {sheet_name} field: {field}")
        sheet.cell(row=row_index, column=headers[field], value=value)


# ---------------------------------------------------------------------------
# Accounts and balance movements
# ---------------------------------------------------------------------------


def iter_accounts(workbook: Workbook) -> Iterable[AccountRow]:
    """Iterate over account records stored on the ``Accounts`` worksheet."""

    return _iter_sheet(workbook, SheetName.ACCOUNTS, deserialize_account)


def iter_transactions(workbook: Workbook) -> Iterable[TransactionRow]:
    """Stream balance movements from the ``Transactions`` worksheet in log order."""

    return _iter_sheet(workbook, SheetName.TRANSACTIONS, deserialize_transaction)


def get_account(workbook: Workbook, account_id: str) -> AccountRow:
    """Return the account stored under ``account_id``.

    Raises:
        KeyError: If no account row carries the identifier.
    """

    for account in iter_accounts(workbook):
        if account.account_id == account_id:
            return account
    raise KeyError(f"Account not found: {account_id}")


def get_account_balance(workbook: Workbook, account_id: str) -> Decimal:
    """Read the stored balance of ``account_id`` straight from the sheet."""

    return get_account(workbook, account_id).balance


def list_bank_accounts(workbook: Workbook) -> List[AccountRow]:
    """Return every Bank account in sheet (creation) order."""

    return [
        account
        for account in iter_accounts(workbook)
        if account.account_kind == AccountKind.BANK.value
    ]


def append_account(workbook: Workbook, record: AccountRow) -> None:
    """Append a new account row.

    Raises:
        ValueError: If an account with the same identifier already exists.
    """

    sheet_name = SheetName.ACCOUNTS.value
    if locate_row(workbook, sheet_name, "AccountID", record.account_id) is not None:
        raise ValueError(f"Duplicate account id: {record.account_id}")
    _append(workbook, SheetName.ACCOUNTS, record)


def persist_transaction(workbook: Workbook, record: TransactionRow) -> TransactionRow:
    """Append a balance movement and update the owning account's balance.

    Both writes belong to one call so the stored balance never drifts from the
    record log. The account row is located before anything is written.

    Raises:
        KeyError: If the referenced account does not exist.
    """

    sheet_name = SheetName.ACCOUNTS.value
    row_index = locate_row(workbook, sheet_name, "AccountID", record.account_id)
    if row_index is None:
        raise KeyError(f"Account not found: {record.account_id}")

    balance_column = header_map(workbook, sheet_name)["Balance"]
    current = _to_decimal(workbook[sheet_name].cell(row=row_index, column=balance_column).value)
    _append(workbook, SheetName.TRANSACTIONS, record)
    update_cells(
        workbook,
        sheet_name,
        row_index,
        field_values={"Balance": current + record.signed_amount},
    )
    log.debug(
        "Persisted record '%s' on account '%s' (%s -> %s)",
        record.record_id,
        record.account_id,
        current,
        current + record.signed_amount,
    )
    return record


# ---------------------------------------------------------------------------
# Suppliers, inventory and ledgers
# ---------------------------------------------------------------------------


def iter_suppliers(workbook: Workbook) -> Iterable[SupplierRow]:
    return _iter_sheet(workbook, SheetName.SUPPLIERS, deserialize_supplier)


def get_supplier(workbook: Workbook, supplier_id: str) -> SupplierRow:
    """Return the supplier stored under ``supplier_id``.

    Raises:
        KeyError: If the supplier is unknown.
    """

    for supplier in iter_suppliers(workbook):
        if supplier.supplier_id == supplier_id:
            return supplier
    raise KeyError(f"Supplier not found: {supplier_id}")


def append_supplier(workbook: Workbook, record: SupplierRow) -> None:
    _append(workbook, SheetName.SUPPLIERS, record)


def iter_inventory(workbook: Workbook) -> Iterable[InventoryRow]:
    return _iter_sheet(workbook, SheetName.INVENTORY, deserialize_inventory)


def get_inventory(workbook: Workbook, product_id: str) -> InventoryRow:
    """Return the inventory record of ``product_id``.

    Raises:
        KeyError: If the product is unknown.
    """

    for product in iter_inventory(workbook):
        if product.product_id == product_id:
            return product
    raise KeyError(f"Product not found: {product_id}")


def persist_inventory_change(workbook: Workbook, record: InventoryRow, purchase: PurchaseRow) -> str:
    """Write an inventory record together with the purchase event it produced.

    Returns:
        str: The product identifier of the persisted inventory record.

    Raises:
        ValueError: If the product identifier is already in use.
    """

    if locate_row(workbook, SheetName.INVENTORY.value, "ProductID", record.product_id) is not None:
        raise ValueError(f"Duplicate product id: {record.product_id}")
    _append(workbook, SheetName.INVENTORY, record)
    _append(workbook, SheetName.PURCHASES, purchase)
    return record.product_id


def iter_supplier_ledger(workbook: Workbook) -> Iterable[SupplierLedgerRow]:
    return _iter_sheet(workbook, SheetName.SUPPLIER_LEDGER, deserialize_supplier_ledger)


def persist_supplier_ledger_entry(workbook: Workbook, record: SupplierLedgerRow) -> str:
    """Append a supplier debit entry and return its identifier.

    Raises:
        KeyError: If the supplier is unknown.
    """

    get_supplier(workbook, record.supplier_id)
    _append(workbook, SheetName.SUPPLIER_LEDGER, record)
    return record.entry_id


def iter_expenses(workbook: Workbook) -> Iterable[ExpenseRow]:
    return _iter_sheet(workbook, SheetName.EXPENSE_LEDGER, deserialize_expense)


def persist_expense_entry(workbook: Workbook, record: ExpenseRow) -> str:
    """Append an expense-ledger entry and return its identifier."""

    _append(workbook, SheetName.EXPENSE_LEDGER, record)
    return record.entry_id


def iter_deferred_payments(workbook: Workbook) -> Iterable[DeferredPaymentRow]:
    return _iter_sheet(workbook, SheetName.DEFERRED_PAYMENTS, deserialize_deferred_payment)


def persist_deferred_payment(workbook: Workbook, record: DeferredPaymentRow) -> str:
    """Append a deferred settlement intent and return its identifier."""

    _append(workbook, SheetName.DEFERRED_PAYMENTS, record)
    return record.deferred_id


# ---------------------------------------------------------------------------
# Raw product event feeds
# ---------------------------------------------------------------------------


def append_stock_arrival(workbook: Workbook, record: ArrivalRow) -> None:
    _append(workbook, SheetName.STOCK_ARRIVALS, record)


def append_sale(workbook: Workbook, record: SaleRow) -> None:
    _append(workbook, SheetName.SALES, record)


def fetch_product_purchases(workbook: Workbook, product_id: str) -> List[PurchaseRow]:
    """Return the purchase events recorded for ``product_id`` (unordered)."""

    return [
        row
        for row in _iter_sheet(workbook, SheetName.PURCHASES, deserialize_purchase)
        if row.product_id == product_id
    ]


def fetch_product_arrivals(workbook: Workbook, product_id: str) -> List[ArrivalRow]:
    """Return the stock arrivals recorded for ``product_id`` (unordered)."""

    return [
        row
        for row in _iter_sheet(workbook, SheetName.STOCK_ARRIVALS, deserialize_arrival)
        if row.product_id == product_id
    ]


def fetch_product_sales(workbook: Workbook, product_id: str) -> List[SaleRow]:
    """Return the sales recorded for ``product_id`` (unordered)."""

    return [
        row
        for row in _iter_sheet(workbook, SheetName.SALES, deserialize_sale)
        if row.product_id == product_id
    ]


# ---------------------------------------------------------------------------
# Row (de)serialization
# ---------------------------------------------------------------------------


def serialize_row(record: object) -> list[object]:
    """Convert a row dataclass into its worksheet column ordering.

    Field order on every row dataclass matches :data:`SHEET_COLUMNS`, so the
    tuple form of the dataclass is already the sheet layout. ``Decimal``
    instances are preserved so Excel keeps full precision.
    """

    return list(astuple(record))


def _to_decimal(raw: object, default: str = "0") -> Decimal:
    if raw is None or raw == "":
        return Decimal(default)
    try:
        return Decimal(str(raw))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid numeric cell value: {raw!r}") from exc


def _to_optional_decimal(raw: object) -> Optional[Decimal]:
    return None if raw is None or raw == "" else _to_decimal(raw)


def _to_text(raw: object) -> str:
    return str(raw) if raw is not None else ""


def _to_optional_text(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def deserialize_account(raw_row: Sequence[object]) -> AccountRow:
    account_id, kind, name, balance, created_at = raw_row[:5]
    return AccountRow(
        account_id=_to_text(account_id),
        account_kind=_to_text(kind),
        display_name=_to_text(name),
        balance=_to_decimal(balance, "0.00"),
        created_at_iso=_to_text(created_at),
    )


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw ``Transactions`` row into a typed record.

    Amounts are normalized into :class:`~decimal.Decimal` and a blank
    ``CausedBy`` cell stays ``None``.
    """

    record_id, account_id, signed_amount, description, timestamp, caused_by = raw_row[:6]
    return TransactionRow(
        record_id=_to_text(record_id),
        account_id=_to_text(account_id),
        signed_amount=_to_decimal(signed_amount, "0.00"),
        description=_to_text(description),
        timestamp_iso=_to_text(timestamp),
        caused_by=_to_optional_text(caused_by),
    )


def deserialize_supplier(raw_row: Sequence[object]) -> SupplierRow:
    return SupplierRow(supplier_id=_to_text(raw_row[0]), supplier_name=_to_text(raw_row[1]))


def deserialize_inventory(raw_row: Sequence[object]) -> InventoryRow:
    product_id, name, category, quantity, unit_price, supplier_id, warehouse_id, created_at = raw_row[:8]
    return InventoryRow(
        product_id=_to_text(product_id),
        product_name=_to_text(name),
        category=_to_optional_text(category),
        quantity=_to_decimal(quantity),
        unit_price=_to_decimal(unit_price, "0.00"),
        supplier_id=_to_optional_text(supplier_id),
        warehouse_id=_to_optional_text(warehouse_id),
        created_at_iso=_to_text(created_at),
    )


def deserialize_purchase(raw_row: Sequence[object]) -> PurchaseRow:
    product_id, timestamp, amount, quantity, supplier_name, description = raw_row[:6]
    return PurchaseRow(
        product_id=_to_text(product_id),
        timestamp_iso=_to_text(timestamp),
        amount=_to_decimal(amount, "0.00"),
        quantity=_to_decimal(quantity),
        supplier_name=_to_optional_text(supplier_name),
        description=_to_optional_text(description),
    )


def deserialize_supplier_ledger(raw_row: Sequence[object]) -> SupplierLedgerRow:
    entry_id, supplier_id, amount, description, reference_id, timestamp = raw_row[:6]
    return SupplierLedgerRow(
        entry_id=_to_text(entry_id),
        supplier_id=_to_text(supplier_id),
        amount=_to_decimal(amount, "0.00"),
        description=_to_text(description),
        reference_id=_to_optional_text(reference_id),
        timestamp_iso=_to_text(timestamp),
    )


def deserialize_expense(raw_row: Sequence[object]) -> ExpenseRow:
    (
        entry_id,
        expense_name,
        amount,
        description,
        expense_date,
        payment_method,
        bank_id,
        cheque_date,
        timestamp,
    ) = raw_row[:9]
    return ExpenseRow(
        entry_id=_to_text(entry_id),
        expense_name=_to_text(expense_name),
        amount=_to_decimal(amount, "0.00"),
        description=_to_optional_text(description),
        expense_date=_to_text(expense_date),
        payment_method=_to_text(payment_method),
        bank_id=_to_optional_text(bank_id),
        cheque_date=_to_optional_text(cheque_date),
        timestamp_iso=_to_text(timestamp),
    )


def deserialize_deferred_payment(raw_row: Sequence[object]) -> DeferredPaymentRow:
    deferred_id, reference_id, amount, method, account_id, cheque_date, status, timestamp = raw_row[:8]
    return DeferredPaymentRow(
        deferred_id=_to_text(deferred_id),
        reference_id=_to_text(reference_id),
        amount=_to_decimal(amount, "0.00"),
        payment_method=_to_text(method),
        account_id=_to_optional_text(account_id),
        cheque_date=_to_optional_text(cheque_date),
        status=_to_text(status),
        timestamp_iso=_to_text(timestamp),
    )


def deserialize_arrival(raw_row: Sequence[object]) -> ArrivalRow:
    product_id, timestamp, quantity, warehouse_name, remaining = raw_row[:5]
    return ArrivalRow(
        product_id=_to_text(product_id),
        timestamp_iso=_to_text(timestamp),
        quantity=_to_decimal(quantity),
        warehouse_name=_to_optional_text(warehouse_name),
        remaining_in_shipping=_to_optional_decimal(remaining),
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    sale_id, product_id, timestamp, quantity, unit_price, total, customer_name = raw_row[:7]
    return SaleRow(
        sale_id=_to_text(sale_id),
        product_id=_to_text(product_id),
        timestamp_iso=_to_text(timestamp),
        quantity=_to_decimal(quantity),
        unit_price=_to_decimal(unit_price, "0.00"),
        total=_to_decimal(total, "0.00"),
        customer_name=_to_optional_text(customer_name),
    )
