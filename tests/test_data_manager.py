"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from ledger_core import constants, data_manager  # noqa: E402
from ledger_core.setup_excel import build_master_workbook


@pytest.fixture
def memory_workbook():
    return build_master_workbook(cash_account_id="CASH")


def _transaction(record_id: str, account_id: str, amount: str) -> data_manager.TransactionRow:
    return data_manager.TransactionRow(
        record_id=record_id,
        account_id=account_id,
        signed_amount=Decimal(amount),
        description="Test movement",
        timestamp_iso="2025-01-01T10:00:00+00:00",
        caused_by=None,
    )


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_parent_directories(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=ledger.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "BusinessName") == "Test Traders"
    assert parser.get("Ledger", "CashAccountID") == "CASH"


def test_read_config_missing_file_raises(tmp_path):
    """Missing files should propagate a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    parser = configparser.ConfigParser()
    bundle = config_factory(make_relative=True)
    parser.read(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)
    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.cash_account_id == "CASH"
    assert settings.step_timeout_seconds is None
    assert settings.default_transfer_description == "Account Transfer"


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile=x.xlsx\nBusinessName=B\nSchemaVersion=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


@pytest.mark.parametrize(
    "raw, expected",
    [("2.5", 2.5), ("0", None), ("-1", None), ("", None)],
)
def test_parse_settings_reads_step_timeout(tmp_path, raw, expected):
    """Only a positive StepTimeoutSeconds enables step timeouts."""

    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile=x.xlsx\nBusinessName=B\nSchemaVersion=2.0.0\n"
        f"[Ledger]\nCashAccountID=CASH\nStepTimeoutSeconds={raw}\n"
    )
    settings = data_manager.parse_settings(parser, base_path=tmp_path)
    assert settings.step_timeout_seconds == expected


def test_parse_settings_rejects_non_numeric_timeout(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile=x.xlsx\nBusinessName=B\nSchemaVersion=2.0.0\n"
        "[Ledger]\nCashAccountID=CASH\nStepTimeoutSeconds=soon\n"
    )
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    """open_workbook should hand back a loaded Workbook object."""

    workbook = data_manager.open_workbook(master_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)


def test_open_workbook_missing_file_raises(tmp_path):
    """Missing workbook files should yield FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_with_destination_creates_copy(master_workbook_path, tmp_path):
    """Providing a destination should create a new file independent of the source."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_supplier(workbook, data_manager.SupplierRow("S2", "Jordan Traders"))
    copy_path = tmp_path / "nested" / "copy.xlsx"
    data_manager.save_workbook(workbook, destination=copy_path)

    copy = openpyxl.load_workbook(copy_path)
    rows = list(copy[constants.SheetName.SUPPLIERS.value].iter_rows(min_row=2, values_only=True))
    assert ("S2", "Jordan Traders") in rows


def test_refresh_workbook_discards_unsaved_changes(master_workbook_path):
    """refresh_workbook should return a freshly loaded workbook from disk."""

    original = data_manager.open_workbook(master_workbook_path)
    data_manager.append_supplier(original, data_manager.SupplierRow("S3", "Unsaved"))

    refreshed = data_manager.refresh_workbook(master_workbook_path)
    assert refreshed is not original
    assert list(data_manager.iter_suppliers(refreshed)) == []


def test_saved_balances_survive_a_reload(master_workbook_path):
    """Decimal balances written in memory should read back as equal Decimals."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.persist_transaction(workbook, _transaction("R1", "CASH", "125.50"))
    data_manager.save_workbook(workbook, master_workbook_path)

    reloaded = data_manager.open_workbook(master_workbook_path)
    assert data_manager.get_account_balance(reloaded, "CASH") == Decimal("125.50")
    assert [row.record_id for row in data_manager.iter_transactions(reloaded)] == ["R1"]


# ---------------------------------------------------------------------------
# Accounts and balance movements
# ---------------------------------------------------------------------------


def test_iter_accounts_yields_seeded_cash_account(memory_workbook):
    accounts = list(data_manager.iter_accounts(memory_workbook))
    assert len(accounts) == 1
    assert accounts[0].account_id == "CASH"
    assert accounts[0].account_kind == constants.AccountKind.CASH.value
    assert accounts[0].balance == Decimal("0")


def test_get_account_missing_raises(memory_workbook):
    """Unknown account ids should surface a KeyError."""

    with pytest.raises(KeyError):
        data_manager.get_account(memory_workbook, "NOPE")


def test_append_account_rejects_duplicates(memory_workbook):
    """append_account should refuse a second row with the same id."""

    duplicate = data_manager.AccountRow("CASH", "Cash", "Again", Decimal("0"), "2025-01-01T00:00:00")
    with pytest.raises(ValueError):
        data_manager.append_account(memory_workbook, duplicate)


def test_list_bank_accounts_keeps_creation_order(memory_workbook):
    for account_id in ("B2", "B1"):
        data_manager.append_account(
            memory_workbook,
            data_manager.AccountRow(account_id, "Bank", f"Bank {account_id}", Decimal("0"), "2025-01-01"),
        )

    banks = data_manager.list_bank_accounts(memory_workbook)
    assert [bank.account_id for bank in banks] == ["B2", "B1"]


def test_persist_transaction_appends_record_and_updates_balance(memory_workbook):
    """persist_transaction should write the record and the new balance together."""

    data_manager.persist_transaction(memory_workbook, _transaction("R1", "CASH", "300"))
    data_manager.persist_transaction(memory_workbook, _transaction("R2", "CASH", "-120.25"))

    assert data_manager.get_account_balance(memory_workbook, "CASH") == Decimal("179.75")
    assert [row.record_id for row in data_manager.iter_transactions(memory_workbook)] == ["R1", "R2"]


def test_persist_transaction_unknown_account_writes_nothing(memory_workbook):
    """An unknown account should fail before any row is appended."""

    with pytest.raises(KeyError):
        data_manager.persist_transaction(memory_workbook, _transaction("R1", "NOPE", "10"))
    assert list(data_manager.iter_transactions(memory_workbook)) == []


def test_locate_row_returns_row_index(memory_workbook):
    """locate_row should return the worksheet index of the matching key."""

    row_index = data_manager.locate_row(memory_workbook, constants.SheetName.ACCOUNTS.value, "AccountID", "CASH")
    assert row_index == 2


def test_locate_row_unknown_column_raises(memory_workbook):
    with pytest.raises(KeyError):
        data_manager.locate_row(memory_workbook, constants.SheetName.ACCOUNTS.value, "Nope", "CASH")


def test_update_cells_rejects_unknown_fields(memory_workbook):
    with pytest.raises(KeyError):
        data_manager.update_cells(
            memory_workbook,
            constants.SheetName.ACCOUNTS.value,
            2,
            field_values={"Colour": "red"},
        )


# ---------------------------------------------------------------------------
# Suppliers, inventory and ledgers
# ---------------------------------------------------------------------------


def test_persist_inventory_change_writes_inventory_and_purchase(memory_workbook):
    """The inventory record and its purchase event are written by one call."""

    inventory = data_manager.InventoryRow(
        "P1", "Widget", "Parts", Decimal("4"), Decimal("2.50"), None, "W1", "2025-01-01T00:00:00"
    )
    purchase = data_manager.PurchaseRow("P1", "2025-01-01T00:00:00", Decimal("10"), Decimal("4"), None, "Stocked")

    assert data_manager.persist_inventory_change(memory_workbook, inventory, purchase) == "P1"
    assert data_manager.get_inventory(memory_workbook, "P1") == inventory
    assert data_manager.fetch_product_purchases(memory_workbook, "P1") == [purchase]


def test_persist_inventory_change_rejects_duplicate_ids(memory_workbook):
    inventory = data_manager.InventoryRow("P1", "Widget", None, Decimal("1"), Decimal("1"), None, None, "t")
    purchase = data_manager.PurchaseRow("P1", "2025-01-01T00:00:00", Decimal("1"), Decimal("1"), None, None)
    data_manager.persist_inventory_change(memory_workbook, inventory, purchase)

    with pytest.raises(ValueError):
        data_manager.persist_inventory_change(memory_workbook, inventory, purchase)
    assert len(data_manager.fetch_product_purchases(memory_workbook, "P1")) == 1


def test_persist_supplier_ledger_entry_requires_known_supplier(memory_workbook):
    """Ledger entries against unknown suppliers should raise KeyError."""

    entry = data_manager.SupplierLedgerRow("SL1", "S404", Decimal("5"), "Purchase", "P1", "2025-01-01")
    with pytest.raises(KeyError):
        data_manager.persist_supplier_ledger_entry(memory_workbook, entry)

    data_manager.append_supplier(memory_workbook, data_manager.SupplierRow("S404", "Found"))
    assert data_manager.persist_supplier_ledger_entry(memory_workbook, entry) == "SL1"
    assert list(data_manager.iter_supplier_ledger(memory_workbook)) == [entry]


def test_persist_expense_and_deferred_payment_round_trip(memory_workbook):
    expense = data_manager.ExpenseRow(
        "E1", "Rent", Decimal("80"), None, "2025-02-01", "cash", None, None, "2025-02-01T09:00:00"
    )
    deferred = data_manager.DeferredPaymentRow(
        "D1", "SL1", Decimal("40"), "cheque", "B1", "2025-03-01", "PENDING", "2025-02-01T09:00:00"
    )

    assert data_manager.persist_expense_entry(memory_workbook, expense) == "E1"
    assert data_manager.persist_deferred_payment(memory_workbook, deferred) == "D1"
    assert list(data_manager.iter_expenses(memory_workbook)) == [expense]
    assert list(data_manager.iter_deferred_payments(memory_workbook)) == [deferred]


def test_fetch_feeds_filter_by_product(memory_workbook):
    """Each raw event feed should only return rows of the requested product."""

    data_manager.append_stock_arrival(
        memory_workbook, data_manager.ArrivalRow("P1", "2025-01-03", Decimal("2"), "North", Decimal("1"))
    )
    data_manager.append_stock_arrival(
        memory_workbook, data_manager.ArrivalRow("P2", "2025-01-03", Decimal("9"), None, None)
    )
    data_manager.append_sale(
        memory_workbook,
        data_manager.SaleRow("SA1", "P1", "2025-01-05", Decimal("1"), Decimal("3"), Decimal("3"), "Ana"),
    )

    arrivals = data_manager.fetch_product_arrivals(memory_workbook, "P1")
    sales = data_manager.fetch_product_sales(memory_workbook, "P1")
    assert [row.quantity for row in arrivals] == [Decimal("2")]
    assert arrivals[0].remaining_in_shipping == Decimal("1")
    assert [row.sale_id for row in sales] == ["SA1"]
    assert data_manager.fetch_product_sales(memory_workbook, "P2") == []


# ---------------------------------------------------------------------------
# Row (de)serialization
# ---------------------------------------------------------------------------


def test_serialize_row_follows_sheet_columns():
    """Field order of every row dataclass should match its sheet header."""

    record = _transaction("R9", "CASH", "-4.00")
    assert data_manager.serialize_row(record) == [
        "R9",
        "CASH",
        Decimal("-4.00"),
        "Test movement",
        "2025-01-01T10:00:00+00:00",
        None,
    ]
    assert len(data_manager.serialize_row(record)) == len(
        data_manager.SHEET_COLUMNS[constants.SheetName.TRANSACTIONS.value]
    )


def test_deserialize_transaction_coerces_numeric_cells():
    record = data_manager.deserialize_transaction(["R1", "CASH", 12.5, "Desc", "2025-01-01", None])
    assert record.signed_amount == Decimal("12.5")
    assert record.caused_by is None


def test_deserialize_account_rejects_non_numeric_balance():
    """Corrupt balance cells should raise a ValueError rather than return garbage."""

    with pytest.raises(ValueError):
        data_manager.deserialize_account(["CASH", "Cash", "Cash", "lots", "2025-01-01"])


def test_deserialize_arrival_keeps_missing_shipping_as_none():
    record = data_manager.deserialize_arrival(["P1", "2025-01-01", 3, None, None])
    assert record.remaining_in_shipping is None
    assert record.warehouse_name is None
