"""Tests for the transfer coordinator: validation, saga execution and compensation."""

from __future__ import annotations

import threading
import time
from dataclasses import replace
from decimal import Decimal
from unittest.mock import Mock

import pytest

from ledger_core import core_logic, data_manager, transfers
from ledger_core.constants import AccountKind
from ledger_core.results import ErrorCategory, ErrorKind, TransferStatus

CASH = "CASH"


def _intent(amount="100", source=(AccountKind.CASH, None), dest=(AccountKind.BANK, "B2"), description=None):
    return transfers.TransferIntent(
        source_kind=source[0],
        source_account_id=source[1],
        dest_kind=dest[0],
        dest_account_id=dest[1],
        amount=amount,
        description=description,
    )


def _balances(context):
    return {account.account_id: account.balance for account in data_manager.iter_accounts(context.workbook)}


def _record_count(context):
    return len(core_logic.list_transactions(context))


class _FailOnCall:
    """Wrap ``apply_transaction`` so that selected calls raise instead."""

    def __init__(self, real, failures):
        self.real = real
        self.failures = failures
        self.calls = 0

    def __call__(self, *args, **kwargs):
        self.calls += 1
        error = self.failures.get(self.calls)
        if error is not None:
            raise error
        return self.real(*args, **kwargs)


# ---------------------------------------------------------------------------
# Successful transfers
# ---------------------------------------------------------------------------


def test_transfer_cash_to_bank_moves_money(funded_ledger):
    """Cash=500, transfer 100 to B2: Cash=400, B2=100, two records."""

    before = _record_count(funded_ledger)
    result = transfers.transfer(funded_ledger, _intent("100"))

    assert result.ok
    assert result.status is TransferStatus.COMPLETED
    assert result.error is None
    balances = _balances(funded_ledger)
    assert balances[CASH] == Decimal("400")
    assert balances["B2"] == Decimal("100")
    assert _record_count(funded_ledger) == before + 2
    assert result.credit_record.caused_by == result.debit_record_id


def test_transfer_bank_to_bank(funded_ledger):
    result = transfers.transfer(
        funded_ledger,
        _intent("75.50", source=(AccountKind.BANK, "B1"), dest=(AccountKind.BANK, "B2")),
    )

    assert result.ok
    balances = _balances(funded_ledger)
    assert balances["B1"] == Decimal("124.50")
    assert balances["B2"] == Decimal("75.50")


def test_transfer_bank_to_cash_uses_default_description(funded_ledger):
    result = transfers.transfer(funded_ledger, _intent("20", source=(AccountKind.BANK, "B1"), dest=(AccountKind.CASH, None)))

    assert result.ok
    assert result.debit_record.description == "Account Transfer to Cash"
    assert result.credit_record.description == "Account Transfer from First Bank"


def test_transfer_is_not_idempotent(funded_ledger):
    """Submitting the same intent twice moves the money twice."""

    intent = _intent("50")
    transfers.transfer(funded_ledger, intent)
    transfers.transfer(funded_ledger, intent)
    assert _balances(funded_ledger)["B2"] == Decimal("100")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def test_transfer_insufficient_funds_creates_no_records(funded_ledger):
    """Cash=500, transfer 600: InsufficientFunds with the available balance."""

    before = _record_count(funded_ledger)
    result = transfers.transfer(funded_ledger, _intent("600"))

    assert result.status is TransferStatus.FAILED
    assert result.error.kind is ErrorKind.INSUFFICIENT_FUNDS
    assert result.error.category is ErrorCategory.CONFLICT
    assert result.error.available_balance == Decimal("500")
    assert _record_count(funded_ledger) == before
    assert _balances(funded_ledger)[CASH] == Decimal("500")


@pytest.mark.parametrize("amount", ["1", "500", "600"])
def test_cash_to_cash_is_always_unsupported(funded_ledger, amount):
    """Cash to Cash fails Unsupported whatever the balance, and writes nothing."""

    result = transfers.transfer(
        funded_ledger,
        _intent(amount, source=(AccountKind.CASH, "B1"), dest=(AccountKind.CASH, "B2")),
    )

    assert result.status is TransferStatus.FAILED
    assert result.error.kind is ErrorKind.UNSUPPORTED
    assert result.error.category is ErrorCategory.CONFLICT
    assert _record_count(funded_ledger) == 2


def test_transfer_same_bank_account_is_rejected(funded_ledger):
    result = transfers.transfer(funded_ledger, _intent("10", source=(AccountKind.BANK, "B1"), dest=(AccountKind.BANK, "B1")))

    assert result.error.kind is ErrorKind.SAME_ACCOUNT
    assert _record_count(funded_ledger) == 2


@pytest.mark.parametrize("amount", ["0", "-1", "abc", None])
def test_transfer_rejects_invalid_amounts_first(funded_ledger, amount):
    """Amount validation wins over every other rule."""

    result = transfers.transfer(funded_ledger, _intent(amount, source=(AccountKind.BANK, "B1"), dest=(AccountKind.BANK, "B1")))

    assert result.error.kind is ErrorKind.INVALID_AMOUNT
    assert result.error.category is ErrorCategory.VALIDATION


def test_transfer_unknown_account_fails_before_mutation(funded_ledger):
    before = _balances(funded_ledger)
    result = transfers.transfer(funded_ledger, _intent("10", dest=(AccountKind.BANK, "B404")))

    assert result.error.kind is ErrorKind.ACCOUNT_NOT_FOUND
    assert _balances(funded_ledger) == before


def test_transfer_to_bank_without_id_is_rejected(funded_ledger):
    result = transfers.transfer(funded_ledger, _intent("10", dest=(AccountKind.BANK, None)))
    assert result.error.kind is ErrorKind.ACCOUNT_NOT_FOUND


def test_transfer_unknown_kind_is_invalid_input(funded_ledger):
    result = transfers.transfer(funded_ledger, _intent("10", dest=("Wallet", "B2")))
    assert result.error.kind is ErrorKind.INVALID_INPUT


def test_validate_transfer_returns_plan(funded_ledger):
    plan = transfers.validate_transfer(funded_ledger, _intent("10", description="  Float top-up  "))
    assert plan.source.account_id == CASH
    assert plan.dest.account_id == "B2"
    assert plan.description == "Float top-up"


# ---------------------------------------------------------------------------
# Failures after validation
# ---------------------------------------------------------------------------


def test_debit_failure_leaves_no_records(funded_ledger, monkeypatch):
    before = _record_count(funded_ledger)
    monkeypatch.setattr(core_logic, "apply_transaction", Mock(side_effect=OSError("disk full")))

    result = transfers.transfer(funded_ledger, _intent("100"))

    assert result.status is TransferStatus.FAILED
    assert result.error.kind is ErrorKind.TRANSFER_DEBIT_FAILED
    assert result.error.failed_step == "debit"
    assert result.error.committed_ids == {}
    assert _record_count(funded_ledger) == before


def test_debit_rejected_at_commit_time_reports_insufficient_funds(funded_ledger, monkeypatch):
    """The recorder's fresh-balance check wins over a stale pre-check."""

    row_index = data_manager.locate_row(funded_ledger.workbook, "Accounts", "AccountID", CASH)
    data_manager.update_cells(funded_ledger.workbook, "Accounts", row_index, field_values={"Balance": Decimal("40")})

    result = transfers.transfer(funded_ledger, _intent("100"))

    assert result.status is TransferStatus.FAILED
    assert result.error.kind is ErrorKind.INSUFFICIENT_FUNDS
    assert result.error.available_balance == Decimal("40")
    assert result.error.failed_step == "debit"


def test_credit_failure_is_compensated(funded_ledger, monkeypatch):
    """A failed credit triggers exactly one compensating credit to the source."""

    wrapped = _FailOnCall(core_logic.apply_transaction, {2: OSError("credit lost")})
    monkeypatch.setattr(core_logic, "apply_transaction", wrapped)

    result = transfers.transfer(funded_ledger, _intent("100"))

    assert result.status is TransferStatus.COMPENSATED
    assert result.error.kind is ErrorKind.PARTIAL_TRANSFER_FAILURE
    assert result.error.category is ErrorCategory.PARTIAL_FAILURE
    assert result.error.failed_step == "credit"
    assert result.error.committed_ids == {
        "debit": result.debit_record_id,
        "compensation": result.compensation_record.record_id,
    }
    assert result.compensation_record.caused_by == result.debit_record_id
    assert wrapped.calls == 3
    balances = _balances(funded_ledger)
    assert balances[CASH] == Decimal("500")
    assert balances["B2"] == Decimal("0")
    assert core_logic.verify_account_balances(funded_ledger) == {}


def test_failed_compensation_is_unreconciled_with_both_ids(funded_ledger, monkeypatch):
    """Credit and compensation both failing surfaces UnreconciledTransfer."""

    wrapped = _FailOnCall(
        core_logic.apply_transaction,
        {2: OSError("credit lost"), 3: TimeoutError("compensation hung")},
    )
    monkeypatch.setattr(core_logic, "apply_transaction", wrapped)

    result = transfers.transfer(funded_ledger, _intent("100"))

    assert result.status is TransferStatus.UNRECONCILED
    assert result.error.kind is ErrorKind.UNRECONCILED_TRANSFER
    assert result.error.category is ErrorCategory.UNRECONCILED
    assert result.debit_record_id is not None
    assert result.compensation_record_id is not None
    assert result.error.committed_ids["debit"] == result.debit_record_id
    assert result.error.committed_ids["compensation"] == result.compensation_record_id
    assert result.error.committed_ids["credit"] == result.credit_record_id
    assert wrapped.calls == 3
    assert _balances(funded_ledger)[CASH] == Decimal("400")


def test_unreconciled_transfer_is_logged_as_error(funded_ledger, monkeypatch, caplog):
    wrapped = _FailOnCall(core_logic.apply_transaction, {2: OSError("x"), 3: OSError("y")})
    monkeypatch.setattr(core_logic, "apply_transaction", wrapped)
    caplog.set_level("ERROR")

    transfers.transfer(funded_ledger, _intent("100"))

    assert any("UNRECONCILED" in record.getMessage() for record in caplog.records)


def _with_timeout(context, seconds=0.05):
    return core_logic.RuntimeContext(
        settings=replace(context.settings, step_timeout_seconds=seconds),
        workbook=context.workbook,
    )


class _LateOnCall:
    """Wrap ``apply_transaction`` so one call stalls past the timeout, then really commits."""

    def __init__(self, real, slow_call, delay=0.3):
        self.real = real
        self.slow_call = slow_call
        self.delay = delay
        self.calls = 0
        self.finished = threading.Event()
        self.late_error = None

    def __call__(self, *args, **kwargs):
        self.calls += 1
        if self.calls != self.slow_call:
            return self.real(*args, **kwargs)
        time.sleep(self.delay)
        try:
            return self.real(*args, **kwargs)
        except Exception as exc:
            self.late_error = exc
            raise
        finally:
            self.finished.set()


def test_late_credit_after_timeout_is_refused(funded_ledger, monkeypatch):
    """A credit that stalls past the timeout cannot land after the compensation."""

    context = _with_timeout(funded_ledger)
    before = _record_count(context)
    late = _LateOnCall(core_logic.apply_transaction, slow_call=2)
    monkeypatch.setattr(core_logic, "apply_transaction", late)

    result = transfers.transfer(context, _intent("100"))
    assert late.finished.wait(2)

    assert result.status is TransferStatus.COMPENSATED
    assert result.credit_record is None
    assert "timed out after 0.05s" in result.error.message
    assert isinstance(late.late_error, core_logic.StepAbandoned)
    assert _balances(context) == {CASH: Decimal("500"), "B1": Decimal("200"), "B2": Decimal("0")}
    assert _record_count(context) == before + 2
    assert core_logic.verify_account_balances(context) == {}


def test_late_debit_after_timeout_is_refused(funded_ledger, monkeypatch):
    context = _with_timeout(funded_ledger)
    before = _record_count(context)
    late = _LateOnCall(core_logic.apply_transaction, slow_call=1)
    monkeypatch.setattr(core_logic, "apply_transaction", late)

    result = transfers.transfer(context, _intent("100"))
    assert late.finished.wait(2)

    assert result.status is TransferStatus.FAILED
    assert result.error.kind is ErrorKind.TRANSFER_DEBIT_FAILED
    assert result.error.message == "Debit step failed: timed out after 0.05s"
    assert result.error.committed_ids == {}
    assert late.calls == 1
    assert _balances(context)[CASH] == Decimal("500")
    assert _record_count(context) == before


# ---------------------------------------------------------------------------
# Abort handling
# ---------------------------------------------------------------------------


def test_abort_before_debit_cancels_cleanly(funded_ledger):
    abort = threading.Event()
    abort.set()
    before = _record_count(funded_ledger)

    result = transfers.transfer(funded_ledger, _intent("100"), abort=abort)

    assert result.status is TransferStatus.FAILED
    assert result.error.kind is ErrorKind.CANCELLED
    assert _record_count(funded_ledger) == before


def test_abort_after_debit_is_compensated(funded_ledger, monkeypatch):
    """An abort observed once the debit committed is treated as a failed credit."""

    abort = threading.Event()
    real = core_logic.apply_transaction

    def debit_then_abort(*args, **kwargs):
        record = real(*args, **kwargs)
        abort.set()
        return record

    monkeypatch.setattr(core_logic, "apply_transaction", debit_then_abort)
    result = transfers.transfer(funded_ledger, _intent("100"), abort=abort)

    assert result.status is TransferStatus.COMPENSATED
    assert result.error.failed_step == "credit"
    assert "Abort" in result.error.message
    assert _balances(funded_ledger)[CASH] == Decimal("500")
