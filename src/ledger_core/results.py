"""Discriminated results returned by the exposed ledger operations.

Expected business failures never escape as exceptions: ``transfer``,
``execute_purchase``, ``execute_expense`` and ``build_timeline`` always return
one of the result types below. A result carries a status, the ids of every
side effect that committed, and an :class:`OperationError` describing what
went wrong when the status is not a success.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Mapping, Optional, Tuple

from . import core_logic, data_manager
from .constants import EventKind


class ErrorCategory(str, Enum):
    """How callers may react to an error."""

    VALIDATION = "validation"
    CONFLICT = "conflict"
    OPERATION_FAILED = "operation_failed"
    PARTIAL_FAILURE = "partial_failure"
    UNRECONCILED = "unreconciled"


class ErrorKind(str, Enum):
    INVALID_AMOUNT = "InvalidAmount"
    INVALID_INPUT = "InvalidInput"
    ACCOUNT_NOT_FOUND = "AccountNotFound"
    PRODUCT_NOT_FOUND = "ProductNotFound"
    SAME_ACCOUNT = "SameAccount"
    UNSUPPORTED = "Unsupported"
    INSUFFICIENT_FUNDS = "InsufficientFunds"
    CANCELLED = "Cancelled"
    TRANSFER_DEBIT_FAILED = "TransferDebitFailed"
    PARTIAL_TRANSFER_FAILURE = "PartialTransferFailure"
    UNRECONCILED_TRANSFER = "UnreconciledTransfer"
    INVENTORY_WRITE_FAILED = "InventoryWriteFailed"
    PARTIAL_PURCHASE = "PartialPurchase"
    EXPENSE_LEDGER_FAILED = "ExpenseLedgerFailed"
    PARTIAL_EXPENSE = "PartialExpense"
    SOURCE_FETCH_FAILED = "SourceFetchFailed"
    ADJUSTMENT_FAILED = "BalanceAdjustmentFailed"


@dataclass(frozen=True)
class OperationError:
    """Failure details attached to a non-successful result.

    ``committed_ids`` maps effect names to the ids of side effects that were
    already committed (or, for unreconciled transfers, attempted with an
    unknown outcome) so reconciliation never has to guess.
    """

    kind: ErrorKind
    category: ErrorCategory
    message: str
    failed_step: Optional[str] = None
    available_balance: Optional[Decimal] = None
    committed_ids: Mapping[str, str] = field(default_factory=dict)


class OperationStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class TransferStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    COMPENSATED = "compensated"
    UNRECONCILED = "unreconciled"


@dataclass(frozen=True)
class EffectFlags:
    """Which effects of a business operation have committed."""

    inventory: bool = False
    ledger: bool = False
    account: bool = False
    deferred: bool = False


@dataclass(frozen=True)
class TransferResult:
    """Outcome of a transfer, including every record that was created.

    ``credit_record_id`` and ``compensation_record_id`` are the ids allocated
    for those steps. They are set even when the step did not confirm, so an
    :attr:`TransferStatus.UNRECONCILED` result can be matched against the
    ledger during manual reconciliation.
    """

    status: TransferStatus
    debit_record: Optional[data_manager.TransactionRow] = None
    credit_record: Optional[data_manager.TransactionRow] = None
    compensation_record: Optional[data_manager.TransactionRow] = None
    credit_record_id: Optional[str] = None
    compensation_record_id: Optional[str] = None
    error: Optional[OperationError] = None

    @property
    def ok(self) -> bool:
        return self.status is TransferStatus.COMPLETED

    @property
    def debit_record_id(self) -> Optional[str]:
        return self.debit_record.record_id if self.debit_record is not None else None

    @property
    def records(self) -> Tuple[data_manager.TransactionRow, ...]:
        """Records committed by this transfer, in commit order."""

        return tuple(
            record
            for record in (self.debit_record, self.credit_record, self.compensation_record)
            if record is not None
        )


@dataclass(frozen=True)
class PurchaseResult:
    """Outcome of a purchase; ``pending_steps`` lists what a retry would replay."""

    status: OperationStatus
    effects: EffectFlags
    product_id: Optional[str] = None
    ledger_entry_id: Optional[str] = None
    account_record: Optional[data_manager.TransactionRow] = None
    deferred_payment_id: Optional[str] = None
    pending_steps: Tuple[str, ...] = ()
    error: Optional[OperationError] = None

    @property
    def ok(self) -> bool:
        return self.status is OperationStatus.SUCCESS


@dataclass(frozen=True)
class ExpenseResult:
    status: OperationStatus
    effects: EffectFlags
    expense_entry_id: Optional[str] = None
    account_record: Optional[data_manager.TransactionRow] = None
    pending_steps: Tuple[str, ...] = ()
    error: Optional[OperationError] = None

    @property
    def ok(self) -> bool:
        return self.status is OperationStatus.SUCCESS


@dataclass(frozen=True)
class AdjustmentResult:
    """Outcome of a manual add or deduct on one account."""

    status: OperationStatus
    record: Optional[data_manager.TransactionRow] = None
    error: Optional[OperationError] = None

    @property
    def ok(self) -> bool:
        return self.status is OperationStatus.SUCCESS


@dataclass(frozen=True)
class ProductEvent:
    """One entry of a product timeline, whatever source it came from."""

    date: datetime
    kind: EventKind
    quantity_delta: Decimal
    amount: Decimal
    counterparty_name: str
    description: str = ""


@dataclass(frozen=True)
class CustomerSales:
    customer_name: str
    total_quantity: Decimal
    total_amount: Decimal
    sale_count: int


@dataclass(frozen=True)
class ProductSummary:
    """Derived metrics reported alongside a product timeline."""

    product_id: str
    product_name: str
    supplier_name: str
    purchased_quantity: Decimal
    purchased_amount: Decimal
    arrived_quantity: Decimal
    in_shipping_quantity: Decimal
    sold_quantity: Decimal
    sold_amount: Decimal
    on_hand_quantity: Decimal
    warehouses: Mapping[str, Decimal]
    sales_by_customer: Tuple[CustomerSales, ...]


@dataclass(frozen=True)
class TimelineResult:
    """Either a complete timeline with its summary, or a failure with no events."""

    status: OperationStatus
    events: Tuple[ProductEvent, ...] = ()
    summary: Optional[ProductSummary] = None
    error: Optional[OperationError] = None

    @property
    def ok(self) -> bool:
        return self.status is OperationStatus.SUCCESS



def rejection_error(
    exc: BaseException,
    *,
    failed_step: Optional[str] = None,
    committed_ids: Optional[Mapping[str, str]] = None,
) -> Optional[OperationError]:
    """Translate a business-rule exception into an :class:`OperationError`.

    Returns ``None`` when ``exc`` is not one of the known rejections, leaving
    the caller to report the failure in the context of its own step.
    """

    ids = dict(committed_ids or {})
    if isinstance(exc, core_logic.InvalidAmount):
        kind, category = ErrorKind.INVALID_AMOUNT, ErrorCategory.VALIDATION
    elif isinstance(exc, core_logic.AccountNotFound):
        kind, category = ErrorKind.ACCOUNT_NOT_FOUND, ErrorCategory.VALIDATION
    elif isinstance(exc, core_logic.ProductNotFound):
        kind, category = ErrorKind.PRODUCT_NOT_FOUND, ErrorCategory.VALIDATION
    elif isinstance(exc, core_logic.InvalidInput):
        kind, category = ErrorKind.INVALID_INPUT, ErrorCategory.VALIDATION
    elif isinstance(exc, core_logic.SameAccount):
        kind, category = ErrorKind.SAME_ACCOUNT, ErrorCategory.CONFLICT
    elif isinstance(exc, core_logic.UnsupportedOperation):
        kind, category = ErrorKind.UNSUPPORTED, ErrorCategory.CONFLICT
    elif isinstance(exc, core_logic.InsufficientFunds):
        return OperationError(
            kind=ErrorKind.INSUFFICIENT_FUNDS,
            category=ErrorCategory.CONFLICT,
            message=str(exc),
            failed_step=failed_step,
            available_balance=exc.available,
            committed_ids=ids,
        )
    elif isinstance(exc, core_logic.OperationAborted):
        kind, category = ErrorKind.CANCELLED, ErrorCategory.VALIDATION
    else:
        return None
    return OperationError(
        kind=kind,
        category=category,
        message=str(exc),
        failed_step=failed_step,
        committed_ids=ids,
    )
