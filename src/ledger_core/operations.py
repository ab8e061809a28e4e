"""Purchases and expenses as ordered, independently committed steps.

A purchase writes the inventory record, then the supplier ledger entry, then
settles: ``cash`` and ``online`` debit an account through the recorder while
``cheque`` and ``credit`` only leave a deferred payment intent behind. An
expense writes the expense ledger entry and debits the selected bank for
``online`` and ``cheque`` payments.

Nothing is rolled back. When a later step fails the result reports which
effects committed, their ids, and the steps still pending, and the matching
``retry_*`` function replays only those steps.

Manual adjustments, a single add or deduct on the Cash account or a Bank,
are also defined here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from . import core_logic, data_manager, log
from .constants import (
    BANK_DEBIT_EXPENSE_METHODS,
    DEFERRED_PURCHASE_METHODS,
    AccountKind,
    DeferredStatus,
    Direction,
    PaymentMethod,
)
from .results import (
    AdjustmentResult,
    EffectFlags,
    ErrorCategory,
    ErrorKind,
    ExpenseResult,
    OperationError,
    OperationStatus,
    PurchaseResult,
    rejection_error,
)
from .transfers import AbortSignal


STEP_INVENTORY = "inventory"
STEP_SUPPLIER_LEDGER = "supplier_ledger"
STEP_ACCOUNT_DEBIT = "account_debit"
STEP_DEFERRED_INTENT = "deferred_intent"
STEP_EXPENSE_LEDGER = "expense_ledger"
STEP_ADJUSTMENT = "adjustment"


@dataclass(frozen=True)
class ProductDraft:
    """Inventory payload of a purchase; the stocked quantity is the purchase's."""

    name: str
    unit_price: Any
    category: Optional[str] = None
    warehouse_id: Optional[str] = None
    product_id: Optional[str] = None


@dataclass(frozen=True)
class PurchaseCommand:
    """A supplier purchase, or an own-inventory addition when ``supplier_id`` is ``None``.

    ``account_kind`` is optional; when given it must agree with the payment
    method (``cash`` settles against Cash, ``online`` and ``cheque`` against
    the Bank named by ``account_id``).
    """

    product: ProductDraft
    amount: Any
    quantity: Any
    supplier_id: Optional[str] = None
    payment_method: Optional[Union[PaymentMethod, str]] = None
    account_kind: Optional[Union[AccountKind, str]] = None
    account_id: Optional[str] = None
    cheque_date: Optional[date] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class ExpenseCommand:
    expense_name: str
    amount: Any
    payment_method: Union[PaymentMethod, str]
    description: Optional[str] = None
    expense_date: Optional[date] = None
    bank_id: Optional[str] = None
    cheque_date: Optional[date] = None


@dataclass
class _Progress:
    """Committed step ids of one operation, seeded from a previous result on retry."""

    ids: Dict[str, str] = field(default_factory=dict)
    account_record: Optional[data_manager.TransactionRow] = None

    def pending(self, steps: Sequence[str]) -> Tuple[str, ...]:
        return tuple(step for step in steps if step not in self.ids)


@dataclass(frozen=True)
class _PurchasePlan:
    amount: Decimal
    quantity: Decimal
    unit_price: Decimal
    product_name: str
    method: Optional[PaymentMethod]
    supplier: Optional[data_manager.SupplierRow]
    account: Optional[data_manager.AccountRow]
    steps: Tuple[str, ...]


@dataclass(frozen=True)
class _ExpensePlan:
    amount: Decimal
    expense_name: str
    method: PaymentMethod
    bank: Optional[data_manager.AccountRow]
    steps: Tuple[str, ...]


def _aborted(abort: Optional[AbortSignal]) -> bool:
    return abort is not None and abort.is_set()


def _parse_method(value: Union[PaymentMethod, str, None]) -> PaymentMethod:
    try:
        return PaymentMethod(value)
    except ValueError as exc:
        raise core_logic.InvalidInput(f"Unsupported payment method: {value!r}") from exc


def _parse_kind(value: Union[AccountKind, str]) -> AccountKind:
    try:
        return AccountKind(value)
    except ValueError as exc:
        raise core_logic.InvalidInput(f"Unknown account kind: {value!r}") from exc


def _require_bank(context: core_logic.RuntimeContext, account_id: Optional[str], method: PaymentMethod) -> data_manager.AccountRow:
    if not account_id:
        raise core_logic.InvalidInput(f"Select a bank account for {method.value} payments")
    return core_logic.resolve_account(context, AccountKind.BANK, account_id)


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _run_steps(
    steps: Sequence[str],
    actions: Mapping[str, Callable[[], str]],
    progress: _Progress,
    abort: Optional[AbortSignal],
) -> Optional[core_logic.StepFailed]:
    """Run every pending step in order, stopping at the first failure.

    An abort observed between steps is reported as a failure of the step that
    would have run next.
    """
    for step in progress.pending(steps):
        if _aborted(abort):
            log.warning("Abort observed before step '%s'", step)
            return core_logic.StepFailed(step, core_logic.OperationAborted(f"Aborted before step '{step}'"))
        try:
            progress.ids[step] = actions[step]()
        except core_logic.StepFailed as exc:
            return exc
    return None


def _step_error(
    failure: core_logic.StepFailed,
    progress: _Progress,
    *,
    first_step_kind: ErrorKind,
    partial_kind: ErrorKind,
) -> Tuple[OperationStatus, OperationError]:
    """Describe a step failure as a failed or partial result."""

    committed = dict(progress.ids)
    if not committed:
        error = rejection_error(failure.cause, failed_step=failure.step)
        if error is None:
            error = OperationError(
                kind=first_step_kind,
                category=ErrorCategory.OPERATION_FAILED,
                message=f"Step '{failure.step}' failed: {failure.cause}",
                failed_step=failure.step,
            )
        return OperationStatus.FAILED, error

    available = (
        failure.cause.available if isinstance(failure.cause, core_logic.InsufficientFunds) else None
    )
    log.error(
        "Operation left partially applied: step '%s' failed after %s committed (%s)",
        failure.step,
        ", ".join(f"{step}={ident}" for step, ident in committed.items()),
        failure.cause,
    )
    return OperationStatus.PARTIAL, OperationError(
        kind=partial_kind,
        category=ErrorCategory.PARTIAL_FAILURE,
        message=f"Step '{failure.step}' failed after earlier steps committed: {failure.cause}",
        failed_step=failure.step,
        available_balance=available,
        committed_ids=committed,
    )


# ---------------------------------------------------------------------------
# Purchases
# ---------------------------------------------------------------------------


def validate_purchase(context: core_logic.RuntimeContext, command: PurchaseCommand) -> _PurchasePlan:
    """Run every pre-flight check of a purchase without mutating anything.

    Raises:
        InvalidAmount: If the amount or unit price is invalid.
        InvalidInput: If the quantity, product name, payment method, supplier,
            bank selection or cheque date is missing or invalid.
        AccountNotFound: If the settlement account cannot be resolved.
    """
    amount = core_logic.require_positive_amount(command.amount)
    quantity = core_logic.require_positive_quantity(command.quantity)
    unit_price = core_logic.require_nonnegative_money(command.product.unit_price)
    product_name = (command.product.name or "").strip()
    if not product_name:
        raise core_logic.InvalidInput("Product name is required")

    if command.supplier_id is None:
        if command.payment_method is not None:
            raise core_logic.InvalidInput("Own inventory purchases take no payment method")
        return _PurchasePlan(
            amount=amount,
            quantity=quantity,
            unit_price=unit_price,
            product_name=product_name,
            method=None,
            supplier=None,
            account=None,
            steps=(STEP_INVENTORY,),
        )

    try:
        supplier = data_manager.get_supplier(context.workbook, command.supplier_id)
    except KeyError as exc:
        raise core_logic.InvalidInput(f"Unknown supplier id: {command.supplier_id}") from exc

    method = _parse_method(command.payment_method)
    expected_kind = AccountKind.CASH if method is PaymentMethod.CASH else AccountKind.BANK
    if command.account_kind is not None and _parse_kind(command.account_kind) is not expected_kind:
        raise core_logic.InvalidInput(
            f"{method.value} payments settle against a {expected_kind.value} account"
        )

    account: Optional[data_manager.AccountRow] = None
    if method is PaymentMethod.CASH:
        account = core_logic.resolve_account(context, AccountKind.CASH)
    elif method in (PaymentMethod.ONLINE, PaymentMethod.CHEQUE):
        account = _require_bank(context, command.account_id, method)
    if method is PaymentMethod.CHEQUE and command.cheque_date is None:
        raise core_logic.InvalidInput("Cheque payments require a cheque date")

    settle_step = STEP_DEFERRED_INTENT if method in DEFERRED_PURCHASE_METHODS else STEP_ACCOUNT_DEBIT
    return _PurchasePlan(
        amount=amount,
        quantity=quantity,
        unit_price=unit_price,
        product_name=product_name,
        method=method,
        supplier=supplier,
        account=account,
        steps=(STEP_INVENTORY, STEP_SUPPLIER_LEDGER, settle_step),
    )


def execute_purchase(
    context: core_logic.RuntimeContext,
    command: PurchaseCommand,
    *,
    abort: Optional[AbortSignal] = None,
    timestamp: Optional[datetime] = None,
) -> PurchaseResult:
    """Record a purchase as inventory, supplier ledger and settlement steps.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        command (PurchaseCommand): What was bought, from whom, and how it is paid.
        abort (AbortSignal | None): Honoured before the inventory write; later
            it counts as a failure of the next step.
        timestamp (datetime | None): Commit time for every record created.

    Returns:
        PurchaseResult: ``SUCCESS`` with every effect flag set for the planned
            steps, ``FAILED`` when nothing was committed, or ``PARTIAL`` with
            the committed ids and the steps a retry would replay.
    """
    return _run_purchase(context, command, _Progress(), abort=abort, timestamp=timestamp)


def retry_purchase(
    context: core_logic.RuntimeContext,
    command: PurchaseCommand,
    previous: PurchaseResult,
    *,
    abort: Optional[AbortSignal] = None,
    timestamp: Optional[datetime] = None,
) -> PurchaseResult:
    """Replay the steps ``previous`` left pending, reusing its committed ids."""

    if previous.ok:
        return previous
    progress = _Progress(account_record=previous.account_record)
    for step, ident in (
        (STEP_INVENTORY, previous.product_id),
        (STEP_SUPPLIER_LEDGER, previous.ledger_entry_id),
        (STEP_ACCOUNT_DEBIT, previous.account_record.record_id if previous.account_record else None),
        (STEP_DEFERRED_INTENT, previous.deferred_payment_id),
    ):
        if ident is not None:
            progress.ids[step] = ident
    log.info("Retrying purchase with committed steps: %s", ", ".join(progress.ids) or "none")
    return _run_purchase(context, command, progress, abort=abort, timestamp=timestamp)


def _run_purchase(
    context: core_logic.RuntimeContext,
    command: PurchaseCommand,
    progress: _Progress,
    *,
    abort: Optional[AbortSignal],
    timestamp: Optional[datetime],
) -> PurchaseResult:
    try:
        plan = validate_purchase(context, command)
    except core_logic.BusinessRuleViolation as exc:
        log.warning("Purchase rejected: %s", exc)
        return PurchaseResult(
            status=OperationStatus.FAILED,
            effects=_purchase_effects(progress),
            error=rejection_error(exc, committed_ids=progress.ids),
        )

    if _aborted(abort) and not progress.ids:
        log.info("Purchase cancelled before any effect")
        return PurchaseResult(
            status=OperationStatus.FAILED,
            effects=EffectFlags(),
            pending_steps=plan.steps,
            error=rejection_error(core_logic.OperationAborted("Purchase cancelled before any effect")),
        )

    moment = timestamp or datetime.now(UTC)
    actions = _purchase_actions(context, command, plan, progress, moment)
    failure = _run_steps(plan.steps, actions, progress, abort)
    if failure is None:
        log.info(
            "Purchase of %s x '%s' completed (%s)",
            plan.quantity,
            plan.product_name,
            ", ".join(f"{step}={ident}" for step, ident in progress.ids.items()),
        )
        return _purchase_result(OperationStatus.SUCCESS, progress, plan)

    status, error = _step_error(
        failure,
        progress,
        first_step_kind=ErrorKind.INVENTORY_WRITE_FAILED,
        partial_kind=ErrorKind.PARTIAL_PURCHASE,
    )
    return _purchase_result(status, progress, plan, error=error)


def _purchase_actions(
    context: core_logic.RuntimeContext,
    command: PurchaseCommand,
    plan: _PurchasePlan,
    progress: _Progress,
    moment: datetime,
) -> Dict[str, Callable[[], str]]:
    stamp = moment.isoformat()
    supplier_name = plan.supplier.supplier_name if plan.supplier is not None else None
    summary = f"{plan.quantity} x {plan.product_name}"

    def write_inventory() -> str:
        product_id = command.product.product_id or core_logic.generate_record_id(prefix="P", when=moment)
        inventory = data_manager.InventoryRow(
            product_id=product_id,
            product_name=plan.product_name,
            category=command.product.category,
            quantity=plan.quantity,
            unit_price=plan.unit_price,
            supplier_id=command.supplier_id,
            warehouse_id=command.product.warehouse_id,
            created_at_iso=stamp,
        )
        purchase = data_manager.PurchaseRow(
            product_id=product_id,
            timestamp_iso=stamp,
            amount=plan.amount,
            quantity=plan.quantity,
            supplier_name=supplier_name,
            description=command.description or f"Purchased {summary}",
        )
        return core_logic.run_step(
            context,
            STEP_INVENTORY,
            core_logic.commit_write,
            context,
            data_manager.persist_inventory_change,
            context.workbook,
            inventory,
            purchase,
        )

    def write_supplier_ledger() -> str:
        entry = data_manager.SupplierLedgerRow(
            entry_id=core_logic.generate_record_id(prefix="SL", when=moment),
            supplier_id=plan.supplier.supplier_id,
            amount=plan.amount,
            description=f"Purchase of {summary}",
            reference_id=progress.ids[STEP_INVENTORY],
            timestamp_iso=stamp,
        )
        return core_logic.run_step(
            context,
            STEP_SUPPLIER_LEDGER,
            core_logic.commit_write,
            context,
            data_manager.persist_supplier_ledger_entry,
            context.workbook,
            entry,
        )

    def debit_account() -> str:
        record = core_logic.run_step(
            context,
            STEP_ACCOUNT_DEBIT,
            core_logic.apply_transaction,
            context,
            plan.account.account_id,
            plan.amount,
            Direction.SUBTRACT,
            f"{plan.method.value.capitalize()} payment to {supplier_name} for {summary}",
            caused_by=progress.ids[STEP_SUPPLIER_LEDGER],
            record_id=core_logic.generate_record_id(when=moment),
            timestamp=moment,
        )
        progress.account_record = record
        return record.record_id

    def record_deferred_intent() -> str:
        intent = data_manager.DeferredPaymentRow(
            deferred_id=core_logic.generate_record_id(prefix="D", when=moment),
            reference_id=progress.ids[STEP_SUPPLIER_LEDGER],
            amount=plan.amount,
            payment_method=plan.method.value,
            account_id=plan.account.account_id if plan.account is not None else None,
            cheque_date=_iso(command.cheque_date),
            status=DeferredStatus.PENDING.value,
            timestamp_iso=stamp,
        )
        return core_logic.run_step(
            context,
            STEP_DEFERRED_INTENT,
            core_logic.commit_write,
            context,
            data_manager.persist_deferred_payment,
            context.workbook,
            intent,
        )

    return {
        STEP_INVENTORY: write_inventory,
        STEP_SUPPLIER_LEDGER: write_supplier_ledger,
        STEP_ACCOUNT_DEBIT: debit_account,
        STEP_DEFERRED_INTENT: record_deferred_intent,
    }


def _purchase_effects(progress: _Progress) -> EffectFlags:
    return EffectFlags(
        inventory=STEP_INVENTORY in progress.ids,
        ledger=STEP_SUPPLIER_LEDGER in progress.ids,
        account=STEP_ACCOUNT_DEBIT in progress.ids,
        deferred=STEP_DEFERRED_INTENT in progress.ids,
    )


def _purchase_result(
    status: OperationStatus,
    progress: _Progress,
    plan: _PurchasePlan,
    *,
    error: Optional[OperationError] = None,
) -> PurchaseResult:
    return PurchaseResult(
        status=status,
        effects=_purchase_effects(progress),
        product_id=progress.ids.get(STEP_INVENTORY),
        ledger_entry_id=progress.ids.get(STEP_SUPPLIER_LEDGER),
        account_record=progress.account_record,
        deferred_payment_id=progress.ids.get(STEP_DEFERRED_INTENT),
        pending_steps=progress.pending(plan.steps),
        error=error,
    )


# ---------------------------------------------------------------------------
# Expenses
# ---------------------------------------------------------------------------


def validate_expense(context: core_logic.RuntimeContext, command: ExpenseCommand) -> _ExpensePlan:
    """Run every pre-flight check of an expense without mutating anything.

    Raises:
        InvalidAmount: If the amount is not strictly positive.
        InvalidInput: If the name, payment method, bank selection or cheque
            date is missing or invalid.
        AccountNotFound: If the selected bank cannot be resolved.
    """
    amount = core_logic.require_positive_amount(command.amount)
    expense_name = (command.expense_name or "").strip()
    if not expense_name:
        raise core_logic.InvalidInput("Expense name is required")

    method = _parse_method(command.payment_method)
    bank: Optional[data_manager.AccountRow] = None
    steps: Tuple[str, ...] = (STEP_EXPENSE_LEDGER,)
    if method in BANK_DEBIT_EXPENSE_METHODS:
        bank = _require_bank(context, command.bank_id, method)
        steps = (STEP_EXPENSE_LEDGER, STEP_ACCOUNT_DEBIT)
    if method is PaymentMethod.CHEQUE and command.cheque_date is None:
        raise core_logic.InvalidInput("Cheque payments require a cheque date")
    return _ExpensePlan(amount=amount, expense_name=expense_name, method=method, bank=bank, steps=steps)


def execute_expense(
    context: core_logic.RuntimeContext,
    command: ExpenseCommand,
    *,
    abort: Optional[AbortSignal] = None,
    timestamp: Optional[datetime] = None,
) -> ExpenseResult:
    """Record an expense and, for ``online`` and ``cheque``, debit the selected bank.

    ``cash`` and ``credit`` expenses only produce the ledger entry.
    """
    return _run_expense(context, command, _Progress(), abort=abort, timestamp=timestamp)


def retry_expense(
    context: core_logic.RuntimeContext,
    command: ExpenseCommand,
    previous: ExpenseResult,
    *,
    abort: Optional[AbortSignal] = None,
    timestamp: Optional[datetime] = None,
) -> ExpenseResult:
    """Replay the steps ``previous`` left pending, reusing its committed ids."""

    if previous.ok:
        return previous
    progress = _Progress(account_record=previous.account_record)
    if previous.expense_entry_id is not None:
        progress.ids[STEP_EXPENSE_LEDGER] = previous.expense_entry_id
    if previous.account_record is not None:
        progress.ids[STEP_ACCOUNT_DEBIT] = previous.account_record.record_id
    log.info("Retrying expense with committed steps: %s", ", ".join(progress.ids) or "none")
    return _run_expense(context, command, progress, abort=abort, timestamp=timestamp)


def _run_expense(
    context: core_logic.RuntimeContext,
    command: ExpenseCommand,
    progress: _Progress,
    *,
    abort: Optional[AbortSignal],
    timestamp: Optional[datetime],
) -> ExpenseResult:
    try:
        plan = validate_expense(context, command)
    except core_logic.BusinessRuleViolation as exc:
        log.warning("Expense rejected: %s", exc)
        return ExpenseResult(
            status=OperationStatus.FAILED,
            effects=_expense_effects(progress),
            error=rejection_error(exc, committed_ids=progress.ids),
        )

    if _aborted(abort) and not progress.ids:
        log.info("Expense cancelled before any effect")
        return ExpenseResult(
            status=OperationStatus.FAILED,
            effects=EffectFlags(),
            pending_steps=plan.steps,
            error=rejection_error(core_logic.OperationAborted("Expense cancelled before any effect")),
        )

    moment = timestamp or datetime.now(UTC)
    stamp = moment.isoformat()

    def write_expense_ledger() -> str:
        entry = data_manager.ExpenseRow(
            entry_id=core_logic.generate_record_id(prefix="E", when=moment),
            expense_name=plan.expense_name,
            amount=plan.amount,
            description=command.description,
            expense_date=(command.expense_date or moment.date()).isoformat(),
            payment_method=plan.method.value,
            bank_id=plan.bank.account_id if plan.bank is not None else None,
            cheque_date=_iso(command.cheque_date) if plan.method is PaymentMethod.CHEQUE else None,
            timestamp_iso=stamp,
        )
        return core_logic.run_step(
            context,
            STEP_EXPENSE_LEDGER,
            core_logic.commit_write,
            context,
            data_manager.persist_expense_entry,
            context.workbook,
            entry,
        )

    def debit_bank() -> str:
        record = core_logic.run_step(
            context,
            STEP_ACCOUNT_DEBIT,
            core_logic.apply_transaction,
            context,
            plan.bank.account_id,
            plan.amount,
            Direction.SUBTRACT,
            f"Expense: {plan.expense_name} ({plan.method.value})",
            caused_by=progress.ids[STEP_EXPENSE_LEDGER],
            record_id=core_logic.generate_record_id(when=moment),
            timestamp=moment,
        )
        progress.account_record = record
        return record.record_id

    actions = {STEP_EXPENSE_LEDGER: write_expense_ledger, STEP_ACCOUNT_DEBIT: debit_bank}
    failure = _run_steps(plan.steps, actions, progress, abort)
    if failure is None:
        log.info("Expense '%s' of %s recorded (%s)", plan.expense_name, plan.amount, plan.method.value)
        return _expense_result(OperationStatus.SUCCESS, progress, plan)

    status, error = _step_error(
        failure,
        progress,
        first_step_kind=ErrorKind.EXPENSE_LEDGER_FAILED,
        partial_kind=ErrorKind.PARTIAL_EXPENSE,
    )
    return _expense_result(status, progress, plan, error=error)


def _expense_effects(progress: _Progress) -> EffectFlags:
    return EffectFlags(
        ledger=STEP_EXPENSE_LEDGER in progress.ids,
        account=STEP_ACCOUNT_DEBIT in progress.ids,
    )


def _expense_result(
    status: OperationStatus,
    progress: _Progress,
    plan: _ExpensePlan,
    *,
    error: Optional[OperationError] = None,
) -> ExpenseResult:
    return ExpenseResult(
        status=status,
        effects=_expense_effects(progress),
        expense_entry_id=progress.ids.get(STEP_EXPENSE_LEDGER),
        account_record=progress.account_record,
        pending_steps=progress.pending(plan.steps),
        error=error,
    )


# ---------------------------------------------------------------------------
# Deferred payments
# ---------------------------------------------------------------------------


def list_deferred_payments(
    context: core_logic.RuntimeContext,
    *,
    due_on: Optional[date] = None,
) -> List[data_manager.DeferredPaymentRow]:
    """Return pending deferred payment intents in the order they were recorded.

    When ``due_on`` is given only cheques dated on or before it are returned;
    credit intents carry no date and are left out.
    """
    pending = [
        row
        for row in data_manager.iter_deferred_payments(context.workbook)
        if row.status == DeferredStatus.PENDING.value
    ]
    if due_on is None:
        return pending
    return [
        row
        for row in pending
        if row.cheque_date and date.fromisoformat(row.cheque_date[:10]) <= due_on
    ]


# ---------------------------------------------------------------------------
# Manual balance adjustments
# ---------------------------------------------------------------------------


_ADJUST_DIRECTIONS = {
    "add": Direction.ADD,
    "deduct": Direction.SUBTRACT,
    "subtract": Direction.SUBTRACT,
}


def adjust_balance(
    context: core_logic.RuntimeContext,
    kind: Union[AccountKind, str],
    account_id: Optional[str],
    amount: Any,
    direction: Union[Direction, str],
    description: Optional[str] = None,
    *,
    timestamp: Optional[datetime] = None,
) -> AdjustmentResult:
    """Add money to, or deduct it from, one account by hand.

    Cash needs no ``account_id``; a Bank does. ``direction`` is ``add`` or
    ``deduct`` (``subtract`` is accepted too). The movement goes through the
    recorder, so a deduction larger than the stored balance is rejected with
    ``InsufficientFunds`` and nothing is written. Without a description the
    record reads "Cash added manually", "Bank balance deducted manually" and
    so on.
    """
    try:
        resolved = _ADJUST_DIRECTIONS.get(str(getattr(direction, "value", direction)).strip().lower())
        if resolved is None:
            raise core_logic.InvalidInput(f"Direction must be 'add' or 'deduct', got {direction!r}")
        magnitude = core_logic.require_positive_amount(amount)
        account = core_logic.resolve_account(context, kind, account_id)
    except core_logic.BusinessRuleViolation as exc:
        log.warning("Balance adjustment rejected: %s", exc)
        return AdjustmentResult(status=OperationStatus.FAILED, error=rejection_error(exc))

    verb = "added" if resolved is Direction.ADD else "deducted"
    subject = "Cash" if account.account_kind == AccountKind.CASH.value else "Bank balance"
    text = (description or "").strip() or f"{subject} {verb} manually"
    try:
        record = core_logic.run_step(
            context,
            STEP_ADJUSTMENT,
            core_logic.apply_transaction,
            context,
            account.account_id,
            magnitude,
            resolved,
            text,
            timestamp=timestamp,
        )
    except core_logic.StepFailed as exc:
        error = rejection_error(exc.cause, failed_step=STEP_ADJUSTMENT)
        if error is None:
            error = OperationError(
                kind=ErrorKind.ADJUSTMENT_FAILED,
                category=ErrorCategory.OPERATION_FAILED,
                message=f"Balance adjustment failed: {exc.cause}",
                failed_step=STEP_ADJUSTMENT,
            )
        log.warning("Balance adjustment on '%s' failed: %s", account.account_id, exc.cause)
        return AdjustmentResult(status=OperationStatus.FAILED, error=error)

    log.info("Manually %s %s on account '%s'", verb, magnitude, account.account_id)
    return AdjustmentResult(status=OperationStatus.SUCCESS, record=record)
