"""Transfers between the Cash account and Bank accounts.

A transfer is a saga of two independently committed recorder calls: a debit
of the source followed by a credit of the destination. There is no
surrounding transaction, so the coordinator tracks which step committed and,
when the credit fails after the debit went through, runs exactly one
compensating credit back to the source. If that compensation fails too, the
transfer is reported as unreconciled with the ids needed to fix it by hand.

Transfers are not idempotent. Submitting the same intent twice moves the
money twice; preventing double submission is the caller's job.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Protocol

from . import core_logic, data_manager, log
from .constants import AccountKind, Direction
from .results import (
    ErrorCategory,
    ErrorKind,
    OperationError,
    TransferResult,
    TransferStatus,
    rejection_error,
)


class AbortSignal(Protocol):
    """Anything with ``is_set()``, typically a :class:`threading.Event`."""

    def is_set(self) -> bool: ...


@dataclass(frozen=True)
class TransferIntent:
    """User intent for moving ``amount`` from one account to another.

    Account ids are only consulted for Bank sides; the Cash side always
    resolves to the configured Cash account.
    """

    source_kind: AccountKind
    source_account_id: Optional[str]
    dest_kind: AccountKind
    dest_account_id: Optional[str]
    amount: Decimal
    description: Optional[str] = None


@dataclass(frozen=True)
class _TransferPlan:
    source: data_manager.AccountRow
    dest: data_manager.AccountRow
    amount: Decimal
    description: str


def _aborted(abort: Optional[AbortSignal]) -> bool:
    return abort is not None and abort.is_set()


def _same_side(intent: TransferIntent) -> bool:
    return (
        AccountKind(intent.source_kind) is AccountKind.BANK
        and AccountKind(intent.dest_kind) is AccountKind.BANK
        and intent.source_account_id is not None
        and intent.source_account_id == intent.dest_account_id
    )


def validate_transfer(context: core_logic.RuntimeContext, intent: TransferIntent) -> _TransferPlan:
    """Check a transfer intent without mutating anything.

    Rules are evaluated in order and the first violation wins: non-positive
    amount, identical source and destination, Cash on both sides, unknown
    accounts, and finally an amount above the source's last known balance.
    The balance check here is advisory; the recorder repeats it at commit time.

    Raises:
        InvalidAmount: If the amount is not strictly positive.
        SameAccount: If both sides name the same Bank account.
        UnsupportedOperation: If both sides are Cash.
        AccountNotFound: If either side cannot be resolved.
        InsufficientFunds: If the source balance is below the amount.
    """
    amount = core_logic.require_positive_amount(intent.amount)
    try:
        source_kind = AccountKind(intent.source_kind)
        dest_kind = AccountKind(intent.dest_kind)
    except ValueError as exc:
        raise core_logic.InvalidInput(f"Unknown account kind in transfer: {exc}") from exc

    if _same_side(intent):
        raise core_logic.SameAccount("Cannot transfer to the same account")
    if source_kind is AccountKind.CASH and dest_kind is AccountKind.CASH:
        raise core_logic.UnsupportedOperation("Cash to Cash transfers are not supported")

    source = core_logic.resolve_account(context, source_kind, intent.source_account_id)
    dest = core_logic.resolve_account(context, dest_kind, intent.dest_account_id)
    if source.account_id == dest.account_id:
        raise core_logic.SameAccount("Cannot transfer to the same account")

    available = core_logic.current_balance(context, source.account_id)
    if amount > available:
        raise core_logic.InsufficientFunds(source.account_id, available=available, requested=amount)

    description = (intent.description or "").strip() or context.settings.default_transfer_description
    return _TransferPlan(source=source, dest=dest, amount=amount, description=description)


def transfer(
    context: core_logic.RuntimeContext,
    intent: TransferIntent,
    *,
    abort: Optional[AbortSignal] = None,
    timestamp: Optional[datetime] = None,
) -> TransferResult:
    """Move money between two accounts as a debit followed by a credit.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        intent (TransferIntent): What to move, from where, to where.
        abort (AbortSignal | None): Optional cancellation signal. Honoured only
            before the debit; once the debit has committed, an abort is handled
            like a failed credit (one compensation attempt).
        timestamp (datetime | None): Commit time for every record created.

    Returns:
        TransferResult: ``COMPLETED`` with the debit and credit records,
            ``FAILED`` when nothing was committed, ``COMPENSATED`` when the
            credit failed and the debit was reversed, or ``UNRECONCILED`` when
            the reversal failed as well.
    """
    try:
        plan = validate_transfer(context, intent)
    except core_logic.BusinessRuleViolation as exc:
        log.warning("Transfer rejected: %s", exc)
        return TransferResult(status=TransferStatus.FAILED, error=rejection_error(exc))

    if _aborted(abort):
        log.info("Transfer cancelled before the debit was issued")
        return TransferResult(
            status=TransferStatus.FAILED,
            error=rejection_error(core_logic.OperationAborted("Transfer cancelled before any effect")),
        )

    debit_id = core_logic.generate_record_id(when=timestamp)
    try:
        debit = core_logic.run_step(
            context,
            "debit",
            core_logic.apply_transaction,
            context,
            plan.source.account_id,
            plan.amount,
            Direction.SUBTRACT,
            f"{plan.description} to {plan.dest.display_name}",
            record_id=debit_id,
            timestamp=timestamp,
        )
    except core_logic.StepFailed as exc:
        return _debit_failed(exc)

    credit_id = core_logic.generate_record_id(when=timestamp)
    try:
        if _aborted(abort):
            raise core_logic.StepFailed(
                "credit",
                core_logic.OperationAborted("Abort requested after the debit committed"),
            )
        credit = core_logic.run_step(
            context,
            "credit",
            core_logic.apply_transaction,
            context,
            plan.dest.account_id,
            plan.amount,
            Direction.ADD,
            f"{plan.description} from {plan.source.display_name}",
            caused_by=debit.record_id,
            record_id=credit_id,
            timestamp=timestamp,
        )
    except core_logic.StepFailed as exc:
        return _compensate(context, plan, debit, credit_id, exc, timestamp=timestamp)

    log.info(
        "Transferred %s from '%s' to '%s' (debit '%s', credit '%s')",
        plan.amount,
        plan.source.account_id,
        plan.dest.account_id,
        debit.record_id,
        credit.record_id,
    )
    return TransferResult(
        status=TransferStatus.COMPLETED,
        debit_record=debit,
        credit_record=credit,
        credit_record_id=credit.record_id,
    )


def _debit_failed(exc: core_logic.StepFailed) -> TransferResult:
    """Report a debit that did not confirm; no credit was attempted."""

    error = rejection_error(exc.cause, failed_step="debit")
    if error is None:
        error = OperationError(
            kind=ErrorKind.TRANSFER_DEBIT_FAILED,
            category=ErrorCategory.OPERATION_FAILED,
            message=f"Debit step failed: {exc.cause}",
            failed_step="debit",
        )
    log.warning("Transfer failed at the debit step: %s", exc.cause)
    return TransferResult(status=TransferStatus.FAILED, error=error)


def _compensate(
    context: core_logic.RuntimeContext,
    plan: _TransferPlan,
    debit: data_manager.TransactionRow,
    credit_id: str,
    failure: core_logic.StepFailed,
    *,
    timestamp: Optional[datetime],
) -> TransferResult:
    """Attempt the single compensating credit for a committed debit."""

    log.error(
        "Credit of transfer debit '%s' failed (%s); returning %s to '%s'",
        debit.record_id,
        failure.cause,
        plan.amount,
        plan.source.account_id,
    )
    compensation_id = core_logic.generate_record_id(when=timestamp)
    try:
        compensation = core_logic.run_step(
            context,
            "compensation",
            core_logic.apply_transaction,
            context,
            plan.source.account_id,
            plan.amount,
            Direction.ADD,
            f"Reversal of {debit.record_id}: {plan.description} not delivered",
            caused_by=debit.record_id,
            record_id=compensation_id,
            timestamp=timestamp,
        )
    except core_logic.StepFailed as exc:
        log.error(
            "UNRECONCILED transfer: debit '%s' committed, compensation '%s' unconfirmed (%s)",
            debit.record_id,
            compensation_id,
            exc.cause,
        )
        return TransferResult(
            status=TransferStatus.UNRECONCILED,
            debit_record=debit,
            credit_record_id=credit_id,
            compensation_record_id=compensation_id,
            error=OperationError(
                kind=ErrorKind.UNRECONCILED_TRANSFER,
                category=ErrorCategory.UNRECONCILED,
                message=(
                    f"Debit '{debit.record_id}' committed but neither the credit nor "
                    f"the compensation '{compensation_id}' confirmed: {exc.cause}"
                ),
                failed_step="compensation",
                committed_ids={
                    "debit": debit.record_id,
                    "credit": credit_id,
                    "compensation": compensation_id,
                },
            ),
        )

    log.warning(
        "Transfer debit '%s' reversed by '%s' after credit failure",
        debit.record_id,
        compensation.record_id,
    )
    return TransferResult(
        status=TransferStatus.COMPENSATED,
        debit_record=debit,
        compensation_record=compensation,
        credit_record_id=credit_id,
        compensation_record_id=compensation.record_id,
        error=OperationError(
            kind=ErrorKind.PARTIAL_TRANSFER_FAILURE,
            category=ErrorCategory.PARTIAL_FAILURE,
            message=f"Credit step failed and the debit was reversed: {failure.cause}",
            failed_step="credit",
            committed_ids={"debit": debit.record_id, "compensation": compensation.record_id},
        ),
    )

