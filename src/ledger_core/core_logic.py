"""Account registry and transaction recorder for the ledger core.

This module owns the runtime context shared by every business operation and
the two leaf components everything else composes from:

* the account registry, which resolves the single Cash account and any number
  of Bank accounts and reports their balances without mutating anything;
* the transaction recorder, the only code path allowed to append balance
  movements. It performs the authoritative non-negative balance check at
  commit time, under the context lock, against a fresh read of the stored
  balance.

It also provides :func:`run_step`, the wrapper multi-step operations use to
execute one collaborator call with the configured timeout and to translate
collaborator failures into :class:`StepFailed`. Writes made inside a step go
through :func:`committing`, which refuses them once the step has timed out.
"""

from __future__ import annotations

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, TypeVar, Union

from openpyxl.workbook import Workbook

from . import LOG_DIR_NAME, data_manager, log, use_log_directory
from .constants import EXPECTED_SCHEMA_VERSION, AccountKind, Direction, SheetName


T = TypeVar("T")


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class InvalidInput(BusinessRuleViolation):
    """Raised when caller-supplied input is malformed or incomplete."""


class InvalidAmount(InvalidInput):
    """Raised when a monetary amount is not a finite, strictly positive value."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced account or product is unknown."""


class AccountNotFound(MissingReferenceError):
    def __init__(self, account_id: Optional[str], message: Optional[str] = None) -> None:
        self.account_id = account_id
        super().__init__(message or f"Unknown account id: {account_id}")


class ProductNotFound(MissingReferenceError):
    def __init__(self, product_id: str) -> None:
        self.product_id = product_id
        super().__init__(f"Unknown product id: {product_id}")


class InsufficientFunds(BusinessRuleViolation):
    """Raised when a debit would drive an account balance below zero."""

    def __init__(self, account_id: str, *, available: Decimal, requested: Decimal) -> None:
        self.account_id = account_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient balance on account '{account_id}': available {available}, requested {requested}"
        )


class SameAccount(BusinessRuleViolation):
    """Raised when a transfer's source and destination are the same account."""


class UnsupportedOperation(BusinessRuleViolation):
    """Raised for requests the ledger cannot express, such as Cash to Cash."""


class OperationAborted(BusinessRuleViolation):
    """Raised when the caller's abort signal is observed between steps."""


class StepFailed(Exception):
    """A single step of a multi-step operation did not confirm.

    ``cause`` holds the collaborator failure (or :class:`TimeoutError` when
    the step exceeded the configured timeout). Callers inspect it to decide
    how the failure is reported.
    """

    def __init__(self, step: str, cause: BaseException) -> None:
        self.step = step
        self.cause = cause
        super().__init__(f"Step '{step}' failed: {cause}")


# Collaborator failures that count as a failed step rather than a program fault.
STEP_FAILURES: Tuple[type[BaseException], ...] = (
    BusinessRuleViolation,
    KeyError,
    ValueError,
    OSError,
    TimeoutError,
)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the core."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` when provided, otherwise the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_accounts_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the account cache bucket on demand.

    The bucket keeps a ``by_id`` mapping in sheet order. Balances held here
    are a snapshot: other sessions may have moved money since the bucket was
    filled, which is why the recorder never trusts them for its checks.
    """

    bucket = _get_cache_bucket(context, "accounts")
    if "by_id" not in bucket:
        accounts = list(data_manager.iter_accounts(context.workbook))
        bucket["by_id"] = {account.account_id: account for account in accounts}
        log.debug("Populated accounts cache with %d entries", len(accounts))
    return bucket


def _update_cached_balance(context: RuntimeContext, account_id: str, balance: Decimal) -> None:
    bucket = context._cache.get("accounts")
    if not bucket or account_id not in bucket.get("by_id", {}):
        return
    bucket["by_id"][account_id] = replace(bucket["by_id"][account_id], balance=balance)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the ledger core.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    use_log_directory(resolved_config.parent / LOG_DIR_NAME)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Checks that the configured schema version matches
    ``EXPECTED_SCHEMA_VERSION`` and that every sheet the data layer relies on
    exists in the workbook.

    Raises:
        RuntimeError: On a version mismatch or a missing sheet.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    missing = [sheet.value for sheet in SheetName if sheet.value not in context.workbook.sheetnames]
    if missing:
        log.error("Workbook is missing sheets: %s", ", ".join(missing))
        raise RuntimeError(f"Workbook is missing sheets: {', '.join(missing)}")

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns a new :class:`RuntimeContext` with an empty cache and a fresh lock.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


# ---------------------------------------------------------------------------
# Identifiers and validation helpers
# ---------------------------------------------------------------------------


def generate_record_id(*, prefix: str = "R", when: Optional[datetime] = None) -> str:
    """Generate a sortable identifier using UTC timestamps.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}-{suffix}``
            where the random suffix keeps ids unique within one microsecond.
    """
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6].upper()}"


def coerce_amount(value: Union[Decimal, int, str, float, None]) -> Decimal:
    """Convert ``value`` into a finite :class:`~decimal.Decimal`.

    Raises:
        InvalidAmount: If the value is missing or not numeric.
    """
    if isinstance(value, Decimal):
        amount = value
    elif value is None or isinstance(value, bool):
        raise InvalidAmount(f"Amount must be numeric, got {value!r}")
    else:
        try:
            amount = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise InvalidAmount(f"Amount must be numeric, got {value!r}") from exc
    if not amount.is_finite():
        raise InvalidAmount(f"Amount must be finite, got {value!r}")
    return amount


def require_positive_amount(amount: Any) -> Decimal:
    """Validate that a monetary amount is finite and strictly positive.

    Raises:
        InvalidAmount: If ``amount`` is zero, negative, or not numeric.
    """
    value = coerce_amount(amount)
    if value <= Decimal("0"):
        log.warning("Amount validation failed: %s", amount)
        raise InvalidAmount("Amount must be greater than zero")
    return value


def require_positive_quantity(quantity: Any) -> Decimal:
    """Validate that a quantity is strictly positive.

    Raises:
        InvalidInput: If ``quantity`` is zero, negative, or not numeric.
    """
    try:
        value = coerce_amount(quantity)
    except InvalidAmount as exc:
        raise InvalidInput(f"Quantity must be numeric, got {quantity!r}") from exc
    if value <= Decimal("0"):
        log.warning("Quantity validation failed: %s", quantity)
        raise InvalidInput("Quantity must be greater than zero")
    return value


def require_nonnegative_money(amount: Any) -> Decimal:
    value = coerce_amount(amount)
    if value < Decimal("0"):
        log.warning("Monetary value validation failed: %s", amount)
        raise InvalidAmount("Amount must be zero or positive")
    return value


# ---------------------------------------------------------------------------
# Account registry
# ---------------------------------------------------------------------------


def list_accounts(context: RuntimeContext) -> List[data_manager.AccountRow]:
    """Return every account in creation order, Cash included."""

    return list(_ensure_accounts_cache(context)["by_id"].values())


def list_bank_accounts(context: RuntimeContext) -> List[data_manager.AccountRow]:
    """Return the Bank accounts in creation order, read fresh from the workbook."""

    return data_manager.list_bank_accounts(context.workbook)


def resolve_account(
    context: RuntimeContext,
    kind: Union[AccountKind, str],
    account_id: Optional[str] = None,
) -> data_manager.AccountRow:
    """Resolve an account by kind and, for Bank accounts, identifier.

    Resolving ``Cash`` always targets the single Cash account configured in
    ``[Ledger] CashAccountID``; any supplied identifier is ignored. Resolving
    ``Bank`` requires the identifier of an account whose stored kind is Bank.

    Raises:
        AccountNotFound: If the kind is unknown, the Bank identifier is missing,
            or no matching account exists.
    """
    try:
        resolved_kind = AccountKind(kind)
    except ValueError as exc:
        raise AccountNotFound(account_id, f"Unknown account kind: {kind}") from exc

    if resolved_kind is AccountKind.CASH:
        target_id: Optional[str] = context.settings.cash_account_id
    else:
        target_id = account_id
        if not target_id:
            log.warning("Bank account resolution attempted without an id")
            raise AccountNotFound(None, "A bank account id is required")

    account = _ensure_accounts_cache(context)["by_id"].get(target_id)
    if account is None or account.account_kind != resolved_kind.value:
        log.warning("Account lookup failed for %s id '%s'", resolved_kind.value, target_id)
        raise AccountNotFound(target_id)
    return account


def current_balance(context: RuntimeContext, account_id: str) -> Decimal:
    """Return the last known balance of ``account_id``.

    The value comes from the context cache and is stale by default. It is fit
    for pre-checks and display only; the recorder re-reads the stored balance
    before committing a debit.

    Raises:
        AccountNotFound: If the account is unknown.
    """
    account = _ensure_accounts_cache(context)["by_id"].get(account_id)
    if account is None:
        raise AccountNotFound(account_id)
    return account.balance


def open_account(
    context: RuntimeContext,
    kind: Union[AccountKind, str],
    display_name: Optional[str] = None,
    *,
    opening_balance: Any = Decimal("0"),
    account_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.AccountRow:
    """Create the Cash account (once) or a new Bank account.

    Accounts start at zero; a positive ``opening_balance`` is then applied as
    an ordinary ``add`` movement so the stored balance always equals the sum
    of the account's records.

    Raises:
        BusinessRuleViolation: If the Cash account already exists or the id is
            already in use.
        InvalidInput: If a Bank account has no display name.
        InvalidAmount: If the opening balance is negative.
    """
    resolved_kind = AccountKind(kind)
    opening = require_nonnegative_money(opening_balance)
    moment = _resolve_timestamp(timestamp)

    if resolved_kind is AccountKind.CASH:
        new_id = context.settings.cash_account_id
        name = display_name or context.settings.cash_account_name
    else:
        if not display_name:
            raise InvalidInput("Bank accounts require a display name")
        new_id = account_id or generate_record_id(prefix="B", when=moment)
        name = display_name

    record = data_manager.AccountRow(
        account_id=new_id,
        account_kind=resolved_kind.value,
        display_name=name,
        balance=Decimal("0.00"),
        created_at_iso=moment.isoformat(),
    )
    with context._lock:
        try:
            data_manager.append_account(context.workbook, record)
        except ValueError as exc:
            log.warning("Refused to open %s account '%s': %s", resolved_kind.value, new_id, exc)
            raise BusinessRuleViolation(f"Account '{new_id}' already exists") from exc
        _invalidate_cache(context, "accounts")
    log.info("Opened %s account '%s' (%s)", resolved_kind.value, new_id, name)

    if opening > Decimal("0"):
        apply_transaction(
            context,
            new_id,
            opening,
            Direction.ADD,
            "Opening balance",
            timestamp=moment,
        )
    return resolve_account(context, resolved_kind, new_id)


def list_transactions(
    context: RuntimeContext,
    account_id: Optional[str] = None,
) -> List[data_manager.TransactionRow]:
    """Return the append-only record log, optionally for one account."""

    records = data_manager.iter_transactions(context.workbook)
    if account_id is None:
        return list(records)
    return [record for record in records if record.account_id == account_id]


def verify_account_balances(context: RuntimeContext) -> Dict[str, Tuple[Decimal, Decimal]]:
    """Compare every stored balance with the fold over its records.

    Reads straight from the workbook rather than the cache.

    Returns:
        dict[str, tuple[Decimal, Decimal]]: ``account_id -> (stored, folded)``
            for each account that disagrees. Empty when the ledger is
            consistent.
    """
    folded: Dict[str, Decimal] = {}
    for record in data_manager.iter_transactions(context.workbook):
        folded[record.account_id] = folded.get(record.account_id, Decimal("0")) + record.signed_amount

    mismatches: Dict[str, Tuple[Decimal, Decimal]] = {}
    for account in data_manager.iter_accounts(context.workbook):
        expected = folded.get(account.account_id, Decimal("0"))
        if account.balance != expected:
            mismatches[account.account_id] = (account.balance, expected)
    if mismatches:
        log.error("Balance verification found %d mismatched accounts", len(mismatches))
    return mismatches


# ---------------------------------------------------------------------------
# Transaction recorder
# ---------------------------------------------------------------------------


def apply_transaction(
    context: RuntimeContext,
    account_id: str,
    amount: Any,
    direction: Union[Direction, str],
    description: str,
    *,
    caused_by: Optional[str] = None,
    record_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.TransactionRow:
    """Append one immutable balance movement to ``account_id``.

    This is the single point of truth for balance mutations. Under the context
    lock it re-reads the stored balance, rejects debits that would make it
    negative, persists the record together with the new balance, and updates
    the cached balance.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        account_id (str): Account receiving the movement.
        amount (Decimal): Strictly positive magnitude of the movement.
        direction (Direction): ``add`` credits the account, ``subtract`` debits
            it.
        description (str): Human readable reason stored with the record.
        caused_by (str | None): Id of the record or entity that triggered this
            movement, such as the debit a compensation reverses.
        record_id (str | None): Pre-allocated identifier, so callers can name
            the record in results before the step confirms.
        timestamp (datetime | None): Commit time; defaults to now (UTC).

    Returns:
        data_manager.TransactionRow: The persisted record.

    Raises:
        InvalidAmount: If ``amount`` is not strictly positive.
        AccountNotFound: If ``account_id`` is unknown.
        InsufficientFunds: If a ``subtract`` would drive the balance negative.
        StepAbandoned: If the enclosing step already timed out.
    """
    magnitude = require_positive_amount(amount)
    resolved_direction = Direction(direction)
    signed_amount = magnitude if resolved_direction is Direction.ADD else -magnitude

    with committing(context):
        try:
            stored_balance = data_manager.get_account_balance(context.workbook, account_id)
        except KeyError as exc:
            log.warning("Transaction rejected: unknown account '%s'", account_id)
            raise AccountNotFound(account_id) from exc

        new_balance = stored_balance + signed_amount
        if new_balance < Decimal("0"):
            log.warning(
                "Transaction rejected: account '%s' holds %s, debit of %s requested",
                account_id,
                stored_balance,
                magnitude,
            )
            raise InsufficientFunds(account_id, available=stored_balance, requested=magnitude)

        moment = _resolve_timestamp(timestamp)
        record = data_manager.TransactionRow(
            record_id=record_id or generate_record_id(when=moment),
            account_id=account_id,
            signed_amount=signed_amount,
            description=description,
            timestamp_iso=moment.isoformat(),
            caused_by=caused_by,
        )
        data_manager.persist_transaction(context.workbook, record)
        _update_cached_balance(context, account_id, new_balance)

    log.info(
        "Recorded %s of %s on account '%s' as '%s' (balance %s)",
        resolved_direction.value,
        magnitude,
        account_id,
        record.record_id,
        new_balance,
    )
    return record


# ---------------------------------------------------------------------------
# Step execution
# ---------------------------------------------------------------------------


@dataclass
class _StepGuard:
    """Commit state of one step running on a worker thread."""

    step: str
    abandoned: bool = False
    committed: bool = False


_active_step = threading.local()


class StepAbandoned(RuntimeError):
    """Raised on a worker thread whose step timed out before it could commit."""

    def __init__(self, step: str) -> None:
        self.step = step
        super().__init__(f"Step '{step}' was abandoned after its timeout; write refused")


@contextmanager
def committing(context: RuntimeContext) -> Iterator[None]:
    """Hold the context lock around a write made by the running step.

    Once :func:`run_step` has given up on the step, the write is refused with
    :class:`StepAbandoned`. A write that gets through marks the step as
    committed, so a timeout observed afterwards reports the step's result
    instead of a failure.
    """
    with context._lock:
        guard: Optional[_StepGuard] = getattr(_active_step, "guard", None)
        if guard is not None and guard.abandoned:
            log.warning("Refusing late write from abandoned step '%s'", guard.step)
            raise StepAbandoned(guard.step)
        yield
        if guard is not None:
            guard.committed = True


def commit_write(context: RuntimeContext, write: Callable[..., T], *args: Any) -> T:
    """Call a data-layer ``write`` under :func:`committing`."""

    with committing(context):
        return write(*args)


def _run_guarded(guard: _StepGuard, func: Callable[..., T], args: Tuple[Any, ...], kwargs: Dict[str, Any]) -> T:
    _active_step.guard = guard
    try:
        return func(*args, **kwargs)
    finally:
        _active_step.guard = None


def run_step(context: RuntimeContext, step: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Execute one step of a multi-step operation.

    When ``StepTimeoutSeconds`` is configured the call runs on a worker thread.
    Once the timeout elapses the step is marked abandoned under the context
    lock; any write it attempts afterwards through :func:`committing` is
    refused, so a timed-out step never lands late. A step that had already
    committed, or was inside its write, when the timeout fired is waited for
    and counts as a success.

    Raises:
        StepFailed: If the collaborator raised one of :data:`STEP_FAILURES` or
            the step timed out. Any other exception propagates unchanged.
    """
    timeout = context.settings.step_timeout_seconds
    try:
        if timeout is None:
            return func(*args, **kwargs)
        guard = _StepGuard(step)
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"ledger-{step}")
        try:
            future = executor.submit(_run_guarded, guard, func, args, kwargs)
            try:
                return future.result(timeout=timeout)
            except TimeoutError:
                with context._lock:
                    guard.abandoned = not guard.committed
                if not guard.abandoned:
                    log.info("Step '%s' committed before its %ss timeout; waiting for it to return", step, timeout)
                    return future.result()
                raise TimeoutError(f"timed out after {timeout}s") from None
        finally:
            executor.shutdown(wait=False)
    except STEP_FAILURES as exc:
        log.warning("Step '%s' failed: %s", step, exc)
        raise StepFailed(step, exc) from exc
