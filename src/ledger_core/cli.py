"""Command-line entry points for the ledger core.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and rendering the returned results. Exit codes: ``0`` success, ``2``
rejected by a business rule, ``3`` missing configuration or workbook, ``4``
partially applied or unreconciled, ``1`` anything else.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, Union

from . import core_logic, log, operations, timeline, transfers
from .constants import AccountKind, PaymentMethod
from .results import (
    ErrorCategory,
    ExpenseResult,
    OperationError,
    OperationStatus,
    PurchaseResult,
    TransferResult,
    TransferStatus,
)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_REJECTED = 2
EXIT_MISSING_FILE = 3
EXIT_PARTIAL = 4


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="ledger-cli",
        description="Command-line tools for the ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini upwards).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as transfers and purchases."""
    specs = {
        "open-cash": register_open_cash_command(subparsers),
        "open-bank": register_open_bank_command(subparsers),
        "adjust": register_adjust_command(subparsers),
        "transfer": register_transfer_command(subparsers),
        "purchase": register_purchase_command(subparsers),
        "expense": register_expense_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as balances and timelines."""
    specs = {
        "balances": register_balances_command(subparsers),
        "transactions": register_transactions_command(subparsers),
        "verify": register_verify_command(subparsers),
        "timeline": register_timeline_command(subparsers),
        "deferred": register_deferred_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_open_cash_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``open-cash``."""
    name = "open-cash"
    help_text = "Create the Cash account configured in config.ini."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--opening-balance", default="0")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_open_cash)


def register_open_bank_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``open-bank``."""
    name = "open-bank"
    help_text = "Create a Bank account."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--account-id", default=None)
        parser.add_argument("--opening-balance", default="0")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_open_bank)


def register_adjust_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``adjust``."""
    name = "adjust"
    help_text = "Add money to, or deduct it from, the Cash account or a Bank account."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--kind", choices=[member.value for member in AccountKind], required=True)
        parser.add_argument("--account-id", default=None)
        parser.add_argument("--direction", choices=["add", "deduct"], required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--description", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_adjust)


def register_transfer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``transfer``."""
    name = "transfer"
    help_text = "Move money between the Cash account and Bank accounts."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        kinds = [member.value for member in AccountKind]
        parser.add_argument("--from-kind", choices=kinds, required=True)
        parser.add_argument("--from-id", default=None)
        parser.add_argument("--to-kind", choices=kinds, required=True)
        parser.add_argument("--to-id", default=None)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--description", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_transfer)


def register_purchase_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``purchase``."""
    name = "purchase"
    help_text = "Record a supplier purchase, or own inventory when no supplier is given."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-name", required=True)
        parser.add_argument("--unit-price", required=True)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--amount", default=None, help="Defaults to unit price x quantity.")
        parser.add_argument("--category", default=None)
        parser.add_argument("--warehouse-id", default=None)
        parser.add_argument("--product-id", default=None)
        parser.add_argument("--supplier-id", default=None)
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            default=None,
        )
        parser.add_argument("--account-id", default=None, help="Bank account for online or cheque payments.")
        parser.add_argument("--cheque-date", type=date.fromisoformat, default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_purchase)


def register_expense_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``expense``."""
    name = "expense"
    help_text = "Record an expense."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            required=True,
        )
        parser.add_argument("--bank-id", default=None)
        parser.add_argument("--expense-date", type=date.fromisoformat, default=None)
        parser.add_argument("--cheque-date", type=date.fromisoformat, default=None)
        parser.add_argument("--description", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_expense)


def register_balances_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``balances``."""
    name = "balances"
    help_text = "Display every account with its balance."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_balances_report)


def register_transactions_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``transactions``."""
    name = "transactions"
    help_text = "Display the transaction record log."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--account-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_transactions_report)


def register_verify_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``verify``."""
    name = "verify"
    help_text = "Check every stored balance against its transaction records."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_verify_report)


def register_timeline_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``timeline``."""
    name = "timeline"
    help_text = "Display the purchase, arrival and sale history of a product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_timeline_report)


def register_deferred_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``deferred``."""
    name = "deferred"
    help_text = "Display pending cheque and credit payments."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--due-on", type=date.fromisoformat, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_deferred_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations and validate its schema."""
    context = core_logic.load_runtime_context(config_path)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


# ---------------------------------------------------------------------------
# Argument translation
# ---------------------------------------------------------------------------


def translate_transfer(args: argparse.Namespace) -> transfers.TransferIntent:
    """Translate CLI args into a transfer intent."""
    return transfers.TransferIntent(
        source_kind=AccountKind(args.from_kind),
        source_account_id=args.from_id,
        dest_kind=AccountKind(args.to_kind),
        dest_account_id=args.to_id,
        amount=args.amount,
        description=args.description,
    )


def translate_purchase(args: argparse.Namespace) -> operations.PurchaseCommand:
    """Translate CLI args into a purchase command object.

    A missing ``--amount`` is derived as unit price times quantity.
    """
    amount = args.amount
    if amount is None:
        amount = core_logic.coerce_amount(args.unit_price) * core_logic.coerce_amount(args.quantity)
    return operations.PurchaseCommand(
        product=operations.ProductDraft(
            name=args.product_name,
            unit_price=args.unit_price,
            category=args.category,
            warehouse_id=args.warehouse_id,
            product_id=args.product_id,
        ),
        amount=amount,
        quantity=args.quantity,
        supplier_id=args.supplier_id,
        payment_method=PaymentMethod(args.payment_method) if args.payment_method else None,
        account_id=args.account_id,
        cheque_date=args.cheque_date,
        description=args.notes,
    )


def translate_expense(args: argparse.Namespace) -> operations.ExpenseCommand:
    """Translate CLI args into an expense command object."""
    return operations.ExpenseCommand(
        expense_name=args.name,
        amount=args.amount,
        payment_method=PaymentMethod(args.payment_method),
        description=args.description,
        expense_date=args.expense_date,
        bank_id=args.bank_id,
        cheque_date=args.cheque_date,
    )


# ---------------------------------------------------------------------------
# Result rendering
# ---------------------------------------------------------------------------


def exit_code_for(error: Optional[OperationError], *, partial: bool) -> int:
    """Map an operation outcome onto the CLI exit codes."""
    if partial:
        return EXIT_PARTIAL
    if error is None:
        return EXIT_OK
    if error.category in (ErrorCategory.VALIDATION, ErrorCategory.CONFLICT):
        return EXIT_REJECTED
    return EXIT_ERROR


def report_error(error: Optional[OperationError]) -> None:
    if error is None:
        return
    print(f"[{error.kind.value}] {error.message}")
    if error.available_balance is not None:
        print(f"  Available: {error.available_balance}")
    for effect, ident in error.committed_ids.items():
        print(f"  {effect}: {ident}")


def report_operation(label: str, result: Union[PurchaseResult, ExpenseResult]) -> int:
    print(f"{label} {result.status.value}")
    flags = result.effects
    print(
        f"  effects: inventory={flags.inventory} ledger={flags.ledger} "
        f"account={flags.account} deferred={flags.deferred}"
    )
    if result.pending_steps:
        print(f"  pending: {', '.join(result.pending_steps)}")
    report_error(result.error)
    return exit_code_for(result.error, partial=result.status is OperationStatus.PARTIAL)


def report_transfer(result: TransferResult) -> int:
    print(f"Transfer {result.status.value}")
    for record in result.records:
        print(f"  {record.record_id} {record.account_id} {record.signed_amount:+}")
    report_error(result.error)
    partial = result.status in (TransferStatus.COMPENSATED, TransferStatus.UNRECONCILED)
    return exit_code_for(result.error, partial=partial)


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def run_open_cash(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Create the Cash account via the BLL."""
    account = core_logic.open_account(context, AccountKind.CASH, opening_balance=args.opening_balance)
    print(f"Opened {account.account_kind} account '{account.account_id}' with {account.balance}")
    return EXIT_OK


def run_open_bank(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Create a Bank account via the BLL."""
    account = core_logic.open_account(
        context,
        AccountKind.BANK,
        args.name,
        opening_balance=args.opening_balance,
        account_id=args.account_id,
    )
    print(f"Opened {account.account_kind} account '{account.account_id}' with {account.balance}")
    return EXIT_OK


def run_adjust(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Add or deduct money by hand via the BLL."""
    result = operations.adjust_balance(
        context,
        args.kind,
        args.account_id,
        args.amount,
        args.direction,
        args.description,
    )
    print(f"Adjustment {result.status.value}")
    if result.record is not None:
        record = result.record
        print(f"  {record.record_id} {record.account_id} {record.signed_amount:+} {record.description}")
    report_error(result.error)
    return exit_code_for(result.error, partial=False)


def run_transfer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a transfer via the BLL."""
    return report_transfer(transfers.transfer(context, translate_transfer(args)))


def run_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase workflow via the BLL."""
    result = operations.execute_purchase(context, translate_purchase(args))
    if result.product_id:
        print(f"Product: {result.product_id}")
    return report_operation("Purchase", result)


def run_expense(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the expense workflow via the BLL."""
    result = operations.execute_expense(context, translate_expense(args))
    return report_operation("Expense", result)


def run_balances_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for account in core_logic.list_accounts(context):
        print(f"{account.account_id}\t{account.account_kind}\t{account.display_name}\t{account.balance}")
    return EXIT_OK


def run_transactions_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for record in core_logic.list_transactions(context, args.account_id):
        print(
            f"{record.timestamp_iso}\t{record.record_id}\t{record.account_id}\t"
            f"{record.signed_amount:+}\t{record.description}"
        )
    return EXIT_OK


def run_verify_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Report accounts whose stored balance drifted from their records."""
    mismatches = core_logic.verify_account_balances(context)
    if not mismatches:
        print("All balances match their transaction records.")
        return EXIT_OK
    for account_id, (stored, folded) in mismatches.items():
        print(f"{account_id}: stored {stored}, records sum to {folded}")
    return EXIT_ERROR


def run_timeline_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Render the timeline and summary of one product."""
    result = timeline.build_timeline(context, args.product_id)
    if not result.ok:
        report_error(result.error)
        return exit_code_for(result.error, partial=False)

    for event in result.events:
        print(
            f"{event.date.isoformat()}\t{event.kind.value}\t{event.quantity_delta:+}\t"
            f"{event.amount}\t{event.counterparty_name}"
        )
    summary = result.summary
    print(f"Product: {summary.product_name} ({summary.supplier_name})")
    print(f"  purchased {summary.purchased_quantity} for {summary.purchased_amount}")
    print(f"  arrived {summary.arrived_quantity}, in shipping {summary.in_shipping_quantity}")
    print(f"  sold {summary.sold_quantity} for {summary.sold_amount}, on hand {summary.on_hand_quantity}")
    for group in summary.sales_by_customer:
        print(f"  {group.customer_name}: {group.total_quantity} for {group.total_amount} ({group.sale_count} sales)")
    return EXIT_OK


def run_deferred_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for row in operations.list_deferred_payments(context, due_on=args.due_on):
        print(f"{row.deferred_id}\t{row.payment_method}\t{row.amount}\t{row.cheque_date or '-'}\t{row.reference_id}")
    return EXIT_OK


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return EXIT_REJECTED
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return EXIT_MISSING_FILE
    log.error("%s", error)
    return EXIT_ERROR


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after an execution that committed records."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        # Partial results still committed records that must reach the file.
        if exit_code in (EXIT_OK, EXIT_PARTIAL):
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
