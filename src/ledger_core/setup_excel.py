"""Utility for initializing the ledger workbook.

The module doubles as a script (``ledger-setup``) and as a library used by
tests. :func:`build_master_workbook` produces the in-memory workbook;
:func:`create_master_workbook` writes it to disk.
"""

from __future__ import annotations

import argparse
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Mapping, Optional, Sequence
import sys

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook

from . import LOG_DIR_NAME, data_manager, log, use_log_directory
from .constants import AccountKind, SheetName

CONFIG_FILE = data_manager.CONFIG_FILE_NAME


def build_master_workbook(
    *,
    cash_account_id: Optional[str],
    cash_account_name: str = "Cash",
    sheet_columns: Mapping[str, Sequence[str]] = data_manager.SHEET_COLUMNS,
    created_at: Optional[datetime] = None,
) -> Workbook:
    """Return a workbook with every ledger sheet and its bold header row.

    When ``cash_account_id`` is given the single Cash account is seeded with
    a zero balance. Pass ``None`` to leave the Accounts sheet empty.
    """

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    if cash_account_id and SheetName.ACCOUNTS.value in workbook.sheetnames:
        moment = created_at or datetime.now(UTC)
        data_manager.append_account(
            workbook,
            data_manager.AccountRow(
                account_id=cash_account_id,
                account_kind=AccountKind.CASH.value,
                display_name=cash_account_name,
                balance=Decimal("0.00"),
                created_at_iso=moment.isoformat(),
            ),
        )
    return workbook


def create_master_workbook(
    destination: Path,
    *,
    cash_account_id: Optional[str],
    cash_account_name: str = "Cash",
    sheet_columns: Mapping[str, Sequence[str]] = data_manager.SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create the ledger workbook at ``destination``.

    Parameters are overridable to facilitate testing. When ``overwrite`` is
    ``False`` (the default) this function raises ``FileExistsError`` if the
    target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing ledger workbook: {destination}"
        )

    workbook = build_master_workbook(
        cash_account_id=cash_account_id,
        cash_account_name=cash_account_name,
        sheet_columns=sheet_columns,
    )
    data_manager.save_workbook(workbook, destination)
    log.info("Created ledger workbook at '%s'", destination)
    return destination


def load_settings(config_path: Path) -> data_manager.ConfigSettings:
    """Read ``config.ini`` through the data layer.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
        KeyError: If a required entry is missing.
    """

    resolved = config_path.expanduser().resolve()
    parser = data_manager.read_config(resolved)
    use_log_directory(resolved.parent / LOG_DIR_NAME)
    return data_manager.parse_settings(parser, base_path=resolved.parent)


def run_from_config(config_path: Path, *, overwrite: bool = False, with_cash: bool = True) -> Path:
    """Create the workbook named by ``[System] DataFile`` in ``config_path``."""

    settings = load_settings(config_path)
    return create_master_workbook(
        settings.data_file,
        cash_account_id=settings.cash_account_id if with_cash else None,
        cash_account_name=settings.cash_account_name,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the ledger workbook")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    parser.add_argument(
        "--no-cash",
        action="store_true",
        help="Do not seed the Cash account.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the ``ledger-setup`` script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force, with_cash=not args.no_cash)
    except FileNotFoundError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except KeyError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created ledger workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
