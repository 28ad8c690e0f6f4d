"""Utility for initializing the caterer ledger workbook.

The module doubles as a script (``caterer-ledger-setup``) and as a library
used by tests. Shared helpers keep the workbook bootstrap logic consistent
regardless of the execution path.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log
from .constants import SheetName

# Column order is shared with the serializers in data_manager.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.CATERERS.value: [
        "CatererID",
        "CatererName",
        "ContactPerson",
        "PhoneNumber",
        "Email",
        "Address",
        "GSTNumber",
        "BalanceDue",
        "TotalOrders",
        "TotalAmount",
        "LastOrderDate",
        "IsActive",
    ],
    SheetName.SALES.value: [
        "SaleID",
        "CatererID",
        "BillNumber",
        "SellDate",
        "ItemsTotal",
        "OtherChargesTotal",
        "DiscountTotal",
        "GrandTotal",
        "PaymentStatus",
        "Notes",
        "CreatedAt",
    ],
    SheetName.SALE_ITEMS.value: [
        "SaleID",
        "ProductName",
        "Quantity",
        "Unit",
        "Rate",
        "GSTPercentage",
        "Amount",
    ],
    SheetName.PAYMENTS.value: [
        "PaymentID",
        "SaleID",
        "PaidAt",
        "PaymentMethod",
        "AmountPaid",
        "ReferenceNumber",
        "Notes",
        "ReceiptImage",
    ],
}

CONFIG_FILE = "config.ini"


def load_settings(config_path: Path) -> data_manager.ConfigSettings:
    """Read ``config.ini`` with relative paths anchored to its directory."""

    config_path = Path(config_path).expanduser().resolve()
    parser = data_manager.read_config(config_path)
    return data_manager.parse_settings(parser, base_path=config_path.parent)


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create an empty ledger workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing ledger workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

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

    workbook.save(destination)
    log.info("Created ledger workbook at '%s'", destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook and the receipts directory named in ``config_path``."""

    settings = load_settings(config_path)
    settings.receipts_dir.mkdir(parents=True, exist_ok=True)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Initialize the caterer ledger workbook")
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
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Caterer Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created ledger workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
