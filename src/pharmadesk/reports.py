"""Spreadsheet exports of already scoped records.

Callers pass lists obtained through :mod:`pharmadesk.scope`; this module only
formats them. Branch ids are shown by name when the branch still exists.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Mapping, Optional, Sequence

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log
from .scope import ALL_BRANCHES

TRANSACTION_HEADERS = ("Tx ID", "Date", "Branch", "Total Amount")
INVENTORY_HEADERS = (
    "Product ID",
    "Product",
    "SKU",
    "Category",
    "Branch",
    "Price",
    "Cost",
    "Stock",
    "Min Stock",
    "Expiry Date",
)


def _branch_names(branches: Iterable[data_manager.BranchRow]) -> Mapping[str, str]:
    return {branch.branch_id: branch.name for branch in branches}


def scope_label(branches: Sequence[data_manager.BranchRow], branch_id: Optional[str]) -> str:
    """Human-readable name for a branch selection."""
    if branch_id is None or branch_id == ALL_BRANCHES:
        return "All Network Locations"
    return _branch_names(branches).get(branch_id, "Unknown Branch")


def default_filename(kind: str, branch_id: Optional[str], *, when: Optional[datetime] = None) -> str:
    when = when or datetime.now(UTC)
    return f"pharmadesk_{kind}_{branch_id or ALL_BRANCHES}_{when.strftime('%Y%m%d%H%M%S')}.xlsx"


def _write_sheet(
    title: str,
    headers: Sequence[str],
    rows: Iterable[Sequence[object]],
    label: Optional[str] = None,
):
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = title
    if label:
        sheet.append([f"Scope: {label}"])
        sheet.cell(row=1, column=1).font = Font(italic=True)
    sheet.append(list(headers))
    for cell in sheet[sheet.max_row]:
        cell.font = Font(bold=True)
    for row in rows:
        sheet.append(list(row))
    return workbook, sheet


def export_transactions(
    transactions: Sequence[data_manager.TransactionRow],
    branches: Sequence[data_manager.BranchRow],
    destination: Path,
    *,
    label: Optional[str] = None,
) -> Path:
    """Write transactions and a total revenue row to ``destination``.

    Args:
        transactions: Scoped transactions to list, in order.
        branches: Branches used to resolve names.
        destination: Target ``.xlsx`` path; parent folders are created.
        label: Optional scope description written above the table.

    Returns:
        Path: The resolved destination.
    """
    names = _branch_names(branches)
    rows = [
        (
            transaction.transaction_id,
            transaction.timestamp_iso.split("T")[0],
            names.get(transaction.branch_id, transaction.branch_id),
            transaction.total,
        )
        for transaction in transactions
    ]
    workbook, sheet = _write_sheet("Transactions", TRANSACTION_HEADERS, rows, label)

    total_revenue = sum((transaction.total for transaction in transactions), Decimal("0"))
    sheet.append([])
    sheet.append(["Total Revenue", None, None, total_revenue])
    sheet.cell(row=sheet.max_row, column=1).font = Font(bold=True)

    destination = Path(destination).expanduser().resolve()
    data_manager.save_workbook(workbook, destination)
    log.info("Exported %d transactions to '%s'", len(rows), destination)
    return destination


def export_inventory(
    products: Sequence[data_manager.ProductRow],
    branches: Sequence[data_manager.BranchRow],
    destination: Path,
) -> Path:
    """Write one row per product to ``destination``."""
    names = _branch_names(branches)
    rows = [
        (
            product.product_id,
            product.name,
            product.sku,
            product.category,
            names.get(product.branch_id, product.branch_id),
            product.price,
            product.cost,
            product.stock,
            product.min_stock_level,
            product.expiry_date.isoformat(),
        )
        for product in products
    ]
    workbook, _ = _write_sheet("Inventory", INVENTORY_HEADERS, rows)

    destination = Path(destination).expanduser().resolve()
    data_manager.save_workbook(workbook, destination)
    log.info("Exported %d products to '%s'", len(rows), destination)
    return destination
