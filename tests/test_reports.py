"""Tests for spreadsheet exports."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

import openpyxl
import pytest

from pharmadesk import data_manager, reports, scope
from pharmadesk.constants import CollectionName

from conftest import FIXED_NOW


@pytest.fixture
def sales(memory_store):
    transactions = [
        data_manager.TransactionRow("T1", "2025-01-15T09:30:00+00:00", Decimal("25.00"), "b1", "u3"),
        data_manager.TransactionRow("T2", "2025-01-16T10:00:00+00:00", Decimal("12.50"), "b1", "u3"),
        data_manager.TransactionRow("T3", "2025-01-16T11:00:00+00:00", Decimal("40.00"), "b2", "u9"),
    ]
    memory_store.put(CollectionName.TRANSACTIONS, transactions)
    return memory_store


def _rows(path):
    sheet = openpyxl.load_workbook(path).active
    return sheet, [[cell.value for cell in row] for row in sheet.iter_rows()]


def test_export_transactions_writes_rows_and_total(sales, manager, tmp_path):
    """Scoped transactions are listed by branch name with a revenue total."""

    transactions = scope.scope_transactions(sales, manager)
    destination = reports.export_transactions(
        transactions, sales.get(CollectionName.BRANCHES), tmp_path / "out" / "tx.xlsx"
    )

    sheet, rows = _rows(destination)
    assert sheet.title == "Transactions"
    assert rows[0] == list(reports.TRANSACTION_HEADERS)
    assert all(cell.font.bold for cell in sheet[1])
    assert rows[1] == ["T1", "2025-01-15", "Downtown NYC", 25]
    assert rows[2] == ["T2", "2025-01-16", "Downtown NYC", 12.5]
    assert rows[3] == [None, None, None, None]
    assert rows[4] == ["Total Revenue", None, None, 37.5]
    assert len(rows) == 5


def test_export_transactions_with_scope_label(sales, tmp_path):
    """A label row sits above the header when requested."""

    branches = sales.get(CollectionName.BRANCHES)
    label = reports.scope_label(branches, "b2")
    destination = reports.export_transactions(
        sales.get(CollectionName.TRANSACTIONS), branches, tmp_path / "tx.xlsx", label=label
    )

    sheet, rows = _rows(destination)
    assert rows[0][0] == "Scope: Austin Hub"
    assert sheet.cell(row=1, column=1).font.italic
    assert rows[1] == list(reports.TRANSACTION_HEADERS)
    assert rows[-1] == ["Total Revenue", None, None, 77.5]


def test_export_empty_transactions(tmp_path):
    _, rows = _rows(reports.export_transactions([], [], tmp_path / "empty.xlsx"))
    assert rows[-1] == ["Total Revenue", None, None, 0]


def test_deleted_branch_shown_by_id(sales, tmp_path):
    """Transactions of a deleted branch keep their raw branch id."""

    branches = [b for b in sales.get(CollectionName.BRANCHES) if b.branch_id != "b2"]
    _, rows = _rows(reports.export_transactions(sales.get(CollectionName.TRANSACTIONS), branches, tmp_path / "t.xlsx"))
    assert rows[3][2] == "b2"


def test_export_inventory(memory_store, pharmacist, tmp_path):
    products = scope.scope_products(memory_store, pharmacist)
    destination = reports.export_inventory(products, memory_store.get(CollectionName.BRANCHES), tmp_path / "inv.xlsx")

    sheet, rows = _rows(destination)
    assert sheet.title == "Inventory"
    assert rows[0] == list(reports.INVENTORY_HEADERS)
    assert [row[0] for row in rows[1:]] == ["p1", "p2", "p3"]
    assert rows[1] == ["p1", "Amoxicillin 500mg", "AMX500", "Antibiotics", "Downtown NYC", 12.5, 5, 150, 50, "2025-12-01"]


@pytest.mark.parametrize(
    "branch_id, expected",
    [(None, "All Network Locations"), ("ALL", "All Network Locations"), ("b1", "Downtown NYC"), ("b9", "Unknown Branch")],
)
def test_scope_label(memory_store, branch_id, expected):
    assert reports.scope_label(memory_store.get(CollectionName.BRANCHES), branch_id) == expected


def test_default_filename():
    assert reports.default_filename("transactions", "b1", when=FIXED_NOW) == "pharmadesk_transactions_b1_20250115093000.xlsx"
    assert reports.default_filename("inventory", None, when=datetime(2025, 2, 1)).startswith("pharmadesk_inventory_ALL_")
