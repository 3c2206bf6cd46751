"""Financial aggregation over branch-partitioned products and transactions.

All figures are recomputed from the raw records on every call. The optional
:class:`RevenueLedger` keeps running totals for large datasets, but
:func:`branch_performance` remains the reference the ledger is checked
against.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass, replace
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import core_logic, data_manager, log
from .constants import CollectionName
from .scope import Caller, filter_scope, narrow_to_branch, scope_branches

ZERO = Decimal("0")
# Estimated cost share for line items whose product record no longer exists.
COST_FALLBACK_RATIO = Decimal("0.5")
TOP_SELLING_LIMIT = 5


@dataclass(frozen=True)
class BranchPerformance:
    """Derived financial and stock-health figures for a set of records."""

    revenue: Decimal = ZERO
    cogs: Decimal = ZERO
    gross_profit: Decimal = ZERO
    stock_value: Decimal = ZERO
    low_stock_count: int = 0
    transaction_count: int = 0

    def __add__(self, other: "BranchPerformance") -> "BranchPerformance":
        return BranchPerformance(
            revenue=self.revenue + other.revenue,
            cogs=self.cogs + other.cogs,
            gross_profit=self.gross_profit + other.gross_profit,
            stock_value=self.stock_value + other.stock_value,
            low_stock_count=self.low_stock_count + other.low_stock_count,
            transaction_count=self.transaction_count + other.transaction_count,
        )


@dataclass(frozen=True)
class OperatingExpensePolicy:
    """Fixed-plus-variable operating expense assumption used for net profit."""

    base: Decimal = data_manager.DEFAULT_OPERATING_EXPENSE_BASE
    per_transaction: Decimal = data_manager.DEFAULT_OPERATING_EXPENSE_PER_TRANSACTION

    @classmethod
    def from_settings(cls, settings: data_manager.ConfigSettings) -> "OperatingExpensePolicy":
        return cls(
            base=settings.operating_expense_base,
            per_transaction=settings.operating_expense_per_transaction,
        )

    def expenses_for(self, performance: BranchPerformance) -> Decimal:
        return self.base + self.per_transaction * performance.transaction_count


@dataclass(frozen=True)
class BranchReport:
    """One ranked row of the executive branch comparison."""

    branch: data_manager.BranchRow
    performance: BranchPerformance
    operating_expenses: Decimal
    total_expenses: Decimal
    net_profit: Decimal
    efficiency_score: int


@dataclass(frozen=True)
class DashboardSummary:
    performance: BranchPerformance
    items_sold: int
    top_selling: Tuple[Tuple[data_manager.ProductRow, int], ...]


def summarize(
    products: Iterable[data_manager.ProductRow],
    transactions: Iterable[data_manager.TransactionRow],
    catalog: Iterable[data_manager.ProductRow],
) -> BranchPerformance:
    """Reduce pre-filtered products and transactions into performance figures.

    Args:
        products: Products whose stock is valued and health-checked.
        transactions: Transactions contributing revenue and COGS.
        catalog: Every known product, used to price line items at their
            current cost. Items whose product is missing from the catalog are
            costed at ``COST_FALLBACK_RATIO`` of their sale value.

    Returns:
        BranchPerformance: Totals for the supplied records.
    """
    costs = {product.product_id: product.cost for product in catalog}
    transactions = list(transactions)
    products = list(products)

    revenue = sum((transaction.total for transaction in transactions), ZERO)
    cogs = ZERO
    for transaction in transactions:
        for item in transaction.items:
            cost = costs.get(item.product_id)
            if cost is None:
                cogs += item.price * item.quantity * COST_FALLBACK_RATIO
            else:
                cogs += cost * item.quantity

    return BranchPerformance(
        revenue=revenue,
        cogs=cogs,
        gross_profit=revenue - cogs,
        stock_value=sum((product.price * product.stock for product in products), ZERO),
        low_stock_count=sum(1 for product in products if product.stock <= product.min_stock_level),
        transaction_count=len(transactions),
    )


def branch_performance(store: data_manager.EntityStore, branch_id: str) -> BranchPerformance:
    """Compute revenue, COGS, gross profit and stock health for one branch."""
    catalog = store.get(CollectionName.PRODUCTS)
    transactions = store.get(CollectionName.TRANSACTIONS)
    return summarize(
        [product for product in catalog if product.branch_id == branch_id],
        [transaction for transaction in transactions if transaction.branch_id == branch_id],
        catalog,
    )


def combined_performance(store: data_manager.EntityStore, branch_ids: Iterable[str]) -> BranchPerformance:
    """Sum :func:`branch_performance` over ``branch_ids``."""
    total = BranchPerformance()
    for branch_id in branch_ids:
        total = total + branch_performance(store, branch_id)
    return total


def scope_performance(
    store: data_manager.EntityStore,
    caller: Caller,
    branch_id: Optional[str] = None,
) -> BranchPerformance:
    """Run the same reduction over the caller's scoped records.

    For a scope whose records all reference existing branches this equals
    :func:`combined_performance` over the caller's visible branches.
    """
    catalog = store.get(CollectionName.PRODUCTS)
    products = narrow_to_branch(filter_scope(caller, catalog), branch_id)
    transactions = narrow_to_branch(
        filter_scope(caller, store.get(CollectionName.TRANSACTIONS)), branch_id
    )
    return summarize(products, transactions, catalog)


def top_selling(
    transactions: Iterable[data_manager.TransactionRow],
    products: Sequence[data_manager.ProductRow],
    limit: int = TOP_SELLING_LIMIT,
) -> List[Tuple[data_manager.ProductRow, int]]:
    """Rank products by units sold; products no longer listed are skipped."""
    sold: Dict[str, int] = defaultdict(int)
    for transaction in transactions:
        for item in transaction.items:
            sold[item.product_id] += item.quantity

    by_id = {product.product_id: product for product in products}
    ranked = sorted(sold.items(), key=lambda entry: entry[1], reverse=True)[:limit]
    return [(by_id[product_id], units) for product_id, units in ranked if product_id in by_id]


def dashboard_summary(store: data_manager.EntityStore, caller: Caller) -> DashboardSummary:
    """Headline figures for the caller's dashboard."""
    catalog = store.get(CollectionName.PRODUCTS)
    products = filter_scope(caller, catalog)
    transactions = filter_scope(caller, store.get(CollectionName.TRANSACTIONS))
    return DashboardSummary(
        performance=summarize(products, transactions, catalog),
        items_sold=sum(item.quantity for transaction in transactions for item in transaction.items),
        top_selling=tuple(top_selling(transactions, products)),
    )


def product_sales(store: data_manager.EntityStore, product_id: str) -> Tuple[int, Decimal]:
    """Return ``(units_sold, revenue)`` recorded for ``product_id`` across all branches."""
    units = 0
    revenue = ZERO
    for transaction in store.get(CollectionName.TRANSACTIONS):
        for item in transaction.items:
            if item.product_id == product_id:
                units += item.quantity
                revenue += item.price * item.quantity
    return units, revenue


def net_profit(performance: BranchPerformance, policy: OperatingExpensePolicy) -> Decimal:
    return performance.gross_profit - policy.expenses_for(performance)


def efficiency_score(performance: BranchPerformance, policy: OperatingExpensePolicy) -> int:
    """Score a branch between 10 and 99.

    Net margin contributes its percentage (never below zero), every five
    low-stock products cost ten points, and every ten transactions add one
    point up to thirty. The sum is centred on fifty before clamping.
    """
    margin = ZERO
    if performance.revenue > ZERO:
        margin = net_profit(performance, policy) / performance.revenue
    score = max(ZERO, margin * 100)
    score -= (performance.low_stock_count // 5) * 10
    score += min(30, performance.transaction_count // 10)
    rounded = int((score + 50).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return min(max(rounded, 10), 99)


def rank_branches(
    store: data_manager.EntityStore,
    caller: Caller,
    policy: OperatingExpensePolicy,
) -> List[BranchReport]:
    """Build one report per visible branch, best net profit first."""
    reports = []
    for branch in scope_branches(store, caller):
        performance = branch_performance(store, branch.branch_id)
        expenses = policy.expenses_for(performance)
        reports.append(
            BranchReport(
                branch=branch,
                performance=performance,
                operating_expenses=expenses,
                total_expenses=performance.cogs + expenses,
                net_profit=performance.gross_profit - expenses,
                efficiency_score=efficiency_score(performance, policy),
            )
        )
    reports.sort(key=lambda report: report.net_profit, reverse=True)
    return reports


class RevenueLedger:
    """Running revenue and transaction counts per branch.

    Updated at checkout commit time so dashboards can skip a full scan of the
    transaction log. The totals must always equal those of
    :func:`branch_performance`.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._revenue: Dict[str, Decimal] = defaultdict(lambda: ZERO)
        self._counts: Dict[str, int] = defaultdict(int)

    @classmethod
    def from_transactions(cls, transactions: Iterable[data_manager.TransactionRow]) -> "RevenueLedger":
        ledger = cls()
        for transaction in transactions:
            ledger.record(transaction)
        return ledger

    def record(self, transaction: data_manager.TransactionRow) -> None:
        with self._lock:
            self._revenue[transaction.branch_id] += transaction.total
            self._counts[transaction.branch_id] += 1

    def revenue_for(self, branch_id: str) -> Decimal:
        with self._lock:
            return self._revenue.get(branch_id, ZERO)

    def transaction_count_for(self, branch_id: str) -> int:
        with self._lock:
            return self._counts.get(branch_id, 0)


def prime_ledger(context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
    """Return a copy of ``context`` carrying a ledger built from the store."""
    ledger = RevenueLedger.from_transactions(context.store.get(CollectionName.TRANSACTIONS))
    log.info("Primed revenue ledger from the transaction log")
    return replace(context, ledger=ledger)
