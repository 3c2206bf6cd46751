"""Rule-based business insights and the boundary to an external advisor.

:func:`statistical_insights` evaluates four independent rules over a set of
products. :func:`advisor_insights` hands a read-only summary to an optional
:class:`AdvisorClient` and falls back to the rule output whenever the client
is missing or fails; advisor trouble is logged and never reaches the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from . import data_manager, log
from .constants import (
    DEAD_STOCK_THRESHOLD,
    EXPIRY_WINDOW_DAYS,
    HIGH_MARGIN_MIN_STOCK,
    HIGH_MARGIN_MULTIPLIER,
    STOCKOUT_DAILY_LOSS_PER_ITEM,
    CollectionName,
    InsightType,
)
from .scope import Caller, filter_scope

AI_SUMMARY_ITEM_LIMIT = 10
INVENTORY_QUERY_WORDS = ("stock", "have", "available", "inventory", "count")
NO_MATCHING_PRODUCTS = "No matching products found in inventory."

OFFLINE_INSIGHTS = (
    "STRATEGY: Antibiotic sales surge predicted (+22%). Pre-order 'Amoxicillin' bulk packs "
    "to secure 12% supplier discount.",
    "BUNDLING: 'Vitamin D3' frequently bought with Pain Relief. Create a 'Wellness Bundle' "
    "to increase average basket size by 15%.",
    "STAFFING: Peak traffic detected 4pm-7pm at Downtown Branch. Add 1 support staff to "
    "reduce wait times and recover lost walk-ins.",
)


@dataclass(frozen=True)
class Insight:
    type: InsightType
    message: str
    metric: Optional[str] = None


class AdvisorClient(Protocol):
    """External text generator asked for short business recommendations."""

    def generate(self, summary: Mapping[str, Any]) -> Sequence[str]:
        ...


def _today(candidate: Optional[date]) -> date:
    return candidate if candidate is not None else datetime.now(UTC).date()


def evaluate_rules(products: Sequence[data_manager.ProductRow], today: Optional[date] = None) -> List[Insight]:
    """Apply the stockout, dead stock, expiry and margin rules, in that order.

    Each rule fires at most once. Where a message names a single product it
    is the first matching product in ``products`` order.
    """
    today = _today(today)
    insights = []

    low_stock = [p for p in products if 0 < p.stock <= p.min_stock_level]
    if low_stock:
        insights.append(
            Insight(
                type=InsightType.WARNING,
                message=(
                    f"{len(low_stock)} items below safety stock. Risk of revenue loss estimated at "
                    f"${len(low_stock) * STOCKOUT_DAILY_LOSS_PER_ITEM}/day if depleted."
                ),
                metric="Stock Critical",
            )
        )

    dead_stock = [p for p in products if p.stock > DEAD_STOCK_THRESHOLD]
    if dead_stock:
        insights.append(
            Insight(
                type=InsightType.WARNING,
                message=(
                    f"Capital Lock Detected: {dead_stock[0].name} has >{DEAD_STOCK_THRESHOLD} units. "
                    "Recommend 15% flash sale to free up liquidity."
                ),
                metric="Cash Flow",
            )
        )

    # a batch due on the last day of the window still counts
    expiring = [p for p in products if 0 < (p.expiry_date - today).days <= EXPIRY_WINDOW_DAYS]
    if expiring:
        insights.append(
            Insight(
                type=InsightType.WARNING,
                message=(
                    f"{len(expiring)} batches expiring <{EXPIRY_WINDOW_DAYS} days. "
                    "Bundle with fast-movers to clear inventory."
                ),
                metric="Expiry Risk",
            )
        )

    multiplier = Decimal(HIGH_MARGIN_MULTIPLIER)
    high_margin = [
        p for p in products if (p.price - p.cost) > p.cost * multiplier and p.stock > HIGH_MARGIN_MIN_STOCK
    ]
    if high_margin:
        insights.append(
            Insight(
                type=InsightType.SUCCESS,
                message=(
                    f"High Margin Alert: '{high_margin[0].name}' yields >150% return. "
                    "Instruct pharmacists to recommend as primary option."
                ),
                metric="Profit Maximization",
            )
        )

    return insights


def statistical_insights(
    store: data_manager.EntityStore,
    branch_id: Optional[str] = None,
    today: Optional[date] = None,
) -> List[Insight]:
    """Evaluate the insight rules for one branch, or every branch when ``None``."""
    products = [
        product
        for product in store.get(CollectionName.PRODUCTS)
        if branch_id is None or product.branch_id == branch_id
    ]
    return evaluate_rules(products, today)


def build_ai_summary(
    products: Sequence[data_manager.ProductRow],
    transactions: Sequence[data_manager.TransactionRow],
) -> Dict[str, Any]:
    """Condense scoped records into the JSON-friendly context sent to an advisor."""
    items = [item for transaction in transactions for item in transaction.items]
    return {
        "totalProducts": len(products),
        "lowStockItems": [p.name for p in products if p.stock < p.min_stock_level],
        "recentSalesTotal": str(sum((t.total for t in transactions), Decimal("0"))),
        "topSelling": [
            {"productName": item.product_name, "quantity": item.quantity, "price": str(item.price)}
            for item in items[:AI_SUMMARY_ITEM_LIMIT]
        ],
    }


def advisor_insights(
    store: data_manager.EntityStore,
    caller: Caller,
    client: Optional[AdvisorClient] = None,
    *,
    today: Optional[date] = None,
) -> List[str]:
    """Ask ``client`` for recommendations over the caller's scoped data.

    Without a client, or when the client raises or answers with nothing, the
    messages of the rule-based insights for the same scope are returned, and
    :data:`OFFLINE_INSIGHTS` when no rule fires.
    """
    products = filter_scope(caller, store.get(CollectionName.PRODUCTS))
    if client is not None:
        transactions = filter_scope(caller, store.get(CollectionName.TRANSACTIONS))
        try:
            lines = [str(line) for line in client.generate(build_ai_summary(products, transactions))]
        except Exception as exc:
            log.error("Advisor request failed; using statistical insights: %s", exc)
        else:
            if lines:
                return lines
            log.warning("Advisor returned no insights; using statistical insights")
    else:
        log.info("No advisor configured; using statistical insights")

    messages = [insight.message for insight in evaluate_rules(products, today)]
    return messages or list(OFFLINE_INSIGHTS)


def needs_inventory_context(query: str) -> bool:
    lowered = query.lower()
    return any(word in lowered for word in INVENTORY_QUERY_WORDS)


def inventory_context(products: Iterable[data_manager.ProductRow], query: str) -> Optional[str]:
    """Describe stock levels of products named in ``query``.

    Returns ``None`` when the query is not about stock. Words of four or more
    letters are matched against product names.
    """
    if not needs_inventory_context(query):
        return None
    words = [word for word in query.lower().split(" ") if len(word) > 3]
    relevant = [p for p in products if any(word in p.name.lower() for word in words)]
    if not relevant:
        return NO_MATCHING_PRODUCTS
    return "\n".join(f"- {p.name}: {p.stock} units (Min: {p.min_stock_level})" for p in relevant)
