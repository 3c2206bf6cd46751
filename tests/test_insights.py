"""Tests for rule-based insights and the advisor fallback."""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import Mock

import pytest

from pharmadesk import data_manager, insights
from pharmadesk.constants import CollectionName, InsightType

TODAY = date(2025, 1, 15)
FAR_EXPIRY = date(2030, 1, 1)


def test_seed_branch_reports_one_critical_item(memory_store):
    """Downtown's Ibuprofen sits under its minimum and triggers the stockout rule."""

    found = insights.statistical_insights(memory_store, "b1", today=date(2020, 1, 1))

    assert len(found) == 1
    assert found[0].metric == "Stock Critical"
    assert found[0].type is InsightType.WARNING
    assert found[0].message.startswith("1 items below safety stock")
    assert "$120/day" in found[0].message


def test_out_of_stock_is_not_low_stock(make_product):
    """Products already at zero do not count towards the stockout rule."""

    products = [make_product("a", stock=0), make_product("b", stock=5, min_stock_level=5)]
    found = insights.evaluate_rules(products, TODAY)
    assert [i.metric for i in found] == ["Stock Critical"]
    assert found[0].message.startswith("1 items")


def test_dead_stock_names_first_match(make_product):
    products = [
        make_product("a", stock=201, name="Saline"),
        make_product("b", stock=500, name="Gauze"),
    ]
    found = insights.evaluate_rules(products, TODAY)
    assert found[0].metric == "Cash Flow"
    assert found[0].message.startswith("Capital Lock Detected: Saline has >200 units.")


def test_expiry_window(make_product):
    """Products expiring within the next sixty days, inclusive, are flagged."""

    products = [
        make_product("a", expiry_date=TODAY + timedelta(days=10)),
        make_product("b", expiry_date=TODAY + timedelta(days=59)),
        make_product("c", expiry_date=TODAY + timedelta(days=60)),
        make_product("f", expiry_date=TODAY + timedelta(days=61)),
        make_product("d", expiry_date=TODAY),
        make_product("e", expiry_date=TODAY - timedelta(days=3)),
    ]
    found = insights.evaluate_rules(products, TODAY)
    assert [i.metric for i in found] == ["Expiry Risk"]
    assert found[0].message.startswith("3 batches expiring <60 days.")


@pytest.mark.parametrize(
    "price, cost, stock, expected",
    [
        (Decimal("100"), Decimal("30"), 60, True),
        (Decimal("50"), Decimal("45"), 60, False),
        (Decimal("100"), Decimal("30"), 50, False),
        (Decimal("25"), Decimal("10"), 60, False),
    ],
)
def test_high_margin_rule(make_product, price, cost, stock, expected):
    """Margins above 150% of cost on well stocked products are highlighted."""

    product = make_product("a", name="Premium", price=price, cost=cost, stock=stock, min_stock_level=0)
    found = insights.evaluate_rules([product], TODAY)

    fired = [i for i in found if i.metric == "Profit Maximization"]
    assert bool(fired) is expected
    if expected:
        assert fired[0].type is InsightType.SUCCESS
        assert fired[0].message.startswith("High Margin Alert: 'Premium' yields >150% return.")


def test_rules_fire_in_fixed_order(make_product):
    products = [
        make_product("a", price=Decimal("100"), cost=Decimal("30"), stock=300, min_stock_level=400,
                     expiry_date=TODAY + timedelta(days=5)),
    ]
    found = insights.evaluate_rules(products, TODAY)
    assert [i.metric for i in found] == ["Stock Critical", "Cash Flow", "Expiry Risk", "Profit Maximization"]


def test_no_products_no_insights():
    assert insights.evaluate_rules([], TODAY) == []


def test_statistical_insights_all_branches(memory_store):
    """Without a branch every product is evaluated."""

    found = insights.statistical_insights(memory_store, today=date(2020, 1, 1))
    assert [i.metric for i in found] == ["Stock Critical"]


# ---------------------------------------------------------------------------
# Advisor
# ---------------------------------------------------------------------------


def _sale(memory_store):
    memory_store.put(
        CollectionName.TRANSACTIONS,
        [
            data_manager.TransactionRow(
                "T1",
                "2025-01-15T09:30:00+00:00",
                Decimal("25.00"),
                "b1",
                "u3",
                (data_manager.LineItem("p1", "Amoxicillin 500mg", 2, Decimal("12.50")),),
            ),
            data_manager.TransactionRow(
                "T2",
                "2025-01-15T09:31:00+00:00",
                Decimal("25.00"),
                "b2",
                "u9",
                (data_manager.LineItem("p4", "Vitamin D3", 1, Decimal("25.00")),),
            ),
        ],
    )


def test_advisor_receives_scoped_summary(memory_store, manager):
    """The advisor only sees the caller's branches."""

    _sale(memory_store)
    client = Mock()
    client.generate.return_value = ["Reorder Amoxicillin"]

    assert insights.advisor_insights(memory_store, manager, client) == ["Reorder Amoxicillin"]

    summary = client.generate.call_args.args[0]
    assert summary["totalProducts"] == 3
    assert summary["lowStockItems"] == ["Ibuprofen 200mg"]
    assert summary["recentSalesTotal"] == "25.00"
    assert summary["topSelling"] == [{"productName": "Amoxicillin 500mg", "quantity": 2, "price": "12.50"}]


def test_advisor_failure_falls_back_to_rules(memory_store, manager, caplog):
    """Advisor errors are logged and replaced by the rule messages."""

    client = Mock()
    client.generate.side_effect = ConnectionError("timeout")

    lines = insights.advisor_insights(memory_store, manager, client, today=date(2020, 1, 1))

    assert len(lines) == 1 and lines[0].startswith("1 items below safety stock")
    assert "Advisor request failed" in caplog.text


def test_empty_advisor_answer_falls_back(memory_store, manager):
    client = Mock()
    client.generate.return_value = []
    lines = insights.advisor_insights(memory_store, manager, client, today=date(2020, 1, 1))
    assert lines[0].startswith("1 items")


def test_offline_lines_when_no_rule_fires(make_product, owner):
    """With nothing to report the canned offline recommendations are returned."""

    store = data_manager.MemoryStore(
        seeds={},
        data={CollectionName.PRODUCTS: [make_product("a", expiry_date=FAR_EXPIRY)]},
    )
    assert insights.advisor_insights(store, owner, today=TODAY) == list(insights.OFFLINE_INSIGHTS)


# ---------------------------------------------------------------------------
# Inventory questions
# ---------------------------------------------------------------------------


def test_inventory_context_lists_matching_products(memory_store):
    products = memory_store.get(CollectionName.PRODUCTS)
    context = insights.inventory_context(products, "How much amoxicillin stock do we have?")
    assert context == "- Amoxicillin 500mg: 150 units (Min: 50)"


def test_inventory_context_without_match(memory_store):
    products = memory_store.get(CollectionName.PRODUCTS)
    assert insights.inventory_context(products, "Do we have aspirin?") == insights.NO_MATCHING_PRODUCTS


def test_inventory_context_ignores_other_questions(memory_store):
    products = memory_store.get(CollectionName.PRODUCTS)
    assert insights.inventory_context(products, "Summarize last week's revenue") is None
