"""
test_profit.py - Card-fee model and profit attribution.

Usage: python -m pytest test_profit.py
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conftest import make_transaction
from models import CatalogProduct, LineItem, TransactionType
from profit import attribute_profit, credit_card_fee

FIXED_NOW = datetime(2025, 3, 15, tzinfo=timezone.utc)


def _sale(**fields):
    fields.setdefault("amount", 100.0)
    return make_transaction(**fields)


def test_square_fee(settings):
    assert credit_card_fee(_sale(source="square"), settings) == 2.70


def test_shopify_fee(settings):
    assert credit_card_fee(_sale(source="shopify"), settings) == 3.20


def test_shopify_amex_fee(settings):
    assert credit_card_fee(_sale(source="shopify", payment_method="American Express"), settings) == 3.80


def test_venmo_is_exempt(settings):
    assert credit_card_fee(_sale(source="square", payment_method="Venmo"), settings) == 0.0


def test_sources_without_schedule_carry_no_fee(settings):
    for source in ("excel", "manual", "gmail"):
        assert credit_card_fee(_sale(source=source), settings) == 0.0


def test_platform_recorded_fee_wins(settings):
    assert credit_card_fee(_sale(source="square", processing_fee=1.23), settings) == 1.23


def _catalog_lookup(catalog):
    by_id = {product.id: product for product in catalog}
    return by_id.get


def _two_line_sale():
    return make_transaction(
        amount=53.50,
        pre_tax_amount=49.14,
        tax_amount=4.36,
        is_taxable=True,
        products=[
            LineItem.priced("Dog Treats", 2, 21.75, product_id="p-treats", product_name="Dog Treats"),
            LineItem.priced("Mystery Item", 1, 10.0),
        ],
    )


def test_attribution_with_partial_cost_data(catalog, settings):
    calculation = attribute_profit(_two_line_sale(), _catalog_lookup(catalog), settings=settings, now=FIXED_NOW)

    treats, mystery = calculation.items
    assert treats.has_cost_data
    assert treats.unit_cost == 9.0
    assert treats.cost == 18.0
    assert treats.revenue_share == pytest.approx(43.5 / 53.5, abs=1e-6)
    assert treats.tax_share == pytest.approx(4.36 * 43.5 / 53.5, abs=0.01)
    assert treats.profit == pytest.approx(43.5 - 18.0 - 4.36 * 43.5 / 53.5, abs=0.01)

    assert not mystery.has_cost_data
    assert mystery.cost == 0.0

    assert calculation.items_without_cost == 1
    assert calculation.total_revenue == 53.50
    assert calculation.total_item_revenue == 53.50
    assert calculation.total_cost == 18.0
    assert calculation.credit_card_fees == 0.0
    assert calculation.total_profit == pytest.approx(53.50 - 18.0 - 4.36, abs=0.005)
    assert calculation.profit_margin == pytest.approx(31.14 / 53.50 * 100, abs=0.01)


def test_item_revenue_is_conserved(catalog, settings):
    calculation = attribute_profit(_two_line_sale(), _catalog_lookup(catalog), settings=settings)
    assert sum(item.revenue for item in calculation.items) == pytest.approx(calculation.total_item_revenue)
    assert sum(item.revenue_share for item in calculation.items) == pytest.approx(1.0, abs=1e-5)


def test_fees_are_allocated_by_share(catalog, settings):
    sale = _two_line_sale().model_copy(update={"source": "square"})
    calculation = attribute_profit(sale, _catalog_lookup(catalog), settings=settings)
    assert calculation.credit_card_fees == round(53.50 * 0.026 + 0.10, 2)
    assert sum(item.fee_share for item in calculation.items) == pytest.approx(calculation.credit_card_fees, abs=0.01)


def test_explicit_fee_overrides_model(catalog, settings):
    calculation = attribute_profit(_two_line_sale(), _catalog_lookup(catalog), fees=2.0, settings=settings)
    assert calculation.credit_card_fees == 2.0


def test_zero_revenue_lines_get_zero_share(catalog, settings):
    sale = make_transaction(
        amount=0.0,
        products=[LineItem.priced("Dog Treats", 1, 0.0, product_id="p-treats")],
    )
    calculation = attribute_profit(sale, _catalog_lookup(catalog), settings=settings)
    assert calculation.items[0].revenue_share == 0.0
    assert calculation.items[0].tax_share == 0.0
    assert calculation.profit_margin == 0.0


def test_last_purchase_price_is_cost_fallback(settings):
    catalog = [CatalogProduct(id="p1", name="Chew", last_purchase_price=4.0)]
    sale = make_transaction(amount=10.0, products=[LineItem.priced("Chew", 1, 10.0, product_id="p1")])
    calculation = attribute_profit(sale, _catalog_lookup(catalog), settings=settings)
    assert calculation.items[0].unit_cost == 4.0


def test_product_without_any_cost_has_no_cost_data(settings):
    catalog = [CatalogProduct(id="p1", name="Chew")]
    sale = make_transaction(amount=10.0, products=[LineItem.priced("Chew", 1, 10.0, product_id="p1")])
    calculation = attribute_profit(sale, _catalog_lookup(catalog), settings=settings)
    assert not calculation.has_cost_data
    assert calculation.items_without_cost == 1


def test_expenses_are_rejected(catalog, settings):
    expense = make_transaction(type=TransactionType.EXPENSE, supplier="Chewy")
    with pytest.raises(ValueError):
        attribute_profit(expense, _catalog_lookup(catalog), settings=settings)


def test_attribution_is_pure_and_idempotent(catalog, settings):
    sale = _two_line_sale()
    before = sale.model_dump()
    catalog_before = [product.model_dump() for product in catalog]

    first = attribute_profit(sale, _catalog_lookup(catalog), settings=settings, now=FIXED_NOW)
    second = attribute_profit(sale, _catalog_lookup(catalog), settings=settings, now=FIXED_NOW)

    assert first == second
    assert sale.model_dump() == before
    assert [product.model_dump() for product in catalog] == catalog_before


def test_tip_counts_as_revenue(catalog, settings):
    sale = make_transaction(
        amount=60.0,
        pre_tax_amount=50.0,
        tax_amount=5.0,
        tip=5.0,
        products=[LineItem.priced("Dog Treats", 1, 55.0, product_id="p-treats")],
    )
    calculation = attribute_profit(sale, _catalog_lookup(catalog), settings=settings)
    assert calculation.total_revenue == 60.0
    assert calculation.total_profit == pytest.approx(60.0 - 9.0 - 5.0)


def test_card_brand_selects_network_schedule(settings):
    sale = _sale(source="shopify", payment_method="Card", card_brand="American Express")
    assert credit_card_fee(sale, settings) == 3.80


def test_unknown_card_brand_falls_back_to_source_schedule(settings):
    assert credit_card_fee(_sale(source="shopify", card_brand="Visa"), settings) == 3.20
