"""
test_amounts.py - Pre-tax / tax / tip / discount derivation.

Usage: python -m pytest test_amounts.py
"""

from __future__ import annotations

import pytest

from amounts import derive_amounts, derive_for_record, derive_with_override, mode_for_record
from conftest import make_record
from models import DerivationMode, TransactionType

RATE = 0.08875


def test_inclusive_total_splits_into_pre_tax_and_tax():
    derived = derive_amounts(108.75, RATE)
    assert derived.pre_tax == 99.89
    assert derived.tax == 8.86
    assert derived.tip == 0.0
    assert derived.discount == 0.0
    assert derived.mode == DerivationMode.INCLUSIVE
    assert derived.is_taxable


def test_manual_total_above_natural_is_a_tip():
    derived = derive_with_override(50.0, 55.0, RATE)
    natural = derive_amounts(50.0, RATE)
    assert derived.tip == 5.0
    assert derived.discount == 0.0
    assert derived.total == 55.0
    assert derived.pre_tax == natural.pre_tax
    assert derived.tax == natural.tax


def test_manual_total_below_natural_is_a_discount():
    derived = derive_with_override(50.0, 45.0, RATE)
    assert derived.discount == 5.0
    assert derived.tip == 0.0
    assert derived.total == 45.0
    assert derived.pre_tax == 41.33
    assert derived.tax == 3.67


def test_equal_manual_total_has_no_tip_or_discount():
    derived = derive_with_override(50.0, 50.0, RATE)
    assert derived == derive_amounts(50.0, RATE)


def test_missing_manual_total_uses_natural():
    assert derive_with_override(72.5, None, RATE) == derive_amounts(72.5, RATE)


@pytest.mark.parametrize("natural,manual", [(50.0, 55.0), (50.0, 45.0), (19.99, 19.99), (0.01, 3.0), (1234.56, 1000.0)])
def test_stored_parts_add_back_to_total(natural, manual):
    derived = derive_with_override(natural, manual, RATE)
    assert round(derived.pre_tax + derived.tax + derived.tip, 2) == round(derived.total, 2)


def test_derivation_is_idempotent():
    assert derive_amounts(108.75, RATE) == derive_amounts(108.75, RATE)
    assert derive_with_override(50.0, 45.0, RATE) == derive_with_override(50.0, 45.0, RATE)


def test_exempt_and_agency_modes_carry_no_tax():
    for mode in (DerivationMode.EXEMPT, DerivationMode.AGENCY):
        derived = derive_amounts(100.0, RATE, mode)
        assert derived.pre_tax == 100.0
        assert derived.tax == 0.0
        assert not derived.is_taxable


def test_reported_tax_is_trusted():
    derived = derive_amounts(110.0, RATE, DerivationMode.REPORTED, reported_tax=7.5, tip=2.5)
    assert derived.tax == 7.5
    assert derived.pre_tax == 100.0
    assert derived.tip == 2.5


def test_reported_mode_requires_tax():
    with pytest.raises(ValueError):
        derive_amounts(110.0, RATE, DerivationMode.REPORTED)


def test_negative_rate_is_rejected():
    with pytest.raises(ValueError):
        derive_amounts(10.0, -0.1)


def test_agency_training_is_untaxed(settings):
    record = make_record(client="Jane Doe", dog_name="Rex", training_agency="Pawsitive", revenue=150.0)
    assert mode_for_record(record, TransactionType.TRAINING) == DerivationMode.AGENCY
    derived = derive_for_record(record, TransactionType.TRAINING, settings=settings)
    assert derived.pre_tax == 150.0
    assert derived.tax == 0.0


def test_direct_training_is_tax_inclusive(settings):
    record = make_record(client="Jane Doe", dog_name="Rex", revenue=108.75)
    derived = derive_for_record(record, TransactionType.TRAINING, settings=settings)
    assert derived.pre_tax == 99.89
    assert derived.tax == 8.86


def test_sheet_sale_tip_column_becomes_tip(settings):
    record = make_record(revenue=55.0, tip=5.0)
    derived = derive_for_record(record, TransactionType.SALE, settings=settings)
    assert derived.total == 55.0
    assert derived.tip == 5.0
    assert derived.pre_tax == 45.92
    assert derived.tax == 4.08


def test_sheet_sale_discount_column_becomes_discount(settings):
    record = make_record(revenue=45.0, discount=5.0)
    derived = derive_for_record(record, TransactionType.SALE, settings=settings)
    assert derived.discount == 5.0
    assert derived.pre_tax == 41.33


def test_shopify_sale_uses_reported_tax(settings):
    record = make_record(source="shopify", revenue=54.0, reported_tax=4.0)
    derived = derive_for_record(record, TransactionType.SALE, settings=settings)
    assert derived.mode == DerivationMode.REPORTED
    assert derived.pre_tax == 50.0


def test_expense_is_untaxed_wholesale_total(settings):
    record = make_record(supplier="Chewy", wholesale_cost=80.0)
    derived = derive_for_record(record, TransactionType.EXPENSE, settings=settings)
    assert derived.total == 80.0
    assert derived.tax == 0.0


def test_configured_tax_rate_is_used(settings):
    custom = settings.model_copy(update={"sales_tax_rate": 0.10})
    derived = derive_for_record(make_record(revenue=110.0), TransactionType.SALE, settings=custom)
    assert derived.pre_tax == 100.0
    assert derived.tax == 10.0


def test_sheet_sale_keeps_both_tip_and_discount(settings):
    record = make_record(revenue=50.0, tip=5.0, discount=3.0)
    derived = derive_for_record(record, TransactionType.SALE, settings=settings)
    assert derived.total == 50.0
    assert derived.tip == 5.0
    assert derived.discount == 3.0
    assert derived.pre_tax == 41.33
    assert derived.tax == 3.67


def test_platform_discount_is_carried(settings):
    record = make_record(source="square", revenue=45.0, discount=5.0)
    derived = derive_for_record(record, TransactionType.SALE, settings=settings)
    assert derived.total == 45.0
    assert derived.discount == 5.0
    assert derived.pre_tax == 41.33


def test_missing_manual_total_uses_natural_total(settings):
    record = make_record(source="manual")
    derived = derive_for_record(record, TransactionType.SALE, natural_total=43.5, settings=settings)
    assert derived.total == 43.5
    assert derived.pre_tax == 39.95
    assert derived.tip == 0.0
    assert derived.discount == 0.0
