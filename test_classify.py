"""
test_classify.py - Sale / expense / training classification.

Usage: python -m pytest test_classify.py
"""

from __future__ import annotations

from classify import classify, classify_with_signals, expense_signals, is_expense
from conftest import make_record
from models import TransactionType


def test_client_name_means_training_even_with_supplier_fields():
    record = make_record(client="Jane Doe", supplier="Chewy", supplier_order_number="ORD-9")
    transaction_type, conflicts = classify_with_signals(record)
    assert transaction_type == TransactionType.TRAINING
    assert conflicts
    assert "Jane Doe" in conflicts[0]


def test_wholesale_cost_without_revenue_is_expense():
    record = make_record(wholesale_cost=50.0)
    assert is_expense(record)
    assert classify(record) == TransactionType.EXPENSE


def test_supplier_with_order_number_is_expense():
    record = make_record(supplier="Chewy", supplier_order_number="ORD-1")
    assert classify(record) == TransactionType.EXPENSE


def test_supplier_alone_is_not_an_expense_signal():
    record = make_record(supplier="Chewy")
    assert expense_signals(record) == []
    assert classify(record) == TransactionType.SALE


def test_named_category_is_expense():
    record = make_record(expense_categories={"shipping": 12.0, "ads": 0.0})
    assert expense_signals(record) == ["shipping"]
    assert classify(record) == TransactionType.EXPENSE


def test_revenue_overrides_expense_signals_and_is_flagged():
    record = make_record(revenue=100.0, wholesale_cost=40.0)
    transaction_type, conflicts = classify_with_signals(record)
    assert transaction_type == TransactionType.SALE
    assert len(conflicts) == 1


def test_zero_revenue_counts_as_absent():
    record = make_record(revenue=0.0, wholesale_cost=40.0)
    assert classify(record) == TransactionType.EXPENSE


def test_empty_record_is_a_sale():
    record = make_record()
    transaction_type, conflicts = classify_with_signals(record)
    assert transaction_type == TransactionType.SALE
    assert conflicts == []


def test_training_fields_without_client_are_flagged():
    record = make_record(revenue=80.0, dog_name="Rex")
    transaction_type, conflicts = classify_with_signals(record)
    assert transaction_type == TransactionType.SALE
    assert conflicts == ["training fields present without a client name"]


def test_every_record_gets_exactly_one_type():
    records = [
        make_record(),
        make_record(revenue=10.0),
        make_record(client="A"),
        make_record(wholesale_cost=1.0),
        make_record(client="A", wholesale_cost=1.0, revenue=5.0),
        make_record(expense_categories={"other": 3.0}, revenue=3.0),
    ]
    for record in records:
        assert classify(record) in set(TransactionType)


def test_blank_client_is_not_training():
    assert classify(make_record(client="   ", revenue=20.0)) == TransactionType.SALE
