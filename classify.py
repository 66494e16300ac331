"""
classify.py - Decide whether a raw row is a sale, an expense or a training session.

Fixed priority, first rule wins:
1. a training client is named            -> training
2. no revenue and an expense signal      -> expense
3. anything else                         -> sale

Expense signals: wholesale cost > 0, supplier together with a supplier order
number, or any named expense category > 0.
"""

from __future__ import annotations

from logging_config import get_logger
from models import RawRecord, TransactionType

logger = get_logger(__name__)

EXPENSE_CATEGORY_FIELDS = (
    "software",
    "ads",
    "equipment",
    "misc",
    "print_media",
    "shipping",
    "transit",
    "dry_ice",
    "packaging",
    "space_rental",
    "pawsability_rent",
    "other",
)


def _has_client(record: RawRecord) -> bool:
    return bool(record.client and record.client.strip())


def _has_revenue(record: RawRecord) -> bool:
    return bool(record.revenue)


def expense_signals(record: RawRecord) -> list[str]:
    """Names of the expense signals present on the record."""
    signals = []
    if record.wholesale_cost is not None and record.wholesale_cost > 0:
        signals.append("wholesale_cost")
    if record.supplier and record.supplier_order_number:
        signals.append("supplier_order")
    for category in EXPENSE_CATEGORY_FIELDS:
        if record.expense_categories.get(category, 0) > 0:
            signals.append(category)
    return signals


def is_expense(record: RawRecord) -> bool:
    return not _has_revenue(record) and bool(expense_signals(record))


def classify(record: RawRecord) -> TransactionType:
    """Classify a record. Total: every record gets exactly one type."""
    if _has_client(record):
        return TransactionType.TRAINING
    if is_expense(record):
        return TransactionType.EXPENSE
    return TransactionType.SALE


def classify_with_signals(record: RawRecord) -> tuple[TransactionType, list[str]]:
    """Classify and list the signals that point at a different type.

    The fixed priority still decides; conflicts are returned so the row can
    be flagged for review.
    """
    transaction_type = classify(record)
    signals = expense_signals(record)
    conflicts: list[str] = []

    if transaction_type == TransactionType.TRAINING:
        if signals:
            conflicts.append(f"training client {record.client!r} alongside expense fields: {signals}")
        if record.customer and record.customer != record.client:
            conflicts.append(f"training client {record.client!r} alongside customer {record.customer!r}")
    elif transaction_type == TransactionType.SALE:
        if signals and _has_revenue(record):
            conflicts.append(f"revenue {record.revenue:.2f} alongside expense fields: {signals}")
        if record.training_agency or record.dog_name:
            conflicts.append("training fields present without a client name")
    elif transaction_type == TransactionType.EXPENSE and record.customer:
        conflicts.append(f"expense fields alongside customer {record.customer!r}")

    if conflicts:
        logger.warning(
            "classification_conflict | row=%s | external_id=%s | type=%s | conflicts=%s",
            record.row_index,
            record.external_id,
            transaction_type.value,
            len(conflicts),
        )
    return transaction_type, conflicts
