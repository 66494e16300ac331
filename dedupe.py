"""
dedupe.py - Decide whether an incoming record is already stored.

Strategies, tried in order over the whole store; the first hit wins:
1. external_id      record id == stored external id                  (exact)
2. internal_id      record id == stored internal id                  (exact)
3. source_prefix    ids equal once the source prefix is added/removed (exact)
4. supplier_order   expenses: same supplier and same order number    (exact)
5. supplier_amount  expenses: same supplier and same amount          (exact)
6. fuzzy            same type, similar counterparty, amount and date (probable)

Exact matches are skipped on import. Probable matches are reported for
review and never skipped silently.

Fuzzy confidence weights:
    counterparty 0.40, amount 0.35, date 0.25
"""

from __future__ import annotations

from typing import Optional, Sequence

from rapidfuzz import fuzz

from config import EngineSettings, get_settings
from logging_config import get_logger
from models import (
    CanonicalTransaction,
    ExistingMatch,
    MatchType,
    RawRecord,
    TransactionType,
)

logger = get_logger(__name__)

NAME_WEIGHT = 0.40
AMOUNT_WEIGHT = 0.35
DATE_WEIGHT = 0.25

AMOUNT_TOLERANCE_PCT = 0.25
DATE_WINDOW_DAYS = 5.0


def strip_prefix(identifier: str, prefix: str) -> str:
    if prefix and identifier.startswith(prefix):
        return identifier[len(prefix) :]
    return identifier


def _names_equal(left: Optional[str], right: Optional[str]) -> bool:
    if not left or not right:
        return False
    return left.strip().lower() == right.strip().lower()


def _amounts_equal(left: Optional[float], right: Optional[float]) -> bool:
    if left is None or right is None:
        return False
    return round(left, 2) == round(right, 2)


def record_counterparty(record: RawRecord, transaction_type: TransactionType) -> str:
    if transaction_type == TransactionType.EXPENSE:
        return record.supplier or ""
    if transaction_type == TransactionType.TRAINING:
        return record.client or ""
    return record.customer or record.client or ""


def stored_counterparty(transaction: CanonicalTransaction) -> str:
    if transaction.type == TransactionType.EXPENSE:
        return transaction.supplier or ""
    if transaction.type == TransactionType.TRAINING:
        return transaction.client_name or ""
    return transaction.customer or ""


def score_counterparty(incoming: str, stored: str) -> tuple[float, str]:
    """Fuzzy similarity of two counterparty names, 0-100."""
    left = incoming.strip().lower()
    right = stored.strip().lower()
    if not left or not right:
        return 0.0, "Counterparty missing on one side - cannot compare"
    if left == right:
        return 100.0, f"Counterparty matches exactly: '{incoming}'"

    score = round(float(fuzz.token_sort_ratio(left, right)), 1)
    if score >= 80:
        evidence = f"Counterparty similar: '{incoming}' ~ '{stored}' (score: {score})"
    else:
        evidence = f"Counterparty differs: '{incoming}' vs '{stored}' (score: {score})"
    return score, evidence


def score_amount(incoming: float, stored: float) -> tuple[float, str]:
    """Amount proximity, 0 once the gap reaches 25% of the incoming amount."""
    if incoming <= 0:
        return 0.0, f"Incoming amount is ${incoming:.2f} - cannot compare"
    diff = round(abs(incoming - stored), 2)
    score = round(max(0.0, 1.0 - (diff / incoming) / AMOUNT_TOLERANCE_PCT) * 100.0, 1)
    if diff == 0:
        return score, f"Exact amount match: ${incoming:.2f}"
    return score, f"Amount differs: ${incoming:.2f} vs ${stored:.2f} (diff: ${diff:.2f})"


def score_date(days_apart: int) -> tuple[float, str]:
    score = round(max(0.0, 1.0 - days_apart / DATE_WINDOW_DAYS) * 100.0, 1)
    if days_apart == 0:
        return score, "Same date"
    return score, f"Dates {days_apart} day(s) apart"


def _match_by_id(
    external_id: str,
    existing: Sequence[CanonicalTransaction],
    prefix: str,
) -> Optional[ExistingMatch]:
    for transaction in existing:
        if transaction.external_id == external_id:
            return ExistingMatch(
                transaction=transaction,
                match_type=MatchType.EXACT,
                strategy="external_id",
                evidence=[f"External id '{external_id}' already stored"],
            )

    for transaction in existing:
        if transaction.id == external_id:
            return ExistingMatch(
                transaction=transaction,
                match_type=MatchType.EXACT,
                strategy="internal_id",
                evidence=[f"External id '{external_id}' equals stored internal id"],
            )

    bare = strip_prefix(external_id, prefix)
    variants = {bare, f"{prefix}{bare}"} - {external_id}
    for transaction in existing:
        for stored_id in (transaction.external_id, transaction.id):
            if stored_id and stored_id in variants:
                return ExistingMatch(
                    transaction=transaction,
                    match_type=MatchType.EXACT,
                    strategy="source_prefix",
                    evidence=[f"External id '{external_id}' matches stored '{stored_id}' once prefix '{prefix}' is normalized"],
                )
    return None


def _match_supplier(
    record: RawRecord,
    existing: Sequence[CanonicalTransaction],
) -> Optional[ExistingMatch]:
    for transaction in existing:
        if transaction.type != TransactionType.EXPENSE:
            continue
        if not _names_equal(record.supplier, transaction.supplier):
            continue
        if record.supplier_order_number and record.supplier_order_number == transaction.supplier_order_number:
            return ExistingMatch(
                transaction=transaction,
                match_type=MatchType.EXACT,
                strategy="supplier_order",
                evidence=[f"Supplier '{record.supplier}' order #{record.supplier_order_number} already stored"],
            )
        if _amounts_equal(record.expense_total, transaction.amount):
            return ExistingMatch(
                transaction=transaction,
                match_type=MatchType.EXACT,
                strategy="supplier_amount",
                evidence=[f"Supplier '{record.supplier}' with amount ${transaction.amount:.2f} already stored"],
            )
    return None


def find_probable_match(
    record: RawRecord,
    transaction_type: TransactionType,
    existing: Sequence[CanonicalTransaction],
    settings: Optional[EngineSettings] = None,
) -> Optional[ExistingMatch]:
    """Best same-type stored transaction whose weighted confidence clears the threshold."""
    settings = settings or get_settings()
    incoming_name = record_counterparty(record, transaction_type)
    incoming_amount = record.total
    best: Optional[ExistingMatch] = None

    for transaction in existing:
        if transaction.type != transaction_type:
            continue
        days_apart = abs((transaction.date.date() - record.date.date()).days)
        if days_apart > settings.probable_max_date_diff_days:
            continue

        n_score, n_evidence = score_counterparty(incoming_name, stored_counterparty(transaction))
        a_score, a_evidence = score_amount(incoming_amount, transaction.amount)
        d_score, d_evidence = score_date(days_apart)
        confidence = round(n_score * NAME_WEIGHT + a_score * AMOUNT_WEIGHT + d_score * DATE_WEIGHT, 1)

        if confidence < settings.probable_match_threshold:
            continue
        if best is None or confidence > best.confidence:
            best = ExistingMatch(
                transaction=transaction,
                match_type=MatchType.PROBABLE,
                strategy="fuzzy",
                confidence=confidence,
                evidence=[n_evidence, a_evidence, d_evidence],
            )
    return best


def find_existing_match(
    record: RawRecord,
    existing: Sequence[CanonicalTransaction],
    transaction_type: TransactionType,
    settings: Optional[EngineSettings] = None,
) -> Optional[ExistingMatch]:
    """Stored transaction this record duplicates, or None to import it as new.

    Deterministic: the same record and store always give the same answer.
    """
    settings = settings or get_settings()
    match: Optional[ExistingMatch] = None

    if record.external_id:
        match = _match_by_id(record.external_id, existing, settings.source_id_prefix)

    if match is None and transaction_type == TransactionType.EXPENSE and record.supplier:
        match = _match_supplier(record, existing)

    if match is None:
        match = find_probable_match(record, transaction_type, existing, settings)

    if match is not None:
        logger.info(
            "duplicate_found | row=%s | external_id=%s | match_type=%s | strategy=%s | stored_id=%s | confidence=%.1f",
            record.row_index,
            record.external_id,
            match.match_type.value,
            match.strategy,
            match.transaction.id,
            match.confidence,
        )
    return match
