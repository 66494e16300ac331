"""
reconcile.py - Batch reconciliation pipeline.

Per record, in input order:
    normalize -> classify -> dedupe -> match products -> derive amounts
    -> attribute profit (when cost data exists) -> build canonical payload

A record that fails to parse or lacks a required field becomes a
RecordIssue; the rest of the batch continues. Duplicates are a normal
outcome, not an error.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence, Union

from amounts import derive_for_record
from classify import classify_with_signals
from config import EngineSettings, get_settings
from dedupe import find_existing_match
from logging_config import get_logger
from models import (
    BatchResult,
    CanonicalTransaction,
    CatalogProduct,
    ExistingMatch,
    MatchType,
    RawRecord,
    ReconciledRecord,
    RecordIssue,
    RecordOutcome,
    TransactionType,
)
from normalize import RecordParseError, record_from_api_payload, record_from_row
from payload import PayloadError, build_line_items, normalize
from profit import attribute_profit

logger = get_logger(__name__)

Row = Union[RawRecord, Mapping[str, Any]]


def reconcile_record(
    record: RawRecord,
    existing: Sequence[CanonicalTransaction],
    catalog: Sequence[CatalogProduct],
    overrides: Optional[Mapping[str, str]] = None,
    settings: Optional[EngineSettings] = None,
) -> ReconciledRecord:
    """Run one parsed record through the pipeline.

    Raises PayloadError when a field required by the decided type is missing.
    """
    settings = settings or get_settings()
    transaction_type, warnings = classify_with_signals(record)

    match = find_existing_match(record, existing, transaction_type, settings)
    if match is not None and match.match_type == MatchType.EXACT:
        return ReconciledRecord(
            row_index=record.row_index,
            external_id=record.external_id,
            type=transaction_type,
            outcome=RecordOutcome.DUPLICATE,
            existing_match=match,
            warnings=warnings,
        )

    products, product_matches, product_warnings = build_line_items(
        record, transaction_type, catalog, overrides, settings
    )
    warnings.extend(product_warnings)

    natural_total = None
    if record.source == "manual" and products:
        natural_total = sum(item.total_price for item in products)
    amounts = derive_for_record(record, transaction_type, natural_total, settings)
    transaction = normalize(record, transaction_type, amounts, products, settings)

    if transaction_type != TransactionType.EXPENSE and any(item.product_id for item in products):
        by_id = {product.id: product for product in catalog}
        calculation = attribute_profit(transaction, by_id.get, settings=settings)
        if calculation.has_cost_data:
            transaction = transaction.model_copy(update={"profit_calculation": calculation})

    return ReconciledRecord(
        row_index=record.row_index,
        external_id=record.external_id,
        type=transaction_type,
        outcome=RecordOutcome.PROBABLE_DUPLICATE if match is not None else RecordOutcome.NEW,
        transaction=transaction,
        existing_match=match,
        product_matches=product_matches,
        warnings=warnings,
    )


def _failed(row_index: int, external_id: Optional[str], field: Optional[str], message: str) -> tuple[ReconciledRecord, RecordIssue]:
    issue = RecordIssue(row_index=row_index, external_id=external_id, field=field, message=message)
    record = ReconciledRecord(
        row_index=row_index,
        external_id=external_id,
        outcome=RecordOutcome.FAILED,
        warnings=[message],
    )
    return record, issue


def reconcile_batch(
    rows: Sequence[Row],
    existing: Sequence[CanonicalTransaction],
    catalog: Sequence[CatalogProduct],
    overrides: Optional[Mapping[str, str]] = None,
    settings: Optional[EngineSettings] = None,
    dedupe_within_batch: bool = True,
    source: str = "excel",
    row_format: str = "sheet",
) -> BatchResult:
    """Reconcile an import batch against the store. Never raises for a bad row.

    Rows may be spreadsheet dicts (parsed through the header table),
    platform order payloads (`row_format="api"`) or already-built
    RawRecords. With `dedupe_within_batch`, a row repeating an earlier row's
    external id is reported as a duplicate of that row.
    """
    settings = settings or get_settings()
    result = BatchResult()
    batch_seen: dict[str, tuple[int, CanonicalTransaction]] = {}

    for index, row in enumerate(rows):
        external_id = None
        try:
            if isinstance(row, RawRecord):
                record = row if row.row_index is not None else row.model_copy(update={"row_index": index})
            elif row_format == "api":
                record = record_from_api_payload(row, source=source, row_index=index)
            else:
                record = record_from_row(row, row_index=index, source=source)
            external_id = record.external_id

            if dedupe_within_batch and external_id and external_id in batch_seen:
                first_index, first_transaction = batch_seen[external_id]
                logger.info(
                    "duplicate_found | row=%s | external_id=%s | match_type=exact | strategy=batch | first_row=%s",
                    index,
                    external_id,
                    first_index,
                )
                result.records.append(
                    ReconciledRecord(
                        row_index=index,
                        external_id=external_id,
                        type=first_transaction.type,
                        outcome=RecordOutcome.DUPLICATE,
                        existing_match=ExistingMatch(
                            transaction=first_transaction,
                            match_type=MatchType.EXACT,
                            strategy="batch",
                            evidence=[f"External id '{external_id}' already appears in row {first_index} of this batch"],
                        ),
                    )
                )
                continue

            reconciled = reconcile_record(record, existing, catalog, overrides, settings)
        except (RecordParseError, PayloadError) as exc:
            logger.warning(
                "record_failed | row=%s | external_id=%s | field=%s | error=%s",
                index,
                external_id,
                exc.field,
                exc.message,
            )
            failed, issue = _failed(index, external_id, exc.field, exc.message)
            result.records.append(failed)
            result.issues.append(issue)
            continue
        except ValueError as exc:
            logger.warning(
                "record_failed | row=%s | external_id=%s | error=%s",
                index,
                external_id,
                exc,
            )
            failed, issue = _failed(index, external_id, None, str(exc))
            result.records.append(failed)
            result.issues.append(issue)
            continue

        result.records.append(reconciled)
        for warning in reconciled.warnings:
            result.issues.append(
                RecordIssue(
                    row_index=index,
                    external_id=external_id,
                    message=warning,
                    severity="warning",
                )
            )
        if external_id and reconciled.transaction is not None:
            batch_seen.setdefault(external_id, (index, reconciled.transaction))

    logger.info(
        "batch_complete | rows=%s | new=%s | duplicates=%s | probable=%s | failed=%s | warnings=%s",
        len(result.records),
        result.count(RecordOutcome.NEW),
        result.count(RecordOutcome.DUPLICATE),
        result.count(RecordOutcome.PROBABLE_DUPLICATE),
        result.count(RecordOutcome.FAILED),
        len(result.issues) - len(result.errors),
    )
    return result


def transactions_to_commit(result: BatchResult, include_probable: bool = False) -> list[CanonicalTransaction]:
    """Transactions a commit should write: new records, plus probable duplicates on request."""
    outcomes = {RecordOutcome.NEW}
    if include_probable:
        outcomes.add(RecordOutcome.PROBABLE_DUPLICATE)
    return [
        record.transaction
        for record in result.records
        if record.outcome in outcomes and record.transaction is not None
    ]
