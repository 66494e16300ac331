"""
explain.py - Human-readable and JSON-ready batch summaries.

This module converts a structured `BatchResult` into:
- terminal-friendly text output for CLI usage
- machine-friendly dictionary output for the HTTP API
"""

from __future__ import annotations

from typing import Optional

from logging_config import get_logger
from models import BatchResult, ReconciledRecord, RecordOutcome

logger = get_logger(__name__)

OUTCOME_NAMES: dict[RecordOutcome, str] = {
    RecordOutcome.NEW: "New",
    RecordOutcome.DUPLICATE: "Duplicate",
    RecordOutcome.PROBABLE_DUPLICATE: "Probable Duplicate",
    RecordOutcome.FAILED: "Failed",
}

OUTPUT_WIDTH = 64
SEPARATOR = "=" * OUTPUT_WIDTH
MAX_ISSUES_DISPLAY = 12


def _row_label(record: ReconciledRecord) -> str:
    row = f"row {record.row_index + 1}" if record.row_index is not None else "row ?"
    if record.external_id:
        return f"{row} ({record.external_id})"
    return row


def _record_line(record: ReconciledRecord) -> str:
    outcome = OUTCOME_NAMES[record.outcome]
    kind = record.type.value if record.type else "-"
    line = f"  {_row_label(record):<28} {kind:<9} {outcome}"

    if record.transaction is not None:
        line += f"  ${record.transaction.amount:,.2f}"
    if record.existing_match is not None:
        match = record.existing_match
        stored = match.transaction.id or match.transaction.external_id or "?"
        line += f"  -> {stored} [{match.strategy}"
        if record.outcome == RecordOutcome.PROBABLE_DUPLICATE:
            line += f", {match.confidence:.0f}%"
        line += "]"
    return line


def format_batch_summary(result: Optional[BatchResult], committed: Optional[int] = None) -> str:
    """Format a BatchResult into a readable text block."""
    if result is None:
        logger.error("explain_input_error | result_none=True | fallback=error_block")
        return "\n" + SEPARATOR + "\n  ERROR: No reconciliation result available\n" + SEPARATOR + "\n"

    lines: list[str] = ["", SEPARATOR]
    lines.append(
        f"  Import Preview - {len(result.records)} row(s): "
        f"{result.count(RecordOutcome.NEW)} new, "
        f"{result.count(RecordOutcome.DUPLICATE)} duplicate, "
        f"{result.count(RecordOutcome.PROBABLE_DUPLICATE)} to review, "
        f"{result.count(RecordOutcome.FAILED)} failed"
    )
    lines.append(SEPARATOR)
    lines.append("")

    for record in result.records:
        lines.append(_record_line(record))

    new_total = sum(transaction.amount for transaction in result.new_transactions)
    lines.append("")
    lines.append(f"  New transactions total: ${new_total:,.2f}")

    if result.issues:
        lines.append("")
        lines.append("  Issues:")
        shown = result.issues[:MAX_ISSUES_DISPLAY]
        for issue in shown:
            row = f"row {issue.row_index + 1}" if issue.row_index is not None else "batch"
            field = f" [{issue.field}]" if issue.field else ""
            lines.append(f"    • {issue.severity.upper()} {row}{field}: {issue.message}")
        remaining = len(result.issues) - len(shown)
        if remaining > 0:
            lines.append(f"    • ... and {remaining} more issue(s)")

    probable = result.count(RecordOutcome.PROBABLE_DUPLICATE)
    if probable:
        lines.append("")
        lines.append(f"  REVIEW: {probable} row(s) look like existing transactions.")
        lines.append("    They are committed only with --include-probable; check them first.")

    if committed is not None:
        lines.append("")
        lines.append(f"  Committed {committed} transaction(s) to the store.")

    lines.append("")
    lines.append(SEPARATOR)
    lines.append("")
    return "\n".join(lines)


def _status(result: BatchResult) -> str:
    if not result.errors:
        return "ok"
    if len(result.errors) == len(result.records):
        return "error"
    return "partial"


def format_batch_json(result: Optional[BatchResult], committed: Optional[int] = None) -> dict:
    """Format a BatchResult as a JSON-compatible dictionary."""
    if result is None:
        logger.error("explain_json_input_error | result_none=True | fallback=error_payload")
        return {
            "status": "error",
            "summary": {},
            "records": [],
            "issues": [{"severity": "error", "message": "No reconciliation result available"}],
        }

    summary = {outcome.value: result.count(outcome) for outcome in RecordOutcome}
    summary["rows"] = len(result.records)
    summary["warnings"] = len(result.issues) - len(result.errors)

    records = []
    for record in result.records:
        entry = {
            "row_index": record.row_index,
            "external_id": record.external_id,
            "type": record.type.value if record.type else None,
            "outcome": record.outcome.value,
            "transaction": record.transaction.model_dump(mode="json") if record.transaction else None,
            "existing_match": None,
            "unmatched_products": [
                {
                    "name": match.query,
                    "potential": [
                        {"product_id": item.product.id, "name": item.product.name, "score": round(item.score, 1)}
                        for item in match.potential
                    ],
                }
                for match in record.product_matches
                if match.product is None and match.method != "override"
            ],
            "warnings": list(record.warnings),
        }
        if record.existing_match is not None:
            entry["existing_match"] = {
                "id": record.existing_match.transaction.id,
                "external_id": record.existing_match.transaction.external_id,
                "match_type": record.existing_match.match_type.value,
                "strategy": record.existing_match.strategy,
                "confidence": record.existing_match.confidence,
                "evidence": list(record.existing_match.evidence),
            }
        records.append(entry)

    payload = {
        "status": _status(result),
        "summary": summary,
        "records": records,
        "issues": [issue.model_dump(mode="json") for issue in result.issues],
    }
    if committed is not None:
        payload["committed"] = committed
    return payload
