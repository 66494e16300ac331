"""
test_explain.py - Batch summary formatting tests.

Validates:
- format_batch_summary (terminal text output)
- format_batch_json (structured API output)

Usage: python -m pytest test_explain.py
"""

from __future__ import annotations

import json
from datetime import datetime

import pytest

from conftest import make_record, make_transaction
from explain import MAX_ISSUES_DISPLAY, format_batch_json, format_batch_summary
from models import BatchResult, RecordIssue
from reconcile import reconcile_batch


@pytest.fixture
def result(catalog, settings):
    stored = [
        make_transaction(id="t-alice", external_id="S-OLD", customer="Alice", amount=20.0),
        make_transaction(id="t-bob", customer="Bob Smith", amount=80.0),
    ]
    rows = [
        make_record(external_id="A1", customer="Jane Doe", revenue=43.5, products_blob="{'Dog Treats': 2}"),
        make_record(external_id="S-OLD", customer="Alice", revenue=20.0),
        make_record(external_id="NEW-9", customer="Bob Smith", revenue=80.0, date=datetime(2025, 3, 15)),
        make_record(wholesale_cost=40.0),
        make_record(external_id="A2", revenue=12.0, products_blob="{'treats for puppies': 1}"),
    ]
    return reconcile_batch(rows, stored, catalog, settings=settings)


def test_summary_header_counts(result):
    text = format_batch_summary(result)
    assert "Import Preview - 5 row(s): 2 new, 1 duplicate, 1 to review, 1 failed" in text


def test_summary_record_lines(result):
    text = format_batch_summary(result)
    assert "row 1 (A1)" in text
    assert "$43.50" in text
    assert "-> t-alice [external_id]" in text
    assert "-> t-bob [fuzzy, 95%]" in text
    assert "New transactions total: $55.50" in text


def test_summary_lists_issues_and_review_note(result):
    text = format_batch_summary(result)
    assert "ERROR row 4 [supplier]" in text
    assert "WARNING row 5: Product 'treats for puppies' not found in catalog" in text
    assert "REVIEW: 1 row(s) look like existing transactions." in text
    assert "--include-probable" in text
    assert "Committed" not in text


def test_summary_reports_commit(result):
    assert "Committed 2 transaction(s) to the store." in format_batch_summary(result, committed=2)


def test_summary_truncates_issue_list():
    batch = BatchResult(issues=[RecordIssue(row_index=i, message=f"problem {i}") for i in range(MAX_ISSUES_DISPLAY + 3)])
    text = format_batch_summary(batch)
    assert f"problem {MAX_ISSUES_DISPLAY - 1}" in text
    assert f"problem {MAX_ISSUES_DISPLAY}" not in text
    assert "... and 3 more issue(s)" in text


def test_summary_without_result():
    assert "ERROR: No reconciliation result available" in format_batch_summary(None)


def test_json_summary(result):
    payload = format_batch_json(result, committed=2)

    assert payload["status"] == "partial"
    assert payload["committed"] == 2
    assert payload["summary"] == {
        "new": 2,
        "duplicate": 1,
        "probable_duplicate": 1,
        "failed": 1,
        "rows": 5,
        "warnings": 1,
    }
    json.dumps(payload)


def test_json_records(result):
    records = format_batch_json(result)["records"]

    assert records[0]["transaction"]["products"][0]["product_id"] == "p-treats"
    assert records[1]["existing_match"]["strategy"] == "external_id"
    assert records[2]["existing_match"]["match_type"] == "probable"
    assert records[2]["existing_match"]["confidence"] == 95.0
    assert records[3]["outcome"] == "failed"
    assert records[3]["transaction"] is None

    unmatched = records[4]["unmatched_products"]
    assert unmatched[0]["name"] == "treats for puppies"
    assert unmatched[0]["potential"][0]["product_id"] == "p-treats"


def test_json_status_values(result):
    assert format_batch_json(BatchResult())["status"] == "ok"

    failed_only = BatchResult(records=[result.records[3]], issues=result.errors)
    assert format_batch_json(failed_only)["status"] == "error"


def test_json_without_result():
    payload = format_batch_json(None)
    assert payload["status"] == "error"
    assert payload["records"] == []
