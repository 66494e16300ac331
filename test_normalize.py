"""
test_normalize.py - Input normalization tests.

Covers the coercion helpers (amounts, dates, identifiers, product
mappings), spreadsheet rows through the fixed header table, platform API
payloads, and sheet loading.

Usage: python -m pytest test_normalize.py
"""

from __future__ import annotations

import math
from datetime import date, datetime

import pandas as pd
import pytest

from models import TransactionStatus
from normalize import (
    RecordParseError,
    clean_id,
    clean_text,
    load_sheet,
    parse_amount,
    parse_date,
    parse_products_blob,
    read_sheet_bytes,
    record_from_api_payload,
    record_from_row,
    rows_from_dataframe,
)


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "raw,expected",
    [
        ("$1,234.50", 1234.5),
        ("(12.00)", -12.0),
        ("-5", -5.0),
        ("  42 ", 42.0),
        (7, 7.0),
        (3.25, 3.25),
    ],
)
def test_parse_amount(raw, expected):
    assert parse_amount(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "   ", "N/A", float("nan")])
def test_blank_amount_is_none(raw):
    assert parse_amount(raw) is None


def test_bad_amount_names_field():
    with pytest.raises(RecordParseError) as excinfo:
        parse_amount("twelve", "Revenue")
    assert excinfo.value.field == "Revenue"
    assert "twelve" in excinfo.value.message


def test_boolean_and_infinite_amounts_are_rejected():
    with pytest.raises(RecordParseError):
        parse_amount(True)
    with pytest.raises(RecordParseError):
        parse_amount(math.inf)


def test_parse_date_serial_number():
    assert parse_date(45000) == datetime(2023, 3, 15)
    assert parse_date("45000") == datetime(2023, 3, 15)


def test_parse_date_us_format():
    assert parse_date("03/14/2025") == datetime(2025, 3, 14)
    assert parse_date("3/4/2025") == datetime(2025, 3, 4)


def test_parse_date_passthrough_types():
    assert parse_date(datetime(2025, 3, 14, 9, 30)) == datetime(2025, 3, 14, 9, 30)
    assert parse_date(date(2025, 3, 14)) == datetime(2025, 3, 14)
    assert parse_date(pd.Timestamp("2025-03-14")) == datetime(2025, 3, 14)


def test_parse_date_free_text():
    assert parse_date("2025-03-14") == datetime(2025, 3, 14)
    assert parse_date("March 14, 2025") == datetime(2025, 3, 14)


@pytest.mark.parametrize("raw", ["13/45/2025", "not a date", None, "", -3])
def test_unparseable_dates_raise(raw):
    with pytest.raises(RecordParseError) as excinfo:
        parse_date(raw, "Date")
    assert excinfo.value.field == "Date"


def test_clean_text_and_id():
    assert clean_text("  Jane  ") == "Jane"
    assert clean_text("nan") is None
    assert clean_id(123.0) == "123"
    assert clean_id(123.5) == "123.5"
    assert clean_id(" ABC ") == "ABC"
    assert clean_id(None) is None


def test_simple_products_mapping():
    products = parse_products_blob('{"Dog Treats": 2, "Leash": 1}')
    assert [(item.name, item.quantity, item.spend) for item in products] == [
        ("Dog Treats", 2.0, None),
        ("Leash", 1.0, None),
    ]


def test_single_quoted_mapping():
    products = parse_products_blob("{'Dog Treats': 2}")
    assert products[0].name == "Dog Treats"
    assert products[0].quantity == 2.0


def test_python_literal_mapping():
    products = parse_products_blob("{'Dog Treats': 2, 'Leash': None}")
    assert [item.quantity for item in products] == [2.0, 1.0]


def test_detailed_products_mapping():
    blob = '{"t1": {"name": "Dog Treats", "count": 3, "spend": 10}, "t2": {"qty": 2, "spend": "$8.50"}}'
    first, second = parse_products_blob(blob)
    assert (first.key, first.name, first.quantity, first.spend) == ("t1", "Dog Treats", 3.0, 10.0)
    assert (second.key, second.name, second.quantity, second.spend) == ("t2", "t2", 2.0, 8.5)


def test_blank_products_mapping_is_empty():
    assert parse_products_blob(None) == []
    assert parse_products_blob("") == []


@pytest.mark.parametrize("blob", ["{broken", "[1, 2]", '"just text"'])
def test_malformed_products_mapping(blob):
    with pytest.raises(RecordParseError) as excinfo:
        parse_products_blob(blob, "Products")
    assert excinfo.value.field == "Products"


# ---------------------------------------------------------------------------
# Rows and payloads
# ---------------------------------------------------------------------------

def test_record_from_row_maps_header_table():
    row = {
        "Date": "03/14/2025",
        "Transaction ID": 98765.0,
        "Customer": " Jane Doe ",
        "Revenue": "$108.75",
        "Tip": None,
        "Products": "{'Dog Treats': 5}",
        "Payment method": "Card",
        "Shipping cost": "12",
        "Ads cost": None,
        "Unrelated column": "ignored",
    }
    record = record_from_row(row, row_index=4)

    assert record.row_index == 4
    assert record.source == "excel"
    assert record.date == datetime(2025, 3, 14)
    assert record.external_id == "98765"
    assert record.customer == "Jane Doe"
    assert record.revenue == 108.75
    assert record.tip is None
    assert record.products_blob == "{'Dog Treats': 5}"
    assert record.payment_method == "Card"
    assert record.expense_categories == {"shipping": 12.0}


def test_record_from_row_headers_are_case_insensitive():
    record = record_from_row({" date ": "03/14/2025", "REVENUE": "10", "source": "Square"})
    assert record.revenue == 10.0
    assert record.source == "square"


def test_record_from_row_missing_date_names_column():
    with pytest.raises(RecordParseError) as excinfo:
        record_from_row({"Revenue": "10"}, row_index=0)
    assert excinfo.value.field == "Date"


def test_record_from_row_bad_amount_names_column():
    with pytest.raises(RecordParseError) as excinfo:
        record_from_row({"Date": "03/14/2025", "Wholesale cost": "lots"})
    assert excinfo.value.field == "Wholesale cost"


def test_record_from_row_reports_malformed_spend_blob():
    row = {"Date": "03/14/2025", "Supplier": "Chewy", "Itemized wholesale spend": "{oops"}
    with pytest.raises(RecordParseError) as excinfo:
        record_from_row(row)
    assert excinfo.value.field == "Itemized wholesale spend"


def test_record_from_api_payload():
    payload = {
        "id": 5550001,
        "created_at": "2025-03-14T10:15:00",
        "total": "54.00",
        "tax": "4.00",
        "tip": 0,
        "processing_fee": "1.87",
        "payment_method": "Card",
        "card_brand": "Visa",
        "customer": "Jane Doe",
        "status": "COMPLETED",
        "line_items": [
            {"name": "Leather Leash", "quantity": 1, "price": "50.00", "variant_id": "VAR-1", "sku": None},
        ],
    }
    record = record_from_api_payload(payload, "Shopify", row_index=2)

    assert record.source == "shopify"
    assert record.external_id == "5550001"
    assert record.date == datetime(2025, 3, 14, 10, 15)
    assert record.revenue == 54.0
    assert record.reported_tax == 4.0
    assert record.processing_fee == 1.87
    assert record.card_brand == "Visa"
    assert record.status == TransactionStatus.COMPLETED
    assert record.line_items[0].variant_id == "VAR-1"
    assert record.line_items[0].sku is None
    assert record.line_items[0].price == 50.0


def test_api_payload_total_defaults_to_line_items():
    payload = {
        "id": "sq-1",
        "date": "2025-03-14",
        "line_items": [{"name": "A", "quantity": 2, "price": 5}, {"name": "B", "price": 1.5}],
    }
    record = record_from_api_payload(payload, "square")
    assert record.revenue == 11.5
    assert record.line_items[1].quantity == 1.0


def test_api_payload_unknown_status():
    with pytest.raises(RecordParseError) as excinfo:
        record_from_api_payload({"id": "x", "date": "2025-03-14", "status": "lost"}, "square")
    assert excinfo.value.field == "status"


# ---------------------------------------------------------------------------
# Sheet loading
# ---------------------------------------------------------------------------

def test_load_csv_sheet(tmp_path):
    path = tmp_path / "import.csv"
    pd.DataFrame(
        {
            "Date": ["03/14/2025", "03/15/2025", None],
            " Transaction ID ": [101, None, None],
            "Revenue": [50.0, 20.0, None],
        }
    ).to_csv(path, index=False)

    df = load_sheet(str(path))
    rows = rows_from_dataframe(df)

    assert list(df.columns) == ["Date", "Transaction ID", "Revenue"]
    assert len(rows) == 2
    assert rows[1]["Transaction ID"] is None

    records = [record_from_row(row, index) for index, row in enumerate(rows)]
    assert records[0].external_id == "101"
    assert records[1].external_id is None
    assert records[1].revenue == 20.0


def test_load_sheet_requires_date_column(tmp_path):
    path = tmp_path / "no_date.csv"
    pd.DataFrame({"Revenue": [1.0]}).to_csv(path, index=False)
    with pytest.raises(ValueError, match="Date"):
        load_sheet(str(path))


def test_load_sheet_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_sheet(str(tmp_path / "missing.csv"))


def test_load_sheet_unsupported_extension(tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text("Date\n03/14/2025\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Unsupported file type"):
        load_sheet(str(path))


def test_load_sheet_rejects_blank_path():
    with pytest.raises(ValueError):
        load_sheet("   ")


def test_read_sheet_bytes_csv():
    df = read_sheet_bytes(b"Date,Revenue\n03/14/2025,10\n", "upload.csv")
    assert rows_from_dataframe(df) == [{"Date": "03/14/2025", "Revenue": 10}]


def test_read_sheet_bytes_rejects_empty_and_unknown():
    with pytest.raises(ValueError):
        read_sheet_bytes(b"", "upload.csv")
    with pytest.raises(ValueError):
        read_sheet_bytes(b"%PDF", "upload.pdf")
