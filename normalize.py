"""
normalize.py - Input normalization module.

Turns loosely typed input into RawRecord objects:
    load_sheet(path)                   -> DataFrame (CSV or Excel)
    read_sheet_bytes(content, name)    -> DataFrame (uploaded file)
    rows_from_dataframe(df)            -> list of plain dict rows
    record_from_row(row, row_index)    -> RawRecord (fixed header table)
    record_from_api_payload(payload)   -> RawRecord (Square / Shopify)

Coercion helpers:
    clean_text(value)                  -> stripped str or None
    clean_id(value)                    -> identifier str or None
    parse_amount(value, field)         -> float or None
    parse_date(value, field)           -> datetime
    parse_products_blob(blob, field)   -> list[BlobProduct]

Design principles:
    - Blank cells are None, never 0, so "absent" stays distinguishable
    - Malformed values raise RecordParseError naming the field; the batch
      pipeline turns that into a per-row issue
    - Sheet-level problems (missing file, missing Date column) fail loudly
"""

from __future__ import annotations

import ast
import io
import json
import math
import os
import re
import zipfile
from datetime import date, datetime, timedelta
from typing import Any, Mapping, Optional

import pandas as pd
from dateutil import parser as dateparser
from pydantic import BaseModel

from logging_config import get_logger
from models import ApiLineItem, RawRecord, TransactionStatus

logger = get_logger(__name__)

NULL_TOKENS = {"", "n/a", "na", "none", "null", "nan", "nat"}

# Spreadsheet serial dates count days from this epoch (Excel's 1900 system,
# including its phantom 1900-02-29).
EXCEL_EPOCH = datetime(1899, 12, 30)
MAX_EXCEL_SERIAL = 2958465

_US_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")

# Spreadsheet column -> RawRecord field.
HEADER_FIELDS: dict[str, str] = {
    "Date": "date",
    "Transaction ID": "external_id",
    "Source": "source",
    "Customer": "customer",
    "Client": "client",
    "Dog training agency": "training_agency",
    "Dog's name": "dog_name",
    "Trainer": "trainer",
    "Supplier": "supplier",
    "Supplier order #": "supplier_order_number",
    "Products": "products_blob",
    "Itemized wholesale spend": "itemized_spend_blob",
    "Payment method": "payment_method",
    "Wholesale cost": "wholesale_cost",
    "Fee": "fee",
    "Sales tax": "sales_tax",
    "Revenue": "revenue",
    "Tip": "tip",
    "Discount": "discount",
    "Sale": "sale",
    "Note": "notes",
}

# Spreadsheet column -> expense category key.
CATEGORY_COLUMNS: dict[str, str] = {
    "Software cost": "software",
    "Ads cost": "ads",
    "Equipment cost": "equipment",
    "Miscellaneous expense": "misc",
    "Print media expense": "print_media",
    "Shipping cost": "shipping",
    "Transit cost": "transit",
    "Dry ice cost": "dry_ice",
    "Packaging cost": "packaging",
    "Space rental cost": "space_rental",
    "Pawsability rent": "pawsability_rent",
    "Other cost": "other",
}

AMOUNT_FIELDS = {
    "revenue",
    "sale",
    "sales_tax",
    "tip",
    "discount",
    "wholesale_cost",
    "fee",
}

SHEET_EXTENSIONS = {".csv", ".xlsx", ".xls"}


class RecordParseError(ValueError):
    """A single field of a single record could not be parsed."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class BlobProduct(BaseModel):
    """One entry of a string-encoded products mapping."""

    key: str
    name: str
    quantity: float = 1.0
    spend: Optional[float] = None


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if value is pd.NaT:
        return True
    if isinstance(value, str) and value.strip().lower() in NULL_TOKENS:
        return True
    return False


def clean_text(value: Any) -> Optional[str]:
    """Strip a cell to text; blank and null-like cells become None."""
    if _is_missing(value):
        return None
    text = str(value).strip()
    return text or None


def clean_id(value: Any) -> Optional[str]:
    """Identifier cell to text. Integral floats (pandas upcasts) lose the '.0'."""
    if _is_missing(value):
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return clean_text(value)


def parse_amount(value: Any, field: str = "amount") -> Optional[float]:
    """Parse a money cell. Blank -> None; unparseable -> RecordParseError."""
    if _is_missing(value):
        return None

    if isinstance(value, bool):
        raise RecordParseError(field, f"expected a number, got {value!r}")

    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        is_negative = text.startswith("-") or (text.startswith("(") and text.endswith(")"))
        cleaned = text.replace("$", "").replace(",", "").strip("()").strip()
        if is_negative:
            cleaned = cleaned.lstrip("-").strip()
        try:
            number = float(cleaned)
        except ValueError as exc:
            raise RecordParseError(field, f"not a number: {value!r}") from exc
        if is_negative:
            number = -number

    if not math.isfinite(number):
        raise RecordParseError(field, f"not a finite number: {value!r}")
    return number


def _from_serial(serial: float, field: str) -> datetime:
    if serial <= 0 or serial > MAX_EXCEL_SERIAL:
        raise RecordParseError(field, f"spreadsheet serial date out of range: {serial!r}")
    return EXCEL_EPOCH + timedelta(days=serial)


def parse_date(value: Any, field: str = "date") -> datetime:
    """Parse a date cell: datetime, spreadsheet serial, MM/DD/YYYY, or free text."""
    if _is_missing(value):
        raise RecordParseError(field, "date is required")

    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _from_serial(float(value), field)

    text = str(value).strip()
    if re.fullmatch(r"\d+(\.\d+)?", text):
        return _from_serial(float(text), field)

    us_match = _US_DATE.match(text)
    if us_match:
        month, day, year = (int(part) for part in us_match.groups())
        try:
            return datetime(year, month, day)
        except ValueError as exc:
            raise RecordParseError(field, f"invalid calendar date: {text!r}") from exc

    try:
        return dateparser.parse(text, dayfirst=False)
    except (ValueError, OverflowError) as exc:
        raise RecordParseError(field, f"unparseable date: {text!r}") from exc


def _decode_blob(blob: str, field: str) -> Any:
    try:
        return json.loads(blob)
    except json.JSONDecodeError:
        pass
    try:
        return json.loads(blob.replace("'", '"'))
    except json.JSONDecodeError:
        pass
    try:
        return ast.literal_eval(blob)
    except (ValueError, SyntaxError) as exc:
        raise RecordParseError(field, f"malformed products mapping: {blob[:60]!r}") from exc


def parse_products_blob(blob: Any, field: str = "products") -> list[BlobProduct]:
    """Decode a products mapping in simple or detailed format.

    Simple:   {"Dog Treats": 2}
    Detailed: {"treats": {"name": "Dog Treats", "count": 2, "spend": 14.5}}

    Single-quoted mappings are accepted. Entry order is preserved.
    """
    if _is_missing(blob):
        return []
    if isinstance(blob, Mapping):
        decoded: Any = blob
    else:
        decoded = _decode_blob(str(blob).strip(), field)

    if not isinstance(decoded, Mapping):
        raise RecordParseError(field, "products must be a mapping of name to quantity")

    products: list[BlobProduct] = []
    for key, value in decoded.items():
        key_text = str(key).strip()
        if isinstance(value, Mapping):
            quantity_raw = value.get("count", value.get("qty", 1))
            quantity = parse_amount(quantity_raw, field)
            spend = parse_amount(value.get("spend"), field)
            name = clean_text(value.get("name")) or key_text
            products.append(
                BlobProduct(
                    key=key_text,
                    name=name,
                    quantity=quantity if quantity is not None else 1.0,
                    spend=spend,
                )
            )
        else:
            quantity = parse_amount(value, field)
            products.append(
                BlobProduct(
                    key=key_text,
                    name=key_text,
                    quantity=quantity if quantity is not None else 1.0,
                )
            )
    return products


def _lookup_columns(row: Mapping[str, Any]) -> dict[str, Any]:
    return {str(column).strip().lower(): value for column, value in row.items()}


def record_from_row(
    row: Mapping[str, Any],
    row_index: Optional[int] = None,
    source: str = "excel",
) -> RawRecord:
    """Build a RawRecord from one spreadsheet row via the fixed header table."""
    cells = _lookup_columns(row)
    values: dict[str, Any] = {"row_index": row_index, "source": source}

    for column, field in HEADER_FIELDS.items():
        raw = cells.get(column.lower())
        if field == "date":
            values["date"] = parse_date(raw, column)
        elif field in AMOUNT_FIELDS:
            values[field] = parse_amount(raw, column)
        elif field == "external_id":
            values[field] = clean_id(raw)
        elif field == "supplier_order_number":
            values[field] = clean_id(raw)
        elif field == "source":
            values[field] = (clean_text(raw) or source).lower()
        else:
            values[field] = clean_text(raw)

    categories: dict[str, float] = {}
    for column, category in CATEGORY_COLUMNS.items():
        amount = parse_amount(cells.get(column.lower()), column)
        if amount is not None:
            categories[category] = amount
    values["expense_categories"] = categories

    # Validate blobs early so a malformed mapping is reported against its column.
    parse_products_blob(values.get("products_blob"), "Products")
    parse_products_blob(values.get("itemized_spend_blob"), "Itemized wholesale spend")

    record = RawRecord(**values)
    logger.debug(
        "record_parsed | row=%s | external_id=%s | date=%s | revenue=%s",
        row_index,
        record.external_id,
        record.date.date().isoformat(),
        record.revenue,
    )
    return record


def record_from_api_payload(
    payload: Mapping[str, Any],
    source: str,
    row_index: Optional[int] = None,
) -> RawRecord:
    """Build a RawRecord from a Square or Shopify order payload.

    Expected keys: id, date (or created_at), total, tip, discount, tax, processing_fee,
    payment_method, card_brand, customer, status, line_items[].
    """
    date_value = payload.get("date", payload.get("created_at"))
    line_items = []
    for index, item in enumerate(payload.get("line_items") or []):
        field = f"line_items[{index}]"
        quantity = parse_amount(item.get("quantity"), f"{field}.quantity")
        price = parse_amount(item.get("price"), f"{field}.price")
        line_items.append(
            ApiLineItem(
                name=clean_text(item.get("name")) or "",
                quantity=quantity if quantity is not None else 1.0,
                price=price or 0.0,
                variant_id=clean_id(item.get("variant_id")),
                sku=clean_id(item.get("sku")),
            )
        )

    status_raw = (clean_text(payload.get("status")) or "completed").lower()
    try:
        status = TransactionStatus(status_raw)
    except ValueError as exc:
        raise RecordParseError("status", f"unknown status {status_raw!r}") from exc

    total = parse_amount(payload.get("total"), "total")
    if total is None:
        total = sum(item.price * item.quantity for item in line_items)

    return RawRecord(
        row_index=row_index,
        source=source.lower(),
        external_id=clean_id(payload.get("id", payload.get("external_id"))),
        date=parse_date(date_value, "date"),
        revenue=total,
        tip=parse_amount(payload.get("tip"), "tip"),
        discount=parse_amount(payload.get("discount"), "discount"),
        reported_tax=parse_amount(payload.get("tax"), "tax"),
        processing_fee=parse_amount(payload.get("processing_fee"), "processing_fee"),
        payment_method=clean_text(payload.get("payment_method")),
        card_brand=clean_text(payload.get("card_brand")),
        customer=clean_text(payload.get("customer")),
        notes=clean_text(payload.get("note", payload.get("notes"))),
        status=status,
        line_items=line_items,
    )


def _validate_sheet(df: pd.DataFrame, label: str) -> pd.DataFrame:
    if df is None:
        raise ValueError(f"Failed to read sheet '{label}' - no DataFrame returned")

    df.columns = [str(column).strip() for column in df.columns]
    df = df.dropna(how="all").copy()

    if "date" not in {column.lower() for column in df.columns}:
        raise ValueError(
            f"Sheet '{label}' is missing the required 'Date' column\n"
            f"Found: {list(df.columns)}"
        )

    known = {column.lower() for column in list(HEADER_FIELDS) + list(CATEGORY_COLUMNS)}
    unknown = [column for column in df.columns if column.lower() not in known]
    if unknown:
        logger.debug("sheet_columns_ignored | sheet=%s | columns=%s", label, unknown)

    logger.info("sheet_loaded | sheet=%s | rows=%s | columns=%s", label, len(df), len(df.columns))
    return df


def load_sheet(path: str) -> pd.DataFrame:
    """Load an import spreadsheet (CSV or Excel) from disk."""
    if path is None:
        raise ValueError("path cannot be None")
    path = str(path).strip()
    if not path:
        raise ValueError("path cannot be empty")
    if not os.path.exists(path):
        raise FileNotFoundError(f"Import file not found: {path}")

    extension = os.path.splitext(path)[1].lower()
    if extension not in SHEET_EXTENSIONS:
        raise ValueError(f"Unsupported file type '{extension}'. Allowed: {sorted(SHEET_EXTENSIONS)}")

    try:
        if extension == ".csv":
            try:
                df = pd.read_csv(path, encoding="utf-8-sig")
            except UnicodeDecodeError:
                logger.warning(
                    "csv_encoding_warning | path=%s | reason='utf-8 decode failed' | fallback=latin-1",
                    path,
                )
                df = pd.read_csv(path, encoding="latin-1")
        else:
            df = pd.read_excel(path)
    except (OSError, ValueError, zipfile.BadZipFile) as exc:
        raise ValueError(f"Failed to read '{path}': {exc}") from exc

    return _validate_sheet(df, path)


def read_sheet_bytes(content: bytes, filename: str) -> pd.DataFrame:
    """Load an uploaded spreadsheet held in memory."""
    extension = os.path.splitext(filename or "")[1].lower()
    if extension not in SHEET_EXTENSIONS:
        raise ValueError(f"Unsupported file type '{extension}'. Allowed: {sorted(SHEET_EXTENSIONS)}")
    if not content:
        raise ValueError(f"Uploaded file '{filename}' is empty")

    buffer = io.BytesIO(content)
    try:
        if extension == ".csv":
            df = pd.read_csv(buffer, encoding="utf-8-sig")
        else:
            df = pd.read_excel(buffer)
    except (ValueError, zipfile.BadZipFile) as exc:
        raise ValueError(f"Failed to read '{filename}': {exc}") from exc

    return _validate_sheet(df, filename)


def rows_from_dataframe(df: pd.DataFrame) -> list[dict[str, Any]]:
    """Sheet rows as plain dicts with NaN cells mapped to None."""
    cleaned = df.astype(object).where(pd.notna(df), None)
    return cleaned.to_dict(orient="records")

