"""
api.py - FastAPI HTTP layer for the reconciliation engine.

Endpoints:
  - GET  /health
  - POST /reconcile/preview            JSON rows or platform orders
  - POST /reconcile/upload             spreadsheet upload
  - POST /amounts/derive               tax / tip / discount split
  - POST /transactions/{id}/profit     profit attribution (optionally persisted)
  - POST /mappings                     record a confirmed product-name mapping

No business rules are implemented here; every endpoint calls the engine.
"""

from __future__ import annotations

import os
from typing import Any, Literal, Optional

import uvicorn
from fastapi import Body, FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, ValidationError

from amounts import derive_amounts, derive_with_override
from config import get_settings
from explain import format_batch_json
from logging_config import get_logger, setup_logging
from models import DerivationMode, TransactionType
from normalize import read_sheet_bytes, rows_from_dataframe
from profit import attribute_profit
from reconcile import reconcile_batch, transactions_to_commit
from similarity import KEEP_UNMATCHED
from store import JsonMappingStore, JsonProductCatalog, JsonTransactionStore

logger = get_logger("reconcile-api")

app = FastAPI(
    title="Transaction Reconciliation API",
    version="1.0.0",
)

# Allows local UI use from file:// or another local host/port.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024


class PreviewRequest(BaseModel):
    rows: list[dict[str, Any]] = Field(default_factory=list, description="Sheet rows or platform orders.")
    source: str = Field(default="excel", description="excel | square | shopify | manual | gmail")
    row_format: Literal["sheet", "api"] = Field(
        default="sheet",
        description="'sheet' rows use spreadsheet headers; 'api' rows are Square/Shopify order payloads.",
    )
    dedupe_within_batch: bool = True
    commit: bool = False
    include_probable: bool = False


class DeriveRequest(BaseModel):
    total: float = Field(..., description="Natural (computed) total, tax-inclusive.")
    manual_total: Optional[float] = Field(default=None, description="Operator-entered total, if different.")
    tax_rate: Optional[float] = Field(default=None, ge=0, description="Defaults to SALES_TAX_RATE.")
    mode: DerivationMode = DerivationMode.INCLUSIVE
    reported_tax: Optional[float] = None
    tip: float = 0.0


class MappingRequest(BaseModel):
    source_name: str = Field(..., min_length=1)
    product_id: str = Field(..., min_length=1, description="Catalog product id, or 'override' to keep unmatched.")


def _run_batch(
    rows: list[dict[str, Any]],
    source: str,
    row_format: str = "sheet",
    dedupe_within_batch: bool = True,
    commit: bool = False,
    include_probable: bool = False,
) -> dict[str, Any]:
    store = JsonTransactionStore()
    result = reconcile_batch(
        rows,
        existing=store.list_transactions(),
        catalog=JsonProductCatalog().list_active(),
        overrides=JsonMappingStore().overrides(),
        dedupe_within_batch=dedupe_within_batch,
        source=source,
        row_format=row_format,
    )
    committed = None
    if commit:
        to_commit = transactions_to_commit(result, include_probable=include_probable)
        committed = len(store.upsert_many(to_commit)) if to_commit else 0
    return format_batch_json(result, committed)


@app.get("/health")
def health() -> dict[str, str]:
    """Service health check."""
    return {"status": "ok"}


@app.post("/reconcile/preview")
def reconcile_preview(request: PreviewRequest = Body(...)) -> dict[str, Any]:
    """Reconcile JSON rows against the store; commit only when asked."""
    try:
        return _run_batch(
            request.rows,
            source=request.source,
            row_format=request.row_format,
            dedupe_within_batch=request.dedupe_within_batch,
            commit=request.commit,
            include_probable=request.include_probable,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/reconcile/upload")
async def reconcile_upload(
    file: UploadFile = File(...),
    source: str = Form(default="excel"),
    commit: bool = Form(default=False),
    include_probable: bool = Form(default=False),
) -> dict[str, Any]:
    """Reconcile an uploaded CSV/Excel sheet."""
    if not file.filename:
        raise HTTPException(status_code=400, detail="Spreadsheet file is required.")

    try:
        content = await file.read(MAX_UPLOAD_BYTES + 1)
    finally:
        await file.close()
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Spreadsheet exceeds the upload size limit.")

    try:
        df = read_sheet_bytes(content, file.filename)
        return _run_batch(
            rows_from_dataframe(df),
            source=source,
            commit=commit,
            include_probable=include_probable,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        logger.error(
            "api_upload_error | error_type=%s | error=%s",
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail="Unexpected server error while reconciling the upload.") from exc


@app.post("/amounts/derive")
def amounts_derive(request: DeriveRequest = Body(...)) -> dict[str, Any]:
    """Split a total into pre-tax amount, tax, tip and discount."""
    rate = request.tax_rate if request.tax_rate is not None else get_settings().sales_tax_rate
    try:
        if request.manual_total is None:
            derived = derive_amounts(request.total, rate, request.mode, request.reported_tax, request.tip)
        else:
            derived = derive_with_override(
                request.total,
                request.manual_total,
                rate,
                request.mode,
                request.reported_tax,
            )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {**derived.model_dump(mode="json"), "is_taxable": derived.is_taxable, "tax_rate": rate}


@app.post("/transactions/{transaction_id}/profit")
def transaction_profit(
    transaction_id: str,
    persist: bool = Query(default=False),
) -> dict[str, Any]:
    """Compute profit attribution for a stored sale or training transaction."""
    try:
        store = JsonTransactionStore()
        transaction = store.find_by_id(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    if transaction is None or transaction.type == TransactionType.EXPENSE:
        raise HTTPException(status_code=404, detail="Transaction not found or not a sale")

    catalog = JsonProductCatalog()
    calculation = attribute_profit(transaction, catalog.find_by_id)

    if persist:
        store.upsert(transaction.model_copy(update={"profit_calculation": calculation}))
        logger.info("profit_persisted | transaction=%s", transaction.id)

    return {
        "transaction_id": transaction.id,
        "persisted": persist,
        **calculation.model_dump(mode="json"),
        "has_cost_data": calculation.has_cost_data,
    }


@app.post("/mappings")
def record_mapping(request: MappingRequest = Body(...)) -> dict[str, Any]:
    """Record a confirmed product-name mapping used on future imports."""
    target_name = None
    if request.product_id != KEEP_UNMATCHED:
        product = JsonProductCatalog().find_by_id(request.product_id)
        if product is None:
            raise HTTPException(status_code=404, detail=f"Product not found: {request.product_id}")
        target_name = product.name

    try:
        entry = JsonMappingStore().record_mapping(request.source_name, request.product_id, target_name)
    except (ValueError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return entry.model_dump(mode="json")


if __name__ == "__main__":
    setup_logging()
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("api:app", host="0.0.0.0", port=port, reload=False)
