"""
payload.py - Assemble the canonical transaction from upstream decisions.

    build_line_items(record, type, catalog, overrides) -> LineItems + match details
    normalize(record, type, amounts, products)         -> CanonicalTransaction

Only the party fields of the decided type are copied: supplier fields for
expenses, customer for sales, client / dog / trainer / agency for training.
"""

from __future__ import annotations

from typing import Mapping, Optional, Sequence

from config import EngineSettings, get_settings
from logging_config import get_logger
from models import (
    CanonicalTransaction,
    CatalogProduct,
    DerivedAmounts,
    LineItem,
    ProductMatch,
    RawRecord,
    TransactionType,
)
from normalize import BlobProduct, clean_text, parse_products_blob
from similarity import resolve_api_line_item, resolve_product

logger = get_logger(__name__)


class PayloadError(ValueError):
    """A field required for the decided transaction type is missing."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


def _linked_fields(query: str, match: ProductMatch) -> dict:
    if match.product is None:
        return {"original_name": query}
    extra = {"product_id": match.product.id, "product_name": match.product.name}
    if match.product.name != query:
        extra["original_name"] = query
    return extra


def _line_from_blob(
    entry: BlobProduct,
    match: ProductMatch,
    transaction_type: TransactionType,
) -> LineItem:
    name = match.product.name if match.product is not None else entry.name
    extra = _linked_fields(entry.name, match)

    if entry.spend is not None and entry.spend > 0:
        return LineItem.spent(name, entry.quantity, entry.spend, **extra)

    unit_price = 0.0
    if match.product is not None:
        if transaction_type == TransactionType.EXPENSE:
            unit_price = match.product.last_purchase_price
        else:
            unit_price = match.product.retail_price
    return LineItem.priced(name, entry.quantity, unit_price, **extra)


def _blob_for(record: RawRecord, transaction_type: TransactionType) -> tuple[Optional[str], str]:
    if transaction_type == TransactionType.EXPENSE and record.itemized_spend_blob:
        return record.itemized_spend_blob, "Itemized wholesale spend"
    return record.products_blob, "Products"


def build_line_items(
    record: RawRecord,
    transaction_type: TransactionType,
    catalog: Sequence[CatalogProduct],
    overrides: Optional[Mapping[str, str]] = None,
    settings: Optional[EngineSettings] = None,
) -> tuple[list[LineItem], list[ProductMatch], list[str]]:
    """Resolve the record's products against the catalog.

    Returns (line items, match details, warnings). An unmatched product stays
    on the transaction under its raw name and produces a warning.
    """
    settings = settings or get_settings()
    items: list[LineItem] = []
    matches: list[ProductMatch] = []

    if record.line_items:
        for api_item in record.line_items:
            match = resolve_api_line_item(api_item, catalog, overrides, settings)
            name = match.product.name if match.product is not None else api_item.name
            items.append(
                LineItem.priced(
                    name,
                    api_item.quantity,
                    api_item.price,
                    **_linked_fields(api_item.name, match),
                )
            )
            matches.append(match)
    else:
        blob, column = _blob_for(record, transaction_type)
        for entry in parse_products_blob(blob, column):
            match = resolve_product(entry.name, catalog, overrides, settings)
            items.append(_line_from_blob(entry, match, transaction_type))
            matches.append(match)

    warnings = []
    for match in matches:
        if match.product is not None:
            continue
        if match.method == "override":
            continue
        warning = f"Product '{match.query}' not found in catalog"
        if match.potential:
            names = ", ".join(f"{item.product.name} ({item.score:.0f})" for item in match.potential[:3])
            warning += f"; possible matches: {names}"
        warnings.append(warning)

    return items, matches, warnings


def _purchase_category(record: RawRecord) -> Optional[str]:
    categories = []
    if record.wholesale_cost is not None and record.wholesale_cost > 0:
        categories.append("wholesale")
    categories.extend(record.positive_categories)
    return ", ".join(categories) or None


def _require(value: Optional[str], field: str, transaction_type: TransactionType) -> str:
    if not value:
        raise PayloadError(field, f"required for {transaction_type.value} transactions")
    return value


def normalize(
    record: RawRecord,
    transaction_type: TransactionType,
    amounts: DerivedAmounts,
    products: Sequence[LineItem] = (),
    settings: Optional[EngineSettings] = None,
) -> CanonicalTransaction:
    """Build the persisted transaction shape. Raises PayloadError on missing fields."""
    settings = settings or get_settings()
    if record.date is None:
        raise PayloadError("date", "required for every transaction")

    fields: dict = {
        "external_id": record.external_id,
        "source": record.source,
        "type": transaction_type,
        "date": record.date,
        "amount": amounts.total,
        "pre_tax_amount": amounts.pre_tax,
        "tax_amount": amounts.tax,
        "is_taxable": amounts.is_taxable,
        "tip": amounts.tip,
        "products": list(products),
        "payment_method": record.payment_method or settings.default_payment_method,
        "card_brand": record.card_brand,
        "processing_fee": record.processing_fee if record.processing_fee is not None else record.fee,
        "notes": record.notes,
        "status": record.status,
    }

    if transaction_type == TransactionType.EXPENSE:
        fields["supplier"] = _require(record.supplier, "supplier", transaction_type)
        fields["supplier_order_number"] = record.supplier_order_number
        fields["purchase_category"] = _purchase_category(record)
    elif transaction_type == TransactionType.TRAINING:
        fields["client_name"] = _require(record.client, "client_name", transaction_type)
        fields["dog_name"] = _require(record.dog_name, "dog_name", transaction_type)
        fields["trainer"] = record.trainer or settings.default_trainer
        fields["training_agency"] = record.training_agency
    else:
        fields["customer"] = record.customer or clean_text(record.client)
        fields["discount"] = amounts.discount

    transaction = CanonicalTransaction(**fields)
    logger.debug(
        "transaction_built | row=%s | type=%s | amount=%.2f | products=%s",
        record.row_index,
        transaction_type.value,
        transaction.amount,
        len(transaction.products),
    )
    return transaction
