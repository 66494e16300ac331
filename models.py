"""
models.py - Data Models for the Reconciliation Engine

Every component communicates exclusively through these models:

    normalize.py   ->  RawRecord
    classify.py    ->  TransactionType
    dedupe.py      ->  ExistingMatch | None
    similarity.py  ->  ProductMatch
    amounts.py     ->  DerivedAmounts
    profit.py      ->  ProfitCalculation
    payload.py     ->  CanonicalTransaction
    reconcile.py   ->  BatchResult

Design principles:
1. Each component's output is the next component's input
2. Decisions carry evidence strings so a reviewer can see why a row was
   treated as a duplicate or left unmatched
3. Persisted shapes (CanonicalTransaction, LineItem) validate their own
   arithmetic invariants; derived shapes (ProfitCalculation) are advisory

Schema relationships:
    LineItem            --used by--> CanonicalTransaction.products
    ProfitCalculation   --used by--> CanonicalTransaction.profit_calculation
    CanonicalTransaction --used by--> ExistingMatch.transaction
    CatalogProduct      --used by--> ProductMatch.product
    ReconciledRecord    --used by--> BatchResult.records
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Two-decimal storage means sums may drift by a cent.
AMOUNT_TOLERANCE = 0.01 + 1e-9


class TransactionType(str, Enum):
    """What kind of money movement a transaction records."""

    SALE = "sale"
    EXPENSE = "expense"
    TRAINING = "training"


class TransactionStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class MatchType(str, Enum):
    """How sure the duplicate resolver is that a record is already stored.

    EXACT matches are skipped on import. PROBABLE matches are shown to the
    operator, who decides whether to skip or import.
    """

    EXACT = "exact"
    PROBABLE = "probable"


class DerivationMode(str, Enum):
    """Which rule splits a total into pre-tax amount and tax."""

    # Total already contains sales tax; divide it back out.
    INCLUSIVE = "inclusive"

    # Non-taxable sale: the whole total is pre-tax.
    EXEMPT = "exempt"

    # Training session billed through an agency. Tax-exempt pass-through:
    # sale equals revenue. Takes precedence over INCLUSIVE.
    AGENCY = "agency"

    # The source (Shopify) reports the tax it charged; trust it.
    REPORTED = "reported"


class RecordOutcome(str, Enum):
    NEW = "new"
    DUPLICATE = "duplicate"
    PROBABLE_DUPLICATE = "probable_duplicate"
    FAILED = "failed"


class ApiLineItem(BaseModel):
    """Pre-normalized line item from the Square or Shopify APIs."""

    name: str = Field(default="", description="Item title as sent by the platform.")
    quantity: float = Field(default=1.0, description="Units sold; may be fractional for weighed goods.")
    price: float = Field(default=0.0, description="Tax-inclusive unit price in dollars.")
    variant_id: Optional[str] = Field(
        default=None,
        description="Platform variant id; links to CatalogProduct.platform_ids before name matching.",
    )
    sku: Optional[str] = Field(default=None, description="Merchant SKU; alternative catalog link.")


class RawRecord(BaseModel):
    """One externally sourced row before classification.

    Built by normalize.py from either a spreadsheet row (through the fixed
    header table) or an external-API payload. Amount fields are already
    coerced to floats; `None` means the column was absent or blank, which
    the classifier treats differently from an explicit zero only where the
    rules say so.
    """

    row_index: Optional[int] = Field(default=None, description="Position within the import batch (0-based).")
    source: str = Field(default="excel", description="excel | square | shopify | manual | gmail")
    external_id: Optional[str] = Field(
        default=None,
        description=(
            "Identifier supplied by the source ('Transaction ID' column, Square "
            "payment id, Shopify order id). Primary dedup key."
        ),
    )
    date: datetime = Field(..., description="Transaction date, parsed from text, serial number or datetime.")

    revenue: Optional[float] = Field(default=None, description="Gross money received, tax and tip included.")
    sale: Optional[float] = Field(default=None, description="Spreadsheet 'Sale' column (pre-tax sale).")
    sales_tax: Optional[float] = Field(default=None, description="Spreadsheet 'Sales tax' column.")
    tip: Optional[float] = Field(default=None)
    discount: Optional[float] = Field(default=None)
    wholesale_cost: Optional[float] = Field(default=None, description="Cost of goods bought for resale.")
    fee: Optional[float] = Field(default=None, description="Spreadsheet 'Fee' column; recorded processing fee.")
    expense_categories: dict[str, float] = Field(
        default_factory=dict,
        description=(
            "Named expense-category amounts keyed by category "
            "(software, ads, equipment, misc, print_media, shipping, transit, "
            "dry_ice, packaging, space_rental, pawsability_rent, other)."
        ),
    )

    products_blob: Optional[str] = Field(
        default=None,
        description="String-encoded mapping, simple {name: quantity} format.",
    )
    itemized_spend_blob: Optional[str] = Field(
        default=None,
        description="String-encoded mapping, detailed {key: {name, count|qty, spend}} format.",
    )
    line_items: list[ApiLineItem] = Field(default_factory=list)

    supplier: Optional[str] = None
    supplier_order_number: Optional[str] = None
    customer: Optional[str] = None
    client: Optional[str] = Field(default=None, description="Training client. Presence means training.")
    dog_name: Optional[str] = None
    training_agency: Optional[str] = None
    trainer: Optional[str] = None

    payment_method: Optional[str] = None
    card_brand: Optional[str] = Field(default=None, description="Card network, when the platform reports it.")
    reported_tax: Optional[float] = Field(default=None, description="Tax reported by the platform (Shopify).")
    processing_fee: Optional[float] = Field(default=None, description="Fee reported by the platform.")
    status: TransactionStatus = TransactionStatus.COMPLETED
    notes: Optional[str] = None

    @property
    def expense_total(self) -> float:
        """Wholesale cost when positive, otherwise the sum of positive category costs."""
        if self.wholesale_cost is not None and self.wholesale_cost > 0:
            return self.wholesale_cost
        return sum(value for value in self.expense_categories.values() if value > 0)

    @property
    def total(self) -> float:
        """The record's headline money figure: revenue, else expense total."""
        if self.revenue:
            return self.revenue
        return self.expense_total

    @property
    def positive_categories(self) -> list[str]:
        return [name for name, value in self.expense_categories.items() if value > 0]


class LineItem(BaseModel):
    """One product, expense or service line within a transaction.

    Invariant: total_price == unit_price * quantity (within a cent), unless
    the total came straight from a detailed-format `spend`, in which case the
    unit price is derived from it instead.
    """

    name: str = Field(..., description="Display name; the raw sheet string when unmatched.")
    quantity: float = Field(default=1.0)
    unit_price: float = Field(default=0.0)
    total_price: float = Field(default=0.0)
    product_id: Optional[str] = Field(default=None, description="Catalog product id when resolved.")
    product_name: Optional[str] = Field(default=None, description="Canonical catalog name when resolved.")
    original_name: Optional[str] = Field(
        default=None,
        description="Pre-match name, kept when matching replaced the display name or nothing matched.",
    )
    from_spend: bool = Field(
        default=False,
        description="True when total_price was supplied by a 'spend' field rather than computed.",
    )

    @model_validator(mode="after")
    def _check_price_arithmetic(self) -> "LineItem":
        if self.from_spend:
            return self
        expected = self.unit_price * self.quantity
        if abs(expected - self.total_price) > AMOUNT_TOLERANCE:
            raise ValueError(
                f"Line item '{self.name}': total_price {self.total_price:.2f} does not equal "
                f"unit_price {self.unit_price:.2f} x quantity {self.quantity:g}"
            )
        return self

    @classmethod
    def priced(cls, name: str, quantity: float, unit_price: float, **extra: Any) -> "LineItem":
        """Line whose total is computed from the unit price."""
        return cls(
            name=name,
            quantity=quantity,
            unit_price=round(unit_price, 2),
            total_price=round(round(unit_price, 2) * quantity, 2),
            **extra,
        )

    @classmethod
    def spent(cls, name: str, quantity: float, spend: float, **extra: Any) -> "LineItem":
        """Line whose total is a known spend; unit price derived (0 for zero quantity)."""
        unit_price = spend / quantity if quantity else 0.0
        return cls(
            name=name,
            quantity=quantity,
            unit_price=round(unit_price, 4),
            total_price=round(spend, 2),
            from_spend=True,
            **extra,
        )


class CatalogProduct(BaseModel):
    """Inventory record owned by the product catalog. Read-only to the engine."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    retail_price: float = Field(default=0.0, description="Tax-inclusive shelf price.")
    last_purchase_price: float = Field(default=0.0, description="Most recent unit cost paid; cost proxy.")
    average_cost: float = Field(default=0.0, description="Weighted average unit cost.")
    active: bool = True
    platform_ids: list[str] = Field(
        default_factory=list,
        description="Square/Shopify variant ids and SKUs linked to this product.",
    )

    @property
    def unit_cost(self) -> Optional[float]:
        """Best known unit cost: average cost, then last purchase price; None when unknown."""
        if self.average_cost > 0:
            return self.average_cost
        if self.last_purchase_price > 0:
            return self.last_purchase_price
        return None


class ScoredProduct(BaseModel):
    product: CatalogProduct
    score: float


class ProductMatch(BaseModel):
    """Result of resolving one free-text product name against the catalog."""

    query: str
    product: Optional[CatalogProduct] = None
    score: float = 0.0
    method: str = Field(
        default="none",
        description="override | exact | platform_id | similarity | none",
    )
    potential: list[ScoredProduct] = Field(
        default_factory=list,
        description="Candidates scoring between the potential floor and the match threshold.",
    )

    @property
    def is_matched(self) -> bool:
        return self.product is not None


class DerivedAmounts(BaseModel):
    """Split of a total into its stored monetary parts (2-decimal)."""

    total: float = Field(..., description="Final tax-inclusive total actually charged.")
    pre_tax: float
    tax: float
    tip: float = 0.0
    discount: float = 0.0
    mode: DerivationMode = DerivationMode.INCLUSIVE

    @property
    def is_taxable(self) -> bool:
        return self.mode in (DerivationMode.INCLUSIVE, DerivationMode.REPORTED) and self.tax > 0


class LineItemProfit(BaseModel):
    name: str
    product_id: Optional[str] = None
    quantity: float = 0.0
    revenue: float = 0.0
    revenue_share: float = 0.0
    tax_share: float = 0.0
    fee_share: float = 0.0
    unit_cost: float = 0.0
    cost: float = 0.0
    profit: float = 0.0
    profit_margin: float = Field(default=0.0, description="profit / revenue, in percent.")
    has_cost_data: bool = False


class ProfitCalculation(BaseModel):
    """Derived profit breakdown for one transaction.

    Advisory and stale-able: recompute rather than trust a cached copy once
    the transaction or catalog costs change. `total_profit` is the
    authoritative figure; the per-item profits are informational and need
    not sum to it exactly.
    """

    items: list[LineItemProfit] = Field(default_factory=list)
    total_revenue: float = Field(default=0.0, description="Money received: pre-tax + tax + tip.")
    total_item_revenue: float = Field(default=0.0, description="Sum of line-item revenue.")
    total_cost: float = 0.0
    total_tax: float = 0.0
    credit_card_fees: float = 0.0
    total_profit: float = 0.0
    profit_margin: float = Field(default=0.0, description="total_profit / total_revenue, in percent.")
    items_without_cost: int = 0
    calculated_at: Optional[datetime] = None

    @property
    def has_cost_data(self) -> bool:
        return any(item.has_cost_data for item in self.items)

    @property
    def item_profit_sum(self) -> float:
        return round(sum(item.profit for item in self.items if item.has_cost_data), 2)


SUPPLIER_FIELDS = ("supplier", "supplier_order_number", "purchase_category")
CUSTOMER_FIELDS = ("customer",)
TRAINING_FIELDS = ("client_name", "dog_name", "trainer", "training_agency")

_PARTY_FIELDS: dict[TransactionType, tuple[str, ...]] = {
    TransactionType.EXPENSE: SUPPLIER_FIELDS,
    TransactionType.SALE: CUSTOMER_FIELDS,
    TransactionType.TRAINING: TRAINING_FIELDS,
}


class CanonicalTransaction(BaseModel):
    """Persisted transaction shape, produced by payload.py.

    Invariants validated on construction:
    - amount == pre_tax_amount + tax_amount + tip (within a cent). A
      discount is already netted out of pre-tax and tax, so it is recorded
      for reporting but not subtracted again.
    - only the party fields belonging to `type` are populated.
    """

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "id": "6f1c2e0b9a3d4c55",
                    "external_id": "ABC123",
                    "source": "square",
                    "type": "sale",
                    "date": "2025-03-14T00:00:00",
                    "amount": 108.75,
                    "pre_tax_amount": 99.89,
                    "tax_amount": 8.86,
                    "is_taxable": True,
                    "tip": 0.0,
                    "discount": 0.0,
                    "customer": "Jane Doe",
                    "products": [
                        {
                            "name": "Dog Treats",
                            "quantity": 5,
                            "unit_price": 21.75,
                            "total_price": 108.75,
                            "product_id": "p-001",
                            "product_name": "Dog Treats",
                        }
                    ],
                    "payment_method": "Card",
                    "status": "completed",
                }
            ]
        }
    )

    id: Optional[str] = Field(default=None, description="Internal id; assigned by the store on insert.")
    external_id: Optional[str] = Field(default=None, description="Source id used for dedup.")
    source: str = Field(default="excel")
    type: TransactionType
    date: datetime
    amount: float = Field(..., description="Final total, tax-inclusive.")
    pre_tax_amount: float = 0.0
    tax_amount: float = 0.0
    is_taxable: bool = False
    tip: float = 0.0
    discount: float = 0.0

    supplier: Optional[str] = None
    supplier_order_number: Optional[str] = None
    purchase_category: Optional[str] = None

    customer: Optional[str] = None

    client_name: Optional[str] = None
    dog_name: Optional[str] = None
    trainer: Optional[str] = None
    training_agency: Optional[str] = None

    products: list[LineItem] = Field(default_factory=list)
    payment_method: str = "Unknown"
    card_brand: Optional[str] = Field(default=None, description="Card network reported by the platform.")
    processing_fee: Optional[float] = Field(default=None, description="Fee recorded by the payment platform.")
    notes: Optional[str] = None
    status: TransactionStatus = TransactionStatus.COMPLETED
    profit_calculation: Optional[ProfitCalculation] = None

    @model_validator(mode="after")
    def _check_invariants(self) -> "CanonicalTransaction":
        parts = self.pre_tax_amount + self.tax_amount + self.tip
        if abs(round(parts, 2) - round(self.amount, 2)) > AMOUNT_TOLERANCE:
            raise ValueError(
                f"amount {self.amount:.2f} does not equal pre_tax_amount {self.pre_tax_amount:.2f} "
                f"+ tax_amount {self.tax_amount:.2f} + tip {self.tip:.2f}"
            )
        for other_type, fields in _PARTY_FIELDS.items():
            if other_type == self.type:
                continue
            populated = [name for name in fields if getattr(self, name)]
            if populated:
                raise ValueError(
                    f"{self.type.value} transaction carries {other_type.value} fields: {populated}"
                )
        return self

    @property
    def products_total(self) -> float:
        return round(sum(item.total_price for item in self.products), 2)

    @property
    def unmatched_products(self) -> list[LineItem]:
        return [item for item in self.products if item.product_id is None]


class ExistingMatch(BaseModel):
    """A stored transaction the incoming record appears to duplicate."""

    transaction: CanonicalTransaction
    match_type: MatchType
    strategy: str = Field(
        ...,
        description=(
            "external_id | internal_id | source_prefix | supplier_order | "
            "supplier_amount | fuzzy | batch"
        ),
    )
    confidence: float = Field(default=100.0, ge=0, le=100)
    evidence: list[str] = Field(default_factory=list)


class RecordIssue(BaseModel):
    """A per-record problem, reported instead of failing the batch."""

    row_index: Optional[int] = None
    external_id: Optional[str] = None
    field: Optional[str] = Field(default=None, description="Column or field that failed, when known.")
    message: str
    severity: str = Field(default="error", description="error | warning")


class ReconciledRecord(BaseModel):
    row_index: Optional[int] = None
    external_id: Optional[str] = None
    type: Optional[TransactionType] = None
    outcome: RecordOutcome
    transaction: Optional[CanonicalTransaction] = None
    existing_match: Optional[ExistingMatch] = None
    product_matches: list[ProductMatch] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class BatchResult(BaseModel):
    """Ordered per-record outcomes for one import batch."""

    records: list[ReconciledRecord] = Field(default_factory=list)
    issues: list[RecordIssue] = Field(default_factory=list)

    def count(self, outcome: RecordOutcome) -> int:
        return sum(1 for record in self.records if record.outcome == outcome)

    @property
    def new_transactions(self) -> list[CanonicalTransaction]:
        return [
            record.transaction
            for record in self.records
            if record.outcome == RecordOutcome.NEW and record.transaction is not None
        ]

    @property
    def errors(self) -> list[RecordIssue]:
        return [issue for issue in self.issues if issue.severity == "error"]
