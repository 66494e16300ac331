"""
profit.py - Card-fee model and per-line profit attribution for sales.

Each line's share of the transaction is its revenue over the summed line
revenue. Tax and card fees are split by that share; cost comes from the
catalog (average cost, else last purchase price). Lines without a usable
cost are counted, not guessed.

The aggregate figure is authoritative:
    total_profit = (pre_tax + tax + tip) - total_cost - total_tax - total_fees
Per-line profits are informational and need not sum to it.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

from config import EngineSettings, get_settings
from logging_config import get_logger
from models import (
    CanonicalTransaction,
    CatalogProduct,
    LineItemProfit,
    ProfitCalculation,
    TransactionType,
)

logger = get_logger(__name__)

CatalogLookup = Callable[[str], Optional[CatalogProduct]]


def credit_card_fee(
    transaction: CanonicalTransaction,
    settings: Optional[EngineSettings] = None,
) -> float:
    """Card-processing fee for a whole transaction.

    A fee recorded by the platform wins. Otherwise the source's schedule
    applies. A schedule keyed on the card brand ("shopify:american express")
    takes precedence, then one keyed on the payment method. Peer transfers (Venmo) and sources without a schedule
    carry no fee.
    """
    settings = settings or get_settings()
    if transaction.processing_fee is not None:
        return round(transaction.processing_fee, 2)

    method = (transaction.payment_method or "").strip().lower()
    if method in settings.fee_exempt_payment_methods:
        return 0.0

    source = transaction.source.strip().lower()
    brand = (transaction.card_brand or "").strip().lower()
    schedule = (
        (brand and settings.fee_schedules.get(f"{source}:{brand}"))
        or settings.fee_schedules.get(f"{source}:{method}")
        or settings.fee_schedules.get(source)
    )
    if schedule is None or transaction.amount <= 0:
        return 0.0
    return round(schedule.fee_for(transaction.amount), 2)


def _share(part: float, whole: float) -> float:
    if part == 0 or whole == 0:
        return 0.0
    return part / whole


def attribute_profit(
    transaction: CanonicalTransaction,
    catalog_lookup: CatalogLookup,
    fees: Optional[float] = None,
    settings: Optional[EngineSettings] = None,
    now: Optional[datetime] = None,
) -> ProfitCalculation:
    """Profit breakdown for a sale or training transaction.

    Pure: neither the transaction nor the catalog is modified, and
    recomputing with the same inputs gives the same figures.
    """
    if transaction.type == TransactionType.EXPENSE:
        raise ValueError("Profit attribution applies to sales and training, not expenses")

    total_fees = credit_card_fee(transaction, settings) if fees is None else round(fees, 2)
    total_tax = transaction.tax_amount
    total_item_revenue = sum(item.total_price for item in transaction.products)

    items: list[LineItemProfit] = []
    for line in transaction.products:
        share = _share(line.total_price, total_item_revenue)
        tax_share = share * total_tax
        fee_share = share * total_fees
        entry = LineItemProfit(
            name=line.product_name or line.name,
            product_id=line.product_id,
            quantity=line.quantity,
            revenue=round(line.total_price, 2),
            revenue_share=round(share, 6),
            tax_share=round(tax_share, 2),
            fee_share=round(fee_share, 2),
        )

        product = catalog_lookup(line.product_id) if line.product_id else None
        unit_cost = product.unit_cost if product is not None else None
        if unit_cost:
            cost = unit_cost * line.quantity
            profit = line.total_price - cost - tax_share - fee_share
            entry.unit_cost = round(unit_cost, 2)
            entry.cost = round(cost, 2)
            entry.profit = round(profit, 2)
            entry.profit_margin = round(_share(profit, line.total_price) * 100, 2)
            entry.has_cost_data = True
        items.append(entry)

    total_cost = sum(item.cost for item in items if item.has_cost_data)
    total_revenue = transaction.pre_tax_amount + transaction.tax_amount + transaction.tip
    total_profit = total_revenue - total_cost - total_tax - total_fees
    without_cost = sum(1 for item in items if not item.has_cost_data)

    calculation = ProfitCalculation(
        items=items,
        total_revenue=round(total_revenue, 2),
        total_item_revenue=round(total_item_revenue, 2),
        total_cost=round(total_cost, 2),
        total_tax=round(total_tax, 2),
        credit_card_fees=total_fees,
        total_profit=round(total_profit, 2),
        profit_margin=round(_share(total_profit, total_revenue) * 100, 2),
        items_without_cost=without_cost,
        calculated_at=now or datetime.now(timezone.utc),
    )

    logger.info(
        "profit_calculated | transaction=%s | revenue=%.2f | cost=%.2f | fees=%.2f | profit=%.2f | margin=%.1f%% | items_without_cost=%s",
        transaction.id or transaction.external_id,
        calculation.total_revenue,
        calculation.total_cost,
        calculation.credit_card_fees,
        calculation.total_profit,
        calculation.profit_margin,
        without_cost,
    )
    return calculation
