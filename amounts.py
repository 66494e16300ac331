"""
amounts.py - Split a tax-inclusive total into pre-tax amount, tax, tip and discount.

Modes:
    inclusive   pre_tax = total / (1 + rate), tax = total - pre_tax
    exempt      pre_tax = total, tax = 0
    agency      pre_tax = total, tax = 0 (training billed through an agency)
    reported    tax supplied by the platform, pre_tax = total - tax - tip

Manual override of a computed ("natural") total:
    manual > natural   excess is a tip; pre_tax/tax come from the natural total
    manual < natural   shortfall is a discount; pre_tax/tax come from the manual total
    manual == natural  no tip, no discount

Amounts are rounded to cents only once, at the end. Tax is stored as
round(total) - round(pre_tax) so the stored parts add back to the total.
"""

from __future__ import annotations

from typing import Optional

from config import EngineSettings, get_settings
from logging_config import get_logger
from models import DerivationMode, DerivedAmounts, RawRecord, TransactionType

logger = get_logger(__name__)

REPORTED_TAX_SOURCES = {"shopify"}


def derive_amounts(
    total: float,
    tax_rate: float,
    mode: DerivationMode = DerivationMode.INCLUSIVE,
    reported_tax: Optional[float] = None,
    tip: float = 0.0,
) -> DerivedAmounts:
    """Split `total` (tip included, if any) into its stored parts."""
    if tax_rate < 0:
        raise ValueError(f"tax_rate must be non-negative, got {tax_rate}")

    total = round(total, 2)
    tip = round(tip or 0.0, 2)
    taxable_total = round(total - tip, 2)

    if mode == DerivationMode.REPORTED:
        if reported_tax is None:
            raise ValueError("reported mode requires the platform's tax figure")
        tax = round(reported_tax, 2)
        pre_tax = round(taxable_total - tax, 2)
    elif mode in (DerivationMode.EXEMPT, DerivationMode.AGENCY):
        pre_tax = taxable_total
        tax = 0.0
    else:
        pre_tax = round(taxable_total / (1 + tax_rate), 2)
        tax = round(taxable_total - pre_tax, 2)

    return DerivedAmounts(total=total, pre_tax=pre_tax, tax=tax, tip=tip, mode=mode)


def derive_with_override(
    natural_total: float,
    manual_total: Optional[float],
    tax_rate: float,
    mode: DerivationMode = DerivationMode.INCLUSIVE,
    reported_tax: Optional[float] = None,
) -> DerivedAmounts:
    """Derive amounts when an operator-entered total may differ from the computed one."""
    if manual_total is None:
        return derive_amounts(natural_total, tax_rate, mode, reported_tax)

    difference = round(manual_total - natural_total, 2)

    if difference > 0:
        base = derive_amounts(natural_total, tax_rate, mode, reported_tax)
        return base.model_copy(update={"total": round(manual_total, 2), "tip": difference})

    if difference < 0:
        base = derive_amounts(manual_total, tax_rate, mode, reported_tax)
        return base.model_copy(update={"discount": -difference})

    return derive_amounts(natural_total, tax_rate, mode, reported_tax)


def mode_for_record(record: RawRecord, transaction_type: TransactionType) -> DerivationMode:
    """Pick the derivation mode; the agency rule outranks every other rule."""
    if transaction_type == TransactionType.TRAINING and record.training_agency:
        return DerivationMode.AGENCY
    if transaction_type == TransactionType.EXPENSE:
        return DerivationMode.EXEMPT
    if record.reported_tax is not None and record.source in REPORTED_TAX_SOURCES:
        return DerivationMode.REPORTED
    if record.sales_tax == 0 and record.sale:
        return DerivationMode.EXEMPT
    return DerivationMode.INCLUSIVE


def derive_for_record(
    record: RawRecord,
    transaction_type: TransactionType,
    natural_total: Optional[float] = None,
    settings: Optional[EngineSettings] = None,
) -> DerivedAmounts:
    """Derive stored amounts for a classified record.

    A natural total computed from line items is compared with the recorded
    Revenue, which acts as the manual total when present. Otherwise the
    recorded Revenue is split with the record's own Tip, and its Discount is
    carried as is.
    """
    settings = settings or get_settings()
    rate = settings.sales_tax_rate
    mode = mode_for_record(record, transaction_type)

    if transaction_type == TransactionType.EXPENSE:
        derived = derive_amounts(record.expense_total, rate, mode)
    elif transaction_type == TransactionType.SALE and natural_total is not None:
        derived = derive_with_override(natural_total, record.revenue, rate, mode, record.reported_tax)
    else:
        derived = derive_amounts(
            record.revenue or 0.0,
            rate,
            mode,
            reported_tax=record.reported_tax,
            tip=record.tip or 0.0,
        )
        if record.discount:
            derived = derived.model_copy(update={"discount": round(record.discount, 2)})

    logger.debug(
        "amounts_derived | row=%s | type=%s | mode=%s | total=%.2f | pre_tax=%.2f | tax=%.2f | tip=%.2f | discount=%.2f",
        record.row_index,
        transaction_type.value,
        derived.mode.value,
        derived.total,
        derived.pre_tax,
        derived.tax,
        derived.tip,
        derived.discount,
    )
    return derived
