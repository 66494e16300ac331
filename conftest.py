"""
conftest.py - Shared pytest fixtures for the reconciliation tests.
"""

from __future__ import annotations

import os
import sys
from datetime import datetime

import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config import EngineSettings, get_settings
from models import CanonicalTransaction, CatalogProduct, RawRecord, TransactionType

ENV_VARS = (
    "SALES_TAX_RATE",
    "MATCH_THRESHOLD",
    "POTENTIAL_MATCH_FLOOR",
    "PROBABLE_MATCH_THRESHOLD",
    "PROBABLE_MAX_DATE_DIFF_DAYS",
    "DEFAULT_TRAINER",
    "SOURCE_ID_PREFIX",
    "FEE_EXEMPT_PAYMENT_METHODS",
    "TRANSACTIONS_FILE",
    "CATALOG_FILE",
    "MAPPINGS_FILE",
)


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings()


@pytest.fixture
def catalog() -> list[CatalogProduct]:
    return [
        CatalogProduct(id="p-treats", name="Dog Treats", retail_price=21.75, last_purchase_price=8.0, average_cost=9.0),
        CatalogProduct(id="p-bulk", name="Bulk Dog Treats", retail_price=80.0, last_purchase_price=40.0),
        CatalogProduct(
            id="p-leash",
            name="Leather Leash",
            retail_price=35.0,
            last_purchase_price=15.0,
            platform_ids=["VAR-1", "SKU-LEASH"],
        ),
        CatalogProduct(id="p-old", name="Old Toy", retail_price=5.0, active=False),
    ]


def make_record(**fields) -> RawRecord:
    fields.setdefault("date", datetime(2025, 3, 14))
    return RawRecord(**fields)


def make_transaction(**fields) -> CanonicalTransaction:
    fields.setdefault("type", TransactionType.SALE)
    fields.setdefault("date", datetime(2025, 3, 14))
    fields.setdefault("amount", 50.0)
    fields.setdefault("pre_tax_amount", fields["amount"])
    return CanonicalTransaction(**fields)
