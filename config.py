"""
config.py - Engine configuration.

All jurisdiction- and business-specific constants live here instead of being
scattered through the derivation code. Values come from the environment
(optionally a local `.env`), with defaults matching the shop's current setup.
"""

from __future__ import annotations

import os
from functools import lru_cache

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from logging_config import get_logger

logger = get_logger(__name__)

try:
    load_dotenv()
except UnicodeDecodeError:
    # Legacy Windows-encoded .env files.
    load_dotenv(encoding="cp1252")


class FeeSchedule(BaseModel):
    """Card-processing fee for one payment processor: percentage + flat fee."""

    rate: float = Field(..., ge=0, description="Percentage fee as a fraction (0.029 = 2.9%).")
    flat: float = Field(default=0.0, ge=0, description="Fixed per-transaction fee in dollars.")

    def fee_for(self, total: float) -> float:
        return total * self.rate + self.flat


DEFAULT_FEE_SCHEDULES: dict[str, FeeSchedule] = {
    "square": FeeSchedule(rate=0.026, flat=0.10),
    "shopify": FeeSchedule(rate=0.029, flat=0.30),
    "shopify:american express": FeeSchedule(rate=0.035, flat=0.30),
    "shopify:amex": FeeSchedule(rate=0.035, flat=0.30),
}


class EngineSettings(BaseModel):
    """Tunable constants for matching, classification and derivation."""

    sales_tax_rate: float = Field(
        default=0.08875,
        ge=0,
        lt=1,
        description="Combined sales tax rate (8.875% for Brooklyn, NY).",
    )
    match_threshold: float = Field(
        default=40.0,
        description="Minimum similarity score for a product name to auto-match a catalog entry.",
    )
    potential_match_floor: float = Field(
        default=20.0,
        description=(
            "Scores from this floor up to match_threshold are surfaced as "
            "potential matches for a human to confirm, never auto-selected."
        ),
    )
    probable_match_threshold: float = Field(
        default=85.0,
        description="Weighted confidence (0-100) at which a fuzzy duplicate is reported as probable.",
    )
    probable_max_date_diff_days: int = Field(
        default=3,
        ge=0,
        description="Existing transactions further apart than this are never probable duplicates.",
    )
    source_id_prefix: str = Field(
        default="square_",
        description="Prefix some sources add to internal ids (stored 'square_ABC123' vs sheet 'ABC123').",
    )
    default_trainer: str = Field(
        default="Madeline Pape",
        description="Trainer recorded on training sessions that do not name one.",
    )
    default_payment_method: str = Field(default="Unknown")
    fee_exempt_payment_methods: list[str] = Field(
        default_factory=lambda: ["venmo"],
        description="Peer-transfer payment methods that never carry a card fee.",
    )
    fee_schedules: dict[str, FeeSchedule] = Field(
        default_factory=lambda: dict(DEFAULT_FEE_SCHEDULES),
        description="Keyed by source, or 'source:card brand' for brand-specific rates.",
    )


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("config_env_warning | var=%s | value=%r | fallback=%s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("config_env_warning | var=%s | value=%r | fallback=%s", name, raw, default)
        return default


def settings_from_env() -> EngineSettings:
    """Build settings from environment variables, falling back to defaults."""
    defaults = EngineSettings()
    exempt_raw = os.getenv("FEE_EXEMPT_PAYMENT_METHODS", "").strip()
    exempt = (
        [item.strip().lower() for item in exempt_raw.split(",") if item.strip()]
        if exempt_raw
        else defaults.fee_exempt_payment_methods
    )
    settings = EngineSettings(
        sales_tax_rate=_env_float("SALES_TAX_RATE", defaults.sales_tax_rate),
        match_threshold=_env_float("MATCH_THRESHOLD", defaults.match_threshold),
        potential_match_floor=_env_float("POTENTIAL_MATCH_FLOOR", defaults.potential_match_floor),
        probable_match_threshold=_env_float("PROBABLE_MATCH_THRESHOLD", defaults.probable_match_threshold),
        probable_max_date_diff_days=_env_int("PROBABLE_MAX_DATE_DIFF_DAYS", defaults.probable_max_date_diff_days),
        source_id_prefix=os.getenv("SOURCE_ID_PREFIX", defaults.source_id_prefix),
        default_trainer=os.getenv("DEFAULT_TRAINER", defaults.default_trainer).strip() or defaults.default_trainer,
        fee_exempt_payment_methods=exempt,
    )
    logger.debug(
        "settings_loaded | tax_rate=%s | match_threshold=%s | probable_threshold=%s | prefix=%r",
        settings.sales_tax_rate,
        settings.match_threshold,
        settings.probable_match_threshold,
        settings.source_id_prefix,
    )
    return settings


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """Process-wide settings, read once from the environment."""
    return settings_from_env()
