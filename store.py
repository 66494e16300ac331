"""
store.py - JSON-file collaborators for the reconciliation engine.

    JsonTransactionStore   stored transactions (dedupe input, commit target)
    JsonProductCatalog     catalog products (read-only to the engine)
    JsonMappingStore       confirmed product-name mappings (the override table)

Each store keeps one JSON file and writes it atomically via temp-file +
replace. Locations default to the TRANSACTIONS_FILE, CATALOG_FILE and
MAPPINGS_FILE environment variables.
"""

from __future__ import annotations

import json
import os
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from config import get_settings
from logging_config import get_logger
from models import CanonicalTransaction, CatalogProduct, TransactionType
from similarity import KEEP_UNMATCHED, normalize_name

logger = get_logger(__name__)

NEW_MAPPING_CONFIDENCE = 80.0
TRUSTED_MAPPING_CONFIDENCE = 85.0
TRUSTED_MAPPING_USES = 2
RETARGET_PENALTY = 10.0
MIN_MAPPING_CONFIDENCE = 60.0
MAX_MAPPINGS = 500


def _atomic_write_json(path: Path, payload: Any, prefix: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        dir=str(path.parent),
        delete=False,
        suffix=".tmp",
        prefix=prefix,
    ) as tmp_file:
        json.dump(payload, tmp_file, ensure_ascii=False, indent=2)
        tmp_file.flush()
        os.fsync(tmp_file.fileno())
        tmp_path = Path(tmp_file.name)

    os.replace(tmp_path, path)


def _read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


class TransactionFile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    transactions: list[CanonicalTransaction] = Field(default_factory=list)
    updated_at: Optional[str] = None


class JsonTransactionStore:
    """Disk-backed transaction store.

    An unreadable file raises ValueError rather than loading as empty.
    """

    def __init__(self, path: Optional[str] = None) -> None:
        target = path or os.getenv("TRANSACTIONS_FILE", "data/transactions.json")
        self.path = Path(target).resolve()

    def _load(self) -> TransactionFile:
        if not self.path.exists():
            return TransactionFile()
        try:
            raw = _read_json(self.path)
            if isinstance(raw, list):
                raw = {"transactions": raw}
            return TransactionFile.model_validate(raw)
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            raise ValueError(f"Transaction store '{self.path}' is unreadable: {exc}") from exc

    def _save(self, state: TransactionFile) -> None:
        state.updated_at = datetime.now(timezone.utc).isoformat()
        _atomic_write_json(self.path, state.model_dump(mode="json"), "transactions-")

    def list_transactions(self, transaction_type: Optional[TransactionType] = None) -> list[CanonicalTransaction]:
        transactions = self._load().transactions
        if transaction_type is None:
            return transactions
        return [item for item in transactions if item.type == transaction_type]

    def find_by_external_id(self, external_id: str) -> Optional[CanonicalTransaction]:
        for transaction in self._load().transactions:
            if transaction.external_id == external_id:
                return transaction
        return None

    def find_by_id(self, identifier: str) -> Optional[CanonicalTransaction]:
        """Look up by internal id, also trying the source-prefixed and bare forms."""
        prefix = get_settings().source_id_prefix
        bare = identifier[len(prefix) :] if prefix and identifier.startswith(prefix) else identifier
        candidates = [identifier, bare, f"{prefix}{bare}"]
        transactions = self._load().transactions
        for candidate in candidates:
            for transaction in transactions:
                if transaction.id == candidate:
                    return transaction
        return None

    def find_by_supplier_order(self, supplier: str, order_number: str) -> Optional[CanonicalTransaction]:
        wanted = supplier.strip().lower()
        for transaction in self._load().transactions:
            if (
                transaction.type == TransactionType.EXPENSE
                and (transaction.supplier or "").strip().lower() == wanted
                and transaction.supplier_order_number == order_number
            ):
                return transaction
        return None

    def upsert_many(self, transactions: Iterable[CanonicalTransaction]) -> list[CanonicalTransaction]:
        """Insert or replace transactions in one write; assigns ids where absent."""
        state = self._load()
        saved: list[CanonicalTransaction] = []
        inserted = 0
        for transaction in transactions:
            if not transaction.id:
                transaction = transaction.model_copy(update={"id": uuid.uuid4().hex})
            position = next(
                (
                    index
                    for index, stored in enumerate(state.transactions)
                    if stored.id == transaction.id
                    or (transaction.external_id and stored.external_id == transaction.external_id)
                ),
                None,
            )
            if position is None:
                state.transactions.append(transaction)
                inserted += 1
            else:
                transaction = transaction.model_copy(update={"id": state.transactions[position].id})
                state.transactions[position] = transaction
            saved.append(transaction)

        self._save(state)
        logger.info(
            "store_upsert | path=%s | inserted=%s | replaced=%s | total=%s",
            self.path,
            inserted,
            len(saved) - inserted,
            len(state.transactions),
        )
        return saved

    def upsert(self, transaction: CanonicalTransaction) -> CanonicalTransaction:
        return self.upsert_many([transaction])[0]


class JsonProductCatalog:
    """Read-only catalog loaded from a JSON file."""

    def __init__(self, path: Optional[str] = None) -> None:
        target = path or os.getenv("CATALOG_FILE", "data/catalog.json")
        self.path = Path(target).resolve()

    def list_products(self) -> list[CatalogProduct]:
        if not self.path.exists():
            logger.warning("catalog_missing | path=%s | fallback='empty catalog'", self.path)
            return []
        try:
            raw = _read_json(self.path)
            items = raw.get("products", []) if isinstance(raw, dict) else raw
            return [CatalogProduct.model_validate(item) for item in items]
        except (OSError, json.JSONDecodeError, ValidationError, AttributeError) as exc:
            logger.warning(
                "catalog_load_warning | path=%s | error_type=%s | error=%s | fallback='empty catalog'",
                self.path,
                type(exc).__name__,
                exc,
            )
            return []

    def list_active(self) -> list[CatalogProduct]:
        return [product for product in self.list_products() if product.active]

    def find_by_id(self, product_id: str) -> Optional[CatalogProduct]:
        for product in self.list_products():
            if product.id == product_id:
                return product
        return None


class MappingEntry(BaseModel):
    """One confirmed mapping from a source product name to a catalog product."""

    model_config = ConfigDict(extra="ignore")

    source_name: str = Field(..., description="Normalized (lowercase, trimmed) source name.")
    target_id: str = Field(..., description="Catalog product id, or 'override' to keep unmatched.")
    target_name: Optional[str] = None
    confidence: float = NEW_MAPPING_CONFIDENCE
    usage_count: int = 1
    score: float = NEW_MAPPING_CONFIDENCE
    last_used: Optional[str] = None

    @field_validator("source_name", mode="before")
    @classmethod
    def _normalize_source(cls, value: Any) -> str:
        text = normalize_name(str(value or ""))
        if not text:
            raise ValueError("source_name cannot be empty")
        return text


class MappingFile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    mappings: dict[str, MappingEntry] = Field(default_factory=dict)


class JsonMappingStore:
    """Confirmed product-name mappings with usage counts and confidence.

    Confidence starts at 80, rises to 85 once a mapping has been used twice,
    and drops by 10 (never below 60) when its target changes. The file is
    pruned to the most useful MAX_MAPPINGS entries.
    """

    def __init__(self, path: Optional[str] = None, max_entries: int = MAX_MAPPINGS) -> None:
        target = path or os.getenv("MAPPINGS_FILE", "data/mappings.json")
        self.path = Path(target).resolve()
        self.max_entries = max_entries

    def _load(self) -> MappingFile:
        if not self.path.exists():
            return MappingFile()
        try:
            return MappingFile.model_validate(_read_json(self.path))
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            logger.warning(
                "mappings_load_warning | path=%s | error_type=%s | error=%s | fallback='no mappings'",
                self.path,
                type(exc).__name__,
                exc,
            )
            return MappingFile()

    def get(self, source_name: str) -> Optional[MappingEntry]:
        return self._load().mappings.get(normalize_name(source_name))

    def overrides(self) -> dict[str, str]:
        """Override table: normalized source name -> product id (or 'override')."""
        return {key: entry.target_id for key, entry in self._load().mappings.items()}

    def record_mapping(
        self,
        source_name: str,
        target_id: str,
        target_name: Optional[str] = None,
    ) -> MappingEntry:
        key = normalize_name(source_name)
        if not key:
            raise ValueError("source_name cannot be empty")
        if not target_id:
            raise ValueError("target_id cannot be empty")

        state = self._load()
        now = datetime.now(timezone.utc).isoformat()
        entry = state.mappings.get(key)

        if entry is None:
            entry = MappingEntry(source_name=key, target_id=target_id, target_name=target_name, last_used=now)
        else:
            previous_confidence = entry.confidence
            entry.usage_count += 1
            entry.last_used = now
            entry.score = min(100.0, entry.confidence + min(20.0, entry.usage_count / 5))
            if entry.usage_count >= TRUSTED_MAPPING_USES:
                entry.confidence = TRUSTED_MAPPING_CONFIDENCE
            if entry.target_id != target_id:
                entry.target_id = target_id
                entry.target_name = target_name
                entry.confidence = max(MIN_MAPPING_CONFIDENCE, previous_confidence - RETARGET_PENALTY)

        state.mappings[key] = entry
        self._prune(state, keep=key)
        _atomic_write_json(self.path, state.model_dump(mode="json"), "mappings-")
        logger.info(
            "mapping_recorded | source=%r | target=%s | confidence=%.0f | uses=%s",
            key,
            "unmatched" if target_id == KEEP_UNMATCHED else target_id,
            entry.confidence,
            entry.usage_count,
        )
        return entry

    def _prune(self, state: MappingFile, keep: str) -> None:
        overflow = len(state.mappings) - self.max_entries
        if overflow <= 0:
            return
        weakest = sorted(
            (entry for entry in state.mappings.values() if entry.source_name != keep),
            key=lambda entry: (entry.score, entry.usage_count, entry.last_used or ""),
        )[:overflow]
        for entry in weakest:
            state.mappings.pop(entry.source_name, None)
        logger.info("mappings_pruned | removed=%s | kept=%s", len(weakest), len(state.mappings))
