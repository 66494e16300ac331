"""
similarity.py - Product name matching against the catalog.

Resolution order for one free-text product name:
1. override table (confirmed name -> product id, or "override" = keep unmatched)
2. platform identifiers (API line items only: variant id / SKU)
3. exact case-folded catalog name
4. similarity score, auto-selected only at or above the match threshold

Scores between the potential floor and the threshold are returned as
"potential" candidates so a person can pick one; they are never auto-selected.
"""

from __future__ import annotations

from typing import Mapping, Optional, Sequence

from config import EngineSettings, get_settings
from logging_config import get_logger
from models import ApiLineItem, CatalogProduct, ProductMatch, ScoredProduct

logger = get_logger(__name__)

EXACT_SCORE = 100.0
CONTAINS_QUERY_WEIGHT = 75.0
CONTAINED_IN_QUERY_WEIGHT = 60.0
TOKEN_WEIGHT = 50.0
LENGTH_WEIGHT = 20.0
BULK_PENALTY = 0.5

# Override-table value meaning "the operator chose to leave this unmatched".
KEEP_UNMATCHED = "override"


def normalize_name(name: Optional[str]) -> str:
    """Case-fold and trim a product name for comparison and override lookups."""
    return (name or "").strip().lower()


def score_name(candidate_name: str, query_name: str) -> float:
    """Score how well a catalog name matches a query name.

    100 for an equal name; otherwise containment + shared tokens + length
    similarity. Candidates mentioning "bulk" are halved so retail units win
    over bulk packs of the same product.
    """
    candidate = normalize_name(candidate_name)
    query = normalize_name(query_name)

    if not candidate or not query:
        return 0.0
    if candidate == query:
        return EXACT_SCORE

    score = 0.0
    if query in candidate:
        score += CONTAINS_QUERY_WEIGHT * (len(query) / len(candidate))
    elif candidate in query:
        score += CONTAINED_IN_QUERY_WEIGHT * (len(candidate) / len(query))

    candidate_tokens = candidate.split()
    query_tokens = query.split()
    matching = sum(1 for token in candidate_tokens if token in query_tokens)
    score += TOKEN_WEIGHT * (matching / max(len(candidate_tokens), len(query_tokens)))

    length_gap = abs(len(candidate) - len(query))
    score += LENGTH_WEIGHT * (1 - length_gap / max(len(candidate), len(query)))

    if "bulk" in candidate:
        score *= BULK_PENALTY

    return score


def rank_candidates(
    candidates: Sequence[CatalogProduct],
    query: str,
) -> list[ScoredProduct]:
    """Score every candidate, best first. Equal scores keep catalog order."""
    scored = [ScoredProduct(product=product, score=score_name(product.name, query)) for product in candidates]
    return sorted(scored, key=lambda item: item.score, reverse=True)


def find_best_match(
    candidates: Sequence[CatalogProduct],
    query: str,
    threshold: float = 40.0,
) -> Optional[CatalogProduct]:
    """Top-ranked candidate when it clears the threshold, else None."""
    ranked = rank_candidates(candidates, query)
    if ranked and ranked[0].score >= threshold:
        return ranked[0].product
    return None


def _by_id(catalog: Sequence[CatalogProduct], product_id: str) -> Optional[CatalogProduct]:
    for product in catalog:
        if product.id == product_id:
            return product
    return None


def resolve_product(
    name: str,
    catalog: Sequence[CatalogProduct],
    overrides: Optional[Mapping[str, str]] = None,
    settings: Optional[EngineSettings] = None,
) -> ProductMatch:
    """Resolve a free-text name to a catalog product."""
    settings = settings or get_settings()
    key = normalize_name(name)
    active = [product for product in catalog if product.active]

    if overrides and key in overrides:
        target = overrides[key]
        if target == KEEP_UNMATCHED:
            logger.debug("product_override | name=%r | target=unmatched", name)
            return ProductMatch(query=name, method="override")
        product = _by_id(catalog, target)
        if product is not None:
            logger.debug("product_override | name=%r | product_id=%s", name, product.id)
            return ProductMatch(query=name, product=product, score=EXACT_SCORE, method="override")
        logger.warning(
            "product_override_stale | name=%r | product_id=%s | fallback='automatic matching'",
            name,
            target,
        )

    if not key:
        return ProductMatch(query=name)

    for product in active:
        if normalize_name(product.name) == key:
            return ProductMatch(query=name, product=product, score=EXACT_SCORE, method="exact")

    ranked = rank_candidates(active, name)
    potential = [
        item
        for item in ranked
        if settings.potential_match_floor <= item.score < settings.match_threshold
    ]

    if ranked and ranked[0].score >= settings.match_threshold:
        top = ranked[0]
        logger.debug(
            "product_matched | name=%r | product=%r | score=%.1f",
            name,
            top.product.name,
            top.score,
        )
        return ProductMatch(query=name, product=top.product, score=top.score, method="similarity")

    top_score = ranked[0].score if ranked else 0.0
    logger.info(
        "product_unmatched | name=%r | top_score=%.1f | potential=%s",
        name,
        top_score,
        len(potential),
    )
    return ProductMatch(query=name, score=top_score, potential=potential)


def resolve_api_line_item(
    item: ApiLineItem,
    catalog: Sequence[CatalogProduct],
    overrides: Optional[Mapping[str, str]] = None,
    settings: Optional[EngineSettings] = None,
) -> ProductMatch:
    """Resolve a platform line item: linked variant id or SKU first, then its name."""
    for platform_id in (item.variant_id, item.sku):
        if not platform_id:
            continue
        for product in catalog:
            if product.active and platform_id in product.platform_ids:
                return ProductMatch(
                    query=item.name or platform_id,
                    product=product,
                    score=EXACT_SCORE,
                    method="platform_id",
                )
    return resolve_product(item.name, catalog, overrides, settings)
