from __future__ import annotations

import logging
from typing import Iterable, Optional

from app.services.models import CatalogProduct, CategorizedCandidates, ScoredProduct


logger = logging.getLogger("glow-reco-agent.grouping")


CATEGORY_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("cleanser", ("cleanser",)),
    ("serum", ("serum",)),
    ("moisturizer", ("moisturizer", "moisturiser", "cream")),
    ("sunscreen", ("sunscreen", "spf")),
    ("toner", ("toner",)),
    ("exfoliant", ("exfoliant", "scrub")),
    ("mask", ("mask",)),
    ("oil", ("oil",)),
    ("eye_care", ("eye",)),
    ("lip_care", ("lip",)),
)
DEFAULT_CATEGORY = "treatment"
CATEGORY_ORDER: tuple[str, ...] = tuple(name for name, _ in CATEGORY_RULES) + (DEFAULT_CATEGORY,)

ESSENTIAL_CATEGORIES: tuple[str, ...] = ("cleanser", "serum", "moisturizer")

RELAXED_KEYWORDS: dict[str, tuple[str, ...]] = {
    "cleanser": ("clean", "wash", "foam", "micellar"),
    "serum": ("serum", "essence", "ampoule", "concentrate", "booster"),
    "moisturizer": ("moistur", "cream", "lotion", "hydrat", "balm", "emulsion"),
}


def _product_text(product: CatalogProduct) -> str:
    return f"{product.name} {product.category_path}".lower()


def detect_category(product: CatalogProduct) -> str:
    text = _product_text(product)
    for category, keywords in CATEGORY_RULES:
        if any(kw in text for kw in keywords):
            return category
    return DEFAULT_CATEGORY


def _ranked(scored: Iterable[ScoredProduct]) -> list[ScoredProduct]:
    return sorted(scored, key=lambda s: (-s.score, s.product.catalog_index))


def _backfill(
    category: str,
    ranked: list[ScoredProduct],
    taken_ids: set[str],
) -> Optional[ScoredProduct]:
    keywords = RELAXED_KEYWORDS.get(category, (category,))
    for candidate in ranked:
        if candidate.disqualified or candidate.score < 0:
            continue
        if candidate.product_id in taken_ids:
            continue
        if any(kw in _product_text(candidate.product) for kw in keywords):
            return candidate
    return None


def group_candidates(scored: Iterable[ScoredProduct], max_per_category: int) -> CategorizedCandidates:
    cap = max(1, int(max_per_category))
    ranked = _ranked(scored)

    buckets: dict[str, list[ScoredProduct]] = {}
    for candidate in ranked:
        if candidate.score <= 0:
            continue
        bucket = buckets.setdefault(detect_category(candidate.product), [])
        if len(bucket) < cap:
            bucket.append(candidate)

    for category in ESSENTIAL_CATEGORIES:
        if buckets.get(category):
            continue
        taken_ids = {s.product_id for c in ESSENTIAL_CATEGORIES for s in buckets.get(c, [])}
        pick = _backfill(category, ranked, taken_ids)
        if pick is None:
            logger.info("essential_category_empty category=%s", category)
            continue
        logger.info("essential_category_backfilled category=%s product_id=%s score=%d", category, pick.product_id, pick.score)
        buckets[category] = [pick]

    return {category: buckets[category] for category in CATEGORY_ORDER if buckets.get(category)}


def has_essential_candidates(candidates: CategorizedCandidates) -> bool:
    return any(candidates.get(category) for category in ESSENTIAL_CATEGORIES)


def flatten_candidates(candidates: CategorizedCandidates) -> dict[str, tuple[str, ScoredProduct]]:
    """Map each candidate id to (category, candidate); first category wins for duplicates."""
    flat: dict[str, tuple[str, ScoredProduct]] = {}
    for category, items in candidates.items():
        for item in items:
            flat.setdefault(item.product_id, (category, item))
    return flat
