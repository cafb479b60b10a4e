from __future__ import annotations

from collections import Counter
import logging
from typing import Any, Iterable, Optional

from app.config import ScoringWeights
from app.services.ingredients import normalize_benefits, normalize_ingredients
from app.services.models import CatalogProduct, FilterCriteria, ScoredProduct


logger = logging.getLogger("glow-reco-agent.scoring")


ANOMALY_REASON = "scored with defaults after processing anomaly"

# Checked in order; "combination" first so it is not read as oily or dry.
SKIN_TYPE_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("combination", ("combination", "balanced", "normalize")),
    ("sensitive", ("sensitive", "soothing", "calming", "gentle")),
    ("oily", ("oily", "oil-control", "mattifying", "sebum")),
    ("dry", ("dry", "hydrating", "moisturizing", "nourishing")),
    ("normal", ("normal", "balanced", "maintain")),
)


def skin_type_keywords(skin_type: str) -> tuple[str, ...]:
    text = (skin_type or "").strip().lower()
    if not text:
        return ()
    for key, keywords in SKIN_TYPE_KEYWORDS:
        if key in text:
            return keywords
    return ()


def _concern_term(concern: str) -> str:
    return concern.replace("_", " ").replace("-", " ").strip().lower()


def _in_any(term: str, haystacks: Iterable[str]) -> bool:
    return any(term in text for text in haystacks)


def _within_budget(price: Optional[float], budget_range: tuple[float, float], tolerance: float) -> bool:
    if price is None:
        return False
    low, high = budget_range
    return low * (1.0 - tolerance) <= price <= high * (1.0 + tolerance)


def _matched_avoid(ingredients: Iterable[str], criteria: FilterCriteria) -> list[str]:
    texts = list(ingredients)
    return [term for term in sorted(criteria.avoid_ingredients) if _in_any(term, texts)]


def _score(product: CatalogProduct, criteria: FilterCriteria, *, strict_avoid: bool, weights: ScoringWeights) -> ScoredProduct:
    ingredients = normalize_ingredients(product.raw_ingredients)
    benefits = normalize_benefits(product.raw_benefits)
    name = product.name.lower()
    category = product.category_path.lower()

    score = 0
    fired = False
    reasons: list[str] = []

    matched_avoid = _matched_avoid(ingredients, criteria)
    if matched_avoid:
        if strict_avoid:
            return ScoredProduct(
                product=product,
                score=0,
                match_reasons=(f"contains {matched_avoid[0]}, disqualified",),
                ingredients=tuple(ingredients),
                benefits=tuple(benefits),
                disqualified=True,
            )
        score += weights.avoid_penalty
        fired = True
        reasons.append(f"contains {', '.join(matched_avoid)}, penalized")

    ingredient_texts = [*ingredients, name]
    for term in sorted(criteria.must_have_ingredients):
        if _in_any(term, ingredient_texts):
            score += weights.must_have
            fired = True
            reasons.append(f"contains required {term}")

    for term in sorted(criteria.beneficial_ingredients):
        if _in_any(term, ingredient_texts):
            score += weights.beneficial
            fired = True
            reasons.append(f"contains beneficial {term}")

    concern_texts = [*benefits, name, category]
    for concern in criteria.primary_concerns:
        term = _concern_term(concern)
        if term and _in_any(term, concern_texts):
            score += weights.concern
            fired = True
            reasons.append(f"addresses {term}")

    keywords = skin_type_keywords(criteria.skin_type)
    if keywords and any(_in_any(kw, [name, *benefits]) for kw in keywords):
        score += weights.skin_type
        fired = True
        reasons.append(f"suited to {criteria.skin_type} skin")

    if _within_budget(product.price, criteria.budget_range, weights.budget_tolerance):
        score += weights.budget
        fired = True
        reasons.append("within budget")

    if product.rating is not None and product.rating >= weights.quality_rating_min:
        score += weights.quality
        fired = True
        reasons.append(f"highly rated ({product.rating:g})")

    if not fired and ingredients:
        score = weights.floor
        reasons.append("valid product")

    return ScoredProduct(
        product=product,
        score=score,
        match_reasons=tuple(reasons),
        ingredients=tuple(ingredients),
        benefits=tuple(benefits),
    )


def score_product(
    product: CatalogProduct,
    criteria: FilterCriteria,
    *,
    strict_avoid: bool = True,
    weights: Optional[ScoringWeights] = None,
) -> ScoredProduct:
    weights = weights or ScoringWeights()
    try:
        scored = _score(product, criteria, strict_avoid=strict_avoid, weights=weights)
    except Exception as exc:
        logger.warning("score_product_anomaly product_id=%s err=%s", product.product_id, exc)
        # Avoid-list exclusion still holds for products that could not be fully scored.
        matched_avoid = _matched_avoid(normalize_ingredients(product.raw_ingredients), criteria)
        if matched_avoid and strict_avoid:
            return ScoredProduct(
                product=product,
                score=0,
                match_reasons=(f"contains {matched_avoid[0]}, disqualified", ANOMALY_REASON),
                disqualified=True,
                anomaly=True,
            )
        if matched_avoid:
            return ScoredProduct(
                product=product,
                score=weights.anomaly + weights.avoid_penalty,
                match_reasons=(f"contains {', '.join(matched_avoid)}, penalized", ANOMALY_REASON),
                anomaly=True,
            )
        return ScoredProduct(
            product=product,
            score=weights.anomaly,
            match_reasons=(ANOMALY_REASON,),
            anomaly=True,
        )

    logger.debug(
        "product_scored product_id=%s score=%d reasons=%s",
        product.product_id,
        scored.score,
        "; ".join(scored.match_reasons),
    )
    return scored


def score_catalog(
    products: Iterable[CatalogProduct],
    criteria: FilterCriteria,
    *,
    strict_avoid: bool = True,
    weights: Optional[ScoringWeights] = None,
) -> list[ScoredProduct]:
    scored = [score_product(p, criteria, strict_avoid=strict_avoid, weights=weights) for p in products]
    scored.sort(key=lambda s: (-s.score, s.product.catalog_index))
    return scored


def summarize_candidates(scored: list[ScoredProduct]) -> dict[str, Any]:
    eligible = [s for s in scored if s.score > 0]
    if not eligible:
        return {"total_products": 0, "average_score": 0.0, "top_reasons": [], "price_range": None}

    reason_counts: Counter[str] = Counter()
    for s in eligible:
        reason_counts.update(s.match_reasons)
    prices = [s.product.price for s in eligible if s.product.price is not None]

    return {
        "total_products": len(eligible),
        "average_score": round(sum(s.score for s in eligible) / len(eligible), 2),
        "top_reasons": [{"reason": r, "count": c} for r, c in reason_counts.most_common(5)],
        "price_range": {"min": min(prices), "max": max(prices)} if prices else None,
    }
