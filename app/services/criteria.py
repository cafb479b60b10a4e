from __future__ import annotations

import logging
from typing import Any, Iterable

from app.services.ingredients import normalize_ingredients
from app.services.models import FilterCriteria


logger = logging.getLogger("glow-reco-agent.criteria")


BUDGET_RANGES: dict[str, tuple[float, float]] = {
    "budget": (0.0, 30.0),
    "mid_range": (20.0, 80.0),
    "luxury": (50.0, 500.0),
    "mixed": (0.0, 500.0),
}
WIDEST_BUDGET_RANGE: tuple[float, float] = (0.0, 500.0)


def _as_obj(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return []


def _get_case_insensitive(d: dict[str, Any], *keys: str) -> Any:
    if not isinstance(d, dict):
        return None
    lower_map = {str(k).lower(): v for k, v in d.items()}
    for key in keys:
        value = lower_map.get(str(key).lower())
        if value is not None:
            return value
    return None


def _dedupe(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for value in values:
        text = value.strip().lower()
        if text and text not in seen:
            seen.add(text)
            out.append(text)
    return out


def _split_text_list(raw: Any) -> list[str]:
    if isinstance(raw, str):
        return [part for part in (p.strip().lower() for p in raw.split(",")) if part]
    return normalize_ingredients(raw)


def budget_range_for_tier(tier: Any) -> tuple[float, float]:
    key = str(tier or "").strip().lower().replace("-", "_").replace(" ", "_")
    return BUDGET_RANGES.get(key, WIDEST_BUDGET_RANGE)


def _routine_product_types(routine_structure: dict[str, Any]) -> list[str]:
    types: list[str] = []
    for period in ("morning", "evening"):
        steps = _as_list(_as_obj(routine_structure.get(period)).get("steps"))
        for step in steps:
            product_type = _get_case_insensitive(_as_obj(step), "productType", "product_type")
            if isinstance(product_type, str) and product_type.strip():
                types.append(product_type)
    return _dedupe(types)


def _priority_concerns(analysis: dict[str, Any]) -> list[str]:
    plan = _as_obj(_get_case_insensitive(analysis, "treatmentPlan", "treatment_plan"))
    concerns: list[str] = []
    for priority in _as_list(plan.get("priorities")):
        concern = _as_obj(priority).get("concern") if isinstance(priority, dict) else priority
        if isinstance(concern, str):
            concerns.append(concern)
    return concerns


def extract_criteria(analysis: Any, profile: Any) -> FilterCriteria:
    analysis_obj = _as_obj(analysis)
    profile_obj = _as_obj(profile)

    recs = _as_obj(_get_case_insensitive(analysis_obj, "ingredientRecommendations", "ingredient_recommendations"))
    must_have = normalize_ingredients(_get_case_insensitive(recs, "mustHave", "must_have"))
    beneficial = normalize_ingredients(recs.get("beneficial"))
    analysis_avoid = normalize_ingredients(recs.get("avoid"))
    allergies = _split_text_list(_get_case_insensitive(profile_obj, "known_allergies", "allergies"))

    profile_concerns = _split_text_list(_get_case_insensitive(profile_obj, "primary_skin_concerns", "primaryConcerns", "concerns"))
    concerns = _dedupe([*profile_concerns, *_priority_concerns(analysis_obj)])

    routine_structure = _as_obj(_get_case_insensitive(analysis_obj, "routineStructure", "routine_structure"))
    budget_tier = str(_get_case_insensitive(profile_obj, "budget_range", "budget", "budgetRange") or "").strip().lower()
    skin_type = str(_get_case_insensitive(profile_obj, "skin_type", "skinType") or "").strip().lower()

    criteria = FilterCriteria(
        must_have_ingredients=frozenset(_dedupe(must_have)),
        beneficial_ingredients=frozenset(_dedupe(beneficial)),
        avoid_ingredients=frozenset(_dedupe([*analysis_avoid, *allergies])),
        primary_concerns=tuple(concerns),
        skin_type=skin_type,
        budget_tier=budget_tier,
        budget_range=budget_range_for_tier(budget_tier),
        required_product_types=frozenset(_routine_product_types(routine_structure)),
    )
    logger.info(
        "criteria_extracted must_have=%d beneficial=%d avoid=%d concerns=%d budget=%s types=%d",
        len(criteria.must_have_ingredients),
        len(criteria.beneficial_ingredients),
        len(criteria.avoid_ingredients),
        len(criteria.primary_concerns),
        criteria.budget_range,
        len(criteria.required_product_types),
    )
    return criteria
