from __future__ import annotations

import logging
from typing import Any, Optional

from app.services.models import CategorizedCandidates, Recommendation, RoutineItem, ScoredProduct


logger = logging.getLogger("glow-reco-agent.fallback")


DEFAULT_PRIORITY_ACTIVE = "niacinamide"
KEY_INGREDIENT_LIMIT = 5

DEFAULT_PHILOSOPHY = "A balanced routine for your skin needs"
DEFAULT_TIMELINE = "4-6 weeks for visible improvements"
DEFAULT_TIPS = [
    "Always use sunscreen during the day",
    "Be consistent with your routine",
    "Introduce new products gradually",
]

_MORNING_COPY: dict[str, tuple[str, str, str, str]] = {
    # category: (rationale, usage, expected result, timeline)
    "cleanser": (
        "Gentle cleansing to start your day",
        "Massage onto wet face for 30 seconds, rinse thoroughly",
        "Clean, refreshed skin",
        "1-2 weeks",
    ),
    "serum": (
        "Targets your specific skin concerns",
        "Apply 2-3 drops to clean face",
        "Improved skin texture and tone",
        "4-6 weeks",
    ),
    "moisturizer": (
        "Hydration and protection throughout the day",
        "Apply evenly to face and neck",
        "Hydrated, protected skin",
        "Immediate",
    ),
    "sunscreen": (
        "Daily UV protection keeps treatment results from being undone",
        "Apply generously as the last step, reapply every 2 hours outdoors",
        "Protection against sun damage and dark spots",
        "Ongoing",
    ),
}

_EVENING_COPY: dict[str, tuple[str, str, str, str]] = {
    "cleanser": (
        "Remove impurities from the day",
        "Double cleanse if wearing makeup",
        "Deep cleaned skin",
        "Immediate",
    ),
    "serum": (
        "Night treatment for skin repair",
        "Apply after cleansing",
        "Targeted treatment while you sleep",
        "4-8 weeks",
    ),
    "moisturizer": (
        "Locks in hydration and supports overnight repair",
        "Apply a thin layer as the last step",
        "Softer, replenished skin by morning",
        "1-2 weeks",
    ),
}

_GENERIC_COPY = (
    "Chosen to support your routine",
    "Use as directed on the packaging",
    "Improved skin health",
    "4-6 weeks",
)


def routine_copy(category: str, *, evening: bool = False) -> tuple[str, str, str, str]:
    table = _EVENING_COPY if evening else _MORNING_COPY
    return table.get(category) or _MORNING_COPY.get(category) or _GENERIC_COPY


def key_ingredients_for(candidate: ScoredProduct) -> list[str]:
    return list(candidate.ingredients[:KEY_INGREDIENT_LIMIT])


def _mentions(candidate: ScoredProduct, active: str) -> bool:
    return any(active in ing for ing in candidate.ingredients)


def _ranked_serums(serums: list[ScoredProduct], priority_active: str) -> list[ScoredProduct]:
    if not serums:
        return []
    # Ties on score go to the serum carrying the priority active.
    return sorted(
        serums,
        key=lambda s: (-s.score, not _mentions(s, priority_active), s.product.catalog_index),
    )


def _item(candidate: ScoredProduct, category: str, order: int, *, evening: bool, label: Optional[str] = None) -> RoutineItem:
    rationale, usage, result, timeline = routine_copy(category, evening=evening)
    return RoutineItem(
        product_id=candidate.product_id,
        product_name=candidate.product.name or candidate.product_id,
        brand=candidate.product.brand,
        category=label or category,
        price=candidate.product.price or 0.0,
        application_order=order,
        key_ingredients=key_ingredients_for(candidate),
        rationale=rationale,
        usage_instructions=usage,
        expected_result=result,
        expected_timeline=timeline,
    )


def _second_or_first(items: list[ScoredProduct]) -> Optional[ScoredProduct]:
    if len(items) > 1:
        return items[1]
    return items[0] if items else None


def compose_fallback(
    candidates: CategorizedCandidates,
    profile: Optional[dict[str, Any]] = None,
    *,
    priority_active: Optional[str] = None,
) -> Recommendation:
    active = (priority_active or "").strip().lower()
    if not active and isinstance(profile, dict):
        active = str(profile.get("priority_active") or "").strip().lower()
    active = active or DEFAULT_PRIORITY_ACTIVE

    cleansers = list(candidates.get("cleanser") or [])
    serums = _ranked_serums(list(candidates.get("serum") or []), active)
    moisturizers = list(candidates.get("moisturizer") or [])
    sunscreens = list(candidates.get("sunscreen") or [])

    morning: list[RoutineItem] = []
    for category, pool in (("cleanser", cleansers), ("serum", serums), ("moisturizer", moisturizers), ("sunscreen", sunscreens)):
        if pool:
            morning.append(_item(pool[0], category, len(morning) + 1, evening=False))

    evening: list[RoutineItem] = []
    for category, pool, label in (
        ("cleanser", cleansers, None),
        ("serum", serums, "treatment"),
        ("moisturizer", moisturizers, None),
    ):
        pick = _second_or_first(pool)
        if pick is not None:
            evening.append(_item(pick, category, len(evening) + 1, evening=True, label=label))

    logger.info("fallback_composed morning=%d evening=%d priority_active=%s", len(morning), len(evening), active)
    return Recommendation(
        morning_routine=morning,
        evening_routine=evening,
        philosophy=DEFAULT_PHILOSOPHY,
        expected_timeline=DEFAULT_TIMELINE,
        tips=list(DEFAULT_TIPS),
    )
