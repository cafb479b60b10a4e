from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict

from app.services.models import CategorizedCandidates, FilterCriteria


class PromptPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt: str
    response_schema: dict[str, Any]
    allowed_ids: frozenset[str]
    products: list[dict[str, Any]]


def _candidate_entries(candidates: CategorizedCandidates, *, max_ingredients: int) -> list[dict[str, Any]]:
    entries: list[dict[str, Any]] = []
    seen: set[str] = set()
    for category, items in candidates.items():
        for item in items:
            if item.product_id in seen:
                continue
            seen.add(item.product_id)
            entries.append(
                {
                    "id": item.product_id,
                    "name": item.product.name,
                    "brand": item.product.brand,
                    "category": category,
                    "price": item.product.price,
                    "ingredients": list(item.ingredients[:max_ingredients]),
                }
            )
    return entries


def _routine_item_schema(allowed_ids: list[str]) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "productId": {"type": "string", "enum": allowed_ids},
            "applicationOrder": {"type": "integer", "minimum": 1},
            "keyIngredients": {"type": "array", "items": {"type": "string"}},
            "rationale": {"type": "string"},
            "usageInstructions": {"type": "string"},
            "expectedResult": {"type": "string"},
            "expectedTimeline": {"type": "string"},
        },
        "required": ["productId", "applicationOrder", "rationale", "usageInstructions"],
    }


def selection_response_schema(allowed_ids: list[str], *, min_items: int, max_items: int) -> dict[str, Any]:
    routine = {
        "type": "array",
        "minItems": min_items,
        "maxItems": max_items,
        "items": _routine_item_schema(allowed_ids),
    }
    return {
        "type": "object",
        "properties": {
            "morningRoutine": routine,
            "eveningRoutine": routine,
            "philosophy": {"type": "string"},
            "expectedTimeline": {"type": "string"},
            "tips": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["morningRoutine", "eveningRoutine"],
    }


def _join_or(values: Any, default: str) -> str:
    items = [str(v) for v in values if str(v).strip()]
    return ", ".join(items) if items else default


def build_selection_prompt(
    candidates: CategorizedCandidates,
    profile: dict[str, Any],
    criteria: FilterCriteria,
    *,
    min_items: int = 3,
    max_items: int = 5,
    max_ingredients: int = 12,
) -> PromptPayload:
    products = _candidate_entries(candidates, max_ingredients=max_ingredients)
    allowed_ids = [p["id"] for p in products]
    max_items = max(min_items, max_items)

    profile = profile if isinstance(profile, dict) else {}
    sensitivity = str(profile.get("skin_sensitivity") or "").strip()

    lines = [
        "You are a skincare expert selecting products for a customer.",
        "",
        "CUSTOMER NEEDS:",
        f"- Skin type: {criteria.skin_type or 'unknown'}",
        f"- Concerns: {_join_or(criteria.primary_concerns, 'none stated')}",
        f"- Must avoid: {_join_or(sorted(criteria.avoid_ingredients), 'none')}",
        f"- Preferred ingredients: {_join_or(sorted(criteria.must_have_ingredients | criteria.beneficial_ingredients), 'none')}",
        f"- Budget: {criteria.budget_tier or 'unspecified'}",
    ]
    if sensitivity:
        lines.append(f"- Sensitivity: {sensitivity}")
    lines += [
        "",
        "AVAILABLE PRODUCTS (YOU MUST ONLY SELECT FROM THIS LIST):",
        json.dumps(products, ensure_ascii=False, indent=2),
        "",
        "RULES:",
        "1. Only select products from the AVAILABLE PRODUCTS list above.",
        '2. Use the exact "id" value as productId. Never invent or alter an id.',
        f"3. Select {min_items}-{max_items} products for morningRoutine and {min_items}-{max_items} for eveningRoutine.",
        "4. Order each routine by applicationOrder starting at 1.",
        "5. Give a short rationale and usage instructions for every product.",
        "",
        "Reply with a single JSON object matching the response schema and nothing else.",
    ]

    return PromptPayload(
        prompt="\n".join(lines),
        response_schema=selection_response_schema(allowed_ids, min_items=min_items, max_items=max_items),
        allowed_ids=frozenset(allowed_ids),
        products=products,
    )
