from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any, Optional, Protocol
import uuid

from app.services.errors import PersistenceError
from app.services.models import FilterCriteria, Recommendation, RecommendationSummary, RoutineItem
from app.store.supabase_rest import SupabaseRestClient


logger = logging.getLogger("glow-reco-agent.recommendation-sink")

RECOMMENDATIONS_TABLE = "product_recommendations"


class RecommendationSink(Protocol):
    async def save(
        self,
        user_id: str,
        recommendation: Recommendation,
        summary: RecommendationSummary,
        *,
        run_id: Optional[str] = None,
    ) -> None: ...


def build_summary(recommendation: Recommendation, criteria: FilterCriteria) -> RecommendationSummary:
    items = [*recommendation.morning_routine, *recommendation.evening_routine]
    chosen_ingredients = {ing.lower() for item in items for ing in item.key_ingredients}

    wanted = sorted(criteria.must_have_ingredients | criteria.beneficial_ingredients)
    present = [term for term in wanted if any(term in ing for ing in chosen_ingredients)]

    product_types: list[str] = []
    for item in items:
        if item.category not in product_types:
            product_types.append(item.category)

    return RecommendationSummary(
        recommended_ingredients=present or sorted(criteria.must_have_ingredients),
        avoided_ingredients=sorted(criteria.avoid_ingredients),
        concerns_addressed=list(criteria.primary_concerns),
        product_types=product_types,
    )


class InMemoryRecommendationSink(RecommendationSink):
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._saved: dict[str, dict[str, Any]] = {}

    async def save(
        self,
        user_id: str,
        recommendation: Recommendation,
        summary: RecommendationSummary,
        *,
        run_id: Optional[str] = None,
    ) -> None:
        if not user_id:
            raise PersistenceError("user_id is required to save a recommendation")
        async with self._lock:
            self._saved[user_id] = {
                "run_id": run_id,
                "recommendation": recommendation.model_dump(mode="json"),
                "summary": summary.model_dump(mode="json"),
            }

    async def get(self, user_id: str) -> Optional[dict[str, Any]]:
        async with self._lock:
            record = self._saved.get(user_id)
            return dict(record) if record else None


def _row(
    *,
    user_id: str,
    run_id: Optional[str],
    item: RoutineItem,
    routine_time: str,
    index: int,
    base_score: int,
    summary: RecommendationSummary,
) -> dict[str, Any]:
    return {
        "user_id": user_id,
        "analysis_id": run_id,
        "product_id": item.product_id,
        "product_name": item.product_name,
        "brand_name": item.brand,
        "price_mrp": item.price,
        "category": item.category,
        "routine_time": routine_time,
        "routine_step": item.application_order,
        "usage_instructions": item.usage_instructions,
        "recommendation_reason": item.rationale,
        "key_ingredients": item.key_ingredients,
        "expected_results": {"description": item.expected_result, "timeline": item.expected_timeline},
        "match_score": base_score - index * 2,
        "personalization_factors": {
            "targetsConcerns": summary.concerns_addressed,
            "recommendedIngredients": summary.recommended_ingredients,
            "avoidedIngredients": summary.avoided_ingredients,
            "productTypes": summary.product_types,
        },
        "is_active": True,
    }


class SupabaseRecommendationSink(RecommendationSink):
    def __init__(self, client: SupabaseRestClient, *, table: str = RECOMMENDATIONS_TABLE) -> None:
        self._client = client
        self._table = table

    async def save(
        self,
        user_id: str,
        recommendation: Recommendation,
        summary: RecommendationSummary,
        *,
        run_id: Optional[str] = None,
    ) -> None:
        if not user_id:
            raise PersistenceError("user_id is required to save a recommendation")
        run_id = run_id or uuid.uuid4().hex

        rows = [
            _row(user_id=user_id, run_id=run_id, item=item, routine_time="morning", index=i, base_score=95, summary=summary)
            for i, item in enumerate(recommendation.morning_routine)
        ] + [
            _row(user_id=user_id, run_id=run_id, item=item, routine_time="evening", index=i, base_score=93, summary=summary)
            for i, item in enumerate(recommendation.evening_routine)
        ]
        if not rows:
            logger.warning("recommendation_not_saved user_id=%s run_id=%s reason=empty_routines", user_id, run_id)
            return

        # Older rows are only deactivated once the new ones are stored.
        try:
            await self._client.insert_rows(self._table, rows)
            await self._client.update_rows(
                self._table,
                filters={
                    "user_id": f"eq.{user_id}",
                    "is_active": "eq.true",
                    "or": f"(analysis_id.neq.{run_id},analysis_id.is.null)",
                },
                patch={"is_active": False, "updated_at": datetime.now(timezone.utc).isoformat()},
            )
        except Exception as exc:
            logger.warning("recommendation_save_failed user_id=%s err=%s", user_id, exc)
            raise PersistenceError("failed to save recommendation", detail=str(exc)) from exc

        logger.info("recommendation_saved user_id=%s run_id=%s rows=%d", user_id, run_id, len(rows))
