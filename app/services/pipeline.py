from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
import logging
import time
from typing import Any, Awaitable, Callable, Optional
import uuid

from pydantic import BaseModel, Field

from app.config import PipelineSettings
from app.services.criteria import extract_criteria
from app.services.errors import CatalogEmptyError, GenerativeCallError, SelectionValidationError
from app.services.fallback import compose_fallback
from app.services.generative import GenerativeClient
from app.services.grouping import group_candidates, has_essential_candidates
from app.services.models import CategorizedCandidates, FilterCriteria, Recommendation, RecommendationSummary, ScoredProduct
from app.services.prompting import build_selection_prompt
from app.services.scoring import score_catalog, summarize_candidates
from app.services.validation import ValidatedSelection, validate_selection
from app.store.catalog import CatalogStore, to_catalog_products
from app.store.recommendation_sink import RecommendationSink, build_summary


logger = logging.getLogger("glow-reco-agent.pipeline")


class PipelineState(str, Enum):
    EXTRACTING_CRITERIA = "extracting_criteria"
    SCORING = "scoring"
    GROUPING = "grouping"
    BUILDING_PROMPT = "building_prompt"
    AWAITING_MODEL = "awaiting_model"
    VALIDATING = "validating"
    FALLBACK = "fallback"
    DONE = "done"


StateCallback = Callable[[PipelineState], Awaitable[None]]


@dataclass
class RunContext:
    """Per-run state owned by the caller; nothing here is shared between runs."""

    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    on_state: Optional[StateCallback] = None
    state: Optional[PipelineState] = None
    history: list[PipelineState] = field(default_factory=list)
    cancelled: bool = False
    started_at: float = field(default_factory=time.perf_counter)

    async def enter(self, state: PipelineState) -> None:
        self.state = state
        self.history.append(state)
        logger.debug("pipeline_state run_id=%s state=%s", self.run_id, state.value)
        if self.on_state is None:
            return
        try:
            await self.on_state(state)
        except Exception as exc:
            logger.warning("pipeline_state_callback_failed run_id=%s state=%s err=%s", self.run_id, state.value, exc)

    def elapsed_ms(self) -> int:
        return int(round((time.perf_counter() - self.started_at) * 1000))


class PipelineResult(BaseModel):
    run_id: str
    recommendation: Recommendation
    routine_sources: dict[str, str]
    fallback_reason: Optional[str] = None
    parse_mode: Optional[str] = None
    rejected_count: int = 0
    strict_avoid: bool = True
    candidate_counts: dict[str, int] = Field(default_factory=dict)
    filter_summary: dict[str, Any] = Field(default_factory=dict)
    summary: RecommendationSummary
    state_history: list[str] = Field(default_factory=list)
    persisted: bool = False


def _priority_active(criteria: FilterCriteria) -> Optional[str]:
    if not criteria.must_have_ingredients:
        return None
    return sorted(criteria.must_have_ingredients)[0]


class RecommendationPipeline:
    def __init__(
        self,
        *,
        catalog: CatalogStore,
        generative: GenerativeClient,
        settings: PipelineSettings,
        sink: Optional[RecommendationSink] = None,
    ) -> None:
        self._catalog = catalog
        self._generative = generative
        self._settings = settings
        self._sink = sink

    async def _fetch_catalog(self, criteria: FilterCriteria) -> list[dict[str, Any]]:
        limit = self._settings.catalog_query_limit
        min_price: Optional[float] = None
        max_price: Optional[float] = None
        if self._settings.budget_filter:
            tolerance = self._settings.weights.budget_tolerance
            min_price = criteria.budget_range[0] * (1.0 - tolerance)
            max_price = criteria.budget_range[1] * (1.0 + tolerance)

        try:
            rows = await self._catalog.query(min_price=min_price, max_price=max_price, limit=limit)
            if not rows and (min_price is not None or max_price is not None):
                logger.warning("catalog_empty_for_budget budget=%s retry=unbounded", criteria.budget_range)
                rows = await self._catalog.query(limit=limit)
        except Exception as exc:
            logger.warning("catalog_query_failed err=%s", exc)
            return []

        logger.info("catalog_fetched rows=%d", len(rows))
        return rows

    def _score(self, products: list, criteria: FilterCriteria, strict_avoid: bool) -> tuple[list[ScoredProduct], bool]:
        weights = self._settings.weights
        scored = score_catalog(products, criteria, strict_avoid=strict_avoid, weights=weights)
        if strict_avoid and products and not any(s.score > 0 for s in scored):
            logger.warning(
                "candidates_empty code=%s strict_avoid=true retry=lenient products=%d", CatalogEmptyError.code, len(products)
            )
            return score_catalog(products, criteria, strict_avoid=False, weights=weights), False
        return scored, strict_avoid

    async def _select_with_model(
        self,
        ctx: RunContext,
        candidates: CategorizedCandidates,
        profile: dict[str, Any],
        criteria: FilterCriteria,
    ) -> tuple[Optional[ValidatedSelection], Optional[str]]:
        await ctx.enter(PipelineState.BUILDING_PROMPT)
        payload = build_selection_prompt(
            candidates,
            profile,
            criteria,
            min_items=self._settings.selection_min_items,
            max_items=self._settings.selection_max_items,
        )
        logger.info("selection_prompt_built run_id=%s allowed_ids=%d chars=%d", ctx.run_id, len(payload.allowed_ids), len(payload.prompt))

        await ctx.enter(PipelineState.AWAITING_MODEL)
        try:
            raw = await asyncio.wait_for(
                self._generative.generate(payload.prompt, response_schema=payload.response_schema),
                timeout=self._settings.generative_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning("generative_call_timeout run_id=%s timeout_s=%s", ctx.run_id, self._settings.generative_timeout_s)
            return None, "generative_timeout"
        except asyncio.CancelledError:
            ctx.cancelled = True
            logger.warning("generative_call_cancelled run_id=%s", ctx.run_id)
            return None, "cancelled"
        except GenerativeCallError as exc:
            logger.warning("generative_call_failed run_id=%s err=%s detail=%s", ctx.run_id, exc.message, exc.detail)
            return None, "generative_error"
        except Exception as exc:
            logger.warning("generative_call_failed run_id=%s err=%r", ctx.run_id, exc)
            return None, "generative_error"

        await ctx.enter(PipelineState.VALIDATING)
        try:
            validated = validate_selection(
                raw,
                candidates,
                min_routine_items=self._settings.min_routine_items,
                max_items=self._settings.selection_max_items,
            )
        except SelectionValidationError as exc:
            logger.warning("selection_validation_failed run_id=%s err=%s", ctx.run_id, exc.message)
            return None, "validation_failed"

        logger.info(
            "selection_validated run_id=%s mode=%s morning=%d evening=%d rejected=%d",
            ctx.run_id,
            validated.parse_mode,
            len(validated.recommendation.morning_routine),
            len(validated.recommendation.evening_routine),
            validated.rejected_count,
        )
        return validated, None

    async def run(
        self,
        profile: Optional[dict[str, Any]],
        analysis: Optional[dict[str, Any]],
        *,
        user_id: Optional[str] = None,
        strict_avoid: Optional[bool] = None,
        context: Optional[RunContext] = None,
    ) -> PipelineResult:
        ctx = context or RunContext()
        profile = profile if isinstance(profile, dict) else {}
        strict = self._settings.strict_avoid if strict_avoid is None else bool(strict_avoid)

        await ctx.enter(PipelineState.EXTRACTING_CRITERIA)
        criteria = extract_criteria(analysis, profile)
        products = to_catalog_products(await self._fetch_catalog(criteria))

        await ctx.enter(PipelineState.SCORING)
        scored, strict = self._score(products, criteria, strict)
        filter_summary = summarize_candidates(scored)
        logger.info(
            "candidates_scored run_id=%s products=%d eligible=%d strict_avoid=%s",
            ctx.run_id,
            len(products),
            filter_summary["total_products"],
            strict,
        )

        await ctx.enter(PipelineState.GROUPING)
        candidates = group_candidates(scored, self._settings.max_per_category)
        logger.info(
            "candidates_grouped run_id=%s %s",
            ctx.run_id,
            " ".join(f"{cat}={len(items)}" for cat, items in candidates.items()) or "none",
        )

        validated: Optional[ValidatedSelection] = None
        if has_essential_candidates(candidates):
            validated, failure = await self._select_with_model(ctx, candidates, profile, criteria)
        else:
            failure = "no_essential_candidates"
            logger.warning("essential_candidates_missing run_id=%s", ctx.run_id)

        recommendation, sources = await self._assemble(ctx, candidates, profile, criteria, validated)
        summary = build_summary(recommendation, criteria)
        await ctx.enter(PipelineState.DONE)

        result = PipelineResult(
            run_id=ctx.run_id,
            recommendation=recommendation,
            routine_sources=sources,
            fallback_reason=failure,
            parse_mode=validated.parse_mode if validated else None,
            rejected_count=validated.rejected_count if validated else 0,
            strict_avoid=strict,
            candidate_counts={cat: len(items) for cat, items in candidates.items()},
            filter_summary=filter_summary,
            summary=summary,
            state_history=[s.value for s in ctx.history],
        )
        logger.info(
            "pipeline_done run_id=%s morning=%s evening=%s fallback_reason=%s elapsed_ms=%d",
            ctx.run_id,
            sources["morning"],
            sources["evening"],
            failure,
            ctx.elapsed_ms(),
        )

        if ctx.cancelled:
            raise asyncio.CancelledError()

        if not user_id or self._sink is None:
            return result
        if not recommendation.morning_routine and not recommendation.evening_routine:
            logger.warning("recommendation_not_saved run_id=%s user_id=%s reason=empty_routines", ctx.run_id, user_id)
            return result
        await self._sink.save(user_id, recommendation, summary, run_id=ctx.run_id)
        result.persisted = True
        return result

    async def _assemble(
        self,
        ctx: RunContext,
        candidates: CategorizedCandidates,
        profile: dict[str, Any],
        criteria: FilterCriteria,
        validated: Optional[ValidatedSelection],
    ) -> tuple[Recommendation, dict[str, str]]:
        if validated is not None and validated.morning_usable and validated.evening_usable:
            return validated.recommendation, {"morning": "model", "evening": "model"}

        await ctx.enter(PipelineState.FALLBACK)
        fallback = compose_fallback(candidates, profile, priority_active=_priority_active(criteria))
        if validated is None:
            return fallback, {"morning": "fallback", "evening": "fallback"}

        chosen = validated.recommendation
        sources = {"morning": "model", "evening": "model"}
        morning = chosen.morning_routine
        evening = chosen.evening_routine
        if not validated.morning_usable and fallback.morning_routine:
            morning = fallback.morning_routine
            sources["morning"] = "fallback"
        if not validated.evening_usable and fallback.evening_routine:
            evening = fallback.evening_routine
            sources["evening"] = "fallback"
        logger.info("routine_partial_fallback run_id=%s morning=%s evening=%s", ctx.run_id, sources["morning"], sources["evening"])

        return (
            Recommendation(
                morning_routine=morning,
                evening_routine=evening,
                philosophy=chosen.philosophy,
                expected_timeline=chosen.expected_timeline,
                tips=chosen.tips,
            ),
            sources,
        )
