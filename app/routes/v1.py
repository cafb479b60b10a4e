from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, HTTPException

from app.config import PipelineSettings, load_settings
from app.services.errors import PersistenceError
from app.services.generative import build_generative_client
from app.services.pipeline import PipelineState, RecommendationPipeline, RunContext
from app.store.catalog import CatalogStore, InMemoryCatalogStore, SupabaseCatalogStore
from app.store.recommendation_sink import InMemoryRecommendationSink, RecommendationSink, SupabaseRecommendationSink
from app.store.run_status import RUN_STATUS_STORE, RunStatus, finish_steps, mark_step
from app.store.supabase_rest import SupabaseRestClient


router = APIRouter()

logger = logging.getLogger("glow-reco-agent.v1")

CATALOG_FIXTURE_PATH = (os.getenv("CATALOG_FIXTURE_PATH") or "").strip() or None

STATE_PROGRESS: dict[PipelineState, int] = {
    PipelineState.EXTRACTING_CRITERIA: 10,
    PipelineState.SCORING: 25,
    PipelineState.GROUPING: 40,
    PipelineState.BUILDING_PROMPT: 50,
    PipelineState.AWAITING_MODEL: 60,
    PipelineState.VALIDATING: 80,
    PipelineState.FALLBACK: 85,
    PipelineState.DONE: 95,
}

# Used when Supabase is not configured so saved routines survive between requests.
_MEMORY_SINK = InMemoryRecommendationSink()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _load_fixture_rows(path: Optional[str]) -> list[dict[str, Any]]:
    if not path:
        return []
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("catalog_fixture_unreadable path=%s err=%s", path, exc)
        return []
    if isinstance(data, dict):
        data = data.get("products") or data.get("rows") or []
    return [r for r in data if isinstance(r, dict)] if isinstance(data, list) else []


def _build_stores(settings: PipelineSettings) -> tuple[CatalogStore, RecommendationSink]:
    client = SupabaseRestClient(supabase_url=settings.supabase_url, service_key=settings.supabase_service_key)
    if client.configured:
        return SupabaseCatalogStore(client), SupabaseRecommendationSink(client)
    return InMemoryCatalogStore(_load_fixture_rows(CATALOG_FIXTURE_PATH)), _MEMORY_SINK


def build_pipeline(settings: Optional[PipelineSettings] = None) -> RecommendationPipeline:
    settings = settings or load_settings()
    catalog, sink = _build_stores(settings)
    generative = build_generative_client(
        base_url=settings.generative_base_url,
        api_key=settings.generative_api_key,
        model=settings.generative_model,
        timeout_s=settings.generative_timeout_s,
    )
    return RecommendationPipeline(catalog=catalog, generative=generative, settings=settings, sink=sink)


def _as_dict(value: Any) -> Optional[dict[str, Any]]:
    return value if isinstance(value, dict) else None


def _status_recorder(run_id: str):
    async def _on_state(state: PipelineState) -> None:
        current = await RUN_STATUS_STORE.get(run_id)
        if current is None:
            return
        await RUN_STATUS_STORE.patch(run_id, mark_step(current, state.value, STATE_PROGRESS.get(state, current.progress)))

    return _on_state


async def _fail_run(run_id: str, *, code: str, message: str, current_step: str) -> None:
    await RUN_STATUS_STORE.patch(
        run_id,
        {"status": "failed", "error_code": code, "error": message, "current_step": current_step, "completed_at": _now()},
    )


async def _execute_run(
    pipeline: RecommendationPipeline,
    ctx: RunContext,
    *,
    user_id: Optional[str],
    profile: dict[str, Any],
    analysis: Optional[dict[str, Any]],
    strict_avoid: Optional[bool],
) -> None:
    try:
        result = await pipeline.run(profile, analysis, user_id=user_id, strict_avoid=strict_avoid, context=ctx)
    except PersistenceError as exc:
        logger.warning("recommendations_persist_failed run_id=%s user_id=%s err=%s", ctx.run_id, user_id, exc.message)
        await _fail_run(ctx.run_id, code=exc.code, message=exc.message, current_step="Failed to save recommendations")
        return
    except asyncio.CancelledError:
        logger.warning("recommendations_run_cancelled run_id=%s", ctx.run_id)
        await _fail_run(ctx.run_id, code="cancelled", message="run cancelled", current_step="Cancelled")
        raise
    except Exception as exc:
        logger.exception("recommendations_run_failed run_id=%s err=%r", ctx.run_id, exc)
        await _fail_run(ctx.run_id, code="internal_error", message=str(exc) or type(exc).__name__, current_step="Failed")
        return

    current = await RUN_STATUS_STORE.get(ctx.run_id)
    patch: dict[str, Any] = {
        "status": "completed",
        "progress": 100,
        "current_step": "Complete",
        "routine_sources": result.routine_sources,
        "result": {
            "run_id": result.run_id,
            "recommendation": result.recommendation.model_dump(mode="json"),
            "routine_sources": result.routine_sources,
            "fallback_reason": result.fallback_reason,
            "summary": result.summary.model_dump(mode="json"),
            "filter_summary": result.filter_summary,
            "saved": result.persisted,
        },
        "completed_at": _now(),
    }
    if current is not None:
        patch.update(finish_steps(current, *(["persisting"] if result.persisted else [])))
    await RUN_STATUS_STORE.patch(ctx.run_id, patch)
    logger.info("recommendations_run_completed run_id=%s saved=%s", ctx.run_id, result.persisted)


# Strong references keep in-flight runs alive until they finish.
_RUN_TASKS: set[asyncio.Task] = set()


async def cancel_pending_runs() -> None:
    tasks = [t for t in _RUN_TASKS if not t.done()]
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("recommendations_runs_cancelled count=%d", len(tasks))


@router.post("/recommendations", status_code=202)
async def create_recommendations(body: dict[str, Any]):
    user_id = str(body.get("user_id") or body.get("userId") or "").strip() or None
    profile = _as_dict(body.get("profile")) or {}
    analysis = _as_dict(body.get("analysis"))
    strict_raw = body.get("strict_avoid", body.get("strictAvoid"))
    strict_avoid = strict_raw if isinstance(strict_raw, bool) else None

    ctx = RunContext()
    ctx.on_state = _status_recorder(ctx.run_id)
    await RUN_STATUS_STORE.set(RunStatus(run_id=ctx.run_id, user_id=user_id, current_step="Starting analysis", started_at=_now()))

    pipeline = build_pipeline()
    task = asyncio.create_task(
        _execute_run(pipeline, ctx, user_id=user_id, profile=profile, analysis=analysis, strict_avoid=strict_avoid)
    )
    _RUN_TASKS.add(task)
    task.add_done_callback(_RUN_TASKS.discard)
    logger.info("recommendations_run_started run_id=%s user_id=%s", ctx.run_id, user_id)

    return {"run_id": ctx.run_id, "status": "processing"}


@router.get("/recommendations/runs/{run_id}")
async def get_recommendation_run(run_id: str):
    try:
        status = await RUN_STATUS_STORE.get(run_id)
    except ValueError:
        status = None
    if status is None:
        raise HTTPException(status_code=404, detail={"error": "RUN_NOT_FOUND", "run_id": run_id})
    return status.model_dump(mode="json")
