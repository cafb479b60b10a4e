from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ScoringWeights(BaseModel):
    model_config = ConfigDict(frozen=True)

    must_have: int = 100
    beneficial: int = 50
    concern: int = 30
    skin_type: int = 20
    quality: int = 15
    budget: int = 10
    floor: int = 5
    anomaly: int = 1
    avoid_penalty: int = -50
    quality_rating_min: float = 4.0
    budget_tolerance: float = 0.2


class PipelineSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    catalog_query_limit: int = 1000
    max_per_category: int = 10
    strict_avoid: bool = True
    budget_filter: bool = True
    min_routine_items: int = 2
    selection_min_items: int = 3
    selection_max_items: int = 5
    generative_timeout_s: float = 30.0
    generative_base_url: Optional[str] = None
    generative_api_key: Optional[str] = None
    generative_model: Optional[str] = None
    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None
    weights: ScoringWeights = Field(default_factory=ScoringWeights)


def _env_str(name: str) -> Optional[str]:
    return (os.getenv(name) or "").strip() or None


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except Exception:
        return default


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(float(raw))
    except Exception:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y"}


def load_weights() -> ScoringWeights:
    # Tuning constants carried over from the rule-based filter; pending product review.
    return ScoringWeights(
        must_have=_env_int("SCORE_MUST_HAVE", 100),
        beneficial=_env_int("SCORE_BENEFICIAL", 50),
        concern=_env_int("SCORE_CONCERN", 30),
        skin_type=_env_int("SCORE_SKIN_TYPE", 20),
        quality=_env_int("SCORE_QUALITY", 15),
        budget=_env_int("SCORE_BUDGET", 10),
        floor=_env_int("SCORE_FLOOR", 5),
        anomaly=_env_int("SCORE_ANOMALY", 1),
        avoid_penalty=_env_int("SCORE_AVOID_PENALTY", -50),
        quality_rating_min=_env_float("QUALITY_RATING_MIN", 4.0),
        budget_tolerance=_env_float("BUDGET_TOLERANCE", 0.2),
    )


def load_settings() -> PipelineSettings:
    return PipelineSettings(
        catalog_query_limit=max(1, _env_int("CATALOG_QUERY_LIMIT", 1000)),
        max_per_category=max(1, _env_int("MAX_PER_CATEGORY", 10)),
        strict_avoid=_env_bool("STRICT_AVOID", True),
        budget_filter=_env_bool("BUDGET_FILTER", True),
        min_routine_items=max(1, _env_int("MIN_ROUTINE_ITEMS", 2)),
        selection_min_items=max(1, _env_int("SELECTION_MIN_ITEMS", 3)),
        selection_max_items=max(1, _env_int("SELECTION_MAX_ITEMS", 5)),
        generative_timeout_s=_env_float("GENERATIVE_TIMEOUT_S", 30.0),
        generative_base_url=_env_str("GENERATIVE_BASE_URL"),
        generative_api_key=_env_str("GENERATIVE_API_KEY"),
        generative_model=_env_str("GENERATIVE_MODEL"),
        supabase_url=_env_str("SUPABASE_URL"),
        supabase_service_key=_env_str("SUPABASE_SERVICE_ROLE_KEY"),
        weights=load_weights(),
    )
