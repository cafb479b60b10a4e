from __future__ import annotations

import json
import logging
import re
from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from app.services.errors import SelectionValidationError
from app.services.fallback import DEFAULT_PHILOSOPHY, DEFAULT_TIMELINE, DEFAULT_TIPS, key_ingredients_for, routine_copy
from app.services.generative import extract_json_object
from app.services.grouping import flatten_candidates
from app.services.models import CategorizedCandidates, Recommendation, RoutineItem, ScoredProduct


logger = logging.getLogger("glow-reco-agent.validation")


LEGACY_SCAN_LIMIT = 20000
LEGACY_MAX_PER_ROUTINE = 5
_EVENING_MARKER_RE = re.compile(r"\b(evening|night)\b", re.IGNORECASE)

ParseMode = Literal["structured", "json_text", "embedded_json", "legacy_text"]


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return " ".join(str(v).strip() for v in value if str(v).strip())
    return str(value).strip()


class SelectionItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    product_id: str = Field(validation_alias=AliasChoices("productId", "product_id", "id"))
    application_order: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("applicationOrder", "application_order", "step")
    )
    key_ingredients: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("keyIngredients", "key_ingredients")
    )
    rationale: str = Field(default="", validation_alias=AliasChoices("rationale", "whyRecommended", "reason"))
    usage_instructions: str = Field(
        default="", validation_alias=AliasChoices("usageInstructions", "usage_instructions", "howToUse")
    )
    expected_result: str = Field(
        default="", validation_alias=AliasChoices("expectedResult", "expected_result", "expectedResults")
    )
    expected_timeline: str = Field(
        default="", validation_alias=AliasChoices("expectedTimeline", "expected_timeline", "timeToSeeResults")
    )

    @field_validator("product_id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, (int, str)) and not isinstance(value, bool):
            return str(value).strip()
        return value

    @field_validator("application_order", mode="before")
    @classmethod
    def _coerce_order(cls, value: Any) -> Any:
        try:
            return int(value) if value is not None else None
        except Exception:
            return None

    @field_validator("key_ingredients", mode="before")
    @classmethod
    def _coerce_ingredients(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        if isinstance(value, (list, tuple)):
            return [str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip()]
        return []

    @field_validator("rationale", "usage_instructions", "expected_result", "expected_timeline", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return _as_text(value)


class SelectionResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    morning_routine: list[Any] = Field(
        default_factory=list, validation_alias=AliasChoices("morningRoutine", "morning_routine", "morning")
    )
    evening_routine: list[Any] = Field(
        default_factory=list, validation_alias=AliasChoices("eveningRoutine", "evening_routine", "evening")
    )
    philosophy: str = Field(default="", validation_alias=AliasChoices("philosophy", "overallPhilosophy"))
    expected_timeline: str = Field(default="", validation_alias=AliasChoices("expectedTimeline", "expected_timeline"))
    tips: list[str] = Field(default_factory=list, validation_alias=AliasChoices("tips", "proTips"))

    @model_validator(mode="before")
    @classmethod
    def _require_a_routine(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            raise ValueError("selection response must be an object")
        keys = {"morningRoutine", "morning_routine", "morning", "eveningRoutine", "evening_routine", "evening"}
        if not any(isinstance(data.get(k), list) for k in keys):
            raise ValueError("selection response has no routine arrays")
        return data

    @field_validator("philosophy", "expected_timeline", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return _as_text(value)

    @field_validator("tips", mode="before")
    @classmethod
    def _coerce_tips(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            return [value.strip()] if value.strip() else []
        if isinstance(value, (list, tuple)):
            return [_as_text(v) for v in value if _as_text(v)]
        return []


class ValidatedSelection(BaseModel):
    recommendation: Recommendation
    parse_mode: ParseMode
    rejected_count: int = 0
    morning_usable: bool = True
    evening_usable: bool = True


def _validate_obj(obj: dict[str, Any]) -> SelectionResponse:
    try:
        return SelectionResponse.model_validate(obj)
    except ValidationError as exc:
        raise SelectionValidationError("model output does not match the selection schema", detail=str(exc)) from exc


def _legacy_parse(text: str, allowed_ids: set[str]) -> Optional[SelectionResponse]:
    """Last-resort id scan over free text; best-effort only."""

    window = text[:LEGACY_SCAN_LIMIT]
    marker = _EVENING_MARKER_RE.search(window)
    split_at = marker.start() if marker else len(window)

    hits: list[tuple[int, str]] = []
    for product_id in sorted(allowed_ids):
        pattern = re.compile(rf"(?<![\w-]){re.escape(product_id)}(?![\w-])")
        for match in pattern.finditer(window):
            hits.append((match.start(), product_id))
    if not hits:
        return None
    hits.sort()

    morning: list[dict[str, Any]] = []
    evening: list[dict[str, Any]] = []
    for pos, product_id in hits:
        target = morning if pos < split_at else evening
        if len(target) < LEGACY_MAX_PER_ROUTINE and all(i["productId"] != product_id for i in target):
            target.append({"productId": product_id})
    return SelectionResponse.model_validate({"morningRoutine": morning, "eveningRoutine": evening})


def parse_model_output(raw: Any, *, allowed_ids: set[str]) -> tuple[SelectionResponse, ParseMode]:
    if isinstance(raw, dict):
        return _validate_obj(raw), "structured"

    if not isinstance(raw, str) or not raw.strip():
        raise SelectionValidationError("model output is empty or not text")

    text = raw.strip()
    try:
        parsed = json.loads(text)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        return _validate_obj(parsed), "json_text"

    embedded = extract_json_object(text)
    if embedded is not None:
        return _validate_obj(embedded), "embedded_json"

    legacy = _legacy_parse(text, allowed_ids)
    if legacy is not None:
        logger.warning("selection_parsed_with_legacy_text_parser")
        return legacy, "legacy_text"

    raise SelectionValidationError("model output contains no selection")


def _grounded_key_ingredients(claimed: list[str], candidate: ScoredProduct) -> list[str]:
    actual = candidate.ingredients
    kept = [c for c in claimed if any(c.lower() in ing or ing in c.lower() for ing in actual if ing)]
    return kept or key_ingredients_for(candidate)


def _build_routine(
    raw_items: list[Any],
    flat: dict[str, tuple[str, ScoredProduct]],
    *,
    routine: str,
    max_items: Optional[int],
) -> tuple[list[RoutineItem], int]:
    rejected = 0
    accepted: list[tuple[int, int, SelectionItem]] = []
    seen: set[str] = set()

    for idx, raw_item in enumerate(raw_items):
        try:
            item = SelectionItem.model_validate(raw_item)
        except ValidationError:
            rejected += 1
            logger.warning("selection_item_rejected routine=%s reason=malformed index=%d", routine, idx)
            continue
        if item.product_id not in flat:
            rejected += 1
            logger.warning("selection_item_rejected routine=%s reason=unknown_id product_id=%r", routine, item.product_id[:80])
            continue
        if item.product_id in seen:
            continue
        seen.add(item.product_id)
        order = item.application_order if item.application_order and item.application_order > 0 else 10_000
        accepted.append((order, idx, item))

    accepted.sort(key=lambda x: (x[0], x[1]))
    if max_items:
        accepted = accepted[:max_items]

    evening = routine == "evening"
    items: list[RoutineItem] = []
    for position, (_, _, item) in enumerate(accepted, start=1):
        category, candidate = flat[item.product_id]
        rationale, usage, result, timeline = routine_copy(category, evening=evening)
        items.append(
            RoutineItem(
                product_id=candidate.product_id,
                product_name=candidate.product.name or candidate.product_id,
                brand=candidate.product.brand,
                category=category,
                price=candidate.product.price or 0.0,
                application_order=position,
                key_ingredients=_grounded_key_ingredients(item.key_ingredients, candidate),
                rationale=item.rationale or rationale,
                usage_instructions=item.usage_instructions or usage,
                expected_result=item.expected_result or result,
                expected_timeline=item.expected_timeline or timeline,
            )
        )
    return items, rejected


def validate_selection(
    raw_output: Any,
    candidates: CategorizedCandidates,
    *,
    min_routine_items: int = 2,
    max_items: Optional[int] = None,
) -> ValidatedSelection:
    flat = flatten_candidates(candidates)
    response, mode = parse_model_output(raw_output, allowed_ids=set(flat))

    morning, rejected_morning = _build_routine(response.morning_routine, flat, routine="morning", max_items=max_items)
    evening, rejected_evening = _build_routine(response.evening_routine, flat, routine="evening", max_items=max_items)
    rejected = rejected_morning + rejected_evening

    if not morning and not evening:
        raise SelectionValidationError(f"no allowed products in model output (rejected={rejected})")

    if rejected:
        logger.warning("selection_rejected_items count=%d mode=%s", rejected, mode)

    recommendation = Recommendation(
        morning_routine=morning,
        evening_routine=evening,
        philosophy=response.philosophy or DEFAULT_PHILOSOPHY,
        expected_timeline=response.expected_timeline or DEFAULT_TIMELINE,
        tips=response.tips or list(DEFAULT_TIPS),
    )
    return ValidatedSelection(
        recommendation=recommendation,
        parse_mode=mode,
        rejected_count=rejected,
        morning_usable=len(morning) >= min_routine_items,
        evening_usable=len(evening) >= min_routine_items,
    )
