from __future__ import annotations

from enum import Enum
import logging
from typing import Any, Iterable, Sequence


logger = logging.getLogger("glow-reco-agent.ingredients")


INGREDIENT_NAME_FIELDS: tuple[str, ...] = ("name", "ingredient", "original_name", "inci_name")
BENEFIT_NAME_FIELDS: tuple[str, ...] = ("benefit", "name", "label")
LIST_FIELDS: tuple[str, ...] = ("ingredients_list", "benefits_list", "ingredients", "benefits", "items", "list")


class FieldShape(str, Enum):
    ABSENT = "absent"
    STRING = "string"
    SEQUENCE = "sequence"
    WRAPPED_LIST = "wrapped_list"
    RECORD = "record"
    UNRECOGNIZED = "unrecognized"


def classify_shape(raw: Any, *, name_fields: Sequence[str] = INGREDIENT_NAME_FIELDS) -> FieldShape:
    if raw is None:
        return FieldShape.ABSENT
    if isinstance(raw, str):
        return FieldShape.STRING if raw.strip() else FieldShape.ABSENT
    if isinstance(raw, (list, tuple)):
        return FieldShape.SEQUENCE
    if isinstance(raw, dict):
        if any(isinstance(raw.get(key), (list, tuple)) for key in LIST_FIELDS):
            return FieldShape.WRAPPED_LIST
        if _first_name(raw, name_fields):
            return FieldShape.RECORD
    return FieldShape.UNRECOGNIZED


def _first_name(obj: dict[str, Any], name_fields: Sequence[str]) -> str:
    for key in name_fields:
        value = obj.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _names_from_items(items: Iterable[Any], name_fields: Sequence[str]) -> list[str]:
    names: list[str] = []
    for item in items:
        if isinstance(item, str):
            text = item.strip()
        elif isinstance(item, dict):
            text = _first_name(item, name_fields)
        else:
            text = ""
        if text:
            names.append(text.lower())
    return names


def _normalize(raw: Any, name_fields: Sequence[str]) -> list[str]:
    shape = classify_shape(raw, name_fields=name_fields)

    if shape is FieldShape.ABSENT:
        return []
    if shape is FieldShape.STRING:
        return [raw.strip().lower()]
    if shape is FieldShape.SEQUENCE:
        return _names_from_items(raw, name_fields)
    if shape is FieldShape.WRAPPED_LIST:
        for key in LIST_FIELDS:
            value = raw.get(key)
            if isinstance(value, (list, tuple)):
                return _names_from_items(value, name_fields)
        return []
    if shape is FieldShape.RECORD:
        return [_first_name(raw, name_fields).lower()]

    logger.debug("field_shape_unrecognized type=%s", type(raw).__name__)
    return []


def normalize_ingredients(raw: Any) -> list[str]:
    return _normalize(raw, INGREDIENT_NAME_FIELDS)


def normalize_benefits(raw: Any) -> list[str]:
    return _normalize(raw, BENEFIT_NAME_FIELDS)
