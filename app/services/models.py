from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except Exception:
        return None


def _first_present(row: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = row.get(key)
        if value is not None and value != "":
            return value
    return None


class FilterCriteria(BaseModel):
    model_config = ConfigDict(frozen=True)

    must_have_ingredients: frozenset[str] = frozenset()
    beneficial_ingredients: frozenset[str] = frozenset()
    avoid_ingredients: frozenset[str] = frozenset()
    primary_concerns: tuple[str, ...] = ()
    skin_type: str = ""
    budget_tier: str = ""
    budget_range: tuple[float, float] = (0.0, 500.0)
    required_product_types: frozenset[str] = frozenset()


class CatalogProduct(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    product_id: str
    name: str = ""
    brand: str = ""
    price: Optional[float] = None
    category_path: str = ""
    raw_ingredients: Any = None
    raw_benefits: Any = None
    rating: Optional[float] = None
    catalog_index: int = 0

    @classmethod
    def from_row(cls, row: dict[str, Any], *, index: int = 0) -> "CatalogProduct":
        return cls(
            product_id=_as_str(_first_present(row, "product_id", "productId", "id")),
            name=_as_str(_first_present(row, "product_name", "name", "title")),
            brand=_as_str(_first_present(row, "brand_name", "brand", "vendor")),
            price=_as_float(_first_present(row, "price_mrp", "price_sale", "price")),
            category_path=_as_str(_first_present(row, "category_path", "category")),
            raw_ingredients=_first_present(row, "ingredients_extracted", "ingredients"),
            raw_benefits=_first_present(row, "benefits_extracted", "benefits"),
            rating=_as_float(_first_present(row, "rating_avg", "rating")),
            catalog_index=index,
        )


class ScoredProduct(BaseModel):
    model_config = ConfigDict(frozen=True)

    product: CatalogProduct
    score: int
    match_reasons: tuple[str, ...] = ()
    ingredients: tuple[str, ...] = ()
    benefits: tuple[str, ...] = ()
    disqualified: bool = False
    anomaly: bool = False

    @property
    def product_id(self) -> str:
        return self.product.product_id


CategorizedCandidates = dict[str, list[ScoredProduct]]


class RoutineItem(BaseModel):
    product_id: str
    product_name: str
    brand: str = ""
    category: str
    price: float = 0.0
    application_order: int = Field(ge=1)
    key_ingredients: list[str] = Field(default_factory=list)
    rationale: str
    usage_instructions: str
    expected_result: str = ""
    expected_timeline: str = ""


class Recommendation(BaseModel):
    morning_routine: list[RoutineItem] = Field(default_factory=list)
    evening_routine: list[RoutineItem] = Field(default_factory=list)
    philosophy: str = ""
    expected_timeline: str = ""
    tips: list[str] = Field(default_factory=list)

    def product_ids(self) -> set[str]:
        return {item.product_id for item in [*self.morning_routine, *self.evening_routine]}


class RecommendationSummary(BaseModel):
    recommended_ingredients: list[str] = Field(default_factory=list)
    avoided_ingredients: list[str] = Field(default_factory=list)
    concerns_addressed: list[str] = Field(default_factory=list)
    product_types: list[str] = Field(default_factory=list)
