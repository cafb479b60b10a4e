from __future__ import annotations

import json
from pathlib import Path
import sys
import unittest

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from app.services.models import CatalogProduct, FilterCriteria, ScoredProduct
from app.services.prompting import build_selection_prompt


def _scored(pid: str, name: str, ingredients: list[str]) -> ScoredProduct:
    product = CatalogProduct(product_id=pid, name=name, brand="Acme", price=19.5, raw_ingredients=ingredients)
    return ScoredProduct(product=product, score=100, match_reasons=("secret reason",), ingredients=tuple(ingredients))


class TestBuildSelectionPrompt(unittest.TestCase):
    def setUp(self) -> None:
        self.candidates = {
            "cleanser": [_scored("c-1", "Foam Cleanser", ["water", "salicylic acid"])],
            "serum": [_scored("s-1", "Niacinamide Serum", [f"ing{i}" for i in range(20)])],
        }
        self.criteria = FilterCriteria(
            must_have_ingredients=frozenset({"salicylic acid"}),
            avoid_ingredients=frozenset({"fragrance"}),
            primary_concerns=("acne",),
            skin_type="oily",
            budget_tier="budget",
        )

    def test_allowed_ids_and_schema_enum(self) -> None:
        payload = build_selection_prompt(self.candidates, {"skin_sensitivity": "high"}, self.criteria)

        self.assertEqual(payload.allowed_ids, frozenset({"c-1", "s-1"}))
        item_schema = payload.response_schema["properties"]["morningRoutine"]["items"]
        self.assertEqual(item_schema["properties"]["productId"]["enum"], ["c-1", "s-1"])
        self.assertEqual(payload.response_schema["properties"]["eveningRoutine"]["minItems"], 3)
        self.assertEqual(payload.response_schema["properties"]["eveningRoutine"]["maxItems"], 5)

    def test_prompt_carries_needs_and_minimal_product_fields(self) -> None:
        payload = build_selection_prompt(self.candidates, {"skin_sensitivity": "high"}, self.criteria, max_ingredients=12)

        self.assertIn("Skin type: oily", payload.prompt)
        self.assertIn("Must avoid: fragrance", payload.prompt)
        self.assertIn("Sensitivity: high", payload.prompt)
        self.assertIn("ONLY SELECT FROM THIS LIST", payload.prompt)
        self.assertNotIn("secret reason", payload.prompt)

        serum = next(p for p in payload.products if p["id"] == "s-1")
        self.assertEqual(set(serum), {"id", "name", "brand", "category", "price", "ingredients"})
        self.assertEqual(len(serum["ingredients"]), 12)
        self.assertIn(json.dumps(payload.products, ensure_ascii=False, indent=2), payload.prompt)

    def test_duplicate_ids_listed_once(self) -> None:
        dup = _scored("c-1", "Foam Cleanser", ["water"])
        payload = build_selection_prompt({"cleanser": [dup], "treatment": [dup]}, {}, FilterCriteria())
        self.assertEqual([p["id"] for p in payload.products], ["c-1"])
        self.assertIn("Skin type: unknown", payload.prompt)


if __name__ == "__main__":
    unittest.main()
