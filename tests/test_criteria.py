from __future__ import annotations

from pathlib import Path
import sys
import unittest

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from app.services.criteria import WIDEST_BUDGET_RANGE, budget_range_for_tier, extract_criteria


ANALYSIS = {
    "ingredientRecommendations": {
        "mustHave": [{"ingredient": "Salicylic Acid"}, "Niacinamide"],
        "beneficial": ["Zinc"],
        "avoid": [{"ingredient": "Fragrance"}],
    },
    "routineStructure": {
        "morning": {"steps": [{"productType": "Cleanser"}, {"productType": "Sunscreen"}]},
        "evening": {"steps": [{"product_type": "cleanser"}, {"productType": "Serum"}]},
    },
    "treatmentPlan": {"priorities": [{"concern": "acne"}, {"concern": "dark_spots"}]},
}


class TestExtractCriteria(unittest.TestCase):
    def test_full_analysis(self) -> None:
        profile = {
            "skin_type": "Oily",
            "primary_skin_concerns": ["acne", "large_pores"],
            "known_allergies": "Lanolin, parabens",
            "budget_range": "budget",
        }
        criteria = extract_criteria(ANALYSIS, profile)

        self.assertEqual(criteria.must_have_ingredients, frozenset({"salicylic acid", "niacinamide"}))
        self.assertEqual(criteria.beneficial_ingredients, frozenset({"zinc"}))
        self.assertEqual(criteria.avoid_ingredients, frozenset({"fragrance", "lanolin", "parabens"}))
        self.assertEqual(criteria.primary_concerns, ("acne", "large_pores", "dark_spots"))
        self.assertEqual(criteria.skin_type, "oily")
        self.assertEqual(criteria.budget_range, (0.0, 30.0))
        self.assertEqual(criteria.required_product_types, frozenset({"cleanser", "sunscreen", "serum"}))

    def test_snake_case_analysis_keys(self) -> None:
        analysis = {"ingredient_recommendations": {"must_have": ["Retinol"]}}
        criteria = extract_criteria(analysis, {"skinType": "dry"})
        self.assertEqual(criteria.must_have_ingredients, frozenset({"retinol"}))
        self.assertEqual(criteria.skin_type, "dry")

    def test_missing_or_malformed_input_gives_empty_criteria(self) -> None:
        for analysis, profile in ((None, None), ("oops", 5), ({"ingredientRecommendations": 7}, {})):
            with self.subTest(analysis=analysis):
                criteria = extract_criteria(analysis, profile)
                self.assertEqual(criteria.must_have_ingredients, frozenset())
                self.assertEqual(criteria.avoid_ingredients, frozenset())
                self.assertEqual(criteria.primary_concerns, ())
                self.assertEqual(criteria.budget_range, WIDEST_BUDGET_RANGE)

    def test_budget_tiers(self) -> None:
        self.assertEqual(budget_range_for_tier("mid-range"), (20.0, 80.0))
        self.assertEqual(budget_range_for_tier("Mid Range"), (20.0, 80.0))
        self.assertEqual(budget_range_for_tier("luxury"), (50.0, 500.0))
        self.assertEqual(budget_range_for_tier("mixed"), (0.0, 500.0))
        self.assertEqual(budget_range_for_tier("something else"), WIDEST_BUDGET_RANGE)
        self.assertEqual(budget_range_for_tier(None), WIDEST_BUDGET_RANGE)


if __name__ == "__main__":
    unittest.main()
