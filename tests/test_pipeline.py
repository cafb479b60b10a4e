from __future__ import annotations

import asyncio
from pathlib import Path
import sys
from typing import Any, Optional
import unittest

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from app.config import PipelineSettings
from app.services.criteria import extract_criteria
from app.services.errors import GenerativeCallError, PersistenceError
from app.services.fallback import compose_fallback
from app.services.grouping import group_candidates
from app.services.pipeline import PipelineState, RecommendationPipeline, RunContext
from app.services.scoring import score_catalog
from app.store.catalog import InMemoryCatalogStore, to_catalog_products
from app.store.recommendation_sink import InMemoryRecommendationSink
from app.store.supabase_rest import SupabaseRestError


def _row(pid: str, name: str, price: float, ingredients: list[str], **extra: Any) -> dict[str, Any]:
    return {"product_id": pid, "product_name": name, "brand_name": "Acme", "price_mrp": price, "ingredients_extracted": ingredients, **extra}


FULL_CATALOG = [
    _row("c1", "Foam Cleanser", 18, ["water", "salicylic acid"]),
    _row("c2", "Milk Cleanser", 22, ["water", "oat"]),
    _row("s1", "Niacinamide Serum", 28, ["niacinamide", "zinc pca"]),
    _row("s2", "Hydrating Serum", 25, ["hyaluronic acid"]),
    _row("m1", "Gel Cream", 24, ["glycerin", "ceramide np"]),
    _row("m2", "Barrier Cream", 30, ["ceramide np", "squalane"]),
    _row("u1", "Daily SPF 50", 20, ["zinc oxide"]),
]


def _item(pid: str, order: int) -> dict[str, Any]:
    return {"productId": pid, "applicationOrder": order, "rationale": "picked", "usageInstructions": "apply"}


class StubGenerative:
    def __init__(self, output: Any = None, *, error: Optional[BaseException] = None, delay_s: float = 0.0) -> None:
        self.output = output
        self.error = error
        self.delay_s = delay_s
        self.calls: list[dict[str, Any]] = []

    async def generate(self, prompt: str, *, response_schema: Optional[dict[str, Any]] = None) -> Any:
        self.calls.append({"prompt": prompt, "response_schema": response_schema})
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        return self.output


class FailingCatalog:
    async def query(self, **kwargs: Any) -> list[dict[str, Any]]:
        raise SupabaseRestError("Supabase GET /products failed (503): unavailable")


class FailingSink:
    async def save(self, user_id, recommendation, summary, *, run_id=None) -> None:
        raise PersistenceError("failed to save recommendation", detail="boom")


def _pipeline(rows, generative, *, sink=None, **settings: Any) -> RecommendationPipeline:
    return RecommendationPipeline(
        catalog=InMemoryCatalogStore(rows),
        generative=generative,
        settings=PipelineSettings(**settings),
        sink=sink,
    )


class TestRecommendationPipeline(unittest.IsolatedAsyncioTestCase):
    async def test_model_selection_used_when_valid(self) -> None:
        output = {
            "morningRoutine": [_item("c1", 1), _item("s1", 2), _item("u1", 3)],
            "eveningRoutine": [_item("c2", 1), _item("s2", 2), _item("m2", 3)],
            "philosophy": "Clear skin, gently",
        }
        generative = StubGenerative(output)
        sink = InMemoryRecommendationSink()
        result = await _pipeline(FULL_CATALOG, generative, sink=sink).run(
            {"skin_type": "oily"},
            {"ingredientRecommendations": {"mustHave": ["Niacinamide"]}},
            user_id="user-1",
        )

        self.assertEqual(result.routine_sources, {"morning": "model", "evening": "model"})
        self.assertIsNone(result.fallback_reason)
        self.assertEqual(result.parse_mode, "structured")
        self.assertEqual(result.recommendation.philosophy, "Clear skin, gently")
        self.assertEqual(
            result.state_history,
            ["extracting_criteria", "scoring", "grouping", "building_prompt", "awaiting_model", "validating", "done"],
        )
        self.assertIn("s1", generative.calls[0]["prompt"])

        saved = await sink.get("user-1")
        self.assertIsNotNone(saved)
        assert saved is not None
        self.assertEqual(saved["run_id"], result.run_id)
        self.assertIn("niacinamide", saved["summary"]["recommended_ingredients"])

    async def test_oily_acne_fragrance_scenario(self) -> None:
        rows = [
            _row("A", "Clarifying Cleanser", 25, ["Salicylic Acid", "Water"]),
            _row("B", "Radiance Serum", 30, ["Niacinamide", "Fragrance"]),
        ]
        output = {"morningRoutine": [_item("A", 1), _item("B", 2)], "eveningRoutine": [_item("B", 1)]}
        profile = {"skinType": "oily", "primaryConcerns": ["acne"], "allergies": ["fragrance"], "budget": "mid_range"}
        analysis = {"ingredientRecommendations": {"mustHave": ["Salicylic Acid"], "avoid": []}}

        result = await _pipeline(rows, StubGenerative(output)).run(profile, analysis)

        self.assertEqual(result.recommendation.product_ids(), {"A"})
        self.assertEqual(result.recommendation.morning_routine[0].product_id, "A")
        self.assertEqual(result.recommendation.morning_routine[0].category, "cleanser")
        self.assertEqual(result.filter_summary["total_products"], 1)
        self.assertEqual(result.filter_summary["average_score"], 110.0)
        self.assertEqual(result.routine_sources, {"morning": "fallback", "evening": "fallback"})
        self.assertTrue(result.strict_avoid)
        self.assertEqual(result.state_history[-2:], ["fallback", "done"])

    async def test_timeout_equals_deterministic_fallback(self) -> None:
        profile = {"skin_type": "dry"}
        analysis = {"ingredientRecommendations": {"beneficial": ["Ceramide NP"]}}
        result = await _pipeline(FULL_CATALOG, StubGenerative({}, delay_s=1.0), generative_timeout_s=0.05).run(profile, analysis)

        criteria = extract_criteria(analysis, profile)
        candidates = group_candidates(score_catalog(to_catalog_products(FULL_CATALOG), criteria), 10)
        expected = compose_fallback(candidates, profile)

        self.assertEqual(result.fallback_reason, "generative_timeout")
        self.assertEqual(result.routine_sources, {"morning": "fallback", "evening": "fallback"})
        self.assertEqual(result.recommendation, expected)

    async def test_generative_error_falls_back(self) -> None:
        result = await _pipeline(FULL_CATALOG, StubGenerative(error=GenerativeCallError("502 from upstream"))).run({}, {})
        self.assertEqual(result.fallback_reason, "generative_error")
        self.assertTrue(result.recommendation.morning_routine)

    async def test_unexpected_transport_error_falls_back(self) -> None:
        result = await _pipeline(FULL_CATALOG, StubGenerative(error=ConnectionResetError("reset"))).run({}, {})
        self.assertEqual(result.fallback_reason, "generative_error")

    async def test_unusable_model_output_falls_back(self) -> None:
        result = await _pipeline(FULL_CATALOG, StubGenerative("I would suggest drinking more water.")).run({}, {})
        self.assertEqual(result.fallback_reason, "validation_failed")
        self.assertIn("validating", result.state_history)
        self.assertEqual(result.recommendation.tips, compose_fallback({}).tips)

    async def test_underfilled_routine_uses_fallback_for_that_routine_only(self) -> None:
        output = {
            "morningRoutine": [_item("c1", 1), _item("s1", 2), _item("m1", 3)],
            "eveningRoutine": [_item("m2", 1)],
        }
        result = await _pipeline(FULL_CATALOG, StubGenerative(output)).run({}, {})

        self.assertEqual(result.routine_sources, {"morning": "model", "evening": "fallback"})
        self.assertEqual([i.product_id for i in result.recommendation.morning_routine], ["c1", "s1", "m1"])
        self.assertGreaterEqual(len(result.recommendation.evening_routine), 2)

    async def test_no_essential_candidates_skips_model(self) -> None:
        generative = StubGenerative({"morningRoutine": []})
        result = await _pipeline([_row("t1", "Balancing Toner", 15, ["witch hazel"])], generative).run({}, {})

        self.assertEqual(generative.calls, [])
        self.assertEqual(result.fallback_reason, "no_essential_candidates")
        self.assertEqual(result.recommendation.morning_routine, [])
        self.assertNotIn("awaiting_model", result.state_history)

    async def test_catalog_failure_degrades_to_empty_fallback(self) -> None:
        pipeline = RecommendationPipeline(catalog=FailingCatalog(), generative=StubGenerative({}), settings=PipelineSettings())
        result = await pipeline.run({}, {})

        self.assertEqual(result.recommendation.product_ids(), set())
        self.assertEqual(result.filter_summary["total_products"], 0)
        self.assertEqual(result.state_history[-1], "done")

    async def test_strict_avoid_relaxed_once_when_nothing_survives(self) -> None:
        rows = [
            _row("c1", "Scented Cleanser", 18, ["niacinamide", "fragrance"]),
            _row("s1", "Scented Serum", 20, ["niacinamide", "parfum", "fragrance"]),
        ]
        analysis = {"ingredientRecommendations": {"mustHave": ["niacinamide"], "avoid": ["fragrance"]}}
        result = await _pipeline(rows, StubGenerative(error=GenerativeCallError("down"))).run({}, analysis)

        self.assertFalse(result.strict_avoid)
        self.assertEqual(result.candidate_counts, {"cleanser": 1, "serum": 1})

    async def test_explicit_lenient_mode(self) -> None:
        rows = [_row("c1", "Scented Cleanser", 18, ["fragrance", "salicylic acid"])]
        analysis = {"ingredientRecommendations": {"mustHave": ["salicylic acid"], "avoid": ["fragrance"]}}
        result = await _pipeline(rows, StubGenerative(error=GenerativeCallError("down"))).run({}, analysis, strict_avoid=False)

        self.assertFalse(result.strict_avoid)
        self.assertEqual(result.recommendation.morning_routine[0].product_id, "c1")

    async def test_budget_requery_without_bounds(self) -> None:
        rows = [_row("c1", "Luxe Cleanser", 120, ["water"]), _row("m1", "Luxe Cream", 150, ["squalane"])]
        result = await _pipeline(rows, StubGenerative(error=GenerativeCallError("down"))).run({"budget_range": "budget"}, {})
        self.assertEqual(result.candidate_counts, {"cleanser": 1, "moisturizer": 1})

    async def test_persistence_error_propagates(self) -> None:
        pipeline = _pipeline(FULL_CATALOG, StubGenerative(error=GenerativeCallError("down")), sink=FailingSink())
        with self.assertRaises(PersistenceError):
            await pipeline.run({}, {}, user_id="user-1")

    async def test_no_user_id_skips_persistence(self) -> None:
        pipeline = _pipeline(FULL_CATALOG, StubGenerative(error=GenerativeCallError("down")), sink=FailingSink())
        result = await pipeline.run({}, {})
        self.assertTrue(result.recommendation.evening_routine)

    async def test_empty_recommendation_is_not_saved(self) -> None:
        for catalog in (InMemoryCatalogStore([]), FailingCatalog()):
            with self.subTest(catalog=type(catalog).__name__):
                pipeline = RecommendationPipeline(
                    catalog=catalog,
                    generative=StubGenerative(error=GenerativeCallError("down")),
                    settings=PipelineSettings(),
                    sink=FailingSink(),
                )
                result = await pipeline.run({}, {}, user_id="user-1")

                self.assertEqual(result.recommendation.product_ids(), set())
                self.assertFalse(result.persisted)
                self.assertEqual(result.state_history[-1], "done")

    async def test_saved_recommendation_is_marked_persisted(self) -> None:
        sink = InMemoryRecommendationSink()
        pipeline = _pipeline(FULL_CATALOG, StubGenerative(error=GenerativeCallError("down")), sink=sink)
        result = await pipeline.run({}, {}, user_id="user-1")

        self.assertTrue(result.persisted)
        saved = await sink.get("user-1")
        assert saved is not None
        self.assertEqual(saved["run_id"], result.run_id)

    async def test_state_callback_and_context(self) -> None:
        seen: list[PipelineState] = []

        async def _record(state: PipelineState) -> None:
            seen.append(state)

        ctx = RunContext(run_id="run-fixed", on_state=_record)
        result = await _pipeline(FULL_CATALOG, StubGenerative(error=GenerativeCallError("down"))).run({}, {}, context=ctx)

        self.assertEqual(result.run_id, "run-fixed")
        self.assertEqual(seen, ctx.history)
        self.assertEqual(seen[0], PipelineState.EXTRACTING_CRITERIA)
        self.assertEqual(seen[-1], PipelineState.DONE)

    async def test_failing_state_callback_does_not_break_run(self) -> None:
        async def _broken(state: PipelineState) -> None:
            raise RuntimeError("status store down")

        ctx = RunContext(on_state=_broken)
        result = await _pipeline(FULL_CATALOG, StubGenerative(error=GenerativeCallError("down"))).run({}, {}, context=ctx)
        self.assertEqual(result.state_history[-1], "done")

    async def test_cancellation_finishes_fallback_then_reraises(self) -> None:
        started = asyncio.Event()

        class SlowGenerative:
            async def generate(self, prompt: str, *, response_schema=None) -> Any:
                started.set()
                await asyncio.sleep(10)

        sink = InMemoryRecommendationSink()
        ctx = RunContext()
        pipeline = RecommendationPipeline(
            catalog=InMemoryCatalogStore(FULL_CATALOG),
            generative=SlowGenerative(),
            settings=PipelineSettings(),
            sink=sink,
        )
        task = asyncio.create_task(pipeline.run({}, {}, user_id="user-1", context=ctx))
        await started.wait()
        task.cancel()

        with self.assertRaises(asyncio.CancelledError):
            await task

        self.assertTrue(ctx.cancelled)
        self.assertIn(PipelineState.FALLBACK, ctx.history)
        self.assertEqual(ctx.history[-1], PipelineState.DONE)
        self.assertIsNone(await sink.get("user-1"))


if __name__ == "__main__":
    unittest.main()
