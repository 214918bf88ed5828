"""Tests for content categorization."""

import pytest

from newsintel.categorizer import (
    CATEGORY_VOCABULARY,
    CategorizationEngine,
    CategorizationMethod,
    CategoryRule,
    TextFeatures,
    select_method,
)
from newsintel.categorizer.rules import load_rules
from newsintel.core.errors import ConfigurationError, ProviderUnavailable, ValidationError
from newsintel.providers.llm import DummyLLMProvider, NoLLMProvider

ROBOT_TEXT = "The robot arm uses robotics and automation to sort parcels."
PLAIN_TEXT = "The weather was pleasant yesterday afternoon."
LONG_PLAIN_TEXT = " ".join(["Officials discussed the regional budget and local transport plans."] * 10)


@pytest.fixture
def make_categorizer(embedding_service, store, cache, engine_config, telemetry, clock):
    def _make(llm):
        return CategorizationEngine(embedding_service, store, cache, llm, engine_config.categorization,
                                    telemetry, clock)
    return _make


class TestMethodSelection:
    def test_long_text_without_strong_keywords_uses_ai(self):
        features = TextFeatures.from_text(LONG_PLAIN_TEXT, llm_available=True)
        assert select_method(features) == CategorizationMethod.AI

    def test_strong_keywords_use_keyword_rules(self):
        features = TextFeatures.from_text("Advances in quantum computing", llm_available=True)
        assert features.strong_signal_count == 1
        assert select_method(features) == CategorizationMethod.KEYWORD

    def test_no_llm_never_selects_ai(self):
        features = TextFeatures.from_text(LONG_PLAIN_TEXT, llm_available=False)
        assert select_method(features) == CategorizationMethod.HYBRID


class TestCategorize:
    @pytest.mark.asyncio
    async def test_keyword_method(self, categorizer):
        result = await categorizer.categorize(ROBOT_TEXT, method="keyword")

        assert result.primary_category == "robotics"
        assert result.method == "keyword"
        assert result.confidence == pytest.approx(1.0)
        assert "robotics" in result.reasoning

    @pytest.mark.asyncio
    async def test_low_confidence_falls_back_to_general(self, categorizer):
        result = await categorizer.categorize(PLAIN_TEXT, method="keyword")

        assert result.primary_category == "general"
        assert result.confidence == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_low_confidence_keeps_existing_category(self, categorizer):
        result = await categorizer.categorize(PLAIN_TEXT, method="keyword", existing_category="fintech")

        assert result.primary_category == "fintech"
        assert result.confidence == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_embedding_method_votes_with_neighbours(self, categorizer, make_item, embed_items):
        body = "A new quantum processor keeps qubits stable for longer runs."
        await embed_items([make_item("q1", "Quantum lab result", body, category="quantum-computing")])

        result = await categorizer.categorize(body, method="embedding")

        assert result.primary_category == "quantum-computing"
        assert result.confidence == pytest.approx(1.0)
        assert result.reasoning == "Based on 1 similar items"

    @pytest.mark.asyncio
    async def test_ai_method(self, categorizer, llm):
        result = await categorizer.categorize(
            "Quantum computing teams report quantum error correction gains.", method="ai"
        )

        assert result.method == "ai"
        assert result.primary_category == "quantum-computing"
        assert llm.call_count == 1
        assert "CATEGORIES:" in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_ai_unknown_category_maps_to_general(self, make_categorizer):
        llm = DummyLLMProvider(responses={
            "categorize": '{"primaryCategory": "sports", "confidence": 0.9, "additionalCategories": []}'
        })
        result = await make_categorizer(llm).categorize(PLAIN_TEXT, method="ai", min_confidence=0.0)

        assert result.primary_category == "general"

    @pytest.mark.asyncio
    async def test_explicit_ai_without_llm_raises(self, make_categorizer):
        with pytest.raises(ProviderUnavailable):
            await make_categorizer(NoLLMProvider()).categorize(PLAIN_TEXT, method="ai")

    @pytest.mark.asyncio
    async def test_auto_without_llm_uses_hybrid(self, make_categorizer):
        result = await make_categorizer(NoLLMProvider()).categorize(LONG_PLAIN_TEXT, method="auto")

        assert result.method == "hybrid"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["keyword", "embedding", "ai", "hybrid", "auto"])
    async def test_every_method_stays_in_vocabulary(self, categorizer, method):
        """Every method yields a known category with confidence in [0, 1]."""
        result = await categorizer.categorize(
            "Banks use machine learning for fraud detection in payments.",
            title="Fintech fraud models",
            method=method,
        )

        assert result.primary_category in CATEGORY_VOCABULARY
        assert 0.0 <= result.confidence <= 1.0
        assert all(c.category in CATEGORY_VOCABULARY for c in result.additional_categories)
        assert result.primary_category not in [c.category for c in result.additional_categories]

    @pytest.mark.asyncio
    async def test_tags_include_domain_tags(self, categorizer):
        result = await categorizer.categorize("The team trained it with PyTorch and posted the code on GitHub.",
                                              method="keyword")

        assert "pytorch" in result.tags
        assert "open-source" in result.tags

    @pytest.mark.asyncio
    async def test_results_are_cached(self, categorizer, telemetry):
        await categorizer.categorize(ROBOT_TEXT, method="keyword")
        cached = await categorizer.categorize(ROBOT_TEXT, method="keyword")

        assert cached.primary_category == "robotics"
        assert telemetry.counter("categorization.cache_hits") == 1

    @pytest.mark.asyncio
    async def test_cached_result_still_honours_confidence_floor(self, categorizer, telemetry):
        """The floor and existing category of each call apply to cached results too."""
        lax = await categorizer.categorize(PLAIN_TEXT, method="keyword", min_confidence=0.0)
        strict = await categorizer.categorize(PLAIN_TEXT, method="keyword", existing_category="fintech")
        lax_again = await categorizer.categorize(PLAIN_TEXT, method="keyword", min_confidence=0.0)

        assert telemetry.counter("categorization.cache_hits") == 2
        assert lax.primary_category == "general"
        assert strict.primary_category == "fintech"
        assert strict.confidence == pytest.approx(0.5)
        assert lax_again.primary_category == "general"
        assert lax_again.confidence == pytest.approx(lax.confidence)

    @pytest.mark.asyncio
    async def test_invalid_input(self, categorizer):
        with pytest.raises(ValidationError):
            await categorizer.categorize("   ")
        with pytest.raises(ValidationError):
            await categorizer.categorize(ROBOT_TEXT, method="telepathy")


class TestCategorizeItems:
    @pytest.mark.asyncio
    async def test_categorize_item_persists(self, categorizer, store, make_item):
        await store.upsert_item(make_item("r1", "Warehouse robots", ROBOT_TEXT))

        result = await categorizer.categorize_item("r1", method="keyword")

        stored = await store.get_item("r1")
        assert stored.category == result.primary_category == "robotics"
        assert stored.tags == result.tags

    @pytest.mark.asyncio
    async def test_categorize_unknown_item(self, categorizer):
        with pytest.raises(ValidationError):
            await categorizer.categorize_item("missing")

    @pytest.mark.asyncio
    async def test_batch_counts_failures(self, categorizer):
        batch = await categorizer.batch_categorize([
            {"id": "1", "content": ROBOT_TEXT},
            {"id": "2", "content": ""},
            {"id": "3", "content": "Bitcoin and ethereum rally on blockchain news."},
        ], method="keyword")

        assert batch.success_count == 2
        assert batch.failure_count == 1
        assert batch.total_items == 3
        assert dict(batch.results)["3"].primary_category == "blockchain"


class TestRules:
    def test_unknown_rule_category_rejected(self):
        with pytest.raises(ConfigurationError):
            CategoryRule(category="sports", keywords=["football"])

    def test_rules_from_yaml(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text("robotics:\n  keywords: [Cobot]\n  weight: 2.0\nfintech:\n  enabled: false\n")

        rules = load_rules(path)

        assert [r.category for r in rules] == ["robotics", "fintech"]
        assert rules[0].keywords == ["cobot"]
        assert rules[0].score("A cobot", "a cobot") == 2.0
        assert rules[1].enabled is False
