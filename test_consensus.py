"""
Tests for the multi-model consensus engine.

Every model call goes through the scripted FakeProvider from conftest, so a
round's inputs are fully deterministic.
"""

import asyncio
import json
import time

import pytest

from bidcore.agents.plan_analyzer import AnalysisOptions
from bidcore.orchestration.consensus import ALL_AGREE, ConsensusEngine
from bidcore.orchestration.matching import ItemMatcher, text_similarity
from bidcore.orchestration.strategies import MajorityVoteStrategy, Vote, WeightedAverageStrategy
from bidcore.utils.errors import ErrorType, InsufficientConsensusError
from conftest import MODEL_IDS, FakeProvider, items_payload, make_config


def stud_wall(quantity=100, **fields):
    return {"name": "Stud wall", "quantity": quantity, "unit": "LF", "category": "interior",
            "confidence": 0.8, **fields}


def engine_for(scripts, model_count=5, delays=None, **consensus):
    provider = FakeProvider(scripts, delays=delays)
    return provider, ConsensusEngine(provider, make_config(model_count, **consensus))


@pytest.mark.asyncio
async def test_numeric_disagreement_is_reported(png_bytes):
    _, engine = engine_for({
        "model-a": items_payload(stud_wall(100)),
        "model-b": items_payload(stud_wall(150)),
    }, model_count=2)

    result = await engine.analyze_with_consensus([png_bytes], AnalysisOptions())

    assert len(result.items) == 1
    item = result.items[0]
    assert item.quantity == 125.0
    assert item.consensus_count == 2
    assert item.source_models == ["model-a", "model-b"]

    assert len(result.disagreements) == 1
    disagreement = result.disagreements[0]
    assert disagreement.type == "quantity"
    assert disagreement.item == "Stud wall"
    assert disagreement.models == ["model-a", "model-b"]
    assert disagreement.values == {"model-a": 100, "model-b": 150}

    assert result.confidence == 0.5
    assert "Verify the quantity of 'Stud wall' against the drawings" in result.recommendations
    assert ALL_AGREE not in result.recommendations


@pytest.mark.asyncio
async def test_values_within_tolerance_agree(png_bytes):
    _, engine = engine_for({
        "model-a": items_payload(stud_wall(100)),
        "model-b": items_payload(stud_wall(110)),
    }, model_count=2)

    result = await engine.analyze_with_consensus([png_bytes], AnalysisOptions())

    assert result.disagreements == []
    assert result.items[0].quantity == 105.0


@pytest.mark.asyncio
async def test_full_agreement(png_bytes):
    _, engine = engine_for({model_id: items_payload(stud_wall(100)) for model_id in MODEL_IDS})

    result = await engine.analyze_with_consensus([png_bytes], AnalysisOptions())

    assert result.recommendations == [ALL_AGREE]
    assert result.disagreements == []
    assert result.confidence == 1.0
    assert result.models_invoked == 5
    assert result.models_succeeded == 5
    assert result.items[0].consensus_count == 5
    assert all(a.participated and a.agreement_rate == 1.0 for a in result.model_agreements)


@pytest.mark.asyncio
async def test_too_few_successes_raises(png_bytes):
    scripts = {model_id: "Sorry, I cannot help with that." for model_id in MODEL_IDS}
    scripts["model-c"] = items_payload(stud_wall())
    _, engine = engine_for(scripts)

    with pytest.raises(InsufficientConsensusError) as exc_info:
        await engine.analyze_with_consensus([png_bytes], AnalysisOptions())

    error = exc_info.value
    assert error.error_type == ErrorType.CONSENSUS_INSUFFICIENT_MODELS
    assert error.context.details["succeeded"] == 1
    assert error.context.details["required"] == 2
    assert sorted(error.failures) == ["model-a", "model-b", "model-d", "model-e"]
    assert all(msg.startswith("ANALYSIS_PARSE_FAILED") for msg in error.failures.values())


@pytest.mark.asyncio
async def test_timed_out_model_is_excluded(png_bytes):
    scripts = {model_id: items_payload(stud_wall(100)) for model_id in MODEL_IDS}
    _, engine = engine_for(scripts, delays={"model-e": 2.0}, model_timeout=0.2)

    result = await engine.analyze_with_consensus([png_bytes], AnalysisOptions())

    assert result.models_invoked == 5
    assert result.models_succeeded == 4
    assert [a.model for a in result.model_agreements] == MODEL_IDS

    participants = [a for a in result.model_agreements if a.participated]
    assert len(participants) == 4
    excluded = result.model_agreements[-1]
    assert not excluded.participated
    assert excluded.error.startswith("PROVIDER_TIMEOUT")
    assert result.items[0].source_models == MODEL_IDS[:4]
    assert any(r.startswith("model-e did not contribute") for r in result.recommendations)


@pytest.mark.asyncio
async def test_provider_failure_is_excluded(png_bytes):
    from bidcore.utils.errors import ErrorContext, ProviderError

    denied = ProviderError(ErrorContext(
        error_type=ErrorType.PROVIDER_AUTH_ERROR,
        message="access denied",
        recoverable=False,
        details={"status_code": 403, "model_id": "model-b"},
    ))
    provider, engine = engine_for({
        "model-a": items_payload(stud_wall()),
        "model-b": denied,
        "model-c": items_payload(stud_wall()),
    }, model_count=3)

    result = await engine.analyze_with_consensus([png_bytes], AnalysisOptions())

    assert result.models_succeeded == 2
    assert result.model_agreements[1].error.startswith("PROVIDER_AUTH_ERROR")
    assert len([r for r in provider.requests if r.model_id == "model-b"]) == 1


@pytest.mark.asyncio
async def test_low_support_items_are_excluded(png_bytes):
    scripts = {model_id: items_payload(stud_wall()) for model_id in MODEL_IDS}
    scripts["model-a"] = items_payload(stud_wall(), {"name": "Skylight", "category": "exterior", "quantity": 2})
    _, engine = engine_for(scripts)

    result = await engine.analyze_with_consensus([png_bytes], AnalysisOptions())

    assert [item.name for item in result.items] == ["Stud wall"]
    assert result.low_support_items == ["Skylight"]
    assert "Review 'Skylight': reported by only 1 of 5 models" in result.recommendations


@pytest.mark.asyncio
async def test_categorical_tie_prefers_higher_confidence(png_bytes):
    _, engine = engine_for({
        "model-a": items_payload({"name": "Door", "unit": "EA", "category": "interior", "confidence": 0.7}),
        "model-b": items_payload({"name": "Door", "unit": "LF", "category": "interior", "confidence": 0.9}),
    }, model_count=2)

    result = await engine.analyze_with_consensus([png_bytes], AnalysisOptions())

    assert result.items[0].unit == "LF"
    assert [d.field for d in result.disagreements] == ["unit"]


@pytest.mark.asyncio
async def test_distant_boxes_are_different_items(png_bytes):
    left = {"name": "Window", "category": "exterior", "bounding_box": {"x": 0.0, "y": 0.0, "width": 0.1, "height": 0.1}}
    right = {"name": "Window", "category": "exterior", "bounding_box": {"x": 0.8, "y": 0.8, "width": 0.1, "height": 0.1}}
    _, engine = engine_for({"model-a": items_payload(left), "model-b": items_payload(right)}, model_count=2)

    result = await engine.analyze_with_consensus([png_bytes], AnalysisOptions())

    assert len(result.items) == 2
    assert all(item.consensus_count == 1 for item in result.items)


@pytest.mark.asyncio
async def test_quality_round_merges_issues(png_bytes):
    def issue(severity):
        return json.dumps({"issues": [{
            "description": "Stair lacks handrail",
            "severity": severity,
            "category": "code_compliance",
            "confidence": 0.9,
        }]})

    _, engine = engine_for({
        "model-a": issue("critical"),
        "model-b": issue("critical"),
        "model-c": issue("warning"),
    }, model_count=3)

    result = await engine.analyze_with_consensus([png_bytes], AnalysisOptions(task_type="quality"))

    assert len(result.issues) == 1
    assert result.issues[0].severity == "critical"
    assert result.issues[0].consensus_count == 3
    assert [d.field for d in result.disagreements] == ["severity"]
    assert {i.type for i in result.specialized_insights} == {"code_compliance", "quality_improvement"}
    assert "Resolve critical issue: Stair lacks handrail" in result.recommendations


@pytest.mark.asyncio
async def test_confidence_stays_in_bounds(png_bytes):
    _, engine = engine_for({
        "model-a": items_payload(stud_wall(10, confidence=100), {"name": "Slab", "category": "structural", "amount": 0}),
        "model-b": items_payload(stud_wall(90, confidence=1.0), {"name": "Slab", "category": "structural", "amount": 5000}),
    }, model_count=2)

    result = await engine.analyze_with_consensus([png_bytes], AnalysisOptions())

    assert 0.0 <= result.confidence <= 1.0
    assert all(0.0 <= item.confidence <= 1.0 for item in result.items)
    assert {d.field for d in result.disagreements} == {"quantity", "amount"}


@pytest.mark.asyncio
async def test_analyze_single_uses_top_model(png_bytes):
    provider, engine = engine_for({"model-a": items_payload(stud_wall())})

    result = await engine.analyze_single([png_bytes], AnalysisOptions(include_consensus=False))

    assert result.model_id == "model-a"
    assert [r.model_id for r in provider.requests] == ["model-a"]


@pytest.mark.asyncio
async def test_cancellation_waits_for_in_flight_calls(png_bytes):
    delays = {model_id: 0.3 for model_id in MODEL_IDS}
    _, engine = engine_for({}, delays=delays)

    start = time.monotonic()
    task = asyncio.ensure_future(engine.analyze_with_consensus([png_bytes], AnalysisOptions()))
    await asyncio.sleep(0.05)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert time.monotonic() - start >= 0.25


def test_text_similarity():
    assert text_similarity("Stud Wall", "stud wall") == 1.0
    assert text_similarity("2x4 stud wall", "stud wall 2x4") == 1.0
    assert text_similarity("Stud wall", "Roof truss") < 0.6
    assert text_similarity("", "Stud wall") == 0.0


def test_matcher_requires_category_unless_labels_nearly_equal():
    from bidcore.models.items import BoundingBox, ExtractedItem

    def item(name, category):
        return ExtractedItem(name=name, category=category, bounding_box=BoundingBox.full_page(), confidence=0.8)

    matcher = ItemMatcher()
    assert matcher.score(item("Stud wall", "interior"), item("Stud wall", "structural")) == 1.0
    # "exterior stud wall" vs "stud wall" scores about 0.67
    assert matcher.score(item("Exterior stud wall", "exterior"), item("Stud wall", "exterior")) > 0.6
    assert matcher.score(item("Exterior stud wall", "exterior"), item("Stud wall", "structural")) == 0.0


def test_weighted_average_and_spread():
    strategy = WeightedAverageStrategy(tolerance=0.15)
    votes = [Vote(100, 0.9, 0, "a"), Vote(200, 0.1, 1, "b"), Vote(None, 0.5, 2, "c")]
    assert strategy.merge(votes) == 110.0
    assert strategy.spread(votes) == 1.0
    assert strategy.is_disagreement(votes)
    assert strategy.merge([Vote(10, 0.0, 0, "a"), Vote(20, 0.0, 1, "b")]) == 15.0
    assert strategy.merge([Vote(None, 0.5, 0, "a")]) is None


def test_majority_vote():
    strategy = MajorityVoteStrategy()
    votes = [Vote("SF", 0.5, 0, "a"), Vote("LF", 0.6, 1, "b"), Vote("SF", 0.4, 2, "c")]
    assert strategy.merge(votes) == "SF"
    assert strategy.distinct_values(votes) == ["SF", "LF"]
    assert strategy.merge([Vote("EA", 0.5, 1, "b"), Vote("LF", 0.5, 0, "a")]) == "LF"


@pytest.mark.asyncio
async def test_remote_image_fetch_does_not_block_event_loop(png_bytes, monkeypatch):
    class SlowResponse:
        content = png_bytes

        def raise_for_status(self):
            pass

    def slow_get(url, timeout=None):
        time.sleep(0.3)
        return SlowResponse()

    monkeypatch.setattr("bidcore.providers.images.requests.get", slow_get)
    _, engine = engine_for({model_id: items_payload(stud_wall()) for model_id in MODEL_IDS})

    gaps = []

    async def heartbeat():
        last = time.monotonic()
        while True:
            await asyncio.sleep(0.02)
            now = time.monotonic()
            gaps.append(now - last)
            last = now

    beat = asyncio.ensure_future(heartbeat())
    try:
        result = await engine.analyze_with_consensus(
            ["https://plans.example.com/a.png", "https://plans.example.com/b.png"], AnalysisOptions()
        )
    finally:
        beat.cancel()

    assert result.models_succeeded == 5
    assert gaps and max(gaps) < 0.2
