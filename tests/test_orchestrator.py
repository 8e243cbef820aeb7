"""Tests for the vetting orchestrator."""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from sqlalchemy import update

from src.db.models import IngredientAnalysisRecord
from src.vetting.orchestrator import VettingOrchestrator, build_summary
from src.vetting.research import ResearchService
from src.vetting.types import (
    ClassifierOpinion,
    ResearchResult,
    SafetyStatus,
    ScoreLookupResult,
    ewg_search_url,
)


def _found(name: str, score: int) -> ScoreLookupResult:
    return ScoreLookupResult(
        name=name,
        score=score,
        data_availability="Good",
        url=f"https://www.ewg.org/skindeep/ingredients/{name.lower()}/",
        found=True,
    )


def _opinion(status: SafetyStatus, confidence: float = 0.75) -> ClassifierOpinion:
    return ClassifierOpinion(
        status=status,
        rationale="Classifier rationale specific to this ingredient and its uses.",
        description="Sentence one. Sentence two. Sentence three.",
        edge_cases="Avoid on broken skin.",
        confidence=confidence,
    )


FDA_RESULT = ResearchResult(
    source="fda", url="https://www.fda.gov/talc", title="Talc", snippet="Talc safety", relevance=0.9
)
HEALTHLINE_RESULT = ResearchResult(
    source="healthline",
    url="https://www.healthline.com/talc",
    title="Talc",
    snippet="Talc in skincare",
    relevance=0.9,
)


def _orchestrator(cache, lookup=None, research=None, opinion=None, classifier_error=None):
    score_lookup = MagicMock()
    score_lookup.lookup = AsyncMock(
        side_effect=lookup or (lambda name: ScoreLookupResult.not_found(name))
    )
    score_lookup.close = AsyncMock()

    research_service = MagicMock()
    research_service.search = AsyncMock(return_value=research or [])
    research_service.close = AsyncMock()

    classifier = MagicMock()
    classifier.name = "fake"
    if classifier_error is not None:
        classifier.analyze = AsyncMock(side_effect=classifier_error)
    else:
        classifier.analyze = AsyncMock(return_value=opinion)

    return VettingOrchestrator(
        score_lookup=score_lookup,
        research=research_service,
        classifier=classifier if (opinion or classifier_error) else None,
        cache=cache,
        item_delay_seconds=2.0,
        sleep=AsyncMock(),
    )


@pytest.mark.asyncio
async def test_score_lookup_decides_status_and_skips_research(analysis_cache):
    orchestrator = _orchestrator(
        analysis_cache,
        lookup=lambda name: _found(name, 9),
        opinion=_opinion(SafetyStatus.SAFE),
    )

    analysis = await orchestrator.analyze_ingredient("Formaldehyde")

    assert analysis.status == SafetyStatus.BANNED
    assert analysis.confidence == 0.9
    assert analysis.ewg_score == 9
    assert analysis.source_url == "https://www.ewg.org/skindeep/ingredients/formaldehyde/"
    assert analysis.rationale.startswith("Classifier rationale")
    assert analysis.needs_review is False
    orchestrator.research.search.assert_not_awaited()


@pytest.mark.asyncio
async def test_classifier_decides_when_lookup_has_no_score(analysis_cache):
    orchestrator = _orchestrator(
        analysis_cache,
        research=[HEALTHLINE_RESULT, FDA_RESULT],
        opinion=_opinion(SafetyStatus.CAUTION, confidence=0.65),
    )

    analysis = await orchestrator.analyze_ingredient("Talc")

    assert analysis.status == SafetyStatus.CAUTION
    assert analysis.confidence == 0.65
    assert analysis.source_url == "https://www.fda.gov/talc"
    assert analysis.research_sources == [HEALTHLINE_RESULT, FDA_RESULT]
    orchestrator.research.search.assert_awaited_once_with("Talc")
    orchestrator.classifier.analyze.assert_awaited_once()


@pytest.mark.asyncio
async def test_classifier_failure_with_citations(analysis_cache):
    orchestrator = _orchestrator(
        analysis_cache,
        research=[FDA_RESULT],
        classifier_error=RuntimeError("provider down"),
    )

    analysis = await orchestrator.analyze_ingredient("Talc")

    assert analysis.status == SafetyStatus.CAUTION
    assert analysis.confidence == 0.5
    assert analysis.needs_review is False
    assert "Talc" in analysis.rationale


@pytest.mark.asyncio
async def test_total_failure_requires_manual_review(analysis_cache):
    orchestrator = _orchestrator(
        analysis_cache, classifier_error=RuntimeError("provider down")
    )

    analysis = await orchestrator.analyze_ingredient("Mystery Extract")

    assert analysis.status == SafetyStatus.CAUTION
    assert analysis.confidence == 0.0
    assert analysis.needs_review is True
    assert "requires manual review" in analysis.rationale
    assert analysis.source_url == ewg_search_url("Mystery Extract")


@pytest.mark.asyncio
async def test_unexpected_exception_yields_failure_record(analysis_cache):
    def explode(name):
        raise RuntimeError("unexpected")

    orchestrator = _orchestrator(analysis_cache, lookup=explode)

    analysis = await orchestrator.analyze_ingredient("Glycerin")

    assert analysis.status == SafetyStatus.CAUTION
    assert analysis.confidence == 0.0
    assert analysis.needs_review is True


@pytest.mark.asyncio
async def test_fresh_cache_hit_skips_pipeline(analysis_cache):
    orchestrator = _orchestrator(
        analysis_cache,
        lookup=lambda name: _found(name, 1),
        opinion=_opinion(SafetyStatus.SAFE),
    )
    first = await orchestrator.analyze_ingredient("Glycerin")
    orchestrator.score_lookup.lookup.reset_mock()
    orchestrator.research.search.reset_mock()
    orchestrator.classifier.analyze.reset_mock()

    analysis = await orchestrator.analyze_ingredient("GLYCERIN")

    assert analysis.from_cache is True
    assert analysis.name == "GLYCERIN"
    assert analysis.status == SafetyStatus.SAFE
    assert analysis.analysis_version == 1
    assert analysis.last_analyzed_at == first.last_analyzed_at
    orchestrator.score_lookup.lookup.assert_not_awaited()
    orchestrator.research.search.assert_not_awaited()
    orchestrator.classifier.analyze.assert_not_awaited()


@pytest.mark.asyncio
async def test_stale_entry_is_recomputed(analysis_cache, session_factory):
    orchestrator = _orchestrator(analysis_cache, lookup=lambda name: _found(name, 1))
    first = await orchestrator.analyze_ingredient("Glycerin")
    backdated = datetime.utcnow() - timedelta(days=31)

    async with session_factory() as db:
        await db.execute(
            update(IngredientAnalysisRecord).values(last_analyzed_at=backdated)
        )
        await db.commit()

    second = await orchestrator.analyze_ingredient("Glycerin")

    assert second.from_cache is False
    assert second.analysis_version == first.analysis_version + 1
    assert second.created_at == first.created_at
    assert second.last_analyzed_at > backdated
    assert second.last_analyzed_at >= first.last_analyzed_at
    assert orchestrator.score_lookup.lookup.await_count == 2


@pytest.mark.asyncio
async def test_citation_transport_errors_still_reach_classifier(analysis_cache):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadError("connection reset", request=request)

    orchestrator = _orchestrator(analysis_cache, opinion=_opinion(SafetyStatus.SAFE, confidence=0.8))
    orchestrator.research = ResearchService(
        api_key="key",
        cx_id="cx",
        max_consecutive_errors=3,
        min_request_interval=0,
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )

    analysis = await orchestrator.analyze_ingredient("Talc")
    await orchestrator.research.close()

    assert orchestrator.classifier.analyze.await_count == 1
    assert analysis.status == SafetyStatus.SAFE
    assert analysis.confidence == 0.8
    assert analysis.needs_review is False
    assert analysis.source_url == ewg_search_url("Talc")


@pytest.mark.asyncio
async def test_force_bypasses_cache(analysis_cache):
    orchestrator = _orchestrator(analysis_cache, lookup=lambda name: _found(name, 1))
    await orchestrator.analyze_ingredient("Glycerin")

    analysis = await orchestrator.analyze_ingredient("Glycerin", force=True)

    assert analysis.from_cache is False
    assert analysis.analysis_version == 2


@pytest.mark.asyncio
async def test_cache_failures_are_swallowed():
    cache = MagicMock()
    cache.get = AsyncMock(side_effect=RuntimeError("database unavailable"))
    cache.upsert = AsyncMock(side_effect=RuntimeError("database unavailable"))
    orchestrator = _orchestrator(cache, lookup=lambda name: _found(name, 6))

    analysis = await orchestrator.analyze_ingredient("Phenoxyethanol")

    assert analysis.status == SafetyStatus.CAUTION
    assert analysis.analysis_version == 1
    assert analysis.last_analyzed_at is not None
    orchestrator.score_lookup.lookup.assert_awaited_once()


@pytest.mark.asyncio
async def test_batch_aggregates_most_severe_status(analysis_cache):
    scores = {"Glycerin": 1, "Phenoxyethanol": 6, "Formaldehyde": 10}
    orchestrator = _orchestrator(analysis_cache, lookup=lambda name: _found(name, scores[name]))

    result = await orchestrator.vet_ingredients(list(scores))

    assert result.overall_status == SafetyStatus.BANNED
    assert result.summary.startswith("Overall assessment: Avoid use. 3 ingredients analyzed")
    assert [i.name for i in result.ingredients] == list(scores)
    assert [i.status for i in result.ingredients] == [
        SafetyStatus.SAFE,
        SafetyStatus.CAUTION,
        SafetyStatus.BANNED,
    ]
    for ingredient in result.ingredients:
        assert ingredient.original_status == ingredient.status
        assert ingredient.is_override is False
    assert len({i.id for i in result.ingredients}) == 3


@pytest.mark.asyncio
async def test_batch_delays_between_external_calls(analysis_cache):
    orchestrator = _orchestrator(analysis_cache, lookup=lambda name: _found(name, 1))

    await orchestrator.vet_ingredients(["Glycerin", "Water", "Aloe Vera"])

    assert orchestrator._sleep.await_count == 2
    orchestrator._sleep.assert_awaited_with(2.0)


@pytest.mark.asyncio
async def test_batch_skips_delay_after_cache_hit(analysis_cache):
    orchestrator = _orchestrator(analysis_cache, lookup=lambda name: _found(name, 1))
    await orchestrator.analyze_ingredient("Glycerin")

    await orchestrator.vet_ingredients(["Glycerin", "Water", "Aloe Vera"])

    # Only the pause after "Water"; the cache hit and the last item need none
    assert orchestrator._sleep.await_count == 1


@pytest.mark.asyncio
async def test_batch_is_sequential(analysis_cache):
    in_flight = 0
    max_in_flight = 0
    order = []

    async def lookup(name):
        nonlocal in_flight, max_in_flight
        in_flight += 1
        max_in_flight = max(max_in_flight, in_flight)
        order.append(name)
        await asyncio.sleep(0)
        in_flight -= 1
        return _found(name, 2)

    orchestrator = _orchestrator(analysis_cache)
    orchestrator.score_lookup.lookup = AsyncMock(side_effect=lookup)

    await orchestrator.vet_ingredients(["C", "A", "B"])

    assert order == ["C", "A", "B"]
    assert max_in_flight == 1


@pytest.mark.asyncio
async def test_empty_batch_is_safe(analysis_cache):
    orchestrator = _orchestrator(analysis_cache)

    result = await orchestrator.vet_ingredients([])

    assert result.overall_status == SafetyStatus.SAFE
    assert result.ingredients == []
    assert "0 ingredients analyzed" in result.summary


def test_build_summary_wording():
    assert build_summary(SafetyStatus.SAFE, 1) == (
        "Overall assessment: Safe. 1 ingredient analyzed with automated vetting. "
        "Review individual rationales before publishing."
    )
    assert build_summary(SafetyStatus.CAUTION, 2).startswith("Overall assessment: Needs caution. 2 ingredients")
