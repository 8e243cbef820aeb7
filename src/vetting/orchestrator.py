"""Ingredient vetting pipeline.

For each ingredient: cache check, score lookup, citation search (only when
the lookup has no score), classification, merge, persist. Batches are
processed one ingredient at a time with a fixed delay between external
calls.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple
from uuid import uuid4

from src import metrics
from src.config import settings
from src.db.session import AsyncSessionLocal
from src.logging_config import get_logger
from src.vetting.cache import AnalysisCache
from src.vetting.classifiers import IngredientClassifier, build_classifier
from src.vetting.research import ResearchService, best_citation
from src.vetting.score_lookup import SafetyScoreLookup
from src.vetting.types import (
    NONE_KNOWN,
    ClassifierOpinion,
    Ingredient,
    IngredientAnalysis,
    ResearchResult,
    SafetyStatus,
    ScoreLookupResult,
    VetResult,
    ewg_search_url,
    most_severe,
)

logger = logging.getLogger(__name__)

SCORE_LOOKUP_CONFIDENCE = 0.9
CITATIONS_ONLY_CONFIDENCE = 0.5
MANUAL_REVIEW_CONFIDENCE = 0.0

SUMMARY_PREFIXES = {
    SafetyStatus.SAFE: "Overall assessment: Safe.",
    SafetyStatus.CAUTION: "Overall assessment: Needs caution.",
    SafetyStatus.BANNED: "Overall assessment: Avoid use.",
}

SCORE_TIER_LABELS = {
    SafetyStatus.SAFE: "low hazard (1-4)",
    SafetyStatus.CAUTION: "moderate hazard (5-7)",
    SafetyStatus.BANNED: "high hazard (8-10)",
}

SAFETY_PROFILES = {
    SafetyStatus.SAFE: "Available data indicates low concern at typical use levels.",
    SafetyStatus.CAUTION: "Available data indicates moderate concern depending on concentration and exposure.",
    SafetyStatus.BANNED: "Available data indicates significant health or regulatory concerns.",
}


def derive_overall_status(statuses: Sequence[SafetyStatus]) -> SafetyStatus:
    return most_severe(statuses)


def build_summary(status: SafetyStatus, count: int) -> str:
    noun = "ingredient" if count == 1 else "ingredients"
    return (
        f"{SUMMARY_PREFIXES[status]} {count} {noun} analyzed with automated vetting. "
        "Review individual rationales before publishing."
    )


def manual_review_analysis(name: str) -> IngredientAnalysis:
    """Fail-safe record used when no source produced anything usable."""
    return IngredientAnalysis(
        name=name,
        status=SafetyStatus.CAUTION,
        rationale=(
            f"{name} requires manual review. Automated analysis was unavailable. "
            "Please research this ingredient using EWG Skin Deep and other "
            "reliable sources before publishing."
        ),
        description=(
            f"{name} is a cosmetic ingredient. "
            "No automated safety data could be gathered for it. "
            "Its use in finished products should be confirmed by a reviewer."
        ),
        edge_cases=NONE_KNOWN,
        source_url=ewg_search_url(name),
        confidence=MANUAL_REVIEW_CONFIDENCE,
        needs_review=True,
    )


def _templated_rationale(
    name: str,
    status: SafetyStatus,
    lookup: ScoreLookupResult,
    research: List[ResearchResult],
) -> str:
    if lookup.usable:
        rationale = (
            f"{name} has an EWG Skin Deep hazard score of {lookup.score}, "
            f"which falls in the {SCORE_TIER_LABELS[status]} tier."
        )
        if lookup.concerns:
            rationale += f" Reported concerns: {', '.join(lookup.concerns[:3])}."
        return rationale

    count = len(research)
    noun = "source" if count == 1 else "sources"
    return (
        f"{name} could not be classified automatically. "
        f"{count} supporting {noun} were found and should be reviewed before publishing."
    )


def _templated_description(name: str, status: SafetyStatus) -> str:
    return (
        f"{name} is a cosmetic ingredient. "
        f"{SAFETY_PROFILES[status]} "
        "Review supporting sources before use in finished products."
    )


def merge_evidence(
    name: str,
    lookup: ScoreLookupResult,
    research: List[ResearchResult],
    opinion: Optional[ClassifierOpinion],
) -> Tuple[IngredientAnalysis, str]:
    """
    Combine the three evidence sources into one analysis.

    Status comes from the score tier, then the classifier, then defaults to
    caution. Returns the analysis and which source decided its status.
    """
    if lookup.usable:
        status = lookup.status
        confidence = SCORE_LOOKUP_CONFIDENCE
        decided_by = "score_lookup"
    elif opinion is not None:
        status = opinion.status
        confidence = opinion.confidence
        decided_by = "classifier"
    elif research:
        status = SafetyStatus.CAUTION
        confidence = CITATIONS_ONLY_CONFIDENCE
        decided_by = "citations"
    else:
        analysis = manual_review_analysis(name)
        analysis.suggested_matches = lookup.suggested_matches
        return analysis, "fallback"

    if lookup.usable:
        source_url = lookup.url
    elif research:
        source_url = best_citation(name, research)
    else:
        source_url = ewg_search_url(name)

    if opinion is not None:
        rationale = opinion.rationale
        description = opinion.description
        edge_cases = opinion.edge_cases
    else:
        rationale = _templated_rationale(name, status, lookup, research)
        description = _templated_description(name, status)
        edge_cases = NONE_KNOWN

    analysis = IngredientAnalysis(
        name=name,
        status=status,
        rationale=rationale,
        description=description,
        edge_cases=edge_cases,
        source_url=source_url,
        confidence=confidence,
        ewg_score=lookup.score,
        ewg_data_availability=lookup.data_availability,
        research_sources=research or None,
        suggested_matches=lookup.suggested_matches,
    )
    return analysis, decided_by


def to_ingredient(analysis: IngredientAnalysis) -> Ingredient:
    """Build the editorial copy attached to a product draft."""
    now = datetime.utcnow()
    return Ingredient(
        id=str(uuid4()),
        name=analysis.name,
        status=analysis.status,
        rationale=analysis.rationale,
        source_url=analysis.source_url,
        original_status=analysis.status,
        is_override=False,
        created_at=now,
        updated_at=now,
        description=analysis.description,
        edge_cases=analysis.edge_cases,
        ewg_score=analysis.ewg_score,
        research_sources=analysis.research_sources,
        suggested_matches=analysis.suggested_matches,
        confidence=analysis.confidence,
        needs_review=analysis.needs_review,
    )


class VettingOrchestrator:
    """
    Runs the vetting pipeline over ingredient lists.

    Components are injected so the circuit breaker on ``research`` and the
    HTTP clients live as long as the orchestrator does.
    """

    def __init__(
        self,
        score_lookup: SafetyScoreLookup,
        research: ResearchService,
        classifier: Optional[IngredientClassifier],
        cache: AnalysisCache,
        item_delay_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.score_lookup = score_lookup
        self.research = research
        self.classifier = classifier
        self.cache = cache
        self.item_delay_seconds = (
            item_delay_seconds
            if item_delay_seconds is not None
            else settings.vetting_item_delay_seconds
        )
        self._sleep = sleep

    async def close(self):
        """Close HTTP clients held by the components."""
        await self.score_lookup.close()
        await self.research.close()
        close = getattr(self.classifier, "close", None)
        if close is not None:
            await close()

    async def vet_ingredients(self, names: Sequence[str]) -> VetResult:
        """
        Vet ingredients one at a time and aggregate the verdict.

        The delay between items is skipped after an ingredient served from
        the cache, since no external call was made for it.
        """
        analyses: List[IngredientAnalysis] = []
        for index, name in enumerate(names):
            analysis = await self.analyze_ingredient(name)
            analyses.append(analysis)

            is_last = index == len(names) - 1
            if not is_last and not analysis.from_cache and self.item_delay_seconds > 0:
                await self._sleep(self.item_delay_seconds)

        overall_status = derive_overall_status([a.status for a in analyses])
        metrics.vetting_batches_total.labels(overall_status.value).inc()
        logger.info(
            f"Vetted {len(analyses)} ingredients: overall {overall_status.value}"
        )

        return VetResult(
            overall_status=overall_status,
            summary=build_summary(overall_status, len(analyses)),
            ingredients=[to_ingredient(a) for a in analyses],
        )

    async def analyze_ingredient(self, name: str, force: bool = False) -> IngredientAnalysis:
        """
        Analyze one ingredient. Never raises.

        Args:
            name: Ingredient name as submitted
            force: Skip the cache check and re-run every stage
        """
        log = get_logger(__name__, ingredient=name)

        if not force:
            cached = await self._fresh_from_cache(name, log)
            if cached is not None:
                metrics.ingredients_vetted_total.labels(cached.status.value, "cache").inc()
                return cached

        try:
            analysis, decided_by = await self._run_pipeline(name, log)
        except Exception as e:
            log.error(f"Vetting pipeline failed for {name}: {e}", exc_info=True)
            metrics.ingredients_vetted_total.labels(SafetyStatus.CAUTION.value, "fallback").inc()
            return self._stamp(manual_review_analysis(name))

        metrics.ingredients_vetted_total.labels(analysis.status.value, decided_by).inc()
        return await self._persist(name, analysis, log)

    async def get_analysis(self, name: str) -> Optional[IngredientAnalysis]:
        """Stored analysis for ``name`` regardless of staleness."""
        return await self.cache.get(name)

    async def _fresh_from_cache(self, name: str, log) -> Optional[IngredientAnalysis]:
        try:
            with metrics.vetting_stage_duration_seconds.labels("cache").time():
                cached = await self.cache.get(name)
        except Exception as e:
            metrics.analysis_cache_lookups_total.labels("error").inc()
            log.warning(f"Analysis cache read failed for {name}: {e}")
            return None

        if cached is None:
            metrics.analysis_cache_lookups_total.labels("miss").inc()
            return None

        if self.cache.is_stale(cached):
            metrics.analysis_cache_lookups_total.labels("stale").inc()
            log.info(f"Cached analysis for {name} is stale, re-analyzing")
            return None

        metrics.analysis_cache_lookups_total.labels("hit").inc()
        log.debug(f"Using cached analysis for {name}")
        cached.name = name
        cached.from_cache = True
        return cached

    async def _run_pipeline(self, name: str, log) -> Tuple[IngredientAnalysis, str]:
        with metrics.vetting_stage_duration_seconds.labels("score_lookup").time():
            lookup = await self.score_lookup.lookup(name)

        research: List[ResearchResult] = []
        if not lookup.usable:
            with metrics.vetting_stage_duration_seconds.labels("research").time():
                research = await self.research.search(name)
            log.debug(f"Found {len(research)} citations for {name}")

        opinion = await self._classify(name, lookup, research, log)
        return merge_evidence(name, lookup, research, opinion)

    async def _classify(
        self,
        name: str,
        lookup: ScoreLookupResult,
        research: List[ResearchResult],
        log,
    ) -> Optional[ClassifierOpinion]:
        if self.classifier is None:
            return None

        log = log.bind(stage="classify", provider=self.classifier.name)
        try:
            with metrics.vetting_stage_duration_seconds.labels("classify").time():
                opinion = await self.classifier.analyze(name, lookup, research)
        except Exception as e:
            metrics.external_calls_total.labels("classifier", "error").inc()
            log.warning(f"Classifier {self.classifier.name} failed for {name}: {e}")
            return None

        metrics.external_calls_total.labels(
            "classifier", "success" if opinion.parsed else "unparsed"
        ).inc()
        return opinion

    async def _persist(
        self, name: str, analysis: IngredientAnalysis, log
    ) -> IngredientAnalysis:
        try:
            return await self.cache.upsert(name, analysis)
        except Exception as e:
            metrics.analysis_cache_write_errors_total.inc()
            log.error(f"Failed to store analysis for {name}: {e}")
            return self._stamp(analysis)

    @staticmethod
    def _stamp(analysis: IngredientAnalysis) -> IngredientAnalysis:
        now = datetime.utcnow()
        analysis.analysis_version = 1
        analysis.created_at = now
        analysis.updated_at = now
        analysis.last_analyzed_at = now
        return analysis


def build_orchestrator() -> VettingOrchestrator:
    """Create the orchestrator from settings."""
    return VettingOrchestrator(
        score_lookup=SafetyScoreLookup(),
        research=ResearchService(),
        classifier=build_classifier(),
        cache=AnalysisCache(AsyncSessionLocal),
    )
