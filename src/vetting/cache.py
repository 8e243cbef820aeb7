"""Persistent analysis cache with time-based staleness."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import settings
from src.db.models import IngredientAnalysisRecord
from src.vetting.types import (
    IngredientAnalysis,
    ResearchResult,
    SafetyStatus,
    normalize_ingredient_name,
)

logger = logging.getLogger(__name__)


def _to_analysis(record: IngredientAnalysisRecord) -> IngredientAnalysis:
    research = record.research_sources
    return IngredientAnalysis(
        name=record.display_name,
        status=SafetyStatus(record.status),
        rationale=record.rationale,
        description=record.description,
        edge_cases=record.edge_cases,
        source_url=record.source_url,
        confidence=record.confidence,
        ewg_score=record.ewg_score,
        ewg_data_availability=record.ewg_data_availability,
        research_sources=[ResearchResult.from_dict(r) for r in research] if research else None,
        suggested_matches=list(record.suggested_matches) if record.suggested_matches else None,
        needs_review=record.needs_review,
        analysis_version=record.analysis_version,
        last_analyzed_at=record.last_analyzed_at,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _apply(record: IngredientAnalysisRecord, analysis: IngredientAnalysis) -> None:
    record.status = analysis.status.value
    record.rationale = analysis.rationale
    record.description = analysis.description
    record.edge_cases = analysis.edge_cases
    record.source_url = analysis.source_url
    record.ewg_score = analysis.ewg_score
    record.ewg_data_availability = analysis.ewg_data_availability
    record.research_sources = (
        [r.to_dict() for r in analysis.research_sources] if analysis.research_sources else None
    )
    record.suggested_matches = list(analysis.suggested_matches) if analysis.suggested_matches else None
    record.confidence = analysis.confidence
    record.needs_review = analysis.needs_review


class AnalysisCache:
    """
    Stores the latest analysis per ingredient.

    Entries are keyed by the normalized name, so differently-cased
    submissions share one entry. Re-analysis overwrites the entry and bumps
    its version; no history is kept.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        refresh_days: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self.refresh_days = (
            refresh_days if refresh_days is not None else settings.analysis_refresh_days
        )

    async def get(self, ingredient_name: str) -> Optional[IngredientAnalysis]:
        """Get the stored analysis for an ingredient, or None."""
        key = normalize_ingredient_name(ingredient_name)
        async with self._session_factory() as db:
            result = await db.execute(
                select(IngredientAnalysisRecord).where(
                    IngredientAnalysisRecord.ingredient_name == key
                )
            )
            record = result.scalar_one_or_none()
            return _to_analysis(record) if record else None

    def is_stale(
        self,
        analysis: Optional[IngredientAnalysis],
        now: Optional[datetime] = None,
    ) -> bool:
        """True when the analysis is missing or older than the refresh window."""
        if analysis is None:
            return True

        analyzed_at = analysis.last_analyzed_at or analysis.updated_at
        if analyzed_at is None:
            return True

        now = now or datetime.utcnow()
        return now - analyzed_at > timedelta(days=self.refresh_days)

    async def upsert(
        self, ingredient_name: str, analysis: IngredientAnalysis
    ) -> IngredientAnalysis:
        """
        Insert a new entry or overwrite the existing one.

        Returns:
            The stored analysis with its version and timestamps.
        """
        key = normalize_ingredient_name(ingredient_name)
        now = datetime.utcnow()

        async with self._session_factory() as db:
            result = await db.execute(
                select(IngredientAnalysisRecord).where(
                    IngredientAnalysisRecord.ingredient_name == key
                )
            )
            record = result.scalar_one_or_none()

            if record is None:
                record = IngredientAnalysisRecord(
                    ingredient_name=key,
                    display_name=ingredient_name.strip(),
                    analysis_version=1,
                    created_at=now,
                )
                db.add(record)
            else:
                record.analysis_version += 1

            _apply(record, analysis)
            record.updated_at = now
            record.last_analyzed_at = now

            await db.commit()
            await db.refresh(record)
            logger.debug(f"Stored analysis for {key} (version {record.analysis_version})")

            stored = _to_analysis(record)

        stored.name = analysis.name
        return stored
