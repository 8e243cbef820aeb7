"""Ingredient vetting API endpoints."""

import logging
import re
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from src.api.deps import get_orchestrator
from src.vetting.orchestrator import VettingOrchestrator
from src.vetting.types import (
    Ingredient,
    IngredientAnalysis,
    ResearchResult,
    SafetyStatus,
    VetResult,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["vetting"])

INGREDIENT_SEPARATORS = re.compile(r"[\n,]")


def split_ingredients_text(text: str) -> List[str]:
    """Split a raw ingredient list on commas and newlines, dropping blanks."""
    return [item.strip() for item in INGREDIENT_SEPARATORS.split(text) if item.strip()]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class VetIngredientsRequest(CamelModel):
    """Request model for vetting an ingredient list."""
    ingredients_text: Optional[str] = None


class ResearchSourceResponse(CamelModel):
    source: str
    url: str
    title: str
    snippet: str
    relevance: float

    @classmethod
    def from_result(cls, result: ResearchResult) -> "ResearchSourceResponse":
        return cls(**result.to_dict())


def _sources(results: Optional[List[ResearchResult]]) -> Optional[List[ResearchSourceResponse]]:
    if not results:
        return None
    return [ResearchSourceResponse.from_result(r) for r in results]


class IngredientResponse(CamelModel):
    """Vetted ingredient as attached to a product draft."""
    id: str
    name: str
    status: SafetyStatus
    rationale: str
    source_url: str
    original_status: SafetyStatus
    is_override: bool
    created_at: datetime
    updated_at: datetime
    description: Optional[str] = None
    edge_cases: Optional[str] = None
    ewg_score: Optional[int] = None
    research_sources: Optional[List[ResearchSourceResponse]] = None
    suggested_matches: Optional[List[str]] = None
    confidence: Optional[float] = None
    needs_review: bool = False

    @classmethod
    def from_ingredient(cls, ingredient: Ingredient) -> "IngredientResponse":
        return cls(
            id=ingredient.id,
            name=ingredient.name,
            status=ingredient.status,
            rationale=ingredient.rationale,
            source_url=ingredient.source_url,
            original_status=ingredient.original_status,
            is_override=ingredient.is_override,
            created_at=ingredient.created_at,
            updated_at=ingredient.updated_at,
            description=ingredient.description,
            edge_cases=ingredient.edge_cases,
            ewg_score=ingredient.ewg_score,
            research_sources=_sources(ingredient.research_sources),
            suggested_matches=ingredient.suggested_matches,
            confidence=ingredient.confidence,
            needs_review=ingredient.needs_review,
        )


class VetResultResponse(CamelModel):
    """Response model for a vetting batch."""
    overall_status: SafetyStatus
    summary: str
    ingredients: List[IngredientResponse]

    @classmethod
    def from_result(cls, result: VetResult) -> "VetResultResponse":
        return cls(
            overall_status=result.overall_status,
            summary=result.summary,
            ingredients=[IngredientResponse.from_ingredient(i) for i in result.ingredients],
        )


class IngredientAnalysisResponse(CamelModel):
    """Stored analysis for a single ingredient."""
    name: str
    status: SafetyStatus
    rationale: str
    description: str
    edge_cases: str
    source_url: str
    confidence: float
    ewg_score: Optional[int] = None
    ewg_data_availability: Optional[str] = None
    research_sources: Optional[List[ResearchSourceResponse]] = None
    suggested_matches: Optional[List[str]] = None
    needs_review: bool = False
    analysis_version: int
    last_analyzed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_analysis(cls, analysis: IngredientAnalysis) -> "IngredientAnalysisResponse":
        return cls(
            name=analysis.name,
            status=analysis.status,
            rationale=analysis.rationale,
            description=analysis.description,
            edge_cases=analysis.edge_cases,
            source_url=analysis.source_url,
            confidence=analysis.confidence,
            ewg_score=analysis.ewg_score,
            ewg_data_availability=analysis.ewg_data_availability,
            research_sources=_sources(analysis.research_sources),
            suggested_matches=analysis.suggested_matches,
            needs_review=analysis.needs_review,
            analysis_version=analysis.analysis_version,
            last_analyzed_at=analysis.last_analyzed_at,
            created_at=analysis.created_at,
            updated_at=analysis.updated_at,
        )


def _internal_error(action: str, error: Exception) -> HTTPException:
    return HTTPException(
        status_code=500,
        detail={
            "error": f"Failed to {action}",
            "message": str(error) or error.__class__.__name__,
            "hint": "Retry the request. If the problem persists, check the vetting provider and search API configuration.",
        },
    )


@router.post("/vet-ingredients", response_model=VetResultResponse)
async def vet_ingredients(
    payload: VetIngredientsRequest,
    orchestrator: VettingOrchestrator = Depends(get_orchestrator),
):
    """Vet a comma- or newline-separated ingredient list."""
    text = payload.ingredients_text or ""
    names = split_ingredients_text(text)
    if not names:
        raise HTTPException(status_code=400, detail="ingredientsText is required")

    try:
        result = await orchestrator.vet_ingredients(names)
    except Exception as e:
        logger.exception(f"Ingredient vetting failed for {len(names)} ingredients")
        raise _internal_error("vet ingredients", e)

    return VetResultResponse.from_result(result)


@router.get("/ingredient-analyses/{name}", response_model=IngredientAnalysisResponse)
async def get_ingredient_analysis(
    name: str,
    orchestrator: VettingOrchestrator = Depends(get_orchestrator),
):
    """Get the stored analysis for an ingredient."""
    analysis = await orchestrator.get_analysis(name)
    if analysis is None:
        raise HTTPException(status_code=404, detail="Ingredient analysis not found")
    return IngredientAnalysisResponse.from_analysis(analysis)


@router.post("/ingredient-analyses/{name}/refresh", response_model=IngredientAnalysisResponse)
async def refresh_ingredient_analysis(
    name: str,
    orchestrator: VettingOrchestrator = Depends(get_orchestrator),
):
    """Re-run the full pipeline for an ingredient, ignoring the cache."""
    name = name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Ingredient name is required")

    try:
        analysis = await orchestrator.analyze_ingredient(name, force=True)
    except Exception as e:
        logger.exception(f"Refresh failed for {name}")
        raise _internal_error("refresh ingredient analysis", e)

    return IngredientAnalysisResponse.from_analysis(analysis)
