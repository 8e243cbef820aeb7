"""Domain types shared by the vetting pipeline."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, List, Optional
from urllib.parse import quote


class SafetyStatus(str, Enum):
    """Three-tier ingredient safety classification."""

    SAFE = "safe"
    CAUTION = "caution"
    BANNED = "banned"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @classmethod
    def parse(cls, value: Any) -> Optional["SafetyStatus"]:
        """Return the matching status or None for anything outside the enum."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


_SEVERITY = {
    SafetyStatus.SAFE: 0,
    SafetyStatus.CAUTION: 1,
    SafetyStatus.BANNED: 2,
}

EWG_SEARCH_URL = "https://www.ewg.org/skindeep/search/?query={query}"
NONE_KNOWN = "None known."


def most_severe(statuses: Iterable[SafetyStatus]) -> SafetyStatus:
    """Highest severity across statuses (banned > caution > safe); safe when empty."""
    return max(statuses, key=lambda s: s.severity, default=SafetyStatus.SAFE)


def status_from_score(score: Optional[int]) -> Optional[SafetyStatus]:
    """Map an EWG hazard score to a status tier: 1-4 safe, 5-7 caution, 8-10 banned."""
    if score is None:
        return None
    if 1 <= score <= 4:
        return SafetyStatus.SAFE
    if 5 <= score <= 7:
        return SafetyStatus.CAUTION
    if 8 <= score <= 10:
        return SafetyStatus.BANNED
    return None


def normalize_ingredient_name(name: str) -> str:
    """Cache key for an ingredient name."""
    return name.strip().lower()


def slugify(name: str) -> str:
    """URL slug used by EWG ingredient pages."""
    slug = name.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def ewg_search_url(name: str) -> str:
    return EWG_SEARCH_URL.format(query=quote(name, safe=""))


@dataclass
class ScoreLookupResult:
    """Result of a safety-score lookup."""

    name: str
    score: Optional[int]
    data_availability: Optional[str]
    url: str
    concerns: List[str] = field(default_factory=list)
    found: bool = False
    suggested_matches: Optional[List[str]] = None

    @property
    def status(self) -> Optional[SafetyStatus]:
        return status_from_score(self.score)

    @property
    def usable(self) -> bool:
        """True when the lookup produced an authoritative score."""
        return self.found and self.score is not None

    @classmethod
    def not_found(
        cls,
        name: str,
        url: Optional[str] = None,
        suggested_matches: Optional[List[str]] = None,
    ) -> "ScoreLookupResult":
        return cls(
            name=name,
            score=None,
            data_availability=None,
            url=url or ewg_search_url(name),
            found=False,
            suggested_matches=suggested_matches or None,
        )


@dataclass
class ResearchResult:
    """A citation found by web search."""

    source: str  # ewg, fda, pubmed, healthline, other
    url: str
    title: str
    snippet: str
    relevance: float

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ResearchResult":
        return cls(
            source=data.get("source") or "other",
            url=data.get("url") or "",
            title=data.get("title") or "",
            snippet=data.get("snippet") or "",
            relevance=float(data.get("relevance") or 0.0),
        )


@dataclass
class ClassifierOpinion:
    """Output contract of every classifier backend."""

    status: SafetyStatus
    rationale: str
    description: str
    edge_cases: str
    confidence: float
    parsed: bool = True  # False when defaults replaced an unusable response


@dataclass
class IngredientAnalysis:
    """Pipeline output for one ingredient; also the analysis cache record."""

    name: str
    status: SafetyStatus
    rationale: str
    description: str
    edge_cases: str
    source_url: str
    confidence: float
    ewg_score: Optional[int] = None
    ewg_data_availability: Optional[str] = None
    research_sources: Optional[List[ResearchResult]] = None
    suggested_matches: Optional[List[str]] = None
    needs_review: bool = False
    analysis_version: int = 1
    last_analyzed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    from_cache: bool = False


@dataclass
class Ingredient:
    """Editorial copy of an analysis attached to a product draft."""

    id: str
    name: str
    status: SafetyStatus
    rationale: str
    source_url: str
    original_status: SafetyStatus
    created_at: datetime
    updated_at: datetime
    is_override: bool = False
    description: Optional[str] = None
    edge_cases: Optional[str] = None
    ewg_score: Optional[int] = None
    research_sources: Optional[List[ResearchResult]] = None
    suggested_matches: Optional[List[str]] = None
    confidence: Optional[float] = None
    needs_review: bool = False


@dataclass
class VetResult:
    """Aggregated verdict for one vetting batch."""

    overall_status: SafetyStatus
    summary: str
    ingredients: List[Ingredient]
