"""Offline keyword classifier.

Deterministic fallback used when no model provider is available; matches
well-known ingredient families by substring.
"""

from typing import List

from src.vetting.types import (
    NONE_KNOWN,
    ClassifierOpinion,
    ResearchResult,
    SafetyStatus,
    ScoreLookupResult,
)

BANNED_KEYWORDS = (
    "phthalate",
    "paraben",
    "synthetic fragrance",
    "benzene",
    "formaldehyde",
)
CAUTION_KEYWORDS = (
    "phenoxyethanol",
    "chloride",
    "sulfate",
    "titanium dioxide",
    "aluminum",
)

RATIONALES = {
    SafetyStatus.SAFE: "{name} is widely recognized as low-risk in topical consumer products.",
    SafetyStatus.CAUTION: (
        "{name} has mixed safety data. Consider concentration and product "
        "context before final approval."
    ),
    SafetyStatus.BANNED: "{name} is flagged for exclusion due to regulatory or scientific concerns.",
}

SAFETY_PROFILES = {
    SafetyStatus.SAFE: "It has no widely reported safety concerns at typical use levels.",
    SafetyStatus.CAUTION: "Its safety depends on concentration and exposure.",
    SafetyStatus.BANNED: "It belongs to an ingredient family with documented health concerns.",
}

KEYWORD_CONFIDENCE = 0.4


def classify_by_keywords(name: str) -> SafetyStatus:
    normalized = name.lower()
    if any(keyword in normalized for keyword in BANNED_KEYWORDS):
        return SafetyStatus.BANNED
    if any(keyword in normalized for keyword in CAUTION_KEYWORDS):
        return SafetyStatus.CAUTION
    return SafetyStatus.SAFE


class KeywordClassifier:
    name = "keyword"

    async def analyze(
        self,
        ingredient_name: str,
        lookup: ScoreLookupResult,
        research: List[ResearchResult],
    ) -> ClassifierOpinion:
        status = classify_by_keywords(ingredient_name)
        return ClassifierOpinion(
            status=status,
            rationale=RATIONALES[status].format(name=ingredient_name),
            description=(
                f"{ingredient_name} is an ingredient used in consumer products. "
                f"{SAFETY_PROFILES[status]} "
                "It was classified by keyword matching rather than a full review."
            ),
            edge_cases=NONE_KNOWN,
            confidence=KEYWORD_CONFIDENCE,
        )
